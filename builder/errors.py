"""Exit codes and the exception hierarchy of the builder."""

EX_OK = 0
EX_UNKNOWN = 1
EX_CROSS = 3
EX_DOCKER_BUILD = 4
EX_DOCKER_DIE = 5
EX_DOCKER_PUSH = 6
EX_DOCKER_TAG = 7
EX_DOCKER_TIMEOUT = 8
EX_DOCKERFILE = 9
EX_GIT_CLONE = 10
EX_GIT = 11
EX_INVALID_TYPE = 12
EX_MULTISTAGE = 13
EX_NO_ARCHS = 14
EX_NO_IMAGE_NAME = 15
EX_NOT_EMPTY = 16
EX_PRIVILEGES = 17
EX_SUPPORTED = 18
EX_VERSION = 19
EX_NO_FROM = 20
EX_DOCKER = 21
EX_CONFIG = 22
EX_INTERRUPTED = 130


class BuildError(Exception):
    """Base class for all fatal builder errors.

    Every subclass maps to exactly one process exit code.
    """

    exit_code = EX_UNKNOWN


class UsageError(BuildError):
    """Unknown or incomplete command-line arguments."""

    exit_code = EX_UNKNOWN


class Interrupted(BuildError):
    """The run was interrupted by a signal."""

    exit_code = EX_INTERRUPTED


# --- Input errors, detected before anything is built ---

class ConfigurationError(BuildError):
    """Malformed project configuration or manifest."""

    exit_code = EX_CONFIG


class DockerfileNotFoundError(BuildError):
    exit_code = EX_DOCKERFILE


class MultistageDockerfileError(BuildError):
    exit_code = EX_MULTISTAGE


class NoArchitecturesError(BuildError):
    exit_code = EX_NO_ARCHS


class MissingVersionError(BuildError):
    exit_code = EX_VERSION


class UnsupportedArchitectureError(BuildError):
    exit_code = EX_SUPPORTED


class MissingImageNameError(BuildError):
    exit_code = EX_NO_IMAGE_NAME


class InvalidBuildTypeError(BuildError):
    exit_code = EX_INVALID_TYPE


class MissingBaseImageError(BuildError):
    exit_code = EX_NO_FROM


class NotEmptyError(BuildError):
    """Working directory is in use while a remote repository was requested."""

    exit_code = EX_NOT_EMPTY


class GitRepositoryError(BuildError):
    """Git metadata was requested but could not be used."""

    exit_code = EX_GIT


class GitCloneError(BuildError):
    exit_code = EX_GIT_CLONE


# --- Environment errors ---

class PrivilegesError(BuildError):
    exit_code = EX_PRIVILEGES


class CrossCompileError(BuildError):
    exit_code = EX_CROSS


class DockerUnavailableError(BuildError):
    exit_code = EX_DOCKER


class DockerTimeoutError(BuildError):
    """The Docker daemon did not come up in time."""

    exit_code = EX_DOCKER_TIMEOUT


class DockerDieError(BuildError):
    """The Docker daemon did not shut down in time."""

    exit_code = EX_DOCKER_DIE


# --- External command failures ---

class DockerBuildError(BuildError):
    exit_code = EX_DOCKER_BUILD


class DockerTagError(BuildError):
    exit_code = EX_DOCKER_TAG


class DockerPushError(BuildError):
    exit_code = EX_DOCKER_PUSH
