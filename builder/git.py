"""Collect build information from Git and clone remote repositories."""

import re
import subprocess
import sys
from dataclasses import dataclass
from pathlib import Path

from builder.errors import GitCloneError, GitRepositoryError, NotEmptyError

DIRTY_REF = "dirty"

SSH_REMOTE_PATTERN = re.compile(r"^git@([^:]+):(.+?)(\.git)?/?$")


@dataclass(frozen=True)
class GitInfo:
    """Build information derived from the Git repository"""
    is_repository: bool = False
    is_clean: bool = False
    ref: str | None = None
    tag: str | None = None
    is_latest_tag: bool = False
    version: str | None = None
    tag_latest: bool = False
    tag_test: bool = False
    remote_url: str | None = None


def _git(*args: str, cwd: Path) -> subprocess.CompletedProcess:
    """Run a git command in the given directory and capture its output."""
    return subprocess.run(
        ["git", *args],
        cwd=cwd,
        capture_output=True,
        text=True,
        timeout=30,
    )


def _git_output(*args: str, cwd: Path) -> str | None:
    """Stripped stdout of a git command, None if it failed.

    Raises:
        GitRepositoryError: git did not answer in time
    """
    try:
        result = _git(*args, cwd=cwd)
    except subprocess.TimeoutExpired as e:
        raise GitRepositoryError(f"git {args[0]} did not finish within {e.timeout} seconds") from e
    if result.returncode != 0:
        return None
    return result.stdout.strip()


def normalize_remote_url(url: str | None) -> str | None:
    """Convert a Git remote URL into a browsable HTTPS URL.

    Examples:
        git@github.com:hassio-addons/addon-ssh.git -> https://github.com/hassio-addons/addon-ssh
        https://github.com/hassio-addons/addon-ssh -> unchanged

    Returns None for remotes that cannot be converted (e.g. local paths).
    """
    if not url:
        return None

    if url.startswith("http://") or url.startswith("https://"):
        return url

    match = SSH_REMOTE_PATTERN.match(url)
    if match:
        host, path = match.group(1), match.group(2)
        return f"https://{host}/{path}"

    return None


def strip_version_prefix(tag: str) -> str:
    """Strip a single leading 'v' from a version tag (v1.2.3 -> 1.2.3)."""
    return tag[1:] if tag.startswith("v") else tag


def is_repository(path: Path) -> bool:
    try:
        return _git("rev-parse", cwd=path).returncode == 0
    except (OSError, subprocess.TimeoutExpired):
        return False


def read_git_info(
    path: Path,
    use_git: bool = False,
    dirty_policy: str = "sentinel",
    dirty_version: str = "dirty",
) -> GitInfo:
    """Collect build information from the Git repository at path.

    Args:
        path: Directory inside the repository
        use_git: Whether --git was requested; Git then supplies the version
            and manages the 'latest' and 'test' tags
        dirty_policy: What to do with a dirty working tree when use_git is set:
            'sentinel' uses dirty_version, 'fallback' leaves the version to
            other sources, 'strict' refuses to build
        dirty_version: Version used by the 'sentinel' policy

    Raises:
        GitRepositoryError: use_git is set, but path is not a Git repository,
            or the working tree is dirty under the 'strict' policy
    """
    print("Collecting information from Git")

    if not is_repository(path):
        if use_git:
            raise GitRepositoryError("You have added --git, but is this a Git repo?")
        print("Warning: This is not a Git repository. Skipping.", file=sys.stderr)
        return GitInfo()

    remote_url = normalize_remote_url(_git_output("config", "--get", "remote.origin.url", cwd=path))

    status = _git_output("status", "--porcelain", cwd=path)
    if status:
        # Uncommitted changes in the repository
        if not use_git:
            return GitInfo(is_repository=True, ref=DIRTY_REF, remote_url=remote_url)

        if dirty_policy == "strict":
            raise GitRepositoryError("The Git working tree is dirty, refusing to build with --git")

        version = dirty_version if dirty_policy == "sentinel" else None
        return GitInfo(
            is_repository=True,
            ref=DIRTY_REF,
            version=version,
            tag_test=dirty_policy == "sentinel",
            remote_url=remote_url,
        )

    ref = _git_output("rev-parse", "--short", "HEAD", cwd=path)
    tag = _git_output("describe", "--exact-match", "HEAD", "--abbrev=0", "--tags", cwd=path) or None

    is_latest_tag = False
    if tag:
        is_latest_tag = _git_output("describe", "--abbrev=0", "--tags", cwd=path) == tag

    if tag and use_git:
        return GitInfo(
            is_repository=True,
            is_clean=True,
            ref=ref,
            tag=tag,
            is_latest_tag=is_latest_tag,
            version=strip_version_prefix(tag),
            tag_latest=is_latest_tag,
            remote_url=remote_url,
        )

    # Clean, but the version is unknown: use the commit SHA
    return GitInfo(
        is_repository=True,
        is_clean=True,
        ref=ref,
        tag=tag,
        is_latest_tag=is_latest_tag,
        version=ref,
        tag_test=True,
        remote_url=remote_url,
    )


def clone_repository(repository: str, branch: str, workdir: Path) -> None:
    """Shallow clone a single branch of a remote repository into workdir.

    Raises:
        NotEmptyError: workdir already contains files
        GitCloneError: git clone failed
    """
    print(f"Cloning remote Git repository {repository} ({branch})")

    if workdir.exists() and any(workdir.iterdir()):
        raise NotEmptyError(f"{workdir} is in use already, while requesting a repository")

    workdir.mkdir(parents=True, exist_ok=True)

    try:
        result = subprocess.run(
            ["git", "clone", "--depth", "1", "--single-branch", "-b", branch, repository, str(workdir)],
            text=True,
        )
    except OSError as e:
        raise GitCloneError(f"Failed cloning requested Git repository: {e}") from e

    if result.returncode != 0:
        raise GitCloneError("Failed cloning requested Git repository")
