"""Cross compilation and Docker daemon lifecycle of a build run."""

import os
import platform
import subprocess
import time
from pathlib import Path
from typing import Callable

from docker.errors import DockerException

from builder.building import get_docker_client
from builder.errors import (
    CrossCompileError,
    DockerDieError,
    DockerTimeoutError,
    DockerUnavailableError,
    PrivilegesError,
)

BINFMT_MISC = Path("/proc/sys/fs/binfmt_misc")
QEMU_HANDLERS = ("qemu-arm", "qemu-aarch64")

# Architectures a host machine runs without emulation
NATIVE_ARCHITECTURES = {
    "x86_64": {"amd64", "i386"},
    "amd64": {"amd64", "i386"},
    "aarch64": {"aarch64"},
    "arm64": {"aarch64"},
    "armv7l": {"armhf"},
    "i686": {"i386"},
}


class WaitTimeout(Exception):
    """A condition did not become true within its time budget."""


def wait_until(
    predicate: Callable[[], bool],
    timeout: float,
    interval: float = 1.0,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> None:
    """Poll predicate every interval seconds until it returns True.

    Raises:
        WaitTimeout: predicate did not return True within timeout seconds
    """
    deadline = clock() + timeout
    while True:
        if predicate():
            return
        if clock() >= deadline:
            raise WaitTimeout(f"Condition not met within {timeout} seconds")
        sleep(interval)


def _run(cmd: list[str]) -> subprocess.CompletedProcess:
    return subprocess.run(cmd, capture_output=True, text=True)


def check_privileges() -> None:
    """Check for extended privileges by creating a dummy network link.

    Raises:
        PrivilegesError: The build environment is not privileged
    """
    print("Checking build environment privileges")
    try:
        result = _run(["ip", "link", "add", "dummy0", "type", "dummy"])
    except OSError as e:
        raise PrivilegesError(f"Could not check privileges: {e}") from e

    if result.returncode != 0:
        raise PrivilegesError("This build environment needs extended privileges (--privileged)")

    _run(["ip", "link", "delete", "dummy0"])


def native_architectures(machine: str | None = None) -> set[str]:
    machine = (machine or platform.machine()).lower()
    return NATIVE_ARCHITECTURES.get(machine, set())


def needs_emulation(architectures, machine: str | None = None) -> bool:
    """Check if any of the architectures requires QEMU emulation on this host."""
    native = native_architectures(machine)
    return any(arch not in native for arch in architectures)


def enable_crosscompile() -> bool:
    """Mount binfmt_misc when needed and enable the QEMU handlers.

    Returns:
        True if binfmt_misc was mounted by this call

    Raises:
        CrossCompileError: Emulation could not be enabled
    """
    print("Enabling cross compile features")
    mounted = False

    try:
        if not os.path.ismount(BINFMT_MISC):
            result = _run(["mount", "binfmt_misc", "-t", "binfmt_misc", str(BINFMT_MISC)])
            if result.returncode != 0:
                raise CrossCompileError(f"Could not mount binfmt_misc: {result.stderr.strip()}")
            mounted = True

        for handler in QEMU_HANDLERS:
            result = _run(["update-binfmts", "--enable", handler])
            if result.returncode != 0:
                raise CrossCompileError(f"Could not enable {handler}: {result.stderr.strip()}")
    except OSError as e:
        raise CrossCompileError(f"Could not enable cross compile features: {e}") from e

    return mounted


def disable_crosscompile(unmount: bool = False) -> None:
    """Disable the QEMU handlers, unmounting binfmt_misc if we mounted it.

    Raises:
        CrossCompileError: Emulation could not be disabled
    """
    print("Disabling cross compile features")

    try:
        for handler in QEMU_HANDLERS:
            result = _run(["update-binfmts", "--disable", handler])
            if result.returncode != 0:
                raise CrossCompileError(f"Could not disable {handler}: {result.stderr.strip()}")

        if unmount:
            result = _run(["umount", str(BINFMT_MISC)])
            if result.returncode != 0:
                raise CrossCompileError(f"Could not unmount binfmt_misc: {result.stderr.strip()}")
    except OSError as e:
        raise CrossCompileError(f"Could not disable cross compile features: {e}") from e


def is_daemon_ready() -> bool:
    """Check if the Docker daemon answers a ping."""
    try:
        return bool(get_docker_client().ping())
    except (DockerException, OSError):
        return False


class DockerDaemon:
    """A dockerd process started for the duration of the build"""

    def __init__(self, timeout: float, interval: float = 1.0):
        self.timeout = timeout
        self.interval = interval
        self.process: subprocess.Popen | None = None

    def start(self) -> None:
        """Start dockerd and wait until it answers.

        Raises:
            DockerUnavailableError: dockerd could not be started
            DockerTimeoutError: dockerd did not answer within the timeout
        """
        print("Starting the Docker daemon")
        try:
            self.process = subprocess.Popen(
                ["dockerd", "--experimental=true"],
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                start_new_session=True,
            )
        except OSError as e:
            raise DockerUnavailableError(f"Could not start dockerd: {e}") from e

        try:
            wait_until(is_daemon_ready, self.timeout, self.interval)
        except WaitTimeout as e:
            raise DockerTimeoutError("Timeout while waiting for Docker to come up") from e

        print("Docker is up and running")

    def stop(self) -> None:
        """Ask dockerd to terminate and wait for it to exit.

        Raises:
            DockerDieError: dockerd did not exit within the timeout
        """
        if self.process is None or self.process.poll() is not None:
            return

        print("Stopping the Docker daemon")
        self.process.terminate()

        try:
            wait_until(lambda: self.process.poll() is not None, self.timeout, self.interval)
        except WaitTimeout as e:
            raise DockerDieError("Timeout while waiting for Docker to die") from e

        print("Docker daemon stopped")


class BuildEnvironment:
    """Emulation and Docker daemon for one build run.

    Use as a context manager; teardown runs exactly once on every exit path:

        with BuildEnvironment(config.architectures):
            BuildOrchestrator(...).run()

    When DOCKER_HOST is set, the daemon behind it is used and never
    started or stopped.
    """

    def __init__(self, architectures, crosscompile: str = "auto", docker_timeout: float = 20, interval: float = 1.0):
        self.architectures = tuple(architectures)
        self.crosscompile = crosscompile
        self.docker_timeout = docker_timeout
        self.interval = interval
        self.daemon: DockerDaemon | None = None
        self._emulation_enabled = False
        self._mounted_binfmt = False
        self._closed = False

    @property
    def wants_emulation(self) -> bool:
        if self.crosscompile == "auto":
            return needs_emulation(self.architectures)
        return self.crosscompile == "true"

    @property
    def uses_external_daemon(self) -> bool:
        return bool(os.environ.get("DOCKER_HOST"))

    def __enter__(self) -> "BuildEnvironment":
        try:
            self.open()
        except BaseException:
            self.close()
            raise
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def open(self) -> None:
        emulation = self.wants_emulation
        external = self.uses_external_daemon

        if emulation or not external:
            check_privileges()

        if emulation:
            self._mounted_binfmt = enable_crosscompile()
            self._emulation_enabled = True

        if external:
            print(f"Using external Docker daemon: {os.environ['DOCKER_HOST']}")
            if not is_daemon_ready():
                raise DockerUnavailableError(f"Docker daemon at {os.environ['DOCKER_HOST']} is not reachable")
            return

        self.daemon = DockerDaemon(self.docker_timeout, self.interval)
        self.daemon.start()

    def close(self) -> None:
        """Stop the daemon and disable emulation; later calls do nothing"""
        if self._closed:
            return
        self._closed = True

        try:
            if self.daemon is not None:
                self.daemon.stop()
        finally:
            if self._emulation_enabled:
                disable_crosscompile(unmount=self._mounted_binfmt)
