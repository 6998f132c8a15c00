"""Build, tag and push add-on images for every requested architecture."""

import subprocess
import sys
import tempfile
import threading
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable

import docker
from docker.errors import DockerException

from builder.dockerfile import DockerfileInventory
from builder.errors import DockerBuildError, DockerPushError, DockerTagError
from builder.models import ARCH_PLACEHOLDER, BuildConfig

BUILD_DATE_FORMAT = "%Y-%m-%dT%H:%M:%SZ"

# Metadata passed as build args, only when the Dockerfile declares them
METADATA_BUILD_ARGS = {
    "BUILD_DESCRIPTION": "description",
    "BUILD_GIT_URL": "git_url",
    "BUILD_MAINTAINER": "maintainer",
    "BUILD_NAME": "name",
    "BUILD_REF": "build_ref",
    "BUILD_TYPE": "build_type",
    "BUILD_URL": "url",
    "BUILD_DOC_URL": "doc_url",
    "BUILD_VENDOR": "vendor",
    "BUILD_VERSION": "version",
}

# Always passed, the augmented Dockerfile declares them when needed
RESERVED_BUILD_ARGS = ("BUILD_FROM", "BUILD_DATE", "BUILD_ARCH")

_output_lock = threading.Lock()

# Child processes of run_prefixed that are still running
_running: set[subprocess.Popen] = set()
_running_lock = threading.Lock()

PROCESS_STOP_TIMEOUT = 5


def get_docker_client() -> docker.DockerClient:
    """Get Docker client for the build daemon."""
    return docker.from_env()


def log(prefix: str, message: str, error: bool = False) -> None:
    """Print a line, keeping concurrent output lines intact"""
    with _output_lock:
        print(f"{prefix}{message}", file=sys.stderr if error else sys.stdout, flush=True)


def stop_process(proc: subprocess.Popen, timeout: float = PROCESS_STOP_TIMEOUT) -> None:
    """Terminate a child process, killing it if it does not exit within timeout"""
    if proc.poll() is not None:
        return
    proc.terminate()
    try:
        proc.wait(timeout=timeout)
    except subprocess.TimeoutExpired:
        proc.kill()
        proc.wait()


def stop_running_processes() -> None:
    """Stop every command started by run_prefixed that is still running"""
    with _running_lock:
        processes = list(_running)
    for proc in processes:
        stop_process(proc)


def run_prefixed(cmd: list[str], prefix: str = "") -> int:
    """Run a command, streaming its combined output with every line prefixed.

    An exception while streaming (an interrupt) stops the command before
    it propagates.

    Returns:
        Exit code of the command, 127 if it could not be started
    """
    try:
        proc = subprocess.Popen(
            cmd,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            bufsize=1,
        )
    except OSError as e:
        log(prefix, f"Error: Could not run {cmd[0]}: {e}", error=True)
        return 127

    with _running_lock:
        _running.add(proc)

    with proc:
        try:
            for line in proc.stdout:
                log(prefix, line.rstrip("\n"))
        except BaseException:
            stop_process(proc)
            raise
        finally:
            with _running_lock:
                _running.discard(proc)
    return proc.returncode


@dataclass
class ArchitectureBuildResult:
    """Outcome of one architecture in a run, None means the phase did not run"""
    arch: str
    build_status: int | None = None
    tag_status: int | None = None
    push_status: int | None = None

    @property
    def succeeded(self) -> bool:
        statuses = (self.build_status, self.tag_status, self.push_status)
        return all(status in (None, 0) for status in statuses)


class BuildOrchestrator:
    """Runs the warm-up, build, tag and push phases for all architectures.

    Phases run strictly one after another. Within a phase, architectures run
    concurrently when parallel is enabled and more than one is requested.
    """

    def __init__(
        self,
        config: BuildConfig,
        dockerfile: str,
        inventory: DockerfileInventory,
        client: docker.DockerClient | None = None,
        runner: Callable[[list[str], str], int] = run_prefixed,
        build_date: str | None = None,
    ):
        """
        Args:
            config: Resolved build configuration
            dockerfile: Augmented Dockerfile text, may contain {arch}
            inventory: ARGs and LABELs the source Dockerfile declares
            client: Docker client used for pull and tag, created on first use
            runner: Runs a docker CLI command with an output prefix
            build_date: Build date stamp, shared by all architectures
        """
        self.config = config
        self.dockerfile = dockerfile
        self.inventory = inventory
        self.runner = runner
        self.build_date = build_date or datetime.now(timezone.utc).strftime(BUILD_DATE_FORMAT)
        self.cache_enabled = config.cache_enabled
        self.results = {arch: ArchitectureBuildResult(arch) for arch in config.architectures}
        self._client = client

    @property
    def client(self) -> docker.DockerClient:
        if self._client is None:
            self._client = get_docker_client()
        return self._client

    def run(self) -> list[ArchitectureBuildResult]:
        """Run all phases, raising the error of the first failing phase"""
        self.warmup()
        self.build()
        self.tag()
        self.push()
        print("Build finished")
        return list(self.results.values())

    # --- Phase execution ---

    def _is_parallel(self) -> bool:
        return self.config.parallel and len(self.config.architectures) > 1

    def _run_phase(self, job: Callable[[str], int], fail_fast: bool) -> dict[str, int]:
        """Run job for every architecture, returning exit statuses by architecture.

        In parallel mode every job is awaited before returning. In sequential
        mode a failure stops the remaining architectures when fail_fast is set.
        """
        if self._is_parallel():
            return self._run_parallel(job)

        statuses = {}
        for arch in self.config.architectures:
            statuses[arch] = job(arch)
            if statuses[arch] != 0 and fail_fast:
                break
        return statuses

    def _run_parallel(self, job: Callable[[str], int]) -> dict[str, int]:
        archs = self.config.architectures
        executor = ThreadPoolExecutor(max_workers=len(archs), thread_name_prefix="build")
        try:
            futures = {arch: executor.submit(job, arch) for arch in archs}
            wait(futures.values())
        except BaseException:
            # Interrupted; workers return once their commands are stopped
            executor.shutdown(wait=False, cancel_futures=True)
            stop_running_processes()
            raise
        executor.shutdown()
        return {arch: future.result() for arch, future in futures.items()}

    def _first_failure(self, statuses: dict[str, int]) -> str | None:
        """First failed architecture in the requested order"""
        for arch in self.config.architectures:
            if statuses.get(arch, 0) != 0:
                return arch
        return None

    # --- Warm-up ---

    def warmup(self) -> None:
        """Pull the previous latest images as cache, disabling the cache on any failure"""
        if not self.cache_enabled:
            return

        print("Warming up cache for all requested architectures")
        statuses = self._run_phase(self._warmup_arch, fail_fast=False)

        if any(status != 0 for status in statuses.values()):
            print("Warning: Cache warmup failed, continuing without it", file=sys.stderr)
            self.cache_enabled = False

    def _warmup_arch(self, arch: str) -> int:
        prefix = f"[{arch}] "
        image = self.config.image_for(arch)
        log(prefix, f"Pulling {image}:latest")
        try:
            self.client.images.pull(image, tag="latest")
        except (DockerException, OSError) as e:
            log(prefix, f"Warning: Could not pull {image}:latest: {e}", error=True)
            return 1
        return 0

    # --- Build ---

    def build_args(self, arch: str) -> list[tuple[str, str]]:
        """All build args for an architecture as (name, value) pairs"""
        args = [
            ("BUILD_FROM", self.config.base_image_for(arch) or ""),
            ("BUILD_DATE", self.build_date),
            ("BUILD_ARCH", arch),
        ]

        for name, field_name in METADATA_BUILD_ARGS.items():
            if self.inventory.has_arg(name):
                args.append((name, getattr(self.config, field_name)))

        passed = {name for name, _ in args}
        for name, value in self.config.extra_build_args.items():
            if name not in passed and self.inventory.has_arg(name):
                args.append((name, value))

        return args

    def build_command(self, arch: str, dockerfile_path: Path) -> list[str]:
        image = self.config.image_for(arch)
        cmd = ["docker", "build", "--pull", "--tag", f"{image}:{self.config.version}"]

        if self.config.squash:
            cmd.append("--squash")

        for name, value in self.build_args(arch):
            cmd.extend(["--build-arg", f"{name}={value}"])

        if self.cache_enabled:
            cmd.extend(["--cache-from", f"{image}:latest"])
        else:
            cmd.append("--no-cache")

        cmd.extend(["--file", str(dockerfile_path), str(self.config.target)])
        return cmd

    def build(self) -> None:
        """Build all architectures.

        Raises:
            DockerBuildError: A build failed
        """
        print("Running Docker build")

        for name in self.config.extra_build_args:
            if name not in RESERVED_BUILD_ARGS and not self.inventory.has_arg(name):
                print(f"Warning: Build argument {name} is not declared in the Dockerfile, skipping", file=sys.stderr)

        statuses = self._run_phase(self._build_arch, fail_fast=True)
        for arch, status in statuses.items():
            self.results[arch].build_status = status

        failed = self._first_failure(statuses)
        if failed:
            raise DockerBuildError(f"Docker build failed for {failed}")

    def _build_arch(self, arch: str) -> int:
        prefix = f"[{arch}] "
        content = self.dockerfile.replace(ARCH_PLACEHOLDER, arch)

        with tempfile.NamedTemporaryFile("w", prefix=f"Dockerfile.{arch}.", delete=False) as f:
            f.write(content)
            dockerfile_path = Path(f.name)

        try:
            cmd = self.build_command(arch, dockerfile_path)
            log(prefix, " ".join(cmd))
            status = self.runner(cmd, prefix)
        finally:
            dockerfile_path.unlink(missing_ok=True)

        if status == 0:
            log(prefix, "Docker build finished")
        else:
            log(prefix, "Error: Docker build failed", error=True)
        return status

    # --- Tag ---

    def extra_tags(self) -> list[str]:
        tags = []
        if self.config.tag_latest:
            tags.append("latest")
        if self.config.tag_test:
            tags.append("test")
        return tags

    def tag(self) -> None:
        """Apply latest/test tags; every architecture is tagged even if one fails.

        Raises:
            DockerTagError: Tagging failed for an architecture
        """
        if not self.extra_tags():
            return

        print("Tagging images")
        statuses = self._run_phase(self._tag_arch, fail_fast=False)
        for arch, status in statuses.items():
            self.results[arch].tag_status = status

        failed = self._first_failure(statuses)
        if failed:
            raise DockerTagError(f"Docker tagging failed for {failed}")

    def _tag_arch(self, arch: str) -> int:
        prefix = f"[{arch}] "
        repository = self.config.image_for(arch)
        source = f"{repository}:{self.config.version}"

        try:
            image = self.client.images.get(source)
            for tag in self.extra_tags():
                if not image.tag(repository, tag=tag):
                    log(prefix, f"Error: Could not tag {source} as {repository}:{tag}", error=True)
                    return 1
                log(prefix, f"Tagged {repository}:{tag}")
        except (DockerException, OSError) as e:
            log(prefix, f"Error: Docker tagging failed: {e}", error=True)
            return 1
        return 0

    # --- Push ---

    def push(self) -> None:
        """Push the version tag and the extra tags of all architectures.

        Raises:
            DockerPushError: A push failed
        """
        if not self.config.push:
            return

        print("Pushing images")
        statuses = self._run_phase(self._push_arch, fail_fast=True)
        for arch, status in statuses.items():
            self.results[arch].push_status = status

        failed = self._first_failure(statuses)
        if failed:
            raise DockerPushError(f"Docker push failed for {failed}")

    def _push_arch(self, arch: str) -> int:
        prefix = f"[{arch}] "
        repository = self.config.image_for(arch)

        for tag in [self.config.version, *self.extra_tags()]:
            status = self.runner(["docker", "push", f"{repository}:{tag}"], prefix)
            if status != 0:
                log(prefix, f"Error: Docker push of {repository}:{tag} failed", error=True)
                return status

        log(prefix, "Docker push finished")
        return 0
