import subprocess
from unittest.mock import MagicMock

import pytest

from builder import environment
from builder.environment import (
    BuildEnvironment,
    DockerDaemon,
    WaitTimeout,
    check_privileges,
    disable_crosscompile,
    enable_crosscompile,
    needs_emulation,
    wait_until,
)
from builder.errors import (
    CrossCompileError,
    DockerDieError,
    DockerTimeoutError,
    DockerUnavailableError,
    PrivilegesError,
)


class FakeClock:
    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def time(self):
        return self.now

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


class TestWaitUntil:
    def test_returns_when_condition_is_met(self):
        clock = FakeClock()
        answers = iter([False, False, True])

        wait_until(lambda: next(answers), timeout=20, interval=1, sleep=clock.sleep, clock=clock.time)

        assert clock.sleeps == [1, 1]

    def test_timeout(self):
        clock = FakeClock()

        with pytest.raises(WaitTimeout):
            wait_until(lambda: False, timeout=20, interval=1, sleep=clock.sleep, clock=clock.time)

        assert len(clock.sleeps) == 20

    def test_immediate_success_does_not_sleep(self):
        clock = FakeClock()

        wait_until(lambda: True, timeout=0, sleep=clock.sleep, clock=clock.time)

        assert clock.sleeps == []


class TestNeedsEmulation:
    def test_native_on_x86_64(self):
        assert not needs_emulation(["amd64", "i386"], machine="x86_64")

    def test_arm_on_x86_64(self):
        assert needs_emulation(["amd64", "armhf"], machine="x86_64")

    def test_aarch64_host(self):
        assert not needs_emulation(["aarch64"], machine="aarch64")
        assert needs_emulation(["amd64"], machine="aarch64")


class RecordingRun:
    """Fake for environment._run, failing commands that start with an entry of fail"""

    def __init__(self, fail=()):
        self.fail = [tuple(cmd) for cmd in fail]
        self.commands = []

    def __call__(self, cmd):
        self.commands.append(cmd)
        failed = any(tuple(cmd[:len(prefix)]) == prefix for prefix in self.fail)
        return subprocess.CompletedProcess(cmd, 1 if failed else 0, "", "failed" if failed else "")


def test_check_privileges(monkeypatch):
    run = RecordingRun()
    monkeypatch.setattr(environment, "_run", run)

    check_privileges()

    assert run.commands == [
        ["ip", "link", "add", "dummy0", "type", "dummy"],
        ["ip", "link", "delete", "dummy0"],
    ]


def test_check_privileges_fails(monkeypatch):
    monkeypatch.setattr(environment, "_run", RecordingRun(fail=[["ip"]]))

    with pytest.raises(PrivilegesError):
        check_privileges()


def test_enable_crosscompile_mounts_binfmt(monkeypatch):
    run = RecordingRun()
    monkeypatch.setattr(environment, "_run", run)
    monkeypatch.setattr(environment.os.path, "ismount", lambda path: False)

    assert enable_crosscompile() is True
    assert run.commands[0][0] == "mount"
    assert ["update-binfmts", "--enable", "qemu-arm"] in run.commands
    assert ["update-binfmts", "--enable", "qemu-aarch64"] in run.commands


def test_enable_crosscompile_already_mounted(monkeypatch):
    run = RecordingRun()
    monkeypatch.setattr(environment, "_run", run)
    monkeypatch.setattr(environment.os.path, "ismount", lambda path: True)

    assert enable_crosscompile() is False
    assert all(cmd[0] != "mount" for cmd in run.commands)


def test_enable_crosscompile_fails(monkeypatch):
    monkeypatch.setattr(environment, "_run", RecordingRun(fail=[["update-binfmts"]]))
    monkeypatch.setattr(environment.os.path, "ismount", lambda path: True)

    with pytest.raises(CrossCompileError):
        enable_crosscompile()


def test_disable_crosscompile_only_unmounts_when_requested(monkeypatch):
    run = RecordingRun()
    monkeypatch.setattr(environment, "_run", run)

    disable_crosscompile(unmount=False)
    assert all(cmd[0] != "umount" for cmd in run.commands)

    disable_crosscompile(unmount=True)
    assert run.commands[-1][0] == "umount"


class FakeProcess:
    def __init__(self, exits_on_terminate=True):
        self.exits_on_terminate = exits_on_terminate
        self.returncode = None
        self.terminated = 0

    def poll(self):
        return self.returncode

    def terminate(self):
        self.terminated += 1
        if self.exits_on_terminate:
            self.returncode = 0


class TestDockerDaemon:
    def test_start(self, monkeypatch):
        process = FakeProcess()
        popen = MagicMock(return_value=process)
        monkeypatch.setattr(environment.subprocess, "Popen", popen)
        monkeypatch.setattr(environment, "is_daemon_ready", lambda: True)

        daemon = DockerDaemon(timeout=20)
        daemon.start()

        assert popen.call_args[0][0] == ["dockerd", "--experimental=true"]
        assert daemon.process is process

    def test_start_timeout(self, monkeypatch):
        monkeypatch.setattr(environment.subprocess, "Popen", MagicMock(return_value=FakeProcess()))
        monkeypatch.setattr(environment, "is_daemon_ready", lambda: False)

        with pytest.raises(DockerTimeoutError):
            DockerDaemon(timeout=0.05, interval=0.01).start()

    def test_dockerd_missing(self, monkeypatch):
        monkeypatch.setattr(environment.subprocess, "Popen", MagicMock(side_effect=FileNotFoundError("dockerd")))

        with pytest.raises(DockerUnavailableError):
            DockerDaemon(timeout=1).start()

    def test_stop(self):
        daemon = DockerDaemon(timeout=1, interval=0.01)
        daemon.process = FakeProcess()

        daemon.stop()

        assert daemon.process.terminated == 1

    def test_stop_timeout(self):
        daemon = DockerDaemon(timeout=0.05, interval=0.01)
        daemon.process = FakeProcess(exits_on_terminate=False)

        with pytest.raises(DockerDieError):
            daemon.stop()

    def test_stop_without_process(self):
        DockerDaemon(timeout=1).stop()


@pytest.fixture
def fake_environment(monkeypatch):
    """Replace privilege, emulation and daemon handling with recorders"""
    calls = []
    monkeypatch.delenv("DOCKER_HOST", raising=False)
    monkeypatch.setattr(environment, "check_privileges", lambda: calls.append("privileges"))
    monkeypatch.setattr(environment, "enable_crosscompile", lambda: calls.append("enable") or True)
    monkeypatch.setattr(environment, "disable_crosscompile", lambda unmount: calls.append(("disable", unmount)))
    monkeypatch.setattr(DockerDaemon, "start", lambda self: calls.append("start"))
    monkeypatch.setattr(DockerDaemon, "stop", lambda self: calls.append("stop"))
    return calls


class TestBuildEnvironment:
    def test_lifecycle_with_emulation(self, fake_environment):
        with BuildEnvironment(["armhf"], crosscompile="true"):
            fake_environment.append("build")

        assert fake_environment == ["privileges", "enable", "start", "build", "stop", ("disable", True)]

    def test_no_emulation_for_native_architectures(self, fake_environment):
        with BuildEnvironment(["amd64"], crosscompile="false"):
            pass

        assert fake_environment == ["privileges", "start", "stop"]

    def test_teardown_runs_once(self, fake_environment):
        env = BuildEnvironment(["armhf"], crosscompile="true")

        with env:
            pass
        env.close()
        env.close()

        assert fake_environment.count("stop") == 1
        assert fake_environment.count(("disable", True)) == 1

    def test_teardown_on_error(self, fake_environment):
        with pytest.raises(RuntimeError):
            with BuildEnvironment(["armhf"], crosscompile="true"):
                raise RuntimeError("build exploded")

        assert fake_environment[-2:] == ["stop", ("disable", True)]

    def test_teardown_on_interrupt(self, fake_environment):
        with pytest.raises(KeyboardInterrupt):
            with BuildEnvironment(["armhf"], crosscompile="true"):
                raise KeyboardInterrupt

        assert fake_environment[-2:] == ["stop", ("disable", True)]

    def test_emulation_disabled_when_daemon_fails_to_start(self, fake_environment, monkeypatch):
        def fail(self):
            fake_environment.append("start")
            raise DockerTimeoutError("Timeout while waiting for Docker to come up")

        monkeypatch.setattr(DockerDaemon, "start", fail)

        with pytest.raises(DockerTimeoutError):
            with BuildEnvironment(["armhf"], crosscompile="true"):
                fake_environment.append("build")

        assert "build" not in fake_environment
        assert fake_environment[-1] == ("disable", True)

    def test_emulation_disabled_when_daemon_does_not_die(self, fake_environment, monkeypatch):
        def fail(self):
            raise DockerDieError("Timeout while waiting for Docker to die")

        monkeypatch.setattr(DockerDaemon, "stop", fail)

        with pytest.raises(DockerDieError):
            with BuildEnvironment(["armhf"], crosscompile="true"):
                pass

        assert fake_environment[-1] == ("disable", True)

    def test_external_daemon(self, fake_environment, monkeypatch):
        monkeypatch.setenv("DOCKER_HOST", "tcp://docker:2375")
        monkeypatch.setattr(environment, "is_daemon_ready", lambda: True)

        with BuildEnvironment(["amd64"], crosscompile="false"):
            pass

        assert fake_environment == []

    def test_external_daemon_unreachable(self, fake_environment, monkeypatch):
        monkeypatch.setenv("DOCKER_HOST", "tcp://docker:2375")
        monkeypatch.setattr(environment, "is_daemon_ready", lambda: False)

        with pytest.raises(DockerUnavailableError):
            with BuildEnvironment(["amd64"], crosscompile="false"):
                pass
