import shutil
import time

import psutil
import pytest

from conftest import FakeRunner
from mac_tuneup.commands import CommandResult, Deadline, PrivilegeSession, run_command
from mac_tuneup.errors import ActionTimeout, CommandTimeout


def alive(pid):
    try:
        return psutil.Process(pid).status() != psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return False


def test_missing_executable_is_exit_127():
    result = run_command(["definitely-not-a-real-tool-xyz"])
    assert result.returncode == 127
    assert not result.ok
    assert "command not found" in result.reason()


@pytest.mark.skipif(shutil.which("sh") is None, reason="needs a POSIX shell")
def test_output_captured():
    result = run_command(["sh", "-c", "echo hello; echo oops >&2; exit 3"])
    assert result.returncode == 3
    assert result.stdout == "hello\n"
    assert result.reason() == "exit 3: oops"


@pytest.mark.skipif(shutil.which("sleep") is None, reason="needs sleep")
def test_timeout_kills_command():
    with pytest.raises(CommandTimeout) as excinfo:
        run_command(["sleep", "30"], timeout=0.2)
    assert str(excinfo.value) == "sleep timed out after 0.2s"


def test_deadline_with_fake_clock():
    now = [100.0]
    deadline = Deadline(30, clock=lambda: now[0])
    assert deadline.remaining() == 30
    deadline.check()
    now[0] = 125.0
    assert deadline.remaining() == 5
    now[0] = 130.0
    assert deadline.expired()
    with pytest.raises(ActionTimeout):
        deadline.check()


def test_privileges_requested_once(monkeypatch):
    runner = FakeRunner(failures={"sudo"})
    session = PrivilegeSession(runner)
    monkeypatch.setattr(PrivilegeSession, "is_root", property(lambda self: False))
    monkeypatch.setattr("mac_tuneup.commands.shutil.which", lambda tool: "/usr/bin/" + tool)
    assert not session.acquire()
    assert not session.acquire()
    assert runner.calls == [["sudo", "-v"]]
    assert session.wrap(["newsyslog"]) == ["sudo", "-n", "newsyslog"]


@pytest.mark.skipif(shutil.which("sh") is None, reason="needs a POSIX shell")
def test_timeout_kills_background_children(tmp_path):
    pidfile = tmp_path / "child.pid"
    with pytest.raises(CommandTimeout):
        run_command(["sh", "-c", f"sleep 30 & echo $! > '{pidfile}'; wait"], timeout=0.5)
    pid = int(pidfile.read_text())
    for _ in range(50):
        if not alive(pid):
            break
        time.sleep(0.05)
    assert not alive(pid)


def test_expired_grant_prompts_again(monkeypatch):
    calls = []
    cached = [True, False]

    def runner(argv, timeout=30.0, interactive=False):
        calls.append(list(argv))
        ok = cached.pop(0) if argv == ["sudo", "-n", "-v"] else True
        return CommandResult(list(argv), 0 if ok else 1)

    monkeypatch.setattr(PrivilegeSession, "is_root", property(lambda self: False))
    monkeypatch.setattr("mac_tuneup.commands.shutil.which", lambda tool: "/usr/bin/" + tool)
    session = PrivilegeSession(runner)
    assert session.acquire()
    assert session.acquire()
    assert session.acquire()
    assert calls == [
        ["sudo", "-v"],
        ["sudo", "-n", "-v"],
        ["sudo", "-n", "-v"],
        ["sudo", "-v"],
    ]
