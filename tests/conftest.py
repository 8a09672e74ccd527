import pytest

from mac_tuneup.commands import CommandResult, PrivilegeSession


class FakeRunner:
    """Stands in for ``run_command``; answers by program name."""

    def __init__(self, failures=(), raises=None, stdout=None):
        self.failures = set(failures)
        self.raises = dict(raises or {})
        self.stdout = dict(stdout or {})
        self.calls = []

    def __call__(self, argv, timeout=30.0, interactive=False):
        argv = list(argv)
        self.calls.append(argv)
        program = argv[0]
        if program in self.raises:
            raise self.raises[program]
        code = 1 if program in self.failures else 0
        return CommandResult(argv, code, self.stdout.get(program, ""), "boom" if code else "")

    def programs(self):
        return [argv[0] for argv in self.calls]


class GrantedSession(PrivilegeSession):
    def acquire(self):
        return True

    def wrap(self, argv):
        return list(argv)


class DeniedSession(PrivilegeSession):
    def acquire(self):
        return False


@pytest.fixture(autouse=True)
def home(tmp_path, monkeypatch):
    monkeypatch.setenv("HOME", str(tmp_path))
    monkeypatch.delenv("XDG_CONFIG_HOME", raising=False)
    monkeypatch.delenv("XDG_CACHE_HOME", raising=False)
    for name in ("MAIL_DOWNLOADS_MIN_KB", "LOG_AGE_DAYS", "MAIL_AGE_DAYS", "SAVED_STATE_AGE_DAYS", "PROBE_TIMEOUT"):
        monkeypatch.delenv("MAC_TUNEUP_" + name, raising=False)
    return tmp_path
