import psutil

from conftest import FakeRunner
from mac_tuneup import system_state
from mac_tuneup.config import Settings
from mac_tuneup.errors import CommandTimeout


def test_memory_probe_failure_yields_zeroes(monkeypatch):
    def unavailable():
        raise psutil.AccessDenied()

    monkeypatch.setattr(system_state.psutil, "virtual_memory", unavailable)
    assert system_state.memory_usage() == (0, 0)


def test_disk_probe_failure_yields_zeroes(tmp_path):
    assert system_state.disk_usage(str(tmp_path / "missing")) == (0, 0, 0.0)


def test_directory_size_of_missing_path_is_zero(tmp_path):
    assert system_state.directory_size(str(tmp_path / "Caches")) == 0


def test_directory_size_sums_nested_files(tmp_path):
    (tmp_path / "a").mkdir()
    (tmp_path / "a" / "one.bin").write_bytes(b"x" * 100)
    (tmp_path / "two.bin").write_bytes(b"x" * 28)
    assert system_state.directory_size(str(tmp_path)) == 128
    assert system_state.total_size([str(tmp_path), str(tmp_path / "nope")]) == 128


def test_swap_size_sums_matching_files(tmp_path):
    (tmp_path / "swapfile0").write_bytes(b"x" * 10)
    (tmp_path / "swapfile1").write_bytes(b"x" * 5)
    (tmp_path / "sleepimage").write_bytes(b"x" * 99)
    assert system_state.swap_size(str(tmp_path / "swapfile*")) == 15


def test_launch_agents_counted_once_across_roots(tmp_path):
    user, system = tmp_path / "user", tmp_path / "system"
    user.mkdir()
    system.mkdir()
    for name in ("com.example.sync.plist", "com.example.helper.plist", ".DS_Store"):
        (user / name).write_text("")
    (system / "com.example.sync.plist").write_text("")
    (system / "com.vendor.updater.plist").write_text("")
    roots = [str(user), str(system), str(tmp_path / "missing")]
    assert system_state.count_launch_agents(roots) == 3


def test_local_snapshots_parsed_and_deduplicated():
    output = (
        "Snapshots for disk /:\n"
        "com.apple.TimeMachine.2024-05-01-101010.local\n"
        "com.apple.TimeMachine.2024-05-02-101010.local\n"
        "com.apple.TimeMachine.2024-05-02-101010.local\n"
        "com.apple.os.update-ABC\n"
    )
    assert system_state.parse_local_snapshots(output) == [
        "com.apple.TimeMachine.2024-05-01-101010.local",
        "com.apple.TimeMachine.2024-05-02-101010.local",
    ]


def test_login_items_parsed_from_osascript(monkeypatch):
    runner = FakeRunner(stdout={"osascript": "Dropbox, Spotify, Dropbox\n"})
    monkeypatch.setattr(system_state, "run_command", runner)
    assert system_state.list_login_items() == ["Dropbox", "Spotify"]


def test_login_items_missing_value_is_empty(monkeypatch):
    monkeypatch.setattr(system_state, "run_command", FakeRunner(stdout={"osascript": "missing value\n"}))
    assert system_state.list_login_items() == []


def test_probe_timeout_is_empty(monkeypatch):
    runner = FakeRunner(raises={"tmutil": CommandTimeout(["tmutil"], 30)})
    monkeypatch.setattr(system_state, "run_command", runner)
    assert system_state.count_local_snapshots() == 0


def test_gather_metrics_on_empty_home(home, monkeypatch):
    monkeypatch.setattr(system_state, "run_command", FakeRunner(failures={"osascript", "tmutil"}))
    monkeypatch.setattr(system_state, "launch_agent_dirs", lambda: [str(home / "Library" / "LaunchAgents")])
    monkeypatch.setattr(system_state, "swap_size", lambda: 0)
    metrics = system_state.gather_metrics(Settings())
    assert set(metrics.probes.values()) == {0}
    assert metrics.probe("not-a-probe") == 0
    assert metrics.memory_total > 0
