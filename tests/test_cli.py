import json
from datetime import datetime

from mac_tuneup import cli
from mac_tuneup.system_state import SystemMetrics
from mac_tuneup.updates import UpdateAggregator, UpdateSource
from mac_tuneup.whitelist import WhitelistStore


def make_metrics():
    return SystemMetrics(
        timestamp=datetime(2024, 5, 1, 9, 30),
        memory_used=8 * 1024**3,
        memory_total=16 * 1024**3,
        disk_used=100 * 1024**3,
        disk_total=500 * 1024**3,
        disk_percent=20.0,
        uptime_days=1.25,
        probes={"swap": 1024**3},
    )


def test_list_json(home, monkeypatch, capsys):
    monkeypatch.setattr(cli, "gather_metrics", lambda settings: make_metrics())
    assert cli.main(["list", "--json"]) == cli.EXIT_OK
    payload = json.loads(capsys.readouterr().out)
    keys = [item["action_key"] for item in payload["optimizations"]]
    assert "swap_cleanup" in keys
    assert "developer_cleanup" not in keys


def test_run_unknown_key_is_usage_error(home, capsys):
    assert cli.main(["run", "startup_cache", "defrag"]) == cli.EXIT_USAGE
    assert "unknown action: defrag" in capsys.readouterr().out


def test_run_dry_run(home, capsys):
    assert cli.main(["run", "--dry-run", "--plain", "startup_cache"]) == cli.EXIT_OK
    assert "dry-run: Startup cache rebuild skipped" in capsys.readouterr().out


def test_declined_confirmation_cancels(home, monkeypatch, capsys):
    monkeypatch.setattr(cli, "_confirm", lambda console, prompt: False)
    assert cli.main(["run", "--plain", "swap_cleanup"]) == cli.EXIT_CANCELLED
    assert "cancelled" in capsys.readouterr().out


def test_whitelisted_action_needs_no_confirmation(home, monkeypatch):
    WhitelistStore().set_whitelisted("swap_cleanup", True)

    def refuse(console, prompt):
        raise AssertionError("should not ask")

    monkeypatch.setattr(cli, "_confirm", refuse)
    assert cli.main(["run", "--plain", "swap_cleanup"]) == cli.EXIT_OK


def test_whitelist_edits(home):
    assert cli.main(["whitelist", "--add", "recent_items"]) == cli.EXIT_OK
    assert WhitelistStore().is_whitelisted("recent_items")
    assert cli.main(["whitelist", "--remove", "recent_items"]) == cli.EXIT_OK
    assert not WhitelistStore().is_whitelisted("recent_items")
    assert cli.main(["whitelist", "--add", "bogus"]) == cli.EXIT_USAGE


def test_update_check_exit_codes(home, monkeypatch):
    pending = {UpdateSource.HOMEBREW_FORMULA: lambda: 2}

    def aggregator(prompt=None):
        return UpdateAggregator(probes=pending, updaters={}, read_key=lambda: "n", reset_self_cache=lambda: None)

    monkeypatch.setattr(cli, "UpdateAggregator", aggregator)
    assert cli.main(["update", "--check"]) == cli.EXIT_OK
    pending.clear()
    assert cli.main(["update", "--check"]) == cli.EXIT_CANCELLED


def test_config_init(home):
    assert cli.main(["config", "--init"]) == cli.EXIT_OK
    assert (home / ".config" / "mac-tuneup" / "config.json").is_file()
