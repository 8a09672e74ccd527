import pytest

from conftest import FakeRunner
from mac_tuneup import updates
from mac_tuneup.errors import InvalidTransition
from mac_tuneup.updates import (
    CommandUpdater,
    UpdateAggregator,
    UpdateCounts,
    UpdateSource,
    UpdateState,
)


class Recorder:
    def __init__(self, ok=True, message="updated"):
        self.calls = 0
        self.ok = ok
        self.message = message

    def __call__(self):
        self.calls += 1
        return self.ok, self.message


def make_aggregator(formula=0, cask=0, app_store=0, macos=0, self_update=0, key="y", updaters=None):
    resets = []
    values = {
        UpdateSource.HOMEBREW_FORMULA: formula,
        UpdateSource.HOMEBREW_CASK: cask,
        UpdateSource.APP_STORE: app_store,
        UpdateSource.MACOS_SYSTEM: macos,
        UpdateSource.SELF: self_update,
    }
    updaters = updaters or {source: Recorder() for source in UpdateSource}
    aggregator = UpdateAggregator(
        probes={source: (lambda value=value: value) for source, value in values.items()},
        updaters=updaters,
        read_key=lambda: key,
        reset_self_cache=lambda: resets.append(True),
    )
    return aggregator, updaters, resets


def test_total_is_sum_of_counts_and_flags():
    counts = UpdateCounts(formula=3, cask=2, app_store=1, macos=True, self_update=True)
    assert counts.total == 8
    assert UpdateCounts().total == 0


def test_flags_count_once_whatever_the_probe_reports():
    aggregator, _, _ = make_aggregator(macos=4, self_update=7)
    counts = aggregator.aggregate()
    assert counts.macos and counts.self_update
    assert counts.total == 2


def test_no_updates_stops_after_aggregation():
    aggregator, updaters, _ = make_aggregator()
    report = aggregator.run()
    assert report.state is UpdateState.NO_UPDATES
    assert report.exit_code == 1
    assert all(updater.calls == 0 for updater in updaters.values())


def test_failing_probe_counts_as_zero():
    def broken():
        raise OSError("brew exploded")

    aggregator = UpdateAggregator(
        probes={UpdateSource.HOMEBREW_FORMULA: broken, UpdateSource.APP_STORE: lambda: 2},
        updaters={},
        read_key=lambda: "n",
        reset_self_cache=lambda: None,
    )
    counts = aggregator.aggregate()
    assert counts.formula == 0
    assert counts.total == 2


@pytest.mark.parametrize("key", ["y", "Y", "\r", "\n"])
def test_accept_keys_proceed(key):
    aggregator, updaters, _ = make_aggregator(formula=1, key=key)
    report = aggregator.run()
    assert report.state is UpdateState.REPORTED
    assert updaters[UpdateSource.HOMEBREW_FORMULA].calls == 1


@pytest.mark.parametrize("key", ["n", "q", " ", ""])
def test_any_other_key_cancels_without_updating(key):
    aggregator, updaters, resets = make_aggregator(formula=3, cask=2, key=key)
    report = aggregator.run()
    assert report.state is UpdateState.CANCELLED
    assert report.counts.total == 5
    assert report.exit_code == 1
    assert report.outcomes == ()
    assert all(updater.calls == 0 for updater in updaters.values())
    assert resets == []


def test_interrupted_read_cancels():
    aggregator, _, _ = make_aggregator(formula=1)

    def interrupted():
        raise KeyboardInterrupt

    aggregator.read_key = interrupted
    assert aggregator.run().state is UpdateState.CANCELLED


def test_one_failing_source_does_not_stop_the_others():
    updaters = {
        UpdateSource.HOMEBREW_FORMULA: Recorder(),
        UpdateSource.HOMEBREW_CASK: Recorder(ok=False, message="exit 1: download failed"),
    }
    aggregator, _, _ = make_aggregator(formula=3, cask=2, updaters=updaters)
    report = aggregator.run()
    assert report.state is UpdateState.REPORTED
    assert report.exit_code == 0
    assert [(outcome.source, outcome.ok) for outcome in report.outcomes] == [
        (UpdateSource.HOMEBREW_FORMULA, True),
        (UpdateSource.HOMEBREW_CASK, False),
    ]
    assert report.outcomes[1].message == "exit 1: download failed"


def test_only_sources_with_updates_are_run():
    aggregator, updaters, _ = make_aggregator(app_store=2)
    report = aggregator.run()
    assert [outcome.source for outcome in report.outcomes] == [UpdateSource.APP_STORE]
    assert updaters[UpdateSource.HOMEBREW_FORMULA].calls == 0


def test_self_update_resets_cached_check():
    aggregator, _, resets = make_aggregator(self_update=1)
    aggregator.run()
    assert resets == [True]


def test_updater_exception_becomes_failed_outcome():
    def explode():
        raise RuntimeError("mas crashed")

    aggregator, _, _ = make_aggregator(app_store=1, updaters={UpdateSource.APP_STORE: explode})
    outcome = aggregator.run().outcomes[0]
    assert not outcome.ok
    assert outcome.message == "mas crashed"


def test_states_cannot_be_skipped():
    aggregator, _, _ = make_aggregator(formula=1)
    with pytest.raises(InvalidTransition):
        aggregator.perform(UpdateCounts(formula=1))
    aggregator.run()
    with pytest.raises(InvalidTransition):
        aggregator.aggregate()


def test_macos_probe_looks_for_labels():
    listing = "Software Update found the following new or updated software:\n* Label: macOS 15.1\n"
    runner = FakeRunner(stdout={"softwareupdate": listing})
    assert updates.macos_update_available(runner) == 1
    assert updates.macos_update_available(FakeRunner(stdout={"softwareupdate": "No new software available.\n"})) == 0


def test_self_update_flag_follows_cached_message(home):
    assert updates.self_update_available() == 0
    message = home / ".cache" / "mac-tuneup" / "update_message"
    message.parent.mkdir(parents=True)
    message.write_text("mac-tuneup 0.2.0 is available\n")
    assert updates.self_update_available() == 1
    updates.clear_self_update_cache()
    assert not message.exists()


def test_command_updater_reports_failure_reason():
    runner = FakeRunner(failures={"brew"})
    ok, message = CommandUpdater(["brew", "upgrade", "--cask"], runner=runner)()
    assert not ok
    assert message == "exit 1: boom"
    assert runner.calls == [["brew", "upgrade", "--cask"]]
