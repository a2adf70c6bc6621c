"""
End-to-end tests for LoadTest: multiple scenarios, the global ceiling,
checkpoints, timeouts and the rendered reports.
"""
from __future__ import annotations

import asyncio
import json
import time

import pytest

import loadstage
from loadstage.dispatcher import Behavior
from loadstage.engine import LoadTest
from loadstage.exceptions import ConfigurationError, LifecycleError
from loadstage.models import RunConfig
from loadstage.report import format_summary, prometheus_format
from tests.probes.fake_probes import (
    SESSION,
    RecordingTeardown,
    SleepyProbe,
    failing_probe,
    failing_setup,
    failing_teardown,
    grouped_checkout,
    make_session,
    needs_session,
    ok_probe,
)


def _config(**overrides) -> RunConfig:
    data = {
        "scenarios": {
            "s": {"executor": "constant", "vus": 2, "duration": 0.2},
        },
        "tick_interval": 0.01,
        "seed": 42,
    }
    data.update(overrides)
    return RunConfig.model_validate(data)


# =============================================================================
# Construction-time validation
# =============================================================================

class TestValidation:
    """ConfigurationError is raised before any virtual user starts."""

    def test_unknown_behavior_set(self):
        config = _config(
            scenarios={"s": {"executor": "constant", "vus": 1, "duration": 1, "behaviors": "nope"}}
        )
        with pytest.raises(ConfigurationError, match="unknown behavior set"):
            LoadTest(config, behavior_sets={"default": [Behavior("a", 1, ok_probe)]})

    def test_unknown_threshold_metric(self):
        config = _config(thresholds={"http_req_duration": ["p(95)<500"]})
        with pytest.raises(ConfigurationError):
            LoadTest(config, behavior_sets={"default": [Behavior("a", 1, ok_probe)]})

    def test_custom_metric_enables_threshold(self):
        config = _config(
            metrics={"cart_value": "trend"},
            thresholds={"cart_value": ["avg>0"]},
        )
        LoadTest(config, behavior_sets={"default": [Behavior("a", 1, ok_probe)]})

    def test_unresolvable_probe_reference(self):
        config = _config(
            behavior_sets={"default": [{"name": "a", "probe": "tests.probes.fake_probes:missing"}]}
        )
        with pytest.raises(ConfigurationError, match="not found"):
            LoadTest(config)

    def test_probe_reference_resolved_from_mapping_first(self):
        probe = SleepyProbe()
        config = _config(
            behavior_sets={"default": [{"name": "a", "probe": "in.memory:probe"}]}
        )
        test = LoadTest(config, probes={"in.memory:probe": probe})

        assert test.runners[0].dispatcher.behaviors[0].probe is probe


# =============================================================================
# Runs
# =============================================================================

class TestRun:

    @pytest.mark.asyncio
    async def test_passing_run_report(self):
        config = _config(
            tags={"env": "test"},
            thresholds={
                "iterations": ["count>0"],
                "probe_duration{scenario:s}": ["p(95)<1000"],
                "probe_failed": ["rate<0.01"],
            },
        )
        report = await LoadTest(
            config, behavior_sets={"default": [Behavior("a", 1, ok_probe)]}
        ).run()

        assert report.passed
        assert not report.aborted
        assert not report.timed_out
        assert report.scenarios["s"].iterations > 0
        assert report.metrics["iterations"]["buckets"][""]["count"] == report.scenarios["s"].iterations
        assert "{scenario:s}" in report.metrics["probe_duration"]["buckets"]
        assert report.tags == {"env": "test"}

        log = report.to_log_dict()
        assert log["type"] == "loadstage.run_report.v1"
        json.dumps(log)

    @pytest.mark.asyncio
    async def test_failing_threshold(self):
        config = _config(thresholds={"probe_failed": ["rate<0.1"]})
        report = await LoadTest(
            config, behavior_sets={"default": [Behavior("a", 1, failing_probe)]}
        ).run()

        assert not report.passed
        assert report.failed_thresholds[0].selector == "probe_failed"
        assert report.failed_thresholds[0].observed == 1.0

    @pytest.mark.asyncio
    async def test_scenarios_isolated_and_offset(self):
        probe = SleepyProbe(0.01)
        config = _config(
            scenarios={
                "early": {"executor": "constant", "vus": 1, "duration": 0.2, "tags": {"team": "a"}},
                "late": {
                    "executor": "constant",
                    "vus": 2,
                    "duration": 0.1,
                    "start_time": 0.2,
                    "tags": {"team": "b"},
                },
            },
        )
        test = LoadTest(config, behavior_sets={"default": [Behavior("a", 1, probe)]})
        started = time.monotonic()
        report = await test.run()

        assert probe.first_call("late") - started >= 0.2
        assert {name for name, _, _, _ in probe.calls} == {"early", "late"}
        iterations = report.metrics["iterations"]["buckets"]
        assert iterations["{scenario:early}"]["count"] + iterations["{scenario:late}"]["count"] == (
            iterations[""]["count"]
        )
        assert report.scenarios["late"].peak_users == 2

    @pytest.mark.asyncio
    async def test_scenario_windows_do_not_overlap(self):
        probe = SleepyProbe(0.005)
        config = _config(
            scenarios={
                "early": {"executor": "constant", "vus": 2, "duration": 0.2},
                "late": {"executor": "constant", "vus": 2, "duration": 0.1, "start_time": 0.25},
            },
        )
        await LoadTest(config, behavior_sets={"default": [Behavior("a", 1, probe)]}).run()

        early = [at for name, *_, at in probe.calls if name == "early"]
        late = [at for name, *_, at in probe.calls if name == "late"]
        assert early and late
        assert max(early) < min(late)
        assert {vu for name, vu, _, _ in probe.calls if name == "late"} == {1, 2}

    @pytest.mark.asyncio
    async def test_user_gauges_carry_scenario_tags(self):
        config = _config(
            tags={"env": "test"},
            track_tags=["scenario", "team"],
            scenarios={
                "a": {"executor": "constant", "vus": 2, "duration": 0.15, "tags": {"team": "red"}},
                "b": {"executor": "constant", "vus": 1, "duration": 0.15, "tags": {"team": "blue"}},
            },
        )
        report = await LoadTest(
            config, behavior_sets={"default": [Behavior("x", 1, SleepyProbe(0.005))]}
        ).run()

        vus = report.metrics["vus"]["buckets"]
        assert vus["{team:red}"]["max"] == 2
        assert vus["{team:blue}"]["max"] == 1
        assert vus["{scenario:a}"]["max"] == 2
        assert report.metrics["vus_max"]["buckets"]["{team:red}"]["max"] == 2

    @pytest.mark.asyncio
    async def test_scenario_error_stops_run_after_shutdown(self):
        config = _config(
            scenarios={
                "crashing": {"executor": "constant", "vus": 1, "duration": "1h"},
                "healthy": {"executor": "constant", "vus": 2, "duration": "1h"},
            },
        )
        probe = SleepyProbe(0.01)
        test = LoadTest(config, behavior_sets={"default": [Behavior("a", 1, probe)]})

        async def crash(stop, data=None):
            await asyncio.sleep(0.05)
            raise RuntimeError("supervisor crashed")

        test.runners[0].run = crash

        with pytest.raises(RuntimeError, match="supervisor crashed"):
            await asyncio.wait_for(test.run(), timeout=3.0)

        assert test.runners[1].stats.iterations > 0
        assert test.runners[1].allocated_users == 0
        assert test.ceiling.active == 0
        assert probe.active == 0

    @pytest.mark.asyncio
    async def test_global_ceiling_across_scenarios(self):
        probe = SleepyProbe(0.02)
        config = _config(
            max_vus=3,
            scenarios={
                "a": {"executor": "constant", "vus": 3, "duration": 0.2},
                "b": {"executor": "constant", "vus": 3, "duration": 0.2},
            },
        )
        test = LoadTest(config, behavior_sets={"default": [Behavior("x", 1, probe)]})
        report = await test.run()

        assert probe.peak <= 3
        assert test.ceiling.stats().peak <= 3
        assert test.ceiling.active == 0
        assert report.deficits
        assert report.metrics["vus"]["buckets"][""]["max"] <= 3

    @pytest.mark.asyncio
    async def test_timeout_stops_all_scenarios(self):
        config = _config(
            timeout=0.2,
            scenarios={"long": {"executor": "constant", "vus": 1, "duration": "1h"}},
        )
        started = time.monotonic()
        report = await LoadTest(
            config, behavior_sets={"default": [Behavior("a", 1, SleepyProbe(0.01))]}
        ).run()

        assert time.monotonic() - started < 3.0
        assert report.timed_out
        assert report.scenarios["long"].iterations > 0

    @pytest.mark.asyncio
    async def test_abort_on_fail_checkpoint(self):
        config = _config(
            threshold_check_interval=0.05,
            scenarios={"long": {"executor": "constant", "vus": 1, "duration": "1h"}},
            thresholds={"probe_failed": [{"threshold": "rate<0.5", "abort_on_fail": True}]},
        )
        started = time.monotonic()
        report = await LoadTest(
            config, behavior_sets={"default": [Behavior("a", 1, failing_probe)]}
        ).run()

        assert time.monotonic() - started < 3.0
        assert report.aborted
        assert not report.passed

    def test_sync_run_helper(self):
        report = loadstage.run(
            _config(), behavior_sets={"default": [Behavior("a", 1, ok_probe)]}
        )
        assert report.passed
        assert report.scenarios["s"].iterations > 0


# =============================================================================
# Setup and teardown
# =============================================================================

class TestLifecycle:

    @pytest.mark.asyncio
    async def test_setup_data_shared_with_iterations_and_teardown(self):
        teardown = RecordingTeardown()
        config = _config(thresholds={"failed_iterations": ["count==0"]})
        test = LoadTest(
            config,
            behavior_sets={"default": [Behavior("a", 1, needs_session)]},
            setup=make_session,
            teardown=teardown,
        )
        report = await test.run()

        assert report.passed
        assert report.errors == []
        assert report.scenarios["s"].iterations > 0
        assert report.scenarios["s"].failed_iterations == 0
        assert teardown.received == [SESSION]
        assert report.metrics["sessions_created"]["buckets"][""]["count"] == 1

    @pytest.mark.asyncio
    async def test_setup_and_teardown_from_config_references(self):
        config = _config(
            setup="tests.probes.fake_probes:make_session",
            teardown="tests.probes.fake_probes:failing_teardown",
        )
        report = await LoadTest(
            config, behavior_sets={"default": [Behavior("a", 1, needs_session)]}
        ).run()

        assert report.scenarios["s"].failed_iterations == 0
        assert len(report.errors) == 1

    def test_unknown_setup_reference(self):
        config = _config(setup="tests.probes.fake_probes:missing")
        with pytest.raises(ConfigurationError, match="setup 'tests.probes.fake_probes:missing' not found"):
            LoadTest(config, behavior_sets={"default": [Behavior("a", 1, ok_probe)]})

    @pytest.mark.asyncio
    async def test_failing_setup_starts_no_users(self):
        probe = SleepyProbe()
        teardown = RecordingTeardown()
        test = LoadTest(
            _config(),
            behavior_sets={"default": [Behavior("a", 1, probe)]},
            setup=failing_setup,
            teardown=teardown,
        )

        with pytest.raises(LifecycleError, match="auth server down") as excinfo:
            await test.run()

        assert excinfo.value.stage == "setup"
        assert isinstance(excinfo.value.__cause__, RuntimeError)
        assert probe.started == 0
        assert test.ceiling.stats().peak == 0
        assert teardown.received == []

    @pytest.mark.asyncio
    async def test_failing_teardown_fails_run(self):
        config = _config(thresholds={"iterations": ["count>0"]})
        report = await LoadTest(
            config,
            behavior_sets={"default": [Behavior("a", 1, ok_probe)]},
            teardown=failing_teardown,
        ).run()

        assert report.thresholds[0].passed
        assert not report.passed
        assert report.errors[0]["details"]["stage"] == "teardown"
        assert "cleanup failed" in report.errors[0]["message"]
        assert "teardown failed: RuntimeError: cleanup failed" in format_summary(report)

    @pytest.mark.asyncio
    async def test_group_threshold(self):
        config = _config(thresholds={"group_duration{group:::checkout}": ["count>0"]})
        report = await LoadTest(
            config, behavior_sets={"default": [Behavior("a", 1, grouped_checkout)]}
        ).run()

        assert report.passed
        groups = report.metrics["group_duration"]["buckets"]
        assert groups["{group:::checkout}"]["count"] == report.scenarios["s"].iterations
        assert report.thresholds[0].observed == report.scenarios["s"].iterations


# =============================================================================
# Rendering
# =============================================================================

class TestReports:

    def _report(self):
        config = _config(
            thresholds={"iterations": ["count>0"], "probe_duration": ["p(95)<0.5"]}
        )
        return asyncio.run(
            LoadTest(config, behavior_sets={"default": [Behavior("a", 1, ok_probe)]}).run()
        )

    def test_format_summary(self):
        text = format_summary(self._report())

        assert "RUN SUMMARY" in text
        assert "Status: FAILED" in text
        assert "✓ iterations count>0" in text
        assert "✗ probe_duration p(95)<0.5" in text
        assert "{scenario:s}" in text

    def test_prometheus_format(self):
        text = prometheus_format(self._report())

        assert "# TYPE loadstage_iterations_total counter" in text
        assert 'loadstage_iterations_total{scenario="s"}' in text
        assert "# TYPE loadstage_probe_duration summary" in text
        assert 'loadstage_probe_duration{quantile="0.95"} 1.0' in text
        assert "loadstage_run_passed 0" in text
