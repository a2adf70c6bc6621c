"""Tests for threshold parsing, validation and evaluation."""
from __future__ import annotations

import pytest

from loadstage.exceptions import ConfigurationError
from loadstage.metrics import MetricsRegistry, declare_builtin_metrics
from loadstage.models import RunConfig, ThresholdSpec
from loadstage.thresholds import ThresholdEvaluator, parse_expression


def _registry() -> MetricsRegistry:
    registry = MetricsRegistry()
    declare_builtin_metrics(registry)
    return registry


def _evaluator(registry, selector, expression, abort_on_fail=False):
    evaluator = ThresholdEvaluator(
        [ThresholdSpec(selector=selector, expression=expression, abort_on_fail=abort_on_fail)]
    )
    evaluator.validate(registry)
    return evaluator


class TestExpressionParsing:

    @pytest.mark.parametrize(
        "expression, expected",
        [
            ("p(95)<1000", ("p(95)", "<", 1000.0)),
            ("p( 99.9 ) <= 1500", ("p(99.9)", "<=", 1500.0)),
            ("rate<0.05", ("rate", "<", 0.05)),
            ("count>100", ("count", ">", 100.0)),
            ("avg >= 2e2", ("avg", ">=", 200.0)),
            ("max!=0", ("max", "!=", 0.0)),
        ],
    )
    def test_valid_expressions(self, expression, expected):
        assert parse_expression(expression) == expected

    @pytest.mark.parametrize("expression", ["", "p95<1000x", "rate", "<5", "rate => 1"])
    def test_malformed_expressions(self, expression):
        with pytest.raises(ConfigurationError):
            parse_expression(expression)


class TestValidation:
    """Errors surface before any virtual user starts."""

    def test_unknown_metric(self):
        with pytest.raises(ConfigurationError, match="unknown metric"):
            _evaluator(_registry(), "req_latency", "p(95)<500")

    def test_stat_not_available_for_kind(self):
        with pytest.raises(ConfigurationError):
            _evaluator(_registry(), "iterations", "p(95)<500")
        with pytest.raises(ConfigurationError):
            _evaluator(_registry(), "probe_duration", "passes>1")

    def test_tag_filter_declares_submetric(self):
        registry = _registry()
        _evaluator(registry, "probe_duration{scenario:peak,name:home}", "p(95)<500")

        registry.record("probe_duration", "trend", 10, {"scenario": "peak", "name": "home"})

        assert registry.stat(
            "probe_duration", {"scenario": "peak", "name": "home"}, "count"
        ) == 1


class TestEvaluation:

    def test_strict_inequality_at_boundary(self):
        """p(95)<1000 passes at 999 and fails at exactly 1000."""
        passing = _registry()
        failing = _registry()
        for _ in range(50):
            passing.record("probe_duration", "trend", 999)
            failing.record("probe_duration", "trend", 1000)

        ok = _evaluator(passing, "probe_duration", "p(95)<1000").evaluate(passing)
        bad = _evaluator(failing, "probe_duration", "p(95)<1000").evaluate(failing)

        assert ok.passed
        assert ok.results[0].observed == 999
        assert not bad.passed
        assert bad.results[0].observed == 1000
        assert bad.failures[0].selector == "probe_duration"

    def test_no_data_does_not_fail(self):
        registry = _registry()
        report = _evaluator(registry, "probe_duration", "p(95)<1").evaluate(registry)

        assert report.passed
        assert report.results[0].no_data
        assert report.results[0].observed is None

    def test_untouched_counter_is_zero(self):
        registry = _registry()
        report = _evaluator(registry, "iterations", "count>100").evaluate(registry)

        assert not report.passed
        assert report.results[0].observed == 0
        assert not report.results[0].no_data

    def test_rate_threshold(self):
        registry = _registry()
        for value in [1] * 3 + [0] * 97:
            registry.record("probe_failed", "rate", value)

        report = _evaluator(registry, "probe_failed", "rate<0.05").evaluate(registry)

        assert report.passed
        assert report.results[0].observed == pytest.approx(0.03)

    def test_filtered_bucket_evaluated_independently(self):
        registry = _registry()
        evaluator = ThresholdEvaluator(
            RunConfig.model_validate(
                {
                    "scenarios": {"s": {"executor": "constant", "vus": 1, "duration": 1}},
                    "thresholds": {
                        "probe_duration{scenario:fast}": ["max<100"],
                        "probe_duration{scenario:slow}": ["max<100"],
                    },
                }
            ).thresholds
        )
        evaluator.validate(registry)
        registry.record("probe_duration", "trend", 50, {"scenario": "fast"})
        registry.record("probe_duration", "trend", 500, {"scenario": "slow"})

        report = evaluator.evaluate(registry)

        assert [r.passed for r in report.results] == [True, False]
        assert report.results[1].tags == "{scenario:slow}"
        assert not report.passed

    def test_should_abort_only_for_flagged_failures(self):
        registry = _registry()
        registry.record("probe_failed", "rate", 1)

        flagged = _evaluator(registry, "probe_failed", "rate<0.5", abort_on_fail=True)
        unflagged = _evaluator(registry, "probe_failed", "rate<0.5")

        assert flagged.evaluate(registry).should_abort
        assert not unflagged.evaluate(registry).should_abort
