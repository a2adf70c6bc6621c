"""
loadstage - Staged-concurrency load generation with thresholds.

Module-level API (recommended):
    import loadstage

    config = loadstage.load_config("runs/checkout.json")
    report = loadstage.run(config)
    print(loadstage.format_summary(report))

Behaviors supplied in code:
    from loadstage import Behavior, HttpProbe, LoadTest

    test = LoadTest(
        config,
        behavior_sets={
            "default": [
                Behavior("browse", 3, HttpProbe("GET", "/products")),
                Behavior("buy", 1, HttpProbe("POST", "/orders", expected_status=201)),
            ]
        },
    )
    report = await test.run()

Advanced usage via submodules:
    from loadstage.metrics import MetricsRegistry, MetricKind
    from loadstage.scheduler import Scheduler
    from loadstage.thresholds import ThresholdEvaluator
"""

# =============================================================================
# Core API - What most users need
# =============================================================================
from loadstage.engine import LoadTest, RunReport, ScenarioSummary, run  # noqa: F401
from loadstage.config import (  # noqa: F401
    Settings,
    get_settings,
    load_config,
    parse_config,
    reset_settings,
    resolve_probe,
)
from loadstage.report import format_summary, prometheus_format  # noqa: F401

# =============================================================================
# Configuration models
# =============================================================================
from loadstage.models import (  # noqa: F401
    BehaviorRef,
    ExecutorKind,
    RunConfig,
    ScenarioSpec,
    Stage,
    ThinkTime,
    ThresholdSpec,
    parse_duration,
)

# =============================================================================
# Behaviors and probes
# =============================================================================
from loadstage.dispatcher import Behavior, BehaviorDispatcher  # noqa: F401
from loadstage.probe import (  # noqa: F401
    HttpProbe,
    IterationContext,
    LifecycleContext,
    Probe,
    ProbeResult,
)

# =============================================================================
# Typed exceptions - For structured error handling
# =============================================================================
from loadstage.exceptions import (
    ConfigurationError,
    ForcedTruncation,
    LoadstageError,
    LifecycleError,
    ProbeFailure,
    SchedulingDeficit,
)

# =============================================================================
# Building blocks - accessible but not in __all__
# =============================================================================
from loadstage.limiter import CeilingStats, UserCeiling  # noqa: F401
from loadstage.metrics import MetricKind, MetricsRegistry  # noqa: F401
from loadstage.runner import ScenarioRunner, VirtualUser, VUState  # noqa: F401
from loadstage.scheduler import Scheduler  # noqa: F401
from loadstage.thresholds import (  # noqa: F401
    ThresholdEvaluator,
    ThresholdReport,
    ThresholdResult,
)

__version__ = "0.1.0"

# =============================================================================
# Public API - Only these appear in `from loadstage import *`
# =============================================================================
__all__ = [
    # Module-level API
    "run",
    "load_config",
    "LoadTest",
    "RunReport",
    "format_summary",
    "prometheus_format",
    # Configuration
    "RunConfig",
    "ScenarioSpec",
    "Stage",
    "ThresholdSpec",
    # Behaviors
    "Behavior",
    "HttpProbe",
    "IterationContext",
    "LifecycleContext",
    "Probe",
    "ProbeResult",
    # Typed exceptions
    "LoadstageError",
    "ConfigurationError",
    "ProbeFailure",
    "SchedulingDeficit",
    "ForcedTruncation",
    "LifecycleError",
]
