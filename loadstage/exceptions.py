"""
Typed exceptions for loadstage.

Provides structured error handling with:
- LoadstageError: Base exception for all loadstage errors
- ConfigurationError: Malformed scenario, stage, threshold or behavior config
- ProbeFailure: Application-level failure reported by a probe
- SchedulingDeficit: Requested load could not be sustained by allocated users
- ForcedTruncation: Iteration cancelled mid-flight at stop time
- LifecycleError: The run's setup or teardown callable failed

ConfigurationError and a failing setup are fatal. The others are recorded
and surfaced in the run summary; they never abort a virtual user's loop.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class LoadstageError(Exception):
    """Base exception for all loadstage errors.

    Attributes:
        message: Human-readable error description
        code: Machine-readable error code for programmatic handling
        details: Additional context as key-value pairs
    """

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.message = message
        self.code = code or self.__class__.__name__
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize exception for logging or the run summary."""
        return {
            "error": self.code,
            "message": self.message,
            "details": self.details,
        }


class ConfigurationError(LoadstageError):
    """Configuration or validation error.

    Raised before any virtual user starts when:
    - A stage has a negative duration or target
    - A scenario is missing executor-specific fields
    - A threshold references an unknown metric or malformed expression
    - A behavior set reference cannot be resolved

    Examples:
        ConfigurationError("unknown metric", details={"metric": "req_latency"})
    """

    pass


class ProbeFailure(LoadstageError):
    """Application-level failure reported by a probe.

    Probes raise this for unexpected status codes, timeouts and similar
    outcomes. The iteration is counted as failed and the user moves on.

    Attributes:
        status: Protocol status code if available
        duration_ms: Time spent before the failure, when the probe measured it
    """

    def __init__(
        self,
        message: str,
        *,
        status: Optional[int] = None,
        duration_ms: Optional[float] = None,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        if status is not None:
            details["status"] = status
        if duration_ms is not None:
            details["duration_ms"] = duration_ms

        self.status = status
        self.duration_ms = duration_ms

        super().__init__(message, code=code, details=details)


class SchedulingDeficit(LoadstageError):
    """Requested concurrency or arrival rate could not be sustained.

    Never raised into user code: the runner records one per occurrence and
    the engine lists them in the final report.

    Attributes:
        scenario: Scenario that ran short
        requested: Users (or iterations) asked for
        granted: Users (or iterations) actually available
        reason: "global_ceiling" or "max_vus"
    """

    def __init__(
        self,
        message: str,
        *,
        scenario: str,
        requested: int,
        granted: int,
        reason: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        details.update(
            {
                "scenario": scenario,
                "requested": requested,
                "granted": granted,
                "reason": reason,
            }
        )

        self.scenario = scenario
        self.requested = requested
        self.granted = granted
        self.reason = reason

        super().__init__(message, code=code, details=details)


class ForcedTruncation(LoadstageError):
    """An iteration was cancelled mid-flight because its grace period ran out.

    Attributes:
        scenario: Scenario owning the user
        vu_id: Virtual user whose iteration was cut short
        grace_seconds: Grace period that expired
    """

    def __init__(
        self,
        message: str,
        *,
        scenario: str,
        vu_id: int,
        grace_seconds: float,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        details.update(
            {"scenario": scenario, "vu_id": vu_id, "grace_seconds": grace_seconds}
        )

        self.scenario = scenario
        self.vu_id = vu_id
        self.grace_seconds = grace_seconds

        super().__init__(message, code=code, details=details)


class LifecycleError(LoadstageError):
    """The run's setup or teardown callable raised.

    A setup failure stops the run before any virtual user starts. A teardown
    failure is listed in the report and marks the run as failed.

    Attributes:
        stage: "setup" or "teardown"
    """

    def __init__(
        self,
        message: str,
        *,
        stage: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        details["stage"] = stage

        self.stage = stage

        super().__init__(message, code=code, details=details)


__all__ = [
    "LoadstageError",
    "ConfigurationError",
    "ProbeFailure",
    "SchedulingDeficit",
    "ForcedTruncation",
    "LifecycleError",
]
