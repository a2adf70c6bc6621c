"""
Run file loading, environment settings and probe resolution.

Usage:
    from loadstage.config import get_settings, load_config

    config = load_config("runs/checkout.json")
    settings = get_settings()
    print(settings.max_vus, settings.log_level)
"""

from __future__ import annotations

import importlib
import json
import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Callable, Dict, Mapping, Optional, Union

from pydantic import ValidationError

from loadstage.exceptions import ConfigurationError
from loadstage.models import RunConfig


class Settings:
    """Process-wide defaults loaded from environment variables."""

    def __init__(self) -> None:
        # Global ceiling when the run file sets none
        max_vus = os.getenv("LOADSTAGE_MAX_VUS")
        self.max_vus: Optional[int] = int(max_vus) if max_vus else None

        # Scheduler resolution in seconds
        self.tick_interval: float = float(os.getenv("LOADSTAGE_TICK_INTERVAL", "0.1"))

        # Seed for behavior selection and think-time jitter
        seed = os.getenv("LOADSTAGE_SEED")
        self.seed: Optional[int] = int(seed) if seed else None

        self.log_level: str = os.getenv("LOADSTAGE_LOG_LEVEL", "INFO").upper()


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


def reset_settings() -> None:
    """Clear settings cache. For testing only."""
    get_settings.cache_clear()


def _describe(exc: ValidationError) -> str:
    parts = []
    for error in exc.errors():
        location = ".".join(str(item) for item in error.get("loc", ()))
        message = error.get("msg", "")
        parts.append(f"{location}: {message}" if location else message)
    return "; ".join(parts)


def parse_config(
    data: Mapping[str, Any], settings: Optional[Settings] = None
) -> RunConfig:
    """
    Validate a run description, filling unset fields from settings.

    Raises:
        ConfigurationError: If the description does not validate.
    """
    settings = settings or get_settings()
    payload: Dict[str, Any] = dict(data)
    if payload.get("max_vus") is None and settings.max_vus is not None:
        payload["max_vus"] = settings.max_vus
    if payload.get("seed") is None and settings.seed is not None:
        payload["seed"] = settings.seed
    if "tick_interval" not in payload:
        payload["tick_interval"] = settings.tick_interval
    try:
        return RunConfig.model_validate(payload)
    except ValidationError as exc:
        raise ConfigurationError(
            f"invalid run configuration: {_describe(exc)}",
            details={
                "errors": exc.errors(
                    include_url=False, include_context=False, include_input=False
                )
            },
        ) from exc


def read_run_file(path: Union[str, Path]) -> Dict[str, Any]:
    """Read a JSON run file without validating it."""
    path = Path(path)
    try:
        raw = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigurationError(
            f"cannot read run file {path}: {exc.strerror}",
            details={"path": str(path)},
        ) from exc
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ConfigurationError(
            f"run file {path} is not valid JSON: {exc.msg} (line {exc.lineno})",
            details={"path": str(path)},
        ) from exc
    if not isinstance(data, dict):
        raise ConfigurationError(
            f"run file {path} must contain a JSON object", details={"path": str(path)}
        )
    return data


def load_config(
    path: Union[str, Path], settings: Optional[Settings] = None
) -> RunConfig:
    """Read a JSON run file and validate it into a RunConfig."""
    return parse_config(read_run_file(path), settings)


def resolve_probe(reference: str, kind: str = "probe") -> Callable[..., Any]:
    """
    Import a probe (or a setup/teardown callable, named by ``kind``) from
    ``package.module:attribute``.

    Dotted attributes are followed (``module:Class.method``).

    Raises:
        ConfigurationError: If the module or attribute cannot be found, or the
            target is not callable.
    """
    module_name, sep, attr_path = reference.partition(":")
    if not sep or not module_name or not attr_path:
        raise ConfigurationError(
            f"{kind} reference must look like 'module:attribute', got {reference!r}",
            details={kind: reference},
        )
    try:
        target: Any = importlib.import_module(module_name)
    except ImportError as exc:
        raise ConfigurationError(
            f"cannot import {kind} module {module_name!r}: {exc}",
            details={kind: reference},
        ) from exc
    for attr in attr_path.split("."):
        try:
            target = getattr(target, attr)
        except AttributeError:
            raise ConfigurationError(
                f"{kind} {reference!r} not found",
                details={kind: reference},
            ) from None
    if not callable(target):
        raise ConfigurationError(
            f"{kind} {reference!r} is not callable", details={kind: reference}
        )
    return target
