"""
Probe interface: the call a behavior makes against the system under test.

The core never talks to the network itself. A probe receives an
IterationContext and returns one ProbeResult (or a batch of them, one per
request). Probes may be plain functions or coroutines; the dispatcher runs
sync probes in a worker thread.

Usage:
    from loadstage.probe import HttpProbe, IterationContext, ProbeResult

    home = HttpProbe("GET", "/", name="home")

    def checkout(ctx: IterationContext) -> ProbeResult:
        ...
        return ProbeResult(ok=True, duration_ms=42.0, status=200)
"""

from __future__ import annotations

import random
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import (
    Any,
    Awaitable,
    Dict,
    Iterable,
    Iterator,
    List,
    Mapping,
    Optional,
    Protocol,
    Sequence,
    Union,
    runtime_checkable,
)

import httpx

from loadstage.exceptions import ProbeFailure
from loadstage.metrics.buckets import MetricKind
from loadstage.metrics.builtin import GROUP_DURATION
from loadstage.metrics.registry import Sample, ScopedRecorder


@dataclass
class ProbeResult:
    """
    Outcome of one request made by a probe.

    Attributes:
        ok: Whether the request met the probe's expectations.
        duration_ms: Request latency in milliseconds.
        status: Protocol status code, when there is one.
        tags: Call-site tags for every sample derived from this result.
        checks: Named boolean assertions (recorded in the ``checks`` rate).
        error: Short description of what went wrong.
    """

    ok: bool = True
    duration_ms: float = 0.0
    status: Optional[int] = None
    tags: Dict[str, str] = field(default_factory=dict)
    checks: Dict[str, bool] = field(default_factory=dict)
    error: Optional[str] = None


GROUP_SEPARATOR = "::"


@dataclass
class IterationContext:
    """
    Everything a probe may know about the iteration it runs in.

    ``env`` is opaque to the core: probes read their own variables from it
    (base URLs, credentials, feature switches). ``data`` is whatever the
    run's setup callable returned, shared read-only by every user.
    """

    scenario: str
    vu_id: int
    iteration: int
    behavior: str
    env: Mapping[str, str]
    rng: random.Random
    recorder: ScopedRecorder = field(repr=False)
    data: Any = None
    _groups: List[str] = field(default_factory=list, repr=False)

    @property
    def group_path(self) -> str:
        """Current group path such as ``::checkout::payment``; "" outside groups."""
        return "".join(GROUP_SEPARATOR + name for name in self._groups)

    def group_tags(self) -> Dict[str, str]:
        path = self.group_path
        return {"group": path} if path else {}

    @contextmanager
    def group(self, name: str) -> Iterator["IterationContext"]:
        """
        Tag everything recorded inside the block with the nested group path.

        On exit the block's wall time is recorded in ``group_duration``.

        Example:
            with ctx.group("checkout"):
                with ctx.group("payment"):
                    ctx.record("cart_value", "trend", 42.0)  # group=::checkout::payment
        """
        if not name or GROUP_SEPARATOR in name:
            raise ValueError(f"invalid group name: {name!r}")
        self._groups.append(name)
        path = self.group_path
        started = time.perf_counter()
        try:
            yield self
        finally:
            self._groups.pop()
            self.recorder.record(
                GROUP_DURATION,
                MetricKind.TREND,
                (time.perf_counter() - started) * 1000,
                {"group": path},
            )

    def record(
        self,
        name: str,
        kind: Union[MetricKind, str],
        value: float,
        tags: Optional[Mapping[str, Any]] = None,
    ) -> Sample:
        """Record a custom metric with this iteration's scenario and group tags applied."""
        return self.recorder.record(name, kind, value, {**self.group_tags(), **(tags or {})})


@dataclass
class LifecycleContext:
    """
    Passed to the run's setup and teardown callables.

    Samples recorded here carry ``group=::setup`` or ``group=::teardown``.
    ``data`` is None during setup and holds setup's return value during
    teardown.
    """

    stage: str
    env: Mapping[str, str]
    recorder: ScopedRecorder = field(repr=False)
    data: Any = None

    @property
    def group_path(self) -> str:
        return GROUP_SEPARATOR + self.stage

    def group_tags(self) -> Dict[str, str]:
        return {"group": self.group_path}

    def record(
        self,
        name: str,
        kind: Union[MetricKind, str],
        value: float,
        tags: Optional[Mapping[str, Any]] = None,
    ) -> Sample:
        return self.recorder.record(name, kind, value, {**self.group_tags(), **(tags or {})})


ProbeOutput = Union[ProbeResult, Sequence[ProbeResult], None]


@runtime_checkable
class Probe(Protocol):
    """A callable exercising the target once per iteration (sync or async)."""

    def __call__(
        self, ctx: IterationContext
    ) -> Union[ProbeOutput, Awaitable[ProbeOutput]]:
        ...


class HttpProbe:
    """
    Reference probe issuing one HTTP request per call via httpx.AsyncClient.

    The base URL comes from ``ctx.env[base_url_var]``. A status outside
    ``expected_status`` yields a failing result; transport errors raise
    ProbeFailure. Results made inside ``ctx.group(...)`` carry its group tag.
    Also usable from setup/teardown with a LifecycleContext.

    Example:
        probe = HttpProbe("POST", "/api/orders", expected_status=(200, 201),
                          name="create_order", json={"sku": "A-1"})
    """

    def __init__(
        self,
        method: str = "GET",
        path: str = "/",
        *,
        expected_status: Union[int, Iterable[int]] = 200,
        name: Optional[str] = None,
        base_url_var: str = "TARGET_URL",
        timeout: float = 30.0,
        headers: Optional[Mapping[str, str]] = None,
        json: Any = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.method = method.upper()
        self.path = path
        if isinstance(expected_status, int):
            expected_status = (expected_status,)
        self.expected_status = frozenset(expected_status)
        self.name = name or f"{self.method} {path}"
        self.base_url_var = base_url_var
        self._timeout = timeout
        self._headers = dict(headers or {})
        self._json = json
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    def _get_client(self) -> httpx.AsyncClient:
        # One client per probe so every virtual user shares its connection pool.
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=self._timeout, transport=self._transport
            )
        return self._client

    def url_for(self, env: Mapping[str, str]) -> str:
        base = env.get(self.base_url_var)
        if not base:
            raise ProbeFailure(
                f"{self.base_url_var} is not set",
                details={"probe": self.name},
            )
        return base.rstrip("/") + "/" + self.path.lstrip("/")

    async def __call__(self, ctx: IterationContext) -> ProbeResult:
        url = self.url_for(ctx.env)
        started = time.perf_counter()
        try:
            response = await self._get_client().request(
                self.method,
                url,
                headers=self._headers or None,
                json=self._json,
            )
        except httpx.HTTPError as exc:
            raise ProbeFailure(
                f"{self.name}: {exc.__class__.__name__}: {exc}",
                duration_ms=(time.perf_counter() - started) * 1000,
                details={"probe": self.name},
            ) from exc
        duration_ms = (time.perf_counter() - started) * 1000

        status = response.status_code
        ok = status in self.expected_status
        return ProbeResult(
            ok=ok,
            duration_ms=duration_ms,
            status=status,
            tags={
                "name": self.name,
                "method": self.method,
                "status": str(status),
                **ctx.group_tags(),
            },
            checks={"status is expected": ok},
            error=None if ok else f"unexpected status {status}",
        )

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
