"""Concurrent health checks for dependent services.

Every probe runs on its own worker with its own timeout. A probe that fails
or hangs is reported in its ``ServiceHealth`` entry and never delays or
fails the others.

Status derivation:
- healthy: every probe succeeded
- degraded: only non-core probes failed
- unhealthy: at least one core probe failed
"""

from __future__ import annotations

import logging
import threading
import time
import urllib.error
import urllib.request
from collections.abc import Callable, Iterable
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from datetime import UTC, datetime
from typing import Any, Protocol, runtime_checkable

from lotysis_alerts.models import HealthStatus, ServiceHealth
from lotysis_alerts.store.base import PersistenceError, Store

logger = logging.getLogger(__name__)


class ProbeError(Exception):
    """Raised by a health probe when its service is not healthy."""


@runtime_checkable
class HealthProbe(Protocol):
    """Protocol for health probes.

    ``check()`` returns optional details on success and raises on failure.
    """

    name: str
    core: bool
    timeout: float

    def check(self) -> dict[str, Any] | None:
        ...


class HttpHealthProbe:
    """GET a URL; any non-2xx answer is a failure."""

    def __init__(
        self, name: str, url: str, core: bool = False, timeout: float = 5.0,
    ) -> None:
        self.name = name
        self.url = url
        self.core = core
        self.timeout = timeout

    def check(self) -> dict[str, Any] | None:
        req = urllib.request.Request(self.url, method="GET")
        try:
            with urllib.request.urlopen(req, timeout=self.timeout) as resp:  # noqa: S310
                status = resp.status
        except urllib.error.HTTPError as exc:
            raise ProbeError(f"HTTP {exc.code}") from exc
        except (urllib.error.URLError, OSError) as exc:
            raise ProbeError(str(exc)) from exc
        if not 200 <= status < 300:
            raise ProbeError(f"HTTP {status}")
        return {"status_code": status}


class StoreHealthProbe:
    """Ping the state store."""

    def __init__(
        self, store: Store, name: str = "database", core: bool = True,
        timeout: float = 5.0,
    ) -> None:
        self.name = name
        self.core = core
        self.timeout = timeout
        self._store = store

    def check(self) -> dict[str, Any] | None:
        try:
            self._store.ping()
        except PersistenceError as exc:
            raise ProbeError(str(exc)) from exc
        return None


class CallableHealthProbe:
    """Wrap any callable. A falsy return or an exception is a failure."""

    def __init__(
        self,
        name: str,
        func: Callable[[], Any],
        core: bool = False,
        timeout: float = 5.0,
    ) -> None:
        self.name = name
        self.core = core
        self.timeout = timeout
        self._func = func

    def check(self) -> dict[str, Any] | None:
        result = self._func()
        if result is False:
            raise ProbeError(f"{self.name} reported unhealthy")
        if isinstance(result, dict):
            return result
        return None


def overall_status(results: Iterable[ServiceHealth]) -> HealthStatus:
    """Collapse per-service results into one status."""
    statuses = {r.status for r in results}
    if HealthStatus.UNHEALTHY in statuses:
        return HealthStatus.UNHEALTHY
    if HealthStatus.DEGRADED in statuses:
        return HealthStatus.DEGRADED
    return HealthStatus.HEALTHY


class HealthChecker:
    """Run all probes concurrently and keep the latest result map."""

    def __init__(
        self,
        probes: list[HealthProbe] | None = None,
        _clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._probes: list[HealthProbe] = list(probes or [])
        names = [p.name for p in self._probes]
        if len(names) != len(set(names)):
            raise ValueError(f"Duplicate health probe names: {names}")
        self._clock = _clock or (lambda: datetime.now(tz=UTC))
        self._lock = threading.Lock()
        self._last: dict[str, ServiceHealth] = {}

    @property
    def probes(self) -> list[HealthProbe]:
        return list(self._probes)

    @property
    def last_results(self) -> dict[str, ServiceHealth]:
        with self._lock:
            return dict(self._last)

    def add_probe(self, probe: HealthProbe) -> None:
        if any(p.name == probe.name for p in self._probes):
            raise ValueError(f"Health probe '{probe.name}' already registered")
        self._probes.append(probe)

    def check_health(self) -> dict[str, ServiceHealth]:
        """Probe every service. Never raises for a probe failure."""
        if not self._probes:
            return {}

        pool = ThreadPoolExecutor(
            max_workers=len(self._probes), thread_name_prefix="health",
        )
        try:
            started = time.monotonic()
            futures: list[tuple[HealthProbe, Future[tuple[dict | None, float]]]] = [
                (probe, pool.submit(_timed_check, probe)) for probe in self._probes
            ]
            results: dict[str, ServiceHealth] = {}
            for probe, future in futures:
                # Each probe is bounded by its own deadline, measured from the
                # common start, so a slow sibling does not eat into it.
                remaining = max(0.0, started + probe.timeout - time.monotonic())
                results[probe.name] = self._await(probe, future, remaining)
        finally:
            pool.shutdown(wait=False, cancel_futures=True)

        with self._lock:
            self._last = dict(results)
        return results

    def _await(
        self,
        probe: HealthProbe,
        future: Future[tuple[dict | None, float]],
        remaining: float,
    ) -> ServiceHealth:
        failed_status = HealthStatus.UNHEALTHY if probe.core else HealthStatus.DEGRADED
        try:
            details, elapsed_ms = future.result(timeout=remaining)
        except FutureTimeout:
            logger.warning("Health probe %s timed out", probe.name)
            return ServiceHealth(
                service=probe.name,
                status=failed_status,
                core=probe.core,
                response_time_ms=probe.timeout * 1000,
                last_check=self._clock(),
                error_message=f"timed out after {probe.timeout:g}s",
            )
        except Exception as exc:
            logger.warning("Health probe %s failed: %s", probe.name, exc)
            return ServiceHealth(
                service=probe.name,
                status=failed_status,
                core=probe.core,
                last_check=self._clock(),
                error_message=str(exc) or type(exc).__name__,
            )
        return ServiceHealth(
            service=probe.name,
            status=HealthStatus.HEALTHY,
            core=probe.core,
            response_time_ms=elapsed_ms,
            last_check=self._clock(),
            details=details,
        )


def _timed_check(probe: HealthProbe) -> tuple[dict[str, Any] | None, float]:
    start = time.monotonic()
    details = probe.check()
    return details, (time.monotonic() - start) * 1000
