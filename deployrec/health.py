from __future__ import annotations

import logging
import time
from dataclasses import replace
from typing import Callable, Sequence

import httpx
from docker.errors import DockerException

from .errors import EndpointUnhealthy, HealthError, IncompleteRollout, UnhealthyServices
from .models import RUNNING, STARTING, UNHEALTHY, DeploymentContext, ObservedService, ServiceSpec

logger = logging.getLogger(__name__)


def check_health(url: str, timeout_s: float = 5.0) -> tuple[bool, str, float | None]:
    """Call an HTTP health endpoint.

    Any 2xx counts as healthy; a JSON body with a ``status`` field must say
    ``healthy`` or ``ok``.
    Returns (is_healthy, message, latency_ms).
    """
    start = time.time()
    try:
        with httpx.Client(timeout=timeout_s, follow_redirects=True) as client:
            resp = client.get(url)
        latency_ms = round((time.time() - start) * 1000.0, 2)
        if not resp.is_success:
            return False, f"HTTP {resp.status_code}", latency_ms
        try:
            data = resp.json()
        except ValueError:
            return True, "Healthy", latency_ms
        if isinstance(data, dict) and "status" in data and str(data["status"]).lower() not in {"healthy", "ok"}:
            return False, f"Unhealthy payload: {data!r}", latency_ms
        return True, "Healthy", latency_ms
    except (httpx.ConnectError, httpx.TimeoutException):
        latency_ms = round((time.time() - start) * 1000.0, 2)
        return False, "No response", latency_ms
    except httpx.HTTPError as e:
        latency_ms = round((time.time() - start) * 1000.0, 2)
        return False, f"Error: {type(e).__name__}: {e}", latency_ms


class _StillStarting(HealthError):
    def __init__(self, services: Sequence[ObservedService]):
        super().__init__("Containers still starting: " + ", ".join(s.name for s in services), services)


class HealthVerifier:
    """Checks that the freshly started stack matches the expected service set.

    Polls with exponential backoff until the stack looks good or
    ``timeout_s`` runs out; the last observation decides the outcome. A
    timeout of 0 is a single poll.
    """

    def __init__(
        self,
        ctx: DeploymentContext,
        timeout_s: float = 120.0,
        initial_backoff_s: float = 2.0,
        max_backoff_s: float = 30.0,
        log_tail_lines: int = 20,
        health_url: str | None = None,
        ignore_services: frozenset[str] = frozenset(),
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ctx = ctx
        self.timeout_s = max(0.0, float(timeout_s))
        self.initial_backoff_s = max(0.1, float(initial_backoff_s))
        self.max_backoff_s = max(self.initial_backoff_s, float(max_backoff_s))
        self.log_tail_lines = log_tail_lines
        self.health_url = health_url
        self.ignore_services = ignore_services
        self._sleep = sleep
        self._clock = clock

    def expected_count(self, expected_services: Sequence[ServiceSpec]) -> int:
        return sum(s.expected_replica_count for s in expected_services if s.name not in self.ignore_services)

    def observe(self) -> list[ObservedService]:
        try:
            observed = self.ctx.runtime.observe(self.ctx.project_name)
        except DockerException as e:
            raise HealthError(f"Could not query container runtime: {e}") from e
        return [o for o in observed if o.service not in self.ignore_services]

    def verify(self, expected_services: Sequence[ServiceSpec]) -> list[ObservedService]:
        expected = self.expected_count(expected_services)
        deadline = self._clock() + self.timeout_s
        backoff = self.initial_backoff_s
        attempt = 0

        while True:
            attempt += 1
            observed = self.observe()
            problem = self._evaluate(observed, expected)
            if problem is None:
                logger.info("All health checks passed (%d/%d running)", expected, expected)
                return observed

            remaining = deadline - self._clock()
            if remaining <= 0:
                if isinstance(problem, _StillStarting):
                    endpoint_problem = self._probe_endpoint()
                    if endpoint_problem is None:
                        logger.warning("%s; accepting since none reported unhealthy", problem)
                        return observed
                    problem = endpoint_problem
                raise self._with_logs(problem)

            logger.info("Health check %d not passing yet (%s); retrying in %.1fs", attempt, problem, min(backoff, remaining))
            self._sleep(min(backoff, remaining))
            backoff = min(backoff * 2, self.max_backoff_s)

    def _evaluate(self, observed: list[ObservedService], expected: int) -> HealthError | None:
        unhealthy = [o for o in observed if o.health == UNHEALTHY]
        if unhealthy:
            return UnhealthyServices(unhealthy)

        running = sum(1 for o in observed if o.state == RUNNING)
        if running != expected:
            return IncompleteRollout(expected, running, [o for o in observed if o.state != RUNNING])

        starting = [o for o in observed if o.health == STARTING]
        if starting:
            return _StillStarting(starting)

        return self._probe_endpoint()

    def _probe_endpoint(self) -> HealthError | None:
        if not self.health_url:
            return None
        ok, msg, latency = check_health(self.health_url)
        if not ok:
            return EndpointUnhealthy(self.health_url, msg)
        logger.info("Endpoint %s healthy (%.0f ms)", self.health_url, latency or 0.0)
        return None

    def _with_logs(self, problem: HealthError) -> HealthError:
        if not problem.services:
            return problem
        services = [replace(o, log_tail=self._log_tail(o.name)) for o in problem.services]
        if isinstance(problem, UnhealthyServices):
            return UnhealthyServices(services)
        if isinstance(problem, IncompleteRollout):
            return IncompleteRollout(problem.expected, problem.actual, services)
        return problem

    def _log_tail(self, name: str) -> str:
        try:
            return self.ctx.runtime.log_tail(name, self.log_tail_lines)
        except DockerException as e:
            logger.warning("Could not read logs for %s: %s", name, e)
            return ""
