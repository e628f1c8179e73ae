"""Health probing against a target's declared health endpoint."""

from typing import Any

import httpx

from deployctl.core.logging import get_logger
from deployctl.deploy.models import HealthResult, HealthStatus, utcnow
from deployctl.deploy.runtime import RuntimeManager

logger = get_logger(__name__)


class HealthProber:
    """Issues a single bounded-timeout liveness check.

    The prober never retries; retry policy belongs to the caller.
    """

    def __init__(
        self,
        timeout: float = 10.0,
        indicator_field: str = "status",
        healthy_values: list[str] | None = None,
        client: httpx.Client | None = None,
    ):
        self._timeout = timeout
        self._indicator_field = indicator_field
        self._healthy_values = {v.lower() for v in (healthy_values or ["healthy", "ok", "true"])}
        self._client = client

    @property
    def client(self) -> httpx.Client:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.Client(timeout=self._timeout, follow_redirects=True)
        return self._client

    def probe(self, endpoint: str) -> HealthResult:
        """Probe an endpoint once and classify the result."""
        try:
            response = self.client.get(endpoint, timeout=self._timeout)
        except httpx.TimeoutException:
            return HealthResult(utcnow(), HealthStatus.UNKNOWN, f"timed out after {self._timeout}s")
        except httpx.RequestError as e:
            return HealthResult(utcnow(), HealthStatus.UNKNOWN, f"request failed: {e}")

        if response.status_code >= 400:
            return HealthResult(utcnow(), HealthStatus.UNHEALTHY, f"HTTP {response.status_code}")

        try:
            body = response.json()
        except ValueError:
            return HealthResult(utcnow(), HealthStatus.UNKNOWN, "response body is not JSON")

        return self.classify(body)

    def classify(self, body: Any) -> HealthResult:
        """Classify a decoded JSON health body."""
        if not isinstance(body, dict):
            return HealthResult(utcnow(), HealthStatus.UNKNOWN, "response body is not an object")

        for field_name in (self._indicator_field, "healthy", "status"):
            if field_name not in body:
                continue
            value = body[field_name]
            if isinstance(value, bool):
                healthy = value
            elif isinstance(value, str):
                healthy = value.lower() in self._healthy_values
            else:
                continue

            status = HealthStatus.HEALTHY if healthy else HealthStatus.UNHEALTHY
            return HealthResult(utcnow(), status, f"{field_name}={value}")

        return HealthResult(
            utcnow(),
            HealthStatus.UNKNOWN,
            f"no health indicator field '{self._indicator_field}' in response",
        )

    def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            self._client.close()
            self._client = None

    def __enter__(self) -> "HealthProber":
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()


class TargetHealthCheck:
    """What the state machine polls: the HTTP probe, optionally vetoed by liveness.

    The HTTP probe is authoritative. Process liveness can turn a healthy
    probe into an unhealthy one but never the reverse.
    """

    def __init__(
        self,
        prober: HealthProber,
        endpoint: str,
        runtime: RuntimeManager | None = None,
        check_liveness: bool = False,
    ):
        self.prober = prober
        self.endpoint = endpoint
        self.runtime = runtime
        self.check_liveness = check_liveness and runtime is not None

    def __call__(self) -> HealthResult:
        result = self.prober.probe(self.endpoint)
        if not result.healthy or not self.check_liveness:
            return result

        if not self.runtime.is_running():
            return HealthResult(
                result.timestamp,
                HealthStatus.UNHEALTHY,
                f"{result.detail}; runtime reports no running instances",
            )
        return result
