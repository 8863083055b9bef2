import logging
import time
from typing import Callable, Optional
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from release_controller.observability import get_request_id, log_event
from release_controller.redaction import redact_url


logger = logging.getLogger("relctl.health")


class HealthCheckFailed(Exception):
    pass


class HealthChecker:
    """GET a URL and require HTTP 200 before an automatic promotion."""

    def __init__(self, request_id_provider: Optional[Callable[[], str]] = get_request_id) -> None:
        self.request_id_provider = request_id_provider

    def check(self, url: str, timeout_seconds: float) -> None:
        if not url:
            raise HealthCheckFailed("no health check URL available")
        headers = {"User-Agent": "release-controller-health-check"}
        request_id = self.request_id_provider() if self.request_id_provider else ""
        if request_id:
            headers["X-Request-Id"] = request_id
        request = Request(url, headers=headers, method="GET")
        start = time.monotonic()
        try:
            with urlopen(request, timeout=timeout_seconds) as response:
                status_code = response.status
        except HTTPError as exc:
            status_code = exc.code
        except (URLError, TimeoutError, OSError) as exc:
            log_event("health_check.error", url=redact_url(url), error=str(exc))
            raise HealthCheckFailed(f"health check request failed: {exc}") from exc
        latency_ms = int((time.monotonic() - start) * 1000)
        log_event("health_check.result", url=redact_url(url), status=status_code, latency_ms=latency_ms)
        if status_code != 200:
            raise HealthCheckFailed(f"health check returned HTTP {status_code}")
