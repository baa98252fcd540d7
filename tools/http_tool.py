"""HTTP health probe for the verify stage."""

import logging
import time

import requests

from .base import CommandFailed, NetworkError, TimedOut

logger = logging.getLogger(__name__)


class HttpTool:
    """Probes a service health endpoint.

    Failures are raised as ExecutionErrors so the probe can run under a
    RetryPolicy: connection errors and 5xx answers are transient, any other
    unexpected status is permanent.
    """

    name = "http"

    def __init__(
        self,
        timeout: float = 10,
        headers: dict[str, str] | None = None,
        session: requests.Session | None = None,
    ) -> None:
        """Initialize HTTP tool.

        Args:
            timeout: Request timeout in seconds
            headers: Default headers for all requests
            session: Optional requests session (connection reuse, tests)
        """
        self.timeout = timeout
        self.default_headers = headers or {}
        self.session = session or requests.Session()

    def health_check(self, url: str, expected_status: int = 200) -> int:
        """Check endpoint health.

        Args:
            url: Health endpoint URL
            expected_status: Status code that counts as healthy

        Returns:
            Response time in milliseconds

        Raises:
            TimedOut: If the request timed out
            NetworkError: On connection errors or 5xx responses
            CommandFailed: On any other unexpected status
        """
        start = time.monotonic()
        try:
            response = self.session.get(url, headers=self.default_headers, timeout=self.timeout)
        except requests.exceptions.Timeout:
            raise TimedOut(f"Health check timed out after {self.timeout}s: {url}")
        except requests.exceptions.ConnectionError as e:
            raise NetworkError(f"Health check connection error: {e}")

        elapsed_ms = int((time.monotonic() - start) * 1000)
        if response.status_code == expected_status:
            logger.info("Health check %s -> %d (%dms)", url, response.status_code, elapsed_ms)
            return elapsed_ms

        message = f"Health check {url} returned HTTP {response.status_code}: {response.reason}"
        if response.status_code >= 500:
            raise NetworkError(message, output=response.text[:500])
        raise CommandFailed(message, exit_code=response.status_code, output=response.text[:500])
