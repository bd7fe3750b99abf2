import logging
import time

import httpx

from provisioner.errors import ReportError
from provisioner.schemas import RunSummary


logger = logging.getLogger(__name__)


class StatusReporter:
    """POSTs run summaries to a status endpoint consumed by monitoring tooling."""

    def __init__(
        self,
        url: str,
        *,
        attempts: int = 3,
        sleep_sec: float = 2.0,
        client: httpx.Client | None = None,
    ):
        self.url = url
        self.attempts = max(attempts, 1)
        self.sleep_sec = sleep_sec
        self.client = client or httpx.Client(timeout=10.0)

    def publish(self, summary: RunSummary) -> httpx.Response:
        body = summary.model_dump(mode="json")
        detail = "unknown error"
        error: Exception | None = None
        for attempt in range(1, self.attempts + 1):
            try:
                response = self.client.post(self.url, json=body)
                response.raise_for_status()
                logger.info("run summary published url=%s attempt=%s", self.url, attempt)
                return response
            except httpx.HTTPStatusError as exc:
                error = exc
                text = (exc.response.text or "").strip()
                detail = f"HTTP {exc.response.status_code}: {text[:240]}" if text else f"HTTP {exc.response.status_code}"
            except httpx.RequestError as exc:
                error = exc
                detail = f"{exc.__class__.__name__}: {exc}"
            logger.warning(
                "run summary publish failed url=%s attempt=%s/%s detail=%s",
                self.url,
                attempt,
                self.attempts,
                detail,
            )
            if attempt < self.attempts:
                time.sleep(self.sleep_sec)
        raise ReportError(url=self.url, attempts=self.attempts, detail=detail) from error

    def close(self) -> None:
        self.client.close()
