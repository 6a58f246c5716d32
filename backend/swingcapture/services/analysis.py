import logging
from typing import Optional
import httpx
from swingcapture.core.config import Settings, settings as default_settings
from swingcapture.core.errors import AnalysisTriggerError
from swingcapture.core.retry import retry_on_timeout

logger = logging.getLogger(__name__)


class AnalysisTrigger:
    """Client for the downstream swing analysis function."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
        config: Optional[Settings] = None,
    ):
        config = config or default_settings
        self.base_url = (base_url if base_url is not None else config.analysis_base_url).rstrip("/")
        self.api_key = api_key if api_key is not None else config.analysis_api_key
        self.timeout = timeout or config.analysis_timeout
        self.retry_attempts = config.network_retry_attempts

    @property
    def enabled(self) -> bool:
        return bool(self.base_url)

    def trigger(self, capture_id: int) -> bool:
        """
        Ask the analysis function to process a stored capture.

        The response body is ignored; the caller only learns whether the
        request was accepted.

        Returns:
            True if the request was sent and accepted, False if no analysis URL is configured

        Raises:
            AnalysisTriggerError: if the request fails after retries or is rejected
        """
        if not self.enabled:
            logger.info(f"Analysis URL not configured, skipping analysis for capture {capture_id}")
            return False

        url = f"{self.base_url}/swing-analysis"
        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}

        def send():
            return httpx.post(url, json={"capture_id": capture_id}, headers=headers, timeout=self.timeout)

        try:
            response = retry_on_timeout(
                send,
                (httpx.TimeoutException,),
                attempts=self.retry_attempts,
                description="swing analysis trigger",
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error(f"Failed to trigger analysis for capture {capture_id}: {e}")
            raise AnalysisTriggerError(f"Failed to trigger analysis: {e}") from e

        logger.info(f"Triggered swing analysis for capture {capture_id} (status {response.status_code})")
        return True
