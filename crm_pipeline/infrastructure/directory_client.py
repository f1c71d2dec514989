import aiohttp
import asyncio
import logging
import random
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Optional

from crm_pipeline.domain.exceptions import RepositoryError

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT = aiohttp.ClientTimeout(total=15, connect=5)
MAX_RETRIES = 4
RETRYABLE_STATUSES = {429, 500, 502, 503, 504}


def retry_delay(retry_after: Optional[str], attempt: int) -> float:
    """
    Seconds to wait before the next attempt.

    `Retry-After` may be delta-seconds or an HTTP-date; anything unparseable
    falls back to exponential backoff with jitter.
    """
    if retry_after:
        value = retry_after.strip()
        if value.isdigit():
            return float(value)
        try:
            when = parsedate_to_datetime(value)
        except (TypeError, ValueError):
            when = None
        if when is not None:
            if when.tzinfo is None:
                when = when.replace(tzinfo=timezone.utc)
            return max(0.0, (when - datetime.now(timezone.utc)).total_seconds())
    return (2 ** attempt) + random.uniform(0, 1)


class HttpReferenceChecker:
    """
    Existence check against the CRM REST API for records this service does
    not own (companies, contacts, users).

    `GET {base_url}/{resource}/{id}` answering 200 means the record exists,
    404 means it does not. Throttling and server errors are retried with
    exponential backoff; anything else is a RepositoryError.
    """

    def __init__(
        self,
        session: aiohttp.ClientSession,
        base_url: str,
        resource: str,
        token: Optional[str] = None,
    ):
        self.session = session
        self.base_url = base_url.rstrip("/")
        self.resource = resource.strip("/")
        self.headers = {
            "Accept": "application/json",
            "User-Agent": "crm-pipeline",
        }
        if token:
            self.headers["Authorization"] = f"Bearer {token}"

    def _url(self, ref_id: str) -> str:
        return f"{self.base_url}/{self.resource}/{ref_id}"

    async def exists(self, ref_id: str) -> bool:
        url = self._url(ref_id)

        for attempt in range(MAX_RETRIES):
            try:
                async with self.session.get(url, headers=self.headers, timeout=REQUEST_TIMEOUT) as response:
                    if response.status == 200:
                        return True
                    if response.status == 404:
                        return False

                    if response.status in RETRYABLE_STATUSES:
                        sleep_time = retry_delay(response.headers.get("Retry-After"), attempt)
                        logger.warning(
                            f"Reference lookup {url} returned {response.status}, "
                            f"retrying in {sleep_time:.1f}s (attempt {attempt + 1}/{MAX_RETRIES})..."
                        )
                        await asyncio.sleep(sleep_time)
                        continue

                    raise RepositoryError(f"Reference lookup {url} failed with status {response.status}.")

            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                sleep_time = retry_delay(None, attempt)
                logger.warning(
                    f"Reference lookup {url} failed (attempt {attempt + 1}/{MAX_RETRIES}): {e}. "
                    f"Retrying in {sleep_time:.1f}s..."
                )
                await asyncio.sleep(sleep_time)

        raise RepositoryError(f"Reference lookup {url} failed after {MAX_RETRIES} attempts.")
