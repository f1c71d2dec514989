import unittest
from datetime import datetime, timedelta, timezone
from email.utils import format_datetime
from unittest.mock import AsyncMock, MagicMock, patch

from crm_pipeline.domain.exceptions import RepositoryError
from crm_pipeline.infrastructure.directory_client import MAX_RETRIES, HttpReferenceChecker, retry_delay


def _response(status, headers=None):
    response = AsyncMock()
    response.status = status
    response.headers = headers or {}
    response.__aenter__ = AsyncMock(return_value=response)
    response.__aexit__ = AsyncMock(return_value=False)
    return response


class TestHttpReferenceChecker(unittest.TestCase):
    def test_headers_include_token(self) -> None:
        checker = HttpReferenceChecker(MagicMock(), "https://crm.example.com/api/", "companies", token="t")

        self.assertEqual(checker.headers["Authorization"], "Bearer t")
        self.assertEqual(checker._url("42"), "https://crm.example.com/api/companies/42")

    def test_headers_without_token(self) -> None:
        checker = HttpReferenceChecker(MagicMock(), "https://crm.example.com", "users")
        self.assertNotIn("Authorization", checker.headers)


class TestRetryDelay(unittest.TestCase):
    def test_delta_seconds(self) -> None:
        self.assertEqual(retry_delay("7", 0), 7)

    def test_http_date_in_the_future(self) -> None:
        when = datetime.now(timezone.utc) + timedelta(seconds=120)
        delay = retry_delay(format_datetime(when, usegmt=True), 0)
        self.assertGreater(delay, 100)
        self.assertLessEqual(delay, 120)

    def test_http_date_in_the_past_means_no_wait(self) -> None:
        self.assertEqual(retry_delay("Wed, 21 Oct 2015 07:28:00 GMT", 0), 0)

    def test_garbage_falls_back_to_backoff(self) -> None:
        delay = retry_delay("soon", 2)
        self.assertGreaterEqual(delay, 4)
        self.assertLess(delay, 5)

    def test_missing_header_falls_back_to_backoff(self) -> None:
        delay = retry_delay(None, 0)
        self.assertGreaterEqual(delay, 1)
        self.assertLess(delay, 2)


class TestHttpReferenceCheckerExists(unittest.IsolatedAsyncioTestCase):
    async def test_200_means_exists(self) -> None:
        session = MagicMock()
        session.get = MagicMock(return_value=_response(200))
        checker = HttpReferenceChecker(session, "https://crm.example.com", "companies")

        self.assertTrue(await checker.exists("company-1"))

    async def test_404_means_missing(self) -> None:
        session = MagicMock()
        session.get = MagicMock(return_value=_response(404))
        checker = HttpReferenceChecker(session, "https://crm.example.com", "companies")

        self.assertFalse(await checker.exists("company-404"))

    async def test_503_retry_after_is_respected(self) -> None:
        session = MagicMock()
        session.get = MagicMock(side_effect=[_response(503, {"Retry-After": "1"}), _response(200)])
        checker = HttpReferenceChecker(session, "https://crm.example.com", "contacts")

        with patch("crm_pipeline.infrastructure.directory_client.asyncio.sleep", new_callable=AsyncMock) as mock_sleep:
            self.assertTrue(await checker.exists("contact-1"))

        mock_sleep.assert_any_call(1)
        self.assertEqual(session.get.call_count, 2)

    async def test_unexpected_status_raises(self) -> None:
        session = MagicMock()
        session.get = MagicMock(return_value=_response(401))
        checker = HttpReferenceChecker(session, "https://crm.example.com", "users")

        with self.assertRaises(RepositoryError):
            await checker.exists("user-1")

    async def test_gives_up_after_max_retries(self) -> None:
        session = MagicMock()
        session.get = MagicMock(side_effect=[_response(500) for _ in range(MAX_RETRIES)])
        checker = HttpReferenceChecker(session, "https://crm.example.com", "users")

        with patch("crm_pipeline.infrastructure.directory_client.asyncio.sleep", new_callable=AsyncMock):
            with self.assertRaises(RepositoryError):
                await checker.exists("user-1")

        self.assertEqual(session.get.call_count, MAX_RETRIES)

    async def test_429_with_http_date_retry_after_is_retried(self) -> None:
        session = MagicMock()
        session.get = MagicMock(side_effect=[
            _response(429, {"Retry-After": "Wed, 21 Oct 2015 07:28:00 GMT"}),
            _response(503, {"Retry-After": "not-a-date"}),
            _response(200),
        ])
        checker = HttpReferenceChecker(session, "https://crm.example.com", "users")

        with patch("crm_pipeline.infrastructure.directory_client.asyncio.sleep", new_callable=AsyncMock) as mock_sleep:
            self.assertTrue(await checker.exists("user-1"))

        self.assertEqual(session.get.call_count, 3)
        self.assertEqual(mock_sleep.await_args_list[0].args[0], 0)
        self.assertGreaterEqual(mock_sleep.await_args_list[1].args[0], 2)
