import unittest
from unittest.mock import AsyncMock, MagicMock, patch

import aiohttp
from yarl import URL

from src.domain.exceptions import (
    GitHubApiException,
    NotFoundException,
    RateLimitExceededException,
    TransientIOException,
)
from src.infrastructure.github_client import GitHubRestClient


def _response(status=200, json_body=None, headers=None, links=None, text=""):
    resp = AsyncMock()
    resp.status = status
    resp.headers = headers or {}
    resp.links = links or {}
    resp.raise_for_status = MagicMock()
    resp.json = AsyncMock(return_value=json_body)
    resp.text = AsyncMock(return_value=text)
    resp.__aenter__ = AsyncMock(return_value=resp)
    resp.__aexit__ = AsyncMock(return_value=False)
    return resp


def _session(*responses):
    session = AsyncMock()
    session.get = MagicMock(side_effect=list(responses))
    return session


class TestGitHubRestClientHeaders(unittest.TestCase):
    def test_token_is_sent_as_bearer(self) -> None:
        client = GitHubRestClient(token="test-token")

        self.assertEqual(client.headers["Authorization"], "Bearer test-token")
        self.assertIn("User-Agent", client.headers)
        self.assertIn("Accept", client.headers)

    def test_unauthenticated_client_has_no_authorization(self) -> None:
        client = GitHubRestClient(api_url="https://github.example.com/api/v3/")

        self.assertNotIn("Authorization", client.headers)
        self.assertEqual(client.api_url, "https://github.example.com/api/v3")


class TestListIssues(unittest.IsolatedAsyncioTestCase):
    async def test_next_page_is_read_from_link_header(self) -> None:
        next_url = URL("https://api.github.com/repositories/1/issues?state=open&page=3&per_page=100")
        session = _session(_response(json_body=[{"id": 1}], links={"next": {"url": next_url}}))
        client = GitHubRestClient(token="t")

        issues, next_page = await client.list_issues_by_repo(session, "octocat", "Hello-World", page=2, per_page=500)

        self.assertEqual(issues, [{"id": 1}])
        self.assertEqual(next_page, 3)
        _, kwargs = session.get.call_args
        self.assertEqual(kwargs["params"], {"state": "open", "page": 2, "per_page": 100})

    async def test_last_page_has_no_next(self) -> None:
        session = _session(_response(json_body=[]))

        issues, next_page = await GitHubRestClient(token="t").list_issues_by_repo(session, "octocat", "Hello-World")

        self.assertEqual(issues, [])
        self.assertIsNone(next_page)


class TestErrorMapping(unittest.IsolatedAsyncioTestCase):
    async def test_404_raises_not_found(self) -> None:
        session = _session(_response(status=404))

        with self.assertRaises(NotFoundException):
            await GitHubRestClient(token="t").get_issue(session, "octocat", "Hello-World", 1)

    async def test_403_retry_after_is_respected(self) -> None:
        """When GitHub returns 403 + Retry-After, the client sleeps and retries."""
        session = _session(
            _response(status=403, headers={"Retry-After": "1"}),
            _response(json_body={"id": 1296269}),
        )

        with patch("src.infrastructure.github_client.asyncio.sleep", new_callable=AsyncMock) as mock_sleep:
            repo = await GitHubRestClient(token="t").fetch_repository(session, "octocat", "Hello-World")

        mock_sleep.assert_any_call(1)
        self.assertEqual(repo, {"id": 1296269})

    async def test_exhausted_rate_limit_raises(self) -> None:
        session = _session(
            _response(status=403, headers={"X-RateLimit-Remaining": "0", "X-RateLimit-Reset": "1700000000"})
        )

        with self.assertRaises(RateLimitExceededException) as ctx:
            await GitHubRestClient(token="t").fetch_repository(session, "octocat", "Hello-World")

        self.assertEqual(ctx.exception.reset_at, "1700000000")

    async def test_server_error_is_transient_and_not_retried(self) -> None:
        session = _session(_response(status=502), _response(json_body={}))

        with self.assertRaises(TransientIOException):
            await GitHubRestClient(token="t").fetch_repository(session, "octocat", "Hello-World")

        self.assertEqual(session.get.call_count, 1)

    async def test_connection_error_is_transient(self) -> None:
        session = AsyncMock()
        session.get = MagicMock(side_effect=aiohttp.ClientConnectionError("connection reset"))

        with self.assertRaises(TransientIOException):
            await GitHubRestClient(token="t").get_issue(session, "octocat", "Hello-World", 1)

    async def test_bad_credentials_is_not_transient(self) -> None:
        session = _session(_response(status=401, text='{"message": "Bad credentials"}'))

        with self.assertRaises(GitHubApiException) as ctx:
            await GitHubRestClient(token="bad").fetch_repository(session, "octocat", "Hello-World")

        self.assertNotIsInstance(ctx.exception, TransientIOException)
        self.assertEqual(ctx.exception.status, 401)
        self.assertIn("Bad credentials", str(ctx.exception))

    async def test_unprocessable_request_is_not_transient(self) -> None:
        session = _session(_response(status=422, text='{"message": "Validation Failed"}'))

        with self.assertRaises(GitHubApiException) as ctx:
            await GitHubRestClient(token="t").list_issues_by_repo(session, "octocat", "Hello-World", state="bogus")

        self.assertEqual(ctx.exception.status, 422)
        self.assertEqual(session.get.call_count, 1)

    async def test_response_error_from_aiohttp_is_not_transient(self) -> None:
        session = AsyncMock()
        session.get = MagicMock(side_effect=aiohttp.ClientResponseError(
            request_info=MagicMock(), history=(), status=401, message="Bad credentials"
        ))

        with self.assertRaises(GitHubApiException) as ctx:
            await GitHubRestClient(token="bad").get_issue(session, "octocat", "Hello-World", 1)

        self.assertEqual(ctx.exception.status, 401)

    async def test_forbidden_without_rate_limit_fails_immediately(self) -> None:
        session = _session(
            _response(status=403, text='{"message": "Resource not accessible by integration"}'),
            _response(json_body={"id": 1296269}),
        )

        with patch("src.infrastructure.github_client.asyncio.sleep", new_callable=AsyncMock) as mock_sleep:
            with self.assertRaises(GitHubApiException) as ctx:
                await GitHubRestClient(token="t").fetch_repository(session, "octocat", "Hello-World")

        self.assertEqual(ctx.exception.status, 403)
        mock_sleep.assert_not_called()
        self.assertEqual(session.get.call_count, 1)

    async def test_secondary_rate_limit_message_without_retry_after_waits(self) -> None:
        session = _session(
            _response(status=403, text='{"message": "You have exceeded a secondary rate limit."}'),
            _response(json_body={"id": 1296269}),
        )

        with patch("src.infrastructure.github_client.asyncio.sleep", new_callable=AsyncMock) as mock_sleep:
            repo = await GitHubRestClient(token="t").fetch_repository(session, "octocat", "Hello-World")

        mock_sleep.assert_awaited_once_with(60)
        self.assertEqual(repo, {"id": 1296269})
