import logging

import httpx

from harvest.clients.http import RetryPolicy, request_with_retry


logger = logging.getLogger(__name__)


class GitHubClient:
    def __init__(
        self,
        base_url: str,
        token: str | None,
        retry: RetryPolicy,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        headers = {
            "Accept": "application/vnd.github+json",
            "User-Agent": "harvest",
        }
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self.client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=10.0,
            headers=headers,
            transport=transport,
        )
        self.retry = retry

    async def get_runner_token(self, owner: str, repo: str) -> str | None:
        response = await request_with_retry(
            self.client,
            "POST",
            f"/repos/{owner}/{repo}/actions/runners/registration-token",
            self.retry,
        )
        token = response.json().get("token")
        if not token:
            logger.warning("registration token missing in response repo=%s/%s", owner, repo)
        return token

    async def aclose(self) -> None:
        await self.client.aclose()
