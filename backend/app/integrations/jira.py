import logging

import httpx

logger = logging.getLogger(__name__)

SEARCH_FIELDS = ["summary", "duedate", "issuetype"]
DEFAULT_FETCH_LIMIT = 200


class JiraAuthError(Exception):
    """Jira rejected the supplied username / API token."""

    def __init__(self, status_code: int, detail: str = "") -> None:
        self.status_code = status_code
        self.detail = detail
        super().__init__(f"Invalid Jira credentials (HTTP {status_code})")


class JiraClient:
    """Jira Cloud REST wrapper using basic auth (username + API token).

    Network failures surface as ``httpx.RequestError``; unexpected HTTP
    statuses as ``httpx.HTTPStatusError``.
    """

    def __init__(
        self,
        base_url: str,
        username: str,
        api_token: str,
        *,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._auth = httpx.BasicAuth(username, api_token)
        self._timeout = timeout
        self._transport = transport

    async def _request(self, method: str, path: str, json: dict | None = None) -> httpx.Response:
        """Make an authenticated request and return the raw response."""
        url = f"{self.base_url}{path}"
        logger.debug("Jira API %s %s", method, url)
        async with httpx.AsyncClient(
            auth=self._auth,
            timeout=self._timeout,
            transport=self._transport,
            headers={"Accept": "application/json"},
        ) as client:
            resp = await client.request(method, url, json=json)
        if not resp.is_success:
            logger.error("Jira API error %s for %s: %s", resp.status_code, url, resp.text[:500])
        return resp

    async def myself(self) -> dict:
        """Return the authenticated Jira user.

        Raises:
            JiraAuthError: Jira answered with a non-2xx status.
        """
        resp = await self._request("GET", "/rest/api/2/myself")
        if not resp.is_success:
            raise JiraAuthError(resp.status_code, resp.text[:500])
        return resp.json()

    async def search(self, jql: str, max_results: int = DEFAULT_FETCH_LIMIT) -> list[dict]:
        """Return the first ``max_results`` issues matching ``jql``."""
        resp = await self._request(
            "POST",
            "/rest/api/3/search",
            json={
                "jql": jql,
                "fields": SEARCH_FIELDS,
                "maxResults": max_results,
                "startAt": 0,
            },
        )
        resp.raise_for_status()
        data = resp.json()
        issues = data.get("issues") or []
        logger.info("Jira search returned %d issues (total=%s)", len(issues), data.get("total"))
        return issues
