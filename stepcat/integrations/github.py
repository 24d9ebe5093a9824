"""Minimal GitHub REST client covering checks, pull requests and compares."""

from __future__ import annotations

from typing import Any, Optional

import requests

from stepcat.errors import GitHubAPIError
from stepcat.logging import get_logger

logger = get_logger(__name__)

DEFAULT_API_URL = "https://api.github.com"
_PER_PAGE = 100
_MAX_PAGES = 10


class GitHubClient:
    """Wraps the handful of REST endpoints the CI checker relies on.

    Every method returns decoded JSON; non-2xx responses raise
    :class:`~stepcat.errors.GitHubAPIError`.
    """

    def __init__(
        self,
        token: str,
        owner: str,
        repo: str,
        *,
        api_url: str = DEFAULT_API_URL,
        timeout: float = 30.0,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.owner = owner
        self.repo = repo
        self.api_url = api_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update(
            {
                "Accept": "application/vnd.github+json",
                "Authorization": f"Bearer {token}",
                "X-GitHub-Api-Version": "2022-11-28",
                "User-Agent": "stepcat",
            }
        )

    def _url(self, path: str) -> str:
        return f"{self.api_url}/repos/{self.owner}/{self.repo}{path}"

    def _get(self, url: str, params: Optional[dict[str, Any]] = None) -> requests.Response:
        response = self.session.get(url, params=params, timeout=self.timeout)
        if not response.ok:
            try:
                message = response.json().get("message", response.text)
            except ValueError:
                message = response.text
            raise GitHubAPIError(response.status_code, message, url)
        return response

    def _get_paginated(self, path: str, key: Optional[str], params: dict[str, Any]) -> list[dict]:
        url: Optional[str] = self._url(path)
        query: Optional[dict[str, Any]] = {**params, "per_page": _PER_PAGE}
        items: list[dict] = []
        pages = 0
        while url and pages < _MAX_PAGES:
            response = self._get(url, query)
            payload = response.json()
            items.extend(payload.get(key, []) if key else payload)
            url = response.links.get("next", {}).get("url")
            # The "next" link already carries the query string.
            query = None
            pages += 1
        return items

    def list_check_runs(self, ref: str) -> list[dict]:
        return self._get_paginated(f"/commits/{ref}/check-runs", "check_runs", {})

    def list_check_suites(self, ref: str) -> list[dict]:
        return self._get_paginated(f"/commits/{ref}/check-suites", "check_suites", {})

    def list_open_pulls(self, branch: str) -> list[dict]:
        return self._get_paginated(
            "/pulls", None, {"state": "open", "head": f"{self.owner}:{branch}"}
        )

    def get_pull(self, number: int) -> dict:
        return self._get(self._url(f"/pulls/{number}")).json()

    def compare(self, base: str, head: str) -> dict:
        return self._get(self._url(f"/compare/{base}...{head}")).json()

    def list_annotations(self, check_run_id: int) -> list[dict]:
        return self._get_paginated(f"/check-runs/{check_run_id}/annotations", None, {})


__all__ = ["DEFAULT_API_URL", "GitHubClient"]
