from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

import httpx

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "https://api.github.com"
USER_AGENT = "tddloop"

HTTPS_REMOTE = re.compile(r"^https://(?:[^@/]+@)?github\.com/([^/]+)/([^/]+?)(?:\.git)?/?$")
SSH_REMOTE = re.compile(r"^(?:ssh://)?git@github\.com[:/]([^/]+)/([^/]+?)(?:\.git)?/?$")


class GitHubError(RuntimeError):
    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        suffix = f" (status: {status_code})" if status_code is not None else ""
        super().__init__(f"GitHub API error: {message}{suffix}")
        self.status_code = status_code


@dataclass(slots=True)
class PullRequestInfo:
    number: int
    url: str
    state: str
    head_branch: str
    base_branch: str
    title: str = ""

    @classmethod
    def from_api(cls, payload: dict[str, Any]) -> PullRequestInfo:
        head = payload.get("head") or {}
        base = payload.get("base") or {}
        return cls(
            number=int(payload.get("number", 0)),
            url=str(payload.get("html_url", "")),
            state=str(payload.get("state", "")),
            head_branch=str(head.get("ref", "")),
            base_branch=str(base.get("ref", "")),
            title=str(payload.get("title", "")),
        )


class PullRequestChecker(Protocol):
    def find_open_pull_request(
        self, head_branch: str, base_branch: str | None = None
    ) -> PullRequestInfo | None:
        """Return the open pull request for ``head_branch`` if one exists."""


@runtime_checkable
class PullRequestPublisher(PullRequestChecker, Protocol):
    def create_pull_request(
        self, head_branch: str, base_branch: str, title: str, body: str
    ) -> PullRequestInfo:
        """Open a pull request from ``head_branch`` into ``base_branch``."""


def parse_github_url(url: str) -> tuple[str, str]:
    candidate = url.strip()
    for pattern in (HTTPS_REMOTE, SSH_REMOTE):
        match = pattern.match(candidate)
        if match:
            return match.group(1), match.group(2)
    raise GitHubError(f"Not a GitHub repository URL: {url}")


class GitHubClient:
    def __init__(
        self,
        token: str,
        owner: str,
        repo: str,
        *,
        api_url: str = DEFAULT_API_URL,
        http: httpx.Client | None = None,
    ) -> None:
        self.owner = owner
        self.repo = repo
        self._http = http or httpx.Client(base_url=api_url, timeout=30.0)
        self._headers = {
            "Authorization": f"token {token}",
            "Accept": "application/vnd.github+json",
            "User-Agent": USER_AGENT,
        }

    @classmethod
    def from_remote(
        cls,
        token: str,
        remote_url: str,
        *,
        api_url: str = DEFAULT_API_URL,
        http: httpx.Client | None = None,
    ) -> GitHubClient:
        owner, repo = parse_github_url(remote_url)
        return cls(token, owner, repo, api_url=api_url, http=http)

    def close(self) -> None:
        self._http.close()

    def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            response = self._http.request(method, path, headers=self._headers, **kwargs)
        except httpx.HTTPError as exc:
            raise GitHubError(f"Network error: {exc}") from exc
        if response.status_code == 401:
            raise GitHubError("Invalid GitHub token", status_code=401)
        if response.status_code == 404:
            raise GitHubError(
                f"Repository {self.owner}/{self.repo} not found or not accessible",
                status_code=404,
            )
        if response.status_code >= 400:
            raise GitHubError(
                f"Request failed: {response.reason_phrase}",
                status_code=response.status_code,
            )
        return response

    @staticmethod
    def _payload(response: httpx.Response, expected: type) -> Any:
        try:
            payload = response.json()
        except ValueError as exc:
            raise GitHubError(
                "Malformed response (not JSON)", status_code=response.status_code
            ) from exc
        if not isinstance(payload, expected):
            raise GitHubError(
                f"Malformed response (expected a JSON {expected.__name__})",
                status_code=response.status_code,
            )
        return payload

    def find_open_pull_request(
        self, head_branch: str, base_branch: str | None = None
    ) -> PullRequestInfo | None:
        params = {"head": f"{self.owner}:{head_branch}", "state": "open"}
        if base_branch:
            params["base"] = base_branch
        response = self._request("GET", f"/repos/{self.owner}/{self.repo}/pulls", params=params)
        payload = self._payload(response, list)
        if not payload:
            return None
        if not isinstance(payload[0], dict):
            raise GitHubError("Malformed response (expected pull request objects)")
        return PullRequestInfo.from_api(payload[0])

    def create_pull_request(
        self, head_branch: str, base_branch: str, title: str, body: str
    ) -> PullRequestInfo:
        response = self._request(
            "POST",
            f"/repos/{self.owner}/{self.repo}/pulls",
            json={"head": head_branch, "base": base_branch, "title": title, "body": body},
        )
        info = PullRequestInfo.from_api(self._payload(response, dict))
        logger.info("Created pull request #%d: %s", info.number, info.url)
        return info


def verify_token(
    token: str,
    *,
    api_url: str = DEFAULT_API_URL,
    http: httpx.Client | None = None,
) -> int:
    """Return the HTTP status GitHub gives ``token`` on ``GET /user``."""
    client = http or httpx.Client(base_url=api_url, timeout=10.0)
    try:
        response = client.get(
            "/user",
            headers={"Authorization": f"token {token}", "User-Agent": USER_AGENT},
        )
    finally:
        if http is None:
            client.close()
    return response.status_code
