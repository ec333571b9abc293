"""Jira API client — paginated issue fetcher with retry/backoff and dual auth modes.

API Assumptions:
- Jira Cloud uses REST API v3; the cursor endpoint /rest/api/3/search/jql
  takes nextPageToken and rejects startAt
- Jira Server/DC uses v2 offset pagination (startAt/maxResults/total)
- Auth: Cloud uses Basic Auth (email:token), Server uses Bearer PAT

Issues are returned as raw JSON (``{"key", "fields": {...}}``); the tree
builder and change tracker read fields defensively.
"""

from __future__ import annotations

import logging
import time
from typing import Any

import httpx

from issuetree.config import Settings, get_settings

logger = logging.getLogger(__name__)

# Fields the hierarchy and change tracking read. Custom epic-link fields
# are appended per request when configured.
ISSUE_FIELDS = [
    "summary",
    "status",
    "priority",
    "assignee",
    "issuetype",
    "created",
    "updated",
    "duedate",
    "parent",
    "subtasks",
    "issuelinks",
    "progress",
    "comment",
    "project",
]

EPIC_LINK_FIELD_NAME = "Epic Link"


class JiraClientError(Exception):
    """Raised on unrecoverable Jira API errors."""


class JiraClient:
    """Fetches every issue matching a JQL query."""

    def __init__(
        self,
        settings: Settings | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self._transport = transport
        self._client: httpx.Client | None = None

        errors = self.settings.validate_jira_config()
        if errors:
            raise JiraClientError(
                "Jira configuration errors:\n  • " + "\n  • ".join(errors)
            )

    # ── HTTP plumbing ─────────────────────────────────────────────────

    def _build_client(self) -> httpx.Client:
        headers: dict[str, str] = {"Accept": "application/json"}
        auth = None

        base_url = self.settings.jira_base_url.rstrip("/")
        if self.settings.jira_auth_mode == "cloud":
            auth = httpx.BasicAuth(
                username=self.settings.jira_email,
                password=self.settings.jira_api_token,
            )
        else:
            headers["Authorization"] = f"Bearer {self.settings.jira_api_token}"

        return httpx.Client(
            base_url=base_url,
            headers=headers,
            auth=auth,
            timeout=httpx.Timeout(self.settings.jira_timeout),
            transport=self._transport,
        )

    @property
    def client(self) -> httpx.Client:
        if self._client is None:
            self._client = self._build_client()
        return self._client

    def _parse_retry_after(self, value: str | None, default: int) -> int:
        """Parse Retry-After header — seconds, or fall back for HTTP-date values."""
        if value is None:
            return default
        try:
            return int(value)
        except ValueError:
            logger.debug("Non-integer Retry-After header: %s, using default %ds", value, default)
            return default

    def _request_with_retry(
        self, method: str, url: str, **kwargs: Any
    ) -> httpx.Response:
        """Execute an HTTP request with retries on 429 and 5xx."""
        max_retries = self.settings.jira_max_retries
        for attempt in range(max_retries + 1):
            try:
                resp = self.client.request(method, url, **kwargs)
            except httpx.TransportError as exc:
                if attempt >= max_retries:
                    raise JiraClientError(f"Transport error after {max_retries} retries: {exc}") from exc
                wait = 2 ** attempt
                logger.warning("Transport error (attempt %d/%d), retrying in %ds: %s", attempt + 1, max_retries, wait, exc)
                time.sleep(wait)
                continue

            if resp.status_code == 429 or resp.status_code >= 500:
                if attempt >= max_retries:
                    raise JiraClientError(
                        f"HTTP {resp.status_code} after {max_retries} retries: {resp.text[:300]}"
                    )
                retry_after = self._parse_retry_after(
                    resp.headers.get("Retry-After"), 2 ** attempt
                )
                logger.warning(
                    "HTTP %d (attempt %d/%d), retrying in %ds",
                    resp.status_code, attempt + 1, max_retries, retry_after,
                )
                time.sleep(retry_after)
                continue

            resp.raise_for_status()
            return resp

        raise JiraClientError("Unexpected retry loop exit")  # pragma: no cover

    # ── Auth / metadata ───────────────────────────────────────────────

    def test_auth(self) -> dict[str, Any]:
        """Return the current user, trying v3 (Cloud) before v2 (Server/DC)."""
        try:
            return self._request_with_retry("GET", "/rest/api/3/myself").json()
        except (JiraClientError, httpx.HTTPStatusError):
            logger.info("v3 /myself failed, trying v2 fallback for Server/DC")
        try:
            return self._request_with_retry("GET", "/rest/api/2/myself").json()
        except httpx.HTTPStatusError as exc:
            raise JiraClientError(f"Authentication failed: HTTP {exc.response.status_code}") from exc

    def discover_epic_link_field(self) -> str | None:
        """Find the id of the "Epic Link" custom field (Server/DC instances)."""
        try:
            fields = self._request_with_retry("GET", "/rest/api/2/field").json()
        except (JiraClientError, httpx.HTTPStatusError) as exc:
            logger.warning("Could not list fields for epic-link discovery: %s", exc)
            return None

        for item in fields or []:
            if isinstance(item, dict) and item.get("name") == EPIC_LINK_FIELD_NAME:
                logger.info("Discovered epic link field: %s", item.get("id"))
                return item.get("id")
        logger.info("No '%s' field on this instance", EPIC_LINK_FIELD_NAME)
        return None

    # ── Search / fetch ────────────────────────────────────────────────

    def _request_fields(self, extra_fields: list[str] | None) -> list[str]:
        fields = list(ISSUE_FIELDS)
        for name in extra_fields or []:
            if name and name not in fields:
                fields.append(name)
        return fields

    def _search_page(
        self,
        jql: str,
        fields: list[str],
        start_at: int,
        next_token: str | None,
    ) -> dict[str, Any]:
        """Fetch one page, preferring the Cloud cursor endpoint on the first page."""
        max_results = self.settings.jira_page_size
        use_cursor = next_token is not None or (start_at == 0 and self.settings.jira_auth_mode == "cloud")

        if use_cursor:
            payload: dict[str, Any] = {"jql": jql, "maxResults": max_results, "fields": fields}
            if next_token:
                payload["nextPageToken"] = next_token
            try:
                return self._request_with_retry("POST", "/rest/api/3/search/jql", json=payload).json()
            except (JiraClientError, httpx.HTTPStatusError) as exc:
                # Mid-cursor failures cannot resume with offsets
                if next_token:
                    raise JiraClientError(f"Cursor pagination failed: {exc}") from exc
                logger.warning("Cloud search (/search/jql) failed, falling back to offset search: %s", exc)

        payload = {"jql": jql, "startAt": start_at, "maxResults": max_results, "fields": fields}
        api_version = "3" if self.settings.jira_auth_mode == "cloud" else "2"
        try:
            return self._request_with_retry("POST", f"/rest/api/{api_version}/search", json=payload).json()
        except httpx.HTTPStatusError as exc:
            raise JiraClientError(
                f"Search failed: HTTP {exc.response.status_code}: {exc.response.text[:300]}"
            ) from exc

    def fetch_all_issues(self, jql: str, extra_fields: list[str] | None = None) -> list[dict[str, Any]]:
        """Fetch ALL issues matching ``jql`` as one flat list (capped at jira_max_issues)."""
        fields = self._request_fields(extra_fields)
        cap = self.settings.jira_max_issues
        logger.info("Fetching issues with JQL: %s", jql)

        all_issues: list[dict[str, Any]] = []
        start_at = 0
        next_token: str | None = None

        while len(all_issues) < cap:
            data = self._search_page(jql, fields, start_at, next_token)
            issues = data.get("issues") or []
            all_issues.extend(issues)
            logger.debug("Fetched %d issues (total so far: %d)", len(issues), len(all_issues))

            if not issues:
                break
            if "nextPageToken" in data or "isLast" in data:
                next_token = data.get("nextPageToken")
                if not next_token or data.get("isLast"):
                    break
            else:
                start_at += len(issues)
                total = data.get("total")
                if isinstance(total, int) and start_at >= total:
                    break
                if len(issues) < self.settings.jira_page_size:
                    break
        else:
            logger.warning("Hit cap of %d issues for query; results truncated", cap)

        logger.info("Fetched %d issues", min(len(all_issues), cap))
        return all_issues[:cap]

    def close(self) -> None:
        if self._client:
            self._client.close()
            self._client = None

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
