"""Tests for the Jira client — pagination, retries and field discovery over a mock transport."""

import json

import httpx
import pytest

from issuetree.config import Settings
from issuetree.jira_client import ISSUE_FIELDS, JiraClient, JiraClientError


def _settings(**overrides):
    values = {
        "jira_base_url": "https://test.atlassian.net",
        "jira_auth_mode": "cloud",
        "jira_email": "user@test.com",
        "jira_api_token": "token",
        "jira_page_size": 2,
        "jira_max_retries": 2,
    }
    values.update(overrides)
    return Settings(**values)


def _issues(*keys):
    return [{"key": key, "fields": {"summary": key}} for key in keys]


@pytest.fixture(autouse=True)
def no_sleep(monkeypatch):
    monkeypatch.setattr("issuetree.jira_client.time.sleep", lambda seconds: None)


class Recorder:
    def __init__(self, responder):
        self.responder = responder
        self.requests = []

    def __call__(self, request):
        body = json.loads(request.content) if request.content else None
        self.requests.append((request.method, request.url.path, body))
        return self.responder(request, body)


def _client(responder, **overrides):
    recorder = Recorder(responder)
    client = JiraClient(_settings(**overrides), transport=httpx.MockTransport(recorder))
    return client, recorder


class TestConfig:
    def test_missing_config_raises(self):
        with pytest.raises(JiraClientError, match="JIRA_BASE_URL"):
            JiraClient(Settings(jira_base_url="", jira_api_token="x", jira_email="a@b.c"))


class TestCursorPagination:
    def test_follows_next_page_token(self):
        def responder(request, body):
            assert request.url.path == "/rest/api/3/search/jql"
            if "nextPageToken" not in body:
                return httpx.Response(200, json={"issues": _issues("A-1", "A-2"), "nextPageToken": "t1"})
            return httpx.Response(200, json={"issues": _issues("A-3"), "isLast": True})

        client, recorder = _client(responder)
        with client:
            issues = client.fetch_all_issues("project = A")
        assert [i["key"] for i in issues] == ["A-1", "A-2", "A-3"]
        assert recorder.requests[1][2]["nextPageToken"] == "t1"
        assert "startAt" not in recorder.requests[0][2]

    def test_extra_fields_requested(self):
        def responder(request, body):
            return httpx.Response(200, json={"issues": [], "isLast": True})

        client, recorder = _client(responder)
        client.fetch_all_issues("q", extra_fields=["customfield_10014", "summary"])
        fields = recorder.requests[0][2]["fields"]
        assert fields[: len(ISSUE_FIELDS)] == ISSUE_FIELDS
        assert fields.count("summary") == 1
        assert fields[-1] == "customfield_10014"

    def test_cap_truncates(self):
        def responder(request, body):
            return httpx.Response(200, json={"issues": _issues("A-1", "A-2"), "nextPageToken": "more"})

        client, recorder = _client(responder, jira_max_issues=3)
        issues = client.fetch_all_issues("q")
        assert len(issues) == 3
        assert len(recorder.requests) == 2

    def test_mid_cursor_failure_raises(self):
        def responder(request, body):
            if "nextPageToken" in body:
                return httpx.Response(400, json={"errorMessages": ["bad token"]})
            return httpx.Response(200, json={"issues": _issues("A-1", "A-2"), "nextPageToken": "t1"})

        client, _ = _client(responder)
        with pytest.raises(JiraClientError, match="Cursor pagination failed"):
            client.fetch_all_issues("q")


class TestOffsetPagination:
    def test_server_uses_v2_offsets(self):
        def responder(request, body):
            assert request.url.path == "/rest/api/2/search"
            assert request.headers["Authorization"] == "Bearer pat"
            start = body["startAt"]
            keys = ["S-1", "S-2", "S-3"][start : start + 2]
            return httpx.Response(200, json={"issues": _issues(*keys), "total": 3, "startAt": start})

        client, recorder = _client(responder, jira_auth_mode="server", jira_api_token="pat", jira_email="")
        issues = client.fetch_all_issues("q")
        assert [i["key"] for i in issues] == ["S-1", "S-2", "S-3"]
        assert [r[2]["startAt"] for r in recorder.requests] == [0, 2]

    def test_cloud_falls_back_when_cursor_endpoint_missing(self):
        def responder(request, body):
            if request.url.path == "/rest/api/3/search/jql":
                return httpx.Response(404)
            return httpx.Response(200, json={"issues": _issues("A-1"), "total": 1})

        client, recorder = _client(responder)
        issues = client.fetch_all_issues("q")
        assert [i["key"] for i in issues] == ["A-1"]
        assert [r[1] for r in recorder.requests] == ["/rest/api/3/search/jql", "/rest/api/3/search"]


class TestRetry:
    def test_retries_on_429(self):
        attempts = []

        def responder(request, body):
            attempts.append(1)
            if len(attempts) == 1:
                return httpx.Response(429, headers={"Retry-After": "1"})
            return httpx.Response(200, json={"issues": _issues("A-1"), "isLast": True})

        client, _ = _client(responder)
        assert len(client.fetch_all_issues("q")) == 1
        assert len(attempts) == 2

    def test_gives_up_after_max_retries(self):
        def responder(request, body):
            return httpx.Response(503, text="unavailable")

        client, recorder = _client(responder, jira_auth_mode="server", jira_email="")
        with pytest.raises(JiraClientError, match="HTTP 503"):
            client.fetch_all_issues("q")
        assert len(recorder.requests) == 3

    def test_parse_retry_after(self):
        client, _ = _client(lambda request, body: httpx.Response(200))
        assert client._parse_retry_after("7", 1) == 7
        assert client._parse_retry_after("Wed, 21 Oct 2015 07:28:00 GMT", 4) == 4
        assert client._parse_retry_after(None, 2) == 2


class TestMetadata:
    def test_discover_epic_link_field(self):
        def responder(request, body):
            assert request.url.path == "/rest/api/2/field"
            return httpx.Response(
                200,
                json=[
                    {"id": "summary", "name": "Summary"},
                    {"id": "customfield_10008", "name": "Epic Link"},
                ],
            )

        client, _ = _client(responder)
        assert client.discover_epic_link_field() == "customfield_10008"

    def test_discover_epic_link_field_absent(self):
        client, _ = _client(lambda request, body: httpx.Response(200, json=[]))
        assert client.discover_epic_link_field() is None

    def test_auth_falls_back_to_v2(self):
        def responder(request, body):
            if request.url.path == "/rest/api/3/myself":
                return httpx.Response(404)
            return httpx.Response(200, json={"displayName": "Ann"})

        client, _ = _client(responder)
        assert client.test_auth()["displayName"] == "Ann"
