"""Shared API dependencies — one loader per process."""

from __future__ import annotations

import logging

from fastapi import HTTPException

from issuetree.loader import IssueLoader

logger = logging.getLogger(__name__)

_loader: IssueLoader | None = None


def get_loader() -> IssueLoader:
    """Return the process-wide loader, connecting to Jira on first use."""
    global _loader
    if _loader is None:
        from issuetree.config import get_settings
        from issuetree.jira_client import JiraClient, JiraClientError
        from issuetree.loader import create_loader

        settings = get_settings()
        try:
            client = JiraClient(settings)
        except JiraClientError as exc:
            raise HTTPException(status_code=503, detail=str(exc))
        _loader = create_loader(client, settings)
        logger.info("API loader initialised for %s", settings.jira_base_url)
    return _loader


def reset_loader() -> None:
    global _loader
    _loader = None


def load_or_raise(loader: IssueLoader, jql: str, query_id: str | None = None) -> None:
    if not loader.load(jql, query_id):
        raise HTTPException(status_code=502, detail=loader.error or "Failed to load issues")
