"""issuetree — Jira issue hierarchy builder with checkpoint-based change tracking."""

__version__ = "1.0.0"
