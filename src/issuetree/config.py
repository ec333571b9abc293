"""Configuration management — loads .env and validates with Pydantic."""

from __future__ import annotations

from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings


def _find_project_root() -> Path:
    """Walk up from CWD to find directory containing pyproject.toml or .env."""
    cwd = Path.cwd()
    for parent in [cwd, *cwd.parents]:
        if (parent / "pyproject.toml").exists() or (parent / ".env").exists():
            return parent
    return cwd


PROJECT_ROOT = _find_project_root()

_env_path = PROJECT_ROOT / ".env"
if _env_path.exists():
    load_dotenv(_env_path)

SORT_FIELDS = ("key", "priority", "created", "updated", "duedate", "status")
SORT_DIRECTIONS = ("asc", "desc")
ACTIVITY_PERIODS = ("24h", "7d", "off")
AUTO_EXPAND_DEPTHS = (0, 1, 2, -1)


class Settings(BaseSettings):
    """All issuetree configuration, loaded from env vars / .env file."""

    # ── Jira ──────────────────────────────────────────────────────────
    jira_base_url: str = Field(default="", description="Jira instance URL")
    jira_auth_mode: str = Field(
        default="cloud", description="'cloud' (email+token) or 'server' (PAT)"
    )
    jira_email: str = Field(default="", description="Atlassian account email (cloud)")
    jira_api_token: str = Field(default="", description="API token or PAT")
    jira_jql: str = Field(
        default="assignee=currentUser() ORDER BY updated DESC",
        description="Default JQL when none is given",
    )
    jira_timeout: int = Field(default=30, description="Request timeout seconds")
    jira_max_retries: int = Field(default=3, description="Max retries on 429/5xx")
    jira_page_size: int = Field(default=100, description="Issues requested per page")
    jira_max_issues: int = Field(default=2000, description="Hard cap per query")

    # ── Hierarchy ─────────────────────────────────────────────────────
    epic_link_field_id: Optional[str] = Field(
        default=None,
        description="Custom field holding the epic key (e.g. customfield_10014), or 'auto'",
    )
    sort_field: str = Field(default="updated", description="Secondary sibling sort field")
    sort_direction: str = Field(default="desc", description="'asc' or 'desc'")
    auto_expand_depth: int = Field(
        default=0, description="Levels expanded on first load (-1 = all)"
    )

    # ── Change tracking ───────────────────────────────────────────────
    change_tracking_enabled: bool = Field(
        default=False, description="Initial state of change tracking"
    )
    activity_period: str = Field(
        default="24h", description="Recently-updated window: 24h, 7d or off"
    )
    checkpoint_max_age_days: int = Field(
        default=30, description="Checkpoints older than this are cleaned up"
    )

    # ── Paths ─────────────────────────────────────────────────────────
    data_dir: str = Field(default="data", description="Data directory")

    # ── Logging ───────────────────────────────────────────────────────
    log_level: str = Field(default="INFO", description="Logging level")
    log_file: str = Field(default="logs/issuetree.log", description="Log file path")
    log_json: bool = Field(default=False, description="Output logs in JSON")

    model_config = {
        "env_file": str(_env_path),
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }

    @field_validator("sort_field")
    @classmethod
    def _check_sort_field(cls, value: str) -> str:
        if value not in SORT_FIELDS:
            raise ValueError(f"sort_field must be one of {SORT_FIELDS}, got {value!r}")
        return value

    @field_validator("sort_direction")
    @classmethod
    def _check_sort_direction(cls, value: str) -> str:
        value = value.lower()
        if value not in SORT_DIRECTIONS:
            raise ValueError(f"sort_direction must be 'asc' or 'desc', got {value!r}")
        return value

    @field_validator("activity_period")
    @classmethod
    def _check_activity_period(cls, value: str) -> str:
        if value not in ACTIVITY_PERIODS:
            raise ValueError(f"activity_period must be one of {ACTIVITY_PERIODS}, got {value!r}")
        return value

    @field_validator("auto_expand_depth")
    @classmethod
    def _check_auto_expand_depth(cls, value: int) -> int:
        if value not in AUTO_EXPAND_DEPTHS:
            raise ValueError(f"auto_expand_depth must be one of {AUTO_EXPAND_DEPTHS}, got {value!r}")
        return value

    # ── Derived helpers ───────────────────────────────────────────────

    @property
    def data_path(self) -> Path:
        p = Path(self.data_dir)
        if not p.is_absolute():
            p = PROJECT_ROOT / p
        p.mkdir(parents=True, exist_ok=True)
        return p

    @property
    def state_path(self) -> Path:
        return self.data_path / "state.json"

    @property
    def epic_link_autodetect(self) -> bool:
        return (self.epic_link_field_id or "").strip().lower() == "auto"

    def validate_jira_config(self) -> list[str]:
        """Validate that required Jira settings are present.

        Returns a list of error messages (empty = valid).
        """
        errors: list[str] = []
        if not self.jira_base_url:
            errors.append("JIRA_BASE_URL is not set. Add it to your .env file.")
        if not self.jira_api_token:
            errors.append("JIRA_API_TOKEN is not set. Add it to your .env file.")
        if self.jira_auth_mode == "cloud" and not self.jira_email:
            errors.append(
                "JIRA_EMAIL is required for cloud auth mode. Add it to your .env file."
            )
        if self.jira_auth_mode not in ("cloud", "server"):
            errors.append(
                f"JIRA_AUTH_MODE must be 'cloud' or 'server', got: {self.jira_auth_mode!r}"
            )
        return errors

    def as_display_dict(self) -> dict[str, str]:
        """Return a sanitized dict of all config values for display."""
        token = self.jira_api_token
        masked_token = f"{'*' * 8}...{token[-4:]}" if len(token) > 4 else ("***" if token else "(not set)")
        return {
            "JIRA_BASE_URL": self.jira_base_url or "(not set)",
            "JIRA_AUTH_MODE": self.jira_auth_mode,
            "JIRA_EMAIL": self.jira_email or "(not set)",
            "JIRA_API_TOKEN": masked_token,
            "JIRA_JQL": self.jira_jql,
            "JIRA_TIMEOUT": str(self.jira_timeout),
            "JIRA_MAX_RETRIES": str(self.jira_max_retries),
            "JIRA_PAGE_SIZE": str(self.jira_page_size),
            "JIRA_MAX_ISSUES": str(self.jira_max_issues),
            "EPIC_LINK_FIELD_ID": self.epic_link_field_id or "(not set)",
            "SORT_FIELD": self.sort_field,
            "SORT_DIRECTION": self.sort_direction,
            "AUTO_EXPAND_DEPTH": str(self.auto_expand_depth),
            "CHANGE_TRACKING_ENABLED": str(self.change_tracking_enabled),
            "ACTIVITY_PERIOD": self.activity_period,
            "CHECKPOINT_MAX_AGE_DAYS": str(self.checkpoint_max_age_days),
            "DATA_DIR": str(self.data_path),
            "LOG_LEVEL": self.log_level,
            "LOG_FILE": self.log_file,
            "LOG_JSON": str(self.log_json),
        }


# ── Singleton accessor ────────────────────────────────────────────────

_settings_instance: Settings | None = None


def get_settings() -> Settings:
    """Return a cached Settings instance."""
    global _settings_instance
    if _settings_instance is None:
        _settings_instance = Settings()
    return _settings_instance


def reset_settings() -> None:
    """Invalidate the cached Settings so the next call to get_settings() reloads."""
    global _settings_instance
    _settings_instance = None
