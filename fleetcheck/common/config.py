"""Centralized settings loaded from environment variables (+ optional .env).

One frozen Settings object for the whole app. No secrets are required at
import time: email and remote backup are simply disabled when their
credentials are missing.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

from fleetcheck.common.paths import (
    ACTIVITY_LOG_PATH,
    CATALOG_PATH,
    EMAIL_TEMPLATES_PATH,
    LOG_DIR,
    STATE_PATH,
)

ENV_PREFIX = "FLEET"

load_dotenv(override=False)


def _k(suffix: str) -> str:
    """Build env var name with the project prefix."""
    return f"{ENV_PREFIX}_{suffix}"


def _env(name: str, default: str = "") -> str:
    v = os.getenv(name)
    return default if v is None else v


def _first_env(*names: str, default: str | None = None) -> str | None:
    for n in names:
        v = os.getenv(n)
        if v is not None and v.strip() != "":
            return v
    return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_list(name: str, default: list[str]) -> list[str]:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return list(default)
    return [p.strip() for p in raw.replace(",", " ").split() if p.strip()]


def _env_path(name: str, default: Path) -> Path:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return Path(raw).expanduser()


@dataclass(frozen=True, slots=True)
class Settings:
    # ---- App / logging ----
    app_name: str
    log_level: str
    log_dir: Path

    # ---- Catalog / state ----
    catalog_source: str
    email_templates_path: Path
    state_path: Path
    activity_log_path: Path
    default_registration: str

    # ---- Email (Resend) ----
    resend_api_key: str | None
    resend_base_url: str
    email_from: str
    email_reply_to: str | None
    default_recipient: str

    # ---- Remote backup (GitHub contents API) ----
    github_token: str | None
    github_owner: str
    github_repo: str
    github_branch: str
    github_progress_dir: str
    github_api_url: str

    # ---- HTTP ----
    http_timeout: float
    cors_origins: list[str]

    @property
    def email_enabled(self) -> bool:
        return bool(self.resend_api_key)

    @property
    def backup_enabled(self) -> bool:
        return bool(self.github_token and self.github_owner and self.github_repo)

    @staticmethod
    def from_env() -> "Settings":
        # Catalog may be a local path or an http(s) URL.
        catalog_source = _env(_k("CATALOG_SOURCE"), str(CATALOG_PATH))

        return Settings(
            app_name=_env(_k("APP_NAME"), "fleetcheck"),
            log_level=_env(_k("LOG_LEVEL"), "INFO").upper(),
            log_dir=_env_path(_k("LOG_DIR"), LOG_DIR),
            catalog_source=catalog_source,
            email_templates_path=_env_path(_k("EMAIL_TEMPLATES_PATH"), EMAIL_TEMPLATES_PATH),
            state_path=_env_path(_k("STATE_PATH"), STATE_PATH),
            activity_log_path=_env_path(_k("ACTIVITY_LOG_PATH"), ACTIVITY_LOG_PATH),
            default_registration=_env(_k("DEFAULT_REGISTRATION"), "NEW").strip().upper() or "NEW",
            resend_api_key=_first_env(_k("RESEND_API_KEY"), "RESEND_API_KEY", default=None),
            resend_base_url=_env(_k("RESEND_BASE_URL"), "https://api.resend.com"),
            email_from=_env(_k("EMAIL_FROM"), "fleet@example.com"),
            email_reply_to=_first_env(_k("EMAIL_REPLY_TO"), default=None),
            default_recipient=_env(_k("DEFAULT_RECIPIENT"), "fleet@example.com"),
            github_token=_first_env(_k("GITHUB_TOKEN"), "GITHUB_TOKEN", default=None),
            github_owner=_env(_k("GITHUB_OWNER"), "").strip(),
            github_repo=_env(_k("GITHUB_REPO"), "").strip(),
            github_branch=_env(_k("GITHUB_BRANCH"), "main"),
            github_progress_dir=_env(_k("GITHUB_PROGRESS_DIR"), "progress").strip("/"),
            github_api_url=_env(_k("GITHUB_API_URL"), "https://api.github.com"),
            http_timeout=_env_float(_k("HTTP_TIMEOUT"), 30.0),
            cors_origins=_env_list(_k("CORS_ORIGINS"), ["*"]),
        )


def get_settings() -> Settings:
    return Settings.from_env()
