"""Path helpers for project directories."""

from __future__ import annotations

from pathlib import Path


ROOT_DIR = Path(__file__).resolve().parents[2]
DATA_DIR = ROOT_DIR / "data"
STATE_PATH = DATA_DIR / "checklists.json"
ACTIVITY_LOG_PATH = DATA_DIR / "activity-log.jsonl"
LOG_DIR = DATA_DIR / "logs"

CATALOG_DIR = ROOT_DIR / "catalog"
CATALOG_PATH = CATALOG_DIR / "checklist-data.json"
EMAIL_TEMPLATES_PATH = CATALOG_DIR / "email-templates.json"
