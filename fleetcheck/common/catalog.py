"""Task catalog loading, phase grouping, and email template loading."""

from __future__ import annotations

import json
import logging
from collections.abc import Sequence
from pathlib import Path
from typing import Any

import httpx
from pydantic import ValidationError

from fleetcheck.common.errors import FetchError
from fleetcheck.common.io import read_json
from fleetcheck.common.models import TaskDefinition

logger = logging.getLogger(__name__)

PhaseGroups = dict[str, list[TaskDefinition]]
EmailTemplates = dict[str, dict[str, str]]


def _is_url(source: str | Path) -> bool:
    return isinstance(source, str) and source.startswith(("http://", "https://"))


def _fetch_payload(source: str | Path, timeout: float, transport: httpx.BaseTransport | None) -> Any:
    if _is_url(source):
        try:
            with httpx.Client(timeout=timeout, transport=transport) as client:
                response = client.get(str(source))
        except httpx.HTTPError as exc:
            raise FetchError(f"Failed to fetch catalog from {source}: {exc}") from exc
        if response.status_code != 200:
            raise FetchError(
                f"Failed to fetch catalog from {source}. "
                f"Server responded with status: {response.status_code} ({response.reason_phrase})"
            )
        try:
            return response.json()
        except json.JSONDecodeError as exc:
            raise FetchError(f"Catalog at {source} is not valid JSON: {exc}") from exc

    path = Path(source)
    try:
        return read_json(path)
    except FileNotFoundError as exc:
        raise FetchError(f"Catalog file not found: {path}") from exc
    except (OSError, json.JSONDecodeError) as exc:
        raise FetchError(f"Could not read catalog {path}: {exc}") from exc


def load_template(
    source: str | Path,
    *,
    timeout: float = 30.0,
    transport: httpx.BaseTransport | None = None,
) -> list[TaskDefinition]:
    """Load the ordered task template from a JSON file path or http(s) URL.

    Any failure (missing resource, bad JSON, invalid entry, duplicate
    ``taskId``) raises FetchError; no checklist can exist without a template.
    """
    payload = _fetch_payload(source, timeout, transport)
    if not isinstance(payload, list):
        raise FetchError(f"Catalog {source} must be a JSON array of task definitions")

    template: list[TaskDefinition] = []
    seen: set[str] = set()
    for index, raw in enumerate(payload):
        try:
            definition = TaskDefinition.model_validate(raw)
        except ValidationError as exc:
            raise FetchError(f"Invalid task definition at index {index}: {exc}") from exc
        if definition.task_id in seen:
            raise FetchError(f"Duplicate taskId in catalog: {definition.task_id}")
        seen.add(definition.task_id)
        template.append(definition)

    logger.info("Loaded task catalog source=%s tasks=%d", source, len(template))
    return template


def group_by_phase(template: Sequence[TaskDefinition]) -> PhaseGroups:
    groups: PhaseGroups = {}
    for definition in template:
        groups.setdefault(definition.phase, []).append(definition)
    return groups


def load_email_templates(path: str | Path) -> EmailTemplates:
    """Load email templates. Missing or broken files degrade to no templates."""
    try:
        payload = read_json(Path(path))
    except FileNotFoundError:
        logger.warning("Email templates not found at %s; emails will use empty content", path)
        return {}
    except (OSError, json.JSONDecodeError):
        logger.exception("Could not load email templates from %s", path)
        return {}

    if not isinstance(payload, dict):
        logger.warning("Email templates at %s must be an object; ignoring", path)
        return {}

    templates: EmailTemplates = {}
    for name, entry in payload.items():
        if not isinstance(entry, dict):
            continue
        templates[str(name)] = {
            "subject": str(entry.get("subject", "")),
            "body": str(entry.get("body", "")),
        }
    return templates
