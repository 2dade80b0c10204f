"""GitHub contents API adapter for remote progress backups."""

from __future__ import annotations

import base64
import logging
from dataclasses import dataclass
from datetime import date
from typing import Any

import httpx

from fleetcheck.common.errors import RemoteBackupError

logger = logging.getLogger(__name__)

GITHUB_API_URL = "https://api.github.com"


@dataclass
class BackupEntry:
    name: str
    path: str


def backup_path(registration: str, directory: str = "progress", on: date | None = None) -> str:
    """``progress/vehicle_<REG>_<YYYYMMDD>.json``; one file per vehicle per day."""
    stamp = (on or date.today()).strftime("%Y%m%d")
    return f"{directory.strip('/')}/vehicle_{registration or 'NEW'}_{stamp}.json"


def _error_message(response: httpx.Response) -> str:
    try:
        error_json = response.json()
    except ValueError:
        return response.text
    if isinstance(error_json, dict):
        return str(error_json.get("message", response.text))
    return response.text


class GitHubBackup:
    """Stores checklist JSON files in a repository directory."""

    def __init__(
        self,
        token: str,
        owner: str,
        repo: str,
        *,
        branch: str = "main",
        directory: str = "progress",
        api_url: str = GITHUB_API_URL,
        timeout: float = 30.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.token = token
        self.owner = owner
        self.repo = repo
        self.branch = branch
        self.directory = directory.strip("/")
        self.api_url = api_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    def _client(self) -> httpx.Client:
        headers = {
            "Authorization": f"token {self.token}",
            "Accept": "application/vnd.github.v3+json",
            "User-Agent": "FleetCheck/1.0",
        }
        return httpx.Client(
            base_url=self.api_url,
            headers=headers,
            timeout=self.timeout,
            transport=self._transport,
        )

    def _contents_url(self, path: str) -> str:
        return f"/repos/{self.owner}/{self.repo}/contents/{path.lstrip('/')}"

    def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            with self._client() as client:
                return client.request(method, self._contents_url(path), **kwargs)
        except httpx.TimeoutException as exc:
            raise RemoteBackupError("GitHub API request timed out") from exc
        except httpx.HTTPError as exc:
            raise RemoteBackupError(f"GitHub API request failed: {exc}") from exc

    def list_backups(self) -> list[BackupEntry]:
        """JSON files in the backup directory, most recent name first."""
        response = self._request("GET", self.directory, params={"ref": self.branch})
        if response.status_code == 404:
            raise RemoteBackupError(f'The "{self.directory}" directory does not exist in the repository.')
        if response.status_code != 200:
            raise RemoteBackupError(f"GitHub API error ({response.status_code}): {_error_message(response)}")

        items = response.json()
        if not isinstance(items, list):
            raise RemoteBackupError(f"{self.directory} is not a directory")
        entries = [
            BackupEntry(name=item["name"], path=item["path"])
            for item in items
            if isinstance(item, dict) and item.get("type") == "file" and str(item.get("name", "")).endswith(".json")
        ]
        entries.sort(key=lambda entry: entry.name, reverse=True)
        return entries

    def _existing_sha(self, path: str) -> str | None:
        response = self._request("GET", path, params={"ref": self.branch})
        if response.status_code == 200:
            return response.json().get("sha")
        if response.status_code == 404:
            return None
        raise RemoteBackupError(f"GitHub API error (GET) {response.status_code}: {_error_message(response)}")

    def upload(self, path: str, content: str, message: str) -> dict[str, Any]:
        """Create or update ``path`` with ``content``; returns the commit info."""
        payload: dict[str, Any] = {
            "message": message,
            "content": base64.b64encode(content.encode("utf-8")).decode("ascii"),
            "branch": self.branch,
        }
        sha = self._existing_sha(path)
        if sha:
            payload["sha"] = sha

        response = self._request("PUT", path, json=payload)
        if response.status_code not in (200, 201):
            raise RemoteBackupError(f"GitHub API error (PUT) {response.status_code}: {_error_message(response)}")
        logger.info("Backup uploaded path=%s updated=%s", path, bool(sha))
        data = response.json()
        return {
            "path": path,
            "sha": (data.get("content") or {}).get("sha"),
            "commit": (data.get("commit") or {}).get("sha"),
            "updated": bool(sha),
        }

    def download(self, path: str) -> str:
        response = self._request("GET", path, params={"ref": self.branch})
        if response.status_code != 200:
            raise RemoteBackupError(f"Failed to fetch file content ({response.status_code}): {_error_message(response)}")
        data = response.json()
        encoded = data.get("content") if isinstance(data, dict) else None
        if not isinstance(encoded, str):
            raise RemoteBackupError(f"No file content returned for {path}")
        try:
            return base64.b64decode(encoded).decode("utf-8")
        except (ValueError, UnicodeDecodeError) as exc:
            raise RemoteBackupError(f"Could not decode {path}: {exc}") from exc
