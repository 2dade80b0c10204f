"""Outbound collaborators: email notifications and remote backup."""

from __future__ import annotations

from .email_notifier import EmailNotifier, ResendClient, render_email, resolve_recipients
from .github_backup import BackupEntry, GitHubBackup, backup_path

__all__ = [
    "EmailNotifier",
    "ResendClient",
    "render_email",
    "resolve_recipients",
    "BackupEntry",
    "GitHubBackup",
    "backup_path",
]
