"""Structured logging helpers (token-safe)."""

from typing import Any


def build_log_context(
    *,
    user_id: str | None = None,
    mailbox: str | None = None,
    stage: str | None = None,
    trigger: str | None = None,
) -> dict[str, Any]:
    """Return a log context dict carrying only the fields that are set."""
    context: dict[str, Any] = {}
    if user_id:
        context["user_id"] = user_id
    if mailbox:
        context["mailbox"] = mask_email(mailbox)
    if stage:
        context["stage"] = stage
    if trigger:
        context["trigger"] = trigger
    return context


def mask_email(email: str | None) -> str:
    """Mask a mailbox address for logs: user@example.com -> use...@example.com"""
    if not email:
        return ""
    local, _, domain = email.partition("@")
    prefix = local[:3] if local else ""
    return f"{prefix}...@{domain}" if domain else f"{prefix}..."
