"""Tests for structured logging helpers."""

import pytest

from mailsync.core.structured_logging import build_log_context, mask_email


def test_build_log_context_includes_only_provided_fields():
    context = build_log_context(
        user_id="user-1",
        mailbox="office@example.com",
        stage="fetch",
        trigger="webhook",
    )

    assert context == {
        "user_id": "user-1",
        "mailbox": "off...@example.com",
        "stage": "fetch",
        "trigger": "webhook",
    }


def test_build_log_context_ignores_empty_fields():
    context = build_log_context(user_id="", mailbox=None, stage="persist")

    assert context == {"stage": "persist"}


def test_mask_email():
    assert mask_email("office@example.com") == "off...@example.com"
    assert mask_email("nodomain") == "nod..."
    assert mask_email(None) == ""


def test_build_log_context_only_accepts_sync_fields():
    with pytest.raises(TypeError):
        build_log_context(stage="worker", route="/internal")
