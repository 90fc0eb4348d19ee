import json

from usage_guard.modules.notifications.domain.local_mode import (
    LOCAL_EMAIL,
    is_placeholder_email,
    read_local_notification_email,
)


def test_returns_email_when_configured(tmp_path):
    config = tmp_path / "config.json"
    config.write_text(json.dumps({"notificationEmail": "user@real.example"}))
    assert read_local_notification_email(config) == "user@real.example"


def test_returns_none_without_notification_email(tmp_path):
    config = tmp_path / "config.json"
    config.write_text(json.dumps({"apiKey": "existing"}))
    assert read_local_notification_email(config) is None


def test_returns_none_when_file_missing(tmp_path):
    assert read_local_notification_email(tmp_path / "missing.json") is None


def test_returns_none_for_corrupt_file(tmp_path):
    config = tmp_path / "config.json"
    config.write_text("{not json")
    assert read_local_notification_email(config) is None


def test_placeholder_detection():
    assert is_placeholder_email(LOCAL_EMAIL)
    assert is_placeholder_email(LOCAL_EMAIL.upper())
    assert not is_placeholder_email("owner@example.com")
    assert not is_placeholder_email(None)
