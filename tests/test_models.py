from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from zoneinfo import ZoneInfo

import pytest

from hr_pulse.config import load_settings
from hr_pulse.models import (
    Alert,
    AlertKind,
    Entity,
    combine_date_time,
    is_cancelled,
    leave_days,
    meeting_duration,
    parse_clock,
    parse_instant,
)
from hr_pulse.retry import Backoff


def test_parse_instant_variants():
    utc = timezone.utc
    assert parse_instant(1735725600, utc) == datetime(2025, 1, 1, 10, 0, tzinfo=utc)
    assert parse_instant(1735725600000, utc) == datetime(2025, 1, 1, 10, 0, tzinfo=utc)
    assert parse_instant("2025-01-01T10:00:00Z", utc) == datetime(2025, 1, 1, 10, 0, tzinfo=utc)
    assert parse_instant("2025-01-01T10:00:00+05:30", utc).utcoffset() == timedelta(hours=5, minutes=30)
    assert parse_instant("", utc) is None
    assert parse_instant("yesterday", utc) is None
    assert parse_instant(True, utc) is None


def test_naive_dates_use_configured_zone():
    kolkata = ZoneInfo("Asia/Kolkata")
    instant = combine_date_time("2025-01-01", "10:00", kolkata)
    assert instant.astimezone(timezone.utc) == datetime(2025, 1, 1, 4, 30, tzinfo=timezone.utc)


def test_parse_clock_formats():
    assert parse_clock("09:30") == (9, 30, 0)
    assert parse_clock("17:45:10") == (17, 45, 10)
    assert parse_clock("2:15 pm") == (14, 15, 0)
    assert parse_clock("25:00") is None
    assert parse_clock(None) is None


def test_meeting_duration_defaults_and_rejects():
    assert meeting_duration({}) == timedelta(minutes=60)
    assert meeting_duration({"duration": "45"}) == timedelta(minutes=45)
    assert meeting_duration({"duration": "long"}) is None


def test_cancelled_status_and_leave_days():
    assert is_cancelled({"status": "Cancelled"})
    assert not is_cancelled({"status": "scheduled"})
    assert not is_cancelled({})
    assert leave_days(date(2025, 1, 10), date(2025, 1, 12)) == 3
    assert leave_days(date(2025, 1, 10), date(2025, 1, 10)) == 1


def test_entity_from_snapshot_keeps_scalar_attributes():
    entity = Entity.from_snapshot("E1", {"name": "Asha", "email": "a@example.com", "attendance": {"a1": {}}})
    assert entity.name == "Asha"
    assert dict(entity.attributes) == {"email": "a@example.com"}
    assert Entity.from_snapshot("E2", None).name == "E2"


def test_alert_payload():
    start = datetime(2025, 1, 1, 10, 0, tzinfo=timezone.utc)
    alert = Alert(AlertKind.REMINDER, "E1", "m1", "Standup", start, start - timedelta(minutes=5), "https://meet/x")
    payload = alert.to_dict()
    assert payload["message"] == "'Standup' starts at 10:00"
    assert payload["meetingId"] == "m1"
    assert payload["meetingLink"] == "https://meet/x"


def test_backoff_grows_and_caps():
    backoff = Backoff(base=1.0, cap=10.0)
    assert [backoff.delay(attempt) for attempt in range(1, 6)] == [1.0, 2.0, 4.0, 8.0, 10.0]
    assert Backoff(base=0).delay(4) == 0.0


def test_load_settings_from_environment(monkeypatch, tmp_path):
    monkeypatch.setenv("ADMIN_ID", "admin-1")
    monkeypatch.setenv("API_KEY", "k")
    monkeypatch.setenv("STORE_BACKEND", "memory")
    monkeypatch.setenv("DATABASE_PATH", str(tmp_path / "db.sqlite"))
    monkeypatch.setenv("ROSTER_ACTIVE_ONLY", "false")
    monkeypatch.setenv("NOTIFICATION_INTERVAL_SECONDS", "15")

    settings = load_settings(str(tmp_path / "missing.env"))

    assert settings.store_backend == "memory"
    assert settings.roster_active_only is False
    assert settings.notification_interval_seconds == 15.0
    assert settings.database_path == tmp_path / "db.sqlite"


@pytest.mark.parametrize(
    "env",
    [
        {"API_KEY": "k", "STORE_BACKEND": "memory"},
        {"ADMIN_ID": "a", "STORE_BACKEND": "memory"},
        {"ADMIN_ID": "a", "API_KEY": "k", "STORE_BACKEND": "postgres"},
        {"ADMIN_ID": "a", "API_KEY": "k", "STORE_BACKEND": "firebase"},
    ],
)
def test_load_settings_rejects_incomplete_configuration(monkeypatch, tmp_path, env):
    for name in ("ADMIN_ID", "API_KEY", "STORE_BACKEND", "STORE_URL"):
        monkeypatch.delenv(name, raising=False)
    for name, value in env.items():
        monkeypatch.setenv(name, value)

    with pytest.raises(RuntimeError):
        load_settings(str(tmp_path / "missing.env"))
