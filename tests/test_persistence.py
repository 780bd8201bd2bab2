"""Unit tests for the persistence layer."""

from datetime import datetime, timedelta, timezone

import pytest

from jobalerts.domain.models import Alert, AlertMatch, Frequency, Invitation, InvitationStatus
from jobalerts.persistence import (
    AlertRepository,
    AuditLogRepository,
    DatabaseConnectionError,
    InvitationRepository,
    MatchRepository,
    RecordNotFoundError,
    close_database,
    get_session,
    init_database,
)
from jobalerts.persistence.database import _redact_url
from jobalerts.persistence.schema import format_datetime, parse_datetime

NOW = datetime(2025, 1, 6, 8, 0, tzinfo=timezone.utc)


class TestDatabaseInitialization:
    """Tests for database initialization."""

    def test_init_database_creates_parent_directories(self, tmp_path):
        db_file = tmp_path / "subdir" / "nested" / "test.db"

        init_database(f"sqlite:///{db_file}")
        try:
            assert db_file.exists()
            with get_session() as session:
                assert session is not None
        finally:
            close_database()

    def test_init_database_invalid_url_raises_error(self):
        with pytest.raises(DatabaseConnectionError):
            init_database("")

        with pytest.raises(DatabaseConnectionError):
            init_database(None)

    def test_get_session_before_init_raises(self):
        close_database()

        with pytest.raises(DatabaseConnectionError, match="not initialized"):
            with get_session():
                pass

    def test_schema_creation_is_idempotent(self, tmp_path):
        url = f"sqlite:///{tmp_path / 'test.db'}"

        init_database(url)
        init_database(url)
        close_database()

    def test_session_rolls_back_on_error(self, database):
        with pytest.raises(RuntimeError):
            with get_session() as session:
                AuditLogRepository(session).add("login", NOW)
                raise RuntimeError("boom")

        with get_session() as session:
            assert AuditLogRepository(session).count() == 0

    def test_redact_url_hides_password(self):
        assert _redact_url("postgresql://app:hunter2@db:5432/jobs") == "postgresql://app:***@db:5432/jobs"
        assert _redact_url("sqlite:///./data/x.db") == "sqlite:///./data/x.db"


class TestDatetimeStorage:
    def test_round_trip(self):
        stored = format_datetime(NOW)

        assert stored == "2025-01-06T08:00:00.000000Z"
        assert parse_datetime(stored) == NOW

    def test_naive_is_treated_as_utc(self):
        assert format_datetime(datetime(2025, 1, 6, 8, 0)) == "2025-01-06T08:00:00.000000Z"

    def test_none(self):
        assert format_datetime(None) is None
        assert parse_datetime(None) is None


class TestAlertRepository:
    """Tests for AlertRepository."""

    def test_add_and_get(self, add_alert):
        alert = add_alert(skills=["Python"], job_types=["full-time"])

        with get_session() as session:
            loaded = AlertRepository(session).get(alert.id)

        assert loaded.id == alert.id
        assert loaded.skills == ["Python"]
        assert loaded.job_types == ["full-time"]
        assert loaded.frequency == Frequency.DAILY
        assert loaded.last_sent_at == NOW - timedelta(hours=48)

    def test_get_missing_returns_none(self, database):
        with get_session() as session:
            assert AlertRepository(session).get(999) is None

    def test_list_candidates_filters_tier_and_state(self, add_alert):
        active = add_alert(name="active")
        add_alert(name="paused", is_paused=True)
        add_alert(name="inactive", is_active=False)
        add_alert(name="weekly", frequency="weekly")

        with get_session() as session:
            candidates = AlertRepository(session).list_candidates(Frequency.DAILY)

        assert [a.id for a in candidates] == [active.id]

    def test_list_candidates_orders_never_sent_first(self, add_alert):
        older = add_alert(name="older", last_sent_at=NOW - timedelta(days=3))
        never = add_alert(name="never", last_sent_at=None)
        newer = add_alert(name="newer", last_sent_at=NOW - timedelta(days=1))

        with get_session() as session:
            candidates = AlertRepository(session).list_candidates("daily")

        assert [a.id for a in candidates] == [never.id, older.id, newer.id]

    def test_update_last_sent_at(self, add_alert):
        alert = add_alert()

        with get_session() as session:
            AlertRepository(session).update_last_sent_at(alert.id, NOW)

        with get_session() as session:
            assert AlertRepository(session).get(alert.id).last_sent_at == NOW

    def test_update_last_sent_at_missing_alert(self, database):
        with pytest.raises(RecordNotFoundError):
            with get_session() as session:
                AlertRepository(session).update_last_sent_at(42, NOW)


class TestMatchRepository:
    """Tests for MatchRepository."""

    def test_create_matches_and_existing(self, add_alert):
        alert = add_alert()

        with get_session() as session:
            inserted = MatchRepository(session).create_matches(
                alert.id, [101, 102], matched_at=NOW, scores={101: 0.5}
            )

        assert inserted == [101, 102]
        with get_session() as session:
            repo = MatchRepository(session)
            assert repo.existing_job_ids(alert.id, [101, 102, 103]) == {101, 102}
            matches = repo.list_for_alert(alert.id)

        assert [m.match_score for m in matches] == [0.5, 1.0]
        assert not any(m.was_sent for m in matches)

    def test_existing_job_ids_empty_input(self, add_alert):
        alert = add_alert()

        with get_session() as session:
            assert MatchRepository(session).existing_job_ids(alert.id, []) == set()

    def test_duplicate_pair_is_skipped(self, add_alert):
        """The (alert, job) pair is unique; a second insert is a no-op."""
        alert = add_alert()

        with get_session() as session:
            repo = MatchRepository(session)
            assert repo.insert_if_absent(AlertMatch(alert_id=alert.id, job_id=5, matched_at=NOW))
            assert not repo.insert_if_absent(AlertMatch(alert_id=alert.id, job_id=5, matched_at=NOW))
            inserted = repo.create_matches(alert.id, [5, 6], matched_at=NOW)

        assert inserted == [6]
        with get_session() as session:
            assert len(MatchRepository(session).list_for_alert(alert.id)) == 2

    def test_same_job_for_different_alerts(self, add_alert):
        first = add_alert(name="first")
        second = add_alert(name="second")

        with get_session() as session:
            repo = MatchRepository(session)
            repo.create_matches(first.id, [5], matched_at=NOW)
            assert repo.create_matches(second.id, [5], matched_at=NOW) == [5]

    def test_mark_sent(self, add_alert):
        alert = add_alert()
        with get_session() as session:
            MatchRepository(session).create_matches(alert.id, [1, 2, 3], matched_at=NOW)

        with get_session() as session:
            assert MatchRepository(session).mark_sent(alert.id, [1, 2]) == 2
            assert MatchRepository(session).mark_sent(alert.id, [1, 2]) == 0
            assert MatchRepository(session).mark_sent(alert.id, []) == 0

        with get_session() as session:
            sent = {m.job_id: m.was_sent for m in MatchRepository(session).list_for_alert(alert.id)}
        assert sent == {1: True, 2: True, 3: False}

    def test_find_unsent(self, add_alert):
        alert = add_alert()
        with get_session() as session:
            repo = MatchRepository(session)
            repo.create_matches(alert.id, [1], matched_at=NOW - timedelta(hours=1))
            repo.create_matches(alert.id, [2], matched_at=NOW)
            repo.create_matches(alert.id, [3], matched_at=NOW - timedelta(hours=1))
            repo.mark_sent(alert.id, [3])

        with get_session() as session:
            unsent = MatchRepository(session).find_unsent(created_before=NOW - timedelta(minutes=10))

        assert [m.job_id for m in unsent] == [1]


class TestAuditLogRepository:
    def test_delete_older_than(self, database):
        with get_session() as session:
            repo = AuditLogRepository(session)
            repo.add("login", NOW - timedelta(days=100), user_id=1)
            repo.add("update", NOW - timedelta(days=91), details={"field": "name"})
            repo.add("login", NOW - timedelta(days=10), user_id=1)

        with get_session() as session:
            deleted = AuditLogRepository(session).delete_older_than(NOW - timedelta(days=90))

        assert deleted == 2
        with get_session() as session:
            assert AuditLogRepository(session).count() == 1


class TestInvitationRepository:
    def test_expire_pending(self, database):
        with get_session() as session:
            repo = InvitationRepository(session)
            overdue = repo.add(
                Invitation(organization_id=1, email="a@example.com", expires_at=NOW - timedelta(days=1)),
                NOW - timedelta(days=8),
            )
            repo.add(
                Invitation(organization_id=1, email="b@example.com", expires_at=NOW + timedelta(days=1)),
                NOW,
            )
            repo.add(
                Invitation(
                    organization_id=1,
                    email="c@example.com",
                    status=InvitationStatus.ACCEPTED,
                    expires_at=NOW - timedelta(days=1),
                ),
                NOW,
            )

        with get_session() as session:
            repo = InvitationRepository(session)
            expired = repo.list_expired_pending(NOW)
            assert [i.id for i in expired] == [overdue.id]
            assert repo.mark_expired(overdue.id, NOW)
            assert not repo.mark_expired(overdue.id, NOW)

        with get_session() as session:
            invitation = InvitationRepository(session).get(overdue.id)
        assert invitation.status == InvitationStatus.EXPIRED
        assert invitation.expired_at == NOW
