"""Tests for the alert matching orchestrator against an in-memory queue."""

from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest

from jobalerts.domain.models import SearchResult
from jobalerts.domain.queues import ALERT_NOTIFICATION_JOB, NOTIFICATIONS_QUEUE
from jobalerts.matching import AlertMatchingOrchestrator
from jobalerts.persistence import (
    AlertRepository,
    MatchRepository,
    PersistenceError,
    close_database,
    get_session,
)
from jobalerts.queue import EnqueueError, InMemoryQueueRuntime
from jobalerts.search import SearchQueryError, TransientSearchError
from jobalerts.utils.hashing import compute_notification_key

from tests.conftest import NOW
from tests.helpers import make_hit, make_result


@pytest.fixture
def runtime(clock):
    return InMemoryQueueRuntime(clock=clock)


@pytest.fixture
def orchestrator(search_index, runtime, clock):
    return AlertMatchingOrchestrator(search_index, runtime, clock=clock)


def notification_jobs(runtime):
    return runtime.list_jobs(NOTIFICATIONS_QUEUE)


def stored_matches(alert_id):
    with get_session() as session:
        return MatchRepository(session).list_for_alert(alert_id)


def stored_alert(alert_id):
    with get_session() as session:
        return AlertRepository(session).get(alert_id)


class TestAlertRun:
    """Single-run behaviour of AlertMatchingOrchestrator.run."""

    def test_end_to_end_new_match(self, add_alert, search_index, runtime, orchestrator):
        """One hit produces one sent match and one notification job."""
        alert = add_alert()
        search_index.results["javascript developer"] = make_result(11)

        result = orchestrator.run("daily")

        assert result.processed == 1
        assert result.matches_found >= 1
        assert result.notifications_queued == 1
        assert result.failed == 0

        matches = stored_matches(alert.id)
        assert [(m.job_id, m.was_sent) for m in matches] == [(11, True)]

        jobs = notification_jobs(runtime)
        assert len(jobs) == 1
        assert jobs[0].name == ALERT_NOTIFICATION_JOB
        assert jobs[0].payload == {"alertId": alert.id, "ownerId": 1, "jobIds": [11]}
        assert jobs[0].job_key == compute_notification_key(alert.id, [11])

        assert stored_alert(alert.id).last_sent_at == NOW

    def test_search_request(self, add_alert, search_index, orchestrator):
        alert = add_alert(skills=["React"])

        orchestrator.run("daily")

        assert len(search_index.searches) == 1
        call = search_index.searches[0]
        assert call["collection"] == "jobs"
        assert call["query"] == "javascript developer"
        assert call["sort_by"] == "createdAt:desc"
        assert call["per_page"] == 50
        since = int((NOW - timedelta(hours=48)).timestamp())
        assert call["filter_by"] == (
            "((city:Seattle) || isRemote:true) && skills:React"
            f" && createdAt:>={since} && isActive:true"
        )

    def test_alert_without_query_searches_wildcard(self, add_alert, search_index, orchestrator):
        add_alert(search_query=None, skills=["Go"], city=None, include_remote=False)

        orchestrator.run("daily")

        assert search_index.searches[0]["query"] == "*"

    def test_never_sent_alert_has_no_created_bound(self, add_alert, search_index, orchestrator):
        add_alert(last_sent_at=None)

        orchestrator.run("daily")

        assert "createdAt" not in search_index.searches[0]["filter_by"]

    def test_no_match_updates_last_sent_at(self, add_alert, search_index, runtime, orchestrator):
        alert = add_alert()

        result = orchestrator.run("daily")

        assert result.processed == 1
        assert result.matches_found == 0
        assert notification_jobs(runtime) == []
        assert stored_matches(alert.id) == []
        assert stored_alert(alert.id).last_sent_at == NOW

    def test_paused_and_inactive_alerts_are_not_searched(self, add_alert, search_index, orchestrator):
        add_alert(is_paused=True)
        add_alert(is_active=False)

        result = orchestrator.run("daily")

        assert result.processed == 0
        assert search_index.searches == []

    def test_other_tiers_are_ignored(self, add_alert, search_index, orchestrator):
        add_alert(frequency="weekly", last_sent_at=None)

        assert orchestrator.run("daily").processed == 0
        assert orchestrator.run("weekly").processed == 1

    def test_unknown_frequency_raises(self, database, orchestrator):
        with pytest.raises(ValueError):
            orchestrator.run("hourly")

    def test_candidate_selection_failure_propagates(self, orchestrator):
        close_database()

        with pytest.raises(PersistenceError):
            orchestrator.run("daily")

    def test_match_scores_are_normalised(self, add_alert, search_index, orchestrator):
        alert = add_alert()
        search_index.results["javascript developer"] = SearchResult(
            hits=[make_hit(1, text_match=200), make_hit(2, text_match=100), make_hit(3)]
        )

        orchestrator.run("daily")

        scores = {m.job_id: m.match_score for m in stored_matches(alert.id)}
        assert scores == {1: 1.0, 2: 0.5, 3: 1.0}

    def test_result_dict_shape(self, add_alert, search_index, orchestrator):
        add_alert()
        search_index.results["javascript developer"] = make_result(11, 12)

        result = orchestrator.run("daily")

        assert result.to_dict() == {
            "processed": 1,
            "matchesFound": 2,
            "notificationsQueued": 1,
            "failed": 0,
            "skippedRecent": 0,
        }
        assert result.run_finished_at is not None


class TestDeduplication:
    """A job is never surfaced twice for the same alert."""

    def test_second_run_finds_no_new_matches(self, add_alert, search_index, runtime, orchestrator, clock):
        alert = add_alert()
        search_index.results["javascript developer"] = make_result(11)
        orchestrator.run("daily")

        clock.advance(days=1)
        result = orchestrator.run("daily")

        assert result.processed == 1
        assert result.matches_found == 0
        assert len(notification_jobs(runtime)) == 1
        assert len(stored_matches(alert.id)) == 1
        assert stored_alert(alert.id).last_sent_at == clock()

    def test_only_unseen_jobs_are_notified(self, add_alert, search_index, runtime, orchestrator, clock):
        alert = add_alert()
        search_index.results["javascript developer"] = make_result(11)
        orchestrator.run("daily")

        clock.advance(days=1)
        search_index.results["javascript developer"] = make_result(12, 11)
        result = orchestrator.run("daily")

        assert result.matches_found == 1
        jobs = notification_jobs(runtime)
        assert [job.payload["jobIds"] for job in jobs] == [[11], [12]]
        assert {m.job_id for m in stored_matches(alert.id)} == {11, 12}

    def test_concurrent_run_inserting_same_pair(self, add_alert, search_index, runtime, orchestrator):
        """A pair written by another run after the diff hits the unique constraint."""
        alert = add_alert()
        search_index.results["javascript developer"] = make_result(11)
        with get_session() as session:
            MatchRepository(session).create_matches(alert.id, [11], matched_at=NOW)

        with patch.object(MatchRepository, "existing_job_ids", return_value=set()):
            result = orchestrator.run("daily")

        assert result.matches_found == 0
        assert notification_jobs(runtime) == []
        assert len(stored_matches(alert.id)) == 1


class TestElapsedGate:
    def test_recently_sent_alert_is_skipped(self, add_alert, search_index, orchestrator):
        add_alert(last_sent_at=NOW - timedelta(hours=2))

        result = orchestrator.run("daily")

        assert result.skipped_recent == 1
        assert result.processed == 0
        assert search_index.searches == []

    def test_drift_tolerance_allows_early_schedule(self, add_alert, orchestrator):
        add_alert(last_sent_at=NOW - timedelta(hours=23, minutes=30))

        result = orchestrator.run("daily")

        assert result.processed == 1

    def test_monthly_alert_runs_after_february(self, add_alert, search_index, orchestrator, clock):
        add_alert(frequency="monthly", last_sent_at=datetime(2025, 2, 1, 8, 0, tzinfo=timezone.utc))
        clock.current = datetime(2025, 3, 1, 8, 0, tzinfo=timezone.utc)

        result = orchestrator.run("monthly")

        assert result.processed == 1
        assert result.skipped_recent == 0

    def test_gate_can_be_disabled(self, add_alert, search_index, runtime, clock):
        add_alert(last_sent_at=NOW - timedelta(hours=2))
        orchestrator = AlertMatchingOrchestrator(search_index, runtime, clock=clock, check_elapsed=False)

        result = orchestrator.run("daily")

        assert result.processed == 1
        assert result.skipped_recent == 0


class TestFailureIsolation:
    def test_search_failure_does_not_abort_batch(self, add_alert, search_index, runtime, orchestrator):
        failing = add_alert(name="failing", search_query="broken")
        healthy = add_alert(name="healthy", search_query="python")
        search_index.results["broken"] = TransientSearchError("timed out")
        search_index.results["python"] = make_result(21)

        result = orchestrator.run("daily")

        assert result.processed == 2
        assert result.failed == 1
        assert result.matches_found == 1
        outcomes = {o.alert_id: o for o in result.outcomes}
        assert outcomes[failing.id].failed
        assert "timed out" in outcomes[failing.id].error_message
        assert outcomes[healthy.id].notification_queued
        # A failed search leaves last_sent_at alone so the window is retried
        assert stored_alert(failing.id).last_sent_at == NOW - timedelta(hours=48)

    def test_rejected_query_is_isolated(self, add_alert, search_index, orchestrator):
        add_alert(search_query="bad")
        search_index.results["bad"] = SearchQueryError("Could not parse the filter query")

        result = orchestrator.run("daily")

        assert result.failed == 1

    def test_persistence_failure_is_isolated(self, add_alert, search_index, orchestrator):
        add_alert()
        search_index.results["javascript developer"] = make_result(11)

        with patch.object(MatchRepository, "create_matches", side_effect=PersistenceError("disk full")):
            result = orchestrator.run("daily")

        assert result.processed == 1
        assert result.failed == 1
        assert result.notifications_queued == 0


class TestEnqueueFailureAndRedelivery:
    def test_enqueue_failure_leaves_matches_unsent(self, add_alert, search_index, runtime, orchestrator):
        alert = add_alert()
        search_index.results["javascript developer"] = make_result(11)

        with patch.object(runtime, "enqueue", side_effect=EnqueueError("queue down")):
            result = orchestrator.run("daily")

        assert result.failed == 1
        assert result.matches_found == 1
        assert result.notifications_queued == 0
        assert [m.was_sent for m in stored_matches(alert.id)] == [False]
        assert stored_alert(alert.id).last_sent_at == NOW - timedelta(hours=48)

    def test_redelivery_enqueues_unsent_matches(self, add_alert, search_index, runtime, orchestrator, clock):
        alert = add_alert()
        search_index.results["javascript developer"] = make_result(11, 12)
        with patch.object(runtime, "enqueue", side_effect=EnqueueError("queue down")):
            orchestrator.run("daily")

        clock.advance(minutes=30)
        redelivered = orchestrator.redeliver_unsent()

        assert redelivered == 1
        jobs = notification_jobs(runtime)
        assert len(jobs) == 1
        assert sorted(jobs[0].payload["jobIds"]) == [11, 12]
        assert all(m.was_sent for m in stored_matches(alert.id))

    def test_redelivery_skips_recent_matches(self, add_alert, search_index, runtime, orchestrator):
        add_alert()
        search_index.results["javascript developer"] = make_result(11)
        with patch.object(runtime, "enqueue", side_effect=EnqueueError("queue down")):
            orchestrator.run("daily")

        assert orchestrator.redeliver_unsent() == 0
        assert notification_jobs(runtime) == []

    def test_redelivery_after_failed_flip_does_not_duplicate(
        self, add_alert, search_index, runtime, orchestrator, clock
    ):
        """Notification queued but mark_sent failed: redelivery reuses the same job key."""
        alert = add_alert()
        search_index.results["javascript developer"] = make_result(11)
        with patch.object(MatchRepository, "mark_sent", side_effect=PersistenceError("locked")):
            result = orchestrator.run("daily")

        assert result.notifications_queued == 1
        assert result.failed == 1

        clock.advance(hours=1)
        assert orchestrator.redeliver_unsent() == 1

        assert len(notification_jobs(runtime)) == 1
        assert all(m.was_sent for m in stored_matches(alert.id))

    def test_nothing_to_redeliver(self, database, runtime, orchestrator):
        assert orchestrator.redeliver_unsent() == 0
        assert notification_jobs(runtime) == []
