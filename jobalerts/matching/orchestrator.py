"""Alert matching orchestration.

One run evaluates every eligible alert of a frequency tier against the
search index and hands newly matched jobs to the notification queue:

    select candidates → compile filter → search → diff against stored
    matches → persist new matches → enqueue notification → mark sent

Alerts are independent. A search, persistence or enqueue failure for one
alert is logged and counted, and the run moves on to the next alert.
"""

from datetime import datetime, timedelta
from typing import Callable, Dict, Iterable, List, Optional
from uuid import uuid4

from jobalerts.config.models import MatchingConfig, SearchConfig
from jobalerts.domain.models import Alert, AlertNotificationPayload, Frequency, SearchResult
from jobalerts.domain.queues import ALERT_NOTIFICATION_JOB, NOTIFICATIONS_QUEUE
from jobalerts.logging import get_logger, log_context
from jobalerts.persistence import AlertRepository, MatchRepository, PersistenceError, get_session
from jobalerts.queue import JobOptions, QueueError, QueueRuntime
from jobalerts.search import FilterQueryBuilder, SearchError, SearchIndexClient, TransientSearchError
from jobalerts.search.query_builder import compile_alert_filter
from jobalerts.utils.hashing import compute_notification_key
from jobalerts.utils.timestamps import utc_now

from .models import AlertOutcome, AlertRunResult

logger = get_logger(__name__, component="orchestrator")


def _match_scores(result: SearchResult) -> Dict[int, float]:
    """Normalise text-match scores to 0..1 relative to the best hit."""
    scored = [hit for hit in result.hits if hit.text_match]
    if not scored:
        return {}
    best = max(hit.text_match for hit in scored)
    return {hit.job_id: round(hit.text_match / best, 4) for hit in scored}


class AlertMatchingOrchestrator:
    """
    Runs alert matching for one frequency tier at a time.

    Collaborators are injected so the same orchestrator works against the
    real index and queue or against test doubles.
    """

    def __init__(
        self,
        search_client: SearchIndexClient,
        queue: QueueRuntime,
        settings: Optional[MatchingConfig] = None,
        search_settings: Optional[SearchConfig] = None,
        session_factory: Callable = get_session,
        clock: Callable[[], datetime] = utc_now,
        check_elapsed: bool = True,
        notification_options: Optional[JobOptions] = None,
    ):
        """
        Initialize the orchestrator.

        Args:
            search_client: Search index to query
            queue: Runtime receiving notification jobs
            settings: Page size, drift tolerance and redelivery grace
            search_settings: Collection name
            session_factory: Context manager factory for database sessions
            clock: Source of "now" (UTC)
            check_elapsed: Skip alerts whose tier interval has not elapsed since last_sent_at
            notification_options: Options for notification jobs (runtime defaults if None)
        """
        self.search_client = search_client
        self.queue = queue
        self.settings = settings or MatchingConfig()
        self.search_settings = search_settings or SearchConfig()
        self.session_factory = session_factory
        self.clock = clock
        self.check_elapsed = check_elapsed
        self.notification_options = notification_options
        self._builder = FilterQueryBuilder()

    def run(self, frequency) -> AlertRunResult:
        """
        Evaluate all eligible alerts of one tier.

        Args:
            frequency: "daily", "weekly" or "monthly" (or a Frequency)

        Returns:
            AlertRunResult with per-alert outcomes and aggregate counters

        Raises:
            ValueError: If the frequency is not a known tier
            PersistenceError: If candidate selection itself fails; the queue
                retries the whole job in that case
        """
        frequency = Frequency(frequency)
        now = self.clock()
        result = AlertRunResult(frequency=frequency.value, run_started_at=now)
        drift = timedelta(seconds=self.settings.drift_tolerance_seconds)

        with log_context(run_id=uuid4().hex, frequency=frequency.value):
            logger.info(
                f"Alert run started for {frequency.value} alerts",
                extra={"event": "alert.run.started"},
            )

            with self.session_factory() as session:
                candidates = AlertRepository(session).list_candidates(frequency)

            logger.info(
                f"Selected {len(candidates)} candidate alert(s)",
                extra={"event": "alert.run.candidates", "candidate_count": len(candidates)},
            )

            for alert in candidates:
                if self.check_elapsed and not alert.is_due(now, drift):
                    result.skipped_recent += 1
                    logger.debug(
                        f"Alert {alert.id} evaluated recently, skipping",
                        extra={
                            "event": "alert.skipped.recent",
                            "alert_id": alert.id,
                            "last_sent_at": alert.last_sent_at.isoformat(),
                        },
                    )
                    continue

                result.record(self._process_alert(alert, now))

            result.run_finished_at = self.clock()
            logger.info(
                f"Alert run completed: {result.processed} processed, "
                f"{result.matches_found} new match(es), {result.failed} failed",
                extra={
                    "event": "alert.run.completed",
                    "duration_ms": int(result.duration_seconds * 1000),
                    **result.to_dict(),
                },
            )

        return result

    def _process_alert(self, alert: Alert, now: datetime) -> AlertOutcome:
        outcome = AlertOutcome(alert_id=alert.id)

        with log_context(alert_id=alert.id):
            try:
                search_result = self._search(alert)
            except SearchError as e:
                transient = isinstance(e, TransientSearchError)
                logger.error(
                    f"Search failed for alert {alert.id}: {e}",
                    exc_info=not transient,
                    extra={
                        "event": "alert.search.failed",
                        "error_type": type(e).__name__,
                        "transient": transient,
                    },
                )
                outcome.failed = True
                outcome.error_message = str(e)
                return outcome

            job_ids = search_result.job_ids()

            try:
                new_job_ids = self._record_matches(alert, job_ids, _match_scores(search_result), now)
            except PersistenceError as e:
                logger.error(
                    f"Failed to record matches for alert {alert.id}: {e}",
                    exc_info=True,
                    extra={"event": "alert.persist.failed", "error_type": type(e).__name__},
                )
                outcome.failed = True
                outcome.error_message = str(e)
                return outcome

            outcome.new_job_ids = new_job_ids

            if not new_job_ids:
                logger.info(
                    f"No new matches for alert {alert.id} ({len(job_ids)} hit(s) already seen)",
                    extra={"event": "alert.matches.none", "hit_count": len(job_ids)},
                )
                return outcome

            logger.info(
                f"Alert {alert.id} has {len(new_job_ids)} new match(es)",
                extra={"event": "alert.matches.found", "match_count": len(new_job_ids)},
            )

            try:
                self._enqueue_notification(alert.id, alert.owner_id, new_job_ids)
            except QueueError as e:
                logger.error(
                    f"Failed to enqueue notification for alert {alert.id}; "
                    f"{len(new_job_ids)} match(es) left unsent for redelivery: {e}",
                    exc_info=True,
                    extra={"event": "alert.enqueue.failed", "error_type": type(e).__name__},
                )
                outcome.failed = True
                outcome.error_message = str(e)
                return outcome

            outcome.notification_queued = True

            try:
                with self.session_factory() as session:
                    MatchRepository(session).mark_sent(alert.id, new_job_ids)
                    AlertRepository(session).update_last_sent_at(alert.id, now)
            except PersistenceError as e:
                logger.error(
                    f"Notification for alert {alert.id} queued but matches not marked sent: {e}",
                    exc_info=True,
                    extra={"event": "alert.persist.failed", "error_type": type(e).__name__},
                )
                outcome.failed = True
                outcome.error_message = str(e)

        return outcome

    def _search(self, alert: Alert) -> SearchResult:
        filter_by = compile_alert_filter(
            alert, builder=self._builder, created_after=alert.last_sent_at
        )
        logger.debug(
            f"Searching for alert {alert.id}",
            extra={"event": "alert.search.started", "filter_by": filter_by},
        )
        return self.search_client.search(
            self.search_settings.collection,
            query=alert.search_query or "*",
            filter_by=filter_by,
            sort_by="createdAt:desc",
            page=1,
            per_page=self.settings.page_size,
        )

    def _record_matches(
        self, alert: Alert, job_ids: List[int], scores: Dict[int, float], now: datetime
    ) -> List[int]:
        """Insert matches for unseen jobs and return the ids this run owns.

        With no new matches ``last_sent_at`` is advanced in the same
        transaction. Pairs inserted concurrently by another run hit the
        unique constraint and are left out.
        """
        with self.session_factory() as session:
            matches = MatchRepository(session)
            existing = matches.existing_job_ids(alert.id, job_ids)
            unseen = [job_id for job_id in job_ids if job_id not in existing]
            new_job_ids = matches.create_matches(alert.id, unseen, matched_at=now, scores=scores)

            if not new_job_ids:
                AlertRepository(session).update_last_sent_at(alert.id, now)

        return new_job_ids

    def _enqueue_notification(self, alert_id: int, owner_id: int, job_ids: Iterable[int]) -> None:
        job_ids = list(job_ids)
        payload = AlertNotificationPayload(alert_id=alert_id, owner_id=owner_id, job_ids=job_ids)
        options = self.notification_options or self.queue.default_options
        options = options.copy_with(job_id=compute_notification_key(alert_id, job_ids))
        self.queue.enqueue(NOTIFICATIONS_QUEUE, ALERT_NOTIFICATION_JOB, payload.to_payload(), options)

    def redeliver_unsent(self, older_than: Optional[timedelta] = None) -> int:
        """
        Re-enqueue notifications for matches recorded but never marked sent.

        This covers runs where the enqueue (or the flip afterwards) failed.
        Matches younger than ``older_than`` are left alone because their run
        may still be in flight.

        Returns:
            Number of alerts whose matches were re-enqueued
        """
        if older_than is None:
            older_than = timedelta(seconds=self.settings.redelivery_grace_seconds)
        cutoff = self.clock() - older_than

        with log_context(run_id=uuid4().hex):
            with self.session_factory() as session:
                unsent = MatchRepository(session).find_unsent(created_before=cutoff)
                by_alert: Dict[int, List[int]] = {}
                for match in unsent:
                    by_alert.setdefault(match.alert_id, []).append(match.job_id)
                alerts = {
                    alert_id: AlertRepository(session).get(alert_id) for alert_id in by_alert
                }

            redelivered = 0
            for alert_id, job_ids in by_alert.items():
                alert = alerts.get(alert_id)
                if alert is None:
                    continue
                try:
                    self._enqueue_notification(alert_id, alert.owner_id, job_ids)
                    with self.session_factory() as session:
                        MatchRepository(session).mark_sent(alert_id, job_ids)
                except (QueueError, PersistenceError) as e:
                    logger.error(
                        f"Redelivery failed for alert {alert_id}: {e}",
                        exc_info=True,
                        extra={"event": "alert.redelivery.failed", "alert_id": alert_id},
                    )
                    continue
                redelivered += 1
                logger.info(
                    f"Redelivered {len(job_ids)} unsent match(es) for alert {alert_id}",
                    extra={"event": "alert.redelivery.queued", "alert_id": alert_id},
                )

            logger.info(
                f"Redelivery pass complete: {redelivered} alert(s) re-enqueued",
                extra={"event": "alert.redelivery.completed", "unsent_count": len(unsent)},
            )
        return redelivered
