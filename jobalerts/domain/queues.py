"""Queue, job and schedule names shared by producers and workers."""

ALERT_MATCHING_QUEUE = "alert-matching"
NOTIFICATIONS_QUEUE = "notifications"
JOB_INDEX_QUEUE = "job-index"
AUDIT_CLEANUP_QUEUE = "audit-cleanup"
INVITATION_EXPIRATION_QUEUE = "invitation-expiration"

PROCESS_ALERTS_JOB = "process-job-alerts"
REDELIVER_MATCHES_JOB = "redeliver-unsent-matches"
ALERT_NOTIFICATION_JOB = "job-alert-notification"
INDEX_JOB = "indexJob"
UPDATE_JOB_INDEX = "updateJobIndex"
DELETE_JOB_INDEX = "deleteJobIndex"
CLEANUP_AUDIT_LOGS_JOB = "cleanup-audit-logs"
EXPIRE_INVITATIONS_JOB = "expire-invitations"

ALERT_MATCHING_SCHEDULES = {
    "daily": "alert-matching-daily",
    "weekly": "alert-matching-weekly",
    "monthly": "alert-matching-monthly",
}
REDELIVERY_SCHEDULE = "alert-match-redelivery"
AUDIT_CLEANUP_SCHEDULE = "audit-log-cleanup"
INVITATION_EXPIRATION_SCHEDULE = "invitation-expiration"
