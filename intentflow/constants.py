"""Shared constants for the automation engine."""

DEFAULT_INDUSTRY = "general"
DEFAULT_PRIORITY = 50
DEFAULT_EVENT_SOURCE = "template"

MAX_JOB_RETRIES = 3
DEFAULT_BACKOFF_UNIT_SECONDS = 60.0
DEFAULT_STALE_JOB_SECONDS = 600.0
DEFAULT_WEBHOOK_TIMEOUT_SECONDS = 10.0

PROCESS_RUN_TOPIC = "process-run"

CONTACTS = "contacts"
LEADS = "leads"
ACTIVITIES = "activities"
