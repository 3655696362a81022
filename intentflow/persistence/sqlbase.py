"""Shared SQL implementation of the automation repository.

Queries are written once with ``?`` placeholders; backends supply the
connection helpers, column types and value encoders.
"""

from __future__ import annotations

import abc
import json
import uuid
from datetime import datetime
from typing import Any, Iterable, Mapping, Optional, Sequence

from ..utils.clock import utcnow
from .models import (
    Business,
    BusinessAutomationSettings,
    Enrollment,
    Event,
    InstalledRecipePack,
    IntentRecipeMapping,
    JobStatus,
    RecipePack,
    RecipeToggle,
    RunStatus,
    Step,
    TriggerType,
    WorkflowDefinition,
    WorkflowJob,
    WorkflowRun,
)
from .repository import AutomationRepository

SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS businesses (
        id TEXT PRIMARY KEY,
        name TEXT,
        industry TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS business_automation_settings (
        business_id TEXT PRIMARY KEY,
        automations_enabled {bool} NOT NULL,
        dedupe_window_minutes INTEGER
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS intent_recipe_mappings (
        id {serial},
        intent TEXT NOT NULL,
        industry TEXT NOT NULL,
        recipe_ids {json} NOT NULL,
        priority INTEGER NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS recipe_toggles (
        business_id TEXT NOT NULL,
        recipe_id TEXT NOT NULL,
        enabled {bool} NOT NULL,
        PRIMARY KEY (business_id, recipe_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS recipe_packs (
        pack_id TEXT PRIMARY KEY,
        name TEXT,
        recipes {json} NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS installed_recipe_packs (
        business_id TEXT NOT NULL,
        pack_id TEXT NOT NULL,
        enabled {bool} NOT NULL,
        PRIMARY KEY (business_id, pack_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS workflow_definitions (
        id TEXT PRIMARY KEY,
        business_id TEXT,
        industry TEXT,
        name TEXT NOT NULL,
        trigger_type TEXT NOT NULL,
        trigger_config {json} NOT NULL,
        steps {json} NOT NULL,
        is_active {bool} NOT NULL,
        priority INTEGER,
        recipe_id TEXT,
        max_enrollments_per_contact INTEGER,
        reenroll_after_days INTEGER,
        last_run_at {ts}
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS events (
        id TEXT PRIMARY KEY,
        business_id TEXT NOT NULL,
        intent TEXT NOT NULL,
        payload {json} NOT NULL,
        dedupe_key TEXT NOT NULL,
        contact_id TEXT,
        source TEXT NOT NULL,
        source_url TEXT,
        occurred_at {ts} NOT NULL,
        processed {bool} NOT NULL,
        UNIQUE (business_id, dedupe_key)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS enrollments (
        contact_id TEXT NOT NULL,
        workflow_id TEXT NOT NULL,
        enrollment_count INTEGER NOT NULL,
        first_enrolled_at {ts},
        last_enrolled_at {ts},
        last_completed_at {ts},
        blocked_until {ts},
        PRIMARY KEY (contact_id, workflow_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS workflow_runs (
        id TEXT PRIMARY KEY,
        workflow_id TEXT NOT NULL,
        event_id TEXT,
        contact_id TEXT,
        status TEXT NOT NULL,
        context {json} NOT NULL,
        idempotency_key TEXT NOT NULL UNIQUE,
        created_at {ts} NOT NULL,
        completed_at {ts},
        result {json}
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS workflow_jobs (
        id TEXT PRIMARY KEY,
        workflow_run_id TEXT NOT NULL,
        step_index INTEGER NOT NULL,
        action_type TEXT NOT NULL,
        action_config {json} NOT NULL,
        status TEXT NOT NULL,
        retry_count INTEGER NOT NULL,
        scheduled_at {ts} NOT NULL,
        claimed_at {ts},
        processed_at {ts},
        error_message TEXT,
        result {json},
        UNIQUE (workflow_run_id, step_index)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS crm_records (
        collection TEXT NOT NULL,
        id TEXT NOT NULL,
        data {json} NOT NULL,
        created_at {ts} NOT NULL,
        updated_at {ts},
        PRIMARY KEY (collection, id)
    )
    """,
]

_WORKFLOW_COLUMNS = (
    "id, business_id, industry, name, trigger_type, trigger_config, steps, "
    "is_active, priority, recipe_id, max_enrollments_per_contact, "
    "reenroll_after_days, last_run_at"
)
_EVENT_COLUMNS = (
    "id, business_id, intent, payload, dedupe_key, contact_id, source, "
    "source_url, occurred_at, processed"
)
_RUN_COLUMNS = (
    "id, workflow_id, event_id, contact_id, status, context, idempotency_key, "
    "created_at, completed_at, result"
)
_JOB_COLUMNS = (
    "id, workflow_run_id, step_index, action_type, action_config, status, "
    "retry_count, scheduled_at, claimed_at, processed_at, error_message, result"
)
_ENROLLMENT_COLUMNS = (
    "contact_id, workflow_id, enrollment_count, first_enrolled_at, "
    "last_enrolled_at, last_completed_at, blocked_until"
)


class SQLAutomationRepository(AutomationRepository, metaclass=abc.ABCMeta):
    """Automation repository over a relational database."""

    column_types: Mapping[str, str] = {}

    # ------------------------------------------------------------------
    # Backend hooks
    @abc.abstractmethod
    async def _execute(self, query: str, *params: Any) -> int:
        """Run a statement and return the affected row count.

        Raises ``UniqueViolation`` when a uniqueness constraint rejects it.
        """

    @abc.abstractmethod
    async def _fetchone(self, query: str, *params: Any) -> Mapping[str, Any] | None:
        """Return the first row of a query."""

    @abc.abstractmethod
    async def _fetchall(self, query: str, *params: Any) -> list[Mapping[str, Any]]:
        """Return all rows of a query."""

    def _ts(self, value: Optional[datetime]) -> Any:
        return value

    def _from_ts(self, value: Any) -> Optional[datetime]:
        return value

    def _json(self, value: Any) -> Optional[str]:
        return json.dumps(value) if value is not None else None

    def _from_json(self, value: Any) -> Any:
        if value is None:
            return None
        if isinstance(value, (str, bytes)):
            return json.loads(value)
        return value

    def schema_statements(self) -> list[str]:
        return [statement.format(**self.column_types) for statement in SCHEMA]

    # ------------------------------------------------------------------
    # Row mapping
    def _workflow_from_row(self, row: Mapping[str, Any]) -> WorkflowDefinition:
        return WorkflowDefinition(
            id=row["id"],
            business_id=row["business_id"],
            industry=row["industry"],
            name=row["name"],
            trigger_type=TriggerType(row["trigger_type"]),
            trigger_config=self._from_json(row["trigger_config"]) or {},
            steps=[Step(**s) for s in self._from_json(row["steps"]) or []],
            is_active=bool(row["is_active"]),
            priority=row["priority"],
            recipe_id=row["recipe_id"],
            max_enrollments_per_contact=row["max_enrollments_per_contact"],
            reenroll_after_days=row["reenroll_after_days"],
            last_run_at=self._from_ts(row["last_run_at"]),
        )

    def _event_from_row(self, row: Mapping[str, Any]) -> Event:
        return Event(
            id=row["id"],
            business_id=row["business_id"],
            intent=row["intent"],
            payload=self._from_json(row["payload"]) or {},
            dedupe_key=row["dedupe_key"],
            contact_id=row["contact_id"],
            source=row["source"],
            source_url=row["source_url"],
            occurred_at=self._from_ts(row["occurred_at"]),
            processed=bool(row["processed"]),
        )

    def _run_from_row(self, row: Mapping[str, Any]) -> WorkflowRun:
        return WorkflowRun(
            id=row["id"],
            workflow_id=row["workflow_id"],
            event_id=row["event_id"],
            contact_id=row["contact_id"],
            status=RunStatus(row["status"]),
            context=self._from_json(row["context"]) or {},
            idempotency_key=row["idempotency_key"],
            created_at=self._from_ts(row["created_at"]),
            completed_at=self._from_ts(row["completed_at"]),
            result=self._from_json(row["result"]),
        )

    def _job_from_row(self, row: Mapping[str, Any]) -> WorkflowJob:
        return WorkflowJob(
            id=row["id"],
            workflow_run_id=row["workflow_run_id"],
            step_index=row["step_index"],
            action_type=row["action_type"],
            action_config=self._from_json(row["action_config"]) or {},
            status=JobStatus(row["status"]),
            retry_count=row["retry_count"],
            scheduled_at=self._from_ts(row["scheduled_at"]),
            claimed_at=self._from_ts(row["claimed_at"]),
            processed_at=self._from_ts(row["processed_at"]),
            error_message=row["error_message"],
            result=self._from_json(row["result"]),
        )

    def _enrollment_from_row(self, row: Mapping[str, Any]) -> Enrollment:
        return Enrollment(
            contact_id=row["contact_id"],
            workflow_id=row["workflow_id"],
            enrollment_count=row["enrollment_count"],
            first_enrolled_at=self._from_ts(row["first_enrolled_at"]),
            last_enrolled_at=self._from_ts(row["last_enrolled_at"]),
            last_completed_at=self._from_ts(row["last_completed_at"]),
            blocked_until=self._from_ts(row["blocked_until"]),
        )

    # ------------------------------------------------------------------
    # Businesses and settings
    async def save_business(self, business: Business) -> None:
        await self._execute(
            """
            INSERT INTO businesses (id, name, industry) VALUES (?, ?, ?)
            ON CONFLICT (id) DO UPDATE SET name = excluded.name, industry = excluded.industry
            """,
            business.id,
            business.name,
            business.industry,
        )

    async def get_business(self, business_id: str) -> Business | None:
        row = await self._fetchone(
            "SELECT id, name, industry FROM businesses WHERE id = ?", business_id
        )
        if not row:
            return None
        return Business(id=row["id"], name=row["name"], industry=row["industry"])

    async def save_automation_settings(
        self, settings: BusinessAutomationSettings
    ) -> None:
        await self._execute(
            """
            INSERT INTO business_automation_settings
                (business_id, automations_enabled, dedupe_window_minutes)
            VALUES (?, ?, ?)
            ON CONFLICT (business_id) DO UPDATE SET
                automations_enabled = excluded.automations_enabled,
                dedupe_window_minutes = excluded.dedupe_window_minutes
            """,
            settings.business_id,
            settings.automations_enabled,
            settings.dedupe_window_minutes,
        )

    async def get_automation_settings(
        self, business_id: str
    ) -> BusinessAutomationSettings | None:
        row = await self._fetchone(
            """
            SELECT business_id, automations_enabled, dedupe_window_minutes
            FROM business_automation_settings WHERE business_id = ?
            """,
            business_id,
        )
        if not row:
            return None
        return BusinessAutomationSettings(
            business_id=row["business_id"],
            automations_enabled=bool(row["automations_enabled"]),
            dedupe_window_minutes=row["dedupe_window_minutes"],
        )

    # ------------------------------------------------------------------
    # Recipes
    async def save_intent_mapping(self, mapping: IntentRecipeMapping) -> None:
        await self._execute(
            "INSERT INTO intent_recipe_mappings (intent, industry, recipe_ids, priority) VALUES (?, ?, ?, ?)",
            mapping.intent,
            mapping.industry,
            self._json(mapping.recipe_ids),
            mapping.priority,
        )

    async def list_intent_mappings(
        self, intent: str, industry: str
    ) -> list[IntentRecipeMapping]:
        rows = await self._fetchall(
            """
            SELECT intent, industry, recipe_ids, priority FROM intent_recipe_mappings
            WHERE intent = ? AND industry = ? ORDER BY id
            """,
            intent,
            industry,
        )
        return [
            IntentRecipeMapping(
                intent=r["intent"],
                industry=r["industry"],
                recipe_ids=self._from_json(r["recipe_ids"]) or [],
                priority=r["priority"],
            )
            for r in rows
        ]

    async def save_recipe_toggle(self, toggle: RecipeToggle) -> None:
        await self._execute(
            """
            INSERT INTO recipe_toggles (business_id, recipe_id, enabled) VALUES (?, ?, ?)
            ON CONFLICT (business_id, recipe_id) DO UPDATE SET enabled = excluded.enabled
            """,
            toggle.business_id,
            toggle.recipe_id,
            toggle.enabled,
        )

    async def get_recipe_toggle(
        self, business_id: str, recipe_id: str
    ) -> RecipeToggle | None:
        row = await self._fetchone(
            "SELECT business_id, recipe_id, enabled FROM recipe_toggles WHERE business_id = ? AND recipe_id = ?",
            business_id,
            recipe_id,
        )
        if not row:
            return None
        return RecipeToggle(
            business_id=row["business_id"],
            recipe_id=row["recipe_id"],
            enabled=bool(row["enabled"]),
        )

    async def save_recipe_pack(self, pack: RecipePack) -> None:
        await self._execute(
            """
            INSERT INTO recipe_packs (pack_id, name, recipes) VALUES (?, ?, ?)
            ON CONFLICT (pack_id) DO UPDATE SET name = excluded.name, recipes = excluded.recipes
            """,
            pack.pack_id,
            pack.name,
            self._json(pack.recipes),
        )

    async def find_recipe_pack(self, recipe_id: str) -> RecipePack | None:
        rows = await self._fetchall(
            "SELECT pack_id, name, recipes FROM recipe_packs ORDER BY pack_id"
        )
        for r in rows:
            recipes = self._from_json(r["recipes"]) or []
            if recipe_id in recipes:
                return RecipePack(pack_id=r["pack_id"], name=r["name"], recipes=recipes)
        return None

    async def save_installed_pack(self, installed: InstalledRecipePack) -> None:
        await self._execute(
            """
            INSERT INTO installed_recipe_packs (business_id, pack_id, enabled) VALUES (?, ?, ?)
            ON CONFLICT (business_id, pack_id) DO UPDATE SET enabled = excluded.enabled
            """,
            installed.business_id,
            installed.pack_id,
            installed.enabled,
        )

    async def get_installed_pack(
        self, business_id: str, pack_id: str
    ) -> InstalledRecipePack | None:
        row = await self._fetchone(
            "SELECT business_id, pack_id, enabled FROM installed_recipe_packs WHERE business_id = ? AND pack_id = ?",
            business_id,
            pack_id,
        )
        if not row:
            return None
        return InstalledRecipePack(
            business_id=row["business_id"],
            pack_id=row["pack_id"],
            enabled=bool(row["enabled"]),
        )

    # ------------------------------------------------------------------
    # Workflow definitions
    async def save_workflow(self, workflow: WorkflowDefinition) -> None:
        await self._execute(
            f"""
            INSERT INTO workflow_definitions ({_WORKFLOW_COLUMNS})
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT (id) DO UPDATE SET
                business_id = excluded.business_id,
                industry = excluded.industry,
                name = excluded.name,
                trigger_type = excluded.trigger_type,
                trigger_config = excluded.trigger_config,
                steps = excluded.steps,
                is_active = excluded.is_active,
                priority = excluded.priority,
                recipe_id = excluded.recipe_id,
                max_enrollments_per_contact = excluded.max_enrollments_per_contact,
                reenroll_after_days = excluded.reenroll_after_days,
                last_run_at = excluded.last_run_at
            """,
            workflow.id,
            workflow.business_id,
            workflow.industry,
            workflow.name,
            workflow.trigger_type.value,
            self._json(workflow.trigger_config),
            self._json([s.model_dump() for s in workflow.steps]),
            workflow.is_active,
            workflow.priority,
            workflow.recipe_id,
            workflow.max_enrollments_per_contact,
            workflow.reenroll_after_days,
            self._ts(workflow.last_run_at),
        )

    async def get_workflow(self, workflow_id: str) -> WorkflowDefinition | None:
        row = await self._fetchone(
            f"SELECT {_WORKFLOW_COLUMNS} FROM workflow_definitions WHERE id = ?",
            workflow_id,
        )
        return self._workflow_from_row(row) if row else None

    async def list_workflows(
        self,
        business_id: Optional[str] = None,
        trigger_type: Optional[TriggerType] = None,
        active_only: bool = False,
    ) -> list[WorkflowDefinition]:
        clauses: list[str] = []
        params: list[Any] = []
        if business_id is not None:
            clauses.append("business_id = ?")
            params.append(business_id)
        if trigger_type is not None:
            clauses.append("trigger_type = ?")
            params.append(trigger_type.value)
        if active_only:
            clauses.append("is_active = ?")
            params.append(True)
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = await self._fetchall(
            f"SELECT {_WORKFLOW_COLUMNS} FROM workflow_definitions{where} ORDER BY name, id",
            *params,
        )
        return [self._workflow_from_row(r) for r in rows]

    async def find_recipe_workflow(
        self, recipe_id: str, industry: str
    ) -> WorkflowDefinition | None:
        row = await self._fetchone(
            f"""
            SELECT {_WORKFLOW_COLUMNS} FROM workflow_definitions
            WHERE recipe_id = ? AND industry = ? AND is_active = ?
            ORDER BY id
            """,
            recipe_id,
            industry,
            True,
        )
        return self._workflow_from_row(row) if row else None

    async def update_workflow_last_run(
        self,
        workflow_id: str,
        expected: Optional[datetime],
        new_value: datetime,
    ) -> bool:
        if expected is None:
            updated = await self._execute(
                "UPDATE workflow_definitions SET last_run_at = ? WHERE id = ? AND last_run_at IS NULL",
                self._ts(new_value),
                workflow_id,
            )
        else:
            updated = await self._execute(
                "UPDATE workflow_definitions SET last_run_at = ? WHERE id = ? AND last_run_at = ?",
                self._ts(new_value),
                workflow_id,
                self._ts(expected),
            )
        return updated == 1

    # ------------------------------------------------------------------
    # Events
    async def insert_event(self, event: Event) -> None:
        await self._execute(
            f"INSERT INTO events ({_EVENT_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            event.id,
            event.business_id,
            event.intent,
            self._json(event.payload),
            event.dedupe_key,
            event.contact_id,
            event.source,
            event.source_url,
            self._ts(event.occurred_at),
            event.processed,
        )

    async def get_event(self, event_id: str) -> Event | None:
        row = await self._fetchone(
            f"SELECT {_EVENT_COLUMNS} FROM events WHERE id = ?", event_id
        )
        return self._event_from_row(row) if row else None

    async def find_event_by_dedupe_key(
        self, business_id: str, dedupe_key: str
    ) -> Event | None:
        row = await self._fetchone(
            f"SELECT {_EVENT_COLUMNS} FROM events WHERE business_id = ? AND dedupe_key = ?",
            business_id,
            dedupe_key,
        )
        return self._event_from_row(row) if row else None

    async def find_recent_event(
        self, business_id: str, intent: str, since: datetime
    ) -> Event | None:
        row = await self._fetchone(
            f"""
            SELECT {_EVENT_COLUMNS} FROM events
            WHERE business_id = ? AND intent = ? AND occurred_at >= ?
            ORDER BY occurred_at DESC LIMIT 1
            """,
            business_id,
            intent,
            self._ts(since),
        )
        return self._event_from_row(row) if row else None

    async def mark_event_processed(self, event_id: str) -> None:
        await self._execute(
            "UPDATE events SET processed = ? WHERE id = ?", True, event_id
        )

    # ------------------------------------------------------------------
    # Enrollments
    async def get_enrollment(
        self, contact_id: str, workflow_id: str
    ) -> Enrollment | None:
        row = await self._fetchone(
            f"SELECT {_ENROLLMENT_COLUMNS} FROM enrollments WHERE contact_id = ? AND workflow_id = ?",
            contact_id,
            workflow_id,
        )
        return self._enrollment_from_row(row) if row else None

    async def upsert_enrollment(
        self, contact_id: str, workflow_id: str, enrolled_at: datetime
    ) -> Enrollment:
        await self._execute(
            """
            INSERT INTO enrollments
                (contact_id, workflow_id, enrollment_count, first_enrolled_at, last_enrolled_at)
            VALUES (?, ?, 1, ?, ?)
            ON CONFLICT (contact_id, workflow_id) DO UPDATE SET
                enrollment_count = enrollments.enrollment_count + 1,
                last_enrolled_at = excluded.last_enrolled_at
            """,
            contact_id,
            workflow_id,
            self._ts(enrolled_at),
            self._ts(enrolled_at),
        )
        enrollment = await self.get_enrollment(contact_id, workflow_id)
        assert enrollment is not None
        return enrollment

    # ------------------------------------------------------------------
    # Runs
    async def insert_run(self, run: WorkflowRun) -> None:
        await self._execute(
            f"INSERT INTO workflow_runs ({_RUN_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            run.id,
            run.workflow_id,
            run.event_id,
            run.contact_id,
            run.status.value,
            self._json(run.context),
            run.idempotency_key,
            self._ts(run.created_at),
            self._ts(run.completed_at),
            self._json(run.result),
        )

    async def get_run(self, run_id: str) -> WorkflowRun | None:
        row = await self._fetchone(
            f"SELECT {_RUN_COLUMNS} FROM workflow_runs WHERE id = ?", run_id
        )
        return self._run_from_row(row) if row else None

    async def get_run_by_idempotency_key(self, key: str) -> WorkflowRun | None:
        row = await self._fetchone(
            f"SELECT {_RUN_COLUMNS} FROM workflow_runs WHERE idempotency_key = ?", key
        )
        return self._run_from_row(row) if row else None

    async def list_runs(
        self,
        status: Optional[RunStatus] = None,
        workflow_id: Optional[str] = None,
    ) -> list[WorkflowRun]:
        clauses: list[str] = []
        params: list[Any] = []
        if status is not None:
            clauses.append("status = ?")
            params.append(status.value)
        if workflow_id is not None:
            clauses.append("workflow_id = ?")
            params.append(workflow_id)
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = await self._fetchall(
            f"SELECT {_RUN_COLUMNS} FROM workflow_runs{where} ORDER BY created_at, id",
            *params,
        )
        return [self._run_from_row(r) for r in rows]

    async def finalize_run(
        self,
        run_id: str,
        status: RunStatus,
        completed_at: datetime,
        result: dict[str, Any] | None = None,
    ) -> bool:
        updated = await self._execute(
            """
            UPDATE workflow_runs SET status = ?, completed_at = ?, result = ?
            WHERE id = ? AND status NOT IN (?, ?)
            """,
            status.value,
            self._ts(completed_at),
            self._json(result),
            run_id,
            RunStatus.COMPLETED.value,
            RunStatus.FAILED.value,
        )
        return updated == 1

    # ------------------------------------------------------------------
    # Jobs
    async def insert_jobs(self, jobs: Sequence[WorkflowJob]) -> None:
        for job in jobs:
            await self._execute(
                f"INSERT INTO workflow_jobs ({_JOB_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                job.id,
                job.workflow_run_id,
                job.step_index,
                job.action_type,
                self._json(job.action_config),
                job.status.value,
                job.retry_count,
                self._ts(job.scheduled_at),
                self._ts(job.claimed_at),
                self._ts(job.processed_at),
                job.error_message,
                self._json(job.result),
            )

    async def list_jobs(
        self, run_id: str, statuses: Optional[Iterable[JobStatus]] = None
    ) -> list[WorkflowJob]:
        params: list[Any] = [run_id]
        status_clause = ""
        if statuses is not None:
            values = [JobStatus(s).value for s in statuses]
            if not values:
                return []
            status_clause = f" AND status IN ({', '.join('?' for _ in values)})"
            params.extend(values)
        rows = await self._fetchall(
            f"SELECT {_JOB_COLUMNS} FROM workflow_jobs WHERE workflow_run_id = ?{status_clause} ORDER BY step_index",
            *params,
        )
        return [self._job_from_row(r) for r in rows]

    async def list_due_jobs(self, now: datetime) -> list[WorkflowJob]:
        rows = await self._fetchall(
            f"""
            SELECT {_JOB_COLUMNS} FROM workflow_jobs
            WHERE status = ? AND scheduled_at <= ?
            ORDER BY scheduled_at, step_index
            """,
            JobStatus.QUEUED.value,
            self._ts(now),
        )
        return [self._job_from_row(r) for r in rows]

    async def claim_job(self, job_id: str, now: datetime) -> bool:
        updated = await self._execute(
            """
            UPDATE workflow_jobs SET status = ?, claimed_at = ?
            WHERE id = ? AND status = ? AND scheduled_at <= ?
            """,
            JobStatus.PROCESSING.value,
            self._ts(now),
            job_id,
            JobStatus.QUEUED.value,
            self._ts(now),
        )
        return updated == 1

    async def complete_job(
        self, job_id: str, result: dict[str, Any] | None, processed_at: datetime
    ) -> None:
        await self._execute(
            """
            UPDATE workflow_jobs SET status = ?, result = ?, processed_at = ?
            WHERE id = ? AND status = ?
            """,
            JobStatus.COMPLETED.value,
            self._json(result),
            self._ts(processed_at),
            job_id,
            JobStatus.PROCESSING.value,
        )

    async def requeue_job(
        self,
        job_id: str,
        scheduled_at: datetime,
        retry_count: int,
        error_message: Optional[str] = None,
        result: dict[str, Any] | None = None,
    ) -> None:
        await self._execute(
            """
            UPDATE workflow_jobs
            SET status = ?, scheduled_at = ?, retry_count = ?, error_message = ?,
                result = ?, claimed_at = NULL
            WHERE id = ? AND status = ?
            """,
            JobStatus.QUEUED.value,
            self._ts(scheduled_at),
            retry_count,
            error_message,
            self._json(result),
            job_id,
            JobStatus.PROCESSING.value,
        )

    async def fail_job(
        self,
        job_id: str,
        retry_count: int,
        error_message: str,
        processed_at: datetime,
    ) -> None:
        await self._execute(
            """
            UPDATE workflow_jobs
            SET status = ?, retry_count = ?, error_message = ?, processed_at = ?
            WHERE id = ? AND status = ?
            """,
            JobStatus.FAILED.value,
            retry_count,
            error_message,
            self._ts(processed_at),
            job_id,
            JobStatus.PROCESSING.value,
        )

    async def release_stale_jobs(self, claimed_before: datetime) -> int:
        return await self._execute(
            """
            UPDATE workflow_jobs SET status = ?, claimed_at = NULL
            WHERE status = ? AND claimed_at < ?
            """,
            JobStatus.QUEUED.value,
            JobStatus.PROCESSING.value,
            self._ts(claimed_before),
        )

    # ------------------------------------------------------------------
    # CRM records
    async def insert_record(
        self, collection: str, data: dict[str, Any]
    ) -> dict[str, Any]:
        record = dict(data)
        record.setdefault("id", str(uuid.uuid4()))
        now = utcnow()
        record.setdefault("created_at", now.isoformat())
        await self._execute(
            "INSERT INTO crm_records (collection, id, data, created_at) VALUES (?, ?, ?, ?)",
            collection,
            record["id"],
            self._json(record),
            self._ts(now),
        )
        return record

    async def get_record(
        self, collection: str, record_id: str
    ) -> dict[str, Any] | None:
        row = await self._fetchone(
            "SELECT data FROM crm_records WHERE collection = ? AND id = ?",
            collection,
            record_id,
        )
        return self._from_json(row["data"]) if row else None

    async def update_record(
        self, collection: str, record_id: str, changes: dict[str, Any]
    ) -> bool:
        record = await self.get_record(collection, record_id)
        if record is None:
            return False
        now = utcnow()
        record.update(changes)
        record["updated_at"] = now.isoformat()
        updated = await self._execute(
            "UPDATE crm_records SET data = ?, updated_at = ? WHERE collection = ? AND id = ?",
            self._json(record),
            self._ts(now),
            collection,
            record_id,
        )
        return updated == 1
