"""Periodic and event-driven execution of automations.

The engine owns no timer. ``run_scheduled_automations`` is called from the
cron endpoint or the Celery beat task and may overlap with itself, across
processes too; an automation only runs after a conditional UPDATE has
claimed it, so a second tick that loses the race simply skips it.
"""

from __future__ import annotations

import logging
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta
from typing import Any, Callable

from sqlalchemy import or_, select, update
from sqlalchemy.orm import Session

from autoflow.automation.executor import AutomationExecutor, ExecutionMode, RunResult
from autoflow.automation.ledger import RUN_FAILED, RUN_SUCCEEDED, RunLedger, run_ledger
from autoflow.automation.models import Automation, as_utc, utcnow
from autoflow.automation.triggers import compute_next_run
from autoflow.context import automation_scope, get_workflow_depth
from autoflow.core.config import get_settings
from autoflow.core.database import SessionLocal
from autoflow.metrics import observe_automation_run, observe_claim_conflict, observe_guardrail_block
from autoflow.records.repository import parse_uuid


logger = logging.getLogger("autoflow.automation.engine")


def next_run_for(automation: Automation, now: datetime) -> datetime | None:
    if not automation.enabled or automation.trigger_type != "schedule":
        return None
    return compute_next_run(automation.trigger_config, now)


class AutomationEngine:
    def __init__(
        self,
        session_factory: Callable[[], Session] = SessionLocal,
        executor: AutomationExecutor | None = None,
        ledger: RunLedger = run_ledger,
    ) -> None:
        self.session_factory = session_factory
        self.executor = executor or AutomationExecutor()
        self.ledger = ledger

    def run_scheduled_automations(self, now: datetime | None = None) -> int:
        now = as_utc(now) or utcnow()
        claimed: list[tuple[uuid.UUID, str]] = []
        with self.session_factory() as session:
            for automation_id, next_run_at in self.due_automations(session, now):
                token = self.claim(session, automation_id, next_run_at, now)
                if token is not None:
                    claimed.append((automation_id, token))

        workers = max(1, get_settings().automation_max_workers)
        if workers == 1 or len(claimed) <= 1:
            for automation_id, token in claimed:
                self._run_claimed(automation_id, token, now)
        else:
            with ThreadPoolExecutor(max_workers=min(workers, len(claimed)), thread_name_prefix="automation") as pool:
                futures = [pool.submit(self._run_claimed, automation_id, token, now) for automation_id, token in claimed]
                for future in futures:
                    future.result()

        logger.info("automation.tick", extra={"processed": len(claimed)})
        return len(claimed)

    def due_automations(self, session: Session, now: datetime) -> list[tuple[uuid.UUID, datetime]]:
        rows = session.execute(
            select(Automation.id, Automation.next_run_at)
            .where(
                Automation.enabled.is_(True),
                Automation.trigger_type == "schedule",
                Automation.next_run_at.is_not(None),
                Automation.next_run_at <= now,
                or_(Automation.claimed_until.is_(None), Automation.claimed_until <= now),
            )
            .order_by(Automation.next_run_at)
        ).all()
        return [(row[0], row[1]) for row in rows]

    def claim(self, session: Session, automation_id: uuid.UUID, next_run_at: datetime, now: datetime) -> str | None:
        """Atomically mark a due automation as ours; ``None`` if someone beat us to it."""
        token = str(uuid.uuid4())
        ttl = timedelta(seconds=get_settings().automation_claim_ttl_seconds)
        result = session.execute(
            update(Automation)
            .where(
                Automation.id == automation_id,
                Automation.enabled.is_(True),
                Automation.next_run_at == next_run_at,
                or_(Automation.claimed_until.is_(None), Automation.claimed_until <= now),
            )
            .values(claimed_until=now + ttl, claim_token=token)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            session.rollback()
            observe_claim_conflict()
            logger.info("automation.claim_conflict", extra={"automation_id": str(automation_id)})
            return None
        session.commit()
        return token

    def handle_event(
        self,
        session: Session,
        event_type: str,
        payload: dict[str, Any],
        user_id: Any,
        *,
        depth: int | None = None,
    ) -> list[uuid.UUID]:
        owner_id = parse_uuid(user_id)
        if owner_id is None:
            return []

        current_depth = depth if depth is not None else (get_workflow_depth() or 0)
        if current_depth >= get_settings().workflow_max_depth:
            observe_guardrail_block("max_depth")
            logger.warning(
                "automation.event_blocked",
                extra={"event_type": event_type, "user_id": str(owner_id), "reason": "max_depth"},
            )
            return []

        automations = session.scalars(
            select(Automation)
            .where(
                Automation.user_id == owner_id,
                Automation.enabled.is_(True),
                Automation.trigger_type == "event",
            )
            .order_by(Automation.created_at)
        ).all()

        run_ids: list[uuid.UUID] = []
        for automation in automations:
            if (automation.trigger_config or {}).get("event") != event_type:
                continue
            with automation_scope(current_depth + 1):
                run_id, _ = self.execute_and_record(
                    session,
                    automation,
                    trigger_data={"trigger": "event", "event": event_type},
                    event_payload=payload,
                    now=utcnow(),
                )
            run_ids.append(run_id)
        return run_ids

    def execute_and_record(
        self,
        session: Session,
        automation: Automation,
        *,
        trigger_data: dict[str, Any],
        now: datetime,
        event_payload: dict[str, Any] | None = None,
    ) -> tuple[uuid.UUID, RunResult]:
        automation_id = automation.id
        trigger_type = automation.trigger_type
        started = time.perf_counter()
        run_id = self.ledger.begin(session, automation_id, trigger_data=trigger_data)
        try:
            result = self.executor.execute(session, automation, ExecutionMode.LIVE, event_payload=event_payload, now=now)
        except Exception as exc:
            session.rollback()
            logger.exception("automation.run_crashed", extra={"automation_id": str(automation_id), "run_id": str(run_id)})
            result = RunResult(status=RUN_FAILED, errors=[{"item": {}, "action": "executor", "index": -1, "error": str(exc)}])

        self.ledger.complete(
            session,
            run_id,
            result.status,
            summary=result.summary(),
            error=result.error_message,
            items_processed=result.items_processed,
            items_succeeded=result.items_succeeded,
            items_failed=result.items_failed,
        )
        self._record_stats(session, automation_id, result, now)

        duration = time.perf_counter() - started
        observe_automation_run(trigger_type, result.status, duration)
        logger.info(
            "automation.run_finished",
            extra={
                "automation_id": str(automation_id),
                "run_id": str(run_id),
                "status": result.status,
                "items_processed": result.items_processed,
                "duration_ms": round(duration * 1000, 2),
            },
        )
        return run_id, result

    def _run_claimed(self, automation_id: uuid.UUID, token: str, now: datetime) -> None:
        with automation_scope(1, correlation_id=str(uuid.uuid4())), self.session_factory() as session:
            try:
                automation = session.get(Automation, automation_id)
                if automation is None or automation.claim_token != token:
                    return
                self.execute_and_record(
                    session,
                    automation,
                    trigger_data={"trigger": "schedule", "scheduled_for": now.isoformat()},
                    now=now,
                )
            except Exception:
                session.rollback()
                logger.exception("automation.run_unrecorded", extra={"automation_id": str(automation_id)})
            finally:
                self._release(session, automation_id, token, now)

    def _release(self, session: Session, automation_id: uuid.UUID, token: str, now: datetime) -> None:
        # Reschedules from the current trigger config whatever the run outcome.
        try:
            automation = session.get(Automation, automation_id, populate_existing=True)
            if automation is None:
                return
            session.execute(
                update(Automation)
                .where(Automation.id == automation_id, Automation.claim_token == token)
                .values(next_run_at=next_run_for(automation, now), claimed_until=None, claim_token=None)
                .execution_options(synchronize_session=False)
            )
            session.commit()
        except Exception:
            session.rollback()
            logger.exception("automation.release_failed", extra={"automation_id": str(automation_id)})

    def _record_stats(self, session: Session, automation_id: uuid.UUID, result: RunResult, now: datetime) -> None:
        succeeded = result.status == RUN_SUCCEEDED
        session.execute(
            update(Automation)
            .where(Automation.id == automation_id)
            .values(
                run_count=Automation.run_count + 1,
                success_count=Automation.success_count + (1 if succeeded else 0),
                error_count=Automation.error_count + (0 if succeeded else 1),
                last_run_at=now,
                last_error=None if succeeded else result.error_message,
            )
            .execution_options(synchronize_session=False)
        )
        session.commit()


automation_engine = AutomationEngine()
