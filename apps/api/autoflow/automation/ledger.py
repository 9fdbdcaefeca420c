from __future__ import annotations

import math
import uuid
from dataclasses import dataclass
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from autoflow.automation.models import AutomationRun, as_utc, utcnow
from autoflow.core.errors import ConflictError, NotFoundError
from autoflow.records.repository import serialize_value


RUN_RUNNING = "running"
RUN_SUCCEEDED = "succeeded"
RUN_FAILED = "failed"
TERMINAL_STATUSES = frozenset({RUN_SUCCEEDED, RUN_FAILED})


@dataclass(slots=True)
class RunPage:
    runs: list[AutomationRun]
    page: int
    limit: int
    total: int

    @property
    def pages(self) -> int:
        return math.ceil(self.total / self.limit) if self.limit else 0


class RunLedger:
    """Durable record of every live automation execution.

    ``begin`` commits straight away so a run in progress is visible to other
    engine instances; ``complete`` is a conditional update on
    ``status = 'running'`` and can only succeed once per run.
    """

    def begin(self, session: Session, automation_id: uuid.UUID, *, trigger_data: dict[str, Any] | None = None) -> uuid.UUID:
        run = AutomationRun(
            automation_id=automation_id,
            status=RUN_RUNNING,
            started_at=utcnow(),
            trigger_data=serialize_value(trigger_data) if trigger_data is not None else None,
        )
        session.add(run)
        session.commit()
        return run.id

    def complete(
        self,
        session: Session,
        run_id: uuid.UUID,
        status: str,
        *,
        summary: dict[str, Any] | None = None,
        error: str | None = None,
        items_processed: int = 0,
        items_succeeded: int = 0,
        items_failed: int = 0,
    ) -> AutomationRun:
        if status not in TERMINAL_STATUSES:
            raise ValueError(f"not a terminal run status: {status}")
        started_at = session.scalar(select(AutomationRun.started_at).where(AutomationRun.id == run_id))
        if started_at is None:
            raise NotFoundError("Automation run not found")

        finished_at = utcnow()
        elapsed = finished_at - (as_utc(started_at) or finished_at)
        result = session.execute(
            update(AutomationRun)
            .where(AutomationRun.id == run_id, AutomationRun.status == RUN_RUNNING)
            .values(
                status=status,
                finished_at=finished_at,
                items_processed=items_processed,
                items_succeeded=items_succeeded,
                items_failed=items_failed,
                result_data=serialize_value(summary) if summary is not None else None,
                error_message=error[:2000] if error else None,
                execution_time_ms=max(0, int(elapsed.total_seconds() * 1000)),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            session.rollback()
            raise ConflictError("Automation run already completed", details={"run_id": str(run_id)})
        session.commit()

        run = session.get(AutomationRun, run_id, populate_existing=True)
        if run is None:
            raise NotFoundError("Automation run not found")
        return run

    def list_runs(self, session: Session, automation_id: uuid.UUID, *, page: int = 1, limit: int = 10) -> RunPage:
        page = max(1, page)
        limit = min(max(1, limit), 100)
        base = select(AutomationRun).where(AutomationRun.automation_id == automation_id)
        total = int(session.scalar(select(func.count()).select_from(base.subquery())) or 0)
        runs = session.scalars(
            base.order_by(AutomationRun.started_at.desc(), AutomationRun.id).offset((page - 1) * limit).limit(limit)
        ).all()
        return RunPage(runs=list(runs), page=page, limit=limit, total=total)


run_ledger = RunLedger()
