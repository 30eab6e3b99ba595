"""
Spread Job Scheduler

Decides which spread recomputations are ready to run and converges every
enqueue for a deal onto a single active job.

Job creation is optimistic: look for the active job and merge into it,
otherwise insert a new QUEUED row. The partial unique index on
deal_spread_jobs (one QUEUED/RUNNING job per deal+bank) is the arbiter; a
losing insert rolls back and the loop re-reads and merges into the winner.

Every update of a job row is guarded by its version_id, so a merge or status
change that raced another writer fails with StaleDataError and is redone
against a fresh read. A job that gained types while RUNNING goes back to
QUEUED when the run finishes.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional
from uuid import UUID

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from app.core.config import get_settings
from app.core.ledger import EventSink, get_event_sink
from app.models import (
    ACTIVE_JOB_STATUSES,
    JOB_FAILED,
    JOB_QUEUED,
    JOB_RUNNING,
    JOB_SUCCEEDED,
    SENTINEL_UUID,
    DealSpread,
    SpreadJob,
)
from app.models.schema import utcnow
from app.services.financial_facts import count_rent_roll_rows, get_visible_facts
from app.services.spread_templates import (
    evaluate_prereq,
    get_spread_template,
    resolve_owner_type,
)

logger = structlog.get_logger()


JOB_TRANSITIONS = {
    JOB_QUEUED: {JOB_RUNNING},
    JOB_RUNNING: {JOB_SUCCEEDED, JOB_FAILED, JOB_QUEUED},
    JOB_SUCCEEDED: set(),
    JOB_FAILED: set(),
}


class InvalidJobTransition(Exception):
    def __init__(self, job_id: UUID, current: str, target: str):
        self.job_id = job_id
        self.current = current
        self.target = target
        super().__init__(f"Job {job_id}: cannot move from {current} to {target}")


class JobNotFound(LookupError):
    pass


class JobTransitionConflict(Exception):
    pass


@dataclass
class NotReadySpread:
    spread_type: str
    missing: list[str]
    note: Optional[str] = None


@dataclass
class EnqueueResult:
    ok: bool
    outcome: str  # enqueued, merged, waiting_on_facts, rejected, noop
    enqueued: bool = False
    merged: bool = False
    waiting_on_facts: bool = False
    job_id: Optional[UUID] = None
    invalid_types: list[str] = field(default_factory=list)
    ready_types: list[str] = field(default_factory=list)
    not_ready: list[NotReadySpread] = field(default_factory=list)
    error: Optional[str] = None


def unique_in_order(values: list[str]) -> list[str]:
    seen = set()
    out = []
    for v in values:
        if v and v not in seen:
            seen.add(v)
            out.append(v)
    return out


# =============================================================================
# PLACEHOLDERS
# =============================================================================


def queued_placeholder(spread_type: str, now: datetime) -> dict[str, Any]:
    stamp = now.isoformat()
    return {
        "title": spread_type,
        "spread_type": spread_type,
        "status": "queued",
        "generated_at": stamp,
        "as_of": None,
        "columns": ["Line Item", "Value"],
        "rows": [
            {
                "key": "status",
                "label": "Generating…",
                "values": [None, None],
                "notes": "Queued for background processing.",
            }
        ],
        "meta": {"status": "queued", "enqueued_at": stamp},
    }


async def upsert_queued_placeholders(
    db: AsyncSession,
    deal_id: UUID,
    bank_id: UUID,
    spread_types: list[str],
    owner_type: Optional[str] = None,
    owner_entity_id: Optional[UUID] = None,
) -> bool:
    """Mark each spread as queued so readers see pending state. Failures are logged, never raised."""
    now = utcnow()
    try:
        for spread_type in spread_types:
            template = get_spread_template(spread_type)
            identity = dict(
                deal_id=deal_id,
                bank_id=bank_id,
                spread_type=spread_type,
                spread_version=template.version,
                owner_type=resolve_owner_type(spread_type, owner_type),
                owner_entity_id=owner_entity_id or SENTINEL_UUID,
            )
            result = await db.execute(
                select(DealSpread).where(
                    *(getattr(DealSpread, k) == v for k, v in identity.items())
                )
            )
            spread = result.scalar_one_or_none()
            if spread is None:
                spread = DealSpread(**identity)
                db.add(spread)
            spread.status = "queued"
            spread.inputs_hash = None
            spread.rendered_json = queued_placeholder(spread_type, now)
            spread.error = None
            spread.error_code = None
            spread.started_at = None
            spread.finished_at = None
            spread.updated_at = now
        await db.commit()
        return True
    except SQLAlchemyError as e:
        await db.rollback()
        logger.warning(
            "spread_jobs.placeholder.failed",
            deal_id=str(deal_id),
            spread_types=spread_types,
            error=str(e)[:200],
        )
        return False


# =============================================================================
# JOBS
# =============================================================================


async def find_active_job(db: AsyncSession, deal_id: UUID, bank_id: UUID) -> Optional[SpreadJob]:
    result = await db.execute(
        select(SpreadJob).where(
            SpreadJob.deal_id == deal_id,
            SpreadJob.bank_id == bank_id,
            SpreadJob.status.in_(ACTIVE_JOB_STATUSES),
        )
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def list_spread_jobs(db: AsyncSession, deal_id: UUID, bank_id: UUID) -> list[SpreadJob]:
    result = await db.execute(
        select(SpreadJob)
        .where(SpreadJob.deal_id == deal_id, SpreadJob.bank_id == bank_id)
        .order_by(SpreadJob.created_at.desc())
    )
    return list(result.scalars().all())


async def merge_into_job(
    db: AsyncSession,
    job: SpreadJob,
    spread_types: list[str],
    meta: dict[str, Any],
) -> UUID:
    """Union the requested types into an active job, keeping its original order first."""
    now = utcnow()
    job_id = job.id
    # Assign new containers so the JSON columns register as dirty
    job.requested_spread_types = unique_in_order([*(job.requested_spread_types or []), *spread_types])
    job.meta = {**(job.meta or {}), **meta, "merged_at": now.isoformat()}
    job.updated_at = now
    await db.commit()
    return job_id


async def enqueue_spread_recompute(
    db: AsyncSession,
    deal_id: UUID,
    bank_id: UUID,
    spread_types: list[str],
    source_document_id: Optional[UUID] = None,
    owner_type: Optional[str] = None,
    owner_entity_id: Optional[UUID] = None,
    meta: Optional[dict[str, Any]] = None,
    sink: Optional[EventSink] = None,
) -> EnqueueResult:
    """
    Schedule recomputation of the given spread types for a deal.

    Always returns a definite outcome: enqueued (new job), merged (into the
    active job), waiting_on_facts (nothing ready yet), noop (nothing valid
    requested) or rejected (conflict unresolved within the retry bound).
    """
    settings = get_settings()
    sink = sink or get_event_sink()
    log = logger.bind(deal_id=str(deal_id), bank_id=str(bank_id))

    requested = unique_in_order(list(spread_types or []))
    valid_types = [t for t in requested if get_spread_template(t) is not None]
    invalid_types = [t for t in requested if get_spread_template(t) is None]

    if invalid_types:
        log.warning("spread_jobs.enqueue.invalid_types", invalid_types=invalid_types)
        await sink.write_system_event(
            event_type="warning",
            severity="warning",
            source_system="spreads_processor",
            deal_id=deal_id,
            bank_id=bank_id,
            error_class="permanent",
            error_code="INVALID_SPREAD_TYPES_SKIPPED",
            error_message=f"Invalid spread types skipped during enqueue: {', '.join(invalid_types)}",
            payload={"requested": requested, "invalid_types": invalid_types, "valid_types": valid_types},
        )

    if not valid_types:
        return EnqueueResult(ok=True, outcome="noop", invalid_types=invalid_types)

    # Readiness gate
    visible = await get_visible_facts(db, deal_id, bank_id)
    rent_roll_rows = await count_rent_roll_rows(db, deal_id, bank_id)

    ready_types: list[str] = []
    not_ready: list[NotReadySpread] = []
    for spread_type in valid_types:
        prereq = get_spread_template(spread_type).prereq
        check = evaluate_prereq(prereq, visible, rent_roll_rows)
        if check.ready:
            ready_types.append(spread_type)
        else:
            not_ready.append(NotReadySpread(spread_type, check.missing, prereq.note))

    for nr in not_ready:
        await sink.write_system_event(
            event_type="info",
            severity="info",
            source_system="enqueue_spread_recompute",
            deal_id=deal_id,
            bank_id=bank_id,
            error_code="SPREAD_WAITING_ON_FACTS",
            error_message=f"{nr.spread_type} prerequisites not met at enqueue: {', '.join(nr.missing)}",
            payload={"spread_type": nr.spread_type, "missing": nr.missing, "note": nr.note},
        )

    if not ready_types:
        log.info("spread_jobs.enqueue.waiting_on_facts", not_ready=[nr.spread_type for nr in not_ready])
        return EnqueueResult(
            ok=True,
            outcome="waiting_on_facts",
            waiting_on_facts=True,
            invalid_types=invalid_types,
            not_ready=not_ready,
        )

    await upsert_queued_placeholders(db, deal_id, bank_id, ready_types, owner_type, owner_entity_id)

    job_meta = {
        **(meta or {}),
        "owner_type": owner_type or "DEAL",
        "owner_entity_id": str(owner_entity_id) if owner_entity_id else None,
    }
    common = dict(invalid_types=invalid_types, ready_types=ready_types, not_ready=not_ready)

    for attempt in range(1, settings.enqueue_max_attempts + 1):
        existing = await find_active_job(db, deal_id, bank_id)
        if existing is not None:
            try:
                job_id = await merge_into_job(db, existing, ready_types, job_meta)
            except StaleDataError:
                # The job changed after we read it; re-read and merge again
                await db.rollback()
                log.info("spread_jobs.enqueue.merge_conflict", attempt=attempt)
                continue
            log.info("spread_jobs.enqueue.merged", job_id=str(job_id), attempt=attempt)
            return EnqueueResult(ok=True, outcome="merged", merged=True, job_id=job_id, **common)

        now = utcnow()
        job = SpreadJob(
            deal_id=deal_id,
            bank_id=bank_id,
            source_document_id=source_document_id,
            requested_spread_types=list(ready_types),
            status=JOB_QUEUED,
            next_run_at=now,
            meta=job_meta,
            created_at=now,
            updated_at=now,
        )
        db.add(job)
        try:
            await db.flush()
            job_id = job.id
            await db.commit()
        except IntegrityError:
            # Another request created the active job first
            await db.rollback()
            log.info("spread_jobs.enqueue.conflict", attempt=attempt)
            continue
        except SQLAlchemyError as e:
            await db.rollback()
            log.error("spread_jobs.enqueue.failed", error=str(e)[:200])
            return EnqueueResult(ok=False, outcome="rejected", error=str(e)[:200], **common)

        log.info("spread_jobs.enqueue.created", job_id=str(job_id), spread_types=ready_types)
        return EnqueueResult(ok=True, outcome="enqueued", enqueued=True, job_id=job_id, **common)

    log.error("spread_jobs.enqueue.conflict_unresolved", attempts=settings.enqueue_max_attempts)
    return EnqueueResult(ok=False, outcome="rejected", error="enqueue_conflict_unresolved", **common)


async def transition_job(
    db: AsyncSession,
    job_id: UUID,
    status: str,
    error: Optional[str] = None,
    started_types: Optional[list[str]] = None,
) -> SpreadJob:
    """
    Move a job along QUEUED -> RUNNING -> SUCCEEDED | FAILED and commit.

    When finishing a run, pass the types the run started with. Types merged
    into the job while it was RUNNING have not been processed, so the job goes
    back to QUEUED for another run instead of finishing.

    The job is re-read on every attempt; a concurrent merge surfaces as
    StaleDataError and the transition is decided again on fresh state.
    """
    settings = get_settings()
    for attempt in range(1, settings.job_transition_max_attempts + 1):
        job = await db.get(SpreadJob, job_id, populate_existing=True)
        if job is None:
            raise JobNotFound(f"Spread job {job_id} not found")

        target = status
        late_types: list[str] = []
        if started_types is not None and status in (JOB_SUCCEEDED, JOB_FAILED):
            late_types = [t for t in (job.requested_spread_types or []) if t not in started_types]
            if late_types:
                target = JOB_QUEUED

        if target not in JOB_TRANSITIONS.get(job.status, set()):
            raise InvalidJobTransition(job_id, job.status, target)

        now = utcnow()
        previous = job.status
        job.status = target
        job.updated_at = now
        if target == JOB_RUNNING:
            job.attempt = (job.attempt or 0) + 1
            job.started_at = now
            job.finished_at = None
            job.error = None
        elif target == JOB_QUEUED:
            job.next_run_at = now
            job.started_at = None
            job.error = error
            job.meta = {**(job.meta or {}), "requeued_at": now.isoformat(), "requeued_for": late_types}
        else:
            job.finished_at = now
            job.error = error

        try:
            await db.commit()
        except StaleDataError:
            await db.rollback()
            logger.info("spread_jobs.transition.conflict", job_id=str(job_id), attempt=attempt)
            continue

        logger.info(
            "spread_jobs.transition",
            job_id=str(job_id),
            from_status=previous,
            to_status=target,
            late_types=late_types or None,
        )
        return job

    raise JobTransitionConflict(
        f"Spread job {job_id}: no consistent transition to {status} "
        f"after {settings.job_transition_max_attempts} attempts"
    )
