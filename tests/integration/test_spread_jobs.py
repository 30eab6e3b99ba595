"""
Integration tests for the spread job scheduler.

Runs enqueue_spread_recompute against a SQLite database carrying the same
partial unique index as production: at most one QUEUED/RUNNING job per
deal and bank.
"""

import asyncio

import pytest
from sqlalchemy import func, select

from conftest import add_facts

from app.core.config import Settings
from app.models import ACTIVE_JOB_STATUSES, DealSpread, RentRollRow, SpreadJob
from app.services import spread_jobs
from app.services.spread_jobs import (
    InvalidJobTransition,
    JobNotFound,
    enqueue_spread_recompute,
    list_spread_jobs,
    transition_job,
)


async def active_job_count(session, deal_id, bank_id):
    result = await session.execute(
        select(func.count())
        .select_from(SpreadJob)
        .where(
            SpreadJob.deal_id == deal_id,
            SpreadJob.bank_id == bank_id,
            SpreadJob.status.in_(ACTIVE_JOB_STATUSES),
        )
    )
    return result.scalar_one()


# =============================================================================
# Enqueue
# =============================================================================


class TestEnqueue:
    """Tests for the enqueue / merge outcomes."""

    @pytest.mark.integration
    async def test_first_enqueue_creates_job(self, db, deal_id, bank_id, sink):
        """Ready types create a QUEUED job."""
        await add_facts(db, deal_id, bank_id)
        result = await enqueue_spread_recompute(db, deal_id, bank_id, ["T12"], sink=sink)

        assert result.ok
        assert result.outcome == "enqueued"
        assert result.enqueued
        assert result.ready_types == ["T12"]

        job = await db.get(SpreadJob, result.job_id)
        assert job.status == "QUEUED"
        assert job.requested_spread_types == ["T12"]
        assert job.attempt == 0
        assert job.next_run_at is not None

    @pytest.mark.integration
    async def test_second_enqueue_merges(self, db, deal_id, bank_id, sink):
        """A second request folds its types into the active job, original order first."""
        await add_facts(db, deal_id, bank_id)
        first = await enqueue_spread_recompute(db, deal_id, bank_id, ["T12"], sink=sink)
        second = await enqueue_spread_recompute(
            db, deal_id, bank_id, ["BALANCE_SHEET", "T12"], meta={"trigger": "upload"}, sink=sink
        )

        assert second.outcome == "merged"
        assert second.merged
        assert second.job_id == first.job_id
        assert await active_job_count(db, deal_id, bank_id) == 1

        job = await db.get(SpreadJob, first.job_id)
        assert job.requested_spread_types == ["T12", "BALANCE_SHEET"]
        assert job.meta["trigger"] == "upload"
        assert "merged_at" in job.meta

    @pytest.mark.integration
    async def test_duplicate_types_collapse(self, db, deal_id, bank_id, sink):
        await add_facts(db, deal_id, bank_id)
        result = await enqueue_spread_recompute(db, deal_id, bank_id, ["T12", "T12"], sink=sink)
        job = await db.get(SpreadJob, result.job_id)
        assert job.requested_spread_types == ["T12"]

    @pytest.mark.integration
    async def test_invalid_types_are_skipped_with_warning(self, db, deal_id, bank_id, sink):
        """Unknown types are dropped and reported as a permanent warning."""
        await add_facts(db, deal_id, bank_id)
        result = await enqueue_spread_recompute(db, deal_id, bank_id, ["T12", "CASH_BURN"], sink=sink)

        assert result.outcome == "enqueued"
        assert result.invalid_types == ["CASH_BURN"]

        warning = sink.system_events[0]
        assert warning["error_code"] == "INVALID_SPREAD_TYPES_SKIPPED"
        assert warning["source_system"] == "spreads_processor"
        assert warning["error_class"] == "permanent"
        assert warning["payload"]["invalid_types"] == ["CASH_BURN"]

    @pytest.mark.integration
    async def test_only_invalid_types_is_noop(self, db, deal_id, bank_id, sink):
        result = await enqueue_spread_recompute(db, deal_id, bank_id, ["CASH_BURN"], sink=sink)
        assert result.ok
        assert result.outcome == "noop"
        assert result.job_id is None
        assert await active_job_count(db, deal_id, bank_id) == 0


# =============================================================================
# Readiness Gate
# =============================================================================


class TestReadinessGate:
    """Types whose prerequisites are unmet never reach a job."""

    @pytest.mark.integration
    async def test_nothing_ready_waits_on_facts(self, db, deal_id, bank_id, sink):
        """No facts: no job, one diagnostic event per waiting type."""
        result = await enqueue_spread_recompute(db, deal_id, bank_id, ["T12", "RENT_ROLL"], sink=sink)

        assert result.ok
        assert result.outcome == "waiting_on_facts"
        assert result.waiting_on_facts
        assert result.job_id is None
        assert [nr.spread_type for nr in result.not_ready] == ["T12", "RENT_ROLL"]
        assert await active_job_count(db, deal_id, bank_id) == 0

        assert sink.codes() == ["SPREAD_WAITING_ON_FACTS", "SPREAD_WAITING_ON_FACTS"]
        assert sink.system_events[0]["source_system"] == "enqueue_spread_recompute"
        assert sink.system_events[0]["payload"]["missing"] == [
            "fact_type:INCOME_STATEMENT",
            "fact_type:TAX_RETURN",
        ]
        assert sink.system_events[1]["payload"]["missing"] == ["table:rent_roll_rows"]

        spreads = await db.execute(select(DealSpread).where(DealSpread.deal_id == deal_id))
        assert spreads.scalars().all() == []

    @pytest.mark.integration
    async def test_partial_readiness(self, db, deal_id, bank_id, sink):
        """Ready types are enqueued; the rest are reported."""
        await add_facts(db, deal_id, bank_id)
        result = await enqueue_spread_recompute(db, deal_id, bank_id, ["T12", "RENT_ROLL"], sink=sink)

        assert result.outcome == "enqueued"
        assert result.ready_types == ["T12"]
        assert result.not_ready[0].spread_type == "RENT_ROLL"
        job = await db.get(SpreadJob, result.job_id)
        assert job.requested_spread_types == ["T12"]

    @pytest.mark.integration
    async def test_rent_roll_rows_make_rent_roll_ready(self, db, deal_id, bank_id, sink):
        db.add(RentRollRow(deal_id=deal_id, bank_id=bank_id, unit_id="101"))
        await db.commit()

        result = await enqueue_spread_recompute(db, deal_id, bank_id, ["RENT_ROLL"], sink=sink)
        assert result.outcome == "enqueued"
        assert result.ready_types == ["RENT_ROLL"]


# =============================================================================
# Placeholders
# =============================================================================


class TestPlaceholders:
    """Queued spreads are visible as placeholders while the job runs."""

    @pytest.mark.integration
    async def test_placeholder_written(self, db, deal_id, bank_id, sink):
        await add_facts(db, deal_id, bank_id)
        await enqueue_spread_recompute(db, deal_id, bank_id, ["T12"], sink=sink)

        result = await db.execute(select(DealSpread).where(DealSpread.deal_id == deal_id))
        spread = result.scalar_one()
        assert spread.spread_type == "T12"
        assert spread.spread_version == 3
        assert spread.owner_type == "DEAL"
        assert spread.status == "queued"
        assert spread.rendered_json["rows"][0]["label"] == "Generating…"
        assert spread.rendered_json["meta"]["status"] == "queued"

    @pytest.mark.integration
    async def test_placeholder_upsert_keeps_one_row(self, db, deal_id, bank_id, sink):
        """Re-enqueueing the same type updates its placeholder in place."""
        await add_facts(db, deal_id, bank_id)
        await enqueue_spread_recompute(db, deal_id, bank_id, ["T12"], sink=sink)
        await enqueue_spread_recompute(db, deal_id, bank_id, ["T12"], sink=sink)

        result = await db.execute(
            select(func.count()).select_from(DealSpread).where(DealSpread.deal_id == deal_id)
        )
        assert result.scalar_one() == 1


# =============================================================================
# Conflicts
# =============================================================================


class TestConflicts:
    """The partial unique index decides which concurrent insert wins."""

    @pytest.mark.integration
    async def test_lost_insert_merges_into_winner(self, db, deal_id, bank_id, sink, monkeypatch):
        """A stale read that misses the active job hits the index, then merges."""
        await add_facts(db, deal_id, bank_id)
        winner = await enqueue_spread_recompute(db, deal_id, bank_id, ["T12"], sink=sink)

        real_find = spread_jobs.find_active_job
        calls = []

        async def stale_first_read(session, d, b):
            calls.append(1)
            if len(calls) == 1:
                return None
            return await real_find(session, d, b)

        monkeypatch.setattr(spread_jobs, "find_active_job", stale_first_read)
        result = await enqueue_spread_recompute(db, deal_id, bank_id, ["BALANCE_SHEET"], sink=sink)

        assert len(calls) == 2
        assert result.outcome == "merged"
        assert result.job_id == winner.job_id
        assert await active_job_count(db, deal_id, bank_id) == 1

        job = await db.get(SpreadJob, winner.job_id)
        assert job.requested_spread_types == ["T12", "BALANCE_SHEET"]

    @pytest.mark.integration
    async def test_unresolved_conflict_is_rejected(self, db, deal_id, bank_id, sink, monkeypatch):
        """Running out of attempts returns a definite rejection."""
        await add_facts(db, deal_id, bank_id)
        await enqueue_spread_recompute(db, deal_id, bank_id, ["T12"], sink=sink)

        async def never_finds(session, d, b):
            return None

        monkeypatch.setattr(spread_jobs, "find_active_job", never_finds)
        monkeypatch.setattr(spread_jobs, "get_settings", lambda: Settings(enqueue_max_attempts=1))
        result = await enqueue_spread_recompute(db, deal_id, bank_id, ["T12"], sink=sink)

        assert not result.ok
        assert result.outcome == "rejected"
        assert result.error == "enqueue_conflict_unresolved"
        assert await active_job_count(db, deal_id, bank_id) == 1

    @pytest.mark.integration
    async def test_concurrent_enqueues_share_one_job(self, session_maker, deal_id, bank_id, sink):
        """Two sessions racing with overlapping types converge on one job holding the union."""
        async with session_maker() as setup:
            await add_facts(setup, deal_id, bank_id)

        async def enqueue(types):
            async with session_maker() as session:
                return await enqueue_spread_recompute(session, deal_id, bank_id, types, sink=sink)

        results = await asyncio.gather(
            enqueue(["T12", "BALANCE_SHEET"]),
            enqueue(["T12", "GLOBAL_CASH_FLOW"]),
        )

        assert all(r.ok for r in results)
        assert sorted(r.outcome for r in results) == ["enqueued", "merged"]
        assert results[0].job_id == results[1].job_id

        async with session_maker() as check:
            assert await active_job_count(check, deal_id, bank_id) == 1
            job = await check.get(SpreadJob, results[0].job_id)
            assert sorted(job.requested_spread_types) == ["BALANCE_SHEET", "GLOBAL_CASH_FLOW", "T12"]

    @pytest.mark.integration
    async def test_concurrent_merges_keep_every_type(self, session_maker, deal_id, bank_id, sink):
        """Two merges into an existing job both land; neither overwrites the other."""
        async with session_maker() as setup:
            await add_facts(setup, deal_id, bank_id)
            first = await enqueue_spread_recompute(setup, deal_id, bank_id, ["T12"], sink=sink)

        async def enqueue(types):
            async with session_maker() as session:
                return await enqueue_spread_recompute(session, deal_id, bank_id, types, sink=sink)

        results = await asyncio.gather(
            enqueue(["T12", "BALANCE_SHEET"]),
            enqueue(["T12", "GLOBAL_CASH_FLOW"]),
        )

        assert [r.outcome for r in results] == ["merged", "merged"]
        assert {r.job_id for r in results} == {first.job_id}

        async with session_maker() as check:
            assert await active_job_count(check, deal_id, bank_id) == 1
            job = await check.get(SpreadJob, first.job_id)
            assert job.requested_spread_types[0] == "T12"
            assert sorted(job.requested_spread_types) == ["BALANCE_SHEET", "GLOBAL_CASH_FLOW", "T12"]

    @pytest.mark.integration
    async def test_merge_on_stale_read_is_redone(self, session_maker, db, deal_id, bank_id, sink, monkeypatch):
        """A merge that lost the row to another writer re-reads the job and merges again."""
        await add_facts(db, deal_id, bank_id)
        first = await enqueue_spread_recompute(db, deal_id, bank_id, ["T12"], sink=sink)

        real_find = spread_jobs.find_active_job
        calls = []

        async def read_then_other_writer_merges(session, d, b):
            job = await real_find(session, d, b)
            calls.append(1)
            if len(calls) == 1:
                async with session_maker() as other:
                    other_job = await real_find(other, d, b)
                    await spread_jobs.merge_into_job(other, other_job, ["GLOBAL_CASH_FLOW"], {})
            return job

        monkeypatch.setattr(spread_jobs, "find_active_job", read_then_other_writer_merges)
        result = await enqueue_spread_recompute(db, deal_id, bank_id, ["BALANCE_SHEET"], sink=sink)

        assert len(calls) == 2
        assert result.outcome == "merged"
        assert result.job_id == first.job_id

        job = await db.get(SpreadJob, first.job_id, populate_existing=True)
        assert job.requested_spread_types == ["T12", "GLOBAL_CASH_FLOW", "BALANCE_SHEET"]
        assert job.version_id == 3


# =============================================================================
# Transitions
# =============================================================================


class TestTransitions:
    """Tests for the job state machine."""

    @pytest.mark.integration
    async def test_lifecycle(self, db, deal_id, bank_id, sink):
        """QUEUED -> RUNNING -> SUCCEEDED records attempt and timestamps."""
        await add_facts(db, deal_id, bank_id)
        result = await enqueue_spread_recompute(db, deal_id, bank_id, ["T12"], sink=sink)

        running = await transition_job(db, result.job_id, "RUNNING")
        assert running.status == "RUNNING"
        assert running.attempt == 1
        assert running.started_at is not None

        done = await transition_job(db, result.job_id, "SUCCEEDED")
        assert done.status == "SUCCEEDED"
        assert done.finished_at is not None
        assert done.error is None

    @pytest.mark.integration
    async def test_failure_records_error(self, db, deal_id, bank_id, sink):
        await add_facts(db, deal_id, bank_id)
        result = await enqueue_spread_recompute(db, deal_id, bank_id, ["T12"], sink=sink)
        await transition_job(db, result.job_id, "RUNNING")
        failed = await transition_job(db, result.job_id, "FAILED", error="no_usable_period")
        assert failed.error == "no_usable_period"

    @pytest.mark.integration
    async def test_invalid_transitions(self, db, deal_id, bank_id, sink):
        """Terminal jobs cannot be restarted and QUEUED cannot skip RUNNING."""
        await add_facts(db, deal_id, bank_id)
        result = await enqueue_spread_recompute(db, deal_id, bank_id, ["T12"], sink=sink)

        with pytest.raises(InvalidJobTransition):
            await transition_job(db, result.job_id, "SUCCEEDED")

        await transition_job(db, result.job_id, "RUNNING")
        await transition_job(db, result.job_id, "SUCCEEDED")
        with pytest.raises(InvalidJobTransition):
            await transition_job(db, result.job_id, "RUNNING")

    @pytest.mark.integration
    async def test_missing_job(self, db, deal_id):
        with pytest.raises(JobNotFound):
            await transition_job(db, deal_id, "RUNNING")

    @pytest.mark.integration
    async def test_finished_job_frees_the_slot(self, db, deal_id, bank_id, sink):
        """After the active job finishes, the next enqueue creates a new job."""
        await add_facts(db, deal_id, bank_id)
        first = await enqueue_spread_recompute(db, deal_id, bank_id, ["T12"], sink=sink)
        await transition_job(db, first.job_id, "RUNNING")
        await transition_job(db, first.job_id, "SUCCEEDED")

        second = await enqueue_spread_recompute(db, deal_id, bank_id, ["T12"], sink=sink)
        assert second.outcome == "enqueued"
        assert second.job_id != first.job_id

        jobs = await list_spread_jobs(db, deal_id, bank_id)
        assert [j.id for j in jobs] == [second.job_id, first.job_id]

    @pytest.mark.integration
    async def test_types_added_while_running_requeue(self, session_maker, db, deal_id, bank_id, sink):
        """Finishing a run that missed merged types sends the job back to QUEUED."""
        await add_facts(db, deal_id, bank_id)
        first = await enqueue_spread_recompute(db, deal_id, bank_id, ["T12"], sink=sink)
        running = await transition_job(db, first.job_id, "RUNNING")
        started_types = list(running.requested_spread_types)

        async with session_maker() as other:
            merged = await enqueue_spread_recompute(other, deal_id, bank_id, ["BALANCE_SHEET"], sink=sink)
        assert merged.outcome == "merged"

        job = await transition_job(db, first.job_id, "SUCCEEDED", started_types=started_types)

        assert job.status == "QUEUED"
        assert job.requested_spread_types == ["T12", "BALANCE_SHEET"]
        assert job.meta["requeued_for"] == ["BALANCE_SHEET"]
        assert job.next_run_at is not None
        assert job.finished_at is None
        assert await active_job_count(db, deal_id, bank_id) == 1

        rerun = await transition_job(db, first.job_id, "RUNNING")
        assert rerun.attempt == 2
        done = await transition_job(db, first.job_id, "SUCCEEDED", started_types=rerun.requested_spread_types)
        assert done.status == "SUCCEEDED"

    @pytest.mark.integration
    async def test_finish_without_late_types(self, db, deal_id, bank_id, sink):
        await add_facts(db, deal_id, bank_id)
        first = await enqueue_spread_recompute(db, deal_id, bank_id, ["T12", "BALANCE_SHEET"], sink=sink)
        await transition_job(db, first.job_id, "RUNNING")
        done = await transition_job(
            db, first.job_id, "FAILED", error="no_usable_period", started_types=["BALANCE_SHEET", "T12"]
        )
        assert done.status == "FAILED"
        assert done.error == "no_usable_period"
