#!/usr/bin/env python3
"""
Process Queued Spread Jobs

Runs the underwriting pipeline for every QUEUED spread job whose
next_run_at has passed, marking each SUCCEEDED or FAILED.

Usage:
    python scripts/process_spread_jobs.py
    python scripts/process_spread_jobs.py --limit 10 --product SBA
"""

import argparse
import asyncio
import os
import sys

from dotenv import load_dotenv
from sqlalchemy import select

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

load_dotenv()

from app.core.database import async_session_maker, engine
from app.models import JOB_QUEUED, SpreadJob
from app.models.schema import utcnow
from app.services.spread_jobs import InvalidJobTransition, JobTransitionConflict
from app.services.underwrite import process_spread_job


async def main():
    parser = argparse.ArgumentParser(description="Process queued spread jobs")
    parser.add_argument("--limit", type=int, default=25, help="Max jobs to process")
    parser.add_argument("--product", type=str, default=None,
                        help="Credit product override (SBA, LOC, EQUIPMENT, ACQUISITION, CRE)")
    args = parser.parse_args()

    async with async_session_maker() as session:
        result = await session.execute(
            select(SpreadJob.id)
            .where(SpreadJob.status == JOB_QUEUED, SpreadJob.next_run_at <= utcnow())
            .order_by(SpreadJob.next_run_at)
            .limit(args.limit)
        )
        job_ids = list(result.scalars().all())

    print(f"Found {len(job_ids)} queued job(s)")

    processed = failed = skipped = 0
    for job_id in job_ids:
        async with async_session_maker() as session:
            try:
                outcome = await process_spread_job(session, job_id, product=args.product)
            except (InvalidJobTransition, JobTransitionConflict) as e:
                # Another worker picked it up
                print(f"  [skip] {job_id}: {e}")
                skipped += 1
                continue

        if outcome.pipeline_complete:
            print(f"  [ok]   {job_id}: tier {outcome.tier}, stressed {outcome.stressed_tier}")
            processed += 1
        else:
            print(f"  [fail] {job_id}: {outcome.stage} ({outcome.error})")
            failed += 1

    await engine.dispose()

    print(f"\nProcessed: {processed}  Failed: {failed}  Skipped: {skipped}")


if __name__ == "__main__":
    asyncio.run(main())
