#!/usr/bin/env python3
"""
Refresh Benchmark Index Rates

Pulls the latest SOFR (NY Fed) and PRIME / UST_5Y / UST_10Y (FRED) observations
into the index_rates table used by pricing scenario generation.

Usage:
    python scripts/refresh_index_rates.py
    python scripts/refresh_index_rates.py --show
"""

import argparse
import asyncio
import os
import sys

from dotenv import load_dotenv

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

load_dotenv()

from app.core.database import async_session_maker, engine
from app.services.index_rates import (
    INDEX_CODES,
    DatabaseIndexRateSource,
    RateFeedUnavailable,
    refresh_index_rates,
)


async def main():
    parser = argparse.ArgumentParser(description="Refresh benchmark index rates")
    parser.add_argument("--show", action="store_true",
                        help="Show the latest stored rates without fetching")
    args = parser.parse_args()

    if not args.show:
        async with async_session_maker() as session:
            stats = await refresh_index_rates(session)

        print(f"\n{'='*60}")
        print("REFRESH INDEX RATES")
        print(f"{'='*60}")
        print(f"Fetched:  {stats['fetched']}")
        print(f"Missing:  {', '.join(stats['missing']) if stats['missing'] else 'None'}")

    async with async_session_maker() as session:
        try:
            rates = await DatabaseIndexRateSource(session).get_latest_index_rates()
        except RateFeedUnavailable:
            rates = {}

    print(f"\n{'Index':<10} {'Rate':>8}  {'As of':<12} Source")
    for code in INDEX_CODES:
        quote = rates.get(code)
        if quote:
            print(f"{code:<10} {quote.rate_pct:>7.2f}%  {quote.as_of:<12} {quote.source}")
        else:
            print(f"{code:<10} {'-':>8}")

    await engine.dispose()


if __name__ == "__main__":
    asyncio.run(main())
