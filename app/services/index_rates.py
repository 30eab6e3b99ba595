"""
Index Rate Service

Benchmark rates used to price loans:
- SOFR from the New York Fed Markets API (no key required)
- PRIME (DPRIME), UST_5Y (DGS5) and UST_10Y (DGS10) from FRED

refresh_index_rates() pulls the latest observations into index_rates.
DatabaseIndexRateSource reads the latest stored observation per index,
with an optional Redis cache in front.
"""

from dataclasses import asdict, dataclass
from datetime import date
from decimal import Decimal
from typing import Optional, Protocol

import httpx
import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.cache import cache_index_rates, get_cached_index_rates, invalidate_index_rates
from app.core.config import get_settings
from app.models import IndexRate
from app.models.schema import utcnow

logger = structlog.get_logger()


INDEX_CODES = ("SOFR", "PRIME", "UST_5Y", "UST_10Y")

FRED_SERIES = {
    "PRIME": "DPRIME",
    "UST_5Y": "DGS5",
    "UST_10Y": "DGS10",
}


class RateFeedUnavailable(Exception):
    """No usable index rates could be loaded."""


@dataclass
class IndexRateQuote:
    """Latest observation for one index."""
    code: str
    rate_pct: float
    as_of: str  # ISO date
    source: str


class IndexRateSource(Protocol):
    async def get_latest_index_rates(self) -> dict[str, IndexRateQuote]: ...


# =============================================================================
# FEED PARSING
# =============================================================================


def parse_nyfed_sofr(data: dict) -> Optional[IndexRateQuote]:
    """
    Parse NY Fed response.

    Format: {"refRates": [{"effectiveDate": "2024-01-02", "type": "SOFR", "percentRate": 5.31}]}
    """
    for row in data.get("refRates", []):
        if row.get("type", "SOFR") != "SOFR":
            continue
        rate = row.get("percentRate")
        effective = row.get("effectiveDate")
        if rate is None or not effective:
            continue
        return IndexRateQuote(code="SOFR", rate_pct=float(rate), as_of=effective, source="nyfed")
    return None


def parse_fred_observation(code: str, data: dict) -> Optional[IndexRateQuote]:
    """
    Parse FRED observations (newest first).

    Format: {"observations": [{"date": "2024-01-02", "value": "8.50"}]}
    Missing values are reported by FRED as ".".
    """
    for obs in data.get("observations", []):
        value = obs.get("value")
        if not value or value == ".":
            continue
        try:
            rate = float(value)
        except ValueError:
            continue
        return IndexRateQuote(code=code, rate_pct=rate, as_of=obs["date"], source="fred")
    return None


async def fetch_nyfed_sofr(client: httpx.AsyncClient) -> Optional[IndexRateQuote]:
    settings = get_settings()
    try:
        resp = await client.get(settings.nyfed_sofr_url)
        if resp.status_code != 200:
            logger.warning("index_rates.nyfed.http_error", status=resp.status_code)
            return None
        return parse_nyfed_sofr(resp.json())
    except httpx.HTTPError as e:
        logger.warning("index_rates.nyfed.failed", error=str(e)[:100])
        return None


async def fetch_fred_rate(client: httpx.AsyncClient, code: str) -> Optional[IndexRateQuote]:
    settings = get_settings()
    if not settings.has_fred:
        return None

    params = {
        "series_id": FRED_SERIES[code],
        "api_key": settings.fred_api_key,
        "file_type": "json",
        "sort_order": "desc",
        "limit": 5,
    }
    try:
        resp = await client.get(settings.fred_base_url, params=params)
        if resp.status_code != 200:
            logger.warning("index_rates.fred.http_error", code=code, status=resp.status_code)
            return None
        return parse_fred_observation(code, resp.json())
    except httpx.HTTPError as e:
        logger.warning("index_rates.fred.failed", code=code, error=str(e)[:100])
        return None


async def store_index_rate(session: AsyncSession, quote: IndexRateQuote) -> None:
    """Upsert one observation keyed by (index_code, as_of)."""
    as_of = date.fromisoformat(quote.as_of)
    result = await session.execute(
        select(IndexRate).where(IndexRate.index_code == quote.code, IndexRate.as_of == as_of)
    )
    row = result.scalar_one_or_none()
    if row:
        row.rate_pct = Decimal(str(quote.rate_pct))
        row.source = quote.source
        row.fetched_at = utcnow()
    else:
        session.add(IndexRate(
            index_code=quote.code,
            rate_pct=Decimal(str(quote.rate_pct)),
            as_of=as_of,
            source=quote.source,
        ))


async def refresh_index_rates(session: AsyncSession) -> dict:
    """Fetch every feed, store what came back, and invalidate the cache."""
    settings = get_settings()
    stats = {"fetched": 0, "missing": []}

    async with httpx.AsyncClient(timeout=settings.rate_feed_timeout) as client:
        quotes = [await fetch_nyfed_sofr(client)]
        for code in FRED_SERIES:
            quotes.append(await fetch_fred_rate(client, code))

    for code, quote in zip(INDEX_CODES, quotes):
        if quote is None:
            stats["missing"].append(code)
            continue
        await store_index_rate(session, quote)
        stats["fetched"] += 1

    await session.commit()
    await invalidate_index_rates()

    logger.info("index_rates.refresh.done", **stats)
    return stats


# =============================================================================
# RATE SOURCE
# =============================================================================


class DatabaseIndexRateSource:
    """Latest stored observation per index code."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_latest_index_rates(self) -> dict[str, IndexRateQuote]:
        cached = await get_cached_index_rates()
        if cached:
            return {code: IndexRateQuote(**q) for code, q in cached.items()}

        rates: dict[str, IndexRateQuote] = {}
        for code in INDEX_CODES:
            result = await self.session.execute(
                select(IndexRate)
                .where(IndexRate.index_code == code)
                .order_by(IndexRate.as_of.desc())
                .limit(1)
            )
            row = result.scalar_one_or_none()
            if row:
                rates[code] = IndexRateQuote(
                    code=code,
                    rate_pct=float(row.rate_pct),
                    as_of=row.as_of.isoformat(),
                    source=row.source,
                )

        if not rates:
            raise RateFeedUnavailable("no index rates stored")

        await cache_index_rates({code: asdict(q) for code, q in rates.items()})
        return rates
