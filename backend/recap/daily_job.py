"""Nightly recap job.

Triggered once a day by an external scheduler (cron). Connected users are
processed in bounded batches, concurrently within a batch, with a short
pause between batches so the job does not burst Spotify's app-wide rate
limit. Re-running it for the same day is harmless: plays are
insert-if-absent and recaps are upserts.
"""

import argparse
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Optional

from ingest.spotify_sync import HistorySynchronizer
from integrations.spotify.credentials import CredentialManager
from integrations.spotify.exceptions import SpotifyError
from models import DailyRecap
from models.base import utcnow
from recap.aggregation import RecapService

logger = logging.getLogger(__name__)


@dataclass
class RecapJobReport:
    recap_date: date
    users_total: int = 0
    recaps_generated: int = 0
    recaps_empty: int = 0
    sync_failures: int = 0
    failures: int = 0
    started_at: datetime = field(default_factory=utcnow)
    completed_at: Optional[datetime] = None


async def process_user_recap(
    user_id: str,
    day: date,
    synchronizer: HistorySynchronizer,
    recaps: RecapService,
    report: RecapJobReport,
) -> DailyRecap:
    """Best-effort sync, then recompute the user's recap for ``day``."""
    try:
        await synchronizer.sync_now(user_id)
    except SpotifyError as e:
        # stale history still gets a recap; the next poll catches up
        report.sync_failures += 1
        logger.warning("Pre-recap sync failed for user %s: %s", user_id, e.message)

    recap = await recaps.compute_daily_aggregate(user_id, day)
    if recap.total_tracks:
        report.recaps_generated += 1
    else:
        report.recaps_empty += 1
        logger.debug("No listening data for user %s on %s", user_id, day)
    return recap


async def run_daily_recap(
    credentials: CredentialManager,
    synchronizer: HistorySynchronizer,
    recaps: RecapService,
    day: Optional[date] = None,
    batch_size: int = 10,
    batch_delay: float = 1.0,
) -> RecapJobReport:
    """Generate recaps for every connected user. Defaults to yesterday."""
    day = day or recaps.today() - timedelta(days=1)
    report = RecapJobReport(recap_date=day)

    user_ids = await credentials.list_connected_user_ids()
    report.users_total = len(user_ids)
    logger.info("Starting daily recap job for %s: %d users", day.isoformat(), len(user_ids))

    for i in range(0, len(user_ids), batch_size):
        batch = user_ids[i : i + batch_size]
        results = await asyncio.gather(
            *(process_user_recap(u, day, synchronizer, recaps, report) for u in batch),
            return_exceptions=True,
        )
        for user_id, result in zip(batch, results):
            if isinstance(result, BaseException):
                report.failures += 1
                logger.error(
                    "Failed to process daily recap for user %s: %s", user_id, result
                )

        if i + batch_size < len(user_ids):
            await asyncio.sleep(batch_delay)

    report.completed_at = utcnow()
    logger.info(
        "Daily recap job completed for %s: %d generated, %d empty, %d failed",
        day.isoformat(),
        report.recaps_generated,
        report.recaps_empty,
        report.failures,
    )
    return report


async def _run_once(day: Optional[date]) -> RecapJobReport:
    from api.config import get_settings
    from api.database import close_db, get_session_factory, init_db
    from api.log_config import configure_logging
    from api.services import build_services

    settings = get_settings()
    configure_logging(settings.log_level, json_format=settings.log_json)
    await init_db()
    services = build_services(settings, get_session_factory())
    try:
        return await run_daily_recap(
            services.credentials,
            services.synchronizer,
            services.recaps,
            day=day,
            batch_size=settings.recap_batch_size,
            batch_delay=settings.recap_batch_delay_seconds,
        )
    finally:
        await services.aclose()
        await close_db()


def main(argv: Optional[list[str]] = None) -> None:
    """Command line entry point for the cron trigger."""
    parser = argparse.ArgumentParser(description="Generate daily listening recaps")
    parser.add_argument(
        "--date",
        type=date.fromisoformat,
        default=None,
        help="Day to recap (YYYY-MM-DD), defaults to yesterday",
    )
    args = parser.parse_args(argv)
    report = asyncio.run(_run_once(args.date))
    if report.failures:
        raise SystemExit(1)


if __name__ == "__main__":
    main()
