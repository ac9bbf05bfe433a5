"""Background job scheduler.

APScheduler drives the periodic escalation scan. Each tick reads the
clock once and scans every organization with an enabled policy, several
at a time, each in its own session so one organization's failure cannot
affect another's.
"""

import asyncio
import uuid
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from datetime import UTC, datetime

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy import select

from oncall_api.config import settings
from oncall_api.database import get_session_maker
from oncall_api.logging_config import get_logger
from oncall_api.models import EscalationPolicy
from oncall_api.schemas.escalation import ScanAllResult, ScanResult
from oncall_api.services.escalation_engine import (
    OrgScanGuard,
    run_escalation_scan_for_org,
)

logger = get_logger(__name__)

# Global scheduler instance
scheduler: AsyncIOScheduler | None = None

# Shared by the periodic job and the HTTP scan endpoint
scan_guard = OrgScanGuard()


async def get_organizations_to_scan() -> list[uuid.UUID]:
    """Organizations with an enabled escalation policy."""
    async with get_session_maker()() as db:
        result = await db.execute(
            select(EscalationPolicy.organization_id).where(
                EscalationPolicy.is_enabled.is_(True)
            )
        )
        return [row[0] for row in result.all()]


async def scan_organization(
    organization_id: uuid.UUID,
    now: datetime,
    guard: OrgScanGuard | None = None,
) -> ScanResult | None:
    """Scan one organization in a fresh session under the single-flight guard.

    Returns:
        The scan counters, or None when a scan for the organization was
        already running and this one was skipped.
    """
    guard = guard if guard is not None else scan_guard

    async def _scan() -> ScanResult:
        async with get_session_maker()() as db:
            return await run_escalation_scan_for_org(db, organization_id, now)

    ran, result = await guard.run(organization_id, _scan)
    if not ran:
        logger.info(
            "Escalation scan already running for organization, skipping",
            organization_id=str(organization_id),
        )
        return None
    return result


async def run_escalation_scan(
    now: datetime | None = None,
    guard: OrgScanGuard | None = None,
) -> ScanAllResult:
    """Run one escalation tick over every organization.

    Organizations are scanned concurrently, bounded by
    escalation_scan_concurrency. Errors are logged per organization.
    """
    now = now or datetime.now(UTC)
    guard = guard if guard is not None else scan_guard

    organization_ids = await get_organizations_to_scan()
    totals = ScanAllResult()
    if not organization_ids:
        logger.info("No organizations with an enabled escalation policy")
        return totals

    semaphore = asyncio.Semaphore(max(1, settings.escalation_scan_concurrency))

    async def _bounded(organization_id: uuid.UUID) -> ScanResult | None:
        async with semaphore:
            return await scan_organization(organization_id, now, guard)

    results = await asyncio.gather(
        *(_bounded(org_id) for org_id in organization_ids),
        return_exceptions=True,
    )

    for organization_id, result in zip(organization_ids, results, strict=True):
        if isinstance(result, BaseException):
            if not isinstance(result, Exception):
                raise result
            logger.error(
                "Escalation scan failed for organization",
                organization_id=str(organization_id),
                error=str(result),
                error_type=type(result).__name__,
            )
            totals.failed_orgs += 1
            continue
        if result is None:
            totals.skipped_orgs += 1
            continue
        totals.processed_orgs += 1
        totals.total_processed += result.total_processed
        totals.escalated += result.escalated
        totals.suppressed += result.suppressed

    logger.info(
        "Scheduled escalation scan completed",
        processed_orgs=totals.processed_orgs,
        failed_orgs=totals.failed_orgs,
        skipped_orgs=totals.skipped_orgs,
        escalated=totals.escalated,
        suppressed=totals.suppressed,
    )
    return totals


async def escalation_scan_job() -> None:
    """APScheduler entry point; never lets an exception reach the scheduler."""
    try:
        await run_escalation_scan()
    except Exception as e:
        logger.error("Escalation scan job failed", error=str(e), exc_info=True)


def start_scheduler() -> AsyncIOScheduler:
    """Start the background job scheduler.

    Returns:
        The started scheduler instance
    """
    global scheduler

    if scheduler is not None:
        logger.warning("Scheduler already running")
        return scheduler

    scheduler = AsyncIOScheduler()

    if settings.escalation_scan_enabled:
        scheduler.add_job(
            escalation_scan_job,
            trigger=IntervalTrigger(minutes=settings.escalation_scan_interval_minutes),
            id="escalation_scan",
            name="Alert Escalation Scan",
            replace_existing=True,
            max_instances=1,
        )
        logger.info(
            "Scheduled escalation scan job",
            interval_minutes=settings.escalation_scan_interval_minutes,
        )

    scheduler.start()
    logger.info("Background scheduler started")

    return scheduler


def stop_scheduler() -> None:
    """Stop the background job scheduler."""
    global scheduler

    if scheduler is not None:
        scheduler.shutdown(wait=False)
        scheduler = None
        logger.info("Background scheduler stopped")


def get_scheduler() -> AsyncIOScheduler | None:
    return scheduler


@asynccontextmanager
async def scheduler_lifespan() -> AsyncGenerator[None, None]:
    """Start the scheduler for the duration of the FastAPI lifespan."""
    start_scheduler()
    try:
        yield
    finally:
        stop_scheduler()
