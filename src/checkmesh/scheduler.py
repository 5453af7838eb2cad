"""
Tick scheduler: selects due monitors, fans one job per monitor out to every
reachable region, and stamps last_checked_at for accepted monitors.
"""
import asyncio
import logging
import time
from datetime import datetime, timedelta

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from pydantic import ValidationError
from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from checkmesh.clock import Clock, as_utc, utcnow
from checkmesh.config import Settings
from checkmesh.errors import TransportError
from checkmesh.models.monitor import Monitor
from checkmesh.schemas import Job, SchedulerStats, TickReport
from checkmesh.transport import Transport

logger = logging.getLogger("checkmesh.scheduler")

RECENT_WINDOW = timedelta(minutes=10)


class Scheduler:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        transports: dict[str, Transport],
        tick_seconds: int = 60,
        batch_size: int = 10,
        publish_timeout: float = 10.0,
        publish_retries: int = 2,
        publish_backoff: float = 0.5,
        clock: Clock = utcnow,
        sleep=asyncio.sleep,
    ):
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self._session_factory = session_factory
        self.transports = transports
        self.tick_seconds = tick_seconds
        self.batch_size = batch_size
        self.publish_timeout = publish_timeout
        self.publish_retries = publish_retries
        self.publish_backoff = publish_backoff
        self._clock = clock
        self._sleep = sleep
        self._tick_lock = asyncio.Lock()
        self._aps: AsyncIOScheduler | None = None
        self.last_report: TickReport | None = None

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        session_factory: async_sessionmaker[AsyncSession],
        transports: dict[str, Transport],
        clock: Clock = utcnow,
    ) -> "Scheduler":
        return cls(
            session_factory,
            transports,
            tick_seconds=settings.tick_seconds,
            batch_size=settings.publish_batch_size,
            publish_timeout=settings.publish_timeout,
            publish_retries=settings.publish_retries,
            publish_backoff=settings.publish_backoff,
            clock=clock,
        )

    # --- lifecycle ---

    def start(self) -> None:
        self._aps = AsyncIOScheduler()
        self._aps.add_job(
            self.run_tick,
            trigger=IntervalTrigger(seconds=self.tick_seconds),
            id="scheduler_tick",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self._aps.start()
        logger.info(
            f"Scheduler started (every {self.tick_seconds}s) for regions: "
            f"{', '.join(self.transports)}"
        )

    def shutdown(self) -> None:
        if self._aps is not None and self._aps.running:
            self._aps.shutdown(wait=False)
            logger.info("Scheduler stopped")
        self._aps = None

    # --- ticks ---

    async def trigger(self) -> TickReport:
        """Run one tick on demand."""
        logger.info("Manual scheduler trigger")
        return await self.run_tick()

    async def run_tick(self, now: datetime | None = None) -> TickReport:
        now = as_utc(now) if now is not None else self._clock()
        if self._tick_lock.locked():
            logger.warning("Previous tick still running, skipping this one")
            return TickReport(started_at=now, skipped=True, skip_reason="tick already running")

        async with self._tick_lock:
            report = await self._tick(now)
        self.last_report = report
        return report

    async def _tick(self, now: datetime) -> TickReport:
        start = time.monotonic()
        report = TickReport(started_at=now)

        reachable, unreachable = await self._healthy_regions()
        report.unreachable_regions = unreachable
        if unreachable:
            logger.warning(f"Unreachable regions excluded from this tick: {', '.join(unreachable)}")
        if not reachable:
            logger.error("No region transport is reachable, skipping tick")
            report.skipped = True
            report.skip_reason = "no reachable regions"
            return self._finish(report, start)

        try:
            monitors = await self._due_monitors(now)
        except SQLAlchemyError as e:
            logger.error(f"Failed to load due monitors: {e}")
            report.skipped = True
            report.skip_reason = "monitor store unavailable"
            return self._finish(report, start)

        report.due_monitors = len(monitors)
        if not monitors:
            logger.debug("No monitors due")
            return self._finish(report, start)

        jobs_by_region = self._build_jobs(monitors, reachable)
        report.jobs_built = sum(len(jobs) for jobs in jobs_by_region.values())

        outcomes = await asyncio.gather(
            *(self._publish_region(region, jobs) for region, jobs in jobs_by_region.items())
        )

        accepted_ids: set[str] = set()
        for region, (accepted, failed) in zip(jobs_by_region, outcomes):
            accepted_ids |= accepted
            report.jobs_sent += len(accepted)
            if failed:
                report.failures_by_region[region] = failed

        if accepted_ids:
            report.monitors_stamped = await self._stamp(accepted_ids, now)

        missed = report.due_monitors - len(accepted_ids)
        if missed > 0:
            logger.warning(f"{missed} due monitor(s) not accepted by any region, retrying next tick")
        return self._finish(report, start)

    def _finish(self, report: TickReport, start: float) -> TickReport:
        report.duration_ms = int((time.monotonic() - start) * 1000)
        if report.skipped:
            logger.info(f"Tick skipped ({report.skip_reason}) in {report.duration_ms}ms")
        else:
            logger.info(
                f"Tick done in {report.duration_ms}ms: {report.due_monitors} due, "
                f"{report.jobs_sent}/{report.jobs_built} jobs sent, "
                f"{report.monitors_stamped} stamped, failures={report.failures_by_region}"
            )
        return report

    async def _healthy_regions(self) -> tuple[list[str], list[str]]:
        regions = list(self.transports)
        healthy = await asyncio.gather(*(self._ping(region) for region in regions))
        reachable = [r for r, ok in zip(regions, healthy) if ok]
        unreachable = [r for r, ok in zip(regions, healthy) if not ok]
        return reachable, unreachable

    async def _ping(self, region: str) -> bool:
        try:
            return await asyncio.wait_for(
                self.transports[region].ping(), timeout=self.publish_timeout
            )
        except (TransportError, asyncio.TimeoutError) as e:
            logger.warning(f"Health check failed for region {region}: {str(e) or 'timeout'}")
            return False

    async def _due_monitors(self, now: datetime) -> list[Monitor]:
        async with self._session_factory() as db:
            res = await db.execute(
                select(Monitor).where(
                    Monitor.is_active == True,  # noqa: E712
                    Monitor.is_deleted == False,  # noqa: E712
                )
            )
            monitors = res.scalars().all()

        return [
            m
            for m in monitors
            if m.last_checked_at is None
            or now - as_utc(m.last_checked_at) >= timedelta(seconds=m.check_interval)
        ]

    @staticmethod
    def _build_jobs(monitors: list[Monitor], regions: list[str]) -> dict[str, list[Job]]:
        jobs_by_region: dict[str, list[Job]] = {region: [] for region in regions}
        for monitor in monitors:
            try:
                jobs = [
                    Job(
                        monitor_id=monitor.id,
                        region=region,
                        url=monitor.url,
                        method=monitor.method,
                        expected_status_codes=monitor.expected_status_codes or [200],
                        timeout=monitor.timeout,
                        retries=monitor.retries,
                        headers=monitor.headers,
                        body=monitor.body,
                    )
                    for region in regions
                ]
            except ValidationError as e:
                logger.error(f"Skipping monitor {monitor.id} with invalid configuration: {e.error_count()} error(s)")
                continue
            for job in jobs:
                jobs_by_region[job.region].append(job)
        return jobs_by_region

    async def _publish_region(self, region: str, jobs: list[Job]) -> tuple[set[str], int]:
        """Publish one region's jobs; returns accepted monitor ids and the failure count."""
        accepted: set[str] = set()
        if not jobs:
            return accepted, 0
        try:
            await asyncio.wait_for(
                self._publish_chunks(self.transports[region], jobs, accepted),
                timeout=self.publish_timeout,
            )
        except asyncio.TimeoutError:
            logger.error(
                f"Publishing to region {region} timed out after {self.publish_timeout}s "
                f"({len(accepted)}/{len(jobs)} accepted)"
            )
        return accepted, len(jobs) - len(accepted)

    async def _publish_chunks(self, transport: Transport, jobs: list[Job], accepted: set[str]) -> None:
        for i in range(0, len(jobs), self.batch_size):
            pending = jobs[i:i + self.batch_size]
            for attempt in range(self.publish_retries + 1):
                try:
                    flags = await transport.publish_batch(pending)
                except TransportError as e:
                    logger.warning(f"Publish to region {transport.region} failed (attempt {attempt + 1}): {e}")
                    flags = [False] * len(pending)

                for job, ok in zip(pending, flags):
                    if ok:
                        accepted.add(job.monitor_id)
                pending = [job for job, ok in zip(pending, flags) if not ok]
                if not pending:
                    break
                if attempt < self.publish_retries:
                    await self._sleep(self.publish_backoff * (2 ** attempt))

            if pending:
                logger.error(
                    f"Dropped {len(pending)} job(s) for region {transport.region} after "
                    f"{self.publish_retries + 1} attempt(s): "
                    f"{', '.join(job.monitor_id for job in pending)}"
                )

    async def _stamp(self, monitor_ids: set[str], now: datetime) -> int:
        try:
            async with self._session_factory() as db:
                await db.execute(
                    update(Monitor)
                    .where(Monitor.id.in_(sorted(monitor_ids)))
                    .values(last_checked_at=now)
                    .execution_options(synchronize_session=False)
                )
                await db.commit()
        except SQLAlchemyError as e:
            logger.error(f"Failed to stamp last_checked_at for {len(monitor_ids)} monitor(s): {e}")
            return 0
        return len(monitor_ids)

    # --- stats ---

    async def get_stats(self) -> SchedulerStats:
        now = self._clock()
        active = (
            Monitor.is_active == True,  # noqa: E712
            Monitor.is_deleted == False,  # noqa: E712
        )
        async with self._session_factory() as db:
            active_count = await db.scalar(select(func.count(Monitor.id)).where(*active))
            recent_count = await db.scalar(
                select(func.count(Monitor.id)).where(
                    *active, Monitor.last_checked_at >= now - RECENT_WINDOW
                )
            )
        return SchedulerStats(
            active_monitors=active_count or 0,
            recently_checked_monitors=recent_count or 0,
            regions=list(self.transports),
            last_tick=self.last_report,
        )
