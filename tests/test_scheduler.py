"""Tests for the tick scheduler: due selection, regional fan-out and stamping."""
import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import select

from checkmesh.clock import as_utc
from checkmesh.errors import TransportError
from checkmesh.models.monitor import Monitor
from checkmesh.scheduler import Scheduler
from checkmesh.schemas import Job
from checkmesh.transport import MemoryTransport


class BrokenTransport(MemoryTransport):
    """Reachable, but every publish fails."""

    def __init__(self, region: str):
        super().__init__(region)
        self.calls = 0

    async def publish_batch(self, jobs):
        self.calls += 1
        raise TransportError("broker rejected publish", region=self.region)


class UnreachableTransport(MemoryTransport):
    async def ping(self):
        return False


class RecordingTransport(MemoryTransport):
    def __init__(self, region: str):
        super().__init__(region)
        self.chunks: list[int] = []

    async def publish_batch(self, jobs):
        self.chunks.append(len(jobs))
        return await super().publish_batch(jobs)


class HangingTransport(MemoryTransport):
    async def publish_batch(self, jobs):
        await asyncio.Event().wait()


def make_scheduler(session_factory, transports, clock, **kwargs) -> Scheduler:
    return Scheduler(session_factory, transports, clock=clock, sleep=AsyncMock(), **kwargs)


async def get_monitor(session_factory, monitor_id: str) -> Monitor:
    async with session_factory() as db:
        res = await db.execute(select(Monitor).where(Monitor.id == monitor_id))
        return res.scalar_one()


@pytest.mark.asyncio
async def test_due_monitor_fans_out_to_every_region(session_factory, transports, clock, make_monitor):
    monitor = await make_monitor(
        check_interval=300, last_checked_at=clock.now - timedelta(minutes=6)
    )
    scheduler = make_scheduler(session_factory, transports, clock)

    report = await scheduler.run_tick()

    assert report.due_monitors == 1
    assert report.jobs_built == 3
    assert report.jobs_sent == 3
    assert report.monitors_stamped == 1
    assert report.failures_by_region == {}
    assert not report.skipped

    for region, transport in transports.items():
        assert transport.qsize() == 1
        [delivery] = await transport.receive(10, 0.1)
        job = Job.model_validate_json(delivery.body)
        assert job.monitor_id == monitor.id
        assert job.region == region
        assert '"monitorId"' in delivery.body

    stored = await get_monitor(session_factory, monitor.id)
    assert as_utc(stored.last_checked_at) == clock.now


@pytest.mark.asyncio
async def test_monitor_not_yet_due_is_skipped(session_factory, transports, clock, make_monitor):
    await make_monitor(check_interval=300, last_checked_at=clock.now - timedelta(minutes=2))
    scheduler = make_scheduler(session_factory, transports, clock)

    report = await scheduler.run_tick()

    assert report.due_monitors == 0
    assert report.jobs_built == 0
    assert all(t.qsize() == 0 for t in transports.values())


@pytest.mark.asyncio
async def test_due_uses_each_monitors_own_interval(session_factory, transports, clock, make_monitor):
    # Checked 10 minutes ago: due at a 5 minute interval, not at 30 minutes
    fast = await make_monitor(check_interval=300, last_checked_at=clock.now - timedelta(minutes=10))
    await make_monitor(check_interval=1800, last_checked_at=clock.now - timedelta(minutes=10))
    never = await make_monitor(check_interval=3600)
    scheduler = make_scheduler(session_factory, transports, clock)

    report = await scheduler.run_tick()

    assert report.due_monitors == 2
    deliveries = await transports["us-east-1"].receive(10, 0.1)
    assert {Job.model_validate_json(d.body).monitor_id for d in deliveries} == {fast.id, never.id}


@pytest.mark.asyncio
async def test_inactive_and_deleted_monitors_are_ignored(session_factory, transports, clock, make_monitor):
    await make_monitor(is_active=False)
    await make_monitor(is_deleted=True)
    scheduler = make_scheduler(session_factory, transports, clock)

    report = await scheduler.run_tick()

    assert report.due_monitors == 0
    assert report.monitors_stamped == 0


@pytest.mark.asyncio
async def test_one_failing_region_does_not_block_the_others(session_factory, clock, make_monitor):
    monitor = await make_monitor()
    broken = BrokenTransport("eu-west-1")
    transports = {
        "us-east-1": MemoryTransport("us-east-1"),
        "eu-west-1": broken,
        "ap-south-1": MemoryTransport("ap-south-1"),
    }
    scheduler = make_scheduler(session_factory, transports, clock, publish_retries=2)

    report = await scheduler.run_tick()

    assert report.jobs_built == 3
    assert report.jobs_sent == 2
    assert report.failures_by_region == {"eu-west-1": 1}
    assert broken.calls == 3
    assert report.monitors_stamped == 1
    stored = await get_monitor(session_factory, monitor.id)
    assert as_utc(stored.last_checked_at) == clock.now


@pytest.mark.asyncio
async def test_monitor_failing_everywhere_keeps_its_timestamp(session_factory, clock, make_monitor):
    previous = clock.now - timedelta(minutes=30)
    monitor = await make_monitor(last_checked_at=previous)
    transports = {r: BrokenTransport(r) for r in ("us-east-1", "eu-west-1")}
    scheduler = make_scheduler(session_factory, transports, clock)

    report = await scheduler.run_tick()

    assert report.jobs_sent == 0
    assert report.monitors_stamped == 0
    assert report.failures_by_region == {"us-east-1": 1, "eu-west-1": 1}
    stored = await get_monitor(session_factory, monitor.id)
    assert as_utc(stored.last_checked_at) == previous


@pytest.mark.asyncio
async def test_publish_retries_back_off_exponentially(session_factory, clock, make_monitor):
    await make_monitor()
    sleep = AsyncMock()
    scheduler = Scheduler(
        session_factory,
        {"us-east-1": BrokenTransport("us-east-1")},
        publish_retries=3,
        publish_backoff=0.5,
        clock=clock,
        sleep=sleep,
    )

    await scheduler.run_tick()

    assert [c.args[0] for c in sleep.await_args_list] == [0.5, 1.0, 2.0]


@pytest.mark.asyncio
async def test_unreachable_region_is_excluded(session_factory, clock, make_monitor):
    await make_monitor()
    transports = {
        "us-east-1": MemoryTransport("us-east-1"),
        "eu-west-1": UnreachableTransport("eu-west-1"),
    }
    scheduler = make_scheduler(session_factory, transports, clock)

    report = await scheduler.run_tick()

    assert report.unreachable_regions == ["eu-west-1"]
    assert report.jobs_built == 1
    assert report.jobs_sent == 1
    assert transports["eu-west-1"].qsize() == 0
    assert report.monitors_stamped == 1


@pytest.mark.asyncio
async def test_tick_is_skipped_when_no_region_is_reachable(session_factory, clock, make_monitor):
    monitor = await make_monitor()
    transports = {r: UnreachableTransport(r) for r in ("us-east-1", "eu-west-1")}
    scheduler = make_scheduler(session_factory, transports, clock)

    report = await scheduler.run_tick()

    assert report.skipped
    assert report.skip_reason == "no reachable regions"
    assert sorted(report.unreachable_regions) == ["eu-west-1", "us-east-1"]
    assert report.jobs_sent == 0
    stored = await get_monitor(session_factory, monitor.id)
    assert stored.last_checked_at is None


@pytest.mark.asyncio
async def test_jobs_are_published_in_chunks(session_factory, clock, make_monitor):
    for i in range(5):
        await make_monitor(name=f"Site {i}")
    recording = RecordingTransport("us-east-1")
    scheduler = make_scheduler(session_factory, {"us-east-1": recording}, clock, batch_size=2)

    report = await scheduler.run_tick()

    assert recording.chunks == [2, 2, 1]
    assert report.jobs_sent == 5
    assert report.monitors_stamped == 5


@pytest.mark.asyncio
async def test_full_queue_rejects_only_overflow(session_factory, clock, make_monitor):
    await make_monitor(name="first")
    await make_monitor(name="second")
    scheduler = make_scheduler(session_factory, {"us-east-1": MemoryTransport("us-east-1", maxsize=1)}, clock)

    report = await scheduler.run_tick()

    assert report.jobs_sent == 1
    assert report.failures_by_region == {"us-east-1": 1}
    assert report.monitors_stamped == 1


@pytest.mark.asyncio
async def test_wedged_region_is_bounded_by_publish_timeout(session_factory, clock, make_monitor):
    await make_monitor()
    transports = {
        "us-east-1": MemoryTransport("us-east-1"),
        "eu-west-1": HangingTransport("eu-west-1"),
    }
    scheduler = make_scheduler(session_factory, transports, clock, publish_timeout=0.05)

    report = await scheduler.run_tick()

    assert report.failures_by_region == {"eu-west-1": 1}
    assert report.jobs_sent == 1
    assert report.monitors_stamped == 1


@pytest.mark.asyncio
async def test_invalid_monitor_configuration_is_skipped(session_factory, transports, clock, make_monitor):
    await make_monitor(url="ftp://example.com/file")
    good = await make_monitor()
    scheduler = make_scheduler(session_factory, transports, clock)

    report = await scheduler.run_tick()

    assert report.due_monitors == 2
    assert report.jobs_built == 3
    assert report.monitors_stamped == 1
    [delivery] = await transports["us-east-1"].receive(10, 0.1)
    assert Job.model_validate_json(delivery.body).monitor_id == good.id


@pytest.mark.asyncio
async def test_overlapping_tick_is_refused(session_factory, clock, make_monitor):
    await make_monitor()
    release = asyncio.Event()

    class SlowPingTransport(MemoryTransport):
        async def ping(self):
            await release.wait()
            return True

    scheduler = make_scheduler(session_factory, {"us-east-1": SlowPingTransport("us-east-1")}, clock)

    first = asyncio.create_task(scheduler.run_tick())
    await asyncio.sleep(0)
    second = await scheduler.run_tick()
    release.set()
    first_report = await first

    assert second.skipped
    assert second.skip_reason == "tick already running"
    assert not first_report.skipped
    assert first_report.jobs_sent == 1


@pytest.mark.asyncio
async def test_stats_and_manual_trigger(session_factory, transports, clock, make_monitor):
    await make_monitor()
    await make_monitor(is_active=False)
    scheduler = make_scheduler(session_factory, transports, clock)

    before = await scheduler.get_stats()
    assert before.active_monitors == 1
    assert before.recently_checked_monitors == 0
    assert before.last_tick is None

    report = await scheduler.trigger()
    after = await scheduler.get_stats()

    assert after.recently_checked_monitors == 1
    assert after.regions == list(transports)
    assert after.last_tick == report


@pytest.mark.asyncio
async def test_apscheduler_job_registration(session_factory, transports, clock):
    scheduler = make_scheduler(session_factory, transports, clock, tick_seconds=60)
    scheduler.start()
    try:
        job = scheduler._aps.get_job("scheduler_tick")
        assert job is not None
        assert job.max_instances == 1
        assert job.coalesce is True
    finally:
        scheduler.shutdown()
    assert scheduler._aps is None
