"""
Wires the pipeline together once per process.
"""
import asyncio
import logging
from dataclasses import dataclass, field

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from checkmesh.checker import ProbeExecutor
from checkmesh.clock import Clock, utcnow
from checkmesh.config import Settings
from checkmesh.incidents import IncidentEngine
from checkmesh.ingestion import IngestionGateway
from checkmesh.notifier import Mailer, NotificationDispatcher
from checkmesh.scheduler import Scheduler
from checkmesh.transport import Transport, build_transports
from checkmesh.worker import GatewayResultReporter, ProbeWorker

logger = logging.getLogger("checkmesh.services")


@dataclass
class Services:
    settings: Settings
    session_factory: async_sessionmaker[AsyncSession]
    transports: dict[str, Transport]
    scheduler: Scheduler
    incident_engine: IncidentEngine
    dispatcher: NotificationDispatcher
    gateway: IngestionGateway
    workers: list[ProbeWorker] = field(default_factory=list)
    _worker_tasks: list[asyncio.Task] = field(default_factory=list)

    def start(self) -> None:
        self.scheduler.start()
        for worker in self.workers:
            self._worker_tasks.append(asyncio.create_task(worker.run_forever()))
        if self.workers:
            logger.info(f"Started {len(self.workers)} embedded probe worker(s)")

    async def stop(self) -> None:
        self.scheduler.shutdown()
        for worker in self.workers:
            worker.stop()
        if self._worker_tasks:
            await asyncio.gather(*self._worker_tasks, return_exceptions=True)
            self._worker_tasks.clear()
        await self.dispatcher.drain()
        for transport in self.transports.values():
            await transport.close()


def build_services(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    mailer: Mailer | None = None,
    transports: dict[str, Transport] | None = None,
    clock: Clock = utcnow,
) -> Services:
    transports = transports if transports is not None else build_transports(settings)
    incident_engine = IncidentEngine(session_factory, clock=clock)
    dispatcher = NotificationDispatcher.from_settings(
        settings, session_factory, mailer, clock=clock
    )
    gateway = IngestionGateway(
        session_factory,
        incident_engine,
        dispatcher,
        shared_secret=settings.ingest_secret,
        regions=settings.regions,
    )
    scheduler = Scheduler.from_settings(settings, session_factory, transports, clock=clock)

    workers = []
    if settings.embedded_workers:
        executor = ProbeExecutor.from_settings(settings)
        reporter = GatewayResultReporter(gateway, settings.ingest_secret)
        workers = [
            ProbeWorker(
                region=region,
                transport=transport,
                executor=executor,
                reporter=reporter,
                batch_size=settings.worker_batch_size,
                poll_seconds=settings.worker_poll_seconds,
            )
            for region, transport in transports.items()
        ]

    return Services(
        settings=settings,
        session_factory=session_factory,
        transports=transports,
        scheduler=scheduler,
        incident_engine=incident_engine,
        dispatcher=dispatcher,
        gateway=gateway,
        workers=workers,
    )


def get_services(request: Request) -> Services:
    return request.app.state.services
