"""
Regional probe worker: pulls jobs from its region's queue, runs them, and
reports the results to the ingestion gateway. Messages are acked only after
the report was accepted, so a crash or a failed report means redelivery.
"""
import argparse
import asyncio
import logging
import signal
import uuid
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

import httpx
from pydantic import ValidationError

from checkmesh.checker import ProbeExecutor
from checkmesh.config import get_settings
from checkmesh.errors import AuthError, MalformedPayloadError, TransportError
from checkmesh.schemas import CheckResultIn, Job
from checkmesh.transport import Delivery, Transport, build_transports

if TYPE_CHECKING:
    from checkmesh.ingestion import IngestionGateway

logger = logging.getLogger("checkmesh.worker")


class ResultReporter(ABC):
    @abstractmethod
    async def report(self, payload: dict) -> dict:
        """Deliver one result batch; raise TransportError if it was not accepted."""


class HttpResultReporter(ResultReporter):
    """Posts result batches to the ingestion webhook."""

    def __init__(self, url: str, secret: str, timeout: float = 10.0):
        self.url = url
        self._secret = secret
        self.timeout = timeout

    async def report(self, payload: dict) -> dict:
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(
                    self.url,
                    json=payload,
                    headers={"x-api-secret": self._secret},
                )
                response.raise_for_status()
                return response.json()
        except httpx.HTTPStatusError as e:
            raise TransportError(
                f"Ingestion rejected batch with {e.response.status_code}",
                region=payload.get("region"),
            ) from e
        except (httpx.HTTPError, ValueError) as e:
            raise TransportError(f"Reporting results failed: {e}", region=payload.get("region")) from e


class GatewayResultReporter(ResultReporter):
    """Hands result batches straight to an in-process gateway."""

    def __init__(self, gateway: "IngestionGateway", secret: str):
        self.gateway = gateway
        self._secret = secret

    async def report(self, payload: dict) -> dict:
        try:
            summary = await self.gateway.ingest(payload, header_secret=self._secret)
        except (AuthError, MalformedPayloadError) as e:
            raise TransportError(f"Ingestion rejected batch: {e}", region=payload.get("region")) from e
        return summary.model_dump(by_alias=True)


class ProbeWorker:
    def __init__(
        self,
        region: str,
        transport: Transport,
        executor: ProbeExecutor,
        reporter: ResultReporter,
        batch_size: int = 10,
        poll_seconds: float = 1.0,
    ):
        self.region = region
        self.transport = transport
        self.executor = executor
        self.reporter = reporter
        self.batch_size = batch_size
        self.poll_seconds = poll_seconds
        self._stop = asyncio.Event()

    async def run_once(self) -> int:
        """Process one batch of deliveries. Returns how many jobs were reported."""
        deliveries = await self.transport.receive(self.batch_size, self.poll_seconds)
        if not deliveries:
            return 0

        jobs: list[Job] = []
        runnable: list[Delivery] = []
        for delivery in deliveries:
            try:
                jobs.append(Job.model_validate_json(delivery.body))
            except ValidationError as e:
                # Redelivering a malformed message would never succeed
                logger.error(
                    f"Dropping malformed job {delivery.message_id} in {self.region}: "
                    f"{e.error_count()} error(s)"
                )
                await self._settle(delivery, ack=True)
                continue
            runnable.append(delivery)

        if not jobs:
            return 0

        request_id = str(uuid.uuid4())
        try:
            results = await self.executor.execute_many(jobs)
            summary = await self.reporter.report(self._payload(results, request_id))
        except Exception as e:
            # Every received delivery is settled, even when the batch blows up
            logger.error(
                f"Report {request_id} from {self.region} failed, "
                f"returning {len(runnable)} job(s) to the queue: {e}"
            )
            for delivery in runnable:
                await self._settle(delivery, ack=False)
            return 0

        for delivery in runnable:
            await self._settle(delivery, ack=True)
        logger.info(
            f"Reported {len(results)} result(s) from {self.region} "
            f"(request {request_id}, processed={summary.get('processed')})"
        )
        return len(results)

    def _payload(self, results: list[CheckResultIn], request_id: str) -> dict:
        return {
            "results": [r.model_dump(mode="json", by_alias=True) for r in results],
            "callerRequestId": request_id,
            "region": self.region,
        }

    async def _settle(self, delivery: Delivery, ack: bool) -> None:
        try:
            if ack:
                await self.transport.ack(delivery)
            else:
                await self.transport.nack(delivery)
        except TransportError as e:
            logger.error(
                f"Failed to {'ack' if ack else 'nack'} message {delivery.message_id} "
                f"in {self.region}: {e}"
            )

    async def run_forever(self) -> None:
        logger.info(f"Probe worker started for region {self.region}")
        while not self._stop.is_set():
            try:
                await self.run_once()
            except Exception as e:
                logger.error(f"Worker loop error in {self.region}: {e}")
                await self._pause()
        logger.info(f"Probe worker stopped for region {self.region}")

    async def _pause(self) -> None:
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=self.poll_seconds)
        except asyncio.TimeoutError:
            pass

    def stop(self) -> None:
        self._stop.set()


async def _run_standalone(worker: ProbeWorker) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, worker.stop)
    try:
        await worker.run_forever()
    finally:
        await worker.transport.close()


def main(argv: list[str] | None = None) -> None:
    """Entry point for the checkmesh-worker console script."""
    parser = argparse.ArgumentParser(
        prog="checkmesh-worker",
        description="Run a probe worker for one region",
    )
    parser.add_argument("--region", required=True, help="Region whose queue to consume")
    parser.add_argument("--ingest-url", default=None, help="Override the ingestion webhook URL")
    args = parser.parse_args(argv)

    settings = get_settings()
    logging.basicConfig(
        level=logging.INFO if not settings.debug else logging.DEBUG,
        format="%(asctime)s %(levelname)-8s [%(name)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    if args.region not in settings.regions:
        parser.error(f"unknown region {args.region!r}; configured: {', '.join(settings.regions)}")
    if settings.transport_backend == "memory":
        parser.error("a standalone worker needs a shared broker (TRANSPORT_BACKEND=stomp)")

    transport = build_transports(settings)[args.region]
    worker = ProbeWorker(
        region=args.region,
        transport=transport,
        executor=ProbeExecutor.from_settings(settings),
        reporter=HttpResultReporter(
            args.ingest_url or settings.ingest_url,
            settings.ingest_secret,
            timeout=settings.report_timeout,
        ),
        batch_size=settings.worker_batch_size,
        poll_seconds=settings.worker_poll_seconds,
    )
    asyncio.run(_run_standalone(worker))


if __name__ == "__main__":
    main()
