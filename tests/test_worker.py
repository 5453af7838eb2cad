"""Tests for the regional probe worker and its result reporters."""
import json
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from checkmesh.checker import ProbeExecutor
from checkmesh.errors import TransportError
from checkmesh.schemas import CheckResultIn, Job
from checkmesh.transport import Delivery, MemoryTransport
from checkmesh.worker import GatewayResultReporter, HttpResultReporter, ProbeWorker, main


def job(monitor_id: str, region: str = "us-east-1") -> Job:
    return Job(monitor_id=monitor_id, region=region, url="https://example.com/health", timeout=5)


def fake_executor():
    executor = MagicMock()

    async def execute_many(jobs):
        return [
            CheckResultIn(
                monitor_id=j.monitor_id,
                region=j.region,
                status="UP",
                status_code=200,
                response_time_ms=50,
                checked_at=datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc),
            )
            for j in jobs
        ]

    executor.execute_many = AsyncMock(side_effect=execute_many)
    return executor


class TrackingTransport(MemoryTransport):
    def __init__(self, region: str):
        super().__init__(region)
        self.acked: list[str] = []
        self.nacked: list[str] = []

    async def ack(self, delivery: Delivery) -> None:
        self.acked.append(delivery.message_id)

    async def nack(self, delivery: Delivery) -> None:
        self.nacked.append(delivery.message_id)
        await super().nack(delivery)


@pytest.mark.asyncio
async def test_worker_reports_then_acks():
    transport = TrackingTransport("us-east-1")
    await transport.publish_batch([job("a"), job("b")])
    reporter = MagicMock()
    reporter.report = AsyncMock(return_value={"processed": 2})
    worker = ProbeWorker("us-east-1", transport, fake_executor(), reporter, poll_seconds=0.1)

    handled = await worker.run_once()

    assert handled == 2
    assert len(transport.acked) == 2
    assert transport.nacked == []
    payload = reporter.report.await_args.args[0]
    assert payload["region"] == "us-east-1"
    assert payload["callerRequestId"]
    assert [r["monitorId"] for r in payload["results"]] == ["a", "b"]
    assert payload["results"][0]["checkedAt"].startswith("2026-03-02T12:00:00")
    # Payload must be JSON-serializable for the HTTP reporter
    json.dumps(payload)


@pytest.mark.asyncio
async def test_failed_report_nacks_for_redelivery():
    transport = TrackingTransport("us-east-1")
    await transport.publish_batch([job("a")])
    reporter = MagicMock()
    reporter.report = AsyncMock(side_effect=TransportError("ingestion down"))
    worker = ProbeWorker("us-east-1", transport, fake_executor(), reporter, poll_seconds=0.1)

    handled = await worker.run_once()

    assert handled == 0
    assert transport.acked == []
    assert len(transport.nacked) == 1
    # Back on the queue
    assert transport.qsize() == 1


@pytest.mark.asyncio
async def test_executor_crash_returns_whole_batch_to_queue():
    transport = TrackingTransport("us-east-1")
    await transport.publish_batch([job("a"), job("b")])
    executor = MagicMock()
    executor.execute_many = AsyncMock(side_effect=UnicodeEncodeError("ascii", "☃", 0, 1, "boom"))
    reporter = MagicMock()
    reporter.report = AsyncMock()
    worker = ProbeWorker("us-east-1", transport, executor, reporter, poll_seconds=0.1)

    handled = await worker.run_once()

    assert handled == 0
    reporter.report.assert_not_awaited()
    assert transport.acked == []
    assert len(transport.nacked) == 2
    assert transport.qsize() == 2


@pytest.mark.asyncio
async def test_bad_header_job_does_not_sink_its_batch():
    transport = TrackingTransport("us-east-1")
    await transport.publish_batch(
        [
            job("good"),
            Job(monitor_id="bad", region="us-east-1", url="https://example.com", headers={"X-Name": "☃"}),
        ]
    )
    reporter = MagicMock()
    reporter.report = AsyncMock(return_value={"processed": 2})
    worker = ProbeWorker("us-east-1", transport, ProbeExecutor(), reporter, poll_seconds=0.1)

    with patch("checkmesh.checker.httpx.AsyncClient") as MockClient:
        mock_client_instance = AsyncMock()
        mock_client_instance.request = AsyncMock(
            side_effect=lambda method, url, headers=None, content=None: (
                MagicMock(status_code=200) if "X-Name" not in headers else headers["X-Name"].encode("ascii")
            )
        )
        mock_client_instance.__aenter__ = AsyncMock(return_value=mock_client_instance)
        mock_client_instance.__aexit__ = AsyncMock(return_value=False)
        MockClient.return_value = mock_client_instance

        handled = await worker.run_once()

    assert handled == 2
    assert len(transport.acked) == 2
    results = {r["monitorId"]: r for r in reporter.report.await_args.args[0]["results"]}
    assert results["good"]["status"] == "UP"
    assert results["bad"]["status"] == "DOWN"


@pytest.mark.asyncio
async def test_malformed_job_is_acked_and_dropped():
    transport = TrackingTransport("us-east-1")
    await transport.publish_batch([job("a")])
    await transport._queue.put(Delivery(message_id="poison", body="{not json", region="us-east-1"))
    reporter = MagicMock()
    reporter.report = AsyncMock(return_value={"processed": 1})
    executor = fake_executor()
    worker = ProbeWorker("us-east-1", transport, executor, reporter, poll_seconds=0.1)

    handled = await worker.run_once()

    assert handled == 1
    assert "poison" in transport.acked
    assert len(executor.execute_many.await_args.args[0]) == 1


@pytest.mark.asyncio
async def test_empty_queue_does_nothing():
    transport = TrackingTransport("us-east-1")
    reporter = MagicMock()
    reporter.report = AsyncMock()
    worker = ProbeWorker("us-east-1", transport, fake_executor(), reporter, poll_seconds=0.01)

    assert await worker.run_once() == 0
    reporter.report.assert_not_awaited()


@pytest.mark.asyncio
async def test_run_forever_stops_cleanly():
    transport = TrackingTransport("us-east-1")
    reporter = MagicMock()
    reporter.report = AsyncMock(return_value={"processed": 1})
    worker = ProbeWorker("us-east-1", transport, fake_executor(), reporter, poll_seconds=0.01)

    async def stop_after_first_batch(payload):
        worker.stop()
        return {"processed": len(payload["results"])}

    reporter.report.side_effect = stop_after_first_batch
    await transport.publish_batch([job("a")])

    await worker.run_forever()

    assert len(transport.acked) == 1


@pytest.mark.asyncio
async def test_http_reporter_posts_with_secret():
    mock_response = MagicMock()
    mock_response.raise_for_status = MagicMock()
    mock_response.json = MagicMock(return_value={"processed": 1})

    with patch("checkmesh.worker.httpx.AsyncClient") as MockClient:
        mock_client_instance = AsyncMock()
        mock_client_instance.post = AsyncMock(return_value=mock_response)
        mock_client_instance.__aenter__ = AsyncMock(return_value=mock_client_instance)
        mock_client_instance.__aexit__ = AsyncMock(return_value=False)
        MockClient.return_value = mock_client_instance

        reporter = HttpResultReporter("http://central/api/webhooks/monitor-results", "s3cret")
        summary = await reporter.report({"results": [], "region": "us-east-1"})

    assert summary == {"processed": 1}
    args, kwargs = mock_client_instance.post.call_args
    assert args == ("http://central/api/webhooks/monitor-results",)
    assert kwargs["headers"] == {"x-api-secret": "s3cret"}


@pytest.mark.asyncio
async def test_http_reporter_raises_transport_error_on_rejection():
    request = httpx.Request("POST", "http://central/api/webhooks/monitor-results")
    rejected = httpx.Response(401, request=request)

    with patch("checkmesh.worker.httpx.AsyncClient") as MockClient:
        mock_client_instance = AsyncMock()
        mock_client_instance.post = AsyncMock(return_value=rejected)
        mock_client_instance.__aenter__ = AsyncMock(return_value=mock_client_instance)
        mock_client_instance.__aexit__ = AsyncMock(return_value=False)
        MockClient.return_value = mock_client_instance

        reporter = HttpResultReporter(str(request.url), "wrong")
        with pytest.raises(TransportError) as exc_info:
            await reporter.report({"results": [], "region": "eu-west-1"})

    assert "401" in str(exc_info.value)
    assert exc_info.value.region == "eu-west-1"


@pytest.mark.asyncio
async def test_gateway_reporter_feeds_ingestion(services, session_factory, make_monitor):
    monitor = await make_monitor()
    transport = services.transports["us-east-1"]
    await transport.publish_batch([job(monitor.id)])
    worker = ProbeWorker(
        "us-east-1",
        transport,
        fake_executor(),
        GatewayResultReporter(services.gateway, "test-ingest-secret"),
        poll_seconds=0.1,
    )

    assert await worker.run_once() == 1
    assert transport.qsize() == 0


@pytest.mark.asyncio
async def test_gateway_reporter_with_bad_secret_raises(services):
    reporter = GatewayResultReporter(services.gateway, "not-the-secret")

    with pytest.raises(TransportError):
        await reporter.report({"results": [], "region": "us-east-1"})


def test_cli_rejects_unknown_region():
    with pytest.raises(SystemExit):
        main(["--region", "moon-1"])
