"""
Per-region job transport: publish on the scheduler side, receive/ack on the
probe worker side. Delivery is at-least-once with no ordering guarantee.
"""
import asyncio
import logging
import threading
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

import stomp
from stomp.exception import StompException

from checkmesh.config import Settings
from checkmesh.errors import TransportError
from checkmesh.schemas import Job

logger = logging.getLogger("checkmesh.transport")


@dataclass
class Delivery:
    message_id: str
    body: str
    region: str
    receipt: Any = None


class Transport(ABC):
    """One region's logical channel."""

    def __init__(self, region: str):
        self.region = region

    @abstractmethod
    async def publish_batch(self, jobs: list[Job]) -> list[bool]:
        """Publish jobs; returns per-message acceptance in input order."""

    @abstractmethod
    async def ping(self) -> bool:
        ...

    @abstractmethod
    async def receive(self, max_messages: int, wait: float) -> list[Delivery]:
        ...

    @abstractmethod
    async def ack(self, delivery: Delivery) -> None:
        ...

    @abstractmethod
    async def nack(self, delivery: Delivery) -> None:
        ...

    async def close(self) -> None:
        return None


class MemoryTransport(Transport):
    """In-process queue for single-node deployments and tests."""

    def __init__(self, region: str, maxsize: int = 10000):
        super().__init__(region)
        self._queue: asyncio.Queue[Delivery] = asyncio.Queue(maxsize=maxsize)
        self._closed = False

    async def publish_batch(self, jobs: list[Job]) -> list[bool]:
        if self._closed:
            raise TransportError("Transport is closed", region=self.region)
        accepted = []
        for job in jobs:
            delivery = Delivery(
                message_id=str(uuid.uuid4()),
                body=job.model_dump_json(by_alias=True),
                region=self.region,
            )
            try:
                self._queue.put_nowait(delivery)
                accepted.append(True)
            except asyncio.QueueFull:
                logger.warning(f"Queue full for region {self.region}, dropping job for {job.monitor_id}")
                accepted.append(False)
        return accepted

    async def ping(self) -> bool:
        return not self._closed

    async def receive(self, max_messages: int, wait: float) -> list[Delivery]:
        try:
            first = await asyncio.wait_for(self._queue.get(), timeout=wait)
        except asyncio.TimeoutError:
            return []
        deliveries = [first]
        while len(deliveries) < max_messages:
            try:
                deliveries.append(self._queue.get_nowait())
            except asyncio.QueueEmpty:
                break
        return deliveries

    async def ack(self, delivery: Delivery) -> None:
        return None

    async def nack(self, delivery: Delivery) -> None:
        try:
            self._queue.put_nowait(delivery)
        except asyncio.QueueFull:
            logger.error(f"Queue full for region {self.region}, lost redelivery of {delivery.message_id}")

    def qsize(self) -> int:
        return self._queue.qsize()

    async def close(self) -> None:
        self._closed = True


class _InboxListener(stomp.ConnectionListener):
    def __init__(self, transport: "StompTransport"):
        self._transport = transport

    def on_message(self, frame):
        self._transport._deliver(frame)

    def on_error(self, frame):
        logger.error(f"STOMP error for region {self._transport.region}: {frame.body}")

    def on_disconnected(self):
        logger.warning(f"STOMP connection lost for region {self._transport.region}")
        self._transport._subscribed = False


class StompTransport(Transport):
    """
    ActiveMQ/STOMP queue, one destination per region.

    stomp.py is thread-based; blocking calls run through asyncio.to_thread and
    inbound frames are handed to the event loop with call_soon_threadsafe.
    """

    subscription_id = "checkmesh-worker"

    def __init__(
        self,
        region: str,
        destination: str,
        host: str,
        port: int,
        user: str = "",
        password: str = "",
        use_ssl: bool = False,
    ):
        super().__init__(region)
        self.destination = destination
        self.host = host
        self.port = port
        self._user = user
        self._password = password
        self._use_ssl = use_ssl
        self._conn = None
        self._lock = threading.Lock()
        self._subscribed = False
        self._loop: asyncio.AbstractEventLoop | None = None
        self._inbox: asyncio.Queue[Delivery] | None = None

    def _connect(self):
        with self._lock:
            if self._conn is not None and self._conn.is_connected():
                return self._conn
            logger.info(f"Connecting to STOMP broker at {self.host}:{self.port} for {self.region}")
            conn = stomp.Connection(
                host_and_ports=[(self.host, self.port)],
                heartbeats=(5000, 10000),
            )
            if self._use_ssl:
                conn.set_ssl(for_hosts=[(self.host, self.port)])
            conn.set_listener("checkmesh", _InboxListener(self))
            conn.connect(self._user, self._password, wait=True)
            self._conn = conn
            self._subscribed = False
            return conn

    def _send_batch(self, jobs: list[Job]) -> list[bool]:
        try:
            conn = self._connect()
        except (StompException, OSError) as e:
            raise TransportError(f"Cannot connect to broker: {e}", region=self.region) from e

        accepted = []
        for job in jobs:
            try:
                conn.send(
                    destination=self.destination,
                    body=job.model_dump_json(by_alias=True),
                    content_type="application/json",
                    headers={"persistent": "true"},
                )
                accepted.append(True)
            except (StompException, OSError) as e:
                logger.error(f"Failed to publish job for {job.monitor_id} to {self.region}: {e}")
                accepted.append(False)
        return accepted

    async def publish_batch(self, jobs: list[Job]) -> list[bool]:
        return await asyncio.to_thread(self._send_batch, jobs)

    async def ping(self) -> bool:
        try:
            await asyncio.to_thread(self._connect)
            return True
        except (StompException, OSError) as e:
            logger.warning(f"STOMP broker unreachable for region {self.region}: {e}")
            return False

    def _subscribe(self) -> None:
        conn = self._connect()
        if not self._subscribed:
            conn.subscribe(
                destination=self.destination,
                id=self.subscription_id,
                ack="client-individual",
            )
            self._subscribed = True
            logger.info(f"Subscribed to {self.destination}")

    def _deliver(self, frame) -> None:
        if self._loop is None or self._inbox is None:
            return
        delivery = Delivery(
            message_id=frame.headers.get("message-id", ""),
            body=frame.body,
            region=self.region,
            receipt=frame.headers.get("subscription", self.subscription_id),
        )
        self._loop.call_soon_threadsafe(self._inbox.put_nowait, delivery)

    async def receive(self, max_messages: int, wait: float) -> list[Delivery]:
        if self._inbox is None:
            self._loop = asyncio.get_running_loop()
            self._inbox = asyncio.Queue()
        try:
            await asyncio.to_thread(self._subscribe)
        except (StompException, OSError) as e:
            raise TransportError(f"Cannot subscribe to {self.destination}: {e}", region=self.region) from e

        try:
            first = await asyncio.wait_for(self._inbox.get(), timeout=wait)
        except asyncio.TimeoutError:
            return []
        deliveries = [first]
        while len(deliveries) < max_messages:
            try:
                deliveries.append(self._inbox.get_nowait())
            except asyncio.QueueEmpty:
                break
        return deliveries

    async def ack(self, delivery: Delivery) -> None:
        conn = self._conn
        if conn is None:
            raise TransportError("Not connected", region=self.region)
        await asyncio.to_thread(conn.ack, delivery.message_id, delivery.receipt)

    async def nack(self, delivery: Delivery) -> None:
        conn = self._conn
        if conn is None:
            raise TransportError("Not connected", region=self.region)
        await asyncio.to_thread(conn.nack, delivery.message_id, delivery.receipt)

    async def close(self) -> None:
        conn = self._conn
        self._conn = None
        if conn is not None and conn.is_connected():
            try:
                await asyncio.to_thread(conn.disconnect)
                logger.info(f"Disconnected from STOMP broker for region {self.region}")
            except (StompException, OSError) as e:
                logger.error(f"Error disconnecting from STOMP broker: {e}")


def build_transports(settings: Settings) -> dict[str, Transport]:
    """Build the region -> transport map once at startup."""
    transports: dict[str, Transport] = {}
    for region in settings.regions:
        if settings.transport_backend == "stomp":
            transports[region] = StompTransport(
                region=region,
                destination=f"/queue/{settings.queue_prefix}.{region}",
                host=settings.stomp_host,
                port=settings.stomp_port,
                user=settings.stomp_user,
                password=settings.stomp_password,
                use_ssl=settings.stomp_use_ssl,
            )
        elif settings.transport_backend == "memory":
            transports[region] = MemoryTransport(region, maxsize=settings.memory_queue_size)
        else:
            raise ValueError(f"Unknown transport backend: {settings.transport_backend}")
    logger.info(
        f"Transports initialized ({settings.transport_backend}) for regions: "
        f"{', '.join(transports)}"
    )
    return transports
