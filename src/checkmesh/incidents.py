"""
Incident state machine.

Per monitor: NONE -> OPEN -> RESOLVED. The decision for one result reads the
currently open incident fresh, under a per-monitor lock, so duplicate and
out-of-order results from many regions collapse onto a single incident.
"""
import asyncio
import enum
import logging
from collections import defaultdict
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from checkmesh.clock import Clock, as_utc, utcnow
from checkmesh.errors import PersistenceError
from checkmesh.models.incident import INCIDENT_OPEN, INCIDENT_RESOLVED, Incident
from checkmesh.schemas import STATUS_DOWN, CheckResultIn

logger = logging.getLogger("checkmesh.incidents")


class TransitionKind(str, enum.Enum):
    OPENED = "opened"
    UPDATED = "updated"
    RESOLVED = "resolved"
    NOOP = "noop"


@dataclass(frozen=True)
class IncidentTransition:
    kind: TransitionKind
    monitor_id: str
    incident_id: str | None = None
    started_at: datetime | None = None
    resolved_at: datetime | None = None
    duration_seconds: int | None = None
    error_message: str | None = None


class KeyedLock:
    """One asyncio.Lock per key, dropped again once nobody holds or waits on it."""

    def __init__(self):
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = defaultdict(int)

    @asynccontextmanager
    async def hold(self, key: str):
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] += 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                self._locks.pop(key, None)

    def __len__(self) -> int:
        return len(self._locks)


class IncidentEngine:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        clock: Clock = utcnow,
    ):
        self._session_factory = session_factory
        self._clock = clock
        self._locks = KeyedLock()

    async def apply(self, result: CheckResultIn) -> IncidentTransition:
        """Apply one check result to the monitor's incident timeline."""
        async with self._locks.hold(result.monitor_id):
            try:
                async with self._session_factory() as db:
                    return await self._decide(db, result)
            except SQLAlchemyError as e:
                raise PersistenceError(
                    f"Incident update failed for monitor {result.monitor_id}: {e}"
                ) from e

    async def _decide(self, db: AsyncSession, result: CheckResultIn) -> IncidentTransition:
        incident = await self._open_incident(db, result.monitor_id)

        if result.status == STATUS_DOWN:
            if incident is None:
                return await self._open(db, result)
            return await self._refresh(db, incident, result)

        if incident is None:
            return IncidentTransition(TransitionKind.NOOP, result.monitor_id)
        return await self._resolve(db, incident)

    @staticmethod
    async def _open_incident(db: AsyncSession, monitor_id: str) -> Incident | None:
        res = await db.execute(
            select(Incident).where(
                Incident.monitor_id == monitor_id,
                Incident.status == INCIDENT_OPEN,
            )
        )
        return res.scalar_one_or_none()

    async def _open(self, db: AsyncSession, result: CheckResultIn) -> IncidentTransition:
        incident = Incident(
            monitor_id=result.monitor_id,
            status=INCIDENT_OPEN,
            started_at=result.checked_at,
            error_message=result.error_message,
        )
        db.add(incident)
        try:
            await db.commit()
        except IntegrityError:
            # Another process opened one first; fold this result into it
            await db.rollback()
            winner = await self._open_incident(db, result.monitor_id)
            if winner is None:
                raise
            logger.info(
                f"Lost incident race for monitor {result.monitor_id}; "
                f"updating incident {winner.id} instead"
            )
            return await self._refresh(db, winner, result)

        logger.warning(
            f"INCIDENT OPENED: monitor {result.monitor_id} is DOWN "
            f"(region {result.region}) - {result.error_message}"
        )
        return IncidentTransition(
            TransitionKind.OPENED,
            result.monitor_id,
            incident_id=incident.id,
            started_at=as_utc(incident.started_at),
            error_message=incident.error_message,
        )

    async def _refresh(
        self, db: AsyncSession, incident: Incident, result: CheckResultIn
    ) -> IncidentTransition:
        incident.error_message = result.error_message
        incident.updated_at = self._clock()
        await db.commit()
        logger.debug(f"Incident {incident.id} still open, error refreshed from {result.region}")
        return IncidentTransition(
            TransitionKind.UPDATED,
            result.monitor_id,
            incident_id=incident.id,
            started_at=as_utc(incident.started_at),
            error_message=incident.error_message,
        )

    async def _resolve(self, db: AsyncSession, incident: Incident) -> IncidentTransition:
        resolved_at = self._clock()
        started_at = as_utc(incident.started_at)
        # Anchored on the incident's own start, not the triggering result
        duration = max(0, int((resolved_at - started_at).total_seconds()))

        res = await db.execute(
            update(Incident)
            .where(Incident.id == incident.id, Incident.status == INCIDENT_OPEN)
            .values(
                status=INCIDENT_RESOLVED,
                resolved_at=resolved_at,
                duration_seconds=duration,
                updated_at=resolved_at,
            )
        )
        await db.commit()
        if res.rowcount == 0:
            # Resolved concurrently by another process
            return IncidentTransition(TransitionKind.NOOP, incident.monitor_id)

        logger.info(
            f"INCIDENT RESOLVED: monitor {incident.monitor_id} back UP "
            f"after {duration}s (incident {incident.id})"
        )
        return IncidentTransition(
            TransitionKind.RESOLVED,
            incident.monitor_id,
            incident_id=incident.id,
            started_at=started_at,
            resolved_at=resolved_at,
            duration_seconds=duration,
            error_message=incident.error_message,
        )
