"""
Result ingestion gateway: authenticates a probe worker's batch, validates
each result on its own, and drives the incident engine per result.
"""
import hmac
import logging
from typing import Any

from pydantic import ValidationError
from sqlalchemy import or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from checkmesh.errors import (
    AuthError,
    MalformedPayloadError,
    PersistenceError,
    ResultValidationError,
)
from checkmesh.incidents import IncidentEngine, IncidentTransition, TransitionKind
from checkmesh.models.check_result import CheckResult
from checkmesh.models.monitor import Monitor
from checkmesh.models.monitor_log import MonitorLog
from checkmesh.notifier import NotificationDispatcher
from checkmesh.schemas import STATUS_DOWN, CheckResultIn, IngestSummary, ResultBatch

logger = logging.getLogger("checkmesh.ingestion")


class IngestionGateway:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        incident_engine: IncidentEngine,
        dispatcher: NotificationDispatcher,
        shared_secret: str,
        regions: list[str],
    ):
        if not shared_secret:
            raise ValueError("An ingest shared secret is required")
        self._session_factory = session_factory
        self.incident_engine = incident_engine
        self.dispatcher = dispatcher
        self._secret = shared_secret.encode()
        self.regions = set(regions)

    def authenticate(self, presented: Any) -> None:
        if not isinstance(presented, str) or not presented:
            raise AuthError("Invalid or missing API secret")
        if not hmac.compare_digest(presented.encode(), self._secret):
            raise AuthError("Invalid or missing API secret")

    async def ingest(self, payload: Any, header_secret: str | None = None) -> IngestSummary:
        """Process one batch. Raises AuthError or MalformedPayloadError for the whole batch."""
        body_secret = payload.get("sharedSecret") if isinstance(payload, dict) else None
        self.authenticate(header_secret or body_secret)

        try:
            batch = ResultBatch.model_validate(payload)
        except ValidationError as e:
            raise MalformedPayloadError(f"Invalid payload format: {e.error_count()} error(s)") from e

        summary = IngestSummary(
            caller_request_id=batch.caller_request_id,
            region=batch.region,
            received=len(batch.results),
        )
        logger.info(
            f"Processing {summary.received} result(s) from region {batch.region} "
            f"(request {batch.caller_request_id})"
        )

        for index, raw in enumerate(batch.results):
            try:
                result = await self.validate(raw)
            except ResultValidationError as e:
                summary.skipped_invalid += 1
                logger.warning(
                    f"Skipping invalid result #{index} in request {batch.caller_request_id}: {e}"
                )
                continue
            except PersistenceError as e:
                summary.failed += 1
                logger.error(f"Could not validate result #{index}: {e}")
                continue

            try:
                transition = await self.process_result(result)
            except PersistenceError as e:
                summary.failed += 1
                logger.error(
                    f"Failed to process result for monitor {result.monitor_id} "
                    f"({result.region}): {e}"
                )
                continue

            summary.processed += 1
            if transition.kind == TransitionKind.OPENED:
                summary.incidents_opened += 1
            elif transition.kind == TransitionKind.RESOLVED:
                summary.incidents_resolved += 1

        logger.info(
            f"Request {batch.caller_request_id} done: {summary.processed}/{summary.received} processed, "
            f"{summary.skipped_invalid} invalid, {summary.failed} failed, "
            f"{summary.incidents_opened} opened, {summary.incidents_resolved} resolved"
        )
        return summary

    async def validate(self, raw: Any) -> CheckResultIn:
        try:
            result = CheckResultIn.model_validate(raw)
        except ValidationError as e:
            problems = "; ".join(
                f"{'.'.join(str(part) for part in err['loc']) or 'result'}: {err['msg']}"
                for err in e.errors()
            )
            raise ResultValidationError(problems) from e
        if result.region not in self.regions:
            raise ResultValidationError(f"Unknown region: {result.region}")

        try:
            async with self._session_factory() as db:
                res = await db.execute(select(Monitor.id).where(Monitor.id == result.monitor_id))
                exists = res.scalar_one_or_none() is not None
        except SQLAlchemyError as e:
            raise PersistenceError(f"Monitor lookup failed: {e}") from e
        if not exists:
            raise ResultValidationError(f"Unknown monitor: {result.monitor_id}")
        return result

    async def process_result(self, result: CheckResultIn) -> IncidentTransition:
        await self._store_result(result)
        await self._update_monitor(result)
        transition = await self.incident_engine.apply(result)
        self.dispatcher.dispatch(transition)
        await self._audit(result, transition)
        return transition

    async def _store_result(self, result: CheckResultIn) -> None:
        try:
            async with self._session_factory() as db:
                db.add(
                    CheckResult(
                        monitor_id=result.monitor_id,
                        region=result.region,
                        status=result.status,
                        status_code=result.status_code,
                        response_time_ms=result.response_time_ms,
                        error_message=result.error_message,
                        checked_at=result.checked_at,
                    )
                )
                await db.commit()
        except SQLAlchemyError as e:
            raise PersistenceError(f"Storing check result failed: {e}") from e

    async def _update_monitor(self, result: CheckResultIn) -> None:
        values = {
            "current_status": result.status,
            "last_result_at": result.checked_at,
        }
        if result.status == STATUS_DOWN:
            values["last_incident_at"] = result.checked_at

        try:
            async with self._session_factory() as db:
                await db.execute(
                    update(Monitor)
                    .where(
                        Monitor.id == result.monitor_id,
                        # A late result must not overwrite a newer status
                        or_(
                            Monitor.last_result_at.is_(None),
                            Monitor.last_result_at <= result.checked_at,
                        ),
                    )
                    .values(**values)
                )
                await db.commit()
        except SQLAlchemyError as e:
            raise PersistenceError(f"Updating monitor status failed: {e}") from e

    async def _audit(self, result: CheckResultIn, transition: IncidentTransition) -> None:
        entries = [
            MonitorLog(
                monitor_id=result.monitor_id,
                action="checked",
                details=result.model_dump(mode="json", by_alias=True),
            )
        ]
        if transition.kind in (TransitionKind.OPENED, TransitionKind.RESOLVED):
            entries.append(
                MonitorLog(
                    monitor_id=result.monitor_id,
                    action=f"incident_{transition.kind.value}",
                    details={
                        "incidentId": transition.incident_id,
                        "region": result.region,
                        "durationSeconds": transition.duration_seconds,
                    },
                )
            )
        try:
            async with self._session_factory() as db:
                db.add_all(entries)
                await db.commit()
        except SQLAlchemyError as e:
            # Audit failures never fail the item
            logger.error(f"Error logging monitor check for {result.monitor_id}: {e}")

    async def health(self) -> dict:
        try:
            async with self._session_factory() as db:
                await db.execute(select(Monitor.id).limit(1))
            return {"status": "healthy", "database": "connected"}
        except SQLAlchemyError as e:
            return {"status": "unhealthy", "database": "disconnected", "error": str(e)}
