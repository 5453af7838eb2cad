"""
Notification dispatch for incident transitions: downtime (throttled) and
recovery (once per resolution), fanned out to a monitor's active recipients.
"""
import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

import aiosmtplib
from jinja2 import Environment, PackageLoader, select_autoescape
from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from checkmesh.clock import Clock, as_utc, format_duration, utcnow
from checkmesh.config import Settings
from checkmesh.errors import NotificationError
from checkmesh.incidents import IncidentTransition, TransitionKind
from checkmesh.models.alert_recipient import AlertRecipient
from checkmesh.models.incident import Incident
from checkmesh.models.monitor import Monitor

logger = logging.getLogger("checkmesh.notifier")

templates = Environment(
    loader=PackageLoader("checkmesh", "templates"),
    autoescape=select_autoescape(["html"]),
)


class Mailer(ABC):
    @abstractmethod
    async def send(self, to: str, subject: str, html_body: str, text_body: str) -> None:
        """Deliver one message; raise NotificationError on failure."""


class SmtpMailer(Mailer):
    def __init__(self, settings: Settings):
        self.settings = settings

    async def send(self, to: str, subject: str, html_body: str, text_body: str) -> None:
        # Only attempt SMTP if credentials are configured
        if not (self.settings.smtp_username and self.settings.smtp_password):
            logger.info(f"EMAIL (smtp not configured) -> {to}: {subject}")
            return

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = self.settings.smtp_from_email
        msg["To"] = to
        msg.attach(MIMEText(text_body, "plain"))
        msg.attach(MIMEText(html_body, "html"))

        try:
            await aiosmtplib.send(
                msg,
                hostname=self.settings.smtp_host,
                port=self.settings.smtp_port,
                username=self.settings.smtp_username,
                password=self.settings.smtp_password,
                use_tls=self.settings.smtp_use_tls,
            )
        except (aiosmtplib.SMTPException, OSError) as e:
            raise NotificationError(f"SMTP send failed: {e}", recipient=to) from e
        logger.info(f"Email sent to {to}: {subject}")


@dataclass(frozen=True)
class DispatchOutcome:
    status: str  # sent, throttled, no_recipients, not_found, failed
    sent: int = 0
    failed: int = 0


class NotificationDispatcher:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        mailer: Mailer,
        throttle: timedelta = timedelta(minutes=60),
        clock: Clock = utcnow,
    ):
        self._session_factory = session_factory
        self.mailer = mailer
        self.throttle = throttle
        self._clock = clock
        self._tasks: set[asyncio.Task] = set()

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        session_factory: async_sessionmaker[AsyncSession],
        mailer: Mailer | None = None,
        clock: Clock = utcnow,
    ) -> "NotificationDispatcher":
        return cls(
            session_factory,
            mailer or SmtpMailer(settings),
            throttle=timedelta(minutes=settings.notification_throttle_minutes),
            clock=clock,
        )

    def dispatch(self, transition: IncidentTransition) -> asyncio.Task | None:
        """Schedule the notification for a transition without waiting on it."""
        if transition.kind == TransitionKind.OPENED:
            coro = self.send_downtime_alert(transition.incident_id)
        elif transition.kind == TransitionKind.RESOLVED:
            coro = self.send_recovery_alert(transition.incident_id)
        else:
            return None

        task = asyncio.create_task(self._run(coro, transition))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run(self, coro, transition: IncidentTransition) -> DispatchOutcome | None:
        try:
            return await coro
        except Exception as e:
            logger.error(
                f"Notification for incident {transition.incident_id} "
                f"({transition.kind.value}) failed: {e}"
            )
            return None

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait for every in-flight notification."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def send_downtime_alert(self, incident_id: str) -> DispatchOutcome:
        async with self._session_factory() as db:
            loaded = await self._load(db, incident_id)
            if loaded is None:
                logger.error(f"Incident not found: {incident_id}")
                return DispatchOutcome("not_found")
            incident, monitor = loaded

            now = self._clock()
            if incident.last_notified_at is not None:
                since = now - as_utc(incident.last_notified_at)
                if since < self.throttle:
                    logger.info(
                        f"Downtime alert throttled for incident {incident_id} "
                        f"(last sent {format_duration(since)} ago)"
                    )
                    return DispatchOutcome("throttled")

            recipients = await self._recipients(db, monitor.id)
            if not recipients:
                logger.info(f"No alert recipients configured for monitor {monitor.id}")
                return DispatchOutcome("no_recipients")

        # The session is closed while mail goes out
        context = self._context(incident, monitor)
        subject = f"[CheckMesh] {monitor.name} is DOWN"
        html_body = templates.get_template("email/downtime.html").render(**context)
        text_body = templates.get_template("email/downtime.txt").render(**context)

        sent, failed = await self._fan_out(recipients, subject, html_body, text_body)
        if sent:
            await self._stamp_notified(incident_id, now)

        logger.info(
            f"Downtime alerts for incident {incident_id}: {sent} sent, {failed} failed"
        )
        return DispatchOutcome("sent" if sent else "failed", sent, failed)

    async def send_recovery_alert(self, incident_id: str) -> DispatchOutcome:
        async with self._session_factory() as db:
            loaded = await self._load(db, incident_id)
            if loaded is None:
                logger.error(f"Incident not found: {incident_id}")
                return DispatchOutcome("not_found")
            incident, monitor = loaded

            recipients = await self._recipients(db, monitor.id)
            if not recipients:
                logger.info(f"No alert recipients configured for monitor {monitor.id}")
                return DispatchOutcome("no_recipients")

        context = self._context(incident, monitor)
        subject = f"[CheckMesh] {monitor.name} is back UP"
        html_body = templates.get_template("email/recovery.html").render(**context)
        text_body = templates.get_template("email/recovery.txt").render(**context)

        sent, failed = await self._fan_out(recipients, subject, html_body, text_body)
        logger.info(
            f"Recovery alerts for incident {incident_id}: {sent} sent, {failed} failed"
        )
        return DispatchOutcome("sent" if sent else "failed", sent, failed)

    async def _stamp_notified(self, incident_id: str, now: datetime) -> None:
        try:
            async with self._session_factory() as db:
                await db.execute(
                    update(Incident).where(Incident.id == incident_id).values(last_notified_at=now)
                )
                await db.commit()
        except SQLAlchemyError as e:
            logger.error(f"Failed to stamp last_notified_at on incident {incident_id}: {e}")

    @staticmethod
    async def _load(db: AsyncSession, incident_id: str) -> tuple[Incident, Monitor] | None:
        res = await db.execute(
            select(Incident, Monitor)
            .join(Monitor, Incident.monitor_id == Monitor.id)
            .where(Incident.id == incident_id)
        )
        row = res.one_or_none()
        if row is None:
            return None
        return row[0], row[1]

    @staticmethod
    async def _recipients(db: AsyncSession, monitor_id: str) -> list[str]:
        res = await db.execute(
            select(AlertRecipient.email).where(
                AlertRecipient.monitor_id == monitor_id,
                AlertRecipient.is_active == True,  # noqa: E712
            )
        )
        return list(res.scalars().all())

    async def _fan_out(
        self, recipients: list[str], subject: str, html_body: str, text_body: str
    ) -> tuple[int, int]:
        outcomes = await asyncio.gather(
            *(self.mailer.send(to, subject, html_body, text_body) for to in recipients),
            return_exceptions=True,
        )
        sent = failed = 0
        for to, outcome in zip(recipients, outcomes):
            if isinstance(outcome, Exception):
                failed += 1
                logger.error(f"Failed to send alert to {to}: {outcome}")
            else:
                sent += 1
        return sent, failed

    def _context(self, incident: Incident, monitor: Monitor) -> dict:
        started_at = as_utc(incident.started_at)
        resolved_at = as_utc(incident.resolved_at) if incident.resolved_at else None
        duration = (
            format_duration(timedelta(seconds=incident.duration_seconds))
            if incident.duration_seconds is not None
            else "Unknown"
        )
        return {
            "monitor": monitor,
            "error_message": incident.error_message or "Connection failed",
            "started_at": _fmt(started_at),
            "resolved_at": _fmt(resolved_at) if resolved_at else None,
            "duration": duration,
        }


def _fmt(value: datetime) -> str:
    return value.strftime("%Y-%m-%d %H:%M:%S UTC")
