import uuid
from datetime import datetime, timezone
from sqlalchemy import JSON, String, Boolean, DateTime, Integer, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from checkmesh.database import Base


class Monitor(Base):
    __tablename__ = "monitors"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    url: Mapped[str] = mapped_column(Text, nullable=False)
    method: Mapped[str] = mapped_column(String(10), default="GET")
    expected_status_codes: Mapped[list[int]] = mapped_column(
        JSON, default=lambda: [200, 201, 202, 204]
    )
    timeout: Mapped[int] = mapped_column(Integer, default=30)  # seconds
    check_interval: Mapped[int] = mapped_column(Integer, default=300)  # seconds
    retries: Mapped[int] = mapped_column(Integer, default=2)
    headers: Mapped[dict[str, str] | None] = mapped_column(JSON, nullable=True)
    body: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    is_deleted: Mapped[bool] = mapped_column(Boolean, default=False)
    current_status: Mapped[str] = mapped_column(String(20), default="PENDING")  # UP, DOWN, PENDING

    # Written by the scheduler only
    last_checked_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    # Written by result ingestion only
    last_result_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    last_incident_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    check_results: Mapped[list["CheckResult"]] = relationship(  # noqa: F821
        back_populates="monitor", cascade="all, delete-orphan"
    )
    incidents: Mapped[list["Incident"]] = relationship(  # noqa: F821
        back_populates="monitor", cascade="all, delete-orphan"
    )
    alert_recipients: Mapped[list["AlertRecipient"]] = relationship(  # noqa: F821
        back_populates="monitor", cascade="all, delete-orphan"
    )
