"""Durable record of a batch generation job.

One row per job, rewritten whenever the job publishes a message, so that a
restart can find unfinished jobs and re-attach to them.
"""

from datetime import UTC, datetime
from typing import Any

from sqlalchemy import JSON, Boolean, DateTime, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base


class BatchJobRecord(Base):
    __tablename__ = "batch_jobs"

    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    novel_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    start_sequence: Mapped[int] = mapped_column(
        Integer, nullable=False, comment="Sequence number of the first unit"
    )
    total_units: Mapped[int] = mapped_column(Integer, nullable=False)
    current_index: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    state: Mapped[str] = mapped_column(String(40), nullable=False, index=True)
    cancelled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    plans: Mapped[list[dict[str, Any]]] = mapped_column(
        JSON, nullable=False, comment="Unit plans in sequence order"
    )
    outcomes: Mapped[list[dict[str, Any]]] = mapped_column(
        JSON, nullable=False, default=list
    )
    context: Mapped[dict[str, Any] | None] = mapped_column(
        JSON, nullable=True, comment="Context carried into the next unit"
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )

    def __repr__(self) -> str:
        return (
            f"<BatchJobRecord(id={self.id}, novel_id={self.novel_id}, "
            f"state={self.state}, current_index={self.current_index})>"
        )
