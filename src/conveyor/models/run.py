"""Run state models — runs, stage executions, and the transition log."""

from datetime import datetime
from sqlalchemy import String, Text, DateTime, JSON, Integer, ForeignKey, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship
from conveyor.core.database import Base


class RunRecord(Base):
    __tablename__ = "runs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    definition_name: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    definition_version: Mapped[str] = mapped_column(String(64), nullable=False)
    definition: Mapped[dict] = mapped_column(JSON, nullable=False)  # snapshot used for resume
    trigger: Mapped[dict] = mapped_column(JSON, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    rollback_outcome: Mapped[str] = mapped_column(String(20), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    stages: Mapped[list["StageExecutionRecord"]] = relationship(
        back_populates="run",
        order_by="StageExecutionRecord.position",
        cascade="all, delete-orphan",
        lazy="selectin",
    )


class StageExecutionRecord(Base):
    __tablename__ = "stage_executions"
    __table_args__ = (UniqueConstraint("run_id", "name"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    run_id: Mapped[str] = mapped_column(String(36), ForeignKey("runs.id"), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    ended_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    heartbeat_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    artifact: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_error: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    skip_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    rollback_error: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    run: Mapped[RunRecord] = relationship(back_populates="stages")


class TransitionRecord(Base):
    """Append-only log of stage status changes, written with the stage update."""
    __tablename__ = "stage_transitions"

    seq: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    run_id: Mapped[str] = mapped_column(String(36), ForeignKey("runs.id"), nullable=False, index=True)
    stage: Mapped[str] = mapped_column(String(255), nullable=False)
    from_status: Mapped[str | None] = mapped_column(String(20), nullable=True)
    to_status: Mapped[str] = mapped_column(String(20), nullable=False)
    attempt: Mapped[int] = mapped_column(Integer, default=0)
    at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
