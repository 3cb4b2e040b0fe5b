from sqlalchemy import String, Integer, JSON, DateTime, Index, text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column
from datetime import datetime
from worktrack.models.base import Base

# JSONB on Postgres, plain JSON elsewhere (sqlite in tests)
JSONList = JSON().with_variant(JSONB(), "postgresql")


class Work(Base):
    __tablename__ = "works"
    id: Mapped[str] = mapped_column(String, primary_key=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    name: Mapped[str | None] = mapped_column(String, nullable=True)
    event_type: Mapped[str] = mapped_column(String, index=True, nullable=False)       # connector type
    event_source_id: Mapped[str | None] = mapped_column(String, index=True, nullable=True)
    user_id: Mapped[str | None] = mapped_column(String, nullable=True)
    connector_id: Mapped[str] = mapped_column(String, index=True, nullable=False)
    status: Mapped[str] = mapped_column(String, default="wait", index=True)           # wait/progress/complete
    received_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    processed_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_number: Mapped[int] = mapped_column(Integer, nullable=False, server_default="0")
    messages: Mapped[list] = mapped_column(JSONList, nullable=False, default=list)
    errors: Mapped[list] = mapped_column(JSONList, nullable=False, default=list)
    version: Mapped[int] = mapped_column(Integer, nullable=False, server_default="0")
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=text("CURRENT_TIMESTAMP"))

    __table_args__ = (
        Index("ix_works_retention", "connector_id", "status", "completed_time"),
    )
