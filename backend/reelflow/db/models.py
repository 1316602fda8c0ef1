"""SQLAlchemy 2.0 ORM models for reelflow."""

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import JSON, Integer, String, Text, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all ORM models."""
    pass


class Workflow(Base):
    """One workflow or image-batch document.

    Item collections are stored as ordered JSON arrays. ``version`` is the
    optimistic-concurrency token checked by every conditional write.
    """
    __tablename__ = "workflows"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    kind: Mapped[str] = mapped_column(String(20), default="workflow", index=True)
    title: Mapped[str] = mapped_column(String(200), default="")
    stage: Mapped[str] = mapped_column(String(50), default="idle")
    status: Mapped[str] = mapped_column(String(50), default="running", index=True)
    config: Mapped[dict] = mapped_column(JSON, default=dict)
    source_video_url: Mapped[Optional[str]] = mapped_column(String(1000), nullable=True)
    script_result: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    characters: Mapped[list] = mapped_column(JSON, default=list)
    scenes: Mapped[list] = mapped_column(JSON, default=list)
    videos: Mapped[list] = mapped_column(JSON, default=list)
    tasks: Mapped[list] = mapped_column(JSON, default=list)
    merged_video_url: Mapped[Optional[str]] = mapped_column(String(1000), nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    version: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        server_default=func.now(),
        onupdate=func.now()
    )
