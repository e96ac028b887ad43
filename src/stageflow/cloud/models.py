from __future__ import annotations

import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from datetime import datetime

# JSONB on postgres, plain JSON elsewhere (sqlite in tests)
JSONType = sa.JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    pass


class Pipeline(Base):
    __tablename__ = "pipelines"
    id: Mapped[str] = mapped_column(sa.Text, primary_key=True)
    project: Mapped[str] = mapped_column(sa.Text, nullable=False, default="")
    ref: Mapped[str] = mapped_column(sa.Text, nullable=False)
    sha: Mapped[str] = mapped_column(sa.Text, nullable=False, default="")
    status: Mapped[str] = mapped_column(sa.Text, nullable=False)
    report: Mapped[dict] = mapped_column(JSONType, nullable=False)
    created_at: Mapped[datetime] = mapped_column(sa.TIMESTAMP(timezone=True), server_default=sa.func.now(), nullable=False)


class PipelineJob(Base):
    __tablename__ = "pipeline_jobs"
    # insertion order doubles as "most recently published"
    id: Mapped[int] = mapped_column(sa.Integer, primary_key=True, autoincrement=True)
    pipeline_id: Mapped[str] = mapped_column(sa.Text, sa.ForeignKey("pipelines.id", ondelete="CASCADE"), nullable=False)
    project: Mapped[str] = mapped_column(sa.Text, nullable=False, default="")
    ref: Mapped[str] = mapped_column(sa.Text, nullable=False)
    job_name: Mapped[str] = mapped_column(sa.Text, nullable=False)
    state: Mapped[str] = mapped_column(sa.Text, nullable=False)
    artifact: Mapped[dict | None] = mapped_column(JSONType, nullable=True)

    __table_args__ = (sa.Index("ix_pipeline_jobs_lookup", "project", "ref", "job_name"),)
