import enum

from sqlalchemy import (
    Column, Integer, String, JSON, Date,
    DateTime, ForeignKey, Index, Text, UniqueConstraint, func,
)
from linksync.database import Base


class LinkStatus(str, enum.Enum):
    ACTIVE = "active"
    ARCHIVED = "archived"


class LinkSyncStatus(str, enum.Enum):
    NEVER = "never"
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"


class RunTrigger(str, enum.Enum):
    SCHEDULED = "scheduled"
    MANUAL = "manual"


class RunStatus(str, enum.Enum):
    RUNNING = "running"
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"


class ResultStatus(str, enum.Enum):
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


# Value held in sync_runs.lock_key while a run is in flight.
RUN_LOCK_KEY = "sync"


class Link(Base):
    __tablename__ = "links"

    id               = Column(Integer, primary_key=True)
    short_code       = Column(String(255), nullable=False)   # "bit.ly/abc123"
    long_url         = Column(String(2048), nullable=False)
    title            = Column(String(500), nullable=True)
    status           = Column(String(20), nullable=False, default=LinkStatus.ACTIVE.value)
    clicks_total     = Column(Integer, nullable=False, default=0)
    last_synced_at   = Column(DateTime(timezone=True), nullable=True)
    last_sync_status = Column(String(20), nullable=False, default=LinkSyncStatus.NEVER.value)
    created_at       = Column(DateTime(timezone=True), server_default=func.now())
    updated_at       = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        Index("ix_links_short_code", "short_code", unique=True),
        Index("ix_links_status", "status"),
    )


class Assignment(Base):
    __tablename__ = "assignments"

    id          = Column(Integer, primary_key=True)
    link_id     = Column(Integer, ForeignKey("links.id"), nullable=False)
    project_id  = Column(String(64), nullable=False)
    start_date  = Column(Date, nullable=True)   # attribution window, NULL = unbounded
    end_date    = Column(Date, nullable=True)
    assigned_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        UniqueConstraint("link_id", "project_id", name="uq_assignment_pair"),
        Index("ix_assignment_project", "project_id"),
    )


class AnalyticsSnapshot(Base):
    __tablename__ = "analytics_snapshots"

    id         = Column(Integer, primary_key=True)
    link_id    = Column(Integer, ForeignKey("links.id"), nullable=False)
    date       = Column(Date, nullable=False)
    clicks     = Column(Integer, nullable=False, default=0)
    countries  = Column(JSON, nullable=False, default=dict)   # {"US": 12}
    referrers  = Column(JSON, nullable=False, default=dict)   # {"direct": 4}
    fetched_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        UniqueConstraint("link_id", "date", name="uq_snapshot_link_date"),
    )


class SyncRun(Base):
    __tablename__ = "sync_runs"

    id              = Column(String(36), primary_key=True)   # uuid4
    trigger         = Column(String(20), nullable=False)
    status          = Column(String(20), nullable=False, default=RunStatus.RUNNING.value)
    lock_key        = Column(String(20), nullable=True)     # RUN_LOCK_KEY while running, else NULL
    started_at      = Column(DateTime(timezone=True), nullable=False)
    heartbeat_at    = Column(DateTime(timezone=True), nullable=True)   # bumped while the run makes progress
    finished_at     = Column(DateTime(timezone=True), nullable=True)
    links_total     = Column(Integer, nullable=False, default=0)
    links_succeeded = Column(Integer, nullable=False, default=0)
    links_failed    = Column(Integer, nullable=False, default=0)
    links_skipped   = Column(Integer, nullable=False, default=0)
    error_detail    = Column(Text, nullable=True)

    __table_args__ = (
        Index("ix_sync_runs_lock", "lock_key", unique=True),
        Index("ix_sync_runs_started", "started_at"),
    )


class SyncLinkResult(Base):
    __tablename__ = "sync_link_results"

    id           = Column(Integer, primary_key=True)
    run_id       = Column(String(36), ForeignKey("sync_runs.id"), nullable=False)
    position     = Column(Integer, nullable=False)   # order of link selection
    link_id      = Column(Integer, nullable=False)
    status       = Column(String(20), nullable=False)
    error_kind   = Column(String(40), nullable=True)
    error_detail = Column(Text, nullable=True)
    recorded_at  = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        UniqueConstraint("run_id", "position", name="uq_result_run_position"),
        Index("ix_result_link", "link_id"),
    )
