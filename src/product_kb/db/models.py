"""SQLAlchemy models for the product knowledge base.

Every table carries ``workspace_id``; services always filter on it so no
row is visible outside its workspace. List and mapping fields (tags,
vectors, the artifact content tree) are stored as JSON columns.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Float,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def utcnow() -> datetime:
    """Current time as naive UTC (the storage convention for all timestamps)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return str(uuid.uuid4())


class EvidenceType(str, Enum):
    FEEDBACK = "feedback"
    METRIC = "metric"
    RESEARCH = "research"
    MEETING_NOTE = "meeting_note"


class ArtifactType(str, Enum):
    PRD = "prd"
    USER_STORY = "user_story"
    PRINCIPLE = "principle"
    DECISION_LOG = "decision_log"
    ROADMAP_ITEM = "roadmap_item"
    ARCHITECTURE_SUMMARY = "architecture_summary"


class ArtifactStatus(str, Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    ARCHIVED = "archived"


class SourceType(str, Enum):
    """Kinds of records that own embedding chunks and links."""

    EVIDENCE = "evidence"
    ARTIFACT = "artifact"
    CODEBASE_MODULE = "codebase_module"


class ModuleType(str, Enum):
    COMPONENT = "component"
    SERVICE = "service"
    MODEL = "model"
    ROUTE = "route"
    UTILITY = "utility"
    CONFIG = "config"
    TEST = "test"


class ConnectionStatus(str, Enum):
    """Codebase connection lifecycle: pending -> syncing -> ready | error."""

    PENDING = "pending"
    SYNCING = "syncing"
    READY = "ready"
    ERROR = "error"


class ComputeStatus(str, Enum):
    COMPUTING = "computing"
    COMPLETED = "completed"
    FAILED = "failed"


class CriticalityLevel(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class Verdict(str, Enum):
    BUILD = "BUILD"
    MAYBE = "MAYBE"
    SKIP = "SKIP"


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class Evidence(Base):
    """A unit of customer evidence (feedback, metric, research, meeting note)."""

    __tablename__ = "evidence"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    workspace_id: Mapped[str] = mapped_column(String(64), index=True)
    type: Mapped[str] = mapped_column(String(32))
    title: Mapped[str] = mapped_column(String(512))
    content: Mapped[str] = mapped_column(Text, default="")
    source: Mapped[str | None] = mapped_column(String(256), nullable=True)
    tags: Mapped[list[str]] = mapped_column(JSON, default=list)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    def __repr__(self) -> str:
        return f"<Evidence(id={self.id}, type={self.type}, title={self.title[:30]})>"


class Artifact(Base):
    """An authored specification document with structured content."""

    __tablename__ = "artifacts"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    workspace_id: Mapped[str] = mapped_column(String(64), index=True)
    type: Mapped[str] = mapped_column(String(32))
    title: Mapped[str] = mapped_column(String(512))
    content: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)  # DocNode tree
    status: Mapped[str] = mapped_column(String(16), default=ArtifactStatus.DRAFT.value)
    parent_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    def __repr__(self) -> str:
        return f"<Artifact(id={self.id}, type={self.type}, status={self.status})>"


class CodebaseConnection(Base):
    """A source repository connected to a workspace."""

    __tablename__ = "codebase_connections"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    workspace_id: Mapped[str] = mapped_column(String(64), index=True)
    repo_url: Mapped[str] = mapped_column(String(1024))
    repo_name: Mapped[str] = mapped_column(String(256))  # owner/name
    default_branch: Mapped[str] = mapped_column(String(128), default="main")
    status: Mapped[str] = mapped_column(String(16), default=ConnectionStatus.PENDING.value)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    file_count: Mapped[int] = mapped_column(Integer, default=0)
    module_count: Mapped[int] = mapped_column(Integer, default=0)
    last_synced_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    # Identifies the run that owns the current "syncing" state
    sync_run_id: Mapped[str | None] = mapped_column(String(36), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    # Doubles as the heartbeat of a running sync
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    def __repr__(self) -> str:
        return f"<CodebaseConnection(id={self.id}, repo={self.repo_name}, status={self.status})>"


class CodebaseModule(Base):
    """One parsed source file from a connected repository."""

    __tablename__ = "codebase_modules"
    __table_args__ = (Index("ix_codebase_modules_connection", "workspace_id", "connection_id"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    workspace_id: Mapped[str] = mapped_column(String(64), index=True)
    connection_id: Mapped[str] = mapped_column(String(36))
    file_path: Mapped[str] = mapped_column(String(1024))
    module_name: Mapped[str | None] = mapped_column(String(256), nullable=True)
    module_type: Mapped[str | None] = mapped_column(String(32), nullable=True)
    language: Mapped[str | None] = mapped_column(String(32), nullable=True)
    summary: Mapped[str | None] = mapped_column(Text, nullable=True)
    dependencies: Mapped[list[str]] = mapped_column(JSON, default=list)
    exports: Mapped[list[str]] = mapped_column(JSON, default=list)
    raw_content: Mapped[str | None] = mapped_column(Text, nullable=True)
    # {"functions": [...], "classes": [...], "types": [...]}
    parsed_structure: Mapped[dict[str, list[str]]] = mapped_column(JSON, default=dict)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    def __repr__(self) -> str:
        return f"<CodebaseModule(path={self.file_path}, type={self.module_type})>"


class EmbeddingChunk(Base):
    """A chunk of a source's text and its embedding vector.

    ``vector`` is NULL while an embedding is pending or after it failed;
    such rows never appear in ranked search results.
    """

    __tablename__ = "embedding_chunks"
    __table_args__ = (
        UniqueConstraint(
            "workspace_id", "source_type", "source_id", "chunk_index",
            name="uq_embedding_chunk_position",
        ),
        Index("ix_embedding_chunks_source", "workspace_id", "source_type", "source_id"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    workspace_id: Mapped[str] = mapped_column(String(64), index=True)
    source_id: Mapped[str] = mapped_column(String(36))
    source_type: Mapped[str] = mapped_column(String(32))
    chunk_text: Mapped[str] = mapped_column(Text)
    chunk_index: Mapped[int] = mapped_column(Integer, default=0)
    vector: Mapped[list[float] | None] = mapped_column(JSON(none_as_null=True), nullable=True)
    chunk_metadata: Mapped[dict[str, Any]] = mapped_column("metadata", JSON, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    def __repr__(self) -> str:
        return (
            f"<EmbeddingChunk(source={self.source_type}:{self.source_id}, "
            f"index={self.chunk_index}, embedded={self.vector is not None})>"
        )


class EvidenceCluster(Base):
    """A group of semantically similar evidence items."""

    __tablename__ = "evidence_clusters"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    workspace_id: Mapped[str] = mapped_column(String(64), index=True)
    label: Mapped[str] = mapped_column(String(256))
    summary: Mapped[str] = mapped_column(Text, default="")
    evidence_ids: Mapped[list[str]] = mapped_column(JSON, default=list)
    evidence_count: Mapped[int] = mapped_column(Integer, default=0)
    representative_vector: Mapped[list[float] | None] = mapped_column(JSON(none_as_null=True), nullable=True)
    section_relevance: Mapped[dict[str, float]] = mapped_column(JSON, default=dict)

    criticality_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    criticality_level: Mapped[str | None] = mapped_column(String(16), nullable=True)
    criticality_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    # User-edited fields, carried forward across recomputation
    custom_label: Mapped[str | None] = mapped_column(String(256), nullable=True)
    pm_note: Mapped[str | None] = mapped_column(Text, nullable=True)
    pinned: Mapped[bool] = mapped_column(Boolean, default=False)
    dismissed: Mapped[bool] = mapped_column(Boolean, default=False)
    verdict: Mapped[str | None] = mapped_column(String(8), nullable=True)
    verdict_reasoning: Mapped[str | None] = mapped_column(Text, nullable=True)
    verdict_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    computed_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    @property
    def display_label(self) -> str:
        return self.custom_label or self.label

    def __repr__(self) -> str:
        return f"<EvidenceCluster(label={self.display_label}, count={self.evidence_count})>"


class ClusterComputationLog(Base):
    """Per-workspace compute bookkeeping; also the compute lease."""

    __tablename__ = "cluster_computation_log"

    workspace_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    status: Mapped[str] = mapped_column(String(16), default=ComputeStatus.COMPUTING.value)
    lease_token: Mapped[str | None] = mapped_column(String(36), nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    last_computed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    evidence_count_at_computation: Mapped[int] = mapped_column(Integer, default=0)
    unclustered_evidence_ids: Mapped[list[str]] = mapped_column(JSON, default=list)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    def __repr__(self) -> str:
        return f"<ClusterComputationLog(workspace={self.workspace_id}, status={self.status})>"


class Link(Base):
    """Directed, typed edge between two records of a workspace."""

    __tablename__ = "links"
    __table_args__ = (
        UniqueConstraint(
            "workspace_id", "source_id", "source_type", "target_id", "target_type", "relationship",
            name="uq_link_edge",
        ),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    workspace_id: Mapped[str] = mapped_column(String(64), index=True)
    source_id: Mapped[str] = mapped_column(String(36), index=True)
    source_type: Mapped[str] = mapped_column(String(32))
    target_id: Mapped[str] = mapped_column(String(36), index=True)
    target_type: Mapped[str] = mapped_column(String(32))
    relationship: Mapped[str] = mapped_column(String(32), default="related_to")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    def __repr__(self) -> str:
        return (
            f"<Link({self.source_type}:{self.source_id} -{self.relationship}-> "
            f"{self.target_type}:{self.target_id})>"
        )
