"""API request and response schemas."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from product_kb.db.models import (
    ArtifactStatus,
    ArtifactType,
    EvidenceType,
    SourceType,
    Verdict,
)


# Indexing


class IndexRequest(BaseModel):
    """Re-index one stored record."""

    source_type: SourceType
    source_id: str = Field(..., min_length=1)


class IndexResponse(BaseModel):
    source_id: str
    source_type: str
    chunk_count: int
    embedded_count: int


# Search


class SearchRequest(BaseModel):
    """Search request schema."""

    query: str = Field(..., description="Search query text", min_length=1)
    source_types: list[SourceType] | None = Field(
        default=None, description="Restrict results to these record kinds"
    )
    limit: int | None = Field(default=None, ge=1, description="Capped at SEARCH_MAX_LIMIT")
    min_similarity: float = Field(default=0.0, ge=0.0, le=1.0)
    grouped: bool = Field(
        default=False, description="Group best-per-record results by kind, with record details"
    )

    model_config = {"json_schema_extra": {
        "example": {
            "query": "dashboard loads slowly",
            "source_types": ["evidence"],
            "limit": 5,
        }
    }}


class SearchResultItem(BaseModel):
    """Individual search result."""

    similarity: float = Field(..., description="Cosine similarity to the query")
    chunk_text: str
    source_id: str
    source_type: str
    chunk_index: int
    metadata: dict[str, Any] = Field(default_factory=dict)


class SearchResponse(BaseModel):
    query: str
    results: list[SearchResultItem]
    total: int


class GroupedSearchResponse(BaseModel):
    query: str
    artifacts: list[SearchResultItem]
    evidence: list[SearchResultItem]
    codebase_modules: list[SearchResultItem]


class SectionContextRequest(BaseModel):
    """Context for drafting one section of a document."""

    query: str = Field(..., min_length=1)
    section_name: str = Field(..., min_length=1)
    template_type: str | None = Field(default=None, description="prd, one_pager or user_story")
    exclude_source_id: str | None = Field(
        default=None, description="Artifact being drafted, left out of its own context"
    )


class AllocationSchema(BaseModel):
    evidence: int
    code: int
    specs: int


class SectionContextResponse(GroupedSearchResponse):
    section: str
    code_weight: float
    allocation: AllocationSchema


# Clusters


class ComputeRequest(BaseModel):
    force: bool = Field(default=False, description="Recompute even if clusters are fresh")


class ClusterSchema(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    label: str
    display_label: str
    summary: str
    evidence_ids: list[str]
    evidence_count: int
    section_relevance: dict[str, float]
    criticality_score: float | None = None
    criticality_level: str | None = None
    criticality_reason: str | None = None
    custom_label: str | None = None
    pm_note: str | None = None
    pinned: bool
    dismissed: bool
    verdict: str | None = None
    verdict_reasoning: str | None = None
    verdict_at: datetime | None = None
    computed_at: datetime


class ComputationSchema(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    status: str
    started_at: datetime | None = None
    last_computed_at: datetime | None = None
    evidence_count_at_computation: int
    unclustered_evidence_ids: list[str]
    error_message: str | None = None


class ClusterListResponse(BaseModel):
    clusters: list[ClusterSchema]
    computation: ComputationSchema | None = None


class ClusterUpdate(BaseModel):
    """Editable cluster fields; omitted fields are left unchanged."""

    custom_label: str | None = Field(default=None, max_length=256)
    pm_note: str | None = None
    pinned: bool | None = None
    dismissed: bool | None = None
    verdict: Verdict | None = None
    verdict_reasoning: str | None = None


class NudgeRequest(BaseModel):
    section_text: str = Field(..., min_length=1)
    section_name: str = Field(..., min_length=1)
    limit: int | None = Field(default=None, ge=1, le=20)


class NudgeSchema(BaseModel):
    cluster_id: str
    label: str
    summary: str
    evidence_count: int
    similarity: float
    relevance: float
    score: float
    criticality_level: str | None = None


class NudgeResponse(BaseModel):
    nudges: list[NudgeSchema]


# Links


class AutoLinkRequest(BaseModel):
    source_id: str = Field(..., min_length=1)
    source_type: SourceType


class AutoLinkResponse(BaseModel):
    created: int


class LinkSchema(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    source_id: str
    source_type: str
    target_id: str
    target_type: str
    relationship: str
    created_at: datetime


# Evidence


class EvidenceCreate(BaseModel):
    type: EvidenceType
    title: str = Field(..., min_length=1, max_length=512)
    content: str = ""
    source: str | None = Field(default=None, max_length=256)
    tags: list[str] = Field(default_factory=list)


class EvidenceTagsUpdate(BaseModel):
    tags: list[str]


class EvidenceSchema(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    workspace_id: str
    type: str
    title: str
    content: str
    source: str | None = None
    tags: list[str]
    created_at: datetime


# Artifacts


class ArtifactCreate(BaseModel):
    type: ArtifactType
    title: str = Field(..., min_length=1, max_length=512)
    content: dict[str, Any] | None = Field(default=None, description="Document tree with a 'doc' root")
    status: ArtifactStatus = ArtifactStatus.DRAFT
    parent_id: str | None = None


class ArtifactUpdate(BaseModel):
    """Artifact fields to change; omitted fields are left unchanged."""

    title: str | None = Field(default=None, min_length=1, max_length=512)
    content: dict[str, Any] | None = None
    status: ArtifactStatus | None = None
    parent_id: str | None = None


class ArtifactSchema(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    workspace_id: str
    type: str
    title: str
    content: dict[str, Any]
    status: str
    parent_id: str | None = None
    created_at: datetime
    updated_at: datetime


# Codebase


class ConnectionCreate(BaseModel):
    repo_url: str = Field(..., min_length=1, description="GitHub URL or owner/name")
    repo_name: str | None = None
    default_branch: str = "main"


class SyncRequest(BaseModel):
    token: str | None = Field(default=None, description="Source-control access token")


class ConnectionSchema(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    workspace_id: str
    repo_url: str
    repo_name: str
    default_branch: str
    status: str
    error_message: str | None = None
    file_count: int
    module_count: int
    last_synced_at: datetime | None = None
    created_at: datetime


class ModuleSchema(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    file_path: str
    module_name: str | None = None
    module_type: str | None = None
    language: str | None = None
    summary: str | None = None
    dependencies: list[str]
    exports: list[str]
