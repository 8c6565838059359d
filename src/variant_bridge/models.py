from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class VariantStatus(str, Enum):
    PREVIEW = "preview"
    GENERATING = "generating"
    GENERATED = "generated"
    FAILED = "failed"


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


ACTIVE_JOB_STATUSES = (JobStatus.PENDING, JobStatus.PROCESSING)
TERMINAL_JOB_STATUSES = (JobStatus.COMPLETED, JobStatus.FAILED)


class Role(str, Enum):
    ADMIN = "admin"
    DESIGNER = "designer"
    BRIDGE = "bridge"


class CamelModel(BaseModel):
    """Wire models speak camelCase but also accept snake_case field names."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ArtifactRef(CamelModel):
    path: str
    is_public: bool = False


class DesignVariant(CamelModel):
    id: str
    item_id: str
    variant_name: str
    configuration: Any = None
    status: VariantStatus
    preview_artifact: Optional[ArtifactRef] = None
    final_artifact: Optional[ArtifactRef] = None
    error_message: Optional[str] = None
    created_at: datetime


class VariantDetail(DesignVariant):
    preview_url: Optional[str] = None
    final_url: Optional[str] = None


class BridgeJob(CamelModel):
    id: str
    variant_id: str
    status: JobStatus
    priority: int = 0
    error_message: Optional[str] = None
    artifact: Optional[ArtifactRef] = None
    created_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_JOB_STATUSES


# Denormalized context handed to the bridge with each dispatched job.


class SchoolContext(CamelModel):
    id: str
    name: str
    abbreviation: Optional[str] = None
    primary_color: Optional[str] = None
    secondary_color: Optional[str] = None


class TeamContext(CamelModel):
    id: str
    name: str
    sport: Optional[str] = None
    school: Optional[SchoolContext] = None


class ProjectContext(CamelModel):
    id: str
    name: str
    team: Optional[TeamContext] = None


class TemplateContext(CamelModel):
    id: str
    name: str
    category: Optional[str] = None
    svg_path: Optional[str] = None
    svg_is_public: bool = False


class ItemContext(CamelModel):
    id: str
    name: str
    project: Optional[ProjectContext] = None
    template: Optional[TemplateContext] = None


class VariantContext(DesignVariant):
    item: Optional[ItemContext] = None


class DispatchedJob(BridgeJob):
    variant: VariantContext


# Request and response bodies.


class EnqueueRequest(CamelModel):
    variant_ids: Optional[List[str]] = None
    priority: int = 0


class EnqueueResult(CamelModel):
    success: bool = True
    created: int
    skipped: int
    jobs: List[BridgeJob]


class PollResult(CamelModel):
    jobs: List[DispatchedJob]


class JobUpdate(CamelModel):
    status: Optional[JobStatus] = None
    error_message: Optional[str] = None
    final_artifact_path: Optional[str] = None
    final_artifact_is_public: bool = False


class JobResponse(CamelModel):
    job: BridgeJob


class VariantCreate(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")

    variant_name: str
    configuration: Any = None
    preview_artifact: Optional[ArtifactRef] = None


class VariantUpdate(CamelModel):
    # no status field: it only moves through the job queue
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")

    variant_name: Optional[str] = None
    configuration: Any = None
    preview_artifact: Optional[ArtifactRef] = None


class VariantResponse(CamelModel):
    variant: VariantDetail


class VariantList(CamelModel):
    variants: List[DesignVariant]


class DeleteResult(CamelModel):
    success: bool = True
    message: Optional[str] = None
    deleted: Optional[int] = None


class FileUrlRequest(CamelModel):
    cloud_storage_path: str
    is_public: bool = False


class FileUrlResponse(CamelModel):
    url: str


class UploadResult(CamelModel):
    cloud_storage_path: str
    is_public: bool


class APIKeyCreate(CamelModel):
    owner: str
    role: Role = Role.DESIGNER


class APIKeyRecord(CamelModel):
    id: str
    owner: str
    prefix: str
    role: Role
    is_active: bool
    created_at: datetime


class APIKeyCreated(CamelModel):
    api_key: str
    record: APIKeyRecord
