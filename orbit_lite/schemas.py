"""
Pydantic Schemas for Orbit Lite
===============================

The document model: Matter -> Stage -> Task -> Material -> AttachedFile,
plus StatusUpdate, JudgmentRecord and Template.

Wire format uses camelCase keys (fileId, isReady, statusUpdates, ...) so
persisted collections and backup archives stay compatible with existing JSON
documents. Python attributes are snake_case. Timestamps are epoch milliseconds.
"""

from dataclasses import dataclass, field
from typing import List, Optional, Dict, Any, Union
from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel
from enum import Enum


CUSTOM_STATUS_PLACEHOLDER = "Custom status"

# Sentinel stored in Matter.dismissed_attention_ids for the due-date warning
OVERDUE_ATTENTION_ID = "OVERDUE"

BACKUP_FORMAT_VERSION = 1


class OrbitModel(BaseModel):
    """Base model: camelCase aliases, snake_case attributes"""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
    )

    def to_wire(self) -> Dict[str, Any]:
        """Serialize to the persisted/archived JSON shape"""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


# =============================================================================
# ENUMS
# =============================================================================

class TaskStatus(str, Enum):
    """Task / judgment status"""
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    BLOCKED = "BLOCKED"        # Waiting on someone or something
    SKIPPED = "SKIPPED"        # Not applicable
    EXCEPTION = "EXCEPTION"    # Procedural deviation
    OTHER = "OTHER"            # Custom label, see Task.custom_status


class MaterialCategory(str, Enum):
    """
    REFERENCE: example / blueprint material
    DELIVERABLE: expected work output (also the meaning of an absent category)
    """
    REFERENCE = "REFERENCE"
    DELIVERABLE = "DELIVERABLE"


@dataclass(frozen=True)
class Custom:
    """Free-text status variant (persisted as status=OTHER + customStatus)"""
    label: str = CUSTOM_STATUS_PLACEHOLDER


# A task state is one of the six fixed statuses or Custom(label)
TaskState = Union[TaskStatus, Custom]


# =============================================================================
# TASK CONTENT
# =============================================================================

class StatusUpdate(OrbitModel):
    """Free-text progress note on a task. Immutable once created."""
    model_config = ConfigDict(frozen=True)

    id: str
    content: str
    timestamp: int


class AttachedFile(OrbitModel):
    """Metadata for one uploaded file. `id` is the Blob Store key."""
    id: str
    name: str
    type: str = "application/octet-stream"
    size: int = 0
    uploaded_at: int = 0


class Material(OrbitModel):
    """A named requirement within a task (reference or deliverable)"""
    id: str
    name: str
    is_ready: bool = False
    marked_ready: bool = False  # Set only by an explicit user toggle
    category: Optional[MaterialCategory] = None
    note: Optional[str] = None

    # Legacy single-file reference
    file_id: Optional[str] = None
    file_name: Optional[str] = None
    file_type: Optional[str] = None
    file_size: Optional[int] = None

    files: List[AttachedFile] = Field(default_factory=list)

    @property
    def has_files(self) -> bool:
        return bool(self.file_id) or len(self.files) > 0

    @property
    def is_reference(self) -> bool:
        return self.category == MaterialCategory.REFERENCE

    def file_ids(self) -> List[str]:
        """Every blob id this material points at (legacy first)"""
        ids = [self.file_id] if self.file_id else []
        ids.extend(f.id for f in self.files)
        return ids


class Task(OrbitModel):
    """Single unit of work inside a stage"""
    id: str
    title: str
    description: Optional[str] = None
    due_date: Optional[int] = None
    status: TaskStatus = TaskStatus.PENDING
    custom_status: Optional[str] = None
    status_note: str = ""  # Legacy single note
    status_updates: List[StatusUpdate] = Field(default_factory=list)  # Newest first
    materials: List[Material] = Field(default_factory=list)
    last_updated: int = 0

    @model_validator(mode="after")
    def _custom_label_required(self) -> "Task":
        if self.status == TaskStatus.OTHER and not self.custom_status:
            self.custom_status = CUSTOM_STATUS_PLACEHOLDER
        return self

    @property
    def state(self) -> TaskState:
        if self.status == TaskStatus.OTHER:
            return Custom(self.custom_status or CUSTOM_STATUS_PLACEHOLDER)
        return self.status

    def with_state(self, state: TaskState, last_updated: Optional[int] = None) -> "Task":
        """Return a copy carrying `state`; keeps the previous custom label for OTHER"""
        update: Dict[str, Any] = {}
        if isinstance(state, Custom):
            update["status"] = TaskStatus.OTHER
            update["custom_status"] = state.label or CUSTOM_STATUS_PLACEHOLDER
        elif state == TaskStatus.OTHER:
            update["status"] = TaskStatus.OTHER
            update["custom_status"] = self.custom_status or CUSTOM_STATUS_PLACEHOLDER
        else:
            update["status"] = TaskStatus(state)
        if last_updated is not None:
            update["last_updated"] = last_updated
        return self.model_copy(update=update)


class Stage(OrbitModel):
    """Ordered group of tasks. Owned by exactly one matter or template."""
    id: str
    title: str
    due_date: Optional[int] = None
    tasks: List[Task] = Field(default_factory=list)


# =============================================================================
# MATTER / TEMPLATE
# =============================================================================

class JudgmentRecord(OrbitModel):
    """Entry in a matter's append-only judgment log"""
    id: str
    content: str
    status: Optional[TaskStatus] = None
    timestamp: int


class SimilarCase(OrbitModel):
    matter_name: str
    similarity: str = ""
    facts: str = ""


class AIAnalysisResult(OrbitModel):
    """Persisted output of the judgment-timeline analysis collaborator"""
    id: Optional[str] = None
    summary: str = ""
    evolution: str = ""
    blocker_tags: List[str] = Field(default_factory=list)
    similar_cases: List[SimilarCase] = Field(default_factory=list)
    timestamp: int = 0


class BlockerType(OrbitModel):
    tag: str
    count: int = 0


class WorkStatusResult(OrbitModel):
    """Portfolio-wide status digest (not persisted)"""
    overview: str = ""
    blocker_types: List[BlockerType] = Field(default_factory=list)
    update_rhythm: str = ""
    workload: Optional[str] = None
    action_plan: Optional[str] = None
    timestamp: int = 0


class MaterialSuggestion(OrbitModel):
    name: str
    category: MaterialCategory = MaterialCategory.DELIVERABLE


class Matter(OrbitModel):
    """A live case instance"""
    id: str
    title: str
    type: str = ""
    due_date: Optional[int] = None
    created_at: int = 0
    last_updated: int = 0
    stages: List[Stage] = Field(default_factory=list)
    archived: bool = False
    dismissed_attention_ids: List[str] = Field(default_factory=list)

    judgment_timeline: List[JudgmentRecord] = Field(default_factory=list)
    current_situation: Optional[str] = None
    overall_status: Optional[TaskStatus] = None

    latest_analysis: Optional[AIAnalysisResult] = None
    analysis_history: List[AIAnalysisResult] = Field(default_factory=list)

    @model_validator(mode="after")
    def _dedupe_dismissed(self) -> "Matter":
        # Stored as a list for JSON, treated as a set
        seen = list(dict.fromkeys(self.dismissed_attention_ids))
        if len(seen) != len(self.dismissed_attention_ids):
            self.dismissed_attention_ids = seen
        return self


class Template(OrbitModel):
    """A reusable blueprint of stages and tasks"""
    id: str
    name: str
    description: str = ""
    stages: List[Stage] = Field(default_factory=list)


# =============================================================================
# BACKUP / MAINTENANCE
# =============================================================================

class BackupDocument(OrbitModel):
    """The structured entry of a backup archive"""
    version: int = BACKUP_FORMAT_VERSION
    date: str
    matters: List[Matter] = Field(default_factory=list)
    templates: List[Template] = Field(default_factory=list)


class ImportSummary(OrbitModel):
    matters: int = 0
    templates: int = 0
    files: int = 0


@dataclass
class ExportResult:
    """Archive bytes plus what went into them"""
    filename: str
    data: bytes = field(repr=False)
    matters: int = 0
    templates: int = 0
    files: int = 0
    missing_file_ids: List[str] = field(default_factory=list)


class SweepReport(OrbitModel):
    referenced: int = 0
    stored: int = 0
    deleted: List[str] = Field(default_factory=list)
    dry_run: bool = False


# =============================================================================
# API REQUEST / RESPONSE MODELS
# =============================================================================

class CreateMatterRequest(OrbitModel):
    """Create a matter from a template, or a blank one when template_id is None"""
    template_id: Optional[str] = None
    title: str = ""
    type: Optional[str] = None
    due_date: Optional[int] = None


class SaveAsTemplateRequest(OrbitModel):
    name: str
    description: Optional[str] = None


class TextRequest(OrbitModel):
    """Free text handed to the analysis collaborator"""
    text: str


class HealthResponse(OrbitModel):
    status: str
    version: str
    matters: int = 0
    templates: int = 0
    ai_enabled: bool = False
