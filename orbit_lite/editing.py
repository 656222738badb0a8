"""
Document Model Operations
=========================

Pure construction/update functions over the schemas. No I/O.

Every mutation takes a whole parent (Matter or Template) plus a description
of the change and returns a NEW parent with the affected entity replaced in
place. Matters and tasks get their `last_updated` refreshed. Callers persist
the result through the metadata store.
"""

import time
import uuid
from typing import Any, Callable, Iterable, List, Optional, Set, Tuple, TypeVar, Union

from .errors import ValidationError
from .schemas import (
    CUSTOM_STATUS_PLACEHOLDER,
    AIAnalysisResult,
    AttachedFile,
    Custom,
    JudgmentRecord,
    Material,
    MaterialCategory,
    Matter,
    Stage,
    StatusUpdate,
    Task,
    TaskState,
    TaskStatus,
    Template,
)

Parent = TypeVar("Parent", Matter, Template)

TEMP_MATTER_PREFIX = "TEMP_"


def new_id() -> str:
    """Opaque identifier for any entity"""
    return uuid.uuid4().hex[:12]


def now_ms() -> int:
    return int(time.time() * 1000)


def _touch(parent: Parent, ts: Optional[int] = None) -> Parent:
    if isinstance(parent, Matter):
        return parent.model_copy(update={"last_updated": ts or now_ms()})
    return parent


def ensure_unique_ids(items: Iterable[Any], what: str = "item") -> None:
    """Raise ValidationError if two items in one collection share an id"""
    seen: Set[str] = set()
    for item in items:
        if item.id in seen:
            raise ValidationError(f"Duplicate {what} id: {item.id}")
        seen.add(item.id)


def is_temporary_matter_id(matter_id: str) -> bool:
    """True for the stand-in matter of an open template edit"""
    return matter_id.startswith(TEMP_MATTER_PREFIX)


def reject_temporary_matters(matters: Iterable[Matter]) -> None:
    for matter in matters:
        if is_temporary_matter_id(matter.id):
            raise ValidationError(
                f"Temporary template-edit matter cannot be stored: {matter.id}",
                user_message="Template edits are saved by committing the edit, not as a matter",
            )


def validate_structure(parent: Union[Matter, Template]) -> None:
    """Check id uniqueness within every collection of a matter or template"""
    ensure_unique_ids(parent.stages, "stage")
    for stage in parent.stages:
        ensure_unique_ids(stage.tasks, "task")
        for task in stage.tasks:
            ensure_unique_ids(task.materials, "material")
            ensure_unique_ids(task.status_updates, "status update")
            for material in task.materials:
                ensure_unique_ids(material.files, "file")
    if isinstance(parent, Matter):
        ensure_unique_ids(parent.judgment_timeline, "judgment")


# =============================================================================
# LOOKUP
# =============================================================================

def find_task(parent: Union[Matter, Template], task_id: str) -> Optional[Tuple[Stage, Task]]:
    for stage in parent.stages:
        for task in stage.tasks:
            if task.id == task_id:
                return stage, task
    return None


def find_material(task: Task, material_id: str) -> Optional[Material]:
    for material in task.materials:
        if material.id == material_id:
            return material
    return None


def iter_materials(parents: Iterable[Union[Matter, Template]]):
    for parent in parents:
        for stage in parent.stages:
            for task in stage.tasks:
                yield from task.materials


def collect_file_ids(
    matters: Iterable[Matter] = (),
    templates: Iterable[Template] = (),
) -> Set[str]:
    """Set of every blob id referenced by any material in either collection"""
    ids: Set[str] = set()
    for material in iter_materials(list(matters) + list(templates)):
        ids.update(material.file_ids())
    return ids


# =============================================================================
# MATTER LEVEL
# =============================================================================

def create_matter(
    title: str,
    type: str = "",
    due_date: Optional[int] = None,
    stages: Iterable[Stage] = (),
) -> Matter:
    """Create an ad-hoc matter (not from a template)"""
    title = (title or "").strip()
    if not title:
        raise ValidationError("Matter title is required")
    stages = list(stages)
    ts = now_ms()
    matter = Matter(
        id=new_id(),
        title=title,
        type=type,
        due_date=due_date,
        created_at=ts,
        last_updated=ts,
        stages=stages,
    )
    validate_structure(matter)
    return matter


def update_matter(matter: Matter, **changes: Any) -> Matter:
    """Field edits on the matter itself (title, type, due_date, ...)"""
    if "title" in changes and not (changes["title"] or "").strip():
        raise ValidationError("Matter title is required")
    for key in ("id", "stages", "judgment_timeline", "created_at"):
        if key in changes:
            raise ValidationError(f"Field cannot be edited directly: {key}")
    return _touch(matter.model_copy(update=changes))


def set_archived(matter: Matter, archived: bool = True) -> Matter:
    return _touch(matter.model_copy(update={"archived": archived}))


def add_judgment(matter: Matter, content: str, status: Optional[TaskStatus] = None) -> Matter:
    """
    Prepend a judgment record. The newest judgment becomes the matter's
    current situation, and its status (when given) the overall status.
    """
    content = (content or "").strip()
    if not content:
        raise ValidationError("Judgment content is required")
    ts = now_ms()
    record = JudgmentRecord(id=new_id(), content=content, status=status, timestamp=ts)
    update = {
        "judgment_timeline": [record] + list(matter.judgment_timeline),
        "current_situation": content,
    }
    if status is not None:
        update["overall_status"] = status
    return _touch(matter.model_copy(update=update), ts)


def record_analysis(matter: Matter, result: AIAnalysisResult) -> Matter:
    """Keep an analysis as the latest one and prepend it to the history"""
    result = result.model_copy(update={
        "id": result.id or new_id(),
        "timestamp": result.timestamp or now_ms(),
    })
    return _touch(matter.model_copy(update={
        "latest_analysis": result,
        "analysis_history": [result] + list(matter.analysis_history),
    }))


def dismiss_attention(matter: Matter, item_id: str) -> Matter:
    """Hide a task id (or the OVERDUE sentinel) from the attention list"""
    if item_id in matter.dismissed_attention_ids:
        return matter
    ids = list(matter.dismissed_attention_ids) + [item_id]
    return _touch(matter.model_copy(update={"dismissed_attention_ids": ids}))


def restore_attention(matter: Matter, item_id: str) -> Matter:
    ids = [i for i in matter.dismissed_attention_ids if i != item_id]
    return _touch(matter.model_copy(update={"dismissed_attention_ids": ids}))


# =============================================================================
# STAGE LEVEL
# =============================================================================

def _replace_stages(parent: Parent, stages: List[Stage]) -> Parent:
    return _touch(parent.model_copy(update={"stages": stages}))


def add_stage(parent: Parent, title: str, due_date: Optional[int] = None) -> Parent:
    title = (title or "").strip()
    if not title:
        raise ValidationError("Stage title is required")
    stage = Stage(id=new_id(), title=title, due_date=due_date)
    return _replace_stages(parent, list(parent.stages) + [stage])


def update_stage(parent: Parent, stage_id: str, **changes: Any) -> Parent:
    stages = []
    found = False
    for stage in parent.stages:
        if stage.id == stage_id:
            stage = stage.model_copy(update=changes)
            found = True
        stages.append(stage)
    if not found:
        raise ValidationError(f"Stage not found: {stage_id}")
    return _replace_stages(parent, stages)


def rename_stage(parent: Parent, stage_id: str, title: str) -> Parent:
    title = (title or "").strip()
    if not title:
        raise ValidationError("Stage title is required")
    return update_stage(parent, stage_id, title=title)


def remove_stage(parent: Parent, stage_id: str) -> Parent:
    stages = [s for s in parent.stages if s.id != stage_id]
    if len(stages) == len(parent.stages):
        raise ValidationError(f"Stage not found: {stage_id}")
    return _replace_stages(parent, stages)


# =============================================================================
# TASK LEVEL
# =============================================================================

def _map_task(parent: Parent, task_id: str, fn: Callable[[Task], Task]) -> Parent:
    ts = now_ms()
    stages = []
    found = False
    for stage in parent.stages:
        tasks = []
        hit = False
        for task in stage.tasks:
            if task.id == task_id:
                task = fn(task).model_copy(update={"last_updated": ts})
                hit = True
            tasks.append(task)
        if hit:
            stage = stage.model_copy(update={"tasks": tasks})
            found = True
        stages.append(stage)
    if not found:
        raise ValidationError(f"Task not found: {task_id}")
    return _touch(parent.model_copy(update={"stages": stages}), ts)


def add_task(parent: Parent, stage_id: str, title: str, description: Optional[str] = None) -> Parent:
    title = (title or "").strip()
    if not title:
        raise ValidationError("Task title is required")
    task = Task(id=new_id(), title=title, description=description, last_updated=now_ms())
    stages = []
    found = False
    for stage in parent.stages:
        if stage.id == stage_id:
            stage = stage.model_copy(update={"tasks": list(stage.tasks) + [task]})
            found = True
        stages.append(stage)
    if not found:
        raise ValidationError(f"Stage not found: {stage_id}")
    return _replace_stages(parent, stages)


def remove_task(parent: Parent, task_id: str) -> Parent:
    if find_task(parent, task_id) is None:
        raise ValidationError(f"Task not found: {task_id}")
    stages = [
        s.model_copy(update={"tasks": [t for t in s.tasks if t.id != task_id]})
        for s in parent.stages
    ]
    return _replace_stages(parent, stages)


def replace_task(parent: Parent, task: Task) -> Parent:
    """Swap in a task edited elsewhere (same id)"""
    return _map_task(parent, task.id, lambda _old: task)


def update_task(parent: Parent, task_id: str, **changes: Any) -> Parent:
    """Plain field edits: title, description, due_date, status_note"""
    if "title" in changes and not (changes["title"] or "").strip():
        raise ValidationError("Task title is required")
    if "status" in changes or "custom_status" in changes:
        raise ValidationError("Use set_task_status to change status")
    return _map_task(parent, task_id, lambda t: t.model_copy(update=changes))


def set_task_status(
    parent: Parent, task_id: str, state: TaskState, custom_label: Optional[str] = None
) -> Parent:
    """Set a fixed status or Custom(label). A custom_label implies Custom."""
    if custom_label is not None:
        state = Custom(custom_label.strip() or CUSTOM_STATUS_PLACEHOLDER)
    return _map_task(parent, task_id, lambda t: t.with_state(state))


def set_custom_status(parent: Parent, task_id: str, label: str) -> Parent:
    return set_task_status(parent, task_id, Custom(label.strip()))


def add_status_update(parent: Parent, task_id: str, content: str) -> Parent:
    """Prepend a status update (newest first)"""
    content = (content or "").strip()
    if not content:
        raise ValidationError("Status update content is required")
    update = StatusUpdate(id=new_id(), content=content, timestamp=now_ms())
    return _map_task(
        parent, task_id,
        lambda t: t.model_copy(update={"status_updates": [update] + list(t.status_updates)}),
    )


def remove_status_update(parent: Parent, task_id: str, update_id: str) -> Parent:
    def _remove(task: Task) -> Task:
        kept = [u for u in task.status_updates if u.id != update_id]
        if len(kept) == len(task.status_updates):
            raise ValidationError(f"Status update not found: {update_id}")
        return task.model_copy(update={"status_updates": kept})

    return _map_task(parent, task_id, _remove)


# =============================================================================
# MATERIAL LEVEL
# =============================================================================

def _map_material(
    parent: Parent, task_id: str, material_id: str, fn: Callable[[Material], Material]
) -> Parent:
    def _apply(task: Task) -> Task:
        materials = []
        found = False
        for material in task.materials:
            if material.id == material_id:
                material = fn(material)
                found = True
            materials.append(material)
        if not found:
            raise ValidationError(f"Material not found: {material_id}")
        return task.model_copy(update={"materials": materials})

    return _map_task(parent, task_id, _apply)


def add_material(
    parent: Parent,
    task_id: str,
    name: str,
    category: Optional[MaterialCategory] = None,
) -> Parent:
    name = (name or "").strip()
    if not name:
        raise ValidationError("Material name is required")
    material = Material(id=new_id(), name=name, category=category)
    return _map_task(
        parent, task_id,
        lambda t: t.model_copy(update={"materials": list(t.materials) + [material]}),
    )


def update_material(parent: Parent, task_id: str, material_id: str, **changes: Any) -> Parent:
    """Rename, re-categorize or annotate a material"""
    for key in ("id", "files", "file_id", "is_ready", "marked_ready"):
        if key in changes:
            raise ValidationError(f"Field cannot be edited directly: {key}")
    return _map_material(parent, task_id, material_id, lambda m: m.model_copy(update=changes))


def remove_material(parent: Parent, task_id: str, material_id: str) -> Tuple[Parent, List[str]]:
    """
    Remove a material. Returns the new parent and the blob ids the material
    referenced; blobs are NOT deleted here (other holders may share them).
    """
    found = find_task(parent, task_id)
    if found is None:
        raise ValidationError(f"Task not found: {task_id}")
    material = find_material(found[1], material_id)
    if material is None:
        raise ValidationError(f"Material not found: {material_id}")
    updated = _map_task(
        parent, task_id,
        lambda t: t.model_copy(update={"materials": [m for m in t.materials if m.id != material_id]}),
    )
    return updated, material.file_ids()


def toggle_material(parent: Parent, task_id: str, material_id: str) -> Parent:
    """Explicit user toggle of the readiness flag; remembered past detaches"""
    return _map_material(
        parent, task_id, material_id,
        lambda m: m.model_copy(update={"is_ready": not m.is_ready, "marked_ready": not m.is_ready}),
    )


def attach_file(parent: Parent, task_id: str, material_id: str, attached: AttachedFile) -> Parent:
    """Record an uploaded file on a material; the material becomes ready"""
    def _attach(material: Material) -> Material:
        if any(f.id == attached.id for f in material.files) or material.file_id == attached.id:
            raise ValidationError(f"File already attached: {attached.id}")
        return material.model_copy(update={
            "files": list(material.files) + [attached],
            "is_ready": True,
        })

    return _map_material(parent, task_id, material_id, _attach)


def detach_file(parent: Parent, task_id: str, material_id: str, file_id: str) -> Parent:
    """
    Drop one file reference (legacy or new-style). When the last file goes,
    readiness falls back to the user's explicit toggle, so an attachment
    alone never leaves a material ready. The blob stays in the blob store.
    """
    def _detach(material: Material) -> Material:
        update = {}
        if material.file_id == file_id:
            update.update(file_id=None, file_name=None, file_type=None, file_size=None)
        else:
            kept = [f for f in material.files if f.id != file_id]
            if len(kept) == len(material.files):
                raise ValidationError(f"File not attached: {file_id}")
            update["files"] = kept
        detached = material.model_copy(update=update)
        if not detached.has_files:
            detached = detached.model_copy(update={"is_ready": detached.marked_ready})
        return detached

    return _map_material(parent, task_id, material_id, _detach)
