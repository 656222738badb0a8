"""
Template Transformer
====================

Bridges the two representations of a workflow:

- materialize:   Template -> new Matter (a live instance)
- dematerialize: Matter -> Template (structure only, instance state stripped)
- TemplateEditSession: edit a template through the ordinary matter editing
  surface by materializing it into a temporary matter and writing it back
  into the same template id on commit.
"""

import logging
from datetime import date
from typing import Any, Dict, List, Optional

from .editing import TEMP_MATTER_PREFIX, new_id, now_ms, validate_structure
from .errors import TemplateEditError, ValidationError
from .schemas import (
    Material,
    MaterialCategory,
    Matter,
    Stage,
    Task,
    TaskStatus,
    Template,
)

logger = logging.getLogger(__name__)


def _copy_stages(stages: List[Stage], regenerate_ids: bool) -> List[Stage]:
    """Deep copy; optionally give every stage/task/material a fresh id"""
    copied = [s.model_copy(deep=True) for s in stages]
    if not regenerate_ids:
        return copied
    return [
        stage.model_copy(update={
            "id": new_id(),
            "tasks": [
                task.model_copy(update={
                    "id": new_id(),
                    "materials": [m.model_copy(update={"id": new_id()}) for m in task.materials],
                })
                for task in stage.tasks
            ],
        })
        for stage in copied
    ]


# =============================================================================
# MATERIALIZATION
# =============================================================================

def default_matter_title(template: Template, today: Optional[date] = None) -> str:
    return f"{template.name} - {(today or date.today()).isoformat()}"


def materialize(
    template: Template,
    title: str = "",
    due_date: Optional[int] = None,
    *,
    regenerate_ids: bool = True,
) -> Matter:
    """
    Create a new matter from a template.

    Stage/task/material ids are regenerated by default so two matters created
    from the same template never share ids. Attached file references are
    copied as-is (blob ids are shared, blobs are not duplicated).
    """
    ts = now_ms()
    stages = _copy_stages(template.stages, regenerate_ids)
    for stage in stages:
        for i, task in enumerate(stage.tasks):
            stage.tasks[i] = task.model_copy(update={"last_updated": ts})

    matter = Matter(
        id=new_id(),
        title=(title or "").strip() or default_matter_title(template),
        type=template.name,
        due_date=due_date,
        created_at=ts,
        last_updated=ts,
        stages=stages,
        archived=False,
        judgment_timeline=[],
        dismissed_attention_ids=[],
    )
    logger.debug(f"Materialized template {template.id} into matter {matter.id}")
    return matter


# =============================================================================
# DEMATERIALIZATION
# =============================================================================

def _strip_material(material: Material) -> Material:
    # An artifact that already exists becomes reference material for future instances
    return material.model_copy(update={
        "is_ready": material.has_files,
        "marked_ready": False,
        "category": MaterialCategory.REFERENCE,
    }, deep=True)


def _strip_task(task: Task) -> Task:
    return task.model_copy(update={
        "status": TaskStatus.PENDING,
        "custom_status": None,
        "status_note": "",
        "status_updates": [],
        "materials": [_strip_material(m) for m in task.materials],
    }, deep=True)


def strip_stages(stages: List[Stage]) -> List[Stage]:
    """Deep copy of stages with all instance state reset"""
    return [
        stage.model_copy(update={"tasks": [_strip_task(t) for t in stage.tasks]}, deep=True)
        for stage in stages
    ]


def dematerialize(
    matter: Matter,
    name: str,
    description: Optional[str] = None,
    template_id: Optional[str] = None,
) -> Template:
    """
    Turn a matter's structure into a template. A new template id is
    generated unless `template_id` is given (in-place template editing).
    """
    name = (name or "").strip()
    if not name:
        raise ValidationError("Template name is required")
    if description is None:
        description = f'Custom template based on "{matter.title}"'
    return Template(
        id=template_id or new_id(),
        name=name,
        description=description,
        stages=strip_stages(matter.stages),
    )


def default_template_name(matter: Matter) -> str:
    return f"{matter.type or matter.title} (custom)"


# =============================================================================
# TEMPLATE CONSTRUCTION
# =============================================================================

def create_blank_template(name: str = "New blank template", description: str = "Custom blank template") -> Template:
    return Template(
        id=new_id(),
        name=name,
        description=description,
        stages=[Stage(id=new_id(), title="Stage 1", tasks=[])],
    )


def template_from_skeleton(skeleton: Dict[str, Any]) -> Template:
    """
    Normalize a template skeleton produced by the analysis collaborator.

    Only titles, descriptions and material names are trusted; ids are
    regenerated and every task starts PENDING.
    """
    ts = now_ms()
    stages = []
    for raw_stage in skeleton.get("stages") or []:
        if not isinstance(raw_stage, dict) or not str(raw_stage.get("title") or "").strip():
            continue
        tasks = []
        for raw_task in raw_stage.get("tasks") or []:
            if not isinstance(raw_task, dict) or not str(raw_task.get("title") or "").strip():
                continue
            materials = []
            for raw_mat in raw_task.get("materials") or []:
                mat_name = raw_mat.get("name") if isinstance(raw_mat, dict) else raw_mat
                if not mat_name or not str(mat_name).strip():
                    continue
                category = raw_mat.get("category") if isinstance(raw_mat, dict) else None
                materials.append(Material(
                    id=new_id(),
                    name=str(mat_name).strip(),
                    category=MaterialCategory.REFERENCE if category == "REFERENCE" else MaterialCategory.DELIVERABLE,
                ))
            tasks.append(Task(
                id=new_id(),
                title=str(raw_task["title"]).strip(),
                description=raw_task.get("description") or None,
                last_updated=ts,
                materials=materials,
            ))
        stages.append(Stage(id=new_id(), title=str(raw_stage["title"]).strip(), tasks=tasks))

    name = str(skeleton.get("name") or "").strip() or "Generated template"
    return Template(
        id=new_id(),
        name=name,
        description=str(skeleton.get("description") or ""),
        stages=stages,
    )


# =============================================================================
# IN-PLACE TEMPLATE EDITING
# =============================================================================

class TemplateEditSession:
    """
    One open template edit at a time.

    begin() materializes the template into a temporary matter (id
    TEMP_<template id>, ids preserved, description carried in `type`).
    commit() dematerializes it back into the same template id and persists
    it; cancel() discards it. The temporary matter is never persisted.
    """

    def __init__(self, store):
        self.store = store
        self.template_id: Optional[str] = None
        self.matter: Optional[Matter] = None

    @property
    def active(self) -> bool:
        return self.matter is not None

    def begin(self, template: Template) -> Matter:
        if self.active:
            raise TemplateEditError(
                f"Template {self.template_id} is already being edited",
                user_message="Finish or cancel the current template edit first",
            )
        ts = now_ms()
        self.template_id = template.id
        self.matter = Matter(
            id=f"{TEMP_MATTER_PREFIX}{template.id}",
            title=template.name,
            type=template.description,
            created_at=ts,
            last_updated=ts,
            stages=_copy_stages(template.stages, regenerate_ids=False),
        )
        return self.matter

    def update(self, matter: Matter) -> Matter:
        """Replace the temporary matter with an edited version"""
        if not self.active:
            raise TemplateEditError("No template edit in progress")
        if matter.id != self.matter.id:
            raise TemplateEditError(f"Matter {matter.id} is not the template being edited")
        validate_structure(matter)
        self.matter = matter
        return matter

    def commit(self) -> Template:
        """Write the edited structure back into the same template id"""
        if not self.active:
            raise TemplateEditError("No template edit in progress")
        template = dematerialize(
            self.matter,
            name=self.matter.title,
            description=self.matter.type,
            template_id=self.template_id,
        )
        self.store.upsert_template(template)
        logger.info(f"Saved edits to template {template.id}")
        self._clear()
        return template

    def cancel(self) -> None:
        self._clear()

    def _clear(self) -> None:
        self.template_id = None
        self.matter = None
