"""
Attention / due-date views (read-only)

Derived from the matter list; nothing here is persisted.
"""

import math
from datetime import date, datetime, timedelta
from typing import List, Optional

from pydantic import Field

from .schemas import OVERDUE_ATTENTION_ID, Matter, OrbitModel, TaskStatus

DAY_MS = 24 * 60 * 60 * 1000
DUE_WARNING_DAYS = 7

_ATTENTION_STATUSES = {
    TaskStatus.BLOCKED: "blocked",
    TaskStatus.EXCEPTION: "exception",
}


class AttentionTask(OrbitModel):
    task_id: str
    task_title: str
    stage_id: str
    stage_title: str
    kind: str  # blocked | exception


class AttentionGroup(OrbitModel):
    matter_id: str
    matter_title: str
    is_overdue: bool = False
    days_left: Optional[int] = None
    tasks: List[AttentionTask] = Field(default_factory=list)


def is_completed(matter: Matter) -> bool:
    """Every task COMPLETED or SKIPPED (a matter with no stages is never complete)"""
    if not matter.stages:
        return False
    return all(
        task.status in (TaskStatus.COMPLETED, TaskStatus.SKIPPED)
        for stage in matter.stages
        for task in stage.tasks
    )


def in_progress(matters: List[Matter]) -> List[Matter]:
    return [m for m in matters if not m.archived and not is_completed(m)]


def attention_groups(matters: List[Matter], now: int) -> List[AttentionGroup]:
    """
    In-progress matters that need a look: due within a week (or past due),
    or holding BLOCKED / EXCEPTION tasks. Dismissed task ids and the OVERDUE
    sentinel are honored per matter.
    """
    groups = []
    for matter in in_progress(matters):
        dismissed = set(matter.dismissed_attention_ids)

        days_left = None
        is_overdue = False
        if matter.due_date:
            days_left = math.ceil((matter.due_date - now) / DAY_MS)
            is_overdue = days_left <= DUE_WARNING_DAYS and OVERDUE_ATTENTION_ID not in dismissed

        tasks = []
        for stage in matter.stages:
            for task in stage.tasks:
                kind = _ATTENTION_STATUSES.get(task.status)
                if kind is None or task.id in dismissed:
                    continue
                tasks.append(AttentionTask(
                    task_id=task.id,
                    task_title=task.title,
                    stage_id=stage.id,
                    stage_title=stage.title,
                    kind=kind,
                ))

        if is_overdue or tasks:
            groups.append(AttentionGroup(
                matter_id=matter.id,
                matter_title=matter.title,
                is_overdue=is_overdue,
                days_left=days_left,
                tasks=tasks,
            ))
    return groups


def _local_date(ms: int) -> date:
    return datetime.fromtimestamp(ms / 1000).date()


def due_soon_count(matters: List[Matter], today: Optional[date] = None) -> int:
    """Matters and unfinished tasks whose due date falls today or tomorrow"""
    today = today or date.today()
    window = {today, today + timedelta(days=1)}
    count = 0
    for matter in matters:
        if matter.due_date and _local_date(matter.due_date) in window:
            count += 1
        for stage in matter.stages:
            for task in stage.tasks:
                if task.due_date and task.status != TaskStatus.COMPLETED and _local_date(task.due_date) in window:
                    count += 1
    return count
