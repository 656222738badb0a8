"""
Seed Data
=========

Built-in templates and the demo matter written on first load so a fresh
install is not empty. Ids are stable so re-seeding an empty store always
produces the same structure.
"""

from typing import List, Optional, Sequence, Tuple

from .schemas import (
    JudgmentRecord,
    Material,
    Matter,
    Stage,
    StatusUpdate,
    Task,
    TaskStatus,
    Template,
)

# (stage title, [(task title, description, [material names])])
StageSpec = Tuple[str, Sequence[Tuple[str, Optional[str], Sequence[str]]]]


SPV_DEREGISTRATION: Sequence[StageSpec] = (
    ("1. Internal decision and approval", (
        ("Prepare deregistration plan", None, ("Deregistration plan draft",)),
        ("Submit to strategy committee", None, ()),
        ("Parent company files deregistration request", None, ("Parent board resolution",)),
        ("Obtain committee approval", None, ()),
    )),
    ("2. Preparation and public notice", (
        ("Sign investor undertaking", "Required for tax deregistration; all shareholders seal", ("Investor undertaking",)),
        ("Publish simplified deregistration notice", "Enterprise credit publicity system, 20-day notice", ("Notice screenshot",)),
    )),
    ("3. Tax and social insurance clearance", (
        ("Tax deregistration", "Run in parallel with the notice period", ("Tax clearance certificate", "Latest annual audit report")),
        ("Social insurance deregistration", None, ()),
    )),
    ("4. Registry and title deregistration", (
        ("Company registry deregistration", "Within 20 days after the notice period", (
            "Registration application form",
            "Business licence (original and copy)",
            "Tax clearance certificate",
            "Deregistration approval notice",
        )),
        ("State asset title deregistration", "After registry deregistration", (
            "Deregistration approval notice",
            "Deregistration plan",
            "Legal opinion",
        )),
        ("Close bank accounts", None, ("Bank account closure certificate",)),
    )),
)

PROJECT_CO_DEREGISTRATION: Sequence[StageSpec] = (
    ("1. Internal decision", (
        ("Prepare liquidation plan", None, ("Liquidation plan briefing",)),
        ("Shareholder resolution", None, ("Shareholder resolution on deregistration", "Group executive meeting minutes")),
    )),
    ("2. Liquidation committee and creditor notice", (
        ("File liquidation committee", "Form within 15 days of resolution, publish within 10 days", ("Liquidation committee roster",)),
        ("Publish creditor notice", "45-day notice period", ()),
    )),
    ("3. Liquidation", (
        ("Inventory assets and prepare statements", None, ("Balance sheet", "Asset inventory")),
        ("Tax deregistration", None, ("Tax clearance certificate",)),
        ("Issue liquidation report", "Requires shareholder approval", ("Liquidation report",)),
    )),
    ("4. Deregistration filing", (
        ("Company registry deregistration", None, (
            "Deregistration application form",
            "Shareholder resolution",
            "Liquidation report",
        )),
    )),
)


def build_stages(prefix: str, spec: Sequence[StageSpec], ts: int = 0) -> List[Stage]:
    """Expand a compact stage table into Stage/Task/Material models"""
    stages = []
    for s_idx, (stage_title, tasks) in enumerate(spec, start=1):
        stage_id = f"{prefix}-s{s_idx}"
        built = []
        for t_idx, (title, description, materials) in enumerate(tasks, start=1):
            task_id = f"{stage_id}-t{t_idx}"
            built.append(Task(
                id=task_id,
                title=title,
                description=description,
                last_updated=ts,
                materials=[
                    Material(id=f"{task_id}-m{m_idx}", name=name)
                    for m_idx, name in enumerate(materials, start=1)
                ],
            ))
        stages.append(Stage(id=stage_id, title=stage_title, tasks=built))
    return stages


def builtin_templates() -> List[Template]:
    return [
        Template(
            id="spv_dereg_simple",
            name="Offshore SPV simplified deregistration",
            description="For foreign-invested SPVs with no outstanding debts and complete records.",
            stages=build_stages("spv_dereg_simple", SPV_DEREGISTRATION),
        ),
        Template(
            id="project_co_dereg_normal",
            name="Project company standard deregistration",
            description="Standard deregistration of a controlled project company, including a liquidation committee.",
            stages=build_stages("project_co_dereg_normal", PROJECT_CO_DEREGISTRATION),
        ),
    ]


def demo_matter(ts: int) -> Matter:
    """A partially progressed matter built from the SPV template"""
    day = 24 * 60 * 60 * 1000
    stages = build_stages("demo", SPV_DEREGISTRATION, ts)

    first = stages[0].tasks
    first[0] = first[0].with_state(TaskStatus.COMPLETED)
    first[0] = first[0].model_copy(update={
        "materials": [m.model_copy(update={"is_ready": True}) for m in first[0].materials],
    })
    first[1] = first[1].with_state(TaskStatus.BLOCKED).model_copy(update={
        "status_updates": [StatusUpdate(
            id="demo-u1",
            content="Waiting for the committee meeting slot.",
            timestamp=ts,
        )],
    })

    return Matter(
        id="demo-matter",
        title="Example: Harbour SPV Ltd deregistration",
        type="Offshore SPV simplified deregistration",
        due_date=ts + 30 * day,
        created_at=ts,
        last_updated=ts,
        stages=stages,
        judgment_timeline=[JudgmentRecord(
            id="demo-j1",
            content="Plan approved internally; committee review is the current bottleneck.",
            status=TaskStatus.BLOCKED,
            timestamp=ts,
        )],
        current_situation="Plan approved internally; committee review is the current bottleneck.",
        overall_status=TaskStatus.BLOCKED,
    )
