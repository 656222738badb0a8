"""
Shared fixtures: a fresh SQLite metadata store and blob directory per test.
"""

import pytest

from orbit_lite.metadata_store import MetadataStore
from orbit_lite.schemas import AttachedFile, Material, MaterialCategory, Matter, Stage, Task, Template
from orbit_lite.storage import BlobStore, LocalStorage


@pytest.fixture
def store(tmp_path):
    return MetadataStore.from_url(f"sqlite:///{tmp_path / 'orbit.db'}")


@pytest.fixture
def empty_store(tmp_path):
    """Store that seeds no demo matter"""
    return MetadataStore.from_url(f"sqlite:///{tmp_path / 'empty.db'}", seed_demo_data=False)


@pytest.fixture
def blobs(tmp_path):
    return BlobStore(LocalStorage(str(tmp_path / "files")))


def make_matter(matter_id="m1", title="Acme Deal", files=()):
    """One stage, one task, one material carrying the given AttachedFiles"""
    return Matter(
        id=matter_id,
        title=title,
        type="Deal",
        created_at=1,
        last_updated=1,
        stages=[Stage(id="s1", title="Signing", tasks=[Task(
            id="t1",
            title="Sign contract",
            last_updated=1,
            materials=[Material(
                id="mat1",
                name="Contract draft",
                files=list(files),
                is_ready=bool(files),
            )],
        )])],
    )


def make_template(template_id="tpl1"):
    return Template(
        id=template_id,
        name="Deal closing",
        description="Standard closing",
        stages=[Stage(id="s1", title="Signing", tasks=[Task(
            id="t1",
            title="Sign contract",
            materials=[Material(id="mat1", name="Contract draft", category=MaterialCategory.REFERENCE)],
        )])],
    )


def attached(file_id, name="contract.pdf", size=3):
    return AttachedFile(id=file_id, name=name, type="application/pdf", size=size, uploaded_at=1)
