"""
Orphan Blob Sweep Tests
"""

import pytest

from orbit_lite.editing import remove_material
from orbit_lite.maintenance import sweep_orphan_blobs

from conftest import attached, make_matter, make_template


class TestSweep:

    @pytest.mark.asyncio
    async def test_deletes_only_unreferenced(self, empty_store, blobs):
        for key in ("in-matter", "in-template", "orphan"):
            await blobs.put(key, b"x")
        template = make_template()
        template = template.model_copy(update={"stages": [template.stages[0].model_copy(update={"tasks": [
            template.stages[0].tasks[0].model_copy(update={"materials": [
                template.stages[0].tasks[0].materials[0].model_copy(update={"files": [attached("in-template")]}),
            ]}),
        ]})]})
        empty_store.save_matters([make_matter(files=[attached("in-matter")])])
        empty_store.save_templates([template])

        report = await sweep_orphan_blobs(empty_store, blobs)

        assert report.deleted == ["orphan"]
        assert report.referenced == 2
        assert report.stored == 3
        assert await blobs.keys() == ["in-matter", "in-template"]

    @pytest.mark.asyncio
    async def test_dry_run_deletes_nothing(self, empty_store, blobs):
        await blobs.put("orphan", b"x")
        empty_store.save_matters([])

        report = await sweep_orphan_blobs(empty_store, blobs, dry_run=True)

        assert report.dry_run is True
        assert report.deleted == ["orphan"]
        assert await blobs.get("orphan") == b"x"

    @pytest.mark.asyncio
    async def test_removed_material_blob_is_swept(self, empty_store, blobs):
        """Removing a material leaves its blob until the sweep runs"""
        await blobs.put("b1", b"x")
        matter = make_matter(files=[attached("b1")])
        matter, orphaned = remove_material(matter, "t1", "mat1")
        empty_store.save_matters([matter])

        assert orphaned == ["b1"]
        assert await blobs.exists("b1")

        report = await sweep_orphan_blobs(empty_store, blobs)
        assert report.deleted == ["b1"]
        assert not await blobs.exists("b1")
