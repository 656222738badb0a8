"""
Backup / Restore Tests
======================

Archive layout, deduplication, missing-blob tolerance, import validation,
and ZIP bomb protections.
"""

import io
import json
import zipfile
from datetime import datetime, timezone

import pytest

from orbit_lite.backup import (
    DATA_ENTRY,
    ZipLimits,
    backup_filename,
    export_archive,
    export_matter_materials,
    import_archive,
    material_entries,
    safe_name,
    read_backup_file,
    validate_zip_safe,
    write_backup_file,
)
from orbit_lite.errors import BackupError, BackupFormatError, ZipSecurityError

from conftest import attached, make_matter, make_template


def archive_names(data):
    with zipfile.ZipFile(io.BytesIO(data)) as zf:
        return sorted(zf.namelist())


def make_zip(entries):
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as zf:
        for name, content in entries.items():
            zf.writestr(name, content)
    return buffer.getvalue()


def data_document(matters=(), templates=(), version=1):
    return json.dumps({
        "version": version,
        "date": "2024-01-01T00:00:00+00:00",
        "matters": [m.to_wire() for m in matters],
        "templates": [t.to_wire() for t in templates],
    })


class TestExport:

    @pytest.mark.asyncio
    async def test_archive_layout(self, empty_store, blobs):
        await blobs.put("b1", b"contract bytes")
        empty_store.save_matters([make_matter(files=[attached("b1")])])
        empty_store.save_templates([make_template()])

        result = await export_archive(empty_store, blobs)

        assert archive_names(result.data) == ["data.json", "files/b1"]
        with zipfile.ZipFile(io.BytesIO(result.data)) as zf:
            document = json.loads(zf.read(DATA_ENTRY))
            assert zf.read("files/b1") == b"contract bytes"
        assert document["version"] == 1
        assert document["date"]
        assert document["matters"][0]["id"] == "m1"
        assert document["templates"][0]["id"] == "tpl1"
        assert (result.matters, result.templates, result.files) == (1, 1, 1)

    @pytest.mark.asyncio
    async def test_shared_file_id_exported_once(self, empty_store, blobs):
        """Two matters referencing the same blob produce one archive entry"""
        await blobs.put("shared", b"one copy")
        empty_store.save_matters([
            make_matter("m1", files=[attached("shared")]),
            make_matter("m2", files=[attached("shared")]),
        ])

        result = await export_archive(empty_store, blobs)

        assert archive_names(result.data).count("files/shared") == 1
        assert result.files == 1

    @pytest.mark.asyncio
    async def test_missing_blobs_are_skipped(self, empty_store, blobs):
        await blobs.put("present", b"here")
        empty_store.save_matters([make_matter(files=[attached("present"), attached("gone")])])

        result = await export_archive(empty_store, blobs)

        assert archive_names(result.data) == ["data.json", "files/present"]
        assert result.missing_file_ids == ["gone"]

    @pytest.mark.asyncio
    async def test_legacy_file_ids_are_exported(self, empty_store, blobs):
        await blobs.put("legacy", b"old style")
        matter = make_matter()
        material = matter.stages[0].tasks[0].materials[0].model_copy(update={"file_id": "legacy"})
        task = matter.stages[0].tasks[0].model_copy(update={"materials": [material]})
        matter = matter.model_copy(update={"stages": [matter.stages[0].model_copy(update={"tasks": [task]})]})
        empty_store.save_matters([matter])

        result = await export_archive(empty_store, blobs)
        assert "files/legacy" in archive_names(result.data)

    @pytest.mark.asyncio
    async def test_export_never_writes_metadata(self, store, blobs):
        result = await export_archive(store, blobs)
        assert result.matters == 0
        assert store.read_collections() == ([], [])

    @pytest.mark.asyncio
    async def test_highly_compressible_blob_round_trips(self, tmp_path, empty_store, blobs):
        """A blank scan compresses far past the bomb ratio; export stores it uncompressed"""
        scan = b"\0" * (1024 * 1024)
        await blobs.put("scan1", scan)
        empty_store.save_matters([make_matter(files=[attached("scan1", name="blank.bmp")])])

        result = await export_archive(empty_store, blobs)
        with zipfile.ZipFile(io.BytesIO(result.data)) as zf:
            assert zf.getinfo("files/scan1").compress_type == zipfile.ZIP_STORED
            assert zf.getinfo(DATA_ENTRY).compress_type == zipfile.ZIP_DEFLATED

        from orbit_lite.metadata_store import MetadataStore
        from orbit_lite.storage import BlobStore, LocalStorage

        target_store = MetadataStore.from_url(f"sqlite:///{tmp_path / 'target.db'}", seed_demo_data=False)
        target_blobs = BlobStore(LocalStorage(str(tmp_path / "target_files")))
        summary = await import_archive(result.data, target_store, target_blobs)

        assert summary.files == 1
        assert await target_blobs.get("scan1") == scan
        assert target_store.load_matters() == empty_store.load_matters()

    def test_backup_filename(self):
        when = datetime(2024, 3, 9, 12, 0, tzinfo=timezone.utc)
        assert backup_filename(when) == "orbit_backup_2024-03-09.zip"


class TestImport:

    @pytest.mark.asyncio
    async def test_round_trip_restores_everything(self, tmp_path, empty_store, blobs):
        await blobs.put("b1", b"contract")
        matters = [make_matter("m1", files=[attached("b1")]), make_matter("m2")]
        templates = [make_template()]
        empty_store.save_matters(matters)
        empty_store.save_templates(templates)
        exported = await export_archive(empty_store, blobs)

        from orbit_lite.metadata_store import MetadataStore
        from orbit_lite.storage import BlobStore, LocalStorage

        target_store = MetadataStore.from_url(f"sqlite:///{tmp_path / 'target.db'}")
        target_blobs = BlobStore(LocalStorage(str(tmp_path / "target_files")))
        target_store.load_matters()  # seeded demo gets overwritten

        summary = await import_archive(exported.data, target_store, target_blobs)

        assert (summary.matters, summary.templates, summary.files) == (2, 1, 1)
        assert target_store.load_matters() == matters
        assert target_store.load_templates() == templates
        assert await target_blobs.get("b1") == b"contract"
        assert await target_blobs.keys() == ["b1"]

    @pytest.mark.asyncio
    async def test_not_a_zip(self, empty_store, blobs):
        with pytest.raises(BackupFormatError):
            await import_archive(b"definitely not a zip", empty_store, blobs)

    @pytest.mark.asyncio
    async def test_missing_data_document_writes_nothing(self, empty_store, blobs):
        empty_store.save_matters([make_matter("keep")])
        data = make_zip({"files/b1": b"orphan"})

        with pytest.raises(BackupFormatError):
            await import_archive(data, empty_store, blobs)

        assert [m.id for m in empty_store.load_matters()] == ["keep"]
        assert await blobs.get("b1") is None

    @pytest.mark.asyncio
    async def test_malformed_data_document(self, empty_store, blobs):
        with pytest.raises(BackupFormatError):
            await import_archive(make_zip({DATA_ENTRY: "{broken"}), empty_store, blobs)

    @pytest.mark.asyncio
    async def test_schema_mismatch(self, empty_store, blobs):
        document = json.dumps({"version": 1, "date": "x", "matters": [{"title": "no id"}], "templates": []})
        with pytest.raises(BackupFormatError):
            await import_archive(make_zip({DATA_ENTRY: document}), empty_store, blobs)

    @pytest.mark.asyncio
    async def test_newer_version_rejected(self, empty_store, blobs):
        data = make_zip({DATA_ENTRY: data_document(version=2)})
        with pytest.raises(BackupFormatError) as exc_info:
            await import_archive(data, empty_store, blobs)
        assert "newer version" in exc_info.value.user_message

    @pytest.mark.asyncio
    async def test_duplicate_matter_ids_rejected(self, empty_store, blobs):
        data = make_zip({DATA_ENTRY: data_document([make_matter("m1"), make_matter("m1")])})
        with pytest.raises(BackupFormatError):
            await import_archive(data, empty_store, blobs)

    @pytest.mark.asyncio
    async def test_temporary_matter_rejected(self, empty_store, blobs):
        data = make_zip({DATA_ENTRY: data_document([make_matter("TEMP_tpl1")])})
        with pytest.raises(BackupFormatError):
            await import_archive(data, empty_store, blobs)
        assert empty_store.load_matters() == []

    @pytest.mark.asyncio
    async def test_corrupt_entry_is_format_error(self, empty_store, blobs):
        buffer = io.BytesIO()
        with zipfile.ZipFile(buffer, "w") as zf:
            zf.writestr(DATA_ENTRY, data_document([make_matter()]))
            zf.writestr("files/b1", b"A" * 100)
        data = buffer.getvalue().replace(b"A" * 100, b"B" * 100)

        with pytest.raises(BackupFormatError) as exc_info:
            await import_archive(data, empty_store, blobs)

        assert "damaged" in exc_info.value.user_message
        assert empty_store.load_matters() == []

    @pytest.mark.asyncio
    async def test_entries_outside_files_are_ignored(self, empty_store, blobs):
        data = make_zip({
            DATA_ENTRY: data_document([make_matter()]),
            "files/b1": b"kept",
            "notes/readme.txt": b"ignored",
            "files/nested/deep": b"invalid id",
        })
        summary = await import_archive(data, empty_store, blobs)

        assert summary.files == 1
        assert await blobs.keys() == ["b1"]

    @pytest.mark.asyncio
    async def test_blob_write_failure_leaves_metadata(self, empty_store, blobs, monkeypatch):
        empty_store.save_matters([make_matter("keep")])

        def broken(key, data, content_type=None):
            raise OSError("disk full")

        monkeypatch.setattr(blobs.backend, "put", broken)
        data = make_zip({DATA_ENTRY: data_document([make_matter("new")]), "files/b1": b"x"})

        with pytest.raises(BackupError) as exc_info:
            await import_archive(data, empty_store, blobs)

        assert not isinstance(exc_info.value, BackupFormatError)
        assert [m.id for m in empty_store.load_matters()] == ["keep"]

    @pytest.mark.asyncio
    async def test_backup_file_helpers(self, tmp_path, empty_store, blobs):
        empty_store.save_matters([make_matter()])
        path = await write_backup_file(str(tmp_path), empty_store, blobs)
        assert path.name.startswith("orbit_backup_")

        empty_store.save_matters([])
        summary = await read_backup_file(str(path), empty_store, blobs)
        assert summary.matters == 1
        assert [m.id for m in empty_store.load_matters()] == ["m1"]

    @pytest.mark.asyncio
    async def test_read_missing_backup_file(self, tmp_path, empty_store, blobs):
        with pytest.raises(BackupError):
            await read_backup_file(str(tmp_path / "nope.zip"), empty_store, blobs)


class TestZipSecurity:
    """Test ZIP bomb protection and security validation"""

    def _open(self, entries):
        return zipfile.ZipFile(io.BytesIO(make_zip(entries)))

    def test_rejects_path_traversal(self):
        with self._open({"../evil.txt": "malicious"}) as zf:
            with pytest.raises(ZipSecurityError) as exc_info:
                validate_zip_safe(zf)
        assert "path traversal" in str(exc_info.value).lower()

    def test_rejects_absolute_paths(self):
        with self._open({"/etc/passwd": "root"}) as zf:
            with pytest.raises(ZipSecurityError) as exc_info:
                validate_zip_safe(zf)
        assert "absolute path" in str(exc_info.value).lower()

    def test_skips_hidden_files(self):
        with self._open({"data.json": "{}", ".hidden": "x", "__MACOSX/resource": "y"}) as zf:
            assert validate_zip_safe(zf) == ["data.json"]

    def test_rejects_too_many_files(self):
        entries = {f"files/b{i}": b"x" for i in range(5)}
        with self._open(entries) as zf:
            with pytest.raises(ZipSecurityError):
                validate_zip_safe(zf, ZipLimits(max_files=3))

    def test_rejects_oversized_entry(self):
        with self._open({"files/big": b"x" * 2048}) as zf:
            with pytest.raises(ZipSecurityError):
                validate_zip_safe(zf, ZipLimits(max_file_bytes=1024, max_compression_ratio=10_000))

    def test_rejects_high_compression_ratio(self):
        buffer = io.BytesIO()
        with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_DEFLATED) as zf:
            zf.writestr("files/bomb", b"\0" * 200_000)
        with zipfile.ZipFile(io.BytesIO(buffer.getvalue())) as zf:
            with pytest.raises(ZipSecurityError) as exc_info:
                validate_zip_safe(zf, ZipLimits(max_compression_ratio=50))
        assert "compression ratio" in str(exc_info.value).lower()

    def test_rejects_symlinks(self):
        buffer = io.BytesIO()
        with zipfile.ZipFile(buffer, "w") as zf:
            info = zipfile.ZipInfo("files/link")
            info.external_attr = (0o120777 << 16)
            zf.writestr(info, "/etc/passwd")
        with zipfile.ZipFile(io.BytesIO(buffer.getvalue())) as zf:
            with pytest.raises(ZipSecurityError):
                validate_zip_safe(zf)

    @pytest.mark.asyncio
    async def test_import_surfaces_security_error_as_format_error(self, empty_store, blobs):
        data = make_zip({DATA_ENTRY: data_document(), "../evil": b"x"})
        with pytest.raises(BackupFormatError):
            await import_archive(data, empty_store, blobs)


class TestMaterialsExport:
    """Per-matter download of attached files"""

    @pytest.mark.asyncio
    async def test_layout_follows_stage_and_task(self, blobs):
        await blobs.put("b1", b"signed")
        matter = make_matter(files=[attached("b1", name="contract.pdf")])

        result = await export_matter_materials(matter, blobs)

        assert result.filename == "Acme Deal_materials.zip"
        assert archive_names(result.data) == ["Acme Deal/Signing/Sign contract/contract.pdf"]
        with zipfile.ZipFile(io.BytesIO(result.data)) as zf:
            assert zf.read("Acme Deal/Signing/Sign contract/contract.pdf") == b"signed"
        assert result.files == 1
        assert result.missing_file_ids == []

    @pytest.mark.asyncio
    async def test_missing_blob_is_skipped(self, blobs):
        await blobs.put("here", b"x")
        matter = make_matter(files=[attached("here", name="a.pdf"), attached("gone", name="b.pdf")])

        result = await export_matter_materials(matter, blobs)

        assert archive_names(result.data) == ["Acme Deal/Signing/Sign contract/a.pdf"]
        assert result.missing_file_ids == ["gone"]

    @pytest.mark.asyncio
    async def test_illegal_characters_are_replaced(self, blobs):
        await blobs.put("b1", b"x")
        matter = make_matter(title='A/B: "C"', files=[attached("b1", name="draft<1>?.pdf")])
        stage = matter.stages[0].model_copy(update={"title": "Stage|1*"})
        matter = matter.model_copy(update={"stages": [stage]})

        result = await export_matter_materials(matter, blobs)

        assert result.filename == "A_B_ _C__materials.zip"
        assert archive_names(result.data) == ["A_B_ _C_/Stage_1_/Sign contract/draft_1__.pdf"]

    def test_clashing_names_get_suffixes(self):
        matter = make_matter(files=[attached("b1", name="scan.pdf"), attached("b2", name="scan.pdf")])
        material = matter.stages[0].tasks[0].materials[0].model_copy(update={
            "file_id": "legacy", "file_name": "scan.pdf",
        })
        task = matter.stages[0].tasks[0].model_copy(update={"materials": [material]})
        matter = matter.model_copy(update={"stages": [matter.stages[0].model_copy(update={"tasks": [task]})]})

        folder = "Acme Deal/Signing/Sign contract"
        assert material_entries(matter) == [
            (f"{folder}/scan.pdf", "legacy"),
            (f"{folder}/scan (2).pdf", "b1"),
            (f"{folder}/scan (3).pdf", "b2"),
        ]

    def test_safe_name_fallbacks(self):
        assert safe_name("", "fallback") == "fallback"
        assert safe_name("..", "fallback") == "fallback"
        assert safe_name("合同.pdf", "fallback") == "合同.pdf"
