"""
Metadata Store Tests
====================

Whole-collection persistence, first-load seeding, bulk replacement.
"""

import json

import pytest
from sqlalchemy import text

from orbit_lite.errors import StoreIOError, ValidationError
from orbit_lite.metadata_store import MATTERS_KEY, TEMPLATES_KEY, MetadataStore
from orbit_lite.seed import builtin_templates

from conftest import make_matter, make_template


def raw_value(store, key):
    with store.engine.connect() as conn:
        row = conn.execute(text("SELECT value FROM documents WHERE key = :k"), {"k": key}).fetchone()
    return None if row is None else json.loads(row[0])


class TestSeeding:
    """First load seeds exactly once"""

    def test_load_matters_twice_is_identical(self, store):
        first = store.load_matters()
        second = store.load_matters()

        assert len(first) == 1
        assert first[0].id == "demo-matter"
        assert [m.to_wire() for m in first] == [m.to_wire() for m in second]

    def test_seed_is_persisted(self, store):
        store.load_matters()
        assert raw_value(store, MATTERS_KEY)[0]["id"] == "demo-matter"

    def test_seed_disabled(self, empty_store):
        assert empty_store.load_matters() == []
        assert raw_value(empty_store, MATTERS_KEY) == []

    def test_templates_seeded_with_builtins(self, store):
        templates = store.load_templates()
        assert [t.id for t in templates] == [t.id for t in builtin_templates()]
        assert [t.to_wire() for t in store.load_templates()] == [t.to_wire() for t in templates]

    def test_deleting_seed_does_not_reseed(self, store):
        store.load_matters()
        store.delete_matter("demo-matter")
        assert store.load_matters() == []

    def test_reopen_reads_same_content(self, tmp_path):
        url = f"sqlite:///{tmp_path / 'reopen.db'}"
        first = MetadataStore.from_url(url).load_matters()
        second = MetadataStore.from_url(url).load_matters()
        assert [m.to_wire() for m in first] == [m.to_wire() for m in second]


class TestCollections:

    def test_save_and_load_round_trip(self, empty_store):
        matters = [make_matter("m1"), make_matter("m2", title="Beta")]
        empty_store.save_matters(matters)

        assert empty_store.load_matters() == matters
        stored = raw_value(empty_store, MATTERS_KEY)
        assert stored[0]["stages"][0]["tasks"][0]["materials"][0]["isReady"] is False
        assert "lastUpdated" in stored[0]

    def test_upsert_prepends_new_matter(self, empty_store):
        empty_store.upsert_matter(make_matter("m1"))
        empty_store.upsert_matter(make_matter("m2"))
        assert [m.id for m in empty_store.load_matters()] == ["m2", "m1"]

    def test_upsert_replaces_in_place(self, empty_store):
        empty_store.save_matters([make_matter("m1"), make_matter("m2")])
        empty_store.upsert_matter(make_matter("m2", title="Renamed"))

        matters = empty_store.load_matters()
        assert [m.id for m in matters] == ["m1", "m2"]
        assert matters[1].title == "Renamed"

    def test_delete_unknown_matter(self, empty_store):
        with pytest.raises(ValidationError):
            empty_store.delete_matter("nope")

    def test_save_rejects_duplicate_ids(self, empty_store):
        with pytest.raises(ValidationError):
            empty_store.save_matters([make_matter("m1"), make_matter("m1")])

    def test_rejects_temporary_edit_matters(self, empty_store):
        """The stand-in matter of a template edit is never stored"""
        with pytest.raises(ValidationError):
            empty_store.upsert_matter(make_matter("TEMP_tpl1"))
        with pytest.raises(ValidationError):
            empty_store.save_matters([make_matter("m1"), make_matter("TEMP_tpl1")])
        with pytest.raises(ValidationError):
            empty_store.replace_all([make_matter("TEMP_tpl1")], [])
        assert empty_store.load_matters() == []

    def test_get_matter(self, empty_store):
        empty_store.save_matters([make_matter("m1")])
        assert empty_store.get_matter("m1").title == "Acme Deal"
        assert empty_store.get_matter("nope") is None

    def test_template_upsert_and_delete(self, store):
        store.upsert_template(make_template("custom"))
        assert store.get_template("custom").name == "Deal closing"
        assert store.load_templates()[-1].id == "custom"

        store.delete_template("custom")
        assert store.get_template("custom") is None

    def test_preferences_round_trip(self, store):
        assert store.load_preferences() == {}
        store.save_preferences({"theme": "dark"})
        assert store.load_preferences() == {"theme": "dark"}


class TestBulk:

    def test_read_collections_does_not_seed(self, store):
        assert store.read_collections() == ([], [])
        assert raw_value(store, MATTERS_KEY) is None
        assert raw_value(store, TEMPLATES_KEY) is None

    def test_replace_all(self, store):
        store.load_matters()
        store.load_templates()

        store.replace_all([make_matter("m9")], [make_template("t9")])

        matters, templates = store.read_collections()
        assert [m.id for m in matters] == ["m9"]
        assert [t.id for t in templates] == ["t9"]


class TestFailures:

    def test_corrupt_document_raises_store_error(self, store):
        with store.engine.begin() as conn:
            conn.execute(
                text("INSERT INTO documents (key, value) VALUES (:k, :v)"),
                {"k": MATTERS_KEY, "v": "{not json"},
            )
        with pytest.raises(StoreIOError):
            store.load_matters()

    def test_schema_mismatch_raises_store_error(self, store):
        with store.engine.begin() as conn:
            conn.execute(
                text("INSERT INTO documents (key, value) VALUES (:k, :v)"),
                {"k": MATTERS_KEY, "v": json.dumps([{"title": "no id"}])},
            )
        with pytest.raises(StoreIOError):
            store.load_matters()

    def test_non_list_document_raises_store_error(self, store):
        with store.engine.begin() as conn:
            conn.execute(
                text("INSERT INTO documents (key, value) VALUES (:k, :v)"),
                {"k": TEMPLATES_KEY, "v": json.dumps({"oops": 1})},
            )
        with pytest.raises(StoreIOError):
            store.load_templates()
