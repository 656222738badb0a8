"""
Metadata Store
==============

Whole-collection JSON persistence for the two independent collections:
the matter list and the template list. Each is read and written as one
serialized document under its own key. There is no partial write: every
mutation re-serializes the whole collection (single user, small dataset).

First load seeds the collections (demo matter, built-in templates) and
persists them, so a second load returns the same content.
"""

import json
import logging
from typing import Any, Dict, List, Optional, Tuple

from pydantic import ValidationError as SchemaError
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from .db.models import StoredDocument
from .db.session import create_engine_for_url, init_db, session_scope
from .editing import ensure_unique_ids, now_ms, reject_temporary_matters, validate_structure
from .errors import StoreIOError, ValidationError
from .schemas import Matter, Template
from .seed import builtin_templates, demo_matter

logger = logging.getLogger(__name__)

MATTERS_KEY = "orbit_matters_v1"
TEMPLATES_KEY = "orbit_templates_v1"
PREFERENCES_KEY = "orbit_preferences_v1"


class MetadataStore:
    """SQLAlchemy-backed key/value store for the matter and template lists"""

    def __init__(self, engine: Engine, seed_demo_data: bool = True):
        self.engine = engine
        self.seed_demo_data = seed_demo_data
        self._session_factory = sessionmaker(bind=engine, autocommit=False, autoflush=False)
        try:
            init_db(engine)
        except SQLAlchemyError as e:
            raise StoreIOError(f"Could not initialize metadata store: {e}") from e

    @classmethod
    def from_url(cls, database_url: str, seed_demo_data: bool = True) -> "MetadataStore":
        return cls(create_engine_for_url(database_url), seed_demo_data=seed_demo_data)

    @classmethod
    def from_settings(cls, settings=None) -> "MetadataStore":
        from .config import get_settings
        settings = settings or get_settings()
        return cls.from_url(settings.resolved_database_url(), seed_demo_data=settings.seed_demo_data)

    # -------------------------------------------------------------------------
    # RAW KEY ACCESS
    # -------------------------------------------------------------------------

    def _read(self, key: str) -> Optional[Any]:
        try:
            with session_scope(self._session_factory) as db:
                row = db.get(StoredDocument, key)
                raw = row.value if row is not None else None
        except SQLAlchemyError as e:
            logger.error(f"Metadata read failed for {key}: {e}")
            raise StoreIOError(f"Read failed for {key}: {e}") from e

        if raw is None:
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError as e:
            raise StoreIOError(f"Stored document {key} is not valid JSON: {e}") from e

    def _write(self, values: Dict[str, Any]) -> None:
        """Write one or more keys in a single transaction"""
        try:
            with session_scope(self._session_factory) as db:
                for key, value in values.items():
                    db.merge(StoredDocument(key=key, value=json.dumps(value, ensure_ascii=False)))
        except SQLAlchemyError as e:
            logger.error(f"Metadata write failed for {list(values)}: {e}")
            raise StoreIOError(f"Write failed for {list(values)}: {e}") from e

    # -------------------------------------------------------------------------
    # MATTERS
    # -------------------------------------------------------------------------

    def load_matters(self) -> List[Matter]:
        """Persisted matters; seeds the demo matter exactly once when absent"""
        raw = self._read(MATTERS_KEY)
        if raw is None:
            matters = [demo_matter(now_ms())] if self.seed_demo_data else []
            self.save_matters(matters)
            logger.info(f"Seeded matter collection ({len(matters)} matters)")
            return matters
        return _parse_list(Matter, raw, MATTERS_KEY)

    def save_matters(self, matters: List[Matter]) -> None:
        """Replace the persisted matter collection"""
        reject_temporary_matters(matters)
        _validate_collection(matters, "matter")
        self._write({MATTERS_KEY: [m.to_wire() for m in matters]})

    def get_matter(self, matter_id: str) -> Optional[Matter]:
        for matter in self.load_matters():
            if matter.id == matter_id:
                return matter
        return None

    def upsert_matter(self, matter: Matter) -> List[Matter]:
        """Replace a matter by id, or prepend it when new (newest first)"""
        reject_temporary_matters([matter])
        validate_structure(matter)
        matters = self.load_matters()
        if any(m.id == matter.id for m in matters):
            matters = [matter if m.id == matter.id else m for m in matters]
        else:
            matters = [matter] + matters
        self.save_matters(matters)
        return matters

    def delete_matter(self, matter_id: str) -> List[Matter]:
        """Delete a matter. Referenced blobs are left in the blob store."""
        matters = self.load_matters()
        kept = [m for m in matters if m.id != matter_id]
        if len(kept) == len(matters):
            raise ValidationError(f"Matter not found: {matter_id}")
        self.save_matters(kept)
        return kept

    # -------------------------------------------------------------------------
    # TEMPLATES
    # -------------------------------------------------------------------------

    def load_templates(self) -> List[Template]:
        """Persisted templates; seeds the built-in set when absent"""
        raw = self._read(TEMPLATES_KEY)
        if raw is None:
            templates = builtin_templates()
            self.save_templates(templates)
            logger.info(f"Seeded template collection ({len(templates)} templates)")
            return templates
        return _parse_list(Template, raw, TEMPLATES_KEY)

    def save_templates(self, templates: List[Template]) -> None:
        """Replace the persisted template collection"""
        _validate_collection(templates, "template")
        self._write({TEMPLATES_KEY: [t.to_wire() for t in templates]})

    def get_template(self, template_id: str) -> Optional[Template]:
        for template in self.load_templates():
            if template.id == template_id:
                return template
        return None

    def upsert_template(self, template: Template) -> List[Template]:
        """Replace a template by id, or append it when new"""
        validate_structure(template)
        templates = self.load_templates()
        if any(t.id == template.id for t in templates):
            templates = [template if t.id == template.id else t for t in templates]
        else:
            templates = templates + [template]
        self.save_templates(templates)
        return templates

    def delete_template(self, template_id: str) -> List[Template]:
        templates = self.load_templates()
        kept = [t for t in templates if t.id != template_id]
        if len(kept) == len(templates):
            raise ValidationError(f"Template not found: {template_id}")
        self.save_templates(kept)
        return kept

    # -------------------------------------------------------------------------
    # BULK (backup / restore)
    # -------------------------------------------------------------------------

    def read_collections(self) -> Tuple[List[Matter], List[Template]]:
        """Both collections as stored, without seeding (no writes)"""
        matters = self._read(MATTERS_KEY)
        templates = self._read(TEMPLATES_KEY)
        return (
            _parse_list(Matter, matters or [], MATTERS_KEY),
            _parse_list(Template, templates or [], TEMPLATES_KEY),
        )

    def replace_all(self, matters: List[Matter], templates: List[Template]) -> None:
        """Overwrite both collections in one transaction"""
        reject_temporary_matters(matters)
        _validate_collection(matters, "matter")
        _validate_collection(templates, "template")
        self._write({
            MATTERS_KEY: [m.to_wire() for m in matters],
            TEMPLATES_KEY: [t.to_wire() for t in templates],
        })

    # -------------------------------------------------------------------------
    # PREFERENCES (opaque)
    # -------------------------------------------------------------------------

    def load_preferences(self) -> Dict[str, Any]:
        raw = self._read(PREFERENCES_KEY)
        return raw if isinstance(raw, dict) else {}

    def save_preferences(self, preferences: Dict[str, Any]) -> None:
        self._write({PREFERENCES_KEY: dict(preferences)})


def _validate_collection(items: list, what: str) -> None:
    ensure_unique_ids(items, what)
    for item in items:
        validate_structure(item)


def _parse_list(model, raw: Any, key: str) -> list:
    if not isinstance(raw, list):
        raise StoreIOError(f"Stored document {key} is not a list")
    try:
        return [model.model_validate(item) for item in raw]
    except SchemaError as e:
        raise StoreIOError(f"Stored document {key} does not match the schema: {e}") from e
