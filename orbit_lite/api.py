"""
Orbit Lite API
==============

FastAPI operation boundary over the local stores.

Endpoints:
- GET/PUT /matters, POST /matters, GET/PUT/DELETE /matters/{id}
- POST /matters/{id}/save-as-template    - Dematerialize into a new template
- POST /matters/{id}/analysis            - Judgment timeline analysis
- POST /matters/{id}/summary             - Executive summary of one matter
- GET /matters/{id}/materials            - Zip of the matter's attached files
- GET/PUT /templates, DELETE /templates/{id}, POST /templates/generate
- POST /templates/{id}/edit, PUT /templates/edit,
  POST /templates/edit/commit, DELETE /templates/edit - In-place template editing
- POST /files, GET /files/{id}           - Blob upload / download
- GET /backup, POST /backup              - Export / import archive
- POST /maintenance/sweep                - Orphan blob sweep
- GET /attention, GET /work-status, POST /materials/parse
- GET/PUT /preferences, GET /health

Run with:
    uvicorn orbit_lite.api:app --host 127.0.0.1 --port 8000
"""

import io
import logging
import re
from datetime import date
from typing import Any, Dict, List, Optional
from urllib.parse import quote

from fastapi import Body, Depends, FastAPI, File, HTTPException, Query, Request, UploadFile
from fastapi.responses import JSONResponse, StreamingResponse

from . import __version__
from .attention import attention_groups, due_soon_count
from .backup import ZipLimits, export_archive, export_matter_materials, import_archive
from .config import get_settings
from .editing import create_matter, is_temporary_matter_id, now_ms, record_analysis
from .errors import (
    BackupError,
    BackupFormatError,
    OrbitError,
    StoreIOError,
    TemplateEditError,
    ValidationError,
)
from .llm_client import AnalysisClient
from .maintenance import sweep_orphan_blobs
from .metadata_store import MetadataStore
from .schemas import (
    CreateMatterRequest,
    HealthResponse,
    Matter,
    SaveAsTemplateRequest,
    Template,
    TextRequest,
)
from .storage import BlobStore
from .transformer import TemplateEditSession, default_template_name, dematerialize, materialize

logger = logging.getLogger(__name__)


# =============================================================================
# Services
# =============================================================================

class Services:
    """Explicit dependencies shared by all endpoints"""

    def __init__(self, store: MetadataStore, blobs: BlobStore, analysis: Optional[AnalysisClient] = None, limits: Optional[ZipLimits] = None):
        self.store = store
        self.blobs = blobs
        self.analysis = analysis or AnalysisClient(api_key=None)
        self.limits = limits or ZipLimits()
        self.template_edit = TemplateEditSession(store)


_services: Optional[Services] = None


def configure_services(
    store: MetadataStore,
    blobs: BlobStore,
    analysis: Optional[AnalysisClient] = None,
    limits: Optional[ZipLimits] = None,
) -> Services:
    """Install the stores the endpoints use (tests pass their own)"""
    global _services
    _services = Services(store, blobs, analysis, limits)
    return _services


def reset_services():
    """Drop configured services (primarily for tests)."""
    global _services
    _services = None


def get_services() -> Services:
    global _services
    if _services is None:
        settings = get_settings()
        _services = Services(
            MetadataStore.from_settings(settings),
            BlobStore.from_settings(settings),
            AnalysisClient.from_settings(settings),
            ZipLimits.from_settings(settings),
        )
    return _services


# =============================================================================
# FastAPI App
# =============================================================================

app = FastAPI(
    title="Orbit Lite",
    description="Local-first matter tracking: matters, templates, files and backups",
    version=__version__,
    docs_url="/docs",
    redoc_url="/redoc",
)

_STATUS_CODES = [
    (BackupFormatError, 400),
    (ValidationError, 400),
    (TemplateEditError, 409),
    (BackupError, 500),
    (StoreIOError, 500),
]


@app.exception_handler(OrbitError)
async def orbit_error_handler(request: Request, exc: OrbitError):
    status_code = 500
    for error_type, code in _STATUS_CODES:
        if isinstance(exc, error_type):
            status_code = code
            break
    if status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
    else:
        logger.info(f"{request.method} {request.url.path} rejected: {exc}")
    return JSONResponse(status_code=status_code, content={"detail": exc.user_message})


@app.on_event("startup")
async def startup_event():
    """Initialize on startup"""
    settings = get_settings()
    logger.info(f"Starting Orbit Lite v{settings.service_version}")
    for warning in settings.validate_llm_config():
        logger.warning(warning)
    services = get_services()
    logger.info(f"Blob store at {services.blobs.backend.base_path}")


@app.on_event("shutdown")
async def shutdown_event():
    """Cleanup on shutdown"""
    if _services is not None:
        await _services.analysis.close()
    logger.info("Orbit Lite stopped")


def _require_matter(services: Services, matter_id: str) -> Matter:
    matter = services.store.get_matter(matter_id)
    if matter is None:
        raise HTTPException(status_code=404, detail=f"Matter not found: {matter_id}")
    return matter


def _require_template(services: Services, template_id: str) -> Template:
    template = services.store.get_template(template_id)
    if template is None:
        raise HTTPException(status_code=404, detail=f"Template not found: {template_id}")
    return template


def content_disposition(filename: str) -> str:
    """Attachment header safe for any file name (RFC 5987 plus an ASCII fallback)"""
    fallback = re.sub(r'[^\x20-\x7e]|["\\]', "_", filename)
    return f"attachment; filename=\"{fallback}\"; filename*=UTF-8''{quote(filename, safe='')}"


# =============================================================================
# Health
# =============================================================================

@app.get("/health", tags=["Health"])
def health_check(services: Services = Depends(get_services)):
    """Health check endpoint"""
    settings = get_settings()
    matters, templates = services.store.read_collections()
    return HealthResponse(
        status="healthy",
        version=settings.service_version,
        matters=len(matters),
        templates=len(templates),
        ai_enabled=services.analysis.enabled,
    ).to_wire()


# =============================================================================
# Matters
# =============================================================================

@app.get("/matters", tags=["Matters"], summary="List all matters")
def list_matters(services: Services = Depends(get_services)):
    return [m.to_wire() for m in services.store.load_matters()]


@app.put("/matters", tags=["Matters"], summary="Replace the matter collection")
def replace_matters(matters: List[Matter], services: Services = Depends(get_services)):
    services.store.save_matters(matters)
    return {"count": len(matters)}


@app.post("/matters", tags=["Matters"], status_code=201, summary="Create a matter")
def create_matter_endpoint(request: CreateMatterRequest, services: Services = Depends(get_services)):
    """From a template when template_id is given, otherwise a blank matter"""
    if request.template_id:
        template = _require_template(services, request.template_id)
        matter = materialize(template, title=request.title, due_date=request.due_date)
    else:
        matter = create_matter(request.title, type=request.type or "", due_date=request.due_date)
    services.store.upsert_matter(matter)
    logger.info(f"Created matter {matter.id} ({matter.type or 'blank'})")
    return matter.to_wire()


@app.get("/matters/{matter_id}", tags=["Matters"])
def get_matter(matter_id: str, services: Services = Depends(get_services)):
    return _require_matter(services, matter_id).to_wire()


@app.put("/matters/{matter_id}", tags=["Matters"], summary="Save an edited matter")
def save_matter(matter_id: str, matter: Matter, services: Services = Depends(get_services)):
    if matter.id != matter_id:
        raise HTTPException(status_code=400, detail="Matter id does not match the path")
    services.store.upsert_matter(matter.model_copy(update={"last_updated": now_ms()}))
    return services.store.get_matter(matter_id).to_wire()


@app.delete("/matters/{matter_id}", tags=["Matters"])
def delete_matter(matter_id: str, services: Services = Depends(get_services)):
    """Delete a matter; its files stay in the blob store"""
    _require_matter(services, matter_id)
    services.store.delete_matter(matter_id)
    return {"deleted": matter_id}


@app.post("/matters/{matter_id}/save-as-template", tags=["Templates"], status_code=201)
def save_as_template(
    matter_id: str,
    request: Optional[SaveAsTemplateRequest] = Body(default=None),
    services: Services = Depends(get_services),
):
    if is_temporary_matter_id(matter_id):
        raise TemplateEditError(
            f"Matter {matter_id} belongs to an open template edit",
            user_message="Commit the template edit instead of saving it as a new template",
        )
    matter = _require_matter(services, matter_id)
    name = request.name if request else default_template_name(matter)
    description = request.description if request else None
    template = dematerialize(matter, name=name, description=description)
    services.store.upsert_template(template)
    logger.info(f"Saved matter {matter_id} as template {template.id}")
    return template.to_wire()


@app.post("/matters/{matter_id}/analysis", tags=["Analysis"])
async def analyze_matter(matter_id: str, services: Services = Depends(get_services)):
    """Run the judgment timeline analysis and keep it on the matter"""
    if not services.analysis.enabled:
        raise HTTPException(status_code=503, detail="AI analysis is not configured")
    matter = _require_matter(services, matter_id)
    result = await services.analysis.analyze_judgment_timeline(matter, services.store.load_matters())
    if result is None:
        raise HTTPException(status_code=502, detail="AI analysis failed")
    services.store.upsert_matter(record_analysis(matter, result))
    return result.to_wire()


@app.post("/matters/{matter_id}/summary", tags=["Analysis"])
async def summarize_matter(matter_id: str, services: Services = Depends(get_services)):
    """Executive summary of one matter (not stored)"""
    if not services.analysis.enabled:
        raise HTTPException(status_code=503, detail="AI analysis is not configured")
    matter = _require_matter(services, matter_id)
    summary = await services.analysis.summarize_matter(matter)
    if summary is None:
        raise HTTPException(status_code=502, detail="AI summary failed")
    return {"summary": summary}


@app.get("/matters/{matter_id}/materials", tags=["Files"], summary="Download all of a matter's files")
async def export_materials(matter_id: str, services: Services = Depends(get_services)):
    """Zip laid out as matter/stage/task/file; missing blobs are skipped"""
    matter = _require_matter(services, matter_id)
    result = await export_matter_materials(matter, services.blobs)
    headers = {"Content-Disposition": content_disposition(result.filename)}
    if result.missing_file_ids:
        headers["X-Orbit-Missing-Files"] = str(len(result.missing_file_ids))
    return StreamingResponse(io.BytesIO(result.data), media_type="application/zip", headers=headers)


# =============================================================================
# Templates
# =============================================================================

@app.get("/templates", tags=["Templates"])
def list_templates(services: Services = Depends(get_services)):
    return [t.to_wire() for t in services.store.load_templates()]


@app.put("/templates", tags=["Templates"], summary="Replace the template collection")
def replace_templates(templates: List[Template], services: Services = Depends(get_services)):
    services.store.save_templates(templates)
    return {"count": len(templates)}


@app.post("/templates/generate", tags=["Analysis"], status_code=201)
async def generate_template(request: TextRequest, services: Services = Depends(get_services)):
    """Infer a template from a free-text procedure description"""
    if not services.analysis.enabled:
        raise HTTPException(status_code=503, detail="AI analysis is not configured")
    template = await services.analysis.generate_template_from_text(request.text)
    if template is None:
        raise HTTPException(status_code=502, detail="Template generation failed")
    services.store.upsert_template(template)
    return template.to_wire()


@app.post("/templates/{template_id}/edit", tags=["Templates"], summary="Open a template for editing")
def begin_template_edit(template_id: str, services: Services = Depends(get_services)):
    template = _require_template(services, template_id)
    return services.template_edit.begin(template).to_wire()


@app.put("/templates/edit", tags=["Templates"])
def update_template_edit(matter: Matter, services: Services = Depends(get_services)):
    return services.template_edit.update(matter).to_wire()


@app.post("/templates/edit/commit", tags=["Templates"])
def commit_template_edit(services: Services = Depends(get_services)):
    return services.template_edit.commit().to_wire()


@app.delete("/templates/edit", tags=["Templates"])
def cancel_template_edit(services: Services = Depends(get_services)):
    services.template_edit.cancel()
    return {"cancelled": True}


@app.delete("/templates/{template_id}", tags=["Templates"])
def delete_template(template_id: str, services: Services = Depends(get_services)):
    _require_template(services, template_id)
    services.store.delete_template(template_id)
    return {"deleted": template_id}


# =============================================================================
# Files
# =============================================================================

@app.post("/files", tags=["Files"], status_code=201, summary="Upload a file")
async def upload_file(file: UploadFile = File(...), services: Services = Depends(get_services)):
    """Store the bytes and return the AttachedFile record to put on a material"""
    data = await file.read()
    if len(data) > services.limits.max_file_bytes:
        raise HTTPException(status_code=413, detail="File too large")
    attached = await services.blobs.upload(data, file.filename or "file", file.content_type)
    return attached.to_wire()


@app.get("/files/{file_id}", tags=["Files"], summary="Download a file")
async def download_file(
    file_id: str,
    name: Optional[str] = Query(default=None),
    content_type: Optional[str] = Query(default=None, alias="type"),
    services: Services = Depends(get_services),
):
    data = await services.blobs.get(file_id)
    if data is None:
        raise HTTPException(status_code=404, detail="File missing or unreadable")
    headers = {}
    if name:
        headers["Content-Disposition"] = content_disposition(name)
    return StreamingResponse(
        io.BytesIO(data),
        media_type=content_type or "application/octet-stream",
        headers=headers,
    )


# =============================================================================
# Backup / Maintenance
# =============================================================================

@app.get("/backup", tags=["Backup"], summary="Export everything as a zip archive")
async def export_backup(services: Services = Depends(get_services)):
    result = await export_archive(services.store, services.blobs)
    headers = {"Content-Disposition": content_disposition(result.filename)}
    if result.missing_file_ids:
        headers["X-Orbit-Missing-Files"] = str(len(result.missing_file_ids))
    return StreamingResponse(io.BytesIO(result.data), media_type="application/zip", headers=headers)


@app.post("/backup", tags=["Backup"], summary="Restore from a zip archive (overwrites)")
async def import_backup(file: UploadFile = File(...), services: Services = Depends(get_services)):
    data = await file.read()
    services.template_edit.cancel()
    summary = await import_archive(data, services.store, services.blobs, services.limits)
    return summary.to_wire()


@app.post("/maintenance/sweep", tags=["Maintenance"])
async def sweep_blobs(dry_run: bool = Query(default=False), services: Services = Depends(get_services)):
    report = await sweep_orphan_blobs(services.store, services.blobs, dry_run=dry_run)
    return report.to_wire()


# =============================================================================
# Dashboard helpers
# =============================================================================

@app.get("/attention", tags=["Dashboard"])
def get_attention(services: Services = Depends(get_services)):
    matters = services.store.load_matters()
    return {
        "groups": [g.to_wire() for g in attention_groups(matters, now_ms())],
        "dueSoon": due_soon_count(matters, date.today()),
    }


@app.get("/work-status", tags=["Analysis"])
async def work_status(services: Services = Depends(get_services)):
    if not services.analysis.enabled:
        raise HTTPException(status_code=503, detail="AI analysis is not configured")
    result = await services.analysis.analyze_work_status(services.store.load_matters())
    if result is None:
        raise HTTPException(status_code=502, detail="AI analysis failed")
    return result.to_wire()


@app.post("/materials/parse", tags=["Analysis"])
async def parse_materials(request: TextRequest, services: Services = Depends(get_services)):
    if not services.analysis.enabled:
        raise HTTPException(status_code=503, detail="AI analysis is not configured")
    suggestions = await services.analysis.parse_materials_from_text(request.text)
    if suggestions is None:
        raise HTTPException(status_code=502, detail="Material extraction failed")
    return [s.to_wire() for s in suggestions]


@app.get("/preferences", tags=["Preferences"])
def get_preferences(services: Services = Depends(get_services)):
    return services.store.load_preferences()


@app.put("/preferences", tags=["Preferences"])
def put_preferences(preferences: Dict[str, Any], services: Services = Depends(get_services)):
    services.store.save_preferences(preferences)
    return preferences
