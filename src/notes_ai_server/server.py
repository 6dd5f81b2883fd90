"""FastAPI REST API for pages, search, settings and AI tasks."""

import asyncio
import threading
import time
import uuid
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any
from uuid import UUID

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from starlette.exceptions import HTTPException as StarletteHTTPException

from .logger import log_context, logger
from .notes import (
    AITaskOrchestrator,
    AppSettings,
    BlockDocument,
    EngineLoadError,
    Image,
    NotFoundError,
    OrchestratorBusyError,
    Page,
    PageNode,
    PageStore,
    StoreError,
    TaskResult,
    TaskType,
    create_engine,
)
from .notes.diffing import CHAR_DIFF, WORD_BY_WORD, annotate_correction, diff_text
from .notes.hierarchy import breadcrumb_chain, drop_position, organize_hierarchy, resolve_drop
from .notes.models import CamelModel
from .notes.orchestrator import OrchestratorStatus
from .notes.search_text import build_searchable_text, highlight_search_term, normalize_search_term

MIGRATIONS_DIR = Path(__file__).parent / "migrations"
UNTITLED_PAGE = "Untitled Page"


# --- Request/Response Models ---


class PageCreate(CamelModel):
    title: str = UNTITLED_PAGE
    content: str | None = None
    parent_id: UUID | None = None
    order: int = 0
    is_favorite: bool = False
    tags: str | None = None
    searchable_text: str | None = None


class PageUpdate(CamelModel):
    title: str | None = None
    content: str | None = None
    parent_id: UUID | None = None
    order: int | None = None
    is_favorite: bool | None = None
    tags: str | None = None
    searchable_text: str | None = None


class SubpageCreate(CamelModel):
    title: str = UNTITLED_PAGE
    content: str | None = None


class PageDetail(Page):
    images: list[Image] = Field(default_factory=list)
    children: list[Page] = Field(default_factory=list)


class MoveRequest(CamelModel):
    order: int = Field(..., ge=0)
    parent_id: UUID | None = None


class DropRequest(CamelModel):
    target_id: UUID
    relative_y: float
    height: float = Field(..., gt=0)


class Breadcrumb(CamelModel):
    id: str
    label: str


class ImageFields(CamelModel):
    filename: str | None = None
    original_name: str | None = None
    mime_type: str | None = None
    size: int | None = None
    page_id: UUID | None = None


class SearchResult(Page):
    highlighted_title: str


class SettingsUpdate(CamelModel):
    ai_engine: str | None = None
    lm_studio_url: str | None = None
    lm_studio_model: str | None = None
    preferred_model: str | None = None
    fallback_enabled: bool | None = None


class DiffRequest(CamelModel):
    original: str
    corrected: str
    design: int = Field(default=WORD_BY_WORD, ge=WORD_BY_WORD, le=CHAR_DIFF)


class DiffResponse(CamelModel):
    source: list[dict[str, Any]]
    corrected: list[dict[str, Any]]
    annotated: list[dict[str, Any]] | None = None


class AITaskRequest(CamelModel):
    content: list[dict[str, Any]] | None = None
    page_id: UUID | None = None
    save: bool = False


class CorrectBlockRequest(CamelModel):
    source: list[dict[str, Any]]
    dest: list[dict[str, Any]] | None = None
    block_id: str
    design: int | None = Field(default=None, ge=WORD_BY_WORD, le=CHAR_DIFF)


class StopResponse(BaseModel):
    stopped: bool


class ModelCachedResponse(BaseModel):
    cached: bool


class MessageResponse(BaseModel):
    message: str


class HealthResponse(BaseModel):
    status: str
    checks: dict[str, bool] = Field(default_factory=dict)


class ErrorResponse(BaseModel):
    code: str
    message: str


# --- App State ---

db: PageStore | None = None
_db_lock = threading.Lock()
_orchestrator: AITaskOrchestrator | None = None


def _locked(fn, *args, **kwargs):
    # One psycopg2 connection; transactions must not interleave across threads
    with _db_lock:
        return fn(*args, **kwargs)


async def run_db(fn, *args, **kwargs):
    """Run a blocking store call in the thread pool."""
    return await asyncio.to_thread(_locked, fn, *args, **kwargs)


async def _build_engine():
    settings = await run_db(db.get_settings) if db else AppSettings()
    return create_engine(settings)


def get_orchestrator() -> AITaskOrchestrator:
    """Lazy initialization of the AI task orchestrator."""
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = AITaskOrchestrator(engine_factory=_build_engine)
    return _orchestrator


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifecycle."""
    global db

    logger.info("starting server")

    db = PageStore()
    db.connect()
    db.run_migrations(MIGRATIONS_DIR)

    yield

    if _orchestrator is not None:
        _orchestrator.stop()
    if db:
        db.disconnect()
    logger.info("server shutdown")


app = FastAPI(
    title="Notes AI API",
    description="Block-document notes with hierarchy, full-text search and AI writing tasks",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
    start = time.perf_counter()
    with log_context(request_id=request_id):
        response = await call_next(request)
        duration_ms = (time.perf_counter() - start) * 1000
        logger.info(
            "request completed",
            method=request.method,
            path=request.url.path,
            status=response.status_code,
            duration_ms=round(duration_ms, 2),
        )
    response.headers["X-Request-ID"] = request_id
    return response


# --- Exception Handlers ---


def _error(status_code: int, code: str, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(code=code, message=message).model_dump(),
    )


@app.exception_handler(NotFoundError)
async def not_found_handler(request, exc: NotFoundError):
    return _error(404, "NOT_FOUND", str(exc))


@app.exception_handler(StoreError)
async def store_error_handler(request, exc: StoreError):
    return _error(500, "STORE_ERROR", str(exc))


@app.exception_handler(EngineLoadError)
async def engine_load_handler(request, exc: EngineLoadError):
    return _error(503, "ENGINE_UNAVAILABLE", str(exc))


@app.exception_handler(OrchestratorBusyError)
async def busy_handler(request, exc: OrchestratorBusyError):
    return _error(409, "TASK_IN_PROGRESS", str(exc))


@app.exception_handler(ValueError)
async def invalid_request_handler(request, exc: ValueError):
    return _error(400, "INVALID_REQUEST", str(exc))


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request, exc: StarletteHTTPException):
    return _error(exc.status_code, "HTTP_ERROR", str(exc.detail))


# --- Health Endpoints ---


@app.get("/health", response_model=HealthResponse)
async def health():
    """Liveness check."""
    return HealthResponse(status="healthy")


@app.get("/ready", response_model=HealthResponse)
async def ready():
    """Readiness check - verifies database connectivity."""
    checks = {"database": False}
    if db and db.conn:
        checks["database"] = await run_db(db.ping)

    status = "healthy" if all(checks.values()) else "unhealthy"
    return HealthResponse(status=status, checks=checks)


# --- Page Endpoints ---


async def _require_page(page_id: UUID) -> Page:
    page = await run_db(db.get_page, page_id)
    if page is None:
        raise NotFoundError("Page not found")
    return page


@app.get("/api/pages", response_model=list[Page])
async def list_pages():
    return await run_db(db.list_pages)


@app.get("/api/pages/tree", response_model=list[PageNode])
async def page_tree():
    """Pages arranged as the sidebar forest."""
    pages = await run_db(db.list_pages)
    return organize_hierarchy(pages)


@app.post("/api/pages", response_model=Page, status_code=201)
async def create_page(request: PageCreate):
    searchable_text = request.searchable_text or build_searchable_text(request.title, request.content)
    return await run_db(
        db.create_page,
        title=request.title,
        content=request.content,
        parent_id=request.parent_id,
        order=request.order,
        is_favorite=request.is_favorite,
        tags=request.tags or "[]",
        searchable_text=searchable_text,
    )


@app.get("/api/pages/{page_id}", response_model=PageDetail)
async def get_page(page_id: UUID):
    page = await _require_page(page_id)
    images = await run_db(db.list_images_for_page, page_id)
    children = await run_db(db.get_children, page_id)
    return PageDetail(**page.model_dump(), images=images, children=children)


@app.put("/api/pages/{page_id}", response_model=Page)
async def update_page(page_id: UUID, request: PageUpdate):
    """Update the provided fields only."""
    fields = request.model_dump(exclude_unset=True)
    if "searchable_text" not in fields and ("title" in fields or "content" in fields):
        current = await _require_page(page_id)
        fields["searchable_text"] = build_searchable_text(
            fields.get("title", current.title), fields.get("content", current.content)
        )
    return await run_db(db.update_page, page_id, **fields)


@app.delete("/api/pages/{page_id}", response_model=MessageResponse)
async def delete_page(page_id: UUID):
    await run_db(db.delete_page, page_id)
    return MessageResponse(message="Page deleted successfully")


@app.post("/api/pages/{page_id}/subpages", response_model=Page, status_code=201)
async def create_subpage(page_id: UUID, request: SubpageCreate):
    parent = await _require_page(page_id)
    return await run_db(
        db.create_page,
        title=request.title,
        content=request.content,
        parent_id=parent.id,
        order=parent.order + 1,
        searchable_text=build_searchable_text(request.title, request.content),
    )


@app.post("/api/pages/{page_id}/move", response_model=Page)
async def move_page(page_id: UUID, request: MoveRequest):
    return await run_db(db.move_page, page_id, request.order, request.parent_id)


@app.post("/api/pages/{page_id}/drop", response_model=Page)
async def drop_page(page_id: UUID, request: DropRequest):
    """Move a page by dropping it onto another row of the sidebar."""
    moved = await _require_page(page_id)
    target = await _require_page(request.target_id)
    position = drop_position(request.relative_y, request.height)
    destination = resolve_drop(moved.id, target, position)
    if destination is None:
        return moved
    logger.info(
        "page dropped",
        page_id=str(page_id),
        target_id=str(target.id),
        position=position.value,
    )
    return await run_db(db.move_page, page_id, destination.order, destination.parent_id)


@app.get("/api/pages/{page_id}/breadcrumbs", response_model=list[Breadcrumb])
async def breadcrumbs(page_id: UUID):
    chain = await run_db(breadcrumb_chain, page_id, db.get_page)
    return [Breadcrumb(id="dashboard", label="Dashboard")] + [
        Breadcrumb(id=str(page.id), label=page.title or UNTITLED_PAGE) for page in chain
    ]


# --- Image Endpoints ---


@app.get("/api/images", response_model=list[Image])
async def list_images():
    return await run_db(db.list_images)


@app.post("/api/images", response_model=Image, status_code=201)
async def create_image(request: ImageFields):
    fields = request.model_dump()
    if not all(fields.values()):
        raise HTTPException(status_code=400, detail="Missing required fields")
    return await run_db(db.create_image, **fields)


@app.get("/api/images/{image_id}", response_model=Image)
async def get_image(image_id: UUID):
    image = await run_db(db.get_image, image_id)
    if image is None:
        raise NotFoundError("Image not found")
    return image


@app.put("/api/images/{image_id}", response_model=Image)
async def update_image(image_id: UUID, request: ImageFields):
    return await run_db(db.update_image, image_id, **request.model_dump(exclude_unset=True))


@app.delete("/api/images/{image_id}", response_model=MessageResponse)
async def delete_image(image_id: UUID):
    await run_db(db.delete_image, image_id)
    return MessageResponse(message="Image deleted successfully")


# --- Search ---


@app.get("/api/search", response_model=list[SearchResult])
async def search(q: str | None = Query(default=None)):
    """Full-text search over page titles and content."""
    term = normalize_search_term(q)
    if not term:
        return []
    pages = await run_db(db.search_pages, term)
    return [
        SearchResult(**page.model_dump(), highlighted_title=highlight_search_term(page.title, term))
        for page in pages
    ]


# --- Settings ---


@app.get("/api/settings", response_model=AppSettings)
async def get_settings():
    return await run_db(db.get_settings)


@app.put("/api/settings", response_model=AppSettings)
async def update_settings(request: SettingsUpdate):
    settings = await run_db(db.upsert_settings, **request.model_dump(exclude_unset=True))
    orchestrator = get_orchestrator()
    if not orchestrator.busy:
        # The next prompt builds an engine from the new settings
        orchestrator.reset_engine()
    return settings


# --- Diff and AI Endpoints ---


@app.post("/api/diff", response_model=DiffResponse)
async def diff(request: DiffRequest):
    source, corrected = diff_text(request.original, request.corrected, request.design)
    annotated = None
    if request.design != WORD_BY_WORD:
        annotated = annotate_correction(request.original, request.corrected, request.design)
    return DiffResponse(source=source, corrected=corrected, annotated=annotated)


@app.get("/api/ai/status", response_model=OrchestratorStatus)
async def ai_status():
    return get_orchestrator().status()


@app.get("/api/ai/model-cached", response_model=ModelCachedResponse)
async def model_cached():
    return ModelCachedResponse(cached=await get_orchestrator().is_model_cached())


@app.post("/api/ai/stop", response_model=StopResponse)
async def stop_task():
    return StopResponse(stopped=get_orchestrator().stop())


@app.post("/api/ai/correct-block", response_model=TaskResult)
async def correct_block(request: CorrectBlockRequest):
    """Correct one block and annotate it against the model's reply."""
    source = BlockDocument(request.source)
    dest = BlockDocument(request.dest) if request.dest is not None else source.copy()
    return await get_orchestrator().correct_single_block(source, dest, request.block_id, request.design)


@app.post("/api/ai/{task}", response_model=TaskResult)
async def run_task(task: TaskType, request: AITaskRequest):
    """Run one AI task over a document or a stored page."""
    if request.content is not None:
        doc = BlockDocument(request.content)
    elif request.page_id is not None:
        page = await _require_page(request.page_id)
        try:
            doc = BlockDocument.from_json(page.content)
        except ValueError as e:
            logger.warn("unreadable page content, using empty document", page_id=str(page.id), error=str(e))
            doc = BlockDocument()
    else:
        raise HTTPException(status_code=400, detail="Provide content or pageId")

    result = await get_orchestrator().run_task(task, doc)

    # Only summary and develop write into the page itself; the others fill a second document
    if request.save and request.page_id is not None and task in (TaskType.SUMMARY, TaskType.DEVELOP):
        page = await _require_page(request.page_id)
        content = BlockDocument(result.document).to_json()
        await run_db(
            db.update_page,
            request.page_id,
            content=content,
            searchable_text=build_searchable_text(page.title, content),
        )
    return result
