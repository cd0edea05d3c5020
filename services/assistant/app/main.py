"""
FastAPI app for the records assistant.

Responsibilities:
- Accept document uploads into the upload area (/api/upload).
- Run an analysis over uploaded files: extract, combine, summarise (/api/analysis).
- Answer follow-up questions grounded on a stored analysis (/api/chat).
- Translate core errors into structured JSON failures.

Stores and the generation client are built once per app in create_app() and
reached through dependencies, never through module globals.
"""

import logging
import os
from typing import List, Optional

from fastapi import APIRouter, Depends, FastAPI, File, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.middleware.cors import CORSMiddleware

from common.config import settings
from common.events import EventPublisher, now_iso
from . import storage
from .errors import AggregateEmptyError, AssistantError, InputError, NotFoundError
from .extractor import SUPPORTED_EXTENSIONS
from .llm import Generator, build_generator
from .models import (
    AnalysisRequest, AnalysisResponse, ChatRequest, ChatResponse, ClearResponse, DocumentOutcome,
    ConversationResponse, DeleteResponse, ErrorResponse, TurnOut, UploadedFile, UploadResponse,
)
from .pipeline import analyze, send_message
from .stores import AnalysisStore, ConversationStore

logger = logging.getLogger("assistant")


# -----------------------------------------------------------------------------
# Dependencies
# -----------------------------------------------------------------------------
def get_analyses(request: Request) -> AnalysisStore:
    return request.app.state.analyses

def get_conversations(request: Request) -> ConversationStore:
    return request.app.state.conversations

def get_generator(request: Request) -> Generator:
    return request.app.state.generator

def get_upload_dir(request: Request) -> str:
    return request.app.state.upload_dir

def get_events(request: Request) -> EventPublisher:
    return request.app.state.events


# -----------------------------------------------------------------------------
# Error translation
# -----------------------------------------------------------------------------
async def _assistant_error(request: Request, exc: AssistantError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    documents = None
    if isinstance(exc, AggregateEmptyError):
        documents = [DocumentOutcome(**d) for d in exc.documents]
    body = ErrorResponse(error=exc.title, message=exc.message, documents=documents)
    return JSONResponse(status_code=exc.status_code, content=body.model_dump(exclude_none=True))


async def _validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Malformed request bodies get the same {error, message} shape as InputError."""
    problems = []
    for err in exc.errors():
        loc = [str(part) for part in err.get("loc", ()) if part != "body"]
        field = ".".join(loc) or "body"
        if err.get("type") == "missing":
            problems.append(f"Missing required field: {field}")
        else:
            problems.append(f"{field}: {err.get('msg', 'invalid value')}")
    body = ErrorResponse(error="Invalid request", message="; ".join(problems) or "Invalid request body")
    return JSONResponse(status_code=400, content=body.model_dump(exclude_none=True))



# -----------------------------------------------------------------------------
# Routes
# -----------------------------------------------------------------------------
router = APIRouter()


@router.get("/health")
def health():
    """
    Lightweight readiness endpoint. Cheap and reliable for Docker health checks.
    """
    return {"status": "ok", "service": settings.service_name, "timestamp": now_iso()}


@router.post("/api/upload", response_model=UploadResponse)
async def upload(
    documents: Optional[List[UploadFile]] = File(None),
    upload_dir: str = Depends(get_upload_dir),
) -> UploadResponse:
    """
    Save up to MAX_UPLOAD_FILES PDF/DOCX/DOC/TXT files. Every file is checked
    before any is written, so a rejected batch leaves nothing behind.
    """
    if not documents:
        raise InputError("Please select at least one file to upload", title="No files uploaded")
    if len(documents) > settings.max_upload_files:
        raise InputError(
            f"At most {settings.max_upload_files} files can be uploaded at once", title="Too many files"
        )

    max_bytes = settings.max_upload_mb * 1024 * 1024
    payloads = []
    for doc in documents:
        name = doc.filename or ""
        if os.path.splitext(name)[1].lower() not in SUPPORTED_EXTENSIONS:
            raise InputError(
                "Invalid file type. Only PDF, DOCX, and TXT files are allowed.", title="Upload error"
            )
        content = await doc.read()
        if len(content) > max_bytes:
            raise InputError(
                f"File size must be less than {settings.max_upload_mb}MB", title="File too large"
            )
        payloads.append((doc, content))

    saved = []
    for doc, content in payloads:
        stored_name, _, size = storage.save_bytes(upload_dir, doc.filename, content)
        saved.append(UploadedFile(
            filename=stored_name, original_name=doc.filename, size=size, mimetype=doc.content_type,
        ))
    return UploadResponse(files=saved, count=len(saved))


@router.delete("/api/upload/{filename}", response_model=DeleteResponse)
def delete_upload(filename: str, upload_dir: str = Depends(get_upload_dir)) -> DeleteResponse:
    if not storage.delete(upload_dir, filename):
        raise NotFoundError("File", filename)
    return DeleteResponse(message="File deleted successfully", id=filename)


@router.post("/api/analysis", response_model=AnalysisResponse)
async def create_analysis(
    req: AnalysisRequest,
    analyses: AnalysisStore = Depends(get_analyses),
    generator: Generator = Depends(get_generator),
    upload_dir: str = Depends(get_upload_dir),
    events: EventPublisher = Depends(get_events),
) -> AnalysisResponse:
    files = [(storage.resolve(upload_dir, f.filename), f.original_name) for f in req.files]
    record = await analyze(files, store=analyses, generator=generator, events=events)
    return AnalysisResponse.from_record(record)


@router.get("/api/analysis/{analysis_id}", response_model=AnalysisResponse)
def get_analysis(analysis_id: str, analyses: AnalysisStore = Depends(get_analyses)) -> AnalysisResponse:
    return AnalysisResponse.from_record(analyses.get(analysis_id))


@router.delete("/api/analysis/{analysis_id}", response_model=DeleteResponse)
def delete_analysis(analysis_id: str, analyses: AnalysisStore = Depends(get_analyses)) -> DeleteResponse:
    if not analyses.delete(analysis_id):
        raise NotFoundError("Analysis", analysis_id)
    return DeleteResponse(message="Analysis deleted successfully", id=analysis_id)


@router.post("/api/chat", response_model=ChatResponse)
async def chat(
    req: ChatRequest,
    analyses: AnalysisStore = Depends(get_analyses),
    conversations: ConversationStore = Depends(get_conversations),
    generator: Generator = Depends(get_generator),
    events: EventPublisher = Depends(get_events),
) -> ChatResponse:
    result = await send_message(
        req.message, req.analysis_id, req.conversation_id,
        analyses=analyses, conversations=conversations, generator=generator, events=events,
    )
    return ChatResponse(
        conversation_id=result.conversation_id,
        response=result.response,
        timestamp=result.timestamp.isoformat(),
        message_count=result.message_count,
    )


@router.get("/api/chat/{conversation_id}", response_model=ConversationResponse)
def get_conversation(
    conversation_id: str, conversations: ConversationStore = Depends(get_conversations)
) -> ConversationResponse:
    turns = conversations.get(conversation_id)
    return ConversationResponse(
        conversation_id=conversation_id,
        history=[TurnOut.from_turn(t) for t in turns],
        message_count=len(turns),
    )


@router.delete("/api/chat/{conversation_id}", response_model=DeleteResponse)
def delete_conversation(
    conversation_id: str, conversations: ConversationStore = Depends(get_conversations)
) -> DeleteResponse:
    if not conversations.delete_one(conversation_id):
        raise NotFoundError("Conversation", conversation_id)
    return DeleteResponse(message="Conversation deleted successfully", id=conversation_id)


@router.delete("/api/chat", response_model=ClearResponse)
def clear_conversations(conversations: ConversationStore = Depends(get_conversations)) -> ClearResponse:
    return ClearResponse(count=conversations.delete_all())


# -----------------------------------------------------------------------------
# App factory
# -----------------------------------------------------------------------------
def create_app(
    generator: Optional[Generator] = None,
    analyses: Optional[AnalysisStore] = None,
    conversations: Optional[ConversationStore] = None,
    upload_dir: Optional[str] = None,
    events: Optional[EventPublisher] = None,
) -> FastAPI:
    app = FastAPI(title="Records Assistant", version="0.1.0")
    app.add_middleware(CORSMiddleware, allow_origins=["*"], allow_methods=["*"], allow_headers=["*"])

    app.state.analyses = analyses if analyses is not None else AnalysisStore()
    app.state.conversations = conversations if conversations is not None else ConversationStore()
    app.state.generator = generator if generator is not None else build_generator(settings)
    app.state.upload_dir = upload_dir or settings.upload_dir

    app.state.events = events if events is not None else EventPublisher.from_settings(settings)

    app.add_exception_handler(AssistantError, _assistant_error)
    app.add_exception_handler(RequestValidationError, _validation_error)
    app.include_router(router)

    @app.on_event("shutdown")
    async def shutdown():
        await app.state.events.close()

    logger.info("Assistant ready provider=%s upload_dir=%s", settings.llm_provider, app.state.upload_dir)
    return app


app = create_app()


# Uvicorn entrypoint for Docker
if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=settings.service_port)
