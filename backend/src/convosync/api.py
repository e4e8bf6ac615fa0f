"""FastAPI application exposing conversation persistence."""

import logging

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from models import AddMessageParams, Conversation, CreateConversationParams
from convosync.config import configure_logging, settings
from convosync.errors import (
    ConversationNotFound,
    ConversationStoreError,
    InvalidArgument,
    PermissionDenied,
    RetriesExhausted,
    StoreUnavailable,
)
from convosync.models import (
    AddMessageRequest,
    ConversationListResponse,
    CreateConversationRequest,
    MessageResponse,
    SyncResponse,
    UpdateConversationRequest,
)
from convosync.services.conversations import ConversationService, get_conversation_service

logger = logging.getLogger(__name__)

app = FastAPI(
    title="Convosync API",
    description="Conversation persistence with offline fallback",
    version="0.1.0",
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
async def startup_event():
    configure_logging()
    logger.info(f"Starting convosync API with {settings.store_backend} store")


def get_user_id(user_id: str | None = Header(alias="X-User-ID", default=None)) -> str:
    """Caller identity; falls back to the local development user."""
    return user_id or "local-dev-user"


_STATUS_CODES: list[tuple[type[ConversationStoreError], int]] = [
    (ConversationNotFound, 404),
    (PermissionDenied, 403),
    (InvalidArgument, 422),
    (RetriesExhausted, 503),
    (StoreUnavailable, 503),
]


@app.exception_handler(ConversationStoreError)
async def store_error_handler(request: Request, exc: ConversationStoreError) -> JSONResponse:
    status_code = next((code for error_type, code in _STATUS_CODES if isinstance(exc, error_type)), 500)
    if status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
    return JSONResponse(status_code=status_code, content={"detail": str(exc)})


# ============= Health =============


@app.get("/health")
async def health(service: ConversationService = Depends(get_conversation_service)):
    """Health check endpoint."""
    return {"status": "healthy", "remote": await service.is_remote_available()}


# ============= Conversation Endpoints =============


@app.post("/conversations", response_model=Conversation, status_code=201)
async def create_conversation(
    request: CreateConversationRequest,
    user_id: str = Depends(get_user_id),
    service: ConversationService = Depends(get_conversation_service),
):
    """Create a conversation, falling back to the local cache when needed."""
    params = CreateConversationParams(**request.model_dump(), user_id=user_id)
    return await service.create_conversation_with_fallback(params)


@app.get("/conversations", response_model=ConversationListResponse)
async def list_conversations(
    agent_type: str | None = None,
    user_id: str = Depends(get_user_id),
    service: ConversationService = Depends(get_conversation_service),
):
    """List the user's conversations across all agents."""
    conversations = await service.list_conversations(user_id, agent_type)
    return ConversationListResponse(conversations=conversations, total=len(conversations))


@app.get("/conversations/{conversation_id}", response_model=Conversation)
async def find_conversation(
    conversation_id: str,
    user_id: str = Depends(get_user_id),
    service: ConversationService = Depends(get_conversation_service),
):
    """Get a conversation by ID alone."""
    return await service.find_conversation_by_id(user_id, conversation_id)


@app.get("/agents/{agent_id}/conversations/{conversation_id}", response_model=Conversation)
async def get_conversation(
    agent_id: str,
    conversation_id: str,
    user_id: str = Depends(get_user_id),
    service: ConversationService = Depends(get_conversation_service),
):
    return await service.get_conversation(user_id, agent_id, conversation_id)


@app.post(
    "/agents/{agent_id}/conversations/{conversation_id}/messages",
    response_model=MessageResponse,
    status_code=201,
)
async def add_message(
    agent_id: str,
    conversation_id: str,
    request: AddMessageRequest,
    user_id: str = Depends(get_user_id),
    service: ConversationService = Depends(get_conversation_service),
):
    """Append a message, buffering it locally when the store is down."""
    params = AddMessageParams(
        conversation_id=conversation_id,
        role=request.role,
        content=request.content,
        metadata=request.metadata,
    )
    message = await service.add_message_with_fallback(user_id, agent_id, params)
    return MessageResponse(conversation_id=conversation_id, message=message)


@app.patch("/agents/{agent_id}/conversations/{conversation_id}", response_model=Conversation)
async def update_conversation(
    agent_id: str,
    conversation_id: str,
    request: UpdateConversationRequest,
    user_id: str = Depends(get_user_id),
    service: ConversationService = Depends(get_conversation_service),
):
    """Rename and/or annotate a conversation."""
    if request.title is None and request.metadata is None:
        raise HTTPException(status_code=422, detail="Nothing to update")

    conversation = None
    if request.title is not None:
        conversation = await service.rename_conversation(user_id, agent_id, conversation_id, request.title)
    if request.metadata is not None:
        conversation = await service.annotate_conversation(user_id, agent_id, conversation_id, request.metadata)
    return conversation


# ============= Sync =============


@app.post("/sync", response_model=SyncResponse)
async def sync(
    user_id: str = Depends(get_user_id),
    service: ConversationService = Depends(get_conversation_service),
):
    """Push the user's locally cached conversations to the remote store."""
    report = await service.sync_local_conversations(user_id)
    return SyncResponse(
        skipped=report.skipped,
        migrated=report.migrated,
        drained=report.drained,
        failed=report.failed,
    )


def main():
    import uvicorn

    configure_logging()
    uvicorn.run(app, host=settings.host, port=settings.port)
