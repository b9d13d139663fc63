"""
FastAPI Application Module

Local HTTP facade over the conversation store, so a UI process can read the
chat state and drive it without embedding the client.

Key Features:
- One store per process, initialized once in the app lifespan
- Send, stop and delete operations mapped onto the store
- Structured logging and Prometheus metrics
- CORS and OpenTelemetry support

The store itself never raises on remote failures; the endpoints here only
translate unknown ids into 404s.
"""

from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import Depends, FastAPI, HTTPException, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from prometheus_client import CollectorRegistry, Counter, generate_latest
from pydantic import BaseModel
from structlog import get_logger

from ..config import get_settings
from ..domain.models import Conversation, Message, User
from ..repositories.memory import InMemoryDatabase
from ..services.auth import StaticAuthProvider
from ..services.conversation_store import ConversationStore
from ..services.llm import GeminiGenerationProvider

# Registry for isolated metric collection
CUSTOM_REGISTRY = CollectorRegistry()

REQUESTS = Counter("requests_total", "Total requests", registry=CUSTOM_REGISTRY)
ERRORS = Counter("errors_total", "Total failed requests", registry=CUSTOM_REGISTRY)
MESSAGES_SENT = Counter("messages_sent_total", "User messages sent", registry=CUSTOM_REGISTRY)

logger = get_logger()


class MessageCreate(BaseModel):
    """Defines the structure for send requests"""
    content: str


class StoreState(BaseModel):
    """Selection and flags of the store"""
    initialized: bool
    authenticated: bool
    is_generating: bool
    current_conversation_id: Optional[str] = None
    user: Optional[User] = None


def build_store() -> ConversationStore:
    """Wires the store from settings: in-memory database, static auth, Gemini."""
    settings = get_settings()
    user = None
    if settings.local_user_id:
        user = User(id=settings.local_user_id, email=settings.local_user_email)
    return ConversationStore(
        database=InMemoryDatabase(),
        auth=StaticAuthProvider(user),
        provider=GeminiGenerationProvider(),
        settings=settings,
    )


store = build_store()


def get_store() -> ConversationStore:
    """Returns the conversation store instance"""
    return store


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Loads the initial state and waits for pending writes on shutdown"""
    current = app.dependency_overrides.get(get_store, get_store)()
    await current.initialize()
    logger.info("application_startup_complete")

    yield

    current.stop_generation()
    await current.drain()
    logger.info("application_shutdown_complete")


app = FastAPI(
    title="Chat State Sync",
    description="Local HTTP facade over the synchronized chat state",
    version="0.1.0",
    lifespan=lifespan,
)

# Enable cross-origin requests
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Set up request tracing
FastAPIInstrumentor.instrument_app(app)


@app.middleware("http")
async def logging_middleware(request: Request, call_next):
    """Tracks requests"""
    logger.info("request_started", path=request.url.path, method=request.method)
    REQUESTS.inc()
    try:
        response = await call_next(request)
    except Exception as e:
        ERRORS.inc()
        logger.error("request_failed", path=request.url.path, error=str(e))
        raise
    if response.status_code >= 500:
        ERRORS.inc()
    return response


def _require(store: ConversationStore, conversation_id: str) -> Conversation:
    conversation = store.get_conversation(conversation_id)
    if conversation is None:
        logger.warning("conversation_not_found", conversation_id=conversation_id)
        raise HTTPException(status_code=404, detail="Conversation not found")
    return conversation


@app.get("/state", response_model=StoreState)
async def get_state(store: ConversationStore = Depends(get_store)) -> StoreState:
    """Reports selection, auth and generation flags"""
    return StoreState(
        initialized=store.initialized,
        authenticated=store.is_authenticated,
        is_generating=store.is_generating,
        current_conversation_id=store.current_conversation_id,
        user=store.user,
    )


@app.get("/conversations", response_model=List[Conversation])
async def list_conversations(store: ConversationStore = Depends(get_store)) -> List[Conversation]:
    """Gets all conversations, newest first"""
    return list(store.conversations)


@app.post("/conversations", response_model=Conversation)
async def create_conversation(store: ConversationStore = Depends(get_store)) -> Conversation:
    """Starts and selects a new conversation"""
    return await store.create_conversation()


@app.get("/conversations/{conversation_id}", response_model=Conversation)
async def get_conversation(
    conversation_id: str, store: ConversationStore = Depends(get_store)
) -> Conversation:
    """Retrieves a specific conversation by its ID"""
    return _require(store, conversation_id)


@app.post("/conversations/{conversation_id}/select", response_model=StoreState)
async def select_conversation(
    conversation_id: str, store: ConversationStore = Depends(get_store)
) -> StoreState:
    """Moves the selection to a conversation"""
    _require(store, conversation_id)
    await store.select_conversation(conversation_id)
    return await get_state(store)


@app.delete("/conversations/{conversation_id}", status_code=204)
async def delete_conversation(
    conversation_id: str, store: ConversationStore = Depends(get_store)
) -> Response:
    """Removes a conversation and its messages"""
    _require(store, conversation_id)
    await store.delete_conversation(conversation_id)
    return Response(status_code=204)


@app.post("/messages", response_model=Message)
async def send_message(
    message: MessageCreate, store: ConversationStore = Depends(get_store)
) -> Message:
    """
    Sends a message to the selected conversation and waits for the reply.
    A new conversation is started when none is selected.
    """
    if not message.content.strip():
        raise HTTPException(status_code=422, detail="Message content is empty")
    MESSAGES_SENT.inc()
    reply = await store.send_message(message.content)
    if reply is None:
        raise HTTPException(status_code=500, detail="Failed to process message")
    return reply


@app.post("/generation/stop", status_code=204)
async def stop_generation(store: ConversationStore = Depends(get_store)) -> Response:
    """Stops any in-flight generation"""
    store.stop_generation()
    return Response(status_code=204)


@app.get("/metrics")
async def metrics():
    """Provides Prometheus metrics for system monitoring"""
    return Response(generate_latest(CUSTOM_REGISTRY), media_type="text/plain")
