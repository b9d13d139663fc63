"""AI generation provider interface and Gemini implementation."""

import asyncio
from abc import ABC, abstractmethod
from typing import Any, Callable, List, Optional, Sequence

import google.generativeai as genai
import structlog
from google.api_core import exceptions
from pydantic import BaseModel, Field

from ..config import get_settings
from ..domain.models import Role

logger = structlog.get_logger()

ChunkCallback = Callable[[str], None]


class ChatTurn(BaseModel):
    """One role/content pair sent as generation context."""

    role: Role
    content: str


class GenerationResult(BaseModel):
    """Completed generation. ``text`` is the full response."""

    text: str = ""
    sources: List[str] = Field(default_factory=list)


class GenerationError(Exception):
    """Raised when the provider fails to produce a response."""
    pass


class GenerationProvider(ABC):
    """Streams a response for a role/content message sequence."""

    @abstractmethod
    async def stream_text(
        self,
        messages: Sequence[ChatTurn],
        on_chunk: ChunkCallback,
        *,
        search: bool = True,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> GenerationResult:
        """
        Generate a response, calling ``on_chunk`` once per text fragment.

        Implementations should stop producing chunks once ``cancel_event`` is
        set; callers also cancel the awaiting task.
        """
        pass


class GeminiGenerationProvider(GenerationProvider):
    """Generation provider backed by Google's Gemini models."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        model_name: Optional[str] = None,
        max_output_tokens: Optional[int] = None,
    ) -> None:
        settings = get_settings()
        self.api_key = api_key or settings.gemini_api_key
        self.model_name = model_name or settings.gemini_model
        self.max_output_tokens = max_output_tokens or settings.max_output_tokens
        self._configured = False
        logger.info("llm_service_init", model=self.model_name, has_api_key=bool(self.api_key))

    def _model(self, search: bool) -> "genai.GenerativeModel":
        if not self._configured:
            if not self.api_key:
                raise GenerationError("No Gemini API key configured")
            genai.configure(api_key=self.api_key)
            self._configured = True
        if search:
            return genai.GenerativeModel(self.model_name, tools="google_search_retrieval")
        return genai.GenerativeModel(self.model_name)

    @staticmethod
    def _to_contents(messages: Sequence[ChatTurn]) -> List[dict]:
        """Gemini calls the assistant role "model"."""
        return [
            {"role": "model" if m.role == "assistant" else "user", "parts": [m.content]}
            for m in messages
        ]

    @staticmethod
    def _chunk_text(chunk: Any) -> str:
        try:
            return chunk.text or ""
        except ValueError:
            # Chunk carried no text part (e.g. only grounding metadata).
            return ""

    @staticmethod
    def _extract_sources(response: Any) -> List[str]:
        """Collect citation URIs from the grounding metadata, first seen first."""
        sources: List[str] = []
        candidates = getattr(response, "candidates", None) or []
        if not candidates:
            return sources
        metadata = getattr(candidates[0], "grounding_metadata", None)
        for grounding_chunk in getattr(metadata, "grounding_chunks", None) or []:
            web = getattr(grounding_chunk, "web", None)
            uri = getattr(web, "uri", None)
            if uri and uri not in sources:
                sources.append(uri)
        return sources

    async def stream_text(
        self,
        messages: Sequence[ChatTurn],
        on_chunk: ChunkCallback,
        *,
        search: bool = True,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> GenerationResult:
        """Stream a Gemini response."""
        model = self._model(search)
        parts: List[str] = []
        try:
            response = await model.generate_content_async(
                self._to_contents(messages),
                generation_config=genai.types.GenerationConfig(
                    max_output_tokens=self.max_output_tokens,
                ),
                stream=True,
            )
            async for chunk in response:
                if cancel_event is not None and cancel_event.is_set():
                    logger.info("gemini_stream_cancelled", chunks=len(parts))
                    break
                text = self._chunk_text(chunk)
                if text:
                    parts.append(text)
                    on_chunk(text)
        except exceptions.ResourceExhausted as e:
            logger.warning("gemini_quota_exhausted", error=str(e))
            raise GenerationError("Gemini quota exhausted") from e
        except exceptions.GoogleAPIError as e:
            logger.error("gemini_request_failed", error=str(e))
            raise GenerationError(str(e)) from e

        result = GenerationResult(text="".join(parts), sources=self._extract_sources(response))
        logger.info(
            "gemini_response_complete",
            model=self.model_name,
            chunks=len(parts),
            response_length=len(result.text),
            sources=len(result.sources),
        )
        return result
