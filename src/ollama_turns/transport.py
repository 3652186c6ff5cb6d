"""Async Ollama transport: streamed chat, model listing, and title generation."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncGenerator, Sequence
from dataclasses import dataclass
import json
import logging
from typing import Any, Literal

import httpx
from ollama import AsyncClient, ResponseError
from pydantic import ValidationError

from .exceptions import (
    OllamaTurnsError,
    StreamParseError,
    TransportError,
    TransportHTTPError,
    TransportUnreachable,
    UserCancelled,
)
from .models import Message
from .titles import FALLBACK_TITLE, build_title_prompt, clean_title

LOGGER = logging.getLogger(__name__)

CANCELLED_MESSAGE = "Request cancelled."


class CancellationToken:
    """Cooperative cancellation flag checked by the transport at every read."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    async def wait(self) -> None:
        await self._event.wait()


@dataclass(frozen=True)
class StreamEvent:
    """One event of a chat stream.

    ``fragment`` carries the next piece of text, ``complete`` the total
    accumulated text, ``failed`` the mapped error. A user cancellation is a
    ``failed`` event whose error is :class:`UserCancelled`.
    """

    kind: Literal["fragment", "complete", "failed"]
    text: str = ""
    error: OllamaTurnsError | None = None

    @property
    def cancelled(self) -> bool:
        return isinstance(self.error, UserCancelled)


class OllamaTransport:
    """Thin wrapper over ``ollama.AsyncClient`` with mapped, typed failures."""

    def __init__(self, host: str, timeout: int = 120, client: Any | None = None) -> None:
        self.host = host
        self.timeout = timeout
        self._client = client if client is not None else AsyncClient(host=host, timeout=timeout)

    @staticmethod
    def _extract_from_chunk(chunk: Any, field: str) -> Any:
        """Read ``message.<field>`` from an SDK object or a plain dict chunk."""
        message_obj = getattr(chunk, "message", None)
        if message_obj is not None and not isinstance(chunk, dict):
            value = getattr(message_obj, field, None)
            if value is not None:
                return value

        if hasattr(chunk, "model_dump"):
            chunk = chunk.model_dump()

        if isinstance(chunk, dict):
            message = chunk.get("message")
            if isinstance(message, dict):
                value = message.get(field)
                if value is not None:
                    return value
            return chunk.get(field)
        return None

    @classmethod
    def _extract_chunk_text(cls, chunk: Any) -> str:
        value = cls._extract_from_chunk(chunk, "content")
        return value if isinstance(value, str) else ""

    def _map_exception(self, exc: BaseException) -> OllamaTurnsError:
        if isinstance(exc, OllamaTurnsError):
            return exc
        if isinstance(exc, (json.JSONDecodeError, ValidationError)):
            return StreamParseError("Error parsing stream data chunk.")
        if isinstance(exc, (httpx.TimeoutException, httpx.NetworkError, ConnectionError)):
            return TransportUnreachable(f"Could not connect to Ollama at {self.host}.")
        if isinstance(exc, ResponseError):
            status = exc.status_code if exc.status_code and exc.status_code > 0 else None
            detail = exc.error or (f"Server error: {status}" if status else "Server error.")
            return TransportHTTPError(detail, status_code=status)
        if isinstance(exc, httpx.HTTPStatusError):
            status = exc.response.status_code
            return TransportHTTPError(f"Server error: {status}", status_code=status)
        return TransportError(f"Failed to stream response from Ollama at {self.host}: {exc}")

    async def stream_chat(
        self,
        model: str,
        messages: Sequence[Message],
        cancel: CancellationToken,
    ) -> AsyncGenerator[StreamEvent, None]:
        """Stream one chat request as ``fragment`` events then a terminal event.

        Exactly one terminal event (``complete`` or ``failed``) ends a stream
        that is consumed to the end. Task cancellation (``CancelledError``)
        propagates unchanged.
        """
        if cancel.cancelled:
            yield StreamEvent(kind="failed", error=UserCancelled(CANCELLED_MESSAGE))
            return

        parts: list[str] = []
        failure: OllamaTurnsError | None = None
        stream: Any = None
        try:
            stream = await self._client.chat(
                model=model,
                messages=[message.to_api() for message in messages],
                stream=True,
            )
            async for chunk in stream:
                if cancel.cancelled:
                    failure = UserCancelled(CANCELLED_MESSAGE)
                    break
                text = self._extract_chunk_text(chunk)
                if text:
                    parts.append(text)
                    yield StreamEvent(kind="fragment", text=text)
        except asyncio.CancelledError:
            LOGGER.info(
                "transport.stream.cancelled",
                extra={"event": "transport.stream.cancelled", "model": model},
            )
            raise
        except Exception as exc:  # noqa: BLE001 - external API can fail in many ways.
            failure = self._map_exception(exc)
            LOGGER.warning(
                "transport.stream.failed",
                extra={
                    "event": "transport.stream.failed",
                    "model": model,
                    "error_type": type(failure).__name__,
                    "error": str(failure),
                },
            )
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                try:
                    await aclose()
                except Exception:  # noqa: BLE001 - closing a broken stream.
                    pass

        if failure is not None:
            yield StreamEvent(kind="failed", error=failure)
            return
        yield StreamEvent(kind="complete", text="".join(parts))

    async def list_models(self) -> list[str]:
        """Return the sorted model names reported by ``/api/tags``."""
        try:
            response = await self._client.list()
        except Exception as exc:  # noqa: BLE001
            raise self._map_exception(exc) from exc

        models: Any = None
        if hasattr(response, "models"):
            models = response.models
        elif isinstance(response, dict):
            models = response.get("models")

        names: list[str] = []
        if isinstance(models, list):
            for model in models:
                candidate: str | None = None
                for key in ("name", "model"):
                    value = model.get(key) if isinstance(model, dict) else getattr(model, key, None)
                    if isinstance(value, str) and value.strip():
                        candidate = value.strip()
                        break
                if candidate:
                    names.append(candidate)
        return sorted(names)

    async def generate_title(self, model: str, user_prompt: str, assistant_response: str) -> str:
        """Summarize a first exchange into a short title; ``"Chat"`` on any failure."""
        try:
            response = await self._client.generate(
                model=model,
                prompt=build_title_prompt(user_prompt, assistant_response),
                stream=False,
                options={"num_predict": 20, "temperature": 0.3},
            )
            raw = getattr(response, "response", None)
            if raw is None and isinstance(response, dict):
                raw = response.get("response")
            if not isinstance(raw, str):
                return FALLBACK_TITLE
            return clean_title(raw)
        except Exception as exc:  # noqa: BLE001 - title generation is non-critical.
            LOGGER.warning(
                "title.generation.failed",
                extra={
                    "event": "title.generation.failed",
                    "model": model,
                    "error_type": type(exc).__name__,
                },
            )
            return FALLBACK_TITLE
