"""Tests for the Ollama transport, with fake clients and over a mocked wire."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncGenerator
import json
import unittest

import httpx
from ollama import AsyncClient

from ollama_turns.exceptions import (
    StreamParseError,
    TransportError,
    TransportHTTPError,
    TransportUnreachable,
)
from ollama_turns.models import Message
from ollama_turns.transport import CancellationToken, OllamaTransport, StreamEvent

HOST = "http://localhost:11434"


async def _chunk_stream(chunks: list[dict]) -> AsyncGenerator[dict, None]:
    for chunk in chunks:
        yield chunk


class FakeClient:
    """Simple fake Ollama client for deterministic tests."""

    def __init__(self, chunks: list[dict] | None = None, error: Exception | None = None) -> None:
        self.chunks = chunks or []
        self.error = error
        self.chat_calls: list[dict] = []
        self.generate_calls: list[dict] = []
        self.title_response: object = {"response": "Title: Tidal Forces"}

    async def chat(self, **kwargs) -> AsyncGenerator[dict, None]:
        self.chat_calls.append(kwargs)
        if self.error is not None:
            raise self.error
        return _chunk_stream(self.chunks)

    async def list(self) -> dict:
        if self.error is not None:
            raise self.error
        return {"models": [{"name": "zeta"}, {"model": "alpha"}, {"name": "  "}]}

    async def generate(self, **kwargs) -> object:
        self.generate_calls.append(kwargs)
        if self.error is not None:
            raise self.error
        return self.title_response


async def _collect(transport: OllamaTransport, cancel: CancellationToken | None = None) -> list[StreamEvent]:
    events: list[StreamEvent] = []
    async for event in transport.stream_chat(
        "m1", [Message(role="user", content="Hello")], cancel or CancellationToken()
    ):
        events.append(event)
    return events


class TransportTests(unittest.IsolatedAsyncioTestCase):
    async def test_stream_yields_fragments_then_complete(self) -> None:
        client = FakeClient(
            chunks=[
                {"message": {"role": "assistant", "content": "Hi"}, "done": False},
                {"message": {"role": "assistant", "content": ""}, "done": False},
                {"message": {"role": "assistant", "content": " there"}, "done": True},
            ]
        )
        transport = OllamaTransport(HOST, client=client)
        events = await _collect(transport)
        self.assertEqual(
            events,
            [
                StreamEvent(kind="fragment", text="Hi"),
                StreamEvent(kind="fragment", text=" there"),
                StreamEvent(kind="complete", text="Hi there"),
            ],
        )
        self.assertEqual(
            client.chat_calls,
            [
                {
                    "model": "m1",
                    "messages": [{"role": "user", "content": "Hello"}],
                    "stream": True,
                }
            ],
        )

    async def test_pre_cancelled_token_yields_cancelled_failure(self) -> None:
        client = FakeClient(chunks=[{"message": {"content": "never"}}])
        cancel = CancellationToken()
        cancel.cancel()
        events = await _collect(OllamaTransport(HOST, client=client), cancel)
        self.assertEqual(len(events), 1)
        self.assertTrue(events[0].cancelled)
        self.assertEqual(client.chat_calls, [])

    async def test_cancel_between_chunks_stops_the_stream(self) -> None:
        client = FakeClient(chunks=[{"message": {"content": "a"}}, {"message": {"content": "b"}}])
        transport = OllamaTransport(HOST, client=client)
        cancel = CancellationToken()
        events: list[StreamEvent] = []
        async for event in transport.stream_chat("m1", [], cancel):
            events.append(event)
            cancel.cancel()
        self.assertEqual([e.kind for e in events], ["fragment", "failed"])
        self.assertTrue(events[-1].cancelled)
        self.assertEqual(str(events[-1].error), "Request cancelled.")

    async def test_connection_errors_map_to_unreachable(self) -> None:
        transport = OllamaTransport(HOST, client=FakeClient(error=httpx.ConnectError("refused")))
        events = await _collect(transport)
        self.assertEqual(events[-1].kind, "failed")
        self.assertIsInstance(events[-1].error, TransportUnreachable)
        self.assertFalse(events[-1].cancelled)

    async def test_unknown_errors_map_to_transport_error(self) -> None:
        transport = OllamaTransport(HOST, client=FakeClient(error=RuntimeError("odd")))
        events = await _collect(transport)
        self.assertIs(type(events[-1].error), TransportError)

    async def test_task_cancellation_propagates(self) -> None:
        started = asyncio.Event()

        async def _slow_stream() -> AsyncGenerator[dict, None]:
            started.set()
            await asyncio.sleep(3600)
            yield {"message": {"content": "late"}}

        class SlowClient:
            async def chat(self, **_kwargs):
                return _slow_stream()

        transport = OllamaTransport(HOST, client=SlowClient())
        task = asyncio.create_task(_collect(transport))
        await started.wait()
        task.cancel()
        with self.assertRaises(asyncio.CancelledError):
            await task

    async def test_list_models_sorted_names(self) -> None:
        transport = OllamaTransport(HOST, client=FakeClient())
        self.assertEqual(await transport.list_models(), ["alpha", "zeta"])

    async def test_list_models_raises_mapped_error(self) -> None:
        transport = OllamaTransport(HOST, client=FakeClient(error=ConnectionError("down")))
        with self.assertRaises(TransportUnreachable):
            await transport.list_models()

    async def test_generate_title_cleans_response(self) -> None:
        client = FakeClient()
        transport = OllamaTransport(HOST, client=client)
        title = await transport.generate_title("phi3", "How do tides work?", "The moon...")
        self.assertEqual(title, "Tidal Forces")
        call = client.generate_calls[0]
        self.assertEqual(call["model"], "phi3")
        self.assertFalse(call["stream"])
        self.assertEqual(call["options"], {"num_predict": 20, "temperature": 0.3})

    async def test_generate_title_falls_back_on_failure(self) -> None:
        transport = OllamaTransport(HOST, client=FakeClient(error=RuntimeError("boom")))
        with self.assertLogs("ollama_turns.transport", level="WARNING"):
            self.assertEqual(await transport.generate_title("m", "q", "a"), "Chat")

        client = FakeClient()
        client.title_response = {"unexpected": True}
        self.assertEqual(await OllamaTransport(HOST, client=client).generate_title("m", "q", "a"), "Chat")


def _ndjson(*objects: dict) -> bytes:
    return "".join(json.dumps(obj) + "\n" for obj in objects).encode("utf-8")


class WireTransportTests(unittest.IsolatedAsyncioTestCase):
    """Run a real ``ollama.AsyncClient`` over ``httpx.MockTransport``."""

    def _transport(self, handler) -> OllamaTransport:
        client = AsyncClient(host=HOST, transport=httpx.MockTransport(handler))
        return OllamaTransport(HOST, client=client)

    async def test_ndjson_chat_stream(self) -> None:
        seen: list[dict] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(json.loads(request.content))
            body = _ndjson(
                {
                    "model": "m1",
                    "created_at": "2024-01-01T00:00:00Z",
                    "message": {"role": "assistant", "content": "Hi"},
                    "done": False,
                },
                {
                    "model": "m1",
                    "created_at": "2024-01-01T00:00:01Z",
                    "message": {"role": "assistant", "content": " there"},
                    "done": True,
                },
            )
            return httpx.Response(200, content=body)

        events = await _collect(self._transport(handler))
        self.assertEqual(
            [(e.kind, e.text) for e in events],
            [("fragment", "Hi"), ("fragment", " there"), ("complete", "Hi there")],
        )
        self.assertEqual(seen[0]["model"], "m1")
        self.assertTrue(seen[0]["stream"])
        self.assertEqual(seen[0]["messages"], [{"role": "user", "content": "Hello"}])

    async def test_malformed_line_is_a_parse_failure(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            good = _ndjson(
                {
                    "model": "m1",
                    "created_at": "2024-01-01T00:00:00Z",
                    "message": {"role": "assistant", "content": "Hi"},
                    "done": False,
                }
            )
            return httpx.Response(200, content=good + b"{not json\n")

        events = await _collect(self._transport(handler))
        self.assertEqual([e.kind for e in events], ["fragment", "failed"])
        self.assertIsInstance(events[-1].error, StreamParseError)

    async def test_http_error_status(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(404, json={"error": "model 'm1' not found"})

        events = await _collect(self._transport(handler))
        error = events[-1].error
        self.assertIsInstance(error, TransportHTTPError)
        self.assertEqual(error.status_code, 404)
        self.assertIn("not found", str(error))

    async def test_list_models_over_the_wire(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            self.assertEqual(request.url.path, "/api/tags")
            return httpx.Response(
                200,
                json={
                    "models": [
                        {"name": "qwen2.5:latest", "model": "qwen2.5:latest"},
                        {"name": "llama3.2:latest", "model": "llama3.2:latest"},
                    ]
                },
            )

        self.assertEqual(
            await self._transport(handler).list_models(),
            ["llama3.2:latest", "qwen2.5:latest"],
        )

    async def test_generate_title_over_the_wire(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            self.assertEqual(request.url.path, "/api/generate")
            payload = json.loads(request.content)
            self.assertFalse(payload["stream"])
            return httpx.Response(
                200,
                json={
                    "model": "phi3",
                    "created_at": "2024-01-01T00:00:00Z",
                    "response": '"Ocean Tides"',
                    "done": True,
                },
            )

        title = await self._transport(handler).generate_title("phi3", "q", "a")
        self.assertEqual(title, "Ocean Tides")


if __name__ == "__main__":
    unittest.main()
