from __future__ import annotations

import asyncio
import json

from aiohttp import web
from aiohttp.test_utils import AioHTTPTestCase

from octools.engine.client import OctoolsClient
from octools.engine.config import ClientConfig
from octools.engine.errors import AuthError, RequestError
from octools.engine.models import ModelDescriptor
from octools.engine.rest import RestClient

PASSWORD = "secret"

PROVIDERS = {
    "connected": ["anthropic"],
    "all": [
        {
            "id": "anthropic",
            "models": {
                "sonnet": {"id": "claude-sonnet", "name": "Sonnet"},
                "haiku": {"id": "claude-haiku", "name": "Haiku"},
            },
        },
        {
            "id": "openai",
            "models": {"gpt": {"id": "gpt-large", "name": "GPT"}},
        },
    ],
}


class _FakeService:
    """Just enough of the remote session service for client tests."""

    def __init__(self) -> None:
        self.requests: list[tuple[str, str, dict | None]] = []
        self.frames: list[dict] = []
        self.hold_stream = False
        self.release_stream = asyncio.Event()
        self.expected_auth = ClientConfig(password=PASSWORD).auth_header["Authorization"]

    @web.middleware
    async def auth(self, request: web.Request, handler):
        if request.headers.get("Authorization") != self.expected_auth:
            return web.Response(status=401, reason="Unauthorized", text="no")
        body = await request.json() if request.can_read_body else None
        self.requests.append((request.method, request.path_qs, body))
        return await handler(request)

    def app(self) -> web.Application:
        app = web.Application(middlewares=[self.auth])
        app.router.add_post("/session", self.create_session)
        app.router.add_get("/session", self.list_sessions)
        app.router.add_get("/session/broken", self.broken)
        app.router.add_patch("/session/{id}", self.echo)
        app.router.add_get("/session/{id}/message", self.messages)
        app.router.add_post("/session/{id}/message", self.echo)
        app.router.add_post("/session/{id}/abort", self.ok)
        app.router.add_post("/permission/{id}/reply", self.ok)
        app.router.add_post("/question/{id}/reply", self.ok)
        app.router.add_get("/agent", self.provider_auth_failure)
        app.router.add_get("/config", self.bad_json)
        app.router.add_get("/provider", self.providers)
        app.router.add_get("/event", self.events)
        return app

    async def create_session(self, request: web.Request) -> web.Response:
        body = await request.json()
        return web.json_response({"id": "ses_1", "title": body.get("title"), **body})

    async def list_sessions(self, request: web.Request) -> web.Response:
        return web.json_response([{"id": "ses_1"}, {"id": "ses_2"}])

    async def broken(self, request: web.Request) -> web.Response:
        return web.Response(status=500, reason="Internal Server Error", text="kaboom")

    async def echo(self, request: web.Request) -> web.Response:
        return web.json_response(await request.json())

    async def messages(self, request: web.Request) -> web.Response:
        return web.json_response([
            {"info": {"id": "m1", "role": "user"}, "parts": []},
            {"info": {"id": "m2", "role": "assistant"}, "parts": []},
        ])

    async def ok(self, request: web.Request) -> web.Response:
        return web.Response(text="true")

    async def provider_auth_failure(self, request: web.Request) -> web.Response:
        return web.json_response(
            {"error": {"name": "ProviderAuthError", "message": "bad provider key"}},
            status=400,
        )

    async def bad_json(self, request: web.Request) -> web.Response:
        return web.Response(text="<html>", content_type="text/html")

    async def providers(self, request: web.Request) -> web.Response:
        return web.json_response(PROVIDERS)

    async def events(self, request: web.Request) -> web.StreamResponse:
        resp = web.StreamResponse(headers={"Content-Type": "text/event-stream"})
        await resp.prepare(request)
        await resp.write(b": hello\n\n")
        for frame in self.frames:
            await resp.write(f"data: {json.dumps(frame)}\n\n".encode("utf-8"))
        if self.hold_stream:
            await self.release_stream.wait()
        await resp.write(b"data: {broken\n\n")
        return resp


class TestRestClient(AioHTTPTestCase):
    async def get_application(self):
        self.service = _FakeService()
        return self.service.app()

    def _config(self, password: str | None = PASSWORD) -> ClientConfig:
        return ClientConfig(base_url=str(self.server.make_url("/")), password=password)

    async def asyncSetUp(self):
        await super().asyncSetUp()
        self.rest = RestClient(self._config())

    async def asyncTearDown(self):
        await self.rest.close()
        await super().asyncTearDown()

    async def test_create_session_sends_models(self):
        data = await self.rest.create_session(
            title="demo",
            model=ModelDescriptor("anthropic", "claude-sonnet"),
            secondary_model={"providerID": "openai", "modelID": "gpt-large"},
        )
        assert data["id"] == "ses_1"
        method, path, body = self.service.requests[-1]
        assert (method, path) == ("POST", "/session")
        assert body == {
            "title": "demo",
            "model": {"providerID": "anthropic", "modelID": "claude-sonnet"},
            "secondaryModel": {"providerID": "openai", "modelID": "gpt-large"},
        }

    async def test_send_message_body(self):
        await self.rest.send_message(
            "ses_1", "hello", agent="build", system="be brief",
            model=ModelDescriptor("anthropic", "claude-sonnet"),
        )
        _, path, body = self.service.requests[-1]
        assert path == "/session/ses_1/message"
        assert body == {
            "parts": [{"type": "text", "text": "hello"}],
            "agent": "build",
            "model": {"providerID": "anthropic", "modelID": "claude-sonnet"},
            "system": "be brief",
        }

    async def test_optional_send_fields_are_omitted(self):
        await self.rest.send_message("ses_1", "hello")
        _, _, body = self.service.requests[-1]
        assert body == {"parts": [{"type": "text", "text": "hello"}]}

    async def test_list_and_message_queries(self):
        sessions = await self.rest.list_sessions(limit=5, search="fix")
        assert [s["id"] for s in sessions] == ["ses_1", "ses_2"]
        assert self.service.requests[-1][1] == "/session?limit=5&search=fix"

        messages = await self.rest.get_messages("ses_1", limit=5)
        assert len(messages) == 2
        assert self.service.requests[-1][1] == "/session/ses_1/message?limit=5"

    async def test_update_abort_and_replies(self):
        updated = await self.rest.update_session("ses_1", title="renamed")
        assert updated == {"title": "renamed"}
        assert await self.rest.abort_session("ses_1") is None
        await self.rest.reply_to_permission("perm_1", approved=False)
        assert self.service.requests[-1] == (
            "POST", "/permission/perm_1/reply", {"reply": "deny"},
        )
        await self.rest.reply_to_question("q_1", [["yes"]])
        assert self.service.requests[-1] == (
            "POST", "/question/q_1/reply", {"answers": [["yes"]]},
        )

    async def test_connected_models_sorted_by_name(self):
        models = await self.rest.list_connected_models()
        assert models == [
            {"providerID": "anthropic", "modelID": "claude-haiku", "name": "Haiku"},
            {"providerID": "anthropic", "modelID": "claude-sonnet", "name": "Sonnet"},
        ]

    async def test_unauthorized_maps_to_auth_error(self):
        rest = RestClient(self._config(password="wrong"))
        try:
            with self.assertRaises(AuthError) as ctx:
                await rest.list_sessions()
        finally:
            await rest.close()
        assert ctx.exception.status == 401
        assert str(ctx.exception) == "Authentication failed: Unauthorized"

    async def test_auth_error_name_in_body_maps_to_auth_error(self):
        with self.assertRaises(AuthError) as ctx:
            await self.rest.get_agents()
        assert str(ctx.exception) == "bad provider key"
        assert ctx.exception.details["name"] == "ProviderAuthError"

    async def test_other_failures_carry_status_text(self):
        with self.assertRaises(RequestError) as ctx:
            await self.rest.load_session("broken")
        assert not isinstance(ctx.exception, AuthError)
        assert ctx.exception.status == 500
        assert str(ctx.exception) == "Failed to load session: Internal Server Error - kaboom"

    async def test_invalid_json_is_a_request_error(self):
        with self.assertRaises(RequestError) as ctx:
            await self.rest.get_config()
        assert "Invalid JSON response" in str(ctx.exception)

    async def test_transport_failure_is_a_request_error(self):
        rest = RestClient(ClientConfig(base_url="http://127.0.0.1:1", password=PASSWORD))
        try:
            with self.assertRaises(RequestError) as ctx:
                await rest.get_agents()
        finally:
            await rest.close()
        assert ctx.exception.status is None


class TestEventStream(AioHTTPTestCase):
    async def get_application(self):
        self.service = _FakeService()
        self.service.frames = [
            {"type": "server.connected", "properties": {}},
            {"type": "session.status", "properties": {"sessionID": "s1", "status": {"type": "idle"}}},
            {
                "directory": "/repo",
                "payload": {
                    "type": "message.part.updated",
                    "properties": {
                        "part": {"id": "p1", "messageID": "m1", "sessionID": "s1", "type": "text"},
                        "delta": "Hi",
                    },
                },
            },
        ]
        return self.service.app()

    async def test_stream_frames_reach_signals(self):
        client = OctoolsClient(ClientConfig(
            base_url=str(self.server.make_url("/")), password=PASSWORD,
        ))
        signals: list = []
        closed = asyncio.Event()
        client.on("*", signals.append)
        client.on("disconnected", lambda signal: closed.set())
        try:
            await client.connect()
            assert client.is_connected()
            await asyncio.wait_for(closed.wait(), timeout=5)
        finally:
            await client.close()

        names = [s.event_type for s in signals if s.event_type != "raw.event"]
        assert names == ["connected", "session.status", "message.delta", "disconnected"]
        # The malformed trailing frame is dropped and never logged.
        assert len(client.raw_events) == 3
        assert not client.is_connected()
        assert [e.payload["type"] for e in client.get_raw_events("s1")] == [
            "session.status", "message.part.updated",
        ]

    async def test_rejected_stream_raises_auth_error(self):
        client = OctoolsClient(ClientConfig(
            base_url=str(self.server.make_url("/")), password="wrong",
        ))
        errors: list = []
        client.on("error", errors.append)
        try:
            with self.assertRaises(AuthError):
                await client.connect()
        finally:
            await client.close()
        assert not client.is_connected()
        assert len(errors) == 1

    async def test_overlapping_connects_open_one_stream(self):
        self.service.hold_stream = True
        client = OctoolsClient(ClientConfig(
            base_url=str(self.server.make_url("/")), password=PASSWORD,
        ))
        connected: list = []
        client.on("connected", connected.append)
        try:
            await asyncio.gather(client.connect(), client.connect())
            assert client.is_connected()
        finally:
            self.service.release_stream.set()
            await client.close()

        streams = [r for r in self.service.requests if r[1] == "/event"]
        assert len(streams) == 1
        assert len(connected) == 1
