"""Shared fixtures: local HTTP stand-ins for the WLED device and Firestore."""

import asyncio
import json
from typing import Any, Optional

import pytest_asyncio
from aiohttp import web

from lumina_bridge.config import FirestoreConfig
from lumina_bridge.typed_values import encode

DOCUMENT_ROOT = "projects/demo/databases/(default)/documents/users/u1/commands"


class FakeWled:
    """Answers the subset of the WLED JSON API the bridge uses."""

    def __init__(self, port: int) -> None:
        self.port = port
        self.requests: list[tuple[str, str, Any]] = []
        self.state: dict[str, Any] = {"on": True, "bri": 128}
        self.info: dict[str, Any] = {"ver": "0.14.4", "name": "WLED"}
        self.fail_status: Optional[int] = None
        self.delay = 0.0
        self.raw_body: Optional[bytes] = None

    @property
    def target(self) -> str:
        return f"127.0.0.1:{self.port}"

    async def handle(self, request: web.Request) -> web.Response:
        text = await request.text()
        body = json.loads(text) if text else None
        self.requests.append((request.method, request.path, body))

        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_status is not None:
            return web.Response(status=self.fail_status, text="device error")
        if self.raw_body is not None:
            return web.Response(body=self.raw_body, content_type="application/octet-stream")

        if request.path == "/json/state":
            if request.method == "POST":
                self.state.update(body or {})
                return web.json_response({"success": True})
            return web.json_response(self.state)
        if request.path == "/json/info":
            return web.json_response(self.info)
        if request.path == "/json/cfg" and request.method == "POST":
            return web.json_response({"success": True})
        return web.Response(status=404)


class FakeFirestore:
    """Firebase Auth plus the two Firestore REST calls the bridge makes."""

    def __init__(self, port: int) -> None:
        self.port = port
        self.documents: dict[str, dict[str, Any]] = {}
        self.queries: list[dict[str, Any]] = []
        self.patches: list[tuple[str, list[str], dict[str, Any]]] = []
        self.auth_calls: list[tuple[str, Optional[str]]] = []
        self.authorizations: list[Optional[str]] = []
        self.sign_ins = 0
        self.refreshes = 0
        self.expires_in = "3600"
        self.auth_status = 200
        self.auth_body: Optional[str] = None
        self.refresh_status = 200
        self.query_status = 200
        self.patch_status = 200
        self.query_error: Optional[dict[str, Any]] = None
        self.reject_token = False

    @property
    def base_url(self) -> str:
        return f"http://127.0.0.1:{self.port}"

    def config(self, **overrides: Any) -> FirestoreConfig:
        values: dict[str, Any] = dict(
            project_id="demo",
            api_key="key-123",
            user_uid="u1",
            base_url=f"{self.base_url}/v1",
            auth_url=f"{self.base_url}/auth",
            token_url=f"{self.base_url}/token",
            request_timeout_seconds=2.0,
        )
        values.update(overrides)
        return FirestoreConfig(**values)

    def add_command(
        self,
        command_id: str,
        *,
        intent: str = "getState",
        controller_ip: str = "",
        payload: Optional[dict[str, Any]] = None,
        status: str = "pending",
        created_at: str = "2024-05-01T10:00:00Z",
    ) -> str:
        name = f"{DOCUMENT_ROOT}/{command_id}"
        fields: dict[str, Any] = {
            "type": {"stringValue": intent},
            "controllerIp": {"stringValue": controller_ip},
            "status": {"stringValue": status},
            "createdAt": {"timestampValue": created_at},
        }
        if payload is not None:
            fields["payload"] = encode(payload)
        self.documents[name] = fields
        return name

    def status_of(self, command_id: str) -> Optional[str]:
        fields = self.documents.get(f"{DOCUMENT_ROOT}/{command_id}", {})
        return fields.get("status", {}).get("stringValue")

    async def handle(self, request: web.Request) -> web.Response:
        path = request.path

        if path.startswith("/auth/accounts:"):
            self.sign_ins += 1
            self.auth_calls.append((path.rsplit("/", 1)[-1], request.query.get("key")))
            if self.auth_status != 200:
                return web.Response(status=self.auth_status, text="INVALID_LOGIN")
            if self.auth_body is not None:
                return web.Response(text=self.auth_body, content_type="application/json")
            return web.json_response(
                {
                    "idToken": f"id-token-{self.sign_ins}",
                    "refreshToken": "refresh-token",
                    "localId": "u1",
                    "expiresIn": self.expires_in,
                }
            )

        if path == "/token/token":
            self.refreshes += 1
            form = await request.post()
            self.auth_calls.append(("token", form.get("grant_type")))
            if self.refresh_status != 200:
                return web.Response(status=self.refresh_status, text="TOKEN_EXPIRED")
            return web.json_response(
                {
                    "id_token": f"refreshed-token-{self.refreshes}",
                    "refresh_token": "refresh-token",
                    "user_id": "u1",
                    "expires_in": self.expires_in,
                }
            )

        self.authorizations.append(request.headers.get("Authorization"))
        if self.reject_token:
            return web.Response(status=401, text="UNAUTHENTICATED")

        if path.endswith(":runQuery"):
            body = await request.json()
            self.queries.append(body)
            if self.query_status != 200:
                return web.Response(status=self.query_status, text="query failed")
            if self.query_error is not None:
                return web.json_response([{"error": self.query_error}])
            limit = body["structuredQuery"].get("limit", 100)
            pending = sorted(
                (
                    (name, fields)
                    for name, fields in self.documents.items()
                    if fields.get("status", {}).get("stringValue") == "pending"
                ),
                key=lambda item: item[1]["createdAt"]["timestampValue"],
            )
            rows = [
                {"document": {"name": name, "fields": fields}, "readTime": "2024-05-01T10:00:05Z"}
                for name, fields in pending[:limit]
            ]
            return web.json_response(rows or [{"readTime": "2024-05-01T10:00:05Z"}])

        if request.method == "PATCH" and path.startswith("/v1/"):
            name = path[len("/v1/"):]
            mask = request.query.getall("updateMask.fieldPaths", [])
            body = await request.json()
            self.patches.append((name, list(mask), body["fields"]))
            if self.patch_status != 200:
                return web.Response(status=self.patch_status, text="patch failed")
            document = self.documents.setdefault(name, {})
            for key in mask:
                if key in body["fields"]:
                    document[key] = body["fields"][key]
            return web.json_response({"name": name, "fields": document})

        return web.Response(status=404)


async def _serve(handler, port: int) -> web.AppRunner:
    app = web.Application()
    app.router.add_route("*", "/{tail:.*}", handler)
    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, "127.0.0.1", port)
    await site.start()
    return runner


@pytest_asyncio.fixture
async def wled_server(unused_tcp_port_factory):
    fake = FakeWled(unused_tcp_port_factory())
    runner = await _serve(fake.handle, fake.port)
    try:
        yield fake
    finally:
        await runner.cleanup()


@pytest_asyncio.fixture
async def firestore_server(unused_tcp_port_factory):
    fake = FakeFirestore(unused_tcp_port_factory())
    runner = await _serve(fake.handle, fake.port)
    try:
        yield fake
    finally:
        await runner.cleanup()
