"""
Shared fixtures: an in-process fake case service and a wired client.
"""

import asyncio
import time
from typing import Any, Dict, List, Optional, Set, Tuple

import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer
from jose import jwt

from caseflow.config import ClientConfiguration
from caseflow.context import CaseFlowClient
from caseflow.models import Case
from caseflow.storage import MemoryKeyValueStore

TEST_SECRET = "test-secret"


def make_token(expires_in: int = 3600, role: str = "field_agent", **claims) -> str:
    """Signed token with the usual claims; the client never checks the signature."""
    now = int(time.time())
    payload = {
        "sub": "user-1",
        "iat": now,
        "exp": now + expires_in,
        "aud": "caseflow-mobile",
        "iss": "caseflow",
        "role": role,
    }
    payload.update(claims)
    return jwt.encode(payload, TEST_SECRET, algorithm="HS256")


def envelope(data: Any = None, **extra) -> Dict[str, Any]:
    body = {"success": True, "data": data}
    body.update(extra)
    return body


def error_envelope(code: str, message: str) -> Dict[str, Any]:
    return {"success": False, "error": {"code": code, "message": message}}


class FakeBackend:
    """
    Minimal case service.

    Records every call, authenticates /cases routes against the tokens it
    issued, and can be scripted to answer with specific statuses or delays.
    """

    def __init__(self):
        self.users = {"agent01": "s3cret"}
        self.cases: Dict[str, Dict[str, Any]] = {}
        self.calls: List[Tuple[str, str]] = []
        self.valid_tokens: Set[str] = set()
        self.refresh_tokens: Set[str] = set()
        self.refresh_calls = 0
        self.refresh_enabled = True
        self.rotate_refresh_token = False
        self.logout_status = 200
        self.profile_status = 200
        self.delays: Dict[Tuple[str, str], float] = {}
        self.scripted: Dict[Tuple[str, str], List[int]] = {}
        self.always_fail: Dict[Tuple[str, str], int] = {}
        self.uploads: List[Dict[str, Any]] = []
        self.last_headers: Dict[Tuple[str, str], Dict[str, str]] = {}
        self._issued = 0
        self.last_login: Optional[Dict[str, Any]] = None

    def issue_access_token(self, expires_in: int = 3600) -> str:
        self._issued += 1
        token = make_token(expires_in=expires_in, jti=f"a{self._issued}")
        self.valid_tokens.add(token)
        return token

    def issue_refresh_token(self) -> str:
        self._issued += 1
        token = make_token(expires_in=30 * 24 * 3600, jti=f"r{self._issued}", typ="refresh")
        self.refresh_tokens.add(token)
        return token

    def count(self, method: str, path: str) -> int:
        return sum(1 for call in self.calls if call == (method, path))

    def add_case(self, case_id: str, **fields) -> Dict[str, Any]:
        record = {
            "id": case_id,
            "title": f"Case {case_id}",
            "status": "Assigned",
            "isSaved": False,
            "verificationOutcome": None,
            "createdAt": "2024-01-01T00:00:00.000Z",
            "updatedAt": "2024-01-01T00:00:00.000Z",
        }
        record.update(fields)
        self.cases[case_id] = record
        return record

    @web.middleware
    async def middleware(self, request: web.Request, handler):
        path = request.path[len("/api"):] if request.path.startswith("/api") else request.path
        key = (request.method, path)
        self.calls.append(key)
        self.last_headers[key] = dict(request.headers)

        delay = self.delays.get(key)
        if delay:
            await asyncio.sleep(delay)

        queued = self.scripted.get(key)
        if queued:
            status = queued.pop(0)
            return web.json_response(error_envelope(f"HTTP_{status}", "Scripted failure"), status=status)

        if key in self.always_fail:
            status = self.always_fail[key]
            return web.json_response(error_envelope("SERVER_ERROR", "Internal server error"), status=status)

        if path.startswith("/cases"):
            auth = request.headers.get("Authorization", "")
            token = auth[len("Bearer "):] if auth.startswith("Bearer ") else None
            if token not in self.valid_tokens:
                return web.json_response(error_envelope("UNAUTHORIZED", "Invalid or expired token"), status=401)

        return await handler(request)

    def _tokens_payload(self) -> Dict[str, Any]:
        return {
            "accessToken": self.issue_access_token(),
            "refreshToken": self.issue_refresh_token(),
            "expiresIn": 3600,
        }

    async def login(self, request: web.Request):
        body = await request.json()
        if self.users.get(body.get("username")) != body.get("password"):
            return web.json_response(error_envelope("INVALID_CREDENTIALS", "Invalid username or password"), status=401)
        self.last_login = body
        return web.json_response(envelope({
            "user": {"id": "user-1", "name": "Field Agent", "username": body["username"], "employeeId": "EMP001"},
            "tokens": self._tokens_payload(),
        }))

    async def refresh(self, request: web.Request):
        self.refresh_calls += 1
        body = await request.json()
        if not self.refresh_enabled or body.get("refreshToken") not in self.refresh_tokens:
            return web.json_response(error_envelope("INVALID_REFRESH_TOKEN", "Refresh token rejected"), status=401)
        data = {"accessToken": self.issue_access_token(), "expiresIn": 3600}
        if self.rotate_refresh_token:
            data["refreshToken"] = self.issue_refresh_token()
        return web.json_response(envelope(data))

    async def logout(self, request: web.Request):
        if self.logout_status != 200:
            return web.json_response(error_envelope("SERVER_ERROR", "Logout failed"), status=self.logout_status)
        return web.json_response(envelope())

    async def profile(self, request: web.Request):
        if self.profile_status != 200:
            return web.json_response(error_envelope("SERVER_ERROR", "Profile update failed"), status=self.profile_status)
        changes = await request.json()
        user = {"id": "user-1", "name": "Field Agent", "username": "agent01"}
        user.update(changes)
        return web.json_response(envelope({"user": user}))

    async def list_cases(self, request: web.Request):
        page = int(request.query.get("page", "1"))
        limit = int(request.query.get("limit", "20"))
        records = list(self.cases.values())
        start = (page - 1) * limit
        chunk = records[start:start + limit]
        return web.json_response(envelope(chunk, pagination={
            "page": page,
            "limit": limit,
            "total": len(records),
            "totalPages": (len(records) + limit - 1) // limit,
        }))

    async def get_case(self, request: web.Request):
        record = self.cases.get(request.match_info["case_id"])
        if record is None:
            return web.json_response(error_envelope("NOT_FOUND", "Case not found"), status=404)
        return web.json_response(envelope(record))

    async def create_case(self, request: web.Request):
        body = await request.json()
        self.cases[body["id"]] = body
        return web.json_response(envelope(body), status=201)

    async def update_case(self, request: web.Request):
        case_id = request.match_info["case_id"]
        record = self.cases.get(case_id)
        if record is None:
            return web.json_response(error_envelope("NOT_FOUND", "Case not found"), status=404)
        record.update(await request.json())
        record["updatedAt"] = "2030-01-01T00:00:00.000Z"
        return web.json_response(envelope(record))

    async def delete_case(self, request: web.Request):
        self.cases.pop(request.match_info["case_id"], None)
        return web.json_response(envelope())

    async def submit_case(self, request: web.Request):
        case_id = request.match_info["case_id"]
        body = await request.json()
        record = self.cases.setdefault(case_id, body)
        record["status"] = "submitted"
        return web.json_response(envelope({"caseId": case_id}))

    async def upload(self, request: web.Request):
        reader = await request.multipart()
        parts = {}
        async for part in reader:
            parts[part.name] = {
                "filename": part.filename,
                "content": await part.read(),
            }
        self.uploads.append({"content_type": request.headers.get("Content-Type", ""), "parts": parts})
        return web.json_response(envelope({"attachmentId": "att-1"}), status=201)

    async def download(self, request: web.Request):
        return web.Response(body=b"%PDF-1.4 fake", content_type="application/pdf")

    def make_app(self) -> web.Application:
        app = web.Application(middlewares=[self.middleware])
        app.router.add_post("/api/auth/login", self.login)
        app.router.add_post("/api/auth/refresh", self.refresh)
        app.router.add_post("/api/auth/logout", self.logout)
        app.router.add_put("/api/auth/profile", self.profile)
        app.router.add_get("/api/cases", self.list_cases)
        app.router.add_post("/api/cases", self.create_case)
        app.router.add_get("/api/cases/{case_id}", self.get_case)
        app.router.add_put("/api/cases/{case_id}", self.update_case)
        app.router.add_delete("/api/cases/{case_id}", self.delete_case)
        app.router.add_post("/api/cases/{case_id}/submit", self.submit_case)
        app.router.add_post("/api/cases/{case_id}/attachments", self.upload)
        app.router.add_get("/api/files/{name}", self.download)
        return app


@pytest.fixture
def backend():
    return FakeBackend()


@pytest_asyncio.fixture
async def server(backend):
    test_server = TestServer(backend.make_app())
    await test_server.start_server()
    yield test_server
    await test_server.close()


@pytest.fixture
def config(tmp_path):
    """Configuration that never touches the user's home directory."""
    config = ClientConfiguration(str(tmp_path / "client.conf"))
    config.set_override("server.retry_delay", 0.0)
    config.set_override("server.timeout", 5.0)
    config.set_override("storage.encrypt", False)
    config.set_override("storage.data_dir", str(tmp_path / "data"))
    return config


@pytest.fixture
def store():
    return MemoryKeyValueStore()


@pytest_asyncio.fixture
async def client(server, config, store):
    config.set_override("server.url", str(server.make_url("/api")))
    caseflow_client = CaseFlowClient(config, store=store)
    yield caseflow_client
    await caseflow_client.close()


@pytest_asyncio.fixture
async def logged_in_client(client):
    result = await client.login("agent01", "s3cret")
    assert result.success
    return client


def seed(client: CaseFlowClient, *records: Dict[str, Any]) -> None:
    """Put cases straight into the local cache."""
    client.case_store.write_all([Case.from_dict(record) for record in records])
