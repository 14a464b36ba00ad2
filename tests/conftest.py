import pathlib
import sys
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import jwt
import pytest
from fastapi import FastAPI, Request
from fastapi.testclient import TestClient

sys.path.append(str(pathlib.Path(__file__).resolve().parents[1]))
from app.app_logging import init_logging
from app.conversations import schemas
from app.conversations.attachments import LocalBlobStorage
from app.conversations.models import CallerContext
from app.conversations.repository import InMemoryUserDirectory
from app.conversations.service import ConversationService
from app.routers import conversations as conversations_router
from app.security.auth import get_shadow_ban_gate
from app.security.shadow_ban import InMemoryShadowBanGate

TOKEN_SECRET = "portal-secret-key"
TOKEN_AUDIENCE = "governor-portal"
TOKEN_ISSUER = "auth.governor-portal"

START = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)


class TickingClock:
    """Deterministic clock advancing one second on every read."""

    def __init__(self, start: datetime = START, step: timedelta = timedelta(seconds=1)):
        self.current = start
        self.step = step

    def __call__(self) -> datetime:
        value = self.current
        self.current = self.current + self.step
        return value


GOVERNOR = CallerContext("gov-1", "Grace Governor", "governor", "grace@portal.example")
SECOND_GOVERNOR = CallerContext("gov-2", "Gil Governor", "governor")
ADMIN = CallerContext("admin-1", "Ada Admin", "admin", "ada@portal.example")
OTHER_ADMIN = CallerContext("admin-2", "Otto Admin", "admin")
AFFILIATE = CallerContext("aff-1", "Alex Affiliate", "affiliate", "alex@portal.example")
OTHER_AFFILIATE = CallerContext("aff-2", "Bo Affiliate", "affiliate")


def participant_in(caller: CallerContext) -> schemas.ParticipantIn:
    return schemas.ParticipantIn(
        id=caller.user_id, name=caller.display_name, role=caller.role, email=caller.email
    )


@pytest.fixture
def clock() -> TickingClock:
    return TickingClock()


@pytest.fixture
def directory() -> InMemoryUserDirectory:
    return InMemoryUserDirectory(
        [
            schemas.Recipient(id=c.user_id, name=c.display_name, role=c.role, email=c.email)
            for c in (GOVERNOR, SECOND_GOVERNOR, ADMIN, OTHER_ADMIN, AFFILIATE, OTHER_AFFILIATE)
        ]
    )


@pytest.fixture
def service(clock, directory, tmp_path) -> ConversationService:
    svc = ConversationService.in_memory(
        clock=clock,
        directory=directory,
        blob_storage=LocalBlobStorage(tmp_path / "uploads"),
    )
    yield svc
    svc.close()


@pytest.fixture
def conversation(service) -> schemas.ConversationMetadata:
    """An active admin/affiliate conversation started by ``ADMIN``."""

    return service.create_conversation(
        ADMIN,
        schemas.ConversationCreateRequest(
            type="admin_affiliate",
            title="Commission payout",
            participants=[participant_in(AFFILIATE)],
            department="finance",
        ),
    )


@pytest.fixture
def token_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Set required environment variables for portal token decoding."""

    monkeypatch.setenv("PORTAL_TOKEN_SECRET", TOKEN_SECRET)
    monkeypatch.setenv("PORTAL_TOKEN_AUDIENCE", TOKEN_AUDIENCE)
    monkeypatch.setenv("PORTAL_TOKEN_ISSUER", TOKEN_ISSUER)
    monkeypatch.setenv("PORTAL_TOKEN_ALGORITHM", "HS256")


def issue_token(caller: CallerContext | None = None, **claims: object) -> str:
    """Generate a signed portal access token for ``caller``."""

    payload: dict[str, object] = {
        "aud": TOKEN_AUDIENCE,
        "iss": TOKEN_ISSUER,
        "exp": datetime.now(timezone.utc) + timedelta(minutes=5),
        "type": "access",
    }
    if caller is not None:
        payload.update(user_id=caller.user_id, name=caller.display_name, role=caller.role)
        if caller.email:
            payload["email"] = caller.email
    payload.update(claims)
    return jwt.encode(payload, TOKEN_SECRET, algorithm="HS256")


@dataclass
class ApiContext:
    client: TestClient
    service: ConversationService
    bans: InMemoryShadowBanGate

    def headers(self, caller: CallerContext) -> dict[str, str]:
        return {"Authorization": f"Bearer {issue_token(caller)}"}


@pytest.fixture
def api(token_env, service) -> ApiContext:
    """A FastAPI app exposing the conversation routes over a fresh service."""

    app = FastAPI()
    app.include_router(conversations_router.router)
    bans = InMemoryShadowBanGate()
    app.dependency_overrides[conversations_router.get_service] = lambda: service
    app.dependency_overrides[get_shadow_ban_gate] = lambda: bans
    with TestClient(app) as client:
        yield ApiContext(client=client, service=service, bans=bans)


@pytest.fixture
def app_factory(monkeypatch):
    def _create_app(log_dir: str, log_request_bodies: bool = False):
        """Create a FastAPI app with logging initialised."""
        monkeypatch.setenv("LOG_DIR", str(log_dir))
        if log_request_bodies:
            monkeypatch.setenv("LOG_REQUEST_BODIES", "true")
        app = FastAPI()

        @app.post("/echo")
        async def echo(request: Request):
            return await request.json()

        init_logging(app)
        return app

    return _create_app
