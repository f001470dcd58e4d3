"""Shared pytest fixtures for the doubt service tests.

Provides:
- ``store``: ``InMemoryDoubtStore`` seeded with one user per role, a parent
  link and two Constitutional Law specialists
- ``channel``: ``RecordingChannel`` capturing every realtime publish
- ``services`` / ``manager``: a fully wired bundle around the fakes
- principal fixtures (``student``, ``educator``, ``admin`` …)
- ``make_token``: sign JWTs the authenticator accepts
"""

from __future__ import annotations

import os

# Use litellm's bundled model cost map; the remote fetch at import time (and
# its background retry thread) races inside litellm when offline.
os.environ.setdefault("LITELLM_LOCAL_MODEL_COST_MAP", "True")

import time
from typing import Any

import jwt
import pytest

from config.settings import Settings
from models.doubt import Doubt, DoubtType, EducatorSpecialization
from models.principal import Principal, UserRole
from models.request import DoubtCreateRequest
from services.ai_responder import AIAnswer
from services.container import build_services
from services.doubt_store import InMemoryDoubtStore
from services.realtime import RealtimeChannel

JWT_SECRET = "test-secret"
SUBJECT = "Constitutional Law"


class RecordingChannel(RealtimeChannel):
    """Captures publishes instead of delivering them."""

    def __init__(self) -> None:
        self.events: list[tuple[str, str, Any]] = []
        self.fail = False

    async def publish(self, room: str, event: str, payload: Any) -> None:
        if self.fail:
            raise ConnectionError("realtime down")
        self.events.append((room, event, payload))

    def to_room(self, room: str) -> list[tuple[str, Any]]:
        return [(event, payload) for r, event, payload in self.events if r == room]

    def named(self, event: str) -> list[tuple[str, Any]]:
        return [(room, payload) for room, e, payload in self.events if e == event]


class FakeAI:
    """Stands in for ``AIResponseGenerator``; ``answer=None`` simulates failure."""

    model = "anthropic/claude-test"

    def __init__(self, answer: AIAnswer | None = None) -> None:
        self.answer = answer
        self.calls: list[str] = []

    async def generate(self, doubt: Doubt) -> AIAnswer | None:
        self.calls.append(doubt.id)
        return self.answer


@pytest.fixture
def store() -> InMemoryDoubtStore:
    s = InMemoryDoubtStore()
    s.add_user("stu-1", "student", name="Asha")
    s.add_user("stu-2", "student", name="Kabir")
    s.add_user("par-1", "parent", name="Meera")
    s.add_user("par-2", "parent", name="Vikram")
    s.add_user("edu-1", "educator", name="Ravi")
    s.add_user("edu-2", "educator", name="Nisha")
    s.add_user("adm-1", "admin", name="Admin")
    s.add_user("ops-1", "operation_manager", name="Ops")
    s.link_parent("par-1", "stu-1")
    s.add_specialization(
        EducatorSpecialization(
            educator_id="edu-1", subject=SUBJECT, proficiency_level=5, years_of_experience=8
        )
    )
    s.add_specialization(
        EducatorSpecialization(
            educator_id="edu-2", subject=SUBJECT, proficiency_level=3, years_of_experience=2
        )
    )
    return s


@pytest.fixture
def channel() -> RecordingChannel:
    return RecordingChannel()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        jwt_secret=JWT_SECRET,
        ai_model="",
        auto_assign_timeout=1.0,
    )


@pytest.fixture
def fake_ai() -> FakeAI:
    return FakeAI(
        AIAnswer(
            content="Article 14 guarantees equality before the law.",
            model=FakeAI.model,
            confidence=0.85,
        )
    )


@pytest.fixture
def services(settings, store, channel, fake_ai):
    return build_services(settings, store=store, channel=channel, ai=fake_ai)


@pytest.fixture
def manager(services):
    return services.manager


# ── Principals ───────────────────────────────────────────────


@pytest.fixture
def student() -> Principal:
    return Principal(id="stu-1", role=UserRole.STUDENT, name="Asha")


@pytest.fixture
def other_student() -> Principal:
    return Principal(id="stu-2", role=UserRole.STUDENT, name="Kabir")


@pytest.fixture
def parent() -> Principal:
    return Principal(id="par-1", role=UserRole.PARENT, name="Meera")


@pytest.fixture
def unlinked_parent() -> Principal:
    return Principal(id="par-2", role=UserRole.PARENT, name="Vikram")


@pytest.fixture
def educator() -> Principal:
    return Principal(id="edu-1", role=UserRole.EDUCATOR, name="Ravi")


@pytest.fixture
def other_educator() -> Principal:
    return Principal(id="edu-2", role=UserRole.EDUCATOR, name="Nisha")


@pytest.fixture
def admin() -> Principal:
    return Principal(id="adm-1", role=UserRole.ADMIN, name="Admin")


@pytest.fixture
def ops_manager() -> Principal:
    return Principal(id="ops-1", role=UserRole.OPERATION_MANAGER, name="Ops")


# ── Factories ────────────────────────────────────────────────


@pytest.fixture
def create_request():
    def _make(**overrides: Any) -> DoubtCreateRequest:
        data = {
            "title": "Article 14 scope",
            "description": "How does Article 14 apply to private bodies?",
            "subject": SUBJECT,
            "type": DoubtType.CONCEPT,
        }
        data.update(overrides)
        return DoubtCreateRequest(**data)

    return _make


@pytest.fixture
def make_token():
    def _make(user_id: str, *, expires_in: int = 3600, secret: str = JWT_SECRET, **claims: Any) -> str:
        payload = {"id": user_id, "exp": int(time.time()) + expires_in, **claims}
        return jwt.encode(payload, secret, algorithm="HS256")

    return _make
