# tests/conftest.py

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

import pytest
from fastapi.testclient import TestClient

from app.escrow.events import EventBus
from app.escrow.memory_store import InMemoryEscrowStore
from app.escrow.model import Identity
from app.escrow.service import EscrowService
from deps.services import get_service
from main import create_app
from security import create_access_token


@dataclass
class AuthedUser:
    email: str
    token: str
    user_id: str
    identity: Identity


# ---------------------------
# Fakes for the outside world
# ---------------------------

class RecordingStorage:
    def __init__(self):
        self.uploads: List[Tuple[str, bytes, str]] = []

    def upload(self, path: str, content: bytes, content_type: str) -> str:
        self.uploads.append((path, content, content_type))
        return f"https://files.test/storage/v1/object/public/proofs/{path}"


class RecordingMailer:
    def __init__(self):
        self.sent: List[Tuple[str, Dict[str, Any]]] = []

    def send(self, event_type: str, transaction: Dict[str, Any]) -> bool:
        self.sent.append((event_type, transaction))
        return True

    def events(self) -> List[str]:
        return [e for e, _ in self.sent]


class RecordingBus(EventBus):
    def __init__(self):
        super().__init__()
        self.events: List[Tuple[str, Dict[str, Any]]] = []
        self.subscribe("*", lambda topic, payload: self.events.append((topic, payload)))

    def topics(self) -> List[str]:
        return [t for t, _ in self.events]


class Clock:
    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime.now(timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


# ---------------------------
# Core fixtures
# ---------------------------

@pytest.fixture()
def store() -> InMemoryEscrowStore:
    return InMemoryEscrowStore()


@pytest.fixture()
def storage() -> RecordingStorage:
    return RecordingStorage()


@pytest.fixture()
def mailer() -> RecordingMailer:
    return RecordingMailer()


@pytest.fixture()
def bus() -> RecordingBus:
    return RecordingBus()


@pytest.fixture()
def clock() -> Clock:
    return Clock()


@pytest.fixture()
def service(store, storage, mailer, bus, clock) -> EscrowService:
    return EscrowService(store, storage=storage, mailer=mailer, bus=bus, clock=clock)


def make_user(prefix: str, roles=frozenset()) -> AuthedUser:
    user_id = str(uuid.uuid4())
    email = f"{prefix}_{user_id[:8]}@example.com"
    return AuthedUser(
        email=email,
        token=create_access_token(user_id, email),
        user_id=user_id,
        identity=Identity(user_id=user_id, email=email, roles=frozenset(roles)),
    )


@pytest.fixture()
def buyer() -> AuthedUser:
    return make_user("buyer")


@pytest.fixture()
def seller() -> AuthedUser:
    return make_user("seller")


@pytest.fixture()
def outsider() -> AuthedUser:
    return make_user("outsider")


@pytest.fixture()
def admin(store) -> AuthedUser:
    user = make_user("admin", roles={"admin"})
    store.grant_role(user.user_id, "admin")
    return user


# ---------------------------
# Client + Auth Helpers
# ---------------------------

@pytest.fixture()
def app(service):
    application = create_app()
    application.dependency_overrides[get_service] = lambda: service
    yield application
    application.dependency_overrides.clear()


@pytest.fixture()
def client(app) -> TestClient:
    # Needed so tests can assert 500s instead of pytest re-raising server exceptions
    return TestClient(app, raise_server_exceptions=False)


def auth(user: AuthedUser) -> Dict[str, str]:
    return {"Authorization": f"Bearer {user.token}"}


# ---------------------------
# Lifecycle shortcuts (service level)
# ---------------------------

def create_deal(service: EscrowService, buyer: AuthedUser, amount="5000", **kwargs):
    kwargs.setdefault("deal_title", "Used laptop")
    kwargs.setdefault("product_type", "physical_product")
    return service.create_transaction(buyer.identity, amount=amount, **kwargs)


def joined_deal(service: EscrowService, buyer: AuthedUser, seller: AuthedUser, amount="5000"):
    created = create_deal(service, buyer, amount=amount)
    return service.redeem_invite(seller.identity, created.invite.token)


def held_deal(service: EscrowService, buyer: AuthedUser, seller: AuthedUser, amount="5000"):
    tx = joined_deal(service, buyer, seller, amount=amount)
    return service.submit_payment(buyer.identity, tx.id, payment_reference="PSK-0001")
