from datetime import UTC, datetime
from typing import Any

import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from dose_reminders.infrastructure.audit.audit_recorder import AuditRecorder
from dose_reminders.models.domain.reminder_domain import DeliveryResult
from dose_reminders.repositories.recipient_repository import RecipientRepository
from dose_reminders.services.dispatch_service import DispatchCoordinator
from dose_reminders.services.eligibility_service import EligibilityResolver
from dose_reminders.services.scheduling.temporal_calculator import TemporalCalculator

# Tuesday 2024-03-05, 09:30 in Asia/Kolkata
TUESDAY_MORNING_UTC = datetime(2024, 3, 5, 4, 0, tzinfo=UTC)


def _split(path: str) -> list[str]:
    return [part for part in path.split("/") if part]


class FakeDocumentStore:
    """In-memory stand-in for the Realtime Database."""

    def __init__(self, data: dict | None = None):
        self.data: dict[str, Any] = data or {}
        self.sets: list[tuple[str, Any]] = []
        self.updates: list[dict[str, Any]] = []
        self.fail_get: Exception | None = None
        self.fail_update: Exception | None = None
        self.fail_set_prefix: str | None = None

    def read(self, path: str) -> Any:
        node: Any = self.data
        for part in _split(path):
            if not isinstance(node, dict) or part not in node:
                return None
            node = node[part]
        return node

    def write(self, path: str, value: Any) -> None:
        parts = _split(path)
        if not parts:
            self.data = value
            return
        node = self.data
        for part in parts[:-1]:
            node = node.setdefault(part, {})
        node[parts[-1]] = value

    async def get(self, path: str) -> Any:
        if self.fail_get:
            raise self.fail_get
        return self.read(path)

    async def set(self, path: str, value: Any) -> None:
        if self.fail_set_prefix and path.startswith(self.fail_set_prefix):
            raise RuntimeError(f"write to {path} rejected")
        self.sets.append((path, value))
        self.write(path, value)

    async def update(self, fields: dict[str, Any]) -> None:
        if self.fail_update:
            raise self.fail_update
        self.updates.append(dict(fields))
        for path, value in fields.items():
            self.write(path, value)


class FakePushTransport:
    """Records sends; returns scripted results or raises per recipient token."""

    def __init__(self, result: DeliveryResult | None = None):
        self.result = result
        self.calls: list[dict[str, Any]] = []
        self.errors: dict[str, Exception] = {}

    async def send_to_many(self, title, body, tokens, data) -> DeliveryResult:
        self.calls.append({"title": title, "body": body, "tokens": list(tokens), "data": dict(data)})
        for token in tokens:
            if token in self.errors:
                raise self.errors[token]
        if self.result is not None:
            return self.result
        return DeliveryResult(success_count=len(tokens), failure_count=0)


def parent_document(
    due_date: str = "2024-03-06",
    tokens: tuple[str, ...] = ("token-1",),
    timezone: str | None = "Asia/Kolkata",
    muted: bool = False,
    last_notified: str | None = None,
    name: str = "Asha",
    vaccine: str = "MMR",
) -> dict:
    child = {"name": name, "nextDueVaccine": vaccine, "nextDueDate": due_date}
    if last_notified:
        child["lastNotifiedDate"] = last_notified
    document = {
        "fcmTokens": {token: True for token in tokens},
        "children": {"child-1": child},
    }
    if timezone:
        document["timezone"] = timezone
    if muted:
        document["muteReminders"] = True
    return document


@pytest.fixture
def fixed_now():
    return TUESDAY_MORNING_UTC


@pytest.fixture
def calculator(fixed_now):
    return TemporalCalculator("Asia/Kolkata", clock=lambda: fixed_now)


@pytest.fixture
def resolver(calculator):
    return EligibilityResolver(calculator)


@pytest.fixture
def fake_store():
    return FakeDocumentStore()


@pytest.fixture
def fake_transport():
    return FakePushTransport()


@pytest.fixture
def repository(fake_store):
    return RecipientRepository(fake_store)


@pytest.fixture
def audit_recorder(fake_store, fixed_now):
    return AuditRecorder(fake_store, clock=lambda: fixed_now)


@pytest.fixture
def coordinator(fake_transport, repository, audit_recorder):
    return DispatchCoordinator(fake_transport, repository, audit_recorder, max_concurrent=4)


@pytest.fixture(scope="session")
def service_account_info():
    private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode()
    return {
        "type": "service_account",
        "project_id": "dose-test",
        "private_key_id": "key-1",
        "private_key": pem,
        "client_email": "reminders@dose-test.iam.gserviceaccount.com",
        "token_uri": "https://oauth2.googleapis.com/token",
        "databaseURL": "https://dose-test-default-rtdb.firebaseio.com",
    }
