"""Pytest configuration for the identity service tests."""
import os
import re

# Settings are read from the environment; set test values before importing the package.
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("IDENTITY_STORE", "memory")
os.environ.setdefault("JWT_SECRET_KEY", "test_secret_key_for_pytest_only_not_for_production_use")
os.environ.setdefault("HASH_TIME_COST", "1")
os.environ.setdefault("HASH_MEMORY_COST", "1024")
os.environ.setdefault("NATS_ENABLED", "false")

import pytest
from fastapi.testclient import TestClient

from realty_identity.config import IdentitySettings
from realty_identity.dependencies import build_container
from realty_identity.memory_store import activate_identity_memory_store, reset_identity_memory_store
from realty_identity.models.user import AgentProfile, RegisterRequest
from realty_identity.services.audit_logger import MemoryAuditSink

TEST_SECRET = "test_secret_key_for_pytest_only_not_for_production_use"
PASSWORD = "Abcdef1!"


class RecordingNotifier:
    """Notifier double that keeps every message and can simulate failures."""

    def __init__(self):
        self.emails: list[dict] = []
        self.sms: list[dict] = []
        self.fail_email = False
        self.fail_sms = False

    async def send_email(self, to: str, subject: str, body: str) -> None:
        if self.fail_email:
            raise ConnectionError("smtp down")
        self.emails.append({"to": to, "subject": subject, "body": body})

    async def send_sms(self, to: str, body: str) -> None:
        if self.fail_sms:
            raise ConnectionError("sms gateway down")
        self.sms.append({"to": to, "body": body})

    def last_email_token(self, to: str, path: str = "verify-email") -> str:
        for message in reversed(self.emails):
            if message["to"] == to:
                match = re.search(rf"/{path}\?token=([A-Za-z0-9_\-]+)", message["body"])
                if match:
                    return match.group(1)
        raise AssertionError(f"no {path} email sent to {to}")

    def last_sms_code(self, to: str) -> str:
        for message in reversed(self.sms):
            if message["to"] == to:
                return re.search(r"\b(\d{6})\b", message["body"]).group(1)
        raise AssertionError(f"no SMS sent to {to}")


def make_settings(**overrides) -> IdentitySettings:
    values = dict(
        app_env="test",
        identity_store="memory",
        jwt_secret_key=TEST_SECRET,
        hash_time_cost=1,
        hash_memory_cost=1024,
        hash_parallelism=1,
        rate_limit_enabled=False,
        nats_enabled=False,
        notifier_timeout_seconds=0.5,
    )
    values.update(overrides)
    return IdentitySettings(**values)


def user_request(**overrides) -> RegisterRequest:
    data = dict(
        name="Anjali Menon",
        email="a@x.io",
        phone="+911234567890",
        password=PASSWORD,
        role="user",
    )
    data.update(overrides)
    return RegisterRequest(**data)


def agent_request(**overrides) -> RegisterRequest:
    data = dict(
        name="Ravi Kumar",
        email="agent@x.io",
        phone="+919812345678",
        password=PASSWORD,
        role="agent",
        agent_profile=AgentProfile(
            license_number="LIC-00001",
            agency_name="Coastal Homes",
            experience_years=7,
            commission_rate="2.50",
        ),
    )
    data.update(overrides)
    return RegisterRequest(**data)


@pytest.fixture(autouse=True)
def memory_store():
    """Fresh in-memory identity store for every test."""
    activate_identity_memory_store()
    reset_identity_memory_store()
    yield
    reset_identity_memory_store()


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def audit():
    return MemoryAuditSink()


@pytest.fixture
def container(settings, notifier, audit):
    return build_container(settings, notifier=notifier, audit=audit)


@pytest.fixture
def client(container):
    from realty_identity.main import create_app

    app = create_app(container.settings, container)
    with TestClient(app) as test_client:
        yield test_client
