"""
Pytest configuration for keyledger tests.
Sets environment variables before any keyledger import.
"""

import os
import tempfile

# Must be set before keyledger.config is imported
_test_dir = tempfile.mkdtemp(prefix="keyledger_test_")
os.environ["KEYLEDGER_STORE_BACKEND"] = "memory"
os.environ["KEYLEDGER_ADMIN_TOKEN"] = "test-admin-token"
os.environ.setdefault("KEYLEDGER_LOG_DIR", os.path.join(_test_dir, "logs"))
os.environ.setdefault("KEYLEDGER_DATABASE_URL", f"sqlite:///{_test_dir}/keyledger.db")

from datetime import datetime, timezone

import pytest

from keyledger.config import Settings
from keyledger.dependencies import build_services
from keyledger.services.document_store import MemoryDocumentStore

# Load error registry so KeyLedgerError maps to the right HTTP status codes
from keyledger.core.errors.registry import error_registry
error_registry.load()

ADMIN_TOKEN = "test-admin-token"


class FakeClock:
    """Manually advanced epoch-seconds clock."""

    def __init__(self, start: float = 1_760_000_000.0):
        self.t = start

    def __call__(self) -> float:
        return self.t

    def advance(self, seconds: float) -> None:
        self.t += seconds

    def now(self) -> datetime:
        return datetime.fromtimestamp(self.t, timezone.utc)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return MemoryDocumentStore()


@pytest.fixture
def test_settings():
    return Settings(store_backend="memory", admin_token=ADMIN_TOKEN)


@pytest.fixture
def services(test_settings, store, clock):
    return build_services(test_settings, store=store, clock=clock)


@pytest.fixture
def admin_headers():
    return {"X-Admin-Token": ADMIN_TOKEN}
