from __future__ import annotations

import base64
import struct
from pathlib import Path

import pytest

from patchbay_store.sqlite import SQLiteStore

FIXTURES = Path(__file__).parents[2] / "core" / "tests" / "fixtures"


def _make_pubkey(seed: int) -> str:
    blob = struct.pack(">I", 11) + b"ssh-ed25519" + struct.pack(">I", 32) + bytes([seed]) * 32
    return "ssh-ed25519 " + base64.b64encode(blob).decode("ascii")


@pytest.fixture
def make_pubkey():
    return _make_pubkey


@pytest.fixture
def store():
    s = SQLiteStore(":memory:")
    yield s
    s.close()


@pytest.fixture
def fixture_bytes():
    def read(name: str) -> bytes:
        return (FIXTURES / name).read_bytes()

    return read


@pytest.fixture
def admin(store):
    return store.upsert_user(_make_pubkey(1), "admin")


@pytest.fixture
def contributor(store):
    return store.upsert_user(_make_pubkey(2), "contributor")


@pytest.fixture
def repo(store, admin):
    return store.create_repo(admin.id, "test", "demo repository")
