from __future__ import annotations

import base64
import io
import struct
from dataclasses import dataclass
from pathlib import Path

import pytest

from patchbay_cli.session import Session, dispatch
from patchbay_core.config import load_config
from patchbay_store.sqlite import SQLiteStore

FIXTURES = Path(__file__).parents[2] / "core" / "tests" / "fixtures"


def _make_pubkey(seed: int) -> str:
    blob = struct.pack(">I", 11) + b"ssh-ed25519" + struct.pack(">I", 32) + bytes([seed]) * 32
    return "ssh-ed25519 " + base64.b64encode(blob).decode("ascii")


ADMIN_KEY = _make_pubkey(1)
CONTRIBUTOR_KEY = _make_pubkey(2)
OTHER_KEY = _make_pubkey(3)


@dataclass
class SessionResult:
    code: int
    out: str
    err: str


@pytest.fixture
def make_pubkey():
    return _make_pubkey


@pytest.fixture
def fixture_bytes():
    def read(name: str) -> bytes:
        return (FIXTURES / name).read_bytes()

    return read


@pytest.fixture
def config(tmp_path, monkeypatch):
    for var in ("SSH_HOST", "SSH_PORT", "PATCHBAY_DATA_DIR", "PATCHBAY_CONFIG"):
        monkeypatch.delenv(var, raising=False)
    return load_config(
        str(tmp_path / "patchbay.yml"),
        {"admins": [ADMIN_KEY], "data_dir": str(tmp_path / "data"), "time_format": ""},
    )


@pytest.fixture
def store():
    s = SQLiteStore(":memory:")
    yield s
    s.close()


@pytest.fixture
def ssh(store, config):
    """Run one SSH command as ``who`` (admin, contributor or other)."""
    keys = {"admin": ADMIN_KEY, "contributor": CONTRIBUTOR_KEY, "other": OTHER_KEY}

    def run(who: str, *args: str, stdin: bytes = b"", ip: str | None = None) -> SessionResult:
        out, err = io.StringIO(), io.StringIO()
        session = Session(
            pubkey=keys[who],
            user_name=who,
            stdin=io.BytesIO(stdin),
            stdout=out,
            stderr=err,
            args=list(args),
            ip_address=ip,
        )
        code = dispatch(session, store, config)
        return SessionResult(code, out.getvalue(), err.getvalue())

    return run


@pytest.fixture
def admin_key():
    return ADMIN_KEY


@pytest.fixture
def contributor_key():
    return CONTRIBUTOR_KEY
