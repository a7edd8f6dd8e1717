from __future__ import annotations

import base64
import struct
from pathlib import Path

import pytest

FIXTURES = Path(__file__).parent / "fixtures"


def _make_pubkey(seed: int = 1, comment: str = "") -> str:
    blob = struct.pack(">I", 11) + b"ssh-ed25519" + struct.pack(">I", 32) + bytes([seed]) * 32
    key = "ssh-ed25519 " + base64.b64encode(blob).decode("ascii")
    return f"{key} {comment}" if comment else key


@pytest.fixture
def make_pubkey():
    return _make_pubkey


@pytest.fixture
def fixture_text():
    def read(name: str) -> str:
        return (FIXTURES / name).read_text()

    return read
