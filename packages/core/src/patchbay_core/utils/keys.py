"""SSH public key helpers.

Users are identified by the authorized-keys form of their public key
(``"<type> <base64>"``), without options or comment, so the same key always
maps to the same user no matter how it was written in a config file.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import struct

KEY_TYPES = {
    "ssh-ed25519",
    "ssh-rsa",
    "ssh-dss",
    "ecdsa-sha2-nistp256",
    "ecdsa-sha2-nistp384",
    "ecdsa-sha2-nistp521",
    "sk-ssh-ed25519@openssh.com",
    "sk-ecdsa-sha2-nistp256@openssh.com",
}


def _decode_blob(key_type: str, blob_b64: str) -> bytes:
    try:
        blob = base64.b64decode(blob_b64, validate=True)
    except (binascii.Error, ValueError):
        raise ValueError("public key is not valid base64")
    # The wire blob starts with the length-prefixed key type; it must agree
    # with the type written in front of it.
    if len(blob) < 4:
        raise ValueError("public key blob is truncated")
    (size,) = struct.unpack(">I", blob[:4])
    if blob[4 : 4 + size].decode("ascii", errors="replace") != key_type:
        raise ValueError("public key type does not match its blob")
    return blob


def canonical_pubkey(text: str) -> str:
    """Return ``"<type> <base64>"`` for an authorized-keys line.

    Accepts an optional options prefix (``command="...",no-pty ssh-ed25519 ...``)
    and a trailing comment. Raises ValueError when no valid key is found.
    """
    fields = text.strip().split()
    for idx, field in enumerate(fields):
        if field in KEY_TYPES and idx + 1 < len(fields):
            blob = fields[idx + 1]
            _decode_blob(field, blob)
            return f"{field} {blob}"
    raise ValueError("no public key found")


def fingerprint(pubkey: str) -> str:
    """SHA256 fingerprint in the format ``ssh-keygen -l`` prints."""
    key_type, blob_b64 = canonical_pubkey(pubkey).split(" ", 1)
    digest = hashlib.sha256(_decode_blob(key_type, blob_b64)).digest()
    return "SHA256:" + base64.b64encode(digest).decode("ascii").rstrip("=")


def keys_equal(a: str, b: str) -> bool:
    try:
        return canonical_pubkey(a) == canonical_pubkey(b)
    except ValueError:
        return False
