from __future__ import annotations

import hashlib
import json
from typing import Iterable


def sha256_bytes(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def sequence_digest(entries: Iterable[dict]) -> str:
    """Digest of an invocation sequence, ignoring per-host outcomes."""
    payload = [
        {"kind": e["kind"], "name": e["name"], "via": e.get("via")} for e in entries
    ]
    data = json.dumps(payload, sort_keys=True).encode("utf-8")
    return sha256_bytes(data)
