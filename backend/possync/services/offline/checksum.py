"""Content checksums for queued payloads.

The checksum is SHA-256 over a canonical JSON serialization (sorted keys,
compact separators, UTF-8) so that two structurally equal payloads always
hash the same regardless of key order.
"""

import hashlib
import json
from typing import Any

from possync.services.offline.exceptions import PayloadIntegrityError


def canonical_json(payload: Any) -> str:
    return json.dumps(
        payload,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        default=str,
    )


def compute(payload: Any) -> str:
    """SHA-256 hex digest of the canonical serialization of ``payload``."""
    return hashlib.sha256(canonical_json(payload).encode("utf-8")).hexdigest()


def verify(item) -> bool:
    """True when the stored payload still matches the checksum taken at enqueue."""
    if not item.content_checksum:
        return False
    return compute(item.payload) == item.content_checksum


def ensure_intact(item) -> None:
    """Raise PayloadIntegrityError unless the stored payload matches its checksum."""
    actual = compute(item.payload)
    if actual != item.content_checksum:
        raise PayloadIntegrityError(item.queue_id, item.content_checksum, actual)
