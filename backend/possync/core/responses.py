"""Response envelopes shared by the offline routes.

Queue and session listings return ``{"items": [...], "total": n}``, plus the
device filter that produced them when one was given. Single items are
returned bare.
"""

from typing import Any, Optional


def list_response(items: list, total: Optional[int] = None, device_id: Optional[str] = None) -> dict[str, Any]:
    envelope: dict[str, Any] = {
        "items": items,
        "total": total if total is not None else len(items),
    }
    if device_id:
        envelope["device_id"] = device_id
    return envelope
