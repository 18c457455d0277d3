"""Deterministic 64-bit fingerprints of canonical node definitions.

Maps and sets hash the same regardless of insertion order; lists and tuples
hash in order, so reordering a sequence changes the fingerprint.
"""

import hashlib
import json
from enum import Enum
from pathlib import PurePath
from typing import Any

# Reserved for tainted records; fingerprint() never returns it
TAINT_CHECKSUM = 2 ** 64 - 1


def _normalize(value: Any) -> Any:
    """Convert a value to a JSON-encodable form with a stable ordering."""
    if isinstance(value, dict):
        return {str(k): _normalize(v) for k, v in value.items()}
    if isinstance(value, (set, frozenset)):
        items = [_normalize(v) for v in value]
        return sorted(items, key=lambda v: json.dumps(v, sort_keys=True))
    if isinstance(value, (list, tuple)):
        return [_normalize(v) for v in value]
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, PurePath):
        return str(value)
    return value


def canonical_json(value: Any) -> str:
    """Serialize a canonical attribute set to a stable JSON string."""
    return json.dumps(_normalize(value), sort_keys=True, separators=(',', ':'), ensure_ascii=False,
                      default=str)


def fingerprint(value: Any) -> int:
    """Return the 64-bit fingerprint of a canonical attribute set."""
    digest = hashlib.blake2b(canonical_json(value).encode('utf-8'), digest_size=8).digest()
    checksum = int.from_bytes(digest, 'big')
    if checksum == TAINT_CHECKSUM:
        checksum -= 1
    return checksum
