"""Canonical encoding — deterministic bytes for structured records.

Canonical form: keys sorted at every nesting level, compact separators,
Unicode preserved, UTF-8 encoded. Logically identical records always
produce identical bytes, regardless of key insertion order.

Only plain JSON types are accepted. Decimals, datetimes, bytes and other
objects must be converted to an explicit string form by the record that
owns them; the encoder refuses to guess.
"""

from __future__ import annotations

import hashlib
import json
import math
from typing import Any

from anchorledger.errors import EncodingError


def canonical_encode(record: Any) -> bytes:
    """Serialize a record to canonical UTF-8 JSON bytes.

    Raises EncodingError if any value (at any depth) is not representable.
    """
    _check(record, "$")
    text = json.dumps(
        record,
        sort_keys=True,
        ensure_ascii=False,
        separators=(",", ":"),
        allow_nan=False,
    )
    return text.encode("utf-8")


def canonical_hash(record: Any) -> str:
    """SHA-256 lowercase hex digest of the canonical encoding."""
    return hashlib.sha256(canonical_encode(record)).hexdigest()


def _check(value: Any, path: str) -> None:
    # bool is an int subclass; both are fine
    if value is None or isinstance(value, (str, bool, int)):
        return
    if isinstance(value, float):
        if not math.isfinite(value):
            raise EncodingError(f"Non-finite float at {path}: {value!r}")
        return
    if isinstance(value, dict):
        for key, item in value.items():
            if not isinstance(key, str):
                raise EncodingError(
                    f"Non-string key at {path}: {key!r} ({type(key).__name__})"
                )
            _check(item, f"{path}.{key}")
        return
    if isinstance(value, (list, tuple)):
        for i, item in enumerate(value):
            _check(item, f"{path}[{i}]")
        return
    raise EncodingError(
        f"Unsupported value at {path}: {type(value).__name__}"
    )
