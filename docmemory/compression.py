"""
Record payload compression strategies.

    gzip       zlib-deflated canonical JSON, base64 encoded (lossless)
    semantic   payload with empty values dropped and whitespace collapsed (lossy)

A compressed record keeps its type and timestamp; its payload becomes an
envelope ``{"_compressed": true, "_type": ..., "_data": ...}`` and its
metadata gains ``compressed``, ``compressionType``, ``compressedAt`` and
``originalSize``. Failures are reported in the result, never raised.
"""

from __future__ import annotations

import base64
import json
import logging
import re
import zlib
from dataclasses import dataclass
from typing import Any, Dict, Literal, Optional

from docmemory.types import MemoryRecord, _now_iso, canonical_json

logger = logging.getLogger(__name__)

CompressionType = Literal["gzip", "semantic"]

_WS_RE = re.compile(r"\s+")


@dataclass
class CompressionStrategy:
    """Pluggable compression settings.

    ``threshold`` is the payload size in bytes below which compression is
    skipped; ``ratio`` is the largest compressed/original ratio accepted.
    """

    type: CompressionType = "gzip"
    threshold: int = 100
    ratio: float = 1.0


@dataclass
class CompressionResult:
    compressed: bool
    original_size: int
    compressed_size: int
    compression_ratio: float
    error: Optional[str] = None
    record: Optional[MemoryRecord] = None


def _payload_size(data: Any) -> int:
    return len(canonical_json(data).encode("utf-8"))


def _semantic_reduce(value: Any) -> Any:
    if isinstance(value, dict):
        out = {}
        for k, v in value.items():
            reduced = _semantic_reduce(v)
            if reduced in (None, "", [], {}):
                continue
            out[k] = reduced
        return out
    if isinstance(value, list):
        return [_semantic_reduce(v) for v in value if v not in (None, "", [], {})]
    if isinstance(value, str):
        return _WS_RE.sub(" ", value).strip()
    return value


def _encode(data: Dict[str, Any], kind: str) -> Dict[str, Any]:
    if kind == "gzip":
        raw = zlib.compress(canonical_json(data).encode("utf-8"), 9)
        return {"_compressed": True, "_type": "gzip",
                "_data": base64.b64encode(raw).decode("ascii")}
    if kind == "semantic":
        return {"_compressed": True, "_type": "semantic",
                "_data": _semantic_reduce(data)}
    raise ValueError(f"Unknown compression type: {kind!r}")


def compress_entry(
    record: MemoryRecord, strategy: Optional[CompressionStrategy] = None,
) -> CompressionResult:
    """Compress a record's payload into a new, unsaved record version."""
    strategy = strategy or CompressionStrategy()
    data = record.data
    if not isinstance(data, dict) or not data:
        return CompressionResult(False, 0, 0, 1.0, error="missing payload")
    original = _payload_size(data)
    if record.is_compressed or data.get("_compressed") is True:
        return CompressionResult(False, original, original, 1.0,
                                 error="already compressed")
    if original < strategy.threshold:
        return CompressionResult(False, original, original, 1.0)

    try:
        envelope = _encode(data, strategy.type)
    except (ValueError, TypeError, zlib.error) as e:
        logger.warning(f"Compression of {record.id} failed: {e}")
        return CompressionResult(False, original, original, 1.0, error=str(e))

    # the semantic envelope wrapper is not counted against the reduced payload
    size = _payload_size(envelope["_data"] if strategy.type == "semantic" else envelope)
    ratio = size / original if original else 1.0
    if ratio > strategy.ratio:
        logger.debug(f"Compression of {record.id} skipped: ratio {ratio:.2f}")
        return CompressionResult(False, original, original, 1.0)

    metadata = dict(record.metadata)
    metadata.update({
        "compressed": True,
        "compressionType": strategy.type,
        "compressedAt": _now_iso(),
        "originalSize": original,
    })
    new_record = MemoryRecord(
        type=record.type,
        data=envelope,
        metadata=metadata,
        timestamp=record.timestamp,
    )
    return CompressionResult(True, original, size, ratio, record=new_record)


def decompress_payload(record: MemoryRecord) -> Dict[str, Any]:
    """Return the payload of a record, expanding a compressed envelope.

    Semantic compression is lossy: the reduced payload is returned.

    Raises:
        ValueError: If the envelope is malformed or of an unknown type.
    """
    data = record.data
    if not isinstance(data, dict) or data.get("_compressed") is not True:
        return data
    kind = data.get("_type")
    if kind == "gzip":
        try:
            raw = zlib.decompress(base64.b64decode(data["_data"]))
            return json.loads(raw.decode("utf-8"))
        except (KeyError, ValueError, zlib.error) as e:
            raise ValueError(f"Corrupt gzip envelope in {record.id}: {e}") from e
    if kind == "semantic":
        return data.get("_data") or {}
    raise ValueError(f"Unknown compression type in {record.id}: {kind!r}")
