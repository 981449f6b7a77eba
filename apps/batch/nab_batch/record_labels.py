"""Carry arbitrary record ids through batch request labels.

Label values only allow lowercase letters, digits, `_` and `-`, at most 63 characters each.
Ids are therefore written as unpadded lowercase base32 of their UTF-8 bytes, split across
`record_id`, `record_id_1`, `record_id_2`, ... and tagged with `record_id_encoding`.
Labels without the tag are read back verbatim, which keeps older manifests importable.
"""

from __future__ import annotations

import base64
import binascii
from typing import Any, Mapping

RECORD_ID_LABEL = "record_id"
ENCODING_LABEL = "record_id_encoding"
BASE32 = "b32"

_LABEL_VALUE_CHARS = 63
# Service limit is 64 labels per request; the rest are left for the encoding tag and payload hash.
MAX_ID_LABELS = 32
MAX_ID_BYTES = (MAX_ID_LABELS * _LABEL_VALUE_CHARS * 5) // 8


def _chunk_key(index: int) -> str:
    return RECORD_ID_LABEL if index == 0 else f"{RECORD_ID_LABEL}_{index}"


def encode_record_id(record_id: str) -> dict[str, str]:
    raw = record_id.encode("utf-8")
    if not raw:
        raise ValueError("record id is empty")
    if len(raw) > MAX_ID_BYTES:
        raise ValueError(f"record id is {len(raw)} bytes; at most {MAX_ID_BYTES} fit into request labels")
    encoded = base64.b32encode(raw).decode("ascii").rstrip("=").lower()
    labels = {ENCODING_LABEL: BASE32}
    for index, start in enumerate(range(0, len(encoded), _LABEL_VALUE_CHARS)):
        labels[_chunk_key(index)] = encoded[start : start + _LABEL_VALUE_CHARS]
    return labels


def decode_record_id(labels: Mapping[str, Any]) -> str | None:
    first = labels.get(RECORD_ID_LABEL)
    if isinstance(first, bool) or not isinstance(first, (str, int)) or not str(first).strip():
        return None
    if labels.get(ENCODING_LABEL) != BASE32:
        return str(first).strip()

    parts = [str(first)]
    index = 1
    while isinstance(labels.get(_chunk_key(index)), str):
        parts.append(labels[_chunk_key(index)])
        index += 1
    encoded = "".join(parts).upper()
    encoded += "=" * (-len(encoded) % 8)
    try:
        return base64.b32decode(encoded).decode("utf-8")
    except (binascii.Error, ValueError):
        return None
