"""Codec for the Lua-table key file format.

The key table is persisted as a Lua chunk the client application can
``dofile`` directly::

    return {
        ["Photon-0123456789abcdef-0123456789ab"] = {
            userId = "123",
            hwid = "ABC-DEF",
            expiresAt = 1700000000000
        },
    }

Whitespace between tokens is insignificant. Field values are taken verbatim
between the quotes; no escaping is supported, so a value containing ``"``
cannot be represented.

Decoding is tolerant per record: a malformed record is skipped and reported
as a ``CodecDefect`` while the rest of the table is still parsed. Only a
missing ``return {`` marker, a missing closing brace or undecodable bytes
fail the whole table with ``FormatError``.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Mapping

from keygate.adapters.storage.base import KeyBinding
from keygate.core.errors import FORMAT_ERROR, FormatError

MARKER = "return {"

_MARKER_RE = re.compile(r"\s*return\s*\{")
_WS_RE = re.compile(r"\s*")
_RESYNC_RE = re.compile(r'\[\s*"')
_RECORD_RE = re.compile(
    r'\[\s*"(?P<key>[^"]*)"\s*\]\s*=\s*\{'
    r'\s*userId\s*=\s*"(?P<owner_id>[^"]*)"\s*,'
    r'\s*hwid\s*=\s*"(?P<hwid>[^"]*)"\s*,'
    r"\s*expiresAt\s*=\s*(?P<expires_at>\d+)\s*,?"
    r"\s*\}\s*,?"
)


@dataclass(frozen=True)
class CodecDefect:
    """A record skipped while decoding.

    Attributes:
        offset: Character offset of the record in the decoded text.
        reason: Machine-readable reason (malformed_record, key_too_long, ...).
        key: Key of the record when it could be parsed.
    """

    offset: int
    reason: str
    key: str | None = None


@dataclass
class DecodedTable:
    """Bindings decoded from a key file plus the records that were skipped."""

    entries: dict[str, KeyBinding] = field(default_factory=dict)
    defects: list[CodecDefect] = field(default_factory=list)


def is_encodable(value: str) -> bool:
    """Return True if ``value`` can be written verbatim between quotes."""

    return '"' not in value


def _check_encodable(name: str, value: str) -> None:
    if not is_encodable(value):
        raise FormatError(
            code=FORMAT_ERROR,
            message=f"Field '{name}' contains a quote and cannot be encoded",
        )


def encode(table: Mapping[str, KeyBinding]) -> bytes:
    """Serialize a key table to its Lua-table representation.

    Args:
        table: Mapping of key to binding. Iteration order is preserved.

    Returns:
        UTF-8 encoded file contents.

    Raises:
        FormatError: If a key or field cannot be represented.
    """

    lines = [MARKER]
    for key, binding in table.items():
        _check_encodable("key", key)
        _check_encodable("userId", binding.owner_id)
        _check_encodable("hwid", binding.hwid)
        if binding.expires_at < 0:
            raise FormatError(
                code=FORMAT_ERROR,
                message="expiresAt must be a non-negative integer",
            )
        lines.append(f'    ["{key}"] = {{')
        lines.append(f'        userId = "{binding.owner_id}",')
        lines.append(f'        hwid = "{binding.hwid}",')
        lines.append(f"        expiresAt = {int(binding.expires_at)}")
        lines.append("    },")
    lines.append("}")
    return ("\n".join(lines) + "\n").encode("utf-8")


def decode(data: bytes | str, *, max_key_length: int) -> DecodedTable:
    """Parse a Lua-table key file.

    Args:
        data: Raw file contents.
        max_key_length: Keys longer than this are skipped with a defect.

    Returns:
        DecodedTable with the accepted entries and per-record defects.

    Raises:
        FormatError: If the marker or the closing brace is missing, or the
            bytes are not valid UTF-8.
    """

    if isinstance(data, bytes):
        try:
            text = data.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise FormatError(
                code=FORMAT_ERROR,
                message="Key table is not valid UTF-8",
            ) from exc
    else:
        text = data

    result = DecodedTable()
    if not text.strip():
        return result

    marker = _MARKER_RE.match(text)
    if marker is None:
        raise FormatError(
            code=FORMAT_ERROR,
            message=f"Key table does not start with '{MARKER}'",
        )

    stripped = text.rstrip()
    if not stripped.endswith("}"):
        raise FormatError(
            code=FORMAT_ERROR,
            message="Key table is truncated (missing closing brace)",
        )

    base = marker.end()
    body = text[base : len(stripped) - 1]
    pos = 0
    end = len(body)

    while True:
        pos = _WS_RE.match(body, pos).end()
        if pos >= end:
            break

        record = _RECORD_RE.match(body, pos)
        if record is None:
            resync = _RESYNC_RE.search(body, pos + 1)
            result.defects.append(CodecDefect(offset=base + pos, reason="malformed_record"))
            pos = resync.start() if resync else end
            continue

        key = record.group("key")
        defect_reason = None
        if not key:
            defect_reason = "empty_key"
        elif len(key) > max_key_length:
            defect_reason = "key_too_long"
        elif not record.group("owner_id") or not record.group("hwid"):
            defect_reason = "missing_field"
        elif key in result.entries:
            defect_reason = "duplicate_key"

        if defect_reason:
            result.defects.append(
                CodecDefect(offset=base + pos, reason=defect_reason, key=key or None)
            )
        else:
            result.entries[key] = KeyBinding(
                owner_id=record.group("owner_id"),
                hwid=record.group("hwid"),
                expires_at=int(record.group("expires_at")),
            )
        pos = record.end()

    return result
