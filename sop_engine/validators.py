"""
SOP Engine — Evidence Validators

One routine per evidence type. Each takes the raw operator input and
the step's EvidenceConfig and returns the normalized evidence value,
or raises EvidenceRejected with a user-facing reason.

    numeric   → float
    checkbox  → list[str]
    text      → str
    photo     → data URL str, or list[str] for several photos
                (size ceiling enforced per photo before compression)
    signature → data URL str (same ceiling)
    qr_scan   → str

dual_signature is not handled here; the dual sign-off gate owns it.
"""

from __future__ import annotations

import base64
import binascii
import math
import re
from typing import Any, Callable

from sop_engine.config import MAX_EVIDENCE_BYTES_BEFORE_COMPRESSION
from sop_engine.errors import EvidenceRejected
from sop_engine.types import EvidenceConfig, EvidenceType, GeoLocation, SOPStep

_DATA_URL = re.compile(r"^data:(?P<mime>[\w.+-]+/[\w.+-]+)?(?:;[\w=-]+)*;base64,(?P<data>.*)$", re.S)


def format_bytes(size: int) -> str:
    """Human-readable byte size: 512 B, 1.5 KB, 10.0 MB."""
    if not size:
        return "0 B"
    units = ["B", "KB", "MB", "GB"]
    value = float(size)
    unit = 0
    while value >= 1024 and unit < len(units) - 1:
        value /= 1024
        unit += 1
    return f"{value:.0f} {units[unit]}" if unit == 0 else f"{value:.1f} {units[unit]}"


def _fmt_number(value: float) -> str:
    return f"{value:g}"


# ═══════════════════════════════════════════════════════════════════
# Binary payload helpers (shared with the compression pipeline)
# ═══════════════════════════════════════════════════════════════════

def sniff_mime(data: bytes) -> str:
    if data.startswith(b"\xff\xd8\xff"):
        return "image/jpeg"
    if data.startswith(b"\x89PNG\r\n\x1a\n"):
        return "image/png"
    if data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "image/webp"
    if data.startswith(b"\x1f\x8b"):
        return "application/gzip"
    return "application/octet-stream"


def decode_payload(value: Any) -> tuple[bytes, str]:
    """
    Decode a binary evidence payload.

    Accepts raw bytes, a data URL ("data:image/png;base64,...") or a
    bare base64 string. Returns (raw_bytes, mime_type).

    Raises:
        ValueError: if a string payload is not valid base64
    """
    if isinstance(value, (bytes, bytearray, memoryview)):
        data = bytes(value)
        return data, sniff_mime(data)

    if not isinstance(value, str):
        raise ValueError(f"Unsupported payload type: {type(value).__name__}")

    match = _DATA_URL.match(value.strip())
    encoded = match.group("data") if match else value.strip()
    try:
        data = base64.b64decode(encoded, validate=True)
    except (binascii.Error, ValueError) as e:
        raise ValueError(f"Payload is not valid base64: {e}") from e

    mime = (match.group("mime") if match else None) or sniff_mime(data)
    return data, mime


def to_data_url(data: bytes, mime: str) -> str:
    return f"data:{mime};base64,{base64.b64encode(data).decode('ascii')}"


# ═══════════════════════════════════════════════════════════════════
# Per-type validators
# ═══════════════════════════════════════════════════════════════════

def validate_numeric(raw: Any, config: EvidenceConfig) -> float:
    if isinstance(raw, bool) or raw is None:
        raise EvidenceRejected("INVALID_NUMBER", "Please enter a valid numeric value.")

    try:
        value = float(raw.strip()) if isinstance(raw, str) else float(raw)
    except (TypeError, ValueError):
        raise EvidenceRejected("INVALID_NUMBER", "Please enter a valid numeric value.")

    if math.isnan(value) or math.isinf(value):
        raise EvidenceRejected("INVALID_NUMBER", "Please enter a valid numeric value.")

    unit = f" {config.unit}" if config.unit else ""
    if config.min_value is not None and value < config.min_value:
        raise EvidenceRejected(
            "BELOW_MIN",
            f"Value must be at least {_fmt_number(config.min_value)}{unit}",
        )
    if config.max_value is not None and value > config.max_value:
        raise EvidenceRejected(
            "ABOVE_MAX",
            f"Value must be at most {_fmt_number(config.max_value)}{unit}",
        )
    return value


def validate_checkbox(raw: Any, config: EvidenceConfig) -> list[str]:
    if isinstance(raw, str):
        raw = [raw]
    if not raw:
        raise EvidenceRejected("SELECTION_REQUIRED", "Please select at least one option.")

    selected: list[str] = []
    for item in raw:
        item = str(item)
        if item not in selected:
            selected.append(item)

    if config.options:
        unknown = [s for s in selected if s not in config.options]
        if unknown:
            raise EvidenceRejected(
                "UNKNOWN_OPTION",
                f"Unknown option(s): {', '.join(unknown)}",
            )
    return selected


def validate_text(raw: Any, config: EvidenceConfig) -> str:
    text = "" if raw is None else str(raw)
    if not text.strip():
        raise EvidenceRejected("TEXT_REQUIRED", "Please enter a response.")

    if config.min_length and len(text) < config.min_length:
        raise EvidenceRejected(
            "TEXT_TOO_SHORT",
            f"Text must be at least {config.min_length} characters.",
        )
    if config.max_length and len(text) > config.max_length:
        raise EvidenceRejected(
            "TEXT_TOO_LONG",
            f"Text must be at most {config.max_length} characters.",
        )
    if config.required_text and config.required_text not in text:
        raise EvidenceRejected(
            "REQUIRED_TEXT_MISSING",
            f'Text must contain "{config.required_text}"',
        )
    return text


def _validate_binary(
    raw: Any,
    empty_code: str,
    empty_message: str,
    max_bytes: int,
) -> str:
    if raw is None or (isinstance(raw, (str, bytes, bytearray)) and len(raw) == 0):
        raise EvidenceRejected(empty_code, empty_message)

    try:
        data, mime = decode_payload(raw)
    except ValueError as e:
        raise EvidenceRejected("INVALID_PAYLOAD", str(e))

    if not data:
        raise EvidenceRejected(empty_code, empty_message)

    if len(data) > max_bytes:
        raise EvidenceRejected(
            "FILE_TOO_LARGE",
            f"Please upload evidence smaller than {format_bytes(max_bytes)}.",
        )
    return to_data_url(data, mime)


def _split_photo_input(raw: Any) -> tuple[Any, Any]:
    """(photos, location) from a bare payload, a list, or {"photos"|"photo", "location"}."""
    if isinstance(raw, dict):
        photos = raw.get("photos", raw.get("photo"))
        return photos, raw.get("location")
    return raw, None


def _parse_location(raw: Any) -> GeoLocation:
    if isinstance(raw, GeoLocation):
        location = raw
    else:
        try:
            location = GeoLocation.from_dict(raw)
        except (KeyError, TypeError, ValueError):
            raise EvidenceRejected("INVALID_LOCATION", "Location must include numeric lat and lng.")
    if not (-90 <= location.lat <= 90 and -180 <= location.lng <= 180):
        raise EvidenceRejected("INVALID_LOCATION", "Location is out of range.")
    return location


def photo_location(raw: Any) -> GeoLocation | None:
    """Location attached to a photo capture, or None."""
    _, location = _split_photo_input(raw)
    if location is None:
        return None
    return _parse_location(location)


def validate_photo(raw: Any, config: EvidenceConfig,
                   max_bytes: int = MAX_EVIDENCE_BYTES_BEFORE_COMPRESSION) -> str | list[str]:
    """
    A single photo normalizes to one data URL; several to a list of them.
    max_photos caps the count and require_location demands a location.
    """
    photos, location = _split_photo_input(raw)
    batch = isinstance(photos, (list, tuple))
    items = list(photos) if batch else [photos]
    if not items:
        raise EvidenceRejected("PHOTO_REQUIRED", "Capture or upload a photo before submitting.")

    if config.max_photos is not None and len(items) > config.max_photos:
        raise EvidenceRejected("TOO_MANY_PHOTOS", f"Maximum {config.max_photos} photos allowed")

    urls = [
        _validate_binary(
            item, "PHOTO_REQUIRED",
            "Capture or upload a photo before submitting.", max_bytes,
        )
        for item in items
    ]

    if location is not None:
        _parse_location(location)
    elif config.require_location:
        raise EvidenceRejected("LOCATION_REQUIRED", "Location data is required for this photo")

    return urls if len(urls) > 1 else urls[0]


def validate_signature(raw: Any, config: EvidenceConfig,
                       max_bytes: int = MAX_EVIDENCE_BYTES_BEFORE_COMPRESSION) -> str:
    return _validate_binary(
        raw, "SIGNATURE_REQUIRED",
        "Please sign before submitting.", max_bytes,
    )


def validate_qr_scan(raw: Any, config: EvidenceConfig) -> str:
    token = "" if raw is None else str(raw).strip()
    if not token:
        raise EvidenceRejected("SCAN_REQUIRED", "Please scan a code before submitting.")
    if config.expected_format and not re.fullmatch(config.expected_format, token):
        raise EvidenceRejected(
            "FORMAT_MISMATCH",
            "Scanned code does not match the expected format.",
        )
    return token


_VALIDATORS: dict[EvidenceType, Callable[..., Any]] = {
    EvidenceType.NUMERIC: validate_numeric,
    EvidenceType.CHECKBOX: validate_checkbox,
    EvidenceType.TEXT: validate_text,
    EvidenceType.QR_SCAN: validate_qr_scan,
}


def validate_evidence(
    step: SOPStep,
    raw: Any,
    max_bytes: int = MAX_EVIDENCE_BYTES_BEFORE_COMPRESSION,
) -> Any:
    """
    Validate and normalize raw input for a step.

    Raises:
        EvidenceRejected: input is unusable; step_id is filled in
        ValueError: step has no evidence type, or it is dual_signature
    """
    evidence_type = step.evidence_type
    if evidence_type is None:
        raise ValueError(f"Step {step.id!r} declares no evidence type")
    if evidence_type == EvidenceType.DUAL_SIGNATURE:
        raise ValueError("dual_signature evidence is captured through the dual sign-off gate")

    try:
        if evidence_type == EvidenceType.PHOTO:
            return validate_photo(raw, step.evidence_config, max_bytes)
        if evidence_type == EvidenceType.SIGNATURE:
            return validate_signature(raw, step.evidence_config, max_bytes)
        return _VALIDATORS[evidence_type](raw, step.evidence_config)
    except EvidenceRejected as e:
        e.step_id = step.id
        raise
