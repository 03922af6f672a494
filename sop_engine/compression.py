"""
SOP Engine — Evidence Compression Pipeline

Shrinks photo and signature payloads before they are stored on the task.

    photo          → JPEG re-encode, fit within max width × height (Pillow);
                     several photos are compressed one by one
    signature      → optimized PNG re-encode (Pillow); gzip for payloads
                     Pillow cannot open (e.g. SVG strokes)
    dual_signature → each signature artifact compressed individually

Only payloads above the per-kind threshold are touched. A result that is
not smaller than its input is reported as unsuccessful and the original
data is kept. Compression never raises: any failure degrades to
success=False with the original data.

Usage:
    from sop_engine.compression import CompressionPipeline

    pipeline = CompressionPipeline(settings)
    result = pipeline.compress(data_url, EvidenceType.PHOTO)
    if result.success:
        value = result.data
"""

from __future__ import annotations

import gzip
import io
import json
import logging
from dataclasses import dataclass
from typing import Any

from PIL import Image, UnidentifiedImageError

from sop_engine.config import EngineSettings
from sop_engine.types import (
    CompressionType,
    DualSignaturePayload,
    EvidenceType,
    SignatureArtifact,
    TaskEvidence,
)
from sop_engine.validators import decode_payload, format_bytes, to_data_url

logger = logging.getLogger("sop_engine.compression")

JSON_THRESHOLD_BYTES = 10 * 1024
TEXT_THRESHOLD_BYTES = 5 * 1024

# Expected savings used by estimate_compression_benefit
_SAVINGS_FACTOR = {
    "photo": 0.6,
    "signature": 0.3,
    "json": 0.4,
    "text": 0.3,
}

_GZIP_PARAM = "encoding=gzip"


@dataclass
class CompressionResult:
    success: bool
    data: Any
    compression_type: CompressionType
    original_size: int
    compressed_size: int
    compression_ratio: float

    @staticmethod
    def unchanged(data: Any, size: int = 0) -> CompressionResult:
        return CompressionResult(
            success=False,
            data=data,
            compression_type=CompressionType.NONE,
            original_size=size,
            compressed_size=size,
            compression_ratio=1.0,
        )

    @property
    def bytes_saved(self) -> int:
        return max(0, self.original_size - self.compressed_size) if self.success else 0


@dataclass
class CompressionBenefit:
    worth_compressing: bool
    estimated_savings: int
    recommended_type: CompressionType


@dataclass
class CompressionSummary:
    """Aggregate of compressed evidence on a task."""
    items: int = 0
    original_bytes: int = 0
    compressed_bytes: int = 0

    @property
    def saved_bytes(self) -> int:
        return max(0, self.original_bytes - self.compressed_bytes)

    def render(self) -> str:
        if not self.items:
            return ""
        return f"Optimized {self.items} item(s), saved {format_bytes(self.saved_bytes)}"


# ═══════════════════════════════════════════════════════════════════
# Pipeline
# ═══════════════════════════════════════════════════════════════════

class CompressionPipeline:
    """Stateless compressor parameterized by EngineSettings."""

    def __init__(self, settings: EngineSettings | None = None):
        self.settings = settings or EngineSettings()

    def threshold_for(self, kind: EvidenceType) -> int | None:
        if kind == EvidenceType.PHOTO:
            return self.settings.photo_threshold_bytes
        if kind in (EvidenceType.SIGNATURE, EvidenceType.DUAL_SIGNATURE):
            return self.settings.signature_threshold_bytes
        return None

    def applies_to(self, kind: EvidenceType) -> bool:
        return self.threshold_for(kind) is not None

    def compress(self, raw: Any, kind: EvidenceType | str) -> CompressionResult:
        """Compress one evidence value. Never raises."""
        try:
            kind = EvidenceType(kind)
        except ValueError:
            return CompressionResult.unchanged(raw)

        try:
            if kind == EvidenceType.PHOTO and isinstance(raw, (list, tuple)):
                return self.compress_photo_batch(raw)
            if kind == EvidenceType.PHOTO:
                return self.compress_photo(raw)
            if kind == EvidenceType.SIGNATURE:
                return self.compress_signature(raw)
            if kind == EvidenceType.DUAL_SIGNATURE:
                return self.compress_dual_signature(raw)
        except Exception as e:
            logger.warning("Compression failed for %s evidence: %s", kind.value, e)
            return CompressionResult.unchanged(raw, _payload_size(raw))

        return CompressionResult.unchanged(raw, _payload_size(raw))

    # ── Photo ───────────────────────────────────────────────────

    def compress_photo(self, raw: Any) -> CompressionResult:
        data, _ = decode_payload(raw)
        original_size = len(data)
        if original_size <= self.settings.photo_threshold_bytes:
            return CompressionResult.unchanged(raw, original_size)

        with Image.open(io.BytesIO(data)) as img:
            img.load()
            if img.mode not in ("RGB", "L"):
                img = img.convert("RGB")
            img.thumbnail((self.settings.photo_max_width, self.settings.photo_max_height))
            buf = io.BytesIO()
            img.save(buf, format="JPEG", quality=self.settings.photo_quality, optimize=True)

        return _finish(raw, original_size, buf.getvalue(), "image/jpeg", CompressionType.IMAGE)

    def compress_photo_batch(self, photos: list[Any]) -> CompressionResult:
        """Each photo compressed on its own; sizes are summed."""
        results = [self.compress_photo(photo) for photo in photos]
        original_size = sum(r.original_size for r in results)
        if not any(r.success for r in results):
            return CompressionResult.unchanged(list(photos), original_size)

        compressed_size = sum(r.compressed_size for r in results)
        return CompressionResult(
            success=True,
            data=[r.data for r in results],
            compression_type=CompressionType.IMAGE,
            original_size=original_size,
            compressed_size=compressed_size,
            compression_ratio=original_size / compressed_size if compressed_size else 1.0,
        )

    # ── Signature ───────────────────────────────────────────────

    def compress_signature(self, raw: Any) -> CompressionResult:
        data, mime = decode_payload(raw)
        original_size = len(data)
        if original_size <= self.settings.signature_threshold_bytes:
            return CompressionResult.unchanged(raw, original_size)

        try:
            with Image.open(io.BytesIO(data)) as img:
                img.load()
                buf = io.BytesIO()
                img.save(buf, format="PNG", optimize=True)
            return _finish(raw, original_size, buf.getvalue(), "image/png", CompressionType.IMAGE)
        except (UnidentifiedImageError, OSError):
            packed = gzip.compress(data)
            return _finish(raw, original_size, packed, f"{mime};{_GZIP_PARAM}", CompressionType.GZIP)

    def compress_dual_signature(self, raw: Any) -> CompressionResult:
        if isinstance(raw, dict):
            raw = DualSignaturePayload.from_dict(raw)
        if not isinstance(raw, DualSignaturePayload):
            return CompressionResult.unchanged(raw)

        artifacts: list[SignatureArtifact] = []
        original_size = compressed_size = 0
        compression_type = CompressionType.NONE
        changed = False

        for artifact in (raw.signature1, raw.signature2):
            result = self.compress_signature(artifact.signature)
            original_size += result.original_size
            if result.success:
                changed = True
                compressed_size += result.compressed_size
                if compression_type == CompressionType.NONE:
                    compression_type = result.compression_type
                artifacts.append(SignatureArtifact(
                    user_id=artifact.user_id,
                    user_name=artifact.user_name,
                    role=artifact.role,
                    signature=result.data,
                    timestamp=artifact.timestamp,
                ))
            else:
                compressed_size += result.original_size
                artifacts.append(artifact)

        if not changed:
            return CompressionResult.unchanged(raw, original_size)

        return CompressionResult(
            success=True,
            data=DualSignaturePayload(signature1=artifacts[0], signature2=artifacts[1]),
            compression_type=compression_type,
            original_size=original_size,
            compressed_size=compressed_size,
            compression_ratio=original_size / compressed_size if compressed_size else 1.0,
        )


def _finish(
    raw: Any,
    original_size: int,
    packed: bytes,
    mime: str,
    compression_type: CompressionType,
) -> CompressionResult:
    if len(packed) >= original_size:
        logger.debug("Compression did not shrink payload (%d → %d bytes)", original_size, len(packed))
        return CompressionResult.unchanged(raw, original_size)

    return CompressionResult(
        success=True,
        data=to_data_url(packed, mime),
        compression_type=compression_type,
        original_size=original_size,
        compressed_size=len(packed),
        compression_ratio=original_size / len(packed),
    )


def _payload_size(value: Any) -> int:
    if isinstance(value, (bytes, bytearray)):
        return len(value)
    if isinstance(value, str):
        try:
            return len(decode_payload(value)[0])
        except ValueError:
            return len(value.encode("utf-8"))
    if isinstance(value, DualSignaturePayload):
        return _payload_size(value.signature1.signature) + _payload_size(value.signature2.signature)
    if isinstance(value, (list, tuple)):
        return sum(_payload_size(v) for v in value)
    return len(json.dumps(value, default=str).encode("utf-8"))


# ═══════════════════════════════════════════════════════════════════
# Module-level helpers
# ═══════════════════════════════════════════════════════════════════

def compress(raw: Any, kind: EvidenceType | str,
             settings: EngineSettings | None = None) -> CompressionResult:
    return CompressionPipeline(settings).compress(raw, kind)


def decompress(data: Any, compression_type: CompressionType | str | None) -> Any:
    """
    Reverse a stored payload to its original form.

    gzip payloads are inflated back to the original data URL; image
    re-encodes are lossy and returned as stored.
    """
    if isinstance(data, DualSignaturePayload):
        return DualSignaturePayload(
            signature1=_decompress_artifact(data.signature1),
            signature2=_decompress_artifact(data.signature2),
        )

    if compression_type is None or CompressionType(compression_type) != CompressionType.GZIP:
        return data
    if not isinstance(data, str) or f";{_GZIP_PARAM}" not in data:
        return data

    packed, mime = decode_payload(data)
    return to_data_url(gzip.decompress(packed), mime)


def _decompress_artifact(artifact: SignatureArtifact) -> SignatureArtifact:
    signature = artifact.signature
    if f";{_GZIP_PARAM}" in signature:
        signature = decompress(signature, CompressionType.GZIP)
    return SignatureArtifact(
        user_id=artifact.user_id,
        user_name=artifact.user_name,
        role=artifact.role,
        signature=signature,
        timestamp=artifact.timestamp,
    )


def estimate_compression_benefit(
    data: Any,
    kind: str,
    settings: EngineSettings | None = None,
) -> CompressionBenefit:
    """
    Cheap estimate of whether compressing `data` is worthwhile.

    kind is one of photo, signature, json, text.
    """
    settings = settings or EngineSettings()
    if isinstance(data, (bytes, bytearray)):
        size = len(data)
    elif isinstance(data, str):
        size = len(data.encode("utf-8"))
    else:
        size = len(json.dumps(data, default=str).encode("utf-8"))

    thresholds = {
        "photo": (settings.photo_threshold_bytes, CompressionType.IMAGE),
        "signature": (settings.signature_threshold_bytes, CompressionType.IMAGE),
        "json": (JSON_THRESHOLD_BYTES, CompressionType.GZIP),
        "text": (TEXT_THRESHOLD_BYTES, CompressionType.GZIP),
    }
    if kind not in thresholds:
        return CompressionBenefit(False, 0, CompressionType.NONE)

    threshold, recommended = thresholds[kind]
    if size <= threshold:
        return CompressionBenefit(False, 0, CompressionType.NONE)
    return CompressionBenefit(True, int(size * _SAVINGS_FACTOR[kind]), recommended)


def summarize(evidence: list[TaskEvidence]) -> CompressionSummary:
    summary = CompressionSummary()
    for item in evidence:
        if not item.compressed:
            continue
        summary.items += 1
        summary.original_bytes += item.original_size or 0
        summary.compressed_bytes += item.compressed_size or 0
    return summary
