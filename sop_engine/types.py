"""
SOP Engine — Type Definitions

Data structures for templates, steps, branching rules, captured
evidence, tasks and draft cache entries.

Wire shape: to_dict()/from_dict() use the camelCase keys of the
template authoring format (stepId, evidenceRequired, nextStepId ...)
while task-level fields keep their snake_case names
(current_step_index, evidence_compressed). Templates exported by the
authoring tool load unchanged.

Evidence values are a tagged variant keyed by TaskEvidence.type:
  numeric        → float
  checkbox       → list[str]
  dual_signature → DualSignaturePayload
  everything else→ str (data URL, scan token, free text)
Skip records carry value=None and a non-empty skip_reason.
"""

from __future__ import annotations

import enum
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Union

from sop_engine.errors import TaskFinalized


def utc_now_iso() -> str:
    """ISO-8601 UTC timestamp used for every evidence and signature artifact."""
    return datetime.now(timezone.utc).isoformat()


# ─── Enumerations ───────────────────────────────────────────────────

class EvidenceType(str, enum.Enum):
    NUMERIC = "numeric"
    CHECKBOX = "checkbox"
    PHOTO = "photo"
    SIGNATURE = "signature"
    QR_SCAN = "qr_scan"
    TEXT = "text"
    DUAL_SIGNATURE = "dual_signature"
    # Skip records on steps that declare no evidence type
    SKIPPED = "skipped"


class ConditionOperator(str, enum.Enum):
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    CONTAINS = "contains"


class CompressionType(str, enum.Enum):
    GZIP = "gzip"
    IMAGE = "image"
    NONE = "none"


class TaskStatus(str, enum.Enum):
    """Lifecycle states for a task. Only the sequencer moves in_progress → completed."""
    TO_DO = "to_do"
    IN_PROGRESS = "in_progress"
    BLOCKED = "blocked"
    AWAITING_APPROVAL = "awaiting_approval"
    COMPLETED = "completed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


# ─── Template ───────────────────────────────────────────────────────

@dataclass
class DualSignatureConfig:
    role1: str
    role2: str
    description: str = ""
    required_roles: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "role1": self.role1,
            "role2": self.role2,
            "description": self.description,
            "requiredRoles": list(self.required_roles),
        }

    @staticmethod
    def from_dict(data: dict[str, Any]) -> DualSignatureConfig:
        return DualSignatureConfig(
            role1=data.get("role1", ""),
            role2=data.get("role2", ""),
            description=data.get("description", ""),
            required_roles=list(data.get("requiredRoles", [])),
        )


@dataclass
class EvidenceConfig:
    """Per-step capture constraints. Unset fields impose no constraint."""
    min_value: float | None = None
    max_value: float | None = None
    unit: str = ""
    options: list[str] = field(default_factory=list)
    required_text: str | None = None
    min_length: int | None = None
    max_length: int | None = None
    dual_signature: DualSignatureConfig | None = None
    max_photos: int | None = None
    require_location: bool = False
    expected_format: str | None = None

    _KEYS = {
        "min_value": "minValue",
        "max_value": "maxValue",
        "unit": "unit",
        "options": "options",
        "required_text": "requiredText",
        "min_length": "minLength",
        "max_length": "maxLength",
        "max_photos": "maxPhotos",
        "require_location": "requireLocation",
        "expected_format": "expectedFormat",
    }

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {}
        for attr, key in self._KEYS.items():
            value = getattr(self, attr)
            if value is None or value is False or value == "" or value == []:
                continue
            out[key] = value
        if self.dual_signature is not None:
            out["dualSignature"] = self.dual_signature.to_dict()
        return out

    @staticmethod
    def from_dict(data: dict[str, Any] | None) -> EvidenceConfig:
        data = data or {}
        kwargs = {
            attr: data[key]
            for attr, key in EvidenceConfig._KEYS.items()
            if key in data and data[key] is not None
        }
        if "options" in kwargs:
            kwargs["options"] = [str(o) for o in kwargs["options"]]
        dual = data.get("dualSignature")
        if dual:
            kwargs["dual_signature"] = DualSignatureConfig.from_dict(dual)
        return EvidenceConfig(**kwargs)


@dataclass
class ConditionalRule:
    """
    One branching rule. Rules on a step are evaluated in declaration
    order and the first match wins.
    """
    step_id: str
    condition: ConditionOperator
    value: Any
    next_step_id: str
    description: str = ""

    def to_dict(self) -> dict[str, Any]:
        out = {
            "stepId": self.step_id,
            "condition": self.condition.value,
            "value": self.value,
            "nextStepId": self.next_step_id,
        }
        if self.description:
            out["description"] = self.description
        return out

    @staticmethod
    def from_dict(data: dict[str, Any]) -> ConditionalRule:
        return ConditionalRule(
            step_id=data.get("stepId", ""),
            condition=ConditionOperator(data["condition"]),
            value=data.get("value"),
            next_step_id=data.get("nextStepId", ""),
            description=data.get("description", ""),
        )


@dataclass
class SOPStep:
    id: str
    order: int
    title: str
    description: str = ""
    instructions: str = ""
    safety_notes: str = ""

    # Evidence
    evidence_required: bool = False
    evidence_type: EvidenceType | None = None
    evidence_config: EvidenceConfig = field(default_factory=EvidenceConfig)

    # Branching
    is_conditional: bool = False
    conditional_logic: list[ConditionalRule] = field(default_factory=list)

    # Risk and approval
    is_high_risk: bool = False
    requires_approval: bool = False
    approval_roles: list[str] = field(default_factory=list)
    estimated_duration_minutes: int | None = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "id": self.id,
            "order": self.order,
            "title": self.title,
            "description": self.description,
            "evidenceRequired": self.evidence_required,
        }
        if self.instructions:
            out["instructions"] = self.instructions
        if self.safety_notes:
            out["safetyNotes"] = self.safety_notes
        if self.evidence_type is not None:
            out["evidenceType"] = self.evidence_type.value
        config = self.evidence_config.to_dict()
        if config:
            out["evidenceConfig"] = config
        if self.is_conditional:
            out["isConditional"] = True
        if self.conditional_logic:
            out["conditionalLogic"] = [r.to_dict() for r in self.conditional_logic]
        if self.is_high_risk:
            out["isHighRisk"] = True
        if self.requires_approval:
            out["requiresApproval"] = True
            out["approvalRoles"] = list(self.approval_roles)
        if self.estimated_duration_minutes is not None:
            out["estimatedDurationMinutes"] = self.estimated_duration_minutes
        return out

    @staticmethod
    def from_dict(data: dict[str, Any]) -> SOPStep:
        evidence_type = data.get("evidenceType")
        return SOPStep(
            id=str(data["id"]),
            order=int(data.get("order", 0)),
            title=data.get("title", ""),
            description=data.get("description", ""),
            instructions=data.get("instructions", "") or "",
            safety_notes=data.get("safetyNotes", "") or "",
            evidence_required=bool(data.get("evidenceRequired", False)),
            evidence_type=EvidenceType(evidence_type) if evidence_type else None,
            evidence_config=EvidenceConfig.from_dict(data.get("evidenceConfig")),
            is_conditional=bool(data.get("isConditional", False)),
            conditional_logic=[
                ConditionalRule.from_dict(r) for r in data.get("conditionalLogic") or []
            ],
            is_high_risk=bool(data.get("isHighRisk", False)),
            requires_approval=bool(data.get("requiresApproval", False)),
            approval_roles=list(data.get("approvalRoles") or []),
            estimated_duration_minutes=data.get("estimatedDurationMinutes"),
        )


@dataclass
class SOPTemplate:
    """
    Immutable procedure definition.

    Steps are ordered by `order` once, when loaded from the wire format.
    The sequencer addresses steps by list index from then on.
    """
    id: str
    name: str
    steps: list[SOPStep]
    version: str = "1"
    category: str = ""
    description: str = ""
    requires_dual_signoff: bool = False
    requires_approval: bool = False
    safety_notes: str = ""
    status: str = "published"

    def index_of(self, step_id: str) -> int | None:
        for idx, step in enumerate(self.steps):
            if step.id == step_id:
                return idx
        return None

    def step_by_id(self, step_id: str) -> SOPStep | None:
        idx = self.index_of(step_id)
        return self.steps[idx] if idx is not None else None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "version": self.version,
            "category": self.category,
            "description": self.description,
            "steps": [s.to_dict() for s in self.steps],
            "requires_dual_signoff": self.requires_dual_signoff,
            "requires_approval": self.requires_approval,
            "safety_notes": self.safety_notes,
            "status": self.status,
        }

    @staticmethod
    def from_dict(data: dict[str, Any]) -> SOPTemplate:
        steps = [SOPStep.from_dict(s) for s in data.get("steps") or []]
        steps.sort(key=lambda s: s.order)
        return SOPTemplate(
            id=str(data.get("id", "")),
            name=data.get("name", ""),
            steps=steps,
            version=str(data.get("version", "1")),
            category=data.get("category", ""),
            description=data.get("description", "") or "",
            requires_dual_signoff=bool(data.get("requires_dual_signoff", False)),
            requires_approval=bool(data.get("requires_approval", False)),
            safety_notes=data.get("safety_notes", "") or "",
            status=data.get("status", "published"),
        )


# ─── Evidence ───────────────────────────────────────────────────────

@dataclass
class SignatureArtifact:
    user_id: str
    user_name: str
    role: str
    signature: str
    timestamp: str = field(default_factory=utc_now_iso)

    def to_dict(self) -> dict[str, Any]:
        return {
            "userId": self.user_id,
            "userName": self.user_name,
            "role": self.role,
            "signature": self.signature,
            "timestamp": self.timestamp,
        }

    @staticmethod
    def from_dict(data: dict[str, Any]) -> SignatureArtifact:
        return SignatureArtifact(
            user_id=str(data.get("userId", "")),
            user_name=data.get("userName", ""),
            role=data.get("role", ""),
            signature=data.get("signature", ""),
            timestamp=str(data.get("timestamp", "")),
        )


@dataclass
class DualSignaturePayload:
    signature1: SignatureArtifact
    signature2: SignatureArtifact

    def to_dict(self) -> dict[str, Any]:
        return {
            "signature1": self.signature1.to_dict(),
            "signature2": self.signature2.to_dict(),
        }

    @staticmethod
    def from_dict(data: dict[str, Any]) -> DualSignaturePayload:
        return DualSignaturePayload(
            signature1=SignatureArtifact.from_dict(data.get("signature1") or {}),
            signature2=SignatureArtifact.from_dict(data.get("signature2") or {}),
        )


@dataclass
class GeoLocation:
    lat: float
    lng: float

    def to_dict(self) -> dict[str, Any]:
        return {"lat": self.lat, "lng": self.lng}

    @staticmethod
    def from_dict(data: dict[str, Any]) -> GeoLocation:
        return GeoLocation(lat=float(data["lat"]), lng=float(data["lng"]))


EvidenceValue = Union[float, list, str, DualSignaturePayload, None]


def _value_to_wire(value: EvidenceValue) -> Any:
    if isinstance(value, DualSignaturePayload):
        return value.to_dict()
    if isinstance(value, list):
        return list(value)
    return value


def _value_from_wire(evidence_type: EvidenceType, raw: Any) -> EvidenceValue:
    if raw is None:
        return None
    if evidence_type == EvidenceType.NUMERIC:
        if isinstance(raw, (int, float)) and not isinstance(raw, bool):
            return float(raw)
        return raw
    if evidence_type == EvidenceType.CHECKBOX and isinstance(raw, list):
        return [str(v) for v in raw]
    if evidence_type == EvidenceType.PHOTO and isinstance(raw, list):
        return [str(v) for v in raw]
    if evidence_type == EvidenceType.DUAL_SIGNATURE and isinstance(raw, dict):
        return DualSignaturePayload.from_dict(raw)
    return raw


@dataclass
class TaskEvidence:
    """One captured artifact for one step. At most one per step_id in a task."""
    step_id: str
    type: EvidenceType
    value: EvidenceValue
    timestamp: str = field(default_factory=utc_now_iso)

    # Compression metadata
    compressed: bool = False
    compression_type: CompressionType | None = None
    original_size: int | None = None
    compressed_size: int | None = None
    retained_original: bool = False

    skip_reason: str | None = None
    location: GeoLocation | None = None

    @property
    def is_skip(self) -> bool:
        return bool(self.skip_reason)

    @property
    def bytes_saved(self) -> int:
        if not self.compressed or self.original_size is None or self.compressed_size is None:
            return 0
        return max(0, self.original_size - self.compressed_size)

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "stepId": self.step_id,
            "type": self.type.value,
            "value": _value_to_wire(self.value),
            "timestamp": self.timestamp,
            "compressed": self.compressed,
        }
        if self.compression_type is not None:
            out["compressionType"] = self.compression_type.value
        if self.original_size is not None:
            out["originalSize"] = self.original_size
        if self.compressed_size is not None:
            out["compressedSize"] = self.compressed_size
        if self.retained_original:
            out["retainedOriginal"] = True
        if self.skip_reason is not None:
            out["skipReason"] = self.skip_reason
        if self.location is not None:
            out["location"] = self.location.to_dict()
        return out

    @staticmethod
    def from_dict(data: dict[str, Any]) -> TaskEvidence:
        evidence_type = EvidenceType(data["type"])
        compression_type = data.get("compressionType")
        location = data.get("location")
        return TaskEvidence(
            step_id=str(data["stepId"]),
            type=evidence_type,
            value=_value_from_wire(evidence_type, data.get("value")),
            timestamp=str(data.get("timestamp", "")),
            compressed=bool(data.get("compressed", False)),
            compression_type=CompressionType(compression_type) if compression_type else None,
            original_size=data.get("originalSize"),
            compressed_size=data.get("compressedSize"),
            retained_original=bool(data.get("retainedOriginal", False)),
            skip_reason=data.get("skipReason"),
            location=GeoLocation.from_dict(location) if location else None,
        )


# ─── Task ───────────────────────────────────────────────────────────

@dataclass
class Task:
    """
    Mutable execution record for one run of a template.

    Mutated by the sequencer only. Frozen once completion succeeds:
    every mutator raises TaskFinalized afterwards.
    """
    id: str
    title: str = ""
    template_id: str = ""
    status: TaskStatus = TaskStatus.IN_PROGRESS
    current_step_index: int = 0
    evidence: list[TaskEvidence] = field(default_factory=list)
    evidence_compressed: bool = False
    completed_at: str | None = None
    _finalized: bool = field(default=False, repr=False, compare=False)

    @property
    def is_finalized(self) -> bool:
        return self._finalized

    def _check_mutable(self) -> None:
        if self._finalized:
            raise TaskFinalized(f"Task {self.id!r} is completed and can no longer change")

    def evidence_for(self, step_id: str) -> TaskEvidence | None:
        for item in self.evidence:
            if item.step_id == step_id:
                return item
        return None

    def upsert_evidence(self, item: TaskEvidence) -> None:
        """Store evidence for a step, replacing any earlier capture for it."""
        self._check_mutable()
        self.evidence = [e for e in self.evidence if e.step_id != item.step_id]
        self.evidence.append(item)
        self.refresh_compression_flag()

    def replace_evidence(self, items: list[TaskEvidence]) -> None:
        self._check_mutable()
        deduped: dict[str, TaskEvidence] = {}
        for item in items:
            deduped.pop(item.step_id, None)
            deduped[item.step_id] = item
        self.evidence = list(deduped.values())
        self.refresh_compression_flag()

    def set_step_index(self, index: int) -> None:
        self._check_mutable()
        self.current_step_index = index

    def refresh_compression_flag(self) -> None:
        self.evidence_compressed = any(e.compressed for e in self.evidence)

    def finalize(self, status: TaskStatus = TaskStatus.COMPLETED) -> None:
        self._check_mutable()
        self.status = status
        self.completed_at = utc_now_iso()
        self._finalized = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "template_id": self.template_id,
            "status": self.status.value,
            "current_step_index": self.current_step_index,
            "evidence": [e.to_dict() for e in self.evidence],
            "evidence_compressed": self.evidence_compressed,
            "completed_at": self.completed_at,
        }

    @staticmethod
    def from_dict(data: dict[str, Any]) -> Task:
        task = Task(
            id=str(data["id"]),
            title=data.get("title", ""),
            template_id=data.get("template_id", "") or data.get("sop_template_id", "") or "",
            status=TaskStatus(data.get("status", TaskStatus.IN_PROGRESS.value)),
            current_step_index=int(data.get("current_step_index") or 0),
            completed_at=data.get("completed_at"),
        )
        task.evidence = [TaskEvidence.from_dict(e) for e in data.get("evidence") or []]
        task.refresh_compression_flag()
        return task


# ─── Draft cache entry ──────────────────────────────────────────────

@dataclass
class DraftCacheEntry:
    """Snapshot of in-flight execution state, keyed by task id in the draft cache."""
    evidence: list[TaskEvidence]
    current_step_index: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "evidence": [e.to_dict() for e in self.evidence],
            "currentStepIndex": self.current_step_index,
        }

    @staticmethod
    def from_dict(data: dict[str, Any]) -> DraftCacheEntry:
        return DraftCacheEntry(
            evidence=[TaskEvidence.from_dict(e) for e in data.get("evidence") or []],
            current_step_index=int(data.get("currentStepIndex", 0)),
        )

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), separators=(",", ":"))

    @staticmethod
    def from_json(payload: str) -> DraftCacheEntry:
        return DraftCacheEntry.from_dict(json.loads(payload))
