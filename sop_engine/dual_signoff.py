"""
SOP Engine — Dual-Signature Gate

Two-party authorization for the terminal step of a template that
requires dual sign-off. Each slot is bound to a role; both slots must
be signed before the combined payload can be released to completion.

States: awaiting_signatures → partially_signed → signed

Every transition is validated against VALID_TRANSITIONS and logged.
Re-signing a slot replaces its artifact.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum

from sop_engine.config import EngineSettings
from sop_engine.errors import EvidenceRejected, SignoffIncomplete, SignoffRejected
from sop_engine.logging import ExecutionLogger
from sop_engine.types import (
    DualSignatureConfig,
    DualSignaturePayload,
    EvidenceConfig,
    SignatureArtifact,
    SOPTemplate,
    utc_now_iso,
)
from sop_engine.validators import validate_signature

logger = logging.getLogger("sop_engine.dual_signoff")


class SignoffState(str, Enum):
    AWAITING_SIGNATURES = "awaiting_signatures"
    PARTIALLY_SIGNED = "partially_signed"
    SIGNED = "signed"


VALID_TRANSITIONS = {
    SignoffState.AWAITING_SIGNATURES: [SignoffState.PARTIALLY_SIGNED, SignoffState.SIGNED],
    SignoffState.PARTIALLY_SIGNED: [SignoffState.PARTIALLY_SIGNED, SignoffState.SIGNED],
    SignoffState.SIGNED: [SignoffState.SIGNED],
}


def role_label(role: str) -> str:
    """site_manager → Site Manager"""
    return " ".join(word.capitalize() for word in role.split("_") if word)


@dataclass
class SignoffTransition:
    from_state: SignoffState
    to_state: SignoffState
    slot: int
    user_id: str
    timestamp: str = field(default_factory=utc_now_iso)


class DualSignatureGate:
    """
    Collects two role-bound signature artifacts.

    Usage:
        gate = DualSignatureGate(DualSignatureConfig("site_manager", "compliance_qa"))
        gate.sign(1, "u-1", "Dana", sig1, role="site_manager")
        gate.sign(2, "u-2", "Lee", sig2, role="compliance_qa")
        payload = gate.payload()
    """

    def __init__(
        self,
        config: DualSignatureConfig,
        require_distinct_signers: bool = True,
        max_signature_bytes: int | None = None,
        execution_log: ExecutionLogger | None = None,
    ):
        self.config = config
        self.require_distinct_signers = require_distinct_signers
        self.max_signature_bytes = max_signature_bytes or EngineSettings().max_evidence_bytes
        self._log = execution_log
        self._slots: dict[int, SignatureArtifact] = {}
        self._state = SignoffState.AWAITING_SIGNATURES
        self._history: list[SignoffTransition] = []

    @property
    def state(self) -> SignoffState:
        return self._state

    @property
    def is_complete(self) -> bool:
        return self._state == SignoffState.SIGNED

    @property
    def history(self) -> list[SignoffTransition]:
        return list(self._history)

    def role_for(self, slot: int) -> str:
        if slot == 1:
            return self.config.role1
        if slot == 2:
            return self.config.role2
        raise SignoffRejected("INVALID_SLOT", f"Signature slot must be 1 or 2, got {slot}")

    def artifact(self, slot: int) -> SignatureArtifact | None:
        self.role_for(slot)
        return self._slots.get(slot)

    # ── Signing ─────────────────────────────────────────────────

    def _build_artifact(
        self,
        slot: int,
        user_id: str,
        user_name: str,
        signature: str | bytes,
        role: str | None,
        timestamp: str | None = None,
    ) -> SignatureArtifact:
        expected = self.role_for(slot)
        if role is not None and role != expected:
            raise SignoffRejected(
                "ROLE_MISMATCH",
                f"Signature {slot} must be provided by {role_label(expected)}",
            )
        if not user_id:
            raise SignoffRejected("SIGNER_REQUIRED", f"Signature {slot} needs a signer")

        try:
            data_url = validate_signature(signature, EvidenceConfig(), self.max_signature_bytes)
        except EvidenceRejected as e:
            raise SignoffRejected(e.code, e.message)

        return SignatureArtifact(
            user_id=user_id,
            user_name=user_name,
            role=expected,
            signature=data_url,
            timestamp=timestamp or utc_now_iso(),
        )

    def _check_distinct(self, slot: int, user_id: str, slots: dict[int, SignatureArtifact]) -> None:
        if not self.require_distinct_signers:
            return
        other = slots.get(2 if slot == 1 else 1)
        if other is not None and other.user_id == user_id:
            raise SignoffRejected(
                "DUPLICATE_SIGNER",
                "The two signatures must come from different people",
            )

    def _transition(self, slot: int, user_id: str) -> None:
        to_state = SignoffState.SIGNED if len(self._slots) == 2 else SignoffState.PARTIALLY_SIGNED
        if to_state not in VALID_TRANSITIONS[self._state]:
            raise SignoffRejected(
                "ILLEGAL_TRANSITION",
                f"Cannot move sign-off from {self._state.value} to {to_state.value}",
            )
        record = SignoffTransition(self._state, to_state, slot, user_id)
        self._history.append(record)
        logger.info(
            "Dual sign-off: %s→%s slot=%d role=%s",
            record.from_state.value, to_state.value, slot, self.role_for(slot),
        )
        if self._log:
            self._log.on_dual_signoff(to_state.value, slot=slot, role=self.role_for(slot))
        self._state = to_state

    def sign(
        self,
        slot: int,
        user_id: str,
        user_name: str,
        signature: str | bytes,
        role: str | None = None,
    ) -> SignoffState:
        """
        Record a signature for slot 1 or 2.

        Raises:
            SignoffRejected: ROLE_MISMATCH, DUPLICATE_SIGNER, INVALID_SLOT,
                             SIGNER_REQUIRED or a signature validation code
        """
        artifact = self._build_artifact(slot, user_id, user_name, signature, role)
        self._check_distinct(slot, user_id, self._slots)
        self._slots[slot] = artifact
        self._transition(slot, user_id)
        return self._state

    def accept_payload(self, payload: DualSignaturePayload) -> SignoffState:
        """
        Validate and record both artifacts at once. Nothing is recorded on failure.

        Each artifact must carry the role its slot requires; an empty role
        is a mismatch.
        """
        first = self._build_artifact(
            1, payload.signature1.user_id, payload.signature1.user_name,
            payload.signature1.signature, payload.signature1.role or "",
            payload.signature1.timestamp or None,
        )
        second = self._build_artifact(
            2, payload.signature2.user_id, payload.signature2.user_name,
            payload.signature2.signature, payload.signature2.role or "",
            payload.signature2.timestamp or None,
        )
        self._check_distinct(2, second.user_id, {1: first})

        self._slots[1] = first
        self._transition(1, first.user_id)
        self._slots[2] = second
        self._transition(2, second.user_id)
        return self._state

    def payload(self) -> DualSignaturePayload:
        if not self.is_complete:
            missing = [role_label(self.role_for(s)) for s in (1, 2) if s not in self._slots]
            raise SignoffIncomplete(f"Waiting for signature from: {', '.join(missing)}")
        return DualSignaturePayload(signature1=self._slots[1], signature2=self._slots[2])


def resolve_roles(template: SOPTemplate, settings: EngineSettings | None = None) -> DualSignatureConfig:
    """Roles from the terminal step's dual_signature config, else the configured defaults."""
    settings = settings or EngineSettings()
    if template.steps:
        configured = template.steps[-1].evidence_config.dual_signature
        if configured is not None and configured.role1 and configured.role2:
            return configured
    role1, role2 = settings.default_signoff_roles[:2]
    return DualSignatureConfig(role1=role1, role2=role2)


def gate_for(
    template: SOPTemplate,
    settings: EngineSettings | None = None,
    execution_log: ExecutionLogger | None = None,
) -> DualSignatureGate:
    settings = settings or EngineSettings()
    return DualSignatureGate(
        resolve_roles(template, settings),
        require_distinct_signers=settings.require_distinct_signers,
        max_signature_bytes=settings.max_evidence_bytes,
        execution_log=execution_log,
    )
