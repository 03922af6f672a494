"""
SOP Engine — Step Sequencer

Walks an operator through a template's ordered steps, one index at a
time, and owns every mutation of the Task while it runs.

States are step indexes 0..n-1 plus an implicit terminal "awaiting
completion" state reachable only from the last index.

    capture(raw)   validate → compress → upsert → draft → branch or advance
    advance()      i → i+1, gated on evidence for required steps
    retreat()      i → i-1, evidence kept
    skip(reason)   optional steps only; records a skip, then advances
    complete()     dual sign-off → completion check → on_complete → clear draft

Navigation and completion outcomes come back as NavigationResult and
CompletionResult. Input problems raise EvidenceRejected. While
on_complete is in flight every navigation call is refused with
reason "completion_in_progress"; while a capture is validating or
compressing, navigation, skip, complete and a second capture are
refused with "capture_in_progress".

Draft snapshots are written synchronously after every evidence
mutation and index change. A failed write is logged and kept on
last_draft_error; it never blocks navigation.

Usage:
    seq = StepSequencer(task, template, on_close=close, on_complete=submit,
                        draft_cache=SQLiteDraftCache(".sop_drafts.db"))
    seq.mount()
    await seq.capture("42")
    ...
    result = await seq.complete()
"""

from __future__ import annotations

import asyncio
import functools
import logging
from dataclasses import dataclass, field
from typing import Any

from sop_engine import compression
from sop_engine.branching import evaluate, resolve_branch
from sop_engine.capabilities import (
    RETAIN_ORIGINAL_EVIDENCE,
    OnClose,
    OnComplete,
    OnSaveDraft,
    PermissionChecker,
    permissions_for,
)
from sop_engine.config import EngineSettings
from sop_engine.draft_cache import DraftCache, MemoryDraftCache
from sop_engine.dual_signoff import DualSignatureGate, gate_for
from sop_engine.errors import EvidenceRejected, SignoffRejected, SkipNotAllowed, TemplateError
from sop_engine.logging import ExecutionLogger
from sop_engine.types import (
    DraftCacheEntry,
    DualSignatureConfig,
    DualSignaturePayload,
    EvidenceType,
    SOPStep,
    SOPTemplate,
    Task,
    TaskEvidence,
    TaskStatus,
)
from sop_engine.validators import photo_location, validate_evidence

logger = logging.getLogger("sop_engine.sequencer")

COMPLETION_IN_PROGRESS = "completion_in_progress"
CAPTURE_IN_PROGRESS = "capture_in_progress"
EVIDENCE_REQUIRED = "evidence_required"
DUAL_SIGNOFF_REQUIRED = "dual_signoff_required"
MISSING_EVIDENCE = "missing_evidence"
ON_COMPLETE_FAILED = "on_complete_failed"

RETRY_MESSAGE = "Failed to complete task. Please try again."
OFFLINE_MESSAGE = "Task will sync when connection is restored"


# ─── Results ───────────────────────────────────────────────────────

@dataclass
class NavigationResult:
    moved: bool
    index: int
    reason: str = ""
    branched: bool = False


@dataclass
class CompletionResult:
    completed: bool
    missing_steps: list[str] = field(default_factory=list)
    reason: str = ""
    error: str | None = None
    message: str = ""


@dataclass
class DraftSaveResult:
    saved: bool
    error: str | None = None


@dataclass
class CompletedStep:
    """One row of the trail of steps behind the current index."""
    index: int
    step_id: str
    title: str
    evidence_type: str | None = None
    skipped: bool = False


# ─── Completion validator ──────────────────────────────────────────

def missing_required_steps(template: SOPTemplate, evidence: list[TaskEvidence]) -> list[SOPStep]:
    """
    Required steps without evidence, over the full step list.

    Visited-or-not does not matter: a branch that jumped past a
    required step still leaves that step missing.
    """
    captured = {e.step_id for e in evidence}
    return [s for s in template.steps if s.evidence_required and s.id not in captured]


def _clamp(index: int, step_count: int) -> int:
    return min(max(0, index), step_count - 1)


# ═══════════════════════════════════════════════════════════════════
# Sequencer
# ═══════════════════════════════════════════════════════════════════

class StepSequencer:

    def __init__(
        self,
        task: Task,
        template: SOPTemplate,
        on_close: OnClose,
        on_complete: OnComplete,
        on_save_draft: OnSaveDraft | None = None,
        user_role: str | None = None,
        permissions: PermissionChecker | None = None,
        draft_cache: DraftCache | None = None,
        settings: EngineSettings | None = None,
        logger: ExecutionLogger | None = None,
    ):
        if not template.steps:
            raise TemplateError(f"Template {template.id!r} has no steps")

        self.task = task
        self.template = template
        self.on_close = on_close
        self.on_complete = on_complete
        self.on_save_draft = on_save_draft
        self.user_role = user_role
        self.permissions = permissions_for(user_role, permissions)
        self.draft_cache = draft_cache if draft_cache is not None else MemoryDraftCache()
        self.settings = settings or EngineSettings()
        self.log = logger or ExecutionLogger(task_id=task.id, template_id=template.id)
        self.compressor = compression.CompressionPipeline(self.settings)

        self.is_offline = False
        self.last_draft_error: str | None = None
        self._mounted = False
        self._completing = False
        self._capturing = False
        self._signoff: DualSignatureGate | None = None

        self.task.current_step_index = _clamp(self.task.current_step_index, len(template.steps))
        if not self.task.is_finalized:
            self.task.replace_evidence(list(self.task.evidence))

    # ── Views ───────────────────────────────────────────────────

    @property
    def current_step_index(self) -> int:
        return self.task.current_step_index

    @property
    def current_step(self) -> SOPStep:
        return self.template.steps[self.task.current_step_index]

    @property
    def step_count(self) -> int:
        return len(self.template.steps)

    @property
    def is_last_step(self) -> bool:
        return self.task.current_step_index == self.step_count - 1

    @property
    def progress_percent(self) -> int:
        return round((self.task.current_step_index + 1) / self.step_count * 100)

    @property
    def has_evidence(self) -> bool:
        return self.task.evidence_for(self.current_step.id) is not None

    @property
    def can_advance(self) -> bool:
        if self._completing or self._capturing or self.is_last_step:
            return False
        return not self.current_step.evidence_required or self.has_evidence

    @property
    def is_completing(self) -> bool:
        return self._completing

    @property
    def is_capturing(self) -> bool:
        return self._capturing

    @property
    def can_retain_original(self) -> bool:
        return self.permissions.can(RETAIN_ORIGINAL_EVIDENCE)

    def evidence_for(self, step_id: str) -> TaskEvidence | None:
        return self.task.evidence_for(step_id)

    @property
    def completed_steps(self) -> list[CompletedStep]:
        trail = []
        for idx, step in enumerate(self.template.steps[:self.task.current_step_index]):
            item = self.task.evidence_for(step.id)
            trail.append(CompletedStep(
                index=idx,
                step_id=step.id,
                title=step.title,
                evidence_type=item.type.value if item else None,
                skipped=bool(item and item.is_skip),
            ))
        return trail

    @property
    def compression_summary(self) -> compression.CompressionSummary:
        return compression.summarize(self.task.evidence)

    @property
    def branch_hints(self) -> list[str]:
        """Readable routing rules for the current step."""
        hints = []
        for rule in self.current_step.conditional_logic if self.current_step.is_conditional else []:
            target = self.template.step_by_id(rule.next_step_id)
            title = target.title if target else rule.next_step_id
            hints.append(
                f'If response {rule.condition.value.replace("_", " ")} "{rule.value}" '
                f'→ Jump to "{title}"'
            )
        return hints

    # ── Lifecycle ───────────────────────────────────────────────

    def mount(self) -> bool:
        """
        Hydrate from the draft cache. A stored draft wins over the
        caller-supplied task state. Returns True when a draft was restored.
        """
        if self._mounted:
            return False
        self._mounted = True

        restored = False
        try:
            entry = self.draft_cache.load(self.task.id)
        except Exception as e:
            logger.warning("Draft load failed for task %s: %s", self.task.id, e)
            entry = None

        if entry is not None and not self.task.is_finalized:
            self.task.replace_evidence(entry.evidence)
            self.task.set_step_index(_clamp(entry.current_step_index, self.step_count))
            self.log.on_draft_restored(self.task.current_step_index, len(self.task.evidence))
            restored = True

        self.log.on_mount(self.task.current_step_index, self.step_count)
        return restored

    def close(self) -> None:
        """Hand control back to the caller. The draft stays for a later resume."""
        self.on_close()

    def set_offline(self, offline: bool) -> None:
        self.is_offline = bool(offline)

    # ── Draft persistence ───────────────────────────────────────

    def _snapshot(self) -> DraftCacheEntry:
        return DraftCacheEntry(
            evidence=list(self.task.evidence),
            current_step_index=self.task.current_step_index,
        )

    def _persist_draft(self) -> bool:
        try:
            self.draft_cache.save(self.task.id, self._snapshot())
        except Exception as e:
            self.last_draft_error = str(e)
            self.log.on_draft_persist_failed(str(e))
            logger.warning("Draft persist failed for task %s: %s", self.task.id, e)
            return False
        self.last_draft_error = None
        return True

    async def save_draft(self) -> DraftSaveResult:
        """Explicit save: local snapshot, then the on_save_draft callback. Never raises."""
        self._persist_draft()
        if self.on_save_draft is None:
            if self.last_draft_error:
                return DraftSaveResult(saved=False, error=self.last_draft_error)
            return DraftSaveResult(saved=True)

        try:
            await self.on_save_draft(list(self.task.evidence), self.task.current_step_index)
        except Exception as e:
            logger.warning("on_save_draft failed for task %s: %s", self.task.id, e)
            self.log.on_draft_persist_failed(str(e))
            return DraftSaveResult(saved=False, error=str(e))
        return DraftSaveResult(saved=True)

    # ── Navigation ──────────────────────────────────────────────

    def _refused(self) -> NavigationResult | None:
        self.task._check_mutable()
        if self._completing:
            return NavigationResult(False, self.task.current_step_index, COMPLETION_IN_PROGRESS)
        if self._capturing:
            return NavigationResult(False, self.task.current_step_index, CAPTURE_IN_PROGRESS)
        return None

    def _move_to(self, index: int) -> None:
        self.task.set_step_index(_clamp(index, self.step_count))
        self._persist_draft()

    def _default_advance(self) -> NavigationResult:
        current = self.task.current_step_index
        if self.is_last_step:
            return NavigationResult(False, current, "last_step")
        self._move_to(current + 1)
        self.log.on_route_decision(
            self.template.steps[current].id, self.current_step.id, "advance",
        )
        return NavigationResult(True, self.task.current_step_index)

    def advance(self) -> NavigationResult:
        refused = self._refused()
        if refused:
            return refused
        if self.current_step.evidence_required and not self.has_evidence:
            return NavigationResult(False, self.task.current_step_index, EVIDENCE_REQUIRED)
        return self._default_advance()

    def retreat(self) -> NavigationResult:
        refused = self._refused()
        if refused:
            return refused
        current = self.task.current_step_index
        if current == 0:
            return NavigationResult(False, 0, "first_step")
        self._move_to(current - 1)
        self.log.on_route_decision(
            self.template.steps[current].id, self.current_step.id, "retreat",
        )
        return NavigationResult(True, self.task.current_step_index)

    async def skip(self, reason: str) -> NavigationResult:
        refused = self._refused()
        if refused:
            return refused

        step = self.current_step
        if step.evidence_required:
            raise SkipNotAllowed(f"Step {step.title!r} requires evidence and cannot be skipped")
        reason = (reason or "").strip()
        if not reason:
            raise SkipNotAllowed("A reason is required to skip a step")

        self.task.upsert_evidence(TaskEvidence(
            step_id=step.id,
            type=step.evidence_type or EvidenceType.SKIPPED,
            value=None,
            skip_reason=reason,
        ))
        self.log.on_evidence_skipped(step.id, reason)
        self._persist_draft()
        return self._default_advance()

    # ── Capture ─────────────────────────────────────────────────

    def _signature_gate(self, step: SOPStep) -> DualSignatureGate:
        config = step.evidence_config.dual_signature
        if config is None or not (config.role1 and config.role2):
            role1, role2 = self.settings.default_signoff_roles[:2]
            config = DualSignatureConfig(role1=role1, role2=role2)
        return DualSignatureGate(
            config,
            require_distinct_signers=self.settings.require_distinct_signers,
            max_signature_bytes=self.settings.max_evidence_bytes,
            execution_log=self.log,
        )

    def _normalize(self, step: SOPStep, raw: Any) -> Any:
        if step.evidence_type is None:
            raise EvidenceRejected("NO_EVIDENCE_TYPE", "This step does not capture evidence.", step.id)

        if step.evidence_type == EvidenceType.DUAL_SIGNATURE:
            payload = DualSignaturePayload.from_dict(raw) if isinstance(raw, dict) else raw
            if not isinstance(payload, DualSignaturePayload):
                raise EvidenceRejected("SIGNATURE_REQUIRED", "Both signatures are required.", step.id)
            gate = self._signature_gate(step)
            try:
                gate.accept_payload(payload)
            except SignoffRejected as e:
                raise EvidenceRejected(e.code, e.message, step.id)
            return gate.payload()

        return validate_evidence(step, raw, self.settings.max_evidence_bytes)

    async def _offload(self, fn, *args):
        """Run blocking work (Pillow, gzip) in the loop's default executor."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, functools.partial(fn, *args))

    async def _build_evidence(
        self,
        step: SOPStep,
        value: Any,
        retain_original: bool = False,
    ) -> TaskEvidence:
        item = TaskEvidence(step_id=step.id, type=step.evidence_type, value=value)
        if not self.compressor.applies_to(step.evidence_type):
            return item

        if retain_original and self.can_retain_original:
            item.retained_original = True
            return item

        result = await self._offload(self.compressor.compress, value, step.evidence_type)
        self.log.on_compression(
            step.id, result.success, result.compression_type.value,
            result.original_size, result.compressed_size,
        )
        if result.success:
            item.value = result.data
            item.compressed = True
            item.compression_type = result.compression_type
            item.original_size = result.original_size
            item.compressed_size = result.compressed_size
        return item

    async def capture(self, raw: Any, retain_original: bool = False) -> NavigationResult:
        """
        Validate and store evidence for the current step, then route.

        Raises:
            EvidenceRejected: the input cannot become evidence
        """
        refused = self._refused()
        if refused:
            return refused

        # Navigation, skip, a second capture and complete() are refused
        # until this capture has stored its evidence and routed.
        self._capturing = True
        try:
            return await self._capture(self.current_step, raw, retain_original)
        finally:
            self._capturing = False

    async def _capture(self, step: SOPStep, raw: Any, retain_original: bool) -> NavigationResult:
        try:
            value = self._normalize(step, raw)
        except EvidenceRejected as e:
            self.log.on_evidence_rejected(step.id, e.code, e.message)
            raise

        item = await self._build_evidence(step, value, retain_original)
        if step.evidence_type == EvidenceType.PHOTO:
            item.location = photo_location(raw)

        self.task.upsert_evidence(item)
        self.log.on_evidence_captured(step.id, item.type.value, item.compressed)
        self._persist_draft()

        if step.is_conditional:
            next_step_id = evaluate(step, value)
            target = resolve_branch(self.template, step, value) if next_step_id else None
            if next_step_id and target is None:
                self.log.on_branch_config_error(step.id, next_step_id)
            elif target is not None:
                self._move_to(target)
                self.log.on_route_decision(step.id, self.current_step.id, "branch")
                return NavigationResult(True, self.task.current_step_index, branched=True)

        return self._default_advance()

    # ── Completion ──────────────────────────────────────────────

    def begin_dual_signoff(self) -> DualSignatureGate:
        """Gate for the terminal step. Only at the last index of a dual sign-off template."""
        self.task._check_mutable()
        if not self.template.requires_dual_signoff:
            raise TemplateError(f"Template {self.template.id!r} does not require dual sign-off")
        if not self.is_last_step:
            raise TemplateError("Dual sign-off is only available on the final step")
        if self._signoff is None:
            self._signoff = gate_for(self.template, self.settings, self.log)
            self.log.on_dual_signoff(self._signoff.state.value)
        return self._signoff

    async def _record_signoff(self) -> bool:
        gate = self._signoff
        terminal = self.template.steps[-1]

        if gate is None or not gate.is_complete:
            existing = self.task.evidence_for(terminal.id)
            if existing is not None and isinstance(existing.value, DualSignaturePayload):
                gate = gate or gate_for(self.template, self.settings, self.log)
                try:
                    gate.accept_payload(compression.decompress(existing.value, existing.compression_type))
                except SignoffRejected as e:
                    logger.info("Stored dual sign-off rejected for task %s: %s", self.task.id, e.message)
                    return False
                self._signoff = gate
                return True
            return False

        payload = gate.payload()
        item = TaskEvidence(step_id=terminal.id, type=EvidenceType.DUAL_SIGNATURE, value=payload)
        result = await self._offload(
            self.compressor.compress, payload, EvidenceType.DUAL_SIGNATURE,
        )
        if result.success:
            item.value = result.data
            item.compressed = True
            item.compression_type = result.compression_type
            item.original_size = result.original_size
            item.compressed_size = result.compressed_size
        self.task.upsert_evidence(item)
        self._persist_draft()
        return True

    async def complete(self) -> CompletionResult:
        self.task._check_mutable()
        if self._completing:
            return CompletionResult(False, reason=COMPLETION_IN_PROGRESS)
        if self._capturing:
            return CompletionResult(False, reason=CAPTURE_IN_PROGRESS)
        if not self.is_last_step:
            return CompletionResult(False, reason="not_last_step",
                                    message="Complete is only available on the final step.")

        self._completing = True
        try:
            if self.template.requires_dual_signoff and not await self._record_signoff():
                self.log.on_completion_rejected(DUAL_SIGNOFF_REQUIRED, [])
                return CompletionResult(
                    False, reason=DUAL_SIGNOFF_REQUIRED,
                    message="Both signatures are required before completion.",
                )

            missing = missing_required_steps(self.template, self.task.evidence)
            if missing:
                titles = [s.title for s in missing]
                self.log.on_completion_rejected(MISSING_EVIDENCE, [s.id for s in missing])
                return CompletionResult(
                    False,
                    missing_steps=titles,
                    reason=MISSING_EVIDENCE,
                    message=f"Please complete all required evidence. Missing: {', '.join(titles)}",
                )

            evidence = list(self.task.evidence)
            try:
                await self.on_complete(evidence)
            except Exception as e:
                logger.error("on_complete failed for task %s: %s", self.task.id, e)
                self.log.on_completion_failed(str(e))
                return CompletionResult(
                    False, reason=ON_COMPLETE_FAILED, error=str(e), message=RETRY_MESSAGE,
                )

            try:
                self.draft_cache.clear(self.task.id)
            except Exception as e:
                logger.warning("Draft clear failed for task %s: %s", self.task.id, e)

            status = TaskStatus.AWAITING_APPROVAL if self.template.requires_approval else TaskStatus.COMPLETED
            self.task.finalize(status)
            self.log.on_completed(len(evidence), status.value)
            return CompletionResult(
                True, message=OFFLINE_MESSAGE if self.is_offline else "",
            )
        finally:
            self._completing = False
