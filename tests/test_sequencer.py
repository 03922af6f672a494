"""
SOP Engine — Step Sequencer Tests

Tests:
  - the current index stays in range, including after a corrupt draft
  - required evidence gates advance and completion
  - a later capture replaces, never appends
  - conditional steps jump to the first matching rule's target
  - completion lists required steps a branch jumped past
  - dual sign-off gates completion and on_complete runs exactly once
  - drafts restore on mount and clear only after a successful completion
  - navigation is refused while completion or a capture is in flight
  - the user role decides who may keep original evidence
  - the task is frozen once completed
"""

import asyncio
import io
import os
import sys
import threading
import unittest

from PIL import Image

_base = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, _base)

from sop_engine.capabilities import RETAIN_ORIGINAL_EVIDENCE, StaticPermissions
from sop_engine.compression import CompressionPipeline
from sop_engine.config import EngineSettings
from sop_engine.draft_cache import DraftCache, MemoryDraftCache
from sop_engine.dual_signoff import SignoffState
from sop_engine.errors import (
    DraftCacheError,
    EvidenceRejected,
    SkipNotAllowed,
    TaskFinalized,
    TemplateError,
)
from sop_engine.sequencer import (
    CAPTURE_IN_PROGRESS,
    COMPLETION_IN_PROGRESS,
    DUAL_SIGNOFF_REQUIRED,
    EVIDENCE_REQUIRED,
    MISSING_EVIDENCE,
    OFFLINE_MESSAGE,
    ON_COMPLETE_FAILED,
    RETRY_MESSAGE,
    StepSequencer,
    missing_required_steps,
)
from sop_engine.types import (
    DraftCacheEntry,
    DualSignaturePayload,
    EvidenceConfig,
    EvidenceType,
    GeoLocation,
    SignatureArtifact,
    SOPTemplate,
    Task,
    TaskEvidence,
    TaskStatus,
)
from sop_engine.validators import to_data_url


def _png(width=64, height=32) -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", (width, height), (255, 255, 255)).save(buf, format="PNG")
    return buf.getvalue()


def _noise_png(width=800, height=600) -> bytes:
    img = Image.frombytes("RGB", (width, height), os.urandom(width * height * 3))
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()


SIG = to_data_url(_png(), "image/png")


def _template(**overrides):
    """A(checkbox) → B(numeric, >8 jumps to D) → C(text) → D(photo, optional)."""
    data = {
        "id": "tmpl-cold",
        "name": "Cold room",
        "steps": [
            {"id": "a", "order": 1, "title": "A", "evidenceRequired": True,
             "evidenceType": "checkbox", "evidenceConfig": {"options": ["ok", "damaged"]}},
            {"id": "b", "order": 2, "title": "B", "evidenceRequired": True,
             "evidenceType": "numeric", "evidenceConfig": {"minValue": 0, "maxValue": 100},
             "isConditional": True,
             "conditionalLogic": [
                 {"stepId": "b", "condition": "greater_than", "value": 8, "nextStepId": "d"},
             ]},
            {"id": "c", "order": 3, "title": "C", "evidenceRequired": True, "evidenceType": "text"},
            {"id": "d", "order": 4, "title": "D", "evidenceRequired": False, "evidenceType": "photo"},
        ],
    }
    data.update(overrides)
    return SOPTemplate.from_dict(data)


def _dual_template():
    return SOPTemplate.from_dict({
        "id": "tmpl-dual",
        "name": "Release",
        "requires_dual_signoff": True,
        "steps": [
            {"id": "s1", "order": 1, "title": "Scan", "evidenceRequired": True,
             "evidenceType": "qr_scan"},
            {"id": "s2", "order": 2, "title": "Sign-off", "evidenceRequired": True,
             "evidenceType": "dual_signature",
             "evidenceConfig": {"dualSignature": {"role1": "site_manager", "role2": "compliance_qa"}}},
        ],
    })


class _Recorder:
    """Collects callback invocations."""

    def __init__(self, fail_times=0, delay=0.0):
        self.calls = []
        self.closed = 0
        self.fail_times = fail_times
        self.delay = delay

    async def on_complete(self, evidence):
        self.calls.append(list(evidence))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_times:
            self.fail_times -= 1
            raise ConnectionError("backend unavailable")

    def on_close(self):
        self.closed += 1


class _BrokenCache(DraftCache):

    def save(self, task_id, entry):
        raise DraftCacheError("disk full")

    def load(self, task_id):
        return None

    def clear(self, task_id):
        raise DraftCacheError("disk full")

    def list_keys(self):
        return []


class _SequencerTestCase(unittest.IsolatedAsyncioTestCase):

    def make(self, template=None, task=None, cache=None, recorder=None, **kwargs):
        self.recorder = recorder or _Recorder()
        self.cache = cache if cache is not None else MemoryDraftCache()
        self.task = task or Task(id="task-1")
        seq = StepSequencer(
            self.task, template or _template(),
            on_close=self.recorder.on_close,
            on_complete=self.recorder.on_complete,
            draft_cache=self.cache,
            **kwargs,
        )
        seq.mount()
        return seq


class TestConstruction(_SequencerTestCase):

    def test_empty_template_refused(self):
        with self.assertRaises(TemplateError):
            StepSequencer(Task(id="t"), SOPTemplate(id="x", name="X", steps=[]),
                          on_close=lambda: None, on_complete=_Recorder().on_complete)

    def test_out_of_range_index_clamped(self):
        seq = self.make(task=Task(id="t", current_step_index=99))
        self.assertEqual(seq.current_step_index, 3)
        seq = self.make(task=Task(id="t2", current_step_index=-4))
        self.assertEqual(seq.current_step_index, 0)

    def test_corrupt_draft_index_clamped(self):
        cache = MemoryDraftCache()
        cache.save("t", DraftCacheEntry(evidence=[], current_step_index=42))
        seq = self.make(task=Task(id="t"), cache=cache)
        self.assertEqual(seq.current_step_index, 3)

    def test_unreadable_draft_ignored(self):
        cache = MemoryDraftCache()
        cache.put_raw("t", "{broken")
        seq = self.make(task=Task(id="t", current_step_index=1), cache=cache)
        self.assertEqual(seq.current_step_index, 1)

    def test_duplicate_evidence_collapsed(self):
        task = Task(id="t", evidence=[
            TaskEvidence("a", EvidenceType.CHECKBOX, ["ok"]),
            TaskEvidence("a", EvidenceType.CHECKBOX, ["damaged"]),
        ])
        seq = self.make(task=task)
        self.assertEqual(len(self.task.evidence), 1)
        self.assertEqual(seq.evidence_for("a").value, ["damaged"])

    def test_progress(self):
        seq = self.make()
        self.assertEqual(seq.progress_percent, 25)
        self.assertEqual(seq.step_count, 4)


class TestEvidenceGating(_SequencerTestCase):

    async def test_advance_blocked_without_evidence(self):
        seq = self.make()
        self.assertFalse(seq.can_advance)
        result = seq.advance()
        self.assertFalse(result.moved)
        self.assertEqual(result.reason, EVIDENCE_REQUIRED)
        self.assertEqual(seq.current_step_index, 0)

    async def test_rejected_input_never_stored(self):
        seq = self.make()
        await seq.capture(["ok"])
        with self.assertRaises(EvidenceRejected) as ctx:
            await seq.capture("150")
        self.assertEqual(ctx.exception.code, "ABOVE_MAX")
        self.assertIsNone(seq.evidence_for("b"))
        self.assertEqual(seq.current_step_index, 1)

    async def test_capture_advances(self):
        seq = self.make()
        result = await seq.capture(["ok"])
        self.assertTrue(result.moved)
        self.assertFalse(result.branched)
        self.assertEqual(seq.current_step_index, 1)

    async def test_recapture_replaces(self):
        seq = self.make()
        await seq.capture(["ok"])
        seq.retreat()
        await seq.capture(["damaged"])
        self.assertEqual([e.step_id for e in self.task.evidence], ["a"])
        self.assertEqual(seq.evidence_for("a").value, ["damaged"])

    async def test_retreat_keeps_evidence(self):
        seq = self.make()
        await seq.capture(["ok"])
        result = seq.retreat()
        self.assertTrue(result.moved)
        self.assertTrue(seq.has_evidence)
        self.assertEqual(seq.retreat().reason, "first_step")

    async def test_untyped_step_cannot_capture(self):
        template = SOPTemplate.from_dict({"id": "t", "name": "T", "steps": [
            {"id": "x", "order": 1, "title": "Read notice"},
            {"id": "y", "order": 2, "title": "Done", "evidenceType": "text"},
        ]})
        seq = self.make(template=template)
        with self.assertRaises(EvidenceRejected) as ctx:
            await seq.capture("hi")
        self.assertEqual(ctx.exception.code, "NO_EVIDENCE_TYPE")
        self.assertTrue(seq.advance().moved)


class TestBranching(_SequencerTestCase):

    async def test_branch_jumps_to_target(self):
        seq = self.make()
        await seq.capture(["ok"])
        result = await seq.capture("9")
        self.assertTrue(result.branched)
        self.assertEqual(seq.current_step.id, "d")

    async def test_no_match_default_advances(self):
        seq = self.make()
        await seq.capture(["ok"])
        result = await seq.capture("4")
        self.assertFalse(result.branched)
        self.assertEqual(seq.current_step.id, "c")

    async def test_unknown_target_default_advances(self):
        data = _template().to_dict()
        data["steps"][1]["conditionalLogic"][0]["nextStepId"] = "ghost"
        seq = self.make(template=SOPTemplate.from_dict(data))
        await seq.capture(["ok"])
        with self.assertLogs("sop_engine.branching", level="WARNING"):
            result = await seq.capture("9")
        self.assertFalse(result.branched)
        self.assertEqual(seq.current_step.id, "c")

    async def test_branch_past_required_step_blocks_completion(self):
        seq = self.make()
        await seq.capture(["ok"])
        await seq.capture("9")
        result = await seq.complete()
        self.assertFalse(result.completed)
        self.assertEqual(result.reason, MISSING_EVIDENCE)
        self.assertEqual(result.missing_steps, ["C"])
        self.assertEqual(result.message, "Please complete all required evidence. Missing: C")
        self.assertEqual(self.recorder.calls, [])

    def test_branch_hints(self):
        seq = self.make(task=Task(id="t", current_step_index=1))
        self.assertEqual(seq.branch_hints, ['If response greater than "8" → Jump to "D"'])


class TestSkip(_SequencerTestCase):

    async def test_required_step_cannot_be_skipped(self):
        seq = self.make()
        with self.assertRaises(SkipNotAllowed):
            await seq.skip("no time")

    async def test_reason_required(self):
        seq = self.make(task=Task(id="t", current_step_index=3))
        with self.assertRaises(SkipNotAllowed):
            await seq.skip("   ")

    async def test_skip_records_reason(self):
        template = _template()
        template.steps[2].evidence_required = False
        seq = self.make(template=template, task=Task(id="t", current_step_index=2))
        result = await seq.skip("sensor offline")
        self.assertTrue(result.moved)
        item = seq.evidence_for("c")
        self.assertTrue(item.is_skip)
        self.assertEqual(item.skip_reason, "sensor offline")
        self.assertTrue(seq.completed_steps[-1].skipped)


class TestCompression(_SequencerTestCase):

    async def test_large_photo_compressed_on_capture(self):
        settings = EngineSettings(photo_max_width=400, photo_max_height=300)
        seq = self.make(task=Task(id="t", current_step_index=3), settings=settings)
        await seq.capture(_noise_png())
        item = seq.evidence_for("d")
        self.assertTrue(item.compressed)
        self.assertTrue(self.task.evidence_compressed)
        self.assertLess(item.compressed_size, item.original_size)
        self.assertEqual(seq.compression_summary.items, 1)

    async def test_retain_original_requires_permission(self):
        settings = EngineSettings(photo_max_width=400, photo_max_height=300)
        seq = self.make(task=Task(id="t", current_step_index=3), settings=settings)
        self.assertFalse(seq.can_retain_original)
        await seq.capture(_noise_png(), retain_original=True)
        self.assertTrue(seq.evidence_for("d").compressed)

    async def test_retain_original_with_permission(self):
        seq = self.make(
            task=Task(id="t", current_step_index=3),
            permissions=StaticPermissions([RETAIN_ORIGINAL_EVIDENCE]),
        )
        await seq.capture(_noise_png(), retain_original=True)
        item = seq.evidence_for("d")
        self.assertFalse(item.compressed)
        self.assertTrue(item.retained_original)

    async def test_retain_original_from_role(self):
        for role, allowed in (("compliance_qa", True), ("site_manager", True),
                              ("org_admin", True), ("operator", False), ("unknown", False)):
            with self.subTest(role=role):
                seq = self.make(task=Task(id="t", current_step_index=3), user_role=role)
                self.assertEqual(seq.can_retain_original, allowed)

    async def test_role_retains_original_on_capture(self):
        seq = self.make(task=Task(id="t", current_step_index=3), user_role="head_grower")
        await seq.capture(_noise_png(), retain_original=True)
        item = seq.evidence_for("d")
        self.assertFalse(item.compressed)
        self.assertTrue(item.retained_original)

    async def test_explicit_permissions_override_role(self):
        seq = self.make(task=Task(id="t", current_step_index=3),
                        user_role="compliance_qa", permissions=StaticPermissions())
        self.assertFalse(seq.can_retain_original)


class _SlowCompressor(CompressionPipeline):
    """Blocks inside compress() until released."""

    def __init__(self, settings=None):
        super().__init__(settings)
        self.started = threading.Event()
        self.release = threading.Event()

    def compress(self, raw, kind):
        self.started.set()
        self.release.wait(5)
        return super().compress(raw, kind)


class TestCaptureInProgress(_SequencerTestCase):

    def _photo_template(self):
        return SOPTemplate.from_dict({"id": "t", "name": "T", "steps": [
            {"id": "a", "order": 1, "title": "A", "evidenceRequired": True, "evidenceType": "checkbox"},
            {"id": "p", "order": 2, "title": "P", "evidenceRequired": True, "evidenceType": "photo"},
            {"id": "n", "order": 3, "title": "N", "evidenceRequired": True, "evidenceType": "text"},
        ]})

    async def test_navigation_refused_while_compressing(self):
        seq = self.make(template=self._photo_template(), task=Task(id="t", current_step_index=1))
        slow = _SlowCompressor(seq.settings)
        seq.compressor = slow

        pending = asyncio.ensure_future(seq.capture(_noise_png()))
        loop = asyncio.get_running_loop()
        try:
            self.assertTrue(await loop.run_in_executor(None, slow.started.wait, 5))
            self.assertTrue(seq.is_capturing)
            self.assertFalse(seq.can_advance)

            self.assertEqual(seq.retreat().reason, CAPTURE_IN_PROGRESS)
            self.assertEqual(seq.advance().reason, CAPTURE_IN_PROGRESS)
            self.assertEqual((await seq.skip("later")).reason, CAPTURE_IN_PROGRESS)
            self.assertEqual((await seq.capture(_png())).reason, CAPTURE_IN_PROGRESS)
            self.assertEqual((await seq.complete()).reason, CAPTURE_IN_PROGRESS)
            self.assertEqual(seq.current_step_index, 1)
        finally:
            slow.release.set()

        result = await pending
        self.assertTrue(result.moved)
        self.assertFalse(seq.is_capturing)
        self.assertEqual(seq.current_step.id, "n")
        self.assertIsNotNone(seq.evidence_for("p"))
        self.assertIsNone(seq.evidence_for("n"))

    async def test_flag_cleared_after_rejection(self):
        seq = self.make(template=self._photo_template(), task=Task(id="t", current_step_index=1))
        with self.assertRaises(EvidenceRejected):
            await seq.capture("")
        self.assertFalse(seq.is_capturing)
        self.assertTrue(seq.retreat().moved)


class TestPhotoCapture(_SequencerTestCase):

    def _photo_template(self, **config):
        template = _template()
        template.steps[3].evidence_config = EvidenceConfig(**config)
        return template

    async def test_location_stored_with_photo(self):
        seq = self.make(template=self._photo_template(require_location=True),
                        task=Task(id="t", current_step_index=3))
        await seq.capture({"photos": [_png()], "location": {"lat": 45.5, "lng": -73.6}})
        item = seq.evidence_for("d")
        self.assertEqual(item.location, GeoLocation(45.5, -73.6))
        self.assertEqual(self.cache.load("t").evidence[0].location, GeoLocation(45.5, -73.6))

    async def test_missing_location_rejected(self):
        seq = self.make(template=self._photo_template(require_location=True),
                        task=Task(id="t", current_step_index=3))
        with self.assertRaises(EvidenceRejected) as ctx:
            await seq.capture(_png())
        self.assertEqual(ctx.exception.code, "LOCATION_REQUIRED")
        self.assertIsNone(seq.evidence_for("d"))

    async def test_several_photos_stored_as_list(self):
        seq = self.make(template=self._photo_template(max_photos=2),
                        task=Task(id="t", current_step_index=3))
        with self.assertRaises(EvidenceRejected) as ctx:
            await seq.capture([_png()] * 3)
        self.assertEqual(ctx.exception.code, "TOO_MANY_PHOTOS")

        await seq.capture([_png(), _png(32, 32)])
        value = seq.evidence_for("d").value
        self.assertIsInstance(value, list)
        self.assertEqual(len(value), 2)
        self.assertIsNone(seq.evidence_for("d").location)


class TestDrafts(_SequencerTestCase):

    async def test_resume_from_draft(self):
        cache = MemoryDraftCache()
        first = self.make(task=Task(id="t"), cache=cache)
        await first.capture(["ok"])
        first.close()
        self.assertEqual(self.recorder.closed, 1)

        seq = self.make(task=Task(id="t"), cache=cache)
        self.assertEqual(seq.current_step_index, 1)
        self.assertEqual(seq.evidence_for("a").value, ["ok"])

    async def test_draft_wins_over_caller_state(self):
        cache = MemoryDraftCache()
        cache.save("t", DraftCacheEntry(
            evidence=[TaskEvidence("a", EvidenceType.CHECKBOX, ["ok"])], current_step_index=1,
        ))
        seq = self.make(task=Task(id="t", current_step_index=2), cache=cache)
        self.assertEqual(seq.current_step_index, 1)

    async def test_draft_written_on_every_mutation(self):
        seq = self.make()
        await seq.capture(["ok"])
        self.assertEqual(self.cache.load("task-1").current_step_index, 1)
        seq.retreat()
        self.assertEqual(self.cache.load("task-1").current_step_index, 0)

    async def test_draft_failure_does_not_block(self):
        seq = self.make(cache=_BrokenCache())
        result = await seq.capture(["ok"])
        self.assertTrue(result.moved)
        self.assertEqual(seq.last_draft_error, "disk full")
        saved = await seq.save_draft()
        self.assertFalse(saved.saved)

    async def test_save_draft_callback(self):
        received = []

        async def on_save_draft(evidence, index):
            received.append((len(evidence), index))

        seq = self.make(on_save_draft=on_save_draft)
        await seq.capture(["ok"])
        result = await seq.save_draft()
        self.assertTrue(result.saved)
        self.assertEqual(received, [(1, 1)])

    async def test_save_draft_callback_failure_reported(self):
        async def on_save_draft(evidence, index):
            raise ConnectionError("offline")

        seq = self.make(on_save_draft=on_save_draft)
        result = await seq.save_draft()
        self.assertFalse(result.saved)
        self.assertEqual(result.error, "offline")


class TestCompletion(_SequencerTestCase):

    async def _walk(self, seq):
        await seq.capture(["ok"])
        await seq.capture("4")
        await seq.capture("all clear")

    async def test_not_on_last_step(self):
        seq = self.make()
        result = await seq.complete()
        self.assertEqual(result.reason, "not_last_step")

    async def test_success_clears_draft_and_freezes(self):
        seq = self.make()
        await self._walk(seq)
        self.assertIsNotNone(self.cache.load("task-1"))

        result = await seq.complete()
        self.assertTrue(result.completed)
        self.assertEqual(result.message, "")
        self.assertEqual(len(self.recorder.calls), 1)
        self.assertEqual([e.step_id for e in self.recorder.calls[0]], ["a", "b", "c"])
        self.assertIsNone(self.cache.load("task-1"))
        self.assertEqual(self.task.status, TaskStatus.COMPLETED)

        with self.assertRaises(TaskFinalized):
            seq.retreat()
        with self.assertRaises(TaskFinalized):
            await seq.capture(_png())
        with self.assertRaises(TaskFinalized):
            await seq.complete()

    async def test_failure_keeps_draft_and_allows_retry(self):
        seq = self.make(recorder=_Recorder(fail_times=1))
        await self._walk(seq)

        result = await seq.complete()
        self.assertFalse(result.completed)
        self.assertEqual(result.reason, ON_COMPLETE_FAILED)
        self.assertEqual(result.message, RETRY_MESSAGE)
        self.assertEqual(result.error, "backend unavailable")
        self.assertIsNotNone(self.cache.load("task-1"))
        self.assertFalse(self.task.is_finalized)
        self.assertFalse(seq.is_completing)

        result = await seq.complete()
        self.assertTrue(result.completed)
        self.assertEqual(len(self.recorder.calls), 2)

    async def test_double_submit_guard(self):
        seq = self.make(recorder=_Recorder(delay=0.05))
        await self._walk(seq)

        first = asyncio.ensure_future(seq.complete())
        await asyncio.sleep(0)
        self.assertTrue(seq.is_completing)

        second = await seq.complete()
        self.assertEqual(second.reason, COMPLETION_IN_PROGRESS)
        self.assertEqual(seq.retreat().reason, COMPLETION_IN_PROGRESS)

        self.assertTrue((await first).completed)
        self.assertEqual(len(self.recorder.calls), 1)

    async def test_offline_message(self):
        seq = self.make()
        await self._walk(seq)
        seq.set_offline(True)
        result = await seq.complete()
        self.assertEqual(result.message, OFFLINE_MESSAGE)

    async def test_requires_approval_status(self):
        seq = self.make(template=_template(requires_approval=True))
        await self._walk(seq)
        await seq.complete()
        self.assertEqual(self.task.status, TaskStatus.AWAITING_APPROVAL)

    def test_missing_required_steps_helper(self):
        missing = missing_required_steps(_template(), [TaskEvidence("b", EvidenceType.NUMERIC, 1.0)])
        self.assertEqual([s.id for s in missing], ["a", "c"])


class TestDualSignoff(_SequencerTestCase):

    async def test_gate_required_before_completion(self):
        seq = self.make(template=_dual_template())
        await seq.capture("LINE-001")
        result = await seq.complete()
        self.assertEqual(result.reason, DUAL_SIGNOFF_REQUIRED)
        self.assertEqual(self.recorder.calls, [])

    async def test_gate_only_on_last_step(self):
        seq = self.make(template=_dual_template())
        with self.assertRaises(TemplateError):
            seq.begin_dual_signoff()
        with self.assertRaises(TemplateError):
            self.make(task=Task(id="t", current_step_index=3)).begin_dual_signoff()

    async def test_half_signed_blocks_completion(self):
        seq = self.make(template=_dual_template())
        await seq.capture("LINE-001")
        gate = seq.begin_dual_signoff()
        gate.sign(1, "u1", "Dana", SIG)
        self.assertEqual(gate.state, SignoffState.PARTIALLY_SIGNED)
        result = await seq.complete()
        self.assertEqual(result.reason, DUAL_SIGNOFF_REQUIRED)

    async def test_both_signatures_complete_once(self):
        seq = self.make(template=_dual_template())
        await seq.capture("LINE-001")
        gate = seq.begin_dual_signoff()
        self.assertIs(seq.begin_dual_signoff(), gate)
        gate.sign(1, "u1", "Dana", SIG, role="site_manager")
        gate.sign(2, "u2", "Lee", SIG, role="compliance_qa")

        result = await seq.complete()
        self.assertTrue(result.completed)
        self.assertEqual(len(self.recorder.calls), 1)
        signoff = [e for e in self.recorder.calls[0] if e.step_id == "s2"][0]
        self.assertEqual(signoff.type, EvidenceType.DUAL_SIGNATURE)
        self.assertIsInstance(signoff.value, DualSignaturePayload)
        self.assertEqual(signoff.value.signature2.user_id, "u2")

    async def test_captured_payload_accepted(self):
        seq = self.make(template=_dual_template())
        await seq.capture("LINE-001")
        await seq.capture(DualSignaturePayload(
            SignatureArtifact("u1", "Dana", "site_manager", SIG),
            SignatureArtifact("u2", "Lee", "compliance_qa", SIG),
        ))
        result = await seq.complete()
        self.assertTrue(result.completed)

    async def test_same_signer_payload_rejected(self):
        seq = self.make(template=_dual_template())
        await seq.capture("LINE-001")
        with self.assertRaises(EvidenceRejected) as ctx:
            await seq.capture({
                "signature1": {"userId": "u1", "userName": "Dana", "role": "site_manager", "signature": SIG},
                "signature2": {"userId": "u1", "userName": "Dana", "role": "compliance_qa", "signature": SIG},
            })
        self.assertEqual(ctx.exception.code, "DUPLICATE_SIGNER")
        self.assertIsNone(seq.evidence_for("s2"))


if __name__ == "__main__":
    unittest.main()
