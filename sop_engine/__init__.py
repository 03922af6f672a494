"""
SOP Engine - Task Execution Package

Runs an operator through an SOP template step by step: evidence
capture and validation, conditional routing, compression of photo and
signature payloads, dual sign-off, and resumable drafts.

Light imports only. Pillow is loaded by sop_engine.compression, which
the sequencer pulls in.
"""

from sop_engine.errors import (
    SOPEngineError, TemplateError, EvidenceRejected, SkipNotAllowed,
    SignoffRejected, SignoffIncomplete, TaskFinalized, DraftCacheError,
)
from sop_engine.types import (
    EvidenceType, ConditionOperator, CompressionType, TaskStatus,
    EvidenceConfig, DualSignatureConfig, ConditionalRule, SOPStep, SOPTemplate,
    SignatureArtifact, DualSignaturePayload, TaskEvidence, Task, DraftCacheEntry,
)
