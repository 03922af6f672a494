"""
SOP Engine — Structured Logging with Correlation IDs

Emits JSON log lines for every execution event. Each execution gets a
trace_id so all events for one task run can be correlated, including
runs resumed from a draft.

Transport: Python logging with a JSON formatter. Schema follows the
OTel field names (trace_id, service.name) so lines can be shipped to a
collector unchanged.

Usage:
    from sop_engine.logging import ExecutionLogger, configure_logging

    configure_logging(level="INFO")
    log = ExecutionLogger(task_id="task-1", template_id="tmpl-7")
    log.on_evidence_captured("s1", "numeric", compressed=False)
"""

from __future__ import annotations

import json
import logging
import os
import sys
import uuid
from datetime import datetime, timezone
from typing import Any

SERVICE_NAME = "sop_engine"


# ═══════════════════════════════════════════════════════════════════
# JSON Formatter (OTel-compatible)
# ═══════════════════════════════════════════════════════════════════

class JSONFormatter(logging.Formatter):
    """Formats log records as JSON lines."""

    def __init__(self, service_name: str = SERVICE_NAME):
        super().__init__()
        self.service_name = service_name
        self.service_version = os.environ.get("SOP_VERSION", "0.1.0")

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(
                record.created, tz=timezone.utc
            ).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service.name": self.service_name,
            "service.version": self.service_version,
        }

        if hasattr(record, "structured"):
            entry.update(record.structured)

        if record.exc_info and record.exc_info[0] is not None:
            entry["exception.type"] = record.exc_info[0].__name__
            entry["exception.message"] = str(record.exc_info[1])

        return json.dumps(entry, default=str)


# ═══════════════════════════════════════════════════════════════════
# Log Configuration
# ═══════════════════════════════════════════════════════════════════

def configure_logging(
    level: str = "INFO",
    stream: Any = None,
    service_name: str = SERVICE_NAME,
) -> logging.Logger:
    """
    Configure the sop_engine logger with JSON output.

    Args:
        level: DEBUG, INFO, WARNING, ERROR
        stream: Output stream (default: sys.stderr)
        service_name: Service name in log entries

    Returns:
        The configured sop_engine logger
    """
    logger = logging.getLogger(SERVICE_NAME)
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    # Avoid duplicate handlers on reconfigure
    logger.handlers.clear()
    for name in list(logging.Logger.manager.loggerDict.keys()):
        if name.startswith(f"{SERVICE_NAME}."):
            child = logging.getLogger(name)
            child.handlers.clear()
            child.setLevel(logging.NOTSET)

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(JSONFormatter(service_name=service_name))
    handler.setLevel(getattr(logging, level.upper(), logging.INFO))
    logger.addHandler(handler)
    logger.propagate = False

    return logger


def get_logger(name: str = "") -> logging.Logger:
    """Get a child logger under the sop_engine namespace."""
    if name:
        return logging.getLogger(f"{SERVICE_NAME}.{name}")
    return logging.getLogger(SERVICE_NAME)


def generate_trace_id() -> str:
    """OTel-compatible trace ID (32 hex chars)."""
    return uuid.uuid4().hex


# ═══════════════════════════════════════════════════════════════════
# Execution Logger
# ═══════════════════════════════════════════════════════════════════

class ExecutionLogger:
    """
    Structured event logger for one task execution.

    Every entry carries trace_id, task_id and template_id.
    """

    def __init__(
        self,
        task_id: str = "",
        template_id: str = "",
        trace_id: str | None = None,
    ):
        self.task_id = task_id
        self.template_id = template_id
        self.trace_id = trace_id or generate_trace_id()
        self._logger = get_logger("execution")

    def _base_fields(self) -> dict[str, Any]:
        return {
            "trace_id": self.trace_id,
            "task_id": self.task_id,
            "template_id": self.template_id,
        }

    def _emit(self, level: int, action: str, **fields):
        if not self._logger.isEnabledFor(level):
            return
        structured = {**self._base_fields(), "action": action, **fields}
        record = self._logger.makeRecord(
            name=self._logger.name,
            level=level,
            fn="", lno=0, msg=action,
            args=(), exc_info=None,
        )
        record.structured = structured
        self._logger.handle(record)

    # ── Lifecycle ───────────────────────────────────────────────

    def on_mount(self, step_index: int, step_count: int) -> None:
        self._emit(logging.INFO, "execution_mount",
                   step_index=step_index, step_count=step_count)

    def on_draft_restored(self, step_index: int, evidence_count: int) -> None:
        self._emit(logging.INFO, "draft_restored",
                   step_index=step_index, evidence_count=evidence_count)

    def on_draft_persist_failed(self, error: str) -> None:
        self._emit(logging.WARNING, "draft_persist_failed", error=error[:500])

    # ── Evidence ────────────────────────────────────────────────

    def on_evidence_captured(self, step_id: str, evidence_type: str, compressed: bool) -> None:
        self._emit(logging.INFO, "evidence_captured",
                   step_id=step_id, evidence_type=evidence_type, compressed=compressed)

    def on_evidence_rejected(self, step_id: str, code: str, message: str) -> None:
        self._emit(logging.INFO, "evidence_rejected",
                   step_id=step_id, code=code, reason=message[:500])

    def on_evidence_skipped(self, step_id: str, reason: str) -> None:
        self._emit(logging.INFO, "evidence_skipped", step_id=step_id, reason=reason[:500])

    def on_compression(self, step_id: str, success: bool, compression_type: str,
                       original_size: int, compressed_size: int) -> None:
        self._emit(
            logging.DEBUG if success else logging.INFO, "compression_result",
            step_id=step_id,
            success=success,
            compression_type=compression_type,
            original_size=original_size,
            compressed_size=compressed_size,
        )

    # ── Navigation ──────────────────────────────────────────────

    def on_route_decision(self, from_step: str, to_step: str,
                          decision_type: str, reason: str = "") -> None:
        self._emit(
            logging.INFO, "route_decision",
            from_step=from_step,
            to_step=to_step,
            decision_type=decision_type,
            reason=reason[:500],
        )

    def on_branch_config_error(self, step_id: str, next_step_id: str) -> None:
        self._emit(logging.WARNING, "branch_config_error",
                   step_id=step_id, next_step_id=next_step_id)

    # ── Completion ──────────────────────────────────────────────

    def on_dual_signoff(self, state: str, slot: int | None = None, role: str = "") -> None:
        self._emit(logging.INFO, "dual_signoff", state=state, slot=slot, role=role)

    def on_completion_rejected(self, reason: str, missing_steps: list[str]) -> None:
        self._emit(logging.INFO, "completion_rejected",
                   reason=reason, missing_steps=missing_steps)

    def on_completion_failed(self, error: str) -> None:
        self._emit(logging.ERROR, "completion_failed", error=error[:500])

    def on_completed(self, evidence_count: int, status: str) -> None:
        self._emit(logging.INFO, "execution_completed",
                   evidence_count=evidence_count, status=status)
