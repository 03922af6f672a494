"""
Line Clearance Example - Standalone Runner

Walks the packaging line clearance template through the sequencer with
scripted operator input:

  Checkbox → Numeric (branches on temperature) → Photo → QR scan → Dual sign-off

Usage:
    python -m examples.line_clearance
    python -m examples.line_clearance --temperature 35
    python -m examples.line_clearance --db .sop_drafts.db --stop-after 2
"""

import argparse
import asyncio
import io
import json
import sys
from pathlib import Path

from PIL import Image

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from sop_engine.config import EngineSettings, load_config
from sop_engine.draft_cache import MemoryDraftCache, SQLiteDraftCache
from sop_engine.logging import configure_logging
from sop_engine.sequencer import StepSequencer
from sop_engine.template_check import check_template, load_template_data
from sop_engine.types import SOPTemplate, Task

TEMPLATE_PATH = Path(__file__).parent / "templates" / "line_clearance.yaml"


def _png(size=(640, 480), color=(200, 200, 200)) -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", size, color).save(buf, format="PNG")
    return buf.getvalue()


async def run(args) -> int:
    data = load_template_data(TEMPLATE_PATH)
    check = check_template(data)
    if not check.valid:
        print(check.summary(), file=sys.stderr)
        return 1

    template = SOPTemplate.from_dict(data)
    settings = EngineSettings.from_config(load_config(base_path=args.config))
    cache = SQLiteDraftCache(args.db) if args.db else MemoryDraftCache()
    task = Task(id=args.task_id, title=template.name, template_id=template.id)

    async def on_complete(evidence):
        print(json.dumps([e.to_dict() for e in evidence], indent=2, default=str)[:2000])

    seq = StepSequencer(
        task, template,
        on_close=lambda: print("  closed", file=sys.stderr),
        on_complete=on_complete,
        draft_cache=cache,
        settings=settings,
    )
    if seq.mount():
        print(f"  resumed at step {seq.current_step_index + 1}", file=sys.stderr)

    script = {
        "checkbox": ["labels", "cartons", "product"],
        "numeric": str(args.temperature),
        "text": "Cooled to 24 after 10 minutes",
        "photo": _png(),
        "qr_scan": "LINE-042",
    }

    captured = 0
    while True:
        step = seq.current_step
        print(f"\n  [{seq.progress_percent:3d}%] {step.title}", file=sys.stderr)
        for hint in seq.branch_hints:
            print(f"        {hint}", file=sys.stderr)

        if step.evidence_type is not None and step.evidence_type.value == "dual_signature":
            break
        if args.stop_after and captured >= args.stop_after:
            seq.close()
            return 0

        result = await seq.capture(script[step.evidence_type.value])
        captured += 1
        print(f"        → step {result.index + 1}{' (branch)' if result.branched else ''}",
              file=sys.stderr)

    gate = seq.begin_dual_signoff()
    gate.sign(1, "u-100", "Dana Site", _png((300, 120), (255, 255, 255)), role="site_manager")
    gate.sign(2, "u-200", "Lee QA", _png((300, 120), (250, 250, 250)), role="compliance_qa")

    result = await seq.complete()
    if not result.completed:
        print(f"  ✗ {result.message or result.reason}", file=sys.stderr)
        return 1

    summary = seq.compression_summary.render()
    print(f"\n  ✓ {task.status.value}{'  ' + summary if summary else ''}", file=sys.stderr)
    return 0


def main():
    parser = argparse.ArgumentParser(description="Run the line clearance SOP with scripted input")
    parser.add_argument("--temperature", "-t", type=float, default=22.0)
    parser.add_argument("--task-id", default="task-demo-1")
    parser.add_argument("--config", default="sop_engine.yaml")
    parser.add_argument("--db", help="Draft cache path; in-memory when omitted")
    parser.add_argument("--stop-after", type=int, default=0,
                        help="Close after N captures to leave a draft behind")
    args = parser.parse_args()

    configure_logging(level="WARNING")
    sys.exit(asyncio.run(run(args)))


if __name__ == "__main__":
    main()
