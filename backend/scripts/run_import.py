#!/usr/bin/env python3
"""
Run a workspace's mailbox import in-process, hop after hop (no Redis/Celery).

Each hop is exactly what the Celery relay would run; instead of dispatching the
next hop to a worker, this script runs it in the same process.

Usage (from backend/; use the project venv):
  ./.venv/bin/python scripts/run_import.py --workspace-id ws_123

Common examples:
  # Import the last 1000 messages, then classify and learn the voice profile
  ./.venv/bin/python scripts/run_import.py --workspace-id ws_123 --mode last_1000 --classify

  # Resume an existing job
  ./.venv/bin/python scripts/run_import.py --workspace-id ws_123 --job-id 6f1c...
"""

from __future__ import annotations

import argparse
import logging
import os
import sys
import time

# Ensure backend package is importable when run as script from backend or project root
_script_dir = os.path.dirname(os.path.abspath(__file__))
_backend = os.path.dirname(_script_dir)
if _backend not in sys.path:
    sys.path.insert(0, _backend)

from bizzybee.config import settings
from bizzybee.database import SessionLocal, init_db
from bizzybee.relay import CLASSIFY_RELAY_TASK, IMPORT_RELAY_TASK, LEARN_VOICE_TASK
from bizzybee.services.batch_importer import run_import_batch
from bizzybee.services.bulk_classifier import run_classify_batch
from bizzybee.services.voice_learning import learn_voice_profile

logger = logging.getLogger("run_import")


class LoopDispatcher:
    """Remembers the hop a service asked for so the loop below can run it next."""

    def __init__(self):
        self.pending: list[tuple[str, dict, float]] = []

    def dispatch(self, task_name: str, kwargs: dict, countdown_s: float = 0) -> None:
        self.pending.append((task_name, dict(kwargs), countdown_s or 0))


def main() -> int:
    parser = argparse.ArgumentParser(
        description="Run the relay import for one workspace in-process.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--workspace-id", required=True, help="Workspace to import")
    parser.add_argument("--job-id", default=None, help="Resume this import job")
    parser.add_argument("--mode", default="last_1000", choices=["last_100", "last_1000", "full"])
    parser.add_argument("--classify", action="store_true", help="Continue into classification and voice learning")
    parser.add_argument("--max-hops", type=int, default=1000, help="Safety stop (default: 1000)")
    args = parser.parse_args()

    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    init_db()

    dispatcher = LoopDispatcher()
    dispatcher.dispatch(IMPORT_RELAY_TASK, {
        "workspace_id": args.workspace_id,
        "job_id": args.job_id,
        "import_mode": args.mode,
    })
    db = SessionLocal()
    hops = 0
    last = {}
    try:
        while dispatcher.pending and hops < args.max_hops:
            task_name, kwargs, countdown = dispatcher.pending.pop(0)
            if countdown:
                logger.info(f"Waiting {countdown:.0f}s before next hop")
                time.sleep(countdown)
            hops += 1
            if task_name == IMPORT_RELAY_TASK:
                last = run_import_batch(db, dispatcher=dispatcher, **kwargs)
            elif not args.classify:
                break
            elif task_name == CLASSIFY_RELAY_TASK:
                last = run_classify_batch(db, dispatcher=dispatcher, **kwargs)
            elif task_name == LEARN_VOICE_TASK:
                last = learn_voice_profile(db, kwargs["workspace_id"])
            print(f"hop {hops}: {task_name.rsplit('.', 1)[-1]} -> {last.get('status', 'ok')}")
            if last.get("status") in ("error", "cancelled", "skipped"):
                break
    finally:
        db.close()

    print(f"Done after {hops} hop(s): {last}")
    return 1 if last.get("status") == "error" else 0


if __name__ == "__main__":
    sys.exit(main())
