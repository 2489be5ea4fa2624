#!/usr/bin/env python3
"""
Run one guarded status sync from the command line and print the summary.

Usage (from backend directory):
  python scripts/run_sync_once.py [options]

Options:
  --classifier NAME  openai | rules (default: CLASSIFIER_BACKEND)
  --reset-checkpoint Forget the mailbox cursor first (rescans the lookback window)
  --json             Print the summary as JSON

Exit status is 0 for a completed or rate-limited run, 1 for a failed run,
2 when another run holds the guard.
"""
import argparse
import json
import logging
import os
import sys

_script_dir = os.path.dirname(os.path.abspath(__file__))
_backend = os.path.dirname(_script_dir)
if _backend not in sys.path:
    sys.path.insert(0, _backend)

from mailsync.database import SessionLocal, init_db
from mailsync.scheduler import SyncScheduler
from mailsync.services.classifier import get_signal_classifier
from mailsync.services.store import SqlApplicationStore
from mailsync.services.sync_orchestrator import build_orchestrator

logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')


def main() -> int:
    parser = argparse.ArgumentParser(
        description="Run one email status sync.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--classifier", choices=("openai", "rules"), default=None, help="Classifier backend")
    parser.add_argument("--reset-checkpoint", action="store_true", help="Clear the checkpoint before running")
    parser.add_argument("--json", action="store_true", help="Print the summary as JSON")
    args = parser.parse_args()

    init_db()

    def run(trigger: str):
        db = SessionLocal()
        try:
            if args.reset_checkpoint:
                SqlApplicationStore(db).reset_checkpoint()
            classifier = get_signal_classifier(args.classifier)
            return build_orchestrator(db, classifier=classifier).run(trigger)
        finally:
            db.close()

    summary = SyncScheduler(run_fn=run).run_once("cli")
    if summary is None:
        print("A sync run is already in progress.", file=sys.stderr)
        return 2

    if args.json:
        print(json.dumps(summary.model_dump(mode="json"), indent=2))
    else:
        print(
            f"{summary.status}: scanned={summary.messages_scanned} signals={summary.signals_found} "
            f"updated={summary.applications_updated} noops={summary.noops} "
            f"low_confidence={summary.low_confidence} no_match={summary.no_match} "
            f"ambiguous={len(summary.ambiguous)} invalid={summary.invalid_transitions} "
            f"conflicts={summary.conflicts}"
        )
        for amb in summary.ambiguous:
            ids = ", ".join(str(c.application_id) for c in amb.candidates)
            print(f"  review: message {amb.message_id} ({amb.extracted_company}) -> applications {ids}")
        for err in summary.errors:
            print(f"  error: {err}", file=sys.stderr)
    return 1 if summary.status == "failed" else 0


if __name__ == "__main__":
    sys.exit(main())
