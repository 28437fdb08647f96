#!/usr/bin/env python3
"""Run a reconciliation job from the command line.

Dry run over everything (default):
    PYTHONPATH=. python scripts/run_reconciliation.py

Safe mode for one owner, resuming after activity 1200:
    PYTHONPATH=. python scripts/run_reconciliation.py --mode safe --owner-id 7 --resume-activities 1200

Prints the job summary as JSON. Exit code 1 when the job did not complete.
"""

import argparse
import json
import sys

from salesrecon.database import SessionLocal
from salesrecon.exceptions import ReconciliationError
from salesrecon.logging_config import setup_logging
from salesrecon.services import reconciliation_service as svc


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Reconcile sales activities with pipeline deals")
    parser.add_argument("--mode", choices=["dry_run", "safe", "aggressive"], default="dry_run")
    parser.add_argument("--owner-id", type=int)
    parser.add_argument("--batch-size", type=int)
    parser.add_argument("--max-batches", type=int)
    parser.add_argument("--parallel-batches", type=int, default=1)
    parser.add_argument("--merge-duplicates", action="store_true")
    parser.add_argument("--no-create-missing", action="store_true")
    parser.add_argument("--no-deals", action="store_true", help="skip the orphan deal phase")
    parser.add_argument("--resume-job-id")
    parser.add_argument("--resume-activities", type=int, help="resume the activity phase after this id")
    parser.add_argument("--resume-deals", type=int, help="resume the deal phase after this id")
    parser.add_argument("--actor", default="cli")
    return parser


def options_from_args(args) -> dict:
    options = {
        "owner_id": args.owner_id,
        "max_batches": args.max_batches,
        "parallel_batches": args.parallel_batches,
        "merge_duplicates": args.merge_duplicates,
        "create_missing": not args.no_create_missing,
        "include_deals": not args.no_deals,
        "resume_job_id": args.resume_job_id,
        "actor": args.actor,
    }
    if args.batch_size is not None:
        options["batch_size"] = args.batch_size
    resume = {}
    if args.resume_activities is not None:
        resume["activities"] = args.resume_activities
    if args.resume_deals is not None:
        resume["deals"] = args.resume_deals
    if resume:
        options["resume_from"] = resume
    return options


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging()

    db = SessionLocal()
    try:
        result = svc.execute(db, args.mode, options_from_args(args), session_factory=SessionLocal)
    except ReconciliationError as e:
        print(json.dumps({"error": e.message, "code": e.code, "detail": e.detail}, indent=2))
        return 2
    finally:
        db.close()

    summary = result.to_dict()
    summary.pop("batches")
    print(json.dumps(summary, indent=2, default=str))
    return 0 if result.status == "completed" else 1


if __name__ == "__main__":
    sys.exit(main())
