"""Administrative CLI utilities."""
from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import List, Optional

from powjobs.admin.status import filter_jobs, load_jobs, summarise_jobs
from powjobs.observability.log import configure_logging
from powjobs.orchestrator.jobs import ACTIVE_STATUSES, TERMINAL_STATUSES

DEFAULT_STORE = "data/jobs/jobs.json"
NOT_FOUND_MESSAGE = "Job not found. It may have been cleaned up or never existed."


def cmd_status(args: argparse.Namespace) -> None:
    jobs = load_jobs(Path(args.store))
    record = jobs.get(args.job_id)
    if record is None:
        print(json.dumps({"job_id": args.job_id, "status": "not_found", "message": NOT_FOUND_MESSAGE}, indent=2))
        return
    print(json.dumps(record, indent=2))


def cmd_list(args: argparse.Namespace) -> None:
    jobs = load_jobs(Path(args.store))
    rows = [
        {
            "job_id": record.get("job_id"),
            "status": record.get("status"),
            "action_type": (record.get("job_data") or {}).get("action_type"),
            "entity_id": (record.get("job_data") or {}).get("entity_id"),
            "started_at": record.get("started_at"),
            "completed_at": record.get("completed_at"),
            "error": record.get("error"),
        }
        for record in filter_jobs(jobs, args.status)
    ]
    print(json.dumps(rows, indent=2))


def cmd_summary(args: argparse.Namespace) -> None:
    print(json.dumps(summarise_jobs(load_jobs(Path(args.store))), indent=2))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="powjobs-admin", description="Inspect persisted proof-of-work jobs")
    parser.add_argument("--store", default=DEFAULT_STORE, help="Path to the job registry file")
    sub = parser.add_subparsers(dest="command", required=True)

    status = sub.add_parser("status", help="Show one job")
    status.add_argument("--job-id", required=True)

    listing = sub.add_parser("list", help="List jobs, oldest first")
    listing.add_argument("--status", choices=sorted(ACTIVE_STATUSES | TERMINAL_STATUSES))

    sub.add_parser("summary", help="Count jobs per status and action type")

    return parser


def main(argv: Optional[List[str]] = None) -> None:
    configure_logging(Path("config/logging.yaml"), stream=sys.stderr)
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command == "status":
        cmd_status(args)
        return
    if args.command == "list":
        cmd_list(args)
        return
    if args.command == "summary":
        cmd_summary(args)
        return


if __name__ == "__main__":
    main()
