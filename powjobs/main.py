"""Command-line entrypoints for the proof-of-work job engine."""
from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

from powjobs.exceptions import PersistenceError, ValidationError
from powjobs.observability.log import configure_logging
from powjobs.orchestrator.jobs import VALID_ACTION_TYPES
from powjobs.orchestrator.manager import JobManager
from powjobs.pow.difficulty import calculate_difficulty, expected_iterations
from powjobs.pow.hashing import pow_entity_id, verify_proof_of_work
from powjobs.settings import DEFAULT_SETTINGS_PATH, Settings, load_settings

LOGGING_CONFIG = Path("config/logging.yaml")


def build_arg_parser() -> argparse.ArgumentParser:
    """Create the CLI argument parser."""
    parser = argparse.ArgumentParser(prog="powjobs", description="Proof-of-work job engine")
    parser.add_argument("--settings", default=str(DEFAULT_SETTINGS_PATH), help="Path to settings TOML")
    sub = parser.add_subparsers(dest="command", required=True)

    start = sub.add_parser("start", help="Run a proof-of-work job in the foreground")
    start.add_argument("--action-type", required=True, choices=VALID_ACTION_TYPES)
    start.add_argument("--entity-id", required=True, help="Struct ID, or fleet ID for raids")
    start.add_argument("--player-id", required=True, help="Player submitting the transaction")
    start.add_argument("--target-id", help="Raid target planet ID")
    start.add_argument("--difficulty-range", type=int, help="Difficulty range (looked up when omitted)")
    start.add_argument("--block-start", type=int, help="Start block height (looked up when omitted)")
    start.add_argument("--max-iterations", type=int, help="Nonce budget for the search")

    difficulty = sub.add_parser("difficulty", help="Show the difficulty for an age")
    difficulty.add_argument("--age", type=int, required=True)
    difficulty.add_argument("--range", dest="difficulty_range", type=int, required=True)

    verify = sub.add_parser("verify", help="Check a proof against the verifier rule")
    verify.add_argument("--action-type", required=True, choices=VALID_ACTION_TYPES)
    verify.add_argument("--entity-id", required=True)
    verify.add_argument("--target-id")
    verify.add_argument("--block-start", type=int, required=True)
    verify.add_argument("--nonce", required=True)
    verify.add_argument("--proof", required=True)
    verify.add_argument("--age", type=int, required=True)
    verify.add_argument("--range", dest="difficulty_range", type=int, required=True)

    return parser


async def run_start(args: argparse.Namespace, settings: Settings, settings_path: Path) -> Optional[dict]:
    """Start one job and stay attached until its worker exits."""
    try:
        manager = JobManager.from_settings(settings, settings_path=settings_path)
    except PersistenceError as exc:
        raise SystemExit(f"Cannot open job store: {exc}")
    manager.cleanup(settings.jobs.cleanup_max_age_seconds)
    run_id = "rejected"
    try:
        try:
            queued = await manager.start_job(
                action_type=args.action_type,
                entity_id=args.entity_id,
                player_id=args.player_id,
                target_id=args.target_id,
                difficulty_range=args.difficulty_range,
                max_iterations=args.max_iterations,
                block_start=args.block_start,
            )
        except ValidationError as exc:
            raise SystemExit(f"Invalid job: {exc}")
        run_id = queued["job_id"]
        print(json.dumps(queued, indent=2), flush=True)
        final = await manager.wait(run_id)
    finally:
        await manager.close()
        if settings.jobs.metrics_dir is not None:
            manager.metrics.export(path=settings.jobs.metrics_dir / f"run_{run_id}.json", run_id=run_id)
    print(json.dumps(final, indent=2))
    return final


def main(argv: Optional[List[str]] = None) -> None:
    """Entry point for the CLI."""
    load_dotenv()
    parser = build_arg_parser()
    args = parser.parse_args(argv)
    settings_path = Path(args.settings)
    configure_logging(LOGGING_CONFIG, stream=sys.stderr)

    if args.command == "difficulty":
        value = calculate_difficulty(args.age, args.difficulty_range)
        print(json.dumps({
            "age": args.age,
            "difficulty_range": args.difficulty_range,
            "difficulty": value,
            "expected_iterations": float(expected_iterations(value)),
        }, indent=2))
        return

    if args.command == "verify":
        entity = pow_entity_id(args.action_type, args.entity_id, args.target_id)
        valid = verify_proof_of_work(
            args.action_type,
            entity,
            args.block_start,
            args.nonce,
            args.proof,
            args.age,
            args.difficulty_range,
        )
        print(json.dumps({"valid": valid, "difficulty": calculate_difficulty(args.age, args.difficulty_range)}, indent=2))
        if not valid:
            raise SystemExit(1)
        return

    if args.command == "start":
        settings = load_settings(settings_path)
        final = asyncio.run(run_start(args, settings, settings_path))
        if final is None or final.get("status") != "completed":
            raise SystemExit(1)


if __name__ == "__main__":
    main()
