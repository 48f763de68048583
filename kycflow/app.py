import argparse
import json
from dataclasses import replace
from pathlib import Path

from . import __version__
from .cleanup import reap_stale_entries
from .config import Settings
from .database import init_database, session_scope
from .env import load_env
from .errors import (
    ConcurrentDuplicate,
    ConflictError,
    ExternalUnavailable,
    InvalidRequestError,
    OnboardingError,
)
from .idempotency import IdempotencyStore
from .logger import get_logger
from .orchestrator import OnboardingOrchestrator
from .schema import CreateOnboardingRequest, validate_request, validate_request_id
from .storage import AuditSink, OnboardingRepository
from .workers import OnboardingWorkerPool

EXIT_INVALID = 2
EXIT_CONFLICT = 3
EXIT_RETRY_LATER = 4
EXIT_INTERNAL = 5


def _load_json(path_str: str) -> dict:
    input_path = Path(path_str)
    if not input_path.exists():
        raise SystemExit(f"Input file not found: {input_path}")
    with input_path.open("r", encoding="utf-8") as f:
        return json.load(f)


def _db_path(args: argparse.Namespace, settings: Settings) -> Path:
    return Path(args.db) if getattr(args, "db", None) else settings.db_path


def _exit_code(error: OnboardingError) -> int:
    if isinstance(error, InvalidRequestError):
        return EXIT_INVALID
    if isinstance(error, ConflictError):
        return EXIT_CONFLICT
    if isinstance(error, (ExternalUnavailable, ConcurrentDuplicate)):
        return EXIT_RETRY_LATER
    return EXIT_INTERNAL


def cmd_init_db(args: argparse.Namespace, settings: Settings) -> None:
    db_path = _db_path(args, settings)
    init_database(db_path)
    print(f"Database ready: {db_path}")


def cmd_validate(args: argparse.Namespace, settings: Settings) -> None:
    errors = validate_request(_load_json(args.input))
    if errors:
        print("Invalid:")
        for e in errors:
            print(f" - {e}")
        raise SystemExit(EXIT_INVALID)
    print("Valid")


def cmd_create(args: argparse.Namespace, settings: Settings) -> None:
    data = _load_json(args.input)
    errors = validate_request(data)
    if errors:
        raise SystemExit("Invalid request: " + "; ".join(errors))

    db_path = _db_path(args, settings)
    init_database(db_path)
    orchestrator = OnboardingOrchestrator.from_settings(_with_db(settings, db_path))
    try:
        response = orchestrator.create(CreateOnboardingRequest.from_dict(data), args.request_id)
    except OnboardingError as e:
        print(f"[{type(e).__name__}] {e}")
        raise SystemExit(_exit_code(e))
    label = "replayed" if response.replayed else "new"
    print(f"[{label}] HTTP {response.status_code}")
    print(json.dumps(response.payload, indent=2))


def _parse_batch_line(line: str) -> tuple:
    """Return (request, request_id) for one JSONL line, or raise ValueError."""
    try:
        entry = json.loads(line)
    except ValueError as e:
        raise ValueError(f"not valid JSON ({e})") from e
    if not isinstance(entry, dict) or not isinstance(entry.get("request"), dict):
        raise ValueError('expected {"request_id": "...", "request": {...}}')
    request_id = entry.get("request_id")
    errors = validate_request_id(request_id) + validate_request(entry["request"])
    if errors:
        raise ValueError("; ".join(errors))
    return CreateOnboardingRequest.from_dict(entry["request"]), request_id


def cmd_batch(args: argparse.Namespace, settings: Settings) -> None:
    """Each line: {"request_id": "...", "request": {...}}"""
    input_path = Path(args.input)
    if not input_path.exists():
        raise SystemExit(f"Input file not found: {input_path}")

    items = []
    invalid = 0
    with input_path.open("r", encoding="utf-8") as f:
        for line_no, line in enumerate(f, start=1):
            line = line.strip()
            if not line or line.startswith("#"):
                continue
            try:
                items.append(_parse_batch_line(line))
            except ValueError as e:
                print(f"[invalid] line {line_no}: {e}")
                invalid += 1

    db_path = _db_path(args, settings)
    init_database(db_path)
    orchestrator = OnboardingOrchestrator.from_settings(_with_db(settings, db_path))
    created = failed = errored = 0
    with OnboardingWorkerPool(orchestrator, max_workers=args.workers or settings.max_workers) as pool:
        futures = pool.run_all(items)
        for (_, request_id), future in zip(items, futures):
            try:
                response = future.result()
            except OnboardingError as e:
                print(f"[{type(e).__name__}] {request_id} -> {e}")
                errored += 1
                continue
            status = response.payload["overall_status"]
            if status == "created":
                created += 1
            else:
                failed += 1
            print(f"[{status}] {request_id} -> {response.payload['reference_id']}")
    print(
        f"Done. total={len(items) + invalid} created={created} failed={failed} "
        f"errors={errored} invalid={invalid}"
    )
    if invalid:
        raise SystemExit(EXIT_INVALID)


def cmd_show(args: argparse.Namespace, settings: Settings) -> None:
    db_path = _db_path(args, settings)
    with session_scope(db_path) as session:
        repo = OnboardingRepository(session)
        if args.reference_id:
            record = repo.get_by_reference(args.reference_id)
        else:
            record = repo.get_by_request_id(args.request_id)
        entry = IdempotencyStore().get(session, record.request_id if record else args.request_id)

        if record is None and entry is None:
            print("Not found.")
            return
        if entry is not None:
            print(f"Request: {entry.request_id}")
            print(f"  State: {entry.state} (attempts={entry.attempts})")
        if record is not None:
            print(f"Reference: {record.reference_id}")
            print(f"  Customer: {record.customer_id}")
            print(f"  Identity: {record.identity_status}")
            print(f"  Residence: {record.residence_status}")
            print(f"  Overall: {record.overall_status or 'in flight'}")
            for event in AuditSink(session).list_for(record.reference_id):
                print(f"  Event: {event.created_at.isoformat()} {event.event}")


def cmd_reap(args: argparse.Namespace, settings: Settings) -> None:
    reaped = reap_stale_entries(_db_path(args, settings), older_than=args.older_than)
    print(f"Reaped {reaped} stale in-progress requests")


def _with_db(settings: Settings, db_path: Path) -> Settings:
    return replace(settings, db_path=db_path)


def main(argv=None):
    # Load .env if present (KYCFLOW_* settings)
    load_env()
    settings = Settings.from_env()
    get_logger().configure(
        level=settings.log_level,
        log_dir=settings.log_dir,
        enable_file=settings.log_dir is not None,
    )

    parser = argparse.ArgumentParser(prog="kycflow", description="Idempotent customer onboarding")
    parser.add_argument("--version", action="store_true", help="Show version")
    parser.add_argument("--db", help="Path to SQLite database (default: KYCFLOW_DB_PATH or data/kycflow.db)")

    subparsers = parser.add_subparsers(dest="command")
    ini = subparsers.add_parser("init-db", help="Create tables")
    ini.set_defaults(func=cmd_init_db)

    val = subparsers.add_parser("validate", help="Check a request JSON for required fields")
    val.add_argument("--input", required=True, help="Path to request JSON")
    val.set_defaults(func=cmd_validate)

    cre = subparsers.add_parser("create", help="Onboard one customer")
    cre.add_argument("--input", required=True, help="Path to request JSON")
    cre.add_argument("--request-id", required=True, help="Idempotency key; reuse it to retry safely")
    cre.set_defaults(func=cmd_create)

    bat = subparsers.add_parser("batch", help="Onboard customers from a JSON-lines file concurrently")
    bat.add_argument("--input", required=True, help="JSONL file of {request_id, request}")
    bat.add_argument("--workers", type=int, help="Worker threads (default: KYCFLOW_MAX_WORKERS)")
    bat.set_defaults(func=cmd_batch)

    shw = subparsers.add_parser("show", help="Show an onboarding record and its request state")
    grp = shw.add_mutually_exclusive_group(required=True)
    grp.add_argument("--reference-id", help="Onboarding reference id")
    grp.add_argument("--request-id", help="Idempotency key")
    shw.set_defaults(func=cmd_show)

    rep = subparsers.add_parser("reap", help="Fail in-progress requests abandoned by a crashed worker")
    rep.add_argument("--older-than", type=float, required=True, help="Age threshold in seconds")
    rep.set_defaults(func=cmd_reap)

    args = parser.parse_args(argv)

    if args.version:
        print(__version__)
        return

    if hasattr(args, "func"):
        args.func(args, settings)
        return

    parser.print_help()


if __name__ == "__main__":
    main()
