"""Command-line front end for the FSQA audit scoring engine."""

from __future__ import annotations

import argparse
import json
import logging
import sys
from dataclasses import asdict
from pathlib import Path
from typing import Any, List, Optional

from db import get_engine
from fsqa_config import Settings, configure_logging, load_settings
from fsqa_engine import findings_to_frames, modules_to_frame, snapshots_to_frame
from fsqa_errors import FsqaError, NotFoundError, PersistenceError, ValidationError
from fsqa_store import SqlAuditStore
import fsqa_service as service

LOGGER = logging.getLogger(__name__)

EXIT_CODES = {ValidationError: 2, NotFoundError: 3, PersistenceError: 1}


def _emit(payload: Any) -> None:
    print(json.dumps(payload, indent=2, default=str))


def _read_json(path: Path) -> Any:
    try:
        with path.open("r", encoding="utf-8") as handle:
            return json.load(handle)
    except OSError as exc:
        raise ValidationError(f"{path}: cannot read file ({exc.strerror or exc})") from exc
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise ValidationError(f"{path}: invalid JSON ({exc})") from exc


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--database-url", default=None, help="Overrides FSQA_DATABASE_URL / DATABASE_URL")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init-db", help="Create tables (SQLite dev database)")

    p = sub.add_parser("load-catalog", help="Seed modules, questions, facilities from a JSON file")
    p.add_argument("path", type=Path)

    p = sub.add_parser("create-session")
    p.add_argument("facility_id", type=int)
    p.add_argument("--user-id", type=int, default=None)

    p = sub.add_parser("sessions")
    p.add_argument("--facility-id", type=int, default=None)

    p = sub.add_parser("session")
    p.add_argument("session_id", type=int)

    p = sub.add_parser("save-responses", help="Upsert responses from a JSON array file")
    p.add_argument("session_id", type=int)
    p.add_argument("path", type=Path)

    p = sub.add_parser("score")
    p.add_argument("session_id", type=int)

    p = sub.add_parser("findings")
    p.add_argument("--session-id", type=int, default=None)
    p.add_argument("--facility-id", type=int, default=None)
    p.add_argument("--status", default=None)
    p.add_argument("--generate", action="store_true", help="Open findings for --session-id first")
    p.add_argument("--user-id", type=int, default=None)
    p.add_argument("--summary", action="store_true")

    p = sub.add_parser("readiness")
    p.add_argument("facility_id", type=int, nargs="?", default=None, help="Omit for all active facilities")

    p = sub.add_parser("snapshot")
    p.add_argument("facility_id", type=int)
    p.add_argument("--user-id", type=int, default=None)

    p = sub.add_parser("snapshots")
    p.add_argument("facility_id", type=int)

    p = sub.add_parser("residue")
    p.add_argument("--user-id", type=int, default=None)
    p.add_argument("--facility-id", type=int, default=None)

    p = sub.add_parser("export", help="Write a CSV for a session or facility")
    p.add_argument("kind", choices=["modules", "findings", "snapshots"])
    p.add_argument("--session-id", type=int, default=None)
    p.add_argument("--facility-id", type=int, default=None)
    p.add_argument("--out", type=Path, required=True)

    return parser.parse_args(argv)


def run(args: argparse.Namespace, store: SqlAuditStore, settings: Settings) -> Any:
    cmd = args.command
    if cmd == "init-db":
        store.bootstrap()
        return {"message": "Database ready"}
    if cmd == "load-catalog":
        return service.load_catalog(store, _read_json(args.path))
    if cmd == "create-session":
        return service.create_session(store, args.facility_id, user_id=args.user_id).to_dict()
    if cmd == "sessions":
        sessions = service.list_sessions(store, args.facility_id, limit=settings.session_list_limit)
        return {"sessions": [asdict(s) for s in sessions]}
    if cmd == "session":
        return service.get_session(store, args.session_id).to_dict()
    if cmd == "save-responses":
        return service.save_responses(store, args.session_id, _read_json(args.path)).to_dict()
    if cmd == "score":
        return service.compute_score(store, args.session_id).to_dict()
    if cmd == "findings":
        if args.generate:
            if args.session_id is None:
                raise ValidationError("--generate needs --session-id")
            service.generate_findings(store, args.session_id, created_by=args.user_id)
        if args.summary:
            return service.findings_summary(store, args.facility_id)
        found = service.list_findings(store, args.session_id, args.facility_id, args.status)
        return {"findings": [asdict(f) for f in found]}
    if cmd == "readiness":
        if args.facility_id is None:
            return {"facilities": [r.to_dict() for r in service.readiness_summary(store)]}
        return service.compute_readiness(store, args.facility_id).to_dict()
    if cmd == "snapshot":
        return service.save_snapshot(store, args.facility_id, triggered_by=args.user_id).to_dict()
    if cmd == "snapshots":
        snaps = service.list_snapshots(store, args.facility_id, limit=settings.snapshot_history_limit)
        return {"snapshots": [asdict(s) for s in snaps]}
    if cmd == "residue":
        return service.compute_residue_compliance(store, args.user_id, args.facility_id).to_dict()
    if cmd == "export":
        return export(args, store, settings)
    raise ValidationError(f"Unknown command: {cmd}")


def export(args: argparse.Namespace, store: SqlAuditStore, settings: Settings) -> dict:
    if args.kind == "modules":
        if args.session_id is None:
            raise ValidationError("export modules needs --session-id")
        df = modules_to_frame(service.compute_score(store, args.session_id))
    elif args.kind == "findings":
        df, _ = findings_to_frames(service.list_findings(store, args.session_id, args.facility_id))
    else:
        if args.facility_id is None:
            raise ValidationError("export snapshots needs --facility-id")
        df = snapshots_to_frame(service.list_snapshots(store, args.facility_id, limit=settings.snapshot_history_limit))
    df.to_csv(args.out, index=False)
    LOGGER.info("Wrote %s rows to %s", len(df), args.out)
    return {"rows": int(len(df)), "path": str(args.out)}


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    settings = load_settings()
    configure_logging(settings)
    store = SqlAuditStore(get_engine(args.database_url or settings.database_url))
    try:
        _emit(run(args, store, settings))
    except FsqaError as exc:
        print(json.dumps({"error": str(exc)}), file=sys.stderr)
        return EXIT_CODES.get(type(exc), 1)
    return 0


if __name__ == "__main__":
    sys.exit(main())
