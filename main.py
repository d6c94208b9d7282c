# outbox/main.py
"""Inspect and maintain the local outbox database."""
from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path

from core.settings import APP_NAME, DB_PATH
from services.errors import OutboxError
from services.network import NetworkObserver
from services.operation import OperationStatus
from services.outbox import OutboxSynchronizer, open_outbox


def _print_ops(ops, out) -> None:
    for op in ops:
        out.write(json.dumps(op.to_dict(), ensure_ascii=False, sort_keys=True) + "\n")


def _cmd_status(outbox: OutboxSynchronizer, args, out) -> int:
    status = outbox.status()
    status.pop("online", None)
    status.pop("processing", None)
    out.write(json.dumps(status, sort_keys=True) + "\n")
    return 0


def _cmd_list(outbox: OutboxSynchronizer, args, out) -> int:
    if args.entity:
        ops = outbox.list_by_entity(args.entity)
        if args.status:
            ops = [op for op in ops if op.status == OperationStatus(args.status)]
    elif args.status:
        ops = outbox.list_by_status(OperationStatus(args.status))
    else:
        ops = outbox.list_all()
    _print_ops(ops, out)
    return 0


def _cmd_show(outbox: OutboxSynchronizer, args, out) -> int:
    op = outbox.get(args.id)
    if op is None:
        sys.stderr.write(f"Operation {args.id} not found\n")
        return 1
    out.write(json.dumps(op.to_dict(), ensure_ascii=False, indent=2, sort_keys=True) + "\n")
    return 0


def _cmd_retry(outbox: OutboxSynchronizer, args, out) -> int:
    op = asyncio.run(outbox.retry(args.id))
    if op is None:
        sys.stderr.write(f"Operation {args.id} not found\n")
        return 1
    out.write(f"{op.id} {op.status.value}\n")
    return 0


def _cmd_remove(outbox: OutboxSynchronizer, args, out) -> int:
    if outbox.get(args.id) is None:
        sys.stderr.write(f"Operation {args.id} not found\n")
        return 1
    asyncio.run(outbox.remove(args.id))
    out.write(f"{args.id} removed\n")
    return 0


def _cmd_export(outbox: OutboxSynchronizer, args, out) -> int:
    payload = json.dumps(
        [op.to_dict() for op in outbox.list_all()], ensure_ascii=False, indent=2, sort_keys=True
    )
    if args.out:
        Path(args.out).write_text(payload + "\n", encoding="utf-8")
    else:
        out.write(payload + "\n")
    return 0


COMMANDS = {
    "status": _cmd_status,
    "list": _cmd_list,
    "show": _cmd_show,
    "retry": _cmd_retry,
    "remove": _cmd_remove,
    "export": _cmd_export,
}


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog=APP_NAME.lower(), description="Inspect the pending write queue.")
    ap.add_argument("--db", type=str, default=str(DB_PATH), help=f"SQLite database (default: {DB_PATH})")
    sub = ap.add_subparsers(dest="command", required=True)

    sub.add_parser("status", help="Counts per status")

    ls = sub.add_parser("list", help="List queued operations as JSON lines")
    ls.add_argument("--status", choices=[s.value for s in OperationStatus])
    ls.add_argument("--entity", help="Only operations targeting this entity type")

    show = sub.add_parser("show", help="Show one operation")
    show.add_argument("id")

    retry = sub.add_parser("retry", help="Reset a failed operation to pending")
    retry.add_argument("id")

    remove = sub.add_parser("remove", help="Discard an operation")
    remove.add_argument("id")

    export = sub.add_parser("export", help="Dump every operation as a JSON array")
    export.add_argument("--out", help="Write to this file instead of stdout")
    return ap


def main(argv: list[str] | None = None, out=None) -> int:
    args = build_parser().parse_args(argv)
    out = out or sys.stdout
    outbox = None
    try:
        # No transport here: retries are only re-queued, the application delivers them.
        outbox = open_outbox(db_path=Path(args.db), network=NetworkObserver(online=False))
        return COMMANDS[args.command](outbox, args, out)
    except OutboxError as exc:
        sys.stderr.write(f"error: {exc}\n")
        return 2
    finally:
        if outbox is not None:
            outbox.stop()


if __name__ == "__main__":
    sys.exit(main())
