"""Remote agent diagnostics CLI."""

from __future__ import annotations

import argparse
import json

from botocore.exceptions import BotoCoreError, ClientError

from remote_agent_mcp.compute import CloudWatchLogSource
from remote_agent_mcp.config import RemoteAgentSettings, resolve_infrastructure
from remote_agent_mcp.storage import AmbiguousTaskIdError, TaskStore, TaskStoreError


def load_settings() -> RemoteAgentSettings:
    return resolve_infrastructure(RemoteAgentSettings())


def load_store(settings: RemoteAgentSettings) -> TaskStore:
    if not settings.bucket_name:
        print("Store unavailable: no bucket configured (set REMOTE_AGENT_S3_BUCKET or deploy the stack)")
        raise SystemExit(1)
    return TaskStore.from_settings(settings)


def load_log_source(settings: RemoteAgentSettings) -> CloudWatchLogSource:
    return CloudWatchLogSource(settings)


def _resolve(store: TaskStore, task_id: str) -> str:
    try:
        full_id = store.resolve_task_id(task_id)
    except AmbiguousTaskIdError as exc:
        print(str(exc))
        raise SystemExit(1)
    if full_id is None:
        print(f"No task found with ID: {task_id}")
        raise SystemExit(1)
    return full_id


def cmd_tasks(args: argparse.Namespace) -> None:
    settings = load_settings()
    store = load_store(settings)
    try:
        records = store.list_tasks(limit=args.limit)
    except (ClientError, BotoCoreError, TaskStoreError) as exc:
        print(f"Store unavailable: {exc}")
        raise SystemExit(1)
    if args.status:
        records = [record for record in records if record.status == args.status]
    if args.json:
        print(json.dumps([record.model_dump(by_alias=True) for record in records], indent=2))
    else:
        for record in records:
            print(f"{record.short_id} [{record.status}] {record.started_at} {record.prompt[:60]}")


def cmd_show(args: argparse.Namespace) -> None:
    settings = load_settings()
    store = load_store(settings)
    try:
        full_id = _resolve(store, args.task_id)
        record = store.get_metadata(full_id)
        patch = store.get_patch(full_id)
    except (ClientError, BotoCoreError, TaskStoreError) as exc:
        print(f"Store unavailable: {exc}")
        raise SystemExit(1)
    if record is None:
        print(f"No task found with ID: {args.task_id}")
        raise SystemExit(1)
    payload = record.model_dump(by_alias=True)
    payload["hasPatch"] = bool(patch and patch.strip())
    print(json.dumps(payload, indent=2))


def cmd_logs(args: argparse.Namespace) -> None:
    settings = load_settings()
    store = load_store(settings)
    try:
        full_id = _resolve(store, args.task_id)
        record = store.get_metadata(full_id)
        lines = load_log_source(settings).fetch_recent(
            full_id,
            unit_id=record.unit_id if record else None,
            limit=args.lines,
        )
    except (ClientError, BotoCoreError, TaskStoreError) as exc:
        print(f"Logs unavailable: {exc}")
        raise SystemExit(1)
    for line in lines:
        print(line)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Remote agent diagnostics")
    sub = parser.add_subparsers(dest="cmd")

    p_tasks = sub.add_parser("tasks", help="List recent tasks")
    p_tasks.add_argument("--json", action="store_true", help="Output JSON")
    p_tasks.add_argument("--limit", type=int, default=20)
    p_tasks.add_argument("--status", choices=["running", "completed", "failed", "cancelled"])
    p_tasks.set_defaults(func=cmd_tasks)

    p_show = sub.add_parser("show", help="Show one task's metadata")
    p_show.add_argument("task_id", help="Full task id or unambiguous prefix")
    p_show.set_defaults(func=cmd_show)

    p_logs = sub.add_parser("logs", help="Print recent log lines of a task")
    p_logs.add_argument("task_id", help="Full task id or unambiguous prefix")
    p_logs.add_argument("--lines", type=int, default=50)
    p_logs.set_defaults(func=cmd_logs)

    return parser


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not hasattr(args, "func"):
        parser.print_help()
        return
    args.func(args)


if __name__ == "__main__":
    main()
