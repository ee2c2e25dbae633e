from __future__ import annotations

import argparse
import asyncio
import json
import os
import sys
from pathlib import Path

REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.append(str(REPO_ROOT))

from deckflow.workflow.runtime import DeckflowRuntime  # noqa: E402
from deckflow.workflow.utils.settings import default_settings  # noqa: E402


def load_env(env_path: Path | str = ".env") -> None:
    """Copy KEY=VALUE lines from a .env file into the environment without overriding."""
    path = Path(env_path)
    if not path.exists():
        return
    for line in path.read_text().splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith("#") or "=" not in stripped:
            continue
        key, value = stripped.split("=", 1)
        os.environ.setdefault(key.strip(), value.strip())


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Operate the deckflow job queue from the command line.")
    parser.add_argument("--db-url", help="Override DB_URL")
    sub = parser.add_subparsers(dest="command", required=True)

    process = sub.add_parser("process", help="Claim and run pending jobs")
    process.add_argument("--limit", type=int, default=None, help="Maximum jobs per batch")
    process.add_argument("--batches", type=int, default=1, help="Number of batches to run")

    reclaim = sub.add_parser("reclaim", help="Return stale processing jobs to pending")
    reclaim.add_argument("--older-than", type=int, default=None, help="Seconds without progress")

    sub.add_parser("stats", help="Print job counts by status")
    return parser.parse_args(argv)


async def run(args: argparse.Namespace) -> dict:
    override = {"db_url": args.db_url} if args.db_url else None
    runtime = await DeckflowRuntime(default_settings(override=override)).start()
    try:
        if args.command == "process":
            processed: list[str] = []
            for _ in range(max(1, args.batches)):
                batch = await runtime.dispatcher.run_batch(args.limit)
                if not batch:
                    break
                processed.extend(batch)
            return {"processed": processed, "count": len(processed)}
        if args.command == "reclaim":
            seconds = args.older_than or runtime.settings.stale_job_seconds
            return {"reclaimed": await runtime.queue.reclaim_stale(seconds)}
        return await runtime.queue.stats()
    finally:
        await runtime.close()


def main(argv: list[str] | None = None) -> int:
    load_env()
    args = parse_args(argv)
    try:
        result = asyncio.run(run(args))
    except Exception as exc:
        print(f"Job command failed: {exc}", file=sys.stderr)
        return 1
    print(json.dumps(result, indent=2))
    return 0


if __name__ == "__main__":
    sys.exit(main())
