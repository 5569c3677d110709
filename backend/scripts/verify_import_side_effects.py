"""Check that importing the durable runtime starts nothing.

The container, engine, scheduler and Redis stores are built lazily by the app
startup hook. This script imports the modules in a fresh interpreter, once per
backend mode, and reports any of the following left behind by the import:

- files created under DURABLE_DATA_DIR
- asyncio event loops or pending tasks
- Redis clients (sync or asyncio)
- threads other than the main thread, e.g. activity workers

Exit status is 1 when anything is found.
"""

from __future__ import annotations

import argparse
import json
import os
import subprocess
import sys
import tempfile
from pathlib import Path

DEFAULT_MODULES = [
    "durable.api",
    "durable.main",
    "durable.container",
    "durable.approval.orchestrators",
    "durable.distributed.redis_stores",
    "durable.distributed.redis_lease",
]

# Runs in the child interpreter; prints one JSON object on its last line.
_INSPECT = """
import asyncio, gc, json, sys, threading
for name in sys.argv[1:]:
    __import__(name)
import redis
import redis.asyncio
loops = [o for o in gc.get_objects() if isinstance(o, asyncio.AbstractEventLoop)]
tasks = [o for o in gc.get_objects() if isinstance(o, asyncio.Task) and not o.done()]
clients = [o for o in gc.get_objects() if isinstance(o, (redis.Redis, redis.asyncio.Redis))]
threads = [t.name for t in threading.enumerate() if t is not threading.main_thread()]
print(json.dumps({
    "event_loops": len(loops),
    "pending_tasks": len(tasks),
    "redis_clients": len(clients),
    "threads": threads,
}))
"""


def _data_files(data_dir: Path) -> list[str]:
    if not data_dir.exists():
        return []
    return sorted(str(p.relative_to(data_dir)) for p in data_dir.rglob("*") if p.is_file())


def _inspect_imports(modules: list[str], mode: str, data_dir: Path, redis_url: str) -> dict:
    env = dict(os.environ)
    env.update(
        {
            "PYTHONDONTWRITEBYTECODE": "1",
            "BACKEND_MODE": mode,
            "DURABLE_DATA_DIR": str(data_dir),
            "REDIS_URL": redis_url,
        }
    )
    proc = subprocess.run(
        [sys.executable, "-c", _INSPECT, *modules],
        env=env,
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        text=True,
        check=False,
    )
    if proc.returncode != 0:
        return {"import_error": proc.stdout.strip()}
    report = json.loads(proc.stdout.strip().splitlines()[-1])
    report["data_files"] = _data_files(data_dir)
    return report


def _problems(report: dict) -> list[str]:
    if "import_error" in report:
        return [report["import_error"]]
    found = []
    for field in ("event_loops", "pending_tasks", "redis_clients"):
        if report[field]:
            found.append(f"{field}={report[field]}")
    if report["threads"]:
        found.append(f"threads={report['threads']}")
    if report["data_files"]:
        found.append(f"data_files={report['data_files']}")
    return found


def main() -> int:
    parser = argparse.ArgumentParser(
        description="Verify importing the durable runtime starts no loops, clients, threads or files."
    )
    parser.add_argument("--modules", nargs="+", default=DEFAULT_MODULES)
    parser.add_argument(
        "--modes",
        nargs="+",
        default=["single_process", "distributed"],
        choices=["single_process", "distributed"],
    )
    parser.add_argument(
        "--redis-url",
        default="redis://127.0.0.1:6379/0",
        help="Only used to configure distributed mode; no connection is expected.",
    )
    args = parser.parse_args()

    failed = False
    for mode in args.modes:
        with tempfile.TemporaryDirectory(prefix="durable-import-") as scratch:
            report = _inspect_imports(list(args.modules), mode, Path(scratch) / "data", args.redis_url)
        problems = _problems(report)
        print(f"mode={mode} import_side_effects_detected={str(bool(problems)).lower()}")
        if problems:
            failed = True
            print(json.dumps(report, indent=2, sort_keys=True))
    return 1 if failed else 0


if __name__ == "__main__":
    raise SystemExit(main())
