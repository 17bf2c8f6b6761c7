#!/usr/bin/env python3
"""
Container entry point: run the release step, then replace this process with
gunicorn serving `app.wsgi:app`.

Environment:
    PORT             listen port (default 8080)
    WEB_CONCURRENCY  gunicorn workers (default 2)

Usage:
    python scripts/start.py
"""

from __future__ import annotations

import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


def _int_env(name: str, default: int, *, low: int, high: int) -> str:
    raw = (os.environ.get(name) or "").strip() or str(default)
    try:
        value = int(raw)
    except ValueError:
        value = -1
    if not low <= value <= high:
        print(f"[start] {name}={raw!r} is not an integer in {low}..{high}", flush=True)
        sys.exit(1)
    return str(value)


def gunicorn_argv(port: str, workers: str) -> list[str]:
    return [
        "gunicorn",
        "app.wsgi:app",
        "--bind", f"0.0.0.0:{port}",
        "--workers", workers,
        "--timeout", "60",
        "--preload",
        "--access-logfile", "-",
        "--error-logfile", "-",
    ]


def main() -> None:
    port = _int_env("PORT", 8080, low=1, high=65535)
    workers = _int_env("WEB_CONCURRENCY", 2, low=1, high=64)

    from scripts.release import run_release

    try:
        run_release()
    except Exception as e:
        print(f"[start] release failed: {e}", flush=True)
        sys.exit(1)

    # The memory cache backend is per worker; CACHE_BACKEND=db shares it.
    print(f"[start] gunicorn on 0.0.0.0:{port} workers={workers} cache={os.environ.get('CACHE_BACKEND') or 'memory'}", flush=True)
    os.execvp("gunicorn", gunicorn_argv(port, workers))


if __name__ == "__main__":
    main()
