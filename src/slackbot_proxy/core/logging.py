"""Structured event log for the slackbot proxy.

Every event lands twice under ``runtime/logs``: a ``key=value`` line in
``slackbot-proxy.log`` for people and a JSON object in ``slackbot-proxy.jsonl``
for tooling. Both files rotate together.
"""

from __future__ import annotations

import asyncio
import json
import os
from datetime import datetime
from pathlib import Path
from threading import Lock
from typing import Any

from .metrics import METRICS

RUNTIME_ROOT = Path("runtime")
LOG_DIR = RUNTIME_ROOT / "logs"

TEXT_LOG = LOG_DIR / "slackbot-proxy.log"
JSON_LOG = LOG_DIR / "slackbot-proxy.jsonl"

LOG_MAX_BYTES = 10 * 1024 * 1024  # 10 MB
LOG_BACKUP_COUNT = 5
_LOG_LOCK = Lock()

LEVELS = ("DEBUG", "INFO", "WARN", "ERROR", "CRITICAL")
_ALIASES = {"WARNING": "WARN", "FATAL": "CRITICAL"}


def ensure_runtime_dirs() -> None:
    LOG_DIR.mkdir(parents=True, exist_ok=True)


def _backup(path: Path, index: int) -> Path:
    return path.with_name(f"{path.name}.{index}")


def _rotate(path: Path) -> None:
    """Shift ``path`` to ``path.1`` once it reaches the size limit."""

    try:
        if path.stat().st_size < LOG_MAX_BYTES:
            return
    except FileNotFoundError:
        return

    _backup(path, LOG_BACKUP_COUNT).unlink(missing_ok=True)
    for index in range(LOG_BACKUP_COUNT - 1, 0, -1):
        older = _backup(path, index)
        if older.exists():
            older.rename(_backup(path, index + 1))
    path.rename(_backup(path, 1))


def normalise_level(level: str) -> str:
    upper = level.upper()
    upper = _ALIASES.get(upper, upper)
    return upper if upper in LEVELS else "INFO"


def _text_line(event: dict[str, Any], fields: dict[str, Any]) -> str:
    head = f"[{event['ts']}] level={event['level']} svc={event['svc']} topic={event['topic']} pid={event['pid']}"
    tail = "".join(f" {key}={value}" for key, value in fields.items())
    return f'{head}{tail} msg="{event["msg"]}"\n'


def log_event(svc: str, topic: str, message: str, *, level: str = "INFO", **fields: Any) -> None:
    """Append one event to the text and JSONL logs; ERROR and above feed the error window."""

    ensure_runtime_dirs()
    event: dict[str, Any] = {
        "ts": datetime.now().isoformat(timespec="seconds"),
        "level": normalise_level(level),
        "svc": svc,
        "topic": topic,
        "msg": message,
        "pid": os.getpid(),
    }
    if fields:
        event["extra"] = fields

    text = _text_line(event, fields)
    payload = json.dumps(event, separators=(",", ":"), ensure_ascii=False, default=str) + "\n"

    with _LOG_LOCK:
        for path, line in ((TEXT_LOG, text), (JSON_LOG, payload)):
            _rotate(path)
            with path.open("a", encoding="utf-8") as handle:
                handle.write(line)

    if LEVELS.index(event["level"]) >= LEVELS.index("ERROR"):
        METRICS.record_error()


async def alog_event(svc: str, topic: str, message: str, *, level: str = "INFO", **fields: Any) -> None:
    """:func:`log_event` for coroutines; the file writes run in a worker thread."""

    await asyncio.to_thread(log_event, svc, topic, message, level=level, **fields)
