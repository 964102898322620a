from __future__ import annotations

import asyncio
import json

from slackbot_proxy.core.metrics import METRICS
from slackbot_proxy.core.tasks import DetachedTasks


def test_failed_task_is_logged_and_counted(tmp_path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    METRICS.reset()
    tasks = DetachedTasks("test")

    async def fail() -> None:
        raise RuntimeError("boom")

    async def scenario() -> None:
        tasks.spawn(fail(), name="refresh:1")
        assert len(tasks) == 1
        await tasks.drain()

    asyncio.run(scenario())

    assert len(tasks) == 0
    assert METRICS.get_counter("detached_task_failures_total") == 1
    lines = (tmp_path / "runtime/logs/slackbot-proxy.jsonl").read_text(encoding="utf-8").splitlines()
    event = json.loads(lines[-1])
    assert event["level"] == "ERROR"
    assert event["extra"]["task"] == "refresh:1"


def test_cancel_all_stops_pending_tasks(tmp_path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    METRICS.reset()
    tasks = DetachedTasks("test")
    done: list[str] = []

    async def slow() -> None:
        await asyncio.sleep(60)
        done.append("finished")

    async def scenario() -> None:
        tasks.spawn(slow(), name="slow")
        await asyncio.sleep(0)
        await tasks.cancel_all()

    asyncio.run(scenario())

    assert done == []
    assert len(tasks) == 0
    assert METRICS.get_counter("detached_task_failures_total") == 0


def test_shutdown_waits_for_short_tasks_and_cancels_slow_ones(tmp_path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    METRICS.reset()
    tasks = DetachedTasks("test")
    done: list[str] = []

    async def quick() -> None:
        await asyncio.sleep(0.01)
        done.append("quick")

    async def slow() -> None:
        await asyncio.sleep(60)
        done.append("slow")

    async def scenario() -> int:
        tasks.spawn(quick(), name="quick")
        tasks.spawn(slow(), name="slow")
        return await tasks.shutdown(timeout=0.5)

    leftover = asyncio.run(scenario())

    assert leftover == 1
    assert done == ["quick"]
    assert len(tasks) == 0
