from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta
from pathlib import Path

import httpx
import pytest

from slackbot_proxy.core.metrics import METRICS
from slackbot_proxy.core.relation import ALLOWED, Relation
from slackbot_proxy.services.relations import RelationsService
from slackbot_proxy.services.supported_commands import SupportedCommandsError
from slackbot_proxy.store import RelationNotFoundError, RelationStore
from tests.fakes.fake_growi import FakeGrowi

NOW = datetime(2024, 3, 1, 9, 0, tzinfo=UTC)


def _service(tmp_path: Path, monkeypatch: pytest.MonkeyPatch, fake: FakeGrowi) -> RelationsService:
    monkeypatch.chdir(tmp_path)
    METRICS.reset()
    store = RelationStore(str(tmp_path / "relations.db"))
    return RelationsService(store, fake.client(), clock=lambda: NOW)


def _paired(service: RelationsService, expired_at: datetime) -> Relation:
    return service.store.save(
        Relation(
            installation_id="T1",
            growi_uri="https://growi.example.com",
            token_ptog="ptog",
            token_gtop="gtop",
            permissions_for_single_use_commands={"old": ALLOWED},
            expired_at_commands=expired_at,
            created_at=NOW - timedelta(days=3),
            updated_at=NOW - timedelta(days=3),
        )
    )


def test_expired_relation_blocks_on_one_fetch(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    fake = FakeGrowi(single={"search": True})
    service = _service(tmp_path, monkeypatch, fake)
    relation = _paired(service, NOW - timedelta(minutes=1))

    synced = asyncio.run(service.sync_relation(relation, NOW))

    assert len(fake.requests) == 1
    assert synced is not None
    assert synced.expired_at_commands == NOW + timedelta(hours=48)
    assert synced.permissions_for_single_use_commands == {"search": ALLOWED}
    assert service.store.get(relation.id) == synced
    assert METRICS.get_counter("relations_sync_ok_total") == 1


def test_near_expiry_returns_immediately_and_refreshes_in_background(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    fake = FakeGrowi(single={"search": True})
    service = _service(tmp_path, monkeypatch, fake)
    relation = _paired(service, NOW + timedelta(hours=2))

    async def scenario() -> tuple[Relation | None, int]:
        fake.gate = asyncio.Event()
        returned = await service.sync_relation(relation, NOW)
        pending = len(service.tasks)
        fake.gate.set()
        await service.tasks.drain()
        return returned, pending

    returned, pending = asyncio.run(scenario())

    assert returned is relation
    assert pending == 1
    stored = service.store.get(relation.id)
    assert stored.expired_at_commands == NOW + timedelta(hours=48)
    assert stored.permissions_for_single_use_commands == {"search": ALLOWED}
    assert METRICS.get_counter("relations_refresh_detached_total") == 1


def test_fresh_relation_is_untouched(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    fake = FakeGrowi(single={"search": True})
    service = _service(tmp_path, monkeypatch, fake)
    relation = _paired(service, NOW + timedelta(hours=30))

    returned = asyncio.run(service.sync_relation(relation, NOW))

    assert returned is relation
    assert fake.requests == []


def test_failed_blocking_sync_returns_none_and_keeps_record(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    fake = FakeGrowi(error=httpx.ReadTimeout)
    service = _service(tmp_path, monkeypatch, fake)
    relation = _paired(service, NOW - timedelta(hours=1))

    assert asyncio.run(service.sync_relation(relation, NOW)) is None
    assert service.store.get(relation.id) == relation
    assert METRICS.get_counter("relations_sync_failed_total") == 1

    log_text = (tmp_path / "runtime/logs/slackbot-proxy.log").read_text(encoding="utf-8")
    assert "permission sync failed" in log_text
    assert "error=timeout" in log_text


def test_failed_background_refresh_is_not_raised(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    fake = FakeGrowi(status_code=503)
    service = _service(tmp_path, monkeypatch, fake)
    relation = _paired(service, NOW + timedelta(hours=1))

    async def scenario() -> Relation | None:
        returned = await service.sync_relation(relation, NOW)
        await service.tasks.drain()
        return returned

    assert asyncio.run(scenario()) is relation
    assert service.store.get(relation.id) == relation
    assert METRICS.get_counter("relations_sync_failed_total") == 1


def test_concurrent_syncs_share_one_fetch(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    fake = FakeGrowi(single={"search": True})
    service = _service(tmp_path, monkeypatch, fake)
    relation = _paired(service, NOW - timedelta(hours=1))

    async def scenario() -> list[Relation | None]:
        return await asyncio.gather(
            service.sync_relation(relation, NOW),
            service.sync_relation(relation, NOW),
            service.sync_relation(relation, NOW),
        )

    results = asyncio.run(scenario())

    assert len(fake.requests) == 1
    assert results[0] is not None
    assert results[0] == results[1] == results[2]


def test_sync_supported_commands_requires_relation(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    service = _service(tmp_path, monkeypatch, FakeGrowi())
    with pytest.raises(RelationNotFoundError):
        asyncio.run(service.sync_supported_growi_commands(None))
    assert asyncio.run(service.sync_relation(None, NOW)) is None


def test_forced_sync_joins_refresh_in_flight(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    fake = FakeGrowi(single={"search": True})
    service = _service(tmp_path, monkeypatch, fake)
    relation = _paired(service, NOW + timedelta(hours=2))

    async def scenario() -> Relation:
        fake.gate = asyncio.Event()
        await service.sync_relation(relation, NOW)
        forced = asyncio.create_task(service.sync_supported_growi_commands(relation))
        await asyncio.sleep(0)
        fake.gate.set()
        synced = await forced
        await service.tasks.drain()
        return synced

    synced = asyncio.run(scenario())

    assert len(fake.requests) == 1
    assert service.store.get(relation.id) == synced
    assert synced.permissions_for_single_use_commands == {"search": ALLOWED}
    assert METRICS.get_counter("relations_sync_ok_total") == 1


def test_forced_sync_raises_remote_failure(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    fake = FakeGrowi(status_code=503)
    service = _service(tmp_path, monkeypatch, fake)
    relation = _paired(service, NOW + timedelta(hours=30))

    with pytest.raises(SupportedCommandsError) as excinfo:
        asyncio.run(service.sync_supported_growi_commands(relation))

    assert excinfo.value.reason == "http_503"
    assert service.store.get(relation.id) == relation
    assert METRICS.get_counter("relations_sync_failed_total") == 1
