"""SQLite-backed relation store."""

from __future__ import annotations

import json
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import replace
from typing import Any

from slackbot_proxy.core.relation import (
    Relation,
    parse_permission_map,
    serialize_permission_map,
)

from .migrate import ensure_db, from_epoch_ms, to_epoch_ms

_COLUMNS = """
    id, installation_id, growi_uri, token_ptog, token_gtop,
    permissions_single, permissions_broadcast,
    expired_at_commands, created_at, updated_at
"""


class RelationNotFoundError(LookupError):
    """Raised when a relation id has no stored record."""

    def __init__(self, relation_id: int | None) -> None:
        super().__init__(f"relation not found: {relation_id}")
        self.relation_id = relation_id


def _dumps(data: dict[str, Any]) -> str:
    return json.dumps(data, separators=(",", ":"), ensure_ascii=False, sort_keys=True)


def _row_to_relation(row: sqlite3.Row) -> Relation:
    return Relation(
        id=int(row["id"]),
        installation_id=row["installation_id"],
        growi_uri=row["growi_uri"],
        token_ptog=row["token_ptog"],
        token_gtop=row["token_gtop"],
        permissions_for_single_use_commands=parse_permission_map(json.loads(row["permissions_single"])),
        permissions_for_broadcast_use_commands=parse_permission_map(json.loads(row["permissions_broadcast"])),
        expired_at_commands=from_epoch_ms(row["expired_at_commands"]),
        created_at=from_epoch_ms(row["created_at"]),
        updated_at=from_epoch_ms(row["updated_at"]),
    )


class RelationStore:
    """Persist relations as whole records keyed by id."""

    def __init__(self, db_path: str) -> None:
        self.db_path = db_path
        ensure_db(db_path)

    @contextmanager
    def connect(self) -> Iterator[sqlite3.Connection]:
        """Yield a configured SQLite connection."""

        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("PRAGMA synchronous=NORMAL;")
        conn.execute("PRAGMA foreign_keys=ON;")
        try:
            yield conn
        finally:
            conn.close()

    def save(self, relation: Relation) -> Relation:
        """Insert a new relation or replace the stored record with ``relation``."""

        values = (
            relation.installation_id,
            relation.growi_uri,
            relation.token_ptog,
            relation.token_gtop,
            _dumps(serialize_permission_map(relation.permissions_for_single_use_commands)),
            _dumps(serialize_permission_map(relation.permissions_for_broadcast_use_commands)),
            to_epoch_ms(relation.expired_at_commands),
            to_epoch_ms(relation.created_at),
            to_epoch_ms(relation.updated_at),
        )
        with self.connect() as conn:
            if relation.id is None:
                cursor = conn.execute(
                    """
                    INSERT INTO relations(
                        installation_id, growi_uri, token_ptog, token_gtop,
                        permissions_single, permissions_broadcast,
                        expired_at_commands, created_at, updated_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    values,
                )
                relation_id = cursor.lastrowid
                conn.commit()
                if relation_id is None:
                    raise RuntimeError("Failed to insert relation record.")
                return replace(relation, id=int(relation_id))

            cursor = conn.execute(
                """
                UPDATE relations
                SET installation_id = ?, growi_uri = ?, token_ptog = ?, token_gtop = ?,
                    permissions_single = ?, permissions_broadcast = ?,
                    expired_at_commands = ?, created_at = ?, updated_at = ?
                WHERE id = ?
                """,
                (*values, relation.id),
            )
            conn.commit()
            if cursor.rowcount == 0:
                raise RelationNotFoundError(relation.id)
        return relation

    def get(self, relation_id: int) -> Relation:
        with self.connect() as conn:
            row = conn.execute(
                f"SELECT {_COLUMNS} FROM relations WHERE id = ?",
                (relation_id,),
            ).fetchone()
        if row is None:
            raise RelationNotFoundError(relation_id)
        return _row_to_relation(row)

    def list_relations(self) -> list[Relation]:
        with self.connect() as conn:
            rows = conn.execute(f"SELECT {_COLUMNS} FROM relations ORDER BY id").fetchall()
        return [_row_to_relation(row) for row in rows]

    def find_by_installation(self, installation_id: str) -> list[Relation]:
        """Return the relations paired with one Slack installation."""

        with self.connect() as conn:
            rows = conn.execute(
                f"SELECT {_COLUMNS} FROM relations WHERE installation_id = ? ORDER BY id",
                (installation_id,),
            ).fetchall()
        return [_row_to_relation(row) for row in rows]

    def count(self) -> int:
        with self.connect() as conn:
            row = conn.execute("SELECT COUNT(*) AS n FROM relations").fetchone()
        return int(row["n"])

    def delete(self, relation_id: int) -> bool:
        with self.connect() as conn:
            cursor = conn.execute("DELETE FROM relations WHERE id = ?", (relation_id,))
            conn.commit()
            return cursor.rowcount > 0
