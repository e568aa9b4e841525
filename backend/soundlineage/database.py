"""
Lineage Graph Store
===================
Persistence for lineages and their nodes. Two backends share one interface:

- LineageStore: in-memory, for tests and single-process dev servers
- LineageDB: SQLite-backed, durable across restarts

The store never validates tree invariants; the orchestrator owns those.
Writes are last-write-wins per sound id.
"""

import json
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional

from models import Lineage, LineageNode, SoundGeneration
from .errors import LineageExistsError


class BaseLineageStore:
    """Operations shared by every backend, built on the storage primitives."""

    def create_lineage(self, root_sound: SoundGeneration) -> Lineage:
        """
        Allocate a new lineage rooted at root_sound, plus its generation-0 node.

        Callers are expected to check get_lineage_by_root_sound first.
        """
        if self.get_lineage_by_root_sound(root_sound.id) is not None:
            raise LineageExistsError(f"Sound {root_sound.id} already roots a lineage")

        lineage = Lineage(
            root_sound_id=root_sound.id,
            name=f'Lineage of "{root_sound.display_name}"',
        )
        self.save_lineage(lineage)
        self.save_node(
            LineageNode(
                sound_id=root_sound.id,
                lineage_id=lineage.id,
                parent_id=None,
                generation=0,
                variation_type="root",
            )
        )
        return self.get_lineage(lineage.id) or lineage

    def save_node(self, node: LineageNode) -> None:
        self._write_node(node)
        self._refresh_counts(node.lineage_id)

    def _refresh_counts(self, lineage_id: str) -> None:
        lineage = self.get_lineage(lineage_id)
        if lineage is None:
            return
        nodes = self.get_nodes_for_lineage(lineage_id)
        updated = lineage.model_copy(
            update={
                "total_variations": len(nodes),
                "total_generations": max((n.generation for n in nodes), default=0) + 1,
                "updated_at": datetime.now(timezone.utc),
            }
        )
        self.save_lineage(updated)

    # Storage primitives
    def save_lineage(self, lineage: Lineage) -> None:
        raise NotImplementedError

    def get_lineage(self, lineage_id: str) -> Optional[Lineage]:
        raise NotImplementedError

    def get_lineage_by_root_sound(self, sound_id: str) -> Optional[Lineage]:
        raise NotImplementedError

    def get_all_lineages(self) -> List[Lineage]:
        raise NotImplementedError

    def get_node_for_sound(self, sound_id: str) -> Optional[LineageNode]:
        raise NotImplementedError

    def get_nodes_for_lineage(self, lineage_id: str) -> List[LineageNode]:
        raise NotImplementedError

    def _write_node(self, node: LineageNode) -> None:
        raise NotImplementedError

    def close(self) -> None:
        pass


class LineageStore(BaseLineageStore):
    """In-memory store. Dict insertion order doubles as node insertion order."""

    def __init__(self):
        self._lineages: Dict[str, Lineage] = {}
        self._roots: Dict[str, str] = {}
        self._nodes: Dict[str, LineageNode] = {}

    def save_lineage(self, lineage: Lineage) -> None:
        self._lineages[lineage.id] = lineage
        self._roots[lineage.root_sound_id] = lineage.id

    def get_lineage(self, lineage_id: str) -> Optional[Lineage]:
        return self._lineages.get(lineage_id)

    def get_lineage_by_root_sound(self, sound_id: str) -> Optional[Lineage]:
        lineage_id = self._roots.get(sound_id)
        return self._lineages.get(lineage_id) if lineage_id else None

    def get_all_lineages(self) -> List[Lineage]:
        return list(self._lineages.values())

    def get_node_for_sound(self, sound_id: str) -> Optional[LineageNode]:
        return self._nodes.get(sound_id)

    def get_nodes_for_lineage(self, lineage_id: str) -> List[LineageNode]:
        return [n for n in self._nodes.values() if n.lineage_id == lineage_id]

    def _write_node(self, node: LineageNode) -> None:
        self._nodes[node.sound_id] = node


class LineageDB(BaseLineageStore):
    """SQLite-backed lineage store."""

    def __init__(self, db_path: str = "lineage.db"):
        self.db_path = Path(db_path)
        self.conn: Optional[sqlite3.Connection] = None

    def connect(self) -> None:
        """Establish database connection."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        self.conn.row_factory = sqlite3.Row

    def close(self) -> None:
        """Close database connection."""
        if self.conn:
            self.conn.close()
            self.conn = None

    def __enter__(self):
        self.connect()
        self.create_schema()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def _cursor(self) -> sqlite3.Cursor:
        if not self.conn:
            raise RuntimeError("Database not connected")
        return self.conn.cursor()

    def create_schema(self) -> None:
        cursor = self._cursor()
        cursor.executescript(
            """
            CREATE TABLE IF NOT EXISTS lineages (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                id TEXT NOT NULL UNIQUE,
                root_sound_id TEXT NOT NULL UNIQUE,
                name TEXT NOT NULL DEFAULT '',
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                total_generations INTEGER NOT NULL DEFAULT 1,
                total_variations INTEGER NOT NULL DEFAULT 1
            );

            CREATE TABLE IF NOT EXISTS lineage_nodes (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                sound_id TEXT NOT NULL UNIQUE,
                lineage_id TEXT NOT NULL,
                parent_id TEXT,
                generation INTEGER NOT NULL,
                variation_type TEXT NOT NULL,
                secondary_parent_id TEXT,
                parameter_shifts_json TEXT NOT NULL DEFAULT '[]',
                created_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_nodes_lineage ON lineage_nodes(lineage_id, seq);
            CREATE INDEX IF NOT EXISTS idx_nodes_parent ON lineage_nodes(parent_id);
            """
        )
        self.conn.commit()

    def save_lineage(self, lineage: Lineage) -> None:
        cursor = self._cursor()
        try:
            cursor.execute(
                """
                INSERT INTO lineages (id, root_sound_id, name, created_at, updated_at,
                                      total_generations, total_variations)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    name = excluded.name,
                    updated_at = excluded.updated_at,
                    total_generations = excluded.total_generations,
                    total_variations = excluded.total_variations
                """,
                (
                    lineage.id,
                    lineage.root_sound_id,
                    lineage.name,
                    lineage.created_at.isoformat(),
                    lineage.updated_at.isoformat(),
                    lineage.total_generations,
                    lineage.total_variations,
                ),
            )
        except sqlite3.IntegrityError as exc:
            # root_sound_id is unique: a concurrent create for the same root lost the race
            self.conn.rollback()
            raise LineageExistsError(
                f"Sound {lineage.root_sound_id} already roots a lineage"
            ) from exc
        self.conn.commit()

    def get_lineage(self, lineage_id: str) -> Optional[Lineage]:
        row = self._cursor().execute(
            "SELECT * FROM lineages WHERE id = ?", (lineage_id,)
        ).fetchone()
        return self._row_to_lineage(row) if row else None

    def get_lineage_by_root_sound(self, sound_id: str) -> Optional[Lineage]:
        row = self._cursor().execute(
            "SELECT * FROM lineages WHERE root_sound_id = ?", (sound_id,)
        ).fetchone()
        return self._row_to_lineage(row) if row else None

    def get_all_lineages(self) -> List[Lineage]:
        rows = self._cursor().execute("SELECT * FROM lineages ORDER BY seq").fetchall()
        return [self._row_to_lineage(r) for r in rows]

    def get_node_for_sound(self, sound_id: str) -> Optional[LineageNode]:
        row = self._cursor().execute(
            "SELECT * FROM lineage_nodes WHERE sound_id = ?", (sound_id,)
        ).fetchone()
        return self._row_to_node(row) if row else None

    def get_nodes_for_lineage(self, lineage_id: str) -> List[LineageNode]:
        rows = self._cursor().execute(
            "SELECT * FROM lineage_nodes WHERE lineage_id = ? ORDER BY seq",
            (lineage_id,),
        ).fetchall()
        return [self._row_to_node(r) for r in rows]

    def _write_node(self, node: LineageNode) -> None:
        shifts = json.dumps([s.model_dump() for s in node.parameter_shifts])
        cursor = self._cursor()
        cursor.execute(
            """
            INSERT INTO lineage_nodes (sound_id, lineage_id, parent_id, generation, variation_type,
                                       secondary_parent_id, parameter_shifts_json, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(sound_id) DO UPDATE SET
                lineage_id = excluded.lineage_id,
                parent_id = excluded.parent_id,
                generation = excluded.generation,
                variation_type = excluded.variation_type,
                secondary_parent_id = excluded.secondary_parent_id,
                parameter_shifts_json = excluded.parameter_shifts_json,
                created_at = excluded.created_at
            """,
            (
                node.sound_id,
                node.lineage_id,
                node.parent_id,
                node.generation,
                node.variation_type,
                node.secondary_parent_id,
                shifts,
                node.created_at.isoformat(),
            ),
        )
        self.conn.commit()

    @staticmethod
    def _row_to_lineage(row: sqlite3.Row) -> Lineage:
        return Lineage(
            id=row["id"],
            root_sound_id=row["root_sound_id"],
            name=row["name"],
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
            total_generations=row["total_generations"],
            total_variations=row["total_variations"],
        )

    @staticmethod
    def _row_to_node(row: sqlite3.Row) -> LineageNode:
        return LineageNode(
            sound_id=row["sound_id"],
            lineage_id=row["lineage_id"],
            parent_id=row["parent_id"],
            generation=row["generation"],
            variation_type=row["variation_type"],
            secondary_parent_id=row["secondary_parent_id"],
            parameter_shifts=json.loads(row["parameter_shifts_json"] or "[]"),
            created_at=datetime.fromisoformat(row["created_at"]),
        )
