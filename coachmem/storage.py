"""
Storage Layer - Where memories live.

Two parts, same as always:
1. SQLite = the filing cabinet (text, owner, category, facts, edges, flags)
2. ChromaDB = the smart index (finds similar memories by meaning)

Every read is scoped to one owner. A memory id from another owner behaves
exactly like a missing id.

Besides the memories themselves the cabinet keeps:
- memory_hashes: (owner, semantic hash) -> memory id. The canonical
  memory's own hash plus the hash of every text merged into it, so that
  re-submitting any of them resolves to the same memory.
- atomic_facts: propositions extracted from a memory
- relationships: typed edges between two memories of the same owner
- review_flags: merge conflicts waiting for a human
"""

import json
import sqlite3
from datetime import datetime
from pathlib import Path
from typing import Iterable, Optional

import chromadb
from chromadb.config import Settings

from coachmem.errors import DuplicateContentError, StorageError
from coachmem.log import get_logger
from coachmem.models import (
    AtomicFact,
    MemoryCategory,
    MemoryEntry,
    MemoryRelationship,
    new_id,
)

logger = get_logger("coachmem.storage")


def _ts(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class MemoryStore:
    """Persistence collaborator: CRUD plus nearest-neighbour and keyword search.

    Usage:
        store = MemoryStore(data_dir)
        store.add_memory(entry)
        store.nearest(vector, k=50, owner_id="user_1")
    """

    def __init__(self, data_dir: Optional[Path] = None, collection_name: str = "coachmem_memories"):
        """Set up the storage.

        Args:
            data_dir: Where to save data. Defaults to ~/.coachmem/data/
            collection_name: ChromaDB collection holding the vectors
        """
        if data_dir is None:
            data_dir = Path.home() / ".coachmem" / "data"
        self.data_dir = Path(data_dir)
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.collection_name = collection_name

        self._init_sqlite()
        self._init_chromadb()

    def _init_sqlite(self):
        """Create the filing cabinet (database tables)."""
        db_path = self.data_dir / "memories.db"
        self.db = sqlite3.connect(str(db_path), check_same_thread=False)
        self.db.row_factory = sqlite3.Row
        self.db.execute("PRAGMA foreign_keys = ON")

        self.db.execute("""
            CREATE TABLE IF NOT EXISTS memories (
                id TEXT PRIMARY KEY,
                owner_id TEXT NOT NULL,
                content TEXT NOT NULL,
                category TEXT NOT NULL,
                importance REAL DEFAULT 0.5,
                keywords TEXT DEFAULT '[]',
                embedding TEXT,
                semantic_hash TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT,
                access_count INTEGER DEFAULT 0,
                last_accessed_at TEXT
            )
        """)
        self.db.execute("""
            CREATE TABLE IF NOT EXISTS memory_hashes (
                owner_id TEXT NOT NULL,
                semantic_hash TEXT NOT NULL,
                memory_id TEXT NOT NULL,
                PRIMARY KEY (owner_id, semantic_hash),
                FOREIGN KEY (memory_id) REFERENCES memories(id) ON DELETE CASCADE
            )
        """)
        self.db.execute("""
            CREATE TABLE IF NOT EXISTS atomic_facts (
                id TEXT PRIMARY KEY,
                memory_id TEXT NOT NULL,
                fact_type TEXT NOT NULL,
                content TEXT NOT NULL,
                confidence REAL DEFAULT 0.5,
                verified INTEGER DEFAULT 0,
                extracted_at TEXT NOT NULL,
                FOREIGN KEY (memory_id) REFERENCES memories(id) ON DELETE CASCADE
            )
        """)
        self.db.execute("""
            CREATE TABLE IF NOT EXISTS relationships (
                id TEXT PRIMARY KEY,
                owner_id TEXT NOT NULL,
                source_id TEXT NOT NULL,
                target_id TEXT NOT NULL,
                relationship_type TEXT NOT NULL,
                strength REAL DEFAULT 0.5,
                confidence REAL DEFAULT 0.5,
                context TEXT DEFAULT '',
                created_at TEXT NOT NULL,
                UNIQUE (source_id, target_id),
                CHECK (source_id != target_id),
                FOREIGN KEY (source_id) REFERENCES memories(id) ON DELETE CASCADE,
                FOREIGN KEY (target_id) REFERENCES memories(id) ON DELETE CASCADE
            )
        """)
        self.db.execute("""
            CREATE TABLE IF NOT EXISTS review_flags (
                id TEXT PRIMARY KEY,
                owner_id TEXT NOT NULL,
                memory_id TEXT NOT NULL,
                stored_fact TEXT,
                new_fact TEXT,
                new_content TEXT,
                reason TEXT,
                created_at TEXT NOT NULL,
                resolved INTEGER DEFAULT 0,
                resolution TEXT,
                FOREIGN KEY (memory_id) REFERENCES memories(id) ON DELETE CASCADE
            )
        """)

        self.db.execute("CREATE INDEX IF NOT EXISTS idx_owner ON memories(owner_id)")
        self.db.execute("CREATE INDEX IF NOT EXISTS idx_owner_category ON memories(owner_id, category)")
        self.db.execute("CREATE INDEX IF NOT EXISTS idx_facts_memory ON atomic_facts(memory_id)")
        self.db.execute("CREATE INDEX IF NOT EXISTS idx_rel_owner ON relationships(owner_id)")
        self.db.execute("CREATE INDEX IF NOT EXISTS idx_flags_owner ON review_flags(owner_id, resolved)")
        self.db.commit()

    def _init_chromadb(self):
        """Create the smart index (vector database)."""
        chroma_path = self.data_dir / "chromadb"

        self.chroma = chromadb.PersistentClient(
            path=str(chroma_path),
            settings=Settings(
                anonymized_telemetry=False,  # Don't send usage data
                allow_reset=True,
            )
        )

        self.collection = self.chroma.get_or_create_collection(
            name=self.collection_name,
            metadata={"hnsw:space": "cosine"}
        )

    def close(self):
        self.db.close()

    # =========================================================================
    # MEMORIES
    # =========================================================================

    def _row_to_memory(self, row: sqlite3.Row) -> MemoryEntry:
        return MemoryEntry(
            id=row["id"],
            owner_id=row["owner_id"],
            content=row["content"],
            category=row["category"],
            importance_score=row["importance"],
            keywords=json.loads(row["keywords"] or "[]"),
            embedding=json.loads(row["embedding"]) if row["embedding"] else None,
            semantic_hash=row["semantic_hash"],
            created_at=_parse_ts(row["created_at"]),
            updated_at=_parse_ts(row["updated_at"]),
            access_count=row["access_count"] or 0,
            last_accessed_at=_parse_ts(row["last_accessed_at"]),
        )

    def _index(self, entry: MemoryEntry) -> None:
        """Put (or replace) the memory's vector in ChromaDB."""
        if entry.embedding is None:
            return
        try:
            self.collection.upsert(
                ids=[entry.id],
                embeddings=[entry.embedding],
                documents=[entry.content],
                metadatas=[{
                    "owner_id": entry.owner_id,
                    "category": entry.category.value,
                    "importance": entry.importance_score,
                }],
            )
        except Exception as e:
            # Row is stored; the memory stays reachable through keyword search
            logger.warning(f"Vector index write failed for {entry.id}: {e}")

    def add_memory(self, entry: MemoryEntry) -> str:
        """Store a new memory.

        The (owner, semantic hash) pair is claimed in the same transaction as
        the insert, so two racing submissions of the same text cannot both
        create a row.

        Raises:
            DuplicateContentError: The owner already stores this fingerprint
            StorageError: Any other database failure
        """
        try:
            with self.db:
                self.db.execute(
                    """
                    INSERT INTO memories (id, owner_id, content, category, importance, keywords,
                                          embedding, semantic_hash, created_at, updated_at,
                                          access_count, last_accessed_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        entry.id,
                        entry.owner_id,
                        entry.content,
                        entry.category.value,
                        entry.importance_score,
                        json.dumps(entry.keywords),
                        json.dumps(entry.embedding) if entry.embedding is not None else None,
                        entry.semantic_hash,
                        _ts(entry.created_at),
                        _ts(entry.updated_at),
                        entry.access_count,
                        _ts(entry.last_accessed_at),
                    )
                )
                self.db.execute(
                    "INSERT INTO memory_hashes (owner_id, semantic_hash, memory_id) VALUES (?, ?, ?)",
                    (entry.owner_id, entry.semantic_hash, entry.id)
                )
        except sqlite3.IntegrityError:
            existing = self.find_by_hash(entry.owner_id, entry.semantic_hash)
            if existing:
                raise DuplicateContentError(entry.owner_id, entry.semantic_hash, existing)
            raise StorageError(f"Could not insert memory {entry.id}")
        except sqlite3.Error as e:
            raise StorageError(f"Could not insert memory {entry.id}: {e}")

        self._index(entry)
        return entry.id

    def update_memory(self, entry: MemoryEntry, alias_hashes: Iterable[str] = ()) -> bool:
        """Write back a changed memory and register extra fingerprints for it."""
        entry.updated_at = datetime.now()
        try:
            with self.db:
                cursor = self.db.execute(
                    """
                    UPDATE memories
                    SET content = ?, category = ?, importance = ?, keywords = ?,
                        embedding = ?, semantic_hash = ?, updated_at = ?
                    WHERE id = ? AND owner_id = ?
                    """,
                    (
                        entry.content,
                        entry.category.value,
                        entry.importance_score,
                        json.dumps(entry.keywords),
                        json.dumps(entry.embedding) if entry.embedding is not None else None,
                        entry.semantic_hash,
                        _ts(entry.updated_at),
                        entry.id,
                        entry.owner_id,
                    )
                )
                if cursor.rowcount == 0:
                    return False
                for fingerprint in {entry.semantic_hash, *alias_hashes}:
                    self.db.execute(
                        "INSERT OR IGNORE INTO memory_hashes (owner_id, semantic_hash, memory_id) VALUES (?, ?, ?)",
                        (entry.owner_id, fingerprint, entry.id)
                    )
        except sqlite3.Error as e:
            raise StorageError(f"Could not update memory {entry.id}: {e}")

        self._index(entry)
        return True

    def get_memory(self, memory_id: str, owner_id: Optional[str] = None) -> Optional[MemoryEntry]:
        """Fetch one memory; None if missing or owned by someone else."""
        row = self.db.execute("SELECT * FROM memories WHERE id = ?", (memory_id,)).fetchone()
        if row is None or (owner_id is not None and row["owner_id"] != owner_id):
            return None
        return self._row_to_memory(row)

    def get_memories(self, memory_ids: list[str], owner_id: str) -> list[MemoryEntry]:
        if not memory_ids:
            return []
        placeholders = ",".join("?" * len(memory_ids))
        rows = self.db.execute(
            f"SELECT * FROM memories WHERE owner_id = ? AND id IN ({placeholders})",
            (owner_id, *memory_ids)
        ).fetchall()
        by_id = {row["id"]: self._row_to_memory(row) for row in rows}
        return [by_id[mid] for mid in memory_ids if mid in by_id]

    def list_memories(self, owner_id: str, limit: Optional[int] = None) -> list[MemoryEntry]:
        query = "SELECT * FROM memories WHERE owner_id = ? ORDER BY created_at DESC"
        params: tuple = (owner_id,)
        if limit:
            query += " LIMIT ?"
            params = (owner_id, limit)
        return [self._row_to_memory(row) for row in self.db.execute(query, params).fetchall()]

    def count_memories(self, owner_id: str) -> int:
        return self.db.execute(
            "SELECT COUNT(*) FROM memories WHERE owner_id = ?", (owner_id,)
        ).fetchone()[0]

    def find_by_hash(self, owner_id: str, semantic_hash: str) -> Optional[str]:
        """Memory id holding this fingerprint for the owner, if any."""
        row = self.db.execute(
            "SELECT memory_id FROM memory_hashes WHERE owner_id = ? AND semantic_hash = ?",
            (owner_id, semantic_hash)
        ).fetchone()
        return row["memory_id"] if row else None

    def delete_memory(self, memory_id: str, owner_id: str) -> bool:
        """Delete a memory and everything hanging off it.

        Facts, hash aliases, incident edges and review flags go with it
        (explicit deletes, so the cascade does not depend on the foreign_keys
        pragma), then the vector.
        """
        if self.get_memory(memory_id, owner_id) is None:
            return False

        try:
            with self.db:
                self.db.execute("DELETE FROM atomic_facts WHERE memory_id = ?", (memory_id,))
                self.db.execute("DELETE FROM memory_hashes WHERE memory_id = ?", (memory_id,))
                self.db.execute(
                    "DELETE FROM relationships WHERE source_id = ? OR target_id = ?",
                    (memory_id, memory_id)
                )
                self.db.execute("DELETE FROM review_flags WHERE memory_id = ?", (memory_id,))
                self.db.execute("DELETE FROM memories WHERE id = ?", (memory_id,))
        except sqlite3.Error as e:
            raise StorageError(f"Could not delete memory {memory_id}: {e}")

        try:
            self.collection.delete(ids=[memory_id])
        except Exception as e:
            logger.warning(f"Vector index delete failed for {memory_id}: {e}")
        return True

    def record_access(self, memory_ids: list[str]) -> None:
        """Bump access stats for memories that were just surfaced."""
        if not memory_ids:
            return
        now = datetime.now().isoformat()
        with self.db:
            self.db.executemany(
                """
                UPDATE memories
                SET access_count = access_count + 1, last_accessed_at = ?
                WHERE id = ?
                """,
                [(now, mid) for mid in memory_ids]
            )

    # =========================================================================
    # SEARCH
    # =========================================================================

    def _indexed_count(self, owner_id: str) -> int:
        return self.db.execute(
            "SELECT COUNT(*) FROM memories WHERE owner_id = ? AND embedding IS NOT NULL",
            (owner_id,)
        ).fetchone()[0]

    def nearest(
        self,
        vector: list[float],
        k: int,
        owner_id: str,
    ) -> list[tuple[MemoryEntry, float]]:
        """Top-k most similar memories of this owner, with cosine similarity.

        Raises:
            StorageError: If the vector index is unavailable
        """
        n_results = min(k, self._indexed_count(owner_id))
        if n_results <= 0:
            return []

        try:
            results = self.collection.query(
                query_embeddings=[vector],
                n_results=n_results,
                where={"owner_id": owner_id},
            )
        except Exception as e:
            raise StorageError(f"Vector search failed: {e}")

        if not results["ids"] or not results["ids"][0]:
            return []

        ids = results["ids"][0]
        distances = results["distances"][0] if results.get("distances") else [1.0] * len(ids)
        entries = {m.id: m for m in self.get_memories(ids, owner_id)}

        found = []
        for memory_id, distance in zip(ids, distances):
            entry = entries.get(memory_id)
            if entry is None:
                continue  # index ahead of the cabinet after a failed delete
            found.append((entry, 1.0 - float(distance)))
        return found

    def keyword_search(self, owner_id: str, terms: list[str], limit: int = 25) -> list[MemoryEntry]:
        """Memories whose content or keywords mention any of the terms."""
        terms = [t for t in dict.fromkeys(t.lower() for t in terms) if t]
        if not terms:
            return []

        clauses = []
        params: list = [owner_id]
        for term in terms:
            clauses.append("(LOWER(content) LIKE ? OR LOWER(keywords) LIKE ?)")
            params.extend([f"%{term}%", f'%"{term}%'])
        params.append(limit)

        try:
            rows = self.db.execute(
                f"""
                SELECT * FROM memories
                WHERE owner_id = ? AND ({' OR '.join(clauses)})
                ORDER BY importance DESC, created_at DESC
                LIMIT ?
                """,
                params
            ).fetchall()
        except sqlite3.Error as e:
            raise StorageError(f"Keyword search failed: {e}")
        return [self._row_to_memory(row) for row in rows]

    # =========================================================================
    # ATOMIC FACTS
    # =========================================================================

    def replace_facts(self, memory_id: str, facts: list[AtomicFact]) -> None:
        """Swap the memory's facts for a freshly extracted set."""
        with self.db:
            self.db.execute("DELETE FROM atomic_facts WHERE memory_id = ?", (memory_id,))
            self.db.executemany(
                """
                INSERT INTO atomic_facts (id, memory_id, fact_type, content, confidence, verified, extracted_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    (f.id, memory_id, f.fact_type.value, f.content, f.confidence,
                     int(f.verified), _ts(f.extracted_at))
                    for f in facts
                ]
            )

    def get_facts(self, memory_id: str) -> list[AtomicFact]:
        rows = self.db.execute(
            "SELECT * FROM atomic_facts WHERE memory_id = ? ORDER BY confidence DESC",
            (memory_id,)
        ).fetchall()
        return [
            AtomicFact(
                id=row["id"],
                memory_id=row["memory_id"],
                fact_type=row["fact_type"],
                content=row["content"],
                confidence=row["confidence"],
                verified=bool(row["verified"]),
                extracted_at=_parse_ts(row["extracted_at"]),
            )
            for row in rows
        ]

    # =========================================================================
    # RELATIONSHIPS
    # =========================================================================

    def _row_to_relationship(self, row: sqlite3.Row) -> MemoryRelationship:
        return MemoryRelationship(
            id=row["id"],
            source_id=row["source_id"],
            target_id=row["target_id"],
            relationship_type=row["relationship_type"],
            strength=row["strength"],
            confidence=row["confidence"],
            context=row["context"] or "",
            created_at=_parse_ts(row["created_at"]),
        )

    def upsert_relationship(self, owner_id: str, rel: MemoryRelationship) -> None:
        """Insert an edge, or replace the existing edge between the same pair."""
        try:
            with self.db:
                self.db.execute(
                    """
                    INSERT INTO relationships (id, owner_id, source_id, target_id, relationship_type,
                                               strength, confidence, context, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(source_id, target_id) DO UPDATE SET
                        relationship_type = excluded.relationship_type,
                        strength = excluded.strength,
                        confidence = excluded.confidence,
                        context = excluded.context
                    """,
                    (
                        rel.id, owner_id, rel.source_id, rel.target_id,
                        rel.relationship_type.value, rel.strength, rel.confidence,
                        rel.context, _ts(rel.created_at),
                    )
                )
        except sqlite3.Error as e:
            raise StorageError(f"Could not store edge {rel.source_id} -> {rel.target_id}: {e}")

    def get_relationships(self, owner_id: str) -> list[MemoryRelationship]:
        rows = self.db.execute(
            "SELECT * FROM relationships WHERE owner_id = ?", (owner_id,)
        ).fetchall()
        return [self._row_to_relationship(row) for row in rows]

    def get_relationship(self, source_id: str, target_id: str) -> Optional[MemoryRelationship]:
        row = self.db.execute(
            "SELECT * FROM relationships WHERE source_id = ? AND target_id = ?",
            (source_id, target_id)
        ).fetchone()
        return self._row_to_relationship(row) if row else None

    def delete_relationship(self, owner_id: str, source_id: str, target_id: str) -> bool:
        try:
            with self.db:
                cursor = self.db.execute(
                    "DELETE FROM relationships WHERE owner_id = ? AND source_id = ? AND target_id = ?",
                    (owner_id, source_id, target_id)
                )
        except sqlite3.Error as e:
            raise StorageError(f"Could not delete edge {source_id} -> {target_id}: {e}")
        return cursor.rowcount > 0

    # =========================================================================
    # REVIEW FLAGS
    # =========================================================================

    def add_review_flag(
        self,
        owner_id: str,
        memory_id: str,
        stored_fact: str,
        new_fact: str,
        reason: str,
        new_content: Optional[str] = None,
    ) -> str:
        flag_id = new_id("flag")
        with self.db:
            self.db.execute(
                """
                INSERT INTO review_flags (id, owner_id, memory_id, stored_fact, new_fact, new_content,
                                          reason, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (flag_id, owner_id, memory_id, stored_fact, new_fact, new_content,
                 reason, datetime.now().isoformat())
            )
        return flag_id

    def _row_to_flag(self, row: sqlite3.Row) -> dict:
        return {
            "id": row["id"],
            "memory_id": row["memory_id"],
            "stored_fact": row["stored_fact"],
            "new_fact": row["new_fact"],
            "new_content": row["new_content"],
            "reason": row["reason"],
            "created_at": row["created_at"],
            "resolved": bool(row["resolved"]),
            "resolution": row["resolution"],
        }

    def get_review_flag(self, owner_id: str, flag_id: str) -> Optional[dict]:
        row = self.db.execute(
            "SELECT * FROM review_flags WHERE id = ? AND owner_id = ?", (flag_id, owner_id)
        ).fetchone()
        return self._row_to_flag(row) if row else None

    def list_review_flags(self, owner_id: str, include_resolved: bool = False) -> list[dict]:
        query = "SELECT * FROM review_flags WHERE owner_id = ?"
        if not include_resolved:
            query += " AND resolved = 0"
        query += " ORDER BY created_at"
        return [self._row_to_flag(row) for row in self.db.execute(query, (owner_id,)).fetchall()]

    def resolve_review_flag(self, owner_id: str, flag_id: str, resolution: str) -> bool:
        with self.db:
            cursor = self.db.execute(
                "UPDATE review_flags SET resolved = 1, resolution = ? WHERE id = ? AND owner_id = ? AND resolved = 0",
                (resolution, flag_id, owner_id)
            )
        return cursor.rowcount > 0

    # =========================================================================
    # STATS
    # =========================================================================

    def get_stats(self, owner_id: str) -> dict:
        """Totals, category distribution, average importance, edge counts."""
        total = self.count_memories(owner_id)

        by_category = {c.value: 0 for c in MemoryCategory}
        by_category.update(dict(self.db.execute(
            "SELECT category, COUNT(*) FROM memories WHERE owner_id = ? GROUP BY category",
            (owner_id,)
        ).fetchall()))

        avg_importance = self.db.execute(
            "SELECT AVG(importance) FROM memories WHERE owner_id = ?", (owner_id,)
        ).fetchone()[0]

        edges_by_type = dict(self.db.execute(
            "SELECT relationship_type, COUNT(*) FROM relationships WHERE owner_id = ? GROUP BY relationship_type",
            (owner_id,)
        ).fetchall())

        facts = self.db.execute(
            """
            SELECT COUNT(*) FROM atomic_facts f
            JOIN memories m ON m.id = f.memory_id
            WHERE m.owner_id = ?
            """,
            (owner_id,)
        ).fetchone()[0]

        open_flags = self.db.execute(
            "SELECT COUNT(*) FROM review_flags WHERE owner_id = ? AND resolved = 0", (owner_id,)
        ).fetchone()[0]

        return {
            "total_memories": total,
            "by_category": by_category,
            "average_importance": round(avg_importance or 0.0, 4),
            "relationships": sum(edges_by_type.values()),
            "relationships_by_type": edges_by_type,
            "atomic_facts": facts,
            "open_conflicts": open_flags,
        }
