"""
SQLite storage for RelPulse.

Holds users, relationships and journal entries (read by the pipeline), plus
the records the pipeline writes: one analysis row per entry, durable queue
state per entry, and one health score row per relationship.
"""

import sqlite3
import json
import logging
import time
from pathlib import Path
from typing import Optional, Dict, Any, List, Iterable

from . import config
from .models import (
    AnalysisRequest,
    AnyAnalysisResult,
    HealthScore,
    RequestStatus,
    result_from_dict,
)

logger = logging.getLogger(__name__)


class AnalysisStore:
    """SQLite-backed store; every call opens its own short-lived connection."""

    def __init__(self, db_path: Optional[str] = None):
        """
        Initialize store.

        Args:
            db_path: Path to the sqlite database (default from config)
        """
        self.db_path = Path(db_path or config.DB_PATH)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=10)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self):
        """Initialize database schema."""
        with self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS users (
                    id TEXT PRIMARY KEY,
                    analysis_enabled INTEGER NOT NULL DEFAULT 1,
                    tier TEXT NOT NULL DEFAULT 'free'
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS relationships (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    name TEXT NOT NULL,
                    type TEXT NOT NULL DEFAULT 'friend',
                    is_active INTEGER NOT NULL DEFAULT 1
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS entries (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    relationship_id TEXT,
                    content TEXT NOT NULL,
                    mood TEXT,
                    allow_ai_analysis INTEGER NOT NULL DEFAULT 1,
                    created_at REAL NOT NULL
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS analyses (
                    entry_id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    relationship_id TEXT,
                    source TEXT NOT NULL,
                    status TEXT NOT NULL,
                    sentiment_score REAL NOT NULL,
                    confidence_level REAL NOT NULL,
                    created_at REAL NOT NULL,
                    payload TEXT NOT NULL
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS analysis_requests (
                    entry_id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    relationship_id TEXT,
                    priority TEXT NOT NULL,
                    status TEXT NOT NULL,
                    attempts INTEGER NOT NULL DEFAULT 0,
                    generation INTEGER NOT NULL DEFAULT 0,
                    enqueued_at REAL NOT NULL,
                    last_error_type TEXT,
                    updated_at REAL NOT NULL,
                    payload TEXT NOT NULL
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS health_scores (
                    relationship_id TEXT PRIMARY KEY,
                    user_id TEXT,
                    score INTEGER NOT NULL,
                    last_calculated REAL NOT NULL,
                    payload TEXT NOT NULL
                )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_analyses_rel ON analyses(relationship_id, created_at)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_requests_status ON analysis_requests(status, updated_at)")
            conn.commit()
        logger.debug(f"Analysis store initialized at {self.db_path}")

    # ========================================================================
    # Users, relationships, entries
    # ========================================================================

    def add_user(self, user_id: str, analysis_enabled: bool = True, tier: str = "free"):
        with self._connect() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO users (id, analysis_enabled, tier) VALUES (?, ?, ?)",
                (user_id, int(analysis_enabled), tier)
            )
            conn.commit()

    def get_user(self, user_id: str) -> Optional[Dict[str, Any]]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
        if row is None:
            return None
        return {"id": row["id"], "analysis_enabled": bool(row["analysis_enabled"]), "tier": row["tier"]}

    def add_relationship(self, relationship_id: str, user_id: str, name: str,
                         rel_type: str = "friend", is_active: bool = True):
        with self._connect() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO relationships (id, user_id, name, type, is_active) VALUES (?, ?, ?, ?, ?)",
                (relationship_id, user_id, name, rel_type, int(is_active))
            )
            conn.commit()

    def get_relationship(self, relationship_id: str) -> Optional[Dict[str, Any]]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM relationships WHERE id = ?", (relationship_id,)).fetchone()
        return self._relationship_row(row) if row else None

    def list_relationships(self, user_id: Optional[str] = None, active_only: bool = True) -> List[Dict[str, Any]]:
        query = "SELECT * FROM relationships WHERE 1=1"
        params: List[Any] = []
        if user_id is not None:
            query += " AND user_id = ?"
            params.append(user_id)
        if active_only:
            query += " AND is_active = 1"
        query += " ORDER BY id"
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._relationship_row(row) for row in rows]

    @staticmethod
    def _relationship_row(row) -> Dict[str, Any]:
        return {
            "id": row["id"],
            "user_id": row["user_id"],
            "name": row["name"],
            "type": row["type"],
            "is_active": bool(row["is_active"]),
        }

    def add_entry(self, entry_id: str, user_id: str, content: str,
                  relationship_id: Optional[str] = None, mood: Optional[str] = None,
                  allow_ai_analysis: bool = True, created_at: Optional[float] = None):
        with self._connect() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO entries (id, user_id, relationship_id, content, mood, allow_ai_analysis, created_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?)",
                (entry_id, user_id, relationship_id, content, mood, int(allow_ai_analysis),
                 created_at if created_at is not None else time.time())
            )
            conn.commit()

    def get_entry(self, entry_id: str) -> Optional[Dict[str, Any]]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM entries WHERE id = ?", (entry_id,)).fetchone()
        if row is None:
            return None
        return {
            "id": row["id"],
            "user_id": row["user_id"],
            "relationship_id": row["relationship_id"],
            "content": row["content"],
            "mood": row["mood"],
            "allow_ai_analysis": bool(row["allow_ai_analysis"]),
            "created_at": row["created_at"],
        }

    def recent_entry_texts(self, relationship_id: str, before: float, limit: int = 5) -> List[str]:
        """Content of the most recent entries for a relationship created before a timestamp."""
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT content FROM entries WHERE relationship_id = ? AND created_at < ? "
                "ORDER BY created_at DESC LIMIT ?",
                (relationship_id, before, limit)
            ).fetchall()
        return [row["content"] for row in rows]

    # ========================================================================
    # Analyses (one row per entry; a newer result replaces the old one)
    # ========================================================================

    def save_analysis(self, result: AnyAnalysisResult):
        with self._connect() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO analyses "
                "(entry_id, user_id, relationship_id, source, status, sentiment_score, confidence_level, created_at, payload) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (result.entry_id, result.user_id, result.relationship_id, result.source.value, result.status,
                 result.sentiment_score, result.confidence_level, result.created_at, json.dumps(result.to_dict()))
            )
            conn.commit()
        logger.debug(f"Saved {result.source.value} analysis for entry {result.entry_id}")

    def get_analysis(self, entry_id: str) -> Optional[AnyAnalysisResult]:
        with self._connect() as conn:
            row = conn.execute("SELECT payload FROM analyses WHERE entry_id = ?", (entry_id,)).fetchone()
        return result_from_dict(json.loads(row["payload"])) if row else None

    def list_analyses(self, relationship_id: str, since: Optional[float] = None,
                      limit: int = 200, status: str = "completed") -> List[AnyAnalysisResult]:
        """Analyses for a relationship, newest first."""
        query = "SELECT payload FROM analyses WHERE relationship_id = ? AND status = ?"
        params: List[Any] = [relationship_id, status]
        if since is not None:
            query += " AND created_at >= ?"
            params.append(since)
        query += " ORDER BY created_at DESC, entry_id DESC LIMIT ?"
        params.append(limit)
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [result_from_dict(json.loads(row["payload"])) for row in rows]

    def list_fallback_analyses(self, limit: int = 50) -> List[AnyAnalysisResult]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT payload FROM analyses WHERE source = 'fallback' ORDER BY created_at ASC LIMIT ?",
                (limit,)
            ).fetchall()
        return [result_from_dict(json.loads(row["payload"])) for row in rows]

    def analyses_since(self, since: float) -> List[Dict[str, Any]]:
        """Flat rows (no payload decoding) for monitoring sweeps."""
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT entry_id, source, status, created_at FROM analyses WHERE created_at >= ?",
                (since,)
            ).fetchall()
        return [dict(row) for row in rows]

    # ========================================================================
    # Durable queue state
    # ========================================================================

    def save_request(self, request: AnalysisRequest, updated_at: Optional[float] = None):
        with self._connect() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO analysis_requests "
                "(entry_id, user_id, relationship_id, priority, status, attempts, generation, enqueued_at, "
                "last_error_type, updated_at, payload) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (request.entry_id, request.user_id, request.relationship_id, request.priority.value,
                 request.status.value, request.attempts, request.generation, request.enqueued_at,
                 request.last_error_type, updated_at if updated_at is not None else time.time(),
                 json.dumps(request.to_dict()))
            )
            conn.commit()

    def claim_request(self, request: AnalysisRequest, expected_generation: int,
                      updated_at: Optional[float] = None) -> bool:
        """
        Write a dispatched request only if the stored row is still queued at expected_generation.

        Returns False when another process dispatched, cancelled or replaced it first.
        """
        with self._connect() as conn:
            cursor = conn.execute(
                "UPDATE analysis_requests SET status = ?, priority = ?, attempts = ?, generation = ?, "
                "updated_at = ?, payload = ? "
                "WHERE entry_id = ? AND status = ? AND generation = ?",
                (request.status.value, request.priority.value, request.attempts, request.generation,
                 updated_at if updated_at is not None else time.time(), json.dumps(request.to_dict()),
                 request.entry_id, RequestStatus.QUEUED.value, expected_generation)
            )
            conn.commit()
        return cursor.rowcount == 1

    def get_request(self, entry_id: str) -> Optional[AnalysisRequest]:
        with self._connect() as conn:
            row = conn.execute("SELECT payload FROM analysis_requests WHERE entry_id = ?", (entry_id,)).fetchone()
        return AnalysisRequest.from_dict(json.loads(row["payload"])) if row else None

    def load_requests(self, statuses: Iterable[RequestStatus]) -> List[AnalysisRequest]:
        statuses = [s.value for s in statuses]
        placeholders = ", ".join("?" for _ in statuses)
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT payload FROM analysis_requests WHERE status IN ({placeholders}) ORDER BY enqueued_at",
                statuses
            ).fetchall()
        return [AnalysisRequest.from_dict(json.loads(row["payload"])) for row in rows]

    def failed_requests_since(self, since: float) -> List[Dict[str, Any]]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT entry_id, user_id, priority, attempts, last_error_type, updated_at "
                "FROM analysis_requests WHERE status = 'failed' AND updated_at >= ?",
                (since,)
            ).fetchall()
        return [dict(row) for row in rows]

    # ========================================================================
    # Health scores (one row per relationship, overwritten)
    # ========================================================================

    def save_health_score(self, health: HealthScore):
        with self._connect() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO health_scores (relationship_id, user_id, score, last_calculated, payload) "
                "VALUES (?, ?, ?, ?, ?)",
                (health.relationship_id, health.user_id, health.score, health.last_calculated,
                 json.dumps(health.to_dict()))
            )
            conn.commit()

    def get_health_score(self, relationship_id: str) -> Optional[HealthScore]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT payload FROM health_scores WHERE relationship_id = ?", (relationship_id,)
            ).fetchone()
        return HealthScore.from_dict(json.loads(row["payload"])) if row else None

    def list_health_scores(self, user_id: str) -> List[HealthScore]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT h.payload FROM health_scores h JOIN relationships r ON r.id = h.relationship_id "
                "WHERE r.user_id = ? AND r.is_active = 1 ORDER BY h.score DESC",
                (user_id,)
            ).fetchall()
        return [HealthScore.from_dict(json.loads(row["payload"])) for row in rows]

    def count_health_scores(self) -> int:
        with self._connect() as conn:
            return conn.execute("SELECT COUNT(*) FROM health_scores").fetchone()[0]

    def stats(self) -> Dict[str, Any]:
        """Row counts per table."""
        with self._connect() as conn:
            counts = {
                table: conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]
                for table in ("users", "relationships", "entries", "analyses", "analysis_requests", "health_scores")
            }
            by_source = dict(conn.execute("SELECT source, COUNT(*) FROM analyses GROUP BY source").fetchall())
        return {"tables": counts, "analyses_by_source": by_source, "db_path": str(self.db_path)}


if __name__ == "__main__":
    store = AnalysisStore()
    print("Store stats:", json.dumps(store.stats(), indent=2))
