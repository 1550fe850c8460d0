"""
Routing decision logger for RelPulse.
Records why each analysis went to the remote provider or the fallback path,
and how long it took. Enabled with DEBUG_ROUTING_DECISIONS=True.
"""

import sqlite3
import time
import logging
from pathlib import Path
from typing import Dict, Any, Optional

from .. import config

logger = logging.getLogger(__name__)


class DecisionLogger:
    """
    Logs routing decisions to a `routing_decisions` table in the main sqlite db.
    """

    def __init__(self, db_path: Optional[Path] = None, enabled: Optional[bool] = None):
        self.db_path = Path(db_path or config.DB_PATH)
        self.enabled = config.DEBUG_ROUTING_DECISIONS if enabled is None else enabled

        if not self.enabled:
            logger.debug("Routing decision logging disabled (DEBUG_ROUTING_DECISIONS=False)")
            return

        with sqlite3.connect(self.db_path) as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS routing_decisions (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    entry_id TEXT NOT NULL,
                    route TEXT NOT NULL,
                    reason TEXT,
                    breaker_state TEXT,
                    attempt INTEGER,
                    outcome TEXT,
                    total_time_ms REAL,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """)
            conn.commit()

    def log_decision(
        self,
        entry_id: str,
        route: str,
        reason: str = "",
        breaker_state: str = "",
        attempt: int = 0,
        outcome: str = "",
        total_time_ms: float = 0.0,
    ):
        """
        Log one routing decision.

        Args:
            entry_id: Entry being analyzed
            route: 'remote' | 'fallback'
            reason: Why this route was taken (fallback trigger or 'healthy')
            breaker_state: Breaker state at decision time
            attempt: Retry attempt number
            outcome: 'completed' | 'requeued' | 'failed' | 'discarded'
            total_time_ms: Wall time spent on the attempt
        """
        if not self.enabled:
            return

        try:
            with sqlite3.connect(self.db_path) as conn:
                conn.execute(
                    """
                    INSERT INTO routing_decisions
                    (entry_id, route, reason, breaker_state, attempt, outcome, total_time_ms)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (entry_id, route, reason, breaker_state, attempt, outcome, total_time_ms)
                )
                conn.commit()

            logger.debug(f"Routing logged: {entry_id} -> {route} ({reason}, {outcome}, {total_time_ms:.1f}ms)")

        except sqlite3.Error as e:
            logger.warning(f"Failed to log routing decision: {e}")

    def get_summary_stats(self, hours: int = 24) -> Dict[str, Any]:
        """Decision counts and latency per route over the last `hours`."""
        if not self.enabled:
            return {'error': 'Routing decision logging disabled'}

        try:
            with sqlite3.connect(self.db_path) as conn:
                cursor = conn.execute(
                    """
                    SELECT route, COUNT(*), AVG(total_time_ms), MAX(total_time_ms)
                    FROM routing_decisions
                    WHERE created_at > datetime('now', '-' || ? || ' hours')
                    GROUP BY route
                    """,
                    (hours,)
                )
                by_route = {
                    row[0]: {'count': row[1], 'avg_time_ms': row[2], 'max_time_ms': row[3]}
                    for row in cursor.fetchall()
                }

                cursor = conn.execute(
                    """
                    SELECT reason, COUNT(*) FROM routing_decisions
                    WHERE route = 'fallback' AND created_at > datetime('now', '-' || ? || ' hours')
                    GROUP BY reason
                    """,
                    (hours,)
                )
                fallback_reasons = dict(cursor.fetchall())

            return {
                'time_window_hours': hours,
                'total_decisions': sum(r['count'] for r in by_route.values()),
                'by_route': by_route,
                'fallback_reasons': fallback_reasons,
            }

        except sqlite3.Error as e:
            logger.error(f"Failed to get routing decision stats: {e}")
            return {'error': str(e)}


class Timer:
    """Context manager for timing operations."""

    def __init__(self):
        self.start = None
        self.elapsed_ms = 0.0

    def __enter__(self):
        self.start = time.perf_counter()
        return self

    def __exit__(self, *args):
        self.elapsed_ms = (time.perf_counter() - self.start) * 1000
