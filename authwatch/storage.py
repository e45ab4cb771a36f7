# authwatch/storage.py

import os
import sqlite3
from typing import Dict, List, Optional

from .models import Alert


class SQLiteStorage:
    """
    Alert store behind SQLiteSink. The watcher only inserts; fetch_alerts
    is the read side for whatever consumes the stored alerts.
    """

    def __init__(self, db_path: str) -> None:
        self.db_path = db_path
        self.conn: Optional[sqlite3.Connection] = None

    def connect(self) -> None:
        parent = os.path.dirname(self.db_path)
        if parent:
            os.makedirs(parent, exist_ok=True)
        # alerts are written from watcher worker threads
        self.conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row

    def init_db(self) -> None:
        assert self.conn is not None
        cur = self.conn.cursor()

        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS alerts (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                timestamp TEXT,
                alert_type TEXT,
                target TEXT,
                risk_level TEXT,
                raw_log TEXT
            )
            """
        )

        self.conn.commit()

    def insert_alert(self, alert: Alert) -> int:
        assert self.conn is not None
        cur = self.conn.cursor()
        cur.execute(
            """
            INSERT INTO alerts (timestamp, alert_type, target, risk_level, raw_log)
            VALUES (?, ?, ?, ?, ?)
            """,
            (
                alert.timestamp,
                alert.alert_type,
                alert.target,
                alert.risk_level,
                alert.raw_log,
            ),
        )
        self.conn.commit()
        return cur.lastrowid

    def fetch_alerts(
        self,
        alert_type: Optional[str] = None,
        risk_level: Optional[str] = None,
        limit: int = 500,
    ) -> List[Dict]:
        """
        Return alerts as a list of dictionaries, newest first, with
        optional alert type and risk level filters.
        """
        assert self.conn is not None
        cur = self.conn.cursor()

        clauses = []
        params: List = []
        if alert_type:
            clauses.append("alert_type = ?")
            params.append(alert_type)
        if risk_level:
            clauses.append("LOWER(risk_level) = LOWER(?)")
            params.append(risk_level)

        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        cur.execute(
            f"""
            SELECT timestamp, alert_type, target, risk_level, raw_log
            FROM alerts
            {where}
            ORDER BY id DESC
            LIMIT ?
            """,
            (*params, limit),
        )

        rows = cur.fetchall()
        results: List[Dict] = []
        for row in rows:
            results.append(
                {
                    "timestamp": row["timestamp"],
                    "alert_type": row["alert_type"],
                    "target": row["target"],
                    "risk_level": row["risk_level"],
                    "raw_log": row["raw_log"],
                }
            )
        return results

    def close(self) -> None:
        if self.conn is not None:
            self.conn.close()
            self.conn = None
