"""
Read-only view of the publishing source system: journal, volume, issue and
article metadata, the free-access history, and the collection names.
"""
import logging
from typing import Any, Dict, Optional

import duckdb

TEXT_MAX_LENGTH = 2000


def _truncate(value: Optional[str], length: int = TEXT_MAX_LENGTH) -> Optional[str]:
    if value is not None and len(value) > length:
        return value[:length]
    return value


def _clean(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    return value or None


class SourceCatalog:
    def __init__(
        self,
        database_path: Optional[str] = None,
        connection: Optional[duckdb.DuckDBPyConnection] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.logger = logger or logging.getLogger("etl.source")
        if connection is None:
            connection = duckdb.connect(database=database_path, read_only=True)
            self.logger.info(f"Connected to source catalogue: {database_path}")
        self.con = connection
        self._free_reason_names: Optional[Dict[str, str]] = None

    def _row(self, sql, params) -> Optional[Dict[str, Any]]:
        cursor = self.con.execute(sql, params)
        row = cursor.fetchone()
        if row is None:
            return None
        return dict(zip([d[0] for d in cursor.description], row))

    def journal(self, issn: str) -> Optional[Dict[str, Any]]:
        return self._row(
            "SELECT issn, name_full, name_short FROM jnl_journals WHERE issn = ?",
            [issn],
        )

    def volume(self, issn: str, volnum: str) -> Optional[Dict[str, Any]]:
        return self._row(
            "SELECT volnum_phys FROM jnl_volumes WHERE issn = ? AND volnum = ?",
            [issn, volnum],
        )

    def issue(self, issn: str, volnum: str, issnum: str) -> Optional[Dict[str, Any]]:
        return self._row(
            """
            SELECT issnum_phys FROM jnl_issues
            WHERE issn = ? AND volnum = ? AND issnum = ?
            """,
            [issn, volnum, issnum],
        )

    def article(
        self, issn: str, volnum: str, issnum: str, artnum: str
    ) -> Optional[Dict[str, Any]]:
        """Article metadata, with ecs/title/authors trimmed and truncated for storage."""
        row = self._row(
            """
            SELECT a.issn, v.volnum_phys, i.issnum_phys, a.artnum,
                   CAST(a.cover_date AS VARCHAR) AS cover_date,
                   CAST(a.online_date AS VARCHAR) AS online_date,
                   a.article_type, a.ecs, a.title, a.authors
            FROM jnl_articles a
            JOIN jnl_volumes v ON v.issn = a.issn AND v.volnum = a.volnum
            JOIN jnl_issues i ON i.issn = a.issn AND i.volnum = a.volnum AND i.issnum = a.issnum
            WHERE a.issn = ? AND a.volnum = ? AND a.issnum = ? AND a.artnum = ?
            """,
            [issn, volnum, issnum, artnum],
        )
        if row is None:
            return None
        row["ecs"] = _clean(row["ecs"])
        row["title"] = _truncate(row["title"])
        row["authors"] = _truncate(row["authors"])
        return row

    def free_reason(self, item: str, date: str) -> Optional[str]:
        """Highest-priority free-access reason in force for item on date."""
        row = self.con.execute(
            """
            SELECT h.free_reason
            FROM jnl_free_history h
            JOIN jnl_free_reasons r ON r.reason_reason = h.free_reason
            WHERE h.free_item = ?
              AND CAST(? AS DATE) BETWEEN COALESCE(h.free_start, DATE '0001-01-01')
                                      AND COALESCE(h.free_end, DATE '9999-12-31')
            ORDER BY r.reason_priority DESC
            LIMIT 1
            """,
            [item, date],
        ).fetchone()
        return row[0] if row else None

    def free_reason_names(self) -> Dict[str, str]:
        if self._free_reason_names is None:
            rows = self.con.execute(
                "SELECT reason_reason, reason_description FROM jnl_free_reasons"
            ).fetchall()
            self._free_reason_names = dict(rows)
        return self._free_reason_names

    def collections(self) -> Dict[str, str]:
        return dict(
            self.con.execute("SELECT cln_id, cln_name FROM jnl_collections").fetchall()
        )

    def close(self) -> None:
        self.con.close()
