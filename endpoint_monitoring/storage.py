from __future__ import annotations

import json
import sqlite3
import time
import uuid
from pathlib import Path
from typing import Any, Iterable

from endpoint_monitoring.models import (
    AlertRule,
    AlertTrigger,
    CheckResult,
    CheckStatus,
    EndpointDefinition,
    NotificationChannel,
    OverallStats,
    ProbeOutcome,
    UptimeStats,
)


SCHEMA_VERSION = 2

# Chart queries never return more points than this.
MAX_SERIES_POINTS = 5000

_SCOPE_COLUMNS = {
    "user": "user_id",
    "organization": "organization_id",
    "endpoint": "endpoint_id",
}

_ENDPOINT_PATCH_COLUMNS = {
    "name": "name",
    "url": "url",
    "method": "method",
    "headers": "headers_json",
    "body": "body",
    "expected_status": "expected_status",
    "timeout_ms": "timeout_ms",
    "interval_ms": "interval_ms",
    "is_active": "is_active",
}

_ALERT_PATCH_COLUMNS = {
    "name": "name",
    "description": "description",
    "condition": "condition",
    "threshold": "threshold",
    "is_active": "is_active",
}

_CHANNEL_PATCH_COLUMNS = {
    "name": "name",
    "config": "config",
    "is_active": "is_active",
}


def _utc_ts() -> float:
    return float(time.time())


def _uuid() -> str:
    return str(uuid.uuid4())


def _json_dumps(obj: Any) -> str:
    return json.dumps(obj, ensure_ascii=False, sort_keys=True)


def _json_loads(s: Any) -> Any:
    if s is None:
        return None
    if isinstance(s, (dict, list)):
        return s
    try:
        return json.loads(str(s))
    except Exception:
        return None


def _connect(path: str) -> sqlite3.Connection:
    p = str(path or "").strip()
    if not p:
        raise ValueError("Missing db_path")
    Path(p).parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(p, timeout=30, isolation_level=None, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON;")
    conn.execute("PRAGMA busy_timeout = 5000;")
    # WAL lets readers (stats queries) run alongside the check writer.
    try:
        conn.execute("PRAGMA journal_mode = WAL;")
    except sqlite3.DatabaseError:
        pass
    return conn


def _ensure_schema_conn(conn: sqlite3.Connection) -> None:
    conn.execute("CREATE TABLE IF NOT EXISTS schema_meta (k TEXT PRIMARY KEY, v TEXT NOT NULL);")
    row = conn.execute("SELECT v FROM schema_meta WHERE k='version'").fetchone()
    cur = int(row["v"]) if row and row["v"] else 0
    if cur >= SCHEMA_VERSION:
        return

    if cur == 0:
        _apply_v1(conn)
        _apply_v2(conn)
        conn.execute("INSERT OR REPLACE INTO schema_meta (k, v) VALUES ('version', ?)", (str(SCHEMA_VERSION),))
        return

    if cur == 1:
        _apply_v2(conn)
        conn.execute("UPDATE schema_meta SET v=? WHERE k='version'", (str(SCHEMA_VERSION),))
        return

    raise RuntimeError(f"Unsupported schema version upgrade path cur={cur} target={SCHEMA_VERSION}")


def _apply_v1(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS endpoints (
          id TEXT PRIMARY KEY,
          organization_id TEXT,
          user_id TEXT NOT NULL,
          name TEXT NOT NULL,
          url TEXT NOT NULL,
          method TEXT NOT NULL DEFAULT 'GET',
          headers_json TEXT,
          body TEXT,
          expected_status INTEGER NOT NULL DEFAULT 200,
          timeout_ms INTEGER NOT NULL DEFAULT 30000,
          interval_ms INTEGER NOT NULL DEFAULT 300000,
          is_active INTEGER NOT NULL DEFAULT 1,
          created_at_ts REAL NOT NULL,
          updated_at_ts REAL NOT NULL
        );
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS check_results (
          id TEXT PRIMARY KEY,
          endpoint_id TEXT NOT NULL REFERENCES endpoints(id) ON DELETE CASCADE,
          user_id TEXT NOT NULL,
          organization_id TEXT,
          status TEXT NOT NULL, -- SUCCESS|FAILURE|TIMEOUT|ERROR
          response_time_ms REAL,
          status_code INTEGER,
          response_size INTEGER,
          error_message TEXT,
          checked_at_ts REAL NOT NULL
        );
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS alert_rules (
          id TEXT PRIMARY KEY,
          endpoint_id TEXT NOT NULL REFERENCES endpoints(id) ON DELETE CASCADE,
          user_id TEXT NOT NULL,
          name TEXT NOT NULL,
          description TEXT,
          condition TEXT NOT NULL,
          threshold REAL NOT NULL,
          is_active INTEGER NOT NULL DEFAULT 1,
          last_triggered_ts REAL,
          created_at_ts REAL NOT NULL,
          updated_at_ts REAL NOT NULL
        );
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS alert_triggers (
          id TEXT PRIMARY KEY,
          alert_id TEXT NOT NULL REFERENCES alert_rules(id) ON DELETE CASCADE,
          value REAL NOT NULL,
          triggered_at_ts REAL NOT NULL
        );
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS notification_channels (
          id TEXT PRIMARY KEY,
          organization_id TEXT NOT NULL,
          name TEXT NOT NULL,
          type TEXT NOT NULL, -- EMAIL|WEBHOOK|SLACK|DISCORD
          config TEXT NOT NULL,
          is_active INTEGER NOT NULL DEFAULT 1,
          created_at_ts REAL NOT NULL,
          updated_at_ts REAL NOT NULL
        );
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_endpoints_active ON endpoints(is_active);")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_endpoints_org ON endpoints(organization_id);")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_checks_endpoint_ts ON check_results(endpoint_id, checked_at_ts);")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_checks_user_ts ON check_results(user_id, checked_at_ts);")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_checks_org_ts ON check_results(organization_id, checked_at_ts);")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_alert_rules_endpoint ON alert_rules(endpoint_id, is_active);")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_alert_triggers_alert ON alert_triggers(alert_id, triggered_at_ts DESC);")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_channels_org ON notification_channels(organization_id, is_active);")


def _apply_v2(conn: sqlite3.Connection) -> None:
    """
    v2 adds the organization plan lookup (per-plan retention) and the shared
    throttle table used when several processes send notifications.
    """
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS organization_plans (
          organization_id TEXT PRIMARY KEY,
          plan TEXT NOT NULL,
          updated_at_ts REAL NOT NULL
        );
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS throttle_entries (
          key TEXT PRIMARY KEY,
          notified_at_ts REAL NOT NULL,
          expires_at_ts REAL NOT NULL
        );
        """
    )


def _row_to_endpoint(row: sqlite3.Row) -> EndpointDefinition:
    headers = _json_loads(row["headers_json"])
    return EndpointDefinition(
        id=str(row["id"]),
        organization_id=row["organization_id"],
        user_id=str(row["user_id"]),
        name=str(row["name"]),
        url=str(row["url"]),
        method=str(row["method"] or "GET"),
        headers={str(k): str(v) for k, v in headers.items()} if isinstance(headers, dict) else {},
        body=row["body"],
        expected_status=int(row["expected_status"]),
        timeout_ms=int(row["timeout_ms"]),
        interval_ms=int(row["interval_ms"]),
        is_active=bool(row["is_active"]),
    )


def _row_to_check(row: sqlite3.Row) -> CheckResult:
    return CheckResult(
        id=str(row["id"]),
        endpoint_id=str(row["endpoint_id"]),
        user_id=str(row["user_id"]),
        organization_id=row["organization_id"],
        status=CheckStatus(str(row["status"])),
        response_time_ms=float(row["response_time_ms"]) if row["response_time_ms"] is not None else None,
        status_code=int(row["status_code"]) if row["status_code"] is not None else None,
        response_size=int(row["response_size"]) if row["response_size"] is not None else None,
        error_message=row["error_message"],
        checked_at_ts=float(row["checked_at_ts"]),
    )


def _row_to_alert_rule(row: sqlite3.Row) -> AlertRule:
    return AlertRule(
        id=str(row["id"]),
        endpoint_id=str(row["endpoint_id"]),
        user_id=str(row["user_id"]),
        name=str(row["name"]),
        description=row["description"],
        condition=str(row["condition"]),
        threshold=float(row["threshold"]),
        is_active=bool(row["is_active"]),
        last_triggered_ts=float(row["last_triggered_ts"]) if row["last_triggered_ts"] is not None else None,
    )


def _row_to_trigger(row: sqlite3.Row) -> AlertTrigger:
    return AlertTrigger(
        id=str(row["id"]),
        alert_id=str(row["alert_id"]),
        value=float(row["value"]),
        triggered_at_ts=float(row["triggered_at_ts"]),
    )


def _row_to_channel(row: sqlite3.Row) -> NotificationChannel:
    return NotificationChannel(
        id=str(row["id"]),
        organization_id=str(row["organization_id"]),
        name=str(row["name"]),
        type=str(row["type"]),
        config=str(row["config"]),
        is_active=bool(row["is_active"]),
    )


def _patch_assignments(patch: dict[str, Any], columns: dict[str, str]) -> tuple[list[str], list[Any]]:
    sets: list[str] = []
    params: list[Any] = []
    for key, value in patch.items():
        column = columns.get(key)
        if column is None:
            raise ValueError(f"Unsupported field: {key}")
        if key == "headers":
            value = _json_dumps(value) if value is not None else None
        elif key == "is_active":
            value = 1 if value else 0
        sets.append(f"{column}=?")
        params.append(value)
    return sets, params


class MonitoringStore:
    """SQLite system of record for endpoints, check history, alert rules,
    triggers, notification channels and the shared throttle table.

    Every call opens its own short-lived connection so the store can be used
    from concurrent tasks and worker threads.
    """

    def __init__(self, db_path: str) -> None:
        self.db_path = str(db_path)

    def _conn(self) -> sqlite3.Connection:
        conn = _connect(self.db_path)
        _ensure_schema_conn(conn)
        return conn

    def ensure_schema(self) -> None:
        conn = _connect(self.db_path)
        try:
            _ensure_schema_conn(conn)
        finally:
            conn.close()

    # --- Organizations -------------------------------------------------

    def set_organization_plan(self, organization_id: str, plan: str) -> None:
        conn = self._conn()
        try:
            conn.execute(
                """
                INSERT INTO organization_plans (organization_id, plan, updated_at_ts) VALUES (?, ?, ?)
                ON CONFLICT(organization_id) DO UPDATE SET plan=excluded.plan, updated_at_ts=excluded.updated_at_ts
                """,
                (organization_id, str(plan), _utc_ts()),
            )
        finally:
            conn.close()

    def get_organization_plan(self, organization_id: str) -> str | None:
        conn = self._conn()
        try:
            row = conn.execute(
                "SELECT plan FROM organization_plans WHERE organization_id=?", (organization_id,)
            ).fetchone()
            return str(row["plan"]) if row else None
        finally:
            conn.close()

    def list_organization_plans(self) -> dict[str, str]:
        conn = self._conn()
        try:
            rows = conn.execute("SELECT organization_id, plan FROM organization_plans").fetchall()
            return {str(r["organization_id"]): str(r["plan"]) for r in rows}
        finally:
            conn.close()

    # --- Endpoints -----------------------------------------------------

    def insert_endpoint(
        self,
        *,
        user_id: str,
        organization_id: str | None,
        name: str,
        url: str,
        method: str = "GET",
        headers: dict[str, str] | None = None,
        body: str | None = None,
        expected_status: int = 200,
        timeout_ms: int = 30_000,
        interval_ms: int = 300_000,
        is_active: bool = True,
        endpoint_id: str | None = None,
    ) -> EndpointDefinition:
        conn = self._conn()
        try:
            now = _utc_ts()
            endpoint_id = endpoint_id or _uuid()
            conn.execute(
                """
                INSERT INTO endpoints (
                  id, organization_id, user_id, name, url, method, headers_json, body,
                  expected_status, timeout_ms, interval_ms, is_active, created_at_ts, updated_at_ts
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    endpoint_id,
                    organization_id,
                    user_id,
                    name,
                    url,
                    method.upper(),
                    _json_dumps(headers) if headers else None,
                    body,
                    int(expected_status),
                    int(timeout_ms),
                    int(interval_ms),
                    1 if is_active else 0,
                    now,
                    now,
                ),
            )
            row = conn.execute("SELECT * FROM endpoints WHERE id=?", (endpoint_id,)).fetchone()
            return _row_to_endpoint(row)
        finally:
            conn.close()

    def update_endpoint(self, endpoint_id: str, patch: dict[str, Any]) -> EndpointDefinition | None:
        conn = self._conn()
        try:
            sets, params = _patch_assignments(patch, _ENDPOINT_PATCH_COLUMNS)
            if sets:
                sets.append("updated_at_ts=?")
                params.extend([_utc_ts(), endpoint_id])
                conn.execute(f"UPDATE endpoints SET {', '.join(sets)} WHERE id=?", params)
            row = conn.execute("SELECT * FROM endpoints WHERE id=?", (endpoint_id,)).fetchone()
            return _row_to_endpoint(row) if row else None
        finally:
            conn.close()

    def get_endpoint(self, endpoint_id: str, organization_id: str) -> EndpointDefinition | None:
        conn = self._conn()
        try:
            row = conn.execute(
                "SELECT * FROM endpoints WHERE id=? AND organization_id=?", (endpoint_id, organization_id)
            ).fetchone()
            return _row_to_endpoint(row) if row else None
        finally:
            conn.close()

    def get_endpoint_internal(self, endpoint_id: str) -> EndpointDefinition | None:
        conn = self._conn()
        try:
            row = conn.execute("SELECT * FROM endpoints WHERE id=?", (endpoint_id,)).fetchone()
            return _row_to_endpoint(row) if row else None
        finally:
            conn.close()

    def list_active_endpoints(self) -> list[EndpointDefinition]:
        conn = self._conn()
        try:
            rows = conn.execute("SELECT * FROM endpoints WHERE is_active=1 ORDER BY created_at_ts ASC, rowid ASC").fetchall()
            return [_row_to_endpoint(r) for r in rows]
        finally:
            conn.close()

    def count_active_endpoints(self, organization_id: str) -> int:
        conn = self._conn()
        try:
            row = conn.execute(
                "SELECT COUNT(*) AS n FROM endpoints WHERE organization_id=? AND is_active=1", (organization_id,)
            ).fetchone()
            return int(row["n"])
        finally:
            conn.close()

    # --- Check history -------------------------------------------------

    def insert_check_result(
        self,
        endpoint: EndpointDefinition,
        outcome: ProbeOutcome,
        *,
        checked_at_ts: float | None = None,
    ) -> CheckResult:
        conn = self._conn()
        try:
            ts = float(checked_at_ts) if checked_at_ts is not None else _utc_ts()
            check_id = _uuid()
            conn.execute("BEGIN IMMEDIATE;")
            try:
                # History is monotonic per endpoint even across clock jumps.
                last = conn.execute(
                    "SELECT MAX(checked_at_ts) AS ts FROM check_results WHERE endpoint_id=?", (endpoint.id,)
                ).fetchone()
                if last and last["ts"] is not None and float(last["ts"]) > ts:
                    ts = float(last["ts"])
                conn.execute(
                    """
                    INSERT INTO check_results (
                      id, endpoint_id, user_id, organization_id, status, response_time_ms,
                      status_code, response_size, error_message, checked_at_ts
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        check_id,
                        endpoint.id,
                        endpoint.user_id,
                        endpoint.organization_id,
                        outcome.status.value,
                        outcome.response_time_ms,
                        outcome.status_code,
                        outcome.response_size,
                        outcome.error_message,
                        ts,
                    ),
                )
                conn.execute("COMMIT;")
            except Exception:
                conn.execute("ROLLBACK;")
                raise
            return CheckResult(
                id=check_id,
                endpoint_id=endpoint.id,
                user_id=endpoint.user_id,
                organization_id=endpoint.organization_id,
                status=outcome.status,
                response_time_ms=outcome.response_time_ms,
                status_code=outcome.status_code,
                response_size=outcome.response_size,
                error_message=outcome.error_message,
                checked_at_ts=ts,
            )
        finally:
            conn.close()

    def list_checks(self, endpoint_id: str, *, skip: int = 0, take: int = 50) -> list[CheckResult]:
        conn = self._conn()
        try:
            rows = conn.execute(
                """
                SELECT * FROM check_results WHERE endpoint_id=?
                ORDER BY checked_at_ts DESC, rowid DESC LIMIT ? OFFSET ?
                """,
                (endpoint_id, max(1, int(take)), max(0, int(skip))),
            ).fetchall()
            return [_row_to_check(r) for r in rows]
        finally:
            conn.close()

    def uptime_stats(self, endpoint_id: str, from_ts: float, to_ts: float) -> UptimeStats:
        conn = self._conn()
        try:
            rows = conn.execute(
                """
                SELECT status, COUNT(*) AS n FROM check_results
                WHERE endpoint_id=? AND checked_at_ts >= ? AND checked_at_ts <= ?
                GROUP BY status
                """,
                (endpoint_id, float(from_ts), float(to_ts)),
            ).fetchall()
        finally:
            conn.close()

        total = 0
        successful = 0
        for r in rows:
            n = int(r["n"])
            total += n
            if str(r["status"]) == CheckStatus.SUCCESS.value:
                successful = n
        uptime = (successful / total) * 100.0 if total > 0 else 0.0
        return UptimeStats(total=total, successful=successful, failed=total - successful, uptime_percentage=uptime)

    def average_response_time(self, endpoint_id: str, from_ts: float, to_ts: float) -> float:
        conn = self._conn()
        try:
            row = conn.execute(
                """
                SELECT AVG(response_time_ms) AS avg_ms FROM check_results
                WHERE endpoint_id=? AND status=? AND response_time_ms IS NOT NULL
                  AND checked_at_ts >= ? AND checked_at_ts <= ?
                """,
                (endpoint_id, CheckStatus.SUCCESS.value, float(from_ts), float(to_ts)),
            ).fetchone()
            return float(row["avg_ms"]) if row and row["avg_ms"] is not None else 0.0
        finally:
            conn.close()

    def overall_stats(self, scope: str, scope_id: str, from_ts: float, to_ts: float) -> OverallStats:
        column = _SCOPE_COLUMNS.get(scope)
        if column is None:
            raise ValueError(f"Unsupported stats scope: {scope}")
        conn = self._conn()
        try:
            row = conn.execute(
                f"""
                SELECT
                  COUNT(*) AS total,
                  SUM(CASE WHEN status=? THEN 1 ELSE 0 END) AS successful,
                  AVG(CASE WHEN status=? THEN response_time_ms END) AS avg_ms
                FROM check_results
                WHERE {column}=? AND checked_at_ts >= ? AND checked_at_ts <= ?
                """,
                (CheckStatus.SUCCESS.value, CheckStatus.SUCCESS.value, scope_id, float(from_ts), float(to_ts)),
            ).fetchone()
        finally:
            conn.close()

        total = int(row["total"] or 0)
        successful = int(row["successful"] or 0)
        failed = total - successful
        return OverallStats(
            total_checks=total,
            successful_checks=successful,
            failed_checks=failed,
            error_rate=(failed / total) * 100.0 if total > 0 else 0.0,
            uptime_percentage=(successful / total) * 100.0 if total > 0 else 0.0,
            avg_response_time=float(row["avg_ms"]) if row["avg_ms"] is not None else 0.0,
        )

    def top_endpoints(self, organization_id: str, from_ts: float, to_ts: float, limit: int = 5) -> list[dict[str, Any]]:
        conn = self._conn()
        try:
            rows = conn.execute(
                """
                SELECT
                  e.id AS id, e.name AS name, e.url AS url,
                  COUNT(c.id) AS total,
                  SUM(CASE WHEN c.status=? THEN 1 ELSE 0 END) AS successful,
                  AVG(COALESCE(c.response_time_ms, 0)) AS avg_ms
                FROM endpoints e
                LEFT JOIN check_results c
                  ON c.endpoint_id = e.id AND c.checked_at_ts >= ? AND c.checked_at_ts <= ?
                WHERE e.organization_id=?
                GROUP BY e.id
                ORDER BY total DESC, e.created_at_ts ASC
                LIMIT ?
                """,
                (CheckStatus.SUCCESS.value, float(from_ts), float(to_ts), organization_id, max(1, int(limit))),
            ).fetchall()
        finally:
            conn.close()

        out: list[dict[str, Any]] = []
        for r in rows:
            total = int(r["total"] or 0)
            failed = total - int(r["successful"] or 0)
            out.append(
                {
                    "id": str(r["id"]),
                    "name": str(r["name"]),
                    "url": str(r["url"]),
                    "totalChecks": total,
                    "avgResponseTime": round(float(r["avg_ms"] or 0.0)) if total else 0,
                    "errorRate": round((failed / total) * 100.0, 2) if total else 0.0,
                }
            )
        return out

    def response_time_history(self, scope: str, scope_id: str, from_ts: float, to_ts: float) -> list[dict[str, Any]]:
        column = _SCOPE_COLUMNS.get(scope)
        if column is None:
            raise ValueError(f"Unsupported stats scope: {scope}")
        conn = self._conn()
        try:
            rows = conn.execute(
                f"""
                SELECT response_time_ms, checked_at_ts FROM check_results
                WHERE {column}=? AND status=? AND response_time_ms IS NOT NULL
                  AND checked_at_ts >= ? AND checked_at_ts <= ?
                ORDER BY checked_at_ts ASC LIMIT ?
                """,
                (scope_id, CheckStatus.SUCCESS.value, float(from_ts), float(to_ts), MAX_SERIES_POINTS),
            ).fetchall()
            return [{"responseTime": float(r["response_time_ms"]), "checkedAt": float(r["checked_at_ts"])} for r in rows]
        finally:
            conn.close()

    def uptime_history(self, organization_id: str, from_ts: float, to_ts: float) -> list[dict[str, Any]]:
        conn = self._conn()
        try:
            rows = conn.execute(
                """
                SELECT status, checked_at_ts FROM check_results
                WHERE organization_id=? AND checked_at_ts >= ? AND checked_at_ts <= ?
                ORDER BY checked_at_ts ASC LIMIT ?
                """,
                (organization_id, float(from_ts), float(to_ts), MAX_SERIES_POINTS),
            ).fetchall()
            return [{"status": str(r["status"]), "checkedAt": float(r["checked_at_ts"])} for r in rows]
        finally:
            conn.close()

    def recent_failures(self, organization_id: str, limit: int = 50) -> list[dict[str, Any]]:
        conn = self._conn()
        try:
            rows = conn.execute(
                """
                SELECT c.*, e.name AS endpoint_name, e.url AS endpoint_url
                FROM check_results c JOIN endpoints e ON e.id = c.endpoint_id
                WHERE c.organization_id=? AND c.status != ?
                ORDER BY c.checked_at_ts DESC, c.rowid DESC LIMIT ?
                """,
                (organization_id, CheckStatus.SUCCESS.value, max(1, int(limit))),
            ).fetchall()
            out = []
            for r in rows:
                check = _row_to_check(r)
                out.append({"check": check, "endpoint": {"name": str(r["endpoint_name"]), "url": str(r["endpoint_url"])}})
            return out
        finally:
            conn.close()

    def delete_checks_before(
        self,
        before_ts: float,
        *,
        organization_id: str | None = None,
        exclude_organization_ids: Iterable[str] | None = None,
    ) -> int:
        """Delete history older than ``before_ts``.

        With ``organization_id`` only that organization's rows go; with
        ``exclude_organization_ids`` every row outside those organizations
        (including rows without an organization) goes.
        """
        conn = self._conn()
        try:
            if organization_id is not None:
                cur = conn.execute(
                    "DELETE FROM check_results WHERE checked_at_ts < ? AND organization_id=?",
                    (float(before_ts), organization_id),
                )
            elif exclude_organization_ids:
                excluded = list(exclude_organization_ids)
                marks = ",".join("?" for _ in excluded)
                cur = conn.execute(
                    f"""
                    DELETE FROM check_results
                    WHERE checked_at_ts < ? AND (organization_id IS NULL OR organization_id NOT IN ({marks}))
                    """,
                    (float(before_ts), *excluded),
                )
            else:
                cur = conn.execute("DELETE FROM check_results WHERE checked_at_ts < ?", (float(before_ts),))
            return int(cur.rowcount or 0)
        finally:
            conn.close()

    # --- Alert rules and triggers --------------------------------------

    def insert_alert_rule(
        self,
        *,
        endpoint_id: str,
        user_id: str,
        name: str,
        condition: str,
        threshold: float,
        description: str | None = None,
        is_active: bool = True,
        alert_id: str | None = None,
    ) -> AlertRule:
        conn = self._conn()
        try:
            now = _utc_ts()
            alert_id = alert_id or _uuid()
            conn.execute(
                """
                INSERT INTO alert_rules (
                  id, endpoint_id, user_id, name, description, condition, threshold,
                  is_active, last_triggered_ts, created_at_ts, updated_at_ts
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, NULL, ?, ?)
                """,
                (alert_id, endpoint_id, user_id, name, description, str(condition), float(threshold),
                 1 if is_active else 0, now, now),
            )
            row = conn.execute("SELECT * FROM alert_rules WHERE id=?", (alert_id,)).fetchone()
            return _row_to_alert_rule(row)
        finally:
            conn.close()

    def update_alert_rule(self, alert_id: str, patch: dict[str, Any]) -> AlertRule | None:
        conn = self._conn()
        try:
            sets, params = _patch_assignments(patch, _ALERT_PATCH_COLUMNS)
            if sets:
                sets.append("updated_at_ts=?")
                params.extend([_utc_ts(), alert_id])
                conn.execute(f"UPDATE alert_rules SET {', '.join(sets)} WHERE id=?", params)
            row = conn.execute("SELECT * FROM alert_rules WHERE id=?", (alert_id,)).fetchone()
            return _row_to_alert_rule(row) if row else None
        finally:
            conn.close()

    def get_alert_rule(self, alert_id: str) -> AlertRule | None:
        conn = self._conn()
        try:
            row = conn.execute("SELECT * FROM alert_rules WHERE id=?", (alert_id,)).fetchone()
            return _row_to_alert_rule(row) if row else None
        finally:
            conn.close()

    def list_active_alert_rules(self, endpoint_id: str) -> list[AlertRule]:
        conn = self._conn()
        try:
            rows = conn.execute(
                "SELECT * FROM alert_rules WHERE endpoint_id=? AND is_active=1 ORDER BY created_at_ts ASC, rowid ASC",
                (endpoint_id,),
            ).fetchall()
            return [_row_to_alert_rule(r) for r in rows]
        finally:
            conn.close()

    def count_alert_rules(self, organization_id: str) -> int:
        conn = self._conn()
        try:
            row = conn.execute(
                """
                SELECT COUNT(*) AS n FROM alert_rules a JOIN endpoints e ON e.id = a.endpoint_id
                WHERE e.organization_id=?
                """,
                (organization_id,),
            ).fetchone()
            return int(row["n"])
        finally:
            conn.close()

    def stamp_last_triggered(self, alert_id: str, ts: float | None = None) -> None:
        conn = self._conn()
        try:
            conn.execute(
                "UPDATE alert_rules SET last_triggered_ts=? WHERE id=?",
                (float(ts) if ts is not None else _utc_ts(), alert_id),
            )
        finally:
            conn.close()

    def insert_alert_trigger(self, alert_id: str, value: float, *, triggered_at_ts: float | None = None) -> AlertTrigger:
        conn = self._conn()
        try:
            trigger = AlertTrigger(
                id=_uuid(),
                alert_id=alert_id,
                value=float(value),
                triggered_at_ts=float(triggered_at_ts) if triggered_at_ts is not None else _utc_ts(),
            )
            conn.execute(
                "INSERT INTO alert_triggers (id, alert_id, value, triggered_at_ts) VALUES (?, ?, ?, ?)",
                (trigger.id, trigger.alert_id, trigger.value, trigger.triggered_at_ts),
            )
            return trigger
        finally:
            conn.close()

    def list_alert_triggers(self, alert_id: str, limit: int = 50) -> list[AlertTrigger]:
        conn = self._conn()
        try:
            rows = conn.execute(
                "SELECT * FROM alert_triggers WHERE alert_id=? ORDER BY triggered_at_ts DESC, rowid DESC LIMIT ?",
                (alert_id, max(1, int(limit))),
            ).fetchall()
            return [_row_to_trigger(r) for r in rows]
        finally:
            conn.close()

    # --- Notification channels -----------------------------------------

    def insert_channel(
        self,
        *,
        organization_id: str,
        name: str,
        channel_type: str,
        config: str,
        is_active: bool = True,
        channel_id: str | None = None,
    ) -> NotificationChannel:
        conn = self._conn()
        try:
            now = _utc_ts()
            channel_id = channel_id or _uuid()
            conn.execute(
                """
                INSERT INTO notification_channels (
                  id, organization_id, name, type, config, is_active, created_at_ts, updated_at_ts
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (channel_id, organization_id, name, str(channel_type), config, 1 if is_active else 0, now, now),
            )
            row = conn.execute("SELECT * FROM notification_channels WHERE id=?", (channel_id,)).fetchone()
            return _row_to_channel(row)
        finally:
            conn.close()

    def update_channel(self, channel_id: str, organization_id: str, patch: dict[str, Any]) -> NotificationChannel | None:
        conn = self._conn()
        try:
            sets, params = _patch_assignments(patch, _CHANNEL_PATCH_COLUMNS)
            if sets:
                sets.append("updated_at_ts=?")
                params.extend([_utc_ts(), channel_id, organization_id])
                conn.execute(
                    f"UPDATE notification_channels SET {', '.join(sets)} WHERE id=? AND organization_id=?", params
                )
            row = conn.execute(
                "SELECT * FROM notification_channels WHERE id=? AND organization_id=?", (channel_id, organization_id)
            ).fetchone()
            return _row_to_channel(row) if row else None
        finally:
            conn.close()

    def list_channels(self, organization_id: str) -> list[NotificationChannel]:
        conn = self._conn()
        try:
            rows = conn.execute(
                "SELECT * FROM notification_channels WHERE organization_id=? ORDER BY created_at_ts ASC, rowid ASC",
                (organization_id,),
            ).fetchall()
            return [_row_to_channel(r) for r in rows]
        finally:
            conn.close()

    def list_active_notification_channels(self, organization_id: str) -> list[NotificationChannel]:
        conn = self._conn()
        try:
            rows = conn.execute(
                """
                SELECT * FROM notification_channels WHERE organization_id=? AND is_active=1
                ORDER BY created_at_ts ASC, rowid ASC
                """,
                (organization_id,),
            ).fetchall()
            return [_row_to_channel(r) for r in rows]
        finally:
            conn.close()

    # --- Shared throttle -----------------------------------------------

    def throttle_get(self, key: str, *, now_ts: float) -> float | None:
        conn = self._conn()
        try:
            row = conn.execute(
                "SELECT notified_at_ts FROM throttle_entries WHERE key=? AND expires_at_ts > ?", (key, float(now_ts))
            ).fetchone()
            return float(row["notified_at_ts"]) if row else None
        finally:
            conn.close()

    def throttle_set(self, key: str, *, notified_at_ts: float, expires_at_ts: float) -> None:
        conn = self._conn()
        try:
            conn.execute(
                """
                INSERT INTO throttle_entries (key, notified_at_ts, expires_at_ts) VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET
                  notified_at_ts=excluded.notified_at_ts, expires_at_ts=excluded.expires_at_ts
                """,
                (key, float(notified_at_ts), float(expires_at_ts)),
            )
        finally:
            conn.close()

    def throttle_purge(self, *, now_ts: float) -> int:
        conn = self._conn()
        try:
            cur = conn.execute("DELETE FROM throttle_entries WHERE expires_at_ts <= ?", (float(now_ts),))
            return int(cur.rowcount or 0)
        finally:
            conn.close()
