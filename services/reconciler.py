"""Write side: reconcile a submitted document against the stored tables.

Only the collections present in the submission are touched. Users and
indicators are reconciled by diff-upsert (delete the ids that disappeared,
upsert the rest) because their rows carry identity that must survive a save,
such as password hashes. Every other collection is fully replaced. Children of
an indicator, meeting or thread are always replaced within their parent.

The whole save runs on one connection inside one transaction. Authorization is
checked for every present collection before the first write, and any error
rolls the transaction back, so a failed save leaves storage untouched.

Concurrent saves of the same full-replace collection are serialised only by
SQLite's write lock: the last commit wins.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from contextlib import closing
from typing import Any, Callable, Dict, Iterable, List, Mapping, Sequence

from database import INDICATOR_CHILD_TABLES, transaction
from services.attachments import collect_indicator_attachments
from services.authorization import (
    DELETE_INDICATOR,
    MANAGE_DISCUSSIONS,
    MANAGE_MEETINGS,
    MANAGE_NOTIFICATIONS,
    MANAGE_STRATEGIC_GOALS,
    MANAGE_USERS,
    WRITE_INDICATOR,
    IndicatorTarget,
    authorize,
)
from services.documents import (
    DiscussionThread,
    Indicator,
    Meeting,
    Notification,
    PartialDocument,
    StrategicGoal,
    User,
)
from services.errors import AuthorizationError, StorageError
from services.identity import Principal, resolve_password

logger = logging.getLogger(__name__)

ConnectionFactory = Callable[[], sqlite3.Connection]

# Stay well below SQLITE_MAX_VARIABLE_NUMBER on older builds.
DELETE_CHUNK_SIZE = 500

SAVE_SUCCESS_MESSAGE = "Data saved successfully."


def _quote(identifier: str) -> str:
    return '"' + identifier.replace('"', '""') + '"'


def _chunks(values: Sequence[Any], size: int = DELETE_CHUNK_SIZE) -> Iterable[Sequence[Any]]:
    for start in range(0, len(values), size):
        yield values[start:start + size]


def _delete_where_in(conn: sqlite3.Connection, table: str, column: str, values: Sequence[Any]) -> None:
    for chunk in _chunks(list(values)):
        placeholders = ", ".join("?" for _ in chunk)
        conn.execute(f"DELETE FROM {table} WHERE {_quote(column)} IN ({placeholders})", tuple(chunk))


def _insert_many(conn: sqlite3.Connection, table: str, rows: Sequence[Mapping[str, Any]]) -> None:
    if not rows:
        return
    columns = list(rows[0].keys())
    column_sql = ", ".join(_quote(column) for column in columns)
    placeholders = ", ".join("?" for _ in columns)
    conn.executemany(
        f"INSERT INTO {table} ({column_sql}) VALUES ({placeholders})",
        [tuple(row[column] for column in columns) for row in rows],
    )


def _upsert(conn: sqlite3.Connection, table: str, row: Mapping[str, Any], key: str = "id") -> None:
    columns = list(row.keys())
    column_sql = ", ".join(_quote(column) for column in columns)
    placeholders = ", ".join("?" for _ in columns)
    updates = ", ".join(
        f"{_quote(column)} = excluded.{_quote(column)}" for column in columns if column != key
    )
    conn.execute(
        f"INSERT INTO {table} ({column_sql}) VALUES ({placeholders}) "
        f"ON CONFLICT({_quote(key)}) DO UPDATE SET {updates}",
        tuple(row[column] for column in columns),
    )


def _existing_ids(conn: sqlite3.Connection, table: str) -> List[str]:
    return [row[0] for row in conn.execute(f"SELECT id FROM {table}").fetchall()]


class Reconciler:
    """Apply a ``PartialDocument`` on behalf of a principal, all or nothing."""

    def __init__(self, connect: ConnectionFactory):
        self._connect = connect

    def save(self, document: PartialDocument, actor: Principal) -> Dict[str, Any]:
        collections = document.present_collections()
        try:
            with closing(self._connect()) as conn, transaction(conn):
                self._authorize(conn, document, actor)
                if document.users is not None:
                    self._sync_users(conn, document.users, actor)
                if document.indicators is not None:
                    self._sync_indicators(conn, document.indicators)
                if document.strategic_goals is not None:
                    self._replace_strategic_goals(conn, document.strategic_goals)
                if document.notifications is not None:
                    self._replace_notifications(conn, document.notifications)
                if document.meetings is not None:
                    self._replace_meetings(conn, document.meetings)
                if document.discussion_threads is not None:
                    self._replace_discussion_threads(conn, document.discussion_threads)
        except sqlite3.Error as exc:
            logger.error(
                "Error saving data for user %s (collections: %s): %s",
                actor.id,
                ", ".join(collections) or "none",
                exc,
                exc_info=exc,
            )
            raise StorageError("Server error while saving the data.") from exc

        logger.info("User %s saved collections: %s", actor.id, ", ".join(collections) or "none")
        return {"message": SAVE_SUCCESS_MESSAGE, "collections": collections}

    # ------------------------------------------------------------------
    # Authorization
    # ------------------------------------------------------------------
    def _authorize(self, conn: sqlite3.Connection, document: PartialDocument, actor: Principal) -> None:
        if document.users is not None:
            authorize(actor, MANAGE_USERS)
        if document.indicators is not None:
            self._authorize_indicators(conn, document.indicators, actor)
        if document.strategic_goals is not None:
            authorize(actor, MANAGE_STRATEGIC_GOALS)
        if document.notifications is not None:
            authorize(actor, MANAGE_NOTIFICATIONS)
        if document.meetings is not None:
            authorize(actor, MANAGE_MEETINGS)
        if document.discussion_threads is not None:
            authorize(actor, MANAGE_DISCUSSIONS)

    def _authorize_indicators(
        self, conn: sqlite3.Connection, indicators: Sequence[Indicator], actor: Principal
    ) -> None:
        stored_areas = {
            row["id"]: row["responsibleArea"]
            for row in conn.execute("SELECT id, responsibleArea FROM indicators").fetchall()
        }
        incoming_ids = set()
        for indicator in indicators:
            incoming_ids.add(indicator.id)
            target = IndicatorTarget(
                indicator_id=indicator.id,
                stored_area=stored_areas.get(indicator.id),
                submitted_area=indicator.responsible_area,
                exists=indicator.id in stored_areas,
            )
            try:
                authorize(actor, WRITE_INDICATOR, target)
            except AuthorizationError:
                # Passing a stored indicator through untouched is not a write.
                if not (target.exists and self._is_unchanged(conn, indicator)):
                    raise
        for indicator_id, stored_area in stored_areas.items():
            if indicator_id in incoming_ids:
                continue
            authorize(
                actor,
                DELETE_INDICATOR,
                IndicatorTarget(indicator_id=indicator_id, stored_area=stored_area, exists=True),
            )

    # ------------------------------------------------------------------
    # Diff-upsert collections
    # ------------------------------------------------------------------
    def _sync_users(self, conn: sqlite3.Connection, users: Sequence[User], actor: Principal) -> None:
        incoming_ids = {user.id for user in users}
        # The acting user is never removed, whatever the submission says.
        to_delete = [
            user_id for user_id in _existing_ids(conn, "users")
            if user_id not in incoming_ids and user_id != actor.id
        ]
        _delete_where_in(conn, "users", "id", to_delete)

        for user in users:
            existing = conn.execute("SELECT password FROM users WHERE id = ?", (user.id,)).fetchone()
            stored_password = existing["password"] if existing else None
            _upsert(
                conn,
                "users",
                {
                    "id": user.id,
                    "name": user.name,
                    "role": user.role,
                    "area": user.area,
                    "password": resolve_password(user.password, stored_password),
                    "readThreadIds": _json_list(user.read_thread_ids),
                },
            )
        logger.debug("Users synchronised: %d upserted, %d deleted", len(users), len(to_delete))

    def _sync_indicators(self, conn: sqlite3.Connection, indicators: Sequence[Indicator]) -> None:
        incoming_ids = {indicator.id for indicator in indicators}
        to_delete = [
            indicator_id for indicator_id in _existing_ids(conn, "indicators")
            if indicator_id not in incoming_ids
        ]
        self._delete_indicators(conn, to_delete)

        # Child ids may move between indicators: clear all of them before inserting.
        for indicator in indicators:
            _upsert(conn, "indicators", indicator.to_row())
            self._clear_indicator_children(conn, indicator.id)
        for indicator in indicators:
            for table, rows in _indicator_child_rows(indicator).items():
                _insert_many(conn, table, rows)
        logger.debug(
            "Indicators synchronised: %d upserted, %d deleted", len(indicators), len(to_delete)
        )

    def _delete_indicators(self, conn: sqlite3.Connection, indicator_ids: Sequence[str]) -> None:
        if not indicator_ids:
            return
        for table in INDICATOR_CHILD_TABLES:
            _delete_where_in(conn, table, "indicator_id", indicator_ids)
        for chunk in _chunks(list(indicator_ids)):
            placeholders = ", ".join("?" for _ in chunk)
            conn.execute(
                "DELETE FROM action_plan_updates WHERE action_plan_id IN "
                f"(SELECT id FROM action_plans WHERE indicator_id IN ({placeholders}))",
                tuple(chunk),
            )
        _delete_where_in(conn, "action_plans", "indicator_id", indicator_ids)
        _delete_where_in(conn, "indicators", "id", indicator_ids)

    def _clear_indicator_children(self, conn: sqlite3.Connection, indicator_id: str) -> None:
        for table in INDICATOR_CHILD_TABLES:
            conn.execute(f"DELETE FROM {table} WHERE indicator_id = ?", (indicator_id,))
        conn.execute(
            "DELETE FROM action_plan_updates WHERE action_plan_id IN "
            "(SELECT id FROM action_plans WHERE indicator_id = ?)",
            (indicator_id,),
        )
        conn.execute("DELETE FROM action_plans WHERE indicator_id = ?", (indicator_id,))

    def _is_unchanged(self, conn: sqlite3.Connection, indicator: Indicator) -> bool:
        """Whether saving ``indicator`` would leave its stored rows exactly as they are."""
        indicator_id = indicator.id
        stored: Dict[str, List[Dict[str, Any]]] = {
            "indicators": _fetch_rows(conn, "SELECT * FROM indicators WHERE id = ?", indicator_id),
        }
        for table in INDICATOR_CHILD_TABLES + ("action_plans",):
            stored[table] = _fetch_rows(conn, f"SELECT * FROM {table} WHERE indicator_id = ?", indicator_id)
        stored["action_plan_updates"] = _fetch_rows(
            conn,
            "SELECT u.* FROM action_plan_updates u JOIN action_plans p ON p.id = u.action_plan_id "
            "WHERE p.indicator_id = ?",
            indicator_id,
        )

        submitted = {"indicators": [indicator.to_row()], **_indicator_child_rows(indicator)}
        return all(_same_rows(stored[table], rows) for table, rows in submitted.items())

    # ------------------------------------------------------------------
    # Full-replace collections
    # ------------------------------------------------------------------
    def _replace_strategic_goals(self, conn: sqlite3.Connection, goals: Sequence[StrategicGoal]) -> None:
        conn.execute("DELETE FROM strategic_goals")
        _insert_many(conn, "strategic_goals", [goal.to_row() for goal in goals])

    def _replace_notifications(self, conn: sqlite3.Connection, notifications: Sequence[Notification]) -> None:
        conn.execute("DELETE FROM notifications")
        _insert_many(conn, "notifications", [notification.to_row() for notification in notifications])

    def _replace_meetings(self, conn: sqlite3.Connection, meetings: Sequence[Meeting]) -> None:
        conn.execute("DELETE FROM decisions")
        conn.execute("DELETE FROM meetings")
        _insert_many(conn, "meetings", [meeting.to_row() for meeting in meetings])
        _insert_many(
            conn,
            "decisions",
            [decision.to_row(meeting.id) for meeting in meetings for decision in meeting.decisions],
        )

    def _replace_discussion_threads(
        self, conn: sqlite3.Connection, threads: Sequence[DiscussionThread]
    ) -> None:
        conn.execute("DELETE FROM thread_replies")
        conn.execute("DELETE FROM discussion_threads")
        _insert_many(conn, "discussion_threads", [thread.to_row() for thread in threads])
        _insert_many(
            conn,
            "thread_replies",
            [reply.to_row(thread.id) for thread in threads for reply in thread.replies],
        )


def _json_list(values: Sequence[str]) -> str:
    return json.dumps(list(values))


def _indicator_child_rows(indicator: Indicator) -> Dict[str, List[Dict[str, Any]]]:
    """Rows every child table should hold for ``indicator``, parents before children."""
    indicator_id = indicator.id
    return {
        "historical_data": [point.to_row(indicator_id) for point in indicator.historical_data],
        "goals": [goal.to_row(indicator_id) for goal in indicator.goals],
        "observations": [entry.to_row(indicator_id) for entry in indicator.observations],
        "risks": [risk.to_row(indicator_id) for risk in indicator.risks],
        "attachments": [
            attachment.to_row(indicator_id) for attachment in collect_indicator_attachments(indicator)
        ],
        "audit_logs": [entry.to_row(indicator_id) for entry in indicator.audit_log],
        "action_plans": [plan.to_row(indicator_id) for plan in indicator.action_plans],
        "action_plan_updates": [
            update.to_row(plan.id) for plan in indicator.action_plans for update in plan.updates
        ],
    }


def _fetch_rows(conn: sqlite3.Connection, sql: str, *params: Any) -> List[Dict[str, Any]]:
    return [dict(row) for row in conn.execute(sql, params).fetchall()]


def _same_rows(stored: Sequence[Mapping[str, Any]], submitted: Sequence[Mapping[str, Any]]) -> bool:
    """Compare two row lists as multisets; stored row order carries no meaning."""
    if len(stored) != len(submitted):
        return False
    remaining = [dict(row) for row in stored]
    for row in submitted:
        try:
            remaining.remove(dict(row))
        except ValueError:
            return False
    return True


__all__ = ["Reconciler", "SAVE_SUCCESS_MESSAGE"]
