"""Read side: rebuild the nested application document from the normalised tables."""

from __future__ import annotations

import json
import logging
import sqlite3
from collections import defaultdict
from concurrent.futures import ThreadPoolExecutor
from contextlib import closing
from typing import Any, Callable, Dict, Hashable, Iterable, List, Mapping

from services.errors import StorageError

logger = logging.getLogger(__name__)

Row = Dict[str, Any]
ConnectionFactory = Callable[[], sqlite3.Connection]

PARENT_QUERIES: Dict[str, str] = {
    "users": "SELECT id, name, role, area, readThreadIds FROM users",
    "strategic_goals": "SELECT * FROM strategic_goals",
    "indicators": "SELECT * FROM indicators",
    "meetings": "SELECT * FROM meetings",
    "discussion_threads": "SELECT * FROM discussion_threads",
    "notifications": "SELECT * FROM notifications",
}

CHILD_QUERIES: Dict[str, str] = {
    "historical_data": "SELECT * FROM historical_data ORDER BY year",
    "goals": "SELECT * FROM goals ORDER BY year",
    "observations": "SELECT * FROM observations",
    "risks": "SELECT * FROM risks",
    "action_plans": "SELECT * FROM action_plans",
    "action_plan_updates": "SELECT * FROM action_plan_updates ORDER BY date",
    "attachments": "SELECT * FROM attachments",
    "audit_logs": "SELECT * FROM audit_logs ORDER BY timestamp",
    "decisions": "SELECT * FROM decisions",
    "thread_replies": "SELECT * FROM thread_replies ORDER BY timestamp",
}


def _rows_to_dicts(rows: Iterable[sqlite3.Row]) -> List[Row]:
    """Normalise sqlite rows to plain dictionaries."""

    normalised: List[Row] = []
    for row in rows:
        if isinstance(row, sqlite3.Row):
            normalised.append({key: row[key] for key in row.keys()})
        else:
            normalised.append(dict(row))
    return normalised


def group_by(rows: Iterable[Mapping[str, Any]], key: str) -> Dict[Hashable, List[Row]]:
    """Group child rows under the value of their ``key`` column.

    Every row with a non-null key lands exactly once under its parent, as a copy
    without the key column. Rows whose key is missing or null are left out.
    Ordering within a parent is not part of the contract.
    """

    grouped: Dict[Hashable, List[Row]] = defaultdict(list)
    for row in rows:
        parent_id = row.get(key)
        if parent_id is None:
            continue
        grouped[parent_id].append({name: value for name, value in row.items() if name != key})
    return dict(grouped)


def _decode_json_list(value: Any) -> Any:
    if not isinstance(value, str):
        return value
    try:
        decoded = json.loads(value)
    except json.JSONDecodeError:
        return value
    return decoded if isinstance(decoded, list) else value


class Assembler:
    """Fan out the table reads and compose the document returned to clients."""

    def __init__(self, connect: ConnectionFactory, max_workers: int = 6):
        self._connect = connect
        self._max_workers = max_workers

    def _run_query(self, sql: str) -> List[Row]:
        with closing(self._connect()) as conn:
            return _rows_to_dicts(conn.execute(sql).fetchall())

    def _run_batch(self, queries: Mapping[str, str]) -> Dict[str, List[Row]]:
        results: Dict[str, List[Row]] = {}
        with ThreadPoolExecutor(max_workers=self._max_workers) as executor:
            futures = {name: executor.submit(self._run_query, sql) for name, sql in queries.items()}
            for name, future in futures.items():
                try:
                    results[name] = future.result()
                except sqlite3.Error as exc:
                    logger.error("Failed to read %s: %s", name, exc, exc_info=exc)
                    raise StorageError("Server error while loading the application data.") from exc
        return results

    def get_app_data(self) -> Dict[str, Any]:
        parents = self._run_batch(PARENT_QUERIES)
        children = self._run_batch(CHILD_QUERIES)

        historical_by_indicator = group_by(children["historical_data"], "indicator_id")
        goals_by_indicator = group_by(children["goals"], "indicator_id")
        observations_by_indicator = group_by(children["observations"], "indicator_id")
        risks_by_indicator = group_by(children["risks"], "indicator_id")
        plans_by_indicator = group_by(children["action_plans"], "indicator_id")
        updates_by_plan = group_by(children["action_plan_updates"], "action_plan_id")
        attachments_by_indicator = group_by(children["attachments"], "indicator_id")
        audit_by_indicator = group_by(children["audit_logs"], "indicator_id")
        decisions_by_meeting = group_by(children["decisions"], "meeting_id")
        replies_by_thread = group_by(children["thread_replies"], "thread_id")

        indicators = []
        for indicator in parents["indicators"]:
            indicator_id = indicator["id"]
            attachments = attachments_by_indicator.get(indicator_id, [])
            attachments_by_id = {attachment["id"]: attachment for attachment in attachments}
            plans = plans_by_indicator.get(indicator_id, [])
            for plan in plans:
                updates = updates_by_plan.get(plan["id"], [])
                for update in updates:
                    update["attachment"] = attachments_by_id.get(update.get("attachmentId"))
                plan["updates"] = updates
            indicators.append(
                {
                    **indicator,
                    "historicalData": historical_by_indicator.get(indicator_id, []),
                    "goals": goals_by_indicator.get(indicator_id, []),
                    "observations": observations_by_indicator.get(indicator_id, []),
                    "risks": risks_by_indicator.get(indicator_id, []),
                    "actionPlans": plans,
                    "attachments": attachments,
                    "auditLog": audit_by_indicator.get(indicator_id, []),
                }
            )

        users = []
        for user in parents["users"]:
            read_ids = _decode_json_list(user.get("readThreadIds"))
            users.append({**user, "readThreadIds": read_ids if isinstance(read_ids, list) else []})

        meetings = [
            {
                **meeting,
                "attendees": _decode_json_list(meeting.get("attendees")),
                "decisions": decisions_by_meeting.get(meeting["id"], []),
            }
            for meeting in parents["meetings"]
        ]
        threads = [
            {**thread, "replies": replies_by_thread.get(thread["id"], [])}
            for thread in parents["discussion_threads"]
        ]
        notifications = [
            {**notification, "isRead": bool(notification.get("isRead"))}
            for notification in parents["notifications"]
        ]

        return {
            "users": users,
            "strategicGoals": parents["strategic_goals"],
            "indicators": indicators,
            "meetings": meetings,
            "discussionThreads": threads,
            "notifications": notifications,
        }


def get_app_data(connect: ConnectionFactory) -> Dict[str, Any]:
    return Assembler(connect).get_app_data()


__all__ = ["Assembler", "CHILD_QUERIES", "PARENT_QUERIES", "get_app_data", "group_by"]
