"""Typed model of the application document submitted by clients.

Each entity knows how to read itself from the client JSON (``from_payload``)
and how to serialise itself into a storage row (``to_row``). Dates are
normalised while rows are serialised. ``PartialDocument`` keeps absent
collections as ``None`` so callers can tell "not submitted" apart from
"submitted empty".
"""
from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple, Type

from services.dates import normalize_date
from services.errors import ValidationError
from services.identity import is_password_hash, validate_password


def _require_mapping(value: Any, label: str) -> Mapping[str, Any]:
    if not isinstance(value, Mapping):
        raise ValidationError(f"Each entry in {label} must be an object.")
    return value


def _require_id(payload: Mapping[str, Any], label: str) -> str:
    identifier = payload.get("id")
    if identifier in (None, ""):
        raise ValidationError(f"Every entry in {label} requires an id.")
    return str(identifier)


def _child_list(payload: Mapping[str, Any], key: str, label: str) -> List[Mapping[str, Any]]:
    value = payload.get(key)
    if value is None:
        return []
    if not isinstance(value, list):
        raise ValidationError(f"{label}.{key} must be a list.")
    return [_require_mapping(entry, f"{label}.{key}") for entry in value]


def _string_list(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        try:
            decoded = json.loads(value)
        except json.JSONDecodeError:
            return [value] if value else []
        value = decoded
    if isinstance(value, list):
        return [str(item) for item in value]
    return [str(value)]


def _user_password(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    if is_password_hash(value):
        return value
    return validate_password(value)


def _json_text(value: Any) -> Optional[str]:
    if value is None or isinstance(value, str):
        return value
    return json.dumps(value)


@dataclass
class User:
    id: str
    name: Optional[str] = None
    role: Optional[str] = None
    area: Optional[str] = None
    password: Optional[str] = None
    read_thread_ids: List[str] = field(default_factory=list)

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "User":
        return cls(
            id=_require_id(payload, "users"),
            name=payload.get("name"),
            role=payload.get("role"),
            area=payload.get("area"),
            password=_user_password(payload.get("password")),
            read_thread_ids=_string_list(payload.get("readThreadIds")),
        )


@dataclass
class StrategicGoal:
    id: str
    title: Optional[str] = None
    description: Optional[str] = None
    target_date: Any = None

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "StrategicGoal":
        return cls(
            id=_require_id(payload, "strategicGoals"),
            title=payload.get("title"),
            description=payload.get("description"),
            target_date=payload.get("targetDate"),
        )

    def to_row(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "targetDate": normalize_date(self.target_date, keep_time=False),
        }


@dataclass
class HistoricalDataPoint:
    year: Any = None
    value: Any = None
    formatted_value: Any = None

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "HistoricalDataPoint":
        return cls(
            year=payload.get("year"),
            value=payload.get("value"),
            formatted_value=payload.get("formattedValue"),
        )

    def to_row(self, indicator_id: str) -> Dict[str, Any]:
        return {
            "indicator_id": indicator_id,
            "year": self.year,
            "value": self.value,
            "formattedValue": self.formatted_value,
        }


@dataclass
class IndicatorGoal:
    year: Any = None
    target: Any = None

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "IndicatorGoal":
        return cls(year=payload.get("year"), target=payload.get("target"))

    def to_row(self, indicator_id: str) -> Dict[str, Any]:
        return {"indicator_id": indicator_id, "year": self.year, "target": self.target}


@dataclass
class Observation:
    id: str
    author: Optional[str] = None
    role: Optional[str] = None
    date: Any = None
    text: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "Observation":
        return cls(
            id=_require_id(payload, "observations"),
            author=payload.get("author"),
            role=payload.get("role"),
            date=payload.get("date"),
            text=payload.get("text"),
        )

    def to_row(self, indicator_id: str) -> Dict[str, Any]:
        return {
            "id": self.id,
            "indicator_id": indicator_id,
            "author": self.author,
            "role": self.role,
            "date": normalize_date(self.date, keep_time=True),
            "text": self.text,
        }


@dataclass
class Risk:
    id: str
    title: Optional[str] = None
    description: Optional[str] = None
    impact: Any = None
    probability: Any = None
    risk_score: Any = None
    mitigation_plan: Optional[str] = None
    status: Optional[str] = None
    owner: Optional[str] = None
    created_date: Any = None

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "Risk":
        return cls(
            id=_require_id(payload, "risks"),
            title=payload.get("title"),
            description=payload.get("description"),
            impact=payload.get("impact"),
            probability=payload.get("probability"),
            risk_score=payload.get("riskScore"),
            mitigation_plan=payload.get("mitigationPlan"),
            status=payload.get("status"),
            owner=payload.get("owner"),
            created_date=payload.get("createdDate"),
        )

    def to_row(self, indicator_id: str) -> Dict[str, Any]:
        return {
            "id": self.id,
            "indicator_id": indicator_id,
            "title": self.title,
            "description": self.description,
            "impact": self.impact,
            "probability": self.probability,
            "riskScore": self.risk_score,
            "mitigationPlan": self.mitigation_plan,
            "status": self.status,
            "owner": self.owner,
            "createdDate": normalize_date(self.created_date, keep_time=True),
        }


@dataclass
class Attachment:
    # Attachments without an id are dropped during deduplication.
    id: Optional[str] = None
    file_name: Optional[str] = None
    file_type: Optional[str] = None
    file_size: Any = None
    data_url: Optional[str] = None
    uploaded_by: Optional[str] = None
    upload_date: Any = None

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "Attachment":
        identifier = payload.get("id")
        return cls(
            id=str(identifier) if identifier not in (None, "") else None,
            file_name=payload.get("fileName"),
            file_type=payload.get("fileType"),
            file_size=payload.get("fileSize"),
            data_url=payload.get("dataUrl"),
            uploaded_by=payload.get("uploadedBy"),
            upload_date=payload.get("uploadDate"),
        )

    def to_row(self, indicator_id: str) -> Dict[str, Any]:
        return {
            "indicator_id": indicator_id,
            "id": self.id,
            "fileName": self.file_name,
            "fileType": self.file_type,
            "fileSize": self.file_size,
            "dataUrl": self.data_url,
            "uploadedBy": self.uploaded_by,
            "uploadDate": normalize_date(self.upload_date, keep_time=True),
        }


@dataclass
class AuditLogEntry:
    id: str
    timestamp: Any = None
    user: Optional[str] = None
    action: Optional[str] = None
    details: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "AuditLogEntry":
        return cls(
            id=_require_id(payload, "auditLog"),
            timestamp=payload.get("timestamp"),
            user=payload.get("user"),
            action=payload.get("action"),
            details=payload.get("details"),
        )

    def to_row(self, indicator_id: str) -> Dict[str, Any]:
        # Clients key audit entries by their ISO timestamp.
        moment = self.timestamp if self.timestamp not in (None, "") else self.id
        return {
            "id": self.id,
            "indicator_id": indicator_id,
            "timestamp": normalize_date(moment, keep_time=True),
            "user": self.user,
            "action": self.action,
            "details": self.details,
        }


@dataclass
class ActionPlanUpdate:
    id: str
    date: Any = None
    author: Optional[str] = None
    text: Optional[str] = None
    status_change: Optional[str] = None
    attachment: Optional[Attachment] = None

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "ActionPlanUpdate":
        attachment_payload = payload.get("attachment")
        attachment = None
        if isinstance(attachment_payload, Mapping):
            attachment = Attachment.from_payload(attachment_payload)
        return cls(
            id=_require_id(payload, "actionPlans.updates"),
            date=payload.get("date"),
            author=payload.get("author"),
            text=payload.get("text"),
            status_change=payload.get("statusChange"),
            attachment=attachment,
        )

    def to_row(self, action_plan_id: str) -> Dict[str, Any]:
        moment = self.date if self.date not in (None, "") else self.id
        return {
            "id": self.id,
            "action_plan_id": action_plan_id,
            "date": normalize_date(moment, keep_time=True),
            "author": self.author,
            "text": self.text,
            "statusChange": self.status_change,
            "attachmentId": self.attachment.id if self.attachment else None,
        }


@dataclass
class ActionPlan:
    id: str
    title: Optional[str] = None
    description: Optional[str] = None
    owner: Optional[str] = None
    status: Optional[str] = None
    due_date: Any = None
    created_date: Any = None
    updates: List[ActionPlanUpdate] = field(default_factory=list)

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "ActionPlan":
        return cls(
            id=_require_id(payload, "actionPlans"),
            title=payload.get("title"),
            description=payload.get("description"),
            owner=payload.get("owner"),
            status=payload.get("status"),
            due_date=payload.get("dueDate"),
            created_date=payload.get("createdDate"),
            updates=[
                ActionPlanUpdate.from_payload(entry)
                for entry in _child_list(payload, "updates", "actionPlans")
            ],
        )

    def to_row(self, indicator_id: str) -> Dict[str, Any]:
        return {
            "id": self.id,
            "indicator_id": indicator_id,
            "title": self.title,
            "description": self.description,
            "owner": self.owner,
            "status": self.status,
            "dueDate": normalize_date(self.due_date, keep_time=False),
            "createdDate": normalize_date(self.created_date, keep_time=True),
        }


@dataclass
class Indicator:
    id: str
    principle: Optional[str] = None
    name: Optional[str] = None
    calculation: Optional[str] = None
    purpose: Optional[str] = None
    responsible_area: Optional[str] = None
    strategic_goal_id: Optional[str] = None
    historical_data: List[HistoricalDataPoint] = field(default_factory=list)
    goals: List[IndicatorGoal] = field(default_factory=list)
    observations: List[Observation] = field(default_factory=list)
    risks: List[Risk] = field(default_factory=list)
    action_plans: List[ActionPlan] = field(default_factory=list)
    attachments: List[Attachment] = field(default_factory=list)
    audit_log: List[AuditLogEntry] = field(default_factory=list)

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "Indicator":
        label = "indicators"
        return cls(
            id=_require_id(payload, label),
            principle=payload.get("principle"),
            name=payload.get("name"),
            calculation=payload.get("calculation"),
            purpose=payload.get("purpose"),
            responsible_area=payload.get("responsibleArea"),
            strategic_goal_id=payload.get("strategicGoalId") or None,
            historical_data=[
                HistoricalDataPoint.from_payload(entry)
                for entry in _child_list(payload, "historicalData", label)
            ],
            goals=[IndicatorGoal.from_payload(entry) for entry in _child_list(payload, "goals", label)],
            observations=[
                Observation.from_payload(entry) for entry in _child_list(payload, "observations", label)
            ],
            risks=[Risk.from_payload(entry) for entry in _child_list(payload, "risks", label)],
            action_plans=[
                ActionPlan.from_payload(entry) for entry in _child_list(payload, "actionPlans", label)
            ],
            attachments=[
                Attachment.from_payload(entry) for entry in _child_list(payload, "attachments", label)
            ],
            audit_log=[
                AuditLogEntry.from_payload(entry) for entry in _child_list(payload, "auditLog", label)
            ],
        )

    def to_row(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "principle": self.principle,
            "name": self.name,
            "calculation": self.calculation,
            "purpose": self.purpose,
            "responsibleArea": self.responsible_area,
            "strategicGoalId": self.strategic_goal_id,
        }


@dataclass
class Decision:
    id: str
    text: Optional[str] = None
    responsible_user_id: Optional[str] = None
    due_date: Any = None
    status: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "Decision":
        return cls(
            id=_require_id(payload, "meetings.decisions"),
            text=payload.get("text"),
            responsible_user_id=payload.get("responsibleUserId"),
            due_date=payload.get("dueDate"),
            status=payload.get("status"),
        )

    def to_row(self, meeting_id: str) -> Dict[str, Any]:
        return {
            "id": self.id,
            "meeting_id": meeting_id,
            "text": self.text,
            "responsibleUserId": self.responsible_user_id,
            "dueDate": normalize_date(self.due_date, keep_time=False),
            "status": self.status,
        }


@dataclass
class Meeting:
    id: str
    date: Any = None
    attendees: Any = None
    agenda: Optional[str] = None
    minutes: Optional[str] = None
    decisions: List[Decision] = field(default_factory=list)

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "Meeting":
        return cls(
            id=_require_id(payload, "meetings"),
            date=payload.get("date"),
            attendees=payload.get("attendees"),
            agenda=payload.get("agenda"),
            minutes=payload.get("minutes"),
            decisions=[
                Decision.from_payload(entry) for entry in _child_list(payload, "decisions", "meetings")
            ],
        )

    def to_row(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "date": normalize_date(self.date, keep_time=True),
            "attendees": _json_text(self.attendees),
            "agenda": self.agenda,
            "minutes": self.minutes,
        }


@dataclass
class ThreadReply:
    id: str
    author_id: Optional[str] = None
    timestamp: Any = None
    content: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "ThreadReply":
        return cls(
            id=_require_id(payload, "discussionThreads.replies"),
            author_id=payload.get("authorId"),
            timestamp=payload.get("timestamp"),
            content=payload.get("content"),
        )

    def to_row(self, thread_id: str) -> Dict[str, Any]:
        return {
            "id": self.id,
            "thread_id": thread_id,
            "authorId": self.author_id,
            "timestamp": normalize_date(self.timestamp, keep_time=True),
            "content": self.content,
        }


@dataclass
class DiscussionThread:
    id: str
    title: Optional[str] = None
    content: Optional[str] = None
    author_id: Optional[str] = None
    timestamp: Any = None
    principle_tag: Optional[str] = None
    replies: List[ThreadReply] = field(default_factory=list)

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "DiscussionThread":
        return cls(
            id=_require_id(payload, "discussionThreads"),
            title=payload.get("title"),
            content=payload.get("content"),
            author_id=payload.get("authorId"),
            timestamp=payload.get("timestamp"),
            principle_tag=payload.get("principleTag"),
            replies=[
                ThreadReply.from_payload(entry)
                for entry in _child_list(payload, "replies", "discussionThreads")
            ],
        )

    def to_row(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "content": self.content,
            "authorId": self.author_id,
            "timestamp": normalize_date(self.timestamp, keep_time=True),
            "principleTag": self.principle_tag,
        }


@dataclass
class Notification:
    id: str
    user_id: Optional[str] = None
    type: Optional[str] = None
    message: Optional[str] = None
    related_indicator_id: Optional[str] = None
    related_meeting_id: Optional[str] = None
    related_thread_id: Optional[str] = None
    is_read: bool = False
    timestamp: Any = None

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "Notification":
        return cls(
            id=_require_id(payload, "notifications"),
            user_id=payload.get("userId"),
            type=payload.get("type"),
            message=payload.get("message"),
            related_indicator_id=payload.get("relatedIndicatorId"),
            related_meeting_id=payload.get("relatedMeetingId"),
            related_thread_id=payload.get("relatedThreadId"),
            is_read=bool(payload.get("isRead")),
            timestamp=payload.get("timestamp"),
        )

    def to_row(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "userId": self.user_id,
            "type": self.type,
            "message": self.message,
            "relatedIndicatorId": self.related_indicator_id,
            "relatedMeetingId": self.related_meeting_id,
            "relatedThreadId": self.related_thread_id,
            "isRead": 1 if self.is_read else 0,
            "timestamp": normalize_date(self.timestamp, keep_time=True),
        }


# Client collection key -> (PartialDocument attribute, entity type)
COLLECTIONS: Dict[str, Tuple[str, Type[Any]]] = {
    "users": ("users", User),
    "indicators": ("indicators", Indicator),
    "strategicGoals": ("strategic_goals", StrategicGoal),
    "notifications": ("notifications", Notification),
    "meetings": ("meetings", Meeting),
    "discussionThreads": ("discussion_threads", DiscussionThread),
}


@dataclass
class PartialDocument:
    """A save request. ``None`` means the collection was not submitted."""

    users: Optional[List[User]] = None
    indicators: Optional[List[Indicator]] = None
    strategic_goals: Optional[List[StrategicGoal]] = None
    notifications: Optional[List[Notification]] = None
    meetings: Optional[List[Meeting]] = None
    discussion_threads: Optional[List[DiscussionThread]] = None

    @classmethod
    def from_payload(cls, payload: Any) -> "PartialDocument":
        if not isinstance(payload, Mapping):
            raise ValidationError("Request body must be a JSON object.")
        values: Dict[str, Any] = {}
        for key, (attribute, entity_type) in COLLECTIONS.items():
            raw = payload.get(key)
            if raw is None:
                continue
            if not isinstance(raw, list):
                raise ValidationError(f"{key} must be a list.")
            values[attribute] = [
                entity_type.from_payload(_require_mapping(entry, key)) for entry in raw
            ]
        return cls(**values)

    def present_collections(self) -> List[str]:
        return [
            key for key, (attribute, _) in COLLECTIONS.items()
            if getattr(self, attribute) is not None
        ]


__all__ = [
    "ActionPlan",
    "ActionPlanUpdate",
    "Attachment",
    "AuditLogEntry",
    "COLLECTIONS",
    "Decision",
    "DiscussionThread",
    "HistoricalDataPoint",
    "Indicator",
    "IndicatorGoal",
    "Meeting",
    "Notification",
    "Observation",
    "PartialDocument",
    "Risk",
    "StrategicGoal",
    "ThreadReply",
    "User",
]
