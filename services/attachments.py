"""Attachment deduplication for a single indicator."""
from __future__ import annotations

from typing import Dict, Iterable, Iterator, List

from services.documents import Attachment, Indicator


def iter_indicator_attachments(indicator: Indicator) -> Iterator[Attachment]:
    """Yield direct attachments first, then those carried by action plan updates."""
    yield from indicator.attachments
    for plan in indicator.action_plans:
        for update in plan.updates:
            if update.attachment is not None:
                yield update.attachment


def deduplicate_attachments(attachments: Iterable[Attachment]) -> List[Attachment]:
    """Merge attachments by id; the last payload seen for an id wins.

    Entries without an id are dropped.
    """
    unique: Dict[str, Attachment] = {}
    for attachment in attachments:
        if attachment is None or not attachment.id:
            continue
        unique[attachment.id] = attachment
    return list(unique.values())


def collect_indicator_attachments(indicator: Indicator) -> List[Attachment]:
    return deduplicate_attachments(iter_indicator_attachments(indicator))


__all__ = [
    "collect_indicator_attachments",
    "deduplicate_attachments",
    "iter_indicator_attachments",
]
