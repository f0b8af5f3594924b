from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Iterable

from .editing import ensure_aware
from .models import ChatMessage


@dataclass(slots=True)
class DaySection:
    day: date
    label: str
    messages: list[ChatMessage] = field(default_factory=list)


def day_label(day: date, today: date) -> str:
    if day == today:
        return "Today"
    if day == today - timedelta(days=1):
        return "Yesterday"
    return day.isoformat()


def day_sections(messages: Iterable[ChatMessage], today: date | None = None) -> list[DaySection]:
    """Split messages into runs of consecutive same-day messages.

    Order is preserved; a day that appears again after another day starts a
    new section.
    """

    today = today or datetime.now(timezone.utc).date()
    sections: list[DaySection] = []
    for message in messages:
        day = ensure_aware(message.created_at).astimezone(timezone.utc).date()
        if not sections or sections[-1].day != day:
            sections.append(DaySection(day=day, label=day_label(day, today)))
        sections[-1].messages.append(message)
    return sections
