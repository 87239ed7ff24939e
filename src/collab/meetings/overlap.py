"""Interval overlap rules for an organizer's calendar.

Meetings occupy half-open intervals ``[start, end)``. Two meetings overlap
when each starts before the other ends, so a meeting ending at 11:00 and
another starting at 11:00 do not conflict.
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime

from src.collab.core.errors import ConflictError
from src.collab.meetings.schemas import Meeting


class MeetingConflictError(ConflictError):
    """The requested time overlaps another active meeting of the organizer."""

    def __init__(self, conflicting_id: str) -> None:
        super().__init__(
            f"Time slot conflicts with existing meeting {conflicting_id}"
        )
        self.conflicting_id = conflicting_id


def overlaps(
    a_start: datetime, a_end: datetime, b_start: datetime, b_end: datetime
) -> bool:
    """True when ``[a_start, a_end)`` and ``[b_start, b_end)`` share an instant."""
    return a_start < b_end and b_start < a_end


def find_conflict(
    meetings: Iterable[Meeting],
    start: datetime,
    end: datetime,
    exclude_id: str | None = None,
) -> Meeting | None:
    """Return the first active meeting overlapping ``[start, end)``.

    Args:
        meetings: Candidate meetings, typically one organizer's calendar.
        start: Requested start.
        end: Requested end.
        exclude_id: Meeting being rescheduled, ignored in the scan.
    """
    for meeting in meetings:
        if exclude_id is not None and str(meeting.id) == exclude_id:
            continue
        if not meeting.is_active:
            continue
        if overlaps(meeting.start_time, meeting.end_time, start, end):
            return meeting
    return None
