"""Voting window policy for chapters.

Voting on a chapter's plot options is open for a fixed window after the
chapter is created. While it is open, selling option tokens is refused and
the story creator cannot publish the next chapter.

The sell restriction is a convention enforced by this backend before it
submits a sale. The token contract does not know about it, so anyone trading
against the pool directly is not bound by it.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from app.core.config import get_settings
from app.domain import VotingWindowStatus, as_utc


DEFAULT_VOTING_WINDOW = timedelta(hours=24)


@dataclass(slots=True, frozen=True)
class ChapterRestrictions:
    """Window status plus the restriction flags shown to readers and authors."""

    chapter_id: str
    status: VotingWindowStatus
    can_sell_tokens: bool
    can_create_new_chapter: bool

    @property
    def voting_open(self) -> bool:
        return self.status.voting_open

    def remaining_parts(self) -> dict[str, int]:
        total = int(self.status.time_remaining.total_seconds())
        hours, rest = divmod(total, 3600)
        minutes, seconds = divmod(rest, 60)
        return {"hours": hours, "minutes": minutes, "seconds": seconds}


def evaluate(
    created_at: datetime,
    now: datetime,
    duration: timedelta = DEFAULT_VOTING_WINDOW,
) -> VotingWindowStatus:
    """Return the window status at ``now``; open while ``now < created_at + duration``."""

    closes_at = as_utc(created_at) + duration
    current = as_utc(now)
    voting_open = current < closes_at
    remaining = closes_at - current if voting_open else timedelta(0)
    return VotingWindowStatus(
        voting_open=voting_open,
        time_remaining=remaining,
        closes_at=closes_at,
    )


class VotingWindowPolicy:
    def __init__(self, duration: timedelta | None = None) -> None:
        if duration is None:
            duration = timedelta(seconds=get_settings().voting_window_seconds)
        if duration <= timedelta(0):
            raise ValueError("Voting window duration must be positive")
        self.duration = duration

    def evaluate(self, created_at: datetime, now: datetime | None = None) -> VotingWindowStatus:
        return evaluate(created_at, now or datetime.now(timezone.utc), self.duration)

    def chapter_status(
        self,
        *,
        chapter_id: str,
        created_at: datetime,
        creator_id: str | None = None,
        viewer_id: str | None = None,
        now: datetime | None = None,
    ) -> ChapterRestrictions:
        status = self.evaluate(created_at, now)
        is_creator = bool(creator_id) and viewer_id == creator_id
        return ChapterRestrictions(
            chapter_id=chapter_id,
            status=status,
            can_sell_tokens=status.can_sell,
            can_create_new_chapter=not (is_creator and status.voting_open),
        )


__all__ = [
    "ChapterRestrictions",
    "DEFAULT_VOTING_WINDOW",
    "VotingWindowPolicy",
    "evaluate",
]
