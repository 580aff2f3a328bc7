"""Decide the winning plot option once a chapter's voting window has closed."""

from __future__ import annotations

from datetime import datetime, timezone

from loguru import logger
from sqlalchemy.orm import Session, sessionmaker

from app.db import SessionLocal, session_scope
from app.domain import PlotOptionState, VoteLedgerSnapshot, WinnerRecord, as_utc
from app.errors import NotFound, NoVotesCast, VotingStillOpen
from app.models import LedgerStatus
from app.repositories import ChapterRepository, VoteLedgerStore
from app.services.voting_window import VotingWindowPolicy


def pick_winner(snapshot: VoteLedgerSnapshot) -> PlotOptionState | None:
    """Strictly greatest tally in position order; the earlier option keeps a tie."""

    best: PlotOptionState | None = None
    for option in snapshot.options:
        if best is None or option.total_votes > best.total_votes:
            best = option
    if best is None or best.total_votes == 0:
        return None
    return best


class WinnerResolver:
    def __init__(
        self,
        *,
        session_factory: sessionmaker[Session] | None = None,
        window_policy: VotingWindowPolicy | None = None,
    ) -> None:
        self._session_factory = session_factory or SessionLocal
        self._window_policy = window_policy or VotingWindowPolicy()

    def get_winner(self, chapter_id: str) -> WinnerRecord | None:
        with session_scope(self._session_factory) as session:
            return VoteLedgerStore(session).get_winner(chapter_id)

    def finalize(self, chapter_id: str, *, now: datetime | None = None) -> WinnerRecord:
        """Record the winner exactly once; later calls return the stored record unchanged."""

        current = as_utc(now or datetime.now(timezone.utc)).astimezone(timezone.utc)
        with session_scope(self._session_factory) as session:
            store = VoteLedgerStore(session)
            existing = store.get_winner(chapter_id)
            if existing is not None:
                return existing

            snapshot = store.require(chapter_id)
            if snapshot.status != LedgerStatus.ACTIVE.value:
                raise NotFound(
                    f"Vote ledger for chapter {chapter_id} is not active",
                    chapter_id=chapter_id,
                )

            chapter = ChapterRepository(session).get_chapter(chapter_id)
            if chapter is None:
                raise NotFound(f"Chapter {chapter_id} not found", chapter_id=chapter_id)
            status = self._window_policy.evaluate(chapter.created_at, current)
            if status.voting_open:
                raise VotingStillOpen(
                    f"Voting on chapter {chapter_id} closes at {status.closes_at.isoformat()}",
                    chapter_id=chapter_id,
                )

            best = pick_winner(snapshot)
            if best is None:
                raise NoVotesCast(f"No votes cast for chapter {chapter_id}", chapter_id=chapter_id)

            stored = store.put_winner_if_absent(
                WinnerRecord(
                    chapter_id=chapter_id,
                    winning_symbol=best.symbol,
                    token_address=best.token_address or "",
                    total_votes=best.total_votes,
                    decided_at=current,
                )
            )

        logger.info(
            "Finalized chapter {}: winner={} with {} votes",
            chapter_id,
            stored.winning_symbol,
            stored.total_votes,
        )
        return stored


__all__ = ["WinnerResolver", "pick_winner"]
