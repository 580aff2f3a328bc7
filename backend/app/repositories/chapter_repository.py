"""Story and chapter persistence fed by the authoring flow."""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime, timezone
from typing import Any, Sequence

from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from app.domain import ChapterRecord, as_utc
from app.models import Chapter, LedgerStatus, PlotVoteLedger, PlotWinner, Story


class ChapterRepository:
    """Encapsulate story and chapter persistence concerns."""

    def __init__(self, session: Session) -> None:
        self._session = session

    # ------------------------------------------------------------------
    # Mutations

    def upsert_story(self, story_id: str, *, creator_id: str, title: str | None = None) -> Story:
        existing = self._session.get(Story, story_id)
        if existing is None:
            existing = Story(story_id=story_id, creator_id=creator_id)
            self._session.add(existing)

        existing.creator_id = creator_id
        if title is not None:
            existing.title = title
        return existing

    def upsert_chapter(self, chapter: ChapterRecord) -> Chapter:
        existing = self._session.get(Chapter, chapter.chapter_id)
        if existing is None:
            existing = Chapter(chapter_id=chapter.chapter_id)
            self._session.add(existing)
        elif existing.vote_ledger is not None:
            # Chapters are frozen once plot options are registered; only the
            # published flag may still flip.
            existing.published = chapter.published
            return existing

        existing.story_id = chapter.story_id
        existing.title = chapter.title
        existing.content = chapter.content
        existing.created_at = as_utc(chapter.created_at).astimezone(timezone.utc)
        existing.published = chapter.published
        return existing

    def upsert_chapters(self, chapters: Iterable[ChapterRecord]) -> None:
        for chapter in chapters:
            self.upsert_chapter(chapter)

    # ------------------------------------------------------------------
    # Queries

    def get_chapter(self, chapter_id: str) -> Chapter | None:
        query = (
            select(Chapter)
            .options(selectinload(Chapter.story))
            .where(Chapter.chapter_id == chapter_id)
        )
        return self._session.execute(query).scalar_one_or_none()

    def get_story(self, story_id: str) -> Story | None:
        return self._session.get(Story, story_id)

    def list_finalization_candidates(
        self,
        *,
        closed_before: datetime,
        chapter_ids: Sequence[str] | None = None,
        limit: int | None = None,
    ) -> list[str]:
        """Chapters with an active ledger, a closed window, and no winner yet."""

        filters: list[Any] = [
            PlotVoteLedger.status == LedgerStatus.ACTIVE.value,
            Chapter.created_at <= closed_before,
            PlotWinner.chapter_id.is_(None),
        ]
        if chapter_ids:
            filters.append(Chapter.chapter_id.in_(list(chapter_ids)))

        query = (
            select(Chapter.chapter_id)
            .join(PlotVoteLedger, PlotVoteLedger.chapter_id == Chapter.chapter_id)
            .outerjoin(PlotWinner, PlotWinner.chapter_id == Chapter.chapter_id)
            .where(*filters)
            .order_by(Chapter.created_at.asc(), Chapter.chapter_id.asc())
        )
        if limit:
            query = query.limit(limit)
        return list(self._session.execute(query).scalars().all())


__all__ = ["ChapterRepository"]
