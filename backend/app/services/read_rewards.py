"""Read-to-earn: required read time, observation tracking and reward claims."""

from __future__ import annotations

import math
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable

from loguru import logger
from sqlalchemy.orm import Session, sessionmaker

from app.core.config import get_settings
from app.db import SessionLocal, session_scope
from app.domain import ClaimToken
from app.errors import AlreadyClaimed, AuthorNotEligible, InsufficientReadTime, NotFound
from app.models import Chapter, ReadRewardClaim
from app.repositories import ChapterRepository, RewardClaimRepository
from app.services.claim_signer import ClaimSigner


_SENTENCE_SPLIT = re.compile(r"[.!?]+")


@dataclass(slots=True)
class ReadProgress:
    reader_id: str
    story_id: str
    chapter_id: str
    read_time: int
    required_read_time: int | None
    reward_amount: int
    claimed: bool


def _word_count(text: str) -> int:
    return len(text.split())


def complexity_factor(content: str) -> float:
    """Multiplier in [1.0, 1.5] derived from the mean words per sentence."""

    if not content:
        return 1.0
    sentences = [part for part in _SENTENCE_SPLIT.split(content) if part.strip()]
    if not sentences:
        return 1.0

    average = sum(_word_count(sentence) for sentence in sentences) / len(sentences)
    if average < 10:
        return 1.0
    if average < 15:
        return 1.1 + (average - 10) * 0.02
    if average < 20:
        return 1.2 + (average - 15) * 0.02
    return min(1.3 + (average - 20) * 0.01, 1.5)


def base_read_time(
    content: str,
    *,
    words_per_minute: int = 200,
    comprehension_buffer: float = 1.15,
    min_seconds: int = 10,
) -> int:
    seconds = math.ceil(_word_count(content or "") / words_per_minute * 60 * comprehension_buffer)
    return max(seconds, min_seconds)


def required_read_time(
    content: str,
    *,
    words_per_minute: int = 200,
    comprehension_buffer: float = 1.15,
    min_seconds: int = 10,
) -> int:
    base = base_read_time(
        content,
        words_per_minute=words_per_minute,
        comprehension_buffer=comprehension_buffer,
        min_seconds=min_seconds,
    )
    return math.ceil(base * complexity_factor(content))


def _minutes_label(seconds: int) -> int:
    # Half-up rounding, so 90s reads as 2 minutes.
    return int(math.floor(seconds / 60 + 0.5))


class ReadRewardEngine:
    """Track reading time per (reader, chapter) and issue one signed claim each."""

    def __init__(
        self,
        *,
        session_factory: sessionmaker[Session] | None = None,
        signer: ClaimSigner | None = None,
        words_per_minute: int | None = None,
        comprehension_buffer: float | None = None,
        min_seconds: int | None = None,
        reward_amount: int | None = None,
        claim_ttl: timedelta | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        settings = get_settings()
        self._session_factory = session_factory or SessionLocal
        self._signer = signer or ClaimSigner()
        self.words_per_minute = words_per_minute or settings.read_words_per_minute
        self.comprehension_buffer = (
            comprehension_buffer
            if comprehension_buffer is not None
            else settings.read_comprehension_buffer
        )
        self.min_seconds = min_seconds if min_seconds is not None else settings.read_min_seconds
        self.reward_amount = (
            reward_amount if reward_amount is not None else settings.read_reward_amount
        )
        self.claim_ttl = claim_ttl or timedelta(seconds=settings.reward_claim_ttl_seconds)
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    # ------------------------------------------------------------------
    # Read time

    def complexity_factor(self, content: str) -> float:
        return complexity_factor(content)

    def required_read_time(self, content: str) -> int:
        return required_read_time(
            content,
            words_per_minute=self.words_per_minute,
            comprehension_buffer=self.comprehension_buffer,
            min_seconds=self.min_seconds,
        )

    def required_read_time_for(self, chapter_id: str) -> int:
        with session_scope(self._session_factory) as session:
            chapter = self._require_chapter(session, chapter_id)
            return self.required_read_time(chapter.content)

    # ------------------------------------------------------------------
    # Observation and claims

    def observe(self, reader_id: str, chapter_id: str, read_time_seconds: int) -> ReadProgress:
        if read_time_seconds < 0:
            raise ValueError("read_time_seconds must be non-negative")

        with session_scope(self._session_factory) as session:
            chapter = self._require_chapter(session, chapter_id)
            self._ensure_not_author(chapter, reader_id)
            required = self.required_read_time(chapter.content)
            record = RewardClaimRepository(session).upsert_read_time(
                reader_id=reader_id,
                story_id=chapter.story_id,
                chapter_id=chapter_id,
                read_time=int(read_time_seconds),
                required_read_time=required,
                reward_amount=self.reward_amount,
            )
            logger.debug(
                "Observed {}s of reading for reader {} on chapter {} (stored={}s)",
                read_time_seconds,
                reader_id,
                chapter_id,
                record.read_time,
            )
            return _to_progress(record)

    def claim(self, reader_id: str, chapter_id: str, *, now: datetime | None = None) -> ClaimToken:
        current = now or self._clock()
        with session_scope(self._session_factory) as session:
            chapter = self._require_chapter(session, chapter_id)
            self._ensure_not_author(chapter, reader_id)

            repo = RewardClaimRepository(session)
            record = repo.get(reader_id, chapter_id)
            if record is None:
                raise NotFound(
                    f"No reading record for reader {reader_id} on chapter {chapter_id}",
                    chapter_id=chapter_id,
                )
            if record.claimed:
                raise AlreadyClaimed(
                    f"Reward for chapter {chapter_id} already claimed by {reader_id}",
                    chapter_id=chapter_id,
                )

            required = self.required_read_time(chapter.content)
            if record.read_time < required:
                raise InsufficientReadTime(
                    f"You need to read for at least {_minutes_label(required)} minutes "
                    "to claim a reward",
                    chapter_id=chapter_id,
                    required_seconds=required,
                    observed_seconds=record.read_time,
                )

            expiry = int((current + self.claim_ttl).timestamp())
            reward_amount = int(record.reward_amount)
            signature = self._signer.sign(
                reader_id=reader_id,
                chapter_id=chapter_id,
                reward_amount=reward_amount,
                expiry=expiry,
            )
            won = repo.mark_claimed(
                reader_id,
                chapter_id,
                signature=signature,
                expiry_timestamp=expiry,
                claimed_at=current,
            )
            if not won:
                raise AlreadyClaimed(
                    f"Reward for chapter {chapter_id} already claimed by {reader_id}",
                    chapter_id=chapter_id,
                )

        logger.info(
            "Issued read reward claim: reader={}, chapter={}, amount={}",
            reader_id,
            chapter_id,
            reward_amount,
        )
        return ClaimToken(
            reader_id=reader_id,
            chapter_id=chapter_id,
            signature=signature,
            reward_amount=reward_amount,
            expiry=expiry,
        )

    def has_claimed(self, reader_id: str, chapter_id: str) -> bool:
        with session_scope(self._session_factory) as session:
            record = RewardClaimRepository(session).get(reader_id, chapter_id)
            return bool(record and record.claimed)

    def reward_balance(self, reader_id: str) -> int:
        with session_scope(self._session_factory) as session:
            return RewardClaimRepository(session).claimed_balance(reader_id)

    # ------------------------------------------------------------------
    # Internals

    @staticmethod
    def _require_chapter(session: Session, chapter_id: str) -> Chapter:
        chapter = ChapterRepository(session).get_chapter(chapter_id)
        if chapter is None:
            raise NotFound(f"Chapter {chapter_id} not found", chapter_id=chapter_id)
        return chapter

    @staticmethod
    def _ensure_not_author(chapter: Chapter, reader_id: str) -> None:
        if chapter.story is not None and chapter.story.creator_id == reader_id:
            raise AuthorNotEligible(
                "Creators cannot earn rewards for their own stories",
                chapter_id=chapter.chapter_id,
            )


def _to_progress(record: ReadRewardClaim) -> ReadProgress:
    return ReadProgress(
        reader_id=record.reader_id,
        story_id=record.story_id,
        chapter_id=record.chapter_id,
        read_time=int(record.read_time),
        required_read_time=record.required_read_time,
        reward_amount=int(record.reward_amount),
        claimed=bool(record.claimed),
    )


__all__ = [
    "ReadProgress",
    "ReadRewardEngine",
    "base_read_time",
    "complexity_factor",
    "required_read_time",
]
