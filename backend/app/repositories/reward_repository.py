"""Read-to-earn claim persistence."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.models import ReadRewardClaim, utcnow


class RewardClaimRepository:
    """Encapsulate reward claim reads and conditional writes."""

    def __init__(self, session: Session) -> None:
        self._session = session

    def get(self, reader_id: str, chapter_id: str) -> ReadRewardClaim | None:
        query = (
            select(ReadRewardClaim)
            .where(
                ReadRewardClaim.reader_id == reader_id,
                ReadRewardClaim.chapter_id == chapter_id,
            )
            .execution_options(populate_existing=True)
        )
        return self._session.execute(query).scalar_one_or_none()

    def upsert_read_time(
        self,
        *,
        reader_id: str,
        story_id: str,
        chapter_id: str,
        read_time: int,
        required_read_time: int,
        reward_amount: int,
    ) -> ReadRewardClaim:
        """Raise the stored read time; never lowers it and never touches claimed rows."""

        self._session.execute(
            update(ReadRewardClaim)
            .where(
                ReadRewardClaim.reader_id == reader_id,
                ReadRewardClaim.chapter_id == chapter_id,
                ReadRewardClaim.claimed.is_(False),
                ReadRewardClaim.read_time < read_time,
            )
            .values(
                read_time=read_time,
                required_read_time=required_read_time,
                updated_at=utcnow(),
            )
        )
        existing = self.get(reader_id, chapter_id)
        if existing is not None:
            return existing

        record = ReadRewardClaim(
            reader_id=reader_id,
            story_id=story_id,
            chapter_id=chapter_id,
            read_time=read_time,
            required_read_time=required_read_time,
            reward_amount=reward_amount,
            claimed=False,
        )
        try:
            with self._session.begin_nested():
                self._session.add(record)
        except IntegrityError:
            # Lost the insert race; apply the monotonic update instead.
            return self.upsert_read_time(
                reader_id=reader_id,
                story_id=story_id,
                chapter_id=chapter_id,
                read_time=read_time,
                required_read_time=required_read_time,
                reward_amount=reward_amount,
            )
        return record

    def mark_claimed(
        self,
        reader_id: str,
        chapter_id: str,
        *,
        signature: str,
        expiry_timestamp: int,
        claimed_at: datetime,
    ) -> bool:
        """Compare-and-swap ``claimed`` from false to true; False means another claim won."""

        result = self._session.execute(
            update(ReadRewardClaim)
            .where(
                ReadRewardClaim.reader_id == reader_id,
                ReadRewardClaim.chapter_id == chapter_id,
                ReadRewardClaim.claimed.is_(False),
            )
            .values(
                claimed=True,
                claimed_at=claimed_at,
                signature=signature,
                expiry_timestamp=expiry_timestamp,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def claimed_balance(self, reader_id: str) -> int:
        query = select(func.coalesce(func.sum(ReadRewardClaim.reward_amount), 0)).where(
            ReadRewardClaim.reader_id == reader_id,
            ReadRewardClaim.claimed.is_(True),
        )
        return int(self._session.execute(query).scalar_one())


__all__ = ["RewardClaimRepository"]
