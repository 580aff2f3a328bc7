from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .db import Base


class LedgerStatus(str, Enum):
    REGISTERING = "registering"
    ACTIVE = "active"


class TradeSide(str, Enum):
    BUY = "buy"
    SELL = "sell"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# Wei-precision amounts expressed in whole ETH / token units.
_AMOUNT = Numeric(38, 18)


class Story(Base):
    __tablename__ = "stories"

    story_id: Mapped[str] = mapped_column(String, primary_key=True)
    title: Mapped[str | None] = mapped_column(String, nullable=True)
    creator_id: Mapped[str] = mapped_column(String, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    chapters: Mapped[list["Chapter"]] = relationship("Chapter", back_populates="story")


class Chapter(Base):
    __tablename__ = "chapters"

    chapter_id: Mapped[str] = mapped_column(String, primary_key=True)
    story_id: Mapped[str] = mapped_column(String, ForeignKey("stories.story_id"), nullable=False)
    title: Mapped[str | None] = mapped_column(String, nullable=True)
    content: Mapped[str] = mapped_column(Text, nullable=False, default="")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    published: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    story: Mapped[Story] = relationship("Story", back_populates="chapters")
    vote_ledger: Mapped["PlotVoteLedger | None"] = relationship(
        "PlotVoteLedger", back_populates="chapter", uselist=False
    )


class PlotVoteLedger(Base):
    __tablename__ = "plot_vote_ledgers"

    chapter_id: Mapped[str] = mapped_column(
        String, ForeignKey("chapters.chapter_id"), primary_key=True
    )
    status: Mapped[str] = mapped_column(
        String, nullable=False, default=LedgerStatus.REGISTERING.value
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    chapter: Mapped[Chapter] = relationship("Chapter", back_populates="vote_ledger")
    options: Mapped[list["PlotOptionRecord"]] = relationship(
        "PlotOptionRecord",
        back_populates="ledger",
        cascade="all, delete-orphan",
        order_by="PlotOptionRecord.position",
    )


class PlotOptionRecord(Base):
    __tablename__ = "plot_options"

    option_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    chapter_id: Mapped[str] = mapped_column(
        String, ForeignKey("plot_vote_ledgers.chapter_id"), nullable=False
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    symbol: Mapped[str] = mapped_column(String, nullable=False)
    name: Mapped[str] = mapped_column(String, nullable=False)
    metadata_uri: Mapped[str] = mapped_column(String, nullable=False)
    token_address: Mapped[str | None] = mapped_column(String(42), nullable=True)
    creation_tx_hash: Mapped[str | None] = mapped_column(String(66), nullable=True)
    total_votes: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    volume_eth: Mapped[Decimal] = mapped_column(_AMOUNT, nullable=False, default=Decimal("0"))
    sold_volume: Mapped[Decimal] = mapped_column(_AMOUNT, nullable=False, default=Decimal("0"))

    ledger: Mapped[PlotVoteLedger] = relationship("PlotVoteLedger", back_populates="options")
    voters: Mapped[list["VoterStake"]] = relationship(
        "VoterStake", back_populates="option", cascade="all, delete-orphan"
    )

    __table_args__ = (
        UniqueConstraint("chapter_id", "symbol", name="uq_plot_option_symbol"),
        UniqueConstraint("chapter_id", "position", name="uq_plot_option_position"),
    )


class VoterStake(Base):
    __tablename__ = "voter_stakes"

    stake_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    option_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("plot_options.option_id"), nullable=False
    )
    voter: Mapped[str] = mapped_column(String, nullable=False)
    amount: Mapped[Decimal] = mapped_column(_AMOUNT, nullable=False, default=Decimal("0"))

    option: Mapped[PlotOptionRecord] = relationship("PlotOptionRecord", back_populates="voters")

    __table_args__ = (
        UniqueConstraint("option_id", "voter", name="uq_voter_stake_scope"),
    )


class SubmittedTrade(Base):
    """A trade handed to the ledger, recorded before its receipt is known."""

    __tablename__ = "submitted_trades"

    submission_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    chapter_id: Mapped[str] = mapped_column(
        String, ForeignKey("plot_vote_ledgers.chapter_id"), nullable=False
    )
    tx_hash: Mapped[str] = mapped_column(String(66), nullable=False)
    symbol: Mapped[str] = mapped_column(String, nullable=False)
    side: Mapped[str] = mapped_column(String, nullable=False)
    trader: Mapped[str] = mapped_column(String, nullable=False)
    amount: Mapped[Decimal] = mapped_column(_AMOUNT, nullable=False)
    submitted_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    settled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint("chapter_id", "tx_hash", name="uq_submitted_trade"),
    )


class SettledTransaction(Base):
    __tablename__ = "settled_transactions"

    settlement_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    chapter_id: Mapped[str] = mapped_column(
        String, ForeignKey("plot_vote_ledgers.chapter_id"), nullable=False
    )
    tx_hash: Mapped[str] = mapped_column(String(66), nullable=False)
    symbol: Mapped[str] = mapped_column(String, nullable=False)
    side: Mapped[str] = mapped_column(String, nullable=False)
    trader: Mapped[str] = mapped_column(String, nullable=False)
    amount: Mapped[Decimal] = mapped_column(_AMOUNT, nullable=False)
    block_number: Mapped[int | None] = mapped_column(Integer, nullable=True)
    recorded_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("chapter_id", "tx_hash", name="uq_settled_transaction"),
    )


class PlotWinner(Base):
    __tablename__ = "plot_winners"

    chapter_id: Mapped[str] = mapped_column(
        String, ForeignKey("plot_vote_ledgers.chapter_id"), primary_key=True
    )
    winning_symbol: Mapped[str] = mapped_column(String, nullable=False)
    token_address: Mapped[str] = mapped_column(String(42), nullable=False)
    total_votes: Mapped[int] = mapped_column(Integer, nullable=False)
    decided_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class ReadRewardClaim(Base):
    __tablename__ = "read_reward_claims"

    claim_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    reader_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    story_id: Mapped[str] = mapped_column(String, nullable=False)
    chapter_id: Mapped[str] = mapped_column(
        String, ForeignKey("chapters.chapter_id"), nullable=False
    )
    read_time: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    required_read_time: Mapped[int | None] = mapped_column(Integer, nullable=True)
    reward_amount: Mapped[int] = mapped_column(Integer, nullable=False)
    claimed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    claimed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    signature: Mapped[str | None] = mapped_column(String, nullable=True)
    expiry_timestamp: Mapped[int | None] = mapped_column(Integer, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        UniqueConstraint("reader_id", "chapter_id", name="uq_read_reward_claim_scope"),
    )
