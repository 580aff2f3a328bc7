"""Document-style vote ledger: per-chapter options, tallies, journal, and winners."""

from __future__ import annotations

from decimal import Decimal
from typing import Sequence

from loguru import logger
from sqlalchemy import and_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from app.domain import (
    PlotOptionSpec,
    PlotOptionState,
    SettlementRecord,
    VoteLedgerSnapshot,
    WinnerRecord,
    as_utc,
)
from app.errors import AlreadyInitialized, NotFound, VersionConflict
from app.models import (
    LedgerStatus,
    PlotOptionRecord,
    PlotVoteLedger,
    PlotWinner,
    SettledTransaction,
    SubmittedTrade,
    TradeSide,
    VoterStake,
    utcnow,
)


class VoteLedgerStore:
    """Encapsulate vote ledger persistence.

    Reads return detached snapshots. Writes are either conditional on the
    ledger ``version`` (optimistic concurrency) or expressed as SQL-side
    increments so concurrent settlements never lose updates. Callers own the
    transaction boundary (see ``app.db.session_scope``).
    """

    def __init__(self, session: Session) -> None:
        self._session = session

    # ------------------------------------------------------------------
    # Queries

    def get(self, chapter_id: str) -> VoteLedgerSnapshot | None:
        query = (
            select(PlotVoteLedger)
            .options(selectinload(PlotVoteLedger.options).selectinload(PlotOptionRecord.voters))
            .where(PlotVoteLedger.chapter_id == chapter_id)
            .execution_options(populate_existing=True)
        )
        ledger = self._session.execute(query).scalar_one_or_none()
        if ledger is None:
            return None
        return _to_snapshot(ledger)

    def require(self, chapter_id: str) -> VoteLedgerSnapshot:
        snapshot = self.get(chapter_id)
        if snapshot is None:
            raise NotFound(f"No vote ledger for chapter {chapter_id}", chapter_id=chapter_id)
        return snapshot

    def is_recorded(self, chapter_id: str, tx_hash: str) -> bool:
        query = select(SettledTransaction.settlement_id).where(
            SettledTransaction.chapter_id == chapter_id,
            SettledTransaction.tx_hash == _normalize_hash(tx_hash),
        )
        return self._session.execute(query).first() is not None

    def get_winner(self, chapter_id: str) -> WinnerRecord | None:
        record = self._session.get(PlotWinner, chapter_id, populate_existing=True)
        if record is None:
            return None
        return _to_winner(record)

    # ------------------------------------------------------------------
    # Registration

    def reserve(self, chapter_id: str, options: Sequence[PlotOptionSpec]) -> VoteLedgerSnapshot:
        """Create the ledger document with unbound options, failing if one exists."""

        if self._session.get(PlotVoteLedger, chapter_id) is not None:
            raise AlreadyInitialized(
                f"Chapter {chapter_id} already has a vote ledger", chapter_id=chapter_id
            )

        ledger = PlotVoteLedger(
            chapter_id=chapter_id,
            status=LedgerStatus.REGISTERING.value,
            version=1,
        )
        for position, option in enumerate(options):
            ledger.options.append(
                PlotOptionRecord(
                    position=position,
                    symbol=option.symbol,
                    name=option.name,
                    metadata_uri=option.metadata_uri,
                    total_votes=0,
                    volume_eth=Decimal("0"),
                    sold_volume=Decimal("0"),
                )
            )
        self._session.add(ledger)
        try:
            self._session.flush()
        except IntegrityError as exc:
            self._session.rollback()
            raise AlreadyInitialized(
                f"Chapter {chapter_id} already has a vote ledger", chapter_id=chapter_id
            ) from exc
        return _to_snapshot(ledger)

    def bind_token_address(
        self,
        chapter_id: str,
        symbol: str,
        token_address: str,
        *,
        expected_version: int,
        creation_tx_hash: str | None = None,
    ) -> int:
        """Bind a token address to an unbound option; returns the new ledger version."""

        new_version = self._bump_version(chapter_id, expected_version)
        result = self._session.execute(
            update(PlotOptionRecord)
            .where(
                PlotOptionRecord.chapter_id == chapter_id,
                PlotOptionRecord.symbol == symbol,
                PlotOptionRecord.token_address.is_(None),
            )
            .values(token_address=token_address, creation_tx_hash=creation_tx_hash)
        )
        if result.rowcount != 1:
            raise VersionConflict(
                f"Option {symbol} of chapter {chapter_id} is missing or already bound",
                chapter_id=chapter_id,
                symbol=symbol,
            )
        return new_version

    def activate(self, chapter_id: str, *, expected_version: int) -> int:
        new_version = self._bump_version(
            chapter_id, expected_version, status=LedgerStatus.ACTIVE.value
        )
        return new_version

    # ------------------------------------------------------------------
    # Settlement

    def add_submission(self, record: SettlementRecord) -> None:
        """Journal a submitted trade so only hashes this service sent can be reconciled."""

        self._session.add(
            SubmittedTrade(
                chapter_id=record.chapter_id,
                tx_hash=_normalize_hash(record.tx_hash),
                symbol=record.symbol,
                side=record.side,
                trader=record.trader,
                amount=record.amount,
            )
        )
        self._session.flush()

    def get_submission(self, chapter_id: str, tx_hash: str) -> SettlementRecord | None:
        submitted = self._session.execute(
            select(SubmittedTrade).where(
                SubmittedTrade.chapter_id == chapter_id,
                SubmittedTrade.tx_hash == _normalize_hash(tx_hash),
            )
        ).scalar_one_or_none()
        if submitted is None:
            return None
        return SettlementRecord(
            chapter_id=submitted.chapter_id,
            symbol=submitted.symbol,
            tx_hash=submitted.tx_hash,
            side=submitted.side,
            trader=submitted.trader,
            amount=Decimal(submitted.amount),
        )

    def record_settlement(self, record: SettlementRecord) -> bool:
        """Apply a confirmed trade once; returns False when the hash was already recorded."""

        tx_hash = _normalize_hash(record.tx_hash)
        if self.is_recorded(record.chapter_id, tx_hash):
            logger.warning(
                "Settlement {} for chapter {} already recorded; skipping replay",
                tx_hash,
                record.chapter_id,
            )
            return False

        option_id = self._session.execute(
            select(PlotOptionRecord.option_id).where(
                PlotOptionRecord.chapter_id == record.chapter_id,
                PlotOptionRecord.symbol == record.symbol,
                PlotOptionRecord.token_address.is_not(None),
            )
        ).scalar_one_or_none()
        if option_id is None:
            raise NotFound(
                f"Option {record.symbol} is not bound for chapter {record.chapter_id}",
                chapter_id=record.chapter_id,
                symbol=record.symbol,
                tx_hash=tx_hash,
            )

        self._session.add(
            SettledTransaction(
                chapter_id=record.chapter_id,
                tx_hash=tx_hash,
                symbol=record.symbol,
                side=record.side,
                trader=record.trader,
                amount=record.amount,
                block_number=record.block_number,
            )
        )
        try:
            self._session.flush()
        except IntegrityError:
            # A concurrent recorder inserted the same hash first.
            self._session.rollback()
            logger.warning(
                "Settlement {} for chapter {} recorded concurrently; skipping replay",
                tx_hash,
                record.chapter_id,
            )
            return False

        if record.side == TradeSide.BUY.value:
            self._session.execute(
                update(PlotOptionRecord)
                .where(PlotOptionRecord.option_id == option_id)
                .values(
                    total_votes=PlotOptionRecord.total_votes + 1,
                    volume_eth=PlotOptionRecord.volume_eth + record.amount,
                )
            )
            self._add_stake(option_id, record.trader, record.amount)
        else:
            self._session.execute(
                update(PlotOptionRecord)
                .where(PlotOptionRecord.option_id == option_id)
                .values(sold_volume=PlotOptionRecord.sold_volume + record.amount)
            )

        self._session.execute(
            update(PlotVoteLedger)
            .where(PlotVoteLedger.chapter_id == record.chapter_id)
            .values(version=PlotVoteLedger.version + 1, updated_at=utcnow())
        )
        self._session.execute(
            update(SubmittedTrade)
            .where(
                SubmittedTrade.chapter_id == record.chapter_id,
                SubmittedTrade.tx_hash == tx_hash,
            )
            .values(settled_at=utcnow())
        )
        return True

    # ------------------------------------------------------------------
    # Winners

    def put_winner_if_absent(self, winner: WinnerRecord) -> WinnerRecord:
        """Insert the winner unless one exists; always returns the stored record."""

        existing = self.get_winner(winner.chapter_id)
        if existing is not None:
            return existing

        self._session.add(
            PlotWinner(
                chapter_id=winner.chapter_id,
                winning_symbol=winner.winning_symbol,
                token_address=winner.token_address,
                total_votes=winner.total_votes,
                decided_at=winner.decided_at,
            )
        )
        try:
            self._session.flush()
        except IntegrityError:
            self._session.rollback()
            stored = self.get_winner(winner.chapter_id)
            if stored is None:
                raise
            return stored
        return winner

    # ------------------------------------------------------------------
    # Internals

    def _bump_version(
        self, chapter_id: str, expected_version: int, *, status: str | None = None
    ) -> int:
        values: dict[str, object] = {
            "version": PlotVoteLedger.version + 1,
            "updated_at": utcnow(),
        }
        if status is not None:
            values["status"] = status
        result = self._session.execute(
            update(PlotVoteLedger)
            .where(
                and_(
                    PlotVoteLedger.chapter_id == chapter_id,
                    PlotVoteLedger.version == expected_version,
                )
            )
            .values(**values)
        )
        if result.rowcount != 1:
            raise VersionConflict(
                f"Vote ledger for chapter {chapter_id} changed since version {expected_version}",
                chapter_id=chapter_id,
            )
        return expected_version + 1

    def _add_stake(self, option_id: int, voter: str, amount: Decimal) -> None:
        result = self._session.execute(
            update(VoterStake)
            .where(VoterStake.option_id == option_id, VoterStake.voter == voter)
            .values(amount=VoterStake.amount + amount)
        )
        if result.rowcount:
            return
        try:
            with self._session.begin_nested():
                self._session.add(VoterStake(option_id=option_id, voter=voter, amount=amount))
        except IntegrityError:
            self._session.execute(
                update(VoterStake)
                .where(VoterStake.option_id == option_id, VoterStake.voter == voter)
                .values(amount=VoterStake.amount + amount)
            )


def _normalize_hash(tx_hash: str) -> str:
    return tx_hash.strip().lower()


def _to_snapshot(ledger: PlotVoteLedger) -> VoteLedgerSnapshot:
    options = [
        PlotOptionState(
            position=option.position,
            symbol=option.symbol,
            name=option.name,
            metadata_uri=option.metadata_uri,
            token_address=option.token_address,
            total_votes=int(option.total_votes or 0),
            volume_eth=Decimal(option.volume_eth or 0),
            sold_volume=Decimal(option.sold_volume or 0),
            voters={stake.voter: Decimal(stake.amount) for stake in option.voters},
        )
        for option in sorted(ledger.options, key=lambda item: item.position)
    ]
    return VoteLedgerSnapshot(
        chapter_id=ledger.chapter_id,
        status=ledger.status,
        version=ledger.version,
        options=options,
    )


def _to_winner(record: PlotWinner) -> WinnerRecord:
    return WinnerRecord(
        chapter_id=record.chapter_id,
        winning_symbol=record.winning_symbol,
        token_address=record.token_address,
        total_votes=record.total_votes,
        decided_at=as_utc(record.decided_at),
    )


__all__ = ["VoteLedgerStore"]
