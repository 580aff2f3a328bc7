"""Settle plot option trades on the ledger and record them in the vote ledger."""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal

import httpx
from loguru import logger
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from app.core.config import get_settings
from app.db import SessionLocal, session_scope
from app.domain import PlotOptionState, SettlementRecord, SignerContext, TxReceipt
from app.errors import (
    ConfirmationTimeout,
    LedgerRPCError,
    NotFound,
    PlotEngineError,
    SellingRestricted,
    SettlementUnrecorded,
    SlippageExceeded,
    TransactionReverted,
    UnknownSubmission,
)
from app.models import LedgerStatus, TradeSide
from app.repositories import ChapterRepository, VoteLedgerStore
from app.services.voting_window import VotingWindowPolicy
from ledger import LedgerClient, is_revert, to_wei


_SLIPPAGE_MARKERS = ("insufficientoutputamount", "slippage", "too little received")


def _is_slippage_revert(error: LedgerRPCError) -> bool:
    text = f"{error.message} {error.data or ''}".lower()
    return any(marker in text for marker in _SLIPPAGE_MARKERS)


class SettlementEngine:
    """Submit buys and sells, wait for confirmation, then record the outcome once.

    The order is always submit, journal, confirm, record. Recording is keyed
    by the transaction hash, so replaying a confirmed hash (for example
    through ``reconcile`` after a ``ConfirmationTimeout``) never counts it
    twice. Once a hash exists every failure carries it, and ``reconcile``
    only accepts hashes found in the submission journal.
    """

    def __init__(
        self,
        ledger: LedgerClient,
        *,
        session_factory: sessionmaker[Session] | None = None,
        window_policy: VotingWindowPolicy | None = None,
        default_slippage_bps: int | None = None,
    ) -> None:
        self._ledger = ledger
        self._session_factory = session_factory or SessionLocal
        self._window_policy = window_policy or VotingWindowPolicy()
        self.default_slippage_bps = (
            default_slippage_bps
            if default_slippage_bps is not None
            else get_settings().default_slippage_bps
        )

    # ------------------------------------------------------------------
    # Public operations

    def settle_buy(
        self,
        chapter_id: str,
        symbol: str,
        buyer: SignerContext,
        eth_amount: Decimal,
        *,
        min_amount_out: int | None = None,
    ) -> TxReceipt:
        amount = self._positive_amount(eth_amount)
        option = self._resolve_option(chapter_id, symbol)
        receipt = self._execute(
            chapter_id,
            option,
            buyer,
            side=TradeSide.BUY,
            amount=amount,
            min_amount_out=min_amount_out,
        )
        return self._record(chapter_id, symbol, receipt, buyer.address or "", TradeSide.BUY, amount)

    def settle_sell(
        self,
        chapter_id: str,
        symbol: str,
        seller: SignerContext,
        token_amount: Decimal,
        *,
        min_amount_out: int | None = None,
        now: datetime | None = None,
    ) -> TxReceipt:
        amount = self._positive_amount(token_amount)
        option = self._resolve_option(chapter_id, symbol)

        created_at = self._chapter_created_at(chapter_id)
        status = self._window_policy.evaluate(created_at, now or datetime.now(timezone.utc))
        if not status.can_sell:
            raise SellingRestricted(
                f"Selling {symbol} is locked while voting is open "
                f"({int(status.time_remaining.total_seconds())}s remaining)",
                chapter_id=chapter_id,
                symbol=symbol,
                time_remaining=status.time_remaining,
            )

        receipt = self._execute(
            chapter_id,
            option,
            seller,
            side=TradeSide.SELL,
            amount=amount,
            min_amount_out=min_amount_out,
        )
        return self._record(
            chapter_id, symbol, receipt, seller.address or "", TradeSide.SELL, amount
        )

    def reconcile(
        self,
        chapter_id: str,
        symbol: str,
        tx_hash: str,
        trader: str,
        side: str | TradeSide,
        amount: Decimal,
    ) -> TxReceipt:
        """Re-poll a hash this engine submitted and record it if confirmed; never resubmits.

        The trade details must match the submission journal, so a hash that was
        never sent through ``settle_buy`` or ``settle_sell`` cannot become a vote.
        """

        trade_side = TradeSide(side)
        expected_amount = self._positive_amount(amount)
        self._resolve_option(chapter_id, symbol)
        with session_scope(self._session_factory) as session:
            submission = VoteLedgerStore(session).get_submission(chapter_id, tx_hash)
        if (
            submission is None
            or submission.symbol != symbol
            or submission.side != trade_side.value
            or submission.trader.lower() != trader.lower()
            or submission.amount != expected_amount
        ):
            raise UnknownSubmission(
                f"No submitted {trade_side.value} of {symbol} matches {tx_hash}",
                chapter_id=chapter_id,
                symbol=symbol,
                tx_hash=tx_hash,
            )

        receipt = self._await_receipt(tx_hash, chapter_id, symbol)
        self._check_status(receipt, chapter_id, symbol)
        return self._record(
            chapter_id, symbol, receipt, submission.trader, trade_side, submission.amount
        )

    # ------------------------------------------------------------------
    # Internals

    @staticmethod
    def _positive_amount(value: Decimal | int | str) -> Decimal:
        amount = Decimal(str(value))
        if amount <= 0:
            raise ValueError("Trade amount must be positive")
        return amount

    def _resolve_option(self, chapter_id: str, symbol: str) -> PlotOptionState:
        with session_scope(self._session_factory) as session:
            snapshot = VoteLedgerStore(session).require(chapter_id)
        if snapshot.status != LedgerStatus.ACTIVE.value:
            raise NotFound(
                f"Vote ledger for chapter {chapter_id} is still {snapshot.status}",
                chapter_id=chapter_id,
                symbol=symbol,
            )
        option = snapshot.option(symbol)
        if option is None or not option.token_address:
            raise NotFound(
                f"Option {symbol} is not registered for chapter {chapter_id}",
                chapter_id=chapter_id,
                symbol=symbol,
            )
        return option

    def _chapter_created_at(self, chapter_id: str) -> datetime:
        with session_scope(self._session_factory) as session:
            chapter = ChapterRepository(session).get_chapter(chapter_id)
            if chapter is None:
                raise NotFound(f"Chapter {chapter_id} not found", chapter_id=chapter_id)
            return chapter.created_at

    def _execute(
        self,
        chapter_id: str,
        option: PlotOptionState,
        signer: SignerContext,
        *,
        side: TradeSide,
        amount: Decimal,
        min_amount_out: int | None,
    ) -> TxReceipt:
        self._ledger.ensure_network(signer)
        symbol = option.symbol
        quote = self._ledger.quote_trade(
            direction=side.value,
            token_address=option.token_address or "",
            amount_in=to_wei(amount),
            recipient=signer.address or "",
            min_amount_out=min_amount_out,
            slippage_bps=self.default_slippage_bps,
        )

        bound = min_amount_out
        if bound is None:
            bound = quote.amount_out * (10_000 - self.default_slippage_bps) // 10_000
        if bound == 0:
            logger.warning(
                "Zero minimum output for {} of {} on chapter {}; trade is unprotected",
                side.value,
                symbol,
                chapter_id,
            )
        if quote.amount_out < bound:
            raise SlippageExceeded(
                f"Quoted output {quote.amount_out} is below the minimum {bound}",
                chapter_id=chapter_id,
                symbol=symbol,
                expected_out=quote.amount_out,
                min_amount_out=bound,
            )

        try:
            self._ledger.simulate(quote.call, signer)
        except LedgerRPCError as exc:
            if is_revert(exc) and _is_slippage_revert(exc):
                raise SlippageExceeded(
                    f"Trade simulation for {symbol} failed the output bound: {exc.message}",
                    chapter_id=chapter_id,
                    symbol=symbol,
                    expected_out=quote.amount_out,
                    min_amount_out=bound,
                ) from exc
            if is_revert(exc):
                raise TransactionReverted(
                    f"Trade simulation for {symbol} reverted: {exc.message}",
                    chapter_id=chapter_id,
                    symbol=symbol,
                ) from exc
            raise

        tx_hash = self._ledger.send_transaction(quote.call, signer)
        logger.info(
            "Submitted {} of {} {} on chapter {} as {}",
            side.value,
            amount,
            symbol,
            chapter_id,
            tx_hash,
        )
        self._journal(
            SettlementRecord(
                chapter_id=chapter_id,
                symbol=symbol,
                tx_hash=tx_hash,
                side=side.value,
                trader=signer.address or "",
                amount=amount,
            )
        )
        receipt = self._await_receipt(tx_hash, chapter_id, symbol)
        self._check_status(receipt, chapter_id, symbol)
        return receipt

    def _journal(self, submission: SettlementRecord) -> None:
        try:
            with session_scope(self._session_factory) as session:
                VoteLedgerStore(session).add_submission(submission)
        except SQLAlchemyError:
            # _record writes the journal entry again once the receipt is in.
            logger.exception(
                "Could not journal {} for chapter {}; continuing to confirmation",
                submission.tx_hash,
                submission.chapter_id,
            )

    def _await_receipt(self, tx_hash: str, chapter_id: str, symbol: str) -> TxReceipt:
        try:
            return self._ledger.wait_for_receipt(tx_hash)
        except ConfirmationTimeout as exc:
            exc.chapter_id, exc.symbol, exc.tx_hash = chapter_id, symbol, tx_hash
            logger.warning(
                "Confirmation timed out for {} on chapter {}; reconcile {} later",
                symbol,
                chapter_id,
                tx_hash,
            )
            raise
        except (httpx.HTTPError, PlotEngineError) as exc:
            logger.warning(
                "Polling {} for {} on chapter {} failed: {}", tx_hash, symbol, chapter_id, exc
            )
            raise ConfirmationTimeout(
                f"Outcome of {tx_hash} unknown after submission: {exc}",
                chapter_id=chapter_id,
                symbol=symbol,
                tx_hash=tx_hash,
            ) from exc

    @staticmethod
    def _check_status(receipt: TxReceipt, chapter_id: str, symbol: str) -> None:
        if not receipt.status:
            raise TransactionReverted(
                f"Transaction {receipt.tx_hash} reverted",
                chapter_id=chapter_id,
                symbol=symbol,
                tx_hash=receipt.tx_hash,
            )

    def _record(
        self,
        chapter_id: str,
        symbol: str,
        receipt: TxReceipt,
        trader: str,
        side: TradeSide,
        amount: Decimal,
    ) -> TxReceipt:
        record = SettlementRecord(
            chapter_id=chapter_id,
            symbol=symbol,
            tx_hash=receipt.tx_hash,
            side=side.value,
            trader=trader,
            amount=amount,
            block_number=receipt.block_number,
        )
        try:
            with session_scope(self._session_factory) as session:
                store = VoteLedgerStore(session)
                if store.get_submission(chapter_id, receipt.tx_hash) is None:
                    store.add_submission(record)
                receipt.recorded = store.record_settlement(record)
        except SQLAlchemyError as exc:
            logger.error(
                "Confirmed {} {} on chapter {} not recorded; reconcile {}",
                side.value,
                symbol,
                chapter_id,
                receipt.tx_hash,
            )
            raise SettlementUnrecorded(
                f"Transaction {receipt.tx_hash} confirmed but was not recorded: {exc}",
                chapter_id=chapter_id,
                symbol=symbol,
                tx_hash=receipt.tx_hash,
            ) from exc
        if receipt.recorded:
            logger.info(
                "Recorded {} {} of {} on chapter {} from {}",
                side.value,
                amount,
                symbol,
                chapter_id,
                receipt.tx_hash,
            )
        return receipt


__all__ = ["SettlementEngine"]
