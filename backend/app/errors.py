"""Error taxonomy shared by the registrar, settlement, winner and reward services."""

from __future__ import annotations

import math
from datetime import timedelta
from typing import Any, Sequence


class PlotEngineError(Exception):
    """Base error carrying enough context for manual reconciliation."""

    code = "plot_engine_error"
    retryable = True

    def __init__(
        self,
        message: str,
        *,
        chapter_id: str | None = None,
        symbol: str | None = None,
        tx_hash: str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.chapter_id = chapter_id
        self.symbol = symbol
        self.tx_hash = tx_hash

    def context(self) -> dict[str, Any]:
        payload: dict[str, Any] = {}
        if self.chapter_id is not None:
            payload["chapter_id"] = self.chapter_id
        if self.symbol is not None:
            payload["symbol"] = self.symbol
        if self.tx_hash is not None:
            payload["tx_hash"] = self.tx_hash
        return payload


class NotFound(PlotEngineError):
    code = "not_found"
    retryable = False


class InvalidPlotOptions(PlotEngineError, ValueError):
    code = "invalid_plot_options"
    retryable = False


class AlreadyInitialized(PlotEngineError):
    """Raised on any attempt to register a chapter that already has a vote ledger."""

    code = "already_initialized"
    retryable = False


class PartialRegistration(PlotEngineError):
    """Some option tokens were created and bound, others were not."""

    code = "partial_registration"

    def __init__(
        self,
        message: str,
        *,
        chapter_id: str,
        bound_symbols: Sequence[str],
        pending_symbols: Sequence[str],
        cause: BaseException | None = None,
    ) -> None:
        super().__init__(message, chapter_id=chapter_id)
        self.bound_symbols = list(bound_symbols)
        self.pending_symbols = list(pending_symbols)
        self.cause = cause

    def context(self) -> dict[str, Any]:
        payload = super().context()
        payload["bound_symbols"] = self.bound_symbols
        payload["pending_symbols"] = self.pending_symbols
        return payload


class SellingRestricted(PlotEngineError):
    code = "selling_restricted"
    retryable = False

    def __init__(
        self,
        message: str,
        *,
        chapter_id: str,
        symbol: str | None = None,
        time_remaining: timedelta,
    ) -> None:
        super().__init__(message, chapter_id=chapter_id, symbol=symbol)
        self.time_remaining = time_remaining

    def context(self) -> dict[str, Any]:
        payload = super().context()
        payload["time_remaining_seconds"] = int(self.time_remaining.total_seconds())
        return payload


class SlippageExceeded(PlotEngineError):
    code = "slippage_exceeded"

    def __init__(
        self,
        message: str,
        *,
        chapter_id: str | None = None,
        symbol: str | None = None,
        expected_out: int | None = None,
        min_amount_out: int | None = None,
    ) -> None:
        super().__init__(message, chapter_id=chapter_id, symbol=symbol)
        self.expected_out = expected_out
        self.min_amount_out = min_amount_out


class ConfirmationTimeout(PlotEngineError):
    """The transaction was submitted but no receipt was observed in time.

    The outcome is unknown, not failed: re-poll the hash, never resubmit blindly.
    """

    code = "confirmation_timeout"


class TransactionReverted(PlotEngineError):
    code = "transaction_reverted"


class SettlementUnrecorded(PlotEngineError):
    """The trade confirmed on the ledger but the vote ledger write failed.

    Call ``SettlementEngine.reconcile`` with the carried hash once storage recovers.
    """

    code = "settlement_unrecorded"


class UnknownSubmission(PlotEngineError):
    """A hash offered for reconciliation was never submitted for that option and side."""

    code = "unknown_submission"
    retryable = False


class LedgerRPCError(PlotEngineError):
    code = "ledger_rpc_error"

    def __init__(
        self,
        message: str,
        *,
        rpc_code: int | None = None,
        data: Any = None,
        chapter_id: str | None = None,
        symbol: str | None = None,
        tx_hash: str | None = None,
    ) -> None:
        super().__init__(message, chapter_id=chapter_id, symbol=symbol, tx_hash=tx_hash)
        self.rpc_code = rpc_code
        self.data = data


class WalletNotConnected(PlotEngineError):
    code = "wallet_not_connected"
    retryable = False


class WrongNetwork(PlotEngineError):
    code = "wrong_network"
    retryable = False

    def __init__(self, message: str, *, expected: int, actual: int) -> None:
        super().__init__(message)
        self.expected = expected
        self.actual = actual


class VersionConflict(PlotEngineError):
    """The stored vote ledger changed since it was read."""

    code = "version_conflict"


class VotingStillOpen(PlotEngineError):
    code = "voting_still_open"
    retryable = False


class NoVotesCast(PlotEngineError):
    code = "no_votes_cast"
    retryable = False


class AuthorNotEligible(PlotEngineError):
    code = "author_not_eligible"
    retryable = False


class AlreadyClaimed(PlotEngineError):
    code = "already_claimed"
    retryable = False


class InsufficientReadTime(PlotEngineError):
    code = "insufficient_read_time"
    retryable = False

    def __init__(
        self,
        message: str,
        *,
        chapter_id: str,
        required_seconds: int,
        observed_seconds: int,
    ) -> None:
        super().__init__(message, chapter_id=chapter_id)
        self.required_seconds = required_seconds
        self.observed_seconds = observed_seconds

    @property
    def shortfall_seconds(self) -> int:
        return max(self.required_seconds - self.observed_seconds, 0)

    @property
    def shortfall_minutes(self) -> int:
        return math.ceil(self.shortfall_seconds / 60)

    def context(self) -> dict[str, Any]:
        payload = super().context()
        payload["required_seconds"] = self.required_seconds
        payload["observed_seconds"] = self.observed_seconds
        payload["shortfall_seconds"] = self.shortfall_seconds
        payload["shortfall_minutes"] = self.shortfall_minutes
        return payload


__all__ = [
    "AlreadyClaimed",
    "AlreadyInitialized",
    "AuthorNotEligible",
    "ConfirmationTimeout",
    "InsufficientReadTime",
    "InvalidPlotOptions",
    "LedgerRPCError",
    "NoVotesCast",
    "NotFound",
    "PartialRegistration",
    "PlotEngineError",
    "SellingRestricted",
    "SettlementUnrecorded",
    "SlippageExceeded",
    "TransactionReverted",
    "UnknownSubmission",
    "VersionConflict",
    "VotingStillOpen",
    "WalletNotConnected",
    "WrongNetwork",
]
