"""Typed domain representations shared by the ledger client, services, and API."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any


def as_utc(value: datetime) -> datetime:
    """Treat naive timestamps (as returned by SQLite) as UTC."""

    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


@dataclass(slots=True, frozen=True)
class SignerContext:
    """Explicit wallet/session passed into every ledger write."""

    address: str | None
    chain_id: int | None = None

    @property
    def is_connected(self) -> bool:
        return bool(self.address)


@dataclass(slots=True)
class PlotOptionSpec:
    """Author-supplied description of one plot option prior to registration."""

    name: str
    symbol: str
    metadata_uri: str


@dataclass(slots=True)
class PlotOptionState:
    position: int
    symbol: str
    name: str
    metadata_uri: str
    token_address: str | None
    total_votes: int = 0
    volume_eth: Decimal = Decimal("0")
    sold_volume: Decimal = Decimal("0")
    voters: dict[str, Decimal] = field(default_factory=dict)


@dataclass(slots=True)
class VoteLedgerSnapshot:
    """Point-in-time read of a chapter's vote ledger document."""

    chapter_id: str
    status: str
    version: int
    options: list[PlotOptionState] = field(default_factory=list)

    def option(self, symbol: str) -> PlotOptionState | None:
        for option in self.options:
            if option.symbol == symbol:
                return option
        return None

    @property
    def total_votes(self) -> int:
        return sum(option.total_votes for option in self.options)

    @property
    def unbound_symbols(self) -> list[str]:
        return [option.symbol for option in self.options if not option.token_address]


@dataclass(slots=True)
class SettlementRecord:
    """Confirmed trade to be recorded in the off-chain ledger."""

    chapter_id: str
    symbol: str
    tx_hash: str
    side: str
    trader: str
    amount: Decimal
    block_number: int | None = None


@dataclass(slots=True)
class TxReceipt:
    tx_hash: str
    status: bool
    block_number: int | None = None
    contract_address: str | None = None
    gas_used: int | None = None
    logs: list[dict[str, Any]] = field(default_factory=list)
    recorded: bool = False


@dataclass(slots=True)
class TransactionCall:
    """Unsigned call prepared by the trade API, submitted through the signer's wallet."""

    to: str
    data: str
    value: int = 0


@dataclass(slots=True)
class TradeQuote:
    call: TransactionCall
    amount_in: int
    amount_out: int
    min_amount_out: int


@dataclass(slots=True)
class CoinPoolState:
    address: str
    pool_initialized: bool
    has_liquidity: bool
    total_supply: int | None = None
    unique_holders: int | None = None

    @property
    def tradeable(self) -> bool:
        return self.pool_initialized and self.has_liquidity


@dataclass(slots=True, frozen=True)
class WinnerRecord:
    chapter_id: str
    winning_symbol: str
    token_address: str
    total_votes: int
    decided_at: datetime


@dataclass(slots=True, frozen=True)
class VotingWindowStatus:
    voting_open: bool
    time_remaining: timedelta
    closes_at: datetime

    @property
    def can_sell(self) -> bool:
        return not self.voting_open


@dataclass(slots=True)
class ChapterRecord:
    """Authoring-side chapter snapshot as delivered by the publishing flow."""

    chapter_id: str
    story_id: str
    content: str
    created_at: datetime
    published: bool = True
    title: str | None = None


@dataclass(slots=True)
class ClaimToken:
    reader_id: str
    chapter_id: str
    signature: str
    reward_amount: int
    expiry: int


@dataclass(slots=True)
class CoinCreation:
    """Token-creation call plus the address the factory will deploy to, when known."""

    call: TransactionCall
    predicted_address: str | None = None
