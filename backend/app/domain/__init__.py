"""Domain models for plot voting, settlement, and reading rewards."""

from .models import (
    ChapterRecord,
    ClaimToken,
    CoinCreation,
    CoinPoolState,
    PlotOptionSpec,
    PlotOptionState,
    SettlementRecord,
    SignerContext,
    TradeQuote,
    TransactionCall,
    TxReceipt,
    VoteLedgerSnapshot,
    VotingWindowStatus,
    WinnerRecord,
    as_utc,
)

__all__ = [
    "ChapterRecord",
    "ClaimToken",
    "CoinCreation",
    "CoinPoolState",
    "PlotOptionSpec",
    "PlotOptionState",
    "SettlementRecord",
    "SignerContext",
    "TradeQuote",
    "TransactionCall",
    "TxReceipt",
    "VoteLedgerSnapshot",
    "VotingWindowStatus",
    "WinnerRecord",
    "as_utc",
]
