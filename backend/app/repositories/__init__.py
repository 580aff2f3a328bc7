"""Repository abstractions for database interactions."""

from .chapter_repository import ChapterRepository
from .reward_repository import RewardClaimRepository
from .vote_ledger_store import VoteLedgerStore

__all__ = [
    "ChapterRepository",
    "RewardClaimRepository",
    "VoteLedgerStore",
]
