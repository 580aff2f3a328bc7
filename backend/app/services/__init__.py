"""Settlement, voting and reward services."""

from .claim_signer import ClaimSigner
from .read_rewards import ReadProgress, ReadRewardEngine
from .registrar import PlotOptionRegistrar
from .settlement import SettlementEngine
from .voting_window import ChapterRestrictions, VotingWindowPolicy
from .winner import WinnerResolver

__all__ = [
    "ChapterRestrictions",
    "ClaimSigner",
    "PlotOptionRegistrar",
    "ReadProgress",
    "ReadRewardEngine",
    "SettlementEngine",
    "VotingWindowPolicy",
    "WinnerResolver",
]
