from __future__ import annotations

from datetime import timedelta
from decimal import Decimal

import pytest

from app.db import session_scope
from app.domain import SettlementRecord
from app.errors import NotFound, NoVotesCast, VotingStillOpen
from app.repositories import VoteLedgerStore
from app.services.voting_window import VotingWindowPolicy
from app.services.winner import WinnerResolver

from conftest import BUYER, CHAPTER_ID, T0, option_specs, token_address_for

AFTER_CLOSE = T0 + timedelta(hours=24, minutes=5)


@pytest.fixture
def resolver(registered) -> WinnerResolver:
    return WinnerResolver(
        session_factory=registered, window_policy=VotingWindowPolicy(timedelta(hours=24))
    )


def _vote(session_factory, symbol: str, count: int, prefix: str) -> None:
    for index in range(count):
        with session_scope(session_factory) as session:
            VoteLedgerStore(session).record_settlement(
                SettlementRecord(
                    chapter_id=CHAPTER_ID,
                    symbol=symbol,
                    tx_hash=f"0x{prefix}{index:04d}",
                    side="buy",
                    trader=BUYER.address,
                    amount=Decimal("0.5"),
                )
            )


def test_finalize_picks_the_most_voted_option(resolver, registered):
    _vote(registered, "LEFT", 1, "a")
    _vote(registered, "RIGHT", 3, "b")

    winner = resolver.finalize(CHAPTER_ID, now=AFTER_CLOSE)

    assert winner.winning_symbol == "RIGHT"
    assert winner.token_address == token_address_for("RIGHT")
    assert winner.total_votes == 3
    assert winner.decided_at == AFTER_CLOSE


def test_tie_goes_to_the_first_option(resolver, registered):
    _vote(registered, "LEFT", 2, "a")
    _vote(registered, "RIGHT", 2, "b")

    winner = resolver.finalize(CHAPTER_ID, now=AFTER_CLOSE)

    assert winner.winning_symbol == "LEFT"


def test_finalize_is_idempotent(resolver, registered):
    _vote(registered, "LEFT", 2, "a")

    first = resolver.finalize(CHAPTER_ID, now=AFTER_CLOSE)
    _vote(registered, "RIGHT", 5, "b")
    second = resolver.finalize(CHAPTER_ID, now=AFTER_CLOSE + timedelta(hours=3))

    assert second == first
    assert resolver.get_winner(CHAPTER_ID) == first


def test_finalize_while_voting_is_open(resolver, registered):
    _vote(registered, "LEFT", 1, "a")

    with pytest.raises(VotingStillOpen):
        resolver.finalize(CHAPTER_ID, now=T0 + timedelta(hours=23))

    assert resolver.get_winner(CHAPTER_ID) is None


def test_finalize_without_votes(resolver):
    with pytest.raises(NoVotesCast):
        resolver.finalize(CHAPTER_ID, now=AFTER_CLOSE)

    assert resolver.get_winner(CHAPTER_ID) is None


def test_finalize_unregistered_chapter(seeded):
    resolver = WinnerResolver(session_factory=seeded)

    with pytest.raises(NotFound):
        resolver.finalize(CHAPTER_ID, now=AFTER_CLOSE)


def test_finalize_registering_ledger_is_not_found(seeded):
    with session_scope(seeded) as session:
        VoteLedgerStore(session).reserve(CHAPTER_ID, option_specs())
    resolver = WinnerResolver(session_factory=seeded)

    with pytest.raises(NotFound):
        resolver.finalize(CHAPTER_ID, now=AFTER_CLOSE)
