from __future__ import annotations

from datetime import timedelta
from decimal import Decimal
from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient

from app.db import get_db, session_scope
from app.domain import SettlementRecord, WinnerRecord
from app.errors import VotingStillOpen
from app.main import _read_rewards, _window_policy, _winner_resolver, app
from app.repositories import VoteLedgerStore
from app.services import ClaimSigner, ReadRewardEngine, VotingWindowPolicy, WinnerResolver

from conftest import AUTHOR, BUYER, CHAPTER_ID, READER, T0, token_address_for


@pytest.fixture
def client():
    """Test client that cleans up dependency overrides after each test."""
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def wired(client, registered):
    """Point every dependency at the temporary database."""

    def _db():
        session = registered()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = _db
    app.dependency_overrides[_window_policy] = lambda: VotingWindowPolicy(timedelta(hours=24))
    app.dependency_overrides[_winner_resolver] = lambda: WinnerResolver(session_factory=registered)
    app.dependency_overrides[_read_rewards] = lambda: ReadRewardEngine(
        session_factory=registered, signer=ClaimSigner("33" * 32), comprehension_buffer=1.0
    )
    return client


def _record_buys(session_factory, symbol: str, count: int) -> None:
    for index in range(count):
        with session_scope(session_factory) as session:
            VoteLedgerStore(session).record_settlement(
                SettlementRecord(
                    chapter_id=CHAPTER_ID,
                    symbol=symbol,
                    tx_hash=f"0x{symbol.lower()}{index}",
                    side="buy",
                    trader=BUYER.address,
                    amount=Decimal("0.5"),
                )
            )


def test_healthcheck(client):
    """Verify the healthcheck endpoint returns a successful response."""
    response = client.get("/healthz")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_votes_report_share_per_option(wired, registered):
    _record_buys(registered, "LEFT", 3)
    _record_buys(registered, "RIGHT", 1)

    response = wired.get(f"/chapters/{CHAPTER_ID}/votes")

    assert response.status_code == 200
    payload = response.json()
    assert payload["total_votes"] == 4
    left, right = payload["options"]
    assert left["symbol"] == "LEFT"
    assert left["vote_share"] == 75.0
    assert left["volume_eth"] == 1.5
    assert left["voter_count"] == 1
    assert right["vote_share"] == 25.0


def test_votes_for_unknown_chapter(wired):
    response = wired.get("/chapters/missing/votes")

    assert response.status_code == 404
    assert response.json()["code"] == "not_found"
    assert response.json()["chapter_id"] == "missing"


def test_voting_status_after_close(wired):
    response = wired.get(f"/chapters/{CHAPTER_ID}/voting-status", params={"viewer_id": AUTHOR})

    assert response.status_code == 200
    payload = response.json()
    assert payload["voting_open"] is False
    assert payload["can_sell_tokens"] is True
    assert payload["can_create_new_chapter"] is True
    assert payload["time_remaining"] == {"hours": 0, "minutes": 0, "seconds": 0}


def test_winner_missing_until_finalized(wired, registered):
    assert wired.get(f"/chapters/{CHAPTER_ID}/winner").status_code == 404

    _record_buys(registered, "RIGHT", 2)
    finalized = wired.post(f"/chapters/{CHAPTER_ID}/finalize")
    fetched = wired.get(f"/chapters/{CHAPTER_ID}/winner")

    assert finalized.status_code == 200
    assert finalized.json()["winning_symbol"] == "RIGHT"
    assert fetched.json() == finalized.json()


def test_finalize_without_votes_is_unprocessable(wired):
    response = wired.post(f"/chapters/{CHAPTER_ID}/finalize")

    assert response.status_code == 422
    assert response.json()["code"] == "no_votes_cast"


def test_finalize_while_open_maps_to_422(client):
    resolver = MagicMock()
    resolver.finalize.side_effect = VotingStillOpen("still open", chapter_id=CHAPTER_ID)
    app.dependency_overrides[_winner_resolver] = lambda: resolver

    response = client.post(f"/chapters/{CHAPTER_ID}/finalize")

    assert response.status_code == 422
    assert response.json() == {
        "detail": "still open",
        "code": "voting_still_open",
        "chapter_id": CHAPTER_ID,
    }


def test_get_winner_uses_resolver(client):
    resolver = MagicMock()
    resolver.get_winner.return_value = WinnerRecord(
        chapter_id=CHAPTER_ID,
        winning_symbol="LEFT",
        token_address=token_address_for("LEFT"),
        total_votes=4,
        decided_at=T0 + timedelta(days=1),
    )
    app.dependency_overrides[_winner_resolver] = lambda: resolver

    response = client.get(f"/chapters/{CHAPTER_ID}/winner")

    assert response.status_code == 200
    assert response.json()["total_votes"] == 4
    resolver.get_winner.assert_called_once_with(CHAPTER_ID)


def test_read_time(wired):
    response = wired.get(f"/chapters/{CHAPTER_ID}/read-time")

    assert response.status_code == 200
    assert response.json() == {
        "chapter_id": CHAPTER_ID,
        "required_read_time": 60,
        "complexity_factor": 1.0,
    }


def test_read_then_claim_flow(wired):
    short = wired.post(
        f"/chapters/{CHAPTER_ID}/reads", json={"reader_id": READER, "read_time_seconds": 20}
    )
    assert short.status_code == 200
    assert short.json()["read_time"] == 20

    early = wired.post(f"/chapters/{CHAPTER_ID}/claims", json={"reader_id": READER})
    assert early.status_code == 422
    assert early.json()["code"] == "insufficient_read_time"
    assert early.json()["shortfall_seconds"] == 40
    assert early.json()["shortfall_minutes"] == 1

    wired.post(f"/chapters/{CHAPTER_ID}/reads", json={"reader_id": READER, "read_time_seconds": 75})
    claimed = wired.post(f"/chapters/{CHAPTER_ID}/claims", json={"reader_id": READER})
    again = wired.post(f"/chapters/{CHAPTER_ID}/claims", json={"reader_id": READER})
    balance = wired.get(f"/readers/{READER}/rewards")

    assert claimed.status_code == 200
    assert claimed.json()["reward_amount"] == 5
    assert len(claimed.json()["signature"]) == 128
    assert again.status_code == 409
    assert again.json()["code"] == "already_claimed"
    assert balance.json() == {"reader_id": READER, "balance": 5}


def test_author_cannot_record_reads(wired):
    response = wired.post(
        f"/chapters/{CHAPTER_ID}/reads", json={"reader_id": AUTHOR, "read_time_seconds": 600}
    )

    assert response.status_code == 403
    assert response.json()["code"] == "author_not_eligible"


def test_negative_read_time_is_rejected_by_validation(wired):
    response = wired.post(
        f"/chapters/{CHAPTER_ID}/reads", json={"reader_id": READER, "read_time_seconds": -5}
    )

    assert response.status_code == 422
