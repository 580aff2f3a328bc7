from __future__ import annotations

import sys
from datetime import datetime, timezone
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import pytest

from app.core.config import Settings
from app.db import create_db_engine, create_session_factory, init_db, session_scope
from app.domain import (
    ChapterRecord,
    CoinCreation,
    PlotOptionSpec,
    SignerContext,
    TradeQuote,
    TransactionCall,
    TxReceipt,
)
from app.errors import ConfirmationTimeout, WalletNotConnected
from app.repositories import ChapterRepository, VoteLedgerStore


T0 = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)
AUTHOR = "author-1"
READER = "reader-1"
CHAPTER_ID = "chapter-1"
STORY_ID = "story-1"

BUYER = SignerContext(address="0x00000000000000000000000000000000000000b1", chain_id=84532)
SELLER = SignerContext(address="0x00000000000000000000000000000000000000c2", chain_id=84532)

# 25 sentences of 8 words: 200 words, 8 words per sentence.
SHORT_SENTENCE_CONTENT = " ".join(["one two three four five six seven eight."] * 25)


def token_address_for(symbol: str) -> str:
    return "0x" + symbol.lower().encode().hex().ljust(40, "0")[:40]


def option_specs(first: str = "LEFT", second: str = "RIGHT") -> list[PlotOptionSpec]:
    return [
        PlotOptionSpec(name=f"Take the {first.lower()} path", symbol=first, metadata_uri=f"ipfs://{first}"),
        PlotOptionSpec(
            name=f"Take the {second.lower()} path", symbol=second, metadata_uri=f"ipfs://{second}"
        ),
    ]


class FakeLedger:
    """In-memory stand-in for ``ledger.LedgerClient`` that records every call."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, str | None]] = []
        self.submitted: list[str] = []
        self.fail_creation_for: set[str] = set()
        self.quote_out = 10**18
        self.simulate_error: Exception | None = None
        self.receipt_status = True
        self.timeout = False
        self.pending: set[str] = set()
        self.poll_error: Exception | None = None
        self._counter = 0

    def ensure_network(self, signer: SignerContext) -> None:
        self.calls.append(("ensure_network", signer.address))
        if not signer.is_connected:
            raise WalletNotConnected("Wallet not connected or missing address")

    def prepare_coin_creation(self, *, name, symbol, metadata_uri, payout_recipient) -> CoinCreation:
        self.calls.append(("prepare_coin_creation", symbol))
        if symbol in self.fail_creation_for:
            raise ConfirmationTimeout(f"creation of {symbol} timed out")
        return CoinCreation(
            call=TransactionCall(to="0xfactory", data="0x" + symbol.encode().hex()),
            predicted_address=token_address_for(symbol),
        )

    def quote_trade(
        self, *, direction, token_address, amount_in, recipient, min_amount_out, slippage_bps
    ) -> TradeQuote:
        self.calls.append(("quote_trade", direction))
        return TradeQuote(
            call=TransactionCall(to="0xrouter", data="0xswap", value=amount_in),
            amount_in=amount_in,
            amount_out=self.quote_out,
            min_amount_out=min_amount_out or 0,
        )

    def simulate(self, call: TransactionCall, signer: SignerContext) -> str:
        self.calls.append(("simulate", call.to))
        if self.simulate_error is not None:
            raise self.simulate_error
        return "0x"

    def send_transaction(self, call: TransactionCall, signer: SignerContext) -> str:
        self._counter += 1
        tx_hash = f"0x{self._counter:064x}"
        self.calls.append(("send_transaction", tx_hash))
        self.submitted.append(tx_hash)
        return tx_hash

    def wait_for_receipt(self, tx_hash: str, *, timeout: float | None = None) -> TxReceipt:
        self.calls.append(("wait_for_receipt", tx_hash))
        if self.poll_error is not None:
            raise self.poll_error
        if self.timeout or tx_hash in self.pending:
            raise ConfirmationTimeout(f"No receipt for {tx_hash}", tx_hash=tx_hash)
        return TxReceipt(tx_hash=tx_hash, status=self.receipt_status, block_number=7)

    def call_names(self) -> list[str]:
        return [name for name, _ in self.calls]


@pytest.fixture
def test_settings(tmp_path, monkeypatch) -> Settings:
    settings = Settings(
        database_url=f"sqlite:///{tmp_path/'plotvote.db'}",
        reward_signer_private_key="11" * 32,
    )
    monkeypatch.setattr("app.core.config.get_settings", lambda: settings)
    monkeypatch.setattr("app.core.config.settings", settings)
    return settings


@pytest.fixture
def session_factory(test_settings):
    engine = create_db_engine(test_settings.resolved_database_url)
    init_db(bind=engine)
    factory = create_session_factory(engine)
    yield factory
    engine.dispose()


@pytest.fixture
def seeded(session_factory):
    """A story by ``AUTHOR`` with one chapter created at ``T0``."""

    with session_scope(session_factory) as session:
        repo = ChapterRepository(session)
        repo.upsert_story(STORY_ID, creator_id=AUTHOR, title="The Fork")
        session.flush()
        repo.upsert_chapter(
            ChapterRecord(
                chapter_id=CHAPTER_ID,
                story_id=STORY_ID,
                content=SHORT_SENTENCE_CONTENT,
                created_at=T0,
                title="Chapter One",
            )
        )
    return session_factory


@pytest.fixture
def fake_ledger() -> FakeLedger:
    return FakeLedger()


def register_directly(session_factory, chapter_id: str = CHAPTER_ID) -> None:
    """Create an active ledger with both options bound, bypassing the registrar."""

    with session_scope(session_factory) as session:
        store = VoteLedgerStore(session)
        snapshot = store.reserve(chapter_id, option_specs())
        version = snapshot.version
        for option in snapshot.options:
            version = store.bind_token_address(
                chapter_id,
                option.symbol,
                token_address_for(option.symbol),
                expected_version=version,
            )
        store.activate(chapter_id, expected_version=version)


@pytest.fixture
def registered(seeded):
    register_directly(seeded)
    return seeded
