"""Register a chapter's two plot options as tradeable tokens."""

from __future__ import annotations

from typing import Sequence

from loguru import logger
from sqlalchemy.orm import Session, sessionmaker

from app.db import SessionLocal, session_scope
from app.domain import PlotOptionSpec, PlotOptionState, SignerContext, VoteLedgerSnapshot
from app.errors import (
    AlreadyInitialized,
    InvalidPlotOptions,
    NotFound,
    PartialRegistration,
    PlotEngineError,
    TransactionReverted,
)
from app.models import LedgerStatus
from app.repositories import ChapterRepository, VoteLedgerStore
from ledger import LedgerClient


REQUIRED_OPTION_COUNT = 2


def validate_options(options: Sequence[PlotOptionSpec]) -> list[PlotOptionSpec]:
    """Raise ``InvalidPlotOptions`` unless there are exactly two complete, distinct options."""

    options = list(options)
    if len(options) != REQUIRED_OPTION_COUNT:
        raise InvalidPlotOptions(
            f"Exactly {REQUIRED_OPTION_COUNT} plot options are required, got {len(options)}"
        )

    seen: set[str] = set()
    for option in options:
        if not option.name or not option.name.strip():
            raise InvalidPlotOptions("Plot option name must not be empty")
        if not option.symbol or not option.symbol.strip():
            raise InvalidPlotOptions("Plot option symbol must not be empty")
        if not option.metadata_uri or not option.metadata_uri.strip():
            raise InvalidPlotOptions(
                f"Plot option {option.symbol} is missing a metadata URI", symbol=option.symbol
            )
        key = option.symbol.strip().upper()
        if key in seen:
            raise InvalidPlotOptions(
                f"Plot option symbols must be distinct: {option.symbol}", symbol=option.symbol
            )
        seen.add(key)
    return options


class PlotOptionRegistrar:
    """Create one token per plot option and bind it into the chapter's vote ledger.

    The ledger entry is reserved before any token is created, so a second
    registration attempt fails fast with ``AlreadyInitialized`` rather than
    minting duplicate tokens. Each token address is bound by a write
    conditioned on the ledger version, and the entry only becomes ``active``
    once every option is bound.
    """

    def __init__(
        self,
        ledger: LedgerClient,
        *,
        session_factory: sessionmaker[Session] | None = None,
    ) -> None:
        self._ledger = ledger
        self._session_factory = session_factory or SessionLocal

    def register(
        self,
        chapter_id: str,
        options: Sequence[PlotOptionSpec],
        signer: SignerContext,
    ) -> VoteLedgerSnapshot:
        specs = validate_options(options)

        with session_scope(self._session_factory) as session:
            if ChapterRepository(session).get_chapter(chapter_id) is None:
                raise NotFound(f"Chapter {chapter_id} not found", chapter_id=chapter_id)
            if VoteLedgerStore(session).get(chapter_id) is not None:
                raise AlreadyInitialized(
                    f"Chapter {chapter_id} already has a vote ledger", chapter_id=chapter_id
                )

        self._ledger.ensure_network(signer)

        with session_scope(self._session_factory) as session:
            snapshot = VoteLedgerStore(session).reserve(chapter_id, specs)
        logger.info(
            "Reserved vote ledger for chapter {} with options {}",
            chapter_id,
            [spec.symbol for spec in specs],
        )
        return self._bind_pending(snapshot, signer)

    def resume(self, chapter_id: str, signer: SignerContext) -> VoteLedgerSnapshot:
        """Finish a registration that stopped part way; bound options are never recreated."""

        with session_scope(self._session_factory) as session:
            snapshot = VoteLedgerStore(session).require(chapter_id)
        if snapshot.status == LedgerStatus.ACTIVE.value:
            raise AlreadyInitialized(
                f"Chapter {chapter_id} is already registered", chapter_id=chapter_id
            )

        self._ledger.ensure_network(signer)
        logger.info(
            "Resuming registration for chapter {}; pending options {}",
            chapter_id,
            snapshot.unbound_symbols,
        )
        return self._bind_pending(snapshot, signer)

    # ------------------------------------------------------------------
    # Internals

    def _bind_pending(
        self, snapshot: VoteLedgerSnapshot, signer: SignerContext
    ) -> VoteLedgerSnapshot:
        chapter_id = snapshot.chapter_id
        version = snapshot.version
        bound = [option.symbol for option in snapshot.options if option.token_address]

        for option in snapshot.options:
            if option.token_address:
                continue
            try:
                token_address, tx_hash = self._create_token(chapter_id, option, signer)
                with session_scope(self._session_factory) as session:
                    version = VoteLedgerStore(session).bind_token_address(
                        chapter_id,
                        option.symbol,
                        token_address,
                        expected_version=version,
                        creation_tx_hash=tx_hash,
                    )
            except PlotEngineError as exc:
                pending = [item.symbol for item in snapshot.options if item.symbol not in bound]
                if not bound:
                    raise
                logger.error(
                    "Registration of chapter {} stopped after binding {}; pending {}: {}",
                    chapter_id,
                    bound,
                    pending,
                    exc,
                )
                raise PartialRegistration(
                    f"Chapter {chapter_id} registered only {bound}; pending {pending}",
                    chapter_id=chapter_id,
                    bound_symbols=bound,
                    pending_symbols=pending,
                    cause=exc,
                ) from exc
            bound.append(option.symbol)
            logger.info(
                "Bound option {} of chapter {} to token {}",
                option.symbol,
                chapter_id,
                token_address,
            )

        with session_scope(self._session_factory) as session:
            store = VoteLedgerStore(session)
            store.activate(chapter_id, expected_version=version)
        with session_scope(self._session_factory) as session:
            active = VoteLedgerStore(session).require(chapter_id)
        logger.info("Vote ledger for chapter {} is active (version={})", chapter_id, active.version)
        return active

    def _create_token(
        self, chapter_id: str, option: PlotOptionState, signer: SignerContext
    ) -> tuple[str, str]:
        creation = self._ledger.prepare_coin_creation(
            name=option.name,
            symbol=option.symbol,
            metadata_uri=option.metadata_uri,
            payout_recipient=signer.address or "",
        )
        tx_hash = self._ledger.send_transaction(creation.call, signer)
        receipt = self._ledger.wait_for_receipt(tx_hash)
        if not receipt.status:
            raise TransactionReverted(
                f"Token creation for option {option.symbol} reverted",
                chapter_id=chapter_id,
                symbol=option.symbol,
                tx_hash=tx_hash,
            )
        token_address = receipt.contract_address or creation.predicted_address
        if not token_address:
            raise TransactionReverted(
                f"Token creation for option {option.symbol} returned no address",
                chapter_id=chapter_id,
                symbol=option.symbol,
                tx_hash=tx_hash,
            )
        return token_address, tx_hash


__all__ = ["PlotOptionRegistrar", "REQUIRED_OPTION_COUNT", "validate_options"]
