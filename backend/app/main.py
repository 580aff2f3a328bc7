from __future__ import annotations

from functools import lru_cache
from typing import Annotated

from fastapi import Depends, FastAPI, Query, Request
from fastapi.responses import JSONResponse
from loguru import logger
from sqlalchemy.orm import Session

from . import schemas
from .core.config import settings
from .db import get_db, init_db
from .errors import (
    AlreadyClaimed,
    AlreadyInitialized,
    AuthorNotEligible,
    ConfirmationTimeout,
    InsufficientReadTime,
    InvalidPlotOptions,
    LedgerRPCError,
    NoVotesCast,
    NotFound,
    PlotEngineError,
    SellingRestricted,
    SettlementUnrecorded,
    UnknownSubmission,
    VotingStillOpen,
)
from .repositories import ChapterRepository, VoteLedgerStore
from .services import ClaimSigner, ReadRewardEngine, VotingWindowPolicy, WinnerResolver

app = FastAPI(title="PlotVote API", version="0.1.0", debug=settings.debug)


_ERROR_STATUS: dict[type[PlotEngineError], int] = {
    NotFound: 404,
    AuthorNotEligible: 403,
    AlreadyClaimed: 409,
    AlreadyInitialized: 409,
    InsufficientReadTime: 422,
    NoVotesCast: 422,
    VotingStillOpen: 422,
    SellingRestricted: 422,
    InvalidPlotOptions: 422,
    UnknownSubmission: 404,
    SettlementUnrecorded: 503,
    ConfirmationTimeout: 504,
    LedgerRPCError: 502,
}


def _status_for(exc: PlotEngineError) -> int:
    for cls in type(exc).__mro__:
        if cls in _ERROR_STATUS:
            return _ERROR_STATUS[cls]
    return 400


@app.exception_handler(PlotEngineError)
async def plot_engine_error_handler(request: Request, exc: PlotEngineError) -> JSONResponse:
    status_code = _status_for(exc)
    if status_code >= 500:
        logger.error("{} {} failed: {}", request.method, request.url.path, exc.message)
    body = schemas.ErrorResponse(detail=exc.message, code=exc.code, **exc.context())
    return JSONResponse(status_code=status_code, content=body.model_dump(mode="json"))


@app.on_event("startup")
def on_startup() -> None:
    """Initialize database connections when the API boots."""

    init_db()


@app.get("/healthz", tags=["system"])
def healthcheck() -> dict[str, str]:
    """Basic readiness probe consumed by infrastructure monitors."""

    return {"status": "ok"}


def _window_policy() -> VotingWindowPolicy:
    return VotingWindowPolicy()


def _winner_resolver() -> WinnerResolver:
    return WinnerResolver()


@lru_cache
def _claim_signer() -> ClaimSigner:
    return ClaimSigner()


def _read_rewards() -> ReadRewardEngine:
    return ReadRewardEngine(signer=_claim_signer())


# ---------------------------------------------------------------------------
# Voting


@app.get("/chapters/{chapter_id}/votes", response_model=schemas.VoteTally, tags=["voting"])
def get_votes(chapter_id: str, db: Session = Depends(get_db)):
    """Current per-option tallies with each option's share of the votes cast."""

    snapshot = VoteLedgerStore(db).require(chapter_id)
    total = snapshot.total_votes
    options = [
        schemas.PlotOptionTally(
            position=option.position,
            symbol=option.symbol,
            name=option.name,
            metadata_uri=option.metadata_uri,
            token_address=option.token_address,
            total_votes=option.total_votes,
            volume_eth=option.volume_eth,
            sold_volume=option.sold_volume,
            voter_count=len(option.voters),
            vote_share=round(option.total_votes / total * 100, 2) if total else 0.0,
        )
        for option in snapshot.options
    ]
    return schemas.VoteTally(
        chapter_id=snapshot.chapter_id,
        status=snapshot.status,
        total_votes=total,
        options=options,
    )


@app.get(
    "/chapters/{chapter_id}/voting-status",
    response_model=schemas.VotingStatus,
    tags=["voting"],
)
def get_voting_status(
    chapter_id: str,
    viewer_id: Annotated[
        str | None, Query(description="Identity of the viewer, used for author restrictions")
    ] = None,
    db: Session = Depends(get_db),
    policy: VotingWindowPolicy = Depends(_window_policy),
):
    chapter = ChapterRepository(db).get_chapter(chapter_id)
    if chapter is None:
        raise NotFound(f"Chapter {chapter_id} not found", chapter_id=chapter_id)

    restrictions = policy.chapter_status(
        chapter_id=chapter_id,
        created_at=chapter.created_at,
        creator_id=chapter.story.creator_id if chapter.story else None,
        viewer_id=viewer_id,
    )
    status = restrictions.status
    return schemas.VotingStatus(
        chapter_id=chapter_id,
        voting_open=status.voting_open,
        closes_at=status.closes_at,
        time_remaining_seconds=int(status.time_remaining.total_seconds()),
        time_remaining=schemas.RemainingTime(**restrictions.remaining_parts()),
        can_sell_tokens=restrictions.can_sell_tokens,
        can_create_new_chapter=restrictions.can_create_new_chapter,
    )


@app.get("/chapters/{chapter_id}/winner", response_model=schemas.Winner, tags=["voting"])
def get_winner(chapter_id: str, resolver: WinnerResolver = Depends(_winner_resolver)):
    winner = resolver.get_winner(chapter_id)
    if winner is None:
        raise NotFound(f"Winner for chapter {chapter_id} not decided", chapter_id=chapter_id)
    return winner


@app.post("/chapters/{chapter_id}/finalize", response_model=schemas.Winner, tags=["voting"])
def finalize_chapter(chapter_id: str, resolver: WinnerResolver = Depends(_winner_resolver)):
    """Decide the winning option; repeated calls return the same record."""

    return resolver.finalize(chapter_id)


# ---------------------------------------------------------------------------
# Reading rewards


@app.get("/chapters/{chapter_id}/read-time", response_model=schemas.ReadTime, tags=["rewards"])
def get_read_time(
    chapter_id: str,
    db: Session = Depends(get_db),
    engine: ReadRewardEngine = Depends(_read_rewards),
):
    chapter = ChapterRepository(db).get_chapter(chapter_id)
    if chapter is None:
        raise NotFound(f"Chapter {chapter_id} not found", chapter_id=chapter_id)
    return schemas.ReadTime(
        chapter_id=chapter_id,
        required_read_time=engine.required_read_time(chapter.content),
        complexity_factor=round(engine.complexity_factor(chapter.content), 4),
    )


@app.post("/chapters/{chapter_id}/reads", response_model=schemas.ReadProgress, tags=["rewards"])
def record_read(
    chapter_id: str,
    payload: schemas.ReadObservation,
    engine: ReadRewardEngine = Depends(_read_rewards),
):
    return engine.observe(payload.reader_id, chapter_id, payload.read_time_seconds)


@app.post("/chapters/{chapter_id}/claims", response_model=schemas.ClaimToken, tags=["rewards"])
def claim_reward(
    chapter_id: str,
    payload: schemas.ClaimRequest,
    engine: ReadRewardEngine = Depends(_read_rewards),
):
    return engine.claim(payload.reader_id, chapter_id)


@app.get("/readers/{reader_id}/rewards", response_model=schemas.RewardBalance, tags=["rewards"])
def get_reward_balance(reader_id: str, engine: ReadRewardEngine = Depends(_read_rewards)):
    return schemas.RewardBalance(reader_id=reader_id, balance=engine.reward_balance(reader_id))
