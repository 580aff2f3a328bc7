"""Standalone job that finalizes chapters whose voting window has closed."""

from __future__ import annotations

import argparse
import json
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Iterable, Sequence

from loguru import logger
from sqlalchemy.orm import Session, sessionmaker

from app.core.config import Settings, get_settings
from app.db import SessionLocal, init_db, session_scope
from app.errors import NoVotesCast, PlotEngineError
from app.repositories import ChapterRepository
from app.services import VotingWindowPolicy, WinnerResolver


@dataclass(slots=True)
class FinalizeSummary:
    checked_chapters: int = 0
    finalized: int = 0
    already_finalized: int = 0
    no_votes: int = 0
    winners: dict[str, str] = field(default_factory=dict)
    failures: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "checked_chapters": self.checked_chapters,
            "finalized": self.finalized,
            "already_finalized": self.already_finalized,
            "no_votes": self.no_votes,
            "winners": self.winners,
            "failures": self.failures,
        }


class FinalizePipeline:
    """Sweep closed voting windows and record one winner per chapter."""

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        session_factory: sessionmaker[Session] | None = None,
        resolver: WinnerResolver | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self._session_factory = session_factory or SessionLocal
        self._window = timedelta(seconds=self.settings.voting_window_seconds)
        self._resolver = resolver or WinnerResolver(
            session_factory=self._session_factory,
            window_policy=VotingWindowPolicy(self._window),
        )

    def run(
        self,
        *,
        limit: int | None = None,
        batch_size: int | None = None,
        chapter_ids: Sequence[str] | None = None,
        now: datetime | None = None,
    ) -> FinalizeSummary:
        summary = FinalizeSummary()
        current = now or datetime.now(timezone.utc)
        batch_size = batch_size or self.settings.finalize_batch_size
        closed_before = current - self._window

        logger.info(
            "Starting finalize sweep: limit={}, batch_size={}, chapter_filter={}, closed_before={}",
            limit,
            batch_size,
            list(chapter_ids) if chapter_ids else None,
            closed_before,
        )

        with session_scope(self._session_factory) as session:
            candidates = ChapterRepository(session).list_finalization_candidates(
                closed_before=closed_before,
                chapter_ids=chapter_ids,
                limit=limit,
            )
        if not candidates:
            logger.info("No chapters awaiting finalization; sweep completed with no updates")
            return summary

        logger.info("Finalize sweep evaluating {} chapters", len(candidates))
        for chunk in _chunked(candidates, batch_size):
            for chapter_id in chunk:
                summary.checked_chapters += 1
                if self._resolver.get_winner(chapter_id) is not None:
                    summary.already_finalized += 1
                    continue
                try:
                    winner = self._resolver.finalize(chapter_id, now=current)
                except NoVotesCast:
                    logger.info("Chapter {} closed without votes", chapter_id)
                    summary.no_votes += 1
                    continue
                except PlotEngineError as exc:
                    logger.exception("Failed to finalize chapter {}", chapter_id)
                    summary.failures.append(
                        {"chapter_id": chapter_id, "code": exc.code, "reason": exc.message}
                    )
                    continue
                summary.finalized += 1
                summary.winners[chapter_id] = winner.winning_symbol

        logger.info(
            "Finalize sweep finished: checked={}, finalized={}, no_votes={}, failures={}",
            summary.checked_chapters,
            summary.finalized,
            summary.no_votes,
            len(summary.failures),
        )
        return summary


def _chunked(items: Sequence[Any], size: int) -> Iterable[Sequence[Any]]:
    if size <= 0:
        yield items
        return
    for index in range(0, len(items), size):
        yield items[index : index + size]


def _parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Finalize plot votes for chapters whose voting window has closed",
    )
    parser.add_argument(
        "--limit", type=int, default=None, help="Maximum number of chapters to finalize"
    )
    parser.add_argument(
        "--batch-size",
        type=int,
        default=None,
        help="Override the number of chapters processed per batch",
    )
    parser.add_argument(
        "--chapter-id",
        dest="chapter_ids",
        action="append",
        help="Restrict the sweep to specific chapter IDs (can be provided multiple times)",
    )
    parser.add_argument(
        "--summary-path",
        type=Path,
        default=None,
        help="Optional path where a JSON summary report will be written",
    )
    return parser.parse_args(argv)


def _write_summary(summary: FinalizeSummary, path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(summary.to_dict(), default=str, indent=2))
    logger.info("Finalize summary written to {}", path)


def main(argv: Sequence[str] | None = None) -> FinalizeSummary:
    args = _parse_args(argv)
    settings = get_settings()
    init_db()
    pipeline = FinalizePipeline(settings)
    summary = pipeline.run(
        limit=args.limit,
        batch_size=args.batch_size,
        chapter_ids=args.chapter_ids,
    )

    if args.summary_path:
        _write_summary(summary, args.summary_path)
    return summary


if __name__ == "__main__":
    main()
