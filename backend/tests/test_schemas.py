from __future__ import annotations

from decimal import Decimal

import pytest
from pydantic import ValidationError

from app.schemas import ErrorResponse, PlotOptionTally, ReadObservation


def test_plot_option_tally_coerces_decimal_fields():
    """Verify that Decimal volumes are correctly coerced to floats."""
    tally = PlotOptionTally(
        position=0,
        symbol="LEFT",
        name="Take the left path",
        metadata_uri="ipfs://LEFT",
        total_votes=2,
        volume_eth=Decimal("0.750000000000000000"),
        sold_volume=None,
    )
    assert isinstance(tally.volume_eth, float)
    assert tally.volume_eth == 0.75
    assert tally.sold_volume == 0.0
    assert tally.vote_share == 0.0


def test_read_observation_rejects_negative_time():
    """Verify that negative read times fail validation."""
    with pytest.raises(ValidationError):
        ReadObservation(reader_id="reader-1", read_time_seconds=-1)


def test_read_observation_requires_reader():
    with pytest.raises(ValidationError):
        ReadObservation(reader_id="", read_time_seconds=10)


def test_error_response_keeps_context_fields():
    body = ErrorResponse(detail="nope", code="not_found", chapter_id="chapter-1")
    assert body.model_dump() == {"detail": "nope", "code": "not_found", "chapter_id": "chapter-1"}
