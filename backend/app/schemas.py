from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field, field_validator


class PlotOptionTally(BaseModel):
    position: int
    symbol: str
    name: str
    metadata_uri: str
    token_address: str | None = None
    total_votes: int
    volume_eth: float
    sold_volume: float
    voter_count: int = 0
    vote_share: float = Field(0.0, description="Percentage of all votes cast in this chapter")

    @field_validator("volume_eth", "sold_volume", mode="before")
    @classmethod
    def _coerce_decimal(cls, value: Any) -> float:
        if value is None:
            return 0.0
        return float(value)


class VoteTally(BaseModel):
    chapter_id: str
    status: str
    total_votes: int
    options: list[PlotOptionTally] = Field(default_factory=list)


class RemainingTime(BaseModel):
    hours: int
    minutes: int
    seconds: int


class VotingStatus(BaseModel):
    chapter_id: str
    voting_open: bool
    closes_at: datetime
    time_remaining_seconds: int
    time_remaining: RemainingTime
    can_sell_tokens: bool
    can_create_new_chapter: bool


class Winner(BaseModel):
    chapter_id: str
    winning_symbol: str
    token_address: str
    total_votes: int
    decided_at: datetime

    model_config = {"from_attributes": True}


class ReadTime(BaseModel):
    chapter_id: str
    required_read_time: int
    complexity_factor: float


class ReadObservation(BaseModel):
    reader_id: str = Field(..., min_length=1)
    read_time_seconds: int = Field(..., ge=0)


class ReadProgress(BaseModel):
    reader_id: str
    story_id: str
    chapter_id: str
    read_time: int
    required_read_time: int | None = None
    reward_amount: int
    claimed: bool

    model_config = {"from_attributes": True}


class ClaimRequest(BaseModel):
    reader_id: str = Field(..., min_length=1)


class ClaimToken(BaseModel):
    reader_id: str
    chapter_id: str
    signature: str
    reward_amount: int
    expiry: int

    model_config = {"from_attributes": True}


class RewardBalance(BaseModel):
    reader_id: str
    balance: int


class ErrorResponse(BaseModel):
    detail: str
    code: str

    model_config = {"extra": "allow"}
