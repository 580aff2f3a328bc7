from functools import lru_cache
from typing import Any

from pydantic import AnyUrl, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


_ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"
_ENVIRONMENTS = ("development", "staging", "production")


def _is_hex_address(value: str) -> bool:
    if not value.startswith("0x") or len(value) != 42:
        return False
    try:
        int(value[2:], 16)
    except ValueError:
        return False
    return True


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    debug: bool = Field(False, description="Enable FastAPI debug mode")
    environment: str = Field(
        default="development",
        description="Runtime environment (development|staging|production)",
    )
    database_url: AnyUrl | str = Field(
        default="sqlite:///./data/plotvote.db",
        description="SQLAlchemy compatible database URL for the off-chain vote ledger",
    )
    ledger_rpc_url: AnyUrl | str = Field(
        default="https://sepolia.base.org",
        description="JSON-RPC endpoint of the ledger network node / signing wallet",
    )
    trade_api_url: AnyUrl | str = Field(
        default="https://api-sdk.zora.engineering",
        description="Base URL of the coin trading API used for quotes and calldata",
    )
    trade_api_key: str | None = Field(
        default=None,
        description="API key sent to the coin trading API",
    )
    chain_id: int = Field(
        default=84532,
        description="Chain id every signer and the RPC node must agree on",
        ge=1,
    )
    platform_referrer: str = Field(
        default=_ZERO_ADDRESS,
        description="Referrer address attached to token creation and trades",
    )
    voting_window_hours: float = Field(
        default=24.0,
        description="Length of the voting window after chapter creation",
        gt=0,
    )
    confirmation_timeout_seconds: float = Field(
        default=120.0,
        description="Maximum time to wait for a transaction receipt",
        gt=0,
    )
    receipt_poll_interval_seconds: float = Field(
        default=2.0,
        description="Delay between receipt polls",
        gt=0,
    )
    default_slippage_bps: int = Field(
        default=100,
        description="Default tolerated slippage in basis points below the quoted output",
        ge=0,
        le=10_000,
    )
    trade_deadline_minutes: int = Field(
        default=20,
        description="Deadline applied to trade transactions",
        ge=1,
    )
    read_words_per_minute: int = Field(
        default=200, description="Assumed reading speed", ge=1
    )
    read_comprehension_buffer: float = Field(
        default=1.15,
        description="Multiplier applied to the raw reading time",
        ge=1.0,
    )
    read_min_seconds: int = Field(
        default=10, description="Minimum required read time in seconds", ge=0
    )
    read_reward_amount: int = Field(
        default=5, description="PLOT tokens granted per claimed chapter", ge=0
    )
    reward_claim_ttl_seconds: int = Field(
        default=3600,
        description="Validity of an issued reward claim signature",
        ge=1,
    )
    reward_signer_private_key: str | None = Field(
        default=None,
        description="Hex encoded 32-byte Ed25519 seed used to sign reward claims",
    )
    finalize_batch_size: int = Field(
        default=50,
        description="Number of chapters finalized per sweep batch",
        ge=1,
    )

    @field_validator("environment", mode="before")
    @classmethod
    def _validate_environment(cls, value: Any) -> str:
        candidate = str(value or "development").strip().lower()
        if candidate not in _ENVIRONMENTS:
            allowed = ", ".join(_ENVIRONMENTS)
            raise ValueError(f"ENVIRONMENT must be one of {allowed}")
        return candidate

    @field_validator("platform_referrer")
    @classmethod
    def _validate_referrer(cls, value: str) -> str:
        candidate = value.strip()
        if not candidate:
            return _ZERO_ADDRESS
        if not _is_hex_address(candidate):
            raise ValueError("PLATFORM_REFERRER must be a 0x-prefixed 20-byte hex address")
        return candidate

    @field_validator("reward_signer_private_key", mode="before")
    @classmethod
    def _normalize_signer_key(cls, value: Any) -> str | None:
        if value in (None, ""):
            return None
        if not isinstance(value, str):
            raise ValueError("REWARD_SIGNER_PRIVATE_KEY must be a hex string")
        candidate = value.strip()
        if candidate.startswith("0x"):
            candidate = candidate[2:]
        try:
            raw = bytes.fromhex(candidate)
        except ValueError as exc:
            raise ValueError("REWARD_SIGNER_PRIVATE_KEY must be hex encoded") from exc
        if len(raw) != 32:
            raise ValueError("REWARD_SIGNER_PRIVATE_KEY must encode a 32-byte seed")
        return candidate

    @field_validator("database_url", mode="before")
    @classmethod
    def _normalize_postgres_url(cls, value: Any) -> Any:
        if not isinstance(value, str):
            return value
        if value.startswith("postgres://"):
            return "postgresql+psycopg://" + value[len("postgres://") :]
        if value.startswith("postgresql://"):
            return "postgresql+psycopg://" + value[len("postgresql://") :]
        return value

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def voting_window_seconds(self) -> float:
        return self.voting_window_hours * 3600.0

    @property
    def resolved_database_url(self) -> str:
        return str(self.database_url)


@lru_cache
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
