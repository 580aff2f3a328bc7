"""Ed25519 signatures over reward claim tokens."""

from __future__ import annotations

import json
from typing import Any

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)
from loguru import logger

from app.core.config import get_settings


def canonical_claim_message(
    *, reader_id: str, chapter_id: str, reward_amount: int, expiry: int
) -> bytes:
    obj: dict[str, Any] = {
        "chapter_id": str(chapter_id),
        "expiry": int(expiry),
        "reader_id": str(reader_id),
        "reward_amount": int(reward_amount),
    }
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode(
        "utf-8"
    )


class ClaimSigner:
    """Sign claim tokens that the disbursement process later verifies."""

    def __init__(self, private_key_hex: str | None = None) -> None:
        seed = private_key_hex
        settings = get_settings()
        if seed is None:
            seed = settings.reward_signer_private_key
        if seed:
            self._key = Ed25519PrivateKey.from_private_bytes(bytes.fromhex(seed))
        elif settings.is_production:
            raise ValueError("REWARD_SIGNER_PRIVATE_KEY must be set when ENVIRONMENT=production")
        else:
            logger.warning(
                "REWARD_SIGNER_PRIVATE_KEY not configured; using an ephemeral signing key"
            )
            self._key = Ed25519PrivateKey.generate()
        self._public_key = self._key.public_key()

    @property
    def public_key_hex(self) -> str:
        raw = self._public_key.public_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PublicFormat.Raw,
        )
        return raw.hex()

    def sign(self, *, reader_id: str, chapter_id: str, reward_amount: int, expiry: int) -> str:
        message = canonical_claim_message(
            reader_id=reader_id,
            chapter_id=chapter_id,
            reward_amount=reward_amount,
            expiry=expiry,
        )
        return self._key.sign(message).hex()

    def verify(
        self,
        signature: str,
        *,
        reader_id: str,
        chapter_id: str,
        reward_amount: int,
        expiry: int,
        public_key_hex: str | None = None,
    ) -> bool:
        message = canonical_claim_message(
            reader_id=reader_id,
            chapter_id=chapter_id,
            reward_amount=reward_amount,
            expiry=expiry,
        )
        try:
            key = (
                Ed25519PublicKey.from_public_bytes(bytes.fromhex(public_key_hex))
                if public_key_hex
                else self._public_key
            )
            key.verify(bytes.fromhex(signature), message)
        except (InvalidSignature, ValueError):
            return False
        return True


__all__ = ["ClaimSigner", "canonical_claim_message"]
