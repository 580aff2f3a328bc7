from __future__ import annotations

import itertools
import time
from decimal import Decimal
from typing import Any, Callable

import httpx
from loguru import logger

from app.core.config import settings
from app.domain import (
    CoinCreation,
    CoinPoolState,
    SignerContext,
    TradeQuote,
    TransactionCall,
    TxReceipt,
)
from app.errors import (
    ConfirmationTimeout,
    LedgerRPCError,
    WalletNotConnected,
    WrongNetwork,
)


WEI_PER_ETH = 10**18

# ERC-20 selectors: balanceOf(address), totalSupply()
ERC20_BALANCE_OF = "0x70a08231"
ERC20_TOTAL_SUPPLY = "0x18160ddd"

# JSON-RPC error code used by nodes for reverted execution
RPC_EXECUTION_REVERTED = 3


def to_wei(amount: Decimal | int | str) -> int:
    return int(Decimal(str(amount)) * WEI_PER_ETH)


def from_wei(amount: int) -> Decimal:
    return Decimal(amount) / WEI_PER_ETH


def _encode_address(address: str) -> str:
    return address.lower().removeprefix("0x").rjust(64, "0")


def _parse_quantity(value: Any) -> int | None:
    if value is None:
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        candidate = value.strip()
        if not candidate or candidate == "0x":
            return 0
        return int(candidate, 16) if candidate.startswith("0x") else int(candidate)
    return int(value)


def is_revert(error: LedgerRPCError) -> bool:
    return error.rpc_code == RPC_EXECUTION_REVERTED or "revert" in error.message.lower()


class LedgerClient:
    """Thin adapter over the ledger network's JSON-RPC and the coin trading API.

    Reads go straight to the node. Writes are prepared by the trading API as
    unsigned calls and submitted with ``eth_sendTransaction`` on behalf of the
    explicit ``SignerContext``; the wallet behind the RPC endpoint signs.
    """

    def __init__(
        self,
        *,
        rpc_url: str | None = None,
        trade_api_url: str | None = None,
        api_key: str | None = None,
        chain_id: int | None = None,
        platform_referrer: str | None = None,
        timeout: float = 10.0,
        confirmation_timeout: float | None = None,
        poll_interval: float | None = None,
        deadline_minutes: int | None = None,
        transport: httpx.BaseTransport | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.rpc_url = str(rpc_url or settings.ledger_rpc_url)
        self.trade_api_url = str(trade_api_url or settings.trade_api_url)
        self.chain_id = chain_id or settings.chain_id
        self.platform_referrer = platform_referrer or settings.platform_referrer
        self.confirmation_timeout = (
            confirmation_timeout
            if confirmation_timeout is not None
            else settings.confirmation_timeout_seconds
        )
        self.poll_interval = (
            poll_interval if poll_interval is not None else settings.receipt_poll_interval_seconds
        )
        self.deadline_minutes = deadline_minutes or settings.trade_deadline_minutes
        self.timeout = timeout
        self._sleep = sleep
        self._clock = clock
        self._request_ids = itertools.count(1)

        headers: dict[str, str] = {}
        key = api_key if api_key is not None else settings.trade_api_key
        if key:
            headers["api-key"] = key
        self.rpc_client = httpx.Client(timeout=timeout, transport=transport)
        self.trade_client = httpx.Client(
            base_url=self.trade_api_url, timeout=timeout, headers=headers, transport=transport
        )

    # ------------------------------------------------------------------
    # JSON-RPC plumbing

    def _rpc(self, method: str, params: list[Any]) -> Any:
        request_id = next(self._request_ids)
        body = {"jsonrpc": "2.0", "id": request_id, "method": method, "params": params}
        logger.debug("Ledger RPC {} id={}", method, request_id)
        response = self.rpc_client.post(self.rpc_url, json=body)
        response.raise_for_status()
        payload = response.json()
        error = payload.get("error") if isinstance(payload, dict) else None
        if error:
            raise LedgerRPCError(
                str(error.get("message") or f"{method} failed"),
                rpc_code=error.get("code"),
                data=error.get("data"),
            )
        return payload.get("result") if isinstance(payload, dict) else None

    def _trade_api(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        logger.info("Trade API {} {}", method, path)
        response = self.trade_client.request(method, path, **kwargs)
        response.raise_for_status()
        payload = response.json()
        if not isinstance(payload, dict):
            raise LedgerRPCError(f"Unexpected trade API payload from {path}")
        return payload

    # ------------------------------------------------------------------
    # Network / wallet checks

    def get_chain_id(self) -> int:
        return int(_parse_quantity(self._rpc("eth_chainId", [])) or 0)

    def ensure_network(self, signer: SignerContext) -> None:
        if not signer.is_connected:
            raise WalletNotConnected("Wallet not connected or missing address")

        expected = self.chain_id
        if signer.chain_id is not None and signer.chain_id != expected:
            raise WrongNetwork(
                f"Signer is on chain {signer.chain_id}, expected {expected}",
                expected=expected,
                actual=signer.chain_id,
            )
        actual = self.get_chain_id()
        if actual != expected:
            raise WrongNetwork(
                f"Ledger node reports chain {actual}, expected {expected}",
                expected=expected,
                actual=actual,
            )

    # ------------------------------------------------------------------
    # Contract reads

    def balance_of(self, token_address: str, account: str) -> int:
        data = ERC20_BALANCE_OF + _encode_address(account)
        result = self._rpc("eth_call", [{"to": token_address, "data": data}, "latest"])
        return int(_parse_quantity(result) or 0)

    def total_supply(self, token_address: str) -> int:
        result = self._rpc(
            "eth_call", [{"to": token_address, "data": ERC20_TOTAL_SUPPLY}, "latest"]
        )
        return int(_parse_quantity(result) or 0)

    def get_coin_state(self, token_address: str) -> CoinPoolState:
        payload = self._trade_api(
            "GET", f"/coins/{token_address}", params={"chainId": self.chain_id}
        )
        coin = payload.get("coin") if isinstance(payload.get("coin"), dict) else payload
        liquidity = _parse_quantity(coin.get("liquidity"))
        has_liquidity = coin.get("hasLiquidity")
        if has_liquidity is None:
            has_liquidity = bool(liquidity)
        return CoinPoolState(
            address=str(coin.get("address") or token_address),
            pool_initialized=bool(coin.get("poolInitialized", False)),
            has_liquidity=bool(has_liquidity),
            total_supply=_parse_quantity(coin.get("totalSupply")),
            unique_holders=_parse_quantity(coin.get("uniqueHolders")),
        )

    def is_tradeable(self, token_address: str) -> bool:
        return self.get_coin_state(token_address).tradeable

    # ------------------------------------------------------------------
    # Write preparation

    def quote_trade(
        self,
        *,
        direction: str,
        token_address: str,
        amount_in: int,
        recipient: str,
        min_amount_out: int | None,
        slippage_bps: int,
    ) -> TradeQuote:
        body: dict[str, Any] = {
            "type": direction,
            "chainId": self.chain_id,
            "coin": token_address,
            "amountIn": str(amount_in),
            "recipient": recipient,
            "referrer": self.platform_referrer,
            "slippageBps": slippage_bps,
            "deadline": int(time.time()) + self.deadline_minutes * 60,
        }
        if min_amount_out is not None:
            body["minAmountOut"] = str(min_amount_out)
        payload = self._trade_api("POST", "/quote", json=body)
        amount_out = int(_parse_quantity(payload.get("amountOut")) or 0)
        quoted_min = _parse_quantity(payload.get("minAmountOut"))
        return TradeQuote(
            call=self._parse_call(payload),
            amount_in=int(_parse_quantity(payload.get("amountIn")) or amount_in),
            amount_out=amount_out,
            min_amount_out=quoted_min if quoted_min is not None else (min_amount_out or 0),
        )

    def prepare_coin_creation(
        self,
        *,
        name: str,
        symbol: str,
        metadata_uri: str,
        payout_recipient: str,
    ) -> CoinCreation:
        body = {
            "name": name,
            "symbol": symbol,
            "uri": metadata_uri,
            "payoutRecipient": payout_recipient,
            "platformReferrer": self.platform_referrer,
            "chainId": self.chain_id,
            "currency": "ETH",
        }
        payload = self._trade_api("POST", "/coins", json=body)
        predicted = payload.get("predictedAddress") or payload.get("address")
        return CoinCreation(call=self._parse_call(payload), predicted_address=predicted)

    @staticmethod
    def _parse_call(payload: dict[str, Any]) -> TransactionCall:
        call = payload.get("call")
        if not isinstance(call, dict):
            raise LedgerRPCError("Trade API response is missing call data")
        target = call.get("target") or call.get("to")
        data = call.get("data")
        if not target or not data:
            raise LedgerRPCError("Trade API call is missing target or data")
        return TransactionCall(
            to=str(target),
            data=str(data),
            value=int(_parse_quantity(call.get("value")) or 0),
        )

    # ------------------------------------------------------------------
    # Writes

    @staticmethod
    def _tx_object(call: TransactionCall, signer: SignerContext) -> dict[str, Any]:
        return {
            "from": signer.address,
            "to": call.to,
            "data": call.data,
            "value": hex(call.value),
        }

    def simulate(self, call: TransactionCall, signer: SignerContext) -> str:
        """Dry-run ``call`` as ``signer``; reverts raise ``LedgerRPCError``."""

        result = self._rpc("eth_call", [self._tx_object(call, signer), "latest"])
        return str(result or "0x")

    def send_transaction(self, call: TransactionCall, signer: SignerContext) -> str:
        if not signer.is_connected:
            raise WalletNotConnected("Wallet not connected or missing address")
        tx_hash = self._rpc("eth_sendTransaction", [self._tx_object(call, signer)])
        if not isinstance(tx_hash, str) or not tx_hash:
            raise LedgerRPCError("eth_sendTransaction returned no transaction hash")
        logger.info("Submitted transaction {} from {} to {}", tx_hash, signer.address, call.to)
        return tx_hash

    def get_receipt(self, tx_hash: str) -> TxReceipt | None:
        payload = self._rpc("eth_getTransactionReceipt", [tx_hash])
        if not payload:
            return None
        return TxReceipt(
            tx_hash=str(payload.get("transactionHash") or tx_hash),
            status=_parse_quantity(payload.get("status")) == 1,
            block_number=_parse_quantity(payload.get("blockNumber")),
            contract_address=payload.get("contractAddress"),
            gas_used=_parse_quantity(payload.get("gasUsed")),
            logs=list(payload.get("logs") or []),
        )

    def wait_for_receipt(self, tx_hash: str, *, timeout: float | None = None) -> TxReceipt:
        """Poll until the receipt appears; never resubmits."""

        limit = self.confirmation_timeout if timeout is None else timeout
        deadline = self._clock() + limit
        last_error: httpx.HTTPError | None = None
        while True:
            try:
                receipt = self.get_receipt(tx_hash)
            except httpx.HTTPError as exc:
                # Outcome stays unknown; keep polling until the deadline.
                logger.warning("Receipt poll for {} failed: {}", tx_hash, exc)
                last_error = exc
                receipt = None
            if receipt is not None:
                logger.info(
                    "Transaction {} confirmed in block {} (status={})",
                    tx_hash,
                    receipt.block_number,
                    receipt.status,
                )
                return receipt
            if self._clock() >= deadline:
                raise ConfirmationTimeout(
                    f"No receipt for {tx_hash} after {limit:.0f}s; outcome unknown",
                    tx_hash=tx_hash,
                ) from last_error
            self._sleep(self.poll_interval)

    def close(self) -> None:
        self.rpc_client.close()
        self.trade_client.close()

    def __enter__(self) -> "LedgerClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
