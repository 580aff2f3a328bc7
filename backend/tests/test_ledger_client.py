from __future__ import annotations

import json
from decimal import Decimal

import httpx
import pytest

from app.domain import SignerContext, TransactionCall
from app.errors import ConfirmationTimeout, LedgerRPCError, WalletNotConnected, WrongNetwork
from ledger import LedgerClient, from_wei, is_revert, to_wei

RPC_URL = "https://rpc.test"
TRADE_URL = "https://trade.test"
WALLET = SignerContext(address="0x00000000000000000000000000000000000000b1", chain_id=84532)


class RPCStub:
    """Routes JSON-RPC methods and trade API paths to canned responses."""

    def __init__(self) -> None:
        self.results: dict[str, object] = {"eth_chainId": hex(84532)}
        self.errors: dict[str, dict] = {}
        self.receipts: list[object] = []
        self.receipt_failures = 0
        self.requests: list[httpx.Request] = []
        self.trade_responses: dict[tuple[str, str], dict] = {}

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.host == "rpc.test":
            body = json.loads(request.content)
            method = body["method"]
            if method in self.errors:
                return httpx.Response(
                    200, json={"jsonrpc": "2.0", "id": body["id"], "error": self.errors[method]}
                )
            if method == "eth_getTransactionReceipt" and self.receipt_failures:
                self.receipt_failures -= 1
                return httpx.Response(503, json={"error": "node unavailable"})
            if method == "eth_getTransactionReceipt":
                result = self.receipts.pop(0) if self.receipts else None
            else:
                result = self.results.get(method)
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "result": result})

        key = (request.method, request.url.path)
        if key not in self.trade_responses:
            return httpx.Response(404, json={"error": "not found"})
        return httpx.Response(200, json=self.trade_responses[key])

    def rpc_bodies(self) -> list[dict]:
        return [json.loads(req.content) for req in self.requests if req.url.host == "rpc.test"]


@pytest.fixture
def stub() -> RPCStub:
    return RPCStub()


@pytest.fixture
def clock():
    state = {"now": 0.0}

    def now() -> float:
        return state["now"]

    def sleep(seconds: float) -> None:
        state["now"] += seconds

    return now, sleep


@pytest.fixture
def client(stub, clock) -> LedgerClient:
    now, sleep = clock
    ledger = LedgerClient(
        rpc_url=RPC_URL,
        trade_api_url=TRADE_URL,
        api_key="secret",
        chain_id=84532,
        confirmation_timeout=10,
        poll_interval=2,
        transport=httpx.MockTransport(stub),
        sleep=sleep,
        clock=now,
    )
    yield ledger
    ledger.close()


def test_wei_conversions():
    assert to_wei("0.5") == 5 * 10**17
    assert from_wei(25 * 10**16) == Decimal("0.25")


def test_ensure_network_accepts_matching_chain(client, stub):
    client.ensure_network(WALLET)

    assert stub.rpc_bodies()[0]["method"] == "eth_chainId"


def test_ensure_network_rejects_missing_wallet(client, stub):
    with pytest.raises(WalletNotConnected):
        client.ensure_network(SignerContext(address=None))

    assert stub.requests == []


def test_ensure_network_rejects_signer_on_other_chain(client):
    with pytest.raises(WrongNetwork) as excinfo:
        client.ensure_network(SignerContext(address=WALLET.address, chain_id=1))

    assert excinfo.value.expected == 84532
    assert excinfo.value.actual == 1


def test_ensure_network_rejects_node_on_other_chain(client, stub):
    stub.results["eth_chainId"] = "0x1"

    with pytest.raises(WrongNetwork):
        client.ensure_network(WALLET)


def test_balance_of_encodes_erc20_call(client, stub):
    stub.results["eth_call"] = hex(1234)

    balance = client.balance_of("0xtoken", WALLET.address)

    assert balance == 1234
    call = stub.rpc_bodies()[0]["params"][0]
    assert call["to"] == "0xtoken"
    assert call["data"] == "0x70a08231" + WALLET.address[2:].rjust(64, "0")


def test_total_supply(client, stub):
    stub.results["eth_call"] = hex(10**21)

    assert client.total_supply("0xtoken") == 10**21
    assert stub.rpc_bodies()[0]["params"][0]["data"] == "0x18160ddd"


def test_rpc_error_is_raised_with_code(client, stub):
    stub.errors["eth_call"] = {"code": 3, "message": "execution reverted", "data": "0x08c379a0"}

    with pytest.raises(LedgerRPCError) as excinfo:
        client.simulate(TransactionCall(to="0xrouter", data="0x", value=1), WALLET)

    assert excinfo.value.rpc_code == 3
    assert excinfo.value.data == "0x08c379a0"
    assert is_revert(excinfo.value)


def test_send_transaction_returns_hash(client, stub):
    stub.results["eth_sendTransaction"] = "0xabc"

    tx_hash = client.send_transaction(TransactionCall(to="0xrouter", data="0x01", value=16), WALLET)

    assert tx_hash == "0xabc"
    params = stub.rpc_bodies()[0]["params"][0]
    assert params == {"from": WALLET.address, "to": "0xrouter", "data": "0x01", "value": "0x10"}


def test_wait_for_receipt_polls_until_mined(client, stub):
    stub.receipts = [
        None,
        None,
        {
            "transactionHash": "0xabc",
            "status": "0x1",
            "blockNumber": "0x10",
            "contractAddress": None,
            "gasUsed": "0x5208",
            "logs": [],
        },
    ]

    receipt = client.wait_for_receipt("0xabc")

    assert receipt.status is True
    assert receipt.block_number == 16
    assert receipt.gas_used == 21000
    assert len(stub.rpc_bodies()) == 3


def test_wait_for_receipt_times_out_without_resubmitting(client, stub):
    with pytest.raises(ConfirmationTimeout) as excinfo:
        client.wait_for_receipt("0xabc")

    assert excinfo.value.tx_hash == "0xabc"
    methods = {body["method"] for body in stub.rpc_bodies()}
    assert methods == {"eth_getTransactionReceipt"}


def test_wait_for_receipt_keeps_polling_through_node_errors(client, stub):
    stub.receipt_failures = 2
    stub.receipts = [
        {"transactionHash": "0xabc", "status": "0x1", "blockNumber": "0x11", "logs": []},
    ]

    receipt = client.wait_for_receipt("0xabc")

    assert receipt.block_number == 17
    assert len(stub.rpc_bodies()) == 3


def test_wait_for_receipt_times_out_when_node_keeps_failing(client, stub):
    stub.receipt_failures = 100

    with pytest.raises(ConfirmationTimeout) as excinfo:
        client.wait_for_receipt("0xabc")

    assert excinfo.value.tx_hash == "0xabc"
    assert isinstance(excinfo.value.__cause__, httpx.HTTPStatusError)


def test_quote_trade_parses_call_and_output(client, stub):
    stub.trade_responses[("POST", "/quote")] = {
        "call": {"target": "0xrouter", "data": "0xswap", "value": "500"},
        "amountIn": "500",
        "amountOut": "990",
        "minAmountOut": "980",
    }

    quote = client.quote_trade(
        direction="buy",
        token_address="0xtoken",
        amount_in=500,
        recipient=WALLET.address,
        min_amount_out=None,
        slippage_bps=100,
    )

    assert quote.call == TransactionCall(to="0xrouter", data="0xswap", value=500)
    assert quote.amount_out == 990
    assert quote.min_amount_out == 980
    request = stub.requests[-1]
    assert request.headers["api-key"] == "secret"
    sent = json.loads(request.content)
    assert sent["type"] == "buy"
    assert sent["slippageBps"] == 100
    assert "minAmountOut" not in sent


def test_prepare_coin_creation(client, stub):
    stub.trade_responses[("POST", "/coins")] = {
        "call": {"to": "0xfactory", "data": "0xdeploy"},
        "predictedAddress": "0xcoin",
    }

    creation = client.prepare_coin_creation(
        name="Take the left path",
        symbol="LEFT",
        metadata_uri="ipfs://left",
        payout_recipient=WALLET.address,
    )

    assert creation.call.to == "0xfactory"
    assert creation.call.value == 0
    assert creation.predicted_address == "0xcoin"


def test_trade_api_missing_call_is_an_error(client, stub):
    stub.trade_responses[("POST", "/coins")] = {"predictedAddress": "0xcoin"}

    with pytest.raises(LedgerRPCError):
        client.prepare_coin_creation(
            name="n", symbol="S", metadata_uri="ipfs://s", payout_recipient=WALLET.address
        )


def test_coin_state_reports_tradeability(client, stub):
    stub.trade_responses[("GET", "/coins/0xcoin")] = {
        "coin": {
            "address": "0xcoin",
            "poolInitialized": True,
            "liquidity": "1000",
            "totalSupply": "1000000",
            "uniqueHolders": 4,
        }
    }

    state = client.get_coin_state("0xcoin")

    assert state.tradeable is True
    assert state.total_supply == 1_000_000
    assert state.unique_holders == 4
