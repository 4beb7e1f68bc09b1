import json

import httpx
import pytest

from app.services.solana_rpc import ChainRpcError, SolanaRpcClient

RPC_URL = "https://rpc.example.com"


def client_for(handler) -> SolanaRpcClient:
    return SolanaRpcClient(RPC_URL, transport=httpx.MockTransport(handler))


def test_get_signatures_for_address_sends_json_rpc_request():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": 1, "result": [{"signature": "abc"}, "junk"]})

    with client_for(handler) as client:
        result = client.get_signatures_for_address("  Wallet111  ", limit=25)

    assert result == [{"signature": "abc"}]
    assert seen["body"]["method"] == "getSignaturesForAddress"
    assert seen["body"]["params"] == ["Wallet111", {"limit": 25}]
    assert seen["body"]["jsonrpc"] == "2.0"


def test_get_signatures_for_address_treats_null_result_as_empty():
    with client_for(lambda request: httpx.Response(200, json={"result": None})) as client:
        assert client.get_signatures_for_address("Wallet111") == []


def test_get_transaction_requests_json_parsed_encoding():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"result": {"slot": 5}})

    with client_for(handler) as client:
        assert client.get_transaction("sig") == {"slot": 5}

    assert seen["body"]["params"] == ["sig", {"encoding": "jsonParsed", "maxSupportedTransactionVersion": 0}]


def test_get_transaction_not_indexed_returns_none():
    with client_for(lambda request: httpx.Response(200, json={"result": None})) as client:
        assert client.get_transaction("sig") is None


def test_rpc_error_field_raises():
    body = {"error": {"code": -32005, "message": "Node is behind"}}
    with client_for(lambda request: httpx.Response(200, json=body)) as client:
        with pytest.raises(ChainRpcError, match="Node is behind"):
            client.get_transaction("sig")


def test_http_error_status_raises():
    with client_for(lambda request: httpx.Response(429, text="rate limited")) as client:
        with pytest.raises(ChainRpcError, match="HTTP 429"):
            client.get_signatures_for_address("Wallet111")


def test_transport_error_raises():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectTimeout("timed out", request=request)

    with client_for(handler) as client:
        with pytest.raises(ChainRpcError, match="request failed"):
            client.get_transaction("sig")


def test_invalid_json_raises():
    with client_for(lambda request: httpx.Response(200, text="<html>")) as client:
        with pytest.raises(ChainRpcError, match="invalid JSON"):
            client.get_transaction("sig")
