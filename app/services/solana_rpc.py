import itertools
import logging
from typing import Any

import httpx

logger = logging.getLogger(__name__)


class ChainRpcError(Exception):
    """Transport or JSON-RPC level failure. Always safe to retry."""


class SolanaRpcClient:
    """Typed wrapper over the two Solana JSON-RPC methods the verifier needs."""

    def __init__(
        self,
        rpc_url: str,
        connect_timeout: float = 10,
        read_timeout: float = 30,
        transport: httpx.BaseTransport | None = None,
    ):
        self.rpc_url = rpc_url
        self._ids = itertools.count(1)
        self._client = httpx.Client(
            timeout=httpx.Timeout(read_timeout, connect=connect_timeout),
            headers={"Content-Type": "application/json"},
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()

    def _call(self, method: str, params: list[Any]) -> Any:
        body = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        try:
            response = self._client.post(self.rpc_url, json=body)
        except httpx.HTTPError as exc:
            logger.warning("Solana RPC %s transport error: %s", method, exc)
            raise ChainRpcError(f"{method} request failed: {exc}") from exc

        if response.status_code != 200:
            logger.error("Solana RPC error: %s - %s", response.status_code, response.text[:500])
            raise ChainRpcError(f"{method} returned HTTP {response.status_code}")

        try:
            payload = response.json()
        except ValueError as exc:
            raise ChainRpcError(f"{method} returned invalid JSON") from exc

        if not isinstance(payload, dict):
            raise ChainRpcError(f"{method} returned unexpected payload type")

        error = payload.get("error")
        if error:
            message = error.get("message") if isinstance(error, dict) else str(error)
            raise ChainRpcError(f"{method} failed: {message or 'Unknown error'}")

        return payload.get("result")

    def get_signatures_for_address(self, address: str, limit: int = 100) -> list[dict[str, Any]]:
        """Recent signatures touching ``address``, newest first.

        Each entry carries ``signature``, ``confirmationStatus``, ``err``,
        ``blockTime`` and ``slot``. An absent result is returned as an empty
        list: the node simply has not indexed anything yet.
        """
        result = self._call("getSignaturesForAddress", [address.strip(), {"limit": limit}])
        if not isinstance(result, list):
            return []
        return [entry for entry in result if isinstance(entry, dict)]

    def get_transaction(self, signature: str) -> dict[str, Any] | None:
        """Full parsed transaction, or None when the node cannot serve it yet."""
        result = self._call(
            "getTransaction",
            [
                signature,
                {"encoding": "jsonParsed", "maxSupportedTransactionVersion": 0},
            ],
        )
        if not isinstance(result, dict):
            return None
        return result


def get_solana_client() -> SolanaRpcClient:
    from app.config import settings

    return SolanaRpcClient(
        rpc_url=settings.SOLANA_RPC_URL,
        connect_timeout=settings.SOLANA_RPC_CONNECT_TIMEOUT_SECONDS,
        read_timeout=settings.SOLANA_RPC_READ_TIMEOUT_SECONDS,
    )
