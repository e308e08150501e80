import json
import time
from typing import Any, Dict, List, Optional

import requests
from requests import exceptions as requests_exceptions

from basedintern.autonomy.outcomes import RateLimitedError, parse_retry_after_ms


BALANCE_OF_SELECTOR = "0x70a08231"


class ChainRpcError(Exception):
    pass


def _hex_to_int(value: Any, method: str) -> int:
    if not isinstance(value, str) or not value.startswith("0x"):
        raise ChainRpcError(f"{method} returned a non-hex result: {value!r}")
    if value == "0x":
        return 0
    try:
        return int(value, 16)
    except ValueError as e:
        raise ChainRpcError(f"{method} returned a non-hex result: {value!r}") from e


def _encode_address(address: str) -> str:
    text = str(address or "").strip().lower()
    if text.startswith("0x"):
        text = text[2:]
    if len(text) != 40 or any(c not in "0123456789abcdef" for c in text):
        raise ValueError(f"Invalid address: {address!r}")
    return text.rjust(64, "0")


class RpcChainReader:
    """Read-only JSON-RPC client for the wallet balances and nonce the agent needs.

    Nothing here signs or submits transactions.
    """

    def __init__(self, rpc_url: str, timeout: int = 30):
        url = str(rpc_url or "").strip()
        if not url:
            raise ValueError("rpc_url must be provided.")
        self.rpc_url = url
        self.timeout = timeout
        self._next_id = 1

    def _call(self, method: str, params: List[Any]) -> Any:
        payload: Dict[str, Any] = {
            "jsonrpc": "2.0",
            "id": self._next_id,
            "method": method,
            "params": params,
        }
        self._next_id += 1
        try:
            resp = requests.post(
                self.rpc_url,
                headers={"Content-Type": "application/json"},
                data=json.dumps(payload),
                timeout=self.timeout,
            )
        except requests_exceptions.Timeout as e:
            raise ChainRpcError(f"Timed out calling {method} on the RPC endpoint.") from e

        if resp.status_code == 429:
            try:
                body = resp.json()
            except ValueError:
                body = None
            retry_after_ms = parse_retry_after_ms(resp.headers, body)
            reset_at_ms: Optional[int] = None
            if retry_after_ms is not None:
                reset_at_ms = int(time.time() * 1000) + retry_after_ms
            raise RateLimitedError(f"RPC rate limited calling {method}", reset_at_ms=reset_at_ms)

        if resp.status_code >= 400:
            raise ChainRpcError(f"RPC error {resp.status_code} calling {method}: {resp.text}")

        try:
            data = resp.json()
        except ValueError as e:
            raise ChainRpcError(f"RPC returned invalid JSON for {method}") from e
        if not isinstance(data, dict):
            raise ChainRpcError(f"RPC returned an unexpected payload for {method}")

        error = data.get("error")
        if error:
            message = error.get("message") if isinstance(error, dict) else str(error)
            raise ChainRpcError(f"RPC error calling {method}: {message}")
        return data.get("result")

    def get_transaction_count(self, address: str) -> int:
        result = self._call("eth_getTransactionCount", [address, "pending"])
        return _hex_to_int(result, "eth_getTransactionCount")

    def get_balance(self, address: str) -> int:
        result = self._call("eth_getBalance", [address, "latest"])
        return _hex_to_int(result, "eth_getBalance")

    def get_erc20_balance(self, token: str, owner: str) -> int:
        call = {"to": token, "data": BALANCE_OF_SELECTOR + _encode_address(owner)}
        result = self._call("eth_call", [call, "latest"])
        return _hex_to_int(result, "eth_call")
