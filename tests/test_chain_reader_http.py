import json
import unittest
from unittest.mock import patch

from requests import exceptions as requests_exceptions

from basedintern.autonomy.outcomes import RateLimitedError
from basedintern.chain_reader import ChainRpcError, RpcChainReader


WALLET = "0x" + "ab" * 20
TOKEN = "0x" + "cd" * 20


class _Resp:
    def __init__(self, status_code=200, payload=None, text="", headers=None):
        self.status_code = status_code
        self._payload = payload if payload is not None else {}
        self.text = text
        self.headers = headers or {}

    def json(self):
        return self._payload


class ChainReaderHttpTests(unittest.TestCase):
    @patch("basedintern.chain_reader.requests.post")
    def test_get_transaction_count_uses_pending_block(self, mock_post):
        mock_post.return_value = _Resp(payload={"jsonrpc": "2.0", "id": 1, "result": "0x1a"})
        reader = RpcChainReader("https://rpc.example")

        self.assertEqual(reader.get_transaction_count(WALLET), 26)

        body = json.loads(mock_post.call_args.kwargs["data"])
        self.assertEqual(body["method"], "eth_getTransactionCount")
        self.assertEqual(body["params"], [WALLET, "pending"])
        self.assertEqual(mock_post.call_args.args[0], "https://rpc.example")

    @patch("basedintern.chain_reader.requests.post")
    def test_get_erc20_balance_encodes_balance_of(self, mock_post):
        mock_post.return_value = _Resp(payload={"result": "0x" + "0" * 62 + "64"})
        reader = RpcChainReader("https://rpc.example")

        self.assertEqual(reader.get_erc20_balance(TOKEN, WALLET), 100)

        body = json.loads(mock_post.call_args.kwargs["data"])
        call, block = body["params"]
        self.assertEqual(block, "latest")
        self.assertEqual(call["to"], TOKEN)
        self.assertEqual(call["data"], "0x70a08231" + "0" * 24 + "ab" * 20)

    @patch("basedintern.chain_reader.requests.post")
    def test_get_balance_empty_result_is_zero(self, mock_post):
        mock_post.return_value = _Resp(payload={"result": "0x"})
        self.assertEqual(RpcChainReader("https://rpc.example").get_balance(WALLET), 0)

    @patch("basedintern.chain_reader.requests.post")
    def test_429_raises_rate_limited(self, mock_post):
        mock_post.return_value = _Resp(status_code=429, payload={"retry_after_seconds": 5})
        with patch("basedintern.chain_reader.time.time", return_value=1_000.0):
            with self.assertRaises(RateLimitedError) as ctx:
                RpcChainReader("https://rpc.example").get_balance(WALLET)
        self.assertEqual(ctx.exception.reset_at_ms, 1_005_000)

    @patch("basedintern.chain_reader.requests.post")
    def test_rpc_error_payload_raises(self, mock_post):
        mock_post.return_value = _Resp(payload={"error": {"code": -32000, "message": "header not found"}})
        with self.assertRaises(ChainRpcError) as ctx:
            RpcChainReader("https://rpc.example").get_balance(WALLET)
        self.assertIn("header not found", str(ctx.exception))

    @patch("basedintern.chain_reader.requests.post")
    def test_http_error_and_timeout_raise(self, mock_post):
        mock_post.return_value = _Resp(status_code=502, text="bad gateway")
        reader = RpcChainReader("https://rpc.example")
        with self.assertRaises(ChainRpcError):
            reader.get_balance(WALLET)

        mock_post.side_effect = requests_exceptions.Timeout("slow")
        with self.assertRaises(ChainRpcError):
            reader.get_balance(WALLET)

    def test_invalid_owner_address(self):
        with self.assertRaises(ValueError):
            RpcChainReader("https://rpc.example").get_erc20_balance(TOKEN, "0x1234")


if __name__ == "__main__":
    unittest.main()
