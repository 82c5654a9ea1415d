"""
CCTP Recovery - Chain reader with RPC failover

Reads receipts, logs, block numbers and token balances from one chain, trying
the configured primary RPC first and then public fallbacks. Each endpoint gets
its own timeout and a small retry budget; a failed endpoint is logged and the
next one is tried.
"""

import logging
import time
from decimal import Decimal

from eth_abi import decode as abi_decode, encode as abi_encode
from web3 import Web3
from web3.exceptions import TransactionNotFound

from .config import CHAINS, RECOVERY_SETTINGS, rpc_endpoints
from .errors import NetworkError
from .message import to_hex
from .retry import RetryPolicy, retry_call

logger = logging.getLogger(__name__)

BALANCE_OF_SELECTOR = bytes(Web3.keccak(text="balanceOf(address)")[:4])


def make_web3(url, timeout):
    """Default Web3 client factory: one HTTPProvider per URL with a request timeout."""
    return Web3(Web3.HTTPProvider(url, request_kwargs={"timeout": timeout}))


def event_topic(signature):
    """topic0 for an event signature such as "MessageSent(bytes)"."""
    return to_hex(Web3.keccak(text=signature))


def address_topic(address):
    """Left-pad an address to a 32-byte indexed topic."""
    return "0x" + "00" * 12 + Web3.to_checksum_address(address)[2:].lower()


def as_hex(value):
    """Normalize HexBytes/bytes/str values from RPC logs to 0x-prefixed lowercase hex."""
    if value is None:
        return None
    if isinstance(value, str):
        return value.lower() if value[:2] in ("0x", "0X") else f"0x{value.lower()}"
    return to_hex(value)


def format_amount(raw, decimals=6):
    """Raw token units to a human string, e.g. 1500000 -> "1.5"."""
    return format((Decimal(raw) / Decimal(10 ** decimals)).normalize(), "f")


def _short_url(url):
    return url if len(url) <= 50 else url[:50] + "..."


class ChainReader:
    """
    Read-only access to one chain through an ordered list of RPC endpoints.

    ``last_endpoint`` holds the URL that served the most recent successful call.
    """

    def __init__(self, chain_key, endpoints=None, timeout=None, log_timeout=None,
                 retries=None, retry_delay=None, web3_factory=make_web3, sleep=time.sleep):
        self.chain_key = chain_key
        self.cfg = CHAINS[chain_key]
        self.endpoints = list(endpoints) if endpoints else rpc_endpoints(chain_key)
        self.timeout = timeout if timeout is not None else RECOVERY_SETTINGS["rpc_timeout"]
        self.log_timeout = log_timeout if log_timeout is not None else RECOVERY_SETTINGS["log_scan_timeout"]
        retries = retries if retries is not None else RECOVERY_SETTINGS["rpc_retries"]
        retry_delay = retry_delay if retry_delay is not None else RECOVERY_SETTINGS["rpc_retry_delay"]
        self.policy = RetryPolicy(attempts=1 + retries, delay=retry_delay)
        self.web3_factory = web3_factory
        self.sleep = sleep
        self.last_endpoint = None
        self._clients = {}

    def __repr__(self):
        return f"ChainReader({self.chain_key!r}, endpoints={len(self.endpoints)})"

    def _client(self, url, timeout):
        key = (url, timeout)
        if key not in self._clients:
            self._clients[key] = self.web3_factory(url, timeout)
        return self._clients[key]

    def call(self, label, fn, timeout=None, passthrough=()):
        """
        Run fn(w3) against each endpoint in order until one succeeds.

        Exceptions listed in ``passthrough`` are answers rather than faults
        (e.g. TransactionNotFound): they are not retried on the same endpoint,
        and if every endpoint answered that way the last one is re-raised.
        Anything else exhausting all endpoints raises NetworkError.
        """
        timeout = timeout or self.timeout
        last_error = None
        faults = 0
        for i, url in enumerate(self.endpoints, 1):
            w3 = self._client(url, timeout)
            try:
                result = retry_call(
                    lambda: fn(w3), self.policy,
                    give_up_on=passthrough,
                    sleep=self.sleep, label=label,
                )
            except passthrough as e:
                last_error = e
                logger.info("[%s] %s: %s answered %s", self.chain_key, label, _short_url(url), type(e).__name__)
                continue
            except Exception as e:
                faults += 1
                last_error = e
                logger.warning("[%s] %s failed on RPC %d/%d (%s): %s",
                               self.chain_key, label, i, len(self.endpoints), _short_url(url), str(e)[:200])
                continue
            if i > 1:
                logger.info("[%s] %s succeeded on fallback RPC %s", self.chain_key, label, _short_url(url))
            self.last_endpoint = url
            return result

        if passthrough and faults == 0 and last_error is not None:
            raise last_error
        logger.error("[%s] %s: all %d RPC endpoints failed", self.chain_key, label, len(self.endpoints))
        raise NetworkError(
            f"{label} failed on all {len(self.endpoints)} RPC endpoints for {self.cfg['name']}: {last_error}",
            endpoints=self.endpoints, last_error=last_error,
        )

    # ------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------

    def get_receipt(self, tx_hash):
        """Transaction receipt, or None if no endpoint knows the transaction."""
        try:
            return self.call(
                "eth_getTransactionReceipt",
                lambda w3: w3.eth.get_transaction_receipt(tx_hash),
                passthrough=(TransactionNotFound,),
            )
        except TransactionNotFound:
            return None

    def get_logs(self, address, event_signature, from_block, to_block, topics=None):
        """
        Logs emitted by ``address`` for ``event_signature`` in [from_block, to_block].

        ``topics`` filters indexed arguments after topic0 (None = any).
        """
        params = {
            "address": Web3.to_checksum_address(address),
            "fromBlock": from_block,
            "toBlock": to_block,
            "topics": [event_topic(event_signature), *(topics or [])],
        }
        return self.call("eth_getLogs", lambda w3: list(w3.eth.get_logs(params)), timeout=self.log_timeout)

    def block_number(self):
        return self.call("eth_blockNumber", lambda w3: w3.eth.block_number)

    def token_balance(self, owner, token=None):
        """
        ERC-20 balance of ``owner`` (USDC by default).

        Never raises on network failure: returns available=False and a zero
        balance so a periodic job can skip a cycle instead of crashing.
        """
        token = Web3.to_checksum_address(token or self.cfg["usdc_address"])
        data = BALANCE_OF_SELECTOR + abi_encode(["address"], [Web3.to_checksum_address(owner)])

        def _read(w3):
            raw = w3.eth.call({"to": token, "data": to_hex(data)})
            return abi_decode(["uint256"], bytes(raw))[0]

        try:
            balance = self.call("balanceOf", _read)
        except NetworkError as e:
            logger.error("[%s] Balance unavailable for %s, treating as zero: %s", self.chain_key, owner, e)
            return {
                "balance": 0,
                "balance_formatted": "0",
                "available": False,
                "endpoint": None,
                "error": str(e),
            }
        decimals = self.cfg.get("usdc_decimals", 6)
        return {
            "balance": balance,
            "balance_formatted": format_amount(balance, decimals),
            "available": True,
            "endpoint": self.last_endpoint,
            "error": None,
        }

