"""
CCTP Recovery - Mint completion on the destination chain

Calls MessageTransmitterV2.receiveMessage(message, attestation) with EIP-1559
fees where supported and waits a bounded time for the receipt.
"""

import logging

from eth_account import Account
from web3 import Web3
from web3.exceptions import TimeExhausted, Web3Exception

from .config import CHAINS, MESSAGE_TRANSMITTER_V2_ABI, RECOVERY_SETTINGS, rpc_endpoints
from .errors import DecodeError, MintTransactionFailed, NetworkError
from .message import decode_message, has_nonce, to_bytes, to_hex
from .models import MintResult
from .rpc import make_web3

logger = logging.getLogger(__name__)

DEFAULT_GAS_LIMIT = 300000


# ============================================================
# Gas Helpers
# ============================================================

def build_tx_params(w3, account_address, chain_cfg):
    """
    Base transaction parameters with EIP-1559 fee estimation where supported,
    falling back to legacy gasPrice.
    """
    params = {
        "from": account_address,
        "chainId": chain_cfg["chain_id"],
    }

    try:
        latest = w3.eth.get_block("latest")
        base_fee = latest.get("baseFeePerGas") if hasattr(latest, "get") else getattr(latest, "baseFeePerGas", None)
        if base_fee is not None:
            try:
                priority_fee = w3.eth.max_priority_fee
            except (Web3Exception, ValueError):
                priority_fee = Web3.to_wei(1, "gwei")
            # 2x base fee absorbs a few full blocks of fee growth
            params["maxFeePerGas"] = base_fee * 2 + priority_fee
            params["maxPriorityFeePerGas"] = priority_fee
            return params
    except (Web3Exception, ValueError) as e:
        logger.info("EIP-1559 fee lookup failed on %s, using legacy gasPrice: %s", chain_cfg["name"], e)

    params["gasPrice"] = w3.eth.gas_price
    return params


def estimate_gas(w3, tx, buffer=1.3):
    """Gas estimate with a safety buffer; DEFAULT_GAS_LIMIT if estimation fails."""
    try:
        return int(w3.eth.estimate_gas(tx) * buffer)
    except (Web3Exception, ValueError) as e:
        logger.warning("Gas estimation failed, using %d: %s", DEFAULT_GAS_LIMIT, e)
        return DEFAULT_GAS_LIMIT


# ============================================================
# Executor
# ============================================================

class MintExecutor:
    """
    Submits receiveMessage on one destination chain.

    Transactions go through a single endpoint (the configured primary, or
    ``web3`` when given) so a retry never broadcasts through two providers.
    ``reader`` (a ChainReader) is used for the read-only nonce check.
    """

    def __init__(self, chain_key, web3=None, reader=None, receipt_timeout=None, web3_factory=make_web3):
        self.chain_key = chain_key
        self.cfg = CHAINS[chain_key]
        self.w3 = web3 or web3_factory(rpc_endpoints(chain_key)[0], RECOVERY_SETTINGS["rpc_timeout"])
        self.reader = reader
        self.receipt_timeout = (RECOVERY_SETTINGS["mint_receipt_timeout"]
                                if receipt_timeout is None else receipt_timeout)
        self.transmitter_address = Web3.to_checksum_address(self.cfg["message_transmitter_v2"])

    def _transmitter(self, w3):
        return w3.eth.contract(address=self.transmitter_address, abi=MESSAGE_TRANSMITTER_V2_ABI)

    def nonce_used(self, message_bytes):
        """
        True if the message's nonce was already consumed by receiveMessage.

        Unattested messages (empty nonce slot) and failed lookups answer
        False, so the caller goes on to the mint attempt.
        """
        try:
            message = decode_message(message_bytes)
        except DecodeError:
            return False
        if not has_nonce(message):
            return False
        nonce = to_bytes(message.nonce_bytes)

        def _read(w3):
            return self._transmitter(w3).functions.usedNonces(nonce).call()

        try:
            if self.reader is not None:
                used = self.reader.call("usedNonces", _read)
            else:
                used = _read(self.w3)
        except (NetworkError, Web3Exception, ValueError) as e:
            logger.warning("usedNonces lookup failed on %s, assuming unused: %s", self.cfg["name"], e)
            return False
        return used != 0

    def _send(self, message_bytes, attestation_bytes, private_key):
        w3 = self.w3
        try:
            account = Account.from_key(private_key)
        except (ValueError, TypeError) as e:
            raise MintTransactionFailed(f"Invalid signing key: {e}", retryable=False) from None
        transmitter = self._transmitter(w3)

        try:
            tx_params = build_tx_params(w3, account.address, self.cfg)
            tx_params["nonce"] = w3.eth.get_transaction_count(account.address)
            tx = transmitter.functions.receiveMessage(message_bytes, attestation_bytes).build_transaction(tx_params)
            tx["gas"] = estimate_gas(w3, tx, buffer=1.3)
            signed = account.sign_transaction(tx)
            tx_hash = to_hex(w3.eth.send_raw_transaction(signed.raw_transaction))
        except (Web3Exception, ValueError) as e:
            raise MintTransactionFailed(f"receiveMessage could not be sent on {self.cfg['name']}: {e}") from e

        logger.info("receiveMessage sent on %s: %s", self.cfg["name"], tx_hash)
        return tx_hash

    def _wait(self, tx_hash):
        try:
            receipt = self.w3.eth.wait_for_transaction_receipt(tx_hash, timeout=self.receipt_timeout)
        except TimeExhausted as e:
            raise MintTransactionFailed(
                f"No receipt for {tx_hash} after {self.receipt_timeout:.0f}s; it may still confirm",
                tx_hash=tx_hash,
            ) from e
        except (Web3Exception, ValueError) as e:
            raise MintTransactionFailed(f"Waiting for {tx_hash} failed: {e}", tx_hash=tx_hash) from e

        if receipt["status"] != 1:
            raise MintTransactionFailed(f"receiveMessage reverted on {self.cfg['name']} ({tx_hash})", tx_hash=tx_hash)
        return receipt

    def complete_mint(self, message_bytes, attestation, private_key):
        """
        Submit receiveMessage and wait for a successful receipt.

        Raises MintTransactionFailed on a send error, a reverted receipt or a
        receipt timeout. Each is retryable on a later invocation while the
        message has not expired.
        """
        message_bytes = to_bytes(message_bytes)
        attestation_bytes = to_bytes(attestation)
        tx_hash = self._send(message_bytes, attestation_bytes, private_key)
        receipt = self._wait(tx_hash)

        result = MintResult(
            tx_hash=tx_hash,
            block_number=receipt.get("blockNumber"),
            gas_used=receipt.get("gasUsed"),
            explorer_url=f"{self.cfg['explorer']}/tx/{tx_hash}",
        )
        logger.info("Mint confirmed on %s in block %s: %s", self.cfg["name"], result.block_number, result.explorer_url)
        return result

    def try_mint_without_attestation(self, message_bytes, private_key):
        """
        Best effort: receiveMessage with an empty attestation.

        Only succeeds when the destination already validated the message some
        other way. Never raises; returns {"success", "tx_hash", "error"}.
        """
        logger.info("Trying receiveMessage without attestation on %s", self.cfg["name"])
        try:
            tx_hash = self._send(to_bytes(message_bytes), b"", private_key)
            self._wait(tx_hash)
        except (MintTransactionFailed, DecodeError) as e:
            logger.info("Mint without attestation did not succeed: %s", e)
            return {"success": False, "tx_hash": getattr(e, "tx_hash", None), "error": str(e)}
        return {"success": True, "tx_hash": tx_hash, "error": None}
