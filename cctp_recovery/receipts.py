"""
CCTP Recovery - Destination-chain receipt detection

Decides whether a burn has already been minted on the destination chain, so a
recovery never pays for a second receiveMessage. Two strategies, in order:

  1. Transfer correlation: a USDC Transfer to the recipient whose value is
     within the configured tolerance of the burned amount. Catches "silent
     mints" whose MessageReceived event was missed.
  2. MessageReceived scan on the MessageTransmitterV2.

Both scan [current - lookback, current] in chunks no larger than the
provider's eth_getLogs limit. Failures are recorded on the result, never raised.
"""

import logging

from eth_abi import decode as abi_decode
from eth_abi.exceptions import DecodingError
from web3 import Web3

from .config import MESSAGE_RECEIVED_EVENT, RECOVERY_SETTINGS, TRANSFER_EVENT
from .errors import NetworkError
from .message import decode_body, has_nonce, to_bytes
from .models import ReceiptCheck
from .rpc import address_topic, as_hex, format_amount

logger = logging.getLogger(__name__)

STRATEGY_TRANSFER = "transfer"
STRATEGY_MESSAGE_RECEIVED = "message_received"

# Body fields that identify one burn when the nonce slot is still empty
_BODY_IDENTITY = ("burn_token", "mint_recipient", "amount", "message_sender")


def block_ranges(from_block, to_block, step):
    """Inclusive (start, end) windows covering [from_block, to_block], newest first."""
    step = max(int(step), 1)
    end = to_block
    while end >= from_block:
        start = max(from_block, end - step + 1)
        yield start, end
        end = start - 1


def within_tolerance(value, expected, tolerance_bps):
    return abs(value - expected) * 10000 <= expected * tolerance_bps


def _raw(data):
    if isinstance(data, str):
        return to_bytes(data)
    return bytes(data or b"")


def _log_get(log, name):
    try:
        return log[name]
    except (KeyError, TypeError):
        return getattr(log, name, None)


class ReceiptDetector:
    def __init__(self, dest_reader, usdc_address=None, transmitter_address=None,
                 lookback_blocks=None, max_block_range=None, tolerance_bps=None):
        cfg = dest_reader.cfg
        self.reader = dest_reader
        self.usdc_address = usdc_address or cfg["usdc_address"]
        self.transmitter_address = transmitter_address or cfg["message_transmitter_v2"]
        self.decimals = cfg.get("usdc_decimals", 6)
        self.lookback_blocks = (RECOVERY_SETTINGS["receipt_lookback_blocks"]
                                if lookback_blocks is None else lookback_blocks)
        self.max_block_range = max_block_range or RECOVERY_SETTINGS["max_block_range"]
        self.tolerance_bps = (RECOVERY_SETTINGS["transfer_tolerance_bps"]
                              if tolerance_bps is None else tolerance_bps)

    def has_received(self, message, recipient=None, expected_amount=None):
        """
        Look for evidence that ``message`` (a decoded BurnMessage) was minted.

        ``recipient`` and ``expected_amount`` default to the message's mint
        recipient and amount. received=False is not an error: it means the
        recovery should go on to attestation and mint.
        """
        recipient = recipient or message.mint_recipient
        expected_amount = message.amount if expected_amount is None else expected_amount
        check = ReceiptCheck(received=False)

        try:
            current = self.reader.block_number()
        except NetworkError as e:
            logger.warning("Cannot read %s block height, skipping receipt detection: %s", self.reader.chain_key, e)
            check.errors.append(str(e))
            return check
        from_block = max(0, current - self.lookback_blocks)
        logger.info("Checking %s blocks %d..%d for an existing mint of %s",
                    self.reader.chain_key, from_block, current, message.message_hash)

        if recipient and expected_amount:
            try:
                found = self._find_transfer(recipient, expected_amount, from_block, current)
            except NetworkError as e:
                logger.warning("Transfer correlation failed, continuing with event scan: %s", e)
                check.errors.append(str(e))
                found = None
            if found is not None:
                tx_hash, value = found
                logger.info("Matching transfer of %s USDC to %s in %s",
                            format_amount(value, self.decimals), recipient, tx_hash)
                check.received = True
                check.tx_hash = tx_hash
                check.strategy = STRATEGY_TRANSFER
                check.balance_evidence = {
                    "transfer_amount": format_amount(value, self.decimals),
                    "expected_amount": format_amount(expected_amount, self.decimals),
                    "match": True,
                }
                return check
            check.balance_evidence = self._balance_evidence(recipient, expected_amount)

        try:
            tx_hash = self._find_message_received(message, from_block, current)
        except NetworkError as e:
            logger.warning("MessageReceived scan failed: %s", e)
            check.errors.append(str(e))
            return check
        if tx_hash:
            logger.info("MessageReceived for %s found in %s", message.message_hash, tx_hash)
            check.received = True
            check.tx_hash = tx_hash
            check.strategy = STRATEGY_MESSAGE_RECEIVED
        else:
            logger.info("No evidence of a mint for %s in the last %d blocks",
                        message.message_hash, current - from_block)
        return check

    def find_receive_tx(self, message, lookback_blocks=None):
        """
        Tx hash of the MessageReceived for ``message``, or None.

        Used once the destination reports the nonce as spent, so the window is
        wider than has_received()'s. Network failures are logged and give None.
        """
        if lookback_blocks is None:
            lookback_blocks = RECOVERY_SETTINGS["used_nonce_lookback_blocks"]
        try:
            current = self.reader.block_number()
            tx_hash = self._find_message_received(message, max(0, current - lookback_blocks), current)
        except NetworkError as e:
            logger.warning("Cannot locate the receive tx for %s: %s", message.message_hash, e)
            return None
        if tx_hash is None:
            logger.info("No MessageReceived for %s in the last %d blocks", message.message_hash, lookback_blocks)
        return tx_hash

    # ------------------------------------------------------------
    # Strategy 1: Transfer correlation
    # ------------------------------------------------------------

    def _find_transfer(self, recipient, expected_amount, from_block, to_block):
        topics = [None, address_topic(recipient)]
        for start, end in block_ranges(from_block, to_block, self.max_block_range):
            logs = self.reader.get_logs(self.usdc_address, TRANSFER_EVENT, start, end, topics)
            for log in logs:
                value = int.from_bytes(_raw(_log_get(log, "data"))[:32], "big")
                if within_tolerance(value, expected_amount, self.tolerance_bps):
                    return as_hex(_log_get(log, "transactionHash")), value
        return None

    def _balance_evidence(self, recipient, expected_amount):
        balance = self.reader.token_balance(recipient, self.usdc_address)
        logger.info("No matching transfer; %s balance is %s USDC (expected +%s)",
                    recipient, balance["balance_formatted"], format_amount(expected_amount, self.decimals))
        return {
            "current_balance": balance["balance_formatted"],
            "expected_amount": format_amount(expected_amount, self.decimals),
            "balance_available": balance["available"],
            "match": False,
        }

    # ------------------------------------------------------------
    # Strategy 2: MessageReceived scan
    # ------------------------------------------------------------

    def _find_message_received(self, message, from_block, to_block):
        # MessageReceived(caller indexed, sourceDomain, nonce indexed, sender, finality indexed, body)
        topics = [None, message.nonce_bytes] if has_nonce(message) else None
        for start, end in block_ranges(from_block, to_block, self.max_block_range):
            logs = self.reader.get_logs(self.transmitter_address, MESSAGE_RECEIVED_EVENT, start, end, topics)
            for log in logs:
                if self._matches(log, message):
                    return as_hex(_log_get(log, "transactionHash"))
        return None

    def _matches(self, log, message):
        try:
            source_domain, sender, body = abi_decode(["uint32", "bytes32", "bytes"], _raw(_log_get(log, "data")))
        except (DecodingError, ValueError) as e:
            logger.debug("Undecodable MessageReceived log in %s: %s", _log_get(log, "transactionHash"), e)
            return False
        if source_domain != message.source_domain:
            return False
        if Web3.to_checksum_address(sender[12:]) != message.sender:
            return False
        if has_nonce(message):
            return bytes(body) == message.body
        fields = decode_body(body)
        return all(fields.get(name) == getattr(message, name) for name in _BODY_IDENTITY)
