"""
CCTP Recovery - Message extraction from a burn transaction

Finds the MessageTransmitter's MessageSent(bytes) log in the burn receipt and
returns the raw message bytes plus their keccak hash (the attestation key).
"""

import logging
from dataclasses import dataclass
from typing import Optional

from eth_abi import decode as abi_decode
from eth_abi.exceptions import DecodingError

from .config import MESSAGE_SENT_EVENT
from .errors import DecodeError, EventNotFound
from .message import message_hash, to_bytes, to_hex
from .rpc import as_hex, event_topic

logger = logging.getLogger(__name__)

MESSAGE_SENT_TOPIC = event_topic(MESSAGE_SENT_EVENT)


@dataclass(frozen=True)
class ExtractedMessage:
    message_bytes: str
    message_hash: str
    emitter: Optional[str] = None
    block_number: Optional[int] = None
    log_index: Optional[int] = None


def _log_field(log, name, default=None):
    try:
        return log[name]
    except (KeyError, TypeError):
        return getattr(log, name, default)


def decode_message_sent(log):
    """ABI-decode the single ``bytes`` argument of a MessageSent log."""
    data = _log_field(log, "data")
    raw = to_bytes(data) if isinstance(data, str) else bytes(data or b"")
    try:
        (message,) = abi_decode(["bytes"], raw)
    except (DecodingError, ValueError) as e:
        raise DecodeError(f"MessageSent log data is not ABI-encoded bytes: {e}") from e
    return bytes(message)


def extract_message(burn_tx_hash, source_reader):
    """
    Recover the burn message from ``burn_tx_hash`` on the source chain.

    Raises EventNotFound if the transaction is unknown or emitted no
    MessageSent log. NetworkError from the reader propagates.
    """
    receipt = source_reader.get_receipt(burn_tx_hash)
    if receipt is None:
        logger.error("Burn transaction %s not found on %s", burn_tx_hash, source_reader.chain_key)
        raise EventNotFound(burn_tx_hash)

    logs = _log_field(receipt, "logs", []) or []
    topics_seen = []
    for log in logs:
        topics = _log_field(log, "topics", []) or []
        topic0 = as_hex(topics[0]) if topics else None
        topics_seen.append(topic0)
        if topic0 != MESSAGE_SENT_TOPIC:
            continue

        message = decode_message_sent(log)
        extracted = ExtractedMessage(
            message_bytes=to_hex(message),
            message_hash=message_hash(message),
            emitter=_log_field(log, "address"),
            block_number=_log_field(log, "blockNumber"),
            log_index=_log_field(log, "logIndex"),
        )
        logger.info("MessageSent found in %s (%d bytes, hash %s)",
                    burn_tx_hash, len(message), extracted.message_hash)
        return extracted

    for i, log in enumerate(logs):
        logger.warning("Log %d: topic0=%s, address=%s", i, topics_seen[i], _log_field(log, "address"))
    logger.error("MessageSent event not found in %s (%d logs)", burn_tx_hash, len(logs))
    raise EventNotFound(burn_tx_hash, topics_seen)
