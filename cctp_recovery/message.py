"""
CCTP Recovery - Burn message wire format

Pure decoder for CCTP V2 messages as emitted by MessageSent(bytes). Fields sit
at fixed offsets:

    Header (148 bytes)
      0   version                       uint32
      4   sourceDomain                  uint32
      8   destinationDomain             uint32
      12  nonce                         bytes32 (low 8 bytes used as the nonce)
      44  sender                        bytes32 (last 20 bytes = address)
      76  recipient                     bytes32
      108 destinationCaller             bytes32
      140 minFinalityThreshold          uint32
      144 finalityThresholdExecuted     uint32
    BurnMessageV2 body
      148 version                       uint32
      152 burnToken                     bytes32
      184 mintRecipient                 bytes32 (address)
      216 amount                        uint256
      248 messageSender                 bytes32
      280 maxFee                        uint256
      312 feeExecuted                   uint256
      344 expirationBlock               uint256

Decoding never raises on a short buffer: it stops at the first field that does
not fit and records it in ``short_field``. Every later field is None.
"""

import logging
from dataclasses import dataclass, asdict
from typing import Optional

from web3 import Web3

from .errors import DecodeError, ShortBuffer

logger = logging.getLogger(__name__)

# Header and body versions of the CCTP V2 layout described above
MESSAGE_VERSION_V2 = 1
BURN_MESSAGE_VERSION_V2 = 1

HEADER_LENGTH = 148
EXPIRATION_BLOCK_OFFSET = 344
FULL_MESSAGE_LENGTH = EXPIRATION_BLOCK_OFFSET + 32

# (attribute, offset, size, kind)
_HEADER_FIELDS = [
    ("version", 0, 4, "uint"),
    ("source_domain", 4, 4, "uint"),
    ("destination_domain", 8, 4, "uint"),
    ("nonce_bytes", 12, 32, "bytes32"),
    ("sender", 44, 32, "address"),
    ("recipient", 76, 32, "address"),
    ("destination_caller", 108, 32, "address"),
    ("min_finality_threshold", 140, 4, "uint"),
    ("finality_threshold_executed", 144, 4, "uint"),
]

_BODY_FIELDS = [
    ("burn_message_version", 148, 4, "uint"),
    ("burn_token", 152, 32, "address"),
    ("mint_recipient", 184, 32, "address"),
    ("amount", 216, 32, "uint"),
    ("message_sender", 248, 32, "address"),
    ("max_fee", 280, 32, "uint"),
    ("fee_executed", 312, 32, "uint"),
    ("expiration_block", 344, 32, "uint"),
]


@dataclass(frozen=True)
class BurnMessage:
    """Decoded burn message. Immutable; ``raw`` is the exact input buffer."""

    raw: bytes
    version: Optional[int] = None
    source_domain: Optional[int] = None
    destination_domain: Optional[int] = None
    nonce_bytes: Optional[str] = None
    nonce: Optional[int] = None
    sender: Optional[str] = None
    recipient: Optional[str] = None
    destination_caller: Optional[str] = None
    min_finality_threshold: Optional[int] = None
    finality_threshold_executed: Optional[int] = None
    burn_message_version: Optional[int] = None
    burn_token: Optional[str] = None
    mint_recipient: Optional[str] = None
    amount: Optional[int] = None
    message_sender: Optional[str] = None
    max_fee: Optional[int] = None
    fee_executed: Optional[int] = None
    expiration_block: Optional[int] = None
    # First field that could not be read, and the offset where it starts
    short_field: Optional[str] = None
    short_offset: Optional[int] = None

    @property
    def is_complete(self):
        return self.short_field is None

    @property
    def body(self):
        return self.raw[HEADER_LENGTH:]

    @property
    def message_hash(self):
        return message_hash(self.raw)

    def to_dict(self):
        d = asdict(self)
        d["raw"] = to_hex(self.raw)
        d["message_hash"] = self.message_hash
        # uint256 values don't survive JSON consumers that parse numbers as doubles
        for key in ("amount", "max_fee", "fee_executed", "expiration_block"):
            if d[key] is not None:
                d[key] = str(d[key])
        return d


def to_bytes(value):
    """Accept bytes or a hex string (with or without 0x) and return bytes."""
    if value is None:
        raise DecodeError("Message bytes are missing")
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value)
    if not isinstance(value, str):
        raise DecodeError(f"Expected hex string or bytes, got {type(value).__name__}")
    text = value[2:] if value[:2] in ("0x", "0X") else value
    try:
        return bytes.fromhex(text)
    except ValueError as e:
        raise DecodeError(f"Invalid hex data: {e}") from e


def to_hex(data):
    """0x-prefixed lowercase hex. bytes.hex() never carries the prefix, HexBytes.hex() depends on version."""
    return "0x" + bytes(data).hex()


def message_hash(message_bytes):
    """keccak256 of the raw message bytes, as used by Iris and MessageTransmitterV2."""
    return to_hex(Web3.keccak(to_bytes(message_bytes)))


def _read(buf, field, offset, size, kind):
    if len(buf) < offset + size:
        raise ShortBuffer(field, offset, size, len(buf))
    chunk = buf[offset:offset + size]
    if kind == "uint":
        return int.from_bytes(chunk, "big")
    if kind == "address":
        return Web3.to_checksum_address("0x" + chunk[12:].hex())
    return to_hex(chunk)


def decode_message(message_bytes):
    """
    Decode a CCTP V2 burn message.

    Returns a BurnMessage. Raises DecodeError only for input that is not
    bytes or valid hex; a short buffer is reported through ``short_field``.

    Only the V2 layout is trusted past the domains: for any other header or
    body version, decoding stops and ``short_field`` is "unsupported_version"
    so callers see an absent expiration block instead of a wrong one.
    """
    buf = to_bytes(message_bytes)
    values = {}
    short_field = short_offset = None

    try:
        for field, offset, size, kind in _HEADER_FIELDS:
            values[field] = _read(buf, field, offset, size, kind)
            if field == "destination_domain" and values["version"] != MESSAGE_VERSION_V2:
                short_field, short_offset = "unsupported_version", 0
                break
        else:
            for field, offset, size, kind in _BODY_FIELDS:
                values[field] = _read(buf, field, offset, size, kind)
                if field == "burn_message_version" and values[field] != BURN_MESSAGE_VERSION_V2:
                    short_field, short_offset = "unsupported_version", offset
                    break
    except ShortBuffer as e:
        short_field, short_offset = e.field, e.offset
        logger.info("Message is %d bytes; stopped at %s (needs %d)", len(buf), e.field, e.offset + e.needed)

    if short_field == "unsupported_version":
        logger.warning(
            "Unsupported message version (header=%s, body=%s); body fields not decoded",
            values.get("version"), values.get("burn_message_version"),
        )

    if "nonce_bytes" in values:
        values["nonce"] = int(values["nonce_bytes"][-16:], 16)

    return BurnMessage(raw=buf, short_field=short_field, short_offset=short_offset, **values)


def decode_body(body_bytes):
    """
    Decode a bare BurnMessageV2 body, as carried by MessageReceived.messageBody.

    Returns a dict of the body fields that fit; a short body simply yields
    fewer keys.
    """
    buf = to_bytes(body_bytes)
    values = {}
    for field, offset, size, kind in _BODY_FIELDS:
        try:
            values[field] = _read(buf, field, offset - HEADER_LENGTH, size, kind)
        except ShortBuffer:
            break
    return values


def has_nonce(message):
    """False when the nonce slot is zero, i.e. the message is the unattested form emitted by MessageSent."""
    return bool(message.nonce_bytes) and int(message.nonce_bytes, 16) != 0
