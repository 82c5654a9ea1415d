"""
CCTP Recovery - Message expiration guard

A V2 burn message may carry an expirationBlock, measured on the burn (source)
chain. Past that block the message can never be received, and CCTP has no
refund path, so the burned USDC is gone unless Circle intervenes off-chain.
"""

import logging

from .errors import DecodeError, MessageExpired, NetworkError
from .message import BurnMessage, decode_message
from .models import ExpirationStatus

logger = logging.getLogger(__name__)

EXPIRED_WARNING = (
    "Message expired at block {expiration} (current block {current}). It can no "
    "longer be minted and CCTP has no refund mechanism: the burned USDC is "
    "unrecoverable on-chain. Contact Circle support for off-chain recovery."
)


def check_expiration(message, source_reader):
    """
    Compare the message's expiration block with the source chain's height.

    ``message`` is a BurnMessage or raw message bytes/hex. An undecodable or
    zero expiration block, or an unreadable block height, reports not
    expired: recovery is never blocked on an ambiguous answer.
    """
    if not isinstance(message, BurnMessage):
        try:
            message = decode_message(message)
        except DecodeError as e:
            logger.warning("Cannot decode message for expiration check: %s", e)
            return ExpirationStatus(expired=False, error=str(e),
                                    message="Expiration unknown (message could not be decoded); proceeding")

    expiration = message.expiration_block
    if expiration is None:
        logger.info("No expiration block in message (stopped at %s); assuming not expired", message.short_field)
        return ExpirationStatus(expired=False, message="Expiration block unknown; proceeding")
    if expiration == 0:
        return ExpirationStatus(expired=False, expiration_block=0, message="Message has no expiration block")

    try:
        current = source_reader.block_number()
    except NetworkError as e:
        logger.warning("Cannot read %s block height for expiration check: %s", source_reader.chain_key, e)
        return ExpirationStatus(expired=False, expiration_block=expiration, error=str(e),
                                message="Could not read current block; assuming not expired")

    if current > expiration:
        text = EXPIRED_WARNING.format(expiration=expiration, current=current)
        logger.error("%s", text)
        return ExpirationStatus(expired=True, expiration_block=expiration, current_block=current,
                                blocks_remaining=0, message=text)

    remaining = expiration - current
    block_time = source_reader.cfg.get("block_time", 12)
    hours = remaining * block_time / 3600
    logger.info("Message valid for %d more blocks (~%.1f hours)", remaining, hours)
    return ExpirationStatus(
        expired=False, expiration_block=expiration, current_block=current, blocks_remaining=remaining,
        message=f"Message valid for {remaining} more blocks (~{hours:.1f} hours)",
    )


def ensure_not_expired(message, source_reader):
    """check_expiration() that raises MessageExpired instead of returning an expired status."""
    status = check_expiration(message, source_reader)
    if status.expired:
        raise MessageExpired(status)
    return status
