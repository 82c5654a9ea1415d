"""
CCTP Recovery - Error taxonomy

Components raise these inside their own boundary. The orchestrator turns all of
them except ConfigError into a RecoveryResult.
"""


class RecoveryError(Exception):
    """Base class for bridge recovery failures."""


class ConfigError(RecoveryError):
    pass


class DecodeError(RecoveryError):
    pass


class ShortBuffer(DecodeError):
    def __init__(self, field, offset, needed, available):
        self.field = field
        self.offset = offset
        self.needed = needed
        self.available = available
        message = (
            f"Buffer too short to read {field}: need {offset + needed} bytes, "
            f"have {available}"
        )
        super().__init__(message)


class EventNotFound(RecoveryError):
    def __init__(self, tx_hash, topics_seen=()):
        self.tx_hash = tx_hash
        self.topics_seen = list(topics_seen)
        message = (
            f"MessageSent event not found in transaction {tx_hash} "
            f"({len(self.topics_seen)} logs inspected)"
        )
        super().__init__(message)


class NetworkError(RecoveryError):
    def __init__(self, message, endpoints=(), last_error=None):
        self.endpoints = list(endpoints)
        self.last_error = last_error
        super().__init__(message)


class AttestationFailed(RecoveryError):
    pass


class MessageExpired(RecoveryError):
    def __init__(self, expiration):
        self.expiration = expiration
        super().__init__(expiration.message or "Message has expired")


class MintTransactionFailed(RecoveryError):
    def __init__(self, message, tx_hash=None, retryable=True):
        self.tx_hash = tx_hash
        self.retryable = retryable
        super().__init__(message)


class RecoveryInProgress(RecoveryError):
    def __init__(self, burn_tx_hash):
        self.burn_tx_hash = burn_tx_hash
        super().__init__(f"Recovery already in progress for {burn_tx_hash}")


class AttestationPending(RecoveryError):
    """Not a failure: the attestation service has not signed the message yet."""

    def __init__(self, result, retry_after=None):
        self.result = result
        self.retry_after = retry_after
        super().__init__(result.error or "Attestation pending")
