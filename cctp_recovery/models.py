"""
CCTP Recovery - Result and state types

Plain dataclasses returned by the recovery components. ``to_dict()`` renders
the JSON shape printed by the CLI and served by the status endpoint.
"""

import time
from datetime import datetime, timezone
from dataclasses import dataclass, field, asdict
from typing import Optional

# Attestation statuses
ATTESTATION_PENDING = "pending"
ATTESTATION_COMPLETE = "complete"
ATTESTATION_FAILED = "failed"

# Pending bridge statuses, in forward order
STATUS_PENDING_ATTESTATION = "pending_attestation"
STATUS_ATTESTATION_READY = "attestation_ready"
STATUS_MINT_COMPLETED = "mint_completed"
STATUS_EXPIRED = "expired"

# Both terminal statuses share the top rank so neither can follow the other
STATUS_RANK = {
    STATUS_PENDING_ATTESTATION: 0,
    STATUS_ATTESTATION_READY: 1,
    STATUS_MINT_COMPLETED: 2,
    STATUS_EXPIRED: 2,
}

# Orchestrator states
STATE_EXTRACT_MESSAGE = "extract_message"
STATE_CHECK_EXPIRATION = "check_expiration"
STATE_CHECK_ALREADY_RECEIVED = "check_already_received"
STATE_FETCH_ATTESTATION = "fetch_attestation"
STATE_COMPLETE_MINT = "complete_mint"
STATE_EXPIRED = "expired"
STATE_ALREADY_COMPLETE = "already_complete"
STATE_PENDING = "pending"
STATE_SUCCESS = "success"
STATE_FAILED = "failed"
STATE_IN_PROGRESS = "in_progress"


@dataclass
class AttestationResult:
    status: str
    attestation: Optional[str] = None
    message: Optional[str] = None
    message_hash: Optional[str] = None
    error: Optional[str] = None
    attempts: int = 0
    source: Optional[str] = None

    @property
    def is_complete(self):
        return self.status == ATTESTATION_COMPLETE and bool(self.attestation)


@dataclass
class ExpirationStatus:
    expired: bool
    expiration_block: Optional[int] = None
    current_block: Optional[int] = None
    blocks_remaining: Optional[int] = None
    message: Optional[str] = None
    error: Optional[str] = None
    # CCTP has no on-chain refund path
    can_refund: bool = False

    def to_dict(self):
        return {
            "expired": self.expired,
            "expiration_block": _str_or_none(self.expiration_block),
            "current_block": _str_or_none(self.current_block),
            "blocks_remaining": _str_or_none(self.blocks_remaining),
            "can_refund": False,
            "message": self.message,
            "error": self.error,
        }


@dataclass
class ReceiptCheck:
    received: bool
    tx_hash: Optional[str] = None
    strategy: Optional[str] = None
    balance_evidence: Optional[dict] = None
    errors: list = field(default_factory=list)


@dataclass
class MintResult:
    tx_hash: str
    block_number: Optional[int] = None
    gas_used: Optional[int] = None
    explorer_url: Optional[str] = None


@dataclass
class RecoveryResult:
    success: bool
    state: str
    message: str
    burn_tx_hash: Optional[str] = None
    message_hash: Optional[str] = None
    message_bytes: Optional[str] = None
    attestation: Optional[str] = None
    mint_tx_hash: Optional[str] = None
    error: Optional[str] = None
    expiration: Optional[ExpirationStatus] = None
    balance_evidence: Optional[dict] = None

    @property
    def pending(self):
        return self.state == STATE_PENDING

    def to_dict(self):
        d = asdict(self)
        d["expiration"] = self.expiration.to_dict() if self.expiration else None
        return {k: v for k, v in d.items() if v is not None}


@dataclass
class PendingBridge:
    burn_tx_hash: str
    recipient: str
    amount: str
    created_at: float = field(default_factory=time.time)
    last_checked: float = field(default_factory=time.time)
    status: str = STATUS_PENDING_ATTESTATION
    message_hash: Optional[str] = None
    mint_tx_hash: Optional[str] = None

    def to_dict(self, now=None):
        """Status listing row, as served to the operations dashboard."""
        now = time.time() if now is None else now
        return {
            "burn_tx_hash": self.burn_tx_hash,
            "recipient": self.recipient,
            "amount": self.amount,
            "status": self.status,
            "message_hash": self.message_hash,
            "mint_tx_hash": self.mint_tx_hash,
            "created_at": _iso(self.created_at),
            "last_checked": _iso(self.last_checked),
            "age_minutes": int((now - self.created_at) // 60),
        }


def _str_or_none(value):
    return None if value is None else str(value)


def _iso(ts):
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()
