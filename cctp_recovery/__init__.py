"""
CCTP Recovery - Python Package Exports

Usage:
    from cctp_recovery import RecoveryOrchestrator, recover_pending_bridge
    from cctp_recovery import decode_message, check_expiration
"""

# Wire format
from .message import (
    BurnMessage,
    decode_message,
    message_hash,
)

# Components
from .rpc import ChainReader
from .extractor import ExtractedMessage, extract_message
from .attestation import AttestationClient
from .receipts import ReceiptDetector
from .expiration import check_expiration
from .mint import MintExecutor
from .registry import PendingBridgeRegistry, get_registry
from .store import BridgeStore
from .tasks import TaskRunner

# Orchestration
from .recovery import (
    RecoveryOrchestrator,
    recover_pending_bridge,
)

# Results and errors
from .models import (
    AttestationResult,
    ExpirationStatus,
    MintResult,
    PendingBridge,
    ReceiptCheck,
    RecoveryResult,
)
from .errors import (
    AttestationFailed,
    AttestationPending,
    ConfigError,
    DecodeError,
    EventNotFound,
    MessageExpired,
    MintTransactionFailed,
    NetworkError,
    RecoveryError,
    RecoveryInProgress,
    ShortBuffer,
)

__all__ = [
    # Wire format
    "BurnMessage", "decode_message", "message_hash",
    # Components
    "ChainReader", "ExtractedMessage", "extract_message", "AttestationClient",
    "ReceiptDetector", "check_expiration", "MintExecutor",
    "PendingBridgeRegistry", "get_registry", "BridgeStore", "TaskRunner",
    # Orchestration
    "RecoveryOrchestrator", "recover_pending_bridge",
    # Results
    "AttestationResult", "ExpirationStatus", "MintResult", "PendingBridge",
    "ReceiptCheck", "RecoveryResult",
    # Errors
    "RecoveryError", "ConfigError", "DecodeError", "ShortBuffer", "EventNotFound",
    "NetworkError", "AttestationPending", "AttestationFailed", "MessageExpired",
    "MintTransactionFailed", "RecoveryInProgress",
]
