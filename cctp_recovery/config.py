"""
CCTP Recovery - Configuration and Constants
Testnet contract addresses, chain configs, ABIs and recovery tuning.

All configuration can be overridden via environment variables:
- RECOVERY_PRIVATE_KEY / PRIVATE_KEY: signing key used by the CLI and server
- RECOVERY_SECRET_CMD: command that prints the signing key to stdout
- SEPOLIA_RPC_URL: primary Ethereum Sepolia RPC
- ARC_TESTNET_RPC_URL: primary ARC Testnet RPC
- RECOVERY_SOURCE_CHAIN / RECOVERY_DEST_CHAIN: chain keys (see CHAINS)
- CCTP_API_BASE: Circle Iris API base URL (sandbox by default)
- RECOVERY_DB_PATH: SQLite file for pending bridges (unset = in-memory only)
- RECOVERY_ATTESTATION_MAX_ATTEMPTS, RECOVERY_ATTESTATION_INTERVAL, ...: see RECOVERY_SETTINGS
"""

import os
import json
import subprocess

from .errors import ConfigError


def _load_dotenv():
    """Load .env file from the project root if it exists. No dependencies required."""
    env_path = os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), ".env")
    if not os.path.isfile(env_path):
        return
    with open(env_path) as f:
        for line in f:
            line = line.strip()
            if not line or line.startswith("#") or "=" not in line:
                continue
            key, _, value = line.partition("=")
            key = key.strip()
            value = value.strip()
            # Don't override existing env vars
            if key and key not in os.environ:
                os.environ[key] = value


_load_dotenv()


def _env_number(name, default, cast=int):
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return cast(raw)
    except ValueError:
        raise ConfigError(f"{name} must be a number, got {raw!r}") from None


# ============================================================
# Chain Configuration
# ============================================================

CHAINS = {
    "ethereum_sepolia": {
        "name": "Ethereum Sepolia",
        "chain_id": 11155111,
        "rpc": os.environ.get("SEPOLIA_RPC_URL", "https://rpc.sepolia.org"),
        "fallback_rpcs": [
            "https://rpc.sepolia.org",
            "https://ethereum-sepolia-rpc.publicnode.com",
            "https://sepolia.gateway.tenderly.co",
            "https://rpc2.sepolia.org",
        ],
        "explorer": "https://sepolia.etherscan.io",
        "usdc_address": "0x1c7D4B196Cb0C7B01d743Fbc6116a902379C7238",
        "usdc_decimals": 6,
        "cctp_domain": 0,
        "block_time": 12,
        "token_messenger_v2": "0x8FE6B999Dc680CcFDD5Bf7EB0974218be2542DAA",
        "message_transmitter_v2": "0xE737e5cEBEEBa77EFE34D4aa090756590b1CE275",
    },
    "arc_testnet": {
        "name": "ARC Testnet",
        "chain_id": 5042002,
        "rpc": os.environ.get("ARC_TESTNET_RPC_URL", "https://rpc.testnet.arc.network"),
        "fallback_rpcs": [
            "https://rpc.testnet.arc.network",
        ],
        "explorer": "https://testnet.arcscan.app",
        # ERC-20 interface of the native USDC gas token
        "usdc_address": "0x3600000000000000000000000000000000000000",
        "usdc_decimals": 6,
        "cctp_domain": 26,
        "block_time": 1,
        "token_messenger_v2": "0x8FE6B999Dc680CcFDD5Bf7EB0974218be2542DAA",
        "message_transmitter_v2": "0xE737e5cEBEEBa77EFE34D4aa090756590b1CE275",
    },
    "base_sepolia": {
        "name": "Base Sepolia",
        "chain_id": 84532,
        "rpc": os.environ.get("BASE_SEPOLIA_RPC_URL", "https://base-sepolia-rpc.publicnode.com"),
        "fallback_rpcs": [
            "https://sepolia.base.org",
        ],
        "explorer": "https://base-sepolia.blockscout.com",
        "usdc_address": "0x036CbD53842c5426634e7929541eC2318f3dCF7e",
        "usdc_decimals": 6,
        "cctp_domain": 6,
        "block_time": 2,
        "token_messenger_v2": "0x8FE6B999Dc680CcFDD5Bf7EB0974218be2542DAA",
        "message_transmitter_v2": "0xE737e5cEBEEBa77EFE34D4aa090756590b1CE275",
    },
}

SOURCE_CHAIN = os.environ.get("RECOVERY_SOURCE_CHAIN", "ethereum_sepolia")
DEST_CHAIN = os.environ.get("RECOVERY_DEST_CHAIN", "arc_testnet")

for _role, _key in (("RECOVERY_SOURCE_CHAIN", SOURCE_CHAIN), ("RECOVERY_DEST_CHAIN", DEST_CHAIN)):
    if _key not in CHAINS:
        raise ConfigError(f"{_role}={_key!r} is not a known chain ({', '.join(CHAINS)})")

# Circle CCTP attestation API (testnet)
CCTP_API_BASE = os.environ.get("CCTP_API_BASE", "https://iris-api-sandbox.circle.com").rstrip("/")

# Safety: reject mainnet chain IDs to prevent accidental mainnet transactions
MAINNET_CHAIN_IDS = {1, 8453, 42161, 10, 137, 43114, 56}  # ETH, Base, Arb, OP, Polygon, Avalanche, BSC
for _chain_key, _chain_cfg in CHAINS.items():
    if _chain_cfg["chain_id"] in MAINNET_CHAIN_IDS:
        raise RuntimeError(
            f"SAFETY: Mainnet chain ID {_chain_cfg['chain_id']} detected in CHAINS['{_chain_key}']. "
            f"This tool is testnet-only. Remove mainnet chains from config."
        )


def rpc_endpoints(chain_key):
    """Ordered, de-duplicated RPC URLs for a chain: configured primary first, then public fallbacks."""
    cfg = CHAINS[chain_key]
    urls = []
    for url in [cfg["rpc"], *cfg.get("fallback_rpcs", [])]:
        if url and url not in urls:
            urls.append(url)
    if not urls:
        raise ConfigError(f"No RPC endpoints configured for {chain_key}")
    return urls


# ============================================================
# Recovery tuning
# ============================================================

RECOVERY_SETTINGS = {
    # Per-attempt timeout for ordinary RPC reads (receipts, block number, balances)
    "rpc_timeout": _env_number("RECOVERY_RPC_TIMEOUT", 20.0, float),
    # Extra attempts against the same endpoint before moving to the next one
    "rpc_retries": _env_number("RECOVERY_RPC_RETRIES", 1),
    "rpc_retry_delay": _env_number("RECOVERY_RPC_RETRY_DELAY", 0.5, float),
    # eth_getLogs over large ranges is slow on public nodes
    "log_scan_timeout": _env_number("RECOVERY_LOG_SCAN_TIMEOUT", 30.0, float),
    # Max block span a provider accepts in one eth_getLogs call
    "max_block_range": _env_number("RECOVERY_MAX_BLOCK_RANGE", 10000),
    "receipt_lookback_blocks": _env_number("RECOVERY_RECEIPT_LOOKBACK", 10000),
    # Wider window for locating the receive tx of a nonce already marked used
    "used_nonce_lookback_blocks": _env_number("RECOVERY_USED_NONCE_LOOKBACK", 200000),
    # 400 x 3s = 20 minutes, enough for Sepolia's 13-19 minute finality
    "attestation_max_attempts": _env_number("RECOVERY_ATTESTATION_MAX_ATTEMPTS", 400),
    "attestation_interval": _env_number("RECOVERY_ATTESTATION_INTERVAL", 3.0, float),
    "attestation_http_timeout": _env_number("RECOVERY_ATTESTATION_HTTP_TIMEOUT", 10.0, float),
    # 1000 bps = 10% tolerance when correlating Transfer events with the burned amount
    "transfer_tolerance_bps": _env_number("RECOVERY_TRANSFER_TOLERANCE_BPS", 1000),
    "mint_receipt_timeout": _env_number("RECOVERY_MINT_RECEIPT_TIMEOUT", 120.0, float),
    "completed_retention_seconds": _env_number("RECOVERY_COMPLETED_RETENTION", 24 * 60 * 60),
    "try_without_attestation": os.environ.get("RECOVERY_TRY_WITHOUT_ATTESTATION", "").lower() in ("1", "true", "yes"),
}

for _name, _value in RECOVERY_SETTINGS.items():
    if isinstance(_value, (int, float)) and not isinstance(_value, bool) and _value < 0:
        raise ConfigError(f"Recovery setting {_name} must not be negative, got {_value}")

DB_PATH = os.environ.get("RECOVERY_DB_PATH") or None


# ============================================================
# Wallet
# ============================================================

def get_private_key():
    """
    Retrieve the signing key for CLI/server use. Resolution order:
    1. RECOVERY_PRIVATE_KEY env var
    2. PRIVATE_KEY env var                  (common convention)
    3. Secret helper script                 (if RECOVERY_SECRET_CMD is set)

    Library callers pass the key to the orchestrator directly.
    """
    key = os.environ.get("RECOVERY_PRIVATE_KEY") or os.environ.get("PRIVATE_KEY")
    if key:
        return key if key.startswith("0x") else f"0x{key}"

    # Secret helper command (e.g. Vault, 1Password CLI, etc.)
    # Example: RECOVERY_SECRET_CMD="op read op://Vault/bridge-key/password"
    secret_cmd = os.environ.get("RECOVERY_SECRET_CMD")
    if secret_cmd:
        try:
            result = subprocess.run(
                secret_cmd, shell=True,
                capture_output=True, text=True, timeout=10
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            raise ConfigError(f"RECOVERY_SECRET_CMD failed: {e}") from e
        key = result.stdout.strip()
        if key and len(key) >= 64 and result.returncode == 0:
            return key if key.startswith("0x") else f"0x{key}"

    raise ConfigError(
        "No private key found. Set the RECOVERY_PRIVATE_KEY environment variable.\n"
        "Example: export RECOVERY_PRIVATE_KEY=0xYourPrivateKeyHere"
    )


# ============================================================
# ABIs and event signatures
# ============================================================

# Minimal ERC20 ABI (USDC)
ERC20_ABI = json.loads("""[
    {"inputs":[],"name":"decimals","outputs":[{"name":"","type":"uint8"}],"stateMutability":"view","type":"function"},
    {"inputs":[{"name":"account","type":"address"}],"name":"balanceOf","outputs":[{"name":"","type":"uint256"}],"stateMutability":"view","type":"function"},
    {"anonymous":false,"inputs":[{"indexed":true,"name":"from","type":"address"},{"indexed":true,"name":"to","type":"address"},{"indexed":false,"name":"value","type":"uint256"}],"name":"Transfer","type":"event"}
]""")

# CCTP MessageTransmitterV2 ABI (receiveMessage, usedNonces, events)
MESSAGE_TRANSMITTER_V2_ABI = json.loads("""[
    {
        "inputs": [
            {"name": "message", "type": "bytes"},
            {"name": "attestation", "type": "bytes"}
        ],
        "name": "receiveMessage",
        "outputs": [
            {"name": "success", "type": "bool"}
        ],
        "stateMutability": "nonpayable",
        "type": "function"
    },
    {
        "inputs": [{"name": "", "type": "bytes32"}],
        "name": "usedNonces",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function"
    },
    {
        "anonymous": false,
        "inputs": [{"indexed": false, "name": "message", "type": "bytes"}],
        "name": "MessageSent",
        "type": "event"
    },
    {
        "anonymous": false,
        "inputs": [
            {"indexed": true, "name": "caller", "type": "address"},
            {"indexed": false, "name": "sourceDomain", "type": "uint32"},
            {"indexed": true, "name": "nonce", "type": "bytes32"},
            {"indexed": false, "name": "sender", "type": "bytes32"},
            {"indexed": true, "name": "finalityThresholdExecuted", "type": "uint32"},
            {"indexed": false, "name": "messageBody", "type": "bytes"}
        ],
        "name": "MessageReceived",
        "type": "event"
    }
]""")

MESSAGE_SENT_EVENT = "MessageSent(bytes)"
MESSAGE_RECEIVED_EVENT = "MessageReceived(address,uint32,bytes32,bytes32,uint32,bytes)"
TRANSFER_EVENT = "Transfer(address,address,uint256)"
