"""Shared builders and fakes for the recovery tests. Nothing here touches a network."""

import pytest
from eth_abi import encode as abi_encode

from cctp_recovery.config import CHAINS, MESSAGE_RECEIVED_EVENT, MESSAGE_SENT_EVENT, TRANSFER_EVENT
from cctp_recovery.errors import NetworkError
from cctp_recovery.message import to_hex
from cctp_recovery.models import ATTESTATION_COMPLETE, ATTESTATION_PENDING, AttestationResult, MintResult
from cctp_recovery.registry import PendingBridgeRegistry
from cctp_recovery.rpc import address_topic, event_topic, format_amount

SEPOLIA = CHAINS["ethereum_sepolia"]
ARC = CHAINS["arc_testnet"]

TOKEN_MESSENGER = "0x8FE6B999Dc680CcFDD5Bf7EB0974218be2542DAA"
RECIPIENT = "0x" + "ab" * 20
DEPOSITOR = "0x" + "cd" * 20
BURN_TX = "0x" + "11" * 32
TRANSFER_TX = "0x" + "22" * 32
RECEIVE_TX = "0x" + "33" * 32
MINT_TX = "0x" + "44" * 32
AMOUNT = 1_500_000
NONCE = (123456789).to_bytes(8, "big").rjust(32, b"\x00")


def _u32(value):
    return value.to_bytes(4, "big")


def _u256(value):
    return value.to_bytes(32, "big")


def _slot(address):
    return bytes(12) + bytes.fromhex(address[2:])


def build_body(body_version=1, burn_token=SEPOLIA["usdc_address"], mint_recipient=RECIPIENT, amount=AMOUNT,
               message_sender=DEPOSITOR, max_fee=500, fee_executed=0, expiration_block=0):
    return (
        _u32(body_version) + _slot(burn_token) + _slot(mint_recipient) + _u256(amount)
        + _slot(message_sender) + _u256(max_fee) + _u256(fee_executed) + _u256(expiration_block)
    )


def build_message(version=1, source_domain=0, destination_domain=26, nonce=bytes(32),
                  sender=TOKEN_MESSENGER, recipient=TOKEN_MESSENGER, destination_caller="0x" + "00" * 20,
                  min_finality=1000, finality_executed=2000, **body):
    """A CCTP V2 burn message laid out field by field (376 bytes with the default body)."""
    header = (
        _u32(version) + _u32(source_domain) + _u32(destination_domain) + nonce
        + _slot(sender) + _slot(recipient) + _slot(destination_caller)
        + _u32(min_finality) + _u32(finality_executed)
    )
    return header + build_body(**body)


def message_sent_log(message, address=None, block_number=100):
    return {
        "address": address or SEPOLIA["message_transmitter_v2"],
        "topics": [event_topic(MESSAGE_SENT_EVENT)],
        "data": abi_encode(["bytes"], [message]),
        "blockNumber": block_number,
        "logIndex": 3,
        "transactionHash": BURN_TX,
    }


def transfer_log(to, value, tx_hash=TRANSFER_TX, block_number=900, sender="0x" + "00" * 20):
    return {
        "address": ARC["usdc_address"],
        "topics": [event_topic(TRANSFER_EVENT), address_topic(sender), address_topic(to)],
        "data": _u256(value),
        "blockNumber": block_number,
        "transactionHash": tx_hash,
    }


def message_received_log(message, tx_hash=RECEIVE_TX, block_number=950):
    """MessageReceived as MessageTransmitterV2 emits it for ``message`` (raw bytes)."""
    nonce = message[12:44]
    return {
        "address": ARC["message_transmitter_v2"],
        "topics": [
            event_topic(MESSAGE_RECEIVED_EVENT),
            address_topic(DEPOSITOR),
            to_hex(nonce),
            to_hex(_u256(2000)),
        ],
        "data": abi_encode(["uint32", "bytes32", "bytes"],
                           [int.from_bytes(message[4:8], "big"), message[44:76], message[148:]]),
        "blockNumber": block_number,
        "transactionHash": tx_hash,
    }


class FakeReader:
    """Stands in for ChainReader: receipts, logs, block height and balances held in memory."""

    def __init__(self, chain_key, block=1000, receipts=None, logs=None, balances=None, fail=()):
        self.chain_key = chain_key
        self.cfg = CHAINS[chain_key]
        self.block = block
        self.receipts = receipts or {}
        self.logs = logs or []
        self.balances = balances or {}
        self.fail = set(fail)
        self.log_queries = []
        self.last_endpoint = "https://fake.rpc"

    def _maybe_fail(self, op):
        if op in self.fail:
            raise NetworkError(f"{op} failed on all 2 RPC endpoints", endpoints=["a", "b"])

    def get_receipt(self, tx_hash):
        self._maybe_fail("get_receipt")
        return self.receipts.get(tx_hash)

    def block_number(self):
        self._maybe_fail("block_number")
        return self.block

    def get_logs(self, address, event_signature, from_block, to_block, topics=None):
        self._maybe_fail("get_logs")
        self._maybe_fail(f"get_logs:{event_signature}")
        self.log_queries.append((event_signature, from_block, to_block))
        topic0 = event_topic(event_signature)
        matched = []
        for log in self.logs:
            if log["address"].lower() != address.lower() or log["topics"][0] != topic0:
                continue
            if not from_block <= log["blockNumber"] <= to_block:
                continue
            wanted = topics or []
            if any(t is not None and log["topics"][i + 1].lower() != t.lower() for i, t in enumerate(wanted)):
                continue
            matched.append(log)
        return matched

    def token_balance(self, owner, token=None):
        balance = self.balances.get(owner.lower(), 0)
        return {
            "balance": balance,
            "balance_formatted": format_amount(balance),
            "available": True,
            "endpoint": self.last_endpoint,
            "error": None,
        }


class FakeAttestationClient:
    """Returns queued AttestationResults; the last one repeats."""

    def __init__(self, *results):
        self.results = list(results) or [AttestationResult(status=ATTESTATION_PENDING, error="pending")]
        self.calls = []

    def fetch_attestation(self, message_hash, max_attempts=None, interval=None, source_domain=None,
                          burn_tx_hash=None):
        self.calls.append((message_hash, max_attempts, source_domain, burn_tx_hash))
        if len(self.results) > 1:
            return self.results.pop(0)
        return self.results[0]


class FakeMintExecutor:
    def __init__(self, tx_hash=MINT_TX, error=None, nonce_used=False):
        self.tx_hash = tx_hash
        self.error = error
        self.used = nonce_used
        self.calls = []
        self.empty_calls = []

    def nonce_used(self, message_bytes):
        return self.used

    def complete_mint(self, message_bytes, attestation, private_key):
        self.calls.append((message_bytes, attestation))
        if self.error:
            raise self.error
        return MintResult(tx_hash=self.tx_hash, block_number=77, gas_used=120000,
                          explorer_url=f"{ARC['explorer']}/tx/{self.tx_hash}")

    def try_mint_without_attestation(self, message_bytes, private_key):
        self.empty_calls.append(message_bytes)
        return {"success": False, "tx_hash": None, "error": "execution reverted"}


def complete_attestation(message=None):
    return AttestationResult(status=ATTESTATION_COMPLETE, attestation="0x" + "ee" * 65,
                             message=to_hex(message) if message else None, source="v2")


@pytest.fixture
def message_bytes():
    return build_message(nonce=NONCE, expiration_block=5000)


@pytest.fixture
def source_reader(message_bytes):
    receipt = {"status": 1, "logs": [message_sent_log(message_bytes)]}
    return FakeReader("ethereum_sepolia", block=1000, receipts={BURN_TX: receipt})


@pytest.fixture
def dest_reader():
    return FakeReader("arc_testnet", block=20000)


@pytest.fixture
def registry():
    return PendingBridgeRegistry()
