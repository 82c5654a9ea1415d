import json
import threading

import pytest

from cctp_recovery.errors import ConfigError, MintTransactionFailed
from cctp_recovery.message import to_hex
from cctp_recovery.models import (
    ATTESTATION_FAILED, ATTESTATION_PENDING, STATE_ALREADY_COMPLETE, STATE_EXPIRED, STATE_FAILED,
    STATE_IN_PROGRESS, STATE_PENDING, STATE_SUCCESS, STATUS_ATTESTATION_READY, STATUS_EXPIRED,
    STATUS_MINT_COMPLETED, STATUS_PENDING_ATTESTATION, AttestationResult,
)
from cctp_recovery.recovery import RecoveryOrchestrator, main, normalize_tx_hash

from conftest import (
    BURN_TX, MINT_TX, NONCE, RECEIVE_TX, RECIPIENT, TRANSFER_TX, FakeAttestationClient, FakeMintExecutor,
    FakeReader, build_message, complete_attestation, message_received_log, message_sent_log, transfer_log,
)

PRIVATE_KEY = "0x" + "01" * 32


class SyncTasks:
    def __init__(self):
        self.ran = []

    def submit(self, fn, *args, label=None, **kwargs):
        self.ran.append(label)
        return fn(*args, **kwargs)


def orchestrator(source_reader, dest_reader, registry, attestation=None, mint=None, **kwargs):
    kwargs.setdefault("try_without_attestation", False)
    return RecoveryOrchestrator(
        source_chain="ethereum_sepolia",
        dest_chain="arc_testnet",
        source_reader=source_reader,
        dest_reader=dest_reader,
        attestation_client=attestation or FakeAttestationClient(),
        mint_executor=mint or FakeMintExecutor(),
        registry=registry,
        **kwargs,
    )


def test_full_recovery_mints_with_attested_message(source_reader, dest_reader, registry, message_bytes):
    # MessageSent carries the zero-nonce form; Iris returns the attested one
    emitted = build_message(expiration_block=5000)
    source_reader.receipts[BURN_TX]["logs"] = [message_sent_log(emitted)]
    attestation = FakeAttestationClient(complete_attestation(message_bytes))
    mint = FakeMintExecutor()

    result = orchestrator(source_reader, dest_reader, registry, attestation, mint).recover(
        BURN_TX, private_key=PRIVATE_KEY)

    assert result.success
    assert result.state == STATE_SUCCESS
    assert result.mint_tx_hash == MINT_TX
    assert result.message_bytes == to_hex(message_bytes)
    assert mint.calls == [(to_hex(message_bytes), "0x" + "ee" * 65)]
    assert attestation.calls[0][2:] == (0, BURN_TX)
    assert result.expiration.blocks_remaining == 4000

    bridge = registry.get(BURN_TX)
    assert bridge.status == STATUS_MINT_COMPLETED
    assert bridge.mint_tx_hash == MINT_TX
    assert bridge.amount == "1.5"


def test_second_recovery_returns_same_mint_without_minting_again(source_reader, dest_reader, registry,
                                                                   message_bytes):
    mint = FakeMintExecutor()
    orch = orchestrator(source_reader, dest_reader, registry,
                        FakeAttestationClient(complete_attestation(message_bytes)), mint)

    first = orch.recover(BURN_TX, private_key=PRIVATE_KEY)
    second = orch.recover(BURN_TX, private_key=PRIVATE_KEY)

    assert first.state == second.state == STATE_SUCCESS
    assert first.mint_tx_hash == second.mint_tx_hash == MINT_TX
    assert len(mint.calls) == 1


def test_expired_message_never_fetches_attestation_or_mints(dest_reader, registry):
    expired = build_message(nonce=NONCE, expiration_block=900)
    source = FakeReader("ethereum_sepolia", block=1000,
                        receipts={BURN_TX: {"status": 1, "logs": [message_sent_log(expired)]}})
    attestation = FakeAttestationClient(complete_attestation(expired))
    mint = FakeMintExecutor()

    result = orchestrator(source, dest_reader, registry, attestation, mint).recover(BURN_TX, private_key=PRIVATE_KEY)

    assert result.state == STATE_EXPIRED
    assert not result.success
    assert result.error == "Message has expired"
    assert result.expiration.expired
    assert attestation.calls == []
    assert mint.calls == []
    assert registry.get(BURN_TX).status == STATUS_EXPIRED


def test_attested_expiration_is_checked_before_minting(dest_reader, registry):
    # MessageSent has expirationBlock 0; only the attested message carries the deadline
    emitted = build_message(expiration_block=0)
    attested = build_message(nonce=NONCE, expiration_block=900)
    source = FakeReader("ethereum_sepolia", block=1000,
                        receipts={BURN_TX: {"status": 1, "logs": [message_sent_log(emitted)]}})
    attestation = FakeAttestationClient(complete_attestation(attested))
    mint = FakeMintExecutor()

    result = orchestrator(source, dest_reader, registry, attestation, mint).recover(BURN_TX, private_key=PRIVATE_KEY)

    assert result.state == STATE_EXPIRED
    assert not result.success
    assert result.error == "Message has expired"
    assert result.expiration.expired
    assert result.expiration.expiration_block == 900
    assert len(attestation.calls) == 1
    assert mint.calls == []
    assert registry.get(BURN_TX).status == STATUS_EXPIRED


def test_pending_then_success_on_later_invocation(source_reader, dest_reader, registry, message_bytes):
    pending = AttestationResult(status=ATTESTATION_PENDING, error="Attestation still pending after 3 attempts")
    attestation = FakeAttestationClient(pending, complete_attestation(message_bytes))
    orch = orchestrator(source_reader, dest_reader, registry, attestation)

    first = orch.recover(BURN_TX, private_key=PRIVATE_KEY, max_attempts=3, interval=0)

    assert first.state == STATE_PENDING
    assert first.pending
    assert not first.success
    assert registry.get(BURN_TX).status == STATUS_PENDING_ATTESTATION

    second = orch.recover(BURN_TX, private_key=PRIVATE_KEY, max_attempts=3, interval=0)

    assert second.state == STATE_SUCCESS
    assert registry.get(BURN_TX).status == STATUS_MINT_COMPLETED


def test_already_received_transfer_skips_attestation(source_reader, registry):
    dest = FakeReader("arc_testnet", block=20000, logs=[transfer_log(RECIPIENT, 1_500_000, block_number=19900)])
    attestation = FakeAttestationClient()
    mint = FakeMintExecutor()

    result = orchestrator(source_reader, dest, registry, attestation, mint).recover(BURN_TX, private_key=PRIVATE_KEY)

    assert result.success
    assert result.state == STATE_ALREADY_COMPLETE
    assert result.mint_tx_hash == TRANSFER_TX
    assert result.balance_evidence["match"] is True
    assert attestation.calls == []
    assert mint.calls == []
    assert registry.get(BURN_TX).status == STATUS_MINT_COMPLETED


def test_used_nonce_is_already_complete(source_reader, dest_reader, registry, message_bytes):
    mint = FakeMintExecutor(nonce_used=True)
    orch = orchestrator(source_reader, dest_reader, registry,
                        FakeAttestationClient(complete_attestation(message_bytes)), mint)

    result = orch.recover(BURN_TX, private_key=PRIVATE_KEY)

    assert result.state == STATE_ALREADY_COMPLETE
    assert result.mint_tx_hash is None
    assert mint.calls == []
    assert registry.get(BURN_TX).status == STATUS_MINT_COMPLETED


def test_used_nonce_records_receive_tx_and_later_calls_skip_the_chain(source_reader, registry, message_bytes):
    # Received long before the normal receipt window, so only the used-nonce lookup sees it
    dest = FakeReader("arc_testnet", block=20000, logs=[message_received_log(message_bytes, block_number=5000)])
    attestation = FakeAttestationClient(complete_attestation(message_bytes))
    mint = FakeMintExecutor(nonce_used=True)
    orch = orchestrator(source_reader, dest, registry, attestation, mint)

    first = orch.recover(BURN_TX, private_key=PRIVATE_KEY)
    second = orch.recover(BURN_TX, private_key=PRIVATE_KEY)

    assert first.state == STATE_ALREADY_COMPLETE
    assert first.mint_tx_hash == second.mint_tx_hash == RECEIVE_TX
    assert second.state == STATE_SUCCESS
    assert len(attestation.calls) == 1
    assert mint.calls == []
    assert registry.get(BURN_TX).mint_tx_hash == RECEIVE_TX


def test_completed_without_known_tx_is_not_rechecked(source_reader, dest_reader, registry, message_bytes):
    attestation = FakeAttestationClient(complete_attestation(message_bytes))
    orch = orchestrator(source_reader, dest_reader, registry, attestation, FakeMintExecutor(nonce_used=True))

    orch.recover(BURN_TX, private_key=PRIVATE_KEY)
    second = orch.recover(BURN_TX, private_key=PRIVATE_KEY)

    assert second.success
    assert second.state == STATE_ALREADY_COMPLETE
    assert second.mint_tx_hash is None
    assert len(attestation.calls) == 1


def test_without_key_stops_once_attestation_is_ready(source_reader, dest_reader, registry, message_bytes):
    mint = FakeMintExecutor()
    orch = orchestrator(source_reader, dest_reader, registry,
                        FakeAttestationClient(complete_attestation(message_bytes)), mint)

    result = orch.recover(BURN_TX)

    assert result.state == STATE_PENDING
    assert result.attestation == "0x" + "ee" * 65
    assert "mint pending" in result.message
    assert mint.calls == []
    assert registry.get(BURN_TX).status == STATUS_ATTESTATION_READY


def test_failed_attestation(source_reader, dest_reader, registry):
    failed = AttestationResult(status=ATTESTATION_FAILED, error="invalid burn")
    result = orchestrator(source_reader, dest_reader, registry, FakeAttestationClient(failed)).recover(
        BURN_TX, private_key=PRIVATE_KEY)

    assert result.state == STATE_FAILED
    assert result.error == "invalid burn"


def test_failed_mint_is_reported_and_retryable(source_reader, dest_reader, registry, message_bytes):
    error = MintTransactionFailed("receiveMessage reverted", tx_hash=MINT_TX)
    orch = orchestrator(source_reader, dest_reader, registry,
                        FakeAttestationClient(complete_attestation(message_bytes)), FakeMintExecutor(error=error))

    result = orch.recover(BURN_TX, private_key=PRIVATE_KEY)

    assert result.state == STATE_FAILED
    assert result.mint_tx_hash == MINT_TX
    assert "safe to run the recovery again" in result.message
    assert registry.get(BURN_TX).status == STATUS_ATTESTATION_READY


def test_missing_message_sent_is_a_failed_result(dest_reader, registry):
    source = FakeReader("ethereum_sepolia", receipts={BURN_TX: {"status": 1, "logs": []}})

    result = orchestrator(source, dest_reader, registry).recover(BURN_TX)

    assert result.state == STATE_FAILED
    assert "MessageSent event not found" in result.error
    assert BURN_TX not in registry


def test_source_rpc_outage_is_a_failed_result(dest_reader, registry):
    source = FakeReader("ethereum_sepolia", fail={"get_receipt"})

    result = orchestrator(source, dest_reader, registry).recover(BURN_TX)

    assert result.state == STATE_FAILED
    assert "RPC endpoints" in result.error


def test_concurrent_recovery_of_same_burn_is_in_progress(source_reader, dest_reader, registry, message_bytes):
    inside = threading.Event()
    release = threading.Event()

    class BlockingAttestation(FakeAttestationClient):
        def fetch_attestation(self, *args, **kwargs):
            inside.set()
            release.wait(5)
            return super().fetch_attestation(*args, **kwargs)

    orch = orchestrator(source_reader, dest_reader, registry, BlockingAttestation(complete_attestation(message_bytes)))
    results = []
    worker = threading.Thread(target=lambda: results.append(orch.recover(BURN_TX, private_key=PRIVATE_KEY)))
    worker.start()
    assert inside.wait(5)

    blocked = orch.recover(BURN_TX, private_key=PRIVATE_KEY)
    release.set()
    worker.join(5)

    assert blocked.state == STATE_IN_PROGRESS
    assert results[0].state == STATE_SUCCESS


def test_try_without_attestation_when_enabled(source_reader, dest_reader, registry):
    mint = FakeMintExecutor()
    orch = orchestrator(source_reader, dest_reader, registry, mint=mint, try_without_attestation=True)

    result = orch.recover(BURN_TX, private_key=PRIVATE_KEY, max_attempts=1, interval=0)

    assert result.state == STATE_PENDING
    assert len(mint.empty_calls) == 1


def test_notifier_receives_every_result(source_reader, dest_reader, registry):
    seen = []
    tasks = SyncTasks()
    orch = orchestrator(source_reader, dest_reader, registry, notifier=seen.append, task_runner=tasks)

    result = orch.recover(BURN_TX)

    assert seen == [result]
    assert tasks.ran == ["recovery notifier"]


def test_recover_tracked_skips_finished_bridges(source_reader, dest_reader, registry, message_bytes):
    registry.add("0x" + "55" * 32, RECIPIENT, "2")
    registry.mark_expired("0x" + "55" * 32)
    registry.add(BURN_TX, RECIPIENT, "1.5")
    orch = orchestrator(source_reader, dest_reader, registry, FakeAttestationClient(complete_attestation(message_bytes)))

    results = orch.recover_tracked(private_key=PRIVATE_KEY)

    assert [r.burn_tx_hash for r in results] == [BURN_TX]
    assert results[0].state == STATE_SUCCESS


def test_same_source_and_destination_is_a_config_error(registry):
    with pytest.raises(ConfigError):
        RecoveryOrchestrator(source_chain="arc_testnet", dest_chain="arc_testnet", registry=registry)


def test_result_to_dict_drops_empty_fields(source_reader, dest_reader, registry):
    d = orchestrator(source_reader, dest_reader, registry).recover(BURN_TX, max_attempts=1, interval=0).to_dict()

    assert d["state"] == STATE_PENDING
    assert "mint_tx_hash" not in d
    assert d["expiration"]["expiration_block"] == "5000"
    json.dumps(d)


def test_normalize_tx_hash():
    assert normalize_tx_hash("  ABCD ") == "0xabcd"
    assert normalize_tx_hash("0xABCD") == "0xabcd"


def test_cli_decode_prints_json(capsys):
    raw = build_message(nonce=NONCE, expiration_block=5000)

    assert main(["decode", to_hex(raw)]) == 0

    out = json.loads(capsys.readouterr().out)
    assert out["nonce"] == 123456789
    assert out["expiration_block"] == "5000"


def test_cli_reports_errors_as_json(capsys):
    assert main(["decode", "0xnot-hex"]) == 1

    err = capsys.readouterr().err.strip().splitlines()[-1]
    assert "Invalid hex data" in json.loads(err)["error"]
