#!/usr/bin/env python3
"""
CCTP Recovery - Stuck bridge recovery

Completes CCTP V2 bridges whose burn landed on the source chain but whose mint
never happened on the destination. One recover() call walks:

    extract_message -> check_expiration -> check_already_received
        -> fetch_attestation -> complete_mint

and stops at the first terminal state (expired, already_complete, pending,
success, failed). Every call is safe to repeat: it re-extracts the message,
skips work already done and never mints twice for one burn.

Usage:
    python -m cctp_recovery.recovery recover 0xBURN_TX [--recipient 0x...]
    python -m cctp_recovery.recovery recover-all
    python -m cctp_recovery.recovery pending
    python -m cctp_recovery.recovery decode 0xMESSAGE_BYTES
    python -m cctp_recovery.recovery check-expiration 0xBURN_TX
    python -m cctp_recovery.recovery check-received 0xBURN_TX [--recipient 0x...]
"""

import sys
import json
import logging
import argparse

from .attestation import AttestationClient
from .config import CHAINS, DEST_CHAIN, RECOVERY_SETTINGS, SOURCE_CHAIN, get_private_key
from .errors import ConfigError, RecoveryError, RecoveryInProgress
from .expiration import check_expiration
from .extractor import extract_message
from .message import decode_message
from .mint import MintExecutor
from .models import (
    ATTESTATION_FAILED, STATE_ALREADY_COMPLETE, STATE_EXPIRED, STATE_FAILED, STATE_IN_PROGRESS,
    STATE_PENDING, STATE_SUCCESS, STATUS_ATTESTATION_READY, STATUS_MINT_COMPLETED,
    STATUS_PENDING_ATTESTATION, RecoveryResult,
)
from .receipts import ReceiptDetector
from .registry import get_registry
from .rpc import ChainReader, format_amount
from .tasks import TaskRunner

logger = logging.getLogger(__name__)

MANUAL_RECOVERY_HINT = (
    "You can also complete the mint manually with a CCTP recovery tool using "
    "the burn transaction hash."
)


def normalize_tx_hash(tx_hash):
    tx_hash = tx_hash.strip().lower()
    return tx_hash if tx_hash.startswith("0x") else f"0x{tx_hash}"


class RecoveryOrchestrator:
    """
    Composes extractor, expiration guard, receipt detector, attestation client
    and mint executor into one idempotent recover() call.

    Every collaborator can be injected; defaults are built from config for
    SOURCE_CHAIN -> DEST_CHAIN. ``notifier(result)`` is called on the task
    runner after each recovery and its failures are only logged.
    """

    def __init__(self, source_chain=None, dest_chain=None, source_reader=None, dest_reader=None,
                 attestation_client=None, receipt_detector=None, mint_executor=None, registry=None,
                 notifier=None, task_runner=None, try_without_attestation=None):
        self.source_chain = source_chain or SOURCE_CHAIN
        self.dest_chain = dest_chain or DEST_CHAIN
        if self.source_chain == self.dest_chain:
            raise ConfigError("Source and destination chains must be different")
        self.src_cfg = CHAINS[self.source_chain]
        self.dst_cfg = CHAINS[self.dest_chain]

        self.source_reader = source_reader or ChainReader(self.source_chain)
        self.dest_reader = dest_reader or ChainReader(self.dest_chain)
        self.attestation = attestation_client or AttestationClient()
        self.receipts = receipt_detector or ReceiptDetector(self.dest_reader)
        self.mint = mint_executor or MintExecutor(self.dest_chain, reader=self.dest_reader)
        self.registry = registry if registry is not None else get_registry()
        self.notifier = notifier
        self.tasks = task_runner
        if notifier is not None and task_runner is None:
            self.tasks = TaskRunner(max_workers=1, name="cctp-notify")
        self.try_without_attestation = (RECOVERY_SETTINGS["try_without_attestation"]
                                        if try_without_attestation is None else try_without_attestation)

    def __repr__(self):
        return f"RecoveryOrchestrator({self.source_chain!r} -> {self.dest_chain!r})"

    # ------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------

    def recover(self, burn_tx_hash, recipient=None, private_key=None, max_attempts=None, interval=None):
        """
        Recover one burn. Always returns a RecoveryResult; only ConfigError
        escapes.

        ``private_key`` signs the mint. Without it the call stops once the
        attestation is ready.
        """
        burn_tx_hash = normalize_tx_hash(burn_tx_hash)
        logger.info("Recovering bridge %s (%s -> %s)", burn_tx_hash, self.src_cfg["name"], self.dst_cfg["name"])
        try:
            with self.registry.guard(burn_tx_hash):
                result = self._recover(burn_tx_hash, recipient, private_key, max_attempts, interval)
        except RecoveryInProgress as e:
            logger.warning("%s", e)
            result = RecoveryResult(
                success=False, state=STATE_IN_PROGRESS, burn_tx_hash=burn_tx_hash, error=str(e),
                message="A recovery for this burn is already running; try again when it finishes.",
            )
        except ConfigError:
            raise
        except RecoveryError as e:
            logger.error("Recovery of %s failed: %s", burn_tx_hash, e)
            result = RecoveryResult(
                success=False, state=STATE_FAILED, burn_tx_hash=burn_tx_hash, error=str(e),
                message=f"Recovery failed: {e}",
            )

        logger.info("Recovery of %s ended in state %s: %s", burn_tx_hash, result.state, result.message)
        self._notify(result)
        return result

    def recover_tracked(self, private_key=None, max_attempts=None, interval=None):
        """One periodic pass: re-run recovery for every tracked bridge still waiting."""
        results = []
        for bridge in self.registry.list():
            if bridge.status not in (STATUS_PENDING_ATTESTATION, STATUS_ATTESTATION_READY):
                continue
            results.append(self.recover(bridge.burn_tx_hash, bridge.recipient, private_key,
                                        max_attempts=max_attempts, interval=interval))
        logger.info("Recovery pass finished: %d bridge(s) checked", len(results))
        return results

    # ------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------

    def _recover(self, burn_tx_hash, recipient, private_key, max_attempts, interval):
        tracked = self.registry.get(burn_tx_hash)
        if tracked is not None and tracked.status == STATUS_MINT_COMPLETED:
            self.registry.touch(burn_tx_hash)
            logger.info("Bridge %s already minted in %s", burn_tx_hash, tracked.mint_tx_hash or "an unknown tx")
            if tracked.mint_tx_hash:
                return RecoveryResult(
                    success=True, state=STATE_SUCCESS, burn_tx_hash=burn_tx_hash,
                    message_hash=tracked.message_hash, mint_tx_hash=tracked.mint_tx_hash,
                    message=f"Mint already completed in {tracked.mint_tx_hash}.",
                )
            return RecoveryResult(
                success=True, state=STATE_ALREADY_COMPLETE, burn_tx_hash=burn_tx_hash,
                message_hash=tracked.message_hash,
                message="Mint was already completed earlier; its transaction could not be located.",
            )

        # extract_message
        extracted = extract_message(burn_tx_hash, self.source_reader)
        message = decode_message(extracted.message_bytes)
        recipient = recipient or message.mint_recipient
        amount = format_amount(message.amount or 0, self.dst_cfg.get("usdc_decimals", 6))
        self.registry.add(burn_tx_hash, recipient, amount, extracted.message_hash)
        self.registry.touch(burn_tx_hash)

        base = dict(
            burn_tx_hash=burn_tx_hash,
            message_hash=extracted.message_hash,
            message_bytes=extracted.message_bytes,
        )

        # check_expiration
        expiration = check_expiration(message, self.source_reader)
        if expiration.expired:
            self.registry.mark_expired(burn_tx_hash)
            return RecoveryResult(
                success=False, state=STATE_EXPIRED, error="Message has expired",
                message=expiration.message, expiration=expiration, **base,
            )

        # check_already_received
        check = self.receipts.has_received(message, recipient=recipient)
        if check.received:
            self.registry.mark_mint_completed(burn_tx_hash, check.tx_hash)
            return RecoveryResult(
                success=True, state=STATE_ALREADY_COMPLETE, mint_tx_hash=check.tx_hash,
                balance_evidence=check.balance_evidence, expiration=expiration,
                message=f"Mint was already completed (found via {check.strategy}); nothing to do.",
                **base,
            )

        # fetch_attestation
        attestation = self.attestation.fetch_attestation(
            extracted.message_hash, max_attempts=max_attempts, interval=interval,
            source_domain=self.src_cfg["cctp_domain"], burn_tx_hash=burn_tx_hash,
        )
        if attestation.status == ATTESTATION_FAILED:
            return RecoveryResult(
                success=False, state=STATE_FAILED, error=attestation.error, expiration=expiration,
                message=f"Attestation service reported failure for this message. {MANUAL_RECOVERY_HINT}",
                **base,
            )
        # Iris returns the attested form (nonce filled in) that receiveMessage expects
        mint_message = attestation.message or extracted.message_bytes
        attested = decode_message(mint_message) if attestation.message else message

        # MessageSent leaves expirationBlock at 0; the attested form carries the real one
        if attested is not message:
            expiration = check_expiration(attested, self.source_reader)
            if expiration.expired:
                self.registry.mark_expired(burn_tx_hash)
                return RecoveryResult(
                    success=False, state=STATE_EXPIRED, error="Message has expired",
                    message=expiration.message, expiration=expiration, **base,
                )

        if not attestation.is_complete:
            if self.try_without_attestation and private_key:
                outcome = self.mint.try_mint_without_attestation(mint_message, private_key)
                if outcome["success"]:
                    self.registry.mark_mint_completed(burn_tx_hash, outcome["tx_hash"])
                    return RecoveryResult(
                        success=True, state=STATE_SUCCESS, mint_tx_hash=outcome["tx_hash"],
                        expiration=expiration, message="Mint completed without attestation.", **base,
                    )
            return RecoveryResult(
                success=False, state=STATE_PENDING, error=attestation.error, expiration=expiration,
                balance_evidence=check.balance_evidence,
                message=(
                    "Attestation is not ready yet. Sepolia burns usually take 13-19 minutes; "
                    "run the recovery again later."
                ),
                **base,
            )

        self.registry.mark_attestation_ready(burn_tx_hash, extracted.message_hash)
        base.update(message_bytes=mint_message, attestation=attestation.attestation)

        # complete_mint
        if not private_key:
            return RecoveryResult(
                success=False, state=STATE_PENDING, expiration=expiration,
                message="Attestation ready, mint pending: no signing key was supplied.", **base,
            )

        if self.mint.nonce_used(mint_message):
            receive_tx = self.receipts.find_receive_tx(attested)
            self.registry.mark_mint_completed(burn_tx_hash, receive_tx)
            return RecoveryResult(
                success=True, state=STATE_ALREADY_COMPLETE, mint_tx_hash=receive_tx, expiration=expiration,
                message="Message nonce is already used on the destination chain; the mint was completed earlier.",
                **base,
            )

        try:
            mint = self.mint.complete_mint(mint_message, attestation.attestation, private_key)
        except RecoveryError as e:
            retry_hint = "It is safe to run the recovery again." if getattr(e, "retryable", True) else ""
            return RecoveryResult(
                success=False, state=STATE_FAILED, error=str(e), expiration=expiration,
                mint_tx_hash=getattr(e, "tx_hash", None),
                message=f"Attestation ready but the mint failed. {retry_hint}".strip(),
                **base,
            )

        self.registry.mark_mint_completed(burn_tx_hash, mint.tx_hash)
        return RecoveryResult(
            success=True, state=STATE_SUCCESS, mint_tx_hash=mint.tx_hash, expiration=expiration,
            message=f"Bridge recovered: minted on {self.dst_cfg['name']} ({mint.explorer_url}).",
            **base,
        )

    def _notify(self, result):
        if self.notifier is None:
            return
        self.tasks.submit(self.notifier, result, label="recovery notifier")


_default_orchestrator = None


def get_orchestrator():
    """Process-wide orchestrator for the configured chains."""
    global _default_orchestrator
    if _default_orchestrator is None:
        _default_orchestrator = RecoveryOrchestrator()
    return _default_orchestrator


def recover_pending_bridge(burn_tx_hash, recipient=None, private_key=None, **kwargs):
    """Recover one burn with the process-wide orchestrator."""
    return get_orchestrator().recover(burn_tx_hash, recipient, private_key, **kwargs)


# ============================================================
# CLI
# ============================================================

def _dump(data):
    print(json.dumps(data, indent=2, default=str))


def _cli(argv=None):
    parser = argparse.ArgumentParser(description="CCTP V2 stuck bridge recovery")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    sub = parser.add_subparsers(dest="command")

    rc = sub.add_parser("recover", help="Recover one burn (attestation + mint)")
    rc.add_argument("burn_tx_hash", help="Burn tx hash on the source chain")
    rc.add_argument("--recipient", default=None, help="Recipient (defaults to the message's mint recipient)")
    rc.add_argument("--max-attempts", type=int, default=None, help="Attestation poll attempts")
    rc.add_argument("--interval", type=float, default=None, help="Seconds between attestation polls")

    ra = sub.add_parser("recover-all", help="Re-run recovery for every tracked bridge still waiting")
    ra.add_argument("--max-attempts", type=int, default=None)
    ra.add_argument("--interval", type=float, default=None)

    sub.add_parser("pending", help="List tracked bridges")

    dc = sub.add_parser("decode", help="Decode CCTP V2 message bytes")
    dc.add_argument("message_hex")

    ce = sub.add_parser("check-expiration", help="Check whether a burn's message has expired")
    ce.add_argument("burn_tx_hash")

    cr = sub.add_parser("check-received", help="Check whether a burn was already minted")
    cr.add_argument("burn_tx_hash")
    cr.add_argument("--recipient", default=None)

    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )

    if args.command == "recover":
        result = get_orchestrator().recover(
            args.burn_tx_hash, args.recipient, get_private_key(),
            max_attempts=args.max_attempts, interval=args.interval,
        )
        _dump(result.to_dict())

    elif args.command == "recover-all":
        results = get_orchestrator().recover_tracked(
            get_private_key(), max_attempts=args.max_attempts, interval=args.interval,
        )
        _dump([r.to_dict() for r in results])

    elif args.command == "pending":
        bridges = get_registry().snapshot()
        _dump({"count": len(bridges), "bridges": bridges})

    elif args.command == "decode":
        _dump(decode_message(args.message_hex).to_dict())

    elif args.command == "check-expiration":
        reader = ChainReader(SOURCE_CHAIN)
        extracted = extract_message(normalize_tx_hash(args.burn_tx_hash), reader)
        _dump(check_expiration(extracted.message_bytes, reader).to_dict())

    elif args.command == "check-received":
        extracted = extract_message(normalize_tx_hash(args.burn_tx_hash), ChainReader(SOURCE_CHAIN))
        message = decode_message(extracted.message_bytes)
        check = ReceiptDetector(ChainReader(DEST_CHAIN)).has_received(message, recipient=args.recipient)
        _dump({
            "received": check.received,
            "tx_hash": check.tx_hash,
            "strategy": check.strategy,
            "balance_evidence": check.balance_evidence,
            "errors": check.errors,
        })

    else:
        parser.print_help()
    return 0


def main(argv=None):
    try:
        return _cli(argv)
    except RecoveryError as e:
        print(json.dumps({"error": str(e)}), file=sys.stderr)
        return 1
    except Exception as e:
        logger.exception("Unexpected error")
        print(json.dumps({"error": f"Unexpected error: {e}"}), file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
