"""
CCTP Recovery - Circle Iris attestation client

Two endpoints are used:
  GET /v2/messages/{sourceDomain}?transactionHash=0x...   message + attestation in one call
  GET /v1/attestations/{messageHash}                     attestation only

fetch_attestation() polls with a fixed interval and a hard attempt cap. Each
attempt asks the v2 endpoint first (when the burn tx is known) and falls back
to v1 on error. Rate limiting (429) stretches the wait, up to two minutes.
"""

import logging
import time

import requests

from .config import CCTP_API_BASE, RECOVERY_SETTINGS
from .errors import AttestationPending, NetworkError
from .message import message_hash as hash_message
from .models import (
    ATTESTATION_COMPLETE, ATTESTATION_FAILED, ATTESTATION_PENDING, AttestationResult,
)
from .retry import RetryPolicy, retry_call

logger = logging.getLogger(__name__)

# Literal Iris puts in the attestation field until the message is signed
PENDING_SENTINEL = "PENDING"

MAX_RATE_LIMIT_DELAY = 120


class RateLimited(NetworkError):
    pass


def usable_attestation(value):
    """True for a non-empty 0x hex payload. The PENDING sentinel and "0x" are not attestations."""
    if not isinstance(value, str) or value == PENDING_SENTINEL:
        return False
    if not value.startswith("0x") or len(value) <= 2:
        return False
    try:
        bytes.fromhex(value[2:])
    except ValueError:
        return False
    return True


def _normalize_hash(value):
    return value if value.startswith("0x") else f"0x{value}"


def parse_attestation(data, source):
    """
    Map one Iris message object to an AttestationResult.

    ``pending_confirmations`` and unknown statuses collapse to pending; a
    "complete" status without a usable attestation is still pending.
    """
    status = (data.get("status") or "").lower()
    attestation = data.get("attestation")
    message = data.get("message")
    # Iris returns "0x" for the message body while confirmations are pending
    if not usable_attestation(message):
        message = None

    if status == ATTESTATION_FAILED:
        return AttestationResult(
            status=ATTESTATION_FAILED,
            error=data.get("error") or "Attestation failed",
            source=source,
        )

    if usable_attestation(attestation) and status in ("", ATTESTATION_COMPLETE):
        return AttestationResult(
            status=ATTESTATION_COMPLETE,
            attestation=attestation,
            message=message,
            message_hash=data.get("messageHash") or (hash_message(message) if message else None),
            source=source,
        )

    if status not in ("", ATTESTATION_PENDING, "pending_confirmations", ATTESTATION_COMPLETE):
        logger.warning("Unknown attestation status %r from %s, treating as pending", status, source)
    return AttestationResult(
        status=ATTESTATION_PENDING,
        message=message,
        message_hash=data.get("messageHash") or (hash_message(message) if message else None),
        source=source,
    )


class AttestationClient:
    """
    Client for the Circle attestation service.

    ``session`` and ``sleep`` are injectable so tests never touch the network
    or the clock.
    """

    def __init__(self, api_base=None, session=None, timeout=None, sleep=time.sleep):
        self.api_base = (api_base or CCTP_API_BASE).rstrip("/")
        self.session = session or requests.Session()
        self.timeout = timeout if timeout is not None else RECOVERY_SETTINGS["attestation_http_timeout"]
        self.sleep = sleep
        self._rate_limit_delay = None

    def _get(self, path, params=None):
        url = f"{self.api_base}{path}"
        try:
            resp = self.session.get(url, params=params, timeout=self.timeout)
        except requests.RequestException as e:
            raise NetworkError(f"Attestation API request failed: {e}", endpoints=[url], last_error=e) from e
        if resp.status_code == 429:
            raise RateLimited(f"Rate limited by attestation API ({path})", endpoints=[url])
        return resp

    def _json(self, resp, path):
        try:
            return resp.json()
        except ValueError as e:
            raise NetworkError(f"Attestation API returned non-JSON body for {path}: {e}") from e

    # ------------------------------------------------------------
    # Single lookups
    # ------------------------------------------------------------

    def fetch_message(self, source_domain, burn_tx_hash, message_hash=None):
        """
        One call to the v2 messages endpoint.

        When the transaction emitted several messages, the one whose hash
        equals ``message_hash`` is chosen, else the first. 404 (not indexed
        yet) is pending. Other HTTP errors raise NetworkError.
        """
        path = f"/v2/messages/{source_domain}"
        resp = self._get(path, params={"transactionHash": _normalize_hash(burn_tx_hash)})
        if resp.status_code == 404:
            return AttestationResult(status=ATTESTATION_PENDING, error="Message not indexed yet", source="v2")
        if resp.status_code != 200:
            raise NetworkError(f"Circle API error: {resp.status_code} - {resp.text[:200]}")

        data = self._json(resp, path)
        messages = data.get("messages") or []
        if not messages:
            return AttestationResult(status=ATTESTATION_PENDING, error="No messages for transaction yet", source="v2")

        results = [parse_attestation(m, "v2") for m in messages]
        if message_hash:
            for result in results:
                if result.message_hash and result.message_hash.lower() == message_hash.lower():
                    return result
        return results[0]

    def fetch_v1(self, message_hash):
        """One call to the v1 attestations endpoint. 404 means pending."""
        path = f"/v1/attestations/{_normalize_hash(message_hash)}"
        resp = self._get(path)
        if resp.status_code == 404:
            return AttestationResult(status=ATTESTATION_PENDING, message_hash=message_hash, source="v1")
        if resp.status_code != 200:
            raise NetworkError(f"Attestation API error: {resp.status_code}")
        result = parse_attestation(self._json(resp, path), "v1")
        result.message_hash = result.message_hash or message_hash
        return result

    def poll_once(self, message_hash, source_domain=None, burn_tx_hash=None):
        """v2 bulk lookup first when the burn tx is known, v1 on error."""
        if burn_tx_hash is not None and source_domain is not None:
            try:
                return self.fetch_message(source_domain, burn_tx_hash, message_hash=message_hash)
            except RateLimited:
                raise
            except NetworkError as e:
                if not message_hash:
                    raise
                logger.info("v2 messages lookup failed (%s), falling back to v1", e)
        if not message_hash:
            raise NetworkError("No message hash and no burn transaction to look up")
        return self.fetch_v1(message_hash)

    # ------------------------------------------------------------
    # Polling
    # ------------------------------------------------------------

    def fetch_attestation(self, message_hash, max_attempts=None, interval=None,
                          source_domain=None, burn_tx_hash=None):
        """
        Poll until the attestation is complete or failed, or attempts run out.

        Never raises for network errors: after ``max_attempts`` the result is
        pending with the last error so the caller can come back later.
        """
        max_attempts = max_attempts or RECOVERY_SETTINGS["attestation_max_attempts"]
        interval = RECOVERY_SETTINGS["attestation_interval"] if interval is None else interval
        policy = RetryPolicy(attempts=max_attempts, delay=interval)
        state = {"attempt": 0, "last_error": None}

        logger.info("Polling attestation for %s (max %d attempts, %.1fs apart, ~%.1f min)",
                    message_hash, max_attempts, interval, max_attempts * interval / 60)

        def attempt():
            state["attempt"] += 1
            try:
                result = self.poll_once(message_hash, source_domain, burn_tx_hash)
            except RateLimited as e:
                self._rate_limit_delay = min((self._rate_limit_delay or max(interval, 1)) * 3,
                                             MAX_RATE_LIMIT_DELAY)
                logger.warning("%s, backing off %.0fs", e, self._rate_limit_delay)
                state["last_error"] = str(e)
                raise AttestationPending(AttestationResult(status=ATTESTATION_PENDING, error=str(e)),
                                         retry_after=self._rate_limit_delay)
            except NetworkError as e:
                logger.warning("Attestation poll error (attempt %d/%d): %s", state["attempt"], max_attempts, e)
                state["last_error"] = str(e)
                raise AttestationPending(AttestationResult(status=ATTESTATION_PENDING, error=str(e)))

            self._rate_limit_delay = None
            if result.status == ATTESTATION_PENDING:
                logger.info("Attestation pending (attempt %d/%d)", state["attempt"], max_attempts)
                raise AttestationPending(result)
            return result

        try:
            result = retry_call(attempt, policy, retry_on=(AttestationPending,), sleep=self.sleep,
                                label="fetch_attestation")
        except AttestationPending as e:
            error = f"Attestation still pending after {max_attempts} attempts"
            if state["last_error"]:
                error += f" (last error: {state['last_error']})"
            logger.warning("%s for %s", error, message_hash)
            return AttestationResult(
                status=ATTESTATION_PENDING,
                message=e.result.message,
                message_hash=message_hash,
                error=error,
                attempts=state["attempt"],
                source=e.result.source,
            )

        result.attempts = state["attempt"]
        result.message_hash = result.message_hash or message_hash
        if result.status == ATTESTATION_COMPLETE:
            logger.info("Attestation ready for %s after %d attempt(s)", message_hash, result.attempts)
        else:
            logger.error("Attestation failed for %s: %s", message_hash, result.error)
        return result
