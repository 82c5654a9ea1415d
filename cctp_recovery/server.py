#!/usr/bin/env python3
"""
CCTP Recovery - Status API Server

A lightweight HTTP server exposing the pending bridge registry to the
operations dashboard, plus a hook for scheduling recoveries.

Usage:
    RECOVERY_API_KEY=your-secret-key python -m cctp_recovery.server --port 8080

Endpoints:
    GET  /health             Health check
    GET  /bridges/pending    Tracked bridges (status listing)
    POST /bridges/recover    {"burn_tx_hash": "0x...", "recipient": "0x..."} -> 202, runs in background

Environment Variables:
    RECOVERY_API_KEY   Bearer token for authentication (unset = open, dev mode)
    RECOVERY_PORT      Port to listen on (default: 9091)
"""

import os
import re
import json
import logging
import argparse
from http.server import ThreadingHTTPServer, BaseHTTPRequestHandler
from urllib.parse import urlparse
from datetime import datetime, timezone

from .config import get_private_key
from .errors import ConfigError
from .recovery import get_orchestrator
from .tasks import TaskRunner

logger = logging.getLogger(__name__)

VERSION = "1.0.0"
TX_HASH_RE = re.compile(r"^(0x)?[0-9a-fA-F]{64}$")

PENDING_NOTE = (
    "Tracked bridges are re-checked on every recovery pass. The mint is sent "
    "automatically once the attestation is ready."
)


# ============================================================
# Auth
# ============================================================

def check_auth(handler):
    """Verify Bearer token if an API key is configured."""
    api_key = handler.server.api_key
    if not api_key:
        return True
    auth = handler.headers.get("Authorization", "")
    if auth == f"Bearer {api_key}":
        return True
    handler.send_error_json(401, "Unauthorized: invalid or missing Bearer token")
    return False


# ============================================================
# Request Handler
# ============================================================

class RecoveryHandler(BaseHTTPRequestHandler):
    """HTTP handler for the recovery status API."""

    def log_message(self, format, *args):
        logger.info("%s %s", self.address_string(), format % args)

    def send_json(self, data, status=200):
        body = json.dumps(data, indent=2, default=str).encode()
        self.send_response(status)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def send_error_json(self, status, message):
        self.send_json({"success": False, "error": message, "status": status}, status)

    def read_body(self):
        length = int(self.headers.get("Content-Length", 0))
        if length == 0:
            return {}
        return json.loads(self.rfile.read(length))

    def route(self, method):
        path = urlparse(self.path).path.rstrip("/")
        routes = {
            "GET": {
                "/health": self.handle_health,
                "/bridges/pending": self.handle_pending,
            },
            "POST": {
                "/bridges/recover": self.handle_recover,
            },
        }
        handler = routes.get(method, {}).get(path)
        if handler:
            return handler()
        self.send_error_json(404, f"Not found: {method} {path}")

    # --- Handlers ---

    def handle_health(self):
        self.send_json({
            "status": "ok",
            "service": "cctp-recovery",
            "version": VERSION,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        })

    def handle_pending(self):
        try:
            bridges = self.server.orchestrator.registry.snapshot()
        except Exception as e:
            logger.exception("Listing pending bridges failed")
            return self.send_error_json(500, str(e))
        self.send_json({
            "success": True,
            "count": len(bridges),
            "bridges": bridges,
            "note": PENDING_NOTE,
        })

    def handle_recover(self):
        try:
            body = self.read_body()
        except ValueError:
            return self.send_error_json(400, "Request body must be JSON")
        burn_tx_hash = body.get("burn_tx_hash")
        if not burn_tx_hash or not TX_HASH_RE.match(burn_tx_hash):
            return self.send_error_json(400, "burn_tx_hash must be a 32-byte hex transaction hash")

        orchestrator = self.server.orchestrator
        self.server.tasks.submit(
            orchestrator.recover, burn_tx_hash, body.get("recipient"), self.server.private_key,
            label=f"recover {burn_tx_hash}",
        )
        self.send_json({
            "success": True,
            "scheduled": True,
            "burn_tx_hash": burn_tx_hash,
            "message": "Recovery scheduled; poll /bridges/pending for progress.",
        }, 202)

    # --- HTTP method dispatchers ---

    def do_GET(self):
        if not check_auth(self):
            return
        self.route("GET")

    def do_POST(self):
        if not check_auth(self):
            return
        self.route("POST")


# ============================================================
# Server
# ============================================================

class RecoveryServer(ThreadingHTTPServer):
    def __init__(self, address, orchestrator, private_key=None, api_key=None, tasks=None):
        super().__init__(address, RecoveryHandler)
        self.orchestrator = orchestrator
        self.private_key = private_key
        self.api_key = api_key
        self.tasks = tasks or TaskRunner(max_workers=2, name="cctp-recover")


def run_server(port=None, host="0.0.0.0"):
    """Start the recovery status server."""
    port = port or int(os.environ.get("RECOVERY_PORT", 9091))
    api_key = os.environ.get("RECOVERY_API_KEY", "")
    try:
        private_key = get_private_key()
    except ConfigError as e:
        logger.warning("No signing key, scheduled recoveries will stop before the mint: %s", e)
        private_key = None

    server = RecoveryServer((host, port), get_orchestrator(), private_key=private_key, api_key=api_key)
    auth_mode = "Bearer token" if api_key else "OPEN (no auth, set RECOVERY_API_KEY for production)"
    logger.info("CCTP Recovery API v%s listening on %s:%d (auth: %s)", VERSION, host, port, auth_mode)

    try:
        server.serve_forever()
    except KeyboardInterrupt:
        logger.info("Server stopped")
    finally:
        server.server_close()
        server.tasks.shutdown(wait=False)


# ============================================================
# CLI
# ============================================================

def main():
    parser = argparse.ArgumentParser(description="CCTP Recovery status API server")
    parser.add_argument("--port", type=int, default=None, help="Port (default: 9091 or RECOVERY_PORT)")
    parser.add_argument("--host", default="0.0.0.0", help="Host to bind to")
    args = parser.parse_args()
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    run_server(port=args.port, host=args.host)


if __name__ == "__main__":
    main()
