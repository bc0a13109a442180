#!/usr/bin/env python3
"""
Exam Practice - Session API server
Run with: python3 web_quiz.py [port]

Serves the question bank at /tk.txt, edge greeting at /api/welcome and
the progress endpoint at /api/session (actions: load, save, clear).
"""

import logging
import os
import sqlite3
import sys
from pathlib import Path

import requests
from dotenv import load_dotenv
from flask import Flask, abort, current_app, jsonify, request, send_file
from werkzeug.exceptions import HTTPException

from session_store import RESULTS, SessionIdExhausted, SessionStore

load_dotenv()

logger = logging.getLogger(__name__)

SCRIPT_DIR = Path(__file__).parent

TURNSTILE_VERIFY_URL = "https://challenges.cloudflare.com/turnstile/v0/siteverify"


# ---------------------------------------------------------------------------
# Bot verification
# ---------------------------------------------------------------------------

class TurnstileVerifier:
    """Checks a Turnstile token against Cloudflare's siteverify endpoint.

    Called as verifier(token, remote_ip) -> bool. Timeouts, transport
    errors and unreadable replies all count as a failed check.
    """

    def __init__(self, secret_key, timeout=5.0, url=TURNSTILE_VERIFY_URL):
        self.secret_key = secret_key
        self.timeout = timeout
        self.url = url

    def __call__(self, token: str, remote_ip: str = "") -> bool:
        if not token:
            return False
        if not self.secret_key:
            logger.warning("TURNSTILE_SECRET_KEY not set; rejecting verification token.")
            return False
        try:
            response = requests.post(
                self.url,
                json={"secret": self.secret_key, "response": token, "remoteip": remote_ip},
                timeout=self.timeout,
            )
            data = response.json()
        except requests.Timeout:
            logger.warning("Turnstile verification timed out after %ss", self.timeout)
            return False
        except (requests.RequestException, ValueError) as e:
            logger.warning("Turnstile verification failed: %s", e)
            return False
        return bool(data.get("success")) if isinstance(data, dict) else False


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def get_store() -> SessionStore:
    return current_app.extensions["session_store"]


def client_ip() -> str:
    return request.headers.get("CF-Connecting-IP") or request.remote_addr or ""


def welcome_info(headers, placeholder: str) -> dict:
    """City/country/colo from Cloudflare edge headers, placeholder when absent."""
    ray = headers.get("CF-Ray", "")
    colo = ray.rsplit("-", 1)[1] if "-" in ray else ""
    return {
        "city": headers.get("CF-IPCity") or placeholder,
        "country": headers.get("CF-IPCountry") or placeholder,
        "colo": colo or placeholder,
    }


def parse_save_payload(payload):
    """Return (wrong_ids, result) from a save payload, or abort with 400."""
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        abort(400, "Invalid payload")
    wrong_ids = payload.get("wrongAnswerIds") or []
    if not isinstance(wrong_ids, list) or not all(isinstance(i, str) for i in wrong_ids):
        abort(400, "wrongAnswerIds must be a list of question IDs")
    result = payload.get("result") or None
    if result is not None and result not in RESULTS:
        abort(400, "result must be 'pass' or 'fail'")
    return wrong_ids, result


def snapshot_or_404(snapshot):
    if snapshot is None:
        abort(404, "Session not found")
    return jsonify(snapshot)


# ---------------------------------------------------------------------------
# Session actions
# ---------------------------------------------------------------------------

def load_action(session_id, token):
    # A token means a manual load of a typed-in ID and must verify. No token
    # is an automatic resume of an ID the client already held.
    if token:
        verifier = current_app.extensions["verifier"]
        if not verifier(token, client_ip()):
            abort(403, "Invalid Turnstile token")
    if not session_id:
        abort(400, "Missing session ID")
    return snapshot_or_404(get_store().get(session_id))


def clear_action(session_id):
    if not session_id:
        abort(400, "Missing session ID")
    return snapshot_or_404(get_store().clear(session_id))


def save_action(session_id, payload):
    wrong_ids, result = parse_save_payload(payload)
    store = get_store()
    if session_id:
        return snapshot_or_404(store.update(session_id, wrong_ids, result))
    try:
        snapshot = store.create(wrong_ids, result)
    except SessionIdExhausted as e:
        logger.error("%s", e)
        abort(500, f"Server error: {e}")
    return jsonify(snapshot), 201


# ---------------------------------------------------------------------------
# App factory
# ---------------------------------------------------------------------------

def create_app(test_config=None, verifier=None) -> Flask:
    app = Flask(__name__)
    app.config.from_mapping(
        DATABASE=os.environ.get("EXAM_DB_PATH", str(SCRIPT_DIR / "exam_sessions.db")),
        QUESTION_BANK_PATH=os.environ.get("QUESTION_BANK_PATH", str(SCRIPT_DIR / "tk.txt")),
        TURNSTILE_SECRET_KEY=os.environ.get("TURNSTILE_SECRET_KEY", ""),
        TURNSTILE_TIMEOUT=float(os.environ.get("TURNSTILE_TIMEOUT", "5")),
        WELCOME_PLACEHOLDER=os.environ.get("WELCOME_PLACEHOLDER", "Unknown"),
    )
    if test_config:
        app.config.update(test_config)

    store = SessionStore(app.config["DATABASE"])
    store.init_db()
    app.extensions["session_store"] = store
    app.extensions["verifier"] = verifier or TurnstileVerifier(
        app.config["TURNSTILE_SECRET_KEY"], timeout=app.config["TURNSTILE_TIMEOUT"]
    )

    @app.errorhandler(HTTPException)
    def plain_text_error(e):
        return e.description, e.code, {"Content-Type": "text/plain; charset=utf-8"}

    @app.errorhandler(sqlite3.Error)
    def store_error(e):
        logger.exception("Session store failure")
        return f"Server error: {e}", 500, {"Content-Type": "text/plain; charset=utf-8"}

    @app.route("/tk.txt")
    def question_bank():
        bank_path = Path(app.config["QUESTION_BANK_PATH"])
        if not bank_path.exists():
            abort(404, "Question bank not found")
        return send_file(bank_path.resolve(), mimetype="text/plain")

    @app.route("/api/welcome")
    def welcome():
        return jsonify(welcome_info(request.headers, app.config["WELCOME_PLACEHOLDER"]))

    @app.route("/api/session", methods=["POST"])
    def session_api():
        body = request.get_json(silent=True)
        if not isinstance(body, dict):
            abort(400, "Request body must be a JSON object")

        action = body.get("action")
        session_id = body.get("sessionId") or None
        if session_id is not None and not isinstance(session_id, str):
            abort(400, "sessionId must be a string")

        if action == "load":
            return load_action(session_id, body.get("turnstileToken"))
        if action == "clear":
            return clear_action(session_id)
        if action == "save":
            return save_action(session_id, body.get("payload"))
        abort(400, "Invalid action")

    return app


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    port = int(sys.argv[1]) if len(sys.argv) > 1 else 5000
    app = create_app()
    print(f"Starting exam session server at http://localhost:{port}")
    print("Press Ctrl+C to stop.")
    app.run(debug=False, port=port)
