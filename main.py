# main.py: exam session runner, BASE_PATH-aware (requests client to the exam API)

import os
from typing import Optional

from flask import Flask, jsonify, request, session

from exam_api import DEFAULT_TIMEOUT, ExamApiClient
from exam_session import create_exam_session_blueprint

# =============================================================================
# BASE_PATH & Flask app
# =============================================================================
BASE_PATH = (os.getenv("BASE_PATH", "") or "").rstrip("/")

app = Flask(__name__)
app.url_map.strict_slashes = False
app.secret_key = os.getenv("SECRET_KEY", "dev-secret")
app.config.update(
    SESSION_COOKIE_SAMESITE="Lax",
    SESSION_COOKIE_SECURE=os.getenv("SESSION_COOKIE_SECURE", "1").lower() in {"1", "true", "yes"},
    SESSION_COOKIE_HTTPONLY=True,
)

# =============================================================================
# Upstream exam API
# =============================================================================
EXAM_API_BASE_URL = (os.getenv("EXAM_API_BASE_URL") or "http://localhost:5000/api").rstrip("/")
try:
    EXAM_API_TIMEOUT = float(os.getenv("EXAM_API_TIMEOUT") or DEFAULT_TIMEOUT)
except ValueError:
    print(f"[API] invalid EXAM_API_TIMEOUT; using {DEFAULT_TIMEOUT}s", flush=True)
    EXAM_API_TIMEOUT = DEFAULT_TIMEOUT

print(f"[API] exam API -> {EXAM_API_BASE_URL} (timeout {EXAM_API_TIMEOUT:g}s)", flush=True)


def _bp(path: str = "") -> str:
    """Prefix a path with BASE_PATH (if set)."""
    p = path or "/"
    if not p.startswith("/"):
        p = "/" + p
    if BASE_PATH and (p == BASE_PATH or p.startswith(BASE_PATH + "/")):
        return p
    return (BASE_PATH + p) if BASE_PATH else p


def make_api(token: Optional[str]) -> ExamApiClient:
    return ExamApiClient(EXAM_API_BASE_URL, token=token, timeout=EXAM_API_TIMEOUT)


# =============================================================================
# Token handoff: browsers without an Authorization header keep the bearer
# token in the signed session cookie.
# =============================================================================
@app.post(_bp("/session/token"))
def store_token():
    data = request.get_json(silent=True) or {}
    token = (data.get("token") or "").strip()
    if not token:
        return jsonify({"ok": False, "error": "token required"}), 400
    session["token"] = token
    return jsonify({"ok": True})


@app.post(_bp("/session/logout"))
def clear_token():
    session.pop("token", None)
    return jsonify({"ok": True})


@app.get(_bp("/healthz"))
def healthz():
    return jsonify({"ok": True})


# =============================================================================
# Exam session runner
# =============================================================================
app.register_blueprint(create_exam_session_blueprint(BASE_PATH, {"make_api": make_api}))

# =============================================================================
# Local dev entry
# =============================================================================
if __name__ == "__main__":
    port = int(os.environ.get("PORT", 8080))
    app.run(host="0.0.0.0", port=port, debug=True, threaded=True)
