# main.py: SAT practice exam service, BASE_PATH-aware (psycopg3 + pooling)
# Google sign-in (Authlib) or IAP headers; exam and tutor APIs as blueprints.

import os
from contextlib import contextmanager
from urllib.parse import urlparse, parse_qs, unquote, quote, urlsplit, urlunsplit
from typing import Any, List, Optional, Tuple

from flask import (
    Flask, abort, request, redirect, g, session, jsonify,
)

# Database (psycopg 3)
from psycopg_pool import ConnectionPool
from psycopg.rows import dict_row

# OAuth (Google via Authlib)
from authlib.integrations.flask_client import OAuth

# Blueprints
from exam import create_exam_blueprint
from exam_store import ExamStore
from tutor import create_tutor_blueprint

# =============================================================================
# BASE_PATH & Flask app
# =============================================================================
BASE_PATH = (os.getenv("BASE_PATH", "") or "").rstrip("/")

app = Flask(__name__)
app.url_map.strict_slashes = False
app.secret_key = os.getenv("SECRET_KEY", "dev-secret")
app.config.update(
    SESSION_COOKIE_SAMESITE="Lax",
    SESSION_COOKIE_SECURE=True,  # HTTPS in production
)

# =============================================================================
# Auth mode
# =============================================================================
AUTH_REQUIRED = os.getenv("AUTH_REQUIRED", "1").lower() in {"1", "true", "yes"}

# =============================================================================
# OAuth (Google): supports base or full callback in OAUTH_REDIRECT_BASE
# =============================================================================
GOOGLE_CLIENT_ID = os.getenv("GOOGLE_CLIENT_ID")
GOOGLE_CLIENT_SECRET = os.getenv("GOOGLE_CLIENT_SECRET")
OAUTH_REDIRECT_BASE = (os.getenv("OAUTH_REDIRECT_BASE", "") or "").rstrip("/")

oauth: Optional[OAuth] = None
if GOOGLE_CLIENT_ID and GOOGLE_CLIENT_SECRET:
    oauth = OAuth(app)
    oauth.register(
        "google",
        client_id=GOOGLE_CLIENT_ID,
        client_secret=GOOGLE_CLIENT_SECRET,
        server_metadata_url="https://accounts.google.com/.well-known/openid-configuration",
        client_kwargs={"scope": "openid email profile"},
    )
    print("[Auth] Google OAuth configured.", flush=True)
else:
    print("[Auth] Google OAuth not configured; only IAP identity headers will sign users in.", flush=True)

def _require_oauth() -> OAuth:
    if oauth is None:
        abort(503, description="Google OAuth is not configured.")
    return oauth

def _bp(path: str = "") -> str:
    """Prefix a path with BASE_PATH (if set)."""
    p = path or "/"
    if not p.startswith("/"):
        p = "/" + p
    if BASE_PATH and (p == BASE_PATH or p.startswith(BASE_PATH + "/")):
        return p
    return (BASE_PATH + p) if BASE_PATH else p

def _oauth_callback_url() -> str:
    base = OAUTH_REDIRECT_BASE or (request.url_root.rstrip("/") + (BASE_PATH or ""))
    if base.endswith("/auth/callback") or base.endswith("/auth/google/callback"):
        return base
    return base.rstrip("/") + "/auth/google/callback"

# =============================================================================
# DB configuration
# =============================================================================
INSTANCE_CONNECTION_NAME = os.getenv("INSTANCE_CONNECTION_NAME")
DB_USER = os.getenv("DB_USER")
DB_PASS = os.getenv("DB_PASS") or os.getenv("DB_PASSWORD")  # support either name
DB_NAME = os.getenv("DB_NAME")
DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_URL_LOCAL = os.getenv("DATABASE_URL_LOCAL")
DB_HOST_OVERRIDE = os.getenv("DB_HOST")
DB_PORT_OVERRIDE = os.getenv("DB_PORT")
FORCE_TCP = os.getenv("FORCE_TCP", "").lower() in {"1", "true", "yes"}
AUTO_SCHEMA = os.getenv("EXAM_AUTO_SCHEMA", "1").lower() in {"1", "true", "yes"}

def _on_managed_runtime() -> bool:
    return os.getenv("GAE_ENV", "").startswith("standard") or bool(os.getenv("K_SERVICE"))

def _log_choice(kwargs: dict, origin: str):
    if isinstance(kwargs.get("host"), str) and kwargs["host"].startswith("/cloudsql/"):
        print(f"[DB] {origin}: Unix socket -> {kwargs['host']}")
    else:
        print(f"[DB] {origin}: TCP -> {kwargs.get('host', 'localhost')}:{kwargs.get('port', 5432)}")

def _parse_database_url(url: str) -> dict:
    if not url:
        raise ValueError("Empty DATABASE_URL")
    # SQLAlchemy-style schemes -> plain postgres
    for pref in ("postgresql+psycopg://", "postgres+psycopg://",
                 "postgresql+psycopg2://", "postgres+psycopg2://"):
        if url.startswith(pref):
            url = "postgresql://" + url.split("://", 1)[1]
            break

    p = urlparse(url)
    if p.scheme not in ("postgresql", "postgres"):
        raise ValueError(f"Unsupported scheme '{p.scheme}'")
    qs = parse_qs(p.query or "", keep_blank_values=True)
    host = qs["host"][0] if qs.get("host") else p.hostname
    dbname = (p.path or "").lstrip("/") or (qs["dbname"][0] if qs.get("dbname") else "")
    if not dbname:
        raise ValueError("DATABASE_URL missing dbname")
    kwargs = {
        "dbname": dbname,
        "user": unquote(p.username or ""),
        "password": unquote(p.password or ""),
        "connect_timeout": 10,
        "options": "-c search_path=public",
    }
    if host:
        kwargs["host"] = host
    if p.port and not (isinstance(host, str) and host.startswith("/")):
        kwargs["port"] = p.port
    if qs.get("sslmode"):
        kwargs["sslmode"] = qs["sslmode"][0]
    return kwargs

def _tcp_kwargs() -> dict:
    if not all([DB_NAME, DB_USER, DB_PASS]):
        raise RuntimeError("DB_NAME, DB_USER, DB_PASS must be set for TCP mode.")
    return {
        "host": DB_HOST_OVERRIDE or "127.0.0.1",
        "port": int(DB_PORT_OVERRIDE or "5432"),
        "dbname": DB_NAME,
        "user": DB_USER,
        "password": DB_PASS,
        "sslmode": "disable",
        "connect_timeout": 10,
        "options": "-c search_path=public",
    }

def _socket_kwargs() -> dict:
    if not all([INSTANCE_CONNECTION_NAME, DB_NAME, DB_USER, DB_PASS]):
        raise RuntimeError("INSTANCE_CONNECTION_NAME, DB_NAME, DB_USER, DB_PASS must be set for socket mode.")
    return {
        "host": f"/cloudsql/{INSTANCE_CONNECTION_NAME}",
        "dbname": DB_NAME,
        "user": DB_USER,
        "password": DB_PASS,
        "connect_timeout": 10,
        "options": "-c search_path=public",
    }

def _connection_kwargs() -> dict:
    managed = _on_managed_runtime()

    if FORCE_TCP and not managed:
        kwargs = _tcp_kwargs(); _log_choice(kwargs, "FORCE_TCP"); return kwargs

    if not managed and DATABASE_URL_LOCAL:
        try:
            kwargs = _parse_database_url(DATABASE_URL_LOCAL)
            _log_choice(kwargs, "Using DATABASE_URL_LOCAL (parsed)")
            return kwargs
        except Exception as e:
            print(f"[DB] Ignoring DATABASE_URL_LOCAL: {e}")

    if DATABASE_URL:
        try:
            parsed = _parse_database_url(DATABASE_URL)
            host = parsed.get("host")
            if (not managed) and isinstance(host, str) and host.startswith("/cloudsql/"):
                print("[DB] DATABASE_URL targets /cloudsql/ but we are local; ignoring and using TCP.")
            else:
                _log_choice(parsed, "Using DATABASE_URL (parsed)")
                return parsed
        except Exception as e:
            print(f"[DB] Ignoring DATABASE_URL: {e}")

    if managed:
        kwargs = _socket_kwargs(); _log_choice(kwargs, "Managed runtime"); return kwargs

    kwargs = _tcp_kwargs(); _log_choice(kwargs, "Local dev"); return kwargs

# =============================================================================
# psycopg3 Connection Pool + helpers
# =============================================================================
_pg_pool: Optional[ConnectionPool] = None

def _to_conninfo(kwargs: dict) -> str:
    parts = []
    for k, v in kwargs.items():
        if v is None:
            continue
        s = str(v)
        if any(ch.isspace() for ch in s) or "'" in s or '"' in s:
            s = "'" + s.replace("'", r"\'") + "'"
        parts.append(f"{k}={s}")
    return " ".join(parts)

def init_pool():
    global _pg_pool
    if _pg_pool is not None:
        return
    _pg_pool = ConnectionPool(conninfo=_to_conninfo(_connection_kwargs()), min_size=1, max_size=6)

@contextmanager
def get_conn():
    if _pg_pool is None:
        init_pool()
    with _pg_pool.connection() as conn:
        yield conn

def fetch_all(q, params=None):
    with get_conn() as conn:
        with conn.cursor(row_factory=dict_row) as cur:
            cur.execute(q, params or ())
            return cur.fetchall()

def fetch_one(q, params=None):
    rows = fetch_all(q, params)
    return rows[0] if rows else None

def execute(q, params=None):
    with get_conn() as conn:
        with conn.cursor(row_factory=dict_row) as cur:
            cur.execute(q, params or ())
        conn.commit()

def execute_returning(q, params=None):
    with get_conn() as conn:
        with conn.cursor(row_factory=dict_row) as cur:
            cur.execute(q, params or ())
            rows = cur.fetchall()
        conn.commit()
        return rows

def execute_batch(statements: List[Tuple[str, Any]]):
    """All statements on one connection, one commit; any failure rolls back the lot."""
    with get_conn() as conn:
        try:
            with conn.cursor(row_factory=dict_row) as cur:
                for q, params in statements:
                    cur.execute(q, params or ())
            conn.commit()
        except Exception:
            conn.rollback()
            raise

_db_deps = {
    "fetch_one": fetch_one,
    "fetch_all": fetch_all,
    "execute": execute,
    "execute_batch": execute_batch,
}
store = ExamStore(_db_deps, default_time_limit=int(os.getenv("EXAM_DEFAULT_TIME_LIMIT_SEC") or 1920))

_schema_ready = False

def _ensure_schema_once():
    global _schema_ready
    if _schema_ready or not AUTO_SCHEMA:
        return
    try:
        store.ensure_schema()
        _schema_ready = True
        print("[DB] exam schema ensured.")
    except Exception as e:
        print(f"[DB] ensure_schema failed (will retry on next request): {e}")

# =============================================================================
# Identity helpers
# =============================================================================
def _session_email() -> Optional[str]:
    u = session.get("user") or {}
    e = (u.get("email") or "").strip().lower()
    return e or None

def _iap_email() -> Optional[str]:
    h = (
        request.headers.get("X-Goog-Authenticated-User-Email")
        or request.headers.get("X-Appengine-User-Email")
    )
    if not h:
        return None
    return h.split(":", 1)[-1].strip().lower()

def current_user_email() -> Optional[str]:
    return _session_email() or _iap_email()

def ensure_user_row(email: str) -> int:
    row = fetch_one("SELECT id FROM users WHERE email = %s;", (email,))
    if row:
        return row["id"]
    display = email.split("@", 1)[0].replace(".", " ").title()
    rows = execute_returning("""
        INSERT INTO users (email, full_name, role)
        VALUES (%s, %s, 'learner')
        ON CONFLICT (email) DO UPDATE SET full_name = EXCLUDED.full_name
        RETURNING id;
    """, (email, display))
    return rows[0]["id"]

# =============================================================================
# Routes (auth, health, identity)
# =============================================================================
@app.get("/healthz")
def healthz():
    try:
        row = fetch_one("SELECT 1 AS ok;")
        ok = bool(row and row.get("ok") == 1)
        return ("ok" if ok else "db-fail", 200 if ok else 500)
    except Exception as e:
        return (f"error: {e}", 500)

@app.get("/whoami")
def whoami():
    return jsonify({
        "ok": True,
        "email": getattr(g, "user_email", None),
        "user_id": getattr(g, "user_id", None),
    })

def _sanitize_next(next_url: Optional[str]) -> str:
    if not next_url:
        return _bp("/exams")
    parts = urlsplit(next_url)
    if parts.scheme or parts.netloc:
        return _bp("/exams")
    path = parts.path or "/"
    blocked_prefixes = {_bp("/login"), _bp("/auth"), "/login", "/auth"}
    if any(path == p or path.startswith(p + "/") for p in blocked_prefixes):
        return _bp("/exams")
    return urlunsplit(("", "", path, parts.query, "")) or _bp("/exams")

@app.get("/login")
def login():
    provider = _require_oauth()
    session["login_next"] = _sanitize_next(request.args.get("next"))
    return provider.google.authorize_redirect(_oauth_callback_url())

@app.get("/logout")
def logout():
    session.clear()
    return redirect(_bp("/login"))

@app.get("/auth/callback")
@app.get("/auth/google/callback")
def auth_callback():
    provider = _require_oauth()
    token = provider.google.authorize_access_token()

    # Prefer ID token; fallback to userinfo
    claims = None
    try:
        claims = provider.google.parse_id_token(token, nonce=None)
    except Exception:
        claims = None
    if not claims:
        claims = token.get("userinfo") or {}
    if not claims:
        try:
            meta = provider.google.load_server_metadata() or {}
        except Exception:
            meta = {}
        userinfo_url = meta.get("userinfo_endpoint") or "https://openidconnect.googleapis.com/v1/userinfo"
        claims = provider.google.get(userinfo_url).json()

    email = (claims.get("email") or "").strip().lower()
    if not email:
        abort(400, description="Google authentication failed (no email).")

    session["user"] = {
        "email": email,
        "name": claims.get("name"),
        "picture": claims.get("picture"),
        "sub": claims.get("sub"),
    }
    try:
        ensure_user_row(email)
    except Exception as e:
        print(f"[Auth] ensure_user_row failed for {email}: {e}")

    return redirect(_sanitize_next(session.pop("login_next", None)))

# --- Same routes under BASE_PATH aliases (e.g., /sat/login) ---
if BASE_PATH:
    app.add_url_rule(f"{BASE_PATH}/healthz", endpoint="healthz_bp", view_func=healthz, methods=["GET"])
    app.add_url_rule(f"{BASE_PATH}/whoami", endpoint="whoami_bp", view_func=whoami, methods=["GET"])
    app.add_url_rule(f"{BASE_PATH}/login", endpoint="login_bp", view_func=login, methods=["GET"])
    app.add_url_rule(f"{BASE_PATH}/logout", endpoint="logout_bp", view_func=logout, methods=["GET"])
    app.add_url_rule(f"{BASE_PATH}/auth/callback", endpoint="auth_callback_bp", view_func=auth_callback, methods=["GET"])
    app.add_url_rule(f"{BASE_PATH}/auth/google/callback", endpoint="auth_callback_google_bp", view_func=auth_callback, methods=["GET"])

def _is_public_path(path: str) -> bool:
    public_exact = set()
    for p in ("/healthz", "/login", "/logout", "/auth/callback", "/auth/google/callback"):
        public_exact.update({p, _bp(p)})
    return path in public_exact

def _is_api_path(path: str) -> bool:
    return any(path == r or path.startswith(r + "/")
               for r in ("/exams", "/api", _bp("/exams"), _bp("/api"), "/whoami", _bp("/whoami")))

@app.before_request
def enforce_or_attach_identity():
    path = request.path
    if _is_public_path(path):
        return
    _ensure_schema_once()
    email = current_user_email()
    if email:
        g.user_email = email
        try:
            g.user_id = ensure_user_row(email)
        except Exception as e:
            print(f"[Auth] ensure_user_row failed for {email}: {e}")
        return
    if not AUTH_REQUIRED:
        return
    if _is_api_path(path):
        return jsonify({"ok": False, "error": "unauthorized"}), 401
    full = request.full_path if request.query_string else request.path
    return redirect(f"{_bp('/login')}?next={quote(_sanitize_next(full), safe='/:?&=')}")

# =============================================================================
# Blueprints
# =============================================================================
app.register_blueprint(create_exam_blueprint(BASE_PATH, {**_db_deps, "store": store}))
app.register_blueprint(create_tutor_blueprint(BASE_PATH, {**_db_deps, "store": store}))

# =============================================================================
# Local dev entry
# =============================================================================
if __name__ == "__main__":
    port = int(os.environ.get("PORT", 8080))
    app.run(host="0.0.0.0", port=port, debug=True)
