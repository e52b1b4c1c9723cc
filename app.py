from flask import Flask, render_template, request, redirect, session, jsonify
import sqlite3, os, logging, threading
from datetime import timedelta
from functools import wraps
from pathlib import Path

import click
from werkzeug.security import generate_password_hash, check_password_hash

from vcard import ContactData
from qrimage import EncodingError, generate_qr_data_uri

app = Flask(__name__)

MIGRATIONS_DIR = Path(__file__).parent / "migrations"
MIGRATIONS = [
    "001_create_vcards_table",
    "002_create_users_table",
]


def session_lifetime():
    try:
        hours = int(os.getenv("SESSION_EXPIRY_HOURS", "24"))
    except ValueError:
        hours = 24
    return timedelta(hours=hours)


app.config.update(
    SECRET_KEY=os.getenv("SECRET_KEY", "vcard_qr_secret"),
    DATABASE=os.getenv("DATABASE_PATH", "vcards.db"),
    DEFAULT_ADMIN_PASSWORD=os.getenv("DEFAULT_ADMIN_PASSWORD", "admin"),
    PERMANENT_SESSION_LIFETIME=session_lifetime(),
)


# ---------- DATABASE ----------
def get_db():
    conn = sqlite3.connect(app.config["DATABASE"])
    conn.row_factory = sqlite3.Row
    return conn


def init_db():
    conn = get_db()
    try:
        conn.execute("""
        CREATE TABLE IF NOT EXISTS migrations(
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            name TEXT NOT NULL UNIQUE,
            applied_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )
        """)

        for name in MIGRATIONS:
            applied = conn.execute(
                "SELECT COUNT(*) FROM migrations WHERE name=?", (name,)
            ).fetchone()[0]
            if applied:
                app.logger.info("Migration %s already applied", name)
                continue

            app.logger.info("Running migration: %s", name)
            conn.executescript((MIGRATIONS_DIR / f"{name}.sql").read_text())
            conn.execute("INSERT INTO migrations (name) VALUES (?)", (name,))
            if name == "002_create_users_table":
                seed_admin(conn)
            conn.commit()
    finally:
        conn.close()


migrated = set()
migrate_lock = threading.Lock()


@app.before_request
def ensure_db():
    # first request under `flask run` or a WSGI server applies pending migrations
    path = app.config["DATABASE"]
    with migrate_lock:
        if path not in migrated:
            init_db()
            migrated.add(path)


def seed_admin(conn):
    conn.execute(
        "INSERT OR IGNORE INTO users (username,password_hash,is_admin) VALUES (?,?,1)",
        ("admin", hash_password(app.config["DEFAULT_ADMIN_PASSWORD"]))
    )
    app.logger.info("Default admin user created (username=admin)")


def save_vcard(contact):
    conn = get_db()
    try:
        cur = conn.execute(
            """
            INSERT INTO vcards (first_name,last_name,mobile,work,email,company,
                                role,street,city,state,website,color)
            VALUES (?,?,?,?,?,?,?,?,?,?,?,?)
            """,
            contact.as_row()
        )
        conn.commit()
        return cur.lastrowid
    finally:
        conn.close()


def fetch_user(user_id):
    conn = get_db()
    try:
        return conn.execute(
            "SELECT id,username,password_hash,is_admin FROM users WHERE id=?",
            (user_id,)
        ).fetchone()
    finally:
        conn.close()


# ---------- AUTH ----------
def hash_password(password):
    return generate_password_hash(password)


def verify_password(password, password_hash):
    if not isinstance(password, str):
        return False
    try:
        return check_password_hash(password_hash, password)
    except ValueError:
        return False


def authenticate_user(username, password):
    conn = get_db()
    try:
        user = conn.execute(
            "SELECT id,username,password_hash,is_admin FROM users WHERE username=?",
            (username,)
        ).fetchone()
    finally:
        conn.close()

    if user and verify_password(password, user["password_hash"]):
        return user
    return None


def set_user_session(user):
    session.clear()
    session.permanent = True
    session["user_id"] = user["id"]
    session["username"] = user["username"]
    session["is_admin"] = bool(user["is_admin"])


def clear_session():
    session.clear()


def get_current_user():
    keys = ("user_id", "username", "is_admin")
    if not all(k in session for k in keys):
        return None
    return {
        "id": session["user_id"],
        "username": session["username"],
        "is_admin": session["is_admin"],
    }


def error(message, status):
    return jsonify(error=message), status


def message(text):
    return jsonify(message=text)


def login_required(view):
    @wraps(view)
    def wrapped(*args, **kwargs):
        if get_current_user() is None:
            return error("Not authenticated", 401)
        return view(*args, **kwargs)
    return wrapped


def admin_required(view):
    @wraps(view)
    def wrapped(*args, **kwargs):
        user = get_current_user()
        if user is None:
            return error("Not authenticated", 401)
        if not user["is_admin"]:
            return error("Admin access required", 403)
        return view(*args, **kwargs)
    return wrapped


def json_body():
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else None


def is_text(value):
    return isinstance(value, str) and value != ""


# ---------- PAGES ----------
@app.route("/login")
def login_page():
    return render_template("login.html")


@app.route("/")
def index():
    user = get_current_user()
    if user is None:
        return redirect("/login")
    return render_template("index.html", user=user)


@app.route("/profile")
def profile():
    user = get_current_user()
    if user is None:
        return redirect("/login")
    return render_template("profile.html", user=user)


@app.route("/admin")
def admin():
    user = get_current_user()
    if user is None:
        return redirect("/login")
    if not user["is_admin"]:
        return "Admin access required", 403
    return render_template("admin.html", user=user)


# ---------- LOGIN / LOGOUT ----------
@app.route("/api/login", methods=["POST"])
def api_login():
    data = json_body()
    if data is None or not isinstance(data.get("username"), str) \
            or not isinstance(data.get("password"), str):
        return error("Invalid JSON body", 400)

    user = authenticate_user(data["username"], data["password"])
    if user is None:
        app.logger.warning("Failed login for %r", data["username"])
        return error("Invalid username or password", 401)

    set_user_session(user)
    return message("Login successful")


@app.route("/api/logout", methods=["POST"])
def api_logout():
    clear_session()
    return message("Logged out")


@app.route("/api/me")
@login_required
def api_me():
    return jsonify(get_current_user())


@app.route("/api/change-password", methods=["POST"])
@login_required
def api_change_password():
    data = json_body()
    if data is None or not isinstance(data.get("current_password"), str) \
            or not is_text(data.get("new_password")):
        return error("Invalid JSON body", 400)

    user = fetch_user(get_current_user()["id"])
    if user is None:
        return error("Not authenticated", 401)
    if not verify_password(data["current_password"], user["password_hash"]):
        return error("Current password is incorrect", 401)

    conn = get_db()
    try:
        conn.execute(
            "UPDATE users SET password_hash=?, updated_at=CURRENT_TIMESTAMP WHERE id=?",
            (hash_password(data["new_password"]), user["id"])
        )
        conn.commit()
    except sqlite3.Error:
        app.logger.exception("Failed to update password for user %s", user["id"])
        return error("Failed to update password", 500)
    finally:
        conn.close()

    return message("Password updated successfully")


# ---------- GENERATE ----------
@app.route("/api/generate", methods=["POST"])
@login_required
def api_generate():
    data = json_body()
    if data is None:
        return error("Invalid JSON body", 400)

    try:
        contact = ContactData.from_mapping(data)
    except ValueError as e:
        return error(str(e), 400)

    try:
        save_vcard(contact)
    except sqlite3.Error:
        app.logger.exception("Database error while saving vcard")
        return error("Database error", 500)

    try:
        image = generate_qr_data_uri(contact)
    except EncodingError:
        app.logger.exception("vCard too large for QR code")
        return error("Failed to generate QR code", 500)

    return jsonify(image=image)


# ---------- ADMIN ----------
@app.route("/api/users")
@admin_required
def api_list_users():
    conn = get_db()
    try:
        users = conn.execute(
            "SELECT id,username,is_admin,created_at FROM users ORDER BY id"
        ).fetchall()
    finally:
        conn.close()

    return jsonify([
        {
            "id": u["id"],
            "username": u["username"],
            "is_admin": bool(u["is_admin"]),
            "created_at": u["created_at"],
        }
        for u in users
    ])


@app.route("/api/users", methods=["POST"])
@admin_required
def api_create_user():
    data = json_body()
    if data is None or not is_text(data.get("username")) or not is_text(data.get("password")) \
            or not isinstance(data.get("is_admin"), bool):
        return error("Invalid JSON body", 400)

    conn = get_db()
    try:
        conn.execute(
            "INSERT INTO users (username,password_hash,is_admin) VALUES (?,?,?)",
            (data["username"], hash_password(data["password"]), data["is_admin"])
        )
        conn.commit()
    except sqlite3.IntegrityError:
        return error("Username already exists", 409)
    except sqlite3.Error:
        app.logger.exception("Failed to create user %r", data["username"])
        return error("Database error", 500)
    finally:
        conn.close()

    return message("User created successfully")


@app.route("/api/users/<int:user_id>", methods=["PUT"])
@admin_required
def api_update_user(user_id):
    data = json_body()
    password = data.get("password") if data is not None else None
    if data is None or not is_text(data.get("username")) \
            or not isinstance(data.get("is_admin"), bool) \
            or not (password is None or isinstance(password, str)):
        return error("Invalid JSON body", 400)

    conn = get_db()
    try:
        cur = conn.execute(
            "UPDATE users SET username=?, is_admin=?, updated_at=CURRENT_TIMESTAMP WHERE id=?",
            (data["username"], data["is_admin"], user_id)
        )
        if cur.rowcount == 0:
            return error("User not found", 404)

        if data.get("password"):
            conn.execute(
                "UPDATE users SET password_hash=? WHERE id=?",
                (hash_password(data["password"]), user_id)
            )
        conn.commit()
    except sqlite3.IntegrityError:
        return error("Username already exists", 409)
    except sqlite3.Error:
        app.logger.exception("Failed to update user %s", user_id)
        return error("Failed to update user", 500)
    finally:
        conn.close()

    return message("User updated successfully")


@app.route("/api/users/<int:user_id>", methods=["DELETE"])
@admin_required
def api_delete_user(user_id):
    if get_current_user()["id"] == user_id:
        return error("Cannot delete your own account", 400)

    conn = get_db()
    try:
        cur = conn.execute("DELETE FROM users WHERE id=?", (user_id,))
        conn.commit()
    except sqlite3.Error:
        app.logger.exception("Failed to delete user %s", user_id)
        return error("Failed to delete user", 500)
    finally:
        conn.close()

    if cur.rowcount == 0:
        return error("User not found", 404)
    return message("User deleted successfully")


# ---------- CLI ----------
@app.cli.command("init-db")
def init_db_command():
    """Apply pending migrations."""
    init_db()
    click.echo(f"Database ready at {app.config['DATABASE']}")


@app.cli.command("gen-hash")
@click.argument("password", default="admin")
def gen_hash_command(password):
    """Print a password hash for seeding users by hand."""
    password_hash = hash_password(password)
    click.echo(f"Password: {password}")
    click.echo(f"Hash: {password_hash}")
    ok = verify_password(password, password_hash)
    click.echo(f"Verification: {'SUCCESS' if ok else 'FAILED'}")


if __name__ == "__main__":
    app.logger.setLevel(logging.INFO)
    init_db()
    app.logger.info("Database path: %s", app.config["DATABASE"])
    app.run(
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "3000")),
    )
