from __future__ import annotations

import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

from jose import JWTError, jwt
from passlib.context import CryptContext

from storefront.config import settings
from storefront.constants import TX_REFERRAL
from storefront.db.sqlite import connect, now_ts, row, rows
from storefront.services.wallet import ensure_wallet, post_transaction
from storefront.utils.validators import require_email, require_password, require_phone, require_pincode

log = logging.getLogger(__name__)

JWT_ALG = "HS256"
pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")

_PUBLIC_FIELDS = "id, name, email, phone, is_admin, is_blocked, referral_code, created_at"


def _new_referral_code() -> str:
    return secrets.token_hex(4).upper()


def register_user(
    name: str,
    email: str,
    password: str,
    phone: Optional[str] = None,
    referral_code: Optional[str] = None,
    is_admin: bool = False,
) -> Tuple[bool, Any]:
    name = (name or "").strip()
    if not name:
        return False, "Name is required"
    try:
        email = require_email(email)
        require_password(password)
        phone = require_phone(phone) if phone else None
    except ValueError as e:
        return False, str(e)

    conn = connect()
    try:
        if conn.execute("SELECT id FROM users WHERE email=?", (email,)).fetchone():
            return False, "Email already registered"
        if phone and conn.execute("SELECT id FROM users WHERE phone=?", (phone,)).fetchone():
            return False, "Phone already registered"

        referrer = None
        if referral_code:
            referrer = row(
                conn, "SELECT id FROM users WHERE referral_code=?", (referral_code.strip().upper(),)
            )
            if not referrer:
                return False, "Invalid referral code"

        conn.execute("BEGIN")
        cur = conn.execute(
            """
            INSERT INTO users(name, email, phone, password_hash, is_admin, is_blocked,
                              referral_code, referred_by, created_at)
            VALUES(?,?,?,?,?,0,?,?,?)
            """,
            (
                name, email, phone, pwd_context.hash(password), 1 if is_admin else 0,
                _new_referral_code(), referrer["id"] if referrer else None, now_ts(),
            ),
        )
        user_id = int(cur.lastrowid)
        ensure_wallet(conn, user_id)
        if referrer and settings.referral_bonus > 0:
            post_transaction(
                conn, int(referrer["id"]), settings.referral_bonus, TX_REFERRAL,
                description=f"Referral bonus for inviting {name}",
            )
        conn.commit()
        log.info("user %s registered", user_id)
        return True, row(conn, f"SELECT {_PUBLIC_FIELDS} FROM users WHERE id=?", (user_id,))
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def authenticate(email: str, password: str) -> Tuple[bool, Any]:
    conn = connect()
    try:
        user = row(conn, "SELECT * FROM users WHERE email=?", ((email or "").strip().lower(),))
    finally:
        conn.close()
    if not user or not pwd_context.verify(password or "", user["password_hash"]):
        return False, "Invalid credentials"
    if user["is_blocked"]:
        return False, "User is blocked"
    user.pop("password_hash")
    return True, user


def change_password(user_id: int, old_password: str, new_password: str) -> Tuple[bool, str]:
    try:
        require_password(new_password)
    except ValueError as e:
        return False, str(e)
    conn = connect()
    try:
        user = row(conn, "SELECT password_hash FROM users WHERE id=?", (user_id,))
        if not user:
            return False, "User not found"
        if not pwd_context.verify(old_password or "", user["password_hash"]):
            return False, "Current password is incorrect"
        conn.execute("UPDATE users SET password_hash=? WHERE id=?", (pwd_context.hash(new_password), user_id))
        conn.commit()
        return True, "ok"
    finally:
        conn.close()


def create_token(user: Dict[str, Any]) -> str:
    payload = {
        "sub": str(user["id"]),
        "email": user.get("email"),
        "is_admin": bool(user.get("is_admin")),
        "exp": datetime.now(timezone.utc) + timedelta(days=settings.token_ttl_days),
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=JWT_ALG)


def decode_token(token: str) -> Optional[int]:
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[JWT_ALG])
    except JWTError:
        return None
    sub = payload.get("sub")
    return int(sub) if sub and str(sub).isdigit() else None


def get_user(user_id: int) -> Optional[Dict[str, Any]]:
    conn = connect()
    try:
        return row(conn, f"SELECT {_PUBLIC_FIELDS} FROM users WHERE id=?", (user_id,))
    finally:
        conn.close()


def list_users(search: Optional[str] = None) -> List[Dict[str, Any]]:
    conn = connect()
    try:
        if search:
            like = f"%{search}%"
            return rows(
                conn,
                f"SELECT {_PUBLIC_FIELDS} FROM users WHERE is_admin=0 AND (name LIKE ? OR email LIKE ?) "
                "ORDER BY created_at DESC, id DESC",
                (like, like),
            )
        return rows(
            conn, f"SELECT {_PUBLIC_FIELDS} FROM users WHERE is_admin=0 ORDER BY created_at DESC, id DESC"
        )
    finally:
        conn.close()


def set_user_blocked(user_id: int, blocked: bool) -> Tuple[bool, str]:
    conn = connect()
    try:
        cur = conn.execute(
            "UPDATE users SET is_blocked=? WHERE id=? AND is_admin=0", (1 if blocked else 0, user_id)
        )
        conn.commit()
        return (True, "ok") if cur.rowcount else (False, "User not found")
    finally:
        conn.close()


# ---------------- addresses ----------------

def _clean_address(data: Dict[str, Any]) -> Dict[str, Any]:
    out = {}
    for k in ("name", "city", "landmark", "state"):
        v = str(data.get(k) or "").strip()
        if not v:
            raise ValueError(f"{k} is required")
        out[k] = v
    out["pincode"] = require_pincode(data.get("pincode", ""))
    out["phone"] = require_phone(data.get("phone", ""))
    return out


def add_address(user_id: int, data: Dict[str, Any]) -> Tuple[bool, Any]:
    try:
        a = _clean_address(data)
    except ValueError as e:
        return False, str(e)
    conn = connect()
    try:
        first = not conn.execute("SELECT id FROM addresses WHERE user_id=?", (user_id,)).fetchone()
        cur = conn.execute(
            "INSERT INTO addresses(user_id, name, city, landmark, state, pincode, phone, is_default) "
            "VALUES(?,?,?,?,?,?,?,?)",
            (user_id, a["name"], a["city"], a["landmark"], a["state"], a["pincode"], a["phone"], 1 if first else 0),
        )
        conn.commit()
        return True, int(cur.lastrowid)
    finally:
        conn.close()


def update_address(user_id: int, address_id: int, data: Dict[str, Any]) -> Tuple[bool, str]:
    try:
        a = _clean_address(data)
    except ValueError as e:
        return False, str(e)
    conn = connect()
    try:
        cur = conn.execute(
            "UPDATE addresses SET name=?, city=?, landmark=?, state=?, pincode=?, phone=? "
            "WHERE id=? AND user_id=?",
            (a["name"], a["city"], a["landmark"], a["state"], a["pincode"], a["phone"], address_id, user_id),
        )
        conn.commit()
        return (True, "ok") if cur.rowcount else (False, "Address not found")
    finally:
        conn.close()


def delete_address(user_id: int, address_id: int) -> Tuple[bool, str]:
    conn = connect()
    try:
        used = conn.execute(
            "SELECT id FROM orders WHERE address_id=? AND user_id=? LIMIT 1", (address_id, user_id)
        ).fetchone()
        if used:
            return False, "Address is used by an order"
        cur = conn.execute("DELETE FROM addresses WHERE id=? AND user_id=?", (address_id, user_id))
        conn.commit()
        return (True, "ok") if cur.rowcount else (False, "Address not found")
    finally:
        conn.close()


def set_default_address(user_id: int, address_id: int) -> Tuple[bool, str]:
    conn = connect()
    try:
        if not conn.execute(
            "SELECT id FROM addresses WHERE id=? AND user_id=?", (address_id, user_id)
        ).fetchone():
            return False, "Address not found"
        conn.execute("BEGIN")
        conn.execute("UPDATE addresses SET is_default=0 WHERE user_id=?", (user_id,))
        conn.execute("UPDATE addresses SET is_default=1 WHERE id=?", (address_id,))
        conn.commit()
        return True, "ok"
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def list_addresses(user_id: int) -> List[Dict[str, Any]]:
    conn = connect()
    try:
        return rows(
            conn,
            "SELECT * FROM addresses WHERE user_id=? ORDER BY is_default DESC, id",
            (user_id,),
        )
    finally:
        conn.close()
