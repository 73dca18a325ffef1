"""
Password-reset code ledger.

A code moves through ISSUED -> CONSUMED on the happy path, or dies
(EXHAUSTED / EXPIRED) once it has seen three checks or its hour is up.
Validity is never cached: every call re-reads the stored document and the
guards are repeated in the update filter, so a code that dies between the
read and the write is still rejected.

All functions take an optional `now` (naive UTC) so callers and tests can pin
the clock.
"""

import hmac
import logging
import secrets
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional

from bson import ObjectId
from pymongo import DESCENDING, ReturnDocument
from pymongo.database import Database

import mailer
import whatsapp
from config import settings
from database import create_document, utcnow
from schemas import PasswordReset as PasswordResetSchema

logger = logging.getLogger("uvicorn.error")

COLLECTION = "passwordreset"
CODE_TTL = timedelta(hours=1)
MAX_ATTEMPTS = 3
REQUEST_COOLDOWN = timedelta(minutes=5)


class CodeState(str, Enum):
    ISSUED = "issued"
    CONSUMED = "consumed"
    EXHAUSTED = "exhausted"
    EXPIRED = "expired"


STATE_MESSAGES = {
    CodeState.CONSUMED: "Este código ya fue usado",
    CodeState.EXHAUSTED: "Has superado el número máximo de intentos",
    CodeState.EXPIRED: "El código ha expirado",
}


class ResetCodeError(Exception):
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class RateLimited(ResetCodeError):
    status_code = 429


def generate_code() -> str:
    return str(100000 + secrets.randbelow(900000))


def code_state(doc: dict, now: Optional[datetime] = None) -> CodeState:
    now = now or utcnow()
    if doc.get("usado"):
        return CodeState.CONSUMED
    if doc.get("intentos", 0) >= MAX_ATTEMPTS:
        return CodeState.EXHAUSTED
    if doc["expira"] <= now:
        return CodeState.EXPIRED
    return CodeState.ISSUED


def is_usable(doc: dict, now: Optional[datetime] = None) -> bool:
    return code_state(doc, now) is CodeState.ISSUED


def _live_filter(doc: dict, now: datetime) -> dict:
    return {
        "_id": doc["_id"],
        "usado": False,
        "intentos": {"$lt": MAX_ATTEMPTS},
        "expira": {"$gt": now},
    }


def latest_code(db: Database, email: str) -> Optional[dict]:
    return db[COLLECTION].find_one({"email": email}, sort=[("created_at", DESCENDING)])


def issue_code(db: Database, user: dict, metodo: str, now: Optional[datetime] = None) -> dict:
    """Store a new code for `user`, refusing if one was issued in the last five minutes."""
    now = now or utcnow()
    email = user["email"]
    recent = db[COLLECTION].find_one({"email": email, "created_at": {"$gte": now - REQUEST_COOLDOWN}})
    if recent:
        logger.warning("Reset code requested again within cooldown for %s", email)
        raise RateLimited("Ya solicitaste un código recientemente. Espera 5 minutos.")

    reset = PasswordResetSchema(
        usuario_id=user["_id"],
        email=email,
        code=generate_code(),
        metodo=metodo,
        expira=now + CODE_TTL,
    )
    reset_id = create_document(db, COLLECTION, reset, now=now)
    logger.info("Reset code issued for %s via %s", email, metodo)
    if settings.is_development:
        logger.info("Reset code for %s: %s (expires %s UTC)", email, reset.code, reset.expira.isoformat())
    return db[COLLECTION].find_one({"_id": ObjectId(reset_id)})


def _require_live(db: Database, email: str, now: datetime) -> dict:
    doc = latest_code(db, email)
    if doc is None:
        raise ResetCodeError("Código inválido")
    state = code_state(doc, now)
    if state is not CodeState.ISSUED:
        raise ResetCodeError(STATE_MESSAGES[state])
    return doc


def _count_attempt(db: Database, doc: dict, now: datetime) -> dict:
    updated = db[COLLECTION].find_one_and_update(
        _live_filter(doc, now),
        {"$inc": {"intentos": 1}, "$set": {"updated_at": now}},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        raise ResetCodeError("Código inválido o expirado")
    return updated


def verify_code(db: Database, email: str, code: str, now: Optional[datetime] = None) -> dict:
    """Check `code` against the latest code for `email`; every check costs one attempt."""
    now = now or utcnow()
    doc = _require_live(db, email, now)
    matched = hmac.compare_digest(doc["code"], (code or "").strip())
    updated = _count_attempt(db, doc, now)
    if not matched:
        logger.warning("Wrong reset code for %s (attempt %s)", email, updated["intentos"])
        raise ResetCodeError("Código inválido")
    return updated


def consume_code(db: Database, email: str, code: str, now: Optional[datetime] = None) -> dict:
    """Mark the code used. A mismatch counts as a failed attempt."""
    now = now or utcnow()
    doc = _require_live(db, email, now)
    if not hmac.compare_digest(doc["code"], (code or "").strip()):
        updated = _count_attempt(db, doc, now)
        logger.warning("Wrong reset code on password change for %s (attempt %s)", email, updated["intentos"])
        raise ResetCodeError("Código inválido o expirado")

    consumed = db[COLLECTION].find_one_and_update(
        _live_filter(doc, now),
        {"$set": {"usado": True, "updated_at": now}},
        return_document=ReturnDocument.AFTER,
    )
    if consumed is None:
        raise ResetCodeError("Código inválido o expirado")
    return consumed


def deliver_code(db: Database, user: dict, reset: dict) -> bool:
    """Send the code over its channel. Failures are logged, never raised."""
    try:
        if reset["metodo"] == "email":
            mailer.send_reset_code(user["email"], user.get("nombre", ""), reset["code"])
        else:
            phone = user.get("telefono")
            if not phone:
                store = db["store"].find_one({"usuario_id": user["_id"]}, {"whatsapp": 1})
                phone = store.get("whatsapp") if store else None
            if not phone:
                logger.warning("No WhatsApp number on file for %s", user["email"])
                return False
            whatsapp.client.send_reset_code(user.get("nombre", ""), phone, reset["code"])
    except Exception as e:
        logger.error("Could not deliver reset code to %s via %s: %s", user["email"], reset["metodo"], e)
        return False
    return True


def release_code(db: Database, reset: dict, now: Optional[datetime] = None):
    """Undo `consume_code` when the password write that follows it fails."""
    db[COLLECTION].update_one(
        {"_id": reset["_id"], "usado": True},
        {"$set": {"usado": False, "updated_at": now or utcnow()}},
    )
    logger.warning("Reset code for %s released after a failed password update", reset["email"])
