from datetime import timedelta

import pytest

import mailer
import reset_codes
import whatsapp
from database import utcnow
from reset_codes import CodeState, RateLimited, ResetCodeError

T0 = utcnow().replace(microsecond=0)


@pytest.fixture
def user(db):
    doc = {"nombre": "Ana Torres", "email": "ana@nilhub.pe", "password_hash": "x", "role": "vendedor", "activo": True}
    doc["_id"] = db["user"].insert_one(doc).inserted_id
    return doc


@pytest.fixture
def fixed_code(monkeypatch):
    monkeypatch.setattr(reset_codes, "generate_code", lambda: "123456")
    return "123456"


def stored(db):
    return reset_codes.latest_code(db, "ana@nilhub.pe")


def test_generated_codes_are_six_digits():
    for _ in range(50):
        code = reset_codes.generate_code()
        assert len(code) == 6 and code.isdigit()


def test_issue_sets_one_hour_expiry(db, user, fixed_code):
    reset = reset_codes.issue_code(db, user, "email", now=T0)
    assert reset["code"] == "123456"
    assert reset["expira"] == T0 + timedelta(hours=1)
    assert reset["intentos"] == 0
    assert reset["usado"] is False
    assert reset_codes.code_state(reset, T0) is CodeState.ISSUED


def test_three_wrong_checks_kill_the_code(db, user, fixed_code):
    reset_codes.issue_code(db, user, "email", now=T0)

    for minute, expected in ((1, 1), (2, 2), (3, 3)):
        with pytest.raises(ResetCodeError) as exc:
            reset_codes.verify_code(db, "ana@nilhub.pe", "000000", now=T0 + timedelta(minutes=minute))
        assert exc.value.message == "Código inválido"
        assert stored(db)["intentos"] == expected

    with pytest.raises(ResetCodeError) as exc:
        reset_codes.verify_code(db, "ana@nilhub.pe", "123456", now=T0 + timedelta(minutes=4))
    assert exc.value.message == "Has superado el número máximo de intentos"
    assert stored(db)["intentos"] == 3


def test_exhausted_code_cannot_change_password(db, user, fixed_code):
    reset_codes.issue_code(db, user, "email", now=T0)
    db["passwordreset"].update_one({"email": "ana@nilhub.pe"}, {"$set": {"intentos": 3}})

    with pytest.raises(ResetCodeError):
        reset_codes.consume_code(db, "ana@nilhub.pe", "123456", now=T0 + timedelta(minutes=5))
    assert stored(db)["usado"] is False


def test_expired_code_rejected_even_with_attempts_left(db, user, fixed_code):
    reset_codes.issue_code(db, user, "email", now=T0)

    with pytest.raises(ResetCodeError) as exc:
        reset_codes.verify_code(db, "ana@nilhub.pe", "123456", now=T0 + timedelta(hours=1))
    assert exc.value.message == "El código ha expirado"
    assert stored(db)["intentos"] == 0

    with pytest.raises(ResetCodeError):
        reset_codes.consume_code(db, "ana@nilhub.pe", "123456", now=T0 + timedelta(hours=2))


def test_verify_then_consume_then_reuse_fails(db, user, fixed_code):
    reset_codes.issue_code(db, user, "email", now=T0)

    verified = reset_codes.verify_code(db, "ana@nilhub.pe", "123456", now=T0 + timedelta(minutes=1))
    assert verified["intentos"] == 1

    consumed = reset_codes.consume_code(db, "ana@nilhub.pe", "123456", now=T0 + timedelta(minutes=2))
    assert consumed["usado"] is True

    with pytest.raises(ResetCodeError) as exc:
        reset_codes.consume_code(db, "ana@nilhub.pe", "123456", now=T0 + timedelta(minutes=3))
    assert exc.value.message == "Este código ya fue usado"


def test_wrong_code_on_consume_counts_an_attempt(db, user, fixed_code):
    reset_codes.issue_code(db, user, "email", now=T0)

    with pytest.raises(ResetCodeError) as exc:
        reset_codes.consume_code(db, "ana@nilhub.pe", "654321", now=T0 + timedelta(minutes=1))
    assert exc.value.message == "Código inválido o expirado"
    assert stored(db)["intentos"] == 1
    assert stored(db)["usado"] is False


def test_second_request_within_cooldown_is_rate_limited(db, user):
    reset_codes.issue_code(db, user, "email", now=T0)

    with pytest.raises(RateLimited) as exc:
        reset_codes.issue_code(db, user, "email", now=T0 + timedelta(minutes=4))
    assert exc.value.status_code == 429
    assert db["passwordreset"].count_documents({"email": "ana@nilhub.pe"}) == 1


def test_new_code_after_cooldown_supersedes_old_one(db, user, monkeypatch):
    codes = iter(["111111", "222222"])
    monkeypatch.setattr(reset_codes, "generate_code", lambda: next(codes))

    reset_codes.issue_code(db, user, "email", now=T0)
    reset_codes.issue_code(db, user, "whatsapp", now=T0 + timedelta(minutes=6))

    assert stored(db)["code"] == "222222"
    with pytest.raises(ResetCodeError):
        reset_codes.verify_code(db, "ana@nilhub.pe", "111111", now=T0 + timedelta(minutes=7))
    assert reset_codes.verify_code(db, "ana@nilhub.pe", "222222", now=T0 + timedelta(minutes=8))["intentos"] == 2


def test_unknown_email_has_no_code(db):
    with pytest.raises(ResetCodeError) as exc:
        reset_codes.verify_code(db, "nadie@nilhub.pe", "123456", now=T0)
    assert exc.value.message == "Código inválido"


def test_code_state_precedence():
    doc = {"usado": True, "intentos": 3, "expira": T0}
    assert reset_codes.code_state(doc, T0 + timedelta(hours=1)) is CodeState.CONSUMED
    doc["usado"] = False
    assert reset_codes.code_state(doc, T0 + timedelta(hours=1)) is CodeState.EXHAUSTED
    doc["intentos"] = 2
    assert reset_codes.code_state(doc, T0) is CodeState.EXPIRED
    assert reset_codes.is_usable(doc, T0 - timedelta(seconds=1))


def test_deliver_by_email(db, user, monkeypatch):
    sent = []
    monkeypatch.setattr(mailer, "send_reset_code", lambda email, nombre, code: sent.append((email, code)))
    reset = reset_codes.issue_code(db, user, "email", now=T0)

    assert reset_codes.deliver_code(db, user, reset) is True
    assert sent == [("ana@nilhub.pe", reset["code"])]


def test_deliver_by_whatsapp_falls_back_to_store_number(db, user, monkeypatch):
    db["store"].insert_one({"usuario_id": user["_id"], "nombre": "Belleza Ana", "slug": "belleza-ana", "whatsapp": "987654321"})
    sent = []
    monkeypatch.setattr(whatsapp.client, "send_reset_code", lambda nombre, phone, code: sent.append((phone, code)))
    reset = reset_codes.issue_code(db, user, "whatsapp", now=T0)

    assert reset_codes.deliver_code(db, user, reset) is True
    assert sent == [("987654321", reset["code"])]


def test_delivery_failure_is_reported_not_raised(db, user, monkeypatch):
    def boom(email, nombre, code):
        raise mailer.MailerError("RESEND_API_KEY no está configurada")

    monkeypatch.setattr(mailer, "send_reset_code", boom)
    reset = reset_codes.issue_code(db, user, "email", now=T0)

    assert reset_codes.deliver_code(db, user, reset) is False
