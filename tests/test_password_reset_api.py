from fastapi.testclient import TestClient

import main

from .conftest import PASSWORD


def latest_code(db, email="ana@nilhub.pe"):
    return db["passwordreset"].find_one({"email": email}, sort=[("created_at", -1)])


def test_forgot_password_unknown_email_is_generic(client, db, sent_mail):
    res = client.post("/api/auth/forgot-password", json={"email": "nadie@nilhub.pe", "metodo": "email"})
    assert res.status_code == 200
    assert res.json()["message"] == "Si el email existe, recibirás un código de recuperación"
    assert db["passwordreset"].count_documents({}) == 0
    assert sent_mail == []


def test_forgot_password_issues_and_mails_code(client, db, vendor, sent_mail):
    res = client.post("/api/auth/forgot-password", json={"email": "ana@nilhub.pe", "metodo": "email"})
    assert res.status_code == 200

    reset = latest_code(db)
    assert reset["metodo"] == "email"
    assert sent_mail == [("code", "ana@nilhub.pe", reset["code"])]


def test_forgot_password_twice_is_rate_limited(client, vendor, sent_mail):
    client.post("/api/auth/forgot-password", json={"email": "ana@nilhub.pe", "metodo": "email"})
    res = client.post("/api/auth/forgot-password", json={"email": "ana@nilhub.pe", "metodo": "email"})
    assert res.status_code == 429
    assert res.json()["error"] == "Ya solicitaste un código recientemente. Espera 5 minutos."


def test_full_reset_flow(client, db, vendor, sent_mail):
    client.post("/api/auth/forgot-password", json={"email": "ana@nilhub.pe", "metodo": "email"})
    code = latest_code(db)["code"]

    res = client.post("/api/auth/verify-reset-code", json={"email": "ana@nilhub.pe", "code": code})
    assert res.status_code == 200
    assert res.json()["message"] == "Código válido"

    res = client.post("/api/auth/reset-password", json={
        "email": "ana@nilhub.pe", "code": code, "nuevaPassword": "nueva-clave",
    })
    assert res.status_code == 200
    assert latest_code(db)["usado"] is True
    assert ("changed", "ana@nilhub.pe", None) in sent_mail

    old = client.post("/api/auth/login", json={"email": "ana@nilhub.pe", "password": PASSWORD})
    assert old.status_code == 401
    new = client.post("/api/auth/login", json={"email": "ana@nilhub.pe", "password": "nueva-clave"})
    assert new.status_code == 200

    again = client.post("/api/auth/reset-password", json={
        "email": "ana@nilhub.pe", "code": code, "nuevaPassword": "otra-clave",
    })
    assert again.status_code == 400
    assert again.json()["error"] == "Este código ya fue usado"


def test_wrong_codes_exhaust_attempts(client, db, vendor, sent_mail):
    client.post("/api/auth/forgot-password", json={"email": "ana@nilhub.pe", "metodo": "email"})
    code = latest_code(db)["code"]
    wrong = "000000" if code != "000000" else "111111"

    for _ in range(3):
        res = client.post("/api/auth/verify-reset-code", json={"email": "ana@nilhub.pe", "code": wrong})
        assert res.status_code == 400
        assert res.json()["error"] == "Código inválido"

    res = client.post("/api/auth/verify-reset-code", json={"email": "ana@nilhub.pe", "code": code})
    assert res.status_code == 400
    assert res.json()["error"] == "Has superado el número máximo de intentos"
    assert latest_code(db)["intentos"] == 3


def test_confirmation_failure_does_not_undo_password_change(client, db, vendor, monkeypatch):
    import mailer

    def broken(email, nombre):
        raise mailer.MailerError("servicio caído")

    monkeypatch.setattr(mailer, "send_reset_code", lambda email, nombre, code: None)
    monkeypatch.setattr(mailer, "send_password_changed", broken)

    client.post("/api/auth/forgot-password", json={"email": "ana@nilhub.pe", "metodo": "email"})
    code = latest_code(db)["code"]
    res = client.post("/api/auth/reset-password", json={
        "email": "ana@nilhub.pe", "code": code, "nuevaPassword": "nueva-clave",
    })
    assert res.status_code == 200
    login = client.post("/api/auth/login", json={"email": "ana@nilhub.pe", "password": "nueva-clave"})
    assert login.status_code == 200


def test_malformed_code_is_validation_error(client):
    res = client.post("/api/auth/verify-reset-code", json={"email": "ana@nilhub.pe", "code": "12ab"})
    assert res.status_code == 400
    assert res.json()["error"].startswith("code")


def test_failed_password_write_releases_the_code(client, db, vendor, sent_mail, monkeypatch):
    def broken_hash(password):
        raise RuntimeError("bcrypt no disponible")

    client.post("/api/auth/forgot-password", json={"email": "ana@nilhub.pe", "metodo": "email"})
    code = latest_code(db)["code"]
    original_hash = main.hash_password
    monkeypatch.setattr(main, "hash_password", broken_hash)

    res = TestClient(main.app, raise_server_exceptions=False).post("/api/auth/reset-password", json={
        "email": "ana@nilhub.pe", "code": code, "nuevaPassword": "nueva-clave",
    })
    assert res.status_code == 500
    assert latest_code(db)["usado"] is False

    monkeypatch.setattr(main, "hash_password", original_hash)
    res = client.post("/api/auth/reset-password", json={
        "email": "ana@nilhub.pe", "code": code, "nuevaPassword": "nueva-clave",
    })
    assert res.status_code == 200
    assert latest_code(db)["usado"] is True
