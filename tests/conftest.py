import mongomock
import pytest
from fastapi.testclient import TestClient

import mailer
from database import ensure_indexes, get_db
from main import app

PASSWORD = "secreto123"


@pytest.fixture
def db():
    database = mongomock.MongoClient()["nilhub_test"]
    ensure_indexes(database)
    return database


@pytest.fixture
def client(db):
    app.dependency_overrides[get_db] = lambda: db
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def sent_mail(monkeypatch):
    outbox = []
    monkeypatch.setattr(mailer, "send_reset_code", lambda email, nombre, code: outbox.append(("code", email, code)))
    monkeypatch.setattr(mailer, "send_password_changed", lambda email, nombre: outbox.append(("changed", email, None)))
    return outbox


def register(client, email="ana@nilhub.pe", tienda="Belleza Ana", whatsapp="987654321", nombre="Ana Torres"):
    res = client.post("/api/auth/registro", json={
        "nombre": nombre,
        "email": email,
        "password": PASSWORD,
        "nombreTienda": tienda,
        "whatsapp": whatsapp,
    })
    assert res.status_code == 201, res.json()
    return res.json()["data"]


def auth(token):
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def vendor(client):
    data = register(client)
    return {**data, "headers": auth(data["token"])}


@pytest.fixture
def admin(client, db):
    data = register(client, email="admin@nilhub.pe", tienda="Tienda Admin", nombre="Admin")
    db["user"].update_one({"email": "admin@nilhub.pe"}, {"$set": {"role": "admin"}})
    return {**data, "headers": auth(data["token"])}


def product_body(**overrides):
    body = {
        "nombre": "Labial Mate Rojo",
        "descripcion": "Labial de larga duración",
        "categoria": "maquillaje",
        "marca": "Lumi",
        "precio": 35.0,
        "stock": 10,
        "imagenes": [{"url": "https://res.cloudinary.com/demo/labial.jpg", "cloudinary_id": "nilhub/productos/labial"}],
    }
    body.update(overrides)
    return body
