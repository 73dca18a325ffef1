"""
Storefront registry and catalog store helpers.

Slug generation, store provisioning, the denormalised product counter,
the offer-price rule and the public serializers all live here so that the
route handlers stay linear.
"""

import logging
import re
import unicodedata
from typing import Optional

from bson import ObjectId
from fastapi import HTTPException
from pymongo import ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from database import create_document, utcnow
from schemas import Store as StoreSchema

logger = logging.getLogger("uvicorn.error")

STORE_UPDATE_FIELDS = (
    "nombre",
    "descripcion",
    "whatsapp",
    "instagram",
    "facebook",
    "logo_url",
    "logo_cloudinary_id",
    "banner_url",
    "banner_cloudinary_id",
    "color_tema",
)
RELATED_LIMIT = 4
SLUG_INSERT_RETRIES = 5
# Path segments the API or the frontend already route; stores never get them.
RESERVED_SLUGS = {"mi-tienda", "admin", "api", "login", "registro", "forgot-password", "reset-password"}


def slugify(name: str) -> str:
    ascii_name = (
        unicodedata.normalize("NFD", (name or "").strip().lower())
        .encode("ascii", "ignore")
        .decode("ascii")
    )
    slug = re.sub(r"[^a-z0-9\s-]", "", ascii_name)
    slug = re.sub(r"\s+", "-", slug)
    slug = re.sub(r"-+", "-", slug).strip("-")
    return slug or "tienda"


def generate_unique_slug(db: Database, name: str) -> str:
    base = slugify(name)
    candidate = base
    counter = 1
    while candidate in RESERVED_SLUGS or db["store"].find_one({"slug": candidate}, {"_id": 1}):
        candidate = f"{base}-{counter}"
        counter += 1
    return candidate


def provision_store(db: Database, owner_id: ObjectId, nombre: str, whatsapp: str, **extra) -> dict:
    """Create a store for `owner_id` under a fresh unique slug.

    The lookup loop picks the first free suffix; the unique index on `slug`
    settles races between concurrent registrations, in which case the loop
    runs again. The unique index on `usuario_id` keeps one store per owner.
    """
    last_error = None
    for _ in range(SLUG_INSERT_RETRIES):
        store = StoreSchema(
            usuario_id=owner_id,
            nombre=nombre.strip(),
            slug=generate_unique_slug(db, nombre),
            whatsapp=whatsapp,
            **extra,
        )
        try:
            store_id = create_document(db, "store", store)
        except DuplicateKeyError as e:
            if db["store"].find_one({"usuario_id": owner_id}, {"_id": 1}):
                raise HTTPException(status_code=400, detail="Ya tienes una tienda creada")
            last_error = e
            logger.warning("Slug %s taken concurrently, retrying", store.slug)
            continue
        return db["store"].find_one({"_id": ObjectId(store_id)})
    raise last_error


def check_offer_price(precio, precio_oferta):
    if precio_oferta is None:
        return
    try:
        precio = float(precio)
        precio_oferta = float(precio_oferta)
    except (TypeError, ValueError):
        raise HTTPException(status_code=400, detail="Los precios deben ser valores numéricos válidos")
    if precio_oferta >= precio:
        raise HTTPException(
            status_code=400,
            detail=f"El precio de oferta ({precio_oferta:g}) debe ser menor al precio normal ({precio:g})",
        )


def increment_product_count(db: Database, store_id: ObjectId):
    db["store"].update_one({"_id": store_id}, {"$inc": {"total_productos": 1}, "$set": {"updated_at": utcnow()}})


def decrement_product_count(db: Database, store_id: ObjectId):
    db["store"].update_one(
        {"_id": store_id, "total_productos": {"$gt": 0}},
        {"$inc": {"total_productos": -1}, "$set": {"updated_at": utcnow()}},
    )


def increment_counter(db: Database, collection: str, doc_id: ObjectId, field: str) -> Optional[dict]:
    return db[collection].find_one_and_update(
        {"_id": doc_id},
        {"$inc": {field: 1}},
        return_document=ReturnDocument.AFTER,
    )


def catalog_query(store_id: ObjectId, categoria: Optional[str] = None, busqueda: Optional[str] = None) -> dict:
    query = {"tienda_id": store_id, "activo": True}
    if categoria and categoria != "todas":
        query["categoria"] = categoria
    if busqueda:
        pattern = {"$regex": re.escape(busqueda.strip()), "$options": "i"}
        query["$or"] = [{"nombre": pattern}, {"descripcion": pattern}, {"marca": pattern}]
    return query


def find_related(db: Database, product: dict, limit: int = RELATED_LIMIT):
    return db["product"].find({
        "tienda_id": product["tienda_id"],
        "categoria": product.get("categoria"),
        "activo": True,
        "_id": {"$ne": product["_id"]},
    }).sort("created_at", -1).limit(limit)


def serialize_store(doc, owner: Optional[dict] = None) -> dict:
    out = {
        "_id": str(doc["_id"]),
        "usuario_id": str(doc.get("usuario_id")),
        "nombre": doc.get("nombre"),
        "slug": doc.get("slug"),
        "descripcion": doc.get("descripcion"),
        "whatsapp": doc.get("whatsapp"),
        "instagram": doc.get("instagram"),
        "facebook": doc.get("facebook"),
        "logo_url": doc.get("logo_url"),
        "logo_cloudinary_id": doc.get("logo_cloudinary_id"),
        "banner_url": doc.get("banner_url"),
        "banner_cloudinary_id": doc.get("banner_cloudinary_id"),
        "color_tema": doc.get("color_tema", "#EC4899"),
        "activa": doc.get("activa", True),
        "total_productos": int(doc.get("total_productos", 0)),
        "total_visitas": int(doc.get("total_visitas", 0)),
        "created_at": doc.get("created_at"),
        "updated_at": doc.get("updated_at"),
    }
    if owner is not None:
        out["usuario"] = {"_id": str(owner["_id"]), "nombre": owner.get("nombre"), "email": owner.get("email")}
    return out


def serialize_store_summary(doc) -> Optional[dict]:
    if not doc:
        return None
    return {"_id": str(doc["_id"]), "nombre": doc.get("nombre"), "slug": doc.get("slug")}


def serialize_product(doc) -> dict:
    return {
        "_id": str(doc["_id"]),
        "tienda_id": str(doc.get("tienda_id")),
        "nombre": doc.get("nombre"),
        "descripcion": doc.get("descripcion"),
        "categoria": doc.get("categoria"),
        "marca": doc.get("marca"),
        "precio": doc.get("precio"),
        "precio_oferta": doc.get("precio_oferta"),
        "stock": int(doc.get("stock", 0)),
        "hay_stock": doc.get("hay_stock", doc.get("stock", 0) > 0),
        "imagenes": [{"url": i.get("url"), "cloudinary_id": i.get("cloudinary_id")} for i in doc.get("imagenes", [])],
        "ingredientes": doc.get("ingredientes"),
        "peso": doc.get("peso"),
        "activo": doc.get("activo", True),
        "vistas": int(doc.get("vistas", 0)),
        "clicks_whatsapp": int(doc.get("clicks_whatsapp", 0)),
        "created_at": doc.get("created_at"),
        "updated_at": doc.get("updated_at"),
    }
