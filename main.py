import logging
from datetime import datetime, timezone
from typing import List, Optional

from bson import ObjectId
from fastapi import Depends, FastAPI, File, HTTPException, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from pymongo import ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError
from starlette.exceptions import HTTPException as StarletteHTTPException

import database
import mailer
import media
import reset_codes
import whatsapp
from catalog import (
    catalog_query,
    check_offer_price,
    decrement_product_count,
    find_related,
    increment_counter,
    increment_product_count,
    provision_store,
    serialize_product,
    serialize_store,
    serialize_store_summary,
)
from config import settings
from database import create_document, get_db, utcnow
from schemas import (
    ROLE_ADMIN,
    ROLE_VENDOR,
    ForgotPasswordRequest,
    LoginRequest,
    Product as ProductSchema,
    ProductIn,
    ProductUpdate,
    RegisterRequest,
    ResetPasswordRequest,
    StockUpdate,
    StoreIn,
    StoreUpdate,
    User as UserSchema,
    VerifyCodeRequest,
)
from security import (
    create_access_token,
    get_current_user,
    hash_password,
    normalize_email,
    parse_object_id,
    require_role,
    serialize_user,
    verify_password,
)

logger = logging.getLogger("uvicorn.error")

MAX_UPLOAD_BYTES = 5 * 1024 * 1024
MAX_UPLOAD_FILES = 5
# Partial updates may not null these out.
REQUIRED_STORE_FIELDS = ("nombre", "whatsapp", "color_tema")
REQUIRED_PRODUCT_FIELDS = ("nombre", "categoria", "precio", "stock", "imagenes", "activo")

# App setup
app = FastAPI(title="NilHub API", version="1.0.0")
app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.frontend_url],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Error envelope

@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    detail = exc.detail
    if exc.status_code == 404 and detail == "Not Found":
        detail = "Ruta no encontrada"
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": detail},
        headers=getattr(exc, "headers", None),
    )


def _first_error(errors) -> str:
    if not errors:
        return "Error de validación"
    err = errors[0]
    field = ".".join(str(p) for p in err.get("loc", ()) if p != "body")
    return f"{field}: {err.get('msg')}" if field else err.get("msg", "Error de validación")


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(status_code=400, content={"success": False, "error": _first_error(exc.errors())})


@app.exception_handler(ValidationError)
async def model_validation_handler(request: Request, exc: ValidationError):
    return JSONResponse(status_code=400, content={"success": False, "error": _first_error(exc.errors())})


@app.exception_handler(reset_codes.ResetCodeError)
async def reset_code_handler(request: Request, exc: reset_codes.ResetCodeError):
    return JSONResponse(status_code=exc.status_code, content={"success": False, "error": exc.message})


@app.exception_handler(media.MediaError)
async def media_error_handler(request: Request, exc: media.MediaError):
    return JSONResponse(status_code=500, content={"success": False, "error": str(exc)})


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"success": False, "error": "Error del servidor"})


# Lifecycle

@app.on_event("startup")
def startup_event():
    if database.db is None:
        logger.warning("DATABASE_URL not set; skipping index setup")
    else:
        try:
            database.ensure_indexes(database.db)
        except Exception as e:
            logger.error("Failed to ensure indexes: %s", e)
    if settings.whatsapp_enabled:
        whatsapp.client.start()


@app.on_event("shutdown")
def shutdown_event():
    whatsapp.client.close()


# Helpers

def find_own_store(db: Database, user: dict):
    return db["store"].find_one({"usuario_id": user["_id"]})


def require_own_store(db: Database, user: dict, detail: str = "Tienda no encontrada"):
    store = find_own_store(db, user)
    if not store:
        raise HTTPException(404, detail)
    return store


def get_owned_product(db: Database, product_id: str, user: dict, action: str = "editar"):
    product = db["product"].find_one({"_id": parse_object_id(product_id)})
    if not product:
        raise HTTPException(404, "Producto no encontrado")
    store = find_own_store(db, user)
    if not store or product["tienda_id"] != store["_id"]:
        logger.warning("User %s tried to %s product %s of another store", user.get("email"), action, product_id)
        raise HTTPException(403, f"No autorizado para {action} este producto")
    return product, store


def product_chat_link(db: Database, product: dict):
    store = db["store"].find_one({"_id": product["tienda_id"]}, {"whatsapp": 1})
    if not store or not store.get("whatsapp"):
        return None
    message = whatsapp.product_message(product["nombre"], product["precio"], product.get("precio_oferta"))
    return whatsapp.build_chat_link(store["whatsapp"], message)


def drop_null_required(updates: dict, required) -> dict:
    return {k: v for k, v in updates.items() if v is not None or k not in required}


def apply_store_update(db: Database, store: dict, payload: StoreUpdate) -> dict:
    updates = drop_null_required(payload.model_dump(exclude_unset=True), REQUIRED_STORE_FIELDS)
    updates["updated_at"] = utcnow()
    return db["store"].find_one_and_update(
        {"_id": store["_id"]},
        {"$set": updates},
        return_document=ReturnDocument.AFTER,
    )


def auth_payload(user: dict, store) -> dict:
    return {
        "usuario": {
            "_id": str(user["_id"]),
            "nombre": user.get("nombre"),
            "email": user.get("email"),
            "role": user.get("role"),
        },
        "tienda": serialize_store_summary(store),
        "token": create_access_token(str(user["_id"])),
    }


# Routes
@app.get("/")
def root():
    return {
        "success": True,
        "message": "NilHub API funcionando correctamente",
        "version": app.version,
        "endpoints": {
            "auth": "/api/auth",
            "productos": "/api/productos",
            "tiendas": "/api/tiendas",
            "upload": "/api/upload",
            "admin": "/api/admin",
        },
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@app.get("/api/health")
def health():
    response = {"success": True, "backend": "ok", "database": "not-configured", "collections": []}
    if database.db is None:
        return response
    try:
        response["collections"] = database.db.list_collection_names()
        response["database"] = "ok"
    except Exception as e:
        response["database"] = f"error: {str(e)[:80]}"
    return response


# Auth
@app.post("/api/auth/registro", status_code=201)
def register(payload: RegisterRequest, db: Database = Depends(get_db)):
    email = normalize_email(payload.email)
    if db["user"].find_one({"email": email}):
        raise HTTPException(400, "El email ya está registrado")

    user = UserSchema(
        nombre=payload.nombre.strip(),
        email=email,
        password_hash=hash_password(payload.password),
        role=ROLE_VENDOR,
    )
    try:
        user_id = ObjectId(create_document(db, "user", user))
    except DuplicateKeyError:
        raise HTTPException(400, "El email ya está registrado")

    try:
        store = provision_store(
            db,
            user_id,
            payload.nombreTienda,
            payload.whatsapp,
            instagram=payload.instagram,
            facebook=payload.facebook,
        )
    except Exception:
        # No user without a storefront.
        db["user"].delete_one({"_id": user_id})
        raise

    user_doc = db["user"].find_one({"_id": user_id})
    logger.info("User registered: %s | store: %s", email, store["slug"])
    return {"success": True, "data": auth_payload(user_doc, store)}


@app.post("/api/auth/login")
def login(payload: LoginRequest, db: Database = Depends(get_db)):
    email = normalize_email(payload.email)
    user = db["user"].find_one({"email": email})
    if not user or not verify_password(payload.password, user.get("password_hash", "")):
        raise HTTPException(401, "Credenciales inválidas")
    if not user.get("activo", True):
        raise HTTPException(401, "Usuario inactivo. Contacta al administrador.")
    logger.info("Login: %s", email)
    return {"success": True, "data": auth_payload(user, find_own_store(db, user))}


@app.get("/api/auth/me")
def me(user=Depends(get_current_user), db: Database = Depends(get_db)):
    store = find_own_store(db, user)
    return {
        "success": True,
        "data": {"usuario": serialize_user(user), "tienda": serialize_store(store) if store else None},
    }


# Password reset
@app.post("/api/auth/forgot-password")
def forgot_password(payload: ForgotPasswordRequest, db: Database = Depends(get_db)):
    email = normalize_email(payload.email)
    user = db["user"].find_one({"email": email})
    if not user:
        logger.warning("Password reset requested for unknown email %s", email)
        return {"success": True, "message": "Si el email existe, recibirás un código de recuperación"}

    reset = reset_codes.issue_code(db, user, payload.metodo)
    reset_codes.deliver_code(db, user, reset)

    body = {
        "success": True,
        "message": f"Código enviado a {email}. Revisa tu bandeja de entrada."
        if payload.metodo == "email"
        else "Código enviado por WhatsApp al número registrado.",
    }
    if settings.is_development:
        body["code"] = reset["code"]
    return body


@app.post("/api/auth/verify-reset-code")
def verify_reset_code(payload: VerifyCodeRequest, db: Database = Depends(get_db)):
    reset_codes.verify_code(db, normalize_email(payload.email), payload.code)
    return {"success": True, "message": "Código válido"}


@app.post("/api/auth/reset-password")
def reset_password(payload: ResetPasswordRequest, db: Database = Depends(get_db)):
    email = normalize_email(payload.email)
    reset = reset_codes.consume_code(db, email, payload.code)

    user = db["user"].find_one({"_id": reset["usuario_id"]})
    if not user:
        raise HTTPException(404, "Usuario no encontrado")
    # The code is already claimed; release it if the password write fails.
    try:
        db["user"].update_one(
            {"_id": user["_id"]},
            {"$set": {"password_hash": hash_password(payload.nuevaPassword), "updated_at": utcnow()}},
        )
    except Exception:
        reset_codes.release_code(db, reset)
        raise
    logger.info("Password updated for %s", user["email"])

    try:
        mailer.send_password_changed(user["email"], user.get("nombre", ""))
    except Exception as e:
        logger.warning("Password changed for %s but confirmation email failed: %s", user["email"], e)

    return {"success": True, "message": "Contraseña actualizada exitosamente"}


# Stores
@app.get("/api/tiendas/mi-tienda")
def my_store(user=Depends(get_current_user), db: Database = Depends(get_db)):
    store = require_own_store(db, user, "No tienes una tienda creada")
    return {"success": True, "data": serialize_store(store)}


@app.post("/api/tiendas", status_code=201)
def create_store(payload: StoreIn, user=Depends(get_current_user), db: Database = Depends(get_db)):
    if find_own_store(db, user):
        raise HTTPException(400, "Ya tienes una tienda creada")
    store = provision_store(
        db,
        user["_id"],
        payload.nombre,
        payload.whatsapp,
        descripcion=payload.descripcion,
        instagram=payload.instagram,
        facebook=payload.facebook,
    )
    logger.info("Store created: %s for %s", store["slug"], user.get("email"))
    return {"success": True, "data": serialize_store(store)}


@app.put("/api/tiendas/mi-tienda")
def update_my_store(payload: StoreUpdate, user=Depends(get_current_user), db: Database = Depends(get_db)):
    store = require_own_store(db, user)
    store = apply_store_update(db, store, payload)
    logger.info("Store updated: %s", store.get("nombre"))
    return {"success": True, "data": serialize_store(store)}


@app.put("/api/tiendas/{store_id}")
def update_store(store_id: str, payload: StoreUpdate, user=Depends(get_current_user), db: Database = Depends(get_db)):
    store = db["store"].find_one({"_id": parse_object_id(store_id)})
    if not store:
        raise HTTPException(404, "Tienda no encontrada")
    if store.get("usuario_id") != user["_id"]:
        raise HTTPException(403, "No tienes permiso para editar esta tienda")
    store = apply_store_update(db, store, payload)
    logger.info("Store updated: %s (ID: %s)", store.get("nombre"), store_id)
    return {"success": True, "data": serialize_store(store)}


@app.get("/api/tiendas/{slug}")
def get_store_by_slug(slug: str, db: Database = Depends(get_db)):
    store = db["store"].find_one_and_update(
        {"slug": slug.lower(), "activa": True},
        {"$inc": {"total_visitas": 1}},
        return_document=ReturnDocument.AFTER,
    )
    if not store:
        raise HTTPException(404, "Tienda no encontrada")
    owner = db["user"].find_one({"_id": store["usuario_id"]}, {"nombre": 1, "email": 1})
    data = serialize_store(store, owner=owner)
    data["whatsapp_url"] = whatsapp.build_chat_link(store.get("whatsapp"), whatsapp.store_greeting(store["nombre"]))
    return {"success": True, "data": data}


@app.get("/api/tiendas/{slug}/productos")
def list_store_products(slug: str, categoria: Optional[str] = None, busqueda: Optional[str] = None, db: Database = Depends(get_db)):
    store = db["store"].find_one({"slug": slug.lower(), "activa": True})
    if not store:
        raise HTTPException(404, "Tienda no encontrada")
    products = db["product"].find(catalog_query(store["_id"], categoria, busqueda)).sort("created_at", -1)
    data = [serialize_product(p) for p in products]
    return {"success": True, "count": len(data), "data": data}


# Products
@app.get("/api/productos/mis-productos")
def my_products(user=Depends(get_current_user), db: Database = Depends(get_db)):
    store = require_own_store(db, user)
    products = db["product"].find({"tienda_id": store["_id"]}).sort("created_at", -1)
    data = [serialize_product(p) for p in products]
    return {"success": True, "count": len(data), "data": data}


@app.get("/api/productos/{product_id}")
def get_product(product_id: str, db: Database = Depends(get_db)):
    product = increment_counter(db, "product", parse_object_id(product_id), "vistas")
    if not product:
        raise HTTPException(404, "Producto no encontrado")
    data = serialize_product(product)
    data["whatsapp_url"] = product_chat_link(db, product)
    return {"success": True, "data": data}


@app.get("/api/productos/{product_id}/relacionados")
def related_products(product_id: str, db: Database = Depends(get_db)):
    product = db["product"].find_one({"_id": parse_object_id(product_id)})
    if not product:
        raise HTTPException(404, "Producto no encontrado")
    data = [serialize_product(p) for p in find_related(db, product)]
    return {"success": True, "count": len(data), "data": data}


@app.post("/api/productos", status_code=201)
def create_product(payload: ProductIn, user=Depends(get_current_user), db: Database = Depends(get_db)):
    store = require_own_store(db, user)
    check_offer_price(payload.precio, payload.precio_oferta)

    product = ProductSchema(**payload.model_dump(), tienda_id=store["_id"], hay_stock=payload.stock > 0)
    product_id = create_document(db, "product", product)
    increment_product_count(db, store["_id"])

    logger.info("Product created: %s (store: %s)", payload.nombre, store.get("nombre"))
    doc = db["product"].find_one({"_id": ObjectId(product_id)})
    return {"success": True, "data": serialize_product(doc)}


@app.put("/api/productos/{product_id}")
def update_product(product_id: str, payload: ProductUpdate, user=Depends(get_current_user), db: Database = Depends(get_db)):
    product, _ = get_owned_product(db, product_id, user, "editar")
    updates = drop_null_required(payload.model_dump(exclude_unset=True), REQUIRED_PRODUCT_FIELDS)
    if not updates:
        raise HTTPException(400, "No hay cambios para guardar")

    if "precio" in updates or "precio_oferta" in updates:
        check_offer_price(
            updates.get("precio", product.get("precio")),
            updates.get("precio_oferta", product.get("precio_oferta")),
        )
    if "stock" in updates:
        updates["hay_stock"] = updates["stock"] > 0

    updates["updated_at"] = utcnow()
    doc = db["product"].find_one_and_update(
        {"_id": product["_id"]},
        {"$set": updates},
        return_document=ReturnDocument.AFTER,
    )
    logger.info("Product updated: %s", doc.get("nombre"))
    return {"success": True, "data": serialize_product(doc)}


@app.patch("/api/productos/{product_id}/stock")
def update_stock(product_id: str, payload: StockUpdate, user=Depends(get_current_user), db: Database = Depends(get_db)):
    product, _ = get_owned_product(db, product_id, user, "editar")
    doc = db["product"].find_one_and_update(
        {"_id": product["_id"]},
        {"$set": {"stock": payload.stock, "hay_stock": payload.stock > 0, "updated_at": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    logger.info("Stock updated: %s -> %s units", doc.get("nombre"), payload.stock)
    return {"success": True, "data": serialize_product(doc)}


@app.delete("/api/productos/{product_id}")
def delete_product(product_id: str, user=Depends(get_current_user), db: Database = Depends(get_db)):
    product, store = get_owned_product(db, product_id, user, "eliminar")
    db["product"].delete_one({"_id": product["_id"]})
    decrement_product_count(db, store["_id"])
    logger.info("Product deleted: %s", product.get("nombre"))
    return {"success": True, "data": {}}


@app.post("/api/productos/{product_id}/click-whatsapp")
def register_whatsapp_click(product_id: str, db: Database = Depends(get_db)):
    product = increment_counter(db, "product", parse_object_id(product_id), "clicks_whatsapp")
    if not product:
        raise HTTPException(404, "Producto no encontrado")
    return {
        "success": True,
        "data": {"clicks_whatsapp": product["clicks_whatsapp"], "whatsapp_url": product_chat_link(db, product)},
    }


# Uploads
def read_image(upload: UploadFile) -> str:
    if not (upload.content_type or "").startswith("image/"):
        raise HTTPException(400, "Solo se permiten imágenes")
    content = upload.file.read(MAX_UPLOAD_BYTES + 1)
    if not content:
        raise HTTPException(400, "No se proporcionó ninguna imagen")
    if len(content) > MAX_UPLOAD_BYTES:
        raise HTTPException(400, "La imagen no puede superar los 5MB")
    return media.to_data_uri(content, upload.content_type)


@app.post("/api/upload/imagen")
def upload_image(imagen: UploadFile = File(...), folder: Optional[str] = None, user=Depends(get_current_user)):
    data_uri = read_image(imagen)
    result = media.upload_image(data_uri, folder or settings.upload_folder)
    return {"success": True, "data": result}


@app.post("/api/upload/imagenes")
def upload_images(imagenes: List[UploadFile] = File(...), folder: Optional[str] = None, user=Depends(get_current_user)):
    if len(imagenes) > MAX_UPLOAD_FILES:
        raise HTTPException(400, f"Máximo {MAX_UPLOAD_FILES} imágenes por solicitud")
    data_uris = [read_image(f) for f in imagenes]
    results = media.upload_images(data_uris, folder or settings.upload_folder)
    return {"success": True, "count": len(results), "data": results}


@app.delete("/api/upload/{cloudinary_id:path}")
def delete_image(cloudinary_id: str, user=Depends(get_current_user)):
    media.delete_image(cloudinary_id)
    return {"success": True, "data": {}}


# Admin endpoints
@app.get("/api/admin/usuarios")
def admin_users(user=Depends(require_role(ROLE_ADMIN)), db: Database = Depends(get_db)):
    data = [serialize_user(u) for u in db["user"].find({}).sort("created_at", -1)]
    return {"success": True, "count": len(data), "data": data}


@app.put("/api/admin/usuarios/{user_id}/toggle")
def admin_toggle_user(user_id: str, user=Depends(require_role(ROLE_ADMIN)), db: Database = Depends(get_db)):
    oid = parse_object_id(user_id)
    if oid == user["_id"]:
        raise HTTPException(400, "No puedes desactivar tu propia cuenta")
    target = db["user"].find_one({"_id": oid})
    if not target:
        raise HTTPException(404, "Usuario no encontrado")
    target = db["user"].find_one_and_update(
        {"_id": oid},
        {"$set": {"activo": not target.get("activo", True), "updated_at": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    logger.info("Admin %s set user %s activo=%s", user.get("email"), target.get("email"), target["activo"])
    return {"success": True, "data": serialize_user(target)}


@app.delete("/api/admin/usuarios/{user_id}")
def admin_delete_user(user_id: str, user=Depends(require_role(ROLE_ADMIN)), db: Database = Depends(get_db)):
    oid = parse_object_id(user_id)
    if oid == user["_id"]:
        raise HTTPException(400, "No puedes eliminar tu propia cuenta")
    target = db["user"].find_one({"_id": oid})
    if not target:
        raise HTTPException(404, "Usuario no encontrado")
    store_ids = [s["_id"] for s in db["store"].find({"usuario_id": oid}, {"_id": 1})]
    if store_ids:
        db["product"].delete_many({"tienda_id": {"$in": store_ids}})
        db["store"].delete_many({"_id": {"$in": store_ids}})
    db[reset_codes.COLLECTION].delete_many({"usuario_id": oid})
    db["user"].delete_one({"_id": oid})
    logger.info("Admin %s deleted user %s", user.get("email"), target.get("email"))
    return {"success": True, "message": "Usuario eliminado exitosamente"}


@app.get("/api/admin/tiendas")
def admin_stores(user=Depends(require_role(ROLE_ADMIN)), db: Database = Depends(get_db)):
    stores = list(db["store"].find({}).sort("created_at", -1))
    owner_ids = list({s["usuario_id"] for s in stores})
    owners = {u["_id"]: u for u in db["user"].find({"_id": {"$in": owner_ids}}, {"nombre": 1, "email": 1})}
    data = [serialize_store(s, owner=owners.get(s["usuario_id"])) for s in stores]
    return {"success": True, "count": len(data), "data": data}


@app.put("/api/admin/tiendas/{store_id}/toggle")
def admin_toggle_store(store_id: str, user=Depends(require_role(ROLE_ADMIN)), db: Database = Depends(get_db)):
    oid = parse_object_id(store_id)
    store = db["store"].find_one({"_id": oid})
    if not store:
        raise HTTPException(404, "Tienda no encontrada")
    store = db["store"].find_one_and_update(
        {"_id": oid},
        {"$set": {"activa": not store.get("activa", True), "updated_at": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    logger.info("Admin %s set store %s activa=%s", user.get("email"), store.get("slug"), store["activa"])
    return {"success": True, "data": serialize_store(store)}


@app.get("/api/admin/whatsapp")
def admin_whatsapp_status(user=Depends(require_role(ROLE_ADMIN))):
    return {"success": True, "data": whatsapp.client.status()}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=settings.port)
