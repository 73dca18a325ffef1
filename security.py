import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from bson import ObjectId
from bson.errors import InvalidId
from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from jose import ExpiredSignatureError, JWTError, jwt
from passlib.context import CryptContext
from pymongo.database import Database

from config import settings
from database import get_db
from schemas import ROLE_ADMIN

logger = logging.getLogger("uvicorn.error")

ALGORITHM = "HS256"
pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="api/auth/login", auto_error=False)


def normalize_email(email: Optional[str]) -> str:
    if not email:
        return ""
    return email.strip().lower()


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    if not password_hash:
        return False
    return pwd_context.verify(password, password_hash)


def create_access_token(user_id: str, expires_delta: Optional[timedelta] = None) -> str:
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(days=settings.jwt_expire_days))
    return jwt.encode({"sub": user_id, "exp": expire}, settings.jwt_secret, algorithm=ALGORITHM)


def parse_object_id(value: str) -> ObjectId:
    try:
        return ObjectId(value)
    except (InvalidId, TypeError):
        raise HTTPException(status_code=404, detail="Recurso no encontrado")


def serialize_user(doc) -> dict:
    return {
        "_id": str(doc["_id"]),
        "nombre": doc.get("nombre"),
        "email": doc.get("email"),
        "telefono": doc.get("telefono"),
        "role": doc.get("role"),
        "activo": doc.get("activo", True),
        "created_at": doc.get("created_at"),
    }


# Dependency: get current user
def get_current_user(token: Optional[str] = Depends(oauth2_scheme), db: Database = Depends(get_db)):
    def unauthorized(detail: str):
        return HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=detail,
            headers={"WWW-Authenticate": "Bearer"},
        )

    if not token:
        raise unauthorized("No autorizado. Token no proporcionado.")
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[ALGORITHM])
        user_id = payload.get("sub")
        if user_id is None:
            raise unauthorized("Token de autenticación inválido")
        oid = ObjectId(user_id)
    except ExpiredSignatureError:
        raise unauthorized("Tu sesión ha expirado. Por favor, inicia sesión nuevamente.")
    except (JWTError, InvalidId, TypeError):
        raise unauthorized("Token de autenticación inválido")

    user = db["user"].find_one({"_id": oid})
    if not user:
        logger.warning("Valid token for missing user %s", user_id)
        raise unauthorized("Usuario no encontrado")
    if not user.get("activo", True):
        logger.warning("Inactive user %s tried to access the API", user.get("email"))
        raise unauthorized("Usuario inactivo. Contacta al administrador.")
    return user


# Role guard
def require_role(*roles):
    detail = "Acceso denegado"
    if roles == (ROLE_ADMIN,):
        detail = "Acceso denegado. Se requieren privilegios de administrador."

    def _guard(user=Depends(get_current_user)):
        if user.get("role") not in roles:
            logger.warning("User %s denied: role %s not in %s", user.get("email"), user.get("role"), roles)
            raise HTTPException(status_code=403, detail=detail)
        return user
    return _guard
