"""
MongoDB access for the catalog API.

The handle is built once from DATABASE_URL / DATABASE_NAME. Route handlers
receive it through the `get_db` dependency so tests can swap it out.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import HTTPException
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.database import Database

from config import settings

logger = logging.getLogger("uvicorn.error")

client: Optional[MongoClient] = None
db: Optional[Database] = None

if settings.database_url:
    client = MongoClient(settings.database_url)
    db = client[settings.database_name]


def utcnow() -> datetime:
    # Mongo hands datetimes back as naive UTC; store them the same way.
    return datetime.now(timezone.utc).replace(tzinfo=None)


def get_db() -> Database:
    if db is None:
        raise HTTPException(status_code=500, detail="Base de datos no configurada")
    return db


def create_document(database: Database, collection_name: str, data, now: Optional[datetime] = None) -> str:
    if isinstance(data, BaseModel):
        data = data.model_dump()
    now = now or utcnow()
    doc = {**data, "created_at": now, "updated_at": now}
    res = database[collection_name].insert_one(doc)
    return str(res.inserted_id)


def ensure_indexes(database: Database):
    database["user"].create_index("email", unique=True)
    database["user"].create_index("role")
    database["store"].create_index("slug", unique=True)
    database["store"].create_index("usuario_id", unique=True)
    database["store"].create_index("activa")
    database["product"].create_index([("tienda_id", ASCENDING), ("activo", ASCENDING)])
    database["product"].create_index("categoria")
    database["passwordreset"].create_index([("email", ASCENDING), ("created_at", DESCENDING)])
    # TTL: Mongo drops reset codes once `expira` has passed.
    database["passwordreset"].create_index("expira", expireAfterSeconds=0)
    logger.info("MongoDB indexes ensured on %s", database.name)
