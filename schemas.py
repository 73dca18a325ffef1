"""
Database Schemas for the NilHub catalog API

Each document model represents a MongoDB collection.
Collection name is lowercase of the class name.
- User -> "user"
- Store -> "store"
- Product -> "product"
- PasswordReset -> "passwordreset"

Request bodies accepted by the HTTP layer live at the bottom of the module.
"""

from datetime import datetime
from typing import List, Literal, Optional

from bson import ObjectId
from pydantic import BaseModel, ConfigDict, EmailStr, Field

ROLE_VENDOR = "vendedor"
ROLE_ADMIN = "admin"

Category = Literal["maquillaje", "skincare", "fragancias", "cuidado-personal", "accesorios", "otros"]
ResetChannel = Literal["email", "whatsapp"]

WHATSAPP_PATTERN = r"^[0-9]{8,15}$"
SLUG_PATTERN = r"^[a-z0-9-]+$"
COLOR_PATTERN = r"^#([A-Fa-f0-9]{6}|[A-Fa-f0-9]{3})$"
CODE_PATTERN = r"^[0-9]{6}$"


# Documents

class User(BaseModel):
    nombre: str = Field(..., min_length=2, max_length=50, description="Full name")
    email: EmailStr = Field(..., description="Unique, normalised email address")
    password_hash: str = Field(..., description="bcrypt hash")
    telefono: Optional[str] = Field(None, description="Contact phone for WhatsApp delivery")
    role: Literal["vendedor", "admin"] = Field(ROLE_VENDOR, description="Role: vendedor, admin")
    activo: bool = Field(True, description="Whether the account may log in")


class Store(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    usuario_id: ObjectId = Field(..., description="Owner user _id")
    nombre: str = Field(..., min_length=3, max_length=50)
    slug: str = Field(..., pattern=SLUG_PATTERN, description="Unique public identifier")
    descripcion: Optional[str] = Field(None, max_length=500)
    whatsapp: str = Field(..., pattern=WHATSAPP_PATTERN)
    instagram: Optional[str] = None
    facebook: Optional[str] = None
    logo_url: Optional[str] = None
    logo_cloudinary_id: Optional[str] = None
    banner_url: Optional[str] = None
    banner_cloudinary_id: Optional[str] = None
    color_tema: str = Field("#EC4899", pattern=COLOR_PATTERN)
    activa: bool = True
    total_productos: int = Field(0, ge=0, description="Denormalised product counter")
    total_visitas: int = Field(0, ge=0)


class ProductImage(BaseModel):
    url: str
    cloudinary_id: str


class Product(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    tienda_id: ObjectId = Field(..., description="Owning store _id")
    nombre: str = Field(..., min_length=3, max_length=100)
    descripcion: Optional[str] = Field(None, max_length=1000)
    categoria: Category
    marca: Optional[str] = Field(None, max_length=50)
    precio: float = Field(..., ge=0)
    # precio_oferta < precio is checked by the route handlers, not here.
    precio_oferta: Optional[float] = Field(None, ge=0)
    stock: int = Field(0, ge=0)
    hay_stock: bool = True
    imagenes: List[ProductImage] = Field(default_factory=list)
    ingredientes: Optional[str] = Field(None, max_length=500)
    peso: Optional[str] = Field(None, max_length=50)
    activo: bool = True
    vistas: int = Field(0, ge=0)
    clicks_whatsapp: int = Field(0, ge=0)


class PasswordReset(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    usuario_id: ObjectId
    email: EmailStr
    code: str = Field(..., pattern=CODE_PATTERN)
    metodo: ResetChannel
    expira: datetime
    intentos: int = Field(0, ge=0, le=3)
    usado: bool = False


# Request bodies

class RegisterRequest(BaseModel):
    nombre: str = Field(..., min_length=2, max_length=50)
    email: EmailStr
    password: str = Field(..., min_length=6)
    nombreTienda: str = Field(..., min_length=3, max_length=50)
    whatsapp: str = Field(..., pattern=WHATSAPP_PATTERN)
    instagram: Optional[str] = None
    facebook: Optional[str] = None


class LoginRequest(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=1)


class ForgotPasswordRequest(BaseModel):
    email: EmailStr
    metodo: ResetChannel


class VerifyCodeRequest(BaseModel):
    email: EmailStr
    code: str = Field(..., pattern=CODE_PATTERN)


class ResetPasswordRequest(BaseModel):
    email: EmailStr
    code: str = Field(..., pattern=CODE_PATTERN)
    nuevaPassword: str = Field(..., min_length=6)


class StoreIn(BaseModel):
    nombre: str = Field(..., min_length=3, max_length=50)
    descripcion: Optional[str] = Field(None, max_length=500)
    whatsapp: str = Field(..., pattern=WHATSAPP_PATTERN)
    instagram: Optional[str] = None
    facebook: Optional[str] = None


class StoreUpdate(BaseModel):
    nombre: Optional[str] = Field(None, min_length=3, max_length=50)
    descripcion: Optional[str] = Field(None, max_length=500)
    whatsapp: Optional[str] = Field(None, pattern=WHATSAPP_PATTERN)
    instagram: Optional[str] = None
    facebook: Optional[str] = None
    logo_url: Optional[str] = None
    logo_cloudinary_id: Optional[str] = None
    banner_url: Optional[str] = None
    banner_cloudinary_id: Optional[str] = None
    color_tema: Optional[str] = Field(None, pattern=COLOR_PATTERN)


class ProductIn(BaseModel):
    nombre: str = Field(..., min_length=3, max_length=100)
    descripcion: Optional[str] = Field(None, max_length=1000)
    categoria: Category
    marca: Optional[str] = Field(None, max_length=50)
    precio: float = Field(..., ge=0)
    precio_oferta: Optional[float] = Field(None, ge=0)
    stock: int = Field(..., ge=0)
    imagenes: List[ProductImage] = Field(..., min_length=1)
    ingredientes: Optional[str] = Field(None, max_length=500)
    peso: Optional[str] = Field(None, max_length=50)
    activo: bool = True


class ProductUpdate(BaseModel):
    nombre: Optional[str] = Field(None, min_length=3, max_length=100)
    descripcion: Optional[str] = Field(None, max_length=1000)
    categoria: Optional[Category] = None
    marca: Optional[str] = Field(None, max_length=50)
    precio: Optional[float] = Field(None, ge=0)
    precio_oferta: Optional[float] = Field(None, ge=0)
    stock: Optional[int] = Field(None, ge=0)
    imagenes: Optional[List[ProductImage]] = Field(None, min_length=1)
    ingredientes: Optional[str] = Field(None, max_length=500)
    peso: Optional[str] = Field(None, max_length=50)
    activo: Optional[bool] = None


class StockUpdate(BaseModel):
    stock: int = Field(..., ge=0)
