import base64
import logging
from typing import List

import cloudinary
import cloudinary.uploader

from config import settings

logger = logging.getLogger("uvicorn.error")

MAX_IMAGES_PER_CALL = 10
UPLOAD_TRANSFORMATION = [
    {"width": 1200, "height": 1200, "crop": "limit"},
    {"quality": "auto:good"},
    {"fetch_format": "auto"},
]

cloudinary.config(
    cloud_name=settings.cloudinary_cloud_name,
    api_key=settings.cloudinary_api_key,
    api_secret=settings.cloudinary_api_secret,
    secure=True,
)


class MediaError(RuntimeError):
    pass


def is_configured() -> bool:
    return all((settings.cloudinary_cloud_name, settings.cloudinary_api_key, settings.cloudinary_api_secret))


def to_data_uri(content: bytes, content_type: str) -> str:
    return f"data:{content_type};base64,{base64.b64encode(content).decode('ascii')}"


def upload_image(data_uri: str, folder: str) -> dict:
    if not data_uri:
        raise MediaError("No se proporcionó archivo para subir")
    if not is_configured():
        raise MediaError("Cloudinary no está configurado")
    try:
        result = cloudinary.uploader.upload(
            data_uri,
            folder=folder,
            resource_type="auto",
            transformation=UPLOAD_TRANSFORMATION,
            overwrite=False,
            unique_filename=True,
            invalidate=True,
        )
    except Exception as e:
        logger.error("Cloudinary upload failed: %s", e)
        raise MediaError(f"Error al subir la imagen: {e}") from e

    logger.info("Image uploaded: %s", result.get("public_id"))
    return {
        "url": result.get("secure_url"),
        "cloudinary_id": result.get("public_id"),
        "width": result.get("width"),
        "height": result.get("height"),
        "format": result.get("format"),
        "bytes": result.get("bytes"),
    }


def upload_images(data_uris: List[str], folder: str) -> List[dict]:
    if not data_uris:
        raise MediaError("No se proporcionaron archivos para subir")
    if len(data_uris) > MAX_IMAGES_PER_CALL:
        raise MediaError(f"Máximo {MAX_IMAGES_PER_CALL} imágenes por operación")
    return [upload_image(uri, folder) for uri in data_uris]


def delete_image(cloudinary_id: str) -> bool:
    if not cloudinary_id:
        raise MediaError("No se proporcionó cloudinary_id")
    if not is_configured():
        raise MediaError("Cloudinary no está configurado")
    try:
        result = cloudinary.uploader.destroy(cloudinary_id)
    except Exception as e:
        logger.error("Cloudinary delete failed for %s: %s", cloudinary_id, e)
        raise MediaError(f"Error al eliminar la imagen: {e}") from e

    outcome = result.get("result")
    if outcome == "not found":
        logger.warning("Image not found on Cloudinary: %s", cloudinary_id)
        return True
    if outcome != "ok":
        raise MediaError(f"Respuesta inesperada de Cloudinary: {outcome}")
    logger.info("Image deleted: %s", cloudinary_id)
    return True
