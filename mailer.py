import html
import logging
from typing import Dict

import resend

from config import settings

logger = logging.getLogger("uvicorn.error")

RESET_SUBJECT = "🔐 Código de recuperación de contraseña - NilHub"
CONFIRMATION_SUBJECT = "✅ Contraseña actualizada exitosamente - NilHub"


class MailerError(RuntimeError):
    pass


def _send(payload: Dict[str, object]) -> str:
    if not settings.resend_api_key:
        raise MailerError("RESEND_API_KEY no está configurada")
    resend.api_key = settings.resend_api_key
    try:
        response = resend.Emails.send(payload)
    except Exception as e:
        raise MailerError(f"Error al enviar el email: {e}") from e
    if not isinstance(response, dict) or not response.get("id"):
        raise MailerError(f"Respuesta inesperada del servicio de email: {response}")
    return response["id"]


def build_reset_code_html(nombre: str, code: str) -> str:
    return f"""<!DOCTYPE html>
<html lang="es">
  <body style="font-family:Arial,sans-serif;background:#f9fafb;padding:24px;">
    <div style="max-width:480px;margin:0 auto;background:#ffffff;border-radius:12px;padding:32px;">
      <h2 style="color:#EC4899;margin-top:0;">Recuperación de contraseña</h2>
      <p>Hola <strong>{html.escape(nombre)}</strong>,</p>
      <p>Tu código de recuperación es:</p>
      <p style="font-size:32px;letter-spacing:8px;font-weight:bold;text-align:center;">{code}</p>
      <p>Este código es válido por <strong>1 hora</strong> y admite <strong>3 intentos</strong>.</p>
      <p style="color:#6b7280;font-size:13px;">Si no solicitaste este código, ignora este mensaje.</p>
      <p style="color:#6b7280;font-size:13px;">Equipo NilHub</p>
    </div>
  </body>
</html>"""


def build_confirmation_html(nombre: str) -> str:
    return f"""<!DOCTYPE html>
<html lang="es">
  <body style="font-family:Arial,sans-serif;background:#f9fafb;padding:24px;">
    <div style="max-width:480px;margin:0 auto;background:#ffffff;border-radius:12px;padding:32px;">
      <h2 style="color:#10B981;margin-top:0;">Contraseña actualizada</h2>
      <p>Hola <strong>{html.escape(nombre)}</strong>,</p>
      <p>La contraseña de tu cuenta NilHub se cambió correctamente.</p>
      <p style="color:#6b7280;font-size:13px;">Si no fuiste tú, contacta al administrador de inmediato.</p>
      <p style="color:#6b7280;font-size:13px;">Equipo NilHub</p>
    </div>
  </body>
</html>"""


def send_reset_code(email: str, nombre: str, code: str) -> str:
    message_id = _send({
        "from": settings.mail_from,
        "to": [email],
        "subject": RESET_SUBJECT,
        "html": build_reset_code_html(nombre, code),
        "text": f"Tu código de recuperación de NilHub es {code}. Es válido por 1 hora.",
    })
    logger.info("Reset code email sent to %s (id %s)", email, message_id)
    return message_id


def send_password_changed(email: str, nombre: str) -> str:
    message_id = _send({
        "from": settings.mail_from,
        "to": [email],
        "subject": CONFIRMATION_SUBJECT,
        "html": build_confirmation_html(nombre),
        "text": "La contraseña de tu cuenta NilHub se cambió correctamente.",
    })
    logger.info("Password change confirmation sent to %s (id %s)", email, message_id)
    return message_id
