"""
WhatsApp delivery through a WhatsApp Web HTTP gateway, plus buyer-facing
`wa.me` deep links.

The gateway keeps the browser session; this module only asks it whether the
session is working and hands it messages. Connection state is owned by a
single supervisor thread that polls the session and, when it drops, retries
with bounded exponential backoff.
"""

import logging
import re
import threading
from enum import Enum
from typing import Optional
from urllib.parse import quote

import requests

from config import settings

logger = logging.getLogger("uvicorn.error")

RECONNECT_BASE_DELAY = 30
RECONNECT_MAX_DELAY = 300
HEALTH_POLL_INTERVAL = 30
REQUEST_TIMEOUT = 15


class ConnectionState(str, Enum):
    DISCONNECTED = "desconectado"
    INITIALIZING = "inicializando"
    READY = "listo"
    AUTH_FAILURE = "error_autenticacion"


# Gateway session status -> our connection state
GATEWAY_STATES = {
    "WORKING": ConnectionState.READY,
    "STARTING": ConnectionState.INITIALIZING,
    "SCAN_QR_CODE": ConnectionState.INITIALIZING,
    "FAILED": ConnectionState.AUTH_FAILURE,
}


class WhatsAppError(RuntimeError):
    pass


def digits_only(phone: str) -> str:
    return re.sub(r"\D", "", phone or "")


def normalize_phone(phone: str, default_country: Optional[str] = None) -> str:
    """Strip formatting and prefix the default country code to bare 9-digit numbers."""
    country = default_country if default_country is not None else settings.whatsapp_default_country
    number = digits_only(phone)
    if country and len(number) == 9 and not number.startswith(country):
        number = country + number
    return number


def format_chat_id(phone: str) -> str:
    return normalize_phone(phone) + "@c.us"


def product_message(nombre: str, precio: float, precio_oferta: Optional[float] = None) -> str:
    if precio_oferta is not None:
        price_line = f"~~S/ {precio:.2f}~~ → *S/ {precio_oferta:.2f}*"
    else:
        price_line = f"Precio: *S/ {precio:.2f}*"
    return f"¡Hola! 👋 Me interesa este producto:\n\n*{nombre}*\n{price_line}\n\n¿Está disponible? 🛍️"


def store_greeting(nombre_tienda: str) -> str:
    return (
        f"¡Hola *{nombre_tienda}*! 👋\n\n"
        "Vi tu catálogo y me gustaría hacer una consulta. ¿Podrías ayudarme? 🛍️"
    )


def build_chat_link(phone: str, message: str) -> Optional[str]:
    number = normalize_phone(phone)
    if not number:
        return None
    return f"https://wa.me/{number}?text={quote(message)}"


def reset_code_message(nombre: str, code: str) -> str:
    return (
        "🔐 *NilHub - Recuperación de Contraseña*\n\n"
        f"Hola *{nombre}*,\n\n"
        f"Tu código de recuperación es: *{code}*\n\n"
        "Este código es válido por *1 hora* y admite *3 intentos*.\n\n"
        "Si no solicitaste este código, ignora este mensaje.\n\n"
        "_Equipo NilHub_"
    )


class WhatsAppClient:
    def __init__(self, base_url: str, session: str, api_key: Optional[str] = None, http=None,
                 base_delay: float = RECONNECT_BASE_DELAY, max_delay: float = RECONNECT_MAX_DELAY,
                 poll_interval: float = HEALTH_POLL_INTERVAL):
        self.base_url = base_url.rstrip("/")
        self.session = session
        self.http = http or requests.Session()
        if api_key:
            self.http.headers["X-Api-Key"] = api_key
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.poll_interval = poll_interval
        self.state = ConnectionState.DISCONNECTED
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @classmethod
    def from_settings(cls):
        return cls(settings.whatsapp_gateway_url, settings.whatsapp_session, settings.whatsapp_api_key)

    @property
    def is_ready(self) -> bool:
        return self.state is ConnectionState.READY

    def _url(self, path: str) -> str:
        return f"{self.base_url}{path}"

    def refresh_state(self) -> ConnectionState:
        """Ask the gateway for the session status and record it."""
        try:
            resp = self.http.get(self._url(f"/api/sessions/{self.session}"), timeout=REQUEST_TIMEOUT)
            resp.raise_for_status()
            status = (resp.json() or {}).get("status", "")
        except (requests.RequestException, ValueError) as e:
            logger.warning("WhatsApp gateway unreachable: %s", e)
            self.state = ConnectionState.DISCONNECTED
            return self.state

        previous = self.state
        self.state = GATEWAY_STATES.get(status, ConnectionState.DISCONNECTED)
        if self.state is not previous:
            if self.state is ConnectionState.READY:
                logger.info("WhatsApp client ready to send messages")
            elif status == "SCAN_QR_CODE":
                logger.warning("WhatsApp session waiting for QR scan on the gateway")
            elif self.state is ConnectionState.AUTH_FAILURE:
                logger.error("WhatsApp authentication failed on the gateway")
            else:
                logger.warning("WhatsApp session %s (%s)", self.state.value, status or "unknown")
        return self.state

    def _supervise(self):
        delay = self.base_delay
        while not self._stop.is_set():
            if self.refresh_state() is ConnectionState.READY:
                delay = self.base_delay
                self._stop.wait(self.poll_interval)
                continue
            logger.info("Retrying WhatsApp connection in %ss", delay)
            self._stop.wait(delay)
            delay = min(delay * 2, self.max_delay)

    def start(self):
        if self._thread is not None and self._thread.is_alive():
            logger.info("WhatsApp client already running")
            return
        logger.info("Starting WhatsApp client against %s", self.base_url)
        self._stop.clear()
        self.state = ConnectionState.INITIALIZING
        self._thread = threading.Thread(target=self._supervise, name="whatsapp-supervisor", daemon=True)
        self._thread.start()

    def close(self):
        if self._thread is None:
            return
        logger.info("Closing WhatsApp client")
        self._stop.set()
        self._thread.join(timeout=5)
        self._thread = None
        self.state = ConnectionState.DISCONNECTED

    def status(self) -> dict:
        if self._thread is None:
            return {"estado": ConnectionState.DISCONNECTED.value, "listo": False, "mensaje": "Cliente no inicializado"}
        return {
            "estado": self.state.value,
            "listo": self.is_ready,
            "mensaje": "WhatsApp conectado y listo" if self.is_ready else "WhatsApp inicializando o desconectado",
        }

    def send_message(self, phone: str, text: str):
        if not self.is_ready:
            raise WhatsAppError("WhatsApp no está conectado. Vincula la sesión en el gateway.")
        number = normalize_phone(phone)
        try:
            check = self.http.get(
                self._url("/api/contacts/check-exists"),
                params={"phone": number, "session": self.session},
                timeout=REQUEST_TIMEOUT,
            )
            check.raise_for_status()
            if not check.json().get("numberExists"):
                raise WhatsAppError("El número no está registrado en WhatsApp")
            resp = self.http.post(
                self._url("/api/sendText"),
                json={"session": self.session, "chatId": format_chat_id(phone), "text": text},
                timeout=REQUEST_TIMEOUT,
            )
            resp.raise_for_status()
        except (requests.RequestException, ValueError) as e:
            raise WhatsAppError(f"Error al enviar mensaje por WhatsApp: {e}") from e
        logger.info("WhatsApp message sent to %s", number)

    def send_reset_code(self, nombre: str, phone: str, code: str):
        self.send_message(phone, reset_code_message(nombre, code))


client = WhatsAppClient.from_settings()
