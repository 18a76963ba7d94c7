from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field
from typing import Optional, Protocol

import httpx

from .env import env_float
from .env_loader import ensure_loaded as _ensure_env_loaded
from .phone_utils import mask_phone

logger = logging.getLogger("homeport.notifier")

DEFAULT_WHATSAPP_API_URL = "https://graph.facebook.com/v18.0"


class NotifierError(Exception):
    """The delivery provider rejected or never acknowledged the message."""


class NotifierBackend(Protocol):
    def send_code(self, phone: str, code: str) -> None:  # pragma: no cover - interface
        ...


@dataclass
class NotifierConfig:
    provider: str = "log"  # "log", "whatsapp" or "http"
    timeout_secs: float = 5.0
    whatsapp_api_url: str = DEFAULT_WHATSAPP_API_URL
    whatsapp_access_token: str = ""
    whatsapp_phone_number_id: str = ""
    whatsapp_template_name: str = "otpcode"
    whatsapp_template_language: str = "es"
    http_url: str = ""
    http_auth_token: str = ""

    @classmethod
    def from_env(cls) -> "NotifierConfig":
        _ensure_env_loaded()
        return cls(
            provider=(os.getenv("NOTIFIER_PROVIDER", "log") or "log").lower(),
            timeout_secs=env_float("NOTIFIER_TIMEOUT_SECS", default=5.0),
            whatsapp_api_url=os.getenv("WHATSAPP_API_URL", DEFAULT_WHATSAPP_API_URL) or DEFAULT_WHATSAPP_API_URL,
            whatsapp_access_token=os.getenv("WHATSAPP_ACCESS_TOKEN", ""),
            whatsapp_phone_number_id=os.getenv("WHATSAPP_PHONE_NUMBER_ID", ""),
            whatsapp_template_name=os.getenv("WHATSAPP_LOGIN_TEMPLATE_NAME", "otpcode") or "otpcode",
            whatsapp_template_language=os.getenv("WHATSAPP_LOGIN_TEMPLATE_LANGUAGE", "es") or "es",
            http_url=os.getenv("OTP_HTTP_URL", ""),
            http_auth_token=os.getenv("OTP_HTTP_AUTH_TOKEN", ""),
        )


@dataclass
class LogBackend:
    def send_code(self, phone: str, code: str) -> None:
        logger.info("OTP log backend send to=%s code=%s", mask_phone(phone), _mask_code(code))


@dataclass
class WhatsAppTemplateBackend:
    """WhatsApp Cloud API authentication-template sender.

    The login template takes the code twice: once as the body parameter and
    once as the parameter of its copy-code URL button.
    """

    phone_number_id: str
    access_token: str
    api_url: str = DEFAULT_WHATSAPP_API_URL
    template_name: str = "otpcode"
    template_language: str = "es"
    timeout_secs: float = 5.0
    client: Optional[httpx.Client] = field(default=None, repr=False)

    @property
    def endpoint(self) -> str:
        return f"{self.api_url.rstrip('/')}/{self.phone_number_id}/messages"

    def build_payload(self, phone: str, code: str) -> dict:
        return {
            "messaging_product": "whatsapp",
            "to": phone.lstrip("+"),
            "type": "template",
            "template": {
                "name": self.template_name,
                "language": {"code": self.template_language},
                "components": [
                    {"type": "body", "parameters": [{"type": "text", "text": code}]},
                    {
                        "type": "button",
                        "sub_type": "url",
                        "index": "0",
                        "parameters": [{"type": "text", "text": code}],
                    },
                ],
            },
        }

    def send_code(self, phone: str, code: str) -> None:
        if not (self.phone_number_id and self.access_token):
            raise NotifierError("WhatsApp backend not fully configured")
        headers = {
            "Authorization": f"Bearer {self.access_token}",
            "Content-Type": "application/json",
        }
        _post(self.client, self.endpoint, self.build_payload(phone, code), headers, self.timeout_secs, "whatsapp")


@dataclass
class HttpBackend:
    url: str
    auth_token: Optional[str] = None
    timeout_secs: float = 5.0
    client: Optional[httpx.Client] = field(default=None, repr=False)

    def send_code(self, phone: str, code: str) -> None:
        if not (self.url or "").strip():
            raise NotifierError("OTP_HTTP_URL must be configured for HTTP provider")
        headers: dict[str, str] = {"Content-Type": "application/json"}
        if self.auth_token:
            headers["Authorization"] = f"Bearer {self.auth_token}"
        payload = {"to": phone, "code": code, "channel": "whatsapp"}
        _post(self.client, self.url, payload, headers, self.timeout_secs, "http")


def _post(client: Optional[httpx.Client], url: str, payload: dict, headers: dict, timeout: float, backend_name: str) -> None:
    try:
        if client is not None:
            res = client.post(url, json=payload, headers=headers, timeout=timeout)
        else:
            res = httpx.post(url, json=payload, headers=headers, timeout=timeout)
    except httpx.HTTPError as exc:
        raise NotifierError(f"{backend_name} delivery failed: {exc}") from exc
    if res.status_code >= 400:
        raise NotifierError(f"{backend_name} delivery failed ({res.status_code}): {res.text[:200]}")


def resolve_backend(cfg: NotifierConfig) -> NotifierBackend:
    provider = (cfg.provider or "log").lower()
    if provider == "whatsapp":
        return WhatsAppTemplateBackend(
            phone_number_id=cfg.whatsapp_phone_number_id,
            access_token=cfg.whatsapp_access_token,
            api_url=cfg.whatsapp_api_url,
            template_name=cfg.whatsapp_template_name,
            template_language=cfg.whatsapp_template_language,
            timeout_secs=cfg.timeout_secs,
        )
    if provider == "http":
        return HttpBackend(url=cfg.http_url, auth_token=cfg.http_auth_token or None, timeout_secs=cfg.timeout_secs)
    if provider != "log":
        logger.warning("Unknown NOTIFIER_PROVIDER %r, falling back to log backend", provider)
    return LogBackend()


def _mask_code(code: str) -> str:
    if not code:
        return ""
    digits = re.sub(r"\D", "", code)
    if len(digits) <= 2:
        return "*" * len(digits)
    return "*" * (len(digits) - 2) + digits[-2:]


__all__ = [
    "NotifierError",
    "NotifierBackend",
    "NotifierConfig",
    "LogBackend",
    "WhatsAppTemplateBackend",
    "HttpBackend",
    "resolve_backend",
]
