"""Service configuration for pyvalet."""

from __future__ import annotations

import dataclasses
import os
from typing import Any

from pyvalet.exceptions import ValetConfigError


def _env_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "y", "on"}:
        return True
    if normalized in {"0", "false", "no", "n", "off"}:
        return False
    return default


def _env_number(env_key: str, value: str, cast: type[int] | type[float]) -> int | float:
    try:
        return cast(value)
    except ValueError as exc:
        raise ValetConfigError(f"{env_key} must be a number, got {value!r}") from exc


@dataclasses.dataclass(frozen=True)
class WhatsAppSettings:
    """Credentials for the WhatsApp Cloud API messaging channel."""

    access_token: str = ""
    phone_id: str = ""
    business_number: str = ""
    """Public number owners' QR deep links point at (digits only)."""
    verify_token: str = ""
    api_version: str = "v18.0"
    base_url: str = "https://graph.facebook.com"


@dataclasses.dataclass(frozen=True)
class CloudinarySettings:
    """Credentials for the Cloudinary image host."""

    cloud_name: str = ""
    api_key: str = ""
    api_secret: str = ""


@dataclasses.dataclass(frozen=True)
class ValetConfig:
    """Engine configuration.

    Parameters
    ----------
    total_slots : int
        Fixed size of the slot pool created at initialization.
    checkin_token_ttl : float
        Seconds a check-in QR token stays valid.  Defaults to 15 minutes.
    retrieval_token_ttl : float
        Seconds a retrieval QR token stays valid.
    token_retention : float
        Seconds an expired, unused token is kept before housekeeping drops it.
    store_path : str or None
        JSON snapshot file.  When set, every commit is persisted and the
        store is reloaded from it at startup.
    dashboard_log_limit : int
        Number of most-recent log entries included in dashboard snapshots.
    dedup_window : int
        Number of recent inbound message ids remembered for duplicate
        delivery suppression.
    host, port : str, int
        Bind address of the webhook/dashboard server.
    mqtt_enabled : bool
        Publish dashboard snapshots to an MQTT broker.
    mqtt_host, mqtt_port, mqtt_topic, mqtt_keepalive
        MQTT broker connection details.
    whatsapp : WhatsAppSettings
        Messaging channel credentials.
    cloudinary : CloudinarySettings
        Image host credentials.
    qr_image_url : str
        URL template of an HTTP QR image service with a ``{data}``
        placeholder.  Empty disables QR images; owners then receive the
        deep link as text only.
    """

    total_slots: int = 15
    checkin_token_ttl: float = 15 * 60
    retrieval_token_ttl: float = 30 * 60
    token_retention: float = 24 * 3600
    store_path: str | None = None
    dashboard_log_limit: int = 20
    dedup_window: int = 1024
    host: str = "0.0.0.0"
    port: int = 4513
    mqtt_enabled: bool = False
    mqtt_host: str = "localhost"
    mqtt_port: int = 1883
    mqtt_topic: str = "pyvalet/dashboard"
    mqtt_keepalive: int = 60
    whatsapp: WhatsAppSettings = dataclasses.field(default_factory=WhatsAppSettings)
    cloudinary: CloudinarySettings = dataclasses.field(default_factory=CloudinarySettings)
    qr_image_url: str = ""

    def __post_init__(self) -> None:
        if self.total_slots < 1:
            raise ValetConfigError(f"total_slots must be positive, got {self.total_slots}")
        if self.checkin_token_ttl < 0 or self.retrieval_token_ttl < 0:
            raise ValetConfigError("token TTLs must not be negative")
        if self.dashboard_log_limit < 0:
            raise ValetConfigError("dashboard_log_limit must not be negative")
        if self.dedup_window < 0:
            raise ValetConfigError("dedup_window must not be negative")
        if self.qr_image_url and "{data}" not in self.qr_image_url:
            raise ValetConfigError("qr_image_url must contain a {data} placeholder")

    @classmethod
    def from_env(cls, **overrides: Any) -> ValetConfig:
        """Create configuration from ``VALET_*`` environment variables.

        Explicit keyword arguments override environment values.

        Raises
        ------
        ValetConfigError
            If a numeric variable cannot be parsed or a value is out of range.
        """
        env = os.environ

        whatsapp_kwargs: dict[str, str] = {}
        _ENV_WHATSAPP_MAP = {
            "VALET_WHATSAPP_TOKEN": "access_token",
            "VALET_WHATSAPP_PHONE_ID": "phone_id",
            "VALET_WHATSAPP_NUMBER": "business_number",
            "VALET_VERIFY_TOKEN": "verify_token",
            "VALET_WHATSAPP_API_VERSION": "api_version",
        }
        for env_key, field_name in _ENV_WHATSAPP_MAP.items():
            val = env.get(env_key)
            if val is not None:
                whatsapp_kwargs[field_name] = val
        whatsapp_overrides = overrides.pop("whatsapp", None)
        if isinstance(whatsapp_overrides, dict):
            whatsapp_kwargs.update(whatsapp_overrides)
        elif isinstance(whatsapp_overrides, WhatsAppSettings):
            whatsapp_kwargs = dataclasses.asdict(whatsapp_overrides)

        cloudinary_kwargs: dict[str, str] = {}
        _ENV_CLOUDINARY_MAP = {
            "VALET_CLOUDINARY_CLOUD_NAME": "cloud_name",
            "VALET_CLOUDINARY_API_KEY": "api_key",
            "VALET_CLOUDINARY_API_SECRET": "api_secret",
        }
        for env_key, field_name in _ENV_CLOUDINARY_MAP.items():
            val = env.get(env_key)
            if val is not None:
                cloudinary_kwargs[field_name] = val
        cloudinary_overrides = overrides.pop("cloudinary", None)
        if isinstance(cloudinary_overrides, dict):
            cloudinary_kwargs.update(cloudinary_overrides)
        elif isinstance(cloudinary_overrides, CloudinarySettings):
            cloudinary_kwargs = dataclasses.asdict(cloudinary_overrides)

        config_kwargs: dict[str, Any] = {
            "whatsapp": WhatsAppSettings(**whatsapp_kwargs),
            "cloudinary": CloudinarySettings(**cloudinary_kwargs),
        }

        _ENV_NUMERIC_MAP: dict[str, tuple[str, type[int] | type[float]]] = {
            "VALET_TOTAL_SLOTS": ("total_slots", int),
            "VALET_CHECKIN_TOKEN_TTL": ("checkin_token_ttl", float),
            "VALET_RETRIEVAL_TOKEN_TTL": ("retrieval_token_ttl", float),
            "VALET_TOKEN_RETENTION": ("token_retention", float),
            "VALET_DASHBOARD_LOG_LIMIT": ("dashboard_log_limit", int),
            "VALET_DEDUP_WINDOW": ("dedup_window", int),
            "VALET_PORT": ("port", int),
            "VALET_MQTT_PORT": ("mqtt_port", int),
            "VALET_MQTT_KEEPALIVE": ("mqtt_keepalive", int),
        }
        for env_key, (field_name, cast) in _ENV_NUMERIC_MAP.items():
            val = env.get(env_key)
            if val is not None and field_name not in overrides:
                config_kwargs[field_name] = _env_number(env_key, val, cast)

        _ENV_STRING_MAP = {
            "VALET_STORE_PATH": "store_path",
            "VALET_HOST": "host",
            "VALET_MQTT_HOST": "mqtt_host",
            "VALET_MQTT_TOPIC": "mqtt_topic",
            "VALET_QR_IMAGE_URL": "qr_image_url",
        }
        for env_key, field_name in _ENV_STRING_MAP.items():
            val = env.get(env_key)
            if val is not None:
                config_kwargs[field_name] = val

        if "mqtt_enabled" not in overrides:
            config_kwargs["mqtt_enabled"] = _env_bool(env.get("VALET_MQTT_ENABLED"), False)

        config_kwargs.update(overrides)

        return cls(**config_kwargs)
