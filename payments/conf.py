import logging
from dataclasses import dataclass
from functools import lru_cache

from django.conf import settings
from django.core.signals import setting_changed
from django.dispatch import receiver

from .exceptions import ConfigurationMissing

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GatewayConfig:
    base_url: str
    api_key: str
    pg_key: str
    school_id: str = ""
    gateway_name: str = "Edviron"
    callback_url: str = ""
    create_timeout: float = 30
    status_timeout: float = 15

    @classmethod
    def from_settings(cls) -> "GatewayConfig":
        raw = getattr(settings, "SCHOOLPAY_GATEWAY", None) or {}
        return cls(
            base_url=(raw.get("BASE_URL") or "").rstrip("/"),
            api_key=raw.get("API_KEY") or "",
            pg_key=raw.get("PG_KEY") or "",
            school_id=raw.get("SCHOOL_ID") or "",
            gateway_name=raw.get("GATEWAY_NAME") or "Edviron",
            callback_url=raw.get("CALLBACK_URL") or "",
            create_timeout=raw.get("CREATE_TIMEOUT", 30),
            status_timeout=raw.get("STATUS_TIMEOUT", 15),
        )

    def require_credentials(self) -> None:
        """Raise :class:`ConfigurationMissing` unless the gateway can be called."""
        if not self.pg_key:
            logger.error("SCHOOLPAY_GATEWAY['PG_KEY'] missing in settings")
            raise ConfigurationMissing("Payment gateway configuration missing")
        if not self.api_key:
            logger.error("SCHOOLPAY_GATEWAY['API_KEY'] missing in settings")
            raise ConfigurationMissing("Payment API key configuration missing")
        if not self.base_url:
            logger.error("SCHOOLPAY_GATEWAY['BASE_URL'] missing in settings")
            raise ConfigurationMissing("Payment gateway URL configuration missing")


@lru_cache(maxsize=None)
def get_gateway_config() -> GatewayConfig:
    return GatewayConfig.from_settings()


@receiver(setting_changed)
def _reset_gateway_config(*, setting, **kwargs):
    if setting == "SCHOOLPAY_GATEWAY":
        get_gateway_config.cache_clear()
