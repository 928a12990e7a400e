"""
Registry of payment gateways keyed by provider name, with one designated default.
"""
import logging
from typing import Any, Mapping

from groupgate.core.config import Settings
from groupgate.payments.base import PaymentGateway
from groupgate.payments.errors import UnknownProviderError
from groupgate.payments.providers.payfast import PayFastGateway

logger = logging.getLogger(__name__)

# Gateway classes the bot can offer in its payment-method menu.
GATEWAY_CLASSES: dict[str, type[PaymentGateway]] = {
    "payfast": PayFastGateway,
}


class GatewayRegistry:
    """name -> PaymentGateway map. The first registered gateway is the default unless overridden."""

    def __init__(self) -> None:
        self._gateways: dict[str, PaymentGateway] = {}
        self._default: str | None = None

    def register(self, gateway: PaymentGateway, default: bool = False) -> None:
        name = gateway.name.lower()
        self._gateways[name] = gateway
        if default or self._default is None:
            self._default = name
        if not gateway.is_available():
            logger.warning("gateway_registered_unconfigured", extra={"provider": name})
        else:
            logger.info("gateway_registered", extra={"provider": name})

    def get(self, name: str | None = None) -> PaymentGateway:
        """Gateway by name; None means the default."""
        key = (name or self._default or "").lower()
        gateway = self._gateways.get(key)
        if gateway is None:
            raise UnknownProviderError(name, self.names())
        return gateway

    def configured(self, name: str | None, credentials: Mapping[str, Any] | None) -> PaymentGateway:
        """Gateway by name with a group's credential bag applied."""
        return self.get(name).with_credentials(credentials)

    def names(self) -> list[str]:
        return list(self._gateways)

    @property
    def default_name(self) -> str | None:
        return self._default

    def custom_paths(self) -> dict[str, str]:
        """provider name -> fixed webhook path (relative to /payments)."""
        return {
            name: gateway.webhook_path()
            for name, gateway in self._gateways.items()
            if gateway.webhook_path()
        }

    @classmethod
    def from_settings(cls, settings: Settings) -> "GatewayRegistry":
        registry = cls()
        registry.register(
            PayFastGateway(
                {
                    "merchant_id": settings.payfast_merchant_id,
                    "merchant_key": settings.payfast_merchant_key,
                    "passphrase": settings.payfast_passphrase,
                    "sandbox": settings.payfast_sandbox,
                    "validate_with_server": settings.payfast_validate_with_server,
                    "return_url": settings.payfast_return_url,
                    "cancel_url": settings.payfast_cancel_url,
                    "base_url": settings.public_base_url,
                    "timeout": settings.payfast_timeout,
                }
            ),
            default=True,
        )
        return registry


_registry: GatewayRegistry | None = None


def get_registry() -> GatewayRegistry:
    """Process-wide registry built from settings on first use."""
    global _registry
    if _registry is None:
        from groupgate.core.config import settings

        _registry = GatewayRegistry.from_settings(settings)
    return _registry
