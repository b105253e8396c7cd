"""
Factory for creating payment gateway adapters from configuration.
"""
import logging

from marketplace.gateways.base import Gateway, PaymentGateway
from marketplace.gateways.razorpay import RazorpayGateway
from marketplace.gateways.stripe import StripeGateway

logger = logging.getLogger(__name__)


class GatewayFactory:
    """Factory for creating payment gateways."""

    GATEWAYS: dict[Gateway, type[PaymentGateway]] = {
        Gateway.RAZORPAY: RazorpayGateway,
        Gateway.STRIPE: StripeGateway,
    }

    @classmethod
    def create(cls, gateway: Gateway | str, config: dict) -> PaymentGateway:
        """
        Create gateway instance by name.

        Raises:
            ValueError: If gateway name is unknown
        """
        try:
            key = Gateway(gateway)
        except ValueError:
            available = ", ".join(g.value for g in cls.GATEWAYS)
            raise ValueError(f"Unknown gateway: {gateway}. Available gateways: {available}")

        logger.info("gateway_created", extra={"gateway": key.value})
        adapter = cls.GATEWAYS[key](config)
        if not adapter.is_available():
            logger.warning("gateway_not_configured", extra={"gateway": key.value})
        return adapter

    @classmethod
    def create_from_settings(cls, settings, gateway: Gateway | str) -> PaymentGateway:
        """Create gateway from application settings."""
        key = Gateway(gateway)
        if key == Gateway.RAZORPAY:
            config = {
                "key_id": settings.razorpay_key_id,
                "key_secret": settings.razorpay_key_secret,
                "api_url": settings.razorpay_api_url,
                "timeout": settings.razorpay_timeout,
            }
        else:
            config = {
                "secret_key": settings.stripe_secret_key,
                "timeout": settings.stripe_timeout,
            }
            if settings.escrow_hold_period_days >= settings.stripe_authorization_window_days:
                # auto-release would capture an authorization that may already have lapsed
                logger.warning(
                    "hold_period_exceeds_authorization_window",
                    extra={
                        "gateway": key.value,
                        "hold_period_days": settings.escrow_hold_period_days,
                        "authorization_window_days": settings.stripe_authorization_window_days,
                    },
                )
        return cls.create(key, config)

    @classmethod
    def build_all(cls, settings) -> dict[Gateway, PaymentGateway]:
        """All gateways that have credentials configured, keyed by enum."""
        configured = {
            Gateway.RAZORPAY: settings.razorpay_configured,
            Gateway.STRIPE: settings.stripe_configured,
        }
        return {
            gateway: cls.create_from_settings(settings, gateway)
            for gateway, enabled in configured.items()
            if enabled
        }
