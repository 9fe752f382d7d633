"""Gateways de pagamento (interface base + implementações)."""

from tocamais.payments.gateway.base import (
    CardDetails,
    ChargeHandle,
    ChargeKind,
    ChargeRequest,
    PaymentGatewayProtocol,
    ProviderStatus,
)
from tocamais.payments.gateway.example import ExampleGateway
from tocamais.payments.gateway.factory import GatewayRegistry, build_registry
from tocamais.payments.gateway.mercadopago import MercadoPagoGateway, map_mercadopago_status
from tocamais.payments.gateway.stripe import StripeGateway, map_stripe_status

__all__ = [
    "CardDetails",
    "ChargeHandle",
    "ChargeKind",
    "ChargeRequest",
    "ExampleGateway",
    "GatewayRegistry",
    "MercadoPagoGateway",
    "PaymentGatewayProtocol",
    "ProviderStatus",
    "StripeGateway",
    "build_registry",
    "map_mercadopago_status",
    "map_stripe_status",
]
