"""Registro de gateways montado uma vez no start do processo (sem cliente global)."""

import logging
from typing import Optional

import httpx
import stripe

from tocamais.config import Settings
from tocamais.payments.gateway.base import ChargeKind, PaymentGatewayProtocol
from tocamais.payments.gateway.example import ExampleGateway
from tocamais.payments.gateway.mercadopago import MercadoPagoGateway
from tocamais.payments.gateway.stripe import StripeGateway

logger = logging.getLogger(__name__)


class GatewayRegistry:
    """Roteia cada tipo de cobrança ao provedor configurado; dono do httpx.Client compartilhado."""

    def __init__(
        self,
        gateways: dict[str, PaymentGatewayProtocol],
        routes: dict[ChargeKind, str],
        client: Optional[httpx.Client] = None,
    ):
        self._gateways = gateways
        self._routes = routes
        self._client = client

    def for_kind(self, kind: ChargeKind) -> PaymentGatewayProtocol:
        return self._gateways[self._routes[kind]]

    def get(self, provider: str) -> Optional[PaymentGatewayProtocol]:
        return self._gateways.get(provider)

    @property
    def providers(self) -> list[str]:
        return list(self._gateways)

    def close(self) -> None:
        for gateway in self._gateways.values():
            gateway.close()
        if self._client is not None:
            self._client.close()
            self._client = None


def build_registry(settings: Settings, client: Optional[httpx.Client] = None) -> GatewayRegistry:
    """
    Monta os gateways conforme as credenciais disponíveis.
    Sem token do Mercado Pago, PIX/cartão caem no ExampleGateway; sem chave Stripe, o checkout também.
    """
    client = client or httpx.Client(timeout=httpx.Timeout(settings.gateway_timeout_seconds))
    retry = {
        "max_attempts": settings.gateway_max_attempts,
        "backoff_seconds": settings.gateway_backoff_seconds,
    }
    example = ExampleGateway(
        pix_key=settings.platform_pix_key,
        pix_key_type=settings.platform_pix_key_type,
        merchant_name=settings.platform_merchant_name,
        merchant_city=settings.platform_merchant_city,
    )
    gateways: dict[str, PaymentGatewayProtocol] = {example.name: example}
    routes = {kind: example.name for kind in ChargeKind}

    if settings.mercado_pago_access_token:
        mp = MercadoPagoGateway(
            client,
            settings.mercado_pago_access_token,
            base_url=settings.mercado_pago_api_url,
            notification_url=f"{settings.notification_url}/webhooks/mercadopago"
            if settings.notification_url
            else "",
            **retry,
        )
        gateways[mp.name] = mp
        routes[ChargeKind.PIX] = routes[ChargeKind.CARD] = mp.name
    else:
        logger.warning("MERCADO_PAGO_ACCESS_TOKEN ausente: PIX e cartão usam o gateway de exemplo")

    if settings.stripe_secret_key:
        http_client = stripe.HTTPXClient(
            timeout=settings.gateway_timeout_seconds, allow_sync_methods=True
        )
        stripe_client = stripe.StripeClient(
            settings.stripe_secret_key,
            base_addresses={"api": settings.stripe_api_url},
            http_client=http_client,
            max_network_retries=0,
        )
        checkout = StripeGateway(stripe_client, http_client, **retry)
        gateways[checkout.name] = checkout
        routes[ChargeKind.CHECKOUT] = checkout.name
    else:
        logger.warning("STRIPE_SECRET_KEY ausente: checkout usa o gateway de exemplo")

    return GatewayRegistry(gateways, routes, client)
