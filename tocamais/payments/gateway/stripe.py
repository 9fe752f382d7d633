"""Stripe: sessões de checkout hospedado via SDK oficial (o status final chega por webhook)."""

import logging
from typing import Any, Callable, Optional

import stripe

from tocamais.db.models import ChargeStatus, as_utc
from tocamais.payments.errors import GatewayRejected, GatewayUnavailable
from tocamais.payments.gateway.base import (
    ChargeHandle,
    ChargeKind,
    ChargeRequest,
    ProviderStatus,
    RetryingGateway,
)

logger = logging.getLogger(__name__)


def map_stripe_status(
    status: Optional[str], payment_status: Optional[str] = None
) -> Optional[ChargeStatus]:
    """
    Sessão de checkout: complete+paid -> approved, expired -> expired.
    Payment intent: succeeded -> approved, canceled -> rejected.
    O resto (open, unpaid, processing...) é intermediário.
    """
    status = (status or "").lower()
    payment_status = (payment_status or "").lower()
    if status == "complete" and payment_status in ("paid", "no_payment_required"):
        return ChargeStatus.APPROVED
    if status == "succeeded":
        return ChargeStatus.APPROVED
    if status == "expired":
        return ChargeStatus.EXPIRED
    if status in ("canceled", "failed"):
        return ChargeStatus.REJECTED
    return None


def _object_id(value: Any) -> Optional[str]:
    if isinstance(value, dict):
        return value.get("id")
    return value or None


class StripeGateway(RetryingGateway):
    name = "stripe"

    def __init__(
        self,
        client: stripe.StripeClient,
        http_client: Optional[stripe.HTTPClient] = None,
        **kwargs: Any,
    ):
        super().__init__(**kwargs)
        self._stripe = client
        self._http_client = http_client

    def supports(self, kind: ChargeKind) -> bool:
        return kind == ChargeKind.CHECKOUT

    def close(self) -> None:
        if self._http_client is not None:
            self._http_client.close()
            self._http_client = None

    def _call(self, call: Callable[[], Any]) -> dict[str, Any]:
        """Executa a chamada do SDK e traduz os erros do Stripe para a taxonomia dos gateways."""
        try:
            return call().to_dict()
        except (stripe.APIConnectionError, stripe.RateLimitError) as e:
            raise GatewayUnavailable(f"Stripe indisponível: {e.user_message or e}", self.name) from e
        except stripe.APIError as e:
            raise GatewayUnavailable(
                f"Erro interno do Stripe: {e.user_message or e}",
                self.name,
                {"status_code": e.http_status},
            ) from e
        except stripe.StripeError as e:
            logger.warning("Stripe recusou a requisição: %s %s", e.http_status, e)
            raise GatewayRejected(
                "Não foi possível processar o pagamento",
                self.name,
                {"status_code": e.http_status, "code": e.code},
            ) from e

    def _session_params(self, request: ChargeRequest) -> dict[str, Any]:
        params: dict[str, Any] = {
            "mode": "payment",
            "payment_method_types": ["card"],
            "line_items": [
                {
                    "quantity": 1,
                    "price_data": {
                        "currency": "brl",
                        "unit_amount": int(request.amount * 100),
                        "product_data": {"name": request.description},
                    },
                }
            ],
            "client_reference_id": request.external_reference,
            "metadata": {**request.metadata, "charge_id": request.external_reference},
            "payment_intent_data": {"metadata": {"charge_id": request.external_reference}},
            "success_url": request.success_url or "",
            "cancel_url": request.cancel_url or "",
        }
        if request.payer_email:
            params["customer_email"] = request.payer_email
        if request.expires_at:
            params["expires_at"] = int(as_utc(request.expires_at).timestamp())
        return params

    def create_charge(self, request: ChargeRequest) -> ChargeHandle:
        if not self.supports(request.kind):
            raise ValueError(f"Stripe não suporta cobranças {request.kind.value}")
        params = self._session_params(request)
        data = self._with_retry(
            "create_charge",
            lambda: self._call(
                lambda: self._stripe.v1.checkout.sessions.create(
                    params=params,
                    options={"idempotency_key": request.idempotency_key},
                )
            ),
        )
        logger.info("Checkout Stripe criado: id=%s ref=%s", data.get("id"), request.external_reference)
        return ChargeHandle(
            provider=self.name,
            external_id=str(data["id"]),
            state=map_stripe_status(data.get("status"), data.get("payment_status")) or ChargeStatus.PENDING,
            provider_status=data.get("status"),
            redirect_url=data.get("url"),
            expires_at=request.expires_at,
        )

    @staticmethod
    def _intent_status(data: dict[str, Any], external_id: str = "") -> ProviderStatus:
        status = str(data.get("status") or "")
        return ProviderStatus(
            external_id=str(data.get("id") or external_id),
            state=map_stripe_status(status),
            provider_status=status,
            external_reference=(data.get("metadata") or {}).get("charge_id"),
        )

    def get_charge_status(self, external_id: str, retry: bool = True) -> ProviderStatus:
        if external_id.startswith("pi_"):
            data = self._with_retry(
                "get_charge_status",
                lambda: self._call(lambda: self._stripe.v1.payment_intents.retrieve(external_id)),
                retry=retry,
            )
            return self._intent_status(data, external_id)
        data = self._with_retry(
            "get_charge_status",
            lambda: self._call(lambda: self._stripe.v1.checkout.sessions.retrieve(external_id)),
            retry=retry,
        )
        status = str(data.get("status") or "")
        payment_status = str(data.get("payment_status") or "")
        return ProviderStatus(
            external_id=external_id,
            state=map_stripe_status(status, payment_status),
            provider_status=f"{status}/{payment_status}" if payment_status else status,
            external_reference=data.get("client_reference_id")
            or (data.get("metadata") or {}).get("charge_id"),
            replacement_external_id=_object_id(data.get("payment_intent")),
        )

    def find_charge(self, external_reference: str) -> Optional[ProviderStatus]:
        """
        Payment intent com metadata.charge_id = referência. Sessão sem pagamento não
        tem busca por referência no Stripe; nesse caso devolve None.
        """
        query = f"metadata['charge_id']:'{external_reference}'"
        data = self._with_retry(
            "find_charge",
            lambda: self._call(
                lambda: self._stripe.v1.payment_intents.search(params={"query": query, "limit": 1})
            ),
        )
        results = data.get("data") or []
        if not results:
            return None
        return self._intent_status(results[0])
