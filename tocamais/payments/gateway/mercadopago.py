"""Mercado Pago: cobranças PIX e cartão tokenizado via /v1/payments."""

import logging
from datetime import datetime
from typing import Any, Optional

from tocamais.db.models import ChargeStatus, as_utc
from tocamais.payments.gateway.base import (
    ChargeHandle,
    ChargeKind,
    ChargeRequest,
    HttpGateway,
    ProviderStatus,
)

logger = logging.getLogger(__name__)

_APPROVED = {"approved"}
_REJECTED = {"rejected", "cancelled", "refunded", "charged_back"}


def map_mercadopago_status(status: Optional[str]) -> Optional[ChargeStatus]:
    """approved -> approved; rejected/cancelled/... -> rejected; pending/in_process/... -> None."""
    status = (status or "").lower()
    if status in _APPROVED:
        return ChargeStatus.APPROVED
    if status in _REJECTED:
        return ChargeStatus.REJECTED
    return None


def _mp_datetime(moment: datetime) -> str:
    # a API exige offset explícito
    return as_utc(moment).strftime("%Y-%m-%dT%H:%M:%S.000+00:00")


class MercadoPagoGateway(HttpGateway):
    name = "mercadopago"

    def __init__(self, client, access_token: str, base_url: str = "https://api.mercadopago.com",
                 notification_url: str = "", **kwargs):
        super().__init__(client, base_url, **kwargs)
        self._access_token = access_token
        self._notification_url = notification_url

    def supports(self, kind: ChargeKind) -> bool:
        return kind in (ChargeKind.PIX, ChargeKind.CARD)

    def _headers(self, idempotency_key: Optional[str] = None) -> dict[str, str]:
        headers = {
            "Authorization": f"Bearer {self._access_token}",
            "Content-Type": "application/json",
        }
        if idempotency_key:
            headers["X-Idempotency-Key"] = idempotency_key
        return headers

    def _build_body(self, request: ChargeRequest) -> dict[str, Any]:
        body: dict[str, Any] = {
            "transaction_amount": float(request.amount),
            "description": request.description,
            "external_reference": request.external_reference,
            "metadata": dict(request.metadata),
        }
        if self._notification_url:
            body["notification_url"] = self._notification_url
        if request.kind == ChargeKind.PIX:
            body["payment_method_id"] = "pix"
            body["payer"] = {"email": request.payer_email or "cliente@tocamais.app"}
            if request.expires_at:
                body["date_of_expiration"] = _mp_datetime(request.expires_at)
        else:
            card = request.card
            body.update(
                {
                    "token": card.token,
                    "installments": card.installments,
                    "payment_method_id": card.payment_method_id,
                    "statement_descriptor": "GORJETA ARTISTA",
                    "payer": {
                        "email": card.payer_email,
                        "identification": {
                            "type": card.identification_type,
                            "number": card.identification_number,
                        },
                    },
                }
            )
            if card.issuer_id:
                body["issuer_id"] = card.issuer_id
        return body

    def create_charge(self, request: ChargeRequest) -> ChargeHandle:
        if not self.supports(request.kind):
            raise ValueError(f"Mercado Pago não suporta cobranças {request.kind.value}")
        if request.kind == ChargeKind.CARD and request.card is None:
            raise ValueError("Cobrança em cartão sem dados do cartão")
        body = self._build_body(request)
        data = self._with_retry(
            "create_charge",
            lambda: self._send(
                "POST",
                "/v1/payments",
                json=body,
                headers=self._headers(request.idempotency_key),
            ),
        )
        status = str(data.get("status") or "pending")
        transaction = (data.get("point_of_interaction") or {}).get("transaction_data") or {}
        logger.info(
            "Pagamento Mercado Pago criado: id=%s status=%s ref=%s",
            data.get("id"),
            status,
            request.external_reference,
        )
        return ChargeHandle(
            provider=self.name,
            external_id=str(data["id"]),
            state=map_mercadopago_status(status) or ChargeStatus.PENDING,
            provider_status=status,
            pix_payload=transaction.get("qr_code"),
            qr_code_base64=transaction.get("qr_code_base64"),
            expires_at=request.expires_at if request.kind == ChargeKind.PIX else None,
        )

    def _provider_status(self, data: dict[str, Any], external_id: str = "") -> ProviderStatus:
        status = str(data.get("status") or "")
        return ProviderStatus(
            external_id=str(data.get("id") or external_id),
            state=map_mercadopago_status(status),
            provider_status=status,
            external_reference=data.get("external_reference"),
        )

    def get_charge_status(self, external_id: str, retry: bool = True) -> ProviderStatus:
        data = self._with_retry(
            "get_charge_status",
            lambda: self._send("GET", f"/v1/payments/{external_id}", headers=self._headers()),
            retry=retry,
        )
        return self._provider_status(data, external_id)

    def find_charge(self, external_reference: str) -> Optional[ProviderStatus]:
        """Pagamento mais recente com este external_reference, ou None."""
        data = self._with_retry(
            "find_charge",
            lambda: self._send(
                "GET",
                "/v1/payments/search",
                params={
                    "external_reference": external_reference,
                    "sort": "date_created",
                    "criteria": "desc",
                },
                headers=self._headers(),
            ),
        )
        results = data.get("results") or []
        if not results:
            return None
        return self._provider_status(results[0])
