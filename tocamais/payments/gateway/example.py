"""Gateway de exemplo (sem API externa): BR Code real gerado localmente, ids determinísticos."""

import hashlib
from typing import Optional

from tocamais.db.models import ChargeStatus
from tocamais.payments.gateway.base import (
    ChargeHandle,
    ChargeKind,
    ChargeRequest,
    ProviderStatus,
)
from tocamais.payments.pix import PixFields, encode_pix_payload


class ExampleGateway:
    """Gateway stub para desenvolver/testar o fluxo completo sem credenciais."""

    name = "example"

    def __init__(
        self,
        pix_key: str = "",
        pix_key_type: str = "aleatoria",
        merchant_name: str = "TOCA MAIS",
        merchant_city: str = "SAO PAULO",
    ):
        self._pix_key = pix_key
        self._pix_key_type = pix_key_type
        self._merchant_name = merchant_name
        self._merchant_city = merchant_city
        self._created: dict[str, str] = {}

    def supports(self, kind: ChargeKind) -> bool:
        return True

    def close(self) -> None:
        pass

    def create_charge(self, request: ChargeRequest) -> ChargeHandle:
        # mesma chave de idempotência -> mesma cobrança "remota"
        digest = hashlib.sha256(request.idempotency_key.encode("utf-8")).hexdigest()[:16]
        charge_id = f"example-{digest}"
        self._created[request.external_reference] = charge_id
        handle = ChargeHandle(provider=self.name, external_id=charge_id, provider_status="pending")
        if request.kind == ChargeKind.PIX:
            handle.pix_payload = encode_pix_payload(
                PixFields(
                    key=self._pix_key or request.external_reference,
                    key_type=self._pix_key_type if self._pix_key else "aleatoria",
                    merchant_name=self._merchant_name,
                    merchant_city=self._merchant_city,
                    amount=request.amount,
                    transaction_id=request.external_reference.replace("-", "")[:25],
                )
            )
            handle.expires_at = request.expires_at
        elif request.kind == ChargeKind.CARD:
            # Para testes: token "reject" simula cartão recusado
            declined = request.card is not None and request.card.token == "reject"
            handle.state = ChargeStatus.REJECTED if declined else ChargeStatus.APPROVED
            handle.provider_status = "rejected" if declined else "approved"
        else:
            handle.redirect_url = f"https://example.com/pay/{charge_id}"
            handle.expires_at = request.expires_at
        return handle

    def get_charge_status(self, external_id: str, retry: bool = True) -> ProviderStatus:
        # Para testes: id terminado em "-paid" é pago, em "-rejected" é recusado
        state: Optional[ChargeStatus] = None
        status = "pending"
        if external_id.endswith("-paid"):
            state, status = ChargeStatus.APPROVED, "approved"
        elif external_id.endswith("-rejected"):
            state, status = ChargeStatus.REJECTED, "rejected"
        return ProviderStatus(external_id=external_id, state=state, provider_status=status)

    def find_charge(self, external_reference: str) -> Optional[ProviderStatus]:
        external_id = self._created.get(external_reference)
        if external_id is None:
            return None
        status = self.get_charge_status(external_id)
        status.external_reference = external_reference
        return status
