"""Interface base dos gateways de pagamento (PIX, cartão tokenizado, checkout hospedado)."""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Optional, Protocol, TypeVar

import httpx

from tocamais.db.models import ChargeStatus
from tocamais.payments.errors import GatewayRejected, GatewayUnavailable

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ChargeKind(str, Enum):
    PIX = "pix"
    CARD = "card"
    CHECKOUT = "checkout"


@dataclass
class CardDetails:
    token: str
    payment_method_id: str
    payer_email: str
    identification_type: str
    identification_number: str
    installments: int = 1
    issuer_id: Optional[str] = None


@dataclass
class ChargeRequest:
    """Pedido de cobrança já precificado, pronto para o provedor."""

    kind: ChargeKind
    amount: Decimal
    description: str
    idempotency_key: str
    external_reference: str
    expires_at: Optional[datetime] = None
    payer_email: Optional[str] = None
    card: Optional[CardDetails] = None
    success_url: Optional[str] = None
    cancel_url: Optional[str] = None
    metadata: dict[str, str] = field(default_factory=dict)


@dataclass
class ChargeHandle:
    """Resultado normalizado da criação da cobrança em qualquer provedor."""

    provider: str
    external_id: str
    state: ChargeStatus = ChargeStatus.PENDING
    provider_status: Optional[str] = None
    pix_payload: Optional[str] = None
    qr_code_base64: Optional[str] = None
    redirect_url: Optional[str] = None
    expires_at: Optional[datetime] = None


@dataclass
class ProviderStatus:
    """Status autoritativo consultado no provedor. state=None quando ainda intermediário."""

    external_id: str
    state: Optional[ChargeStatus]
    provider_status: str
    external_reference: Optional[str] = None
    replacement_external_id: Optional[str] = None


class PaymentGatewayProtocol(Protocol):
    """Protocolo comum a todos os provedores."""

    name: str

    def supports(self, kind: ChargeKind) -> bool:
        ...

    def create_charge(self, request: ChargeRequest) -> ChargeHandle:
        """Cria a cobrança remota (com chave de idempotência) e devolve o handle normalizado."""
        ...

    def get_charge_status(self, external_id: str, retry: bool = True) -> ProviderStatus:
        """Consulta o status atual da cobrança no provedor. retry=False faz uma única tentativa."""
        ...

    def find_charge(self, external_reference: str) -> Optional[ProviderStatus]:
        """Procura a cobrança remota pela nossa referência (conciliação após timeout)."""
        ...

    def close(self) -> None:
        ...


class RetryingGateway:
    """Base dos provedores remotos: retry com backoff exponencial só para falhas transitórias."""

    name = "remote"

    def __init__(
        self,
        max_attempts: int = 3,
        backoff_seconds: float = 0.5,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._max_attempts = max(1, max_attempts)
        self._backoff_seconds = backoff_seconds
        self._sleep = sleep

    def close(self) -> None:
        pass

    def _with_retry(self, operation: str, call: Callable[[], T], retry: bool = True) -> T:
        """Repete `call` em GatewayUnavailable com backoff exponencial; GatewayRejected sobe direto."""
        max_attempts = self._max_attempts if retry else 1
        attempt = 1
        while True:
            try:
                return call()
            except GatewayUnavailable as e:
                if attempt >= max_attempts:
                    logger.error(
                        "%s em %s falhou após %s tentativas: %s",
                        operation,
                        self.name,
                        attempt,
                        e.message,
                    )
                    raise
                delay = self._backoff_seconds * (2 ** (attempt - 1))
                logger.warning(
                    "%s em %s falhou (tentativa %s/%s), nova tentativa em %.2fs: %s",
                    operation,
                    self.name,
                    attempt,
                    max_attempts,
                    delay,
                    e.message,
                )
                self._sleep(delay)
                attempt += 1


class HttpGateway(RetryingGateway):
    """Base para provedores REST via httpx: timeout explícito e mapeamento 4xx/5xx."""

    name = "http"

    def __init__(self, client: httpx.Client, base_url: str, **kwargs: Any):
        super().__init__(**kwargs)
        self._client = client
        self._base_url = base_url.rstrip("/")

    def close(self) -> None:
        # o client é compartilhado; quem fecha é o registry
        pass

    def _headers(self, idempotency_key: Optional[str] = None) -> dict[str, str]:
        raise NotImplementedError

    def _send(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        url = f"{self._base_url}{path}"
        try:
            response = self._client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            raise GatewayUnavailable(f"Timeout no provedor {self.name}", self.name) from e
        except httpx.HTTPError as e:
            raise GatewayUnavailable(f"Erro de rede no provedor {self.name}: {e}", self.name) from e
        if response.status_code == 429 or response.status_code >= 500:
            raise GatewayUnavailable(
                f"Provedor {self.name} indisponível ({response.status_code})",
                self.name,
                {"status_code": response.status_code},
            )
        if response.status_code >= 400:
            logger.warning(
                "Provedor %s recusou %s %s: %s %s",
                self.name,
                method,
                path,
                response.status_code,
                response.text[:500],
            )
            raise GatewayRejected(
                "Não foi possível processar o pagamento",
                self.name,
                {"status_code": response.status_code},
            )
        try:
            return response.json()
        except ValueError as e:
            raise GatewayUnavailable(f"Resposta inválida do provedor {self.name}", self.name) from e
