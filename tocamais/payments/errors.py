"""Taxonomia de erros do motor de pagamentos (código estável + status HTTP)."""

from typing import Any, Optional


class PaymentError(Exception):
    """Erro base: mensagem, código estável e status HTTP correspondente."""

    error_code = "ERR_PAYMENT"
    status_code = 500

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        return {
            "error_code": self.error_code,
            "message": self.message,
            "details": self.details,
        }


class ValidationError(PaymentError):
    """Entrada inválida (valor, pagador, beneficiário). Culpa do chamador, sem retry."""

    error_code = "ERR_VALIDATION"
    status_code = 400


class GatewayError(PaymentError):
    """Falha normalizada de um provedor de pagamento."""

    UNAVAILABLE = "unavailable"
    REJECTED = "rejected"

    kind = UNAVAILABLE

    def __init__(
        self,
        message: str,
        provider: str = "",
        details: Optional[dict[str, Any]] = None,
    ):
        super().__init__(message, details)
        self.provider = provider

    @property
    def retryable(self) -> bool:
        return self.kind == self.UNAVAILABLE


class GatewayUnavailable(GatewayError):
    """Rede/timeout/5xx no provedor: o cliente pode tentar de novo com backoff."""

    error_code = "ERR_GATEWAY_UNAVAILABLE"
    status_code = 502
    kind = GatewayError.UNAVAILABLE


class GatewayRejected(GatewayError):
    """Provedor recusou a cobrança (token inválido, valor inválido). Terminal."""

    error_code = "ERR_GATEWAY_REJECTED"
    status_code = 400
    kind = GatewayError.REJECTED


class SignatureInvalid(PaymentError):
    """Assinatura de webhook ausente ou inválida."""

    error_code = "ERR_SIGNATURE"
    status_code = 401


class RecordNotFound(PaymentError):
    """Cobrança desconhecida no ledger."""

    error_code = "ERR_NOT_FOUND"
    status_code = 404


class ReconciliationMismatch(PaymentError):
    """taxa + líquido não fecha com o bruto. Só é registrado em log; o bruto prevalece."""

    error_code = "ERR_RECONCILIATION"
    status_code = 500
