"""App FastAPI: criação de cobranças e assinaturas, consulta de status e webhooks dos provedores."""

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from fastapi import FastAPI, Header, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from tocamais.config import Settings, load_settings
from tocamais.db.models import ChargeRecord, as_utc
from tocamais.db.session import create_all_tables
from tocamais.payments.beneficiaries import SqlBeneficiaryDirectory
from tocamais.payments.errors import PaymentError
from tocamais.payments.events import LoggingEventPublisher, RedisEventPublisher
from tocamais.payments.gateway.base import CardDetails
from tocamais.payments.gateway.factory import GatewayRegistry, build_registry
from tocamais.payments.ledger import LedgerStore
from tocamais.payments.reconciler import Reconciler
from tocamais.payments.service import ChargeService, CreateChargeCommand, CreateSubscriptionCommand
from tocamais.payments.subscriptions import SubscriptionActivator
from tocamais.payments.sweeper import ExpirySweeper, run_periodically
from tocamais.payments.webhooks import MercadoPagoVerifier, StripeVerifier

logger = logging.getLogger(__name__)


class CreateChargeBody(BaseModel):
    """Corpo de POST /charges (camelCase, como o app envia)."""

    model_config = ConfigDict(populate_by_name=True)

    gross_amount: Decimal = Field(alias="grossAmount")
    beneficiary_ref: str = Field(alias="beneficiaryRef", min_length=1, max_length=64)
    payment_method: str = Field(alias="paymentMethod")
    payer_ref: Optional[str] = Field(default=None, alias="payerRef", max_length=64)
    session_token: Optional[str] = Field(default=None, alias="sessionToken", max_length=64)
    payer_name: Optional[str] = Field(default=None, alias="payerName", max_length=128)
    payer_email: Optional[str] = Field(default=None, alias="payerEmail", max_length=256)
    song_request: Optional[str] = Field(default=None, alias="songRequest", max_length=256)
    message: Optional[str] = Field(default=None, max_length=512)
    # cartão (token gerado no front pelo SDK do provedor)
    card_token: Optional[str] = Field(default=None, alias="cardToken")
    payment_method_id: Optional[str] = Field(default=None, alias="paymentMethodId")
    identification_type: Optional[str] = Field(default=None, alias="identificationType")
    identification_number: Optional[str] = Field(default=None, alias="identificationNumber")
    installments: int = 1
    issuer_id: Optional[str] = Field(default=None, alias="issuerId")
    # checkout hospedado
    success_url: Optional[str] = Field(default=None, alias="successUrl")
    cancel_url: Optional[str] = Field(default=None, alias="cancelUrl")

    def to_command(self, idempotency_key: Optional[str]) -> CreateChargeCommand:
        card = None
        if self.payment_method == "card":
            card = CardDetails(
                token=self.card_token or "",
                payment_method_id=self.payment_method_id or "",
                payer_email=self.payer_email or "",
                identification_type=self.identification_type or "",
                identification_number=self.identification_number or "",
                installments=self.installments,
                issuer_id=self.issuer_id,
            )
        return CreateChargeCommand(
            gross_amount=self.gross_amount,
            beneficiary_ref=self.beneficiary_ref,
            payment_method=self.payment_method,
            payer_id=self.payer_ref,
            session_token=self.session_token,
            idempotency_key=idempotency_key,
            payer_name=self.payer_name,
            payer_email=self.payer_email,
            song_request=self.song_request,
            message=self.message,
            card=card,
            success_url=self.success_url,
            cancel_url=self.cancel_url,
        )


class CreateSubscriptionBody(BaseModel):
    """Corpo de POST /subscriptions."""

    model_config = ConfigDict(populate_by_name=True)

    beneficiary_ref: str = Field(alias="beneficiaryRef", min_length=1, max_length=64)
    payer_email: Optional[str] = Field(default=None, alias="payerEmail", max_length=256)

    def to_command(self, idempotency_key: Optional[str]) -> CreateSubscriptionCommand:
        return CreateSubscriptionCommand(
            beneficiary_ref=self.beneficiary_ref,
            idempotency_key=idempotency_key,
            payer_email=self.payer_email,
        )


def _iso(moment: Optional[datetime]) -> Optional[str]:
    if moment is None:
        return None
    return as_utc(moment).isoformat()


def _money(value: Decimal) -> str:
    return f"{value:.2f}"


def charge_response(record: ChargeRecord) -> dict[str, Any]:
    return {
        "chargeId": record.id,
        "status": record.status,
        "provider": record.provider,
        "pixPayload": record.pix_payload,
        "qrCodeBase64": record.qr_code_base64,
        "redirectUrl": record.redirect_url,
        "expiresAt": _iso(record.expires_at),
        "grossAmount": _money(record.gross_amount),
        "feeAmount": _money(record.fee_amount),
        "netAmount": _money(record.net_amount),
    }


async def payment_error_handler(request: Request, exc: PaymentError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = [{"loc": list(e.get("loc", ())), "msg": e.get("msg", "")} for e in exc.errors()]
    return JSONResponse(
        status_code=400,
        content={
            "error_code": "ERR_VALIDATION",
            "message": "Dados inválidos",
            "details": {"errors": errors},
        },
    )


async def unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Erro inesperado em %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content={
            "error_code": "ERR_INTERNAL",
            "message": "Erro interno",
            "details": {},
        },
    )


def create_app(
    settings: Optional[Settings] = None,
    registry: Optional[GatewayRegistry] = None,
    run_sweeper: bool = True,
) -> FastAPI:
    """
    Monta a API. Sem argumentos lê o ambiente; testes injetam Settings e um registry
    com transporte simulado e desligam o sweeper.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        cfg = settings or load_settings()
        create_all_tables()
        gateways = registry or build_registry(cfg)
        ledger = LedgerStore()

        redis = async_redis = None
        if cfg.redis_enabled:
            from redis import Redis
            from redis.asyncio import Redis as AsyncRedis

            redis = Redis.from_url(cfg.redis_url, decode_responses=True)
            async_redis = AsyncRedis.from_url(cfg.redis_url, decode_responses=True)
            publisher = RedisEventPublisher(redis)
        else:
            publisher = LoggingEventPublisher()

        verifiers = {
            "mercadopago": MercadoPagoVerifier(cfg.mercado_pago_webhook_secret),
            "stripe": StripeVerifier(
                cfg.stripe_webhook_secret,
                tolerance_seconds=cfg.stripe_signature_tolerance_seconds,
            ),
        }
        beneficiaries = SqlBeneficiaryDirectory()
        subscriptions = SubscriptionActivator(beneficiaries, days=cfg.subscription_days)
        reconciler = Reconciler(ledger, gateways, verifiers, publisher, subscriptions)
        app.state.settings = cfg
        app.state.reconciler = reconciler
        app.state.service = ChargeService(
            ledger,
            gateways,
            beneficiaries,
            settings=cfg,
            publisher=publisher,
            reconciler=reconciler,
        )

        stop_event = asyncio.Event()
        sweeper_task = None
        if run_sweeper and cfg.sweep_interval_seconds > 0:
            sweeper = ExpirySweeper(
                ledger,
                reconciler,
                subscriptions,
                stale_after_minutes=cfg.reconcile_stale_minutes,
                recover_after_minutes=cfg.recover_after_minutes,
                abandon_after_minutes=cfg.abandon_after_minutes,
                archive_after_days=cfg.archive_after_days,
                purge_after_days=cfg.purge_after_days,
            )
            sweeper_task = asyncio.create_task(
                run_periodically(sweeper, cfg.sweep_interval_seconds, stop_event, async_redis)
            )
        logger.info("API de pagamentos pronta (provedores: %s)", ", ".join(gateways.providers))
        try:
            yield
        finally:
            stop_event.set()
            if sweeper_task and not sweeper_task.done():
                try:
                    await asyncio.wait_for(sweeper_task, timeout=5.0)
                except (asyncio.CancelledError, asyncio.TimeoutError):
                    sweeper_task.cancel()
            gateways.close()
            if async_redis is not None:
                await async_redis.aclose()
            if redis is not None:
                redis.close()

    app = FastAPI(title="Toca+ Payments", lifespan=lifespan)
    app.add_exception_handler(PaymentError, payment_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(Exception, unexpected_error_handler)

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.post("/charges", status_code=201)
    async def create_charge(
        body: CreateChargeBody,
        request: Request,
        idempotency_key: Optional[str] = Header(default=None),
    ) -> dict[str, Any]:
        """Cria a cobrança no provedor e devolve o necessário para o fã pagar (QR PIX ou redirect)."""
        service: ChargeService = request.app.state.service
        record = await asyncio.to_thread(service.create_charge, body.to_command(idempotency_key))
        return charge_response(record)

    @app.post("/subscriptions", status_code=201)
    async def create_subscription(
        body: CreateSubscriptionBody,
        request: Request,
        idempotency_key: Optional[str] = Header(default=None),
    ) -> dict[str, Any]:
        """Cobrança PIX do plano pro; o plano ativa quando o pagamento é aprovado."""
        service: ChargeService = request.app.state.service
        record = await asyncio.to_thread(service.create_subscription, body.to_command(idempotency_key))
        return charge_response(record)

    @app.get("/charges/{charge_id}/status")
    async def charge_status(charge_id: str, request: Request) -> dict[str, Any]:
        service: ChargeService = request.app.state.service
        record = await asyncio.to_thread(service.get_status, charge_id)
        return {
            "chargeId": record.id,
            "status": record.status,
            "expiresAt": _iso(record.expires_at),
        }

    @app.post("/webhooks/{provider}")
    async def provider_webhook(provider: str, request: Request) -> JSONResponse:
        """
        Notificação do provedor. O corpo bruto vai intacto para a verificação de assinatura;
        o status HTTP devolvido decide se o provedor reenvia (só 5xx).
        """
        raw_body = await request.body()
        reconciler: Reconciler = request.app.state.reconciler
        result = await asyncio.to_thread(
            reconciler.handle_webhook,
            provider,
            raw_body,
            dict(request.headers),
            dict(request.query_params),
        )
        return JSONResponse(status_code=result.status_code, content=result.body)

    return app


app = create_app()
