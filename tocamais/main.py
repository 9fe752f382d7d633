"""Entrypoint: configura logging e sobe a API de pagamentos."""

import logging
import os

import uvicorn
from dotenv import load_dotenv

from tocamais.config import load_settings
from tocamais.webhook import app

load_dotenv()

logging.basicConfig(
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    level=getattr(logging, (os.getenv("LOG_LEVEL") or "INFO").upper(), logging.INFO),
)

# Não emite logs de requisição HTTP do httpx (uma linha por chamada ao provedor)
logging.getLogger("httpx").setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


def main() -> None:
    settings = load_settings()
    if not settings.mercado_pago_webhook_secret:
        logger.warning("MERCADO_PAGO_WEBHOOK_SECRET ausente: webhooks do Mercado Pago serão recusados")
    if not settings.stripe_webhook_secret:
        logger.warning("STRIPE_WEBHOOK_SECRET ausente: webhooks da Stripe serão recusados")
    logger.info("Iniciando API de pagamentos (porta %s)", settings.webhook_port)
    uvicorn.run(app, host=settings.webhook_host, port=settings.webhook_port, log_level="warning")


if __name__ == "__main__":
    main()
