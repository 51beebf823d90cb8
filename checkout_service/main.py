import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI

from checkout_service.config import settings
from checkout_service.database import AsyncSessionLocal, create_tables, engine
from checkout_service.domain.pricing import ShippingPolicy
from checkout_service.infrastructure.http_clients import HTTPPaymentGatewayClient
from checkout_service.infrastructure.signing import PayloadSigner
from checkout_service.presentation.api import router

logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)


def create_app(
    session_factory=None,
    payment_gateway=None,
    signer=None,
    shipping_policy=None,
    db_engine=None
) -> FastAPI:
    """Сборка приложения. Зависимости можно подменить (тесты)"""
    signer = signer or PayloadSigner(settings.PAYMENT_GATEWAY_SECRET)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Управление жизненным циклом приложения"""
        if db_engine is not None:
            await create_tables(db_engine)
            logger.info("Таблицы созданы")
        yield
        logger.info("Приложение останавливается...")

    app = FastAPI(
        title="Checkout Service",
        description="Оформление заказов, оплата и контроль согласованности",
        version="1.0.0",
        lifespan=lifespan
    )
    app.state.session_factory = session_factory or AsyncSessionLocal
    app.state.signer = signer
    app.state.payment_gateway = payment_gateway or HTTPPaymentGatewayClient(
        base_url=settings.PAYMENT_GATEWAY_URL,
        signer=signer,
        return_url=settings.RETURN_URL,
        ipn_url=settings.IPN_URL,
        timeout=settings.PAYMENT_GATEWAY_TIMEOUT
    )
    app.state.shipping_policy = shipping_policy or ShippingPolicy(
        settings.HOME_CITIES, settings.HOME_SHIPPING_FEE, settings.OTHER_SHIPPING_FEE
    )

    app.include_router(router, prefix="/api")

    @app.get("/health")
    async def health():
        return {"status": "healthy"}

    return app


app = create_app(db_engine=engine)
