import os
from dotenv import load_dotenv

load_dotenv()


def _split(value: str) -> list[str]:
    return [part.strip() for part in value.split(",") if part.strip()]


class Settings:
    # Database
    POSTGRES_CONNECTION_STRING: str = os.getenv("POSTGRES_CONNECTION_STRING", "")
    FALLBACK_DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite+aiosqlite:///./checkout.db")

    # API
    SERVICE_URL: str = os.getenv("SERVICE_URL", "http://localhost:8000")

    # Доставка: в домашнем городе магазина дешевле
    HOME_CITIES: list[str] = _split(
        os.getenv("HOME_CITIES", "Hồ Chí Minh,Ho Chi Minh,TP HCM,TP.HCM,Thành phố Hồ Chí Minh")
    )
    HOME_SHIPPING_FEE: int = int(os.getenv("HOME_SHIPPING_FEE", "20000"))
    OTHER_SHIPPING_FEE: int = int(os.getenv("OTHER_SHIPPING_FEE", "50000"))

    # Платежный шлюз
    PAYMENT_GATEWAY_URL: str = os.getenv("PAYMENT_GATEWAY_URL", "https://sandbox.gateway.local")
    PAYMENT_GATEWAY_SECRET: str = os.getenv("PAYMENT_GATEWAY_SECRET", "")
    PAYMENT_GATEWAY_TIMEOUT: float = float(os.getenv("PAYMENT_GATEWAY_TIMEOUT", "10"))

    # Kafka / outbox
    KAFKA_BOOTSTRAP_SERVERS: str = os.getenv("KAFKA_BOOTSTRAP_SERVERS", "localhost:9092")
    OUTBOX_POLL_INTERVAL: float = float(os.getenv("OUTBOX_POLL_INTERVAL", "3"))
    OUTBOX_BATCH_SIZE: int = int(os.getenv("OUTBOX_BATCH_SIZE", "10"))

    @property
    def DATABASE_URL(self) -> str:
        """Асинхронный URL для приложения"""
        if self.POSTGRES_CONNECTION_STRING:
            return self.POSTGRES_CONNECTION_STRING.replace("postgres://", "postgresql+asyncpg://")
        return self.FALLBACK_DATABASE_URL

    @property
    def SYNC_DATABASE_URL(self) -> str:
        """Синхронный URL для Alembic"""
        if self.POSTGRES_CONNECTION_STRING:
            return self.POSTGRES_CONNECTION_STRING.replace("postgres://", "postgresql://")
        return self.FALLBACK_DATABASE_URL.replace("sqlite+aiosqlite://", "sqlite://")

    @property
    def RETURN_URL(self) -> str:
        return f"{self.SERVICE_URL}/api/payment/gateway/callback"

    @property
    def IPN_URL(self) -> str:
        return f"{self.SERVICE_URL}/api/payment/gateway/ipn"


settings = Settings()
