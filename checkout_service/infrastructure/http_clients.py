import httpx
import logging
from datetime import datetime, timezone

from checkout_service.domain.models import Order
from checkout_service.domain.exceptions import PaymentGatewayError
from checkout_service.application.interfaces import PaymentGateway
from checkout_service.infrastructure.signing import PayloadSigner

logger = logging.getLogger(__name__)


class HTTPPaymentGatewayClient(PaymentGateway):
    def __init__(
        self,
        base_url: str,
        signer: PayloadSigner,
        return_url: str,
        ipn_url: str,
        timeout: float = 10.0
    ):
        self._base_url = base_url.rstrip("/")
        self._signer = signer
        self._return_url = return_url
        self._ipn_url = ipn_url
        self._timeout = timeout

    def build_payment_url(self, order: Order) -> str:
        """Подписанная ссылка на страницу оплаты. Сеть не нужна"""
        params = self._signer.signed({
            "order_code": order.order_code,
            "amount": order.final_total,
            "order_info": f"Thanh toan don hang {order.order_code}",
            "return_url": self._return_url,
            "ipn_url": self._ipn_url,
            "create_date": datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S")
        })
        return str(httpx.URL(f"{self._base_url}/pay", params=params))

    async def charge(self, order: Order) -> bool:
        """Синхронное списание. Таймаут или сбой сети дают PaymentGatewayError"""
        payload = self._signer.signed({
            "order_code": order.order_code,
            "amount": order.final_total,
            "ipn_url": self._ipn_url
        })
        try:
            async with httpx.AsyncClient() as client:
                response = await client.post(
                    f"{self._base_url}/api/charges",
                    json=payload,
                    timeout=self._timeout
                )

                if response.status_code == 200:
                    data = response.json()
                    return data.get("response_code") == "00"
                elif 400 <= response.status_code < 500:
                    logger.warning(f"Шлюз отклонил списание {order.order_code}: {response.status_code}")
                    return False
                else:
                    raise PaymentGatewayError(f"Payment gateway ошибка: {response.status_code}")

        except httpx.TimeoutException as e:
            logger.error(f"Payment gateway таймаут для {order.order_code}: {e}")
            raise PaymentGatewayError(f"Payment gateway не ответил за {self._timeout}с")
        except httpx.RequestError as e:
            logger.error(f"Payment gateway ошибка подключения: {e}")
            raise PaymentGatewayError(f"Payment gateway не доступен: {str(e)}")

    async def request_refund(self, order_code: str, amount: int, idempotency_key: str) -> bool:
        payload = self._signer.signed(
            {"order_code": order_code, "amount": amount, "refund_id": idempotency_key}
        )
        try:
            async with httpx.AsyncClient() as client:
                response = await client.post(
                    f"{self._base_url}/api/refunds",
                    json=payload,
                    headers={"Idempotency-Key": idempotency_key},
                    timeout=self._timeout
                )

                if response.status_code in (200, 201):
                    logger.info(f"Запрошен возврат {amount} по заказу {order_code}")
                    return True
                logger.warning(f"Возврат по заказу {order_code} вернул статус {response.status_code}")
                return False

        except httpx.RequestError as e:
            logger.error(f"Payment gateway ошибка подключения: {e}")
            raise PaymentGatewayError(f"Payment gateway не доступен: {str(e)}")
