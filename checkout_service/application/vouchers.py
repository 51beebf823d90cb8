import logging
from datetime import datetime, timezone
from typing import Optional
from pydantic import BaseModel

from checkout_service.domain.models import Voucher
from checkout_service.domain.pricing import discount_for
from checkout_service.domain.exceptions import (
    ConflictError, VoucherAboveMaximumError, VoucherAlreadyUsedError, VoucherBelowMinimumError,
    VoucherExpiredError, VoucherInactiveError, VoucherLimitReachedError, VoucherNotFoundError,
    VoucherNotStartedError
)
from checkout_service.application.interfaces import DuplicateKeyError

logger = logging.getLogger(__name__)


class VoucherApplication(BaseModel):
    """Результат применения промокода"""
    code: str
    discount_percent: int
    discount_amount: int
    user_newly_recorded: bool


class VoucherCheck(BaseModel):
    code: str
    discount_percent: int
    maximum_discount_amount: int
    discount_amount: Optional[int] = None


def check_eligibility(voucher: Voucher, user_id: str, order_total: Optional[int], at: datetime) -> None:
    """Цепочка проверок, первая неудачная побеждает.

    При order_total=None проверки минимальной/максимальной суммы пропускаются.
    """
    code = voucher.code
    if not voucher.is_active:
        raise VoucherInactiveError(code, f"Промокод {code} не активен")
    if at < voucher.start_date:
        raise VoucherNotStartedError(code, f"Промокод {code} еще не действует")
    if at > voucher.end_date:
        raise VoucherExpiredError(code, f"Срок действия промокода {code} истек")
    if order_total is not None:
        if order_total < voucher.minimum_order_value:
            raise VoucherBelowMinimumError(
                code, f"Минимальная сумма заказа для {code}: {voucher.minimum_order_value}"
            )
        if voucher.maximum_order_value is not None and order_total > voucher.maximum_order_value:
            raise VoucherAboveMaximumError(
                code, f"Сумма заказа превышает максимум для {code}: {voucher.maximum_order_value}"
            )
    if voucher.used_count >= voucher.usage_limit:
        raise VoucherLimitReachedError(code, f"Лимит использований промокода {code} исчерпан")
    if voucher.is_one_time_per_user and user_id in voucher.used_by_users:
        raise VoucherAlreadyUsedError(code, f"Промокод {code} уже использован")


class VoucherEngine:
    def __init__(self, unit_of_work):
        self._uow = unit_of_work

    async def check_usage(
        self, code: str, user_id: str, order_total: Optional[int] = None, at: Optional[datetime] = None
    ) -> VoucherCheck:
        """Только чтение: та же цепочка проверок, без изменения состояния"""
        at = at or datetime.now(timezone.utc)
        async with self._uow() as uow:
            voucher = await uow.vouchers.get_by_code(code)
        if not voucher:
            raise VoucherNotFoundError(f"Промокод {code} не найден")
        check_eligibility(voucher, user_id, order_total, at)
        discount = None
        if order_total is not None:
            discount = discount_for(order_total, voucher.discount_percent, voucher.maximum_discount_amount)
        return VoucherCheck(
            code=voucher.code,
            discount_percent=voucher.discount_percent,
            maximum_discount_amount=voucher.maximum_discount_amount,
            discount_amount=discount
        )

    async def apply(
        self, code: str, user_id: str, order_total: int, at: Optional[datetime] = None
    ) -> VoucherApplication:
        at = at or datetime.now(timezone.utc)
        async with self._uow() as uow:
            voucher = await uow.vouchers.get_by_code(code)
            if not voucher:
                raise VoucherNotFoundError(f"Промокод {code} не найден")
            check_eligibility(voucher, user_id, order_total, at)

            try:
                redeemed = await uow.vouchers.redeem(code, user_id, voucher.is_one_time_per_user)
            except DuplicateKeyError:
                await uow.rollback()
                if voucher.is_one_time_per_user:
                    raise VoucherAlreadyUsedError(code, f"Промокод {code} уже использован")
                raise ConflictError(f"Параллельное применение промокода {code}")

            if not redeemed:
                # Проиграли гонку за последний слот или промокод выключили
                current = await uow.vouchers.get_by_code(code)
                if current is None or not current.is_active:
                    raise VoucherInactiveError(code, f"Промокод {code} не активен")
                raise VoucherLimitReachedError(code, f"Лимит использований промокода {code} исчерпан")

            await uow.commit()

        discount = discount_for(order_total, voucher.discount_percent, voucher.maximum_discount_amount)
        logger.info(f"Промокод {code} применен пользователем {user_id}, скидка {discount}")
        return VoucherApplication(
            code=code,
            discount_percent=voucher.discount_percent,
            discount_amount=discount,
            user_newly_recorded=user_id not in voucher.used_by_users
        )

    async def release(self, application: VoucherApplication, user_id: str) -> None:
        """Компенсация apply: вернуть слот и убрать пользователя из usedByUsers"""
        async with self._uow() as uow:
            await uow.vouchers.release(application.code, user_id, application.user_newly_recorded)
            await uow.commit()
        logger.info(f"Использование промокода {application.code} пользователем {user_id} отменено")
