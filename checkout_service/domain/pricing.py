from datetime import date
from typing import Iterable


class ShippingPolicy:
    """Фиксированные зоны доставки: домашний город и все остальные.

    Список городов и тарифы приходят из конфигурации.
    """

    def __init__(self, home_cities: Iterable[str], home_fee: int, other_fee: int):
        self._home_cities = [c.strip().lower() for c in home_cities if c.strip()]
        self._home_fee = home_fee
        self._other_fee = other_fee

    def is_home_zone(self, city: str | None) -> bool:
        if not city or not city.strip():
            return False
        city = city.strip().lower()
        return any(city in home or home in city for home in self._home_cities)

    def fee_for(self, city: str | None) -> int:
        return self._home_fee if self.is_home_zone(city) else self._other_fee


def discount_for(order_total: int, discount_percent: int, maximum_discount_amount: int) -> int:
    """Скидка = total * percent / 100, но не больше лимита промокода"""
    raw = order_total * discount_percent // 100
    return min(raw, maximum_discount_amount)


def final_total(total: int, discount_amount: int, shipping_fee: int) -> int:
    return total - discount_amount + shipping_fee


def format_order_code(day: date, sequence: int) -> str:
    """ORD + дата + порядковый номер за день: сортируется и уникален"""
    return f"ORD{day:%Y%m%d}{sequence:05d}"
