from contextlib import asynccontextmanager
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from checkout_service.infrastructure.repositories import (
    SQLAlchemyAddressRepository,
    SQLAlchemyCartOrderRepository,
    SQLAlchemyHistoryRepository,
    SQLAlchemyInboxRepository,
    SQLAlchemyOrderCodeRepository,
    SQLAlchemyOutboxRepository,
    SQLAlchemyPaymentMethodRepository,
    SQLAlchemyVariantRepository,
    SQLAlchemyVoucherRepository
)


class UnitOfWork:
    """Одна сессия на блок `async with`, все репозитории поверх нее"""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    @asynccontextmanager
    async def __call__(self):
        async with self._session_factory() as session:
            try:
                yield _UnitOfWorkImpl(session)
                # Незакоммиченное откатывается при выходе из блока
                await session.rollback()
            except Exception:
                await session.rollback()
                raise


class _UnitOfWorkImpl:
    def __init__(self, session: AsyncSession):
        self._session = session
        self.orders = SQLAlchemyCartOrderRepository(session)
        self.variants = SQLAlchemyVariantRepository(session)
        self.vouchers = SQLAlchemyVoucherRepository(session)
        self.addresses = SQLAlchemyAddressRepository(session)
        self.payment_methods = SQLAlchemyPaymentMethodRepository(session)
        self.order_codes = SQLAlchemyOrderCodeRepository(session)
        self.outbox = SQLAlchemyOutboxRepository(session)
        self.inbox = SQLAlchemyInboxRepository(session)
        self.history = SQLAlchemyHistoryRepository(session)

    async def commit(self):
        await self._session.commit()

    async def rollback(self):
        await self._session.rollback()
