import logging
from typing import Any, Awaitable, Callable, List, Optional, Tuple

logger = logging.getLogger(__name__)


class SagaStep:
    """Шаг саги: действие и компенсирующее действие.

    compensation получает результат action и отменяет его побочный эффект.
    """

    def __init__(
        self,
        name: str,
        action: Callable[[], Awaitable[Any]],
        compensation: Optional[Callable[[Any], Awaitable[None]]] = None
    ):
        self.name = name
        self.action = action
        self.compensation = compensation


class Saga:
    """Последовательность шагов с откатом в обратном порядке.

    Используется как async context manager: при исключении внутри блока
    выполненные шаги компенсируются, исходное исключение пробрасывается дальше.
    """

    def __init__(self, name: str):
        self.name = name
        self._completed: List[Tuple[SagaStep, Any]] = []

    @property
    def completed_steps(self) -> List[str]:
        return [step.name for step, _ in self._completed]

    async def run(self, step: SagaStep) -> Any:
        result = await step.action()
        self._completed.append((step, result))
        return result

    async def compensate(self) -> None:
        while self._completed:
            step, result = self._completed.pop()
            if step.compensation is None:
                continue
            try:
                await step.compensation(result)
                logger.info(f"Сага {self.name}: шаг {step.name} откатан")
            except Exception as e:
                # Ошибка отката не должна подменять исходную ошибку
                logger.error(f"Сага {self.name}: не удалось откатить шаг {step.name}: {e}", exc_info=True)

    def forget(self) -> None:
        """Сага завершена успешно, компенсации больше не нужны"""
        self._completed.clear()

    async def __aenter__(self) -> "Saga":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        if exc_type is not None:
            logger.warning(f"Сага {self.name} прервана ({exc_type.__name__}), откат {len(self._completed)} шагов")
            await self.compensate()
        else:
            self.forget()
        return False
