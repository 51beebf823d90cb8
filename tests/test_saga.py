import pytest

from checkout_service.application.saga import Saga, SagaStep


def _step(name, log, fail=False, compensation_fails=False):
    async def action():
        if fail:
            raise RuntimeError(f"{name} failed")
        log.append(f"do:{name}")
        return name

    async def compensation(result):
        if compensation_fails:
            raise RuntimeError(f"undo {result} failed")
        log.append(f"undo:{result}")

    return SagaStep(name=name, action=action, compensation=compensation)


class TestSaga:
    @pytest.mark.asyncio
    async def test_compensates_in_reverse_order(self):
        log = []
        with pytest.raises(RuntimeError, match="c failed"):
            async with Saga("test") as saga:
                await saga.run(_step("a", log))
                await saga.run(_step("b", log))
                await saga.run(_step("c", log, fail=True))

        assert log == ["do:a", "do:b", "undo:b", "undo:a"]

    @pytest.mark.asyncio
    async def test_success_keeps_side_effects(self):
        log = []
        async with Saga("test") as saga:
            await saga.run(_step("a", log))
            await saga.run(_step("b", log))

        assert log == ["do:a", "do:b"]
        assert saga.completed_steps == []

    @pytest.mark.asyncio
    async def test_failed_compensation_does_not_hide_original_error(self):
        log = []
        with pytest.raises(RuntimeError, match="c failed"):
            async with Saga("test") as saga:
                await saga.run(_step("a", log))
                await saga.run(_step("b", log, compensation_fails=True))
                await saga.run(_step("c", log, fail=True))

        # a все равно откатан
        assert log == ["do:a", "do:b", "undo:a"]

    @pytest.mark.asyncio
    async def test_step_without_compensation_is_skipped(self):
        log = []

        async def action():
            log.append("do:code")

        with pytest.raises(RuntimeError):
            async with Saga("test") as saga:
                await saga.run(_step("a", log))
                await saga.run(SagaStep(name="code", action=action))
                await saga.run(_step("c", log, fail=True))

        assert log == ["do:a", "do:code", "undo:a"]
