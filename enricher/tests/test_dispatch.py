"""Tests for the dispatcher — backpressure, flush, error reporting."""

import asyncio

import pytest

from enricher.dispatch import Dispatcher


class TestInline:
    def test_runs_to_completion_without_loop(self):
        done = []

        async def unit():
            done.append(1)

        dispatcher = Dispatcher()
        assert dispatcher.submit(unit) is None
        assert done == [1]
        assert dispatcher.in_flight == 0

    def test_invalid_max_in_flight(self):
        with pytest.raises(ValueError):
            Dispatcher(max_in_flight=0)


class TestBackpressure:
    def test_drops_beyond_max_in_flight(self):
        dispatcher = Dispatcher(max_in_flight=3)
        ran = []

        async def scenario():
            gate = asyncio.Event()

            def blocked(i):
                async def unit():
                    await gate.wait()
                    ran.append(i)
                return unit

            for i in range(3):
                dispatcher.submit(blocked(i))
            assert dispatcher.in_flight == 3

            assert dispatcher.submit(blocked(99)) is None
            assert dispatcher.dropped == 1
            assert dispatcher.in_flight == 3

            gate.set()
            await dispatcher.flush()

        asyncio.run(scenario())
        assert sorted(ran) == [0, 1, 2]
        assert dispatcher.in_flight == 0

    def test_capacity_returns_after_completion(self):
        dispatcher = Dispatcher(max_in_flight=1)
        ran = []

        async def scenario():
            async def unit():
                ran.append(1)

            dispatcher.submit(unit)
            await dispatcher.flush()
            dispatcher.submit(unit)
            await dispatcher.flush()

        asyncio.run(scenario())
        assert ran == [1, 1]
        assert dispatcher.dropped == 0


class TestFlush:
    def test_returns_on_timeout(self):
        dispatcher = Dispatcher()

        async def scenario():
            gate = asyncio.Event()

            async def unit():
                await gate.wait()

            dispatcher.submit(unit)
            loop = asyncio.get_running_loop()
            started = loop.time()
            await dispatcher.flush(timeout_ms=50)
            elapsed = loop.time() - started
            outstanding = dispatcher.in_flight
            gate.set()
            await dispatcher.flush()
            return elapsed, outstanding

        elapsed, outstanding = asyncio.run(scenario())
        assert outstanding == 1
        assert elapsed < 1.0
        assert dispatcher.in_flight == 0

    def test_returns_immediately_when_idle(self):
        asyncio.run(Dispatcher().flush(timeout_ms=10))


class TestErrors:
    def test_failure_reported_not_raised(self):
        errors = []

        async def unit():
            raise RuntimeError("store down")

        dispatcher = Dispatcher(on_error=lambda err, record: errors.append((err, record)))
        dispatcher.submit(unit, record={"id": "r1"})
        assert len(errors) == 1
        assert isinstance(errors[0][0], RuntimeError)
        assert errors[0][1] == {"id": "r1"}
        assert dispatcher.in_flight == 0

    def test_raising_on_error_is_swallowed(self):
        def on_error(err, record):
            raise ValueError("callback broke")

        async def unit():
            raise RuntimeError("store down")

        dispatcher = Dispatcher(on_error=on_error)
        dispatcher.submit(unit)
        assert dispatcher.in_flight == 0


class TestAwaitable:
    def test_task_returned_when_not_fire_and_forget(self):
        dispatcher = Dispatcher(fire_and_forget=False)
        done = []

        async def scenario():
            async def unit():
                done.append(1)

            task = dispatcher.submit(unit)
            assert isinstance(task, asyncio.Task)
            await task

        asyncio.run(scenario())
        assert done == [1]

    def test_fire_and_forget_returns_none(self):
        dispatcher = Dispatcher()

        async def scenario():
            async def unit():
                pass

            result = dispatcher.submit(unit)
            await dispatcher.flush()
            return result

        assert asyncio.run(scenario()) is None
