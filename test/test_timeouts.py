"""
Timeout Race Tests

Tests:
1. First of {resolve, timer} decides the outcome
2. Late resolves are ignored
3. Coroutine starters are cancelled once the race is decided
4. Generation counter

Property of Uncompromising Sensors LLC.
"""

import asyncio
import time

import pytest

from rakbridge.errors import RakTimeout
from rakbridge.transport.timeouts import Generation, waitFor


def _raiseTimeout():
    raise RakTimeout('timed out')


class TestWaitFor:
    """Race semantics"""

    @pytest.mark.asyncio
    async def test_resolve_before_deadline_returns_value(self):
        """An immediate resolve wins"""
        result = await waitFor(lambda resolve: resolve('pong'), 1.0, _raiseTimeout)
        assert result == 'pong'

    @pytest.mark.asyncio
    async def test_resolve_none_is_a_result(self):
        """None is a valid outcome (backend failure), not a timeout"""
        result = await waitFor(lambda resolve: resolve(None), 1.0, _raiseTimeout)
        assert result is None

    @pytest.mark.asyncio
    async def test_deferred_resolve_wins(self):
        """Resolve from a later loop callback still beats a longer timer"""
        def start(resolve):
            asyncio.get_running_loop().call_later(0.02, resolve, 'late but in time')

        assert await waitFor(start, 0.5, _raiseTimeout) == 'late but in time'

    @pytest.mark.asyncio
    async def test_timer_returns_onTimeout_value(self):
        """When nothing resolves, onTimeout's value is the result"""
        result = await waitFor(lambda resolve: None, 0.05, lambda: 'fallback')
        assert result == 'fallback'

    @pytest.mark.asyncio
    async def test_timer_raises_from_onTimeout(self):
        """onTimeout may raise; the error reaches the caller near the deadline"""
        started = time.monotonic()
        with pytest.raises(RakTimeout):
            await waitFor(lambda resolve: None, 0.1, _raiseTimeout)
        elapsed = time.monotonic() - started
        assert 0.09 <= elapsed < 0.2

    @pytest.mark.asyncio
    async def test_late_resolve_is_ignored(self):
        """Resolving after the timer fired does nothing"""
        captured = []
        result = await waitFor(lambda resolve: captured.append(resolve), 0.02, lambda: 'timeout')
        assert result == 'timeout'

        captured[0]('too late')     # Must not raise InvalidStateError
        captured[0]('later still')

    @pytest.mark.asyncio
    async def test_second_resolve_is_ignored(self):
        """Only the first resolve counts"""
        def start(resolve):
            resolve('first')
            resolve('second')

        assert await waitFor(start, 1.0, _raiseTimeout) == 'first'


class TestWaitForCoroutines:
    """Coroutine starters run as tasks"""

    @pytest.mark.asyncio
    async def test_coroutine_starter_is_cancelled_after_resolve(self):
        """The operation is cancelled once its result is in"""
        state = {'cancelled': False}

        async def operation(resolve):
            resolve('done')
            try:
                await asyncio.sleep(10)
            except asyncio.CancelledError:
                state['cancelled'] = True
                raise

        assert await waitFor(operation, 1.0, _raiseTimeout) == 'done'
        await asyncio.sleep(0.01)
        assert state['cancelled']

    @pytest.mark.asyncio
    async def test_coroutine_starter_is_cancelled_on_timeout(self):
        """A hanging operation does not outlive its race"""
        state = {'cancelled': False}

        async def operation(resolve):
            try:
                await asyncio.sleep(10)
            except asyncio.CancelledError:
                state['cancelled'] = True
                raise

        with pytest.raises(RakTimeout):
            await waitFor(operation, 0.05, _raiseTimeout)
        await asyncio.sleep(0.01)
        assert state['cancelled']

    @pytest.mark.asyncio
    async def test_coroutine_starter_error_propagates(self):
        """An operation that fails before resolving surfaces its error"""
        async def operation(resolve):
            raise ConnectionError('boom')

        with pytest.raises(ConnectionError):
            await waitFor(operation, 1.0, _raiseTimeout)


class TestGeneration:
    """Ping generation counter"""

    def test_next_is_monotonic(self):
        gen = Generation()
        assert gen.next() == 1
        assert gen.next() == 2

    def test_counters_are_independent(self):
        first, second = Generation(), Generation()
        first.next()
        assert second.next() == 1
