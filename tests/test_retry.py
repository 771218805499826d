"""Tests for the shared polling primitive."""

import pytest

from ksefsend import ksefError
from ksefsend import ksefRetry


def _script(*outcomes):
    outcomes = list(outcomes)
    calls = []

    def attempt():
        calls.append(1)
        outcome = outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    attempt.calls = calls
    return attempt


class TestPoller:

    def test_returns_first_done_value(self, poller, clock):
        attempt = _script((False, 'a'), (False, 'b'), (True, 'c'))

        assert poller.run(attempt, interval=2, max_attempts=5) == 'c'
        assert clock.sleeps == [2, 2]

    def test_rate_limit_uses_retry_after(self, poller, clock):
        attempt = _script(ksefError.ksefRateLimited('busy', status_code=429, retry_after=7), (True, 'ok'))

        assert poller.run(attempt, interval=1, max_attempts=3) == 'ok'
        assert clock.sleeps == [7]

    def test_rate_limit_without_hint_waits_default(self, poller, clock):
        attempt = _script(ksefError.ksefRateLimited('busy', status_code=429), (True, 'ok'))

        poller.run(attempt, interval=1, max_attempts=3)
        assert clock.sleeps == [30]

    def test_not_found_waits_at_least_half_second(self, poller, clock):
        attempt = _script(
            ksefError.ksefNotYetVisible('nope', status_code=404),
            ksefError.ksefNotYetVisible('nope', status_code=404),
            (True, 'ok')
        )

        assert poller.run(attempt, interval=0.1, max_attempts=3) == 'ok'
        assert clock.sleeps == [0.5, 0.5]

    def test_other_errors_propagate(self, poller):
        attempt = _script(ksefError.ksefHttpError('boom', status_code=500))

        with pytest.raises(ksefError.ksefHttpError):
            poller.run(attempt, interval=1, max_attempts=3)

    def test_retry_on_errors_are_retried(self, poller, clock):
        attempt = _script(ksefError.ksefHttpError('boom', status_code=500), (True, 'ok'))

        assert poller.run(attempt, interval=1, max_attempts=3, retry_on=(ksefError.ksefHttpError,)) == 'ok'

    def test_exhausted_attempts_carry_last_value(self, poller, clock):
        attempt = _script((False, 1), (False, 2), (False, 3))

        with pytest.raises(ksefError.ksefTimeout) as exc_info:
            poller.run(attempt, interval=1, max_attempts=3)

        assert exc_info.value.last_value == 3
        assert len(attempt.calls) == 3
        assert clock.sleeps == [1, 1]

    def test_deadline_bounds_wall_clock(self, poller, clock):
        attempt = _script(*[(False, n) for n in range(100)])

        with pytest.raises(ksefError.ksefTimeout):
            poller.run(attempt, interval=4, max_wait=10)

        assert sum(clock.sleeps) == pytest.approx(10)
        assert clock.sleeps[-1] == pytest.approx(2)

    def test_a_bound_is_required(self, poller):
        with pytest.raises(ksefError.ksefInputValidationError):
            poller.run(lambda: (True, None), interval=1)


class TestClock:

    def test_zero_sleep_is_skipped(self, monkeypatch):
        slept = []
        monkeypatch.setattr(ksefRetry.time, 'sleep', slept.append)

        ksefRetry.ksefClock().sleep(0)
        ksefRetry.ksefClock().sleep(0.25)

        assert slept == [0.25]
