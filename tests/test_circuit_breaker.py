"""Tests for the timed, optimistic-reopen AI availability breaker."""

import threading

from circuit_breaker import AIAvailabilityBreaker, AIState
from conftest import ManualClock


class TestAIAvailabilityBreaker:
    def test_starts_available(self, breaker, clock):
        assert breaker.state is AIState.AVAILABLE
        assert breaker.should_try_ai() is True
        assert breaker.last_checked_at == clock.now

    def test_failure_disables_immediately(self, breaker):
        breaker.record_failure()
        assert breaker.state is AIState.COOLING_DOWN
        assert breaker.should_try_ai() is False

    def test_reopens_after_interval(self, breaker, clock):
        breaker.record_failure()
        clock.advance(61)
        assert breaker.should_try_ai() is True
        assert breaker.last_checked_at == clock.now

    def test_interval_boundary_is_exclusive(self, breaker, clock):
        breaker.record_failure()
        clock.advance(60)
        assert breaker.should_try_ai() is False

    def test_reopens_regardless_of_intervening_failures(self, breaker, clock):
        breaker.record_failure()
        clock.advance(30)
        breaker.record_failure()
        assert breaker.should_try_ai() is False
        clock.advance(31)
        assert breaker.should_try_ai() is True

    def test_success_reenables_before_interval(self, breaker, clock):
        breaker.record_failure()
        clock.advance(5)
        breaker.record_success()
        assert breaker.is_available
        assert breaker.should_try_ai() is True

    def test_reopen_resets_the_timer(self, breaker, clock):
        clock.advance(61)
        assert breaker.should_try_ai() is True
        breaker.record_failure()
        clock.advance(59)
        assert breaker.should_try_ai() is False

    def test_concurrent_updates_leave_a_valid_state(self):
        breaker = AIAvailabilityBreaker(check_interval=0.0, clock=ManualClock())

        def hammer(i):
            for _ in range(500):
                if i % 2:
                    breaker.record_failure()
                else:
                    breaker.record_success()
                breaker.should_try_ai()

        threads = [threading.Thread(target=hammer, args=(i,)) for i in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert breaker.state in (AIState.AVAILABLE, AIState.COOLING_DOWN)
