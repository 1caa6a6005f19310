import concurrent.futures
import socket
import time
import unittest

import cloudexec
from cloudexec.exceptions import APIUsageException, ExecutionException, IllegalStateException, PredicateException, \
    TimeoutException
from cloudexec.predicates import RetryableNumTimesPredicate, RetryablePredicate, SocketOpen


class FakeClock(object):
    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now = self.now + seconds

    def time(self):
        return self.now


class RecordingPredicate(object):
    def __init__(self, answers=None, clock=None):
        self.answers = list(answers or [])
        self.clock = clock
        self.calls = []

    def __call__(self, value):
        if self.clock is None:
            self.calls.append(time.monotonic())
        else:
            self.calls.append(self.clock.time())
        if self.answers:
            answer = self.answers.pop(0)
            if isinstance(answer, Exception):
                raise answer
            return answer
        return False


def _with_clock(predicate, clock):
    predicate._sleep = clock.sleep
    predicate._now = clock.time
    return predicate


class RetryableNumTimesPredicateTests(unittest.TestCase):

    def _offsets_ms(self, calls):
        return [(t - calls[0]) * 1000.0 for t in calls]

    def test_backoff_growth(self):
        p = RecordingPredicate()
        retryable = RetryableNumTimesPredicate(p, 3, period=1, unit=cloudexec.SECONDS)
        rc = retryable.apply("x")
        self.assertFalse(rc)
        self.assertEqual(len(p.calls), 3)
        offsets = self._offsets_ms(p.calls)
        for (got, expected) in zip(offsets, [0, 1000, 2500]):
            self.assertTrue(abs(got - expected) <= 250, "attempt at %d ms, expected %d ms" % (got, expected))

    def test_backoff_capped(self):
        p = RecordingPredicate()
        retryable = RetryableNumTimesPredicate(p, 3, period=1, max_period=1, unit=cloudexec.SECONDS)
        rc = retryable.apply("x")
        self.assertFalse(rc)
        offsets = self._offsets_ms(p.calls)
        for (got, expected) in zip(offsets, [0, 1000, 2000]):
            self.assertTrue(abs(got - expected) <= 250, "attempt at %d ms, expected %d ms" % (got, expected))

    def test_immediate_success(self):
        p = RecordingPredicate(answers=[True])
        clock = FakeClock()
        retryable = _with_clock(RetryableNumTimesPredicate(p, 3, period=1), clock)
        self.assertTrue(retryable.apply("x"))
        self.assertEqual(len(p.calls), 1)
        self.assertEqual(clock.sleeps, [])

    def test_delays_in_milliseconds(self):
        p = RecordingPredicate()
        clock = FakeClock()
        retryable = _with_clock(RetryableNumTimesPredicate(p, 4, period=100, unit=cloudexec.MILLISECONDS), clock)
        self.assertFalse(retryable.apply("x"))
        self.assertEqual(len(p.calls), 4)
        self.assertEqual(len(clock.sleeps), 3)
        for (got, expected) in zip(clock.sleeps, [0.1, 0.15, 0.225]):
            self.assertAlmostEqual(got, expected)

    def test_transient_counts_as_false(self):
        p = RecordingPredicate(answers=[IllegalStateException("not yet"), TimeoutException("still not"), True])
        retryable = _with_clock(RetryableNumTimesPredicate(p, 5, period=1), FakeClock())
        self.assertTrue(retryable.apply("x"))
        self.assertEqual(len(p.calls), 3)

    def test_transient_exhausts(self):
        p = RecordingPredicate(answers=[concurrent.futures.TimeoutError()] * 3)
        retryable = _with_clock(RetryableNumTimesPredicate(p, 3, period=1), FakeClock())
        self.assertFalse(retryable.apply("x"))
        self.assertEqual(len(p.calls), 3)

    def test_other_exception_wrapped(self):
        err = ValueError("broken")
        p = RecordingPredicate(answers=[False, err, True])
        retryable = _with_clock(RetryableNumTimesPredicate(p, 5, period=1), FakeClock())
        try:
            retryable.apply("x")
            self.fail("the predicate error should have been raised")
        except PredicateException as ex:
            self.assertTrue(ex.__cause__ is err)
            self.assertTrue(ex.get_base_exception() is err)
        self.assertEqual(len(p.calls), 2)

    def test_error_while_handling_transient_wrapped(self):
        try:
            try:
                raise TimeoutException("slow")
            except TimeoutException:
                raise KeyError("bug in the handler")
        except KeyError as ex:
            raised = ex
        p = RecordingPredicate(answers=[raised, True])
        retryable = _with_clock(RetryableNumTimesPredicate(p, 3, period=1), FakeClock())
        try:
            retryable.apply("x")
            self.fail("the predicate error should have been raised")
        except PredicateException as ex:
            self.assertTrue(ex.__cause__ is raised)
        self.assertEqual(len(p.calls), 1)

    def test_units(self):
        retryable = RetryableNumTimesPredicate(RecordingPredicate(), 3, period=2, unit=cloudexec.MINUTES)
        self.assertEqual(retryable.get_max_attempts(), 3)
        self.assertEqual(retryable.get_period(), 120.0)
        self.assertEqual(retryable.get_max_period(), 1200.0)
        retryable = RetryablePredicate(RecordingPredicate(), 500, period=10, max_period=40, unit=cloudexec.MILLISECONDS)
        self.assertAlmostEqual(retryable.get_max_wait(), 0.5)
        self.assertAlmostEqual(retryable.get_max_period(), 0.04)

    def test_bad_arguments(self):
        p = RecordingPredicate()
        self.assertRaises(APIUsageException, RetryableNumTimesPredicate, p, 0)
        self.assertRaises(APIUsageException, RetryableNumTimesPredicate, p, 3, period=0)
        self.assertRaises(APIUsageException, RetryableNumTimesPredicate, p, 3, period=2, max_period=1)


class RetryablePredicateTests(unittest.TestCase):

    def test_sleeps_clipped_to_deadline(self):
        clock = FakeClock()
        p = RecordingPredicate(clock=clock)
        retryable = _with_clock(RetryablePredicate(p, 10, period=1), clock)
        self.assertFalse(retryable.apply("x"))
        expected = [1, 1.5, 2.25, 3.375, 1.875]
        self.assertEqual(len(clock.sleeps), len(expected))
        for (got, want) in zip(clock.sleeps, expected):
            self.assertAlmostEqual(got, want)
        self.assertEqual(p.calls, [0.0, 1.0, 2.5, 4.75, 8.125])

    def test_max_period(self):
        clock = FakeClock()
        p = RecordingPredicate(clock=clock)
        retryable = _with_clock(RetryablePredicate(p, 10, period=1, max_period=2), clock)
        self.assertFalse(retryable.apply("x"))
        for (got, want) in zip(clock.sleeps, [1, 1.5, 2, 2, 2, 1.5]):
            self.assertAlmostEqual(got, want)
        self.assertEqual(len(p.calls), 6)

    def test_no_attempt_after_deadline(self):
        clock = FakeClock()
        p = RecordingPredicate(clock=clock)
        retryable = _with_clock(RetryablePredicate(p, 10, period=1), clock)
        retryable.apply("x")
        self.assertTrue(max(p.calls) < 10)
        self.assertAlmostEqual(clock.now, 10)

    def test_immediate_success(self):
        clock = FakeClock()
        p = RecordingPredicate(answers=[True], clock=clock)
        retryable = _with_clock(RetryablePredicate(p, 10, period=1), clock)
        self.assertTrue(retryable.apply("x"))
        self.assertEqual(clock.sleeps, [])

    def test_success_later(self):
        clock = FakeClock()
        p = RecordingPredicate(answers=[False, False, True], clock=clock)
        retryable = _with_clock(RetryablePredicate(p, 10, period=1), clock)
        self.assertTrue(retryable(("host", 22)))
        self.assertEqual(len(p.calls), 3)

    def test_zero_wait(self):
        clock = FakeClock()
        p = RecordingPredicate(clock=clock)
        retryable = _with_clock(RetryablePredicate(p, 0, period=1), clock)
        self.assertFalse(retryable.apply("x"))
        self.assertEqual(len(p.calls), 1)

    def test_transient_returns_false(self):
        p = RecordingPredicate(answers=[ExecutionException(Exception("not done"))])
        retryable = _with_clock(RetryablePredicate(p, 10, period=1), FakeClock())
        self.assertFalse(retryable.apply("x"))

    def test_transient_cause_returns_false(self):
        try:
            try:
                raise TimeoutException("slow")
            except TimeoutException as cause:
                raise ValueError("wrapped") from cause
        except ValueError as ex:
            wrapped = ex
        p = RecordingPredicate(answers=[wrapped])
        retryable = _with_clock(RetryablePredicate(p, 10, period=1), FakeClock())
        self.assertFalse(retryable.apply("x"))

    def test_error_while_handling_transient_propagates(self):
        try:
            try:
                raise TimeoutException("slow")
            except TimeoutException:
                raise KeyError("bug in the handler")
        except KeyError as ex:
            raised = ex
        self.assertTrue(isinstance(raised.__context__, TimeoutException))
        p = RecordingPredicate(answers=[raised])
        retryable = _with_clock(RetryablePredicate(p, 10, period=1), FakeClock())
        self.assertRaises(KeyError, retryable.apply, "x")
        self.assertEqual(len(p.calls), 1)

    def test_other_exception_propagates(self):
        p = RecordingPredicate(answers=[KeyError("nope")])
        retryable = _with_clock(RetryablePredicate(p, 10, period=1), FakeClock())
        self.assertRaises(KeyError, retryable.apply, "x")

    def test_real_clock(self):
        p = RecordingPredicate()
        retryable = RetryablePredicate(p, 300, period=50, unit=cloudexec.MILLISECONDS)
        start = time.monotonic()
        self.assertFalse(retryable.apply("x"))
        elapsed = time.monotonic() - start
        self.assertTrue(elapsed >= 0.29, "returned after %f seconds" % (elapsed))
        self.assertTrue(elapsed < 1.0, "returned after %f seconds" % (elapsed))
        self.assertTrue(len(p.calls) >= 3)


class SocketOpenTests(unittest.TestCase):

    def test_open_port(self):
        s = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        try:
            s.bind(("127.0.0.1", 0))
            s.listen(1)
            port = s.getsockname()[1]
            self.assertTrue(SocketOpen(timeout=2).apply(("127.0.0.1", port)))
        finally:
            s.close()

    def test_closed_port(self):
        s = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        s.bind(("127.0.0.1", 0))
        port = s.getsockname()[1]
        s.close()
        self.assertFalse(SocketOpen(timeout=2).apply(("127.0.0.1", port)))


if __name__ == '__main__':
    unittest.main()
