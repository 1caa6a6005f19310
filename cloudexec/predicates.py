"""
This file contains the retry engine used to wait on asynchronous cloud operations.  A retryable predicate
wraps a plain condition (any callable taking one value and returning True or False) and keeps calling it,
sleeping a little longer between each call, until it answers True or its budget runs out.

Two budgets are available.  RetryablePredicate is bounded by wall clock time, RetryableNumTimesPredicate
by the number of times the condition is called.  Both sleep on the calling thread; no scheduler is
involved.  Giving up is reported by returning False, never by raising.
"""
import concurrent.futures
import logging
import socket
import time
import traceback

import cloudexec
from cloudexec.exceptions import APIUsageException, CommandCancelledException, ExecutionException, \
    IllegalStateException, PredicateException, TimeoutException, get_first_throwable_of_type

BACKOFF_FACTOR = 1.5
DEFAULT_MAX_PERIOD_FACTOR = 10

# errors raised by a condition that mean "not yet" rather than "broken"
TRANSIENT_EXCEPTIONS = (
    IllegalStateException,
    ExecutionException,
    TimeoutException,
    CommandCancelledException,
    concurrent.futures.TimeoutError,
    concurrent.futures.CancelledError,
)


def find_transient_cause(ex):
    return get_first_throwable_of_type(ex, TRANSIENT_EXCEPTIONS)


class _BackoffPredicate(object):

    def __init__(self, predicate, period, max_period, unit, log):
        if period is None or period <= 0:
            raise APIUsageException("the retry period must be a positive number")
        if max_period is None:
            max_period = period * DEFAULT_MAX_PERIOD_FACTOR
        if max_period < period:
            raise APIUsageException("the maximum period %s is smaller than the period %s" % (str(max_period), str(period)))
        self._predicate = predicate
        self._period = period * unit
        self._max_period = max_period * unit
        self._log = log

    def __call__(self, value):
        return self.apply(value)

    def get_period(self):
        return self._period

    def get_max_period(self):
        return self._max_period

    def next_period(self, attempt):
        """the delay in seconds to wait after the given (1 based) attempt failed"""
        period = self._period * (BACKOFF_FACTOR ** (attempt - 1))
        if period > self._max_period:
            period = self._max_period
        return period

    def _sleep(self, seconds):
        time.sleep(seconds)

    def _now(self):
        return time.monotonic()

    def __str__(self):
        return "%s(%s)" % (self.__class__.__name__, str(self._predicate))


class RetryablePredicate(_BackoffPredicate):
    """
    Retry a condition until it is True or max_wait has elapsed.  The delay between calls starts at period
    and grows by half each time, never past max_period (10 times the period unless given).  No call is
    started after the deadline, but a call in progress is never interrupted, so a slow condition can
    overshoot the budget.
    """

    def __init__(self, predicate, max_wait, period=1, max_period=None, unit=cloudexec.SECONDS, log=logging):
        _BackoffPredicate.__init__(self, predicate, period, max_period, unit, log)
        if max_wait is None or max_wait < 0:
            raise APIUsageException("max_wait must be a non negative number")
        self._max_wait = max_wait * unit

    def get_max_wait(self):
        return self._max_wait

    def apply(self, value):
        end = self._now() + self._max_wait
        attempt = 1
        try:
            while True:
                if self._predicate(value):
                    return True
                now = self._now()
                if now >= end:
                    return False
                delay = self.next_period(attempt)
                remaining = end - now
                if delay > remaining:
                    delay = remaining
                self._sleep(delay)
                attempt = attempt + 1
                if self._now() >= end:
                    return False
        except Exception as ex:
            cause = find_transient_cause(ex)
            if cause is None:
                raise
            cloudexec.log(self._log, logging.WARN, "predicate %s on %s failed with %s, returning false" % (str(self._predicate), str(value), str(cause)))
            return False


class RetryableNumTimesPredicate(_BackoffPredicate):
    """
    Retry a condition at most max_attempts times.  Transient errors count as a False answer; any
    other error is wrapped in a PredicateException and stops the retries.
    """

    def __init__(self, predicate, max_attempts, period=1, max_period=None, unit=cloudexec.SECONDS, log=logging):
        _BackoffPredicate.__init__(self, predicate, period, max_period, unit, log)
        if max_attempts is None or max_attempts < 1:
            raise APIUsageException("max_attempts must be at least 1")
        self._max_attempts = max_attempts

    def get_max_attempts(self):
        return self._max_attempts

    def apply(self, value):
        rc = False
        for attempt in range(1, self._max_attempts + 1):
            rc = self._attempt(value, attempt)
            if rc:
                return True
            if attempt < self._max_attempts:
                self._sleep(self.next_period(attempt))
        return rc

    def _attempt(self, value, attempt):
        try:
            return bool(self._predicate(value))
        except Exception as ex:
            cause = find_transient_cause(ex)
            if cause is None:
                cloudexec.log(self._log, logging.ERROR, "predicate %s on %s failed on attempt %d" % (str(self._predicate), str(value), attempt), tb=traceback)
                raise PredicateException(self._predicate, ex) from ex
            cloudexec.log(self._log, logging.INFO, "Retry %d/%d for %s: %s" % (attempt, self._max_attempts, str(value), str(cause)))
            return False


class SocketOpen(object):
    """
    Answers whether a TCP connection can be made to a (host, port) pair.  Wrap it in a RetryablePredicate
    to wait for a freshly booted VM to start listening.
    """

    def __init__(self, timeout=10.0, log=logging):
        self._timeout = timeout
        self._log = log

    def __call__(self, address):
        return self.apply(address)

    def apply(self, address):
        (host, port) = address
        s = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        s.settimeout(self._timeout)
        try:
            cloudexec.log(self._log, logging.DEBUG, "Attempting to connect to %s:%d" % (host, port))
            s.connect((host, port))
            return True
        except (socket.error, socket.timeout) as ex:
            cloudexec.log(self._log, logging.DEBUG, "%s:%d is not open yet: %s" % (host, port, str(ex)))
            return False
        finally:
            s.close()

    def __str__(self):
        return "SocketOpen(timeout=%s)" % (str(self._timeout))
