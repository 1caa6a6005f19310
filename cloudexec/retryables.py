import logging

import cloudexec
from cloudexec.exceptions import RetryExhaustedError
from cloudexec.predicates import RetryablePredicate

DEFAULT_RETRY_PERIOD = 50

_NO_RESULT = object()


class PredicateWithResult(object):
    """
    A predicate that remembers what it saw.  After every apply() either the result was updated and the
    last failure cleared, or the last failure was set and the result kept its previous value.  Use
    has_result() to tell "never produced anything" apart from "produced None".
    """

    def __init__(self):
        self._result = _NO_RESULT
        self._last_failure = None

    def __call__(self, input):
        return self.apply(input)

    def apply(self, input):
        raise NotImplementedError("subclasses of PredicateWithResult must implement apply")

    def get_result(self):
        if self._result is _NO_RESULT:
            return None
        return self._result

    def has_result(self):
        return self._result is not _NO_RESULT

    def get_last_failure(self):
        return self._last_failure

    def _set_result(self, result):
        self._result = result
        self._last_failure = None

    def _set_failure(self, ex):
        self._last_failure = ex


class FunctionPredicateWithResult(PredicateWithResult):

    def __init__(self, producer, condition, log=logging):
        PredicateWithResult.__init__(self)
        self._producer = producer
        self._condition = condition
        self._log = log

    def apply(self, input):
        try:
            value = self._producer(input)
        except Exception as ex:
            cloudexec.log(self._log, logging.DEBUG, "producing a value for %s failed: %s" % (str(input), str(ex)))
            self._set_failure(ex)
            return False
        self._set_result(value)
        return bool(self._condition(input, value))

    def __str__(self):
        return "FunctionPredicateWithResult(%s, %s)" % (str(self._producer), str(self._condition))


def retry(predicate, input, max_wait, period=None, unit=cloudexec.MILLISECONDS, log=logging):
    """
    Poll predicate with input until it answers True or max_wait (in unit) elapses.  When predicate is a
    PredicateWithResult, its result and last failure reflect the latest attempt once this returns.
    """
    if period is None:
        period = DEFAULT_RETRY_PERIOD * cloudexec.MILLISECONDS / unit
    retryable = RetryablePredicate(predicate, max_wait, period=period, unit=unit, log=log)
    return retryable.apply(input)


def retry_getting_result_or_failing(predicate, input, max_wait, failure_message, log=logging):
    """
    Assertion helper meant for tests and live checks, not for production error handling.  Waits up to
    max_wait milliseconds for predicate and returns its result, or raises RetryExhaustedError carrying
    failure_message with the predicate's last failure as the cause.
    """
    if retry(predicate, input, max_wait, log=log):
        return predicate.get_result()
    cause = predicate.get_last_failure()
    cloudexec.log(log, logging.DEBUG, "%s (last failure: %s)" % (failure_message, str(cause)))
    raise RetryExhaustedError(failure_message) from cause
