import sys
import traceback


class CloudExecException(Exception):
    def __init__(self, ex):
        Exception.__init__(self, ex)
        self._base_ex = ex
        exc_type, exc_value, exc_traceback = sys.exc_info()
        self._base_stack = traceback.format_tb(exc_traceback)

    def __str__(self):
        return str(self._base_ex)

    def get_stack(self):
        return str(self._base_stack)

    def get_base_exception(self):
        return self._base_ex


class APIUsageException(Exception):
    def __init__(self, msg):
        Exception.__init__(self, msg)


class TimeoutException(Exception):
    def __init__(self, msg):
        Exception.__init__(self, msg)


class IllegalStateException(Exception):
    def __init__(self, msg):
        Exception.__init__(self, msg)


class ExecutionException(CloudExecException):
    def __init__(self, ex):
        CloudExecException.__init__(self, ex)


class ConfigException(Exception):
    def __init__(self, msg, ex=None):
        Exception.__init__(self, msg)
        self._source_ex = ex


class CommandCancelledException(Exception):
    def __init__(self, msg):
        Exception.__init__(self, msg)


class PoolUnavailableException(IllegalStateException):
    def __init__(self, endpoint, status):
        IllegalStateException.__init__(self, "The connection pool for %s is not available: %s" % (endpoint, status))
        self.endpoint = endpoint
        self.status = status


class PredicateException(CloudExecException):
    def __init__(self, predicate, ex):
        CloudExecException.__init__(self, ex)
        self.predicate = predicate

    def __str__(self):
        return "predicate %s failed: %s" % (str(self.predicate), str(self._base_ex))


class HttpResponseException(Exception):
    def __init__(self, command, response, msg=None):
        if msg is None:
            msg = "request: %s failed with response: %s" % (str(command.get_current_request()), str(response))
        Exception.__init__(self, msg)
        self.command = command
        self.response = response

    def get_status(self):
        if self.response is None:
            return None
        return self.response.status


class RetryExhaustedError(AssertionError):
    def __init__(self, msg):
        AssertionError.__init__(self, msg)


def get_causal_chain(ex):
    chain = []
    seen = set()
    while ex is not None and id(ex) not in seen:
        chain.append(ex)
        seen.add(id(ex))
        if isinstance(ex, CloudExecException) and isinstance(ex.get_base_exception(), BaseException):
            ex = ex.get_base_exception()
        else:
            # explicit causes only; __context__ is whatever was being handled when ex was raised
            ex = ex.__cause__
    return chain


def get_first_throwable_of_type(ex, types):
    for e in get_causal_chain(ex):
        if isinstance(e, types):
            return e
    return None
