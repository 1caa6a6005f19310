"""
The objects that travel through the executor.  An HttpRequest is the wire request a provider binder
produced, an HttpResponse what came back, and an HttpCommand the request plus its retry bookkeeping
while it is in flight.
"""
from urllib.parse import urljoin, urlparse, urlunparse

from cloudexec.exceptions import APIUsageException, HttpResponseException, get_causal_chain


class HttpRequest(object):

    def __init__(self, method, endpoint, headers=None, payload=None):
        if not method:
            raise APIUsageException("a request needs a method")
        if not endpoint:
            raise APIUsageException("a request needs an endpoint")
        self.method = method.upper()
        self.endpoint = endpoint
        self.headers = dict(headers or {})
        self.payload = payload

    def with_endpoint(self, endpoint):
        return HttpRequest(self.method, endpoint, headers=self.headers, payload=self.payload)

    def with_method(self, method, payload=None, keep_payload=True):
        if keep_payload:
            payload = self.payload
        return HttpRequest(method, self.endpoint, headers=self.headers, payload=payload)

    def get_host(self):
        return urlparse(self.endpoint).hostname

    def get_path_and_query(self):
        parts = urlparse(self.endpoint)
        path = parts.path or "/"
        if parts.query:
            path = path + "?" + parts.query
        return path

    def is_replayable(self):
        return self.payload is None or isinstance(self.payload, (bytes, str))

    def __eq__(self, other):
        if not isinstance(other, HttpRequest):
            return False
        return (self.method, self.endpoint, self.headers, self.payload) == (other.method, other.endpoint, other.headers, other.payload)

    def __ne__(self, other):
        return not self.__eq__(other)

    def __hash__(self):
        return hash((self.method, self.endpoint))

    def __str__(self):
        return "%s %s" % (self.method, self.endpoint)

    def __repr__(self):
        return "HttpRequest(%s %s)" % (self.method, self.endpoint)


class HttpResponse(object):

    def __init__(self, status, message="", headers=None, payload=None):
        self.status = int(status)
        self.message = message
        self.headers = dict(headers or {})
        self.payload = payload

    def get_first_header_or_none(self, name):
        lname = name.lower()
        for (key, value) in self.headers.items():
            if key.lower() == lname:
                return value
        return None

    def get_payload_text(self, encoding="utf8"):
        if self.payload is None:
            return None
        if isinstance(self.payload, bytes):
            return self.payload.decode(encoding, "replace")
        return str(self.payload)

    def is_success(self):
        return self.status < 300

    def __str__(self):
        return "HTTP %d %s" % (self.status, self.message)

    def __repr__(self):
        return "HttpResponse(%d)" % (self.status)


class RetryContext(object):
    """How many times a command has failed and been redirected.  Never modified; the after_ methods
    return the context for the next attempt."""

    __slots__ = ("failure_count", "redirect_count")

    def __init__(self, failure_count=0, redirect_count=0):
        object.__setattr__(self, "failure_count", failure_count)
        object.__setattr__(self, "redirect_count", redirect_count)

    def __setattr__(self, name, value):
        raise AttributeError("RetryContext is immutable")

    def after_failure(self):
        return RetryContext(self.failure_count + 1, self.redirect_count)

    def after_redirect(self):
        return RetryContext(self.failure_count, self.redirect_count + 1)

    def __eq__(self, other):
        if not isinstance(other, RetryContext):
            return False
        return (self.failure_count, self.redirect_count) == (other.failure_count, other.redirect_count)

    def __hash__(self):
        return hash((self.failure_count, self.redirect_count))

    def __repr__(self):
        return "RetryContext(failures=%d, redirects=%d)" % (self.failure_count, self.redirect_count)


class HttpCommand(object):

    def __init__(self, request, context=None):
        self._request = request
        self._original_request = request
        self._context = context or RetryContext()
        self._exception = None

    def get_current_request(self):
        return self._request

    def get_original_request(self):
        return self._original_request

    def get_context(self):
        return self._context

    def get_failure_count(self):
        return self._context.failure_count

    def get_redirect_count(self):
        return self._context.redirect_count

    def is_replayable(self):
        return self._request.is_replayable()

    def prepare_retry(self, decision):
        """Apply an approved retry decision: swap in its request (if any) and advance the context."""
        if decision.request is not None:
            self._request = decision.request
        if decision.redirect:
            self._context = self._context.after_redirect()
        else:
            self._context = self._context.after_failure()

    def get_exception(self):
        return self._exception

    def set_exception(self, ex):
        self._exception = ex

    def __str__(self):
        return "[request=%s, %s]" % (str(self._request), repr(self._context))


def base_endpoint(uri):
    """
    The pool key for a uri: scheme and host, plus the port only when one was given explicitly.  Path
    and query are dropped so every request to a host shares that host's connections.
    """
    parts = urlparse(uri)
    if not parts.scheme or not parts.hostname:
        raise APIUsageException("%s is not an absolute uri with a host" % (uri))
    netloc = parts.hostname
    if parts.port is not None:
        netloc = "%s:%d" % (netloc, parts.port)
    return urlunparse((parts.scheme, netloc, "", "", "", ""))


def replace_host(uri, host):
    parts = urlparse(uri)
    netloc = host
    if parts.port is not None:
        netloc = "%s:%d" % (host, parts.port)
    return urlunparse((parts.scheme, netloc, parts.path, parts.params, parts.query, parts.fragment))


def resolve_location(uri, location):
    return urljoin(uri, location)


def return_value_on_code_or_none(ex, value, code_predicate):
    for e in get_causal_chain(ex):
        if isinstance(e, HttpResponseException):
            if e.response is not None and code_predicate(e.response.status):
                return value
            return None
    return None


def contains_404(ex):
    return return_value_on_code_or_none(ex, True, lambda code: code == 404) is not None
