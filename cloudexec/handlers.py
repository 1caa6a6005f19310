"""
Retry handlers decide what happens to a command whose exchange did not end in success.  The executor
asks each handler of a RetryHandlerChain in order; a handler answers retry, no_retry, or defer to let
the next handler decide.  Nobody deciding means the failure is surfaced to the caller.

Handlers never touch the command.  A retry answer carries the request to send next (when it changes)
and whether it counts as a redirect or as a failure; the executor applies it to the command.
"""
import logging
import time
import xml.etree.ElementTree as ElementTree

import simplejson as json

import cloudexec
from cloudexec.httpcommand import replace_host, resolve_location


class RetryDecision(object):

    def __init__(self, action, request=None, redirect=False):
        self.action = action
        self.request = request
        self.redirect = redirect

    def is_retry(self):
        return self.action == cloudexec.retry_action_retry

    def is_defer(self):
        return self.action == cloudexec.retry_action_defer

    def __repr__(self):
        return "RetryDecision(%s, request=%s, redirect=%s)" % (self.action, str(self.request), str(self.redirect))


def retry_decision(request=None, redirect=False):
    return RetryDecision(cloudexec.retry_action_retry, request=request, redirect=redirect)


NO_RETRY = RetryDecision(cloudexec.retry_action_no_retry)
DEFER = RetryDecision(cloudexec.retry_action_defer)


class VendorError(object):

    def __init__(self, code, message=None, details=None):
        self.code = code
        self.message = message
        self.details = details or {}

    def __str__(self):
        return "%s: %s" % (self.code, self.message)


def _vendor_error_from_dict(doc):
    for key in ("Error", "error"):
        if isinstance(doc.get(key), dict):
            doc = doc[key]
            break
    details = {}
    for (key, value) in doc.items():
        if isinstance(value, (str, int, float)):
            details[key[:1].upper() + key[1:]] = str(value)
    code = details.get("Code")
    if code is None:
        return None
    return VendorError(code, details.get("Message"), details)


def _vendor_error_from_xml(text):
    root = ElementTree.fromstring(text)
    if root.tag != "Error":
        root = root.find(".//Error")
        if root is None:
            return None
    details = {}
    for child in root:
        details[child.tag] = (child.text or "").strip()
    code = details.get("Code")
    if not code:
        return None
    return VendorError(code, details.get("Message"), details)


def parse_vendor_error(response, log=logging):
    """
    Read the error document most cloud APIs put in the body of a failed response.  Both the XML
    flavor (<Error><Code/><Message/>...</Error>) and the JSON flavor are understood.  Returns None
    when there is no body or it does not describe an error.
    """
    text = response.get_payload_text()
    if not text or not text.strip():
        return None
    text = text.strip()
    try:
        if text.startswith("<"):
            return _vendor_error_from_xml(text.encode("utf8"))
        doc = json.loads(text)
        if not isinstance(doc, dict):
            return None
        return _vendor_error_from_dict(doc)
    except (ElementTree.ParseError, json.JSONDecodeError) as ex:
        cloudexec.log(log, logging.DEBUG, "could not parse an error from %s: %s" % (str(response), str(ex)))
        return None


class BackoffLimitedRetryHandler(object):
    """
    The generic handler: retries server errors (5xx) and I/O errors of replayable commands, sleeping
    delay_start * failures^2 milliseconds (at most 10 times delay_start) before each retry, until the
    command failed more than max_retries times.  Other handlers reuse retry_with_backoff().
    """

    def __init__(self, max_retries=cloudexec.DEFAULT_MAX_RETRIES, delay_start=cloudexec.DEFAULT_RETRY_DELAY_START, log=logging):
        self._max_retries = max_retries
        self._delay_start = delay_start
        self._log = log

    def get_max_retries(self):
        return self._max_retries

    def should_retry(self, command, response, context, error=None):
        if error is not None:
            return self.retry_with_backoff(command, context, "i/o error %s" % (str(error)))
        if response is not None and response.status >= 500:
            return self.retry_with_backoff(command, context, "server error %s" % (str(response)))
        return DEFER

    def retry_with_backoff(self, command, context, description):
        failures = context.failure_count + 1
        if not command.is_replayable():
            cloudexec.log(self._log, logging.ERROR, "Cannot retry after %s, command is not replayable: %s" % (description, str(command)))
            return NO_RETRY
        if failures > self._max_retries:
            cloudexec.log(self._log, logging.ERROR, "Cannot retry after %s, command has exceeded retry limit %d: %s" % (description, self._max_retries, str(command)))
            return NO_RETRY
        self.impose_backoff_exponential_delay(failures, "%s: %s" % (description, str(command)))
        return retry_decision()

    def impose_backoff_exponential_delay(self, failure_count, description, pow=2):
        delay = self._delay_start * (failure_count ** pow)
        max_delay = self._delay_start * 10
        if delay > max_delay:
            delay = max_delay
        cloudexec.log(self._log, logging.DEBUG, "Retry %d/%d: delaying for %d ms: %s" % (failure_count, self._max_retries, delay, description))
        self._sleep(delay * cloudexec.MILLISECONDS)

    def _sleep(self, seconds):
        time.sleep(seconds)


class RedirectionRetryHandler(object):
    """Follows 3xx responses that carry a Location header, up to max_retries redirects."""

    def __init__(self, max_retries=cloudexec.DEFAULT_MAX_RETRIES, log=logging):
        self._max_retries = max_retries
        self._log = log

    def should_retry(self, command, response, context, error=None):
        if response is None or response.status not in cloudexec.REDIRECT_CODES:
            return DEFER
        location = response.get_first_header_or_none("Location")
        if not location:
            return DEFER
        if not command.is_replayable():
            cloudexec.log(self._log, logging.ERROR, "Cannot retry after redirect, command is not replayable: %s" % (str(command)))
            return NO_RETRY
        if context.redirect_count + 1 > self._max_retries:
            cloudexec.log(self._log, logging.ERROR, "Cannot follow redirect to %s, command has exceeded redirect limit %d: %s" % (location, self._max_retries, str(command)))
            return NO_RETRY

        current = command.get_current_request()
        target = resolve_location(current.endpoint, location)
        if target == current.endpoint:
            cloudexec.log(self._log, logging.WARN, "%s redirected to itself, not retrying" % (str(current)))
            return NO_RETRY
        request = current.with_endpoint(target)
        if response.status == 303 and current.method != "HEAD":
            request = request.with_method("GET", keep_payload=False)
        cloudexec.log(self._log, logging.DEBUG, "Redirecting %s to %s" % (str(current), str(request)))
        return retry_decision(request=request, redirect=True)


class VendorRedirectionRetryHandler(object):
    """
    Some storage APIs answer 301/307 without a Location header when a bucket lives in another region.
    A HEAD request is simply retried as a GET so the error body becomes visible.  Otherwise the
    Endpoint named in the error body replaces the host of the request.
    """

    def __init__(self, backoff_handler, max_retries=cloudexec.DEFAULT_MAX_RETRIES, error_parser=parse_vendor_error, log=logging):
        self._backoff_handler = backoff_handler
        self._max_retries = max_retries
        self._error_parser = error_parser
        self._log = log

    def should_retry(self, command, response, context, error=None):
        if response is None or response.status not in cloudexec.VENDOR_REDIRECT_CODES:
            return DEFER
        if response.get_first_header_or_none("Location") is not None:
            return DEFER
        if context.redirect_count + 1 > self._max_retries:
            cloudexec.log(self._log, logging.ERROR, "Cannot retry after redirect, command has exceeded redirect limit %d: %s" % (self._max_retries, str(command)))
            return NO_RETRY

        current = command.get_current_request()
        if current.method == "HEAD":
            return retry_decision(request=current.with_method("GET"), redirect=True)

        vendor_error = self._error_parser(response)
        host = None
        if vendor_error is not None:
            host = vendor_error.details.get("Endpoint")
        if not host:
            cloudexec.log(self._log, logging.DEBUG, "redirect %s for %s names no endpoint" % (str(response), str(command)))
            return NO_RETRY
        if host == current.get_host():
            # the vendor is still settling on a region, wait and try the same host again
            return self._backoff_handler.retry_with_backoff(command, context, "redirect to the same host %s" % (host))
        request = current.with_endpoint(replace_host(current.endpoint, host))
        cloudexec.log(self._log, logging.DEBUG, "Redirecting %s to host %s" % (str(current), host))
        return retry_decision(request=request, redirect=True)


class ClientErrorRetryHandler(object):
    """Retries 400/403/409 responses whose vendor error code is known to be transient."""

    def __init__(self, backoff_handler, retryable_codes=cloudexec.RETRYABLE_ERROR_CODES, error_parser=parse_vendor_error, log=logging):
        self._backoff_handler = backoff_handler
        self._retryable_codes = frozenset(retryable_codes)
        self._error_parser = error_parser
        self._log = log

    def should_retry(self, command, response, context, error=None):
        if response is None or response.status not in cloudexec.CLIENT_ERROR_RETRY_CODES:
            return DEFER
        # HEAD responses have no body to look at
        if response.payload is None:
            return NO_RETRY
        vendor_error = self._error_parser(response)
        if vendor_error is None or vendor_error.code not in self._retryable_codes:
            return NO_RETRY
        return self._backoff_handler.retry_with_backoff(command, context, "client error %s" % (str(vendor_error)))


class RetryHandlerChain(object):

    def __init__(self, handlers, log=logging):
        self._handlers = list(handlers)
        self._log = log

    def get_handlers(self):
        return list(self._handlers)

    def should_retry(self, command, response, context, error=None):
        for handler in self._handlers:
            decision = handler.should_retry(command, response, context, error=error)
            if not decision.is_defer():
                cloudexec.log(self._log, logging.DEBUG, "%s decided %s for %s" % (handler.__class__.__name__, decision.action, str(command)))
                return decision
        return NO_RETRY


def default_retry_handlers(settings=None, log=logging):
    if settings is None:
        max_retries = cloudexec.DEFAULT_MAX_RETRIES
        delay_start = cloudexec.DEFAULT_RETRY_DELAY_START
    else:
        max_retries = settings.max_retries
        delay_start = settings.retry_delay_start
    backoff = BackoffLimitedRetryHandler(max_retries=max_retries, delay_start=delay_start, log=log)
    handlers = [
        VendorRedirectionRetryHandler(backoff, max_retries=max_retries, log=log),
        RedirectionRetryHandler(max_retries=max_retries, log=log),
        ClientErrorRetryHandler(backoff, log=log),
        backoff,
    ]
    return RetryHandlerChain(handlers, log=log)
