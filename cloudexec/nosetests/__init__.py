import logging
import threading

from cloudexec.httpcommand import HttpResponse
from cloudexec.pool import HttpCommandConnectionHandle, HttpCommandConnectionPool


def ok_responder(request):
    return HttpResponse(200, "OK", {"Content-Type": "text/plain"}, b"ok")


class FakeConnection(object):
    def __init__(self, ndx):
        self.ndx = ndx
        self.valid = True
        self.closed = False


class FakeConnectionHandle(HttpCommandConnectionHandle):
    """Runs the exchange on the calling thread by asking the pool's responder for a response."""

    def start_connection(self):
        if self._pool.hold:
            self._pool.held.append(self)
            return
        self.finish_exchange()

    def finish_exchange(self):
        rendezvous = self.get_rendezvous()
        if rendezvous is None:
            return
        request = rendezvous.get_command().get_current_request()
        self._pool.requests.append(request)
        try:
            response = self._pool.responder(request)
        except Exception as ex:
            self.cancel()
            rendezvous.complete(None, ex)
            return
        self.release()
        rendezvous.complete(response, None)


class FakeConnectionPool(HttpCommandConnectionPool):

    def __init__(self, endpoint, responder=ok_responder, max_connections=2, hold=False, log=logging):
        HttpCommandConnectionPool.__init__(self, endpoint, max_connections=max_connections, log=log)
        self.responder = responder
        self.hold = hold
        self.held = []
        self.requests = []
        self.created = 0
        self.closed = []
        self.shutdown_calls = 0

    def create_connection(self):
        self.created = self.created + 1
        return FakeConnection(self.created)

    def connection_valid(self, connection):
        return connection.valid

    def shutdown_connection(self, connection):
        connection.closed = True
        self.closed.append(connection)

    def create_handle(self, rendezvous, connection):
        return FakeConnectionHandle(self, rendezvous, connection)

    def shutdown(self, wait=None):
        self.shutdown_calls = self.shutdown_calls + 1
        return HttpCommandConnectionPool.shutdown(self, wait)


class BrokenConnectionPool(FakeConnectionPool):

    def get_handle(self, rendezvous, timeout=None):
        raise RuntimeError("the connection factory for %s is broken" % (self.endpoint))


class PoolFactory(object):
    """Hands out the given pools in order, then fresh FakeConnectionPools using responder."""

    def __init__(self, pools=None, responder=ok_responder, hold=False):
        self._pools = list(pools or [])
        self._responder = responder
        self._hold = hold
        self._lock = threading.Lock()
        self.created = []

    def __call__(self, endpoint):
        with self._lock:
            if self._pools:
                pool = self._pools.pop(0)
            else:
                pool = FakeConnectionPool(endpoint, responder=self._responder, hold=self._hold)
            self.created.append(pool)
            return pool


class SequenceResponder(object):
    """Answers with the given responses (or raises the given exceptions) in order, repeating the last."""

    def __init__(self, answers):
        self._answers = list(answers)
        self._lock = threading.Lock()
        self.calls = 0

    def __call__(self, request):
        with self._lock:
            ndx = min(self.calls, len(self._answers) - 1)
            self.calls = self.calls + 1
        answer = self._answers[ndx]
        if isinstance(answer, Exception):
            raise answer
        if callable(answer):
            return answer(request)
        return answer
