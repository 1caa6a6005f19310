"""
Per endpoint connection pools.  A pool hands out connection handles; a handle binds one command to one
connection for a single exchange and gives the connection back (release) or throws it away (cancel)
when the exchange ends.

The number of live connections is limited by a bounded semaphore.  Idle connections wait on a queue.
A released connection keeps its permit and goes back on the idle queue; a cancelled one gives its
permit back so a fresh connection can be opened in its place.
"""
import logging
import queue
import threading
import traceback
from concurrent.futures import ThreadPoolExecutor
from urllib.parse import urljoin

from libcloud.http import LibcloudConnection

import cloudexec
from cloudexec.exceptions import APIUsageException, CommandCancelledException, PoolUnavailableException, TimeoutException
from cloudexec.httpcommand import HttpResponse
from cloudexec.lifecycle import BaseLifeCycle

handle_state_bound = "bound"
handle_state_completed = "completed"
handle_state_cancelled = "cancelled"


class HttpCommandConnectionHandle(object):

    def __init__(self, pool, rendezvous, connection, log=logging):
        self._pool = pool
        self._rendezvous = rendezvous
        self._connection = connection
        self._log = log
        self._state = handle_state_bound
        self._lock = threading.Lock()
        self._done = threading.Event()

    def get_rendezvous(self):
        return self._rendezvous

    def get_command(self):
        rendezvous = self._rendezvous
        if rendezvous is None:
            return None
        return rendezvous.get_command()

    def get_connection(self):
        return self._connection

    def get_state(self):
        return self._state

    def start_connection(self):
        raise NotImplementedError("subclasses of HttpCommandConnectionHandle must implement start_connection")

    def _finish(self, state):
        with self._lock:
            if self._state != handle_state_bound:
                return (False, None)
            self._state = state
            connection = self._connection
            self._connection = None
            self._rendezvous = None
        return (True, connection)

    def release(self):
        """Give the connection back to the pool for reuse.  A no-op once the handle is complete."""
        (finished, connection) = self._finish(handle_state_completed)
        if not finished:
            return False
        try:
            self._pool.release_connection(connection)
        finally:
            self._pool.handle_done(self)
            self._done.set()
        return True

    def cancel(self):
        """Close the connection and free its slot in the pool.  A no-op once the handle is complete."""
        (finished, connection) = self._finish(handle_state_cancelled)
        if not finished:
            return False
        try:
            self._pool.shutdown_connection(connection)
        except Exception as ex:
            cloudexec.log(self._log, logging.WARN, "error closing connection to %s: %s" % (self._pool.endpoint, str(ex)))
        finally:
            self._pool.all_connections.release()
            self._pool.handle_done(self)
            self._done.set()
        return True

    def is_completed(self):
        return self._state != handle_state_bound

    def wait_for(self, timeout=None):
        return self._done.wait(timeout)

    def __str__(self):
        return "handle[%s, %s]" % (self._pool.endpoint, self._state)


class HttpCommandConnectionPool(BaseLifeCycle):

    def __init__(self, endpoint, max_connections=cloudexec.DEFAULT_MAX_CONNECTIONS_PER_HOST, log=logging):
        BaseLifeCycle.__init__(self, worker_count=0, name="pool %s" % (endpoint), log=log)
        if max_connections < 1:
            raise APIUsageException("a pool needs at least one connection")
        self.endpoint = endpoint
        self._max_connections = max_connections
        self.all_connections = threading.BoundedSemaphore(max_connections)
        self.available = queue.Queue()
        self._handles = set()
        self._handles_lock = threading.Lock()

    def get_max_connections(self):
        return self._max_connections

    def get_handles(self):
        with self._handles_lock:
            return list(self._handles)

    def get_handle(self, rendezvous, timeout=cloudexec.DEFAULT_CONNECTION_TIMEOUT):
        while True:
            status = self.get_status()
            if status != cloudexec.status_active:
                raise PoolUnavailableException(self.endpoint, status)
            connection = self._get_connection(timeout)
            if self.connection_valid(connection):
                break
            cloudexec.log(self._log, logging.INFO, "discarding an invalid connection to %s" % (self.endpoint))
            try:
                self.shutdown_connection(connection)
            finally:
                self.all_connections.release()

        handle = self.create_handle(rendezvous, connection)
        with self._handles_lock:
            self._handles.add(handle)
        return handle

    def _get_connection(self, timeout):
        try:
            return self.available.get_nowait()
        except queue.Empty:
            pass
        if self.all_connections.acquire(blocking=False):
            try:
                return self.create_connection()
            except Exception:
                self.all_connections.release()
                raise
        try:
            return self.available.get(timeout=timeout)
        except queue.Empty:
            cloudexec.log(self._log, logging.WARN, "saturated connection pool %s, %d connections in use" % (self.endpoint, self._max_connections))
            raise TimeoutException("no connection to %s became available in %s seconds" % (self.endpoint, str(timeout)))

    def release_connection(self, connection):
        if self.get_status() == cloudexec.status_active:
            self.available.put(connection)
            return
        try:
            self.shutdown_connection(connection)
        finally:
            self.all_connections.release()

    def handle_done(self, handle):
        with self._handles_lock:
            self._handles.discard(handle)

    def do_shutdown(self):
        while True:
            try:
                connection = self.available.get_nowait()
            except queue.Empty:
                break
            try:
                self.shutdown_connection(connection)
            except Exception as ex:
                cloudexec.log(self._log, logging.WARN, "error closing idle connection to %s: %s" % (self.endpoint, str(ex)))
            finally:
                self.all_connections.release()

        for handle in self.get_handles():
            rendezvous = handle.get_rendezvous()
            if handle.cancel() and rendezvous is not None:
                rendezvous.set_exception(CommandCancelledException("the connection pool for %s was shut down" % (self.endpoint)))

    def create_connection(self):
        raise NotImplementedError("subclasses of HttpCommandConnectionPool must implement create_connection")

    def connection_valid(self, connection):
        raise NotImplementedError("subclasses of HttpCommandConnectionPool must implement connection_valid")

    def shutdown_connection(self, connection):
        raise NotImplementedError("subclasses of HttpCommandConnectionPool must implement shutdown_connection")

    def create_handle(self, rendezvous, connection):
        raise NotImplementedError("subclasses of HttpCommandConnectionPool must implement create_handle")


class NoRedirectLibcloudConnection(LibcloudConnection):
    """
    A libcloud connection that hands 3xx responses back instead of following them, so the retry
    handlers decide where a redirected command goes.
    """

    def request(self, method, url, body=None, headers=None, raw=False, stream=False, hooks=None):
        url = urljoin(self.host, url)
        headers = self._normalize_headers(headers=headers)
        self.response = self.session.request(
            method=method.lower(),
            url=url,
            data=body,
            headers=headers,
            allow_redirects=False,
            stream=stream,
            verify=self.verification,
            timeout=self.session.timeout,
            hooks=hooks,
        )


class LibcloudConnectionHandle(HttpCommandConnectionHandle):

    def start_connection(self):
        self._pool.submit_exchange(self._exchange)

    def _exchange(self):
        rendezvous = self.get_rendezvous()
        connection = self.get_connection()
        if rendezvous is None or connection is None:
            # cancelled before the exchange got a thread
            return
        request = rendezvous.get_command().get_current_request()
        try:
            cloudexec.log(self._log, logging.DEBUG, "Sending request %s" % (str(request)))
            connection.request(request.method, request.get_path_and_query(), body=request.payload, headers=request.headers)
            raw = connection.getresponse()
            response = HttpResponse(raw.status_code, raw.reason, dict(raw.headers), raw.content)
            cloudexec.log(self._log, logging.DEBUG, "Received response %s for %s" % (str(response), str(request)))
        except Exception as ex:
            cloudexec.log(self._log, logging.WARN, "exchange %s failed: %s" % (str(request), str(ex)), tb=traceback)
            self.cancel()
            rendezvous.complete(None, ex)
            return
        self.release()
        rendezvous.complete(response, None)


class LibcloudConnectionPool(HttpCommandConnectionPool):

    def __init__(self, endpoint, max_connections=cloudexec.DEFAULT_MAX_CONNECTIONS_PER_HOST, io_timeout=cloudexec.DEFAULT_IO_TIMEOUT, log=logging):
        HttpCommandConnectionPool.__init__(self, endpoint, max_connections=max_connections, log=log)
        (scheme, host, port, path) = cloudexec.parse_url(endpoint)
        self._secure = scheme == "https"
        if port is None:
            if self._secure:
                port = 443
            else:
                port = 80
        self._host = host
        self._port = port
        self._io_timeout = io_timeout
        self._io_executor = ThreadPoolExecutor(max_workers=max_connections, thread_name_prefix="cloudexec-io-%s" % (host))

    def create_connection(self):
        cloudexec.log(self._log, logging.DEBUG, "opening a connection to %s" % (self.endpoint))
        return NoRedirectLibcloudConnection(self._host, self._port, secure=self._secure, timeout=self._io_timeout)

    def connection_valid(self, connection):
        # requests reconnects a dropped socket on the next exchange
        return connection is not None

    def shutdown_connection(self, connection):
        if getattr(connection, "response", None) is not None:
            connection.close()
        connection.session.close()

    def create_handle(self, rendezvous, connection):
        return LibcloudConnectionHandle(self, rendezvous, connection, log=self._log)

    def submit_exchange(self, exchange):
        return self._io_executor.submit(exchange)

    def do_shutdown(self):
        HttpCommandConnectionPool.do_shutdown(self)
        self._io_executor.shutdown(wait=False)


def libcloud_pool_factory(settings, log=logging):
    def factory(endpoint):
        return LibcloudConnectionPool(endpoint, max_connections=settings.max_connections_per_host, io_timeout=settings.io_timeout, log=log)
    return factory
