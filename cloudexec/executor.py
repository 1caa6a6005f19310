"""
The asynchronous command executor.  Callers submit an HttpCommand together with a transformer and get
a future back.  Worker threads take queued commands, find (or lazily create) the connection pool for
the command's endpoint and start the exchange on a pooled connection.  When the exchange ends the
response is either handed to the transformer, retried according to the retry handlers, or turned
into the exception the future raises.

Every submission gets a single slot channel.  A transformer task waits on it in the task thread pool;
whatever ends up in the channel first (a response or an exception) decides the outcome of the future.
"""
import logging
import queue
import threading
import traceback
from concurrent.futures import ThreadPoolExecutor

import cloudexec
from cloudexec.exceptions import APIUsageException, CommandCancelledException, HttpResponseException, \
    PoolUnavailableException, TimeoutException
from cloudexec.global_deps import CloudExecSettings
from cloudexec.handlers import default_retry_handlers
from cloudexec.httpcommand import base_endpoint
from cloudexec.lifecycle import BaseLifeCycle
from cloudexec.pool import libcloud_pool_factory


class HttpCommandRendezvous(object):

    def __init__(self, command, channel, future, completion_cb, log=logging):
        self._command = command
        self._channel = channel
        self._future = future
        self._completion_cb = completion_cb
        self._log = log
        self._delivered = False
        self._lock = threading.Lock()

    def get_command(self):
        return self._command

    def get_future(self):
        return self._future

    def is_delivered(self):
        return self._delivered

    def _deliver(self, value):
        with self._lock:
            if self._delivered:
                cloudexec.log(self._log, logging.DEBUG, "%s already has an outcome, ignoring %s" % (str(self._command), str(value)))
                return False
            self._delivered = True
        self._channel.put_nowait(value)
        return True

    def set_response(self, response):
        return self._deliver(response)

    def set_exception(self, ex):
        return self._deliver(ex)

    def complete(self, response, error):
        """Called by a connection handle when its exchange is over, with a response or an I/O error."""
        self._completion_cb(self, response, error)

    def __str__(self):
        return "rendezvous%s" % (str(self._command))


def _transform(channel, transformer):
    value = channel.get()
    if isinstance(value, BaseException):
        raise value
    return transformer(value)


class ConnectionPoolTransformingHttpCommandExecutorService(BaseLifeCycle):

    def __init__(self, pool_factory=None, retry_handler=None, settings=None, task_executor=None, log=logging):
        if settings is None:
            settings = CloudExecSettings()
        BaseLifeCycle.__init__(self, worker_count=settings.worker_threads, name="executor", log=log)
        if pool_factory is None:
            pool_factory = libcloud_pool_factory(settings, log=log)
        if retry_handler is None:
            retry_handler = default_retry_handlers(settings, log=log)
        self._settings = settings
        self._pool_factory = pool_factory
        self._retry_handler = retry_handler
        self._connection_timeout = settings.connection_timeout
        self._commands = queue.Queue()
        self._queue_lock = threading.Lock()
        self._pools = {}
        self._pools_lock = threading.Lock()
        if task_executor is None:
            task_executor = ThreadPoolExecutor(max_workers=settings.task_threads, thread_name_prefix="cloudexec-task")
        self._task_executor = task_executor

    def get_settings(self):
        return self._settings

    def get_pools(self):
        with self._pools_lock:
            return dict(self._pools)

    def get_queue_size(self):
        return self._commands.qsize()

    def _accepting(self):
        return self.get_status() in (cloudexec.status_inactive, cloudexec.status_active)

    @cloudexec.LogEntryDecorator
    def submit(self, command, transformer):
        with self._queue_lock:
            if not self._accepting():
                raise APIUsageException("the executor is %s and cannot accept %s" % (self.get_status(), str(command)))
            channel = queue.Queue(maxsize=1)
            future = self._task_executor.submit(_transform, channel, transformer)
            rendezvous = HttpCommandRendezvous(command, channel, future, self._exchange_complete, log=self._log)
            self._commands.put(rendezvous)
        cloudexec.log(self._log, logging.DEBUG, "queued %s" % (str(command)))
        return future

    def do_work(self):
        try:
            rendezvous = self._commands.get(timeout=cloudexec.WORK_QUEUE_POLL_TIMEOUT)
        except queue.Empty:
            return
        self.invoke(rendezvous)

    def invoke(self, rendezvous):
        command = rendezvous.get_command()
        try:
            endpoint = base_endpoint(command.get_current_request().endpoint)
            pool = self._get_pool(endpoint)
        except Exception as ex:
            cloudexec.log(self._log, logging.ERROR, "could not get a connection pool for %s: %s" % (str(command), str(ex)), tb=traceback)
            self._fail(rendezvous, ex)
            return

        try:
            handle = pool.get_handle(rendezvous, self._connection_timeout)
            try:
                handle.start_connection()
            except Exception:
                handle.cancel()
                raise
        except PoolUnavailableException as ex:
            cloudexec.log(self._log, logging.INFO, "%s, requeuing %s" % (str(ex), str(command)))
            self._discard_pool(endpoint, pool)
            self._requeue(rendezvous)
        except (TimeoutException, InterruptedError) as ex:
            cloudexec.log(self._log, logging.INFO, "no connection for %s yet (%s), requeuing" % (str(command), str(ex)))
            self._requeue(rendezvous)
        except Exception as ex:
            cloudexec.log(self._log, logging.ERROR, "connection pool %s failed on %s, discarding it" % (endpoint, str(command)), tb=traceback)
            self._discard_pool(endpoint, pool)
            self._requeue(rendezvous)

    def _get_pool(self, endpoint):
        pool = self._pools.get(endpoint)
        if pool is not None:
            return pool
        with self._pools_lock:
            pool = self._pools.get(endpoint)
            if pool is None:
                pool = self._pool_factory(endpoint)
                if pool.get_status() == cloudexec.status_inactive:
                    pool.start()
                self._pools[endpoint] = pool
                self.add_dependency(pool)
                cloudexec.log(self._log, logging.DEBUG, "created the connection pool for %s" % (endpoint))
            return pool

    def _discard_pool(self, endpoint, pool):
        with self._pools_lock:
            if self._pools.get(endpoint) is not pool:
                return False
            del self._pools[endpoint]
        self.remove_dependency(pool)
        pool.shutdown()
        return True

    def _requeue(self, rendezvous):
        with self._queue_lock:
            if self._accepting():
                self._commands.put(rendezvous)
                return True
        ex = CommandCancelledException("the executor is %s, %s will not be retried" % (self.get_status(), str(rendezvous.get_command())))
        self._fail(rendezvous, ex)
        return False

    def _fail(self, rendezvous, ex):
        rendezvous.get_command().set_exception(ex)
        rendezvous.set_exception(ex)

    def _exchange_complete(self, rendezvous, response, error):
        command = rendezvous.get_command()
        if rendezvous.is_delivered():
            cloudexec.log(self._log, logging.DEBUG, "%s already has an outcome, not retrying the late exchange" % (str(command)))
            return
        if error is None and response is not None and response.is_success():
            rendezvous.set_response(response)
            return
        try:
            decision = self._retry_handler.should_retry(command, response, command.get_context(), error=error)
            if decision.is_retry():
                command.prepare_retry(decision)
                cloudexec.log(self._log, logging.DEBUG, "retrying %s" % (str(command)))
                self._requeue(rendezvous)
                return
            if error is not None:
                ex = error
            else:
                ex = HttpResponseException(command, response)
        except Exception as handler_ex:
            cloudexec.log(self._log, logging.ERROR, "retry handlers failed on %s" % (str(command)), tb=traceback)
            ex = handler_ex
        self._fail(rendezvous, ex)

    def do_shutdown(self):
        ex = self.get_exception_from_dependencies_or_none()
        if ex is None:
            ex = CommandCancelledException("shutdown")
        drained = []
        with self._queue_lock:
            while True:
                try:
                    drained.append(self._commands.get_nowait())
                except queue.Empty:
                    break
        if drained:
            cloudexec.log(self._log, logging.INFO, "failing %d queued commands with %s" % (len(drained), str(ex)))
        for rendezvous in drained:
            self._fail(rendezvous, ex)

    @cloudexec.LogEntryDecorator
    def shutdown(self, wait=None):
        rc = BaseLifeCycle.shutdown(self, wait)
        with self._pools_lock:
            pools = list(self._pools.values())
            self._pools.clear()
        for pool in pools:
            self.remove_dependency(pool)
            pool.shutdown(wait)
        self._task_executor.shutdown(wait=False)
        return rc
