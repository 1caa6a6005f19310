"""
The lifecycle shared by the executor and the connection pools.  An object moves through the states
INACTIVE -> ACTIVE -> SHUTDOWN_REQUEST -> SHUTTING_DOWN -> SHUT_DOWN and never moves back.

Subclasses that want worker threads pass a worker_count; each thread calls do_work() for as long as
should_do_work() answers True.  Whatever way the work ends (a shutdown request or an exception raised
by do_work) the last thread to leave runs do_shutdown() exactly once.  Objects without workers run
do_shutdown() on the thread calling shutdown().
"""
import logging
import threading
import traceback
from threading import Thread

import cloudexec
from cloudexec.exceptions import IllegalStateException


class LifeCycleWorkerThread(Thread):
    def __init__(self, lifecycle, ndx):
        Thread.__init__(self, name="%s-worker-%d" % (lifecycle.name, ndx))
        self.daemon = True
        self.lifecycle = lifecycle

    def run(self):
        self.lifecycle._thread_work()


class BaseLifeCycle(object):

    def __init__(self, worker_count=0, dependencies=None, name=None, log=logging):
        if name is None:
            name = self.__class__.__name__
        self.name = name
        self._log = log
        self._worker_count = worker_count
        self._status = cloudexec.status_inactive
        self._status_lock = threading.RLock()
        self._exception = None
        self._dependencies = list(dependencies or [])
        self._threads = []
        self._running_threads = 0
        self._shutdown_started = False
        self._shutdown_done = threading.Event()

    def get_status(self):
        return self._status

    def is_active(self):
        return self._status == cloudexec.status_active

    def get_exception(self):
        return self._exception

    def set_exception(self, ex):
        with self._status_lock:
            if self._exception is None:
                self._exception = ex

    def get_dependencies(self):
        return list(self._dependencies)

    def add_dependency(self, dependency):
        with self._status_lock:
            self._dependencies.append(dependency)

    def remove_dependency(self, dependency):
        with self._status_lock:
            if dependency in self._dependencies:
                self._dependencies.remove(dependency)

    def get_exception_from_dependencies_or_none(self):
        for dependency in self.get_dependencies():
            ex = dependency.get_exception()
            if ex is not None:
                return ex
        return None

    def exception_if_not_active(self):
        if self._status != cloudexec.status_active:
            ex = IllegalStateException("%s is not active: %s" % (self.name, self._status))
            if self._exception is not None:
                raise ex from self._exception
            raise ex

    def should_do_work(self):
        return self._status == cloudexec.status_active and self._exception is None

    def do_work(self):
        pass

    def do_shutdown(self):
        pass

    @cloudexec.LogEntryDecorator
    def start(self):
        with self._status_lock:
            if self._status != cloudexec.status_inactive:
                raise IllegalStateException("%s cannot be started from %s" % (self.name, self._status))
            self._status = cloudexec.status_active
            self._running_threads = self._worker_count
            for i in range(0, self._worker_count):
                self._threads.append(LifeCycleWorkerThread(self, i))
        for t in self._threads:
            t.start()
        cloudexec.log(self._log, logging.DEBUG, "%s started with %d worker threads" % (self.name, self._worker_count))

    def _thread_work(self):
        try:
            while self.should_do_work():
                try:
                    self.do_work()
                except Exception as ex:
                    cloudexec.log(self._log, logging.ERROR, "%s worker failed: %s" % (self.name, str(ex)), tb=traceback)
                    self.set_exception(ex)
        finally:
            with self._status_lock:
                self._running_threads = self._running_threads - 1
                last = self._running_threads == 0
            if last:
                self._run_shutdown()

    def _run_shutdown(self):
        with self._status_lock:
            if self._shutdown_started:
                return
            self._shutdown_started = True
            self._status = cloudexec.status_shutting_down
        try:
            self.do_shutdown()
        except Exception as ex:
            cloudexec.log(self._log, logging.ERROR, "%s failed to shut down cleanly: %s" % (self.name, str(ex)), tb=traceback)
            self.set_exception(ex)
        finally:
            with self._status_lock:
                self._status = cloudexec.status_shut_down
            self._shutdown_done.set()
            cloudexec.log(self._log, logging.DEBUG, "%s is shut down" % (self.name))

    @cloudexec.LogEntryDecorator
    def shutdown(self, wait=None):
        """
        Ask for a shutdown and wait up to wait seconds (forever when None) for it to finish.  Returns
        True when the object is shut down.
        """
        run_now = False
        with self._status_lock:
            if self._status == cloudexec.status_inactive:
                run_now = True
            elif self._status == cloudexec.status_active:
                self._status = cloudexec.status_shutdown_request
                run_now = self._running_threads == 0
            elif self._status == cloudexec.status_shutdown_request:
                run_now = self._running_threads == 0
        if run_now:
            self._run_shutdown()
        rc = self._shutdown_done.wait(wait)
        if rc:
            for t in self._threads:
                if t is not threading.current_thread():
                    t.join(wait)
        return rc

    def __str__(self):
        return "%s(%s)" % (self.name, self._status)
