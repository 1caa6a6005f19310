import threading
import unittest

import mock

from cloudexec.nosetests import FakeConnectionPool


class ConnectionHandleTests(unittest.TestCase):

    def setUp(self):
        self.pool = FakeConnectionPool("https://example.com", max_connections=1)
        self.pool.start()
        self.rendezvous = mock.Mock()

    def tearDown(self):
        self.pool.shutdown()

    def _permits_free(self):
        n = 0
        while self.pool.all_connections.acquire(blocking=False):
            n = n + 1
        for i in range(0, n):
            self.pool.all_connections.release()
        return n

    def test_release_returns_connection(self):
        handle = self.pool.get_handle(self.rendezvous)
        connection = handle.get_connection()
        self.assertFalse(handle.is_completed())
        self.assertTrue(handle.release())
        self.assertTrue(handle.is_completed())
        self.assertEqual(handle.get_connection(), None)
        self.assertEqual(handle.get_rendezvous(), None)
        self.assertEqual(self.pool.available.qsize(), 1)
        self.assertTrue(self.pool.available.get_nowait() is connection)
        # the permit stays with the idle connection
        self.assertEqual(self._permits_free(), 0)

    def test_release_is_idempotent(self):
        handle = self.pool.get_handle(self.rendezvous)
        self.assertTrue(handle.release())
        self.assertFalse(handle.release())
        self.assertFalse(handle.cancel())
        self.assertEqual(self.pool.available.qsize(), 1)
        self.assertEqual(self.pool.closed, [])

    def test_cancel_is_idempotent(self):
        handle = self.pool.get_handle(self.rendezvous)
        connection = handle.get_connection()
        self.assertTrue(handle.cancel())
        self.assertFalse(handle.cancel())
        self.assertFalse(handle.release())
        self.assertTrue(connection.closed)
        self.assertEqual(self.pool.closed, [connection])
        self.assertEqual(self.pool.available.qsize(), 0)
        self.assertEqual(self._permits_free(), 1)

    def test_wait_for(self):
        handle = self.pool.get_handle(self.rendezvous)
        self.assertFalse(handle.wait_for(0.01))
        t = threading.Timer(0.05, handle.release)
        t.start()
        self.assertTrue(handle.wait_for(5))
        t.join()

    def test_concurrent_completion(self):
        handle = self.pool.get_handle(self.rendezvous)
        results = []
        lock = threading.Lock()
        start = threading.Event()

        def finish(func):
            start.wait()
            rc = func()
            with lock:
                results.append(rc)

        threads = []
        for i in range(0, 10):
            if i % 2:
                func = handle.release
            else:
                func = handle.cancel
            t = threading.Thread(target=finish, args=(func,))
            t.start()
            threads.append(t)
        start.set()
        for t in threads:
            t.join()
        self.assertEqual(results.count(True), 1)
        self.assertEqual(len(results), 10)
        self.assertTrue(handle.is_completed())
        # either the connection is idle or its permit is back, never both
        self.assertEqual(self.pool.available.qsize() + self._permits_free(), 1)

    def test_handle_tracked_until_done(self):
        handle = self.pool.get_handle(self.rendezvous)
        self.assertEqual(self.pool.get_handles(), [handle])
        handle.release()
        self.assertEqual(self.pool.get_handles(), [])

    def test_get_command(self):
        handle = self.pool.get_handle(self.rendezvous)
        self.assertTrue(handle.get_command() is self.rendezvous.get_command.return_value)
        handle.cancel()
        self.assertEqual(handle.get_command(), None)


if __name__ == '__main__':
    unittest.main()
