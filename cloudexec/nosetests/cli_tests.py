import os
import socket
import tempfile
import unittest
import uuid
from concurrent.futures import Future

import mock
import simplejson as json

import cloudexec
from cloudexec import global_deps
from cloudexec.cli import main as cli_main
from cloudexec.exceptions import HttpResponseException
from cloudexec.httpcommand import HttpResponse


class FakeExecutor(object):
    """Answers every submission right away: 200 for most urls, a 404 failure for urls ending in /missing."""

    instances = []

    def __init__(self, settings=None, log=None):
        self.settings = settings
        self.submitted = []
        self.started = False
        self.shut_down = False
        FakeExecutor.instances.append(self)

    def start(self):
        self.started = True

    def submit(self, command, transformer):
        self.submitted.append(command)
        future = Future()
        if command.get_current_request().endpoint.endswith("/missing"):
            future.set_exception(HttpResponseException(command, HttpResponse(404, "Not Found")))
        else:
            future.set_result(transformer(HttpResponse(200, "OK", {"Content-Type": "text/plain"}, b"hello")))
        return future

    def shutdown(self, wait=None):
        self.shut_down = True
        return True


class CliTests(unittest.TestCase):

    def setUp(self):
        global_deps.clear_globals()
        self.old_conf = os.environ.get(cloudexec.CONFIG_FILE_ENV_STR)
        os.environ[cloudexec.CONFIG_FILE_ENV_STR] = "/nonexistent/%s.conf" % (str(uuid.uuid4()))
        FakeExecutor.instances = []
        self.outfile = None

    def tearDown(self):
        global_deps.clear_globals()
        cloudexec.close_log_handlers()
        if self.old_conf is None:
            del os.environ[cloudexec.CONFIG_FILE_ENV_STR]
        else:
            os.environ[cloudexec.CONFIG_FILE_ENV_STR] = self.old_conf
        if self.outfile is not None and os.path.exists(self.outfile):
            os.remove(self.outfile)

    def test_help(self):
        self.assertEqual(cli_main.main([]), 0)
        self.assertEqual(cli_main.main(["--help"]), 0)

    def test_commands(self):
        rc = cli_main.main(["-f", "-", "commands"])
        self.assertEqual(rc, 0)

    def test_no_command(self):
        self.assertEqual(cli_main.main(["-f", "-", "-q"]), 1)

    def test_bad_command(self):
        self.assertEqual(cli_main.main(["-f", "-", "launch"]), 1)

    def test_bad_option_value(self):
        self.assertEqual(cli_main.main(["-f", "-", "-l", "loud", "commands"]), 1)
        self.assertEqual(cli_main.main(["-f", "-", "-m", "0", "commands"]), 1)

    def test_bad_global(self):
        self.assertEqual(cli_main.main(["-f", "-", "-g", "novalue", "commands"]), 1)

    def test_wait_open(self):
        s = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        try:
            s.bind(("127.0.0.1", 0))
            s.listen(5)
            port = s.getsockname()[1]
            rc = cli_main.main(["-f", "-", "-t", "2", "-p", "0.1", "wait", "127.0.0.1", str(port)])
            self.assertEqual(rc, 0)
        finally:
            s.close()

    def test_wait_closed(self):
        s = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        s.bind(("127.0.0.1", 0))
        port = s.getsockname()[1]
        s.close()
        rc = cli_main.main(["-f", "-", "-t", "0.3", "-p", "0.1", "wait", "127.0.0.1", str(port)])
        self.assertEqual(rc, 1)

    def test_wait_usage(self):
        self.assertEqual(cli_main.main(["-f", "-", "wait", "127.0.0.1"]), 1)
        self.assertEqual(cli_main.main(["-f", "-", "wait", "127.0.0.1", "ssh"]), 1)

    def test_get_usage(self):
        self.assertEqual(cli_main.main(["-f", "-", "get"]), 1)

    @mock.patch("cloudexec.cli.main.ConnectionPoolTransformingHttpCommandExecutorService", FakeExecutor)
    def test_get(self):
        (osf, self.outfile) = tempfile.mkstemp(suffix=".json")
        os.close(osf)
        rc = cli_main.main(["-f", "-", "-r", "3", "-g", "max_connections_per_host=9", "-o", self.outfile, "get",
                            "example.com/a", "https://example.com/missing"])
        self.assertEqual(rc, 1)
        executor = FakeExecutor.instances[0]
        self.assertTrue(executor.started)
        self.assertTrue(executor.shut_down)
        self.assertEqual(executor.settings.max_retries, 3)
        self.assertEqual(executor.settings.max_connections_per_host, 9)
        self.assertEqual([c.get_current_request().endpoint for c in executor.submitted],
                         ["https://example.com/a", "https://example.com/missing"])

        with open(self.outfile) as f:
            doc = json.load(f)
        self.assertEqual(len(doc), 2)
        self.assertEqual(doc[0]["url"], "https://example.com/a")
        self.assertEqual(doc[0]["status"], 200)
        self.assertEqual(doc[0]["length"], 5)
        self.assertEqual(doc[1]["url"], "https://example.com/missing")
        self.assertTrue("404" in doc[1]["error"])

    @mock.patch("cloudexec.cli.main.ConnectionPoolTransformingHttpCommandExecutorService", FakeExecutor)
    def test_get_success(self):
        rc = cli_main.main(["-f", "-", "-vv", "get", "https://example.com/a"])
        self.assertEqual(rc, 0)


if __name__ == '__main__':
    unittest.main()
