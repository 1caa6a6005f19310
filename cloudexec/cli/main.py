import logging
import logging.handlers
import os
import sys
import uuid
from optparse import OptionParser

import simplejson as json

import cloudexec
from cloudexec.cli.cmd_opts import cmdOpts
from cloudexec.exceptions import APIUsageException, ConfigException
from cloudexec.executor import ConnectionPoolTransformingHttpCommandExecutorService
from cloudexec.global_deps import RANK_COMMAND_LINE, RANK_FILE, global_merge_down, load_settings, set_global_var, \
    set_global_var_file
from cloudexec.httpcommand import HttpCommand, HttpRequest
from cloudexec.predicates import RetryablePredicate, SocketOpen

g_verbose = 1
g_commands = {}

# command line options that are really settings, mapped to their global variable name
g_setting_opts = {
    "retries": "max_retries",
    "maxconnections": "max_connections_per_host",
    "period": "poll_period",
    "timeout": "poll_max_wait",
}


def _return_key_val(var_str):
    l_a = var_str.split("=", 1)
    if len(l_a) != 2:
        raise APIUsageException("Invalid global variable string.  It must be in the format <key>=<value>")
    return l_a


def _deal_with_cmd_line_globals(options):
    config_file = cloudexec.get_config_file()
    if os.path.exists(config_file):
        set_global_var_file(config_file, RANK_FILE)

    if options.globalvarfile:
        for filename in options.globalvarfile:
            set_global_var_file(filename, RANK_FILE)

    if options.globalvar:
        for var_str in options.globalvar:
            (key, value) = _return_key_val(var_str)
            set_global_var(key, value, RANK_COMMAND_LINE)

    for opt_name in g_setting_opts:
        val = getattr(options, opt_name)
        if val is not None:
            set_global_var(g_setting_opts[opt_name], val, RANK_COMMAND_LINE)

    global_merge_down()


def print_chars(lvl, msg):
    if lvl > g_verbose:
        return
    sys.stdout.write(str(msg))
    sys.stdout.flush()


# setup and validate options
def parse_commands(argv):
    global g_verbose

    u = """[options] <command> [<url> ... | <host> <port>]
Send HTTP commands through a pooled, retrying executor and wait on cloud resources.
Run with the command 'commands' to see a list of all possible commands
"""
    version = "cloudexec " + (cloudexec.Version)
    parser = OptionParser(usage=u, version=version)

    all_opts = []
    opt = cmdOpts("verbose", "v", "Print more output", 1, count=True)
    all_opts.append(opt)
    opt.add_opt(parser)
    opt = cmdOpts("quiet", "q", "Print no output", False, flag=True)
    opt.add_opt(parser)
    all_opts.append(opt)
    opt = cmdOpts("name", "n", "Set the run name used to name the log file (by default the system picks)", None)
    opt.add_opt(parser)
    all_opts.append(opt)
    opt = cmdOpts("logdir", "f", "Path to the base log directory, - logs to stderr.", None)
    opt.add_opt(parser)
    all_opts.append(opt)
    opt = cmdOpts("loglevel", "l", "Controls the level of detail in the log file", "info", vals=["debug", "info", "warn", "error"])
    opt.add_opt(parser)
    all_opts.append(opt)
    opt = cmdOpts("logstack", "s", "Log entry and exit of executor methods (extreme debug level)", False, flag=True)
    opt.add_opt(parser)
    all_opts.append(opt)
    opt = cmdOpts("timeout", "t", "Seconds to wait for a command or for a port to open", None, range=[0, None])
    opt.add_opt(parser)
    all_opts.append(opt)
    opt = cmdOpts("period", "p", "Seconds between the first two polls of a wait", None, range=[0.001, None])
    opt.add_opt(parser)
    all_opts.append(opt)
    opt = cmdOpts("retries", "r", "Maximum number of retries and redirects of a command", None, range=[0, None])
    opt.add_opt(parser)
    all_opts.append(opt)
    opt = cmdOpts("maxconnections", "m", "Maximum number of connections per host", None, range=[1, None])
    opt.add_opt(parser)
    all_opts.append(opt)
    opt = cmdOpts("output", "o", "Write a json document describing the results of the get command to the associated file", None)
    opt.add_opt(parser)
    all_opts.append(opt)
    opt = cmdOpts("globalvar", "g", "Set a configuration variable, in the format <key>=<value>", None, append_list=True)
    opt.add_opt(parser)
    all_opts.append(opt)
    opt = cmdOpts("globalvarfile", "G", "Read configuration variables from the [cloudexec] section of a file", None, append_list=True)
    opt.add_opt(parser)
    all_opts.append(opt)

    (options, args) = parser.parse_args(args=argv)

    for opt in all_opts:
        opt.validate(options)

    _deal_with_cmd_line_globals(options)

    if not options.name:
        options.name = str(uuid.uuid4()).split("-")[0]

    if options.logdir is None:
        options.logdir = os.path.expanduser("~/.cloudexec/")

    (options.logger, logfile) = cloudexec.make_logger(options.loglevel, options.name, logdir=options.logdir)

    if options.logstack:
        logger = logging.getLogger("stacktracelog")
        logger.propagate = False
        logger.setLevel(logging.DEBUG)
        if options.logdir == "-":
            handler = logging.StreamHandler()
        else:
            stacklogfile = os.path.join(options.logdir, options.name + "-stacktrace.log")
            handler = logging.handlers.RotatingFileHandler(stacklogfile, maxBytes=100*1024*1024, backupCount=5)
        logger.addHandler(handler)
        fmt = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
        formatter = logging.Formatter(fmt)
        handler.setFormatter(formatter)
        cloudexec.g_open_loggers.append((logger, handler))

    if options.quiet:
        options.verbose = 0
    g_verbose = options.verbose

    options.settings = load_settings()
    return (args, options)


def _write_json_doc(options, results):
    if options.output:
        doc_str = json.dumps(results, indent=4)
        with open(options.output, "w") as f:
            f.write(doc_str)


def _response_summary(response):
    return {"status": response.status, "message": response.message, "headers": response.headers, "length": len(response.payload or b"")}


def get(options, args):
    """
    Fetch one or more urls through the connection pooled executor.  Redirects, server errors and known transient vendor errors are retried.  The status of each url is printed; with -v the body as well.
    """
    if len(args) < 2:
        print_chars(0, "The get command requires at least one url.  See --help\n")
        return 1

    settings = options.settings
    executor = ConnectionPoolTransformingHttpCommandExecutorService(settings=settings, log=options.logger)
    executor.start()
    rc = 0
    results = []
    try:
        futures = []
        for url in args[1:]:
            if url.find("://") < 0:
                url = "https://" + url
            command = HttpCommand(HttpRequest("GET", url))
            futures.append((url, executor.submit(command, _response_summary_and_body)))

        for (url, future) in futures:
            try:
                (summary, body) = future.result(timeout=settings.poll_max_wait)
                print_chars(1, "%s : %d %s\n" % (url, summary["status"], summary["message"] or ""))
                print_chars(2, body + "\n")
                summary["url"] = url
                results.append(summary)
            except Exception as ex:
                cloudexec.log(options.logger, logging.ERROR, "get %s failed: %s" % (url, str(ex)))
                print_chars(0, "%s : FAILED %s\n" % (url, str(ex)))
                results.append({"url": url, "error": str(ex)})
                rc = 1
    finally:
        executor.shutdown(settings.connection_timeout)
    _write_json_doc(options, results)
    return rc


def _response_summary_and_body(response):
    return (_response_summary(response), response.get_payload_text() or "")


def wait(options, args):
    """
    Wait until a TCP port accepts connections, for example the ssh port of a freshly booted VM.  Requires a host and a port.  The poll period and the maximum wait come from -p and -t.
    """
    if len(args) < 3:
        print_chars(0, "The wait command requires a host and a port.  See --help\n")
        return 1
    host = args[1]
    try:
        port = int(args[2])
    except ValueError:
        raise APIUsageException("%s is not a valid port" % (args[2]))

    settings = options.settings
    predicate = RetryablePredicate(SocketOpen(log=options.logger), settings.poll_max_wait, period=settings.poll_period, log=options.logger)
    print_chars(1, "waiting up to %s seconds for %s:%d\n" % (str(settings.poll_max_wait), host, port))
    if predicate.apply((host, port)):
        print_chars(1, "%s:%d is open\n" % (host, port))
        return 0
    print_chars(0, "%s:%d did not open in time\n" % (host, port))
    return 1


def list_commands(options, args):
    """
    List all of the possible commands accepted by this program.
    """
    line_len = 60
    for cmd in sorted(g_commands.keys()):
        func = g_commands[cmd]
        if not func.__doc__:
            continue
        print_chars(1, "%s: " % (cmd))
        msg = "\n\t" + func.__doc__.strip()
        ndx = line_len
        while ndx < len(msg):
            i = msg[ndx:].find(" ")
            if i < 0:
                break
            i = i + ndx
            msg = msg[:i] + "\n\t" + msg[i+1:]
            ndx = ndx + line_len
        print_chars(1, "%s\n" % (msg))
    return 0


g_commands["get"] = get
g_commands["wait"] = wait
g_commands["commands"] = list_commands


def main(argv=None):
    if argv is None:
        argv = sys.argv[1:]
    argv = list(argv)
    if len(argv) == 0:
        argv.append("--help")
    try:
        (args, options) = parse_commands(argv)
    except SystemExit:
        return 0
    except (APIUsageException, ConfigException) as ex:
        print_chars(0, "%s\n" % (str(ex)))
        return 1

    try:
        if not args:
            print_chars(0, "You must provide a command.  Run with --help\n")
            return 1

        command = args[0]
        if command not in g_commands:
            print_chars(0, "Invalid command.  Run with --help\n")
            return 1

        func = g_commands[command]
        try:
            rc = func(options, args)
        except APIUsageException as apiex:
            print_chars(0, "%s\n" % (str(apiex)))
            options.logger.error("A usage error occurred: %s", str(apiex))
            rc = 1
        except ConfigException as cex:
            print_chars(0, "%s\n" % (str(cex)))
            print_chars(0, "Check your configuration files and -g variables.\n")
            options.logger.error("A configuration error occurred: %s", str(cex))
            rc = 1
        except Exception as ex:
            print_chars(0, "%s\nsee %s for more details\n" % (str(ex), options.logdir))
            if options.verbose > 1:
                raise
            rc = 1
    finally:
        cloudexec.close_log_handlers()
    return rc


if __name__ == "__main__":
    rc = main()
    sys.exit(rc)
