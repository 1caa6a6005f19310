import logging
import logging.handlers
import os
import sys
from urllib.parse import urlparse

from cloudexec.exceptions import *
from cloudexec.statics import *

g_open_loggers = []

Version = "1.0"


def log(logger, level, msg, tb=None):

    if isinstance(msg, bytes):
        msg = msg.decode("utf8", "replace")
    if logger is None:
        print(msg)
        return

    logger.log(level, msg)

    if tb is not None:
        logger.log(level, "Stack trace")
        logger.log(level, "===========")
        stack = tb.format_exc()
        logger.log(level, stack)
        logger.log(level, "===========")
        logger.log(level, str(sys.exc_info()[0]))


def LogEntryDecorator(func):
    def wrapped(*args, **kw):
        log = logging.getLogger("stacktracelog")
        if len(log.handlers) == 0:
            return func(*args, **kw)
        # see if it is a class
        name = ""
        cls_name = ""
        if args and hasattr(args[0], "__dict__"):
            cls_i = args[0]
            cls_name = cls_i.__class__.__name__ + ":"
            if "name" in cls_i.__dict__:
                name = str(cls_i.name) + " "
        header = "%s%s%s" % (name, cls_name, func.__name__)

        try:
            log.log(logging.DEBUG, "Entering %s." % (header))
            return func(*args, **kw)
        except Exception as ex:
            log.log(logging.DEBUG, "Exiting %s with error: %s." % (header, str(ex)))
            raise
        finally:
            log.log(logging.DEBUG, "Exiting %s." % (header))
    wrapped.__name__ = func.__name__
    wrapped.__doc__ = func.__doc__
    return wrapped


def get_env_val(key):
    if key.find("env.") == 0:
        env_key = key[4:]
        key = os.environ.get(env_key)
    return key


def make_logger(log_level, runname, logdir=None, servicename=None):

    levels = {
        "debug": logging.DEBUG,
        "info": logging.INFO,
        "warn": logging.WARN,
        "error": logging.ERROR,
    }
    if log_level not in levels:
        raise ConfigException("Invalid log level %s" % (log_level))
    loglevel = levels[log_level]

    logname = "cloudexec-" + runname
    if servicename:
        logname = logname + "-" + servicename

    logger = logging.getLogger(logname)
    logger.setLevel(loglevel)

    logfile = None
    if logdir == "-":
        handler = logging.StreamHandler()
    else:
        if not logdir:
            logdir = os.path.expanduser("~/.cloudexec")

        if not os.path.exists(logdir):
            try:
                os.makedirs(logdir)
            except OSError:
                pass

        if servicename:
            logfile = os.path.join(logdir, runname + "-" + servicename + ".log")
        else:
            logfile = os.path.join(logdir, runname + ".log")

        handler = logging.handlers.RotatingFileHandler(logfile, maxBytes=100*1024*1024, backupCount=5)

    logger.addHandler(handler)

    fmt = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    if loglevel == logging.DEBUG:
        fmt = fmt + " || at source line %(filename)s : %(lineno)s"

    formatter = logging.Formatter(fmt)
    handler.setFormatter(formatter)

    g_open_loggers.append((logger, handler))

    return (logger, logfile)


def close_log_handlers():
    global g_open_loggers
    for (logger, handler) in g_open_loggers:
        logger.removeHandler(handler)
        handler.close()
    g_open_loggers = []


def parse_url(url):
    ndx = url.find("://")
    if ndx < 0:
        url = "https://" + url
    url_parts = urlparse(url)

    path = url_parts.path
    if not path:
        path = "/"
    if url_parts.query:
        path = path + "?" + url_parts.query

    return (url_parts.scheme, url_parts.hostname, url_parts.port, path)
