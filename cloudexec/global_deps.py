import configparser
import os

import cloudexec
from cloudexec.exceptions import ConfigException

g_var_objects = {}
g_global_obj = None

# rank 3 is the command line, 2 configuration files, 1 built in defaults
RANK_COMMAND_LINE = 3
RANK_FILE = 2
RANK_DEFAULT = 1


class CloudExecVarObject(object):

    def __init__(self):
        # using its own dict to avoid any conflicts in __dict__
        self.vars = {}

    def set_var(self, key, val):
        self.vars[key] = val


def set_global_var_file(path, rank, section=cloudexec.CONFIG_SECTION):
    path = os.path.expanduser(path)
    if not os.path.exists(path):
        raise ConfigException("The configuration file %s does not exist" % (path))
    parser = configparser.ConfigParser()
    try:
        parser.read(path)
    except configparser.Error as ex:
        raise ConfigException("The configuration file %s could not be parsed: %s" % (path, str(ex)), ex)
    if not parser.has_section(section):
        raise ConfigException("The configuration file %s has no [%s] section" % (path, section))
    for (key, value) in parser.items(section):
        set_global_var(key, value, rank)


def set_global_var(key, val, rank):
    rank = int(rank)
    if rank not in g_var_objects:
        g_var_objects[rank] = CloudExecVarObject()
    obj = g_var_objects[rank]
    obj.set_var(key, val)


def global_merge_down():
    global g_global_obj

    global_obj = CloudExecVarObject()
    for rank in sorted(g_var_objects.keys()):
        rank_obj = g_var_objects[rank]
        for key in rank_obj.vars:
            global_obj.set_var(key, rank_obj.vars[key])
    g_global_obj = global_obj


def clear_globals():
    global g_global_obj
    g_var_objects.clear()
    g_global_obj = None


def get_global(key, default=None, raise_ex=False):
    if g_global_obj is None or key not in g_global_obj.vars:
        if raise_ex:
            raise ConfigException("The global variable %s is not set." % (key))
        return default
    val = cloudexec.get_env_val(g_global_obj.vars[key])
    if val is None:
        return default
    return val


class CloudExecSettings(object):
    """
    The tunables of the executor, the pools and the retry handlers.  Values come from the merged global
    variables when present and from the defaults in statics otherwise.
    """

    def __init__(self, max_retries=None, retry_delay_start=None, max_connections_per_host=None, connection_timeout=None,
                 worker_threads=None, task_threads=None, io_timeout=None, poll_period=None, poll_max_wait=None):
        self.max_retries = _pick(max_retries, cloudexec.DEFAULT_MAX_RETRIES)
        self.retry_delay_start = _pick(retry_delay_start, cloudexec.DEFAULT_RETRY_DELAY_START)
        self.max_connections_per_host = _pick(max_connections_per_host, cloudexec.DEFAULT_MAX_CONNECTIONS_PER_HOST)
        self.connection_timeout = _pick(connection_timeout, cloudexec.DEFAULT_CONNECTION_TIMEOUT)
        self.worker_threads = _pick(worker_threads, cloudexec.DEFAULT_WORKER_THREADS)
        self.task_threads = _pick(task_threads, cloudexec.DEFAULT_TASK_THREADS)
        self.io_timeout = _pick(io_timeout, cloudexec.DEFAULT_IO_TIMEOUT)
        self.poll_period = _pick(poll_period, cloudexec.DEFAULT_POLL_PERIOD)
        self.poll_max_wait = _pick(poll_max_wait, cloudexec.DEFAULT_POLL_MAX_WAIT)

    def __str__(self):
        keys = sorted(self.__dict__.keys())
        return "CloudExecSettings(%s)" % (", ".join(["%s=%s" % (k, str(self.__dict__[k])) for k in keys]))


def _pick(val, default):
    if val is None:
        return default
    return val


def _get_typed(key, conv, default, minimum):
    val = get_global(key)
    if val is None:
        return default
    try:
        val = conv(val)
    except (TypeError, ValueError) as ex:
        raise ConfigException("The value %s of %s is not a valid %s" % (str(val), key, conv.__name__), ex)
    if val < minimum:
        raise ConfigException("The value of %s must be at least %s" % (key, str(minimum)))
    return val


def get_int(key, default, minimum=0):
    return _get_typed(key, int, default, minimum)


def get_float(key, default, minimum=0.0):
    return _get_typed(key, float, default, minimum)


def load_settings():
    return CloudExecSettings(
        max_retries=get_int("max_retries", cloudexec.DEFAULT_MAX_RETRIES),
        retry_delay_start=get_int("retry_delay_start", cloudexec.DEFAULT_RETRY_DELAY_START),
        max_connections_per_host=get_int("max_connections_per_host", cloudexec.DEFAULT_MAX_CONNECTIONS_PER_HOST, minimum=1),
        connection_timeout=get_float("connection_timeout", cloudexec.DEFAULT_CONNECTION_TIMEOUT),
        worker_threads=get_int("worker_threads", cloudexec.DEFAULT_WORKER_THREADS, minimum=1),
        task_threads=get_int("task_threads", cloudexec.DEFAULT_TASK_THREADS, minimum=1),
        io_timeout=get_float("io_timeout", cloudexec.DEFAULT_IO_TIMEOUT),
        poll_period=get_float("poll_period", cloudexec.DEFAULT_POLL_PERIOD, minimum=0.001),
        poll_max_wait=get_float("poll_max_wait", cloudexec.DEFAULT_POLL_MAX_WAIT),
    )
