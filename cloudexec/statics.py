import os

# time units, expressed as seconds per unit
MILLISECONDS = 0.001
SECONDS = 1.0
MINUTES = 60.0

# lifecycle states
status_inactive = "INACTIVE"
status_active = "ACTIVE"
status_shutdown_request = "SHUTDOWN_REQUEST"
status_shutting_down = "SHUTTING_DOWN"
status_shut_down = "SHUT_DOWN"

# retry handler answers
retry_action_retry = "retry"
retry_action_no_retry = "no_retry"
retry_action_defer = "defer"

# vendor error codes that are worth another attempt
RETRYABLE_ERROR_CODES = ("RequestTimeout", "OperationAborted", "SignatureDoesNotMatch", "RequestTimeTooSkewed")

REDIRECT_CODES = (301, 302, 303, 307, 308)
VENDOR_REDIRECT_CODES = (301, 307)
CLIENT_ERROR_RETRY_CODES = (400, 403, 409)

CONFIG_SECTION = "cloudexec"

DEFAULT_MAX_RETRIES = 5
DEFAULT_RETRY_DELAY_START = 50
DEFAULT_MAX_CONNECTIONS_PER_HOST = 4
DEFAULT_CONNECTION_TIMEOUT = 5.0
DEFAULT_WORKER_THREADS = 1
DEFAULT_TASK_THREADS = 8
DEFAULT_IO_TIMEOUT = 60
DEFAULT_POLL_PERIOD = 1.0
DEFAULT_POLL_MAX_WAIT = 300

# how long a worker blocks on the command queue before checking for shutdown
WORK_QUEUE_POLL_TIMEOUT = 1.0

CONFIG_FILE_ENV_STR = "CLOUDEXEC_CONFIG"
DEFAULT_CONFIG_FILE = "~/.cloudexec/cloudexec.conf"


def get_config_file():
    if CONFIG_FILE_ENV_STR in os.environ:
        return os.environ[CONFIG_FILE_ENV_STR]
    return os.path.expanduser(DEFAULT_CONFIG_FILE)
