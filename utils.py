import datetime
import logging
import os
import random
import string


RUN_DIRECTORY = os.path.join("trials", datetime.datetime.now().strftime("%Y-%m-%d_%H:%M:%S"))

# Holds copy of console file handler's log level
CONSOLE_LOG_LEVEL = "info"

BASEPATH = os.path.dirname(os.path.abspath(__file__))
PROJECT_ROOT = BASEPATH

# Characters a strategy or link may contain, besides ASCII letters and digits
ALLOWED_SYMBOLS = set(":/\\.,&=-?()+[]{};\"'<>*%$_#!@^`| ")


class TrialAbortedException(Exception):
    """
    Raised to signal that this strategy trial should be cut off.
    """
    def __init__(self, msg):
        """
        Creates the exception with the message to report back to the operator
        """
        super().__init__(msg)
        self.msg = msg


class ConfigError(Exception):
    """
    Raised when the configuration file is missing or malformed.
    """


class ProbeConfigError(ValueError):
    """
    Raised when probe parameters are out of range or not supported by a prober.
    """


def get_logger(basepath, log_dir, logger_name, log_name, environment_id, log_level="DEBUG", file_log_level="DEBUG"):
    """
    Configures and returns a logger.
    """
    if type(log_level) == str:
        log_level = log_level.upper()
    if type(file_log_level) == str:
        file_log_level = file_log_level.upper()
    full_path = os.path.join(basepath, log_dir, "logs")
    if not os.path.exists(full_path):
        os.makedirs(full_path, exist_ok=True)
    logger = logging.getLogger(logger_name + environment_id)
    logger.setLevel("DEBUG")
    # Disable the root logger to avoid double printing
    logger.propagate = False

    # If we've already setup the handlers for this logger, just return it
    if logger.handlers:
        return logger
    fh = logging.FileHandler(os.path.join(full_path, "%s.%s.log" % (environment_id, log_name)))

    log_prefix = "[%s %s] " % (log_name.upper(), environment_id)
    formatter = logging.Formatter("%(asctime)s %(levelname)s:" + log_prefix + "%(message)s", datefmt="%Y-%m-%d %H:%M:%S")
    file_formatter = logging.Formatter(log_prefix + "%(asctime)s %(message)s")
    fh.setFormatter(file_formatter)
    logger.addHandler(fh)

    ch = logging.StreamHandler()
    ch.setFormatter(formatter)
    ch.setLevel(log_level)
    fh.setLevel(file_log_level)
    logger.addHandler(ch)
    return logger


def close_logger(logger):
    """
    Closes open file handles for a given logger and detaches its handlers.
    """
    handlers = logger.handlers[:]
    for handler in handlers:
        if isinstance(handler, logging.FileHandler):
            handler.close()
        logger.removeHandler(handler)


class Logger():
    """
    Logging class context manager, as a thin wrapper around the logging class to help
    handle closing open file descriptors.
    """
    def __init__(self, log_dir, logger_name, log_name, environment_id, log_level="DEBUG"):
        self.log_dir = log_dir
        self.logger_name = logger_name
        self.log_name = log_name
        self.environment_id = environment_id
        self.log_level = log_level
        self.logger = None

    def __enter__(self):
        """
        Sets up a logger.
        """
        self.logger = get_logger(PROJECT_ROOT, self.log_dir, self.logger_name, self.log_name, self.environment_id, log_level=self.log_level)
        return self.logger

    def __exit__(self, exc_type, exc_value, tb):
        """
        Closes file handles.
        """
        close_logger(self.logger)


def get_console_log_level():
    """
    returns log level of console handler
    """
    return CONSOLE_LOG_LEVEL


def get_id():
    """
    Returns a random ID
    """
    return ''.join([random.choice(string.ascii_lowercase + string.digits) for k in range(8)])


def setup_dirs(output_dir):
    """
    Sets up the run folder structure.
    """
    log_dir = os.path.join(output_dir, "logs")
    if not os.path.exists(log_dir):
        os.makedirs(log_dir, exist_ok=True)
    return log_dir


def is_allowed_char(char):
    """
    Checks if a character may appear in a strategy or a link.
    """
    return char in string.ascii_letters or char in string.digits or char in ALLOWED_SYMBOLS


def filter_text(text):
    """
    Drops every character that may not appear in a strategy or link.
    """
    return "".join(char for char in text if is_allowed_char(char))


def clean_lines(text, unique=False):
    """
    Splits newline-delimited text into stripped, non-empty, filtered lines.

    Args:
        text (str): Raw text, one entry per line
        unique (bool, optional): drop repeated entries, keeping the first occurrence

    Returns:
        list: Cleaned lines in their original order
    """
    lines = []
    seen = set()
    for line in text.splitlines():
        line = filter_text(line).strip()
        if not line:
            continue
        if unique:
            if line in seen:
                continue
            seen.add(line)
        lines.append(line)
    return lines


def read_lines(path, unique=False):
    """
    Reads a newline-delimited file into cleaned lines.
    """
    with open(path, "r", encoding="utf-8") as fd:
        return clean_lines(fd.read(), unique=unique)
