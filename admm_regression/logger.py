import logging
import time
from functools import wraps

PACKAGE_LOGGER_NAME = "admm_regression"


def init_logger(job_id: str, log_level: str = "INFO") -> logging.Logger:
    """
    Installs the project handler on the package logger. Every module logs
    through logging.getLogger(__name__), so records of the whole package
    reach this handler tagged with the job id.
    """
    logger = logging.getLogger(PACKAGE_LOGGER_NAME)

    formatter = logging.Formatter(
        f"%(asctime)s - %(levelname)s - %(module)s.%(funcName)s(%(lineno)d) - [admm-regression] - [{job_id}] - %(message)s"
    )

    # StreamHandler
    sh = logging.StreamHandler()
    sh.setFormatter(formatter)
    for hdlr in logger.handlers[:]:  # remove all old handlers
        logger.removeHandler(hdlr)
    logger.addHandler(sh)
    logger.setLevel(log_level)
    logger.propagate = False

    return logger


def log_method_call(func):
    @wraps(func)
    def wrapper(*args, **kwargs):
        logger = logging.getLogger(func.__module__)
        starting_timestamp = time.time()
        logger.info(f"*********** {func.__qualname__} method started ***********")
        output = func(*args, **kwargs)
        finish_timestamp = time.time()
        tsm_diff = finish_timestamp - starting_timestamp
        logger.info(
            f"*********** {func.__qualname__} method succeeded in {tsm_diff} ***********"
        )
        return output

    return wrapper
