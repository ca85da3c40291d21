import logging
import os
import sys

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def setup_logging(log_file=None, verbose=False):
    """Log to stdout and, if given, to the run's aggregate log file."""
    handlers = [logging.StreamHandler(sys.stdout)]
    if log_file:
        os.makedirs(os.path.dirname(os.path.abspath(log_file)), exist_ok=True)
        handlers.append(logging.FileHandler(log_file))
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format=LOG_FORMAT,
        datefmt=DATE_FORMAT,
        handlers=handlers,
        force=True,
    )
    # paramiko logs every channel open at INFO
    logging.getLogger("paramiko").setLevel(logging.WARNING)


def node_logger(name, address, log_path):
    """
    Logger scoped to one node whose records also land in log_path.

    Records still propagate to the root logger, so they reach the aggregate
    log as well. Call close_node_logger() when the node's work is done.
    """
    logger = logging.getLogger(f"k8s_cluster_backup.{name}.{address}")
    close_node_logger(logger)
    handler = logging.FileHandler(log_path, mode="w")
    handler.setFormatter(logging.Formatter(LOG_FORMAT, DATE_FORMAT))
    logger.addHandler(handler)
    return logger


def close_node_logger(logger):
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
