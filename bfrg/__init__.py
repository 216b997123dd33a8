import os
import logging
import tempfile


__version__ = '1.4.0'


def configure_logging(log_file, epoch, verbose=True, debug=False):
    """
    Configure run logging.

    Each run appends to its own log file. When the directory of the configured
    path is not writable the log falls back to the system temp directory.

    Returns:
        Absolute path of the log file actually used
    """
    log_path = os.path.abspath(os.path.expanduser(log_file))
    if not os.access(os.path.dirname(log_path), os.W_OK):
        # using fallback log
        log_path = os.path.join(tempfile.gettempdir(), f'bfrg_{epoch}.log')

    log_level = logging.DEBUG if debug else logging.INFO

    handlers = []

    # Console handler
    if verbose:
        console_handler = logging.StreamHandler()
        console_handler.setLevel(log_level)
        console_formatter = logging.Formatter(
            '[%(asctime)s]: %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S%z'
        )
        console_handler.setFormatter(console_formatter)
        handlers.append(console_handler)

    # File handler
    file_handler = logging.FileHandler(log_path, mode='a')
    file_handler.setLevel(log_level)
    file_formatter = logging.Formatter(
        '[%(asctime)s] %(levelname)s [%(name)s.%(funcName)s:%(lineno)d] %(message)s'
    )
    file_handler.setFormatter(file_formatter)
    handlers.append(file_handler)

    # Replace handlers from a previous run in the same process
    logging.basicConfig(level=log_level, handlers=handlers, force=True)

    logging.getLogger(__name__).info(
        f"Logging configured (level: {logging.getLevelName(log_level)}, file: {log_path})"
    )
    return log_path
