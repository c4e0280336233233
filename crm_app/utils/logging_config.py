# crm_app/utils/logging_config.py

import logging
import os
from logging.handlers import RotatingFileHandler

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"
_HANDLER_MARKER = "_crm_app_handler"


def _mark(handler):
    setattr(handler, _HANDLER_MARKER, True)
    return handler


def _remove_managed_handlers(logger):
    for handler in list(logger.handlers):
        if getattr(handler, _HANDLER_MARKER, False):
            logger.removeHandler(handler)
            handler.close()


def setup_logging(app):
    """
    Configure console and rotating file handlers for the Flask app logger.

    Safe to call repeatedly: handlers installed by a previous call are replaced
    so tests can re-initialise with a different LOG_LEVEL.
    """
    level_name = str(app.config.get("LOG_LEVEL", "INFO")).upper()
    level = getattr(logging, level_name, logging.INFO)
    formatter = logging.Formatter(LOG_FORMAT)

    _remove_managed_handlers(app.logger)
    app.logger.setLevel(level)

    if app.config.get("ENABLE_CONSOLE_LOGGING", True):
        console_handler = _mark(logging.StreamHandler())
        console_handler.setLevel(level)
        console_handler.setFormatter(formatter)
        app.logger.addHandler(console_handler)

    if app.config.get("ENABLE_FILE_LOGGING", False):
        log_dir = app.config.get("LOG_DIR", "logs")
        if not os.path.isabs(log_dir):
            log_dir = os.path.join(app.instance_path, log_dir)
        os.makedirs(log_dir, exist_ok=True)
        file_handler = _mark(
            RotatingFileHandler(
                os.path.join(log_dir, "crm_app.log"),
                maxBytes=5 * 1024 * 1024,
                backupCount=5,
            )
        )
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        app.logger.addHandler(file_handler)

    # Pipeline modules log through module loggers under this namespace.
    pipeline_logger = logging.getLogger("crm_app")
    pipeline_logger.setLevel(level)
    _remove_managed_handlers(pipeline_logger)
    for handler in app.logger.handlers:
        if getattr(handler, _HANDLER_MARKER, False):
            pipeline_logger.addHandler(handler)

    app.logger.debug("Logging configured (level=%s)", level_name)
