"""
app/utils/logging.py
───────────────────
Configures structured logging for the promotions service.
"""
import os
import logging
from logging.handlers import RotatingFileHandler
from flask import has_request_context, request, session

HANDLER_NAMES = ('promotions.file', 'promotions.stream')


class RequestFormatter(logging.Formatter):
    """
    Custom formatter that injects request info (IP, URL, user if logged in)
    into logs if context is available.
    """
    def format(self, record):
        if has_request_context():
            record.url = request.url
            record.remote_addr = request.remote_addr
            record.user_id = session.get('user_id')
        else:
            record.url = None
            record.remote_addr = None
            record.user_id = None
        return super().format(record)


def setup_logging(app):
    """
    Configure rotating file logging: <LOG_DIR>/app.log
    Max size: 5MB
    Backup count: 5 files
    Format: timestamp | level | module | ip | user | url | message

    The engine modules log through logging.getLogger(__name__); their
    records reach the same handlers via the 'app' package logger.
    """
    level = logging.getLevelName(app.config.get('LOG_LEVEL', 'INFO'))
    handlers = []

    # 1. File Logger (skipped when the filesystem is read-only)
    log_dir = app.config.get('LOG_DIR') or os.path.join(app.root_path, '..', 'logs')
    if not app.testing:
        try:
            os.makedirs(log_dir, exist_ok=True)
            file_handler = RotatingFileHandler(
                os.path.join(log_dir, 'app.log'),
                maxBytes=5 * 1024 * 1024,
                backupCount=5
            )
            file_handler.setFormatter(RequestFormatter(
                '%(asctime)s | %(levelname)s | %(name)s | %(remote_addr)s | '
                'user=%(user_id)s | %(url)s | %(message)s'
            ))
            file_handler.setLevel(level)
            file_handler.set_name('promotions.file')
            handlers.append(file_handler)
        except OSError as e:
            app.logger.warning(f"File logging disabled: {e}")

    # 2. Stdout Logger (Critical for container / cloud logs)
    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(logging.Formatter(
        '%(asctime)s | %(levelname)s | %(name)s | %(message)s'
    ))
    stream_handler.setLevel(level)
    stream_handler.set_name('promotions.stream')
    handlers.append(stream_handler)

    # app.logger is the 'app' package logger, so the engine modules share
    # these handlers. Replace the ones an earlier create_app() attached.
    for old in [h for h in app.logger.handlers if h.get_name() in HANDLER_NAMES]:
        app.logger.removeHandler(old)
        old.close()
    for handler in handlers:
        app.logger.addHandler(handler)

    app.logger.setLevel(level)
    app.logger.info("Promotions service startup")
