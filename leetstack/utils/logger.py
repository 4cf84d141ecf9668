"""Service logger: request_id and user_id from the request context go on every record, and an empty LOG_FILE_PATH turns the rotating file handlers off."""

import os
import sys
import logging
import pathlib
import contextvars
from logging.handlers import RotatingFileHandler
from pythonjsonlogger.json import JsonFormatter

_request_ctx_var = contextvars.ContextVar('request_ctx', default={})


def set_request_context(request_id: str, user_id: str = None):
    _request_ctx_var.set({'request_id': request_id, 'user_id': user_id})


def get_request_context():
    return _request_ctx_var.get()


def _inject_request_context(record):
    ctx = get_request_context()
    record.request_id = ctx.get('request_id')
    record.user_id = ctx.get('user_id')
    return True


def get_logger(name: str = 'leetstack'):
    LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO')
    LOG_FORMAT = os.getenv('LOG_FORMAT', 'json')
    # empty path disables the rotating file handlers (tests, containers)
    LOG_FILE_PATH = os.getenv('LOG_FILE_PATH', 'logs')
    LOG_MAX_SIZE = int(os.getenv('LOG_MAX_SIZE', str(10 * 1024 * 1024)))
    LOG_MAX_FILES = int(os.getenv('LOG_MAX_FILES', '7'))

    logger = logging.getLogger(name)
    if logger.handlers:
        return logger

    logger.setLevel(LOG_LEVEL.upper())

    ch = logging.StreamHandler(sys.stdout)
    if LOG_FORMAT == 'json':
        fmt = JsonFormatter('%(asctime)s %(levelname)s %(name)s %(message)s %(request_id)s %(user_id)s')
    else:
        fmt = logging.Formatter('%(asctime)s %(levelname)s %(name)s %(message)s')
    ch.setFormatter(fmt)
    logger.addHandler(ch)

    if LOG_FILE_PATH:
        log_path = pathlib.Path(LOG_FILE_PATH)
        if not log_path.is_absolute():
            log_path = pathlib.Path(os.getcwd()) / log_path
        log_path.mkdir(parents=True, exist_ok=True)

        combined = RotatingFileHandler(log_path / 'combined.log', maxBytes=LOG_MAX_SIZE, backupCount=LOG_MAX_FILES)
        combined.setFormatter(fmt)
        logger.addHandler(combined)

        errors = RotatingFileHandler(log_path / 'error.log', maxBytes=LOG_MAX_SIZE, backupCount=LOG_MAX_FILES)
        errors.setLevel(logging.ERROR)
        errors.setFormatter(fmt)
        logger.addHandler(errors)

    f = logging.Filter()
    f.filter = _inject_request_context
    logger.addFilter(f)

    logging.captureWarnings(True)

    return logger


def log_request(request_id: str, method: str, path: str, status_code: int, duration_ms: float, ip: str = None):
    logger = get_logger()
    logger.info('http_request', extra={'request_id': request_id, 'method': method, 'path': path, 'status_code': status_code, 'duration_ms': duration_ms, 'ip': ip})


def log_error(error: Exception, context: dict = None):
    logger = get_logger()
    logger.exception('error', exc_info=error, extra=context or {})


def log_llm_call(job_id: str, model: str, prompt_tokens: int, completion_tokens: int, duration_ms: float):
    logger = get_logger()
    logger.info('llm_call', extra={'job_id': job_id, 'model': model, 'prompt_tokens': prompt_tokens, 'completion_tokens': completion_tokens, 'duration_ms': duration_ms})


def log_job_transition(job_id: str, from_status: str, to_status: str, owner_id: str = None):
    logger = get_logger()
    logger.info('job_transition', extra={
        'job_id': job_id,
        'from_status': from_status,
        'to_status': to_status,
        'owner_id': owner_id,
    })


def log_card_generation(job_id: str, card_count: int, new_cards: int, duration_ms: float, appended: bool = False):
    logger = get_logger()
    logger.info('card_generation', extra={
        'job_id': job_id,
        'card_count': card_count,
        'new_cards': new_cards,
        'duration_ms': duration_ms,
        'appended_to_existing_note': appended,
    })


def log_review_sync(card_key: str, version: int, ok: bool, duration_ms: float, error: str = None):
    logger = get_logger()
    extra = {
        'card_key': card_key,
        'version': version,
        'duration_ms': duration_ms,
    }
    if ok:
        logger.info('review_sync_ok', extra=extra)
    else:
        extra['error'] = error
        logger.warning('review_sync_failed', extra=extra)
