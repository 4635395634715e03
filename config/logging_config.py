# logging_config.py

import os
import re
import sys
import logging
import logging.handlers
from pathlib import Path
from pythonjsonlogger import jsonlogger
from typing import Dict

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_DIR = Path(os.getenv("LOG_DIR", "logs"))

ENVIRONMENT = os.getenv("ENVIRONMENT", "development")

TEXT_FORMAT = '[%(asctime)s] %(levelname)-8s [%(name)s.%(funcName)s:%(lineno)d] %(message)s'
JSON_FORMAT = '%(timestamp)s %(level)s %(name)s %(message)s'


class SensitiveDataFilter(logging.Filter):

    SENSITIVE_KEYS = [
        'password', 'token', 'api_key', 'secret', 'authorization',
        'access_token', 'refresh_token', 'credentials', 'bearer',
        'rabbitmq_password', 'postgres_password',
    ]

    PATTERNS = [
        (r'(api[_-]?key\s*[=:]\s*)[^\s&]+', r'\1***MASKED***'),
        (r'(token\s*[=:]\s*)[^\s&]+', r'\1***MASKED***'),
        (r'(password\s*[=:]\s*)[^\s&]+', r'\1***MASKED***'),
        (r'(Bearer\s+)[^\s]+', r'\1***MASKED***'),
        (r'(://[^:/\s]+:)[^@/\s]+(@)', r'\1***MASKED***\2'),
    ]

    def filter(self, record):
        if hasattr(record, 'msg'):
            msg = str(record.msg)
            lowered = msg.lower()
            if any(key in lowered for key in self.SENSITIVE_KEYS) or '://' in msg:
                record.msg = self._mask_sensitive_data(msg)

        if hasattr(record, 'args') and record.args and isinstance(record.args, tuple):
            record.args = tuple(
                self._mask_if_sensitive(arg) for arg in record.args
            )

        return True

    def _mask_sensitive_data(self, text):
        for pattern, replacement in self.PATTERNS:
            text = re.sub(pattern, replacement, text, flags=re.IGNORECASE)
        return text

    def _mask_if_sensitive(self, value):
        if isinstance(value, str):
            return self._mask_sensitive_data(value)
        return value


class CustomJsonFormatter(jsonlogger.JsonFormatter):

    CONTEXT_FIELDS = ('service_name', 'audit_id', 'job_id', 'schedule_id', 'project_id', 'url')

    def add_fields(self, log_record, record, message_dict):
        super(CustomJsonFormatter, self).add_fields(log_record, record, message_dict)

        log_record['timestamp'] = self.formatTime(record, self.datefmt)
        log_record['level'] = record.levelname
        log_record['logger'] = record.name
        log_record['module'] = record.module
        log_record['function'] = record.funcName
        log_record['line'] = record.lineno

        for field in self.CONTEXT_FIELDS:
            if hasattr(record, field):
                log_record[field] = getattr(record, field)

        if record.exc_info:
            log_record['exception'] = self.formatException(record.exc_info)


class MetricsLogger:

    _metrics = {
        'jobs_started': 0,
        'jobs_completed': 0,
        'jobs_failed': 0,
        'audits_completed': 0,
        'audits_failed': 0,
        'pages_crawled': 0,
        'fetch_failures': 0,
    }

    @classmethod
    def increment(cls, metric_name: str, value: int = 1):
        if metric_name in cls._metrics:
            cls._metrics[metric_name] += value

    @classmethod
    def get_metrics(cls) -> Dict[str, int]:
        return cls._metrics.copy()

    @classmethod
    def reset_metrics(cls):
        for key in cls._metrics:
            cls._metrics[key] = 0


def _build_formatter():
    if ENVIRONMENT == "production":
        return CustomJsonFormatter(JSON_FORMAT)
    return logging.Formatter(TEXT_FORMAT, datefmt='%Y-%m-%d %H:%M:%S')


def setup_logging(service_name="audit_service"):

    logger = logging.getLogger()
    logger.setLevel(LOG_LEVEL)

    for handler in logger.handlers[:]:
        logger.removeHandler(handler)

    sensitive_filter = SensitiveDataFilter()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(LOG_LEVEL)
    console_handler.setFormatter(_build_formatter())
    console_handler.addFilter(sensitive_filter)
    logger.addHandler(console_handler)

    LOG_DIR.mkdir(parents=True, exist_ok=True)

    file_formatter = _build_formatter()

    file_handler = logging.handlers.RotatingFileHandler(
        LOG_DIR / f"{service_name}.log",
        maxBytes=50 * 1024 * 1024,
        backupCount=10,
        encoding='utf-8'
    )
    file_handler.setLevel(LOG_LEVEL)
    file_handler.setFormatter(file_formatter)
    file_handler.addFilter(sensitive_filter)
    logger.addHandler(file_handler)

    error_handler = logging.handlers.RotatingFileHandler(
        LOG_DIR / f"{service_name}_error.log",
        maxBytes=50 * 1024 * 1024,
        backupCount=10,
        encoding='utf-8'
    )
    error_handler.setLevel(logging.ERROR)
    error_handler.setFormatter(file_formatter)
    error_handler.addFilter(sensitive_filter)
    logger.addHandler(error_handler)

    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("aio_pika").setLevel(logging.WARNING)
    logging.getLogger("aiormq").setLevel(logging.WARNING)
    logging.getLogger("asyncio").setLevel(logging.WARNING)
    logging.getLogger("playwright").setLevel(logging.WARNING)

    return logger


def get_logger(name, service_name=None):
    logger = logging.getLogger(name)

    if service_name:
        logger = logging.LoggerAdapter(logger, {'service_name': service_name})

    return logger


def log_job_execution(logger, job_type, job_id, duration, status, error=None):
    extra = {
        'job_type': job_type,
        'job_id': job_id,
        'duration_seconds': round(duration, 2),
        'status': status,
    }

    if error:
        logger.error(
            f"Job failed: {job_type} ({job_id}): {error}",
            extra={**extra, 'error': str(error)},
        )
        MetricsLogger.increment('jobs_failed')
    else:
        logger.info(
            f"Job completed: {job_type} ({job_id})",
            extra=extra
        )
        MetricsLogger.increment('jobs_completed')


class AuditLogger:

    def __init__(self):
        self.logger = get_logger('audit_service', service_name='audit')

    def log_crawl_started(self, project_id, audit_id, url, options):
        self.logger.info(
            f"Crawl started: {url}",
            extra={
                'project_id': project_id,
                'audit_id': audit_id,
                'url': url,
                'max_pages': options.get('max_pages'),
                'max_depth': options.get('max_depth'),
                'max_concurrency': options.get('max_concurrency'),
            }
        )

    def log_crawl_completed(self, project_id, audit_id, pages_count, issues_total, duration):
        self.logger.info(
            f"Crawl completed: {pages_count} pages, {issues_total} issues in {duration:.2f}s",
            extra={
                'project_id': project_id,
                'audit_id': audit_id,
                'pages_count': pages_count,
                'issues_total': issues_total,
                'duration_seconds': round(duration, 2),
            }
        )
        MetricsLogger.increment('audits_completed')

    def log_crawl_failed(self, project_id, audit_id, error):
        self.logger.error(
            f"Crawl failed: {error}",
            extra={'project_id': project_id, 'audit_id': audit_id, 'error': str(error)},
        )
        MetricsLogger.increment('audits_failed')

    def log_page_crawled(self, audit_id, url, status_code, load_time_ms, issues_count):
        self.logger.debug(
            f"Page crawled: {url} ({status_code})",
            extra={
                'audit_id': audit_id,
                'url': url,
                'status_code': status_code,
                'load_time_ms': load_time_ms,
                'issues_count': issues_count,
            }
        )
        MetricsLogger.increment('pages_crawled')

    def log_page_failed(self, audit_id, url, kind, error):
        self.logger.warning(
            f"Page fetch failed ({kind}): {url}: {error}",
            extra={'audit_id': audit_id, 'url': url, 'failure_kind': kind},
        )
        MetricsLogger.increment('fetch_failures')
