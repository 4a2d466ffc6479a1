"""
Structured Logging Configuration
Application events plus the authorization audit trail
"""

import logging
import os
import sys
from typing import Any, Dict

import structlog

from tenant_rbac.core.config import Settings

AUDIT_LOGGER_NAME = "tenant_rbac.audit"


def setup_logging(settings: Settings):
    """
    Configure structlog on top of stdlib logging

    The audit channel always records at INFO, whatever LOG_LEVEL says, and is
    additionally written to RBAC_AUDIT_LOG_PATH when that is set.
    """
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, settings.LOG_LEVEL),
    )

    structlog.configure(
        processors=[
            # Request-scoped fields bound by the FastAPI dependencies
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            add_audit_marker,
            structlog.processors.JSONRenderer() if settings.ENVIRONMENT == "production"
            else structlog.dev.ConsoleRenderer(colors=settings.ENVIRONMENT == "development")
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    audit = logging.getLogger(AUDIT_LOGGER_NAME)
    audit.setLevel(logging.INFO)
    if settings.RBAC_AUDIT_LOG_PATH:
        _attach_audit_file(audit, settings.RBAC_AUDIT_LOG_PATH)


def _attach_audit_file(audit: logging.Logger, path: str) -> None:
    target = os.path.abspath(path)
    for handler in audit.handlers:
        if isinstance(handler, logging.FileHandler) and handler.baseFilename == target:
            return
    handler = logging.FileHandler(target, encoding="utf-8")
    handler.setFormatter(logging.Formatter("%(message)s"))
    audit.addHandler(handler)


def add_audit_marker(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Tag audit entries so log shippers can route them separately"""
    if event_dict.get("logger") == AUDIT_LOGGER_NAME:
        event_dict["audit"] = True
    return event_dict


def get_audit_logger():
    return structlog.get_logger(AUDIT_LOGGER_NAME)
