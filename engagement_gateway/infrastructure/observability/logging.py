"""Structured JSON logging for production observability"""

import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from pythonjsonlogger import jsonlogger

from engagement_gateway.config import settings


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """Custom JSON formatter with timestamp and service metadata"""

    def add_fields(self, log_record: Dict[str, Any], record: logging.LogRecord, message_dict: Dict[str, Any]) -> None:
        super().add_fields(log_record, record, message_dict)
        log_record["timestamp"] = datetime.now(timezone.utc).isoformat()
        log_record["level"] = record.levelname
        log_record["service"] = settings.service_name


def setup_logging(level: str = "INFO") -> None:
    """Configure structured JSON logging"""
    logger = logging.getLogger()
    logger.setLevel(level)

    # Remove existing handlers
    logger.handlers.clear()

    # JSON handler for stdout
    handler = logging.StreamHandler(sys.stdout)
    formatter = CustomJsonFormatter(
        "%(timestamp)s %(level)s %(name)s %(message)s"
    )
    handler.setFormatter(formatter)
    logger.addHandler(handler)


def log_transition(
    contract_id: str,
    from_status: Optional[str],
    to_status: str,
    actor_id: Optional[str],
) -> None:
    """Log one committed contract lifecycle transition"""
    logging.getLogger("engagement_gateway.lifecycle").info(
        "Contract transition",
        extra={
            "contract_id": contract_id,
            "step": "contract_transition",
            "from_status": from_status,
            "to_status": to_status,
            "actor_id": actor_id,
        },
    )


def log_collaborator_failure(contract_id: str, collaborator: str, error: Exception) -> None:
    """Downstream failures after a committed transition are logged, never raised"""
    logging.getLogger("engagement_gateway.collaborators").error(
        f"{collaborator} call failed: {error.__class__.__name__}",
        extra={
            "contract_id": contract_id,
            "collaborator": collaborator,
            "step": "collaborator_failure",
        },
    )
