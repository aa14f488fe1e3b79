import structlog
import logging
import sys
from typing import Dict, Any, Optional
from datetime import datetime, timezone
import os


def setup_logging(
    log_level: Optional[str] = None,
    log_format: Optional[str] = None,
    service_name: str = "promptlayers"
) -> None:
    """Setup structured logging configuration"""

    log_level = log_level or os.getenv("LOG_LEVEL", "INFO")
    log_format = log_format or os.getenv("LOG_FORMAT", "json")

    # Configure Python logging
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper(), logging.INFO)
    )

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        add_service_context,
    ]

    if log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    structlog.contextvars.bind_contextvars(
        service=service_name,
        environment=os.getenv("ENVIRONMENT", "development"),
    )


def add_service_context(logger: logging.Logger, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Add conversation context to all log entries"""

    if "timestamp" not in event_dict:
        event_dict["timestamp"] = datetime.now(timezone.utc).isoformat()

    conversation_id = structlog.contextvars.get_contextvars().get("conversation_id")
    if conversation_id and "conversation_id" not in event_dict:
        event_dict["conversation_id"] = conversation_id

    return event_dict


class ContextLogger:
    """Specialized logger for context layering events"""

    def __init__(self, name: str):
        self.logger = structlog.get_logger(name)

    def log_context_update(
        self,
        message_id: Optional[str],
        context_type: str,
        action: str,
        details: Optional[Dict[str, Any]] = None
    ):
        """Log a change to a turn's context"""

        self.logger.info(
            "context_update",
            message_id=message_id,
            context_type=context_type,
            action=action,
            details=details or {}
        )

    def log_compaction(
        self,
        message_id: Optional[str],
        threshold_chars: int,
        original_chars: int,
        compacted_chars: Optional[int] = None,
        was_compacted: bool = False
    ):
        """Log a compaction trigger and its outcome"""

        self.logger.info(
            "context_compaction",
            message_id=message_id,
            threshold_chars=threshold_chars,
            original_chars=original_chars,
            compacted_chars=compacted_chars,
            was_compacted=was_compacted
        )

    def log_envelope_built(
        self,
        message_id: Optional[str],
        layer_sizes: Dict[str, int],
        excluded_paths: int = 0
    ):
        """Log the shape of a built envelope"""

        self.logger.info(
            "envelope_built",
            message_id=message_id,
            layer_sizes=layer_sizes,
            excluded_paths=excluded_paths
        )


# Global logger instance
context_logger = ContextLogger("promptlayers.context")
