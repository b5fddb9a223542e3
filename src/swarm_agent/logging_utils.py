"""
Logging utilities for the swarm agent.

Provides:
- Structured logging with key=value fields
- Correlation context (node name, coordinator, attempt)
- Optional JSON output
"""
import json
import logging
import os
from contextvars import ContextVar
from typing import Dict, Any, Optional
from contextlib import contextmanager


# Context variables for correlation fields (thread-safe)
_node_name: ContextVar[Optional[str]] = ContextVar('node_name', default=None)
_coordinator: ContextVar[Optional[str]] = ContextVar('coordinator', default=None)
_attempt: ContextVar[Optional[int]] = ContextVar('attempt', default=None)

VALID_LEVELS = ('DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL')


class StructuredFormatter(logging.Formatter):
    """
    Formatter that adds correlation fields and structured fields.

    Format: [timestamp] [level] [component] correlation key=value message
    """

    def __init__(self, json_output: bool = False):
        """
        Initialize formatter.

        Args:
            json_output: If True, output JSON lines instead of human-readable
        """
        super().__init__()
        self.json_output = json_output

    def format(self, record: logging.LogRecord) -> str:
        """Format log record with correlation and structured fields."""
        if self.json_output:
            return self._format_json(record)
        else:
            return self._format_human(record)

    def _timestamp(self, record: logging.LogRecord) -> str:
        timestamp = self.formatTime(record, datefmt='%Y-%m-%dT%H:%M:%S')
        return f"{timestamp}.{int(record.msecs):03d}Z"

    def _format_human(self, record: logging.LogRecord) -> str:
        """Human-readable format with key=value pairs."""
        component = record.name.split('.')[-1]

        corr_parts = [f"{key}={value}" for key, value in get_correlation_fields().items()
                      if value is not None]

        extra_fields = []
        if hasattr(record, 'fields') and isinstance(record.fields, dict):
            for key, value in record.fields.items():
                extra_fields.append(f"{key}={value}")

        parts = [
            f"[{self._timestamp(record)}]",
            f"[{record.levelname}]",
            f"[{component}]"
        ]

        if corr_parts:
            parts.append(" ".join(corr_parts))

        if extra_fields:
            parts.append(" ".join(extra_fields))

        parts.append(record.getMessage())

        result = " ".join(parts)
        if record.exc_info:
            result += "\n" + self.formatException(record.exc_info)

        return result

    def _format_json(self, record: logging.LogRecord) -> str:
        """JSON format for machine parsing."""
        log_entry: Dict[str, Any] = {
            "timestamp": self._timestamp(record),
            "level": record.levelname,
            "component": record.name.split('.')[-1],
            "message": record.getMessage()
        }

        for key, value in get_correlation_fields().items():
            if value is not None:
                log_entry[key] = value

        if hasattr(record, 'fields') and isinstance(record.fields, dict):
            log_entry.update(record.fields)

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_entry, separators=(',', ':'), default=str)


def set_correlation_fields(
    node_name: Optional[str] = None,
    coordinator: Optional[str] = None,
    attempt: Optional[int] = None
) -> None:
    """
    Set correlation fields for the current context.

    They are included in every log message until updated.
    Threads started afterwards do not inherit them; the label watcher
    sets its own. Use correlation_context to scope them to a block.
    """
    if node_name is not None:
        _node_name.set(node_name)
    if coordinator is not None:
        _coordinator.set(coordinator)
    if attempt is not None:
        _attempt.set(attempt)


def get_correlation_fields() -> Dict[str, Any]:
    """Get current correlation fields."""
    return {
        'node': _node_name.get(),
        'coordinator': _coordinator.get(),
        'attempt': _attempt.get()
    }


@contextmanager
def correlation_context(
    node_name: Optional[str] = None,
    coordinator: Optional[str] = None,
    attempt: Optional[int] = None
):
    """
    Context manager for temporary correlation fields.

    Example:
        with correlation_context(coordinator="http://ci/"):
            logger.info("Registering")  # coordinator=http://ci/ included
    """
    old_node = _node_name.get()
    old_coordinator = _coordinator.get()
    old_attempt = _attempt.get()

    try:
        set_correlation_fields(node_name, coordinator, attempt)
        yield
    finally:
        _node_name.set(old_node)
        _coordinator.set(old_coordinator)
        _attempt.set(old_attempt)


def log_with_fields(logger: logging.Logger, level: int, message: str, **fields):
    """
    Log a message with structured fields.

    Example:
        log_with_fields(logger, logging.INFO, "Waiting before retry",
                        wait_seconds=10, policy="none")
    """
    logger.log(level, message, extra={'fields': fields})


def setup_logging(
    level: str = "INFO",
    json_output: bool = False,
    log_file: Optional[str] = None,
    module_levels: Optional[Dict[str, str]] = None
) -> None:
    """
    Setup logging configuration for the agent.

    Args:
        level: Global log level (DEBUG, INFO, WARNING, ERROR)
        json_output: Enable JSON output instead of human-readable
        log_file: Optional log file path (in addition to stdout)
        module_levels: Per-module log levels, e.g. {'discovery': 'DEBUG'}

    Environment Variables:
        SWARM_AGENT_LOG_LEVEL: Override log level
        SWARM_AGENT_LOG_JSON: Enable JSON output (1 or 0)
    """
    level = os.getenv('SWARM_AGENT_LOG_LEVEL', level).upper()
    json_output = os.getenv('SWARM_AGENT_LOG_JSON', '0') == '1' or json_output

    if level not in VALID_LEVELS:
        logging.warning(f"Invalid log level '{level}', using INFO")
        level = 'INFO'

    formatter = StructuredFormatter(json_output=json_output)

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level))
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if log_file:
        try:
            log_path = os.path.dirname(log_file)
            if log_path and not os.path.exists(log_path):
                os.makedirs(log_path, mode=0o755)

            file_handler = logging.FileHandler(log_file)
            file_handler.setFormatter(formatter)
            root_logger.addHandler(file_handler)
            logging.info(f"Logging to file: {log_file}")
        except OSError as e:
            logging.error(f"Failed to setup file logging: {e}")

    if module_levels:
        for module_name, module_level in module_levels.items():
            module_level_upper = module_level.upper()
            if module_level_upper in VALID_LEVELS:
                module_logger = logging.getLogger(f'swarm_agent.{module_name}')
                module_logger.setLevel(getattr(logging, module_level_upper))
                logging.debug(f"Set log level for {module_name}: {module_level_upper}")
            else:
                logging.warning(f"Invalid log level for module {module_name}: {module_level}")

    logging.info(f"Logging initialized: level={level}, json={json_output}, file={log_file}")
