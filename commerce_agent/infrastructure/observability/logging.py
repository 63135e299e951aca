import structlog
import logging
import sys
from typing import Dict, Any, Optional
from datetime import datetime
import os


def setup_logging(
    log_level: str = "INFO",
    log_format: str = "json",
    service_name: str = "commerce-assistant"
) -> None:
    """Setup structured logging configuration"""

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
        add_turn_context,
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
        version=os.getenv("SERVICE_VERSION", "unknown")
    )


def add_turn_context(logger: logging.Logger, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Add turn and session identifiers to all log entries"""

    if "timestamp" not in event_dict:
        event_dict["timestamp"] = datetime.utcnow().isoformat()

    bound = structlog.contextvars.get_contextvars()
    for key in ("turn_id", "session_id", "mode"):
        if bound.get(key) and key not in event_dict:
            event_dict[key] = bound[key]

    return event_dict


class AssistantLogger:
    """Specialized logger for assistant turns"""

    def __init__(self, name: str):
        self.logger = structlog.get_logger(name)

    def log_action_execution(
        self,
        action_name: str,
        session_id: str,
        mode: str,
        input_data: Dict[str, Any],
        duration_ms: Optional[float] = None,
        success: bool = True,
        cached: bool = False,
        error: Optional[str] = None
    ):
        """Log action invocations"""

        self.logger.info(
            "action_execution",
            action_name=action_name,
            session_id=session_id,
            mode=mode,
            input_data=input_data,
            duration_ms=duration_ms,
            success=success,
            cached=cached,
            error=error
        )

    def log_node_transition(
        self,
        session_id: str,
        node: str,
        duration_ms: float,
        commands: int = 0,
        route: Optional[str] = None
    ):
        """Log graph node completions"""

        self.logger.info(
            "node_transition",
            session_id=session_id,
            node=node,
            duration_ms=duration_ms,
            commands=commands,
            route=route
        )

    def log_security_verdict(
        self,
        session_id: str,
        direction: str,
        safe: bool,
        policy: Optional[str] = None,
        category: Optional[str] = None,
        severity: Optional[str] = None
    ):
        """Log judge verdicts; the offending text is never logged"""

        log = self.logger.info if safe else self.logger.warning
        log(
            "security_verdict",
            session_id=session_id,
            direction=direction,
            safe=safe,
            policy=policy,
            category=category,
            severity=severity
        )


assistant_logger = AssistantLogger("commerce_agent")


class MetricsCollector:
    """Collect and export process-wide metrics"""

    def __init__(self):
        self.metrics: Dict[str, Any] = {}

    def record_latency(self, operation: str, duration_ms: float, tags: Optional[Dict[str, str]] = None):
        """Record operation latency"""

        key = f"latency.{operation}"
        if key not in self.metrics:
            self.metrics[key] = {
                "count": 0,
                "sum": 0.0,
                "min": float('inf'),
                "max": 0.0
            }

        self.metrics[key]["count"] += 1
        self.metrics[key]["sum"] += duration_ms
        self.metrics[key]["min"] = min(self.metrics[key]["min"], duration_ms)
        self.metrics[key]["max"] = max(self.metrics[key]["max"], duration_ms)

        assistant_logger.logger.debug(
            "metric",
            metric_type="latency",
            operation=operation,
            duration_ms=duration_ms,
            tags=tags or {}
        )

    def increment_counter(self, name: str, value: int = 1, tags: Optional[Dict[str, str]] = None):
        """Increment a counter metric"""

        self.metrics[name] = self.metrics.get(name, 0) + value

        assistant_logger.logger.debug(
            "metric",
            metric_type="counter",
            name=name,
            value=value,
            tags=tags or {}
        )

    def get_metrics_summary(self) -> Dict[str, Any]:
        """Get summary of all metrics"""

        summary = {}
        for key, value in self.metrics.items():
            if isinstance(value, dict) and "count" in value:
                summary[key] = {
                    "count": value["count"],
                    "avg": value["sum"] / value["count"] if value["count"] > 0 else 0,
                    "min": value["min"] if value["min"] != float('inf') else 0,
                    "max": value["max"]
                }
            else:
                summary[key] = value

        return summary

    def reset(self):
        self.metrics.clear()


metrics = MetricsCollector()
