from typing import Dict, Any, Optional
from datetime import datetime, timedelta
from langfuse import Langfuse
import structlog

logger = structlog.get_logger(__name__)


class TurnTrace:
    """Langfuse trace for one turn; every method is a no-op when tracing is off"""

    def __init__(self, trace: Any = None):
        self._trace = trace

    @property
    def active(self) -> bool:
        return self._trace is not None

    def node_span(self, node: str, duration_ms: float, metadata: Optional[Dict[str, Any]] = None) -> None:
        if self._trace is None:
            return
        end_time = datetime.utcnow()
        try:
            self._trace.span(
                name=node,
                start_time=end_time - timedelta(milliseconds=duration_ms),
                end_time=end_time,
                metadata=metadata or {},
            )
        except Exception as e:
            logger.warning("Langfuse span failed", node=node, error=str(e))

    def end(self, output: Optional[str], error_type: Optional[str] = None, metadata: Optional[Dict[str, Any]] = None) -> None:
        if self._trace is None:
            return
        try:
            self._trace.update(
                output=output,
                level="ERROR" if error_type else "DEFAULT",
                status_message=error_type,
                metadata=metadata or {},
            )
        except Exception as e:
            logger.warning("Langfuse trace update failed", error=str(e))


class TurnTracer:
    """Creates one Langfuse trace per turn when keys are configured"""

    def __init__(self, public_key: Optional[str] = None, secret_key: Optional[str] = None, host: Optional[str] = None):
        self.enabled = bool(public_key and secret_key)
        self.langfuse: Optional[Langfuse] = None
        if self.enabled:
            self.langfuse = Langfuse(public_key=public_key, secret_key=secret_key, host=host)
            logger.info("Langfuse tracing enabled", host=host)

    def start_turn(self, session_id: str, turn_id: str, user_input: str, metadata: Optional[Dict[str, Any]] = None) -> TurnTrace:
        if self.langfuse is None:
            return TurnTrace()
        try:
            trace = self.langfuse.trace(
                id=turn_id,
                name="assistant_turn",
                session_id=session_id,
                input=user_input,
                tags=["commerce-assistant"],
                metadata=metadata or {},
            )
        except Exception as e:
            logger.warning("Langfuse trace creation failed", turn_id=turn_id, error=str(e))
            return TurnTrace()
        return TurnTrace(trace)

    def flush(self) -> None:
        if self.langfuse is not None:
            self.langfuse.flush()
