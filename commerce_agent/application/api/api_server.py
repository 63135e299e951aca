"""
Commerce assistant HTTP API.

POST /api/v1/assistant/chat answers with a JSON TurnResponse, or with an SSE
stream of turn events when ``stream`` is set. A rate-limited turn carries a
Retry-After header on the JSON response and ``retry_after_seconds`` in the
``done`` event. GET /health reports liveness and the process metrics
summary. The session routes expose a state summary and end a session.
"""

from typing import Optional
from fastapi import FastAPI, HTTPException, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
import math
import uvicorn
import structlog

from commerce_agent.application.bootstrap import build_executor
from commerce_agent.application.schema.events import ChatRequest, TurnResponse
from commerce_agent.domain.orchestration.core.graph_executor import TurnExecutor
from commerce_agent.infrastructure.config.settings import load_settings
from commerce_agent.infrastructure.observability.logging import metrics, setup_logging

logger = structlog.get_logger(__name__)


def create_app(executor: Optional[TurnExecutor] = None) -> FastAPI:
    """Create and configure the FastAPI application"""

    if executor is None:
        settings = load_settings()
        setup_logging(settings.log_level, settings.log_format, settings.service_name)
        executor = build_executor(settings)

    app = FastAPI(title="Commerce Assistant API", version="0.1.0")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.executor = executor

    @app.post("/api/v1/assistant/chat", response_model=TurnResponse)
    async def chat(request: ChatRequest, response: Response):
        """Run one assistant turn"""

        if not request.stream:
            result = await executor.run_turn(
                request.session_id, request.message, request.mode, request.client_id, request.customer_id
            )
            if result.retry_after_seconds is not None:
                response.headers["Retry-After"] = str(max(1, math.ceil(result.retry_after_seconds)))
            return result

        async def event_stream():
            async for event in executor.stream_turn(
                request.session_id, request.message, request.mode, request.client_id, request.customer_id
            ):
                yield event.to_sse()

        return StreamingResponse(
            event_stream(),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
        )

    @app.get("/api/v1/assistant/session/{session_id}")
    async def session_summary(session_id: str):
        """Summary of a live session"""

        if session_id not in executor.store.sessions():
            raise HTTPException(status_code=404, detail="Unknown session")
        state = await executor.store.load(session_id)
        return state.get_state_summary()

    @app.delete("/api/v1/assistant/session/{session_id}")
    async def end_session(session_id: str):
        """Discard a session at its end"""

        await executor.store.end(session_id)
        logger.info("Session ended", session_id=session_id)
        return {"session_id": session_id, "status": "ended"}

    @app.get("/health")
    async def health():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "sessions": len(executor.store.sessions()),
            "actions": executor.graph.registry.names(),
            "metrics": metrics.get_metrics_summary(),
        }

    @app.on_event("shutdown")
    async def shutdown_event():
        executor.tracer.flush()
        logger.info("Commerce assistant API stopped")

    return app


def main() -> None:
    settings = load_settings()
    setup_logging(settings.log_level, settings.log_format, settings.service_name)
    uvicorn.run(create_app(build_executor(settings)), host="0.0.0.0", port=8000, log_level=settings.log_level.lower())


if __name__ == "__main__":
    main()
