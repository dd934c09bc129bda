"""FastAPI server for Concord."""
from __future__ import annotations

from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
import asyncio
import logging

from concord.config import get_config
from concord.engine import ConcordEngine
from concord.errors import ConcordError, ValidationError

logger = logging.getLogger(__name__)

app = FastAPI(title="Concord")

ERROR_STATUS = {
    "validation_error": 400,
    "request_stopped": 409,
    "all_models_failed": 502,
    "no_available_models": 503,
}


@app.on_event("startup")
def _startup() -> None:
    if getattr(app.state, "engine", None) is not None:
        return
    config = get_config()
    logging.basicConfig(level=config.log_level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    app.state.config = config
    app.state.engine = ConcordEngine.from_config(config)


@app.on_event("shutdown")
def _shutdown() -> None:
    engine = getattr(app.state, "engine", None)
    if engine is not None:
        engine.shutdown()


def _engine(request: Request) -> ConcordEngine:
    return request.app.state.engine


def _error_response(error: dict) -> JSONResponse:
    return JSONResponse({"ok": False, "error": error}, status_code=ERROR_STATUS.get(error.get("kind"), 500))


@app.get("/health")
async def health():
    """Health check endpoint for monitoring."""
    return {"status": "healthy", "service": "concord"}


@app.get("/api/models")
def models_api(request: Request):
    return {"models": _engine(request).models()}


@app.get("/api/stats")
def stats_api(request: Request):
    return _engine(request).stats()


@app.post("/api/orchestrate")
def orchestrate_api(payload: dict, request: Request):
    """Run a request to completion and return the synthesized answer."""
    result = _engine(request).run(payload)
    if not result.ok:
        return _error_response(result.error or {})
    return result.to_dict()


@app.post("/api/requests")
def submit_api(payload: dict, request: Request):
    """Start a request in the background; follow it on /ws/requests/{id}."""
    try:
        submitted = _engine(request).submit(payload)
    except ValidationError as exc:
        return _error_response(exc.to_dict())
    return {"ok": True, "request_id": submitted.id}


@app.get("/api/requests/{request_id}/events")
def events_api(request_id: str, request: Request):
    engine = _engine(request)
    events = [e.to_dict() for e in engine.gateway.history(request_id)]
    if not events and engine.gateway.journal is not None:
        events = engine.gateway.journal.read(request_id)
    if not events:
        return JSONResponse({"error": "not found"}, status_code=404)
    return {"request_id": request_id, "events": events}


@app.post("/api/requests/{request_id}/{command}")
def command_api(request_id: str, command: str, request: Request):
    engine = _engine(request)
    handlers = {"stop": engine.stop, "pause": engine.pause, "resume": engine.resume}
    handler = handlers.get(command)
    if handler is None:
        return JSONResponse({"error": f"unknown command {command}"}, status_code=404)
    return handler(request_id)


@app.websocket("/ws/requests/{request_id}")
async def websocket_request(websocket: WebSocket, request_id: str):
    """Replay a request's events so far, then stream live ones until it ends."""
    await websocket.accept()
    engine: ConcordEngine = websocket.app.state.engine
    subscription = engine.gateway.subscribe(request_id)
    if subscription is None:
        await websocket.send_json({"type": "error", "data": {"kind": "not_found", "request_id": request_id}})
        await websocket.close()
        return
    try:
        while not subscription.done:
            event = await asyncio.to_thread(subscription.get, 0.5)
            if event is not None:
                await websocket.send_json(event.to_dict())
        await websocket.close()
    except WebSocketDisconnect:
        pass
    finally:
        subscription.close()


@app.post("/api/recommend")
def recommend_api(payload: dict, request: Request):
    prompt = (payload.get("prompt") or "").strip()
    if not prompt:
        return JSONResponse({"error": "prompt required"}, status_code=400)
    models = payload.get("models")
    if isinstance(models, dict):
        models = [m for m, enabled in models.items() if enabled]
    try:
        recommendation = _engine(request).recommend(prompt, models, payload.get("history"))
    except ConcordError as exc:
        return _error_response(exc.to_dict())
    return recommendation.to_dict()


@app.post("/api/recommend/{decision_id}/feedback")
def feedback_api(decision_id: str, payload: dict, request: Request):
    try:
        score = float(payload.get("success_score"))
    except (TypeError, ValueError):
        return JSONResponse({"error": "success_score must be a number"}, status_code=400)
    if not _engine(request).meta.record_outcome(decision_id, score):
        return JSONResponse({"error": "not found"}, status_code=404)
    return {"ok": True}


@app.get("/api/meta/analytics")
def meta_analytics_api(request: Request):
    return _engine(request).meta.analytics()


@app.put("/api/meta/config")
def meta_config_api(payload: dict, request: Request):
    threshold = payload.get("confidence_threshold")
    learning = payload.get("learning_enabled")
    try:
        return _engine(request).meta.configure(
            confidence_threshold=None if threshold is None else float(threshold),
            learning_enabled=None if learning is None else bool(learning),
            analyzer_model=payload.get("analyzer_model"),
        )
    except (TypeError, ValueError) as exc:
        return JSONResponse({"error": str(exc)}, status_code=400)


@app.delete("/api/meta")
def meta_clear_api(request: Request):
    _engine(request).meta.clear()
    return {"ok": True}


@app.delete("/api/ledger")
def ledger_reset_api(request: Request, subject: str | None = None):
    _engine(request).reset_ledger(subject)
    return {"ok": True}


def main():
    import uvicorn
    config = get_config()
    host = config.server.get("host", "127.0.0.1")
    port = int(config.server.get("port", 8099))
    uvicorn.run("concord.server:app", host=host, port=port, reload=False)


if __name__ == "__main__":
    main()
