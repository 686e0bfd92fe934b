import os

from fastapi import BackgroundTasks, FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse

from .api.endpoints import router as api_router
from .config import setup_logging
from .db import init_db
from .errors import SafetyError
from .monitoring import trip_monitor
from .schemas import ReplayIn
from .simulator import is_running, start_replay, stop_replay
from .wsmanager import ConnectionManager

setup_logging()

# Create FastAPI app
app = FastAPI(
    title="Trip Safety Engine",
    description="Real-time trip safety monitoring, enforcement and dispute handling",
    version="1.0.0"
)

# Create connection manager
manager = ConnectionManager()
trip_monitor.add_listener(manager.broadcast_event)

# Include API routes
app.include_router(api_router, prefix="/api")


@app.exception_handler(SafetyError)
async def safety_error_handler(request: Request, exc: SafetyError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


@app.on_event("startup")
async def startup():
    """Initialize database on startup."""
    init_db()


@app.on_event("shutdown")
async def shutdown():
    stop_replay()
    await trip_monitor.shutdown()


@app.get("/")
async def root():
    return {"message": "Trip Safety Engine", "docs": "/docs", "events": "/ws/safety"}


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "monitored_trips": len(trip_monitor.sessions)}


@app.websocket("/ws/safety")
async def websocket_endpoint(websocket: WebSocket):
    """Live stream of safety events for dashboards and ops tooling."""
    await manager.connect(websocket)
    try:
        while True:
            # Keep connection alive; clients do not send anything meaningful
            await websocket.receive_text()
    except WebSocketDisconnect:
        manager.disconnect(websocket)


@app.post("/api/replay/start")
async def api_start_replay(request: ReplayIn, background_tasks: BackgroundTasks):
    """Replay a telemetry CSV through the live monitor."""
    if is_running():
        return {"message": "Replay already running"}
    if not os.path.exists(request.csv_path):
        return JSONResponse(status_code=404, content={"detail": f"File {request.csv_path} not found"})
    background_tasks.add_task(start_replay, trip_monitor, request.csv_path, request.interval, request.trip_id)
    return {"message": "replay started"}


@app.post("/api/replay/stop")
async def api_stop_replay():
    return stop_replay()


@app.get("/api/replay/status")
async def api_replay_status():
    return {"is_running": is_running()}
