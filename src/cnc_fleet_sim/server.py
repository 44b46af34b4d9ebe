"""REST and WebSocket server for the fleet simulator."""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional, Type, TypeVar

import uvicorn
from fastapi import Body, FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, StrictBool, StrictStr, ValidationError
from starlette.concurrency import run_in_threadpool
from starlette.exceptions import HTTPException as StarletteHTTPException

from . import __version__
from . import metrics
from .config import Config
from .engine import MachineSimulator
from .fleet import Fleet, MachineNotFoundError, TickDriver
from .mqtt_client import MQTTClient
from .snapshot import build_dashboard
from .ws_hub import WsHub

logger = logging.getLogger(__name__)


class PowerCommand(BaseModel):
    power: StrictBool


class AlarmCommand(BaseModel):
    code: Any = None
    message: StrictStr = Field(..., min_length=1)


CommandModel = TypeVar("CommandModel", bound=BaseModel)


def parse_body(model: Type[CommandModel], body: Any) -> CommandModel:
    """Validate a request body once the target machine is known to exist."""
    try:
        return model.model_validate(body)
    except ValidationError as e:
        raise RequestValidationError(e.errors(include_url=False)) from None


ENDPOINTS = {
    "machines": {
        "GET /api/machines": "List all machines",
        "GET /api/machines/{id}": "Get specific machine",
        "GET /api/machines/{id}/dashboard": "Model-specific dashboard data",
        "POST /api/machines/{id}/power": "Set power",
        "POST /api/machines/{id}/alarm": "Inject alarm (testing)",
        "DELETE /api/machines/{id}/alarm": "Clear alarm",
    },
    "plant": {
        "GET /api/plant/status": "Overall plant status",
        "GET /api/plant/alarms": "Active alarms",
        "GET /api/plant/production": "Production summary",
        "GET /api/plant/health": "Fleet health metrics",
    },
    "analytics": {
        "GET /api/analytics/uptime": "Uptime statistics",
        "GET /api/analytics/alarms": "Alarm frequency analysis",
    },
}


def create_app(
    config: Optional[Config] = None,
    fleet: Optional[Fleet] = None,
    driver: Optional[TickDriver] = None,
    mqtt_client: Optional[MQTTClient] = None,
) -> FastAPI:
    """Build the API around a fleet.

    The tick driver (and the MQTT bridge, when given) run for the lifetime
    of the application.
    """
    config = config or Config.default()
    fleet = fleet if fleet is not None else Fleet.from_config(config)
    driver = driver or TickDriver(
        fleet,
        tick_interval_ms=config.simulation.tick_interval_ms,
        time_acceleration=config.simulation.time_acceleration,
    )
    hub = WsHub()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        hub.bind_loop(asyncio.get_running_loop())
        driver.add_listener(hub.broadcast_threadsafe)
        if mqtt_client is not None:
            driver.add_listener(mqtt_client.publish_plant_update)
        driver.start()
        logger.info(f"Fleet server started with {len(fleet)} machines")
        yield
        driver.stop()
        driver.remove_listener(hub.broadcast_threadsafe)
        if mqtt_client is not None:
            driver.remove_listener(mqtt_client.publish_plant_update)
            mqtt_client.disconnect()
        logger.info("Fleet server stopped")

    app = FastAPI(
        title="CNC Fleet Simulator",
        description="Simulated CNC fleet telemetry with alarms and plant analytics",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.config = config
    app.state.fleet = fleet
    app.state.driver = driver
    app.state.hub = hub

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.server.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(StarletteHTTPException)
    async def http_error(request: Request, exc: StarletteHTTPException):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})

    @app.exception_handler(RequestValidationError)
    async def validation_error(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=400,
            content={"error": "Invalid request body", "details": jsonable_encoder(exc.errors())},
        )

    def get_machine(machine_id: str) -> MachineSimulator:
        try:
            return fleet.get(machine_id)
        except MachineNotFoundError:
            raise HTTPException(status_code=404, detail="Machine not found") from None

    # =========================================================================
    # Root
    # =========================================================================

    @app.get("/")
    def root() -> Dict[str, Any]:
        return {
            "name": "CNC Fleet Simulator API",
            "version": __version__,
            "endpoints": ENDPOINTS,
            "websocket": "ws://[host]/ws for real-time updates",
            "fleet": {
                "total": len(fleet),
                "models": [
                    {"id": sim.machine_id, "model": sim.state.model, "type": sim.state.machine_type.value}
                    for sim in fleet
                ],
            },
        }

    # =========================================================================
    # Machines
    # =========================================================================

    @app.get("/api/machines")
    def list_machines():
        return fleet.snapshots()

    @app.get("/api/machines/{machine_id}")
    def get_machine_snapshot(machine_id: str):
        get_machine(machine_id)
        return fleet.snapshot(machine_id)

    @app.get("/api/machines/{machine_id}/dashboard")
    def get_machine_dashboard(machine_id: str):
        get_machine(machine_id)
        return build_dashboard(fleet.snapshot(machine_id))

    @app.post("/api/machines/{machine_id}/power")
    def set_power(machine_id: str, body: Any = Body(None)):
        get_machine(machine_id)
        command = parse_body(PowerCommand, body)
        fleet.set_power(machine_id, command.power)
        return {"success": True, "machine": machine_id, "power": command.power}

    @app.post("/api/machines/{machine_id}/alarm")
    def inject_alarm(machine_id: str, body: Any = Body(None)):
        get_machine(machine_id)
        command = parse_body(AlarmCommand, body)
        code = command.code or None
        fleet.inject_alarm(machine_id, code, command.message)
        return {
            "success": True,
            "machine": machine_id,
            "alarm": {"code": code, "message": command.message},
        }

    @app.delete("/api/machines/{machine_id}/alarm")
    def clear_alarm(machine_id: str):
        get_machine(machine_id)
        cleared = fleet.clear_alarm(machine_id)
        return {
            "success": True,
            "machine": machine_id,
            "cleared": cleared,
            "message": "Alarm cleared" if cleared else "No active alarm",
        }

    # =========================================================================
    # Plant and analytics
    # =========================================================================

    @app.get("/api/plant/status")
    def plant_status():
        return fleet.summarize(metrics.plant_status)

    @app.get("/api/plant/alarms")
    def plant_alarms():
        return fleet.summarize(metrics.active_alarms)

    @app.get("/api/plant/production")
    def plant_production():
        return fleet.summarize(metrics.production_summary)

    @app.get("/api/plant/health")
    def plant_health():
        return fleet.summarize(metrics.health_summary)

    @app.get("/api/analytics/uptime")
    def analytics_uptime():
        return fleet.summarize(metrics.uptime_analytics)

    @app.get("/api/analytics/alarms")
    def analytics_alarms():
        return fleet.summarize(metrics.alarm_analytics)

    # =========================================================================
    # WebSocket
    # =========================================================================

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket):
        await hub.connect(websocket)
        # fleet locks are blocking; keep them off the event loop
        update = await run_in_threadpool(fleet.plant_update)
        if not await hub.send(websocket, update):
            return
        try:
            while True:
                # inbound messages are ignored; this only detects the close
                await websocket.receive_text()
        except WebSocketDisconnect:
            hub.disconnect(websocket)

    return app


def run_server(
    config: Config,
    fleet: Optional[Fleet] = None,
    mqtt_client: Optional[MQTTClient] = None,
) -> None:
    """Serve the API with uvicorn until interrupted."""
    app = create_app(config, fleet=fleet, mqtt_client=mqtt_client)
    logger.info(f"Serving on http://{config.server.host}:{config.server.port}")
    uvicorn.run(app, host=config.server.host, port=config.server.port, log_config=None)
