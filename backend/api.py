"""FastAPI server for the shared scene: REST CRUD plus the /ws event stream."""
import asyncio
import json
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, File, Form, Request, UploadFile, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel

from errors import SceneError
from logger import setup_logger
from persistence import EXPORT_FILE_NAME
from server import SceneServer
from synchronizer import FogSettingsUpdate
from uploads import UPLOADS_URL_PREFIX
from visibility import Role

logger = setup_logger("api")

router = APIRouter()


def get_server(request: Request) -> SceneServer:
    return request.app.state.server


# Pydantic models for request bodies
class MapUpdate(BaseModel):
    name: Optional[str] = None
    gridWidth: Optional[int] = None
    gridHeight: Optional[int] = None


class POICreate(BaseModel):
    name: str
    x: int
    y: int
    description: str = ""
    type: Optional[str] = None


class VisibilityUpdate(BaseModel):
    visible: bool


class ActorCreate(BaseModel):
    name: str
    color: Optional[str] = None
    icon: Optional[str] = None


class PositionUpdate(BaseModel):
    mapId: str
    x: int
    y: int


# === Scene / housekeeping ===

@router.get("/api/health")
def health():
    """API health check."""
    return {"status": "ok", "message": "Scene sync server"}


@router.get("/api/info")
async def get_info(server: SceneServer = Depends(get_server)):
    """Scene statistics."""
    info = server.store.info()
    info["lastSaved"] = server.persistence.last_saved_at() or info["lastSaved"]
    info["sessions"] = {
        "total": server.registry.count(),
        "directors": server.registry.count(Role.DIRECTOR),
        "viewers": server.registry.count(Role.VIEWER),
    }
    return info


@router.get("/api/sessions")
async def list_sessions(server: SceneServer = Depends(get_server)):
    return {"status": "success", "sessions": server.registry.describe()}


@router.get("/api/scene")
def get_scene(role: str = "viewer", server: SceneServer = Depends(get_server)):
    """Role-filtered snapshot, the same body a socket receives on connect/join."""
    parsed = Role.parse(role)
    if parsed is None:
        raise SceneError("role must be 'director' or 'viewer'", status_code=422)
    return server.sync.visibility.project_snapshot(parsed)


@router.post("/api/save")
async def save_now(server: SceneServer = Depends(get_server)):
    """Manual save trigger."""
    saved_at = server.save_now()
    return {"success": True, "message": "Game state saved successfully", "timestamp": saved_at}


@router.get("/api/export")
def export_scene(server: SceneServer = Depends(get_server)):
    return JSONResponse(
        content=server.export_document(),
        headers={"Content-Disposition": f'attachment; filename="{EXPORT_FILE_NAME}"'},
    )


@router.post("/api/import")
async def import_scene(gameStateFile: Optional[UploadFile] = File(None),
                       server: SceneServer = Depends(get_server)):
    if gameStateFile is None:
        raise SceneError("No file uploaded", status_code=400)
    raw = await gameStateFile.read()
    return server.import_document(raw)


# === Maps ===

@router.get("/api/maps")
def list_maps(server: SceneServer = Depends(get_server)):
    return server.store.list_maps()


@router.post("/api/maps")
async def create_map(name: str = Form(...),
                     gridWidth: Optional[str] = Form(None),
                     gridHeight: Optional[str] = Form(None),
                     mapImage: Optional[UploadFile] = File(None),
                     server: SceneServer = Depends(get_server)):
    image_url = None
    if mapImage is not None and mapImage.filename:
        image_url = await server.uploads.store(mapImage)
    map_info = server.store.create_map(name, gridWidth, gridHeight, image_url)
    return map_info.to_dict()


@router.put("/api/maps/{map_id}")
async def update_map(map_id: str, update: MapUpdate, server: SceneServer = Depends(get_server)):
    map_info = server.store.update_map(map_id, name=update.name,
                                       width=update.gridWidth, height=update.gridHeight)
    if server.store.state.current_map == map_id:
        server.sync.map_changed(map_id)
    return map_info.to_dict()


@router.delete("/api/maps/{map_id}")
async def delete_map(map_id: str, server: SceneServer = Depends(get_server)):
    was_current = server.store.state.current_map == map_id
    server.store.delete_map(map_id)
    if was_current:
        server.sync.state_reset("Current map deleted")
    return {"success": True, "message": "Map deleted successfully"}


@router.post("/api/maps/{map_id}/set-current")
async def set_current_map(map_id: str, server: SceneServer = Depends(get_server)):
    server.store.set_current_map(map_id)
    server.sync.map_changed(map_id)
    return {"success": True, "currentMap": map_id}


@router.get("/api/maps/{map_id}/poi")
def list_map_pois(map_id: str, server: SceneServer = Depends(get_server)):
    return server.store.list_map_pois(map_id)


@router.post("/api/maps/{map_id}/poi")
async def create_poi(map_id: str, poi: POICreate, server: SceneServer = Depends(get_server)):
    created = server.store.create_poi(map_id, poi.name, poi.x, poi.y, poi.description, poi.type)
    return created.to_dict()


@router.get("/api/maps/{map_id}/actors")
def list_map_actors(map_id: str, server: SceneServer = Depends(get_server)):
    return server.store.map_actors(map_id)


@router.get("/api/maps/{map_id}/visibility")
def get_map_visibility(map_id: str, server: SceneServer = Depends(get_server)):
    """Viewer disclosure mask for a map (None = whole map)."""
    server.store.get_map(map_id)
    payload = server.sync.visibility.visibility_payload(map_id)
    payload["mapId"] = map_id
    return payload


# === Points of interest ===

@router.put("/api/poi/{poi_id}/visibility")
async def set_poi_visibility(poi_id: str, update: VisibilityUpdate,
                             server: SceneServer = Depends(get_server)):
    poi = server.store.set_poi_visibility(poi_id, update.visible)
    server.sync.poi_visibility_changed(poi_id)
    return poi.to_dict()


# === Actors ===

@router.get("/api/actors")
def list_actors(server: SceneServer = Depends(get_server)):
    return server.store.list_actors()


@router.post("/api/actors")
async def create_actor(actor: ActorCreate, server: SceneServer = Depends(get_server)):
    created = server.store.create_actor(actor.name, actor.color, actor.icon)
    return created.to_dict()


@router.delete("/api/actors/{actor_id}")
async def delete_actor(actor_id: str, server: SceneServer = Depends(get_server)):
    server.store.delete_actor(actor_id)
    server.sync.actor_removed(actor_id)
    return {"success": True}


@router.put("/api/actors/{actor_id}/position")
async def set_actor_position(actor_id: str, update: PositionUpdate,
                             server: SceneServer = Depends(get_server)):
    position = server.store.set_actor_position(actor_id, update.mapId, update.x, update.y)
    server.sync.actor_moved(actor_id, update.mapId)
    return {"success": True, "position": position.to_dict()}


# === Fog ===

@router.get("/api/fog")
def get_fog_settings(server: SceneServer = Depends(get_server)):
    return server.store.get_fog_settings().to_dict()


@router.put("/api/fog")
async def update_fog_settings(update: FogSettingsUpdate, server: SceneServer = Depends(get_server)):
    fog = server.sync.update_fog_settings(update.model_dump())
    return fog.to_dict()


# === WebSocket ===

@router.websocket("/ws")
async def scene_socket(websocket: WebSocket):
    server: SceneServer = websocket.app.state.server
    await websocket.accept()
    session = server.sync.connect(websocket)
    sender = asyncio.create_task(server.sync.pump(session))
    try:
        while True:
            raw = await websocket.receive_text()
            try:
                message = json.loads(raw)
            except json.JSONDecodeError:
                server.sync.send_error(session, "Invalid JSON", 400)
                continue
            server.sync.handle_message(session.session_id, message)
    except WebSocketDisconnect:
        pass
    finally:
        server.sync.disconnect(session.session_id)
        sender.cancel()
        try:
            await sender
        except asyncio.CancelledError:
            pass


def create_api(server: Optional[SceneServer] = None) -> FastAPI:
    """Build the app around an explicitly owned SceneServer."""
    server = server or SceneServer()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await server.startup()
        yield
        await server.shutdown()

    api = FastAPI(title="Scene Sync API", version="1.0.0", lifespan=lifespan)
    api.state.server = server

    api.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @api.exception_handler(SceneError)
    async def scene_error_handler(request: Request, exc: SceneError):
        """Handle all SceneError subclasses with consistent JSON response."""
        return JSONResponse(
            status_code=exc.status_code,
            content={"status": "error", "message": exc.message}
        )

    @api.exception_handler(Exception)
    async def general_error_handler(request: Request, exc: Exception):
        """Handle unexpected errors with consistent JSON response."""
        logger.exception(f"Unhandled error on {request.url.path}")
        server.emergency_save(f"unhandled {type(exc).__name__} on {request.url.path}")
        return JSONResponse(
            status_code=500,
            content={"status": "error", "message": "Internal server error"}
        )

    api.include_router(router)
    api.mount(UPLOADS_URL_PREFIX, StaticFiles(directory=str(server.settings.uploads_dir)), name="uploads")
    return api


if __name__ == "__main__":
    import uvicorn
    scene_server = SceneServer()
    uvicorn.run(create_api(scene_server), host=scene_server.settings.host, port=scene_server.settings.port)
