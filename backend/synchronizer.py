"""
State Synchronizer - pushes role-filtered events to connected sessions.

Messages are appended to each recipient's outbox in the same atomic step as
the accepted mutation, so every session observes events in acceptance order.
A per-session sender task (pump) drains the outbox to the transport.

Wire envelope: {"type": <event>, "data": {...}}
"""

from typing import Dict, Iterable, Optional

import pydantic
from pydantic import BaseModel, field_validator

from errors import PersistenceFailure, SceneError, ValidationError
from logger import setup_logger
from scene_state import MAX_VISION_RADIUS, MIN_VISION_RADIUS
from sessions import PENDING_FOG_SETTINGS, PENDING_SNAPSHOT, Session, SessionRegistry
from visibility import Role, VisibilityFilter

logger = setup_logger("synchronizer")

# Server -> client events
MAP_CHANGED = "map-changed"
POI_VISIBILITY_CHANGED = "poi-visibility-changed"
ACTOR_MOVED = "actor-moved"
ACTOR_REMOVED = "actor-removed"
FOG_SETTINGS = "fog-settings"
FULL_STATE_SNAPSHOT = "full-state-snapshot"
STATE_RESET = "state-reset"
ERROR = "error"

# Client -> server messages
JOIN = "join"
REQUEST_FOG_SETTINGS = "request-fog-settings"
UPDATE_FOG_SETTINGS = "update-fog-settings"
REQUEST_SNAPSHOT = "request-snapshot"


class FogSettingsUpdate(BaseModel):
    """Director fog change, shared by PUT /api/fog and the update-fog-settings message."""
    fogEnabled: bool = True
    visionRadius: int
    showVisionCircles: bool = True

    @field_validator('visionRadius')
    @classmethod
    def validate_vision_radius(cls, v: int) -> int:
        if not MIN_VISION_RADIUS <= v <= MAX_VISION_RADIUS:
            raise ValueError(f'visionRadius must be between {MIN_VISION_RADIUS} and {MAX_VISION_RADIUS}')
        return v


def envelope(event_type: str, data: dict) -> dict:
    return {"type": event_type, "data": data}


def effective_role(session: Session) -> Role:
    """Sessions that have not joined yet get the viewer projection."""
    return session.role or Role.VIEWER


class StateSynchronizer:
    """Computes per-role projections and queues them for delivery."""

    def __init__(self, store, registry: SessionRegistry):
        self.store = store
        self.registry = registry
        self.visibility = VisibilityFilter(store)

    # ===== DELIVERY =====

    def _fan_out(self, event_type: str, project, sessions: Optional[Iterable[Session]] = None) -> int:
        """Queue one event for every session, projecting once per role."""
        cache: Dict[Role, Optional[dict]] = {}
        sent = 0
        for session in list(sessions if sessions is not None else self.registry.all_sessions()):
            role = effective_role(session)
            if role not in cache:
                cache[role] = project(role)
            if cache[role] is None:
                continue
            if self._deliver(session, envelope(event_type, cache[role])):
                sent += 1
        logger.debug(f"Queued {event_type} for {sent} sessions")
        return sent

    def _deliver(self, session: Session, message: dict) -> bool:
        if session.enqueue(message):
            return True
        if session.is_open:
            logger.warning(f"Outbox full for {session.session_id}, dropping the session")
            self.registry.unregister(session.session_id)
        return False

    def send_to(self, session: Session, event_type: str, data: dict) -> bool:
        return self._deliver(session, envelope(event_type, data))

    async def pump(self, session: Session):
        """Drain a session's outbox to its transport until it disconnects."""
        while True:
            message = await session.outbox.get()
            if message is None or not session.is_open:
                break
            try:
                await session.transport.send_json(message)
            except Exception as e:
                logger.warning(f"Send to {session.session_id} failed: {e}")
                self.registry.unregister(session.session_id)
                break

    # ===== MUTATION BROADCASTS =====

    def map_changed(self, map_id: str) -> int:
        return self._fan_out(MAP_CHANGED, lambda role: self.visibility.project_map_change(role, map_id))

    def poi_visibility_changed(self, poi_id: str) -> int:
        poi = self.store.state.points_of_interest.get(poi_id)
        if poi is None:
            return 0
        return self._fan_out(POI_VISIBILITY_CHANGED,
                             lambda role: self.visibility.project_poi_visibility(role, poi))

    def actor_moved(self, actor_id: str, map_id: str) -> int:
        return self._fan_out(ACTOR_MOVED,
                             lambda role: self.visibility.project_actor_moved(role, actor_id, map_id))

    def actor_removed(self, actor_id: str) -> int:
        return self._fan_out(ACTOR_REMOVED,
                             lambda role: self.visibility.project_actor_removed(role, actor_id))

    def fog_settings_changed(self) -> int:
        """Directors get the full settings, viewers the safe subset, unassigned sessions nothing."""
        sent = self._fan_out(FOG_SETTINGS, lambda role: self.visibility.project_fog_change(role),
                             self.registry.with_role(Role.DIRECTOR))
        sent += self._fan_out(FOG_SETTINGS, lambda role: self.visibility.project_fog_change(role),
                              self.registry.with_role(Role.VIEWER))
        return sent

    def state_reset(self, message: str = "Scene state replaced") -> int:
        """Tell every client to discard local state and re-fetch."""
        return self._fan_out(STATE_RESET, lambda role: {"message": message,
                                                        "currentMap": self.store.state.current_map})

    # ===== REPLIES =====

    def send_snapshot(self, session: Session) -> bool:
        snapshot = self.visibility.project_snapshot(effective_role(session))
        return self.send_to(session, FULL_STATE_SNAPSHOT, snapshot)

    def send_fog_settings(self, session: Session) -> bool:
        return self.send_to(session, FOG_SETTINGS, self.visibility.fog_settings_for(session.role))

    def send_error(self, session: Session, message: str, code: int = 400) -> bool:
        return self.send_to(session, ERROR, {"message": message, "code": code})

    def connect(self, transport, session_id: Optional[str] = None) -> Session:
        """Register a new session and queue its initial (viewer-safe) snapshot."""
        session = self.registry.register(transport, session_id)
        self.send_snapshot(session)
        # The role-scoped snapshot is owed once the client joins.
        self.registry.add_pending(session.session_id, PENDING_SNAPSHOT)
        return session

    def disconnect(self, session_id: str):
        self.registry.unregister(session_id)

    def join(self, session_id: str, role: Role) -> Optional[Session]:
        """Assign a role, replay role-scoped state and pending requests, then go active."""
        session = self.registry.get(session_id)
        if session is None or not session.is_open:
            return None
        role_changed = session.role != role
        self.registry.assign_role(session_id, role)
        pending = self.registry.take_pending(session_id)
        if PENDING_SNAPSHOT in pending or role_changed:
            self.send_snapshot(session)
        self.send_fog_settings(session)
        self.registry.activate(session_id)
        return session

    def request_fog_settings(self, session_id: str) -> bool:
        session = self.registry.get(session_id)
        if session is None:
            return False
        if session.role is None:
            self.registry.add_pending(session_id, PENDING_FOG_SETTINGS)
            return False
        return self.send_fog_settings(session)

    def update_fog_settings(self, settings: dict):
        """Validate, persist, then broadcast new fog settings."""
        try:
            update = FogSettingsUpdate.model_validate(settings)
        except pydantic.ValidationError as e:
            first = e.errors()[0]
            field = ".".join(str(part) for part in first["loc"]) or "fogSettings"
            raise ValidationError(f"Invalid fog settings ({field}): {first['msg']}") from e
        fog = self.store.update_fog_settings(
            fog_enabled=update.fogEnabled,
            vision_radius=update.visionRadius,
            show_vision_circles=update.showVisionCircles,
        )
        self.fog_settings_changed()
        return fog

    # ===== CLIENT MESSAGES =====

    def handle_message(self, session_id: str, message) -> None:
        session = self.registry.get(session_id)
        if session is None:
            return
        try:
            self._dispatch(session, message)
        except PersistenceFailure as e:
            logger.error(f"Persistence failure handling message from {session_id}: {e.message}")
            self.send_error(session, e.message, e.status_code)
        except SceneError as e:
            self.send_error(session, e.message, e.status_code)

    def _dispatch(self, session: Session, message):
        if not isinstance(message, dict) or not isinstance(message.get("type"), str):
            raise ValidationError("Message must be an object with a 'type'")
        msg_type = message["type"]
        data = message.get("data") if isinstance(message.get("data"), dict) else {}

        if msg_type == JOIN:
            role = Role.parse(data.get("role"))
            if role is None:
                raise ValidationError("role must be 'director' or 'viewer'")
            self.join(session.session_id, role)
        elif msg_type == REQUEST_FOG_SETTINGS:
            self.request_fog_settings(session.session_id)
        elif msg_type == UPDATE_FOG_SETTINGS:
            if session.role != Role.DIRECTOR:
                raise SceneError("Only the director can change fog settings", status_code=403)
            self.update_fog_settings(data)
        elif msg_type == REQUEST_SNAPSHOT:
            self.send_snapshot(session)
        else:
            raise ValidationError(f"Unknown message type '{msg_type}'")
