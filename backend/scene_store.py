"""
Scene Store Module - the single owner of the authoritative SceneState.

Every mutator runs validate -> mutate -> persist and returns the updated
record. Broadcasting is left to the caller so that a PersistenceFailure can
stop an unsaved change from being announced.
"""

import threading
import uuid
from contextlib import contextmanager
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from errors import NotFoundError, ValidationError
from logger import setup_logger
from scene_state import (
    Actor,
    FogSettings,
    GridSize,
    MapInfo,
    MAX_VISION_RADIUS,
    MIN_VISION_RADIUS,
    PointOfInterest,
    POIType,
    Position,
    SceneState,
    clamp_grid_dimension,
    now_iso,
)

logger = setup_logger("scene_store")

VALID_POI_TYPES = {t.value for t in POIType}


class SceneStore:
    """CRUD over maps, actors, POIs and actor positions on one injected SceneState."""

    def __init__(self, state: Optional[SceneState] = None, persistence=None,
                 position_policy: str = "loose"):
        self._lock = threading.RLock()
        self._state = state or SceneState()
        self._persistence = persistence
        self.position_policy = position_policy

    @property
    def state(self) -> SceneState:
        """Read-only access for the visibility filter and synchronizer."""
        return self._state

    @contextmanager
    def read(self):
        """Hold the store lock across a multi-step read."""
        with self._lock:
            yield self._state

    def _persist(self):
        """Write the snapshot (must be called with lock held)."""
        if self._persistence is not None:
            self._persistence.save(self._state)

    def save(self) -> Optional[str]:
        """Public save method (acquires lock). Used by autosave and 'save now'."""
        with self._lock:
            self._persist()
            return self._state.last_saved

    def snapshot(self) -> dict:
        """One atomic read of the whole scene."""
        with self._lock:
            return self._state.to_dict()

    def replace_state(self, new_state: SceneState):
        """Swap in an imported scene and persist it."""
        with self._lock:
            new_state.reconcile()
            self._state = new_state
            self._persist()
        logger.info(f"Scene replaced: {len(new_state.maps)} maps, "
                    f"{len(new_state.points_of_interest)} POIs, {len(new_state.actors)} actors")

    # ===== LOOKUPS =====

    def _require_map(self, map_id: str) -> MapInfo:
        map_info = self._state.maps.get(map_id)
        if map_info is None:
            raise NotFoundError("Map not found")
        return map_info

    def _require_actor(self, actor_id: str) -> Actor:
        actor = self._state.actors.get(actor_id)
        if actor is None:
            raise NotFoundError("Actor not found")
        return actor

    def _require_poi(self, poi_id: str) -> PointOfInterest:
        poi = self._state.points_of_interest.get(poi_id)
        if poi is None:
            raise NotFoundError("POI not found")
        return poi

    # ===== MAPS =====

    def list_maps(self) -> List[dict]:
        with self._lock:
            return [m.to_dict() for m in self._state.maps.values()]

    def get_map(self, map_id: str) -> MapInfo:
        with self._lock:
            return self._require_map(map_id)

    def create_map(self, name: str, width=None, height=None,
                   image_url: Optional[str] = None) -> MapInfo:
        """Create a map. Out-of-range grid sizes become the default of 20."""
        map_info = MapInfo(
            id=str(uuid.uuid4()),
            name=name,
            grid_size=GridSize(clamp_grid_dimension(width), clamp_grid_dimension(height)),
            image_url=image_url,
            created_at=now_iso(),
        )
        with self._lock:
            self._state.maps[map_info.id] = map_info
            self._persist()
        logger.info(f"Created map '{name}' ({map_info.grid_size.width}x{map_info.grid_size.height})")
        return map_info

    def update_map(self, map_id: str, name: Optional[str] = None, width=None, height=None,
                   image_url: Optional[str] = None) -> MapInfo:
        with self._lock:
            map_info = self._require_map(map_id)
            if name is not None:
                map_info.name = name
            if width is not None:
                map_info.grid_size.width = clamp_grid_dimension(width)
            if height is not None:
                map_info.grid_size.height = clamp_grid_dimension(height)
            if image_url is not None:
                map_info.image_url = image_url
            self._persist()
        logger.info(f"Updated map {map_id}")
        return map_info

    def set_current_map(self, map_id: str) -> Tuple[MapInfo, List[dict]]:
        """Make a map current. Returns it with the actors placed on it."""
        with self._lock:
            map_info = self._require_map(map_id)
            self._state.current_map = map_id
            self._persist()
            actors = self._state.actors_on_map(map_id)
        logger.info(f"Current map set to '{map_info.name}' ({len(actors)} actors)")
        return map_info, actors

    def delete_map(self, map_id: str) -> MapInfo:
        """Delete a map with its POIs and position bindings. Actors survive."""
        with self._lock:
            map_info = self._require_map(map_id)
            del self._state.maps[map_id]

            doomed = [poi_id for poi_id, poi in self._state.points_of_interest.items()
                      if poi.map_id == map_id]
            for poi_id in doomed:
                del self._state.points_of_interest[poi_id]
                self._state.visible_pois.discard(poi_id)

            self._state.actor_positions.pop(map_id, None)

            if self._state.current_map == map_id:
                self._state.current_map = None
            self._persist()
        logger.info(f"Deleted map {map_id} and {len(doomed)} POIs")
        return map_info

    # ===== ACTORS =====

    def list_actors(self) -> List[dict]:
        with self._lock:
            return [a.to_dict() for a in self._state.actors.values()]

    def get_actor(self, actor_id: str) -> Actor:
        with self._lock:
            return self._require_actor(actor_id)

    def create_actor(self, name: str, color: Optional[str] = None,
                     icon: Optional[str] = None) -> Actor:
        actor = Actor(id=str(uuid.uuid4()), name=name, created_at=now_iso())
        if color:
            actor.color = color
        if icon:
            actor.icon = icon
        with self._lock:
            self._state.actors[actor.id] = actor
            self._persist()
        logger.info(f"Created actor '{name}'")
        return actor

    def delete_actor(self, actor_id: str) -> Actor:
        """Delete an actor and its position on every map."""
        with self._lock:
            actor = self._require_actor(actor_id)
            del self._state.actors[actor_id]
            for positions in self._state.actor_positions.values():
                positions.pop(actor_id, None)
            self._persist()
        logger.info(f"Deleted actor {actor_id}")
        return actor

    def map_actors(self, map_id: str) -> List[dict]:
        with self._lock:
            return self._state.actors_on_map(map_id)

    def _apply_position_policy(self, map_info: MapInfo, x: int, y: int) -> Tuple[int, int]:
        grid = map_info.grid_size
        if self.position_policy == "reject" and not grid.contains(x, y):
            raise ValidationError(f"Position ({x}, {y}) is outside the {grid.width}x{grid.height} grid")
        if self.position_policy == "clamp":
            x = min(max(x, 0), grid.width - 1)
            y = min(max(y, 0), grid.height - 1)
        return x, y

    def set_actor_position(self, actor_id: str, map_id: str, x: int, y: int) -> Position:
        """Place (or move) an actor on a map, overwriting any prior position there."""
        with self._lock:
            self._require_actor(actor_id)
            map_info = self._require_map(map_id)
            x, y = self._apply_position_policy(map_info, int(x), int(y))
            position = Position(x, y)
            self._state.actor_positions.setdefault(map_id, {})[actor_id] = position
            self._persist()
        logger.info(f"Actor {actor_id} moved to ({x}, {y}) on map {map_id}")
        return position

    # ===== POINTS OF INTEREST =====

    def list_map_pois(self, map_id: str) -> List[dict]:
        with self._lock:
            return [p.to_dict() for p in self._state.pois_on_map(map_id)]

    def get_poi(self, poi_id: str) -> PointOfInterest:
        with self._lock:
            return self._require_poi(poi_id)

    def create_poi(self, map_id: str, name: str, x: int, y: int,
                   description: str = "", poi_type: Optional[str] = None) -> PointOfInterest:
        """Create a hidden POI on a map."""
        poi_type = poi_type or POIType.GENERIC.value
        if poi_type not in VALID_POI_TYPES:
            raise ValidationError(f"Unknown POI type '{poi_type}'")
        with self._lock:
            self._require_map(map_id)
            poi = PointOfInterest(
                id=str(uuid.uuid4()),
                map_id=map_id,
                x=int(x),
                y=int(y),
                name=name,
                description=description or "",
                type=poi_type,
                visible=False,
                created_at=now_iso(),
            )
            self._state.points_of_interest[poi.id] = poi
            self._persist()
        logger.info(f"Created {poi_type} POI '{name}' at ({x}, {y}) on map {map_id}")
        return poi

    def set_poi_visibility(self, poi_id: str, visible: bool) -> PointOfInterest:
        """Reveal or hide a POI, keeping visiblePOIs in step with the flag."""
        with self._lock:
            poi = self._require_poi(poi_id)
            poi.visible = bool(visible)
            if poi.visible:
                self._state.visible_pois.add(poi_id)
            else:
                self._state.visible_pois.discard(poi_id)
            self._persist()
        logger.info(f"POI {poi_id} visibility -> {poi.visible}")
        return poi

    # ===== FOG =====

    def get_fog_settings(self) -> FogSettings:
        with self._lock:
            return self._state.fog_settings

    def update_fog_settings(self, fog_enabled: bool, vision_radius: int,
                            show_vision_circles: bool = True) -> FogSettings:
        try:
            vision_radius = int(vision_radius)
        except (TypeError, ValueError) as e:
            raise ValidationError("visionRadius must be an integer") from e
        if not MIN_VISION_RADIUS <= vision_radius <= MAX_VISION_RADIUS:
            raise ValidationError(
                f"visionRadius must be between {MIN_VISION_RADIUS} and {MAX_VISION_RADIUS}"
            )
        with self._lock:
            self._state.fog_settings = FogSettings(
                fog_enabled=bool(fog_enabled),
                vision_radius=vision_radius,
                show_vision_circles=bool(show_vision_circles),
            )
            self._persist()
            settings = self._state.fog_settings
        logger.info(f"Fog settings updated: {settings.to_dict()}")
        return settings

    # ===== INFO =====

    def info(self) -> Dict:
        with self._lock:
            return {
                "mapsCount": len(self._state.maps),
                "poisCount": len(self._state.points_of_interest),
                "visiblePoisCount": len(self._state.visible_pois),
                "actorsCount": len(self._state.actors),
                "currentMap": self._state.current_map,
                "lastSaved": self._state.last_saved,
                "timestamp": datetime.now().isoformat(),
            }
