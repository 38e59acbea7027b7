"""
Scene State Module - canonical records for the shared tabletop scene.

This module provides:
- Maps with grid dimensions and an optional background image
- Actors (tokens) and their per-map cell positions
- Points of interest with a category and a visibility flag
- Global fog-of-war settings
- The SceneState aggregate that is persisted, exported and broadcast

Dict forms use camelCase keys so that saved and exported documents keep the
same shape as the JSON the clients consume.
"""

from datetime import datetime
from typing import Dict, List, Optional, Set
from dataclasses import dataclass, field
from enum import Enum


# =============================================================================
# ENUMS & CONSTANTS
# =============================================================================

class POIType(Enum):
    """Categories of points of interest."""
    GENERIC = "generic"
    TREASURE = "treasure"
    ENEMY = "enemy"
    NPC = "npc"


POI_TYPE_ICONS: Dict[str, str] = {
    POIType.GENERIC.value: "📍",
    POIType.TREASURE.value: "💰",
    POIType.ENEMY.value: "⚔️",
    POIType.NPC.value: "👤",
}

DEFAULT_ACTOR_COLOR = "#007bff"
DEFAULT_ACTOR_ICON = "👤"

DEFAULT_GRID_SIZE = 20
MIN_GRID_SIZE = 5
MAX_GRID_SIZE = 100

DEFAULT_VISION_RADIUS = 5
MIN_VISION_RADIUS = 2
MAX_VISION_RADIUS = 10


def now_iso() -> str:
    return datetime.now().isoformat()


def clamp_grid_dimension(value) -> int:
    """Grid dimensions outside [5, 100] fall back to the default rather than erroring."""
    try:
        value = int(value)
    except (TypeError, ValueError):
        return DEFAULT_GRID_SIZE
    if value < MIN_GRID_SIZE or value > MAX_GRID_SIZE:
        return DEFAULT_GRID_SIZE
    return value


def poi_icon(poi_type: str) -> str:
    return POI_TYPE_ICONS.get(poi_type, POI_TYPE_ICONS[POIType.GENERIC.value])


# =============================================================================
# DATA MODELS
# =============================================================================

@dataclass
class GridSize:
    width: int = DEFAULT_GRID_SIZE
    height: int = DEFAULT_GRID_SIZE

    def to_dict(self) -> dict:
        return {"width": self.width, "height": self.height}

    @classmethod
    def from_dict(cls, data: dict) -> "GridSize":
        return cls(
            width=clamp_grid_dimension(data.get("width")),
            height=clamp_grid_dimension(data.get("height")),
        )

    def contains(self, x: int, y: int) -> bool:
        return 0 <= x < self.width and 0 <= y < self.height


@dataclass
class MapInfo:
    """A grid map the director can put on the table."""
    id: str
    name: str
    grid_size: GridSize = field(default_factory=GridSize)
    image_url: Optional[str] = None  # Reference returned by the upload collaborator
    created_at: str = ""

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "gridSize": self.grid_size.to_dict(),
            "imageUrl": self.image_url,
            "createdAt": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "MapInfo":
        return cls(
            id=data["id"],
            name=data.get("name", ""),
            grid_size=GridSize.from_dict(data.get("gridSize") or {}),
            image_url=data.get("imageUrl"),
            created_at=data.get("createdAt", ""),
        )


@dataclass
class Actor:
    """A token that can be placed on maps."""
    id: str
    name: str
    color: str = DEFAULT_ACTOR_COLOR
    icon: str = DEFAULT_ACTOR_ICON
    created_at: str = ""

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "color": self.color,
            "icon": self.icon,
            "createdAt": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Actor":
        return cls(
            id=data["id"],
            name=data.get("name", ""),
            color=data.get("color") or DEFAULT_ACTOR_COLOR,
            icon=data.get("icon") or DEFAULT_ACTOR_ICON,
            created_at=data.get("createdAt", ""),
        )


@dataclass
class Position:
    """Integer cell coordinate of an actor on one map."""
    x: int
    y: int

    def to_dict(self) -> dict:
        return {"x": self.x, "y": self.y}

    @classmethod
    def from_dict(cls, data: dict) -> "Position":
        return cls(x=int(data["x"]), y=int(data["y"]))


@dataclass
class PointOfInterest:
    """A named, located point of interest. Hidden from viewers until revealed."""
    id: str
    map_id: str
    x: int
    y: int
    name: str
    description: str = ""
    type: str = POIType.GENERIC.value
    visible: bool = False
    created_at: str = ""

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "mapId": self.map_id,
            "x": self.x,
            "y": self.y,
            "name": self.name,
            "description": self.description,
            "type": self.type,
            "visible": self.visible,
            "createdAt": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "PointOfInterest":
        return cls(
            id=data["id"],
            map_id=data["mapId"],
            x=int(data.get("x", 0)),
            y=int(data.get("y", 0)),
            name=data.get("name", ""),
            description=data.get("description") or "",
            type=data.get("type") or POIType.GENERIC.value,
            visible=bool(data.get("visible", False)),
            created_at=data.get("createdAt", ""),
        )


@dataclass
class FogSettings:
    """Process-wide fog-of-war configuration, changed only by the director."""
    fog_enabled: bool = True
    vision_radius: int = DEFAULT_VISION_RADIUS
    show_vision_circles: bool = True  # Director-only rendering flag

    def to_dict(self) -> dict:
        return {
            "fogEnabled": self.fog_enabled,
            "visionRadius": self.vision_radius,
            "showVisionCircles": self.show_vision_circles,
        }

    def viewer_dict(self) -> dict:
        """The subset viewers are allowed to see."""
        return {
            "fogEnabled": self.fog_enabled,
            "visionRadius": self.vision_radius,
        }

    def has_valid_radius(self) -> bool:
        return MIN_VISION_RADIUS <= self.vision_radius <= MAX_VISION_RADIUS

    @classmethod
    def from_dict(cls, data: dict) -> "FogSettings":
        return cls(
            fog_enabled=bool(data.get("fogEnabled", True)),
            vision_radius=int(data.get("visionRadius", DEFAULT_VISION_RADIUS)),
            show_vision_circles=bool(data.get("showVisionCircles", True)),
        )


@dataclass
class SceneState:
    """Complete scene state container."""
    maps: Dict[str, MapInfo] = field(default_factory=dict)
    current_map: Optional[str] = None
    points_of_interest: Dict[str, PointOfInterest] = field(default_factory=dict)
    visible_pois: Set[str] = field(default_factory=set)
    actors: Dict[str, Actor] = field(default_factory=dict)
    # map_id -> actor_id -> Position
    actor_positions: Dict[str, Dict[str, Position]] = field(default_factory=dict)
    fog_settings: FogSettings = field(default_factory=FogSettings)
    last_saved: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "maps": {map_id: m.to_dict() for map_id, m in self.maps.items()},
            "currentMap": self.current_map,
            "pointsOfInterest": {poi_id: p.to_dict() for poi_id, p in self.points_of_interest.items()},
            "visiblePOIs": sorted(self.visible_pois),
            "actors": {actor_id: a.to_dict() for actor_id, a in self.actors.items()},
            "actorPositions": {
                map_id: {actor_id: pos.to_dict() for actor_id, pos in positions.items()}
                for map_id, positions in self.actor_positions.items()
            },
            "fogSettings": self.fog_settings.to_dict(),
            "lastSaved": self.last_saved,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "SceneState":
        state = cls(
            maps={map_id: MapInfo.from_dict(m) for map_id, m in (data.get("maps") or {}).items()},
            current_map=data.get("currentMap"),
            points_of_interest={
                poi_id: PointOfInterest.from_dict(p)
                for poi_id, p in (data.get("pointsOfInterest") or {}).items()
            },
            visible_pois=set(data.get("visiblePOIs") or []),
            actors={actor_id: Actor.from_dict(a) for actor_id, a in (data.get("actors") or {}).items()},
            actor_positions={
                map_id: {actor_id: Position.from_dict(pos) for actor_id, pos in (positions or {}).items()}
                for map_id, positions in (data.get("actorPositions") or {}).items()
            },
            fog_settings=FogSettings.from_dict(data.get("fogSettings") or {}),
            last_saved=data.get("lastSaved"),
        )
        state.reconcile()
        return state

    def reconcile(self) -> None:
        """Restore the cross-entity invariants on a loaded or imported state.

        Orphaned POIs and dangling position bindings are dropped, and the
        visiblePOIs set is rebuilt so that it matches the POI flags exactly.
        """
        self.points_of_interest = {
            poi_id: poi for poi_id, poi in self.points_of_interest.items()
            if poi.map_id in self.maps
        }
        self.actor_positions = {
            map_id: {actor_id: pos for actor_id, pos in positions.items() if actor_id in self.actors}
            for map_id, positions in self.actor_positions.items()
            if map_id in self.maps
        }
        if self.current_map not in self.maps:
            self.current_map = None

        for poi in self.points_of_interest.values():
            if poi.id in self.visible_pois:
                poi.visible = True
        self.visible_pois = {poi.id for poi in self.points_of_interest.values() if poi.visible}

    def actors_on_map(self, map_id: str) -> List[dict]:
        """Actor records merged with their (x, y) on the given map."""
        result = []
        for actor_id, pos in self.actor_positions.get(map_id, {}).items():
            actor = self.actors.get(actor_id)
            if actor:
                result.append({**actor.to_dict(), "x": pos.x, "y": pos.y})
        return result

    def pois_on_map(self, map_id: str) -> List[PointOfInterest]:
        return [p for p in self.points_of_interest.values() if p.map_id == map_id]
