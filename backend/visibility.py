"""
Visibility Module - per-role projections of the scene (fog of war).

The director sees everything. Viewers see the current map, every actor on it,
only the POIs the director has revealed, and a cell-level disclosure mask:
with fog enabled a cell is disclosed iff it lies within the vision radius
(Euclidean, inclusive) of at least one actor on that map.
"""

import functools
import math
from enum import Enum
from typing import Iterable, List, Optional, Set, Tuple

from scene_state import PointOfInterest, SceneState, poi_icon

Cell = Tuple[int, int]


class Role(Enum):
    DIRECTOR = "director"
    VIEWER = "viewer"

    @classmethod
    def parse(cls, value) -> Optional["Role"]:
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            return None


def cell_distance(a: Cell, b: Cell) -> float:
    """Straight-line distance between two cell centres."""
    return math.hypot(a[0] - b[0], a[1] - b[1])


def cells_in_radius(origin: Cell, radius: int) -> Iterable[Cell]:
    ox, oy = origin
    r = max(int(radius), 0)
    for y in range(oy - r, oy + r + 1):
        for x in range(ox - r, ox + r + 1):
            if cell_distance(origin, (x, y)) <= radius:
                yield (x, y)


def _locked(method):
    """Run a read under the store lock so it never sees a half-applied mutation."""
    @functools.wraps(method)
    def wrapper(self, *args, **kwargs):
        with self._store.read():
            return method(self, *args, **kwargs)
    return wrapper


class VisibilityFilter:
    """Derives what each role may perceive. Never mutates the scene."""

    def __init__(self, store):
        self._store = store

    @property
    def state(self) -> SceneState:
        return self._store.state

    # ===== CELL DISCLOSURE =====

    def actor_cells(self, map_id: Optional[str]) -> List[Cell]:
        if not map_id:
            return []
        return [(pos.x, pos.y) for pos in self.state.actor_positions.get(map_id, {}).values()]

    @_locked
    def is_cell_visible(self, map_id: Optional[str], x: int, y: int) -> bool:
        fog = self.state.fog_settings
        if not fog.fog_enabled:
            return True
        return any(
            cell_distance(actor, (x, y)) <= fog.vision_radius
            for actor in self.actor_cells(map_id)
        )

    @_locked
    def disclosed_cells(self, map_id: Optional[str]) -> Optional[List[List[int]]]:
        """In-grid cells disclosed to viewers. None means the whole map (fog off)."""
        fog = self.state.fog_settings
        if not fog.fog_enabled:
            return None
        map_info = self.state.maps.get(map_id) if map_id else None
        if map_info is None:
            return []
        cells: Set[Cell] = set()
        for actor in self.actor_cells(map_id):
            for cell in cells_in_radius(actor, fog.vision_radius):
                if map_info.grid_size.contains(*cell):
                    cells.add(cell)
        return [[x, y] for x, y in sorted(cells)]

    @_locked
    def vision_circles(self, map_id: Optional[str]) -> List[dict]:
        """Director-only diagnostic overlay."""
        fog = self.state.fog_settings
        if not map_id or not fog.show_vision_circles:
            return []
        return [
            {"actorId": actor_id, "x": pos.x, "y": pos.y, "radius": fog.vision_radius}
            for actor_id, pos in self.state.actor_positions.get(map_id, {}).items()
        ]

    @_locked
    def visibility_payload(self, map_id: Optional[str]) -> dict:
        fog = self.state.fog_settings
        return {
            "fogEnabled": fog.fog_enabled,
            "visionRadius": fog.vision_radius,
            "disclosedCells": self.disclosed_cells(map_id),
        }

    # ===== PAYLOADS =====

    def poi_payload(self, poi: PointOfInterest) -> dict:
        return {**poi.to_dict(), "icon": poi_icon(poi.type)}

    def _viewer_poi(self, poi: PointOfInterest) -> dict:
        payload = self.poi_payload(poi)
        payload["disclosed"] = self.is_cell_visible(poi.map_id, poi.x, poi.y)
        return payload

    def _viewer_actors(self, map_id: Optional[str]) -> List[dict]:
        if not map_id:
            return []
        return [
            {**actor, "disclosed": self.is_cell_visible(map_id, actor["x"], actor["y"])}
            for actor in self.state.actors_on_map(map_id)
        ]

    def visible_pois_on_map(self, map_id: Optional[str]) -> List[PointOfInterest]:
        if not map_id:
            return []
        return [poi for poi in self.state.pois_on_map(map_id) if poi.id in self.state.visible_pois]

    def fog_settings_for(self, role: Role) -> dict:
        fog = self.state.fog_settings
        if role == Role.DIRECTOR:
            return fog.to_dict()
        return fog.viewer_dict()

    # ===== PROJECTIONS =====

    def _map_view(self, role: Role, map_id: Optional[str]) -> dict:
        map_info = self.state.maps.get(map_id) if map_id else None
        view = {"map": map_info.to_dict() if map_info else None}
        if role == Role.DIRECTOR:
            view["actors"] = self.state.actors_on_map(map_id) if map_id else []
            view["pointsOfInterest"] = [self.poi_payload(p) for p in self.state.pois_on_map(map_id)] if map_id else []
            view["visiblePOIs"] = [self.poi_payload(p) for p in self.visible_pois_on_map(map_id)]
            view["visionCircles"] = self.vision_circles(map_id)
        else:
            view["actors"] = self._viewer_actors(map_id)
            view["visiblePOIs"] = [self._viewer_poi(p) for p in self.visible_pois_on_map(map_id)]
            view["visibility"] = self.visibility_payload(map_id)
        return view

    @_locked
    def project_snapshot(self, role: Role) -> dict:
        """Full-state snapshot body for one session."""
        current = self.state.current_map
        body = {"role": role.value, "currentMap": current}
        body.update(self._map_view(role, current))
        body["fogSettings"] = self.fog_settings_for(role)
        return body

    @_locked
    def project_map_change(self, role: Role, map_id: str) -> dict:
        body = {"mapId": map_id}
        body.update(self._map_view(role, map_id))
        return body

    @_locked
    def project_poi_visibility(self, role: Role, poi: PointOfInterest) -> dict:
        if role == Role.DIRECTOR:
            return {"poiId": poi.id, "visible": poi.visible, "poi": self.poi_payload(poi)}
        if not poi.visible:
            # Hidden POIs never reach viewers; they only learn to drop the id.
            return {"poiId": poi.id, "visible": False}
        return {"poiId": poi.id, "visible": True, "poi": self._viewer_poi(poi)}

    @_locked
    def project_actor_moved(self, role: Role, actor_id: str, map_id: str) -> Optional[dict]:
        actor = self.state.actors.get(actor_id)
        position = self.state.actor_positions.get(map_id, {}).get(actor_id)
        if actor is None or position is None:
            return None
        body = {
            "actorId": actor_id,
            "mapId": map_id,
            "x": position.x,
            "y": position.y,
            "actor": actor.to_dict(),
        }
        if role == Role.DIRECTOR:
            if map_id == self.state.current_map:
                body["visionCircles"] = self.vision_circles(map_id)
        elif map_id == self.state.current_map:
            body["visibility"] = self.visibility_payload(map_id)
        return body

    @_locked
    def project_actor_removed(self, role: Role, actor_id: str) -> dict:
        body = {"actorId": actor_id}
        if role == Role.VIEWER:
            body["visibility"] = self.visibility_payload(self.state.current_map)
        return body

    @_locked
    def project_fog_change(self, role: Role) -> dict:
        body = self.fog_settings_for(role)
        if role == Role.VIEWER:
            body["visibility"] = self.visibility_payload(self.state.current_map)
        return body
