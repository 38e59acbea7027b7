"""Tests for fog-of-war disclosure and per-role projections."""
import math
import threading

import pytest

from scene_state import SceneState
from scene_store import SceneStore
from visibility import Role, VisibilityFilter, cell_distance


@pytest.fixture
def store():
    return SceneStore(SceneState())


@pytest.fixture
def scene(store):
    """A 20x20 map with one actor at (5, 5), made current."""
    m = store.create_map("Dungeon", 20, 20)
    actor = store.create_actor("Rogue")
    store.set_actor_position(actor.id, m.id, 5, 5)
    store.set_current_map(m.id)
    store.update_fog_settings(True, 5, True)
    return store, m, actor


class TestCellDistance:

    def test_euclidean_not_manhattan(self):
        assert cell_distance((0, 0), (3, 4)) == 5
        assert cell_distance((0, 0), (5, 5)) == pytest.approx(math.sqrt(50))


class TestCellDisclosure:

    def test_radius_boundary_is_inclusive(self, scene):
        store, m, _ = scene
        vf = VisibilityFilter(store)
        assert vf.is_cell_visible(m.id, 10, 5) is True
        assert vf.is_cell_visible(m.id, 11, 5) is False

    def test_fog_disabled_discloses_everything(self, scene):
        store, m, _ = scene
        store.update_fog_settings(False, 5)
        vf = VisibilityFilter(store)
        assert vf.is_cell_visible(m.id, 19, 19) is True
        assert vf.is_cell_visible(m.id, 0, 0) is True
        assert vf.disclosed_cells(m.id) is None

    def test_fog_disabled_without_actors(self, store):
        m = store.create_map("Empty", 20, 20)
        store.update_fog_settings(False, 5)
        assert VisibilityFilter(store).is_cell_visible(m.id, 3, 3) is True

    def test_no_actors_with_fog_discloses_nothing(self, store):
        m = store.create_map("Empty", 20, 20)
        vf = VisibilityFilter(store)
        assert vf.is_cell_visible(m.id, 0, 0) is False
        assert vf.disclosed_cells(m.id) == []

    def test_zero_radius_only_actor_cell(self, scene):
        store, m, _ = scene
        store.state.fog_settings.vision_radius = 0
        vf = VisibilityFilter(store)
        assert vf.is_cell_visible(m.id, 5, 5) is True
        assert vf.is_cell_visible(m.id, 5, 6) is False
        assert vf.disclosed_cells(m.id) == [[5, 5]]

    def test_actors_on_other_maps_do_not_reveal(self, scene):
        store, m, actor = scene
        other = store.create_map("Forest", 20, 20)
        vf = VisibilityFilter(store)
        assert vf.is_cell_visible(other.id, 5, 5) is False

    def test_vision_radius_two_scenario(self, store):
        m = store.create_map("Dungeon", 20, 20)
        actor = store.create_actor("Rogue")
        store.set_actor_position(actor.id, m.id, 0, 0)
        store.update_fog_settings(True, 2)
        vf = VisibilityFilter(store)
        cells = {tuple(c) for c in vf.disclosed_cells(m.id)}
        assert (5, 5) not in cells
        assert cells == {(0, 0), (1, 0), (2, 0), (0, 1), (1, 1), (0, 2)}
        for x in range(20):
            for y in range(20):
                assert vf.is_cell_visible(m.id, x, y) == (math.hypot(x, y) <= 2)

    def test_disclosed_cells_stay_inside_grid(self, scene):
        store, m, actor = scene
        store.set_actor_position(actor.id, m.id, 0, 0)
        cells = VisibilityFilter(store).disclosed_cells(m.id)
        assert all(0 <= x < 20 and 0 <= y < 20 for x, y in cells)

    def test_union_of_multiple_actors(self, scene):
        store, m, _ = scene
        other = store.create_actor("Cleric")
        store.set_actor_position(other.id, m.id, 15, 15)
        vf = VisibilityFilter(store)
        assert vf.is_cell_visible(m.id, 15, 19)
        assert vf.is_cell_visible(m.id, 5, 1)
        assert not vf.is_cell_visible(m.id, 19, 0)


class TestProjections:

    def test_viewer_snapshot_hides_unrevealed_pois(self, scene):
        store, m, _ = scene
        chest = store.create_poi(m.id, "Chest", 3, 3, poi_type="treasure")
        vf = VisibilityFilter(store)

        assert vf.project_snapshot(Role.VIEWER)["visiblePOIs"] == []

        store.set_poi_visibility(chest.id, True)
        pois = vf.project_snapshot(Role.VIEWER)["visiblePOIs"]
        assert len(pois) == 1
        assert pois[0]["id"] == chest.id
        assert (pois[0]["x"], pois[0]["y"]) == (3, 3)
        assert pois[0]["icon"] == "💰"

    def test_director_snapshot_sees_everything(self, scene):
        store, m, _ = scene
        hidden = store.create_poi(m.id, "Trap", 15, 15, poi_type="enemy")
        snapshot = VisibilityFilter(store).project_snapshot(Role.DIRECTOR)
        assert [p["id"] for p in snapshot["pointsOfInterest"]] == [hidden.id]
        assert snapshot["pointsOfInterest"][0]["icon"] == "⚔️"
        assert snapshot["fogSettings"]["showVisionCircles"] is True
        assert snapshot["visionCircles"][0]["radius"] == 5
        assert "visibility" not in snapshot

    def test_viewer_fog_settings_omit_vision_circles(self, scene):
        store, _, _ = scene
        vf = VisibilityFilter(store)
        assert vf.fog_settings_for(Role.VIEWER) == {"fogEnabled": True, "visionRadius": 5}
        assert "showVisionCircles" not in vf.project_snapshot(Role.VIEWER)["fogSettings"]
        assert "visionCircles" not in vf.project_snapshot(Role.VIEWER)

    def test_viewer_actors_always_sent_and_flagged(self, scene):
        store, m, actor = scene
        actors = VisibilityFilter(store).project_snapshot(Role.VIEWER)["actors"]
        assert actors == [{**actor.to_dict(), "x": 5, "y": 5, "disclosed": True}]

    def test_viewer_poi_outside_vision_flagged(self, scene):
        store, m, _ = scene
        far = store.create_poi(m.id, "Far", 18, 18)
        store.set_poi_visibility(far.id, True)
        pois = VisibilityFilter(store).project_snapshot(Role.VIEWER)["visiblePOIs"]
        assert pois[0]["disclosed"] is False

    def test_viewer_snapshot_only_current_map_pois(self, scene):
        store, m, _ = scene
        other = store.create_map("Forest", 20, 20)
        poi = store.create_poi(other.id, "Tree", 1, 1)
        store.set_poi_visibility(poi.id, True)
        assert VisibilityFilter(store).project_snapshot(Role.VIEWER)["visiblePOIs"] == []

    def test_hidden_poi_payload_withheld_from_viewers(self, scene):
        store, m, _ = scene
        poi = store.create_poi(m.id, "Secret", 1, 1, description="the key")
        vf = VisibilityFilter(store)
        assert vf.project_poi_visibility(Role.VIEWER, poi) == {"poiId": poi.id, "visible": False}
        assert vf.project_poi_visibility(Role.DIRECTOR, poi)["poi"]["description"] == "the key"

    def test_snapshot_without_current_map(self, store):
        snapshot = VisibilityFilter(store).project_snapshot(Role.VIEWER)
        assert snapshot["currentMap"] is None
        assert snapshot["map"] is None
        assert snapshot["actors"] == []
        assert snapshot["visibility"]["disclosedCells"] == []

    def test_actor_moved_carries_viewer_visibility(self, scene):
        store, m, actor = scene
        body = VisibilityFilter(store).project_actor_moved(Role.VIEWER, actor.id, m.id)
        assert (body["x"], body["y"]) == (5, 5)
        assert [10, 5] in body["visibility"]["disclosedCells"]

    def test_role_parse(self):
        assert Role.parse("Director") == Role.DIRECTOR
        assert Role.parse("viewer") == Role.VIEWER
        assert Role.parse("dm") is None


class TestConcurrentReads:

    def test_projections_while_scene_mutates(self, scene):
        store, m, _ = scene
        vf = VisibilityFilter(store)
        failures = []
        done = threading.Event()

        def reader():
            while not done.is_set():
                try:
                    vf.project_snapshot(Role.DIRECTOR)
                    vf.project_snapshot(Role.VIEWER)
                    vf.visibility_payload(m.id)
                except RuntimeError as e:
                    failures.append(e)
                    return

        thread = threading.Thread(target=reader)
        thread.start()
        try:
            for i in range(300):
                scout = store.create_actor(f"Scout {i}")
                store.set_actor_position(scout.id, m.id, i % 20, i % 7)
                poi = store.create_poi(m.id, f"Mark {i}", i % 20, 3)
                store.set_poi_visibility(poi.id, True)
        finally:
            done.set()
            thread.join(timeout=10)

        assert failures == []
        assert len(vf.project_snapshot(Role.DIRECTOR)["actors"]) == 301
