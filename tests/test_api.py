"""Tests for the FastAPI backend (apps/api/main.py)."""

from __future__ import annotations

import io

import numpy as np
import pytest
from fastapi.testclient import TestClient
from plyfile import PlyData, PlyElement

from apps.api.main import _state, app
from conftest import make_room, make_surface
from packages.core.types import RoomSnapshot, SurfaceKind
from packages.pipeline.orchestrator import MeasurementOrchestrator


@pytest.fixture()
def client(cpu_optimizer):
    """Fresh test client with a fresh orchestrator."""
    _state["orchestrator"] = MeasurementOrchestrator(optimizer=cpu_optimizer)
    return TestClient(app)


def _make_ply_bytes(points: np.ndarray) -> bytes:
    """Create an in-memory binary PLY file and return its bytes."""
    dtype = [("x", "f4"), ("y", "f4"), ("z", "f4")]
    structured = np.empty(len(points), dtype=dtype)
    structured["x"] = points[:, 0]
    structured["y"] = points[:, 1]
    structured["z"] = points[:, 2]
    el = PlyElement.describe(structured, "vertex")
    buf = io.BytesIO()
    PlyData([el], text=False).write(buf)
    return buf.getvalue()


def _body(snapshot: RoomSnapshot) -> dict:
    return snapshot.model_dump(mode="json")


class TestHealth:
    def test_health(self, client: TestClient):
        r = client.get("/health")
        assert r.status_code == 200
        assert r.json()["status"] == "ok"


class TestRooms:
    def test_extract_and_fetch(self, client: TestClient, simple_room: RoomSnapshot):
        r = client.post("/rooms", json=_body(simple_room))
        assert r.status_code == 200
        data = r.json()
        assert data["measured"] is True
        assert data["is_valid"] is True
        assert data["floor_area"] == pytest.approx(12.0)
        assert data["volume"] == pytest.approx(30.0)

        room_id = simple_room.identifier
        params = client.get(f"/rooms/{room_id}/parameters").json()
        assert len(params["walls"]) == 4
        report = client.get(f"/rooms/{room_id}/validation").json()
        assert report["accuracy_level"] == "good"
        assert client.get(f"/rooms/{room_id}/failure").status_code == 404

    def test_unknown_room(self, client: TestClient):
        assert client.get("/rooms/nope/parameters").status_code == 404
        assert client.get("/rooms/nope/validation").status_code == 404
        assert client.get("/rooms/nope/point-cloud").status_code == 404

    def test_failed_room(self, client: TestClient):
        room = make_room(4.0, 3.0)
        broken = make_surface(SurfaceKind.WALL, 4.0, 2.5, 0.1, confidence=0.0)
        snapshot = RoomSnapshot(identifier="broken", surfaces=room.surfaces + (broken,))
        data = client.post("/rooms", json=_body(snapshot)).json()
        assert data["measured"] is False
        assert data["failure"]["error_type"] == "InvalidConfidence"

        failure = client.get("/rooms/broken/failure").json()
        assert failure["message"] == "No reliable measurement available for this room"
        assert client.get("/rooms/broken/parameters").status_code == 404

    def test_invalid_snapshot(self, client: TestClient):
        r = client.post("/rooms", json={"surfaces": [{"kind": "ceiling", "dimensions": {"x": 1, "y": 1, "z": 1}}]})
        assert r.status_code == 422


class TestPointCloud:
    def test_upload_ply(self, client: TestClient, room_cloud):
        ply_bytes = _make_ply_bytes(room_cloud.positions)
        r = client.post(
            "/rooms/room-1/point-cloud",
            params={"clustering": "region_growing", "with_mesh": "false"},
            files={"file": ("room.ply", ply_bytes, "application/octet-stream")},
        )
        assert r.status_code == 200, r.text
        data = r.json()
        assert data["point_count"] > 0
        assert data["cluster_count"] >= 1
        assert data["mesh_quality"] is None

        again = client.get("/rooms/room-1/point-cloud")
        assert again.status_code == 200
        assert again.json()["cluster_count"] == data["cluster_count"]

    def test_upload_bad_format(self, client: TestClient):
        r = client.post(
            "/rooms/room-1/point-cloud", files={"file": ("bad.xyz", b"junk", "application/octet-stream")}
        )
        assert r.status_code == 400


class TestBuilding:
    def test_building(self, client: TestClient):
        body = {
            "rooms": [
                {"snapshot": _body(make_room(4.0, 2.5))},
                {"room_id": "ghost"},
                {"snapshot": _body(make_room(5.0, 3.0))},
            ],
            "max_workers": 2,
        }
        r = client.post("/building", json=body)
        assert r.status_code == 200
        data = r.json()
        assert data["total_floor_area"] == pytest.approx(25.0)
        assert data["skipped_room_ids"] == ["ghost"]
        assert len(data["rooms"]) == 2

    def test_entry_needs_id_or_snapshot(self, client: TestClient):
        assert client.post("/building", json={"rooms": [{}]}).status_code == 400


class TestProgress:
    def test_progress_after_room(self, client: TestClient, simple_room: RoomSnapshot):
        assert client.get("/progress").json()["stage"] == "idle"
        client.post("/rooms", json=_body(simple_room))
        data = client.get("/progress").json()
        assert data["progress"] == 1.0
        assert data["stage"] == "done"
        assert data["is_processing"] is False
