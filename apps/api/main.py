"""FastAPI application for room measurement.

Accepts room snapshots and point clouds, runs the measurement pipeline and
serves the cached results and pipeline progress.
"""

from __future__ import annotations

import json
import logging
import shutil
import tempfile
from pathlib import Path
from typing import Optional

from fastapi import FastAPI, File, HTTPException, Query, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel as PydanticBaseModel

from packages.core.cloud import ClusteringKind
from packages.core.types import RoomSnapshot
from packages.pipeline.loader import load_point_cloud
from packages.pipeline.orchestrator import MeasurementOrchestrator, RoomScanData
from packages.pipeline.process import summarize_cloud

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    datefmt='%H:%M:%S'
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Room Parametrics API", version="0.1.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)

# ── In-memory state (one orchestrator per process) ───────────────────
_state: dict = {
    "orchestrator": MeasurementOrchestrator(),
}


def _orchestrator() -> MeasurementOrchestrator:
    return _state["orchestrator"]


def _json(model) -> JSONResponse:
    return JSONResponse(content=json.loads(model.model_dump_json()))


@app.get("/health")
def health():
    return {"status": "ok"}


@app.post("/rooms")
def extract_room(snapshot: RoomSnapshot):
    """Measure one room snapshot; the result replaces any cached one."""
    orch = _orchestrator()
    logger.info(f"📥 Room {snapshot.identifier}: {len(snapshot.surfaces)} surfaces")
    params = orch.extract_parametric_data(snapshot)
    failure = orch.get_failure(snapshot.identifier)
    if failure is not None:
        return {
            "room_id": snapshot.identifier,
            "measured": False,
            "failure": json.loads(failure.model_dump_json()),
        }
    report = orch.get_validation_report(snapshot.identifier)
    return {
        "room_id": snapshot.identifier,
        "measured": True,
        "is_valid": report.is_valid,
        "accuracy_level": report.accuracy_level.value,
        "floor_area": params.floor_area,
        "volume": params.volume,
    }


@app.get("/rooms/{room_id}/parameters")
def get_parameters(room_id: str):
    params = _orchestrator().get_measurement_results(room_id)
    if params is None:
        raise HTTPException(404, f"Room {room_id} has not been measured")
    return _json(params)


@app.get("/rooms/{room_id}/validation")
def get_validation(room_id: str):
    report = _orchestrator().get_validation_report(room_id)
    if report is None:
        raise HTTPException(404, f"Room {room_id} has not been validated")
    return _json(report)


@app.get("/rooms/{room_id}/failure")
def get_failure(room_id: str):
    failure = _orchestrator().get_failure(room_id)
    if failure is None:
        raise HTTPException(404, f"No failure recorded for room {room_id}")
    return _json(failure)


@app.post("/rooms/{room_id}/point-cloud")
async def upload_point_cloud(
    room_id: str,
    file: UploadFile = File(...),
    clustering: ClusteringKind = Query(ClusteringKind.DBSCAN),
    with_mesh: bool = Query(True),
):
    """Upload a point-cloud file (PLY or E57), cluster, analyse and mesh it."""
    if not file.filename:
        raise HTTPException(400, "No filename provided")

    suffix = Path(file.filename).suffix.lower()
    if suffix not in (".ply", ".e57"):
        raise HTTPException(400, f"Unsupported format '{suffix}'. Use .ply or .e57")

    logger.info(f"📥 Receiving file: {file.filename} ({suffix})")
    with tempfile.NamedTemporaryFile(suffix=suffix, delete=False) as tmp:
        shutil.copyfileobj(file.file, tmp)
        tmp_path = Path(tmp.name)

    try:
        buffer = load_point_cloud(tmp_path)
        result = _orchestrator().process_point_cloud(
            room_id, buffer, clustering=clustering, with_mesh=with_mesh
        )
        return _json(summarize_cloud(result))
    except Exception as e:
        logger.exception("❌ Point-cloud processing failed")
        raise HTTPException(500, f"Processing failed: {e}")
    finally:
        logger.info(f"🧹 Cleaning up temporary file")
        tmp_path.unlink(missing_ok=True)


@app.get("/rooms/{room_id}/point-cloud")
def get_point_cloud(room_id: str):
    result = _orchestrator().get_point_cloud_result(room_id)
    if result is None:
        raise HTTPException(404, f"No point cloud processed for room {room_id}")
    return _json(summarize_cloud(result))


class BuildingRoom(PydanticBaseModel):
    """One entry of a building request.  A null snapshot marks a missing room."""
    room_id: Optional[str] = None
    snapshot: Optional[RoomSnapshot] = None


class BuildingRequest(PydanticBaseModel):
    rooms: list[BuildingRoom]
    max_workers: int = 1


@app.post("/building")
def extract_building(req: BuildingRequest):
    """Measure every room in order and aggregate them."""
    rooms = []
    for entry in req.rooms:
        if entry.room_id is None and entry.snapshot is None:
            raise HTTPException(400, "Each room needs a room_id or a snapshot")
        rooms.append(RoomScanData(room_id=entry.room_id, snapshot=entry.snapshot))
    building = _orchestrator().extract_building_parametrics(rooms, max_workers=max(1, req.max_workers))
    return _json(building)


@app.get("/progress")
def get_progress():
    snap = _orchestrator().progress
    return {
        "progress": snap.progress,
        "is_processing": snap.is_processing,
        "stage": snap.stage.value,
        "room_id": snap.room_id,
    }
