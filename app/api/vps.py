"""
Fleet endpoints.

GET   /api/vps                 — list every VPS
GET   /api/vps/available       — shared VPS with a free slot, least-loaded first
GET   /api/vps/stats           — aggregate fleet counts
POST  /api/vps                 — register an existing server
GET   /api/vps/{id}            — one VPS
PATCH /api/vps/{id}/status     — maintenance / offline toggling
PUT   /api/vps/{id}/telemetry  — advisory CPU / memory report
"""

import logging
from typing import List

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.db import get_db
from app.schemas import VPSCreate, VPSResponse, FleetStatsResponse, VPSStatusUpdate, TelemetryUpdate
from app.services.fleet_registry import FleetRegistry

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/vps", tags=["Fleet"])


@router.get("", response_model=List[VPSResponse])
async def list_vps(db: AsyncSession = Depends(get_db)):
    return await FleetRegistry(db).list_all()


@router.get("/available", response_model=List[VPSResponse])
async def list_available_vps(db: AsyncSession = Depends(get_db)):
    """Shared VPS that can take another tenant right now."""
    return await FleetRegistry(db).list_available_shared()


@router.get("/stats", response_model=FleetStatsResponse)
async def fleet_stats(db: AsyncSession = Depends(get_db)):
    return FleetStatsResponse(**await FleetRegistry(db).stats())


@router.post("", response_model=VPSResponse, status_code=status.HTTP_201_CREATED)
async def register_vps(data: VPSCreate, db: AsyncSession = Depends(get_db)):
    vps = await FleetRegistry(db).register(data)
    await db.commit()
    return vps


@router.get("/{vps_id}", response_model=VPSResponse)
async def get_vps(vps_id: str, db: AsyncSession = Depends(get_db)):
    return await FleetRegistry(db).get(vps_id)


@router.patch("/{vps_id}/status", response_model=VPSResponse)
async def update_vps_status(vps_id: str, data: VPSStatusUpdate, db: AsyncSession = Depends(get_db)):
    vps = await FleetRegistry(db).set_status(vps_id, data.status)
    await db.commit()
    return vps


@router.put("/{vps_id}/telemetry", status_code=status.HTTP_202_ACCEPTED)
async def report_telemetry(vps_id: str, data: TelemetryUpdate, db: AsyncSession = Depends(get_db)):
    """Best-effort: the report is accepted even when it could not be stored."""
    stored = await FleetRegistry(db).update_telemetry(vps_id, data.cpu_usage_percent, data.memory_usage_percent)
    if stored:
        await db.commit()
    return {"accepted": True, "stored": stored}
