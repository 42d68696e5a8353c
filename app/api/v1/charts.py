import uuid

from fastapi import APIRouter, Depends, Query
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.dependencies import get_chart_cache
from app.core.exceptions import NotFoundError
from app.db.postgres import get_db
from app.models.entity import EntityOwnership
from app.schemas.chart import ChartResponse, ChartTab, TimeRange
from app.services.chart_service import ChartSnapshotCache

router = APIRouter(prefix="/charts", tags=["charts"])


@router.get("/{entity_id}", response_model=ChartResponse)
async def get_chart(
    entity_id: uuid.UUID,
    tenant_id: uuid.UUID = Query(...),
    time_range: TimeRange = Query("30d"),
    tab: ChartTab = Query("competitors"),
    db: AsyncSession = Depends(get_db),
    cache: ChartSnapshotCache = Depends(get_chart_cache),
):
    owned = await db.execute(
        select(EntityOwnership.entity_id).where(
            EntityOwnership.entity_id == entity_id, EntityOwnership.tenant_id == tenant_id
        )
    )
    if owned.scalar_one_or_none() is None:
        raise NotFoundError("Entity not found for tenant")

    result = await cache.get_chart(db, entity_id, tenant_id, time_range, tab)
    return ChartResponse(
        time_range=time_range,
        tab=tab,
        data=result.data,
        config=result.config,
        updated_at=result.updated_at,
        cached=result.cached,
    )
