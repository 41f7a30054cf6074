"""
Admin dashboard: read-only reporting views.
"""
from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session
from typing import List, Optional
import logging

from supplier_intake.database import get_db
from supplier_intake.schemas.dashboard import (
    ActivityEntry,
    AIMetrics,
    HealthStatus,
    PipelineStats,
    SupplierPerformance,
    SystemAlerts,
    ValidationTrends,
)
from supplier_intake.services.pipeline import Pipeline, get_pipeline

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/dashboard", tags=["dashboard"])


@router.get("/pipeline-stats", response_model=PipelineStats)
def get_pipeline_stats(db: Session = Depends(get_db), pipeline: Pipeline = Depends(get_pipeline)):
    """Processing and validation funnel counts"""
    return pipeline.reporting.pipeline_stats(db)


@router.get("/health", response_model=HealthStatus)
def get_pipeline_health(db: Session = Depends(get_db), pipeline: Pipeline = Depends(get_pipeline)):
    return pipeline.reporting.health(db)


@router.get("/recent-activity", response_model=List[ActivityEntry])
def get_recent_activity(
    limit: int = Query(20, ge=1, le=100),
    db: Session = Depends(get_db),
    pipeline: Pipeline = Depends(get_pipeline),
):
    return pipeline.reporting.recent_activity(db, limit=limit)


@router.get("/top-suppliers", response_model=List[SupplierPerformance])
def get_top_suppliers(
    limit: int = Query(10, ge=1, le=100),
    db: Session = Depends(get_db),
    pipeline: Pipeline = Depends(get_pipeline),
):
    """Suppliers ranked by approval rate, then volume"""
    return pipeline.suppliers.top_suppliers(db, limit=limit)


@router.get("/suppliers/{supplier_id}", response_model=SupplierPerformance)
def get_supplier_performance(
    supplier_id: str,
    db: Session = Depends(get_db),
    pipeline: Pipeline = Depends(get_pipeline),
):
    return pipeline.suppliers.get_performance(db, supplier_id)


@router.get("/ai-metrics", response_model=AIMetrics)
def get_ai_metrics(
    days: Optional[int] = Query(None, ge=1, le=365, description="Only products extracted in the last N days"),
    db: Session = Depends(get_db),
    pipeline: Pipeline = Depends(get_pipeline),
):
    return pipeline.reporting.ai_metrics(db, days=days)


@router.get("/validation-trends", response_model=ValidationTrends)
def get_validation_trends(
    days: int = Query(7, ge=1, le=90),
    db: Session = Depends(get_db),
    pipeline: Pipeline = Depends(get_pipeline),
):
    return pipeline.reporting.validation_trends(db, days=days)


@router.get("/system-alerts", response_model=SystemAlerts)
def get_system_alerts(db: Session = Depends(get_db), pipeline: Pipeline = Depends(get_pipeline)):
    return pipeline.reporting.system_alerts(db)
