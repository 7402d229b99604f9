"""Bulk generation job router."""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from models.bulk_job import BulkJob
from routers.auth_scope import AuthContext, get_auth_context
from routers.rate_limit import rate_limit
from services.credits import get_credit_balance
from services.job_admission import JobAdmissionError, admit_bulk_job
from services.job_store import get_job_for_shop, list_jobs_for_shop

router = APIRouter()

RECENT_JOBS_LIMIT = 25

FIELD_TO_TYPE_ID = {
    "title": "productTitle",
    "description": "description",
    "meta_title": "metaTitle",
    "meta_description": "metaDescription",
    "alt_text": "altText",
}

COLLECTION_FIELD_TO_TYPE_ID = {
    "title": "collectionTitle",
    "description": "collectionDescription",
    "meta_title": "collectionMetaTitle",
    "meta_description": "collectionMetaDescription",
}


class CreateJobRequest(BaseModel):
    product_ids: List[Any] = Field(default_factory=list)
    collection_ids: List[Any] = Field(default_factory=list)
    settings: Optional[Dict[str, Any]] = None


class CreateJobResponse(BaseModel):
    job_id: str


class JobSelection(BaseModel):
    products: int
    collections: int


class BulkJobResponse(BaseModel):
    id: str
    status: str
    type: str
    task: str
    work_item_count: int
    estimated_credits: int
    completed_items: int
    failed_targets: int
    error_message: Optional[str] = None
    selection: JobSelection
    types: List[str]
    created_at: Optional[str] = None
    created_at_ms: Optional[int] = None
    started_at: Optional[str] = None
    completed_at: Optional[str] = None


class JobDetailResponse(BaseModel):
    job: BulkJobResponse


class JobListResponse(BaseModel):
    jobs: List[BulkJobResponse]
    credits: int


def _serialize_job(job: BulkJob) -> BulkJobResponse:
    config = job.config or {}
    settings_payload = config.get("settings") if isinstance(config.get("settings"), dict) else {}
    fields = settings_payload.get("fields") if isinstance(settings_payload.get("fields"), list) else []
    field_map = COLLECTION_FIELD_TO_TYPE_ID if job.type == "collections" else FIELD_TO_TYPE_ID
    product_ids = config.get("product_ids")
    collection_ids = config.get("collection_ids")

    return BulkJobResponse(
        id=job.id,
        status=job.status,
        type=job.type,
        task=job.task or "content",
        work_item_count=int(job.total_items or 0),
        estimated_credits=int(job.total_items or 0),
        completed_items=int(job.processed_items or 0),
        failed_targets=int(job.failed_targets or 0),
        error_message=job.error_message,
        selection=JobSelection(
            products=len(product_ids) if isinstance(product_ids, list) else 0,
            collections=len(collection_ids) if isinstance(collection_ids, list) else 0,
        ),
        types=[field_map.get(field, field) for field in fields if field],
        created_at=job.created_at.isoformat() if job.created_at else None,
        created_at_ms=int(job.created_at.timestamp() * 1000) if job.created_at else None,
        started_at=job.started_at.isoformat() if job.started_at else None,
        completed_at=job.completed_at.isoformat() if job.completed_at else None,
    )


@router.post("", response_model=CreateJobResponse, status_code=201)
async def create_job(
    request: CreateJobRequest,
    _rate_limit: None = Depends(rate_limit("jobs_create", limit=60, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """Validate a bulk generation request, reserve credits and queue the job."""
    try:
        job = await admit_bulk_job(
            auth.shop_domain,
            db,
            product_ids=request.product_ids,
            collection_ids=request.collection_ids,
            settings_payload=request.settings,
        )
    except JobAdmissionError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.message) from exc
    return CreateJobResponse(job_id=job.id)


@router.get("", response_model=JobListResponse)
async def list_jobs(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """Recent jobs for the current shop plus its credit balance."""
    jobs = await list_jobs_for_shop(auth.shop_domain, db, limit=RECENT_JOBS_LIMIT)
    credits = await get_credit_balance(auth.shop_domain, db)
    return JobListResponse(jobs=[_serialize_job(job) for job in jobs], credits=credits)


@router.get("/{job_id}", response_model=JobDetailResponse)
async def get_job(
    job_id: str,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    job = await get_job_for_shop(job_id, auth.shop_domain, db)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found.")
    return JobDetailResponse(job=_serialize_job(job))
