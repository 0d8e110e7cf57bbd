# infrastructure/web/review_api.py
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from application.workflows.review_workflow import ReviewWorkflow
from domain.errors import InvalidTransitionError, QueueItemNotFoundError
from domain.models.approval_workflow import (
    EnqueueResponseModel,
    QueueItemModel,
    RequeueRequestModel,
    ReviewOutcomeModel,
    ReviewResolutionModel,
)
from domain.models.queue_state import QueueItem, ReviewFilter
from domain.models.routing import ModelTier
from shared.clock import utc_now
from shared.logging import logger

router = APIRouter(prefix="/review", tags=["human-review"])


# Resolved through app.dependency_overrides in main.py
async def get_review_workflow() -> ReviewWorkflow:
    raise RuntimeError("Review workflow dependency is not configured")


def queue_item_model(item: QueueItem, now: Optional[datetime] = None) -> QueueItemModel:
    return QueueItemModel(
        id=item.id,
        source_message_id=item.source_message_id,
        status=item.status.value,
        priority=item.priority.value,
        attempts=item.attempts,
        last_error=item.last_error,
        assigned_reviewer=item.assigned_reviewer,
        due_at=item.due_at,
        overdue=item.is_overdue(now or utc_now()),
        organization_id=item.organization_id,
        corrects_item_id=item.corrects_item_id,
        created_at=item.created_at,
        updated_at=item.updated_at,
    )


@router.get("/pending", response_model=List[QueueItemModel])
async def list_pending_reviews(
    organization_id: Optional[str] = None,
    assigned_reviewer: Optional[str] = None,
    overdue_only: bool = False,
    limit: int = Query(default=100, ge=1, le=1000),
    workflow: ReviewWorkflow = Depends(get_review_workflow)
):
    """Items awaiting a reviewer, soonest due first; past-due items carry overdue=true"""

    try:
        items = await workflow.list_requiring_review(ReviewFilter(
            organization_id=organization_id,
            assigned_reviewer=assigned_reviewer,
            overdue_only=overdue_only,
            limit=limit,
        ))
        now = workflow.clock()
        return [queue_item_model(item, now) for item in items]

    except Exception as e:
        logger.error("Failed to list pending reviews", error=str(e))
        raise HTTPException(status_code=500, detail=f"Failed to list pending reviews: {str(e)}")


@router.post("/{item_id}/resolve", response_model=ReviewOutcomeModel)
async def resolve_review(
    item_id: str,
    resolution: ReviewResolutionModel,
    workflow: ReviewWorkflow = Depends(get_review_workflow)
):
    """Approve or reject a flagged item, optionally replacing the verdict"""

    try:
        preferred_tier = ModelTier(resolution.preferred_tier) if resolution.preferred_tier else None
        outcome = await workflow.resolve(
            item_id,
            reviewer_id=resolution.reviewer_id,
            approve=resolution.approved,
            verdict_override=resolution.override_verdict,
            feedback=resolution.feedback,
            preferred_tier=preferred_tier,
        )

        return ReviewOutcomeModel(
            queue_item_id=outcome.queue_item_id,
            status=outcome.status.value,
            reviewer_id=outcome.reviewer_id,
            diverged=outcome.diverged,
            resolved_at=outcome.resolved_at,
        )

    except QueueItemNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except InvalidTransitionError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=422, detail=f"Invalid resolution: {str(e)}")
    except Exception as e:
        logger.error("Failed to resolve review", queue_item_id=item_id, error=str(e))
        raise HTTPException(status_code=500, detail=f"Failed to resolve review: {str(e)}")


@router.post("/{item_id}/requeue", response_model=EnqueueResponseModel)
async def requeue_rejected(
    item_id: str,
    request: RequeueRequestModel,
    workflow: ReviewWorkflow = Depends(get_review_workflow)
):
    """Operator action: create a corrective item for a rejected one"""

    try:
        corrective = await workflow.requeue_rejected(item_id, request.operator_id)
        return EnqueueResponseModel(
            queue_item_id=corrective.id,
            status=corrective.status.value,
            priority=corrective.priority.value,
        )

    except QueueItemNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except InvalidTransitionError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except Exception as e:
        logger.error("Failed to requeue item", queue_item_id=item_id, error=str(e))
        raise HTTPException(status_code=500, detail=f"Failed to requeue item: {str(e)}")


@router.get("/failed", response_model=List[QueueItemModel])
async def list_failed_items(
    organization_id: Optional[str] = None,
    limit: int = Query(default=100, ge=1, le=1000),
    workflow: ReviewWorkflow = Depends(get_review_workflow)
):
    """Operator listing of items that exhausted their attempts"""

    try:
        items = await workflow.store.list_failed(organization_id, limit)
        now = workflow.clock()
        return [queue_item_model(item, now) for item in items]

    except Exception as e:
        logger.error("Failed to list failed items", error=str(e))
        raise HTTPException(status_code=500, detail=f"Failed to list failed items: {str(e)}")


@router.post("/failed/reset")
async def reset_failed_items(
    organization_id: Optional[str] = None,
    workflow: ReviewWorkflow = Depends(get_review_workflow)
):
    """Operator action: give failed items a fresh attempt budget"""

    try:
        reset_count = await workflow.store.reset_failed(organization_id)
        logger.info("Failed items reset", organization_id=organization_id, count=reset_count)
        return {"reset": reset_count}

    except Exception as e:
        logger.error("Failed to reset failed items", error=str(e))
        raise HTTPException(status_code=500, detail=f"Failed to reset failed items: {str(e)}")
