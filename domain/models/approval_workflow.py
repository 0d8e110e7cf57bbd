# domain/models/approval_workflow.py
from typing import Dict, Any, Optional, List
from datetime import datetime
from enum import Enum
from pydantic import BaseModel, Field


class ReviewTrigger(Enum):
    LOW_SUPPORT = "low_support"
    HARD_ESCALATION = "hard_escalation"
    AMBIGUOUS = "ambiguous"
    NONE = "none"


class NotificationEvent(Enum):
    ATTEMPT_COMPLETED = "attempt_completed"
    REVIEW_REQUIRED = "review_required"
    ATTEMPT_FAILED = "attempt_failed"


# Pydantic models for API request/response
class EnqueueMessageModel(BaseModel):
    message_id: str = Field(..., min_length=1, max_length=255, description="Upstream message identifier")
    sender: str = Field(..., min_length=1, max_length=320)
    subject: str = Field(default="", max_length=1000)
    body: str = Field(default="", max_length=100000)
    thread_id: Optional[str] = Field(None, max_length=255)
    organization_id: Optional[str] = Field(None, max_length=64)
    priority_hint: Optional[str] = Field(None, description="Advisory priority from the mail system")
    requested_tier: Optional[str] = Field(None, description="Explicit model tier for this message")


class EnqueueResponseModel(BaseModel):
    queue_item_id: str
    status: str
    priority: str


class ReviewResolutionModel(BaseModel):
    reviewer_id: str = Field(..., min_length=1, description="Reviewer resolving the item")
    approved: bool = Field(..., description="Human approval decision")
    override_verdict: Optional[Dict[str, Any]] = Field(None, description="Replacement verdict payload")
    feedback: Optional[str] = Field(None, max_length=5000, description="Reviewer feedback")
    preferred_tier: Optional[str] = Field(None, description="Tier the reviewer would have used")


class RequeueRequestModel(BaseModel):
    operator_id: str = Field(..., min_length=1)


class QueueItemModel(BaseModel):
    id: str
    source_message_id: str
    status: str
    priority: str
    attempts: int
    last_error: Optional[str] = None
    assigned_reviewer: Optional[str] = None
    due_at: Optional[datetime] = None
    overdue: bool = False
    organization_id: Optional[str] = None
    corrects_item_id: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class ReviewOutcomeModel(BaseModel):
    queue_item_id: str
    status: str
    reviewer_id: str
    diverged: bool
    resolved_at: datetime


class QueueStatsModel(BaseModel):
    total: int
    counts: Dict[str, int]


class AttemptHistoryModel(BaseModel):
    queue_item_id: str
    attempts: List[Dict[str, Any]]
