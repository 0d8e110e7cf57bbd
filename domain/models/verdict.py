# domain/models/verdict.py
"""
Closed set of analyzer verdicts.

Each variant is keyed by ``category`` and carries only the fields relevant to
that category, so model output is validated against exactly one shape.
"""
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from typing_extensions import Annotated


class VerdictCategory(str, Enum):
    PRODUCT_INQUIRY = "support/product-inquiry"
    GENERAL_SUPPORT = "support/general"
    SALES = "sales"
    DISPUTE = "dispute/billing"
    RELATIONSHIP = "relationship"
    OPPORTUNITY = "opportunity"


class Urgency(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class _VerdictBase(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    urgency: Urgency = Urgency.MEDIUM
    recommended_action: str = Field(default="reply", max_length=500)
    escalate: bool = False


class ProductInquiryVerdict(_VerdictBase):
    category: Literal["support/product-inquiry"] = "support/product-inquiry"
    products: List[str] = Field(default_factory=list)
    needs_live_data: bool = False


class GeneralSupportVerdict(_VerdictBase):
    category: Literal["support/general"] = "support/general"
    topic: str = "general"


class SalesVerdict(_VerdictBase):
    category: Literal["sales"] = "sales"
    opportunity_stage: str = "inquiry"
    estimated_value: Optional[float] = None


class DisputeVerdict(_VerdictBase):
    category: Literal["dispute/billing"] = "dispute/billing"
    dispute_type: str = "billing"
    amount: Optional[float] = None
    escalate: bool = True


class RelationshipVerdict(_VerdictBase):
    category: Literal["relationship"] = "relationship"
    sentiment: float = Field(default=0.0, ge=-1.0, le=1.0)
    warmth: float = Field(default=0.5, ge=0.0, le=1.0)


class OpportunityVerdict(_VerdictBase):
    category: Literal["opportunity"] = "opportunity"
    upsell_products: List[str] = Field(default_factory=list)


Verdict = Annotated[
    Union[
        ProductInquiryVerdict,
        GeneralSupportVerdict,
        SalesVerdict,
        DisputeVerdict,
        RelationshipVerdict,
        OpportunityVerdict,
    ],
    Field(discriminator="category"),
]

verdict_adapter: TypeAdapter = TypeAdapter(Verdict)


def parse_verdict(payload: Dict[str, Any]) -> Verdict:
    """Validate a raw payload into its verdict variant (raises pydantic.ValidationError)"""
    return verdict_adapter.validate_python(payload)


def verdict_to_dict(verdict: Verdict) -> Dict[str, Any]:
    return verdict.model_dump(mode="json")


def verdicts_equal(left: Optional[Verdict], right: Optional[Verdict]) -> bool:
    if left is None or right is None:
        return left is right
    return verdict_to_dict(left) == verdict_to_dict(right)
