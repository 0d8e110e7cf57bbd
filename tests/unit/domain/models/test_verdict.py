# tests/unit/domain/models/test_verdict.py
import pytest
from pydantic import ValidationError

from domain.models.verdict import (
    DisputeVerdict,
    GeneralSupportVerdict,
    ProductInquiryVerdict,
    RelationshipVerdict,
    Urgency,
    parse_verdict,
    verdict_to_dict,
    verdicts_equal,
)


class TestVerdictParsing:
    """Test the closed verdict union"""

    def test_payload_selects_variant_by_category(self):
        """The category field picks exactly one verdict shape"""
        verdict = parse_verdict({"category": "support/product-inquiry", "products": ["SKU-100"],
                                 "urgency": "high"})

        assert isinstance(verdict, ProductInquiryVerdict)
        assert verdict.products == ["SKU-100"]
        assert verdict.urgency == Urgency.HIGH

    def test_unknown_category_is_rejected(self):
        """Categories outside the closed set fail validation"""
        with pytest.raises(ValidationError):
            parse_verdict({"category": "spam"})

    def test_fields_of_other_variants_are_ignored(self):
        """Extra keys do not leak into the chosen variant"""
        verdict = parse_verdict({"category": "support/general", "products": ["x"], "topic": "shipping"})

        assert isinstance(verdict, GeneralSupportVerdict)
        assert verdict.topic == "shipping"
        assert "products" not in verdict_to_dict(verdict)

    def test_dispute_escalates_by_default(self):
        """Billing disputes escalate unless the payload says otherwise"""
        assert parse_verdict({"category": "dispute/billing"}).escalate is True
        assert DisputeVerdict(escalate=False).escalate is False

    def test_relationship_bounds(self):
        """Sentiment and warmth are range-checked"""
        with pytest.raises(ValidationError):
            RelationshipVerdict(sentiment=2.0)

    def test_verdicts_are_frozen(self):
        """Verdicts cannot be mutated after validation"""
        verdict = ProductInquiryVerdict()
        with pytest.raises(ValidationError):
            verdict.escalate = True


class TestVerdictEquality:
    """Test verdict comparison used for review divergence"""

    def test_equal_by_content(self):
        """Two verdicts with the same fields are equal"""
        assert verdicts_equal(ProductInquiryVerdict(products=["a"]), ProductInquiryVerdict(products=["a"]))
        assert not verdicts_equal(ProductInquiryVerdict(products=["a"]), ProductInquiryVerdict(products=["b"]))

    def test_none_handling(self):
        """None only equals None"""
        assert verdicts_equal(None, None)
        assert not verdicts_equal(None, GeneralSupportVerdict())
