from loan_intake.core.settings import settings
from loan_intake.services import requirements_policy


def test_standard_requires_bank_statement_and_id():
    assert requirements_policy.required_types("standard") == frozenset(
        {"bank_statement", "id_document"}
    )


def test_unknown_product_falls_back_to_standard_for_lookups():
    assert not requirements_policy.is_supported_product_type("jumbo")
    assert requirements_policy.required_types("jumbo") == requirements_policy.required_types(
        "standard"
    )


def test_requirement_details():
    statement = requirements_policy.requirement_for("standard", "bank_statement")
    identity = requirements_policy.requirement_for("standard", "id_document")
    assert statement.multiple_allowed and statement.category == "financial"
    assert not identity.multiple_allowed and identity.category == "identity"
    assert requirements_policy.requirement_for("standard", "selfie") is None
    assert requirements_policy.allowed_document_types("standard") == ["bank_statement", "id_document"]


def test_allowed_mime_types_per_type_and_override(monkeypatch):
    assert requirements_policy.allowed_mime_types("standard", "bank_statement") == frozenset(
        {"application/pdf", "image/png", "image/jpeg"}
    )
    assert requirements_policy.allowed_mime_types("standard", "selfie") == frozenset()

    monkeypatch.setattr(settings, "document_allowed_mime_types", ["application/pdf"])
    assert requirements_policy.allowed_mime_types("standard", "id_document") == frozenset(
        {"application/pdf"}
    )
