"""Required documents per product type.

Single source of truth for both review-driven pipeline recomputation and the
submission-time gate in front of the lender gateway.
"""

from __future__ import annotations

from dataclasses import dataclass

from loan_intake.core.settings import settings

DEFAULT_PRODUCT_TYPE = "standard"

PDF_AND_IMAGES = frozenset({"application/pdf", "image/png", "image/jpeg"})


@dataclass(frozen=True)
class DocumentRequirement:
    document_type: str
    required: bool
    multiple_allowed: bool
    category: str
    allowed_mime_types: frozenset[str] = PDF_AND_IMAGES


STANDARD_REQUIREMENTS: tuple[DocumentRequirement, ...] = (
    DocumentRequirement(
        document_type="bank_statement",
        required=True,
        multiple_allowed=True,
        category="financial",
    ),
    DocumentRequirement(
        document_type="id_document",
        required=True,
        multiple_allowed=False,
        category="identity",
    ),
)

REQUIREMENTS_BY_PRODUCT: dict[str, tuple[DocumentRequirement, ...]] = {
    DEFAULT_PRODUCT_TYPE: STANDARD_REQUIREMENTS,
}


def is_supported_product_type(product_type: str) -> bool:
    return product_type in REQUIREMENTS_BY_PRODUCT


def requirements_for(product_type: str) -> tuple[DocumentRequirement, ...]:
    return REQUIREMENTS_BY_PRODUCT.get(product_type, STANDARD_REQUIREMENTS)


def required_types(product_type: str) -> frozenset[str]:
    return frozenset(req.document_type for req in requirements_for(product_type) if req.required)


def allowed_document_types(product_type: str) -> list[str]:
    return [req.document_type for req in requirements_for(product_type)]


def requirement_for(product_type: str, document_type: str) -> DocumentRequirement | None:
    for requirement in requirements_for(product_type):
        if requirement.document_type == document_type:
            return requirement
    return None


def allowed_mime_types(product_type: str, document_type: str) -> frozenset[str]:
    if settings.document_allowed_mime_types:
        return frozenset(settings.document_allowed_mime_types)
    requirement = requirement_for(product_type, document_type)
    if requirement is None:
        return frozenset()
    return requirement.allowed_mime_types
