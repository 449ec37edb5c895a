"""
Readiness check run before a 296-FZ emissions report is generated.

Critical issues block generation; warnings are shown to the user but do not.
Each issue carries a ``redirectUrl`` pointing at the settings page where the
missing data can be entered.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Literal, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session, selectinload

from esglite.db_models import Document, Organization, OrganizationProfile

Severity = Literal["critical", "warning"]

ORGANIZATION_SETTINGS_URL = "/settings?tab=organization"
DOCUMENTS_URL = "/documents"
PROCESSED_STATUS = "PROCESSED"


@dataclass
class ValidationIssue:
    field: str
    message: str
    severity: Severity
    redirectUrl: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        if data["redirectUrl"] is None:
            data.pop("redirectUrl")
        return data


@dataclass
class ValidationResult:
    canGenerate: bool
    errors: List[ValidationIssue] = field(default_factory=list)
    warnings: List[ValidationIssue] = field(default_factory=list)
    missingFields: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "canGenerate": self.canGenerate,
            "errors": [e.to_dict() for e in self.errors],
            "warnings": [w.to_dict() for w in self.warnings],
            "missingFields": list(self.missingFields),
        }


# (attribute, response field, label, message); all block generation when blank.
REQUIRED_FIELDS = [
    ("inn", "inn", "INN", "Organization INN is not set"),
    ("full_name", "fullName", "Full name", "Full organization name is not set"),
    ("ogrn", "ogrn", "OGRN", "OGRN is not set (required for the 296-FZ report)"),
    ("okpo", "okpo", "OKPO", "OKPO is not set (required for the 296-FZ report)"),
    ("oktmo", "oktmo", "OKTMO", "OKTMO is not set (required for the 296-FZ report)"),
    ("legal_address", "legalAddress", "Legal address", "Legal address is not set"),
    ("phone", "phone", "Contact phone", "Contact phone is not set"),
    (
        "director_name",
        "directorName",
        "Director name",
        "Director name is not set (required to sign the report)",
    ),
    ("director_position", "directorPosition", "Director position", "Director position is not set"),
]

RECOMMENDED_FIELDS = [
    ("short_name", "shortName", "Short organization name is not set"),
    ("email_for_billing", "emailForBilling", "Contact email is not set"),
]


def _blank(value: Optional[str]) -> bool:
    return value is None or not value.strip()


def _count_processed(db: Session, user_id: str, inn_matches: Optional[bool] = None) -> int:
    stmt = (
        select(func.count())
        .select_from(Document)
        .where(
            Document.user_id == user_id,
            Document.status == PROCESSED_STATUS,
            Document.ocr_processed.is_(True),
        )
    )
    if inn_matches is not None:
        stmt = stmt.where(Document.inn_matches.is_(inn_matches))
    return int(db.execute(stmt).scalar_one())


def validate_organization_for_report(db: Session, user_id: str) -> ValidationResult:
    result = ValidationResult(canGenerate=False)

    organization = db.execute(
        select(Organization)
        .options(selectinload(Organization.profile))
        .where(Organization.user_id == user_id)
    ).scalar_one_or_none()

    if organization is None:
        result.errors.append(
            ValidationIssue(
                field="organization",
                message="Organization not found. Create one in settings.",
                severity="critical",
                redirectUrl="/settings",
            )
        )
        result.missingFields.append("organization")
        return result

    profile: Optional[OrganizationProfile] = organization.profile

    for attr, field_name, label, message in REQUIRED_FIELDS:
        if _blank(getattr(profile, attr, None)):
            result.errors.append(
                ValidationIssue(field_name, message, "critical", ORGANIZATION_SETTINGS_URL)
            )
            result.missingFields.append(label)

    for attr, field_name, message in RECOMMENDED_FIELDS:
        if _blank(getattr(profile, attr, None)):
            result.warnings.append(
                ValidationIssue(field_name, message, "warning", ORGANIZATION_SETTINGS_URL)
            )

    processed = _count_processed(db, user_id)
    if processed == 0:
        result.warnings.append(
            ValidationIssue(
                "documents",
                "No processed documents to include in the report",
                "warning",
                DOCUMENTS_URL,
            )
        )
    elif profile is not None and not _blank(profile.inn):
        if _count_processed(db, user_id, inn_matches=True) == 0:
            result.warnings.append(
                ValidationIssue(
                    "documents_inn_mismatch",
                    f"{processed} processed documents found, but none contain your organization's INN",
                    "warning",
                    DOCUMENTS_URL,
                )
            )

    result.canGenerate = not result.errors
    return result


def can_generate_report(db: Session, user_id: str) -> bool:
    return validate_organization_for_report(db, user_id).canGenerate


def get_missing_fields_message(db: Session, user_id: str) -> str:
    result = validate_organization_for_report(db, user_id)
    if result.canGenerate:
        return ""
    if not result.missingFields:
        return "Fill in all required fields to generate the report"
    return "Fill in the following required fields: " + ", ".join(result.missingFields)
