from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from enum import StrEnum


class Role(StrEnum):
    ADMIN = "admin"
    MANAGER = "manager"
    SELLER = "seller"
    VIEWER = "viewer"


class Branch(StrEnum):
    PARAGUAY = "Paraguay"
    BARRACAS = "Barracas"
    DIAGONAL = "Diagonal"
    MUJER_CENTRO = "Mujer Centro"
    TRIBUNALES = "Tribunales"
    GENERAL = "General"


class ProspectStage(StrEnum):
    NEW = "New"
    CONTACTED = "Contacted"
    TRIAL = "Trial"
    WON = "Won"
    LOST = "Lost"


TERMINAL_STAGES = frozenset({ProspectStage.WON, ProspectStage.LOST})


class ProspectSource(StrEnum):
    INSTAGRAM = "Instagram"
    WEB = "Web"
    REFERRAL = "Referral"
    WALK_IN = "Walk-in"
    WHATSAPP = "WhatsApp"
    CHURNED = "Churned"
    LEAD_FEED = "Lead Feed"
    UPLOAD = "Upload"


class TaskType(StrEnum):
    CALL = "call"
    WHATSAPP = "whatsapp"
    EMAIL = "email"
    VISIT = "visit"
    NOTE = "note"


class TaskStatus(StrEnum):
    PENDING = "pending"
    DONE = "done"


class RelatedType(StrEnum):
    PROSPECT = "prospect"
    MEMBER = "member"


class GoalScope(StrEnum):
    SELLER = "seller"
    BRANCH = "branch"
    COMPANY = "company"


class GoalPeriod(StrEnum):
    DAILY = "daily"
    MONTHLY = "monthly"


@dataclass(frozen=True, slots=True)
class PlanTerms:
    fee: Decimal
    duration_months: int


INTEREST_NOT_REPORTED = "Not reported"
DEFAULT_UPLOAD_INTEREST = "Flex"

PLAN_TERMS: dict[str, PlanTerms] = {
    INTEREST_NOT_REPORTED: PlanTerms(Decimal("0"), 0),
    "Flex": PlanTerms(Decimal("7000"), 1),
    "Flex Annual 1 payment": PlanTerms(Decimal("70000"), 12),
    "Flex Plus Usage": PlanTerms(Decimal("8500"), 1),
    "Flex Total Usage": PlanTerms(Decimal("10000"), 1),
    "Plus": PlanTerms(Decimal("8500"), 1),
    "Plus Annual 1 payment": PlanTerms(Decimal("84000"), 12),
    "Plus Annual 3 installments": PlanTerms(Decimal("92400"), 12),
    "Plus Annual 6 installments": PlanTerms(Decimal("92400"), 12),
    "Total": PlanTerms(Decimal("10000"), 1),
    "Total Annual 1 payment": PlanTerms(Decimal("98000"), 12),
    "Total Annual 3 installments": PlanTerms(Decimal("107800"), 12),
    "Total Annual 6 installments": PlanTerms(Decimal("107800"), 12),
    "Total Semiannual 1 payment": PlanTerms(Decimal("54000"), 6),
    "Total Semiannual 6 installments": PlanTerms(Decimal("59400"), 6),
    "Local": PlanTerms(Decimal("7000"), 1),
    "Local Quarterly 1 payment": PlanTerms(Decimal("20000"), 3),
    "Local Semiannual 1 payment": PlanTerms(Decimal("39000"), 6),
    "Local Semiannual 6 installments": PlanTerms(Decimal("42900"), 6),
    "Local Annual 1 payment": PlanTerms(Decimal("70000"), 12),
    "Local Annual 3 installments": PlanTerms(Decimal("77000"), 12),
    "Local Annual 6 installments": PlanTerms(Decimal("77000"), 12),
    "ACA Plus": PlanTerms(Decimal("8500"), 1),
    "ACA Total": PlanTerms(Decimal("10000"), 1),
}

# Business fallback for interests missing from the price list. Keep as is.
DEFAULT_PLAN_TERMS = PlanTerms(Decimal("7000"), 1)

INTERESTS: tuple[str, ...] = tuple(PLAN_TERMS)


def plan_terms_for(interest: str | None) -> PlanTerms:
    if interest is None:
        return DEFAULT_PLAN_TERMS
    return PLAN_TERMS.get(interest, DEFAULT_PLAN_TERMS)


def match_interest(raw: str | None, default: str) -> str:
    """Case-insensitive lookup of a free-text plan name in the catalogue."""
    if not raw or not raw.strip():
        return default
    wanted = raw.strip().casefold()
    for interest in INTERESTS:
        if interest.casefold() == wanted:
            return interest
    return default


# Fixed user-facing strings.
CONVERSION_NOTE_PREFIX = "Converted from prospect. Original notes: "
TASK_DONE_PLACEHOLDER = "Completed without result."
INTERACTION_TASK_RESULT = "Interaction logged manually."
FEED_IMPORT_NOTE = "Imported from lead feed."
UPLOAD_IMPORT_NOTE = "Imported from file."
SYSTEM_ACTOR_ID = "system"
