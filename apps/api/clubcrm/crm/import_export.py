"""Lead import: parse an external table, drop incomplete and duplicate rows,
assign owners and create prospects through the regular creation path."""

from __future__ import annotations

import csv
import io
import logging
import re
import time
import unicodedata
import uuid
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from fastapi import HTTPException
from opentelemetry import trace
from pydantic import ValidationError
from pydantic.networks import validate_email
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from clubcrm import events
from clubcrm.crm.constants import (
    DEFAULT_UPLOAD_INTEREST,
    FEED_IMPORT_NOTE,
    INTEREST_NOT_REPORTED,
    UPLOAD_IMPORT_NOTE,
    ProspectSource,
    ProspectStage,
    Role,
    match_interest,
)
from clubcrm.crm.directory import DirectoryClient, DirectoryError
from clubcrm.crm.feed import (
    FeedFormatError,
    LeadFeedClient,
    decode_upload_text,
    read_spreadsheet,
    upload_kind,
)
from clubcrm.crm.models import CRMProspect, utcnow
from clubcrm.crm.schemas import ImportRead, ProspectCreate, ProspectRead
from clubcrm.crm.service import enforce
from clubcrm.metrics import observe_import
from clubcrm.platform.security.context import Actor
from clubcrm.platform.security.visibility import IMPORT, require_assignable, require_manager


logger = logging.getLogger("clubcrm.crm.import")
tracer = trace.get_tracer("clubcrm.crm.import")

PLACEHOLDER_EMAIL_DOMAIN = "no-email.clubcrm.app"

HEADER_ALIASES: dict[str, str] = {
    "nombrecompleto": "name",
    "nombre completo": "name",
    "nombre": "name",
    "nombres": "name",
    "name": "name",
    "full name": "name",
    "apellido y nombre": "name",
    "razon social": "name",
    "apellido": "last_name",
    "apellidos": "last_name",
    "last name": "last_name",
    "surname": "last_name",
    "telefono": "phone",
    "telefono celular": "phone",
    "celular": "phone",
    "whatsapp": "phone",
    "tel": "phone",
    "phone": "phone",
    "mobile": "phone",
    "email": "email",
    "e-mail": "email",
    "mail": "email",
    "correo": "email",
    "correo electronico": "email",
    "dni": "dni",
    "documento": "dni",
    "direccion": "address",
    "domicilio": "address",
    "address": "address",
    "notas": "notes",
    "notes": "notes",
    "observaciones": "notes",
    "comentario": "notes",
    "origen": "origin",
    "source": "origin",
    "sucursal": "branch_hint",
    "fecha": "date",
    "plan": "plan",
    "motivo": "reason",
    "fecha de inactivacion": "inactivated_on",
}

_HTML_PATTERN = re.compile(r"^\s*(?:<!doctype html|<html[\s>])", re.IGNORECASE)
_PHONE_NOISE = re.compile(r"[\s()\-./]")


class ImportValidationError(Exception):
    """The import request itself is unusable; nothing was written."""


@dataclass(slots=True)
class Assignment:
    """Explicit owners for an import: one seller for every row, or one per data row."""

    single: str | None = None
    per_row: dict[int, str] | None = None


@dataclass(slots=True)
class LeadRow:
    index: int
    name: str
    phone: str
    email: str
    values: dict[str, str]


@dataclass
class ImportResult:
    total: int = 0
    created: int = 0
    duplicate: int = 0
    incomplete: int = 0
    failed: int = 0
    created_prospects: list[ProspectRead] = field(default_factory=list)

    def counts(self) -> dict[str, int]:
        return {
            "total": self.total,
            "created": self.created,
            "duplicate": self.duplicate,
            "incomplete": self.incomplete,
            "failed": self.failed,
        }

    def to_read(self) -> ImportRead:
        return ImportRead(**self.counts(), created_prospects=list(self.created_prospects))


def _strip_bom(value: str) -> str:
    return value[1:] if value.startswith("\ufeff") else value


def _unquote(value: str) -> str:
    text = (value or "").strip()
    if len(text) >= 2 and text[0] == text[-1] and text[0] in {'"', "'"}:
        return text[1:-1]
    return text


def normalize_header(header: str) -> str:
    text = _unquote(_strip_bom(header or ""))
    decomposed = unicodedata.normalize("NFD", text)
    folded = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return " ".join(folded.casefold().split())


def canonical_key(header: str) -> str | None:
    return HEADER_ALIASES.get(normalize_header(header))


def normalize_phone(raw: str | None) -> str:
    if not raw:
        return ""
    phone = _PHONE_NOISE.sub("", str(raw).strip())
    if phone.startswith("00"):
        phone = "+" + phone[2:]
    return phone


def placeholder_email(phone: str) -> str:
    digits = re.sub(r"[^0-9+]", "", normalize_phone(phone))
    if digits.startswith("+"):
        digits = "plus" + digits[1:]
    return f"whatsapp.{digits}@{PLACEHOLDER_EMAIL_DOMAIN}"


def normalize_email(raw: str | None) -> str:
    """Lower-cased address, or ``""`` when the cell does not hold a usable one."""
    email = (raw or "").strip().lower()
    if not email:
        return ""
    try:
        validate_email(email)
    except ValueError:
        return ""
    return email


def ensure_tabular(text: str) -> str:
    if _HTML_PATTERN.match(_strip_bom(text or "")):
        raise FeedFormatError("feed returned an HTML page instead of delimited data")
    if not (text or "").strip():
        raise FeedFormatError("feed is empty")
    return text


def parse_feed(text: str) -> list[list[str]]:
    """Split comma-separated text into rows of trimmed, unquoted cells."""
    reader = csv.reader(io.StringIO(_strip_bom(text)), skipinitialspace=True)
    try:
        rows = [[_unquote(cell) for cell in row] for row in reader]
    except csv.Error as exc:
        raise FeedFormatError(f"malformed feed rows: {exc}") from exc
    while rows and not any(rows[-1]):
        rows.pop()
    return rows


def read_upload(filename: str | None, content: bytes) -> list[list[str]]:
    if upload_kind(filename) == "spreadsheet":
        return read_spreadsheet(content)
    return parse_feed(ensure_tabular(decode_upload_text(content)))


def to_lead_rows(rows: Sequence[Sequence[str]]) -> list[LeadRow]:
    """Map the header through the alias table and build one record per non-blank data row."""
    if not rows:
        return []
    keys = [canonical_key(header) for header in rows[0]]
    data_rows = [row for row in rows[1:] if any(str(cell).strip() for cell in row)]

    leads: list[LeadRow] = []
    for index, row in enumerate(data_rows):
        values: dict[str, str] = {}
        for position, key in enumerate(keys):
            if key is None or position >= len(row):
                continue
            cell = _unquote(str(row[position]))
            if cell and not values.get(key):
                values[key] = cell
        name = " ".join(part for part in (values.get("name", ""), values.get("last_name", "")) if part).strip()
        leads.append(
            LeadRow(
                index=index,
                name=name,
                phone=normalize_phone(values.get("phone")),
                email=normalize_email(values.get("email")),
                values=values,
            )
        )
    return leads


def build_import_note(lead: LeadRow, import_note: str) -> str:
    labels = (
        ("origin", "Origin"),
        ("branch_hint", "Branch"),
        ("date", "Date"),
        ("inactivated_on", "Inactivated on"),
        ("reason", "Reason"),
    )
    parts = [import_note]
    parts.extend(f"{label}: {lead.values[key]}" for key, label in labels if lead.values.get(key))
    if lead.values.get("notes"):
        parts.append(lead.values["notes"])
    return " | ".join(parts)


def existing_contacts(session: Session) -> tuple[set[str], set[str]]:
    rows = session.execute(select(CRMProspect.phone, CRMProspect.email))
    return contact_sets(rows)


def contact_sets(prospects: Iterable[Any]) -> tuple[set[str], set[str]]:
    phones: set[str] = set()
    emails: set[str] = set()
    for prospect in prospects:
        phone = normalize_phone(prospect.phone)
        email = (prospect.email or "").strip().lower()
        if phone:
            phones.add(phone)
        if email:
            emails.add(email)
    return phones, emails


def _assign(
    survivors: list[LeadRow],
    *,
    eligible_sellers: Sequence[Actor],
    assignment: Assignment | None,
    directory: DirectoryClient,
) -> dict[int, str]:
    if assignment is None or (assignment.single is None and assignment.per_row is None):
        if not eligible_sellers:
            raise ImportValidationError("no eligible sellers to assign imported prospects")
        return {lead.index: eligible_sellers[position % len(eligible_sellers)].id for position, lead in enumerate(survivors)}

    if assignment.single is not None:
        owners = {lead.index: assignment.single for lead in survivors}
    else:
        per_row = assignment.per_row or {}
        missing = [lead.index for lead in survivors if not per_row.get(lead.index)]
        if missing:
            raise ImportValidationError(f"rows without an assigned seller: {missing}")
        owners = {lead.index: per_row[lead.index] for lead in survivors}

    try:
        known = {user.id for user in directory.get_users()}
    except DirectoryError as exc:
        raise ImportValidationError("directory unavailable") from exc
    unknown = sorted({seller_id for seller_id in owners.values() if seller_id not in known})
    if unknown:
        raise ImportValidationError(f"unknown sellers: {unknown}")
    return owners


def import_leads(
    session: Session,
    actor: Actor,
    rows: Sequence[Sequence[str]],
    *,
    eligible_sellers: Sequence[Actor],
    directory: DirectoryClient,
    prospect_service: Any,
    assignment: Assignment | None = None,
    source: ProspectSource = ProspectSource.LEAD_FEED,
    default_interest: str = INTEREST_NOT_REPORTED,
    import_note: str = FEED_IMPORT_NOTE,
    existing_prospects: Iterable[Any] | None = None,
    now: datetime | None = None,
) -> ImportResult:
    started = time.perf_counter()
    now = now or utcnow()
    with tracer.start_as_current_span("crm.import.leads") as span:
        span.set_attribute("import_source", source.value)
        span.set_attribute("correlation_id", actor.correlation_id or "")

        leads = to_lead_rows(rows)
        result = ImportResult(total=len(leads))
        if existing_prospects is None:
            phones, emails = existing_contacts(session)
        else:
            phones, emails = contact_sets(existing_prospects)

        survivors: list[LeadRow] = []
        for lead in leads:
            if not lead.name or (not lead.phone and not lead.email):
                result.incomplete += 1
                continue
            if (lead.phone and lead.phone in phones) or (lead.email and lead.email in emails):
                result.duplicate += 1
                continue
            if not lead.email:
                lead.email = placeholder_email(lead.phone)
            if lead.phone:
                phones.add(lead.phone)
            emails.add(lead.email)
            survivors.append(lead)

        owners = _assign(survivors, eligible_sellers=eligible_sellers, assignment=assignment, directory=directory)
        next_action_date = now + timedelta(days=1)

        for lead in survivors:
            try:
                dto = ProspectCreate(
                    name=lead.name,
                    phone=lead.phone,
                    email=lead.email,
                    source=source,
                    interest=match_interest(lead.values.get("plan"), default_interest),
                    stage=ProspectStage.NEW,
                    assigned_to=owners[lead.index],
                    dni=lead.values.get("dni", ""),
                    address=lead.values.get("address", ""),
                    notes=build_import_note(lead, import_note),
                    next_action_date=next_action_date,
                )
                created = prospect_service.create_prospect(session, actor, dto, directory=directory)
            except (HTTPException, ValidationError, SQLAlchemyError) as exc:
                session.rollback()
                result.failed += 1
                logger.warning(
                    "import.row_failed",
                    extra={"row_index": lead.index, "import_source": source.value, "error": str(exc)},
                )
                continue
            result.created += 1
            result.created_prospects.append(created)

        span.set_attribute("import_created", result.created)
        observe_import(source.value, result.counts(), time.perf_counter() - started)
        events.publish(
            {
                "event_id": str(uuid.uuid4()),
                "event_type": "crm.import.completed",
                "occurred_at": now.isoformat(),
                "actor_user_id": actor.id,
                "version": 1,
                "payload": {"source": source.value, **result.counts()},
                "correlation_id": actor.correlation_id,
            }
        )
        logger.info(
            "import.completed",
            extra={
                "actor_id": actor.id,
                "import_source": source.value,
                "import_total": result.total,
                "import_created": result.created,
                "import_duplicate": result.duplicate,
                "import_incomplete": result.incomplete,
                "import_failed": result.failed,
            },
        )
        return result


class LeadImportService:
    def eligible_sellers(
        self,
        actor: Actor,
        *,
        directory: DirectoryClient,
        seller_ids: Sequence[str] | None = None,
    ) -> list[Actor]:
        """Explicitly chosen sellers, or every seller the actor may assign to."""
        users = self._users(directory)
        if seller_ids:
            by_id = {user.id: user for user in users}
            unknown = [seller_id for seller_id in seller_ids if seller_id not in by_id]
            if unknown:
                raise ImportValidationError(f"unknown sellers: {unknown}")
            sellers = [by_id[seller_id] for seller_id in seller_ids]
        else:
            sellers = [user for user in users if user.role == Role.SELLER]
            if not actor.is_admin:
                sellers = [user for user in sellers if user.branch == actor.branch]
        with enforce():
            for seller in sellers:
                require_assignable(actor, seller, resource=IMPORT, action="assign")
        return sellers

    def import_from_feed(
        self,
        session: Session,
        actor: Actor,
        *,
        feed: LeadFeedClient,
        directory: DirectoryClient,
        prospect_service: Any,
        seller_ids: Sequence[str] | None = None,
    ) -> ImportResult:
        """Fetch the configured feed and import it; feed errors propagate before any write."""
        with enforce():
            require_manager(actor, resource=IMPORT, action="sync")
        sellers = self.eligible_sellers(actor, directory=directory, seller_ids=seller_ids)
        rows = parse_feed(ensure_tabular(feed.fetch_text()))
        return import_leads(
            session,
            actor,
            rows,
            eligible_sellers=sellers,
            directory=directory,
            prospect_service=prospect_service,
            source=ProspectSource.LEAD_FEED,
            default_interest=INTEREST_NOT_REPORTED,
            import_note=FEED_IMPORT_NOTE,
        )

    def import_from_upload(
        self,
        session: Session,
        actor: Actor,
        *,
        filename: str | None,
        content: bytes,
        directory: DirectoryClient,
        prospect_service: Any,
        assignment: Assignment | None = None,
        seller_ids: Sequence[str] | None = None,
        source: ProspectSource = ProspectSource.UPLOAD,
    ) -> ImportResult:
        with enforce():
            require_manager(actor, resource=IMPORT, action="upload")
        rows = read_upload(filename, content)
        sellers: list[Actor] = []
        if assignment is None:
            sellers = self.eligible_sellers(actor, directory=directory, seller_ids=seller_ids)
        else:
            targets = [assignment.single] if assignment.single else list((assignment.per_row or {}).values())
            by_id = {user.id: user for user in self._users(directory)}
            with enforce():
                for seller_id in dict.fromkeys(targets):
                    if seller_id in by_id:
                        require_assignable(actor, by_id[seller_id], resource=IMPORT, action="assign")
        return import_leads(
            session,
            actor,
            rows,
            eligible_sellers=sellers,
            directory=directory,
            prospect_service=prospect_service,
            assignment=assignment,
            source=source,
            default_interest=DEFAULT_UPLOAD_INTEREST,
            import_note=UPLOAD_IMPORT_NOTE,
        )

    def _users(self, directory: DirectoryClient) -> list[Actor]:
        try:
            return directory.get_users()
        except DirectoryError as exc:
            raise HTTPException(status_code=502, detail="directory unavailable") from exc
