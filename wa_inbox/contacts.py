"""
Contact book operations: CRUD helpers used by the admin router and the CSV
import.
"""

import csv
import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.orm import Session

from wa_inbox import storage
from wa_inbox.errors import BadRequestError, NotFoundError
from wa_inbox.schemas import CsvImportResults
from wa_inbox.utils import canonicalize_phone

logger = logging.getLogger(__name__)


@dataclass
class ContactRow:
    phone_number: str
    name: str
    email: Optional[str] = None
    notes: Optional[str] = None


def _cell(values: list, index: int) -> Optional[str]:
    if index >= len(values):
        return None
    return values[index].replace('"', "").strip() or None


def parse_contacts_csv(content: str) -> list[ContactRow]:
    """
    Parse `phone,name[,email[,notes]]` rows.

    The first non-blank line is treated as a header when it mentions
    "phone". Rows missing a phone or a name are skipped.
    """
    lines = [line for line in content.splitlines() if line.strip()]
    if lines and "phone" in lines[0].lower():
        lines = lines[1:]

    rows = []
    for line in lines:
        # One reader per line so an unbalanced quote cannot span rows
        values = next(csv.reader([line], skipinitialspace=True), [])
        if len(values) < 2:
            continue
        phone = canonicalize_phone(_cell(values, 0) or "")
        name = _cell(values, 1)
        if not phone or not name:
            continue
        rows.append(ContactRow(phone, name, _cell(values, 2), _cell(values, 3)))
    return rows


def import_contacts(db: Session, content: str) -> CsvImportResults:
    """
    Create or update one contact per parsed row.

    Per-row failures are collected instead of aborting the import.

    Raises:
        BadRequestError: no valid row in the content
    """
    rows = parse_contacts_csv(content)
    if not rows:
        raise BadRequestError("No valid contacts found in CSV")

    results = CsvImportResults()
    for row in rows:
        fields = {"name": row.name, "email": row.email, "notes": row.notes}
        try:
            _, created = storage.upsert_contact(db, row.phone_number, defaults={}, **fields)
        except Exception as e:
            db.rollback()
            logger.warning(f"CSV import failed for {row.phone_number}: {e}")
            results.errors.append(f"{row.phone_number}: {e}")
            continue
        if created:
            results.created += 1
        else:
            results.updated += 1

    logger.info(
        f"CSV import: {results.created} created, {results.updated} updated, "
        f"{len(results.errors)} errors"
    )
    return results


def require_contact(db: Session, phone: str):
    contact = storage.get_contact(db, canonicalize_phone(phone))
    if contact is None:
        raise NotFoundError("Contact not found")
    return contact


def add_contact(db: Session, phone: str, name: str, email: Optional[str] = None, notes: Optional[str] = None):
    phone = canonicalize_phone(phone)
    if storage.get_contact(db, phone) is not None:
        raise BadRequestError("Contact with this phone number already exists")
    return storage.create_contact(db, phone_number=phone, name=name.strip(), email=email, notes=notes)


def edit_contact(db: Session, phone: str, **fields):
    """Update only the provided (non-None) fields."""
    contact = require_contact(db, phone)
    changes = {key: value for key, value in fields.items() if value is not None}
    return storage.update_contact(db, contact, **changes)


def remove_contact(db: Session, phone: str) -> None:
    storage.delete_contact(db, require_contact(db, phone))
