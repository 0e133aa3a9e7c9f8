"""
Strict, all-or-nothing card batch ingestion.

Every line is checked against the five-field card schema
(``number,MM/YY,cvv,zip,email``) and against duplicates, both inside the
batch and against the current inventory. A batch is written only when the
report comes back clean; otherwise nothing is admitted.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Set, Tuple

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from orderdesk.errors import StoreFailure
from orderdesk.inventory import CARD_FIELD_COUNT, card_number_of, iter_numbered_lines, normalize_card_string
from orderdesk.models import VirtualCard

logger = logging.getLogger(__name__)

CARD_NUMBER_RE = re.compile(r"^\d{16}$")
EXPIRY_RE = re.compile(r"^(\d{2})/(\d{2})$")
CVV_RE = re.compile(r"^\d{3}$")
ZIP_RE = re.compile(r"^\d{5}$")
# An "@" with a "." somewhere after it
EMAIL_RE = re.compile(r"@.*\.")

# Bound on bind parameters per IN (...) lookup
LOOKUP_CHUNK = 500


@dataclass
class FormatError:
    line_number: int
    raw: str
    reason: str


@dataclass
class DuplicateEntry:
    line_number: int
    card_number: str
    source: str  # "batch" or "inventory"
    first_line_number: Optional[int] = None


@dataclass
class StrictIngestResult:
    added: int = 0
    format_errors: List[FormatError] = field(default_factory=list)
    duplicates: List[DuplicateEntry] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.format_errors and not self.duplicates


@dataclass
class _Candidate:
    line_number: int
    card_string: str
    card_number: str


def check_card_fields(card_string: str) -> Optional[str]:
    """Return why a normalized card string breaks the schema, or None."""
    parts = card_string.split(",")
    if len(parts) != CARD_FIELD_COUNT:
        return f"expected {CARD_FIELD_COUNT} comma-separated fields, got {len(parts)}"

    number, expiry, cvv, zip_code, email = parts
    if not CARD_NUMBER_RE.match(number):
        return "card number must be 16 digits"

    match = EXPIRY_RE.match(expiry)
    if not match:
        return "expiration must be MM/YY"
    if not 1 <= int(match.group(1)) <= 12:
        return "expiration month must be between 01 and 12"

    if not CVV_RE.match(cvv):
        return "security code must be 3 digits"
    if not ZIP_RE.match(zip_code):
        return "postal code must be 5 digits"
    if not EMAIL_RE.search(email):
        return "email is not valid"
    return None


def _existing_card_numbers(db: Session, card_numbers: List[str]) -> Set[str]:
    found: Set[str] = set()
    for start in range(0, len(card_numbers), LOOKUP_CHUNK):
        chunk = card_numbers[start:start + LOOKUP_CHUNK]
        found.update(
            db.scalars(select(VirtualCard.card_number).where(VirtualCard.card_number.in_(chunk))).all()
        )
    return found


def validate_batch(db: Session, lines: Iterable[str]) -> Tuple[List[_Candidate], StrictIngestResult]:
    """Evaluate every line; never stops at the first problem."""
    report = StrictIngestResult()
    candidates: List[_Candidate] = []
    first_seen: Dict[str, int] = {}

    for line_number, raw in iter_numbered_lines(lines):
        card_string = normalize_card_string(raw)
        reason = check_card_fields(card_string)
        if reason:
            report.format_errors.append(FormatError(line_number=line_number, raw=raw.strip(), reason=reason))
            continue

        card_number = card_number_of(card_string)
        if card_number in first_seen:
            report.duplicates.append(DuplicateEntry(
                line_number=line_number,
                card_number=card_number,
                source="batch",
                first_line_number=first_seen[card_number],
            ))
            continue

        first_seen[card_number] = line_number
        candidates.append(_Candidate(line_number, card_string, card_number))

    existing = _existing_card_numbers(db, [c.card_number for c in candidates])
    for candidate in candidates:
        if candidate.card_number in existing:
            report.duplicates.append(DuplicateEntry(
                line_number=candidate.line_number,
                card_number=candidate.card_number,
                source="inventory",
            ))

    report.duplicates.sort(key=lambda d: d.line_number)
    return candidates, report


def ingest_batch_strict(db: Session, lines: Iterable[str]) -> StrictIngestResult:
    """Admit the whole batch or nothing at all."""
    lines = list(lines)
    candidates, report = validate_batch(db, lines)
    if not report.success:
        logger.info(
            f"🚫 Card batch rejected: {len(report.format_errors)} format errors, "
            f"{len(report.duplicates)} duplicates"
        )
        return report

    db.add_all(VirtualCard(card_string=c.card_string, card_number=c.card_number) for c in candidates)
    try:
        db.commit()
    except IntegrityError:
        # A concurrent upload admitted some of these cards after validation
        db.rollback()
        _, report = validate_batch(db, lines)
        if report.success:
            raise StoreFailure("Card batch violated a uniqueness constraint that re-validation cannot explain")
        logger.warning(f"🚫 Card batch rejected at commit: {len(report.duplicates)} duplicates admitted concurrently")
        return report
    except SQLAlchemyError as e:
        db.rollback()
        raise StoreFailure(f"Failed to store card batch: {e}") from e

    report.added = len(candidates)
    logger.info(f"📥 Card batch admitted: {report.added} cards")
    return report
