import datetime
import logging
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Union

import pandas as pd
from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from ledger.domain import ImportSummary, money
from ledger.errors import LedgerError, ValidationError
from ledger.functional import Either, Left, Right
from ledger.matching import HintMatcher
from ledger.models import EXPENSE, INCOME
from ledger.transactions import TransactionRecorder, ensure_owner

logger = logging.getLogger(__name__)

COLUMN_ALIASES = {
    "transaction_date": "date",
    "posted_date": "date",
    "transaction_type": "type",
    "category": "suggested_category",
    "category_name": "suggested_category",
    "memo": "description",
}
TYPE_ALIASES = {"credit": INCOME, "debit": EXPENSE, "in": INCOME, "out": EXPENSE}


class ImportCandidate(BaseModel):
    date: datetime.date
    type: str = Field(pattern="^(income|expense)$")
    amount: Decimal = Field(gt=0)
    description: str = ""
    suggested_category: Optional[str] = None


def validate_candidate(raw: dict) -> Either[dict, ImportCandidate]:
    try:
        return Right(ImportCandidate.model_validate(raw))
    except PydanticValidationError as exc:
        problems = "; ".join(f"{'.'.join(map(str, e['loc']))}: {e['msg']}" for e in exc.errors())
        return Left(ValidationError(problems).to_dict())


def _column_name(name) -> str:
    key = str(name).strip().lower().replace(" ", "_")
    return COLUMN_ALIASES.get(key, key)


def candidates_from_frame(df: pd.DataFrame) -> List[dict]:
    """Normalise a parsed statement into candidate dicts.

    Rows whose date or amount cannot be parsed are dropped. Without a ``type``
    column the sign of ``amount`` decides: negative amounts are expenses.
    """
    df = df.rename(columns=_column_name).copy()
    if "date" not in df.columns or "amount" not in df.columns:
        raise ValidationError("Import needs at least date and amount columns", columns=list(df.columns))

    df["date"] = pd.to_datetime(df["date"], errors="coerce")
    df["amount"] = pd.to_numeric(df["amount"], errors="coerce")
    total = len(df)
    df = df.dropna(subset=["date", "amount"])
    dropped = total - len(df)
    if dropped:
        logger.warning("Dropped %d unparsable import rows", dropped)

    if "type" in df.columns:
        df["type"] = df["type"].astype(str).str.strip().str.lower().replace(TYPE_ALIASES)
    else:
        df["type"] = df["amount"].apply(lambda x: EXPENSE if x < 0 else INCOME)
    df["amount"] = df["amount"].abs()

    if "description" not in df.columns:
        df["description"] = ""
    df["description"] = df["description"].fillna("").astype(str).str.strip()
    if "suggested_category" not in df.columns:
        df["suggested_category"] = None

    return [
        {
            "date": row["date"].date(),
            "type": row["type"],
            "amount": money(row["amount"]),
            "description": row["description"],
            "suggested_category": None if pd.isna(row["suggested_category"]) else str(row["suggested_category"]),
        }
        for _, row in df.iterrows()
    ]


class StatementImporter:
    """Feeds parsed statement rows through the normal posting path, one unit per row."""

    def __init__(self, recorder: TransactionRecorder, matcher: HintMatcher):
        self.recorder = recorder
        self.matcher = matcher

    def _category_for(self, owner_id: int, candidate: ImportCandidate,
                      mappings: Dict[str, int]) -> Optional[int]:
        if not candidate.suggested_category:
            return None
        if candidate.suggested_category in mappings:
            return mappings[candidate.suggested_category]
        return (
            self.matcher.match_category(candidate.suggested_category, owner_id, candidate.type)
            .map(lambda c: c.id)
            .get_or_else(None)
        )

    def import_candidates(self, owner_id: int, account_id: int,
                          candidates: Iterable[Union[ImportCandidate, dict]],
                          skip_duplicates: bool = True,
                          category_mappings: Optional[Dict[str, int]] = None) -> ImportSummary:
        account = self.recorder.ledger.get(account_id)
        ensure_owner(owner_id, account, "Account")
        mappings = category_mappings or {}

        imported, skipped, errors, created = 0, 0, [], []
        for row, raw in enumerate(candidates):
            checked = Right(raw) if isinstance(raw, ImportCandidate) else validate_candidate(raw)
            if checked.is_left():
                errors.append({**checked.get_error(), "row": row})
                continue
            candidate = checked.get_or_else(None)
            description = candidate.description or None

            if skip_duplicates and self.recorder.is_duplicate(
                account_id, candidate.date, money(candidate.amount), description
            ):
                skipped += 1
                continue

            try:
                txn = self.recorder.record(
                    candidate.type, owner_id, account_id, candidate.amount, candidate.date,
                    category_id=self._category_for(owner_id, candidate, mappings),
                    description=description,
                )
            except LedgerError as exc:
                errors.append({**exc.to_dict(), "row": row})
                continue
            imported += 1
            created.append(txn)

        logger.info("Imported %d rows into account %s (%d duplicates skipped, %d errors)",
                    imported, account_id, skipped, len(errors))
        return ImportSummary(imported=imported, skipped=skipped, errors=errors, transactions=created)
