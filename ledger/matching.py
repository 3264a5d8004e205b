"""Matching free-text hints from parsers onto a user's categories and accounts.

Each matcher is a strategy tried in order; the first hit wins.
"""
import logging
from abc import ABC, abstractmethod
from datetime import date, datetime
from decimal import Decimal
from typing import Callable, Dict, Optional, Sequence, Tuple

from pydantic import BaseModel, Field, field_validator
from sqlalchemy import select
from sqlalchemy.orm import Session

from ledger.domain import HintSuggestion, Match
from ledger.functional import Maybe, Nothing, Some
from ledger.models import EXPENSE, Account, Category

logger = logging.getLogger(__name__)

# keyword found in the hint -> terms to look for in category names
CATEGORY_KEYWORDS: Dict[str, Tuple[str, ...]] = {
    "ăn": ("food", "ăn uống", "thực phẩm"),
    "cafe": ("food", "ăn uống", "coffee"),
    "xăng": ("transport", "di chuyển", "transportation"),
    "điện": ("utilities", "tiện ích", "điện nước"),
    "nước": ("utilities", "tiện ích", "điện nước"),
    "lương": ("salary", "thu nhập", "income"),
    "thuê": ("rent", "nhà ở", "housing"),
    "mua sắm": ("shopping", "mua sắm"),
    "giải trí": ("entertainment", "giải trí"),
}

# keyword found in the hint -> account type
ACCOUNT_KEYWORDS: Dict[str, str] = {
    "tiền mặt": "cash",
    "cash": "cash",
    "thẻ": "credit_card",
    "card": "credit_card",
    "ngân hàng": "bank",
    "bank": "bank",
}


class TransactionHint(BaseModel):
    type: str = Field(default=EXPENSE, pattern="^(income|expense)$")
    amount: Decimal = Field(gt=0)
    description: str = ""
    category_hint: Optional[str] = None
    account_hint: Optional[str] = None
    date_hint: Optional[date] = None
    confidence: float = Field(default=0.0, ge=0, le=1)

    @field_validator("category_hint", "account_hint")
    @classmethod
    def blank_is_none(cls, value: Optional[str]) -> Optional[str]:
        if value is None or not value.strip():
            return None
        return value.strip()


class Matcher(ABC):
    @abstractmethod
    def match(self, hint: str, candidates: Sequence) -> Maybe:
        pass


class ExactName(Matcher):
    def match(self, hint, candidates):
        for c in candidates:
            if c.name.lower() == hint:
                return Some(c)
        return Nothing()


class Substring(Matcher):
    def match(self, hint, candidates):
        for c in candidates:
            name = c.name.lower()
            if name in hint or hint in name:
                return Some(c)
        return Nothing()


class KeywordGroup(Matcher):
    def __init__(self, table: Dict[str, Tuple[str, ...]] = CATEGORY_KEYWORDS):
        self.table = table

    def match(self, hint, candidates):
        for keyword, terms in self.table.items():
            if keyword not in hint:
                continue
            for c in candidates:
                name = c.name.lower()
                if any(term in name for term in terms):
                    return Some(c)
        return Nothing()


class AccountKindKeyword(Matcher):
    def __init__(self, table: Dict[str, str] = ACCOUNT_KEYWORDS):
        self.table = table

    def match(self, hint, candidates):
        for keyword, account_type in self.table.items():
            if keyword not in hint:
                continue
            for c in candidates:
                if c.account_type == account_type:
                    return Some(c)
        return Nothing()


def _as_match(obj) -> Match:
    return Match(id=obj.id, name=obj.name)


def first_match(matchers: Sequence[Matcher], hint: Optional[str], candidates: Sequence) -> Maybe:
    if not hint:
        return Nothing()
    needle = hint.strip().lower()
    for matcher in matchers:
        found = matcher.match(needle, candidates)
        if found.is_some():
            return found
    return Nothing()


class HintMatcher:
    category_matchers: Sequence[Matcher] = (ExactName(), Substring(), KeywordGroup())
    account_matchers: Sequence[Matcher] = (ExactName(), Substring(), AccountKindKeyword())

    def __init__(self, session: Session, now: Callable[[], datetime] = datetime.now):
        self.session = session
        self.now = now

    def categories_for(self, owner_id: int, transaction_type: str = EXPENSE):
        stmt = (
            select(Category)
            .where(
                (Category.owner_id == owner_id) | Category.owner_id.is_(None),
                Category.is_active.is_(True),
                Category.type.in_((transaction_type, "both")),
            )
            .order_by(Category.id)
        )
        return list(self.session.execute(stmt).scalars())

    def accounts_for(self, owner_id: int):
        stmt = (
            select(Account)
            .where(Account.owner_id == owner_id, Account.is_active.is_(True))
            .order_by(Account.id)
        )
        return list(self.session.execute(stmt).scalars())

    def match_category(self, hint: Optional[str], owner_id: int, transaction_type: str = EXPENSE) -> Maybe:
        return first_match(self.category_matchers, hint, self.categories_for(owner_id, transaction_type))

    def match_account(self, hint: Optional[str], owner_id: int) -> Maybe:
        return first_match(self.account_matchers, hint, self.accounts_for(owner_id))

    def resolve_hint(self, hint: TransactionHint, owner_id: int) -> HintSuggestion:
        """Best guess for a parsed hint; falls back to the first active account."""
        category = self.match_category(hint.category_hint, owner_id, hint.type).map(_as_match)
        account = (
            self.match_account(hint.account_hint, owner_id)
            .or_else(lambda: Maybe.of(next(iter(self.accounts_for(owner_id)), None)))
            .map(_as_match)
        )
        if category.is_none() and hint.category_hint:
            logger.info("No category matched hint %r", hint.category_hint)

        return HintSuggestion(
            type=hint.type,
            amount=hint.amount,
            description=hint.description,
            transaction_date=hint.date_hint or self.now().date(),
            confidence=hint.confidence,
            category=category.get_or_else(None),
            account=account.get_or_else(None),
        )
