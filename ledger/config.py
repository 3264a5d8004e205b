import logging
import os
from dataclasses import dataclass
from decimal import Decimal
from functools import lru_cache
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

# Load .env from project root
project_root = Path(__file__).parent.parent
load_dotenv(project_root / ".env")

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


@dataclass(frozen=True)
class Settings:
    database_url: str = "sqlite:///ledger.db"
    default_currency: str = "VND"
    log_level: str = "INFO"
    budget_warning_percent: Decimal = Decimal("80")
    preview_count: int = 12
    payoneer_fee_percent: Decimal = Decimal("0.5")
    rate_source: Optional[str] = None

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            database_url=os.getenv("DATABASE_URL", cls.database_url),
            default_currency=os.getenv("LEDGER_DEFAULT_CURRENCY", cls.default_currency).upper(),
            log_level=os.getenv("LEDGER_LOG_LEVEL", cls.log_level).upper(),
            budget_warning_percent=Decimal(os.getenv("LEDGER_BUDGET_WARNING_PERCENT", "80")),
            preview_count=int(os.getenv("LEDGER_PREVIEW_COUNT", "12")),
            payoneer_fee_percent=Decimal(os.getenv("LEDGER_PAYONEER_FEE_PERCENT", "0.5")),
            rate_source=os.getenv("LEDGER_RATE_SOURCE") or None,
        )


@lru_cache(maxsize=None)
def get_settings() -> Settings:
    return Settings.from_env()


def configure_logging(level: Optional[str] = None) -> None:
    logging.basicConfig(level=level or get_settings().log_level, format=LOG_FORMAT)
