"""Runtime settings for the affiliate desk, read from the environment."""
from __future__ import annotations

import json
import os
from decimal import Decimal
from pathlib import Path

DEFAULT_AUTO_APPROVAL_RULES = [
    {
        "name": "manager-sole-owner-purchase",
        "submitter_type": "BRANCH_MANAGER",
        "contract_type": "purchase",
        "require_sole_owner": True,
    }
]


def _decimal_env(name: str, default: str) -> Decimal:
    raw = os.getenv(name, default)
    try:
        return Decimal(str(raw).strip())
    except ArithmeticError as exc:
        raise ValueError(f"{name} must be numeric, got {raw!r}") from exc


def _csv_env(name: str) -> frozenset[str]:
    raw = os.getenv(name, "")
    return frozenset(item.strip().lower() for item in raw.split(",") if item.strip())


def _json_env(name: str, default):
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        return json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ValueError(f"{name} must be valid JSON") from exc


# Default split applied when a commission tier carries no pre-computed shares.
HQ_RATE = _decimal_env("AFFILIATE_HQ_RATE", "0.30")
BRANCH_RATE = _decimal_env("AFFILIATE_BRANCH_RATE", "0.40")

# Percent, e.g. 3.3 means 3.3%.
WITHHOLDING_RATE = _decimal_env("AFFILIATE_WITHHOLDING_RATE", "3.3")

CACHE_TTL_SECONDS = int(os.getenv("AFFILIATE_CACHE_TTL_SECONDS", "300"))

AUTO_APPROVAL_RULES: list[dict] = _json_env("AFFILIATE_AUTO_APPROVAL_RULES", DEFAULT_AUTO_APPROVAL_RULES)

# Contract types that do not need a second pair of eyes on approval.
REVIEW_EXEMPT_CONTRACT_TYPES = _csv_env("AFFILIATE_REVIEW_EXEMPT_CONTRACT_TYPES")

EXPORT_DIR = Path(os.getenv("AFFILIATE_EXPORT_DIR", "exports"))

LOG_LEVEL = os.getenv("AFFILIATE_LOG_LEVEL", "INFO").upper()

CURRENCY = os.getenv("AFFILIATE_CURRENCY", "KRW")
