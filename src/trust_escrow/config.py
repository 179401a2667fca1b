"""Trust escrow configuration constants.

Amounts are integers in the smallest currency unit. Rates are basis points.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

# Fees
MAX_BPS = 10_000
ESCROW_FEE_BPS = 250  # 2.5%
PLATFORM_FEE_BPS = 300  # 3%
FEE_FLOOR = 100
FEE_CEILING = 5000

# Agreement defaults
DEFAULT_INSPECTION_DAYS = 7
MIN_INSPECTION_DAYS = 0
MAX_INSPECTION_DAYS = 90
INSURANCE_THRESHOLD = 10_000
DEFAULT_RETURN_POLICY = "Returns accepted within 7 days of delivery"
DEFAULT_PRODUCT_CONDITION = "Like new"
DEFAULT_DELIVERY_METHOD = "Courier delivery"

# Disputes
MAX_REASON_LEN = 256
MAX_DESCRIPTION_LEN = 4096
MAX_EVIDENCE_ITEMS = 50
MAX_TRACKING_LEN = 128

# Funding
PAYMENT_METHODS = frozenset({"card", "bank"})

# Worker
DEFAULT_WORKER_INTERVAL = 60.0
DEFAULT_PROCESSOR_TIMEOUT = 30.0

# Carrier status reported by tracking webhooks that counts as delivery
CARRIER_DELIVERED = "delivered"

ACTIVE_STATUSES = ("pending", "funded", "shipped", "delivered")


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    return int(raw) if raw not in (None, "") else default


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    return float(raw) if raw not in (None, "") else default


@dataclass
class EngineConfig:
    """Runtime configuration for an engine and its worker."""
    escrow_fee_bps: int = ESCROW_FEE_BPS
    platform_fee_bps: int = PLATFORM_FEE_BPS
    fee_floor: int = FEE_FLOOR
    fee_ceiling: int = FEE_CEILING
    inspection_days: int = DEFAULT_INSPECTION_DAYS

    worker_interval: float = DEFAULT_WORKER_INTERVAL
    processor_timeout: float = DEFAULT_PROCESSOR_TIMEOUT

    # HTTP collaborators (unset means in-process doubles)
    payment_endpoint: Optional[str] = None
    notify_endpoint: Optional[str] = None

    @property
    def inspection_period(self) -> timedelta:
        return timedelta(days=self.inspection_days)

    @classmethod
    def from_env(cls) -> "EngineConfig":
        """Load configuration from environment variables."""
        config = cls()

        config.escrow_fee_bps = _env_int("ESCROW_FEE_BPS", ESCROW_FEE_BPS)
        config.platform_fee_bps = _env_int("PLATFORM_FEE_BPS", PLATFORM_FEE_BPS)
        config.fee_floor = _env_int("ESCROW_FEE_FLOOR", FEE_FLOOR)
        config.fee_ceiling = _env_int("ESCROW_FEE_CEILING", FEE_CEILING)
        config.inspection_days = _env_int("ESCROW_INSPECTION_DAYS", DEFAULT_INSPECTION_DAYS)

        config.worker_interval = _env_float("ESCROW_WORKER_INTERVAL", DEFAULT_WORKER_INTERVAL)
        config.processor_timeout = _env_float(
            "ESCROW_PROCESSOR_TIMEOUT", DEFAULT_PROCESSOR_TIMEOUT
        )

        config.payment_endpoint = os.environ.get("ESCROW_PAYMENT_ENDPOINT") or None
        config.notify_endpoint = os.environ.get("ESCROW_NOTIFY_ENDPOINT") or None

        return config
