# models/subscription.py
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import List, Optional, Set

from pydantic import BaseModel, Field


class BillingCycle(str, Enum):
    WEEKLY = "WEEKLY"
    MONTHLY = "MONTHLY"
    YEARLY = "YEARLY"


class Subscription(BaseModel):
    id: str
    user_id: str  # owner
    name: str
    amount: Decimal
    billing_cycle: BillingCycle
    renewal_date: date
    trial: bool = False
    auto_renewal: bool = False
    shared_with: Set[str] = Field(default_factory=set)
    is_active: bool = True
    # renewal date consumed by an applied renewal whose notice is not yet settled
    renewal_notice_from: Optional[date] = None

    def recipient_ids(self) -> List[str]:
        """Owner first, then shared users; duplicates (incl. owner) removed."""
        ids = [self.user_id]
        for uid in sorted(self.shared_with):
            if uid and uid not in ids:
                ids.append(uid)
        return ids
