"""
Financial Audit Logger
Structured audit records for every balance mutation and refund decision
"""

import json
import logging
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)
audit_logger = logging.getLogger("financial_audit")


class FinancialEventType(Enum):
    """Types of financial events for audit tracking"""

    BALANCE_DEPOSIT = "balance_deposit"
    BALANCE_WITHDRAW = "balance_withdraw"
    BALANCE_REFUND = "balance_refund"
    BALANCE_BONUS = "balance_bonus"
    BALANCE_ADJUSTMENT = "balance_adjustment"
    WITHDRAW_REJECTED = "withdraw_rejected"
    LEASE_REFUNDED = "lease_refunded"
    PAYMENT_CONFIRMED = "payment_confirmed"
    PAYMENT_DUPLICATE = "payment_duplicate"


@dataclass
class FinancialContext:
    """Amounts and references attached to an audit record"""

    amount: Optional[Decimal] = None
    balance_after: Optional[Decimal] = None
    order_id: Optional[int] = None
    leased_resource_id: Optional[int] = None
    payment_id: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)


class FinancialAuditLogger:
    """Writes one JSON line per financial event on the 'financial_audit' logger"""

    @staticmethod
    def _serialize(value: Any) -> Any:
        if isinstance(value, Decimal):
            return str(value)
        if isinstance(value, datetime):
            return value.isoformat()
        if isinstance(value, Enum):
            return value.value
        return value

    @classmethod
    def log_financial_event(
        cls,
        event_type: FinancialEventType,
        user_id: Optional[int],
        context: Optional[FinancialContext] = None,
        description: str = "",
    ) -> Dict[str, Any]:
        record: Dict[str, Any] = {
            "event_type": event_type.value,
            "user_id": user_id,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "description": description,
        }
        if context:
            for key, value in asdict(context).items():
                if value is None or value == {}:
                    continue
                record[key] = value

        audit_logger.info(json.dumps(record, default=cls._serialize, ensure_ascii=False, sort_keys=True))
        return record


financial_audit_logger = FinancialAuditLogger()
