from enum import Enum
from typing import Optional

class OrderStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"

class OrderAction(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"
    REFUND = "refund"

class ListFilter(str, Enum):
    PENDING = "pending"
    STUCK = "stuck"
    FAILED = "failed"
    ALL = "all"

# status an action requires, and the status it moves the order to
TRANSITIONS = {
    OrderAction.APPROVE: (OrderStatus.PENDING, OrderStatus.PAID),
    OrderAction.REJECT: (OrderStatus.PENDING, OrderStatus.FAILED),
    OrderAction.REFUND: (OrderStatus.FAILED, OrderStatus.REFUNDED),
}

class FailureReason(str, Enum):
    """Why an order ended up failed.

    The value is the code persisted in ``store_orders.failure_reason``.
    Operator rejections store the operator's free-text reason instead, which
    reads back as ``REJECTED_BY_OPERATOR``.
    """
    ORDER_MISSING_DETAILS = "order_missing_details"
    MISSING_BOT_TOKEN = "missing_bot_token"
    ROLES_FETCH_FAILED = "roles_fetch_failed"
    INVALID_ROLE_ID = "invalid_role_id"
    BOT_MISSING_MANAGE_ROLES = "bot_missing_manage_roles"
    BOT_ROLE_HIERARCHY = "bot_role_hierarchy"
    ROLE_ASSIGN_FAILED = "role_assign_failed"
    ROLE_PRECHECK_ERROR = "role_precheck_error"
    REJECTED_BY_OPERATOR = "rejected_by_operator"

    @classmethod
    def parse(cls, stored: Optional[str]) -> Optional["FailureReason"]:
        if stored is None:
            return None
        try:
            return cls(stored)
        except ValueError:
            return cls.REJECTED_BY_OPERATOR

    @property
    def is_internal(self) -> bool:
        return self in (FailureReason.ROLES_FETCH_FAILED, FailureReason.ROLE_PRECHECK_ERROR)

DEFAULT_REJECT_REASON = "rejected by operator"
REFUND_LEDGER_REASON = "failed order refund"
LEDGER_TYPE_REFUND = "refund"
