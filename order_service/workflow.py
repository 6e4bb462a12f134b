"""
Store order fulfillment: approve, reject and refund.

The order row, the wallet balance, the wallet ledger and the Discord role
grant cannot be committed together, so every action follows a fixed order:

* approve: check every role precondition, grant every role, and only then
  mark the order ``paid`` with ``applied_at``. Approval never moves money.
* reject / refund: claim the order transition (compare-and-set on
  ``version``), credit the wallet, then append the ledger row carrying the
  wallet's balance at that moment. A failed credit puts the order back
  where it was. A failed ledger append leaves the ledger one entry behind,
  never ahead.

Notifications and audit events go out last and are best-effort.
"""
import logging
import math
from contextlib import contextmanager
from datetime import timedelta
from typing import List, Optional, Union

import redis

from common.error_handling import BusinessLogicError, ServiceError, ErrorCodes
from common.schemas import ActionResult, OrderOut, OrderSummary, LedgerConsistency
from common.tracing import order_tracer
from order_service.discord_client import (
    AuthorityUnavailable, GrantFailed, GrantRejected, MissingBotToken,
)
from order_service.models import StoreOrder
from order_service.notifications import (
    delivery_failure_message, format_amount, format_date, refund_link, refund_message, reject_message,
)
from order_service.states import (
    DEFAULT_REJECT_REASON, LEDGER_TYPE_REFUND, REFUND_LEDGER_REASON, TRANSITIONS,
    FailureReason, ListFilter, OrderAction, OrderStatus,
)
from order_service.stores import Tenant, to_money, utcnow

logger = logging.getLogger(__name__)

MAX_FAILURE_RESPONSE = 2000

def _unlocked(seconds: float) -> bool:
    return True

class FulfillmentWorkflow:
    def __init__(
        self,
        orders,
        balances,
        ledger,
        authority,
        notifier,
        audit,
        locks=None,
        lock_ttl_seconds: int = 30,
        refund_base_url: Optional[str] = None,
        locale: str = "en",
        timezone_offset_minutes: int = 0,
        clock=utcnow,
    ):
        self.orders = orders
        self.balances = balances
        self.ledger = ledger
        self.authority = authority
        self.notifier = notifier
        self.audit = audit
        self.locks = locks
        self.lock_ttl_seconds = lock_ttl_seconds
        self.refund_base_url = refund_base_url
        self.locale = locale
        self.timezone_offset_minutes = timezone_offset_minutes
        self.clock = clock

    # --- queries -----------------------------------------------------------

    def list_orders(self, tenant: Tenant, mode: Optional[str] = None) -> Union[List[OrderOut], OrderSummary]:
        """Orders for the operator views; no mode gives the pending + stuck summary"""
        if not mode:
            return OrderSummary(
                pending=self._order_views(tenant, ListFilter.PENDING),
                stuck=self._order_views(tenant, ListFilter.STUCK),
            )
        try:
            list_filter = ListFilter(mode)
        except ValueError:
            raise BusinessLogicError(ErrorCodes.INVALID_PAYLOAD, f"unknown order filter '{mode}'")
        return self._order_views(tenant, list_filter)

    def _order_views(self, tenant: Tenant, list_filter: ListFilter) -> List[OrderOut]:
        return [OrderOut.model_validate(order) for order in self.orders.list_by_filter(tenant.id, list_filter)]

    def check_ledger_consistency(self, tenant: Tenant, user_id: str) -> LedgerConsistency:
        balance = self.balances.get(tenant.id, user_id)
        latest = self.ledger.latest(tenant.id, user_id)
        if latest is None:
            return LedgerConsistency(user_id=user_id, balance=balance, consistent=balance == 0)
        after = to_money(latest.balance_after)
        return LedgerConsistency(user_id=user_id, balance=balance, ledger_balance_after=after,
                                 consistent=after == balance)

    # --- commands ----------------------------------------------------------

    def act_on_order(self, tenant: Tenant, order_id: Optional[str], action: Optional[str],
                     reason: Optional[str] = None, actor_id: Optional[str] = None) -> ActionResult:
        if not order_id or not action:
            raise BusinessLogicError(ErrorCodes.INVALID_PAYLOAD, "orderId and action are required")
        try:
            order_action = OrderAction(action)
        except ValueError:
            raise BusinessLogicError(ErrorCodes.INVALID_PAYLOAD, f"unknown action '{action}'")

        with self._single_flight(order_id) as renew:
            with order_tracer.start_span(f"order.{order_action.value}") as span:
                span.add_tag("order.id", order_id).add_tag("tenant.id", tenant.id)

                order = self.orders.get(tenant.id, order_id)
                if order is None:
                    raise BusinessLogicError(ErrorCodes.ORDER_NOT_FOUND, f"order {order_id} not found")

                required, target = TRANSITIONS[order_action]
                if order.status != required.value:
                    raise BusinessLogicError(
                        ErrorCodes.INVALID_STATUS,
                        f"cannot {order_action.value} an order in status '{order.status}'",
                        context={"status": order.status},
                    )

                if order_action == OrderAction.APPROVE:
                    result = self._approve(tenant, order, target, actor_id, renew)
                elif order_action == OrderAction.REJECT:
                    result = self._reject(tenant, order, target, reason, actor_id)
                else:
                    result = self._refund(tenant, order, target, actor_id)

                span.add_tag("order.status", result.order_status)
                return result

    @contextmanager
    def _single_flight(self, order_id: str):
        """Serialize actions per order; the version column still guards if Redis is down.

        Yields ``renew(seconds)``, which keeps the lock for at least that long
        plus the base TTL and returns False once the lock has been lost.
        """
        if self.locks is None:
            yield _unlocked
            return

        name = f"order:{order_id}"
        try:
            token = self.locks.acquire_lock(name, self.lock_ttl_seconds)
        except redis.RedisError as e:
            logger.warning(f"Order lock unavailable for {order_id}, continuing without it: {e}")
            yield _unlocked
            return

        if token is None:
            raise BusinessLogicError(ErrorCodes.ORDER_LOCKED, f"another action on order {order_id} is in progress")

        def renew(seconds: float) -> bool:
            ttl = int(math.ceil(seconds)) + self.lock_ttl_seconds
            try:
                return self.locks.extend_lock(name, token, ttl)
            except redis.RedisError as e:
                logger.warning(f"Could not extend lock on order {order_id}: {e}")
                return True

        try:
            yield renew
        finally:
            self.locks.release_lock(name, token)

    # --- approve -----------------------------------------------------------

    def _approve(self, tenant: Tenant, order: StoreOrder, target: OrderStatus, actor_id: Optional[str],
                 renew=None) -> ActionResult:
        renew = renew or _unlocked
        try:
            items = self.orders.load_line_items(order)
        except Exception:
            logger.exception(f"Could not load line items for order {order.id}")
            items = []

        if not items:
            self._fail(tenant, order, FailureReason.ORDER_MISSING_DETAILS, actor_id)
            raise BusinessLogicError(ErrorCodes.ORDER_MISSING_DETAILS, f"order {order.id} has no loadable line items")

        role_items = [item for item in items if item.role_id]
        budget = getattr(self.authority, "call_budget_seconds", 0)
        granted: List[str] = []
        try:
            if role_items:
                # roles, identity and membership
                if not renew(3 * budget):
                    raise self._lock_lost(order)
                context = self.authority.resolve_context(tenant.guild_id)
                # every precondition holds before the first grant goes out
                for item in role_items:
                    self.authority.check_grantable(context, item.role_id)
                for item in role_items:
                    if not renew(budget):
                        self._report_orphaned_grants(tenant, order, granted, actor_id)
                        raise self._lock_lost(order)
                    self.authority.grant_role(tenant.guild_id, order.user_id, item.role_id,
                                              audit_reason=f"store order {order.id}")
                    granted.append(item.role_id)
        except BusinessLogicError:
            raise
        except MissingBotToken as e:
            self._fail(tenant, order, FailureReason.MISSING_BOT_TOKEN, actor_id)
            raise self._failure_error(FailureReason.MISSING_BOT_TOKEN, str(e))
        except AuthorityUnavailable as e:
            logger.warning(f"Role state unavailable for order {order.id}: {e}")
            self._fail(tenant, order, FailureReason.ROLES_FETCH_FAILED, actor_id, e.status, e.body)
            raise self._failure_error(FailureReason.ROLES_FETCH_FAILED, str(e))
        except GrantRejected as e:
            logger.warning(f"Role {e.role_id} not grantable for order {order.id}: {e}")
            self._fail(tenant, order, e.reason, actor_id)
            raise self._failure_error(e.reason, str(e), {"roleId": e.role_id})
        except GrantFailed as e:
            logger.warning(f"Role {e.role_id} grant failed for order {order.id}: HTTP {e.status} {e.body}")
            self._fail(tenant, order, FailureReason.ROLE_ASSIGN_FAILED, actor_id, e.status, e.body)
            self._notify_delivery_failure(tenant, order, actor_id)
            raise self._failure_error(FailureReason.ROLE_ASSIGN_FAILED, str(e),
                                      {"roleId": e.role_id, "httpStatus": e.status})
        except Exception as e:
            logger.exception(f"Unexpected error while granting roles for order {order.id}")
            self._fail(tenant, order, FailureReason.ROLE_PRECHECK_ERROR, actor_id)
            raise ServiceError(ErrorCodes.ROLE_PRECHECK_ERROR, "unexpected error during role delivery", original_error=e)

        applied_at = self.clock()
        durations = [item.duration_days for item in items if item.duration_days]
        expires_at = applied_at + timedelta(days=max(durations)) if durations else None
        paid = self.orders.transition(order.id, order.version, {
            "status": target.value,
            "applied_at": applied_at,
            "expires_at": expires_at,
            "failure_reason": None,
            "failure_code": None,
            "failure_response": None,
        })
        if not paid:
            logger.error(f"Order {order.id} changed while its roles were being granted")
            self._report_orphaned_grants(tenant, order, granted, actor_id)
            raise BusinessLogicError(ErrorCodes.INVALID_STATUS, "order was modified concurrently")

        self._audit("admin_store_order_approve", "success", actor_id, tenant, {
            "orderId": order.id,
            "targetUserId": order.user_id,
            "amount": format_amount(order.amount),
            "roles": [item.role_id for item in role_items],
        })
        return ActionResult(order_status=target.value)

    def _fail(self, tenant: Tenant, order: StoreOrder, reason: FailureReason, actor_id: Optional[str],
              failure_code: Optional[int] = None, failure_response: Optional[str] = None) -> None:
        moved = self.orders.transition(order.id, order.version, {
            "status": OrderStatus.FAILED.value,
            "failure_reason": reason.value,
            "failure_code": failure_code,
            "failure_response": failure_response[:MAX_FAILURE_RESPONSE] if failure_response else None,
        })
        if not moved:
            logger.warning(f"Order {order.id} changed before it could be marked failed ({reason.value})")
        self._audit("admin_store_order_approve", reason.value, actor_id, tenant, {
            "orderId": order.id,
            "targetUserId": order.user_id,
            "httpStatus": failure_code,
        })

    @staticmethod
    def _lock_lost(order: StoreOrder) -> BusinessLogicError:
        return BusinessLogicError(ErrorCodes.ORDER_LOCKED, f"lock on order {order.id} expired before delivery finished")

    def _report_orphaned_grants(self, tenant: Tenant, order: StoreOrder, granted: List[str],
                                actor_id: Optional[str]) -> None:
        """Roles went out but the order was not marked paid; an operator has to reconcile"""
        if not granted:
            return
        logger.error(f"Order {order.id} was not marked paid after granting roles {granted}")
        self._audit("role_granted_order_changed", "error", actor_id, tenant, {
            "orderId": order.id,
            "targetUserId": order.user_id,
            "roles": granted,
        })

    @staticmethod
    def _failure_error(reason: FailureReason, message: str, context=None):
        if reason.is_internal:
            return ServiceError(reason.value, message, context=context)
        return BusinessLogicError(reason.value, message, context=context)

    # --- compensation ------------------------------------------------------

    def _reject(self, tenant: Tenant, order: StoreOrder, target: OrderStatus, reason: Optional[str],
                actor_id: Optional[str]) -> ActionResult:
        failure_reason = (reason or "").strip() or DEFAULT_REJECT_REASON
        balance = self._compensate(tenant, order, target, failure_reason, failure_reason)

        title, body = reject_message(
            item=order.item_title or order.id,
            purchased=format_date(order.created_at, self.timezone_offset_minutes),
            reason=failure_reason,
            amount=format_amount(order.amount),
            locale=self.locale,
        )
        self._notify(tenant, order, title, body, actor_id)
        self._audit("admin_store_order_reject", "success", actor_id, tenant, {
            "orderId": order.id,
            "targetUserId": order.user_id,
            "amount": format_amount(order.amount),
            "reason": failure_reason,
        })
        return ActionResult(order_status=target.value, balance=balance)

    def _refund(self, tenant: Tenant, order: StoreOrder, target: OrderStatus, actor_id: Optional[str]) -> ActionResult:
        balance = self._compensate(tenant, order, target, None, REFUND_LEDGER_REASON)

        title, body = refund_message(
            item=order.item_title or order.id,
            purchased=format_date(order.created_at, self.timezone_offset_minutes),
            refunded=format_date(self.clock(), self.timezone_offset_minutes),
            amount=format_amount(order.amount),
            locale=self.locale,
        )
        self._notify(tenant, order, title, body, actor_id)
        self._audit("admin_store_order_refund", "success", actor_id, tenant, {
            "orderId": order.id,
            "targetUserId": order.user_id,
            "amount": format_amount(order.amount),
            "previousFailureReason": order.failure_reason,
        })
        return ActionResult(order_status=target.value, balance=balance)

    def _compensate(self, tenant: Tenant, order: StoreOrder, target: OrderStatus,
                    failure_reason: Optional[str], ledger_reason: str):
        """Move the order to ``target`` and return its amount to the wallet"""
        claimed = self.orders.transition(order.id, order.version, {
            "status": target.value,
            "failure_reason": failure_reason,
        })
        if not claimed:
            raise BusinessLogicError(ErrorCodes.INVALID_STATUS, "order was modified concurrently")

        try:
            new_balance = self.balances.credit(tenant.id, order.user_id, order.amount)
        except Exception as e:
            logger.exception(f"Balance credit failed for order {order.id}, restoring status '{order.status}'")
            restored = self.orders.transition(order.id, order.version + 1, {
                "status": order.status,
                "failure_reason": order.failure_reason,
            })
            if not restored:
                logger.critical(f"Order {order.id} is '{target.value}' without compensation and could not be restored")
            raise ServiceError(
                ErrorCodes.BALANCE_UPDATE_FAILED,
                "wallet credit failed",
                original_error=e,
                context={"orderStatus": order.status if restored else target.value},
            )

        try:
            self.ledger.append(tenant.id, order.user_id, order.amount, LEDGER_TYPE_REFUND, new_balance,
                               {"orderId": order.id, "reason": ledger_reason})
        except Exception as e:
            logger.exception(f"Ledger append failed for order {order.id}; wallet already at {new_balance}")
            self._audit("wallet_ledger_append_failed", "error", None, tenant, {
                "orderId": order.id,
                "targetUserId": order.user_id,
                "amount": format_amount(order.amount),
                "balanceAfter": format_amount(new_balance),
            })
            raise ServiceError(
                ErrorCodes.BALANCE_UPDATE_FAILED,
                "wallet credited but ledger entry could not be written",
                original_error=e,
                context={"ledgerBehind": True, "balance": format_amount(new_balance)},
            )

        logger.info(f"Credited {format_amount(order.amount)} to {order.user_id} for order {order.id}; balance {new_balance}")
        return new_balance

    # --- side channels -----------------------------------------------------

    def _notify_delivery_failure(self, tenant: Tenant, order: StoreOrder, actor_id: Optional[str]) -> None:
        title, body = delivery_failure_message(
            item=order.item_title or order.id,
            purchased=format_date(order.created_at, self.timezone_offset_minutes),
            failure_reason=FailureReason.ROLE_ASSIGN_FAILED.value,
            link=refund_link(self.refund_base_url, order.id),
            locale=self.locale,
        )
        self._notify(tenant, order, title, body, actor_id)

    def _notify(self, tenant: Tenant, order: StoreOrder, title: str, body: str, actor_id: Optional[str]) -> None:
        try:
            author = self.authority.fetch_user(actor_id) if actor_id else None
            self.notifier.notify(tenant.id, order.user_id, title, body, author=author)
        except Exception as e:
            logger.error(f"Failed to notify user {order.user_id} about order {order.id}: {e}")

    def _audit(self, event: str, status: str, actor_id: Optional[str], tenant: Tenant, metadata) -> None:
        try:
            self.audit.log_event(event, status, actor_id=actor_id, tenant_id=tenant.id, metadata=metadata)
        except Exception as e:
            logger.error(f"Failed to record audit event {event}: {e}")
