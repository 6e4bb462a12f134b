"""
User-facing notifications and audit events for order transitions.

Both sinks publish JSON to Kafka; the notification service turns user
notifications into inbox mail.
"""
import logging
import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, Optional, Tuple

from common.kafka import get_producer, TOPIC_USER_NOTIFICATIONS, TOPIC_AUDIT_EVENTS
from common.schemas import NotificationEvent, AuditEvent
from common.tracing import get_trace_headers

logger = logging.getLogger(__name__)

MESSAGES = {
    "en": {
        "reject_title": "Your order was rejected",
        "reject_body": (
            "Your order \"{item}\" placed on {purchased} was rejected by an administrator.\n"
            "Reason: {reason}\n"
            "{amount} has been returned to your wallet."
        ),
        "refund_title": "Your order has been refunded",
        "refund_body": (
            "We could not deliver \"{item}\" purchased on {purchased} because of a technical problem.\n"
            "{amount} was refunded to your wallet on {refunded}."
        ),
        "delivery_title": "We could not deliver your order",
        "delivery_body": (
            "The role for \"{item}\" purchased on {purchased} could not be granted.\n"
            "Your payment is safe and no extra charge was made.\n"
            "{action}: {link}"
        ),
        "no_link": "A refund link is not available, please contact support.",
    },
    "tr": {
        "reject_title": "Siparişiniz reddedildi",
        "reject_body": (
            "{purchased} tarihli \"{item}\" siparişiniz bir yönetici tarafından reddedildi.\n"
            "Sebep: {reason}\n"
            "{amount} cüzdanınıza iade edildi."
        ),
        "refund_title": "Siparişiniz iade edildi",
        "refund_body": (
            "{purchased} tarihinde aldığınız \"{item}\" teknik bir sorun nedeniyle teslim edilemedi.\n"
            "{amount} {refunded} tarihinde cüzdanınıza iade edildi."
        ),
        "delivery_title": "Siparişiniz teslim edilemedi",
        "delivery_body": (
            "{purchased} tarihinde aldığınız \"{item}\" için rol verilemedi.\n"
            "Ödemeniz güvende, ek bir ücret alınmadı.\n"
            "{action}: {link}"
        ),
        "no_link": "İade linki mevcut değil, lütfen destek ile iletişime geçin.",
    },
}

REFUND_LABELS = {
    "en": {
        "invalid_role_id": "Role not found - ask for support",
        "bot_missing_manage_roles": "Bot permission missing - ask for support",
        "bot_role_hierarchy": "Role hierarchy problem - ask for support",
        "role_assign_failed": "Start your refund",
    },
    "tr": {
        "invalid_role_id": "Rol Bulunamadı - Destek İste",
        "bot_missing_manage_roles": "Bot Yetkisi Eksik - Destek",
        "bot_role_hierarchy": "Hiyerarşi Sorunu - Destek",
        "role_assign_failed": "İade İşlemini Başlat",
    },
}

def _messages(locale: str) -> Dict[str, str]:
    return MESSAGES.get(locale, MESSAGES["en"])

def format_date(value: Optional[datetime], offset_minutes: int = 0) -> str:
    if value is None:
        return "-"
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    local = value.astimezone(timezone(timedelta(minutes=offset_minutes)))
    return local.strftime("%d.%m.%Y %H:%M")

def format_amount(amount) -> str:
    return f"{Decimal(str(amount)):.2f}"

def refund_link(base_url: Optional[str], order_id: str) -> Optional[str]:
    if not base_url:
        return None
    return f"{base_url.rstrip('/')}/dashboard/store?refundOrder={order_id}"

def refund_action_label(failure_reason: Optional[str], locale: str = "en") -> str:
    labels = REFUND_LABELS.get(locale, REFUND_LABELS["en"])
    return labels.get(failure_reason or "", labels["role_assign_failed"])

def reject_message(item: str, purchased: str, reason: str, amount: str, locale: str = "en") -> Tuple[str, str]:
    m = _messages(locale)
    return m["reject_title"], m["reject_body"].format(item=item, purchased=purchased, reason=reason, amount=amount)

def refund_message(item: str, purchased: str, refunded: str, amount: str, locale: str = "en") -> Tuple[str, str]:
    m = _messages(locale)
    return m["refund_title"], m["refund_body"].format(item=item, purchased=purchased, refunded=refunded, amount=amount)

def delivery_failure_message(item: str, purchased: str, failure_reason: str, link: Optional[str],
                             locale: str = "en") -> Tuple[str, str]:
    m = _messages(locale)
    body = m["delivery_body"].format(
        item=item,
        purchased=purchased,
        action=refund_action_label(failure_reason, locale),
        link=link or m["no_link"],
    )
    return m["delivery_title"], body

class KafkaNotificationSink:
    """Fire-and-forget delivery of user notifications"""

    def __init__(self, producer=None, topic: str = TOPIC_USER_NOTIFICATIONS, flush_timeout: float = 5.0):
        self._producer = producer
        self.topic = topic
        self.flush_timeout = flush_timeout

    @property
    def producer(self):
        if self._producer is None:
            self._producer = get_producer()
        return self._producer

    def notify(self, tenant_id: str, user_id: str, title: str, body: str, author=None) -> str:
        event = NotificationEvent(
            event_id=str(uuid.uuid4()),
            tenant_id=tenant_id,
            user_id=user_id,
            title=title,
            body=body,
            author_name=getattr(author, "display_name", None),
            author_avatar=getattr(author, "avatar_url", None),
            created_at=datetime.now(timezone.utc),
        )
        self.producer.produce(
            self.topic,
            key=user_id.encode("utf-8"),
            value=event.model_dump_json().encode("utf-8"),
            headers=list(get_trace_headers().items()),
        )
        self.producer.flush(self.flush_timeout)
        logger.info(f"Queued notification {event.event_id} for user {user_id}")
        return event.event_id

class AuditLog:
    """Audit trail of admin actions; logged locally and published to Kafka"""

    def __init__(self, producer=None, topic: str = TOPIC_AUDIT_EVENTS, flush_timeout: float = 5.0):
        self._producer = producer
        self.topic = topic
        self.flush_timeout = flush_timeout

    @property
    def producer(self):
        if self._producer is None:
            self._producer = get_producer()
        return self._producer

    def log_event(self, event: str, status: str, actor_id: Optional[str] = None,
                  tenant_id: Optional[str] = None, metadata: Optional[Dict[str, Any]] = None) -> None:
        record = AuditEvent(
            event=event,
            status=status,
            actor_id=actor_id,
            tenant_id=tenant_id,
            metadata=metadata or {},
            created_at=datetime.now(timezone.utc),
        )
        logger.info(f"AUDIT {event} status={status} actor={actor_id} tenant={tenant_id} metadata={record.metadata}")
        self.producer.produce(self.topic, value=record.model_dump_json().encode("utf-8"))
        self.producer.flush(self.flush_timeout)
