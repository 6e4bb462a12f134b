import logging
from typing import Optional

from pydantic import ValidationError
from sqlalchemy.exc import IntegrityError

from common.schemas import NotificationEvent
from notification_service.models import MemberMail

logger = logging.getLogger(__name__)

def deliver(session_factory, raw: bytes, dedupe=None) -> Optional[MemberMail]:
    """Store one notification in the member's inbox.

    Returns the stored mail, or None when the payload is unusable or the
    event was already delivered.
    """
    try:
        event = NotificationEvent.model_validate_json(raw)
    except ValidationError as e:
        logger.error(f"Dropping malformed notification: {e}")
        return None

    if dedupe is not None and dedupe.was_sent(event.event_id):
        logger.info(f"Notification {event.event_id} already delivered")
        return None

    mail = MemberMail(
        event_id=event.event_id,
        guild_id=event.tenant_id,
        user_id=event.user_id,
        title=event.title,
        body=event.body,
        author_name=event.author_name,
        author_avatar=event.author_avatar,
        created_at=event.created_at,
    )
    with session_factory() as db:
        db.add(mail)
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            logger.info(f"Notification {event.event_id} already in inbox")
            return None

    if dedupe is not None:
        dedupe.mark_sent(event.event_id)
    logger.info(f"[NOTIFY] {event.title!r} delivered to {event.user_id}")
    return mail
