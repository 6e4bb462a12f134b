import logging
import threading
from fastapi import FastAPI
from common.db import SessionLocal, engine
from common.kafka import get_consumer, TOPIC_USER_NOTIFICATIONS
from common.redis_client import redis_client
from common.tracing import notification_tracer
from notification_service.inbox import deliver
from notification_service.models import Base

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

app = FastAPI(title="Notification Service")

def consume():
    c = get_consumer("notification-service", [TOPIC_USER_NOTIFICATIONS])
    while True:
        msg = c.poll(1.0)
        if not msg or msg.error():
            continue
        headers = dict(msg.headers() or [])
        trace_id = headers.get("X-Trace-ID")
        try:
            with notification_tracer.start_span("notification.deliver",
                                                trace_id.decode() if trace_id else None):
                deliver(SessionLocal, msg.value(), dedupe=redis_client)
        except Exception as e:
            # offset stays uncommitted; redelivered after a restart or rebalance
            logger.error(f"Notification delivery failed: {e}")
            continue
        c.commit(msg)

@app.on_event("startup")
def startup():
    Base.metadata.create_all(bind=engine)
    threading.Thread(target=consume, daemon=True).start()

@app.get("/health")
async def health():
    return {"ok": True, "service": "notifications"}
