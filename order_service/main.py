import logging
from typing import Optional

from fastapi import FastAPI, Depends, Header, Request

from common.db import SessionLocal, engine
from common.error_handling import BusinessLogicError, ErrorCodes, add_error_handlers
from common.redis_client import redis_client
from common.schemas import OrderActionRequest
from common.security import admin_subject
from common.settings import settings
from common.tracing import order_tracer, tracing_middleware
from order_service.discord_client import DiscordRoleAuthority
from order_service.models import Base
from order_service.notifications import AuditLog, KafkaNotificationSink
from order_service.stores import BalanceStore, LedgerStore, OrderStore, Tenant, TenantStore
from order_service.workflow import FulfillmentWorkflow

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

def build_workflow(session_factory, locks=None) -> FulfillmentWorkflow:
    return FulfillmentWorkflow(
        orders=OrderStore(session_factory),
        balances=BalanceStore(session_factory),
        ledger=LedgerStore(session_factory),
        authority=DiscordRoleAuthority.from_settings(settings),
        notifier=KafkaNotificationSink(flush_timeout=settings.kafka_flush_timeout),
        audit=AuditLog(flush_timeout=settings.kafka_flush_timeout),
        locks=locks,
        lock_ttl_seconds=settings.order_lock_ttl_seconds,
        refund_base_url=settings.public_base_url,
        locale=settings.notification_locale,
        timezone_offset_minutes=settings.timezone_offset_minutes,
    )

app = FastAPI(title="Store Order Service")
add_error_handlers(app)

@app.middleware("http")
async def trace_requests(request: Request, call_next):
    return await tracing_middleware(request, call_next, order_tracer)

@app.on_event("startup")
def startup():
    Base.metadata.create_all(bind=engine)
    app.state.workflow = build_workflow(SessionLocal, locks=redis_client)
    app.state.tenants = TenantStore(SessionLocal)
    logger.info("🚀 Store order service ready")

def get_workflow(request: Request) -> FulfillmentWorkflow:
    return request.app.state.workflow

def get_tenant(request: Request) -> Tenant:
    tenant = request.app.state.tenants.resolve(settings.discord_guild_id, settings.default_server_slug)
    if tenant is None:
        raise BusinessLogicError(ErrorCodes.SERVER_NOT_FOUND, "no server configured for this guild")
    return tenant

def admin_actor(authorization: Optional[str] = Header(default=None)) -> str:
    """Id of the admin making the call; the token is minted by the admin login flow"""
    if not authorization or not authorization.startswith("Bearer "):
        raise BusinessLogicError(ErrorCodes.FORBIDDEN, "missing bearer token")
    actor = admin_subject(authorization.split(" ", 1)[1])
    if actor is None:
        raise BusinessLogicError(ErrorCodes.FORBIDDEN, "admin privileges required")
    return actor

@app.get("/admin/store-orders")
def list_orders(mode: Optional[str] = None,
                actor: str = Depends(admin_actor),
                tenant: Tenant = Depends(get_tenant),
                workflow: FulfillmentWorkflow = Depends(get_workflow)):
    return workflow.list_orders(tenant, mode)

@app.post("/admin/store-orders")
def act_on_order(payload: OrderActionRequest,
                 actor: str = Depends(admin_actor),
                 tenant: Tenant = Depends(get_tenant),
                 workflow: FulfillmentWorkflow = Depends(get_workflow)):
    logger.info(f"Admin {actor} requested {payload.action} on order {payload.order_id}")
    return workflow.act_on_order(tenant, payload.order_id, payload.action, payload.reason, actor_id=actor)

@app.get("/admin/wallets/{user_id}/consistency")
def wallet_consistency(user_id: str,
                       actor: str = Depends(admin_actor),
                       tenant: Tenant = Depends(get_tenant),
                       workflow: FulfillmentWorkflow = Depends(get_workflow)):
    return workflow.check_ledger_consistency(tenant, user_id)

@app.get("/health")
def health(request: Request):
    workflow = getattr(request.app.state, "workflow", None)
    breaker = getattr(getattr(workflow, "authority", None), "breaker", None)
    return {"ok": True, "service": "store-orders", "discord": breaker.get_state() if breaker else None}
