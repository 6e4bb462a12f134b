from datetime import datetime, timezone
from decimal import Decimal

import pytest

from common.db import make_engine, make_session_factory
from order_service.discord_client import (
    DiscordRoleAuthority, GrantFailed, Identity, Role, UserProfile, MANAGE_ROLES,
)
from order_service.models import Base, Server, StoreOrder, StoreOrderItem, MemberWallet
from order_service.stores import BalanceStore, LedgerStore, OrderStore, Tenant, TenantStore
from order_service.workflow import FulfillmentWorkflow

GUILD_ID = "900000000000000001"
BOT_ID = "bot-1"
BUYER_ID = "user-42"
FIXED_NOW = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)
PURCHASED_AT = datetime(2026, 10, 18, 9, 30, tzinfo=timezone.utc)

BOT_ROLE = Role(id="role-bot", position=10, permissions=MANAGE_ROLES, name="Store Bot")
VIP_ROLE = Role(id="role-vip", position=5, permissions=0, name="VIP")
GOLD_ROLE = Role(id="role-gold", position=6, permissions=0, name="Gold")

class FakeAuthority(DiscordRoleAuthority):
    """Discord authority with the HTTP reads and writes replaced by in-memory state"""

    def __init__(self, roles=None, bot_roles=("role-bot",), everyone_permissions=0, bot_token="test-token"):
        super().__init__(bot_token=bot_token, api_base="https://discord.test/api")
        self.guild_roles = list(roles if roles is not None else [BOT_ROLE, VIP_ROLE, GOLD_ROLE])
        self.bot_roles = list(bot_roles)
        self.everyone_permissions = everyone_permissions
        self.granted = []
        self.grant_failures = {}
        self.grant_exception = None
        self.roles_error = None

    def fetch_roles(self, guild_id):
        if self.roles_error is not None:
            raise self.roles_error
        everyone = Role(id=guild_id, position=0, permissions=self.everyone_permissions, name="@everyone")
        return [everyone] + self.guild_roles

    def fetch_actor_identity(self):
        return Identity(id=BOT_ID, username="store-bot")

    def fetch_actor_membership(self, guild_id, actor_id):
        return list(self.bot_roles)

    def fetch_user(self, user_id):
        return UserProfile(id=user_id, display_name=f"Admin {user_id}")

    def grant_role(self, guild_id, user_id, role_id, audit_reason=None):
        if self.grant_exception is not None:
            raise self.grant_exception
        if role_id in self.grant_failures:
            status, body = self.grant_failures[role_id]
            raise GrantFailed(role_id, status, body)
        self.granted.append((guild_id, user_id, role_id))

class FakeLocks:
    """In-memory stand-in for the Redis order lock"""

    def __init__(self, available=True, error=None, keep_for=None):
        self.available = available
        self.error = error
        # number of extensions granted before the lock counts as lost
        self.keep_for = keep_for
        self.extended = []
        self.released = []

    def acquire_lock(self, name, ttl_seconds):
        if self.error is not None:
            raise self.error
        return "token-1" if self.available else None

    def extend_lock(self, name, token, ttl_seconds):
        self.extended.append((name, ttl_seconds))
        return self.keep_for is None or len(self.extended) <= self.keep_for

    def release_lock(self, name, token):
        self.released.append((name, token))
        return True

class RecordingNotifier:
    def __init__(self):
        self.sent = []

    def notify(self, tenant_id, user_id, title, body, author=None):
        self.sent.append({"tenant_id": tenant_id, "user_id": user_id, "title": title, "body": body, "author": author})
        return f"evt-{len(self.sent)}"

class RecordingAudit:
    def __init__(self):
        self.events = []

    def log_event(self, event, status, actor_id=None, tenant_id=None, metadata=None):
        self.events.append({"event": event, "status": status, "actor_id": actor_id,
                            "tenant_id": tenant_id, "metadata": metadata or {}})

@pytest.fixture
def session_factory():
    engine = make_engine("sqlite://")
    Base.metadata.create_all(bind=engine)
    yield make_session_factory(engine)
    engine.dispose()

@pytest.fixture
def tenant(session_factory):
    with session_factory() as db:
        db.add(Server(id="srv-1", discord_id=GUILD_ID, slug="default"))
        db.commit()
    return Tenant(id="srv-1", guild_id=GUILD_ID)

@pytest.fixture
def authority():
    return FakeAuthority()

@pytest.fixture
def notifier():
    return RecordingNotifier()

@pytest.fixture
def audit():
    return RecordingAudit()

@pytest.fixture
def workflow(session_factory, authority, notifier, audit):
    return FulfillmentWorkflow(
        orders=OrderStore(session_factory),
        balances=BalanceStore(session_factory),
        ledger=LedgerStore(session_factory),
        authority=authority,
        notifier=notifier,
        audit=audit,
        refund_base_url="https://store.test",
        timezone_offset_minutes=180,
        clock=lambda: FIXED_NOW,
    )

@pytest.fixture
def tenants(session_factory):
    return TenantStore(session_factory)

@pytest.fixture
def add_order(session_factory, tenant):
    def _add(amount="25.00", status="pending", items=(("role-vip", 30),), role_id=None,
             failure_reason=None, applied_at=None, user_id=BUYER_ID, title="VIP membership"):
        order = StoreOrder(
            server_id=tenant.id,
            user_id=user_id,
            amount=Decimal(amount),
            status=status,
            item_title=title,
            role_id=role_id,
            failure_reason=failure_reason,
            applied_at=applied_at,
            created_at=PURCHASED_AT,
        )
        with session_factory() as db:
            db.add(order)
            db.flush()
            for position, (item_role, days) in enumerate(items):
                db.add(StoreOrderItem(order_id=order.id, position=position, title=title,
                                      role_id=item_role, duration_days=days))
            db.commit()
            return order.id
    return _add

@pytest.fixture
def set_balance(session_factory, tenant):
    def _set(amount, user_id=BUYER_ID):
        with session_factory() as db:
            db.merge(MemberWallet(guild_id=tenant.id, user_id=user_id, balance=Decimal(amount)))
            db.commit()
    return _set
