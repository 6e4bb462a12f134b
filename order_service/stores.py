"""
Persistence for orders, wallet balances and the wallet ledger.

Each store owns its own session and commit boundary: the three are treated
as independently failable resources and the workflow sequences them.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, List, Optional

from sqlalchemy import select, update

from order_service.models import Server, StoreOrder, StoreOrderItem, MemberWallet, WalletLedger
from order_service.states import OrderStatus, ListFilter

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")

def to_money(value) -> Decimal:
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)

def utcnow() -> datetime:
    return datetime.now(timezone.utc)

@dataclass(frozen=True)
class Tenant:
    id: str
    guild_id: str

@dataclass(frozen=True)
class LineItem:
    position: int
    title: Optional[str]
    role_id: Optional[str]
    duration_days: Optional[int]

class TenantStore:
    def __init__(self, session_factory):
        self._sessions = session_factory

    def resolve(self, guild_id: Optional[str], fallback_slug: Optional[str] = None) -> Optional[Tenant]:
        """Find the server by Discord guild id, falling back to its slug"""
        with self._sessions() as db:
            server = None
            if guild_id:
                server = db.execute(select(Server).where(Server.discord_id == guild_id)).scalar_one_or_none()
            if server is None and fallback_slug:
                server = db.execute(select(Server).where(Server.slug == fallback_slug)).scalar_one_or_none()
            if server is None:
                return None
            return Tenant(id=server.id, guild_id=server.discord_id or guild_id or "")

class OrderStore:
    def __init__(self, session_factory):
        self._sessions = session_factory

    def get(self, tenant_id: str, order_id: str) -> Optional[StoreOrder]:
        with self._sessions() as db:
            return db.execute(
                select(StoreOrder).where(StoreOrder.id == order_id, StoreOrder.server_id == tenant_id)
            ).scalar_one_or_none()

    def load_line_items(self, order: StoreOrder) -> List[LineItem]:
        """Entitlement lines in grant order.

        Orders that predate line items carry a single role on the order row.
        """
        with self._sessions() as db:
            rows = db.execute(
                select(StoreOrderItem)
                .where(StoreOrderItem.order_id == order.id)
                .order_by(StoreOrderItem.position, StoreOrderItem.id)
            ).scalars().all()

        items = [LineItem(r.position, r.title, r.role_id, r.duration_days) for r in rows]
        if not items and order.role_id:
            items = [LineItem(0, order.item_title, order.role_id, order.duration_days)]
        return items

    def list_by_filter(self, tenant_id: str, mode: ListFilter) -> List[StoreOrder]:
        query = select(StoreOrder).where(StoreOrder.server_id == tenant_id)
        if mode == ListFilter.PENDING:
            query = query.where(StoreOrder.status == OrderStatus.PENDING.value)
        elif mode == ListFilter.STUCK:
            query = query.where(StoreOrder.status == OrderStatus.PAID.value, StoreOrder.applied_at.is_(None))
        elif mode == ListFilter.FAILED:
            query = query.where(StoreOrder.status == OrderStatus.FAILED.value)
        query = query.order_by(StoreOrder.created_at.asc(), StoreOrder.id.asc())

        with self._sessions() as db:
            return list(db.execute(query).scalars().all())

    def transition(self, order_id: str, expected_version: int, values: Dict) -> bool:
        """Compare-and-set update; False means someone else moved the order first"""
        with self._sessions() as db:
            result = db.execute(
                update(StoreOrder)
                .where(StoreOrder.id == order_id, StoreOrder.version == expected_version)
                .values(**values, version=expected_version + 1, updated_at=utcnow())
            )
            db.commit()
            return result.rowcount == 1

class BalanceStore:
    def __init__(self, session_factory):
        self._sessions = session_factory

    def get(self, tenant_id: str, user_id: str) -> Decimal:
        with self._sessions() as db:
            wallet = db.get(MemberWallet, (tenant_id, user_id))
            return to_money(wallet.balance if wallet else 0)

    def credit(self, tenant_id: str, user_id: str, amount) -> Decimal:
        """Add ``amount`` to the wallet and return the new, rounded balance"""
        with self._sessions() as db:
            wallet = db.execute(
                select(MemberWallet)
                .where(MemberWallet.guild_id == tenant_id, MemberWallet.user_id == user_id)
                .with_for_update()
            ).scalar_one_or_none()
            current = to_money(wallet.balance if wallet else 0)
            next_balance = to_money(current + to_money(amount))
            if wallet is None:
                db.add(MemberWallet(guild_id=tenant_id, user_id=user_id, balance=next_balance, updated_at=utcnow()))
            else:
                wallet.balance = next_balance
                wallet.updated_at = utcnow()
            db.commit()
            return next_balance

class LedgerStore:
    def __init__(self, session_factory):
        self._sessions = session_factory

    def append(self, tenant_id: str, user_id: str, amount, entry_type: str,
               balance_after, metadata: Optional[Dict] = None) -> WalletLedger:
        """Append one entry while holding the wallet row.

        ``balance_after`` is what the caller's credit produced. If another
        credit to the same wallet landed in between, the entry records the
        balance the wallet holds now, so the newest entry always matches the
        wallet.
        """
        with self._sessions() as db:
            wallet = db.execute(
                select(MemberWallet)
                .where(MemberWallet.guild_id == tenant_id, MemberWallet.user_id == user_id)
                .with_for_update()
            ).scalar_one_or_none()
            observed = to_money(wallet.balance) if wallet is not None else to_money(balance_after)
            if observed != to_money(balance_after):
                logger.info(f"Wallet {tenant_id}/{user_id} moved to {observed} since credit ({to_money(balance_after)})")
            entry = WalletLedger(
                guild_id=tenant_id,
                user_id=user_id,
                amount=to_money(amount),
                type=entry_type,
                balance_after=observed,
                meta=metadata or {},
                created_at=utcnow(),
            )
            db.add(entry)
            db.commit()
        return entry

    def latest(self, tenant_id: str, user_id: str) -> Optional[WalletLedger]:
        with self._sessions() as db:
            return db.execute(
                select(WalletLedger)
                .where(WalletLedger.guild_id == tenant_id, WalletLedger.user_id == user_id)
                .order_by(WalletLedger.created_at.desc(), WalletLedger.id.desc())
                .limit(1)
            ).scalar_one_or_none()

    def entries(self, tenant_id: str, user_id: Optional[str] = None, order_id: Optional[str] = None) -> List[WalletLedger]:
        query = select(WalletLedger).where(WalletLedger.guild_id == tenant_id)
        if user_id:
            query = query.where(WalletLedger.user_id == user_id)
        with self._sessions() as db:
            rows = db.execute(query.order_by(WalletLedger.created_at, WalletLedger.id)).scalars().all()
        if order_id:
            rows = [r for r in rows if (r.meta or {}).get("orderId") == order_id]
        return list(rows)
