"""
Database utilities for the order settlement core

PostgreSQL backend of the settlement store: connection pooling via asyncpg,
row locks with ``SELECT ... FOR UPDATE`` and single-statement conditional
updates for every status and balance change.
"""

import json
import functools
import asyncpg
from pathlib import Path
from typing import Dict, List, Optional, Any, Collection
from datetime import datetime
from decimal import Decimal
from contextlib import asynccontextmanager

from ..models.order import Order, OrderStatus, Bid, BidStatus, OrderStatusLog
from ..models.earnings import EarningsTier, WorkerProgress, EarningsEntry
from ..models.account import UserAccount, UserRole
from ..models.payout import PayoutRequest, PayoutStatus
from ..core.exceptions import DatabaseError
from .store import SettlementStore, StoreTransaction
from .logger import get_logger

SCHEMA_PATH = Path(__file__).resolve().parent.parent / "sql" / "schema.sql"

_PAYOUT_UPDATABLE_COLUMNS = ("processed_at", "processed_by", "processor_reference", "rejection_reason")


def _db_operation(operation: str, table: Optional[str] = None):
    """Translate driver errors raised by a query method into DatabaseError."""
    def decorator(func):
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            try:
                return await func(*args, **kwargs)
            except (asyncpg.PostgresError, asyncpg.InterfaceError) as e:
                raise DatabaseError(operation, str(e), table=table) from e
        return wrapper
    return decorator


def _lock_clause(for_update: bool) -> str:
    return " FOR UPDATE" if for_update else ""


async def _init_connection(conn: asyncpg.Connection) -> None:
    await conn.set_type_codec("jsonb", encoder=json.dumps, decoder=json.loads, schema="pg_catalog")


class PostgresTransaction(StoreTransaction):
    """Store transaction bound to one pooled connection inside ``BEGIN ... COMMIT``."""

    def __init__(self, connection: asyncpg.Connection):
        super().__init__()
        self.conn = connection

    # Orders
    @_db_operation("get_order", "orders")
    async def get_order(self, order_id: str, for_update: bool = False) -> Optional[Order]:
        row = await self.conn.fetchrow(
            "SELECT * FROM orders WHERE order_id = $1" + _lock_clause(for_update), order_id
        )
        return Order.from_dict(dict(row)) if row else None

    @_db_operation("insert_order", "orders")
    async def insert_order(self, order: Order) -> None:
        await self.conn.execute("""
            INSERT INTO orders (
                order_id, client_id, work_type, page_count, slide_count, amount,
                assigned_worker_id, manager_id, status, payment_confirmed,
                earnings_counted, deliverable_ref, created_at, updated_at
            ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14)
        """,
        order.order_id, order.client_id, order.work_type, order.page_count,
        order.slide_count, order.amount, order.assigned_worker_id, order.manager_id,
        order.status.value, order.payment_confirmed, order.earnings_counted,
        order.deliverable_ref, order.created_at, order.updated_at)

    @_db_operation("save_order_details", "orders")
    async def save_order_details(self, order: Order) -> None:
        await self.conn.execute("""
            UPDATE orders SET
                work_type = $2,
                page_count = $3,
                slide_count = $4,
                amount = $5,
                manager_id = $6,
                payment_confirmed = $7,
                earnings_counted = $8,
                deliverable_ref = $9,
                updated_at = $10
            WHERE order_id = $1
        """,
        order.order_id, order.work_type, order.page_count, order.slide_count,
        order.amount, order.manager_id, order.payment_confirmed,
        order.earnings_counted, order.deliverable_ref, order.updated_at)

    @_db_operation("cas_order_status", "orders")
    async def cas_order_status(
        self,
        order_id: str,
        expected: OrderStatus,
        new: OrderStatus,
        updated_at: datetime,
        assigned_worker_id: Optional[str] = None
    ) -> bool:
        changed = await self.conn.fetchval("""
            UPDATE orders SET
                status = $3,
                updated_at = $4,
                assigned_worker_id = COALESCE($5, assigned_worker_id)
            WHERE order_id = $1 AND status = $2
            RETURNING order_id
        """, order_id, expected.value, new.value, updated_at, assigned_worker_id)
        return changed is not None

    @_db_operation("list_settled_orders", "orders")
    async def list_settled_orders(self, worker_id: str) -> List[Order]:
        rows = await self.conn.fetch("""
            SELECT * FROM orders
            WHERE assigned_worker_id = $1 AND status = $2 AND payment_confirmed
            ORDER BY created_at
        """, worker_id, OrderStatus.COMPLETED.value)
        return [Order.from_dict(dict(row)) for row in rows]

    @_db_operation("insert_status_log", "order_status_logs")
    async def insert_status_log(self, log: OrderStatusLog) -> None:
        await self.conn.execute("""
            INSERT INTO order_status_logs (log_id, order_id, old_status, new_status, actor, note, created_at)
            VALUES ($1, $2, $3, $4, $5, $6, $7)
        """, log.log_id, log.order_id, log.old_status.value, log.new_status.value,
            log.actor, log.note, log.created_at)

    @_db_operation("list_status_logs", "order_status_logs")
    async def list_status_logs(self, order_id: str) -> List[OrderStatusLog]:
        rows = await self.conn.fetch(
            "SELECT * FROM order_status_logs WHERE order_id = $1 ORDER BY created_at", order_id
        )
        return [OrderStatusLog.from_dict(dict(row)) for row in rows]

    # Bids
    @_db_operation("get_bid", "bids")
    async def get_bid(self, bid_id: str, for_update: bool = False) -> Optional[Bid]:
        row = await self.conn.fetchrow("SELECT * FROM bids WHERE bid_id = $1" + _lock_clause(for_update), bid_id)
        return Bid.from_dict(dict(row)) if row else None

    @_db_operation("insert_bid", "bids")
    async def insert_bid(self, bid: Bid) -> None:
        await self.conn.execute("""
            INSERT INTO bids (bid_id, order_id, worker_id, amount, message, status, created_at, updated_at)
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
        """, bid.bid_id, bid.order_id, bid.worker_id, bid.amount, bid.message,
            bid.status.value, bid.created_at, bid.updated_at)

    @_db_operation("list_bids", "bids")
    async def list_bids(self, order_id: str) -> List[Bid]:
        rows = await self.conn.fetch("SELECT * FROM bids WHERE order_id = $1 ORDER BY created_at", order_id)
        return [Bid.from_dict(dict(row)) for row in rows]

    @_db_operation("cas_bid_status", "bids")
    async def cas_bid_status(self, bid_id: str, expected: BidStatus, new: BidStatus, updated_at: datetime) -> bool:
        changed = await self.conn.fetchval("""
            UPDATE bids SET status = $3, updated_at = $4
            WHERE bid_id = $1 AND status = $2
            RETURNING bid_id
        """, bid_id, expected.value, new.value, updated_at)
        return changed is not None

    @_db_operation("reject_pending_bids", "bids")
    async def reject_pending_bids(self, order_id: str, exclude_bid_id: str, updated_at: datetime) -> List[Bid]:
        rows = await self.conn.fetch("""
            UPDATE bids SET status = $4, updated_at = $5
            WHERE order_id = $1 AND bid_id <> $2 AND status = $3
            RETURNING *
        """, order_id, exclude_bid_id, BidStatus.PENDING.value, BidStatus.REJECTED.value, updated_at)
        return [Bid.from_dict(dict(row)) for row in rows]

    # Accounts
    @_db_operation("get_account", "user_accounts")
    async def get_account(self, user_id: str, for_update: bool = False) -> Optional[UserAccount]:
        row = await self.conn.fetchrow(
            "SELECT * FROM user_accounts WHERE user_id = $1" + _lock_clause(for_update), user_id
        )
        return UserAccount.from_dict(dict(row)) if row else None

    @_db_operation("upsert_account", "user_accounts")
    async def upsert_account(self, account: UserAccount) -> None:
        await self.conn.execute("""
            INSERT INTO user_accounts (user_id, role, approved, balance, total_earned, created_at, updated_at)
            VALUES ($1, $2, $3, $4, $5, $6, $7)
            ON CONFLICT (user_id) DO UPDATE SET
                role = EXCLUDED.role,
                approved = EXCLUDED.approved,
                updated_at = EXCLUDED.updated_at
        """, account.user_id, account.role.value, account.approved, account.balance,
            account.total_earned, account.created_at, account.updated_at)

    @_db_operation("list_accounts", "user_accounts")
    async def list_accounts(self, role: Optional[UserRole] = None) -> List[UserAccount]:
        if role is None:
            rows = await self.conn.fetch("SELECT * FROM user_accounts ORDER BY created_at")
        else:
            rows = await self.conn.fetch(
                "SELECT * FROM user_accounts WHERE role = $1 ORDER BY created_at", role.value
            )
        return [UserAccount.from_dict(dict(row)) for row in rows]

    @_db_operation("reserve_balance", "user_accounts")
    async def reserve_balance(self, user_id: str, amount: Decimal, updated_at: datetime) -> Optional[Decimal]:
        return await self.conn.fetchval("""
            UPDATE user_accounts SET balance = balance - $2, updated_at = $3
            WHERE user_id = $1 AND balance >= $2
            RETURNING balance
        """, user_id, amount, updated_at)

    @_db_operation("credit_balance", "user_accounts")
    async def credit_balance(
        self, user_id: str, amount: Decimal, updated_at: datetime, count_as_earned: bool = False
    ) -> Optional[Decimal]:
        return await self.conn.fetchval("""
            UPDATE user_accounts SET
                balance = balance + $2,
                total_earned = total_earned + CASE WHEN $4 THEN $2 ELSE 0 END,
                updated_at = $3
            WHERE user_id = $1
            RETURNING balance
        """, user_id, amount, updated_at, count_as_earned)

    @_db_operation("reconcile_balance", "user_accounts")
    async def reconcile_balance(self, user_id: str, earned_total: Decimal, updated_at: datetime) -> Optional[Decimal]:
        return await self.conn.fetchval("""
            UPDATE user_accounts SET
                balance = GREATEST(
                    $2 - COALESCE((
                        SELECT SUM(amount) FROM payout_requests
                        WHERE worker_id = $1 AND status <> $4
                    ), 0),
                    0
                ),
                updated_at = $3
            WHERE user_id = $1
            RETURNING balance
        """, user_id, earned_total, updated_at, PayoutStatus.REJECTED.value)

    # Tiers and progress
    @_db_operation("list_tiers", "earnings_tiers")
    async def list_tiers(self) -> List[EarningsTier]:
        rows = await self.conn.fetch("SELECT * FROM earnings_tiers ORDER BY level")
        return [EarningsTier.from_dict(dict(row)) for row in rows]

    @_db_operation("upsert_tier", "earnings_tiers")
    async def upsert_tier(self, tier: EarningsTier) -> None:
        await self.conn.execute("""
            INSERT INTO earnings_tiers (level, min_completed_orders, standard_rate, technical_rate, label, description)
            VALUES ($1, $2, $3, $4, $5, $6)
            ON CONFLICT (level) DO UPDATE SET
                min_completed_orders = EXCLUDED.min_completed_orders,
                standard_rate = EXCLUDED.standard_rate,
                technical_rate = EXCLUDED.technical_rate,
                label = EXCLUDED.label,
                description = EXCLUDED.description
        """, tier.level, tier.min_completed_orders, tier.standard_rate,
            tier.technical_rate, tier.label, tier.description)

    @_db_operation("get_progress", "worker_progress")
    async def get_progress(self, worker_id: str, for_update: bool = False) -> Optional[WorkerProgress]:
        row = await self.conn.fetchrow(
            "SELECT * FROM worker_progress WHERE worker_id = $1" + _lock_clause(for_update), worker_id
        )
        return WorkerProgress.from_dict(dict(row)) if row else None

    @_db_operation("upsert_progress", "worker_progress")
    async def upsert_progress(self, progress: WorkerProgress) -> None:
        await self.conn.execute("""
            INSERT INTO worker_progress (
                worker_id, current_level, total_completed_orders,
                orders_in_current_level, is_specialized, created_at, updated_at
            ) VALUES ($1, $2, $3, $4, $5, $6, $7)
            ON CONFLICT (worker_id) DO UPDATE SET
                current_level = GREATEST(worker_progress.current_level, EXCLUDED.current_level),
                total_completed_orders = EXCLUDED.total_completed_orders,
                orders_in_current_level = EXCLUDED.orders_in_current_level,
                is_specialized = EXCLUDED.is_specialized,
                updated_at = EXCLUDED.updated_at
        """, progress.worker_id, progress.current_level, progress.total_completed_orders,
            progress.orders_in_current_level, progress.is_specialized,
            progress.created_at, progress.updated_at)

    @_db_operation("insert_earnings_entry", "earnings_entries")
    async def insert_earnings_entry(self, entry: EarningsEntry) -> bool:
        inserted = await self.conn.fetchval("""
            INSERT INTO earnings_entries (order_id, worker_id, amount, tier_level, created_at)
            VALUES ($1, $2, $3, $4, $5)
            ON CONFLICT (order_id) DO NOTHING
            RETURNING order_id
        """, entry.order_id, entry.worker_id, entry.amount, entry.tier_level, entry.created_at)
        return inserted is not None

    @_db_operation("list_earnings_entries", "earnings_entries")
    async def list_earnings_entries(self, worker_id: str) -> List[EarningsEntry]:
        rows = await self.conn.fetch(
            "SELECT * FROM earnings_entries WHERE worker_id = $1 ORDER BY created_at", worker_id
        )
        return [
            EarningsEntry(
                order_id=row['order_id'],
                worker_id=row['worker_id'],
                amount=row['amount'],
                tier_level=row['tier_level'],
                created_at=row['created_at']
            )
            for row in rows
        ]

    # Payouts
    @_db_operation("insert_payout", "payout_requests")
    async def insert_payout(self, payout: PayoutRequest) -> None:
        await self.conn.execute("""
            INSERT INTO payout_requests (
                request_id, worker_id, amount, method, account_details, status,
                requested_at, processed_at, processed_by, processor_reference,
                rejection_reason, updated_at
            ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12)
        """,
        payout.request_id, payout.worker_id, payout.amount, payout.method.value,
        payout.account_details, payout.status.value, payout.requested_at,
        payout.processed_at, payout.processed_by, payout.processor_reference,
        payout.rejection_reason, payout.updated_at)

    @_db_operation("get_payout", "payout_requests")
    async def get_payout(self, request_id: str, for_update: bool = False) -> Optional[PayoutRequest]:
        row = await self.conn.fetchrow(
            "SELECT * FROM payout_requests WHERE request_id = $1" + _lock_clause(for_update), request_id
        )
        return PayoutRequest.from_dict(dict(row)) if row else None

    @_db_operation("list_payouts", "payout_requests")
    async def list_payouts(
        self, worker_id: Optional[str] = None, status: Optional[PayoutStatus] = None
    ) -> List[PayoutRequest]:
        rows = await self.conn.fetch("""
            SELECT * FROM payout_requests
            WHERE ($1::text IS NULL OR worker_id = $1)
              AND ($2::text IS NULL OR status = $2)
            ORDER BY requested_at DESC
        """, worker_id, status.value if status else None)
        return [PayoutRequest.from_dict(dict(row)) for row in rows]

    @_db_operation("cas_payout_status", "payout_requests")
    async def cas_payout_status(
        self,
        request_id: str,
        expected: Collection[PayoutStatus],
        new: PayoutStatus,
        updated_at: datetime,
        **fields: Any
    ) -> Optional[PayoutRequest]:
        unknown = set(fields) - set(_PAYOUT_UPDATABLE_COLUMNS)
        if unknown:
            raise ValueError(f"cannot update payout fields: {', '.join(sorted(unknown))}")

        assignments = ["status = $3", "updated_at = $4"]
        params: List[Any] = [request_id, [status.value for status in expected], new.value, updated_at]
        for column in _PAYOUT_UPDATABLE_COLUMNS:
            if column in fields:
                params.append(fields[column])
                assignments.append(f"{column} = ${len(params)}")

        row = await self.conn.fetchrow(f"""
            UPDATE payout_requests SET {', '.join(assignments)}
            WHERE request_id = $1 AND status = ANY($2::text[])
            RETURNING *
        """, *params)
        return PayoutRequest.from_dict(dict(row)) if row else None


class DatabaseManager(SettlementStore):
    """
    Manages database connections and transactions for the settlement core.

    Provides pooled connections, transaction handles and schema setup.
    """

    def __init__(self, connection_string: str, pool_size: int = 10, max_overflow: int = 20,
                 command_timeout: float = 60):
        """
        Initialize database manager.

        Args:
            connection_string: PostgreSQL connection string
            pool_size: Base connection pool size
            max_overflow: Maximum additional connections
            command_timeout: Per-statement timeout in seconds
        """
        self.connection_string = connection_string
        self.pool_size = pool_size
        self.max_overflow = max_overflow
        self.command_timeout = command_timeout
        self.pool: Optional[asyncpg.Pool] = None
        self.logger = get_logger(__name__)

    async def initialize(self) -> None:
        """Initialize database connection pool."""
        if self.pool is not None:
            return
        try:
            self.pool = await asyncpg.create_pool(
                self.connection_string,
                min_size=min(5, self.pool_size),
                max_size=self.pool_size + self.max_overflow,
                command_timeout=self.command_timeout,
                init=_init_connection
            )
        except (OSError, asyncpg.PostgresError, asyncpg.InterfaceError) as e:
            raise DatabaseError("initialization", f"Failed to create connection pool: {str(e)}")
        self.logger.info("Database pool initialized", extra={
            "pool_size": self.pool_size,
            "max_overflow": self.max_overflow
        })

    async def close(self) -> None:
        """Close database connection pool."""
        if self.pool:
            await self.pool.close()
            self.pool = None

    async def is_healthy(self) -> bool:
        """Check database connectivity."""
        if not self.pool:
            return False
        try:
            async with self.pool.acquire() as connection:
                await connection.execute("SELECT 1")
                return True
        except (OSError, asyncpg.PostgresError, asyncpg.InterfaceError):
            return False

    @asynccontextmanager
    async def get_connection(self):
        """Get a database connection from the pool."""
        if not self.pool:
            raise DatabaseError("connection", "Database pool not initialized")

        async with self.pool.acquire() as connection:
            yield connection

    @asynccontextmanager
    async def transaction(self):
        """Open ``BEGIN ... COMMIT`` on a pooled connection. Commit hooks run after release."""
        async with self.get_connection() as conn:
            tx = PostgresTransaction(conn)
            try:
                async with conn.transaction():
                    yield tx
            except BaseException:
                tx.discard_commit_hooks()
                raise
        await tx.run_commit_hooks()

    async def initialize_schema(self, schema_path: Optional[Path] = None) -> None:
        """Create tables and indexes if they do not exist."""
        path = schema_path or SCHEMA_PATH
        try:
            sql = path.read_text(encoding="utf-8")
        except OSError as e:
            raise DatabaseError("initialize_schema", f"Cannot read schema file {path}: {e}")
        try:
            async with self.get_connection() as conn:
                await conn.execute(sql)
        except asyncpg.PostgresError as e:
            raise DatabaseError("initialize_schema", str(e))
        self.logger.info("Database schema initialized", extra={"schema_path": str(path)})

    async def get_statistics(self) -> Dict[str, Any]:
        """Get row counts for monitoring."""
        try:
            async with self.get_connection() as conn:
                rows = await conn.fetch("""
                    SELECT status, COUNT(*) AS count
                    FROM orders
                    GROUP BY status
                """)
                orders_by_status = {row['status']: row['count'] for row in rows}
                payouts_pending = await conn.fetchval(
                    "SELECT COUNT(*) FROM payout_requests WHERE status = $1", PayoutStatus.PENDING.value
                )
                return {
                    "backend": "postgresql",
                    "orders": sum(orders_by_status.values()),
                    "orders_by_status": orders_by_status,
                    "payouts_pending": payouts_pending or 0
                }
        except asyncpg.PostgresError as e:
            raise DatabaseError("get_statistics", str(e))
