"""
Repository pattern for data access.

SQLite implementation of the data-store collaborator. Every record is keyed
by its owning user id, and every mutation that the controllers rely on for
race safety (unit increment, redemption, payment settlement) runs as a
single conditional update inside a ``BEGIN IMMEDIATE`` transaction.
"""

import asyncio
import functools
import logging
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable, Iterator, List, Optional, Tuple

from ..core.errors import (
    AccountNotFoundError,
    DuplicatePhoneError,
    InsufficientEntitlementError,
    LedgerConflictError,
    LedgerPreconditionError,
    PaymentCompletionError,
)
from .db import DEFAULT_DB_PATH, get_connection
from .models import (
    CompletionResult,
    LoyaltyAccount,
    PaymentStatus,
    PaymentTransaction,
    RedemptionRecord,
    Settings,
    TransactionStatus,
)

logger = logging.getLogger(__name__)

PAID_THRESHOLD = Decimal("200")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create the loyalty tables if they don't exist.

    ``redemption`` is an append-only ledger: rows are inserted together with
    the counter reset and never updated or deleted.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS loyalty_account (
                id TEXT PRIMARY KEY,
                owner_user_id TEXT NOT NULL,
                name TEXT NOT NULL,
                phone TEXT NOT NULL,
                units_purchased INTEGER NOT NULL DEFAULT 0 CHECK (units_purchased >= 0),
                created_at TEXT NOT NULL,
                UNIQUE (owner_user_id, phone)
            );

            CREATE TABLE IF NOT EXISTS redemption (
                id TEXT PRIMARY KEY,
                account_id TEXT NOT NULL REFERENCES loyalty_account(id) ON DELETE CASCADE,
                owner_user_id TEXT NOT NULL,
                redeemed_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS settings (
                owner_user_id TEXT PRIMARY KEY,
                redemption_threshold INTEGER NOT NULL CHECK (redemption_threshold >= 1),
                credit_balance TEXT NOT NULL,
                has_paid INTEGER NOT NULL DEFAULT 0,
                total_units_purchased INTEGER NOT NULL DEFAULT 0,
                last_reset_date TEXT
            );

            CREATE TABLE IF NOT EXISTS payment_transaction (
                id TEXT PRIMARY KEY,
                owner_user_id TEXT NOT NULL,
                amount TEXT NOT NULL,
                status TEXT NOT NULL,
                reference TEXT NOT NULL UNIQUE,
                provider TEXT NOT NULL,
                provider_reference TEXT,
                created_at TEXT NOT NULL,
                completed_at TEXT
            );

            CREATE INDEX IF NOT EXISTS idx_redemption_account
                ON redemption (owner_user_id, account_id, redeemed_at);
            CREATE INDEX IF NOT EXISTS idx_transaction_status
                ON payment_transaction (owner_user_id, status, created_at);
        """)
    finally:
        conn.close()


@contextmanager
def _write_transaction(conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
    """Hold the database write lock for the whole read-check-write sequence."""
    conn.execute("BEGIN IMMEDIATE")
    try:
        yield conn
    except BaseException:
        conn.execute("ROLLBACK")
        raise
    else:
        conn.execute("COMMIT")


def _in_thread(method):
    """Run a blocking store method in a worker thread and await the result.

    Each call opens its own connection inside the worker, so concurrent calls
    contend on the database lock rather than on the event loop.
    """
    @functools.wraps(method)
    async def wrapper(self, *args, **kwargs):
        return await asyncio.to_thread(method, self, *args, **kwargs)
    return wrapper


class LedgerStore:
    """Data store for loyalty accounts, redemptions, settings and payments.

    Methods are coroutines backed by a worker thread, so the controllers treat
    every call as a suspension point and the event loop never blocks on the
    database lock.
    """

    def __init__(
        self,
        db_path: str = DEFAULT_DB_PATH,
        default_redemption_threshold: int = 10,
        unit_charge: Decimal = Decimal("2.50"),
        clock: Callable[[], datetime] = _utcnow,
    ):
        """Initialize the store with a database path.

        Args:
            db_path: Path to SQLite database file
            default_redemption_threshold: Threshold for newly created settings
            unit_charge: Credit deducted for every unit added
            clock: Source of the current UTC time
        """
        self.db_path = db_path
        self.default_redemption_threshold = default_redemption_threshold
        self.unit_charge = unit_charge
        self._clock = clock

    # Accounts

    @_in_thread
    def create_account(self, owner_user_id: str, name: str, phone: str) -> LoyaltyAccount:
        """Create a loyalty account with a zero counter.

        Raises:
            DuplicatePhoneError: If the owner already has an account with this phone
        """
        account = LoyaltyAccount(
            id=str(uuid.uuid4()),
            owner_user_id=owner_user_id,
            name=name,
            phone=phone,
            units_purchased=0,
            created_at=self._clock(),
        )
        conn = get_connection(self.db_path)
        try:
            conn.execute("""
                INSERT INTO loyalty_account
                (id, owner_user_id, name, phone, units_purchased, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
            """, (
                account.id,
                account.owner_user_id,
                account.name,
                account.phone,
                account.units_purchased,
                account.created_at.isoformat(),
            ))
        except sqlite3.IntegrityError as e:
            raise DuplicatePhoneError(f"Phone {phone} is already registered") from e
        finally:
            conn.close()
        return account

    @_in_thread
    def get_account(self, owner_user_id: str, account_id: str) -> LoyaltyAccount:
        """Fetch one account.

        Raises:
            AccountNotFoundError: If the account does not exist for this owner
        """
        conn = get_connection(self.db_path)
        try:
            return self._read_account(conn, owner_user_id, account_id)
        finally:
            conn.close()

    @_in_thread
    def find_account_by_phone(self, owner_user_id: str, phone: str) -> Optional[LoyaltyAccount]:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                "SELECT * FROM loyalty_account WHERE owner_user_id = ? AND phone = ?",
                (owner_user_id, phone),
            ).fetchone()
            return _row_to_account(row) if row else None
        finally:
            conn.close()

    @_in_thread
    def list_accounts(self, owner_user_id: str) -> List[LoyaltyAccount]:
        """List the owner's accounts ordered by name."""
        conn = get_connection(self.db_path)
        try:
            rows = conn.execute(
                "SELECT * FROM loyalty_account WHERE owner_user_id = ? ORDER BY name",
                (owner_user_id,),
            ).fetchall()
            return [_row_to_account(row) for row in rows]
        finally:
            conn.close()

    @_in_thread
    def delete_account(self, owner_user_id: str, account_id: str) -> None:
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                "DELETE FROM loyalty_account WHERE id = ? AND owner_user_id = ?",
                (account_id, owner_user_id),
            )
            if cursor.rowcount == 0:
                raise AccountNotFoundError(f"Account {account_id} not found")
        finally:
            conn.close()

    # Ledger mutations

    @_in_thread
    def add_unit(self, owner_user_id: str, account_id: str) -> LoyaltyAccount:
        """Increment the counter and charge one unit of credit, atomically.

        Also maintains the owner's monthly unit counter, which restarts at
        the first unit of each calendar month.

        Raises:
            AccountNotFoundError: If the account does not exist
            InsufficientEntitlementError: If the balance cannot cover the unit charge
            LedgerPreconditionError: If the counter already reached the threshold
        """
        now = self._clock()
        conn = get_connection(self.db_path)
        try:
            with _write_transaction(conn):
                settings = self._read_or_create_settings(conn, owner_user_id)
                if settings.credit_balance < self.unit_charge:
                    raise InsufficientEntitlementError(
                        f"Insufficient credit balance. You have R{settings.credit_balance:.2f}. "
                        f"Please add more credit to continue.",
                        credit_balance=settings.credit_balance,
                        required=self.unit_charge,
                    )

                cursor = conn.execute("""
                    UPDATE loyalty_account
                    SET units_purchased = units_purchased + 1
                    WHERE id = ? AND owner_user_id = ? AND units_purchased < ?
                """, (account_id, owner_user_id, settings.redemption_threshold))
                if cursor.rowcount == 0:
                    account = self._read_account(conn, owner_user_id, account_id)
                    raise LedgerPreconditionError(
                        f"Account has {account.units_purchased} units and is ready to redeem",
                        next_step="redeem",
                    )

                new_balance = max(Decimal("0"), settings.credit_balance - self.unit_charge)
                if _needs_monthly_reset(settings.last_reset_date, now):
                    total_units, reset_date = 1, now
                else:
                    total_units, reset_date = settings.total_units_purchased + 1, settings.last_reset_date
                conn.execute("""
                    UPDATE settings
                    SET credit_balance = ?, total_units_purchased = ?, last_reset_date = ?
                    WHERE owner_user_id = ?
                """, (
                    str(new_balance),
                    total_units,
                    reset_date.isoformat() if reset_date else None,
                    owner_user_id,
                ))
                return self._read_account(conn, owner_user_id, account_id)
        finally:
            conn.close()

    @_in_thread
    def redeem(self, owner_user_id: str, account_id: str) -> Tuple[LoyaltyAccount, RedemptionRecord]:
        """Reset a full counter and record the redemption as one unit.

        The threshold is re-checked by the UPDATE itself, so two redemptions
        racing on the same threshold crossing produce exactly one record.

        Raises:
            AccountNotFoundError: If the account does not exist
            LedgerConflictError: If the counter is below the threshold, which
                includes losing the race to a concurrent redemption
        """
        now = self._clock()
        conn = get_connection(self.db_path)
        try:
            with _write_transaction(conn):
                settings = self._read_or_create_settings(conn, owner_user_id)
                cursor = conn.execute("""
                    UPDATE loyalty_account
                    SET units_purchased = 0
                    WHERE id = ? AND owner_user_id = ? AND units_purchased >= ?
                """, (account_id, owner_user_id, settings.redemption_threshold))
                if cursor.rowcount == 0:
                    account = self._read_account(conn, owner_user_id, account_id)
                    raise LedgerConflictError(
                        f"Account needs {settings.redemption_threshold} units to redeem. "
                        f"Currently has {account.units_purchased}."
                    )

                record = RedemptionRecord(
                    id=str(uuid.uuid4()),
                    account_id=account_id,
                    owner_user_id=owner_user_id,
                    redeemed_at=now,
                )
                conn.execute("""
                    INSERT INTO redemption (id, account_id, owner_user_id, redeemed_at)
                    VALUES (?, ?, ?, ?)
                """, (record.id, record.account_id, record.owner_user_id, record.redeemed_at.isoformat()))
                account = self._read_account(conn, owner_user_id, account_id)
                return account, record
        finally:
            conn.close()

    @_in_thread
    def list_redemptions(
        self,
        owner_user_id: str,
        account_id: Optional[str] = None,
        limit: int = 100,
    ) -> List[RedemptionRecord]:
        """Fetch redemptions, newest first."""
        conn = get_connection(self.db_path)
        try:
            query = "SELECT * FROM redemption WHERE owner_user_id = ?"
            params: list = [owner_user_id]
            if account_id:
                query += " AND account_id = ?"
                params.append(account_id)
            query += " ORDER BY redeemed_at DESC LIMIT ?"
            params.append(limit)
            rows = conn.execute(query, params).fetchall()
            return [_row_to_redemption(row) for row in rows]
        finally:
            conn.close()

    # Settings and credit

    @_in_thread
    def get_settings(self, owner_user_id: str) -> Settings:
        """Fetch the owner's settings, creating defaults on first use."""
        conn = get_connection(self.db_path)
        try:
            with _write_transaction(conn):
                return self._read_or_create_settings(conn, owner_user_id)
        finally:
            conn.close()

    @_in_thread
    def update_redemption_threshold(self, owner_user_id: str, threshold: int) -> Settings:
        if threshold < 1:
            raise ValueError("Redemption threshold must be at least 1")
        conn = get_connection(self.db_path)
        try:
            with _write_transaction(conn):
                self._read_or_create_settings(conn, owner_user_id)
                conn.execute(
                    "UPDATE settings SET redemption_threshold = ? WHERE owner_user_id = ?",
                    (threshold, owner_user_id),
                )
                return self._read_or_create_settings(conn, owner_user_id)
        finally:
            conn.close()

    @_in_thread
    def get_payment_status(self, owner_user_id: str) -> PaymentStatus:
        """Read the credit state used for entitlement decisions.

        A balance at or above the paid threshold latches ``has_paid``.
        """
        conn = get_connection(self.db_path)
        try:
            with _write_transaction(conn):
                settings = self._read_or_create_settings(conn, owner_user_id)
                has_paid = settings.has_paid
                if settings.credit_balance >= PAID_THRESHOLD and not has_paid:
                    conn.execute(
                        "UPDATE settings SET has_paid = 1 WHERE owner_user_id = ?",
                        (owner_user_id,),
                    )
                    has_paid = True
                    logger.info("Latched has_paid from credit balance", extra={"user_id": owner_user_id})
                return PaymentStatus(credit_balance=settings.credit_balance, has_paid=has_paid)
        finally:
            conn.close()

    # Payment transactions

    @_in_thread
    def create_transaction(
        self,
        owner_user_id: str,
        amount: Decimal,
        reference: str,
        provider: str,
    ) -> PaymentTransaction:
        """Record a new pending top-up."""
        transaction = PaymentTransaction(
            id=str(uuid.uuid4()),
            owner_user_id=owner_user_id,
            amount=amount,
            status=TransactionStatus.PENDING,
            reference=reference,
            provider=provider,
            created_at=self._clock(),
        )
        conn = get_connection(self.db_path)
        try:
            conn.execute("""
                INSERT INTO payment_transaction
                (id, owner_user_id, amount, status, reference, provider, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
            """, (
                transaction.id,
                transaction.owner_user_id,
                str(transaction.amount),
                transaction.status.value,
                transaction.reference,
                transaction.provider,
                transaction.created_at.isoformat(),
            ))
        finally:
            conn.close()
        return transaction

    @_in_thread
    def get_transaction(self, owner_user_id: str, reference: str) -> Optional[PaymentTransaction]:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                "SELECT * FROM payment_transaction WHERE owner_user_id = ? AND reference = ?",
                (owner_user_id, reference),
            ).fetchone()
            return _row_to_transaction(row) if row else None
        finally:
            conn.close()

    @_in_thread
    def complete_transaction(
        self,
        owner_user_id: str,
        reference: str,
        provider_reference: str,
    ) -> CompletionResult:
        """Mark a transaction completed and credit its amount, once.

        Completing an already completed transaction returns it unchanged
        without crediting again.

        Raises:
            PaymentCompletionError: If the transaction is unknown or failed
        """
        now = self._clock()
        conn = get_connection(self.db_path)
        try:
            with _write_transaction(conn):
                row = conn.execute(
                    "SELECT * FROM payment_transaction WHERE owner_user_id = ? AND reference = ?",
                    (owner_user_id, reference),
                ).fetchone()
                if row is None:
                    raise PaymentCompletionError(f"Transaction {reference} not found")
                transaction = _row_to_transaction(row)
                settings = self._read_or_create_settings(conn, owner_user_id)

                if transaction.status is TransactionStatus.COMPLETED:
                    return CompletionResult(
                        transaction=transaction,
                        status=PaymentStatus(settings.credit_balance, settings.has_paid),
                        newly_completed=False,
                    )
                if transaction.status is TransactionStatus.FAILED:
                    raise PaymentCompletionError(f"Transaction {reference} already failed")

                conn.execute("""
                    UPDATE payment_transaction
                    SET status = ?, provider_reference = ?, completed_at = ?
                    WHERE id = ? AND status = ?
                """, (
                    TransactionStatus.COMPLETED.value,
                    provider_reference,
                    now.isoformat(),
                    transaction.id,
                    TransactionStatus.PENDING.value,
                ))
                new_balance = settings.credit_balance + transaction.amount
                has_paid = settings.has_paid or new_balance >= PAID_THRESHOLD
                conn.execute(
                    "UPDATE settings SET credit_balance = ?, has_paid = ? WHERE owner_user_id = ?",
                    (str(new_balance), int(has_paid), owner_user_id),
                )
                completed = PaymentTransaction(
                    id=transaction.id,
                    owner_user_id=transaction.owner_user_id,
                    amount=transaction.amount,
                    status=TransactionStatus.COMPLETED,
                    reference=transaction.reference,
                    provider=transaction.provider,
                    created_at=transaction.created_at,
                    provider_reference=provider_reference,
                    completed_at=now,
                )
                return CompletionResult(
                    transaction=completed,
                    status=PaymentStatus(new_balance, has_paid),
                    newly_completed=True,
                )
        finally:
            conn.close()

    @_in_thread
    def fail_transaction(self, owner_user_id: str, reference: str) -> PaymentTransaction:
        """Mark a pending transaction failed. Terminal transactions are left as they are.

        Raises:
            PaymentCompletionError: If the transaction is unknown or already completed
        """
        conn = get_connection(self.db_path)
        try:
            with _write_transaction(conn):
                row = conn.execute(
                    "SELECT * FROM payment_transaction WHERE owner_user_id = ? AND reference = ?",
                    (owner_user_id, reference),
                ).fetchone()
                if row is None:
                    raise PaymentCompletionError(f"Transaction {reference} not found")
                transaction = _row_to_transaction(row)
                if transaction.status is TransactionStatus.COMPLETED:
                    raise PaymentCompletionError(f"Transaction {reference} is already completed")
                if transaction.status is TransactionStatus.FAILED:
                    return transaction
                conn.execute(
                    "UPDATE payment_transaction SET status = ? WHERE id = ? AND status = ?",
                    (TransactionStatus.FAILED.value, transaction.id, TransactionStatus.PENDING.value),
                )
                row = conn.execute(
                    "SELECT * FROM payment_transaction WHERE id = ?", (transaction.id,)
                ).fetchone()
                return _row_to_transaction(row)
        finally:
            conn.close()

    @_in_thread
    def list_transactions(
        self,
        owner_user_id: str,
        status: Optional[TransactionStatus] = None,
        created_before: Optional[datetime] = None,
        limit: int = 100,
    ) -> List[PaymentTransaction]:
        """Fetch transactions, newest first, optionally filtered."""
        conn = get_connection(self.db_path)
        try:
            query = "SELECT * FROM payment_transaction WHERE owner_user_id = ?"
            params: list = [owner_user_id]
            if status is not None:
                query += " AND status = ?"
                params.append(status.value)
            if created_before is not None:
                query += " AND created_at < ?"
                params.append(created_before.isoformat())
            query += " ORDER BY created_at DESC LIMIT ?"
            params.append(limit)
            rows = conn.execute(query, params).fetchall()
            return [_row_to_transaction(row) for row in rows]
        finally:
            conn.close()

    @_in_thread
    def total_paid(self, owner_user_id: str) -> Decimal:
        """Sum of all completed top-ups."""
        conn = get_connection(self.db_path)
        try:
            rows = conn.execute(
                "SELECT amount FROM payment_transaction WHERE owner_user_id = ? AND status = ?",
                (owner_user_id, TransactionStatus.COMPLETED.value),
            ).fetchall()
            return sum((Decimal(row["amount"]) for row in rows), Decimal("0"))
        finally:
            conn.close()

    # Helpers

    def _read_account(self, conn: sqlite3.Connection, owner_user_id: str, account_id: str) -> LoyaltyAccount:
        row = conn.execute(
            "SELECT * FROM loyalty_account WHERE id = ? AND owner_user_id = ?",
            (account_id, owner_user_id),
        ).fetchone()
        if row is None:
            raise AccountNotFoundError(f"Account {account_id} not found")
        return _row_to_account(row)

    def _read_or_create_settings(self, conn: sqlite3.Connection, owner_user_id: str) -> Settings:
        row = conn.execute(
            "SELECT * FROM settings WHERE owner_user_id = ?", (owner_user_id,)
        ).fetchone()
        if row is not None:
            return _row_to_settings(row)
        conn.execute("""
            INSERT INTO settings (owner_user_id, redemption_threshold, credit_balance, has_paid)
            VALUES (?, ?, ?, 0)
        """, (owner_user_id, self.default_redemption_threshold, "0"))
        return Settings(
            owner_user_id=owner_user_id,
            redemption_threshold=self.default_redemption_threshold,
            credit_balance=Decimal("0"),
            has_paid=False,
        )


def _needs_monthly_reset(last_reset_date: Optional[datetime], now: datetime) -> bool:
    if last_reset_date is None:
        return True
    return (last_reset_date.year, last_reset_date.month) != (now.year, now.month)


def _parse_time(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _row_to_account(row: sqlite3.Row) -> LoyaltyAccount:
    return LoyaltyAccount(
        id=row["id"],
        owner_user_id=row["owner_user_id"],
        name=row["name"],
        phone=row["phone"],
        units_purchased=row["units_purchased"],
        created_at=datetime.fromisoformat(row["created_at"]),
    )


def _row_to_redemption(row: sqlite3.Row) -> RedemptionRecord:
    return RedemptionRecord(
        id=row["id"],
        account_id=row["account_id"],
        owner_user_id=row["owner_user_id"],
        redeemed_at=datetime.fromisoformat(row["redeemed_at"]),
    )


def _row_to_settings(row: sqlite3.Row) -> Settings:
    return Settings(
        owner_user_id=row["owner_user_id"],
        redemption_threshold=row["redemption_threshold"],
        credit_balance=Decimal(row["credit_balance"]),
        has_paid=bool(row["has_paid"]),
        total_units_purchased=row["total_units_purchased"],
        last_reset_date=_parse_time(row["last_reset_date"]),
    )


def _row_to_transaction(row: sqlite3.Row) -> PaymentTransaction:
    return PaymentTransaction(
        id=row["id"],
        owner_user_id=row["owner_user_id"],
        amount=Decimal(row["amount"]),
        status=TransactionStatus(row["status"]),
        reference=row["reference"],
        provider=row["provider"],
        created_at=datetime.fromisoformat(row["created_at"]),
        provider_reference=row["provider_reference"],
        completed_at=_parse_time(row["completed_at"]),
    )
