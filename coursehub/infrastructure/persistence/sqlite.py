import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Tuple

from ...domain.errors import ConcurrentModificationError, ConflictError, NotFoundError
from ...domain.models import (
    Course,
    PeriodType,
    Subscription,
    SubscriptionStatus,
    SubscriptionType,
    User,
)
from ...domain.ports.persistence import PersistenceGateway, SubscriptionFilter

_DATETIME_FORMAT = "%Y-%m-%dT%H:%M:%S.%f+00:00"

# Columns written from the dataclass; id, created_at and version are managed here.
_MUTABLE_COLUMNS = (
    "user_id",
    "subscription_type",
    "course_id",
    "period_type",
    "start_date",
    "end_date",
    "status",
    "price",
    "currency",
    "discount_amount",
    "discount_code",
    "is_paid",
    "payment_method",
    "payment_transaction_id",
    "payment_date",
    "auto_renewal",
    "next_billing_date",
    "progress_percentage",
    "completed_lessons",
    "total_lessons",
    "last_accessed",
    "cancellation_reason",
    "cancelled_at",
    "cancelled_by",
    "email_notifications",
    "notes",
    "expiry_warning_sent_at",
    "grace_access",
    "updated_at",
)


class SQLitePersistence(PersistenceGateway):
    """SQLite-backed implementation of the persistence gateway."""

    def __init__(self, path: Path) -> None:
        if str(path) != ":memory:":
            path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._depth = 0
        self._initialize()

    def _initialize(self) -> None:
        with self._conn:
            self._conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS users (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    email TEXT NOT NULL UNIQUE,
                    name TEXT NOT NULL,
                    created_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS courses (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    title TEXT NOT NULL,
                    is_published INTEGER NOT NULL DEFAULT 0,
                    is_active INTEGER NOT NULL DEFAULT 1,
                    max_students INTEGER NOT NULL DEFAULT 0,
                    current_students_count INTEGER NOT NULL DEFAULT 0,
                    lessons_count INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS subscriptions (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id INTEGER NOT NULL,
                    subscription_type TEXT NOT NULL,
                    course_id INTEGER,
                    period_type TEXT,
                    start_date TEXT NOT NULL,
                    end_date TEXT NOT NULL,
                    status TEXT NOT NULL,
                    price TEXT NOT NULL,
                    currency TEXT NOT NULL,
                    discount_amount TEXT,
                    discount_code TEXT,
                    is_paid INTEGER NOT NULL DEFAULT 0,
                    payment_method TEXT,
                    payment_transaction_id TEXT,
                    payment_date TEXT,
                    auto_renewal INTEGER NOT NULL DEFAULT 0,
                    next_billing_date TEXT,
                    progress_percentage REAL NOT NULL DEFAULT 0,
                    completed_lessons INTEGER NOT NULL DEFAULT 0,
                    total_lessons INTEGER NOT NULL DEFAULT 0,
                    last_accessed TEXT,
                    cancellation_reason TEXT,
                    cancelled_at TEXT,
                    cancelled_by INTEGER,
                    email_notifications INTEGER NOT NULL DEFAULT 1,
                    version INTEGER NOT NULL DEFAULT 1,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    FOREIGN KEY(user_id) REFERENCES users(id) ON DELETE CASCADE,
                    FOREIGN KEY(course_id) REFERENCES courses(id) ON DELETE CASCADE
                );

                CREATE INDEX IF NOT EXISTS idx_subscriptions_user_id
                    ON subscriptions(user_id);

                CREATE INDEX IF NOT EXISTS idx_subscriptions_course_id
                    ON subscriptions(course_id);

                CREATE INDEX IF NOT EXISTS idx_subscriptions_status_end_date
                    ON subscriptions(status, end_date);

                CREATE UNIQUE INDEX IF NOT EXISTS uq_subscriptions_open_course
                    ON subscriptions(user_id, course_id)
                    WHERE course_id IS NOT NULL AND status IN ('pending', 'active');
                """
            )
        self._apply_migrations()

    def _apply_migrations(self) -> None:
        with self._lock:
            cur = self._conn.execute("PRAGMA table_info(subscriptions)")
            columns = {row[1] for row in cur.fetchall()}
        if "notes" not in columns:
            with self._lock, self._conn:
                self._conn.execute("ALTER TABLE subscriptions ADD COLUMN notes TEXT")
        if "expiry_warning_sent_at" not in columns:
            with self._lock, self._conn:
                self._conn.execute("ALTER TABLE subscriptions ADD COLUMN expiry_warning_sent_at TEXT")
        if "grace_access" not in columns:
            with self._lock, self._conn:
                self._conn.execute(
                    "ALTER TABLE subscriptions ADD COLUMN grace_access INTEGER NOT NULL DEFAULT 0"
                )
                # Paid records cancelled before their end date kept access under the old rules.
                self._conn.execute(
                    """
                    UPDATE subscriptions SET grace_access = 1
                    WHERE status = 'cancelled' AND is_paid = 1
                      AND (cancelled_at IS NULL OR end_date > cancelled_at)
                    """
                )

    def close(self) -> None:
        self._conn.close()

    @contextmanager
    def atomic(self) -> Iterator[None]:
        """Run the enclosed writes in one transaction; nested calls join the outer one."""
        with self._lock:
            outermost = self._depth == 0
            self._depth += 1
            try:
                if outermost:
                    with self._conn:
                        yield
                else:
                    yield
            finally:
                self._depth -= 1

    # SubscriptionRepository API ---------------------------------------------
    def insert_subscription(self, subscription: Subscription) -> Subscription:
        params = self._subscription_params(subscription)
        params["created_at"] = self._format_datetime(subscription.created_at)
        columns = list(params)
        placeholders = ", ".join("?" for _ in columns)
        try:
            with self.atomic():
                cur = self._conn.execute(
                    f"INSERT INTO subscriptions ({', '.join(columns)}) VALUES ({placeholders})",
                    [params[column] for column in columns],
                )
                subscription_id = cur.lastrowid
                cur = self._conn.execute("SELECT * FROM subscriptions WHERE id = ?", (subscription_id,))
                row = cur.fetchone()
        except sqlite3.IntegrityError as exc:
            raise self._integrity_conflict(subscription, exc) from exc
        if not row:
            raise RuntimeError("Failed to persist subscription.")
        return self._row_to_subscription(row)

    def get_subscription(self, subscription_id: int) -> Optional[Subscription]:
        with self._lock:
            cur = self._conn.execute("SELECT * FROM subscriptions WHERE id = ?", (subscription_id,))
            row = cur.fetchone()
        return self._row_to_subscription(row) if row else None

    def update_subscription(self, subscription: Subscription, expected_version: int) -> Subscription:
        params = self._subscription_params(subscription)
        assignments = ", ".join(f"{column} = ?" for column in _MUTABLE_COLUMNS)
        values = [params[column] for column in _MUTABLE_COLUMNS]
        values.extend([subscription.id, expected_version])
        try:
            with self.atomic():
                cur = self._conn.execute(
                    f"UPDATE subscriptions SET {assignments}, version = version + 1 "
                    "WHERE id = ? AND version = ?",
                    values,
                )
                if cur.rowcount == 0:
                    if self.get_subscription(subscription.id) is None:
                        raise NotFoundError(
                            f"Subscription {subscription.id} not found",
                            context={"subscription_id": subscription.id},
                        )
                    raise ConcurrentModificationError(subscription.id, expected_version)
                cur = self._conn.execute("SELECT * FROM subscriptions WHERE id = ?", (subscription.id,))
                row = cur.fetchone()
        except sqlite3.IntegrityError as exc:
            raise self._integrity_conflict(subscription, exc) from exc
        return self._row_to_subscription(row)

    def delete_subscription(self, subscription_id: int) -> None:
        with self.atomic():
            self._conn.execute("DELETE FROM subscriptions WHERE id = ?", (subscription_id,))

    def find_open_course_subscription(self, user_id: int, course_id: int) -> Optional[Subscription]:
        with self._lock:
            cur = self._conn.execute(
                """
                SELECT * FROM subscriptions
                WHERE user_id = ? AND course_id = ? AND status IN ('pending', 'active')
                LIMIT 1
                """,
                (user_id, course_id),
            )
            row = cur.fetchone()
        return self._row_to_subscription(row) if row else None

    def list_subscriptions(
        self, filters: SubscriptionFilter, offset: int = 0, limit: Optional[int] = None
    ) -> Tuple[List[Subscription], int]:
        clauses: List[str] = []
        params: List[Any] = []
        if filters.user_id is not None:
            clauses.append("user_id = ?")
            params.append(filters.user_id)
        if filters.course_id is not None:
            clauses.append("course_id = ?")
            params.append(filters.course_id)
        if filters.status is not None:
            clauses.append("status = ?")
            params.append(SubscriptionStatus(filters.status).value)
        if filters.subscription_type is not None:
            clauses.append("subscription_type = ?")
            params.append(SubscriptionType(filters.subscription_type).value)
        if filters.period_type is not None:
            clauses.append("period_type = ?")
            params.append(PeriodType(filters.period_type).value)
        if filters.is_paid is not None:
            clauses.append("is_paid = ?")
            params.append(int(filters.is_paid))
        if filters.auto_renewal is not None:
            clauses.append("auto_renewal = ?")
            params.append(int(filters.auto_renewal))
        if filters.currency:
            clauses.append("currency = ?")
            params.append(filters.currency.upper())
        if filters.start_date_from is not None:
            clauses.append("start_date >= ?")
            params.append(self._format_datetime(filters.start_date_from))
        if filters.start_date_to is not None:
            clauses.append("start_date <= ?")
            params.append(self._format_datetime(filters.start_date_to))

        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._lock:
            cur = self._conn.execute(f"SELECT COUNT(*) FROM subscriptions{where}", params)
            total = cur.fetchone()[0]
            cur = self._conn.execute(
                f"SELECT * FROM subscriptions{where} ORDER BY created_at DESC, id DESC LIMIT ? OFFSET ?",
                [*params, limit if limit is not None else -1, offset],
            )
            rows = cur.fetchall()
        return [self._row_to_subscription(row) for row in rows], total

    def list_overdue_active(self, now: datetime, after_id: int, limit: int) -> List[Subscription]:
        with self._lock:
            cur = self._conn.execute(
                """
                SELECT * FROM subscriptions
                WHERE status = 'active' AND end_date < ? AND id > ?
                ORDER BY id ASC
                LIMIT ?
                """,
                (self._format_datetime(now), after_id, limit),
            )
            rows = cur.fetchall()
        return [self._row_to_subscription(row) for row in rows]

    def list_active_ending_between(
        self, start: datetime, end: datetime, after_id: int, limit: int
    ) -> List[Subscription]:
        with self._lock:
            cur = self._conn.execute(
                """
                SELECT * FROM subscriptions
                WHERE status = 'active'
                  AND email_notifications = 1
                  AND end_date >= ? AND end_date <= ?
                  AND id > ?
                ORDER BY id ASC
                LIMIT ?
                """,
                (self._format_datetime(start), self._format_datetime(end), after_id, limit),
            )
            rows = cur.fetchall()
        return [self._row_to_subscription(row) for row in rows]

    def count_by_status(self) -> Dict[str, int]:
        with self._lock:
            cur = self._conn.execute("SELECT status, COUNT(*) AS total FROM subscriptions GROUP BY status")
            rows = cur.fetchall()
        return {row["status"]: row["total"] for row in rows}

    def count_seat_holders(self, course_id: int) -> int:
        with self._lock:
            cur = self._conn.execute(
                """
                SELECT COUNT(*) FROM subscriptions
                WHERE course_id = ? AND subscription_type = 'course'
                  AND status IN ('pending', 'active')
                """,
                (course_id,),
            )
            return cur.fetchone()[0]

    def sum_paid_revenue(self, paid_since: Optional[datetime] = None) -> Decimal:
        query = "SELECT price FROM subscriptions WHERE is_paid = 1"
        params: List[Any] = []
        if paid_since is not None:
            query += " AND payment_date >= ?"
            params.append(self._format_datetime(paid_since))
        with self._lock:
            cur = self._conn.execute(query, params)
            rows = cur.fetchall()
        return sum((Decimal(row["price"]) for row in rows), Decimal("0"))

    # UserDirectory API -----------------------------------------------------
    def get_user_by_id(self, user_id: int) -> Optional[User]:
        with self._lock:
            cur = self._conn.execute("SELECT * FROM users WHERE id = ?", (user_id,))
            row = cur.fetchone()
        return self._row_to_user(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._lock:
            cur = self._conn.execute("SELECT * FROM users WHERE email = ?", (email.lower(),))
            row = cur.fetchone()
        return self._row_to_user(row) if row else None

    def create_user(self, email: str, name: str) -> User:
        now = self._now()
        with self.atomic():
            cur = self._conn.execute(
                "INSERT INTO users (email, name, created_at) VALUES (?, ?, ?)",
                (email.lower(), name, now),
            )
            user_id = cur.lastrowid
            cur = self._conn.execute("SELECT * FROM users WHERE id = ?", (user_id,))
            row = cur.fetchone()
        if not row:
            raise RuntimeError("Failed to persist user.")
        return self._row_to_user(row)

    # CourseCatalog API -----------------------------------------------------
    def get_course(self, course_id: int) -> Optional[Course]:
        with self._lock:
            cur = self._conn.execute("SELECT * FROM courses WHERE id = ?", (course_id,))
            row = cur.fetchone()
        return self._row_to_course(row) if row else None

    def create_course(
        self,
        title: str,
        *,
        is_published: bool = True,
        is_active: bool = True,
        max_students: int = 0,
        lessons_count: int = 0,
    ) -> Course:
        now = self._now()
        with self.atomic():
            cur = self._conn.execute(
                """
                INSERT INTO courses (
                    title, is_published, is_active, max_students,
                    current_students_count, lessons_count, created_at, updated_at
                )
                VALUES (?, ?, ?, ?, 0, ?, ?, ?)
                """,
                (title, int(is_published), int(is_active), max_students, lessons_count, now, now),
            )
            course_id = cur.lastrowid
            cur = self._conn.execute("SELECT * FROM courses WHERE id = ?", (course_id,))
            row = cur.fetchone()
        if not row:
            raise RuntimeError("Failed to persist course.")
        return self._row_to_course(row)

    def adjust_seat_count(self, course_id: int, delta: int) -> int:
        with self.atomic():
            self._conn.execute(
                """
                UPDATE courses
                SET current_students_count = MAX(current_students_count + ?, 0), updated_at = ?
                WHERE id = ?
                """,
                (delta, self._now(), course_id),
            )
            cur = self._conn.execute(
                "SELECT current_students_count FROM courses WHERE id = ?", (course_id,)
            )
            row = cur.fetchone()
        if not row:
            raise NotFoundError(f"Course {course_id} not found", context={"course_id": course_id})
        return row["current_students_count"]

    def set_seat_count(self, course_id: int, value: int) -> None:
        with self.atomic():
            self._conn.execute(
                "UPDATE courses SET current_students_count = ?, updated_at = ? WHERE id = ?",
                (max(value, 0), self._now(), course_id),
            )

    # Helpers ----------------------------------------------------------------
    @classmethod
    def _now(cls) -> str:
        return cls._format_datetime(datetime.now(timezone.utc))

    @staticmethod
    def _format_datetime(value: datetime) -> str:
        # Fixed-width UTC text keeps lexical order equal to chronological order.
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc).strftime(_DATETIME_FORMAT)

    @staticmethod
    def _parse_datetime(value: str) -> datetime:
        result = datetime.fromisoformat(value)
        if result.tzinfo is None:
            return result.replace(tzinfo=timezone.utc)
        return result.astimezone(timezone.utc)

    def _optional_datetime(self, value: Optional[str]) -> Optional[datetime]:
        return self._parse_datetime(value) if value else None

    def _format_optional(self, value: Optional[datetime]) -> Optional[str]:
        return self._format_datetime(value) if value else None

    def _subscription_params(self, subscription: Subscription) -> Dict[str, Any]:
        return {
            "user_id": subscription.user_id,
            "subscription_type": SubscriptionType(subscription.subscription_type).value,
            "course_id": subscription.course_id,
            "period_type": PeriodType(subscription.period_type).value if subscription.period_type else None,
            "start_date": self._format_datetime(subscription.start_date),
            "end_date": self._format_datetime(subscription.end_date),
            "status": SubscriptionStatus(subscription.status).value,
            "price": str(subscription.price),
            "currency": subscription.currency,
            "discount_amount": str(subscription.discount_amount) if subscription.discount_amount is not None else None,
            "discount_code": subscription.discount_code,
            "is_paid": int(subscription.is_paid),
            "payment_method": subscription.payment_method,
            "payment_transaction_id": subscription.payment_transaction_id,
            "payment_date": self._format_optional(subscription.payment_date),
            "auto_renewal": int(subscription.auto_renewal),
            "next_billing_date": self._format_optional(subscription.next_billing_date),
            "progress_percentage": subscription.progress_percentage,
            "completed_lessons": subscription.completed_lessons,
            "total_lessons": subscription.total_lessons,
            "last_accessed": self._format_optional(subscription.last_accessed),
            "cancellation_reason": subscription.cancellation_reason,
            "cancelled_at": self._format_optional(subscription.cancelled_at),
            "cancelled_by": subscription.cancelled_by,
            "email_notifications": int(subscription.email_notifications),
            "notes": subscription.notes,
            "expiry_warning_sent_at": self._format_optional(subscription.expiry_warning_sent_at),
            "grace_access": int(subscription.grace_access),
            "updated_at": self._format_datetime(subscription.updated_at),
        }

    @staticmethod
    def _integrity_conflict(subscription: Subscription, exc: sqlite3.IntegrityError) -> ConflictError:
        return ConflictError(
            "User already has an active or pending subscription for this course",
            context={
                "user_id": subscription.user_id,
                "course_id": subscription.course_id,
                "detail": str(exc),
            },
        )

    def _row_to_subscription(self, row: sqlite3.Row) -> Subscription:
        return Subscription(
            id=row["id"],
            user_id=row["user_id"],
            subscription_type=SubscriptionType(row["subscription_type"]),
            course_id=row["course_id"],
            period_type=PeriodType(row["period_type"]) if row["period_type"] else None,
            start_date=self._parse_datetime(row["start_date"]),
            end_date=self._parse_datetime(row["end_date"]),
            status=SubscriptionStatus(row["status"]),
            price=Decimal(row["price"]),
            currency=row["currency"],
            discount_amount=Decimal(row["discount_amount"]) if row["discount_amount"] is not None else None,
            discount_code=row["discount_code"],
            is_paid=bool(row["is_paid"]),
            payment_method=row["payment_method"],
            payment_transaction_id=row["payment_transaction_id"],
            payment_date=self._optional_datetime(row["payment_date"]),
            auto_renewal=bool(row["auto_renewal"]),
            next_billing_date=self._optional_datetime(row["next_billing_date"]),
            progress_percentage=row["progress_percentage"],
            completed_lessons=row["completed_lessons"],
            total_lessons=row["total_lessons"],
            last_accessed=self._optional_datetime(row["last_accessed"]),
            cancellation_reason=row["cancellation_reason"],
            cancelled_at=self._optional_datetime(row["cancelled_at"]),
            cancelled_by=row["cancelled_by"],
            email_notifications=bool(row["email_notifications"]),
            notes=row["notes"],
            expiry_warning_sent_at=self._optional_datetime(row["expiry_warning_sent_at"]),
            grace_access=bool(row["grace_access"]),
            version=row["version"],
            created_at=self._parse_datetime(row["created_at"]),
            updated_at=self._parse_datetime(row["updated_at"]),
        )

    def _row_to_user(self, row: sqlite3.Row) -> User:
        return User(
            id=row["id"],
            email=row["email"],
            name=row["name"],
            created_at=self._parse_datetime(row["created_at"]),
        )

    def _row_to_course(self, row: sqlite3.Row) -> Course:
        return Course(
            id=row["id"],
            title=row["title"],
            is_published=bool(row["is_published"]),
            is_active=bool(row["is_active"]),
            max_students=row["max_students"],
            current_students_count=row["current_students_count"],
            lessons_count=row["lessons_count"],
            created_at=self._parse_datetime(row["created_at"]),
            updated_at=self._parse_datetime(row["updated_at"]),
        )
