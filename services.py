from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from auth import generate_token, hash_password, verify_password
from errors import AuthError, Conflict, InvalidRequest, NotFound, UpstreamUnavailable
from models import (
    Category,
    Reminder,
    Transaction,
    TransactionType,
    User,
    utcnow_naive,
)
from periods import as_utc
from schemas import (
    CategoryIn,
    ReminderIn,
    ReminderPatch,
    SignupIn,
    TransactionIn,
    TransactionPatch,
)

logger = logging.getLogger(__name__)


def to_naive_utc(value: datetime) -> datetime:
    return as_utc(value).replace(tzinfo=None)


def normalize_email(email: str) -> str:
    return email.strip().lower()


@dataclass
class TransactionFilters:
    type: Optional[TransactionType] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    category_id: Optional[int] = None
    subcategory_id: Optional[int] = None
    sort_date_asc: bool = False


@dataclass
class ReminderFilters:
    is_active: Optional[bool] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None


class UserService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def find_by_email(self, email: str) -> Optional[User]:
        return self.session.scalar(
            select(User).where(User.email == normalize_email(email))
        )

    def get(self, user_id: int) -> User:
        user = self.session.get(User, user_id)
        if not user:
            raise NotFound("user not found")
        return user

    def signup(self, data: SignupIn) -> tuple[User, str]:
        if self.find_by_email(data.email):
            raise Conflict("email already exists")
        user = User(
            name=data.name,
            email=normalize_email(data.email),
            password_hash=hash_password(data.password),
        )
        self.session.add(user)
        self.session.commit()
        self.session.refresh(user)
        logger.info("user_signup: user_id=%s", user.id)
        return user, generate_token(user.id)

    def login(self, email: str, password: str) -> tuple[User, str]:
        user = self.find_by_email(email)
        if not user or not verify_password(password, user.password_hash):
            raise AuthError("invalid credentials")
        return user, generate_token(user.id)


class CategoryService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def find(self, category_id: int) -> Optional[Category]:
        return self.session.scalar(
            select(Category).where(
                Category.id == category_id, Category.user_id == self.user_id
            )
        )

    def get(self, category_id: int) -> Category:
        category = self.find(category_id)
        if not category:
            raise NotFound("category not found")
        return category

    def _check_parent(self, parent_id: Optional[int]) -> None:
        # Parent links are not cycle-checked.
        if parent_id is not None and not self.find(parent_id):
            raise InvalidRequest("parent category not found")

    def list_all(self, parent_id: Optional[int] = None) -> list[Category]:
        stmt = (
            select(Category)
            .where(Category.user_id == self.user_id)
            .order_by(Category.name, Category.id)
        )
        if parent_id is not None:
            stmt = stmt.where(Category.parent_id == parent_id)
        return list(self.session.scalars(stmt).all())

    def create(self, data: CategoryIn) -> Category:
        self._check_parent(data.parent_id)
        category = Category(
            user_id=self.user_id,
            name=data.name.strip(),
            parent_id=data.parent_id,
        )
        self.session.add(category)
        self.session.commit()
        self.session.refresh(category)
        return category

    def update(self, category_id: int, data: CategoryIn) -> Category:
        category = self.get(category_id)
        self._check_parent(data.parent_id)
        category.name = data.name.strip()
        category.parent_id = data.parent_id
        self.session.commit()
        self.session.refresh(category)
        return category

    def delete(self, category_id: int) -> None:
        category = self.get(category_id)
        self.session.delete(category)
        self.session.commit()


class TransactionService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def _check_category(self, category_id: Optional[int], label: str) -> None:
        if category_id is None:
            return
        if not CategoryService(self.session, self.user_id).find(category_id):
            raise InvalidRequest(f"{label} not found")

    def create(self, data: TransactionIn) -> Transaction:
        self._check_category(data.category_id, "category")
        self._check_category(data.subcategory_id, "subcategory")
        occurred_at = to_naive_utc(data.date) if data.date else utcnow_naive()
        txn = Transaction(
            user_id=self.user_id,
            type=data.type,
            amount=data.amount,
            currency=data.currency,
            category_id=data.category_id,
            subcategory_id=data.subcategory_id,
            description=data.description,
            occurred_at=occurred_at,
        )
        self.session.add(txn)
        self.session.commit()
        self.session.refresh(txn)
        return txn

    def get(self, transaction_id: int) -> Transaction:
        txn = self.session.scalar(
            select(Transaction).where(
                Transaction.id == transaction_id,
                Transaction.user_id == self.user_id,
            )
        )
        if not txn:
            raise NotFound("transaction not found")
        return txn

    def list(
        self,
        filters: TransactionFilters,
        *,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[Transaction], int]:
        conditions = [Transaction.user_id == self.user_id]
        if filters.type:
            conditions.append(Transaction.type == filters.type)
        if filters.start:
            conditions.append(Transaction.occurred_at >= to_naive_utc(filters.start))
        if filters.end:
            conditions.append(Transaction.occurred_at <= to_naive_utc(filters.end))
        if filters.category_id is not None:
            conditions.append(Transaction.category_id == filters.category_id)
        if filters.subcategory_id is not None:
            conditions.append(Transaction.subcategory_id == filters.subcategory_id)

        total = int(
            self.session.execute(
                select(func.count(Transaction.id)).where(*conditions)
            ).scalar_one()
            or 0
        )
        order = (
            Transaction.occurred_at.asc()
            if filters.sort_date_asc
            else Transaction.occurred_at.desc()
        )
        stmt = (
            select(Transaction)
            .where(*conditions)
            .order_by(order, Transaction.id)
            .offset(offset)
            .limit(limit)
        )
        return list(self.session.scalars(stmt).all()), total

    def update(self, transaction_id: int, data: TransactionPatch) -> Transaction:
        txn = self.get(transaction_id)
        if data.category_id is not None:
            self._check_category(data.category_id, "category")
            txn.category_id = data.category_id
        if data.subcategory_id is not None:
            self._check_category(data.subcategory_id, "subcategory")
            txn.subcategory_id = data.subcategory_id
        if data.type is not None:
            txn.type = data.type
        if data.amount is not None:
            txn.amount = data.amount
        if data.currency is not None:
            txn.currency = data.currency
        if data.description is not None:
            txn.description = data.description
        if data.date is not None:
            txn.occurred_at = to_naive_utc(data.date)
        self.session.commit()
        self.session.refresh(txn)
        return txn

    def delete(self, transaction_id: int) -> None:
        txn = self.get(transaction_id)
        self.session.delete(txn)
        self.session.commit()


class ReminderService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def create(self, data: ReminderIn) -> Reminder:
        title = data.title.strip()
        if not title:
            raise InvalidRequest("title is required")
        due_at = (
            to_naive_utc(data.due_at)
            if data.due_at
            else utcnow_naive() + timedelta(hours=1)
        )
        reminder = Reminder(
            user_id=self.user_id,
            title=title,
            description=data.description,
            due_at=due_at,
            repeat_interval=data.repeat_interval,
            is_active=True,
        )
        self.session.add(reminder)
        self.session.commit()
        self.session.refresh(reminder)
        return reminder

    def get(self, reminder_id: int) -> Reminder:
        reminder = self.session.scalar(
            select(Reminder).where(
                Reminder.id == reminder_id, Reminder.user_id == self.user_id
            )
        )
        if not reminder:
            raise NotFound("reminder not found")
        return reminder

    def list(self, filters: ReminderFilters) -> list[Reminder]:
        stmt = (
            select(Reminder)
            .where(Reminder.user_id == self.user_id)
            .order_by(Reminder.due_at, Reminder.id)
        )
        if filters.is_active is not None:
            stmt = stmt.where(Reminder.is_active.is_(filters.is_active))
        if filters.start:
            stmt = stmt.where(Reminder.due_at >= to_naive_utc(filters.start))
        if filters.end:
            stmt = stmt.where(Reminder.due_at <= to_naive_utc(filters.end))
        return list(self.session.scalars(stmt).all())

    def update(self, reminder_id: int, data: ReminderPatch) -> Reminder:
        reminder = self.get(reminder_id)
        if data.title is not None:
            reminder.title = data.title.strip()
        if data.description is not None:
            reminder.description = data.description
        if data.due_at is not None:
            reminder.due_at = to_naive_utc(data.due_at)
        if data.repeat_interval is not None:
            reminder.repeat_interval = data.repeat_interval
        if data.is_active is not None:
            reminder.is_active = data.is_active
        self.session.commit()
        self.session.refresh(reminder)
        return reminder

    def delete(self, reminder_id: int) -> None:
        reminder = self.get(reminder_id)
        self.session.delete(reminder)
        self.session.commit()


class SqlTransactionStore:
    """Range reads, each on a short-lived session opened by the calling thread."""

    def __init__(self, sessions: Callable[[], Session]) -> None:
        self.sessions = sessions

    def fetch_in_range(
        self, user_id: int, start: datetime, end: datetime
    ) -> list[Transaction]:
        stmt = select(Transaction).where(
            Transaction.user_id == user_id,
            Transaction.occurred_at >= to_naive_utc(start),
            Transaction.occurred_at <= to_naive_utc(end),
        )
        try:
            with self.sessions() as session:
                return list(session.scalars(stmt).all())
        except SQLAlchemyError as exc:
            logger.exception("transaction_range_query_failed: user_id=%s", user_id)
            raise UpstreamUnavailable("transaction store unavailable") from exc


class SqlCategoryStore:
    def __init__(self, sessions: Callable[[], Session]) -> None:
        self.sessions = sessions

    def find_by_id(self, user_id: int, category_id: int) -> Optional[Category]:
        try:
            with self.sessions() as session:
                return CategoryService(session, user_id).find(category_id)
        except SQLAlchemyError as exc:
            raise UpstreamUnavailable("category store unavailable") from exc
