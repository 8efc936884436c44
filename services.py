from __future__ import annotations

import logging
from dataclasses import dataclass
from contextlib import contextmanager
from datetime import date
from typing import Iterator, Optional

from sqlalchemy import case, delete, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from models import Account, Budget, BudgetPeriod, Transaction, TransactionType, User
from periods import Period, budget_window, local_today, month_period
from schemas import (
    AccountIn,
    AccountUpdate,
    BudgetIn,
    BudgetUpdate,
    LoginIn,
    PasswordChangeIn,
    ProfileIn,
    RegisterIn,
    TransactionIn,
    TransactionUpdate,
)
from security import hash_password, verify_password


logger = logging.getLogger(__name__)

DUPLICATE_BUDGET = "Budget for this category already exists"


class NotFoundError(ValueError):
    pass


class ConflictError(ValueError):
    pass


class AuthenticationError(ValueError):
    pass


@contextmanager
def unique_violation_as_conflict(session: Session, message: str) -> Iterator[None]:
    try:
        yield
    except IntegrityError as exc:
        session.rollback()
        raise ConflictError(message) from exc


def balance_delta(txn_type: TransactionType, amount_cents: int) -> int:
    """Signed effect of a transaction on its own (source) account."""
    if txn_type == TransactionType.income:
        return amount_cents
    return -amount_cents


@dataclass
class TransactionFilters:
    account_id: Optional[int] = None
    category: Optional[str] = None
    type: Optional[TransactionType] = None
    start: Optional[date] = None
    end: Optional[date] = None


class UserService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def _by_email(self, email: str) -> Optional[User]:
        stmt = select(User).where(func.lower(User.email) == email.strip().lower())
        return self.session.scalar(stmt)

    def register(self, data: RegisterIn) -> User:
        email = str(data.email).strip().lower()
        if self._by_email(email):
            raise ConflictError("Email already in use")
        user = User(
            email=email,
            name=data.name.strip(),
            password_hash=hash_password(data.password),
        )
        self.session.add(user)
        with unique_violation_as_conflict(self.session, "Email already in use"):
            self.session.commit()
        self.session.refresh(user)
        logger.info(f"user_registered: user_id={user.id}")
        return user

    def authenticate(self, data: LoginIn) -> User:
        user = self._by_email(str(data.email))
        if not user or not verify_password(data.password, user.password_hash):
            raise AuthenticationError("Invalid credentials")
        return user

    def get(self, user_id: int) -> User:
        user = self.session.get(User, user_id)
        if not user:
            raise NotFoundError("User not found")
        return user

    def update_profile(self, user_id: int, data: ProfileIn) -> User:
        user = self.get(user_id)
        if data.email is not None:
            email = str(data.email).strip().lower()
            existing = self._by_email(email)
            if existing and existing.id != user.id:
                raise ConflictError("Email already in use")
            user.email = email
        if data.name is not None:
            user.name = data.name.strip()
        with unique_violation_as_conflict(self.session, "Email already in use"):
            self.session.commit()
        self.session.refresh(user)
        return user

    def change_password(self, user_id: int, data: PasswordChangeIn) -> None:
        user = self.get(user_id)
        if not verify_password(data.current_password, user.password_hash):
            raise ValueError("Current password is incorrect")
        user.password_hash = hash_password(data.new_password)
        self.session.commit()
        logger.info(f"password_changed: user_id={user.id}")

    def delete(self, user_id: int) -> None:
        """Delete the user together with every budget, transaction and account it owns."""
        user = self.get(user_id)
        removed: dict[str, int] = {}
        # transactions reference accounts, so they go first
        for model in (Budget, Transaction, Account):
            result = self.session.execute(
                delete(model)
                .where(model.user_id == user.id)
                .execution_options(synchronize_session=False)
            )
            removed[model.__tablename__] = result.rowcount or 0
        self.session.delete(user)
        self.session.commit()
        logger.info(
            f"user_deleted: user_id={user_id} budgets={removed['budgets']} "
            f"transactions={removed['transactions']} accounts={removed['accounts']}"
        )


class AccountService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def list_all(self) -> list[Account]:
        stmt = (
            select(Account)
            .where(Account.user_id == self.user_id)
            .order_by(Account.created_at.desc(), Account.id.desc())
        )
        return self.session.scalars(stmt).all()

    def get(self, account_id: int) -> Account:
        account = self.session.scalar(
            select(Account).where(
                Account.id == account_id, Account.user_id == self.user_id
            )
        )
        if not account:
            raise NotFoundError("Account not found")
        return account

    def create(self, data: AccountIn) -> Account:
        account = Account(
            user_id=self.user_id,
            name=data.name.strip(),
            type=data.type,
            opening_balance_cents=data.balance_cents,
            balance_cents=data.balance_cents,
            currency=data.currency.upper(),
            description=data.description,
            is_active=data.is_active,
        )
        self.session.add(account)
        self.session.commit()
        self.session.refresh(account)
        return account

    def update(self, account_id: int, data: AccountUpdate) -> Account:
        account = self.get(account_id)
        changes = data.model_dump(exclude_unset=True)
        for field, value in changes.items():
            if value is None and field != "description":
                continue
            if field == "currency":
                value = value.upper()
            elif field == "name":
                value = value.strip()
            setattr(account, field, value)
        self.session.commit()
        self.session.refresh(account)
        return account

    def delete(self, account_id: int) -> None:
        account = self.get(account_id)
        referenced = int(
            self.session.execute(
                select(func.count(Transaction.id)).where(
                    Transaction.user_id == self.user_id,
                    or_(
                        Transaction.account_id == account.id,
                        Transaction.transfer_to_account_id == account.id,
                    ),
                )
            ).scalar_one()
            or 0
        )
        if referenced:
            raise ConflictError(
                f"Account has {referenced} transaction(s); delete or move them first"
            )
        self.session.delete(account)
        self.session.commit()

    def _flow_sums(self, account_id: int):
        """SELECTs for the signed sum of own rows and the sum of incoming transfers."""
        outgoing = select(
            func.coalesce(
                func.sum(
                    case(
                        (
                            Transaction.type == TransactionType.income,
                            Transaction.amount_cents,
                        ),
                        else_=-Transaction.amount_cents,
                    )
                ),
                0,
            )
        ).where(
            Transaction.user_id == self.user_id,
            Transaction.account_id == account_id,
        )
        incoming = select(func.coalesce(func.sum(Transaction.amount_cents), 0)).where(
            Transaction.user_id == self.user_id,
            Transaction.type == TransactionType.transfer,
            Transaction.transfer_to_account_id == account_id,
        )
        return outgoing, incoming

    def derived_balance(self, account_id: int) -> int:
        account = self.get(account_id)
        outgoing, incoming = self._flow_sums(account.id)
        return (
            account.opening_balance_cents
            + int(self.session.execute(outgoing).scalar_one() or 0)
            + int(self.session.execute(incoming).scalar_one() or 0)
        )

    def recompute_balance(self, account_id: int) -> Account:
        account = self.get(account_id)
        cached = account.balance_cents
        outgoing, incoming = self._flow_sums(account.id)
        # one statement: rows committed by others before it runs are counted
        self.session.execute(
            update(Account)
            .where(Account.id == account.id, Account.user_id == self.user_id)
            .values(
                balance_cents=Account.opening_balance_cents
                + outgoing.scalar_subquery()
                + incoming.scalar_subquery()
            )
            .execution_options(synchronize_session=False)
        )
        self.session.commit()
        self.session.refresh(account)
        if account.balance_cents != cached:
            logger.warning(
                f"balance_drift: account_id={account.id} "
                f"cached={cached} derived={account.balance_cents}"
            )
        return account


class TransactionService:
    """Transaction writes plus the cached account balance and budget spent they drive.

    Each write commits once; cached totals only change through in-database
    increments issued inside that same transaction.
    """

    def __init__(
        self, session: Session, user_id: int, *, today: Optional[date] = None
    ) -> None:
        self.session = session
        self.user_id = user_id
        self.today = today

    def _today(self) -> date:
        return self.today or local_today()

    def _require_account(self, account_id: int) -> Account:
        return AccountService(self.session, self.user_id).get(account_id)

    def _shift_balance(self, account_id: int, delta: int) -> None:
        if delta == 0:
            return
        self.session.execute(
            update(Account)
            .where(Account.id == account_id, Account.user_id == self.user_id)
            .values(balance_cents=Account.balance_cents + delta)
            .execution_options(synchronize_session="fetch")
        )
        logger.debug(f"balance_shift: account_id={account_id} delta={delta}")

    def _apply(self, txn: Transaction, sign: int) -> None:
        """Apply (``sign=1``) or undo (``sign=-1``) the effect of ``txn`` on cached totals."""
        amount = txn.amount_cents * sign
        if txn.type == TransactionType.transfer:
            self._shift_balance(txn.account_id, -amount)
            if txn.transfer_to_account_id is not None:
                self._shift_balance(txn.transfer_to_account_id, amount)
            return

        self._shift_balance(txn.account_id, balance_delta(txn.type, amount))
        if txn.type == TransactionType.expense:
            BudgetService(self.session, self.user_id, today=self._today()).shift_spent(
                txn.category, txn.date, amount
            )

    def get(self, transaction_id: int) -> Transaction:
        txn = self.session.scalar(
            select(Transaction).where(
                Transaction.id == transaction_id,
                Transaction.user_id == self.user_id,
            )
        )
        if not txn:
            raise NotFoundError("Transaction not found")
        return txn

    def list(
        self,
        filters: Optional[TransactionFilters] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[Transaction]:
        filters = filters or TransactionFilters()
        stmt = (
            select(Transaction)
            .where(Transaction.user_id == self.user_id)
            .order_by(
                Transaction.date.desc(),
                Transaction.created_at.desc(),
                Transaction.id.desc(),
            )
            .offset(offset)
            .limit(limit)
        )
        if filters.account_id:
            stmt = stmt.where(
                or_(
                    Transaction.account_id == filters.account_id,
                    Transaction.transfer_to_account_id == filters.account_id,
                )
            )
        if filters.category:
            stmt = stmt.where(Transaction.category == filters.category)
        if filters.type:
            stmt = stmt.where(Transaction.type == filters.type)
        if filters.start:
            stmt = stmt.where(Transaction.date >= filters.start)
        if filters.end:
            stmt = stmt.where(Transaction.date <= filters.end)
        return self.session.scalars(stmt).all()

    def create(self, data: TransactionIn) -> Transaction:
        self._require_account(data.account_id)
        is_transfer = data.type == TransactionType.transfer
        if is_transfer:
            self._require_account(data.transfer_to_account_id)

        txn = Transaction(
            user_id=self.user_id,
            account_id=data.account_id,
            transfer_to_account_id=data.transfer_to_account_id if is_transfer else None,
            amount_cents=data.amount_cents,
            type=data.type,
            category=data.category,
            description=data.description,
            date=data.date or self._today(),
        )
        txn.tags = data.tags
        self.session.add(txn)
        self.session.flush()
        self._apply(txn, 1)
        self.session.commit()
        self.session.refresh(txn)
        logger.info(
            f"transaction_created: id={txn.id} account_id={txn.account_id} "
            f"type={txn.type.value} amount_cents={txn.amount_cents}"
        )
        return txn

    def update(self, transaction_id: int, data: TransactionUpdate) -> Transaction:
        txn = self.get(transaction_id)
        changes = {
            field: value
            for field, value in data.model_dump(exclude_unset=True).items()
            if value is not None or field == "description"
        }

        new_type = changes.get("type", txn.type)
        new_account_id = changes.get("account_id", txn.account_id)
        new_target_id: Optional[int] = None
        if new_type == TransactionType.transfer:
            new_target_id = changes.get(
                "transfer_to_account_id", txn.transfer_to_account_id
            )
            if new_target_id is None:
                raise ValueError("transfer_to_account_id is required for transfers")
            if new_target_id == new_account_id:
                raise ValueError("Cannot transfer to the same account")
        self._require_account(new_account_id)
        if new_target_id is not None:
            self._require_account(new_target_id)

        self._apply(txn, -1)
        txn.type = new_type
        txn.account_id = new_account_id
        txn.transfer_to_account_id = new_target_id
        for field in ("amount_cents", "category", "description", "date"):
            if field in changes:
                setattr(txn, field, changes[field])
        if "tags" in changes:
            txn.tags = changes["tags"]
        self.session.flush()
        self._apply(txn, 1)

        self.session.commit()
        self.session.refresh(txn)
        logger.info(
            f"transaction_updated: id={txn.id} account_id={txn.account_id} "
            f"type={txn.type.value} amount_cents={txn.amount_cents}"
        )
        return txn

    def delete(self, transaction_id: int) -> None:
        txn = self.get(transaction_id)
        self._apply(txn, -1)
        self.session.delete(txn)
        self.session.commit()
        logger.info(f"transaction_deleted: id={transaction_id}")


class BudgetService:
    def __init__(
        self, session: Session, user_id: int, *, today: Optional[date] = None
    ) -> None:
        self.session = session
        self.user_id = user_id
        self.today = today

    def _today(self) -> date:
        return self.today or local_today()

    def window(self, budget: Budget) -> Period:
        return budget_window(
            budget.period, budget.start_date, budget.end_date, self._today()
        )

    def list_all(self) -> list[Budget]:
        stmt = (
            select(Budget)
            .where(Budget.user_id == self.user_id)
            .order_by(Budget.created_at.desc(), Budget.id.desc())
        )
        return self.session.scalars(stmt).all()

    def get(self, budget_id: int) -> Budget:
        budget = self.session.scalar(
            select(Budget).where(Budget.id == budget_id, Budget.user_id == self.user_id)
        )
        if not budget:
            raise NotFoundError("Budget not found")
        return budget

    def _category_taken(self, category: str, exclude_id: Optional[int] = None) -> bool:
        stmt = select(Budget.id).where(
            Budget.user_id == self.user_id, Budget.category == category
        )
        if exclude_id is not None:
            stmt = stmt.where(Budget.id != exclude_id)
        return self.session.scalar(stmt) is not None

    def spent_sum(self, budget: Budget):
        """SELECT for the matching expenses inside the budget's current window."""
        window = self.window(budget)
        return select(func.coalesce(func.sum(Transaction.amount_cents), 0)).where(
            Transaction.user_id == budget.user_id,
            Transaction.type == TransactionType.expense,
            Transaction.category == budget.category,
            Transaction.date.between(window.start, window.end),
        )

    def store_spent(self, budget: Budget, *, only_if_changed: bool = False) -> int:
        """Write the window sum into ``spent`` with a single UPDATE; returns rows hit."""
        total = self.spent_sum(budget).scalar_subquery()
        stmt = update(Budget).where(Budget.id == budget.id).values(spent_cents=total)
        if only_if_changed:
            stmt = stmt.where(Budget.spent_cents != total)
        result = self.session.execute(
            stmt.execution_options(synchronize_session=False)
        )
        return result.rowcount or 0

    def create(self, data: BudgetIn) -> Budget:
        if self._category_taken(data.category):
            raise ConflictError(DUPLICATE_BUDGET)
        budget = Budget(
            user_id=self.user_id,
            name=data.name or data.category,
            category=data.category,
            amount_cents=data.amount_cents,
            spent_cents=0,
            period=data.period,
            start_date=data.start_date or self._today(),
            end_date=data.end_date,
            is_active=data.is_active,
        )
        if budget.end_date is not None and budget.end_date < budget.start_date:
            raise ValueError("end_date must not be before start_date")
        self.session.add(budget)
        with unique_violation_as_conflict(self.session, DUPLICATE_BUDGET):
            self.session.flush()
            self.store_spent(budget)
            self.session.commit()
        self.session.refresh(budget)
        return budget

    def update(self, budget_id: int, data: BudgetUpdate) -> Budget:
        budget = self.get(budget_id)
        changes = {
            field: value
            for field, value in data.model_dump(exclude_unset=True).items()
            if value is not None or field == "end_date"
        }
        category = changes.get("category", budget.category)
        if category != budget.category and self._category_taken(
            category, exclude_id=budget.id
        ):
            raise ConflictError(DUPLICATE_BUDGET)

        period = changes.get("period", budget.period)
        start_date = changes.get("start_date", budget.start_date)
        end_date = changes.get("end_date", budget.end_date)
        if period == BudgetPeriod.custom and end_date is None:
            raise ValueError("Custom budgets require an end_date")
        if end_date is not None and end_date < start_date:
            raise ValueError("end_date must not be before start_date")

        for field, value in changes.items():
            setattr(budget, field, value)
        with unique_violation_as_conflict(self.session, DUPLICATE_BUDGET):
            self.session.flush()
            self.store_spent(budget)
            self.session.commit()
        self.session.refresh(budget)
        return budget

    def delete(self, budget_id: int) -> None:
        budget = self.get(budget_id)
        self.session.delete(budget)
        self.session.commit()

    def recompute_spent(self, budget_id: int) -> Budget:
        budget = self.get(budget_id)
        cached = budget.spent_cents
        self.store_spent(budget)
        self.session.commit()
        self.session.refresh(budget)
        if budget.spent_cents != cached:
            logger.info(
                f"budget_recomputed: budget_id={budget.id} "
                f"cached={cached} derived={budget.spent_cents}"
            )
        return budget

    def shift_spent(self, category: str, day: date, delta: int) -> int:
        """Move ``spent`` of every active budget whose current window holds ``day``.

        Decrements never take ``spent`` below zero. Returns the number of budgets
        adjusted; no matching budget is not an error.
        """
        if delta == 0:
            return 0
        budgets = self.session.scalars(
            select(Budget).where(
                Budget.user_id == self.user_id,
                Budget.category == category,
                Budget.is_active.is_(True),
            )
        ).all()
        if delta > 0:
            new_spent = Budget.spent_cents + delta
        else:
            new_spent = case(
                (Budget.spent_cents + delta < 0, 0),
                else_=Budget.spent_cents + delta,
            )

        adjusted = 0
        for budget in budgets:
            if not self.window(budget).contains(day):
                continue
            self.session.execute(
                update(Budget)
                .where(Budget.id == budget.id)
                .values(spent_cents=new_spent)
                .execution_options(synchronize_session="fetch")
            )
            adjusted += 1
            logger.debug(f"budget_shift: budget_id={budget.id} delta={delta}")
        return adjusted


def refresh_budget_spent(session: Session, today: Optional[date] = None) -> int:
    """Recompute ``spent`` for every active budget of every user.

    Cached totals only follow transaction writes, so they go stale when a new
    period instance starts; this is run on a schedule to roll them over.
    """
    today = today or local_today()
    budgets = session.scalars(
        select(Budget)
        .where(Budget.is_active.is_(True))
        .order_by(Budget.user_id, Budget.id)
    ).all()
    changed = 0
    for budget in budgets:
        service = BudgetService(session, budget.user_id, today=today)
        changed += service.store_spent(budget, only_if_changed=True)
    session.commit()
    session.expire_all()
    return changed


class MetricsService:
    def __init__(
        self, session: Session, user_id: int, *, today: Optional[date] = None
    ) -> None:
        self.session = session
        self.user_id = user_id
        self.today = today

    def _today(self) -> date:
        return self.today or local_today()

    def _income_expense_between(self, start: date, end: date) -> tuple[int, int]:
        stmt = select(
            func.coalesce(
                func.sum(
                    case(
                        (
                            Transaction.type == TransactionType.income,
                            Transaction.amount_cents,
                        ),
                        else_=0,
                    )
                ),
                0,
            ).label("income"),
            func.coalesce(
                func.sum(
                    case(
                        (
                            Transaction.type == TransactionType.expense,
                            Transaction.amount_cents,
                        ),
                        else_=0,
                    )
                ),
                0,
            ).label("expenses"),
        ).where(
            Transaction.user_id == self.user_id,
            Transaction.date.between(start, end),
        )
        row = self.session.execute(stmt).one()
        return int(row.income or 0), int(row.expenses or 0)

    def overview(self) -> dict[str, int]:
        today = self._today()
        month = month_period(today.year, today.month)
        accounts = self.session.execute(
            select(
                func.count(Account.id).label("total"),
                func.coalesce(func.sum(Account.balance_cents), 0).label("balance"),
            ).where(Account.user_id == self.user_id)
        ).one()
        income, expenses = self._income_expense_between(month.start, month.end)
        budgets = self.session.execute(
            select(
                func.count(Budget.id).label("total"),
                func.coalesce(
                    func.sum(case((Budget.spent_cents > Budget.amount_cents, 1), else_=0)),
                    0,
                ).label("exceeded"),
            ).where(Budget.user_id == self.user_id)
        ).one()
        return {
            "total_accounts": int(accounts.total or 0),
            "total_balance_cents": int(accounts.balance or 0),
            "monthly_income_cents": income,
            "monthly_expense_cents": expenses,
            "total_budgets": int(budgets.total or 0),
            "exceeded_budgets": int(budgets.exceeded or 0),
        }

    def category_breakdown(
        self,
        period: Period,
        transaction_type: Optional[TransactionType] = None,
    ) -> list[dict[str, object]]:
        if transaction_type is None:
            transaction_type = TransactionType.expense
        stmt = (
            select(
                Transaction.category,
                func.sum(Transaction.amount_cents).label("total"),
                func.count(Transaction.id).label("txn_count"),
            )
            .where(
                Transaction.user_id == self.user_id,
                Transaction.type == transaction_type,
                Transaction.date.between(period.start, period.end),
            )
            .group_by(Transaction.category)
            .order_by(func.sum(Transaction.amount_cents).desc(), Transaction.category)
        )
        rows = self.session.execute(stmt).all()
        total = sum(int(row.total or 0) for row in rows)
        breakdown = []
        for row in rows:
            amount = int(row.total or 0)
            percent = (amount / total * 100) if total else 0
            breakdown.append(
                {
                    "category": row.category,
                    "amount_cents": amount,
                    "count": int(row.txn_count),
                    "percent": round(percent, 2),
                }
            )
        return breakdown

    def calendar(self, year: int, month: int) -> dict[str, object]:
        """Per-day totals for one calendar month, every day present."""
        period = month_period(year, month)
        stmt = (
            select(Transaction.date, Transaction.type, Transaction.amount_cents)
            .where(
                Transaction.user_id == self.user_id,
                Transaction.date.between(period.start, period.end),
            )
            .order_by(Transaction.date)
        )
        days: dict[date, dict[str, object]] = {}
        current = period.start
        while current <= period.end:
            days[current] = {
                "date": current.isoformat(),
                "income_cents": 0,
                "expense_cents": 0,
                "transfer_cents": 0,
                "count": 0,
            }
            current += date.resolution

        for row in self.session.execute(stmt):
            bucket = days[row.date]
            bucket[f"{row.type.value}_cents"] = (
                int(bucket[f"{row.type.value}_cents"]) + row.amount_cents
            )
            bucket["count"] = int(bucket["count"]) + 1

        income = sum(int(d["income_cents"]) for d in days.values())
        expenses = sum(int(d["expense_cents"]) for d in days.values())
        return {
            "month": f"{year:04d}-{month:02d}",
            "income_cents": income,
            "expense_cents": expenses,
            "net_cents": income - expenses,
            "days": list(days.values()),
        }
