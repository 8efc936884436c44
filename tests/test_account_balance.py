from datetime import date

import pytest

from database import Base, create_db_engine, make_session_factory
from models import AccountType, TransactionType
from schemas import AccountIn, RegisterIn, TransactionIn, TransactionUpdate
from services import (
    AccountService,
    ConflictError,
    TransactionFilters,
    TransactionService,
    UserService,
)


TODAY = date(2025, 3, 15)


def make_session():
    engine = create_db_engine("sqlite://")
    Base.metadata.create_all(engine)
    return make_session_factory(engine)()


def make_user(session, email="owner@example.com") -> int:
    user = UserService(session).register(
        RegisterIn(name="Owner", email=email, password="secret123")
    )
    return user.id


def balance_of(session, account) -> int:
    session.refresh(account)
    return account.balance_cents


def test_expense_update_and_delete_move_balance() -> None:
    session = make_session()
    user_id = make_user(session)
    account = AccountService(session, user_id).create(
        AccountIn(name="Checking", type=AccountType.checking, balance_cents=10_000)
    )
    txns = TransactionService(session, user_id, today=TODAY)

    txn = txns.create(
        TransactionIn(
            account_id=account.id,
            amount_cents=3_000,
            type=TransactionType.expense,
            category="Food",
            date=TODAY,
        )
    )
    assert balance_of(session, account) == 7_000

    txns.update(txn.id, TransactionUpdate(amount_cents=5_000))
    assert balance_of(session, account) == 5_000

    txns.delete(txn.id)
    assert balance_of(session, account) == 10_000


def test_balance_matches_opening_plus_signed_sum() -> None:
    session = make_session()
    user_id = make_user(session)
    accounts = AccountService(session, user_id)
    account = accounts.create(
        AccountIn(name="Wallet", type=AccountType.cash, balance_cents=2_500)
    )
    txns = TransactionService(session, user_id, today=TODAY)

    salary = txns.create(
        TransactionIn(
            account_id=account.id,
            amount_cents=100_000,
            type=TransactionType.income,
            category="Salary",
            date=TODAY,
        )
    )
    rent = txns.create(
        TransactionIn(
            account_id=account.id,
            amount_cents=60_000,
            type=TransactionType.expense,
            category="Rent",
            date=TODAY,
        )
    )
    coffee = txns.create(
        TransactionIn(
            account_id=account.id,
            amount_cents=450,
            type=TransactionType.expense,
            category="Food",
            date=TODAY,
        )
    )
    # expense flipped to income
    txns.update(coffee.id, TransactionUpdate(type=TransactionType.income))
    txns.update(salary.id, TransactionUpdate(amount_cents=90_000))
    txns.delete(rent.id)

    expected = 2_500 + 90_000 + 450
    assert balance_of(session, account) == expected
    assert accounts.derived_balance(account.id) == expected


def test_moving_transaction_between_accounts() -> None:
    session = make_session()
    user_id = make_user(session)
    accounts = AccountService(session, user_id)
    first = accounts.create(
        AccountIn(name="First", type=AccountType.checking, balance_cents=10_000)
    )
    second = accounts.create(
        AccountIn(name="Second", type=AccountType.savings, balance_cents=10_000)
    )
    txns = TransactionService(session, user_id, today=TODAY)
    txn = txns.create(
        TransactionIn(
            account_id=first.id,
            amount_cents=2_000,
            type=TransactionType.expense,
            category="Food",
            date=TODAY,
        )
    )

    txns.update(txn.id, TransactionUpdate(account_id=second.id, amount_cents=2_500))

    assert balance_of(session, first) == 10_000
    assert balance_of(session, second) == 7_500


def test_transfer_moves_money_between_accounts() -> None:
    session = make_session()
    user_id = make_user(session)
    accounts = AccountService(session, user_id)
    checking = accounts.create(
        AccountIn(name="Checking", type=AccountType.checking, balance_cents=50_000)
    )
    savings = accounts.create(
        AccountIn(name="Savings", type=AccountType.savings, balance_cents=0)
    )
    txns = TransactionService(session, user_id, today=TODAY)

    transfer = txns.create(
        TransactionIn(
            account_id=checking.id,
            transfer_to_account_id=savings.id,
            amount_cents=20_000,
            type=TransactionType.transfer,
            category="Savings",
            date=TODAY,
        )
    )
    assert balance_of(session, checking) == 30_000
    assert balance_of(session, savings) == 20_000
    assert accounts.derived_balance(savings.id) == 20_000

    txns.update(transfer.id, TransactionUpdate(amount_cents=5_000))
    assert balance_of(session, checking) == 45_000
    assert balance_of(session, savings) == 5_000

    txns.delete(transfer.id)
    assert balance_of(session, checking) == 50_000
    assert balance_of(session, savings) == 0


def test_transfer_update_requires_distinct_target() -> None:
    session = make_session()
    user_id = make_user(session)
    account = AccountService(session, user_id).create(
        AccountIn(name="Checking", type=AccountType.checking, balance_cents=1_000)
    )
    txns = TransactionService(session, user_id, today=TODAY)
    txn = txns.create(
        TransactionIn(
            account_id=account.id,
            amount_cents=100,
            type=TransactionType.expense,
            category="Food",
            date=TODAY,
        )
    )

    with pytest.raises(ValueError):
        txns.update(txn.id, TransactionUpdate(type=TransactionType.transfer))
    with pytest.raises(ValueError):
        txns.update(
            txn.id,
            TransactionUpdate(
                type=TransactionType.transfer, transfer_to_account_id=account.id
            ),
        )
    assert balance_of(session, account) == 900


def test_recompute_balance_repairs_drift() -> None:
    session = make_session()
    user_id = make_user(session)
    accounts = AccountService(session, user_id)
    account = accounts.create(
        AccountIn(name="Checking", type=AccountType.checking, balance_cents=1_000)
    )
    TransactionService(session, user_id, today=TODAY).create(
        TransactionIn(
            account_id=account.id,
            amount_cents=400,
            type=TransactionType.expense,
            category="Food",
            date=TODAY,
        )
    )
    account.balance_cents = 123
    session.commit()

    repaired = accounts.recompute_balance(account.id)
    assert repaired.balance_cents == 600
    assert accounts.recompute_balance(account.id).balance_cents == 600


def test_account_with_transactions_cannot_be_deleted() -> None:
    session = make_session()
    user_id = make_user(session)
    accounts = AccountService(session, user_id)
    source = accounts.create(AccountIn(name="Source", type=AccountType.checking))
    target = accounts.create(AccountIn(name="Target", type=AccountType.savings))
    empty = accounts.create(AccountIn(name="Empty", type=AccountType.other))
    TransactionService(session, user_id, today=TODAY).create(
        TransactionIn(
            account_id=source.id,
            transfer_to_account_id=target.id,
            amount_cents=100,
            type=TransactionType.transfer,
            category="Move",
            date=TODAY,
        )
    )

    with pytest.raises(ConflictError):
        accounts.delete(source.id)
    with pytest.raises(ConflictError):
        accounts.delete(target.id)
    accounts.delete(empty.id)
    assert [a.id for a in accounts.list_all()] == [target.id, source.id]


def test_list_filters_and_orders_newest_first() -> None:
    session = make_session()
    user_id = make_user(session)
    accounts = AccountService(session, user_id)
    checking = accounts.create(AccountIn(name="Checking", type=AccountType.checking))
    savings = accounts.create(AccountIn(name="Savings", type=AccountType.savings))
    txns = TransactionService(session, user_id, today=TODAY)
    for day, category in ((1, "Food"), (10, "Rent"), (5, "Food")):
        txns.create(
            TransactionIn(
                account_id=checking.id,
                amount_cents=100,
                type=TransactionType.expense,
                category=category,
                date=date(2025, 3, day),
            )
        )
    txns.create(
        TransactionIn(
            account_id=checking.id,
            transfer_to_account_id=savings.id,
            amount_cents=100,
            type=TransactionType.transfer,
            category="Move",
            date=date(2025, 3, 2),
        )
    )

    days = [t.date.day for t in txns.list()]
    assert days == [10, 5, 2, 1]

    food = txns.list(TransactionFilters(category="Food"))
    assert [t.date.day for t in food] == [5, 1]

    ranged = txns.list(
        TransactionFilters(start=date(2025, 3, 2), end=date(2025, 3, 5))
    )
    assert [t.date.day for t in ranged] == [5, 2]

    into_savings = txns.list(TransactionFilters(account_id=savings.id))
    assert [t.type for t in into_savings] == [TransactionType.transfer]

    assert len(txns.list(limit=2, offset=1)) == 2
