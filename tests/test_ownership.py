from datetime import date

import pytest

from database import Base, create_db_engine, make_session_factory
from models import Account, AccountType, Budget, BudgetPeriod, Transaction, TransactionType, User
from schemas import (
    AccountIn,
    AccountUpdate,
    BudgetIn,
    LoginIn,
    PasswordChangeIn,
    ProfileIn,
    RegisterIn,
    TransactionIn,
    TransactionUpdate,
)
from services import (
    AccountService,
    AuthenticationError,
    BudgetService,
    ConflictError,
    NotFoundError,
    TransactionService,
    UserService,
)


TODAY = date(2025, 3, 15)


def make_session():
    engine = create_db_engine("sqlite://")
    Base.metadata.create_all(engine)
    return make_session_factory(engine)()


def register(session, email: str) -> int:
    return (
        UserService(session)
        .register(RegisterIn(name=email.split("@")[0], email=email, password="secret123"))
        .id
    )


def test_other_users_entities_are_not_found() -> None:
    session = make_session()
    alice = register(session, "alice@example.com")
    bob = register(session, "bob@example.com")

    account = AccountService(session, alice).create(
        AccountIn(name="Alice checking", type=AccountType.checking, balance_cents=5_000)
    )
    txn = TransactionService(session, alice, today=TODAY).create(
        TransactionIn(
            account_id=account.id,
            amount_cents=500,
            type=TransactionType.expense,
            category="Food",
            date=TODAY,
        )
    )
    budget = BudgetService(session, alice, today=TODAY).create(
        BudgetIn(category="Food", amount_cents=1_000, period=BudgetPeriod.monthly)
    )

    bob_accounts = AccountService(session, bob)
    bob_txns = TransactionService(session, bob, today=TODAY)
    bob_budgets = BudgetService(session, bob, today=TODAY)

    with pytest.raises(NotFoundError):
        bob_accounts.get(account.id)
    with pytest.raises(NotFoundError):
        bob_accounts.update(account.id, AccountUpdate(name="Mine now"))
    with pytest.raises(NotFoundError):
        bob_accounts.delete(account.id)
    with pytest.raises(NotFoundError):
        bob_txns.get(txn.id)
    with pytest.raises(NotFoundError):
        bob_txns.update(txn.id, TransactionUpdate(amount_cents=1))
    with pytest.raises(NotFoundError):
        bob_txns.delete(txn.id)
    with pytest.raises(NotFoundError):
        bob_budgets.get(budget.id)
    with pytest.raises(NotFoundError):
        bob_budgets.recompute_spent(budget.id)
    # posting into someone else's account
    with pytest.raises(NotFoundError):
        bob_txns.create(
            TransactionIn(
                account_id=account.id,
                amount_cents=100,
                type=TransactionType.income,
                category="Gift",
                date=TODAY,
            )
        )

    assert bob_accounts.list_all() == []
    assert bob_txns.list() == []
    assert bob_budgets.list_all() == []

    session.refresh(account)
    session.refresh(budget)
    assert account.name == "Alice checking"
    assert account.balance_cents == 4_500
    assert budget.spent_cents == 500


def test_bob_budget_ignores_alice_expenses() -> None:
    session = make_session()
    alice = register(session, "alice@example.com")
    bob = register(session, "bob@example.com")
    account = AccountService(session, alice).create(
        AccountIn(name="Checking", type=AccountType.checking)
    )
    bob_budget = BudgetService(session, bob, today=TODAY).create(
        BudgetIn(category="Food", amount_cents=1_000, period=BudgetPeriod.monthly)
    )
    TransactionService(session, alice, today=TODAY).create(
        TransactionIn(
            account_id=account.id,
            amount_cents=300,
            type=TransactionType.expense,
            category="Food",
            date=TODAY,
        )
    )
    session.refresh(bob_budget)
    assert bob_budget.spent_cents == 0


def test_register_login_and_profile() -> None:
    session = make_session()
    users = UserService(session)
    user_id = register(session, "Carol@Example.com")
    register(session, "dave@example.com")

    with pytest.raises(ConflictError):
        users.register(
            RegisterIn(name="Carol", email="carol@example.com", password="another1")
        )
    with pytest.raises(AuthenticationError):
        users.authenticate(LoginIn(email="carol@example.com", password="wrong"))
    assert users.authenticate(
        LoginIn(email="CAROL@example.com", password="secret123")
    ).id == user_id

    with pytest.raises(ConflictError):
        users.update_profile(user_id, ProfileIn(email="dave@example.com"))
    updated = users.update_profile(user_id, ProfileIn(name="Caroline"))
    assert updated.name == "Caroline"
    assert updated.email == "carol@example.com"

    with pytest.raises(ValueError):
        users.change_password(
            user_id,
            PasswordChangeIn(current_password="nope", new_password="newsecret"),
        )
    users.change_password(
        user_id,
        PasswordChangeIn(current_password="secret123", new_password="newsecret"),
    )
    assert users.authenticate(
        LoginIn(email="carol@example.com", password="newsecret")
    ).id == user_id


def test_deleting_user_removes_owned_rows_only() -> None:
    session = make_session()
    alice = register(session, "alice@example.com")
    bob = register(session, "bob@example.com")
    for user_id in (alice, bob):
        accounts = AccountService(session, user_id)
        checking = accounts.create(AccountIn(name="Checking", type=AccountType.checking))
        savings = accounts.create(AccountIn(name="Savings", type=AccountType.savings))
        txns = TransactionService(session, user_id, today=TODAY)
        txns.create(
            TransactionIn(
                account_id=checking.id,
                transfer_to_account_id=savings.id,
                amount_cents=100,
                type=TransactionType.transfer,
                category="Move",
                date=TODAY,
            )
        )
        BudgetService(session, user_id, today=TODAY).create(
            BudgetIn(category="Food", amount_cents=1_000, period=BudgetPeriod.monthly)
        )

    UserService(session).delete(alice)
    session.expire_all()

    assert session.get(User, alice) is None
    for model in (Account, Transaction, Budget):
        owners = {row.user_id for row in session.query(model).all()}
        assert owners == {bob}
    with pytest.raises(NotFoundError):
        UserService(session).get(alice)


def test_duplicate_email_slipping_past_check_is_a_conflict(monkeypatch) -> None:
    session = make_session()
    users = UserService(session)
    register(session, "erin@example.com")
    frank = register(session, "frank@example.com")
    # as if a concurrent request inserted the row after the lookup
    monkeypatch.setattr(UserService, "_by_email", lambda self, email: None)

    with pytest.raises(ConflictError):
        users.register(
            RegisterIn(name="Erin", email="erin@example.com", password="secret123")
        )
    with pytest.raises(ConflictError):
        users.update_profile(frank, ProfileIn(email="erin@example.com"))

    session.expire_all()
    assert users.get(frank).email == "frank@example.com"
