from decimal import Decimal
from types import SimpleNamespace

import pytest

from app import create_app
from ledger import Ledger, LedgerStore
from models import Account, db


@pytest.fixture
def app():
    """
    Fresh application on an in-memory SQLite database for every test.
    """
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'ALLOW_OVERDRAFT': False,
        'LOG_LEVEL': 'WARNING',
    })
    with app.app_context():
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def store(app):
    return LedgerStore(db.session)


@pytest.fixture
def ledger(store):
    return Ledger(store)


@pytest.fixture
def seeded(ledger):
    """
    Demo user with checking (1000.00) and savings (5000.00) accounts,
    two expense categories and one income category.
    """
    user = ledger.create_user('Demo User', 'demo@example.com')
    checking = ledger.create_account(user.id, 'Checking Account', 'checking', '1000.00')
    savings = ledger.create_account(user.id, 'Savings Account', 'savings', '5000.00')
    groceries = ledger.create_category('Groceries', 'expense')
    dining = ledger.create_category('Dining', 'expense')
    salary = ledger.create_category('Salary', 'income')
    return SimpleNamespace(
        user_id=user.id,
        checking_id=checking.id,
        savings_id=savings.id,
        groceries_id=groceries.id,
        dining_id=dining.id,
        salary_id=salary.id,
    )


@pytest.fixture
def balance_of(app):
    def _balance(account_id):
        return Decimal(db.session.get(Account, account_id, populate_existing=True).balance)
    return _balance
