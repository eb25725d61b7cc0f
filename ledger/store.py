"""
Ledger Store

Typed repositories over a SQLAlchemy session plus the unit-of-work that
makes every ledger operation all-or-nothing. A store is built around the
session it is given; it never opens connections of its own.
"""

from contextlib import contextmanager
from enum import Enum

from sqlalchemy import func, or_, update
from sqlalchemy.exc import SQLAlchemyError

from ledger.errors import NotFound, StoreError, ValidationError
from ledger.log import get_logger
from ledger.queries import TransactionFilter
from models import Account, Category, Expense, Income, Transfer, User

log = get_logger('spendsight.store')


class TransactionKind(str, Enum):
    EXPENSE = 'expense'
    INCOME = 'income'

    @classmethod
    def parse(cls, value):
        try:
            return cls(value)
        except ValueError:
            raise ValidationError(f'Type must be income or expense, got {value!r}')

    @property
    def sign(self):
        """Direction in which a record of this kind moves its account balance."""
        return -1 if self is TransactionKind.EXPENSE else 1

    @property
    def model(self):
        return Expense if self is TransactionKind.EXPENSE else Income


class _Repository:
    model = None
    label = 'record'

    def __init__(self, session):
        self.session = session

    def get(self, record_id):
        if record_id is None:
            return None
        return self.session.get(self.model, record_id)

    def require(self, record_id):
        record = self.get(record_id)
        if record is None:
            raise NotFound(f'{self.label.capitalize()} {record_id} not found')
        return record

    def get_for_update(self, record_id):
        """Load a row with a lock held until the unit ends."""
        record = (
            self.session.query(self.model)
            .filter(self.model.id == record_id)
            .with_for_update(of=self.model)
            .populate_existing()
            .one_or_none()
        )
        if record is None:
            raise NotFound(f'{self.label.capitalize()} {record_id} not found')
        return record

    def add(self, **fields):
        record = self.model(**fields)
        self.session.add(record)
        self.session.flush()
        return record

    def delete(self, record):
        self.session.delete(record)
        self.session.flush()
        return True


class UserRepository(_Repository):
    model = User
    label = 'user'

    def get_by_email(self, email):
        return self.session.query(User).filter(User.email == email).first()

    def list(self):
        return self.session.query(User).order_by(User.name).all()


class AccountRepository(_Repository):
    model = Account
    label = 'account'

    def list(self, user_id=None):
        q = self.session.query(Account)
        if user_id is not None:
            q = q.filter(Account.user_id == user_id)
        return q.order_by(Account.name).all()

    def adjust_balance(self, account_id, delta):
        # relative update so concurrent adjustments serialize on the row
        result = self.session.execute(
            update(Account)
            .where(Account.id == account_id)
            .values(balance=Account.balance + delta, updated_at=func.now())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise NotFound(f'Account {account_id} not found')
        return self.session.get(Account, account_id, populate_existing=True)

    def has_transactions(self, account_id):
        """True while any expense, income or transfer references the account."""
        queries = [self.session.query(model.id).filter(model.account_id == account_id) for model in (Expense, Income)]
        queries.append(self.session.query(Transfer.id).filter(
            or_(Transfer.from_account_id == account_id, Transfer.to_account_id == account_id)
        ))
        return any(q.first() is not None for q in queries)


class CategoryRepository(_Repository):
    model = Category
    label = 'category'

    def list(self, type=None):
        q = self.session.query(Category)
        if type:
            q = q.filter(Category.type == type)
        return q.order_by(Category.name).all()

    def has_transactions(self, category_id):
        return any(
            self.session.query(model.id).filter(model.category_id == category_id).first() is not None
            for model in (Expense, Income)
        )


class TransactionRepository(_Repository):

    def __init__(self, session, kind):
        super().__init__(session)
        self.kind = kind
        self.model = kind.model
        self.label = kind.value

    def list(self, filters=None):
        filters = filters or TransactionFilter()
        return filters.apply(self.session.query(self.model), self.model).all()


class TransferRepository(_Repository):
    model = Transfer
    label = 'transfer'

    def list(self, account_id=None):
        q = self.session.query(Transfer)
        if account_id is not None:
            q = q.filter(or_(Transfer.from_account_id == account_id, Transfer.to_account_id == account_id))
        return q.order_by(Transfer.date.desc(), Transfer.id.desc()).all()


class LedgerStore:
    """Unit-of-work and repositories bound to one session."""

    def __init__(self, session):
        self.session = session
        self.users = UserRepository(session)
        self.accounts = AccountRepository(session)
        self.categories = CategoryRepository(session)
        self.expenses = TransactionRepository(session, TransactionKind.EXPENSE)
        self.incomes = TransactionRepository(session, TransactionKind.INCOME)
        self.transfers = TransferRepository(session)

    def transactions(self, kind):
        kind = TransactionKind.parse(kind)
        return self.expenses if kind is TransactionKind.EXPENSE else self.incomes

    def commit(self):
        try:
            self.session.commit()
        except SQLAlchemyError as exc:
            self.session.rollback()
            log.error('commit_failed', error=str(exc))
            raise StoreError(f'Failed to commit: {exc}') from exc

    def rollback(self):
        self.session.rollback()

    @contextmanager
    def unit(self):
        """Run a block of writes atomically.

        Commits when the block finishes, rolls back on any exception.
        Database errors surface as StoreError; ledger errors pass through unchanged.
        """
        try:
            yield self
        except SQLAlchemyError as exc:
            self.rollback()
            log.error('unit_rolled_back', error=str(exc))
            raise StoreError(str(exc)) from exc
        except Exception as exc:
            self.rollback()
            log.info('unit_rolled_back', error_type=type(exc).__name__, error=str(exc))
            raise
        self.commit()
