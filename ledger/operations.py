"""
Balance-consistency operations.

Every mutation of an expense or income, and every transfer, goes through
``Ledger`` so that the stored account balance always equals its opening
balance plus the signed sum of the transactions on it. Each public method
is one atomic unit: the record change and all balance adjustments commit
together or not at all.
"""

from datetime import date as date_type
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

from ledger.errors import InsufficientFunds, ReferentialConflict, ValidationError
from ledger.log import get_logger
from ledger.queries import parse_date
from ledger.store import TransactionKind

log = get_logger('spendsight.ledger')

CENT = Decimal('0.01')
CATEGORY_TYPES = ('expense', 'income')


def to_amount(value, field='amount', allow_zero=False, allow_negative=False):
    """Coerce user input to a Decimal rounded to cents."""
    if value is None or value == '':
        raise ValidationError(f'Missing required field: {field}')
    if isinstance(value, bool):
        raise ValidationError(f'Invalid {field}: {value!r}')
    try:
        amount = Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)
    except (InvalidOperation, ValueError):
        raise ValidationError(f'Invalid {field}: {value!r}')
    if not amount.is_finite():
        raise ValidationError(f'Invalid {field}: {value!r}')
    if allow_negative:
        return amount
    if amount < 0 or (amount == 0 and not allow_zero):
        raise ValidationError(f'{field.capitalize()} must be a positive number')
    return amount


def to_id(value, field):
    if value is None or value == '':
        raise ValidationError(f'Missing required field: {field}')
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f'Invalid {field}: {value!r}')


def _required_text(value, field):
    text = str(value).strip() if value is not None else ''
    if not text:
        raise ValidationError(f'Missing required field: {field}')
    return text


class Ledger:
    """Account-balance-preserving operations over a LedgerStore.

    ``allow_overdraft`` decides whether a transfer may take its source
    account below zero. Expenses are never blocked by balance.
    """

    def __init__(self, store, allow_overdraft=False):
        self.store = store
        self.allow_overdraft = allow_overdraft

    # ---------------------- Users ----------------------
    def create_user(self, name, email):
        name = _required_text(name, 'name')
        email = _required_text(email, 'email').lower()
        with self.store.unit():
            if self.store.users.get_by_email(email):
                raise ValidationError('Email already registered.')
            user = self.store.users.add(name=name, email=email)
        log.info('user_created', user_id=user.id)
        return user

    # ---------------------- Accounts ----------------------
    def create_account(self, user_id, name, type, balance=0):
        user_id = to_id(user_id, 'user_id')
        name = _required_text(name, 'name')
        type = _required_text(type, 'type').lower()
        opening = to_amount(balance if balance is not None else 0, 'balance', allow_negative=True)
        with self.store.unit():
            self.store.users.require(user_id)
            account = self.store.accounts.add(user_id=user_id, name=name, type=type, balance=opening)
        log.info('account_created', account_id=account.id, user_id=user_id, opening_balance=str(opening))
        return account

    def update_account(self, account_id, name=None, type=None):
        """Rename or retype an account. The balance is not editable here."""
        with self.store.unit():
            account = self.store.accounts.require(account_id)
            if name is not None:
                account.name = _required_text(name, 'name')
            if type is not None:
                account.type = _required_text(type, 'type').lower()
        return account

    def delete_account(self, account_id):
        with self.store.unit():
            account = self.store.accounts.require(account_id)
            if self.store.accounts.has_transactions(account.id):
                raise ReferentialConflict(
                    f'Account {account_id} has expenses or incomes and cannot be deleted'
                )
            snapshot = account.to_dict()
            self.store.accounts.delete(account)
        log.info('account_deleted', account_id=account_id)
        return snapshot

    # ---------------------- Categories ----------------------
    def create_category(self, name, type):
        name = _required_text(name, 'name')
        type = _required_text(type, 'type').lower()
        if type not in CATEGORY_TYPES:
            raise ValidationError('Type must be income or expense.')
        with self.store.unit():
            category = self.store.categories.add(name=name, type=type)
        log.info('category_created', category_id=category.id, type=type)
        return category

    def delete_category(self, category_id):
        with self.store.unit():
            category = self.store.categories.require(category_id)
            if self.store.categories.has_transactions(category.id):
                raise ReferentialConflict(
                    f'Category {category_id} is used by expenses or incomes and cannot be deleted'
                )
            snapshot = category.to_dict()
            self.store.categories.delete(category)
        log.info('category_deleted', category_id=category_id)
        return snapshot

    # ---------------------- Transactions ----------------------
    def _category_for(self, kind, category_id):
        category = self.store.categories.require(category_id)
        if category.type != kind.value:
            raise ValidationError(
                f'Category {category.name!r} has type {category.type}, expected {kind.value}'
            )
        return category

    def create_transaction(self, kind, account_id, category_id, amount, description='', date=None):
        kind = TransactionKind.parse(kind)
        account_id = to_id(account_id, 'account_id')
        category_id = to_id(category_id, 'category_id')
        amount = to_amount(amount)
        when = parse_date(date) or date_type.today()

        with self.store.unit():
            account = self.store.accounts.require(account_id)
            self._category_for(kind, category_id)
            record = self.store.transactions(kind).add(
                user_id=account.user_id,
                account_id=account_id,
                category_id=category_id,
                amount=amount,
                description=description or '',
                date=when,
            )
            account = self.store.accounts.adjust_balance(account_id, kind.sign * amount)

        log.info(f'{kind.value}_created', record_id=record.id, account_id=account_id, amount=str(amount))
        return record, account

    def update_transaction(self, kind, transaction_id, account_id=None, category_id=None,
                           amount=None, description=None, date=None):
        kind = TransactionKind.parse(kind)
        new_account_id = to_id(account_id, 'account_id') if account_id not in (None, '') else None
        new_category_id = to_id(category_id, 'category_id') if category_id not in (None, '') else None
        new_amount = to_amount(amount) if amount not in (None, '') else None
        new_date = parse_date(date)

        with self.store.unit():
            repo = self.store.transactions(kind)
            record = repo.get_for_update(transaction_id)
            old_account_id = record.account_id
            old_amount = Decimal(record.amount).quantize(CENT)

            if new_account_id is None:
                new_account_id = old_account_id
            if new_amount is None:
                new_amount = old_amount

            new_account = self.store.accounts.require(new_account_id)
            if new_category_id is not None:
                self._category_for(kind, new_category_id)
                record.category_id = new_category_id

            record.account_id = new_account_id
            record.user_id = new_account.user_id
            record.amount = new_amount
            if description is not None:
                record.description = description
            if new_date is not None:
                record.date = new_date
            repo.session.flush()

            touched = []
            if new_account_id == old_account_id:
                delta = kind.sign * (new_amount - old_amount)
                if delta:
                    touched.append(self.store.accounts.adjust_balance(old_account_id, delta))
                else:
                    touched.append(new_account)
            else:
                touched.append(self.store.accounts.adjust_balance(old_account_id, -kind.sign * old_amount))
                touched.append(self.store.accounts.adjust_balance(new_account_id, kind.sign * new_amount))

        log.info(
            f'{kind.value}_updated',
            record_id=record.id,
            old_account_id=old_account_id,
            new_account_id=new_account_id,
            old_amount=str(old_amount),
            new_amount=str(new_amount),
        )
        return record, touched

    def delete_transaction(self, kind, transaction_id):
        """Remove a record and undo its balance effect.

        Returns the deleted record as a dict together with the updated account.
        """
        kind = TransactionKind.parse(kind)
        with self.store.unit():
            repo = self.store.transactions(kind)
            record = repo.get_for_update(transaction_id)
            snapshot = record.to_dict()
            account_id, amount = record.account_id, Decimal(record.amount).quantize(CENT)
            repo.delete(record)
            account = self.store.accounts.adjust_balance(account_id, -kind.sign * amount)

        log.info(f'{kind.value}_deleted', record_id=transaction_id, account_id=account_id, amount=str(amount))
        return snapshot, account

    # ---------------------- Transfers ----------------------
    def transfer_funds(self, from_account_id, to_account_id, amount):
        """Move money between two accounts and record the transfer.

        Returns the transfer record with both updated accounts.
        """
        from_account_id = to_id(from_account_id, 'from_account_id')
        to_account_id = to_id(to_account_id, 'to_account_id')
        amount = to_amount(amount)
        if from_account_id == to_account_id:
            raise ValidationError('Cannot transfer to the same account')

        with self.store.unit():
            # lock in id order so two opposite transfers cannot deadlock
            locked = {
                account_id: self.store.accounts.get_for_update(account_id)
                for account_id in sorted((from_account_id, to_account_id))
            }
            source = locked[from_account_id]
            if not self.allow_overdraft and Decimal(source.balance) - amount < 0:
                log.warning(
                    'transfer_rejected',
                    from_account_id=from_account_id,
                    to_account_id=to_account_id,
                    amount=str(amount),
                    balance=str(source.balance),
                )
                raise InsufficientFunds(
                    f'Insufficient funds in account {from_account_id}: '
                    f'balance {Decimal(source.balance).quantize(CENT)}, requested {amount}'
                )
            transfer = self.store.transfers.add(
                from_account_id=from_account_id,
                to_account_id=to_account_id,
                amount=amount,
                date=date_type.today(),
            )
            source = self.store.accounts.adjust_balance(from_account_id, -amount)
            target = self.store.accounts.adjust_balance(to_account_id, amount)

        log.info(
            'transfer_completed',
            transfer_id=transfer.id,
            from_account_id=from_account_id,
            to_account_id=to_account_id,
            amount=str(amount),
        )
        return transfer, source, target
