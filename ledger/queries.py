from dataclasses import dataclass
from datetime import date, datetime
from typing import Optional

from ledger.errors import ValidationError

DEFAULT_LIMIT = 50


def parse_date(value, field='date'):
    """Accept a ``date`` or an ISO ``YYYY-MM-DD`` string; ``None`` passes through."""
    if value is None or value == '':
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return datetime.strptime(str(value), '%Y-%m-%d').date()
    except ValueError:
        raise ValidationError(f'Invalid {field}: expected YYYY-MM-DD, got {value!r}')


@dataclass
class TransactionFilter:
    """Optional filters for listing expenses or incomes.

    Each field that is set becomes one bound predicate; unset fields are ignored.
    """
    user_id: Optional[int] = None
    account_id: Optional[int] = None
    category_id: Optional[int] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    limit: int = DEFAULT_LIMIT

    def __post_init__(self):
        self.start_date = parse_date(self.start_date, 'start_date')
        self.end_date = parse_date(self.end_date, 'end_date')
        if self.start_date and self.end_date and self.start_date > self.end_date:
            raise ValidationError('start_date must not be after end_date')
        if self.limit is None:
            self.limit = DEFAULT_LIMIT
        if int(self.limit) < 1:
            raise ValidationError('limit must be at least 1')
        self.limit = int(self.limit)

    def apply(self, query, model):
        if self.user_id is not None:
            query = query.filter(model.user_id == self.user_id)
        if self.account_id is not None:
            query = query.filter(model.account_id == self.account_id)
        if self.category_id is not None:
            query = query.filter(model.category_id == self.category_id)
        if self.start_date is not None:
            query = query.filter(model.date >= self.start_date)
        if self.end_date is not None:
            query = query.filter(model.date <= self.end_date)
        return query.order_by(model.date.desc(), model.id.desc()).limit(self.limit)
