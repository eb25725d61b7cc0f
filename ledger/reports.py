import calendar
from datetime import date, timedelta

import pandas as pd
from sqlalchemy import extract, func

from ledger.errors import NotFound, ValidationError
from ledger.queries import parse_date
from models import Account, Category, Expense, Income, Transfer

PERIOD_FORMATS = {
    'daily': '%Y-%m-%d',
    'monthly': '%Y-%m',
    'yearly': '%Y',
}


def _require(value, name):
    if value is None or value == '':
        raise ValidationError(f'Missing required parameter: {name}')
    return value


def _query_df(session, model, *criteria):
    # date/amount frame for one side of the ledger
    rows = session.query(model.date, model.amount).filter(*criteria).all()
    if not rows:
        return pd.DataFrame(columns=['date', 'amount'])
    df = pd.DataFrame([{'date': r[0], 'amount': float(r[1])} for r in rows])
    df['date'] = pd.to_datetime(df['date'])
    return df


def expenses_by_category(session, user_id, start_date, end_date):
    _require(user_id, 'user_id')
    start = parse_date(_require(start_date, 'start_date'), 'start_date')
    end = parse_date(_require(end_date, 'end_date'), 'end_date')

    total = func.sum(Expense.amount)
    rows = session.query(
        Category.id,
        Category.name,
        total.label('total_amount'),
        func.count(Expense.id).label('transaction_count'),
    ).join(Expense, Expense.category_id == Category.id).filter(
        Expense.user_id == user_id,
        Expense.date >= start,
        Expense.date <= end,
    ).group_by(Category.id, Category.name).order_by(total.desc()).all()

    grand_total = sum(float(r[2] or 0) for r in rows)
    return [{
        'category_id': r[0],
        'category_name': r[1],
        'total_amount': float(r[2] or 0),
        'transaction_count': int(r[3]),
        'percentage': round(float(r[2] or 0) / grand_total * 100, 2) if grand_total else 0.0,
    } for r in rows]


def monthly_expenses(session, user_id, year):
    _require(user_id, 'user_id')
    try:
        year = int(_require(year, 'year'))
    except (TypeError, ValueError):
        raise ValidationError(f'Invalid year: {year!r}')

    month = extract('month', Expense.date)
    rows = session.query(
        month.label('m'),
        func.sum(Expense.amount).label('total_amount'),
        func.count(Expense.id).label('transaction_count'),
    ).filter(
        Expense.user_id == user_id,
        extract('year', Expense.date) == year,
    ).group_by(month).order_by(month).all()

    return [{
        'month': int(r[0]),
        'month_name': calendar.month_name[int(r[0])],
        'total_amount': float(r[1] or 0),
        'transaction_count': int(r[2]),
    } for r in rows]


def income_vs_expenses(session, user_id, period):
    """Totals of expenses and income per day, month or year, with net = income - expenses."""
    _require(user_id, 'user_id')
    if period not in PERIOD_FORMATS:
        raise ValidationError('Invalid period. Must be one of: daily, monthly, yearly')
    fmt = PERIOD_FORMATS[period]

    expenses = _query_df(session, Expense, Expense.user_id == user_id)
    incomes = _query_df(session, Income, Income.user_id == user_id)
    if expenses.empty and incomes.empty:
        return []

    series = [
        df.groupby(df['date'].dt.strftime(fmt))['amount'].sum().rename(name)
        for df, name in ((expenses, 'expenses'), (incomes, 'income'))
        if not df.empty
    ]
    merged = pd.concat(series, axis=1).reindex(columns=['expenses', 'income']).fillna(0.0)
    merged['net'] = merged['income'] - merged['expenses']
    merged = merged.sort_index()
    return [{
        'period': str(p),
        'expenses': round(float(row['expenses']), 2),
        'income': round(float(row['income']), 2),
        'net': round(float(row['net']), 2),
    } for p, row in merged.iterrows()]


def account_balance_history(session, account_id, days=30):
    """End-of-day balances for the days in the window that had activity.

    Expenses, incomes and transfers in or out all count as activity.

    Walks backwards from the current balance, so the last row always
    matches the stored balance.
    """
    _require(account_id, 'account_id')
    try:
        days = int(days)
    except (TypeError, ValueError):
        raise ValidationError(f'Invalid days: {days!r}')
    if days < 1:
        raise ValidationError('days must be at least 1')

    account = session.get(Account, account_id)
    if account is None:
        raise NotFound(f'Account {account_id} not found')
    current = float(account.balance)
    since = date.today() - timedelta(days=days)

    debits = [
        _query_df(session, Expense, Expense.account_id == account_id, Expense.date >= since),
        _query_df(session, Transfer, Transfer.from_account_id == account_id, Transfer.date >= since),
    ]
    credits = [
        _query_df(session, Income, Income.account_id == account_id, Income.date >= since),
        _query_df(session, Transfer, Transfer.to_account_id == account_id, Transfer.date >= since),
    ]
    debits = [df.assign(amount=-df['amount']) for df in debits if not df.empty]
    frames = debits + [df for df in credits if not df.empty]
    if not frames:
        return []

    daily = pd.concat(frames).groupby('date')['amount'].sum().sort_index(ascending=False)
    # changes strictly after each day, newest first
    later = daily.cumsum() - daily
    history = pd.DataFrame({'daily_change': daily, 'balance': current - later}).sort_index()
    return [{
        'date': d.date().isoformat(),
        'daily_change': round(float(row['daily_change']), 2),
        'balance': round(float(row['balance']), 2),
    } for d, row in history.iterrows()]


def export_rows(session, user_id=None):
    """Flat expense and income rows, newest first, for CSV export."""
    rows = []
    for model in (Expense, Income):
        q = session.query(model)
        if user_id is not None:
            q = q.filter(model.user_id == user_id)
        rows.extend(q.all())
    rows.sort(key=lambda t: (t.date, t.id), reverse=True)
    return [[
        t.date.isoformat(),
        f'{float(t.amount):.2f}',
        t.kind,
        t.account.name,
        t.category.name,
        t.description or '',
    ] for t in rows]
