import csv
import io
import os

import click
from dotenv import load_dotenv
from flask import Blueprint, Flask, current_app, g, jsonify, request
from sqlalchemy import text

from ledger import Ledger, LedgerError, LedgerStore, TransactionFilter, ValidationError
from ledger import reports
from ledger.log import configure_logging, get_logger
from models import db

load_dotenv()

log = get_logger('spendsight.web')
bp = Blueprint('spendsight', __name__)

COLLECTIONS = {'expenses': 'expense', 'incomes': 'income'}


def _env_flag(name, default='0'):
    return os.environ.get(name, default).strip().lower() in ('1', 'true', 'yes', 'on')


def create_app(test_config=None):
    app = Flask(__name__)
    app.config['SQLALCHEMY_DATABASE_URI'] = os.environ.get('DATABASE_URL', 'sqlite:///spendsight.db')
    app.config['SQLALCHEMY_TRACK_MODIFICATIONS'] = False
    app.config['ALLOW_OVERDRAFT'] = _env_flag('ALLOW_OVERDRAFT')
    app.config['LOG_LEVEL'] = os.environ.get('LOG_LEVEL', 'INFO')
    app.config['DEFAULT_PAGE_LIMIT'] = int(os.environ.get('DEFAULT_PAGE_LIMIT', 50))
    if test_config:
        app.config.update(test_config)

    configure_logging(app.config['LOG_LEVEL'])
    db.init_app(app)
    app.register_blueprint(bp)
    register_commands(app)
    with app.app_context():
        db.create_all()
    return app


# ---------------------- Request helpers ----------------------
def get_ledger():
    """One ledger per request, bound to the request's session."""
    if 'ledger' not in g:
        g.ledger = Ledger(LedgerStore(db.session), allow_overdraft=current_app.config['ALLOW_OVERDRAFT'])
    return g.ledger


def _payload():
    data = request.get_json(silent=True)
    if data is None:
        return request.form.to_dict()
    if not isinstance(data, dict):
        raise ValidationError('Request body must be an object')
    return data


@bp.app_errorhandler(LedgerError)
def handle_ledger_error(error):
    log.warning('request_failed', path=request.path, error_type=type(error).__name__, error=str(error))
    return jsonify({'success': False, 'message': str(error)}), error.status_code


# ---------------------- Users ----------------------
@bp.route('/api/users', methods=['GET'])
def list_users():
    return jsonify([u.to_dict() for u in get_ledger().store.users.list()])


@bp.route('/api/users', methods=['POST'])
def create_user():
    data = _payload()
    user = get_ledger().create_user(data.get('name'), data.get('email'))
    return jsonify({'success': True, 'user': user.to_dict()}), 201


# ---------------------- Accounts ----------------------
@bp.route('/api/accounts', methods=['GET'])
def list_accounts():
    user_id = request.args.get('user_id', type=int)
    return jsonify([a.to_dict() for a in get_ledger().store.accounts.list(user_id)])


@bp.route('/api/accounts/<int:account_id>', methods=['GET'])
def get_account(account_id):
    return jsonify(get_ledger().store.accounts.require(account_id).to_dict())


@bp.route('/api/accounts', methods=['POST'])
def create_account():
    data = _payload()
    account = get_ledger().create_account(
        data.get('user_id'), data.get('name'), data.get('type'), data.get('balance', 0)
    )
    return jsonify({'success': True, 'account': account.to_dict()}), 201


@bp.route('/api/accounts/<int:account_id>', methods=['PUT'])
def update_account(account_id):
    data = _payload()
    if 'balance' in data:
        raise ValidationError('Balance can only change through expenses, incomes and transfers.')
    account = get_ledger().update_account(account_id, name=data.get('name'), type=data.get('type'))
    return jsonify({'success': True, 'account': account.to_dict()})


@bp.route('/api/accounts/<int:account_id>', methods=['DELETE'])
def delete_account(account_id):
    account = get_ledger().delete_account(account_id)
    return jsonify({'success': True, 'message': 'Account deleted.', 'account': account})


@bp.route('/api/accounts/transfer', methods=['POST'])
def transfer_funds():
    data = _payload()
    transfer, source, target = get_ledger().transfer_funds(
        data.get('from_account_id'), data.get('to_account_id'), data.get('amount')
    )
    return jsonify({
        'success': True,
        'message': 'Funds transferred successfully.',
        'from_account': source.to_dict(),
        'to_account': target.to_dict(),
        'transfer': transfer.to_dict(),
        'amount': float(transfer.amount),
    })


# ---------------------- Categories ----------------------
@bp.route('/api/categories', methods=['GET'])
def list_categories():
    ctype = request.args.get('type')
    return jsonify([c.to_dict() for c in get_ledger().store.categories.list(ctype)])


@bp.route('/api/categories', methods=['POST'])
def create_category():
    data = _payload()
    category = get_ledger().create_category(data.get('name'), data.get('type'))
    return jsonify({'success': True, 'category': category.to_dict()}), 201


@bp.route('/api/categories/<int:category_id>', methods=['DELETE'])
def delete_category(category_id):
    category = get_ledger().delete_category(category_id)
    return jsonify({'success': True, 'message': 'Category deleted.', 'category': category})


# ---------------------- Expenses & Incomes ----------------------
@bp.route('/api/<any(expenses, incomes):collection>', methods=['GET'])
def list_transactions(collection):
    filters = TransactionFilter(
        user_id=request.args.get('user_id', type=int),
        account_id=request.args.get('account_id', type=int),
        category_id=request.args.get('category_id', type=int),
        start_date=request.args.get('start_date'),
        end_date=request.args.get('end_date'),
        limit=request.args.get('limit', default=current_app.config['DEFAULT_PAGE_LIMIT'], type=int),
    )
    records = get_ledger().store.transactions(COLLECTIONS[collection]).list(filters)
    return jsonify([t.to_dict() for t in records])


@bp.route('/api/<any(expenses, incomes):collection>/<int:txn_id>', methods=['GET'])
def get_transaction(collection, txn_id):
    record = get_ledger().store.transactions(COLLECTIONS[collection]).require(txn_id)
    return jsonify(record.to_dict())


@bp.route('/api/<any(expenses, incomes):collection>', methods=['POST'])
def create_transaction(collection):
    kind = COLLECTIONS[collection]
    data = _payload()
    record, account = get_ledger().create_transaction(
        kind,
        account_id=data.get('account_id'),
        category_id=data.get('category_id'),
        amount=data.get('amount'),
        description=data.get('description', ''),
        date=data.get('date'),
    )
    return jsonify({'success': True, kind: record.to_dict(), 'account': account.to_dict()}), 201


@bp.route('/api/<any(expenses, incomes):collection>/<int:txn_id>', methods=['PUT'])
def update_transaction(collection, txn_id):
    kind = COLLECTIONS[collection]
    data = _payload()
    record, accounts = get_ledger().update_transaction(
        kind,
        txn_id,
        account_id=data.get('account_id'),
        category_id=data.get('category_id'),
        amount=data.get('amount'),
        description=data.get('description'),
        date=data.get('date'),
    )
    return jsonify({'success': True, kind: record.to_dict(), 'accounts': [a.to_dict() for a in accounts]})


@bp.route('/api/<any(expenses, incomes):collection>/<int:txn_id>', methods=['DELETE'])
def delete_transaction(collection, txn_id):
    kind = COLLECTIONS[collection]
    snapshot, account = get_ledger().delete_transaction(kind, txn_id)
    return jsonify({
        'success': True,
        'message': f'{kind.capitalize()} deleted.',
        kind: snapshot,
        'account': account.to_dict(),
    })


# ---------------------- Reports ----------------------
@bp.route('/api/reports/expenses-by-category')
def report_expenses_by_category():
    return jsonify(reports.expenses_by_category(
        db.session,
        request.args.get('user_id', type=int),
        request.args.get('start_date'),
        request.args.get('end_date'),
    ))


@bp.route('/api/reports/monthly-expenses')
def report_monthly_expenses():
    return jsonify(reports.monthly_expenses(
        db.session,
        request.args.get('user_id', type=int),
        request.args.get('year'),
    ))


@bp.route('/api/reports/income-vs-expenses')
def report_income_vs_expenses():
    return jsonify(reports.income_vs_expenses(
        db.session,
        request.args.get('user_id', type=int),
        request.args.get('period'),
    ))


@bp.route('/api/reports/account-balance-history')
def report_account_balance_history():
    return jsonify(reports.account_balance_history(
        db.session,
        request.args.get('account_id', type=int),
        request.args.get('days', default=30),
    ))


# ---------------------- Export CSV ----------------------
@bp.route('/export.csv')
def export_csv():
    si = io.StringIO()
    writer = csv.writer(si)
    writer.writerow(['date', 'amount', 'type', 'account', 'category', 'description'])
    writer.writerows(reports.export_rows(db.session, request.args.get('user_id', type=int)))
    output = si.getvalue().encode('utf-8')
    return (output, 200, {'Content-Type': 'text/csv; charset=utf-8', 'Content-Disposition': 'attachment; filename=transactions.csv'})


# ---------------------- Health ----------------------
@bp.route('/health')
def health():
    try:
        db.session.execute(text('SELECT 1'))
    except Exception as e:
        log.error('health_check_failed', error=str(e))
        return jsonify({'status': 'error', 'database': 'unavailable'}), 503
    return jsonify({'status': 'ok', 'database': 'connected'})


# ---------------------- CLI ----------------------
DEMO_CATEGORIES = [
    ('Groceries', 'expense'),
    ('Dining', 'expense'),
    ('Transportation', 'expense'),
    ('Utilities', 'expense'),
    ('Salary', 'income'),
]


def seed_demo(ledger):
    """Load the demo user, two accounts, default categories and one expense and income."""
    if ledger.store.users.get_by_email('demo@example.com'):
        return False
    user = ledger.create_user('Demo User', 'demo@example.com')
    checking = ledger.create_account(user.id, 'Checking Account', 'checking', 1000)
    ledger.create_account(user.id, 'Savings Account', 'savings', 5000)
    categories = {name: ledger.create_category(name, ctype) for name, ctype in DEMO_CATEGORIES}
    ledger.create_transaction('expense', checking.id, categories['Groceries'].id, '75.50', 'Weekly groceries')
    ledger.create_transaction('income', checking.id, categories['Salary'].id, '2500', 'Monthly salary')
    return True


def register_commands(app):
    @app.cli.command('init-db')
    def init_db_command():
        """Create all tables."""
        db.create_all()
        click.echo('Database initialized.')

    @app.cli.command('seed-demo')
    def seed_demo_command():
        """Insert demo data unless it is already there."""
        if seed_demo(Ledger(LedgerStore(db.session))):
            click.echo('Demo data loaded.')
        else:
            click.echo('Demo data already present.')


# ---------------------- Run App ----------------------
if __name__ == '__main__':
    create_app().run(host='0.0.0.0', port=int(os.environ.get('PORT', 5000)), debug=True)
