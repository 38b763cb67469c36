import logging

from flask import Blueprint, Flask, request, jsonify, current_app
from flask_cors import CORS
from werkzeug.exceptions import HTTPException

from config import Settings
from entities import ClaimStatus, to_base_units, format_units
from errors import LedgerError, ValidationError, ResourceNotFoundError, DatabaseError
from errors import UnauthorizedError, StateGuardError, TransferError, ReentrancyError
from manager import PolicyLedger
from models import db, SqlStore

logger = logging.getLogger(__name__)

ERROR_STATUS = {
    ValidationError: 400,
    UnauthorizedError: 403,
    StateGuardError: 409,
    ReentrancyError: 409,
    TransferError: 502,
}


def setup_logging(level="INFO",
                  log_format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"):
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    if not root_logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(log_format))
        root_logger.addHandler(handler)
    return root_logger


def validate_string_field(value, field_name, max_length):
    if not value or not isinstance(value, str):
        raise ValidationError(f"{field_name} must be a non-empty string")
    if len(value) > max_length:
        raise ValidationError(f"{field_name} must not exceed {max_length} characters")
    return value


def validate_amount(amount, field_name='Amount'):
    if isinstance(amount, bool):
        raise ValidationError(f"{field_name} must be a valid number")
    try:
        amount = to_base_units(amount)
    except ValueError:
        raise ValidationError(f"{field_name} must be a valid number")
    if amount < 0:
        raise ValidationError(f"{field_name} must be non-negative")
    return amount


def validate_status(status):
    valid_statuses = [ClaimStatus.APPROVED.value, ClaimStatus.REJECTED.value]
    if status not in valid_statuses:
        raise ValidationError(f"Status must be one of: {', '.join(valid_statuses)}")
    return ClaimStatus(status)


def get_json_body():
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationError("No input data provided")
    return data


def require_field(data, field):
    if field not in data:
        raise ValidationError(f"Missing required field: {field}")
    return data[field]


def current_caller():
    return validate_string_field(request.headers.get('X-Caller'), 'X-Caller header', 64)


def ledger() -> PolicyLedger:
    return current_app.extensions['policy_ledger']


def serialize_event(event):
    data = event.to_dict()
    for key in ('coverage_amount', 'premium', 'amount'):
        if key in data:
            data[key] = format_units(data[key])
    return data


def serialize_policy(holder, policy):
    return {
        'policyholder': holder,
        'coverage_amount': format_units(policy.coverage_amount),
        'premium': format_units(policy.premium),
        'start_time': policy.start_time,
        'end_time': policy.end_time,
        'is_active': policy.is_active,
        'claim_count': policy.claim_count,
    }


def serialize_claim(holder, index, claim):
    return {
        'policyholder': holder,
        'claim_index': index,
        'amount': format_units(claim.amount),
        'description': claim.description,
        'evidence': claim.evidence,
        'timestamp': claim.timestamp,
        'status': claim.status.value,
    }


def events_response(events, status_code=200):
    return jsonify({'events': [serialize_event(e) for e in events]}), status_code


bp = Blueprint('ledger', __name__)


@bp.app_errorhandler(Exception)
def handle_error(error):
    if isinstance(error, HTTPException):
        return jsonify({"error": error.name, "message": error.description}), error.code
    elif isinstance(error, LedgerError):
        status_code = ERROR_STATUS.get(type(error), 400)
        return jsonify({"error": error.category, "message": error.reason}), status_code
    elif isinstance(error, ResourceNotFoundError):
        return jsonify({"error": "Resource not found", "message": str(error)}), 404
    elif isinstance(error, DatabaseError):
        logger.error("Database error: %s", error)
        return jsonify({"error": "Database error", "message": str(error)}), 500
    else:
        logger.exception("Unhandled error")
        return jsonify({"error": "Internal server error", "message": str(error)}), 500


@bp.route('/')
def home():
    return "Policy Ledger API"


@bp.route('/ledger', methods=['GET'])
def get_ledger():
    return jsonify({
        'owner': ledger().owner,
        'paused': ledger().paused,
        'balance': format_units(ledger().balance),
    }), 200


@bp.route('/accounts/<identity>', methods=['GET'])
def get_account(identity):
    return jsonify({
        'identity': identity,
        'balance': format_units(ledger().account_balance(identity)),
    }), 200


@bp.route('/events', methods=['GET'])
def get_events():
    return events_response(ledger().events())


@bp.route('/policies', methods=['POST'])
def purchase_policy():
    caller = current_caller()
    data = get_json_body()
    coverage = validate_amount(require_field(data, 'coverage_amount'), 'Coverage amount')
    value = validate_amount(require_field(data, 'value'), 'Value')
    return events_response(ledger().purchase_policy(caller, coverage, value), 201)


@bp.route('/policies/<holder>', methods=['GET'])
def get_policy(holder):
    policy = ledger().get_policy(holder)
    if not policy:
        raise ResourceNotFoundError("Policy not found")
    return jsonify(serialize_policy(holder, policy)), 200


@bp.route('/policies/<holder>/active', methods=['GET'])
def has_active_policy(holder):
    return jsonify({'policyholder': holder, 'active': ledger().has_active_policy(holder)}), 200


@bp.route('/claims', methods=['POST'])
def submit_claim():
    caller = current_caller()
    data = get_json_body()
    amount = validate_amount(require_field(data, 'amount'))
    description = validate_string_field(require_field(data, 'description'), 'Description', 1000)
    evidence = validate_string_field(require_field(data, 'evidence'), 'Evidence', 1000)
    return events_response(ledger().submit_claim(caller, amount, description, evidence), 201)


@bp.route('/claims/<holder>', methods=['GET'])
def get_claims(holder):
    claims = ledger().get_claims(holder)
    return jsonify([serialize_claim(holder, i, c) for i, c in enumerate(claims)]), 200


@bp.route('/claims/<holder>/count', methods=['GET'])
def get_claim_count(holder):
    return jsonify({'policyholder': holder, 'count': ledger().get_claim_count(holder)}), 200


@bp.route('/claims/<holder>/<int:claim_index>', methods=['GET'])
def get_claim(holder, claim_index):
    claim = ledger().get_claim(holder, claim_index)
    if not claim:
        raise ResourceNotFoundError("Claim not found")
    return jsonify(serialize_claim(holder, claim_index, claim)), 200


@bp.route('/claims/<holder>/<int:claim_index>/process', methods=['POST'])
def process_claim(holder, claim_index):
    caller = current_caller()
    status = validate_status(require_field(get_json_body(), 'status'))
    return events_response(ledger().process_claim(caller, holder, claim_index, status))


@bp.route('/deposits', methods=['POST'])
def deposit():
    caller = current_caller()
    value = validate_amount(require_field(get_json_body(), 'value'), 'Value')
    return events_response(ledger().deposit(caller, value), 201)


@bp.route('/admin/pause', methods=['POST'])
def pause():
    return events_response(ledger().pause(current_caller()))


@bp.route('/admin/unpause', methods=['POST'])
def unpause():
    return events_response(ledger().unpause(current_caller()))


@bp.route('/admin/withdraw', methods=['POST'])
def withdraw():
    return events_response(ledger().withdraw(current_caller()))


@bp.route('/admin/owner', methods=['POST'])
def transfer_ownership():
    caller = current_caller()
    new_owner = validate_string_field(require_field(get_json_body(), 'new_owner'), 'New owner', 64)
    return events_response(ledger().transfer_ownership(caller, new_owner))


def create_app(settings=None, clock=None, transfer=None):
    settings = settings or Settings.from_env()
    setup_logging(settings.log_level)

    app = Flask(__name__)
    CORS(app)
    app.config['SQLALCHEMY_DATABASE_URI'] = settings.database_url
    app.config['SQLALCHEMY_TRACK_MODIFICATIONS'] = False
    db.init_app(app)

    store = SqlStore(owner=settings.owner)
    with app.app_context():
        db.create_all()
        store.initialize()
    app.extensions['policy_ledger'] = PolicyLedger(
        store, config=settings.ledger, clock=clock, transfer=transfer)
    app.register_blueprint(bp)
    logger.info("Policy ledger ready, owner=%s", settings.owner)
    return app


if __name__ == '__main__':
    create_app().run()
