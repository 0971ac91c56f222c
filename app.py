import os
import secrets
import socket
import sys
from contextlib import closing
from datetime import timedelta
from functools import wraps

from dotenv import load_dotenv
from flask import Flask, g, jsonify, request
from flask_cors import CORS
from werkzeug.exceptions import HTTPException

from database import get_db_connection, init_db
from services.assembler import Assembler
from services.documents import PartialDocument
from services.errors import ApiError, ValidationError
from services.identity import login_user, principal_from_header, register_user
from services.reconciler import Reconciler

# Load environment variables from .env file
load_dotenv()

# --- App Initialization ---
DEFAULT_PORT = 3001
MAX_REQUEST_BYTES = 10 * 1024 * 1024

app = Flask(__name__)
app.json.sort_keys = False
app.config['MAX_CONTENT_LENGTH'] = MAX_REQUEST_BYTES
app.config['TOKEN_TTL'] = timedelta(hours=float(os.getenv('TOKEN_TTL_HOURS', '8')))
app.config['JWT_SECRET'] = os.getenv('JWT_SECRET') or ''
if not app.config['JWT_SECRET']:
    app.config['JWT_SECRET'] = secrets.token_urlsafe(48)
    app.logger.warning('JWT_SECRET is not set; issued tokens will not survive a restart')

_cors_origins = [origin.strip() for origin in os.getenv('CORS_ALLOW_ORIGINS', '').split(',') if origin.strip()]
CORS(app, resources={r"/api/*": {"origins": _cors_origins or "*"}})

_db_bootstrapped = False


@app.before_request
def _ensure_database_initialized():
    """Guarantee the SQLite schema exists before serving any request."""
    global _db_bootstrapped
    if _db_bootstrapped:
        return
    try:
        init_db()
        _db_bootstrapped = True
    except Exception as exc:  # pragma: no cover
        app.logger.exception("Failed to initialize database before request: %s", exc)


# --- Error handling ---

@app.errorhandler(ApiError)
def _handle_api_error(error: ApiError):
    if error.status >= 500:
        app.logger.error("Request to %s failed: %s", request.path, error, exc_info=error.__cause__)
    return jsonify(error.to_dict()), error.status


@app.errorhandler(HTTPException)
def _handle_http_error(error: HTTPException):
    return jsonify({"message": error.description}), error.code


@app.errorhandler(Exception)
def _handle_unexpected_error(error: Exception):
    app.logger.exception("Unhandled error for %s %s: %s", request.method, request.path, error)
    return jsonify({"message": "Unexpected server error."}), 500


def _json_body():
    payload = request.get_json(silent=True)
    if payload is None:
        raise ValidationError("Request must be JSON")
    return payload


def token_required(func):
    """Resolve the bearer token into ``g.principal`` or answer 401."""
    @wraps(func)
    def wrapper(*args, **kwargs):
        g.principal = principal_from_header(
            request.headers.get('Authorization'), app.config['JWT_SECRET']
        )
        return func(*args, **kwargs)

    return wrapper


# --- Routes ---

@app.route('/')
def home():
    return "Social Balance API is running."


@app.route('/api/auth/register', methods=['POST'])
def register():
    payload = _json_body()
    with closing(get_db_connection()) as conn:
        result = register_user(conn, payload)
    return jsonify(result), 201


@app.route('/api/auth/login', methods=['POST'])
def login():
    payload = _json_body()
    with closing(get_db_connection()) as conn:
        result = login_user(conn, payload, app.config['JWT_SECRET'], app.config['TOKEN_TTL'])
    app.logger.info("User %s logged in", result['user'].get('id'))
    return jsonify(result)


@app.route('/api/data/app-data', methods=['GET'])
@token_required
def get_app_data():
    return jsonify(Assembler(get_db_connection).get_app_data())


@app.route('/api/data/app-data', methods=['POST'])
@token_required
def save_app_data():
    document = PartialDocument.from_payload(_json_body())
    result = Reconciler(get_db_connection).save(document, g.principal)
    return jsonify({"message": result["message"]}), 200


def is_port_in_use(port):
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        return s.connect_ex(('127.0.0.1', port)) == 0


def main():
    port = int(os.getenv('PORT', DEFAULT_PORT))
    if is_port_in_use(port):
        print(f"Port {port} is already in use.")
        sys.exit(1)
    print(f"Server running on port {port}")
    app.run(host='0.0.0.0', port=port, debug=False)


if __name__ == '__main__':
    init_db()
    main()
