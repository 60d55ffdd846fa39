# Overview: Request decorators for API routes.

from functools import wraps
from flask import request, jsonify, current_app

from .errors import OperationsError, ValidationError
from .extensions import db


def json_body(required: bool = True):
    """
    Parse the JSON request body and pass it as `payload`.

    Returns 400 if the body is missing (when required) or is not an object.
    """
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            payload = request.get_json(silent=True)
            if payload is None:
                if required:
                    return jsonify({"error": "JSON body required"}), 400
                payload = {}
            if not isinstance(payload, dict):
                return jsonify({"error": "Invalid JSON payload"}), 400
            return f(*args, payload=payload, **kwargs)
        return decorated_function
    return decorator


def handle_errors(action: str):
    """
    Map failures of a route to JSON responses.

    OperationsError subclasses propagate to the app-level handler (status
    code and context from the error). Anything else is logged with a
    traceback and answered with a generic 500.
    """
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            try:
                return f(*args, **kwargs)
            except OperationsError:
                raise
            except KeyError as e:
                db.session.rollback()
                raise ValidationError(f"Missing required field: {e}")
            except Exception:
                db.session.rollback()
                current_app.logger.exception("Failed to %s", action)
                return jsonify({"error": f"Failed to {action}"}), 500
        return decorated_function
    return decorator
