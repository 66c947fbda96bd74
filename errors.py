# errors.py - API error taxonomy and JSON error handlers
from flask import current_app, jsonify
from werkzeug.exceptions import HTTPException

from extensions import db


class ApiError(Exception):
    status_code = 400
    message = "Bad request."

    def __init__(self, message=None):
        super().__init__(message or self.message)
        if message:
            self.message = message

    def to_dict(self):
        return {"message": self.message}


class ValidationError(ApiError):
    """Field-keyed validation failure, raised before anything is written."""

    status_code = 422
    message = "The given data was invalid."

    def __init__(self, errors, message=None):
        super().__init__(message)
        self.errors = errors

    def to_dict(self):
        return {"message": self.message, "errors": self.errors}


class AuthorizationError(ApiError):
    status_code = 403
    message = "This action is unauthorized."


class NotFoundError(ApiError):
    status_code = 404
    message = "Not found."


_HTTP_MESSAGES = {
    401: "Unauthenticated.",
    404: "Not found.",
    405: "Method not allowed.",
}


def register_error_handlers(app):
    @app.errorhandler(ApiError)
    def _api_error(e):
        return jsonify(e.to_dict()), e.status_code

    @app.errorhandler(HTTPException)
    def _http_error(e):
        return jsonify({"message": _HTTP_MESSAGES.get(e.code, e.description)}), e.code

    @app.errorhandler(Exception)
    def _server_error(e):
        db.session.rollback()
        current_app.logger.exception("[API] unhandled error: %s", e)
        return jsonify({"message": "Server error."}), 500
