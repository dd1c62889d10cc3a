from __future__ import annotations

from typing import Any, Dict, Optional

from flask import jsonify
from sqlalchemy.exc import SQLAlchemyError

from extensions import db


class PaymentError(Exception):
    """Base for errors that map onto an HTTP response."""

    status_code = 400

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        # Operator-facing identifiers (transaction id, parent/student ids); never credentials
        self.context = context

    def to_dict(self) -> Dict[str, Any]:
        return {"status": "error", "message": self.message}


class ValidationError(PaymentError):
    status_code = 400


class NotFound(PaymentError):
    status_code = 404


class Forbidden(PaymentError):
    status_code = 403


class LoginRequired(PaymentError):
    status_code = 401


class InvalidSignature(PaymentError):
    status_code = 401


class Unauthorized(PaymentError):
    """Payment for the requested resource is absent or stale."""

    status_code = 402

    def __init__(self, message: str, reason: str, **context: Any):
        super().__init__(message, **context)
        self.reason = reason

    def to_dict(self) -> Dict[str, Any]:
        out = super().to_dict()
        out["reason"] = self.reason
        return out


class UnsupportedProvider(PaymentError):
    status_code = 400


class GatewayUnavailable(PaymentError):
    """Transport trouble with the provider; the call is safe to retry."""

    status_code = 503

    def to_dict(self) -> Dict[str, Any]:
        out = super().to_dict()
        out["retryable"] = True
        return out


class ProviderRejected(PaymentError):
    """The provider answered but refused the request."""

    status_code = 502


def register_error_handlers(app) -> None:
    @app.errorhandler(PaymentError)
    def _payment_error(err: PaymentError):
        level = app.logger.warning if err.status_code >= 500 else app.logger.info
        level("%s: %s %s", type(err).__name__, err.message, _format_context(err.context))
        return jsonify(err.to_dict()), err.status_code

    @app.errorhandler(SQLAlchemyError)
    def _database_error(err: SQLAlchemyError):
        db.session.rollback()
        app.logger.exception("Database error while handling request")
        # 503 keeps webhook senders retrying a write that failed locally
        return jsonify({"status": "error", "message": "Temporary storage failure", "retryable": True}), 503


def _format_context(context: Optional[Dict[str, Any]]) -> str:
    if not context:
        return ""
    return " ".join(f"{k}={v}" for k, v in sorted(context.items()))
