# errors.py
"""
Typed errors raised by the service modules.

Routes never build error responses by hand for these; the handlers in
app.py turn any AppError into the standard envelope
{"success": false, "error": ..., "code": ...}.
"""


class AppError(Exception):
    status = 500
    code = "INTERNAL_ERROR"

    def __init__(self, message, code=None, status=None, fields=None, **extra):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        if status:
            self.status = status
        self.fields = fields or {}
        self.extra = extra

    def to_dict(self):
        out = {"success": False, "error": self.message, "code": self.code}
        if self.fields:
            out["fields"] = self.fields
        for k, v in self.extra.items():
            if v is not None:
                out[k] = v
        return out


class ValidationError(AppError):
    status = 400
    code = "VALIDATION_ERROR"


class AuthenticationError(AppError):
    status = 401
    code = "AUTH_REQUIRED"


class AuthorizationError(AppError):
    status = 403
    code = "FORBIDDEN"


class NotFoundError(AppError):
    status = 404
    code = "NOT_FOUND"


class ConflictError(AppError):
    status = 409
    code = "CONFLICT"


class GatewayError(AppError):
    status = 402
    code = "PAYMENT_FAILED"


class StorageError(AppError):
    status = 502
    code = "STORAGE_FAILED"


class TransientError(AppError):
    status = 503
    code = "DB_UNAVAILABLE"


class ConfigError(Exception):
    """Raised at boot when the environment is not usable."""


def require_fields(data, *names):
    missing = {}
    for n in names:
        v = data.get(n)
        if v is None or (isinstance(v, str) and not v.strip()):
            missing[n] = "required"
    if missing:
        raise ValidationError(f"Missing required field(s): {', '.join(missing)}", fields=missing)
