"""Exception taxonomy of the payment subsystem.

Each error carries an HTTP status hint; the API layer maps it to a response,
the core never imports FastAPI.
"""


class PaymentError(Exception):
    status_code = 400

    def __init__(self, message: str = "", **details):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict:
        data = {"success": False, "message": self.message, "error": type(self).__name__}
        if self.details:
            data["details"] = self.details
        return data


class ValidationError(PaymentError):
    status_code = 400


class ChannelUnavailable(PaymentError):
    status_code = 409


class ChannelNotFound(PaymentError):
    status_code = 404


class PluginNotFound(PaymentError):
    status_code = 404


class PluginInactive(PaymentError):
    status_code = 409


class ProviderError(PaymentError):
    status_code = 502


class UnsupportedOperation(PaymentError):
    status_code = 501


class SignatureInvalid(PaymentError):
    status_code = 400


class OrderNotFound(PaymentError):
    status_code = 404


class InvalidStateTransition(PaymentError):
    status_code = 409


class ConcurrentModification(PaymentError):
    status_code = 409
