"""Error taxonomy shared by the order and payment components.

Each error carries the HTTP status the API layer answers with. Gateway
callbacks never let these escape: adapters translate them into the
provider's own acknowledgement shape.
"""


class OrderPayError(Exception):
    status_code = 500
    code = "internal_error"
    retryable = False

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFound(OrderPayError):
    status_code = 404
    code = "not_found"


class InvalidState(OrderPayError):
    status_code = 409
    code = "invalid_state"


class InvalidTransition(InvalidState):
    code = "invalid_transition"


class Conflict(OrderPayError):
    status_code = 409
    code = "conflict"


class InvalidArgument(OrderPayError):
    status_code = 400
    code = "invalid_argument"


class SignatureInvalid(OrderPayError):
    status_code = 401
    code = "signature_invalid"


class UpstreamFailure(OrderPayError):
    status_code = 502
    code = "upstream_failure"
    retryable = True
