"""
Error taxonomy shared by every core operation.

Each error carries a stable ``kind`` (surfaced to API clients) and the HTTP
status the API layer maps it to.  Best-effort side effects never raise these;
they log and move on.
"""


class DispatchError(Exception):
    kind = "error"
    status_code = 400

    def __init__(self, message: str = ""):
        self.message = message or (self.__doc__ or self.kind).strip()
        super().__init__(self.message)


class ValidationError(DispatchError):
    """Missing or malformed geo / service fields."""

    kind = "validation_error"
    status_code = 422


class NotFound(DispatchError):
    """Unknown booking, offer, zone or provider."""

    kind = "not_found"
    status_code = 404


class InvalidStateTransition(DispatchError):
    """Operation is illegal for the booking's current status."""

    kind = "invalid_state_transition"
    status_code = 409


class Conflict(DispatchError):
    """Lost a race or the target was already resolved."""

    kind = "conflict"
    status_code = 409


class OfferExpired(Conflict):
    """The offer's acceptance window has closed."""

    kind = "expired"


class Unauthorized(DispatchError):
    """Acting user may not perform this operation."""

    kind = "unauthorized"
    status_code = 403


class UpstreamUnavailable(DispatchError):
    """A required upstream collaborator failed."""

    kind = "upstream_unavailable"
    status_code = 503
