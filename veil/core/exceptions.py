from fastapi import HTTPException, status


class VeilError(Exception):
    """Base exception for Veil."""

    retryable: bool = False

    def __init__(self, message: str, code: str | None = None):
        self.message = message
        self.code = code
        super().__init__(message)


class InvalidInputError(VeilError):
    """Input shape or bounds rejected before any state change."""

    pass


class AuthorizationError(VeilError):
    """Caller is not allowed to perform the action."""

    pass


class NotFoundError(VeilError):
    """Market, bet or computation does not exist."""

    pass


class StatePreconditionError(VeilError):
    """Market or bet status does not allow the action."""

    pass


class AggregationInFlightError(StatePreconditionError):
    """An aggregate-mutating computation is already outstanding for the market."""

    retryable = True


class BetAlreadyClaimedError(StatePreconditionError):
    """Bet has already been claimed or refunded."""

    pass


class ComputationError(VeilError):
    """A confidential computation result cannot be applied."""

    pass


class ComputationVerificationError(ComputationError):
    """Output signature does not verify against the expected cluster."""

    pass


class ComputationReplayError(ComputationError):
    """Output for a computation that was already applied."""

    pass


class ComputationOutputError(ComputationError):
    """Output payload does not decode for the circuit."""

    pass


class StaleAggregateError(ComputationError):
    """Aggregate nonce moved since the computation was queued."""

    pass


class ArithmeticOverflowError(VeilError):
    """Accounting arithmetic left the unsigned 64-bit domain."""

    pass


class ClaimMismatchError(VeilError):
    """Claimed stake does not match the recorded stake."""

    pass


# HTTP Exceptions
def not_found(detail: str = "Resource not found") -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=detail)


def bad_request(detail: str = "Bad request") -> HTTPException:
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=detail)


def unauthorized(detail: str = "Unauthorized") -> HTTPException:
    return HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=detail)


def forbidden(detail: str = "Forbidden") -> HTTPException:
    return HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=detail)


def conflict(detail: str = "Conflict") -> HTTPException:
    return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=detail)


def unprocessable(detail: str = "Unprocessable") -> HTTPException:
    return HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=detail)


def to_http_exception(error: VeilError) -> HTTPException:
    """Map a domain error onto the HTTP status the API reports."""
    if isinstance(error, NotFoundError):
        return not_found(error.message)
    if isinstance(error, InvalidInputError):
        return bad_request(error.message)
    if isinstance(error, AuthorizationError):
        return forbidden(error.message)
    if isinstance(error, StatePreconditionError):
        return conflict(error.message)
    if isinstance(error, ClaimMismatchError):
        return unprocessable(error.message)
    if isinstance(error, ComputationVerificationError):
        return unauthorized(error.message)
    if isinstance(error, ComputationError):
        return conflict(error.message)
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=error.message
    )
