"""Named failures for parley operations.

Every operation either returns the committed entity or raises one of these.
The HTTP layer maps ``status_code`` onto the response; nothing else inspects
it. ``TransientStoreFailure`` is the only retryable failure.
"""


class ParleyError(Exception):
    """Base class for all parley failures."""

    status_code = 400
    retryable = False

    def __init__(self, message: str | None = None):
        super().__init__(message or self.__class__.__doc__ or self.__class__.__name__)

    @property
    def code(self) -> str:
        return self.__class__.__name__


class ParleyConfigError(ParleyError):
    """Invalid parley configuration."""

    status_code = 500


class NotParticipant(ParleyError):
    """Caller is not an active participant of the room."""

    status_code = 403


class Forbidden(ParleyError):
    """Caller lacks the role required for this operation."""

    status_code = 403


class InvalidRole(Forbidden):
    """Unknown or unsupported participant role."""

    status_code = 400


class InvalidKind(ParleyError):
    """Room kind is not supported for this call."""

    status_code = 400


class RoomNotFound(ParleyError):
    """Room does not exist."""

    status_code = 404


class RoomArchived(ParleyError):
    """Room is archived."""

    status_code = 409


class RoomDeleted(ParleyError):
    """Room has been deleted."""

    status_code = 410


class InvitationNotFound(ParleyError):
    """Invitation does not exist."""

    status_code = 404


class InvitationExpired(ParleyError):
    """Invitation has expired."""

    status_code = 410


class InvitationAlreadyResolved(ParleyError):
    """Invitation is no longer pending."""

    status_code = 409


class MessageNotFound(ParleyError):
    """Message does not exist."""

    status_code = 404


class EncryptionNotInitialized(ParleyError):
    """User has not initialized encryption."""

    status_code = 412


class StaleKeyEpoch(ParleyError):
    """Ciphertext was produced under a room key epoch that is no longer current."""

    status_code = 409


class JobNotFound(ParleyError):
    """Background job does not exist."""

    status_code = 404


class TransientStoreFailure(ParleyError):
    """Storage is temporarily unavailable; retry the request."""

    status_code = 503
    retryable = True


class Unauthenticated(ParleyError):
    """Missing or invalid caller credentials."""

    status_code = 401
