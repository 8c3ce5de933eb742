"""
Error taxonomy shared by the HTTP paths and the message consumers.

Synchronous errors carry the HTTP status they map to. The consumer host uses
the class to decide between dead-lettering at once (DeserializationError) and
requeueing with a bounded retry budget (everything else).
"""


class BookshopError(Exception):
    """Base class for domain errors"""

    status_code: int = 500

    def __init__(self, message: str, **context):
        super().__init__(message)
        self.message = message
        self.context = context


class ValidationError(BookshopError):
    """Bad input, e.g. a non-positive quantity"""

    status_code = 400


class NotFoundError(BookshopError):
    """A referenced book, order or payment does not exist"""

    status_code = 404


class ConflictError(BookshopError):
    """The request conflicts with current state (insufficient stock)"""

    status_code = 409


class ServiceUnavailableError(BookshopError):
    """A collaborator service could not be reached"""

    status_code = 503


class PersistenceError(BookshopError):
    """The backing store rejected or failed a write"""

    status_code = 500


class DeserializationError(BookshopError):
    """A message body does not match its queue's contract (poison message)"""

    status_code = 422
