"""Error taxonomy shared by the scheduler, orchestrator and import pipeline.

Each error carries the HTTP status the API layer responds with; the
exception handler in ``backend.main`` does the translation.
"""


class FlashdeckError(Exception):
    """Base class for domain errors."""

    status_code: int = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class NotFound(FlashdeckError):
    """A referenced card, deck, review state or import task does not exist."""

    status_code = 404


class InvalidArgument(FlashdeckError):
    """Malformed grade, missing archive member, unparseable model JSON."""

    status_code = 422


class ResourceExhaustion(FlashdeckError):
    """Archive too large to extract or out of memory while extracting."""

    status_code = 413


class TransientIO(FlashdeckError):
    """Filesystem or database failure during extraction or ingest."""

    status_code = 503


class Inconsistent(FlashdeckError):
    """A record references a note, model or template that is missing."""

    status_code = 409
