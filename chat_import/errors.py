"""
Exceptions that end an import request.

Each carries the HTTP status the API layer returns and a caller-facing
detail message. Degraded conditions (media upload, PDF text, embedding and
per-batch write failures) never raise these; they are absorbed into the
import statistics instead.
"""


class ChatImportError(Exception):
    """Base class for fatal-to-request import failures."""

    status_code = 422

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail


class MissingInputError(ChatImportError):
    """A required form field was missing or blank."""

    status_code = 400


class EmptyTranscriptError(ChatImportError):
    """The transcript decoded to nothing but whitespace."""

    status_code = 400


class ArchiveReadError(ChatImportError):
    """The zip archive is corrupt or violates the archive safety limits."""


class TranscriptNotFoundError(ChatImportError):
    """The zip archive holds no recognizable chat transcript."""


class NoMessagesParsedError(ChatImportError):
    """The transcript produced zero messages under either grammar."""
