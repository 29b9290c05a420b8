"""Error taxonomy shared by the stores, clients and retrieval pipeline.

Each error carries a ``user_message`` that request handlers can show as-is;
the exception text itself is for logs.
"""


class MemoriaError(Exception):
    """Base class for every error raised by the memoria core."""

    user_message = "Something went wrong. Please try again."


class EmbeddingError(MemoriaError):
    """The embedding call failed or returned an empty vector."""

    user_message = "Couldn't read that message right now. Please try again."


class CompletionError(MemoriaError):
    """All completion attempts failed.

    ``last_error`` holds the final upstream failure, if there was one.
    """

    user_message = "The assistant is unavailable right now. Please try again shortly."

    def __init__(self, message: str, last_error: BaseException | None = None) -> None:
        super().__init__(message)
        self.last_error = last_error


class VectorIndexError(MemoriaError):
    """An upsert, query or delete against the vector backend failed."""


class NotFoundError(MemoriaError):
    """A note, tag or conversation is missing or belongs to another owner."""

    user_message = "That item could not be found."


class UnauthorizedError(MemoriaError):
    """No identity could be resolved for the request."""

    user_message = "Please sign in to continue."


class PromptTemplateError(MemoriaError):
    """A prompt template is missing or uses an unknown placeholder."""
