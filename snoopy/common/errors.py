from typing import Any


class SnoopyError(Exception):
    """Base error of the evidence pipeline.

    Args:
        message: Human readable description, ends up in the task comment.
        step: Pipeline step that raised the error (e.g. "siblings", "consensus").
        context: Structured details, e.g. query id or assignment id.
    """

    def __init__(self, message: str, step: str | None = None, context: dict[str, Any] | None = None):
        self.message = message
        self.step = step
        self.context = context or {}
        super().__init__(self.message)

    def __str__(self) -> str:
        text = self.message
        if self.context:
            details = ", ".join(f"{key}={value}" for key, value in self.context.items())
            text = f"{text} ({details})"
        if self.step:
            text = f"[{self.step}] {text}"
        return text


class TransportError(SnoopyError):
    """Network or file I/O failure talking to the store, chain, prover or snapshot source."""


class SnapshotFetchError(TransportError):
    pass


class DecodeError(SnoopyError):
    """Malformed snapshot, store row or proof payload."""


class DataNotFoundError(SnoopyError):
    pass


class OriginalQueryNotFound(DataNotFoundError):
    pass


class NoQuorum(DataNotFoundError):
    pass


class VerificationError(SnoopyError):
    pass


class SignatureInvalid(VerificationError):
    pass


class NotAssignedError(VerificationError):
    pass


class TrieInsertError(SnoopyError):
    pass


class InsufficientEvidenceError(SnoopyError):
    pass


class InvalidTransitionError(SnoopyError):
    pass
