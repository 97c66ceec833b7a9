"""Error taxonomy shared by the LLM layer and the analysis pipelines."""

from __future__ import annotations

from collections.abc import Iterable
from enum import Enum


class ErrorCode(str, Enum):
    """Classification of a failed backend call."""

    CONNECTION = "CONNECTION"
    EMPTY_RESPONSE = "EMPTY_RESPONSE"
    HTTP_STATUS = "HTTP_STATUS"
    TIMEOUT = "TIMEOUT"


class SCassistError(RuntimeError):
    """Base class for every fatal error raised by SCassist."""


class InvalidBackendError(SCassistError, ValueError):
    """Raised when a backend selector is not one of the supported backends."""

    def __init__(self, value: object) -> None:
        self.value = value
        super().__init__(
            f"Invalid LLM backend {value!r}. Please specify 'hosted' (google) or 'local' (ollama)."
        )


class PreconditionError(SCassistError):
    """Raised when an upstream computation is missing from the data container."""

    def __init__(self, precondition: str, message: str) -> None:
        self.precondition = precondition
        super().__init__(message)


class BackendError(SCassistError):
    """Raised when a backend call failed; carries the classified error code."""

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        *,
        backend: str | None = None,
        status_code: int | None = None,
    ) -> None:
        self.code = code
        self.message = message
        self.backend = backend
        self.status_code = status_code
        where = f" from {backend} backend" if backend else ""
        super().__init__(f"LLM call failed{where} [{code.value}]: {message}")


class CredentialError(SCassistError):
    """Raised when the API key file is missing or empty."""


class EmptyTextError(SCassistError):
    """Raised when a backend response has no usable text."""


class MissingFieldError(SCassistError, KeyError):
    """Raised when a prompt template is rendered without a required field."""

    def __init__(self, template_kind: str, missing: Iterable[str]) -> None:
        self.template_kind = template_kind
        self.missing = sorted(missing)
        super().__init__(
            f"Prompt template '{template_kind}' is missing required field(s): "
            f"{', '.join(self.missing)}"
        )

    def __str__(self) -> str:
        return str(self.args[0])


class AnnotationParseError(SCassistError):
    """Raised when an annotation response does not follow the colon-delimited format."""

    def __init__(self, message: str, *, bad_lines: list[str] | None = None) -> None:
        self.bad_lines = bad_lines or []
        super().__init__(message)


class UnmatchedClusterError(SCassistError):
    """Raised when the model returns cluster ids that do not exist in the dataset."""

    def __init__(self, unmatched: Iterable[str], cluster_key: str) -> None:
        self.unmatched = sorted(unmatched)
        self.cluster_key = cluster_key
        super().__init__(
            f"Annotated cluster id(s) {', '.join(self.unmatched)} not found in "
            f"adata.obs['{cluster_key}']."
        )


class EnrichmentAbortedError(SCassistError):
    """Raised when a stage of the enrichment run fails; the run produces no output."""

    def __init__(self, stage: str, source: str | None, reason: str) -> None:
        self.stage = stage
        self.source = source
        self.reason = reason
        where = f" ({source})" if source else ""
        super().__init__(f"Enrichment run aborted at {stage}{where}: {reason}")


class ParseLeniencyWarning(UserWarning):
    """Emitted when a lenient parser falls back to a sentinel value."""


class ClusterIdMismatchWarning(UserWarning):
    """Emitted when an annotation reply names a different cluster than the one asked about."""


__all__ = [
    "AnnotationParseError",
    "BackendError",
    "ClusterIdMismatchWarning",
    "CredentialError",
    "EmptyTextError",
    "EnrichmentAbortedError",
    "ErrorCode",
    "InvalidBackendError",
    "MissingFieldError",
    "ParseLeniencyWarning",
    "PreconditionError",
    "SCassistError",
    "UnmatchedClusterError",
]
