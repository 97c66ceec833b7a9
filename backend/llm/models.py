"""Value objects passed between the prompt builder, backends and parsers."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from backend.errors import BackendError, ErrorCode, InvalidBackendError

_SELECTOR_ALIASES = {
    "hosted": "hosted",
    "google": "hosted",
    "gemini": "hosted",
    "local": "local",
    "ollama": "local",
}


class BackendSelector(str, Enum):
    """The two interchangeable LLM backends."""

    HOSTED = "hosted"
    LOCAL = "local"

    @classmethod
    def coerce(cls, value: BackendSelector | str) -> BackendSelector:
        """Resolve a selector or one of its accepted spellings, else raise."""

        if isinstance(value, BackendSelector):
            return value
        if isinstance(value, str):
            canonical = _SELECTOR_ALIASES.get(value.strip().lower())
            if canonical is not None:
                return cls(canonical)
        raise InvalidBackendError(value)


class GenerationConfig(BaseModel):
    """Sampling and budget parameters for one backend call."""

    model_config = ConfigDict(frozen=True, protected_namespaces=())

    model_id: str
    temperature: float = Field(default=0.0, ge=0.0, le=1.0)
    max_output_tokens: int = Field(default=10048, gt=0)
    seed: int = 123456
    options: dict[str, int | float | str] = Field(default_factory=dict)


@dataclass(frozen=True)
class PromptRequest:
    text: str
    config: GenerationConfig
    template_kind: str = "custom"


class ResponseStatus(str, Enum):
    SUCCESS = "success"
    BACKEND_ERROR = "backend_error"


@dataclass(frozen=True)
class BackendFailure:
    code: ErrorCode
    message: str
    status_code: int | None = None


@dataclass(frozen=True)
class RawResponse:
    """Text returned by a backend, or the classified reason it failed."""

    text: str | None
    status: ResponseStatus = ResponseStatus.SUCCESS
    error: BackendFailure | None = None
    backend: str | None = None

    @classmethod
    def success(cls, text: str, *, backend: str | None = None) -> RawResponse:
        return cls(text=text, backend=backend)

    @classmethod
    def failure(
        cls,
        code: ErrorCode,
        message: str,
        *,
        backend: str | None = None,
        status_code: int | None = None,
    ) -> RawResponse:
        return cls(
            text=None,
            status=ResponseStatus.BACKEND_ERROR,
            error=BackendFailure(code=code, message=message, status_code=status_code),
            backend=backend,
        )

    @property
    def ok(self) -> bool:
        return self.status is ResponseStatus.SUCCESS

    def raise_for_status(self) -> RawResponse:
        """Raise :class:`BackendError` if this response carries a backend error."""

        if self.ok:
            return self
        failure = self.error or BackendFailure(ErrorCode.EMPTY_RESPONSE, "unknown backend failure")
        raise BackendError(
            failure.code,
            failure.message,
            backend=self.backend,
            status_code=failure.status_code,
        )


@dataclass(frozen=True)
class AnnotationRecord:
    cluster_id: str
    label: str
    reasoning: str


@dataclass(frozen=True)
class NetworkTriple:
    subject_gene: str
    relation: str
    object: str


@dataclass(frozen=True)
class IntegerRecommendation:
    """A number extracted from a free-text answer, with the answer itself."""

    value: int
    text: str


@dataclass(frozen=True)
class NetworkTable:
    """Triples parsed from a pipe-delimited table plus the count of rejected rows."""

    triples: list[NetworkTriple] = field(default_factory=list)
    skipped: int = 0


__all__ = [
    "AnnotationRecord",
    "BackendFailure",
    "BackendSelector",
    "GenerationConfig",
    "IntegerRecommendation",
    "NetworkTable",
    "NetworkTriple",
    "PromptRequest",
    "RawResponse",
    "ResponseStatus",
]
