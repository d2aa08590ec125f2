"""Typed failures raised inside the meme pipeline.

Every kind carries enough detail for logging and a short `user_message()`
the command layer can reply with. Only `UserFacingError` leaves the
orchestrator.
"""

from typing import Any, Iterable, Literal, Optional

BackendStage = Literal[
    "version", "list", "info", "upload", "generate", "fetch", "preview", "tool"
]
CountKind = Literal["image", "text"]


class MemeError(Exception):
    """Base class for pipeline failures."""

    # user-correctable failures get a 4xx at the HTTP layer
    user_correctable = False

    def user_message(self) -> str:
        return str(self)


class TemplateNotFound(MemeError):
    user_correctable = True

    def __init__(self, query: str):
        self.query = query
        super().__init__(f"No template matches {query!r}")

    def user_message(self) -> str:
        return f"Template not found: {self.query}"


class BackendError(MemeError):
    """A call to the rendering service failed (transport, timeout or status)."""

    def __init__(
        self,
        stage: BackendStage,
        message: str,
        status_code: Optional[int] = None,
    ):
        self.stage = stage
        self.message = message
        self.status_code = status_code
        super().__init__(f"[{stage}] {message}")

    def user_message(self) -> str:
        if self.stage == "generate":
            return "Meme generation failed, please try again later"
        if self.stage == "tool":
            return "Image processing failed, please try again later"
        return "The meme service is unavailable right now"


class MalformedBackendResponse(BackendError):
    """The rendering service answered, but not in the expected shape."""

    def user_message(self) -> str:
        return "The meme service returned an unexpected response"


class ToolsUnavailable(BackendError):
    """The connected rendering service has no image tools."""

    def __init__(self, variant: str):
        super().__init__("tool", f"{variant} backend has no image tools")

    def user_message(self) -> str:
        return "Image tools are not available on this meme service"


class UnknownImageOperation(MemeError):
    user_correctable = True

    def __init__(self, operation: str, known: Iterable[str]):
        self.operation = operation
        self.known = sorted(known)
        super().__init__(f"Unknown image operation {operation!r}")

    def user_message(self) -> str:
        return f"Unknown image operation {self.operation}, use one of: " + ", ".join(self.known)


class CountMismatch(MemeError):
    user_correctable = True

    def __init__(
        self,
        kind: CountKind,
        min: int,
        max: Optional[int],
        actual: int,
    ):
        self.kind = kind
        self.min = min
        self.max = max
        self.actual = actual
        super().__init__(
            f"{kind} count {actual} outside [{min}, {'inf' if max is None else max}]"
        )

    def required_range(self) -> str:
        if self.max is None:
            return f"at least {self.min}"
        if self.min == self.max:
            return f"exactly {self.min}"
        return f"{self.min}-{self.max}"

    def user_message(self) -> str:
        noun = "images" if self.kind == "image" else "texts"
        return f"This template needs {self.required_range()} {noun}, got {self.actual}"


class ImageFetchError(MemeError):
    def __init__(self, reference: Any, cause: str):
        self.reference = reference
        self.cause = cause
        super().__init__(f"Could not fetch {reference}: {cause}")

    def user_message(self) -> str:
        return "Could not download one of the images"


class InvalidOptionValue(MemeError):
    user_correctable = True

    def __init__(self, name: str, value: Any, expected: str):
        self.name = name
        self.value = value
        self.expected = expected
        super().__init__(f"Option {name}={value!r} is not a valid {expected}")

    def user_message(self) -> str:
        return f"Invalid value for -{self.name}: expected {self.expected}"


class UserFacingError(Exception):
    """The one failure the orchestrator hands back to the command layer."""

    def __init__(self, message: str, cause: Optional[Exception] = None):
        self.message = message
        self.cause = cause
        super().__init__(message)

    @property
    def user_correctable(self) -> bool:
        return isinstance(self.cause, MemeError) and self.cause.user_correctable

    @property
    def not_found(self) -> bool:
        return isinstance(self.cause, TemplateNotFound)
