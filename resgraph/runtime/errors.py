"""Error taxonomy of the resource graph runtime.

NotFoundError            -- the resource or field legitimately does not exist.
                            Expected and cacheable.
AmbiguousMatchError      -- a lookup that must yield at most one entry
                            yielded several.  Hard error.
TransientIOError         -- an underlying vendor call failed or timed out.
                            Cached with a TTL on transient fields.
MisconfiguredArgumentsError -- constructor arguments are of the wrong type or
                            insufficient to resolve identity.  Never cached.
NotReadyError            -- the value is pending on an asynchronous source;
                            only raised by the non-blocking read path.
"""

from __future__ import annotations


class ResourceError(Exception):
    """Base class for every error raised by the runtime."""

    #: Whether a field computation failing with this error may be cached.
    cacheable: bool = True


class NotFoundError(ResourceError):
    """The requested resource or field does not exist."""

    def __init__(self, message: str = "not found", *, type_name: str = "", key: str = "") -> None:
        super().__init__(message)
        self.type_name = type_name
        self.key = key


class AmbiguousMatchError(ResourceError):
    """More than one candidate satisfied a lookup documented to return one."""

    def __init__(self, message: str, *, candidates: int = 0) -> None:
        super().__init__(message)
        self.candidates = candidates


class TransientIOError(ResourceError):
    """A vendor call (network, filesystem) failed; may succeed later."""

    def __init__(self, message: str, *, cause: BaseException | None = None) -> None:
        super().__init__(message)
        self.cause = cause


class MisconfiguredArgumentsError(ResourceError):
    """Constructor arguments are invalid or cannot resolve an identity."""

    cacheable = False


class UnknownResourceError(MisconfiguredArgumentsError):
    """No resource type is registered under the requested name."""

    def __init__(self, type_name: str) -> None:
        super().__init__(f"cannot find resource '{type_name}'")
        self.type_name = type_name


class UnknownFieldError(MisconfiguredArgumentsError):
    """The resource type declares no field with the requested name."""

    def __init__(self, type_name: str, field: str) -> None:
        super().__init__(f"resource '{type_name}' has no field '{field}'")
        self.type_name = type_name
        self.field = field


class NotReadyError(ResourceError):
    """The field value depends on a pending asynchronous computation."""

    cacheable = False

    def __init__(self, field_uid: str = "") -> None:
        super().__init__(f"field not ready: {field_uid}" if field_uid else "field not ready")
        self.field_uid = field_uid
