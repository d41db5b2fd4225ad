"""Exception taxonomy for message composition and transmission.

Composition errors (mapping, incomplete event, composition) always surface
to the caller before anything is written to the ledger. Ledger and transport
errors are raised by the transmission side.
"""

from enum import Enum
from typing import Any


class InteropError(Exception):
    """Base class for all public health interop errors."""


class MappingErrorReason(Enum):
    """Why a code lookup failed."""
    UNKNOWN_VALUE = "unknown_value"
    UNKNOWN_VOCABULARY = "unknown_vocabulary"


class MappingError(InteropError):
    """A domain value has no entry in the target vocabulary.

    The mapper returns this rather than raising it, so callers can decide
    whether to substitute the vocabulary's designated unknown code.
    """

    def __init__(
        self,
        value: str | None,
        vocabulary: str,
        reason: MappingErrorReason = MappingErrorReason.UNKNOWN_VALUE,
        segment: str | None = None,
        field: str | None = None,
    ):
        self.value = value
        self.vocabulary = vocabulary
        self.reason = reason
        self.segment = segment
        self.field = field
        location = ""
        if segment or field:
            location = f" at {segment or '?'}.{field or '?'}"
        super().__init__(
            f"{reason.value}: {value!r} has no mapping in vocabulary "
            f"'{vocabulary}'{location}"
        )

    def with_context(self, segment: str | None, field: str | None) -> "MappingError":
        """Return a copy that names the unit and field being built."""
        return MappingError(self.value, self.vocabulary, self.reason, segment, field)


class IncompleteEventError(InteropError):
    """A field required by a segment or section is missing from the event."""

    def __init__(self, unit_kind: str, missing_field: str):
        self.unit_kind = unit_kind
        self.missing_field = missing_field
        super().__init__(f"{unit_kind} requires '{missing_field}' but the event has none")


class CompositionError(InteropError):
    """Composition of a message or document failed.

    Wraps the underlying mapping or incomplete-event error and names the
    message type, unit and field an operator must correct.
    """

    def __init__(
        self,
        message_type: str,
        detail: str,
        unit_kind: str | None = None,
        field: str | None = None,
        cause: Exception | None = None,
    ):
        self.message_type = message_type
        self.detail = detail
        self.unit_kind = unit_kind
        self.field = field
        self.cause = cause
        where = ""
        if unit_kind:
            where = f" [{unit_kind}{'.' + field if field else ''}]"
        super().__init__(f"Cannot compose {message_type}{where}: {detail}")

    @classmethod
    def from_error(cls, message_type: str, error: Exception) -> "CompositionError":
        """Build a composition error from a builder or mapper failure."""
        if isinstance(error, IncompleteEventError):
            return cls(
                message_type,
                str(error),
                unit_kind=error.unit_kind,
                field=error.missing_field,
                cause=error,
            )
        if isinstance(error, MappingError):
            return cls(
                message_type,
                str(error),
                unit_kind=error.segment,
                field=error.field or error.vocabulary,
                cause=error,
            )
        return cls(message_type, str(error), cause=error)


class InvalidStateTransitionError(InteropError):
    """A ledger transition was attempted from a state that does not allow it."""

    def __init__(self, record_id: str, current: Any, attempted: Any):
        self.record_id = record_id
        self.current = current
        self.attempted = attempted
        current_value = getattr(current, "value", current)
        attempted_value = getattr(attempted, "value", attempted)
        super().__init__(
            f"Transmission {record_id}: cannot move from "
            f"'{current_value}' to '{attempted_value}'"
        )


class TransmissionNotFoundError(InteropError, LookupError):
    """No ledger row exists for the given identifier."""

    def __init__(self, record_id: str):
        self.record_id = record_id
        super().__init__(f"Transmission {record_id} not found")


class TransportError(InteropError):
    """Delivery to a destination failed before an acknowledgement was received."""

    def __init__(self, endpoint: str, detail: str, retryable: bool = True):
        self.endpoint = endpoint
        self.detail = detail
        self.retryable = retryable
        super().__init__(f"Transport to {endpoint} failed: {detail}")


class DuplicateSubmissionError(InteropError):
    """A message with the same tenant and control id is already in the ledger.

    Only raised by strict submission; the default path returns the existing
    record instead.
    """

    def __init__(self, existing: Any):
        self.existing = existing
        super().__init__(
            f"Message {existing.message_control_id} already submitted for tenant "
            f"{existing.tenant_id} as transmission {existing.id}"
        )
