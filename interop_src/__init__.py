"""Public health interoperability: message composition and transmission ledger.

Composes HL7 v2 messages (ADT, VXU, ORU) and CDA documents (eICR, QRDA I,
QRDA III) from clinical events, and tracks their delivery to registries and
public health agencies in an audited SQLite ledger.
"""

from .composer import ComposedMessage, MessageComposer, compose
from .errors import (
    CompositionError,
    DuplicateSubmissionError,
    IncompleteEventError,
    InteropError,
    InvalidStateTransitionError,
    MappingError,
    TransmissionNotFoundError,
    TransportError,
)
from .ledger import RetryPolicy, TransmissionLedger, TransmissionRecord, TransmissionStatus
from .models import FormatKind, MessageType

__version__ = "0.1.0"

__all__ = [
    "ComposedMessage",
    "CompositionError",
    "DuplicateSubmissionError",
    "FormatKind",
    "IncompleteEventError",
    "InteropError",
    "InvalidStateTransitionError",
    "MappingError",
    "MessageComposer",
    "MessageType",
    "RetryPolicy",
    "TransmissionLedger",
    "TransmissionNotFoundError",
    "TransmissionRecord",
    "TransmissionStatus",
    "TransportError",
    "compose",
]
