"""Message/document composer.

Turns a clinical event and a destination into a serialized HL7 v2 message
or CDA document. Composition is pure: the control id and timestamp are
parameters, so the same inputs always produce byte-identical output.
"""

import hashlib
import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any

from .cda.base import to_xml_string
from .cda.documents import CDADocumentBuilder, get_document_template
from .context import BuildContext
from .errors import CompositionError, InteropError
from .hl7.messages import assemble, get_template, serialize
from .hl7.parser import segment_ids
from .models import EVENT_MESSAGE_TYPES, Destination, FormatKind, MessageType
from .vocab.mapper import FieldMapper

logger = logging.getLogger(__name__)


class CompositionState(Enum):
    """Progress of a single compose call."""
    INITIALIZED = "initialized"
    SEGMENTS_BUILT = "segments_built"
    SERIALIZED = "serialized"


@dataclass(frozen=True)
class ComposedMessage:
    """A serialized message ready for the transmission ledger."""
    format_kind: FormatKind
    message_type: MessageType
    message_control_id: str
    units: tuple[str, ...]  # encoded HL7 segments, or CDA section kinds
    payload: str
    content_hash: str
    created_at: datetime
    destination: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "format_kind": self.format_kind.value,
            "message_type": self.message_type.value,
            "message_control_id": self.message_control_id,
            "units": list(self.units),
            "payload": self.payload,
            "content_hash": self.content_hash,
            "created_at": self.created_at.isoformat(),
            "destination": self.destination,
        }


def content_hash(payload: str) -> str:
    """SHA-256 hex digest of the UTF-8 payload."""
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


class MessageComposer:
    """Composes HL7 v2 messages and CDA documents from clinical events."""

    def __init__(self, mapper: FieldMapper | None = None, sending_application: str = "INTEROP"):
        self.mapper = mapper or FieldMapper()
        self.sending_application = sending_application

    def compose(
        self,
        message_type: MessageType | str,
        event: Any,
        destination: Destination,
        *,
        message_control_id: str,
        now: datetime,
        substitute_unknown: frozenset[str] = frozenset(),
    ) -> ComposedMessage:
        """Compose one message.

        Args:
            message_type: Target type, e.g. MessageType.ADT_A01 or "ADT^A01"
            event: The clinical event to report
            destination: Where the message will be sent
            message_control_id: Caller-assigned unique id (MSH-10 / document id)
            now: Message timestamp
            substitute_unknown: Vocabularies for which an unmapped value may
                be replaced by the vocabulary's unknown code

        Returns:
            The ComposedMessage

        Raises:
            CompositionError: If the event cannot produce a valid message
        """
        message_type = self._resolve_type(message_type)
        type_name = message_type.value
        self._check_compatible(message_type, event, destination)
        if not message_control_id:
            raise CompositionError(type_name, "message control id is required",
                                   unit_kind="header", field="message_control_id")

        ctx = BuildContext(
            mapper=self.mapper,
            message_type=message_type,
            control_id=message_control_id,
            now=now,
            destination=destination,
            sending_application=self.sending_application,
            substitute_unknown=frozenset(substitute_unknown),
        )
        self._log_state(message_control_id, CompositionState.INITIALIZED)

        try:
            if message_type.format_kind == FormatKind.HL7V2:
                payload, units = self._compose_hl7(ctx, event)
            else:
                payload, units = self._compose_cda(ctx, event)
        except (InteropError, ValueError) as e:
            logger.debug(f"{message_control_id}: composition of {type_name} failed: {e}")
            if isinstance(e, CompositionError):
                raise
            raise CompositionError.from_error(type_name, e) from e

        composed = ComposedMessage(
            format_kind=message_type.format_kind,
            message_type=message_type,
            message_control_id=message_control_id,
            units=tuple(units),
            payload=payload,
            content_hash=content_hash(payload),
            created_at=now,
            destination=destination.name,
        )
        logger.debug(
            f"Composed {type_name} {message_control_id} for {destination.name} "
            f"({len(composed.units)} units, sha256 {composed.content_hash[:12]})"
        )
        return composed

    def _resolve_type(self, message_type: MessageType | str) -> MessageType:
        if isinstance(message_type, MessageType):
            return message_type
        try:
            return MessageType(message_type)
        except ValueError:
            raise CompositionError(str(message_type), "unsupported message type") from None

    def _check_compatible(self, message_type: MessageType, event: Any, destination: Destination) -> None:
        allowed = EVENT_MESSAGE_TYPES.get(type(event))
        if allowed is None:
            raise CompositionError(message_type.value, f"unsupported event {type(event).__name__}")
        if message_type not in allowed:
            raise CompositionError(
                message_type.value,
                f"{type(event).__name__} cannot produce {message_type.value}",
            )
        if not destination.accepts(message_type.value):
            raise CompositionError(
                message_type.value,
                f"destination {destination.name} does not accept {message_type.value}",
            )

    def _compose_hl7(self, ctx: BuildContext, event: Any) -> tuple[str, list[str]]:
        template = get_template(ctx.message_type)
        segments = assemble(template, event, ctx)
        self._log_state(ctx.control_id, CompositionState.SEGMENTS_BUILT)

        payload = serialize(segments)
        self._log_state(ctx.control_id, CompositionState.SERIALIZED)

        ids = segment_ids(payload)
        if not template.conforms(ids):
            raise CompositionError(
                ctx.message_type.value,
                f"segment sequence {' '.join(ids)} does not match {template.describe()}",
            )
        return payload, [segment.encode() for segment in segments]

    def _compose_cda(self, ctx: BuildContext, event: Any) -> tuple[str, list[str]]:
        template = get_document_template(ctx.message_type)
        root, section_kinds = CDADocumentBuilder(template).build(event, ctx)
        self._log_state(ctx.control_id, CompositionState.SEGMENTS_BUILT)

        payload = to_xml_string(root)
        self._log_state(ctx.control_id, CompositionState.SERIALIZED)

        if not template.conforms(section_kinds):
            raise CompositionError(
                ctx.message_type.value,
                f"section sequence {', '.join(section_kinds)} does not match "
                f"{', '.join(template.section_kinds)}",
            )
        return payload, section_kinds

    @staticmethod
    def _log_state(control_id: str, state: CompositionState) -> None:
        logger.debug(f"{control_id}: {state.value}")


_default_composer: MessageComposer | None = None


def compose(
    message_type: MessageType | str,
    event: Any,
    destination: Destination,
    *,
    message_control_id: str,
    now: datetime,
    substitute_unknown: frozenset[str] = frozenset(),
) -> ComposedMessage:
    """Compose with the configured code table (see MessageComposer.compose)."""
    global _default_composer
    if _default_composer is None:
        from .config import Config
        _default_composer = MessageComposer(sending_application=Config.SENDING_APPLICATION)
    return _default_composer.compose(
        message_type,
        event,
        destination,
        message_control_id=message_control_id,
        now=now,
        substitute_unknown=substitute_unknown,
    )
