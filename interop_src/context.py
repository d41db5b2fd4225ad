"""Per-composition context shared by HL7 segment and CDA section builders."""

import uuid
from dataclasses import dataclass, field
from datetime import datetime

from .models import Destination, MessageType
from .vocab.mapper import FieldMapper
from .vocab.tables import CodeTriple


@dataclass
class BuildContext:
    """Everything a builder needs besides the event itself.

    ``substitute_unknown`` lists the vocabularies for which an unmapped value
    may be replaced with the vocabulary's unknown code; any other unmapped
    value fails the build.
    """
    mapper: FieldMapper
    message_type: MessageType
    control_id: str
    now: datetime
    destination: Destination
    sending_application: str = "INTEROP"
    substitute_unknown: frozenset[str] = field(default_factory=frozenset)

    def code(self, value: str | None, vocabulary: str, segment: str, field_name: str) -> CodeTriple:
        """Map a required coded value."""
        if vocabulary in self.substitute_unknown:
            return self.mapper.map_or_unknown(value, vocabulary)
        return self.mapper.require(value, vocabulary, segment=segment, field=field_name)

    def optional_code(
        self, value: str | None, vocabulary: str, segment: str, field_name: str
    ) -> CodeTriple | None:
        """Map a coded value that may be absent; absent values stay empty."""
        if value is None or str(value).strip() == "":
            return None
        return self.code(value, vocabulary, segment, field_name)

    def standard_code(
        self, code: str, display: str, system_name: str, segment: str, field_name: str
    ) -> CodeTriple:
        """A code already in a standard system (ICD-10, LOINC, SNOMED)."""
        return self.mapper.coded(code, display, system_name, segment=segment, field=field_name)

    def stable_id(self, *parts: object) -> str:
        """A UUID derived from the control id, so output is reproducible."""
        name = "/".join([self.control_id, *(str(p) for p in parts)])
        return str(uuid.uuid5(uuid.NAMESPACE_OID, name))
