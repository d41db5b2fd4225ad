"""Typed HL7 v2.5.1 segments.

Each attribute is bound to its field sequence number with ``slot(seq)``.
Encoding places values by sequence number and leaves gaps empty, so a
missing optional value can never shift the fields after it.
"""

from dataclasses import dataclass, field, fields
from typing import Any, ClassVar

from ..errors import IncompleteEventError
from .encoding import DEFAULT_DELIMITERS, Delimiters, encode_field

HL7_VERSION = "2.5.1"


def slot(seq: int, default: Any = None, required: bool = False) -> Any:
    """Declare a segment field at a fixed sequence number."""
    return field(default=default, metadata={"seq": seq, "required": required})


@dataclass(frozen=True)
class Segment:
    """Base class for typed segments."""

    segment_id: ClassVar[str] = ""
    _slot_cache: ClassVar[dict[type, list[tuple[int, str, bool]]]] = {}

    @classmethod
    def slots(cls) -> list[tuple[int, str, bool]]:
        """(seq, attribute, required) for every field, ordered by seq.

        Raises:
            ValueError: If two attributes claim the same sequence number
        """
        cached = Segment._slot_cache.get(cls)
        if cached is not None:
            return cached

        slots = []
        seen: dict[int, str] = {}
        for f in fields(cls):
            seq = f.metadata.get("seq")
            if seq is None:
                continue
            if seq in seen:
                raise ValueError(
                    f"{cls.segment_id}: fields '{seen[seq]}' and '{f.name}' "
                    f"both claim position {seq}"
                )
            seen[seq] = f.name
            slots.append((seq, f.name, f.metadata.get("required", False)))
        slots.sort()
        Segment._slot_cache[cls] = slots
        return slots

    def validate(self) -> None:
        """Raise IncompleteEventError if a required field is empty."""
        for seq, name, required in self.slots():
            if required and getattr(self, name) in (None, "", ()):
                raise IncompleteEventError(self.segment_id, f"{self.segment_id}-{seq} {name}")

    def field_values(self, d: Delimiters = DEFAULT_DELIMITERS) -> list[str]:
        """Encoded field values; index 0 is field 1."""
        slots = self.slots()
        width = slots[-1][0] if slots else 0
        values = [""] * width
        for seq, name, _ in slots:
            values[seq - 1] = encode_field(getattr(self, name), d)
        while values and values[-1] == "":
            values.pop()
        return values

    def encode(self, d: Delimiters = DEFAULT_DELIMITERS) -> str:
        self.validate()
        return d.field.join([self.segment_id, *self.field_values(d)])


@dataclass(frozen=True)
class MSH(Segment):
    """Message header. MSH-1 and MSH-2 are the delimiters themselves."""
    segment_id: ClassVar[str] = "MSH"

    sending_application: Any = slot(3)
    sending_facility: Any = slot(4)
    receiving_application: Any = slot(5)
    receiving_facility: Any = slot(6)
    timestamp: Any = slot(7, required=True)
    security: Any = slot(8)
    message_type: Any = slot(9, required=True)
    control_id: Any = slot(10, required=True)
    processing_id: Any = slot(11, default="P", required=True)
    version_id: Any = slot(12, default=HL7_VERSION, required=True)
    accept_ack_type: Any = slot(15)
    application_ack_type: Any = slot(16)
    country_code: Any = slot(17)
    character_set: Any = slot(18)
    message_profile: Any = slot(21)

    def encode(self, d: Delimiters = DEFAULT_DELIMITERS) -> str:
        self.validate()
        # field_values()[0] is MSH-1; MSH-1 and MSH-2 are written raw
        values = self.field_values(d)[2:]
        return d.field.join(["MSH", d.encoding_characters, *values])


@dataclass(frozen=True)
class EVN(Segment):
    """Event type."""
    segment_id: ClassVar[str] = "EVN"

    event_type_code: Any = slot(1)
    recorded_at: Any = slot(2, required=True)
    event_occurred: Any = slot(6)
    event_facility: Any = slot(7)


@dataclass(frozen=True)
class PID(Segment):
    """Patient identification."""
    segment_id: ClassVar[str] = "PID"

    set_id: Any = slot(1, default="1")
    identifiers: Any = slot(3, required=True)
    name: Any = slot(5, required=True)
    mothers_maiden_name: Any = slot(6)
    date_of_birth: Any = slot(7, required=True)
    sex: Any = slot(8)
    race: Any = slot(10)
    address: Any = slot(11)
    county_code: Any = slot(12)
    home_phone: Any = slot(13)
    primary_language: Any = slot(15)
    ethnic_group: Any = slot(22)
    multiple_birth: Any = slot(24)
    birth_order: Any = slot(25)


@dataclass(frozen=True)
class PD1(Segment):
    """Additional demographics (registry publicity / protection)."""
    segment_id: ClassVar[str] = "PD1"

    publicity_code: Any = slot(11)
    protection_indicator: Any = slot(12)
    protection_indicator_date: Any = slot(13)
    registry_status: Any = slot(16)
    registry_status_date: Any = slot(17)


@dataclass(frozen=True)
class NK1(Segment):
    """Next of kin / guardian."""
    segment_id: ClassVar[str] = "NK1"

    set_id: Any = slot(1, default="1")
    name: Any = slot(2, required=True)
    relationship: Any = slot(3, required=True)
    address: Any = slot(4)
    phone: Any = slot(5)


@dataclass(frozen=True)
class PV1(Segment):
    """Patient visit."""
    segment_id: ClassVar[str] = "PV1"

    set_id: Any = slot(1, default="1")
    patient_class: Any = slot(2, required=True)
    assigned_location: Any = slot(3)
    attending_doctor: Any = slot(7)
    hospital_service: Any = slot(10)
    visit_number: Any = slot(19)
    discharge_disposition: Any = slot(36)
    admit_time: Any = slot(44)
    discharge_time: Any = slot(45)


@dataclass(frozen=True)
class PV2(Segment):
    """Patient visit additional information (chief complaint)."""
    segment_id: ClassVar[str] = "PV2"

    admit_reason: Any = slot(3, required=True)


@dataclass(frozen=True)
class DG1(Segment):
    """Diagnosis."""
    segment_id: ClassVar[str] = "DG1"

    set_id: Any = slot(1, required=True)
    coding_method: Any = slot(2)
    diagnosis_code: Any = slot(3, required=True)
    description: Any = slot(4)
    diagnosis_time: Any = slot(5)
    diagnosis_type: Any = slot(6, required=True)


@dataclass(frozen=True)
class ORC(Segment):
    """Common order."""
    segment_id: ClassVar[str] = "ORC"

    order_control: Any = slot(1, default="RE", required=True)
    placer_order_number: Any = slot(2)
    filler_order_number: Any = slot(3, required=True)
    ordering_provider: Any = slot(12)
    entering_organization: Any = slot(17)


@dataclass(frozen=True)
class RXA(Segment):
    """Pharmacy/treatment administration."""
    segment_id: ClassVar[str] = "RXA"

    give_sub_id: Any = slot(1, default="0", required=True)
    administration_sub_id: Any = slot(2, default="1", required=True)
    start_time: Any = slot(3, required=True)
    end_time: Any = slot(4)
    administered_code: Any = slot(5, required=True)
    administered_amount: Any = slot(6, default="999", required=True)
    administered_units: Any = slot(7)
    administration_notes: Any = slot(9)
    administering_provider: Any = slot(10)
    lot_number: Any = slot(15)
    expiration_date: Any = slot(16)
    manufacturer: Any = slot(17)
    completion_status: Any = slot(20, default="CP")
    action_code: Any = slot(21, default="A")


@dataclass(frozen=True)
class RXR(Segment):
    """Pharmacy/treatment route."""
    segment_id: ClassVar[str] = "RXR"

    route: Any = slot(1, required=True)
    site: Any = slot(2)


@dataclass(frozen=True)
class OBR(Segment):
    """Observation request."""
    segment_id: ClassVar[str] = "OBR"

    set_id: Any = slot(1, required=True)
    placer_order_number: Any = slot(2)
    filler_order_number: Any = slot(3)
    universal_service_id: Any = slot(4, required=True)
    observation_time: Any = slot(7)
    ordering_provider: Any = slot(16)
    result_status: Any = slot(25)


@dataclass(frozen=True)
class OBX(Segment):
    """Observation / result."""
    segment_id: ClassVar[str] = "OBX"

    set_id: Any = slot(1, required=True)
    value_type: Any = slot(2, required=True)
    observation_id: Any = slot(3, required=True)
    sub_id: Any = slot(4)
    value: Any = slot(5)
    units: Any = slot(6)
    reference_range: Any = slot(7)
    abnormal_flags: Any = slot(8)
    result_status: Any = slot(11, default="F", required=True)
    observed_at: Any = slot(14)


@dataclass(frozen=True)
class MSA(Segment):
    """Message acknowledgment."""
    segment_id: ClassVar[str] = "MSA"

    ack_code: Any = slot(1, required=True)
    control_id: Any = slot(2, required=True)
    text_message: Any = slot(3)


SEGMENT_TYPES: dict[str, type[Segment]] = {
    cls.segment_id: cls
    for cls in (MSH, EVN, PID, PD1, NK1, PV1, PV2, DG1, ORC, RXA, RXR, OBR, OBX, MSA)
}

# Fail at import if any segment declares a position twice
for _segment_type in SEGMENT_TYPES.values():
    _segment_type.slots()
