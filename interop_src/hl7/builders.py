"""Segment builders: clinical events to typed HL7 segments.

Every builder takes ``(ctx, event, item, index)`` where ``item`` is the
element of a repeating collection being built (a diagnosis, an
immunization) and ``index`` its position. Builders for optional segments
return None when the event carries nothing to put in them.
"""

import logging
from datetime import date, datetime
from typing import Any, Callable

from ..context import BuildContext
from ..errors import IncompleteEventError
from ..models import (
    Diagnosis,
    EncounterEvent,
    Facility,
    Immunization,
    LabResult,
    LabResultEvent,
    MessageType,
    Patient,
    Provider,
    Visit,
)
from .segments import DG1, EVN, MSH, NK1, OBR, OBX, ORC, PD1, PID, PV1, PV2, RXA, RXR, Segment

logger = logging.getLogger(__name__)

# MSH-21 message profile identifiers
MESSAGE_PROFILES = {
    MessageType.VXU_V04: ("Z22", "CDCPHINVS"),
    MessageType.ADT_A01: "2.16.840.1.113883.9.11",
    MessageType.ADT_A03: "2.16.840.1.113883.9.11",
    MessageType.ADT_A04: "2.16.840.1.113883.9.11",
    MessageType.ORU_R01: ("PHLabReport-NoAck", "ELR_Receiver", "2.16.840.1.113883.9.11", "ISO"),
}

# MSH-15 / MSH-16 acknowledgment types
ACK_TYPES = {
    MessageType.VXU_V04: ("ER", "AL"),
    MessageType.ADT_A01: ("AL", "NE"),
    MessageType.ADT_A03: ("AL", "NE"),
    MessageType.ADT_A04: ("AL", "NE"),
    MessageType.ORU_R01: ("AL", "NE"),
}

# MSH-9.3 message structure
MESSAGE_STRUCTURES = {
    MessageType.ADT_A01: "ADT_A01",
    MessageType.ADT_A03: "ADT_A03",
    MessageType.ADT_A04: "ADT_A01",  # A04 reuses the A01 structure
    MessageType.VXU_V04: "VXU_V04",
    MessageType.ORU_R01: "ORU_R01",
}

# LOINC codes used in immunization and syndromic OBX segments
LOINC_VFC_ELIGIBILITY = ("64994-7", "Vaccine funding program eligibility category", "LN")
LOINC_DOSE_NUMBER = ("30973-2", "Dose number in series", "LN")
LOINC_PATIENT_AGE = ("21612-7", "Age - Reported", "LN")

RXA_NEW_RECORD = ("00", "New immunization record", "NIP001")
RXA_HISTORICAL = ("01", "Historical information - source unspecified", "NIP001")

# ICD-10 prefixes used to classify syndromic visits
SURVEILLANCE_CATEGORIES: dict[str, tuple[str, ...]] = {
    "Respiratory": (
        "J00", "J01", "J02", "J03", "J04", "J05", "J06", "J09", "J10", "J11",
        "J12", "J13", "J14", "J15", "J16", "J17", "J18", "J20", "J21", "J22",
        "R05", "R06",
    ),
    "Gastrointestinal": (
        "A00", "A01", "A02", "A03", "A04", "A05", "A06", "A07", "A08", "A09",
        "K52", "R11", "R19",
    ),
    "Fever": ("R50",),
    "Neurological": ("G00", "G01", "G02", "G03", "G04", "G05", "R40", "R41", "R56"),
    "Rash": ("R21", "B01", "B05", "B06", "B08", "B09"),
    "Hemorrhagic": ("D65", "D68", "R58"),
    "Sepsis": ("A40", "A41", "R65"),
}


def classify_surveillance_category(diagnosis_codes: list[str]) -> str | None:
    """First syndromic category whose ICD-10 prefixes match any code, else None."""
    for category, prefixes in SURVEILLANCE_CATEGORIES.items():
        for code in diagnosis_codes:
            normalized = code.replace(".", "").upper()
            if normalized[:3] in prefixes:
                return category
    return None


def _require(value: Any, unit: str, path: str) -> Any:
    if value is None or value == "" or value == ():
        raise IncompleteEventError(unit, path)
    return value


def _name(last: str, first: str, middle: str = "", name_type: str = "L") -> tuple:
    # XPN: family^given^middle^suffix^prefix^degree^type
    return (last, first, middle, "", "", "", name_type)


def _address(address) -> tuple | None:
    if address is None:
        return None
    # XAD: street^other^city^state^zip^country^type^other geographic^county
    return (
        address.street, "", address.city, address.state, address.zip_code,
        address.country, "H", "", address.county,
    )


def _phone(number: str) -> tuple | None:
    if not number:
        return None
    digits = "".join(ch for ch in number if ch.isdigit())
    if len(digits) == 10:
        # XTN: ^use^equipment^^^area^local
        return ("", "PRN", "PH", "", "", digits[:3], digits[3:])
    return ("", "PRN", "PH", "", "", "", digits)


def _provider(provider: Provider | None) -> tuple | None:
    if provider is None:
        return None
    # XCN: id^family^given^...^assigning authority^^^^id type
    return (provider.npi, provider.last_name, provider.first_name,
            "", "", "", "", "", "NPI", "", "", "", "NPI")


def _hd(facility: Facility) -> Any:
    """Hierarchic designator for a facility: name^oid^ISO when an OID is known."""
    if facility.oid:
        return (facility.name, facility.oid, "ISO")
    return facility.name


def _age_in_years(dob: date, at: datetime) -> int:
    years = at.year - dob.year
    if (at.month, at.day) < (dob.month, dob.day):
        years -= 1
    return years


# --- Header and patient ---


def build_msh(ctx: BuildContext, event: Any = None, item: Any = None, index: int = 0) -> MSH:
    message_type = ctx.message_type
    message_code, trigger = message_type.value.split("^")
    accept_ack, application_ack = ACK_TYPES.get(message_type, ("AL", "NE"))
    facility = getattr(event, "facility", None)
    _require(facility, "MSH", "facility")
    return MSH(
        sending_application=ctx.sending_application,
        sending_facility=_hd(facility),
        receiving_application=ctx.destination.receiving_application,
        receiving_facility=ctx.destination.receiving_facility,
        timestamp=ctx.now,
        message_type=(message_code, trigger, MESSAGE_STRUCTURES[message_type]),
        control_id=_require(ctx.control_id, "MSH", "message_control_id"),
        processing_id=ctx.destination.processing_id,
        accept_ack_type=accept_ack,
        application_ack_type=application_ack,
        country_code="USA",
        character_set="UNICODE UTF-8",
        message_profile=MESSAGE_PROFILES.get(message_type),
    )


def build_evn(ctx: BuildContext, event: EncounterEvent, item: Any = None, index: int = 0) -> EVN:
    visit = event.visit
    return EVN(
        event_type_code=ctx.message_type.trigger_event,
        recorded_at=visit.recorded_at or ctx.now,
        event_occurred=visit.discharge_time if ctx.message_type == MessageType.ADT_A03 else visit.admit_time,
        event_facility=_hd(event.facility),
    )


def build_pid(ctx: BuildContext, event: Any, item: Any = None, index: int = 0) -> PID:
    patient: Patient = _require(getattr(event, "patient", None), "PID", "patient")
    _require(patient.mrn, "PID", "patient.mrn")
    _require(patient.last_name, "PID", "patient.last_name")
    dob = _require(patient.date_of_birth, "PID", "patient.date_of_birth")

    race = ctx.optional_code(patient.race, "race", "PID", "PID-10")
    ethnicity = ctx.optional_code(patient.ethnicity, "ethnicity", "PID", "PID-22")
    sex = ctx.optional_code(patient.gender, "administrative_gender", "PID", "PID-8")

    multiple_birth = None
    if patient.multiple_birth is not None:
        multiple_birth = "Y" if patient.multiple_birth else "N"

    return PID(
        identifiers=(patient.mrn, "", "", _hd(event.facility) if event.facility.oid else "", "MR"),
        name=_name(patient.last_name, patient.first_name, patient.middle_name),
        mothers_maiden_name=(patient.mothers_maiden_name, "", "", "", "", "", "M") if patient.mothers_maiden_name else None,
        date_of_birth=dob,
        sex=sex.code if sex else None,
        race=race,
        address=_address(patient.address),
        county_code=patient.address.county if patient.address and patient.address.county else None,
        home_phone=_phone(patient.phone),
        primary_language=patient.preferred_language or None,
        ethnic_group=ethnicity,
        multiple_birth=multiple_birth,
        birth_order=patient.birth_order if patient.multiple_birth else None,
    )


def build_pd1(ctx: BuildContext, event: Any, item: Any = None, index: int = 0) -> PD1 | None:
    """Registry publicity and protection; sent when a guardian is on file."""
    if event.patient.guardian is None:
        return None
    return PD1(
        publicity_code=("02", "Reminder/Recall - any method", "HL70215"),
        protection_indicator="N",
        protection_indicator_date=ctx.now.date(),
        registry_status="A",
        registry_status_date=ctx.now.date(),
    )


def build_nk1(ctx: BuildContext, event: Any, item: Any = None, index: int = 0) -> NK1 | None:
    guardian = event.patient.guardian
    if guardian is None:
        return None
    _require(guardian.last_name, "NK1", "patient.guardian.last_name")
    relationship = ctx.code(guardian.relationship, "relationship", "NK1", "NK1-3")
    return NK1(
        name=_name(guardian.last_name, guardian.first_name),
        relationship=relationship,
        address=_address(event.patient.address),
        phone=_phone(guardian.phone),
    )


# --- Visit ---


def build_pv1(ctx: BuildContext, event: Any, item: Any = None, index: int = 0) -> PV1 | None:
    visit: Visit | None = getattr(event, "visit", None)
    if visit is None:
        if ctx.message_type == MessageType.ORU_R01:
            return None
        raise IncompleteEventError("PV1", "visit")

    _require(visit.patient_class, "PV1", "visit.patient_class")
    patient_class = ctx.code(visit.patient_class, "patient_class", "PV1", "PV1-2")
    if ctx.message_type in (MessageType.ADT_A01, MessageType.ADT_A04):
        _require(visit.admit_time, "PV1", "visit.admit_time")
    if ctx.message_type == MessageType.ADT_A03:
        _require(visit.discharge_time, "PV1", "visit.discharge_time")

    disposition = ctx.optional_code(visit.disposition, "discharge_disposition", "PV1", "PV1-36")

    return PV1(
        patient_class=patient_class.code,
        assigned_location=(visit.location, "", "", event.facility.name),
        attending_doctor=_provider(visit.attending),
        visit_number=(visit.visit_number, "", "", "", "VN") if visit.visit_number else None,
        discharge_disposition=disposition.code if disposition else None,
        admit_time=visit.admit_time,
        discharge_time=visit.discharge_time,
    )


def build_pv2(ctx: BuildContext, event: Any, item: Any = None, index: int = 0) -> PV2 | None:
    visit: Visit | None = getattr(event, "visit", None)
    if visit is None or not visit.chief_complaint:
        return None
    if visit.chief_complaint_code:
        reason = ctx.standard_code(
            visit.chief_complaint_code, visit.chief_complaint, "icd10", "PV2", "PV2-3"
        )
    else:
        reason = ("", visit.chief_complaint)
    return PV2(admit_reason=reason)


def build_dg1(ctx: BuildContext, event: Any, item: Diagnosis, index: int) -> DG1:
    """Diagnosis; the first is tagged A (admitting), the rest F (final)."""
    _require(item.code, "DG1", f"diagnoses[{index}].code")
    code = ctx.standard_code(item.code, item.description, item.code_system, "DG1", "DG1-3")
    return DG1(
        set_id=str(index + 1),
        coding_method=code.system,
        diagnosis_code=code,
        description=item.description or None,
        diagnosis_time=item.diagnosed_at,
        diagnosis_type="A" if index == 0 else "F",
    )


def adt_observations(event: EncounterEvent, scope: Any = None) -> list[tuple]:
    """Syndromic OBX content: reported patient age at the visit."""
    observations = []
    dob = event.patient.date_of_birth
    admit = event.visit.admit_time if event.visit else None
    if dob and admit:
        observations.append(
            ("NM", LOINC_PATIENT_AGE, str(_age_in_years(dob, admit)), ("a", "year", "UCUM"))
        )
    return observations


def build_adt_obx(ctx: BuildContext, event: Any, item: tuple, index: int) -> OBX:
    value_type, observation_id, value, units = item
    return OBX(
        set_id=str(index + 1),
        value_type=value_type,
        observation_id=observation_id,
        value=value,
        units=units,
        result_status="F",
    )


# --- Immunization ---


def build_orc(ctx: BuildContext, event: Any, item: Immunization, index: int) -> ORC:
    facility = event.facility
    filler = item.order_number or f"{ctx.control_id}-{index + 1}"
    return ORC(
        order_control="RE",
        filler_order_number=(filler, facility.facility_id),
        ordering_provider=_provider(item.administering_provider),
        entering_organization=(
            facility.registry_pin or facility.facility_id, facility.name, "HL70362"
        ),
    )


def build_rxa(ctx: BuildContext, event: Any, item: Immunization, index: int) -> RXA:
    path = f"immunizations[{index}]"
    _require(item.administered_at, "RXA", f"{path}.administered_at")
    vaccine = ctx.code(_require(item.cvx, "RXA", f"{path}.cvx"), "cvx", "RXA", "RXA-5")
    manufacturer = ctx.optional_code(item.mvx, "mvx", "RXA", "RXA-17")

    if item.historical:
        amount, units = "999", None
        notes = RXA_HISTORICAL
    else:
        _require(item.lot_number, "RXA", f"{path}.lot_number")
        amount = item.dose_amount or "999"
        units = (item.dose_units, item.dose_units, "UCUM") if item.dose_amount and item.dose_units else None
        notes = RXA_NEW_RECORD

    return RXA(
        start_time=item.administered_at,
        end_time=item.administered_at,
        administered_code=vaccine,
        administered_amount=amount,
        administered_units=units,
        administration_notes=notes,
        administering_provider=_provider(item.administering_provider),
        lot_number=item.lot_number or None,
        expiration_date=item.expiration_date,
        manufacturer=manufacturer,
        completion_status="CP",
        action_code="A",
    )


def build_rxr(ctx: BuildContext, event: Any, item: Immunization, index: int) -> RXR | None:
    if not item.route and not item.site:
        return None
    route = ctx.optional_code(item.route, "route", "RXR", "RXR-1")
    site = ctx.optional_code(item.site, "site", "RXR", "RXR-2")
    if route is None:
        raise IncompleteEventError("RXR", f"immunizations[{index}].route")
    return RXR(route=route, site=site)


def vaccine_observations(event: Any, item: Immunization) -> list[tuple]:
    """VFC eligibility and dose-number observations for one administration."""
    observations = []
    if item.funding_eligibility and not item.historical:
        observations.append(("CE", LOINC_VFC_ELIGIBILITY, ("vfc_eligibility", item.funding_eligibility)))
    if item.dose_number:
        observations.append(("NM", LOINC_DOSE_NUMBER, str(item.dose_number)))
    return observations


def build_vaccine_obx(ctx: BuildContext, event: Any, item: tuple, index: int) -> OBX:
    value_type, observation_id, value = item
    if value_type == "CE":
        vocabulary, token = value
        value = ctx.code(token, vocabulary, "OBX", "OBX-5")
    return OBX(
        set_id=str(index + 1),
        value_type=value_type,
        observation_id=observation_id,
        sub_id="1",
        value=value,
        result_status="F",
    )


# --- Lab results ---


def result_orders(event: LabResultEvent, scope: Any = None) -> list[tuple[str, list[LabResult]]]:
    """Group results by order id, keeping first-appearance order."""
    _require(event.lab_results, "OBR", "lab_results")
    orders: dict[str, list[LabResult]] = {}
    for result in event.lab_results:
        orders.setdefault(result.order_id, []).append(result)
    return list(orders.items())


def build_obr(ctx: BuildContext, event: LabResultEvent, item: tuple, index: int) -> OBR:
    order_id, results = item
    if event.order_code:
        service = ctx.standard_code(event.order_code, event.order_name, "loinc", "OBR", "OBR-4")
    else:
        first = results[0]
        service = ctx.standard_code(first.loinc_code, first.name, "loinc", "OBR", "OBR-4")
    filler = order_id or f"{ctx.control_id}-{index + 1}"
    observed = min((r.observed_at for r in results if r.observed_at), default=None)
    return OBR(
        set_id=str(index + 1),
        filler_order_number=(filler, event.facility.facility_id),
        universal_service_id=service,
        observation_time=observed,
        ordering_provider=_provider(event.ordering_provider),
        result_status="F",
    )


def build_result_obx(ctx: BuildContext, event: LabResultEvent, item: LabResult, index: int) -> OBX:
    path = f"lab_results[{index}]"
    _require(item.loinc_code, "OBX", f"{path}.loinc_code")
    observation_id = ctx.standard_code(item.loinc_code, item.name, "loinc", "OBX", "OBX-3")
    if item.value_type == "CE" and item.value_code:
        value = ctx.standard_code(item.value_code, item.value, item.value_code_system, "OBX", "OBX-5")
    else:
        value = _require(item.value, "OBX", f"{path}.value")
    interpretation = ctx.optional_code(item.interpretation, "interpretation", "OBX", "OBX-8")
    return OBX(
        set_id=str(index + 1),
        value_type=item.value_type,
        observation_id=observation_id,
        value=value,
        units=(item.units, item.units, "UCUM") if item.units else None,
        reference_range=item.reference_range or None,
        abnormal_flags=interpretation.code if interpretation else None,
        result_status=item.status or "F",
        observed_at=item.observed_at,
    )


SegmentBuilder = Callable[[BuildContext, Any, Any, int], Segment | None]

SEGMENT_BUILDERS: dict[str, SegmentBuilder] = {
    "MSH": build_msh,
    "EVN": build_evn,
    "PID": build_pid,
    "PD1": build_pd1,
    "NK1": build_nk1,
    "PV1": build_pv1,
    "PV2": build_pv2,
    "DG1": build_dg1,
    "ORC": build_orc,
    "RXA": build_rxa,
    "RXR": build_rxr,
    "OBR": build_obr,
}

# OBX content depends on the message: syndromic age, vaccine facts, lab results
OBX_BUILDERS: dict[MessageType, SegmentBuilder] = {
    MessageType.ADT_A01: build_adt_obx,
    MessageType.ADT_A03: build_adt_obx,
    MessageType.ADT_A04: build_adt_obx,
    MessageType.VXU_V04: build_vaccine_obx,
    MessageType.ORU_R01: build_result_obx,
}


def get_segment_builder(kind: str, message_type: MessageType) -> SegmentBuilder:
    """The builder for a segment kind within a message type.

    Raises:
        ValueError: If no builder exists for the kind
    """
    if kind == "OBX":
        builder = OBX_BUILDERS.get(message_type)
    else:
        builder = SEGMENT_BUILDERS.get(kind)
    if builder is None:
        raise ValueError(f"No {kind} segment builder for {message_type.value}")
    return builder


def build_segment(
    kind: str,
    event: Any,
    ctx: BuildContext,
    item: Any = None,
    index: int = 0,
) -> Segment | None:
    """Build one segment of the given kind.

    ``item`` and ``index`` select the element of a repeating collection
    (a diagnosis for DG1, an immunization for ORC/RXA/RXR, an observation
    for OBX). Optional segments with nothing to send come back as None.

    Raises:
        IncompleteEventError: If a required field is missing
        MappingError: If a coded value has no mapping
        ValueError: If no builder exists for the kind
    """
    builder = get_segment_builder(kind, ctx.message_type)
    segment = builder(ctx, event, item, index)
    if segment is not None:
        if segment.segment_id != kind:
            raise ValueError(f"Builder for {kind} produced a {segment.segment_id} segment")
        segment.validate()
    return segment
