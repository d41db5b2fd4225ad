"""Clinical event models consumed by the composer.

Events are frozen once built; repeated facts are held in tuples so an event
passed to the composer cannot change underneath it.
"""

from dataclasses import dataclass
from datetime import date, datetime
from enum import Enum
from typing import Union


class FormatKind(Enum):
    """Wire format of a composed artifact."""
    HL7V2 = "HL7v2"
    CDA_XML = "CDA-XML"


class MessageType(Enum):
    """Message and document types the composer can produce."""
    ADT_A01 = "ADT^A01"    # Admit / visit notification
    ADT_A03 = "ADT^A03"    # Discharge / end visit
    ADT_A04 = "ADT^A04"    # Register outpatient
    VXU_V04 = "VXU^V04"    # Unsolicited vaccination update
    ORU_R01 = "ORU^R01"    # Unsolicited observation (lab results)
    QRDA_I = "QRDA-I"      # Patient-level quality report
    QRDA_III = "QRDA-III"  # Aggregate quality report
    EICR = "eICR"          # Electronic initial case report

    @property
    def format_kind(self) -> FormatKind:
        if self in (MessageType.QRDA_I, MessageType.QRDA_III, MessageType.EICR):
            return FormatKind.CDA_XML
        return FormatKind.HL7V2

    @property
    def trigger_event(self) -> str | None:
        """HL7 trigger event code (A01, V04...), None for CDA documents."""
        if self.format_kind != FormatKind.HL7V2:
            return None
        return self.value.split("^")[1]


class ReportType(Enum):
    """eICR report status."""
    INITIAL = "initial"
    UPDATE = "update"
    CANCEL = "cancel"


@dataclass(frozen=True)
class Address:
    """Postal address."""
    street: str = ""
    city: str = ""
    state: str = ""
    zip_code: str = ""
    county: str = ""
    country: str = "USA"


@dataclass(frozen=True)
class Provider:
    """Clinician identified by NPI."""
    npi: str
    last_name: str = ""
    first_name: str = ""


@dataclass(frozen=True)
class Guardian:
    """Next of kin / responsible party for a minor."""
    last_name: str
    first_name: str = ""
    relationship: str = "mother"
    phone: str = ""


@dataclass(frozen=True)
class Patient:
    """Patient demographics.

    Coded demographics (gender, race, ethnicity) are domain tokens; the
    field mapper translates them into the target code systems.
    """
    mrn: str
    last_name: str
    first_name: str
    date_of_birth: date | None = None
    gender: str | None = None
    race: str | None = None
    ethnicity: str | None = None
    middle_name: str = ""
    address: Address | None = None
    phone: str = ""
    email: str = ""
    mothers_maiden_name: str = ""
    multiple_birth: bool | None = None
    birth_order: int | None = None
    guardian: Guardian | None = None
    occupation: str = ""
    employer: str = ""
    preferred_language: str = ""


@dataclass(frozen=True)
class Facility:
    """Sending organization."""
    facility_id: str
    name: str
    oid: str = ""
    npi: str = ""
    address: Address | None = None
    phone: str = ""
    registry_pin: str = ""  # Immunization registry organization PIN


@dataclass(frozen=True)
class Visit:
    """Encounter / visit details."""
    visit_number: str
    patient_class: str
    admit_time: datetime | None = None
    discharge_time: datetime | None = None
    location: str = ""
    attending: Provider | None = None
    disposition: str | None = None
    chief_complaint: str = ""
    chief_complaint_code: str = ""
    recorded_at: datetime | None = None  # EVN-2; defaults to message time


@dataclass(frozen=True)
class Diagnosis:
    """Coded diagnosis. The first diagnosis of an encounter is the admitting one."""
    code: str
    description: str = ""
    code_system: str = "icd10"
    diagnosed_at: datetime | None = None


@dataclass(frozen=True)
class LabResult:
    """Laboratory observation."""
    loinc_code: str
    name: str
    value: str
    value_type: str = "ST"  # HL7 data type: NM, ST, CE
    units: str = ""
    reference_range: str = ""
    interpretation: str | None = None
    observed_at: datetime | None = None
    status: str = "F"
    specimen: str = ""
    order_id: str = ""
    value_code: str = ""  # SNOMED code for coded results
    value_code_system: str = "snomed"


@dataclass(frozen=True)
class Medication:
    """Medication administered or active during the encounter."""
    rxnorm_code: str
    name: str
    dose: str = ""
    route: str | None = None
    started_at: datetime | None = None
    stopped_at: datetime | None = None


@dataclass(frozen=True)
class Immunization:
    """Vaccine administration.

    ``cvx`` and ``mvx`` are the vaccine and manufacturer codes; the field
    mapper checks them against the loaded code tables.
    """
    cvx: str
    administered_at: datetime
    mvx: str | None = None
    lot_number: str = ""
    expiration_date: date | None = None
    dose_amount: str = ""
    dose_units: str = ""
    route: str | None = None
    site: str | None = None
    dose_number: int | None = None
    funding_eligibility: str | None = None
    historical: bool = False
    administering_provider: Provider | None = None
    order_number: str = ""


@dataclass(frozen=True)
class CaseTrigger:
    """The coded fact that made an encounter reportable."""
    code: str
    display: str = ""
    code_system: str = "icd10"
    triggered_at: datetime | None = None
    value_set_oid: str = ""


@dataclass(frozen=True)
class ReportableCondition:
    """Condition being reported to public health."""
    code: str
    display: str
    code_system: str = "snomed"
    jurisdiction: str = ""


@dataclass(frozen=True)
class ReportingPeriod:
    """Measurement period for quality reporting."""
    start: date
    end: date


@dataclass(frozen=True)
class MeasureResult:
    """Patient-level result for one eCQM."""
    measure_id: str             # e.g. CMS122v11
    version_specific_id: str    # measure version UUID / NQF set id
    title: str
    initial_population: bool = False
    denominator: bool = False
    denominator_exclusion: bool = False
    numerator: bool = False
    denominator_exception: bool = False


@dataclass(frozen=True)
class AggregateMeasureResult:
    """Population counts for one eCQM."""
    measure_id: str
    version_specific_id: str
    title: str
    initial_population: int = 0
    denominator: int = 0
    denominator_exclusion: int = 0
    numerator: int = 0
    denominator_exception: int = 0

    @property
    def performance_rate(self) -> float | None:
        """Numerator over the eligible denominator, None if nothing is eligible."""
        eligible = self.denominator - self.denominator_exclusion - self.denominator_exception
        if eligible <= 0:
            return None
        return self.numerator / eligible


@dataclass(frozen=True)
class Credentials:
    """Credentials presented to a destination's transport.

    ``client_id`` and ``private_key_path`` select OAuth 2.0 backend auth
    (signed JWT assertion exchanged at ``token_url``) for HTTPS endpoints.
    """
    username: str = ""
    password: str = ""
    api_key: str = ""
    client_id: str = ""
    private_key_path: str = ""
    token_url: str = ""

    @property
    def uses_oauth(self) -> bool:
        return bool(self.client_id and self.private_key_path and self.token_url)


@dataclass(frozen=True)
class Destination:
    """A public health endpoint a message is delivered to."""
    name: str
    endpoint: str
    transport: str = "https"           # https | direct
    receiving_application: str = ""
    receiving_facility: str = ""
    processing_id: str = "P"           # P production, T training, D debug
    credentials: Credentials | None = None
    message_types: tuple[str, ...] = ()

    def accepts(self, message_type: str) -> bool:
        """True if this destination takes the given message type (any if unrestricted)."""
        return not self.message_types or message_type in self.message_types


# --- Events ---


@dataclass(frozen=True)
class EncounterEvent:
    """A visit with its coded facts; feeds ADT and eICR."""
    patient: Patient
    facility: Facility
    visit: Visit
    diagnoses: tuple[Diagnosis, ...] = ()
    lab_results: tuple[LabResult, ...] = ()
    medications: tuple[Medication, ...] = ()
    immunizations: tuple[Immunization, ...] = ()
    trigger: CaseTrigger | None = None
    condition: ReportableCondition | None = None
    author: Provider | None = None
    report_type: ReportType = ReportType.INITIAL
    report_set_id: str = ""
    report_version: int = 1


@dataclass(frozen=True)
class ImmunizationEvent:
    """One or more vaccine administrations for a patient; feeds VXU."""
    patient: Patient
    facility: Facility
    immunizations: tuple[Immunization, ...]


@dataclass(frozen=True)
class LabResultEvent:
    """Resulted lab order; feeds ORU and eICR."""
    patient: Patient
    facility: Facility
    lab_results: tuple[LabResult, ...]
    visit: Visit | None = None
    ordering_provider: Provider | None = None
    order_code: str = ""       # LOINC panel / order code
    order_name: str = ""
    trigger: CaseTrigger | None = None
    condition: ReportableCondition | None = None
    author: Provider | None = None
    report_type: ReportType = ReportType.INITIAL
    report_set_id: str = ""
    report_version: int = 1


@dataclass(frozen=True)
class DiagnosisEvent:
    """A reportable diagnosis; feeds eICR."""
    patient: Patient
    facility: Facility
    diagnoses: tuple[Diagnosis, ...]
    trigger: CaseTrigger
    condition: ReportableCondition
    visit: Visit | None = None
    medications: tuple[Medication, ...] = ()
    lab_results: tuple[LabResult, ...] = ()
    author: Provider | None = None
    report_type: ReportType = ReportType.INITIAL
    report_set_id: str = ""
    report_version: int = 1


@dataclass(frozen=True)
class QualityMeasureEvent:
    """Patient-level measure results for a period; feeds QRDA I."""
    patient: Patient
    facility: Facility
    period: ReportingPeriod
    results: tuple[MeasureResult, ...]
    encounters: tuple[Visit, ...] = ()
    diagnoses: tuple[Diagnosis, ...] = ()
    author: Provider | None = None


@dataclass(frozen=True)
class AggregateMeasureEvent:
    """Aggregate measure counts for a period; feeds QRDA III."""
    facility: Facility
    period: ReportingPeriod
    results: tuple[AggregateMeasureResult, ...]
    author: Provider | None = None
    legal_authenticator: Provider | None = None


ClinicalEvent = Union[
    EncounterEvent,
    ImmunizationEvent,
    LabResultEvent,
    DiagnosisEvent,
    QualityMeasureEvent,
    AggregateMeasureEvent,
]

# Which events can feed which message types
EVENT_MESSAGE_TYPES: dict[type, frozenset[MessageType]] = {
    EncounterEvent: frozenset({
        MessageType.ADT_A01, MessageType.ADT_A03, MessageType.ADT_A04, MessageType.EICR,
    }),
    ImmunizationEvent: frozenset({MessageType.VXU_V04}),
    LabResultEvent: frozenset({MessageType.ORU_R01, MessageType.EICR}),
    DiagnosisEvent: frozenset({MessageType.EICR}),
    QualityMeasureEvent: frozenset({MessageType.QRDA_I}),
    AggregateMeasureEvent: frozenset({MessageType.QRDA_III}),
}
