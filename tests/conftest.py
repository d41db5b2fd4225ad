"""Shared fixtures: a reference facility, patients and events."""

from datetime import date, datetime, timezone

import pytest

from interop_src.context import BuildContext
from interop_src.models import (
    Address,
    CaseTrigger,
    Credentials,
    Destination,
    Diagnosis,
    EncounterEvent,
    Facility,
    Guardian,
    Immunization,
    ImmunizationEvent,
    LabResult,
    LabResultEvent,
    MeasureResult,
    MessageType,
    Patient,
    Provider,
    QualityMeasureEvent,
    ReportableCondition,
    ReportingPeriod,
    Visit,
)
from interop_src.vocab import FieldMapper

NOW = datetime(2026, 1, 15, 9, 30, 0)


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def mapper():
    return FieldMapper()


@pytest.fixture
def facility():
    return Facility(
        facility_id="CCHMC",
        name="Cincinnati Children's",
        oid="2.16.840.1.113883.3.1234",
        npi="1234567893",
        address=Address(street="3333 Burnet Ave", city="Cincinnati", state="OH",
                        zip_code="45229", county="39061"),
        phone="5136364200",
        registry_pin="OH1234",
    )


@pytest.fixture
def patient():
    return Patient(
        mrn="MRN001",
        last_name="Smith",
        first_name="Jane",
        date_of_birth=date(1950, 2, 1),
        gender="F",
        race="white",
        ethnicity="not_hispanic",
        address=Address(street="1 Main St", city="Cincinnati", state="OH", zip_code="45202"),
        phone="513-555-0100",
    )


@pytest.fixture
def child():
    return Patient(
        mrn="MRN002",
        last_name="Jones",
        first_name="Timmy",
        date_of_birth=date(2025, 3, 10),
        gender="M",
        race="black",
        ethnicity="hispanic",
        guardian=Guardian(last_name="Jones", first_name="Mary", relationship="mother",
                          phone="5135550199"),
    )


@pytest.fixture
def attending():
    return Provider(npi="1112223333", last_name="House", first_name="Greg")


@pytest.fixture
def visit(attending):
    return Visit(
        visit_number="V1001",
        patient_class="E",
        admit_time=datetime(2026, 1, 15, 8, 0, 0, tzinfo=timezone.utc),
        location="ED",
        attending=attending,
        chief_complaint="Cough and fever",
    )


@pytest.fixture
def encounter_event(patient, facility, visit):
    return EncounterEvent(
        patient=patient,
        facility=facility,
        visit=visit,
        diagnoses=(
            Diagnosis(code="A37", description="Whooping cough"),
            Diagnosis(code="J45", description="Asthma"),
        ),
    )


@pytest.fixture
def case_report_event(patient, facility, visit, attending):
    return EncounterEvent(
        patient=patient,
        facility=facility,
        visit=visit,
        diagnoses=(Diagnosis(code="A37.90", description="Whooping cough, unspecified"),),
        lab_results=(
            LabResult(
                loinc_code="548-8", name="Bordetella pertussis culture", value="Positive",
                value_type="CE", value_code="10828004", interpretation="abnormal",
                observed_at=datetime(2026, 1, 15, 9, 0), order_id="ORD1",
            ),
            LabResult(
                loinc_code="43913-3", name="Bordetella pertussis PCR", value="",
                status="I", order_id="ORD2",
            ),
        ),
        trigger=CaseTrigger(code="A37.90", display="Whooping cough, unspecified",
                            value_set_oid="2.16.840.1.113762.1.4.1146.6"),
        condition=ReportableCondition(code="27836007", display="Pertussis"),
        author=attending,
    )


@pytest.fixture
def immunization_event(child, facility, attending):
    return ImmunizationEvent(
        patient=child,
        facility=facility,
        immunizations=(
            Immunization(
                cvx="20",
                administered_at=datetime(2026, 1, 10, 10, 0),
                mvx="PMC",
                lot_number="LOT123",
                expiration_date=date(2027, 6, 30),
                dose_amount="0.5",
                dose_units="mL",
                route="IM",
                site="left_thigh",
                dose_number=1,
                funding_eligibility="medicaid",
                administering_provider=attending,
            ),
        ),
    )


@pytest.fixture
def lab_event(patient, facility, attending):
    return LabResultEvent(
        patient=patient,
        facility=facility,
        ordering_provider=attending,
        lab_results=(
            LabResult(loinc_code="2345-7", name="Glucose", value="105", value_type="NM",
                      units="mg/dL", reference_range="70-99", interpretation="high",
                      order_id="A1"),
            LabResult(loinc_code="2951-2", name="Sodium", value="140", value_type="NM",
                      units="mmol/L", order_id="A1"),
            LabResult(loinc_code="600-7", name="Blood culture", value="No growth",
                      order_id="B2"),
        ),
    )


@pytest.fixture
def period():
    return ReportingPeriod(start=date(2025, 1, 1), end=date(2025, 12, 31))


@pytest.fixture
def measure_event(patient, facility, period, visit):
    return QualityMeasureEvent(
        patient=patient,
        facility=facility,
        period=period,
        results=(
            MeasureResult(
                measure_id="CMS122v11",
                version_specific_id="2c928085-7198-38ee-0171-9d78a0d406f5",
                title="Diabetes: Hemoglobin A1c Poor Control",
                initial_population=True,
                denominator=True,
                numerator=True,
            ),
        ),
        encounters=(visit,),
        diagnoses=(Diagnosis(code="E11.9", description="Type 2 diabetes"),),
    )


@pytest.fixture
def destination():
    return Destination(
        name="state-registry",
        endpoint="https://registry.example.org/hl7",
        receiving_application="STATE_IIS",
        receiving_facility="OHDH",
        credentials=Credentials(api_key="abc123"),
    )


@pytest.fixture
def make_ctx(mapper, destination):
    """Build a BuildContext for a message type."""
    def _make(message_type: MessageType, control_id: str = "CTRL0001",
              substitute_unknown: frozenset = frozenset(), now: datetime = NOW):
        return BuildContext(
            mapper=mapper,
            message_type=message_type,
            control_id=control_id,
            now=now,
            destination=destination,
            sending_application="AEGIS",
            substitute_unknown=substitute_unknown,
        )
    return _make
