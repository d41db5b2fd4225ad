"""CDA section builders.

Each section kind has a SectionSpec: its template ids, LOINC section code,
title, a check for whether the event carries data for it, and a fill
function adding the narrative table and structured entries. Entry ids are
derived from the message control id so documents are reproducible.
"""

from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Callable
from xml.etree import ElementTree as ET

from ..context import BuildContext
from ..models import AggregateMeasureResult, LabResult, MeasureResult
from ..vocab.tables import CodeTriple
from .base import (
    ACT_CODE_OID,
    CMS_MEASURE_OID,
    NULL_FLAVOR_SYSTEMS,
    SDTC_NS,
    XSI_NS,
    act_code,
    add_code,
    add_interval,
    add_narrative_table,
    add_provider_id,
    add_template_id,
    add_text,
    add_time,
    loinc,
    snomed,
    sub,
    tag,
)

PROBLEM_CODE = snomed("55607006", "Problem")
DIAGNOSIS_CODE = loinc("29308-4", "Diagnosis")
OCCUPATION_CODE = loinc("11341-5", "History of Occupation")
PERFORMANCE_RATE_CODE = loinc("72510-1", "Performance Rate")
OBSERVATION_PARAMETERS_CODE = snomed("252116004", "Observation Parameters")

# Population criteria in reporting order: (attribute, ActCode, display)
POPULATIONS = [
    ("initial_population", "IPOP", "Initial Population"),
    ("denominator", "DENOM", "Denominator"),
    ("denominator_exclusion", "DENEX", "Denominator Exclusion"),
    ("numerator", "NUMER", "Numerator"),
    ("denominator_exception", "DENEXCEP", "Denominator Exception"),
]

# Lab statuses still awaiting a result
PENDING_RESULT_STATUSES = ("I", "O")


@dataclass(frozen=True)
class SectionSpec:
    """How one kind of section is built."""
    kind: str
    title: str
    code: CodeTriple
    template_ids: tuple[tuple[str, str | None], ...]
    has_data: Callable[[Any], bool]
    fill: Callable[[ET.Element, Any, BuildContext], None]


def _display(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, datetime):
        return value.strftime("%Y-%m-%d %H:%M")
    if isinstance(value, date):
        return value.strftime("%Y-%m-%d")
    return str(value)


def _entry(section: ET.Element, type_code: str | None = None) -> ET.Element:
    return sub(section, "entry", typeCode=type_code)


def _value(parent: ET.Element, xsi_type: str, **attrs: str) -> ET.Element:
    elem = ET.SubElement(parent, tag("value"), {f"{{{XSI_NS}}}type": xsi_type})
    for key, val in attrs.items():
        elem.set(key, val)
    return elem


def _visit(event: Any):
    return getattr(event, "visit", None)


def _facility_oid(event: Any) -> str:
    return event.facility.oid


# --- Encounters ---


def _fill_encounters(section: ET.Element, event: Any, ctx: BuildContext) -> None:
    visit = event.visit
    patient_class = ctx.code(visit.patient_class, "patient_class", "encounters", "visit.patient_class")
    add_narrative_table(
        section,
        ["Visit", "Class", "Admitted", "Discharged", "Location"],
        [[visit.visit_number, patient_class.display, _display(visit.admit_time),
          _display(visit.discharge_time), visit.location]],
    )
    encounter = sub(_entry(section, "DRIV"), "encounter", classCode="ENC", moodCode="EVN")
    add_template_id(encounter, "2.16.840.1.113883.10.20.22.4.49", "2015-08-01")
    sub(encounter, "id", root=_facility_oid(event), extension=visit.visit_number)
    add_code(encounter, patient_class)
    add_interval(encounter, visit.admit_time, visit.discharge_time)
    if visit.attending:
        performer = sub(encounter, "performer")
        entity = sub(performer, "assignedEntity")
        add_provider_id(entity, visit.attending)
    if visit.disposition:
        disposition = ctx.code(
            visit.disposition, "discharge_disposition", "encounters", "visit.disposition"
        )
        if disposition.system not in NULL_FLAVOR_SYSTEMS:
            ET.SubElement(encounter, f"{{{SDTC_NS}}}dischargeDispositionCode", {
                "code": disposition.code,
                "codeSystem": disposition.system_oid,
                "displayName": disposition.display,
            })


# --- Reason for visit ---


def _has_reason(event: Any) -> bool:
    visit = _visit(event)
    return bool(getattr(event, "trigger", None) or (visit and visit.chief_complaint))


def _fill_reason_for_visit(section: ET.Element, event: Any, ctx: BuildContext) -> None:
    visit = _visit(event)
    trigger = getattr(event, "trigger", None)
    rows = []
    if visit and visit.chief_complaint:
        rows.append(["Chief complaint", visit.chief_complaint])
    if trigger:
        rows.append(["Reportable trigger", f"{trigger.display} ({trigger.code})"])
    add_narrative_table(section, ["Reason", "Detail"], rows)

    if trigger is None:
        return
    value = ctx.standard_code(
        trigger.code, trigger.display, trigger.code_system, "reason_for_visit", "trigger.code"
    )
    observation = sub(_entry(section), "observation", classCode="OBS", moodCode="EVN")
    add_template_id(observation, "2.16.840.1.113883.10.20.22.4.4", "2015-08-01")
    add_template_id(observation, "2.16.840.1.113883.10.20.15.2.3.3", "2016-12-01")
    sub(observation, "id", root=ctx.stable_id("trigger"))
    add_code(observation, DIAGNOSIS_CODE)
    sub(observation, "statusCode", code="completed")
    add_interval(observation, trigger.triggered_at)
    value_elem = add_code(observation, value, name="value", xsi_type="CD")
    if trigger.value_set_oid:
        value_elem.set(f"{{{SDTC_NS}}}valueSet", trigger.value_set_oid)


# --- Problems ---


def _has_problems(event: Any) -> bool:
    return bool(getattr(event, "diagnoses", ()) or getattr(event, "condition", None))


def _problem_concern(
    section: ET.Element,
    ctx: BuildContext,
    key: str,
    value: CodeTriple,
    onset: datetime | None,
) -> None:
    act = sub(_entry(section), "act", classCode="ACT", moodCode="EVN")
    add_template_id(act, "2.16.840.1.113883.10.20.22.4.3", "2015-08-01")
    sub(act, "id", root=ctx.stable_id("concern", key))
    sub(act, "code", code="CONC", codeSystem="2.16.840.1.113883.5.6", displayName="Concern")
    sub(act, "statusCode", code="active")
    add_interval(act, onset)

    relationship = sub(act, "entryRelationship", typeCode="SUBJ")
    observation = sub(relationship, "observation", classCode="OBS", moodCode="EVN")
    add_template_id(observation, "2.16.840.1.113883.10.20.22.4.4", "2015-08-01")
    sub(observation, "id", root=ctx.stable_id("problem", key))
    add_code(observation, PROBLEM_CODE)
    sub(observation, "statusCode", code="completed")
    add_interval(observation, onset)
    add_code(observation, value, name="value", xsi_type="CD")


def _fill_problems(section: ET.Element, event: Any, ctx: BuildContext) -> None:
    diagnoses = list(getattr(event, "diagnoses", ()))
    condition = getattr(event, "condition", None)

    rows = [[d.code, d.description, _display(d.diagnosed_at)] for d in diagnoses]
    if condition:
        rows.append([condition.code, f"{condition.display} (reportable)", ""])
    add_narrative_table(section, ["Code", "Problem", "Onset"], rows)

    for index, diagnosis in enumerate(diagnoses):
        value = ctx.standard_code(
            diagnosis.code, diagnosis.description, diagnosis.code_system,
            "problems", f"diagnoses[{index}].code",
        )
        _problem_concern(section, ctx, f"dx-{index}", value, diagnosis.diagnosed_at)
    if condition:
        value = ctx.standard_code(
            condition.code, condition.display, condition.code_system,
            "problems", "condition.code",
        )
        _problem_concern(section, ctx, "condition", value, None)


# --- Results ---


def _final_results(event: Any) -> list[tuple[int, LabResult]]:
    """Final results paired with their position in ``event.lab_results``."""
    return [
        (index, r) for index, r in enumerate(getattr(event, "lab_results", ()))
        if r.status not in PENDING_RESULT_STATUSES
    ]


def _pending_results(event: Any) -> list[tuple[int, LabResult]]:
    return [
        (index, r) for index, r in enumerate(getattr(event, "lab_results", ()))
        if r.status in PENDING_RESULT_STATUSES
    ]


def _fill_results(section: ET.Element, event: Any, ctx: BuildContext) -> None:
    results = _final_results(event)
    add_narrative_table(
        section,
        ["Test", "Result", "Units", "Range", "Date"],
        [[r.name, r.value, r.units, r.reference_range, _display(r.observed_at)] for _, r in results],
    )
    for index, result in results:
        field_path = f"lab_results[{index}]"
        observation = sub(_entry(section, "DRIV"), "observation", classCode="OBS", moodCode="EVN")
        add_template_id(observation, "2.16.840.1.113883.10.20.22.4.2", "2015-08-01")
        sub(observation, "id", root=ctx.stable_id("result", index))
        add_code(observation, ctx.standard_code(
            result.loinc_code, result.name, "loinc", "results", f"{field_path}.loinc_code"
        ))
        sub(observation, "statusCode", code="completed")
        add_time(observation, "effectiveTime", result.observed_at)

        if result.value_type == "NM":
            _value(observation, "PQ", value=result.value, unit=result.units or "1")
        elif result.value_type in ("CE", "CWE") and result.value_code:
            add_code(observation, ctx.standard_code(
                result.value_code, result.value, result.value_code_system,
                "results", f"{field_path}.value_code",
            ), name="value", xsi_type="CD")
        else:
            _value(observation, "ST").text = result.value

        interpretation = ctx.optional_code(
            result.interpretation, "interpretation", "results", f"{field_path}.interpretation"
        )
        if interpretation:
            add_code(observation, interpretation, name="interpretationCode")
        if result.reference_range:
            reference = sub(observation, "referenceRange")
            observation_range = sub(reference, "observationRange")
            add_text(observation_range, "text", result.reference_range)


# --- Medications ---


def _fill_medications(section: ET.Element, event: Any, ctx: BuildContext) -> None:
    medications = list(event.medications)
    add_narrative_table(
        section,
        ["Medication", "Dose", "Start", "Stop"],
        [[m.name, m.dose, _display(m.started_at), _display(m.stopped_at)] for m in medications],
    )
    for index, medication in enumerate(medications):
        field_path = f"medications[{index}]"
        administration = sub(
            _entry(section, "DRIV"), "substanceAdministration", classCode="SBADM", moodCode="EVN"
        )
        add_template_id(administration, "2.16.840.1.113883.10.20.22.4.16", "2014-06-09")
        sub(administration, "id", root=ctx.stable_id("medication", index))
        sub(administration, "statusCode", code="completed" if medication.stopped_at else "active")
        add_interval(administration, medication.started_at, medication.stopped_at, xsi_type="IVL_TS")
        route = ctx.optional_code(medication.route, "route", "medications", f"{field_path}.route")
        if route:
            add_code(administration, route, name="routeCode")

        consumable = sub(administration, "consumable")
        product = sub(consumable, "manufacturedProduct", classCode="MANU")
        add_template_id(product, "2.16.840.1.113883.10.20.22.4.23", "2014-06-09")
        material = sub(product, "manufacturedMaterial")
        add_code(material, ctx.standard_code(
            medication.rxnorm_code, medication.name, "rxnorm", "medications", f"{field_path}.rxnorm_code"
        ))


# --- Immunizations ---


def _fill_immunizations(section: ET.Element, event: Any, ctx: BuildContext) -> None:
    immunizations = list(event.immunizations)
    vaccines = [
        ctx.code(imm.cvx, "cvx", "immunizations", f"immunizations[{i}].cvx")
        for i, imm in enumerate(immunizations)
    ]
    add_narrative_table(
        section,
        ["Vaccine", "Date", "Lot"],
        [[vaccine.display, _display(imm.administered_at), imm.lot_number]
         for vaccine, imm in zip(vaccines, immunizations)],
    )
    for index, (vaccine, immunization) in enumerate(zip(vaccines, immunizations)):
        field_path = f"immunizations[{index}]"
        administration = sub(
            _entry(section, "DRIV"), "substanceAdministration",
            classCode="SBADM", moodCode="EVN", negationInd="false",
        )
        add_template_id(administration, "2.16.840.1.113883.10.20.22.4.52", "2015-08-01")
        sub(administration, "id", root=ctx.stable_id("immunization", index))
        sub(administration, "statusCode", code="completed")
        add_time(administration, "effectiveTime", immunization.administered_at)
        route = ctx.optional_code(immunization.route, "route", "immunizations", f"{field_path}.route")
        if route:
            add_code(administration, route, name="routeCode")

        consumable = sub(administration, "consumable")
        product = sub(consumable, "manufacturedProduct", classCode="MANU")
        add_template_id(product, "2.16.840.1.113883.10.20.22.4.54", "2014-06-09")
        material = sub(product, "manufacturedMaterial")
        add_code(material, vaccine)
        add_text(material, "lotNumberText", immunization.lot_number)
        manufacturer = ctx.optional_code(immunization.mvx, "mvx", "immunizations", f"{field_path}.mvx")
        if manufacturer:
            organization = sub(product, "manufacturerOrganization")
            add_text(organization, "name", manufacturer.display)


# --- Social history ---


def _fill_social_history(section: ET.Element, event: Any, ctx: BuildContext) -> None:
    patient = event.patient
    add_narrative_table(
        section, ["Occupation", "Employer"], [[patient.occupation, patient.employer]]
    )
    observation = sub(_entry(section, "DRIV"), "observation", classCode="OBS", moodCode="EVN")
    add_template_id(observation, "2.16.840.1.113883.10.20.22.4.38", "2015-08-01")
    sub(observation, "id", root=ctx.stable_id("occupation"))
    add_code(observation, OCCUPATION_CODE)
    sub(observation, "statusCode", code="completed")
    _value(observation, "ST").text = patient.occupation


# --- Plan of treatment ---


def _fill_plan_of_treatment(section: ET.Element, event: Any, ctx: BuildContext) -> None:
    pending = _pending_results(event)
    add_narrative_table(
        section, ["Pending test", "Ordered"], [[r.name, _display(r.observed_at)] for _, r in pending]
    )
    for index, result in pending:
        observation = sub(_entry(section), "observation", classCode="OBS", moodCode="RQO")
        add_template_id(observation, "2.16.840.1.113883.10.20.22.4.44", "2014-06-09")
        sub(observation, "id", root=ctx.stable_id("planned", index))
        add_code(observation, ctx.standard_code(
            result.loinc_code, result.name, "loinc", "plan_of_treatment", f"lab_results[{index}].loinc_code"
        ))
        sub(observation, "statusCode", code="active")
        add_time(observation, "effectiveTime", result.observed_at)


# --- Quality measures ---


def _measure_reference(organizer: ET.Element, result: MeasureResult | AggregateMeasureResult) -> None:
    reference = sub(organizer, "reference", typeCode="REFR")
    document = sub(reference, "externalDocument", classCode="DOC", moodCode="EVN")
    sub(document, "id", root=CMS_MEASURE_OID, extension=result.version_specific_id)
    add_text(document, "text", result.title)


def _fill_patient_measures(section: ET.Element, event: Any, ctx: BuildContext) -> None:
    add_narrative_table(
        section,
        ["Measure", "Title"] + [display for _, _, display in POPULATIONS],
        [[r.measure_id, r.title] + ["Yes" if getattr(r, attr) else "No" for attr, _, _ in POPULATIONS]
         for r in event.results],
    )
    for index, result in enumerate(event.results):
        organizer = sub(_entry(section), "organizer", classCode="CLUSTER", moodCode="EVN")
        add_template_id(organizer, "2.16.840.1.113883.10.20.24.3.98")
        add_template_id(organizer, "2.16.840.1.113883.10.20.24.3.97")
        sub(organizer, "id", root=ctx.stable_id("measure", index))
        sub(organizer, "statusCode", code="completed")
        _measure_reference(organizer, result)


def _aggregate_count(parent: ET.Element, count: int) -> None:
    relationship = sub(parent, "entryRelationship", typeCode="SUBJ", inversionInd="true")
    observation = sub(relationship, "observation", classCode="OBS", moodCode="EVN")
    add_template_id(observation, "2.16.840.1.113883.10.20.27.3.3")
    add_code(observation, act_code("MSRAGG", "rate aggregation"))
    _value(observation, "INT", value=str(count))
    sub(observation, "methodCode", code="COUNT", codeSystem="2.16.840.1.113883.5.84",
        displayName="Count")


def _fill_aggregate_measures(section: ET.Element, event: Any, ctx: BuildContext) -> None:
    add_narrative_table(
        section,
        ["Measure", "Title"] + [display for _, _, display in POPULATIONS] + ["Performance Rate"],
        [[r.measure_id, r.title]
         + [str(getattr(r, attr)) for attr, _, _ in POPULATIONS]
         + ["" if r.performance_rate is None else f"{r.performance_rate:.4f}"]
         for r in event.results],
    )
    for index, result in enumerate(event.results):
        organizer = sub(_entry(section), "organizer", classCode="CLUSTER", moodCode="EVN")
        add_template_id(organizer, "2.16.840.1.113883.10.20.24.3.98")
        add_template_id(organizer, "2.16.840.1.113883.10.20.27.3.1", "2016-09-01")
        sub(organizer, "id", root=ctx.stable_id("measure", index))
        sub(organizer, "statusCode", code="completed")
        _measure_reference(organizer, result)

        for attr, code, display in POPULATIONS:
            component = sub(organizer, "component")
            observation = sub(component, "observation", classCode="OBS", moodCode="EVN")
            add_template_id(observation, "2.16.840.1.113883.10.20.27.3.5", "2016-09-01")
            add_code(observation, act_code("ASSERTION", "Assertion"))
            sub(observation, "statusCode", code="completed")
            _value(observation, "CD", code=code, codeSystem=ACT_CODE_OID, displayName=display)
            _aggregate_count(observation, getattr(result, attr))

        component = sub(organizer, "component")
        observation = sub(component, "observation", classCode="OBS", moodCode="EVN")
        add_template_id(observation, "2.16.840.1.113883.10.20.27.3.14", "2016-09-01")
        add_code(observation, PERFORMANCE_RATE_CODE)
        sub(observation, "statusCode", code="completed")
        rate = result.performance_rate
        if rate is None:
            _value(observation, "REAL").set("nullFlavor", "NA")
        else:
            _value(observation, "REAL", value=f"{rate:.6f}")


def _fill_reporting_parameters(section: ET.Element, event: Any, ctx: BuildContext) -> None:
    period = event.period
    add_narrative_table(
        section, ["Reporting period start", "Reporting period end"],
        [[_display(period.start), _display(period.end)]],
    )
    act = sub(_entry(section, "DRIV"), "act", classCode="ACT", moodCode="EVN")
    add_template_id(act, "2.16.840.1.113883.10.20.17.3.8")
    sub(act, "id", root=ctx.stable_id("reporting-parameters"))
    add_code(act, OBSERVATION_PARAMETERS_CODE)
    add_interval(act, period.start, period.end)


def _has_patient_data(event: Any) -> bool:
    return bool(event.encounters or event.diagnoses)


def _fill_patient_data(section: ET.Element, event: Any, ctx: BuildContext) -> None:
    rows = [[f"Encounter {v.visit_number}", _display(v.admit_time)] for v in event.encounters]
    rows += [[f"Diagnosis {d.code} {d.description}".strip(), _display(d.diagnosed_at)]
             for d in event.diagnoses]
    add_narrative_table(section, ["Data element", "Date"], rows)

    for index, visit in enumerate(event.encounters):
        encounter = sub(_entry(section, "DRIV"), "encounter", classCode="ENC", moodCode="EVN")
        add_template_id(encounter, "2.16.840.1.113883.10.20.24.3.23", "2019-12-01")
        sub(encounter, "id", root=_facility_oid(event), extension=visit.visit_number)
        add_code(encounter, ctx.code(
            visit.patient_class, "patient_class", "patient_data", f"encounters[{index}].patient_class"
        ))
        sub(encounter, "statusCode", code="completed")
        add_interval(encounter, visit.admit_time, visit.discharge_time)

    for index, diagnosis in enumerate(event.diagnoses):
        observation = sub(_entry(section, "DRIV"), "observation", classCode="OBS", moodCode="EVN")
        add_template_id(observation, "2.16.840.1.113883.10.20.24.3.135", "2019-12-01")
        sub(observation, "id", root=ctx.stable_id("diagnosis", index))
        add_code(observation, DIAGNOSIS_CODE)
        sub(observation, "statusCode", code="completed")
        add_interval(observation, diagnosis.diagnosed_at)
        add_code(observation, ctx.standard_code(
            diagnosis.code, diagnosis.description, diagnosis.code_system,
            "patient_data", f"diagnoses[{index}].code",
        ), name="value", xsi_type="CD")


SECTIONS: dict[str, SectionSpec] = {spec.kind: spec for spec in (
    SectionSpec(
        "encounters", "Encounters", loinc("46240-8", "History of encounters"),
        (("2.16.840.1.113883.10.20.22.2.22.1", "2015-08-01"),),
        lambda e: _visit(e) is not None, _fill_encounters,
    ),
    SectionSpec(
        "reason_for_visit", "Reason for Visit", loinc("29299-5", "Reason for visit"),
        (("2.16.840.1.113883.10.20.22.2.12", None),),
        _has_reason, _fill_reason_for_visit,
    ),
    SectionSpec(
        "problems", "Problems", loinc("11450-4", "Problem list"),
        (("2.16.840.1.113883.10.20.22.2.5.1", "2015-08-01"),),
        _has_problems, _fill_problems,
    ),
    SectionSpec(
        "medications", "Medications Administered", loinc("10160-0", "History of medication use"),
        (("2.16.840.1.113883.10.20.22.2.1.1", "2014-06-09"),),
        lambda e: bool(getattr(e, "medications", ())), _fill_medications,
    ),
    SectionSpec(
        "results", "Results", loinc("30954-2", "Relevant diagnostic tests and/or laboratory data"),
        (("2.16.840.1.113883.10.20.22.2.3.1", "2015-08-01"),),
        lambda e: bool(_final_results(e)), _fill_results,
    ),
    SectionSpec(
        "immunizations", "Immunizations", loinc("11369-6", "History of immunization"),
        (("2.16.840.1.113883.10.20.22.2.2.1", "2015-08-01"),),
        lambda e: bool(getattr(e, "immunizations", ())), _fill_immunizations,
    ),
    SectionSpec(
        "social_history", "Social History", loinc("29762-2", "Social history"),
        (("2.16.840.1.113883.10.20.22.2.17", "2015-08-01"),),
        lambda e: bool(e.patient.occupation), _fill_social_history,
    ),
    SectionSpec(
        "plan_of_treatment", "Plan of Treatment", loinc("18776-5", "Plan of care note"),
        (("2.16.840.1.113883.10.20.22.2.10", "2014-06-09"),),
        lambda e: bool(_pending_results(e)), _fill_plan_of_treatment,
    ),
    SectionSpec(
        "measure", "Measure Section", loinc("55186-1", "Measure document"),
        (("2.16.840.1.113883.10.20.24.2.2", None), ("2.16.840.1.113883.10.20.24.2.3", None)),
        lambda e: bool(e.results), _fill_patient_measures,
    ),
    SectionSpec(
        "aggregate_measure", "Measure Section", loinc("55186-1", "Measure document"),
        (("2.16.840.1.113883.10.20.24.2.2", None),
         ("2.16.840.1.113883.10.20.27.2.1", "2017-06-01")),
        lambda e: bool(e.results), _fill_aggregate_measures,
    ),
    SectionSpec(
        "reporting_parameters", "Reporting Parameters", loinc("55187-9", "Reporting parameters"),
        (("2.16.840.1.113883.10.20.17.2.1", None),),
        lambda e: e.period is not None, _fill_reporting_parameters,
    ),
    SectionSpec(
        "patient_data", "Patient Data", loinc("55188-7", "Patient data"),
        (("2.16.840.1.113883.10.20.17.2.4", None), ("2.16.840.1.113883.10.20.24.2.1", "2019-12-01")),
        _has_patient_data, _fill_patient_data,
    ),
)}


def get_section_spec(kind: str) -> SectionSpec:
    try:
        return SECTIONS[kind]
    except KeyError:
        raise ValueError(f"Unknown CDA section kind: {kind}") from None


def build_section(
    kind: str,
    event: Any,
    ctx: BuildContext,
    required: bool = True,
) -> ET.Element | None:
    """Build one ``<section>`` element.

    A section without data is omitted when optional and emitted with
    ``nullFlavor="NI"`` when required. A mapping failure or missing
    required field inside the section propagates with the section kind.

    Returns:
        The section element, or None if it was omitted
    """
    spec = get_section_spec(kind)
    has_data = spec.has_data(event)
    if not has_data and not required:
        return None

    section = ET.Element(tag("section"))
    if not has_data:
        section.set("nullFlavor", "NI")
    for root, extension in spec.template_ids:
        add_template_id(section, root, extension)
    add_code(section, spec.code)
    add_text(section, "title", spec.title)

    if not has_data:
        add_text(section, "text", "No Information")
        return section

    spec.fill(section, event, ctx)
    return section
