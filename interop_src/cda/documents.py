"""CDA R2 document assembly for eICR, QRDA Category I and QRDA Category III.

Header elements are written in the order CDA requires. Section order comes
from the document template. Section content is built by
``interop_src.cda.sections``.

References:
    HL7 CDA R2 IG: Public Health Case Report (eICR) R1.1
    HL7 CDA R2 IG: QRDA Category I R1 STU 5.2, QRDA Category III R1 STU 2.1
"""

import logging
from dataclasses import dataclass
from typing import Any
from xml.etree import ElementTree as ET

from ..context import BuildContext
from ..errors import IncompleteEventError
from ..models import MessageType, Provider, ReportType
from ..vocab.tables import CodeTriple
from .base import (
    CDA_NS,
    CDA_TYPE_ID,
    CONFIDENTIALITY_OID,
    US_REALM_HEADER,
    XSI_NS,
    add_address,
    add_code,
    add_interval,
    add_person_name,
    add_provider_id,
    add_telecom,
    add_template_id,
    add_text,
    add_time,
    loinc,
    register_namespaces,
    sub,
    tag,
    to_xml_string,
)
from .sections import build_section

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DocumentTemplate:
    """Header and section layout for one CDA document type.

    ``sections`` lists ``(kind, required)`` in document order. Required
    sections without data are emitted with a null flavor; optional ones are
    left out.
    """
    message_type: MessageType
    template_ids: tuple[tuple[str, str | None], ...]
    code: CodeTriple
    title: str
    sections: tuple[tuple[str, bool], ...]
    has_patient: bool = True
    versioned: bool = False
    requires_legal_authenticator: bool = False
    service_event: bool = False

    @property
    def section_kinds(self) -> list[str]:
        return [kind for kind, _ in self.sections]

    def conforms(self, section_kinds: list[str]) -> bool:
        """True if sections appear in template order with every required one present."""
        expected = iter(self.sections)
        for kind in section_kinds:
            for template_kind, required in expected:
                if template_kind == kind:
                    break
                if required:
                    return False
            else:
                return False
        return all(not required for _, required in expected)


DOCUMENT_TEMPLATES: dict[MessageType, DocumentTemplate] = {
    MessageType.EICR: DocumentTemplate(
        message_type=MessageType.EICR,
        template_ids=(
            US_REALM_HEADER,
            ("2.16.840.1.113883.10.20.15.2", "2016-12-01"),
        ),
        code=loinc("55751-2", "Public Health Case Report"),
        title="Initial Public Health Case Report",
        sections=(
            ("encounters", True),
            ("reason_for_visit", True),
            ("problems", True),
            ("medications", True),
            ("results", True),
            ("immunizations", False),
            ("social_history", True),
            ("plan_of_treatment", True),
        ),
        versioned=True,
    ),
    MessageType.QRDA_I: DocumentTemplate(
        message_type=MessageType.QRDA_I,
        template_ids=(
            US_REALM_HEADER,
            ("2.16.840.1.113883.10.20.24.1.1", "2019-12-01"),
            ("2.16.840.1.113883.10.20.24.1.2", "2019-12-01"),
        ),
        code=loinc("55182-0", "Quality Measure Report"),
        title="QRDA Incidence Report",
        sections=(
            ("measure", True),
            ("reporting_parameters", True),
            ("patient_data", True),
        ),
        service_event=True,
    ),
    MessageType.QRDA_III: DocumentTemplate(
        message_type=MessageType.QRDA_III,
        template_ids=(
            ("2.16.840.1.113883.10.20.27.1.1", "2017-06-01"),
            ("2.16.840.1.113883.10.20.27.1.2", "2020-12-01"),
        ),
        code=loinc("55184-6", "Quality Reporting Document Architecture Calculated Summary Report"),
        title="QRDA Calculated Summary Report",
        sections=(
            ("aggregate_measure", True),
            ("reporting_parameters", True),
        ),
        has_patient=False,
        requires_legal_authenticator=True,
        service_event=True,
    ),
}

REPORT_TYPE_TITLES = {
    ReportType.INITIAL: "",
    ReportType.UPDATE: " (Update)",
    ReportType.CANCEL: " (Cancel)",
}


def get_document_template(message_type: MessageType) -> DocumentTemplate:
    try:
        return DOCUMENT_TEMPLATES[message_type]
    except KeyError:
        raise ValueError(f"No CDA template for {message_type.value}") from None


class CDADocumentBuilder:
    """Builds one CDA document from a clinical event."""

    def __init__(self, template: DocumentTemplate):
        self.template = template

    def build(self, event: Any, ctx: BuildContext) -> tuple[ET.Element, list[str]]:
        """Build the document tree.

        Returns:
            The ClinicalDocument element and the section kinds it contains
        """
        self._check_required(event)

        root = self._create_cda_root()
        self._add_header(root, event, ctx)
        self._add_record_target(root, event, ctx)
        self._add_author(root, event, ctx)
        self._add_custodian(root, event)
        if self.template.requires_legal_authenticator:
            self._add_legal_authenticator(root, event.legal_authenticator, ctx)
        if self.template.service_event:
            self._add_documentation_of(root, event)
        if self.template.versioned and event.report_type != ReportType.INITIAL:
            self._add_related_document(root, event)
        if self.template.message_type == MessageType.EICR and getattr(event, "visit", None):
            self._add_component_of(root, event)

        section_kinds = self._add_body(root, event, ctx)
        return root, section_kinds

    def _check_required(self, event: Any) -> None:
        if not event.facility.oid:
            raise IncompleteEventError("custodian", "facility.oid")
        if self.template.has_patient and event.patient.date_of_birth is None:
            raise IncompleteEventError("recordTarget", "patient.date_of_birth")
        if self.template.message_type == MessageType.EICR:
            if getattr(event, "trigger", None) is None:
                raise IncompleteEventError("reason_for_visit", "trigger")
            if getattr(event, "condition", None) is None:
                raise IncompleteEventError("problems", "condition")
            if event.report_type != ReportType.INITIAL and not event.report_set_id:
                raise IncompleteEventError("setId", "report_set_id")
        if self.template.requires_legal_authenticator and event.legal_authenticator is None:
            raise IncompleteEventError("legalAuthenticator", "legal_authenticator")

    def _create_cda_root(self) -> ET.Element:
        """Create the CDA root element with namespaces."""
        register_namespaces()
        return ET.Element(
            tag("ClinicalDocument"),
            {f"{{{XSI_NS}}}schemaLocation": f"{CDA_NS} CDA.xsd"},
        )

    def _add_header(self, root: ET.Element, event: Any, ctx: BuildContext) -> None:
        """Add header elements up to (not including) recordTarget."""
        template = self.template
        sub(root, "realmCode", code="US")
        sub(root, "typeId", root=CDA_TYPE_ID[0], extension=CDA_TYPE_ID[1])
        for template_root, extension in template.template_ids:
            add_template_id(root, template_root, extension)
        sub(root, "id", root=event.facility.oid, extension=ctx.control_id)
        add_code(root, template.code)

        title = template.title
        if template.versioned:
            title += REPORT_TYPE_TITLES[event.report_type]
        add_text(root, "title", title)

        add_time(root, "effectiveTime", ctx.now)
        sub(root, "confidentialityCode", code="N", codeSystem=CONFIDENTIALITY_OID)
        sub(root, "languageCode", code="en-US")
        if template.versioned:
            # The first report of a set names the set after itself
            set_id = event.report_set_id or ctx.control_id
            sub(root, "setId", root=event.facility.oid, extension=set_id)
            sub(root, "versionNumber", value=str(event.report_version))

    def _add_record_target(self, root: ET.Element, event: Any, ctx: BuildContext) -> None:
        """Add patient (record target) information."""
        record_target = sub(root, "recordTarget")
        patient_role = sub(record_target, "patientRole")

        if not self.template.has_patient:
            sub(patient_role, "id", nullFlavor="NA")
            return

        patient = event.patient
        sub(patient_role, "id", root=event.facility.oid, extension=patient.mrn)
        add_address(patient_role, patient.address)
        add_telecom(patient_role, patient.phone, patient.email)

        person = sub(patient_role, "patient")
        add_person_name(person, patient.last_name, patient.first_name, patient.middle_name)

        if patient.gender:
            gender = ctx.code(patient.gender, "cda_gender", "recordTarget", "patient.gender")
        else:
            gender = ctx.mapper.unknown("cda_gender")
        add_code(person, gender, name="administrativeGenderCode")
        add_time(person, "birthTime", patient.date_of_birth)

        race = ctx.optional_code(patient.race, "race", "recordTarget", "patient.race")
        if race:
            add_code(person, race, name="raceCode")
        ethnicity = ctx.optional_code(patient.ethnicity, "ethnicity", "recordTarget", "patient.ethnicity")
        if ethnicity:
            add_code(person, ethnicity, name="ethnicGroupCode")

        if patient.guardian:
            guardian = sub(person, "guardian")
            add_code(guardian, ctx.code(
                patient.guardian.relationship, "relationship", "recordTarget",
                "patient.guardian.relationship",
            ))
            add_telecom(guardian, patient.guardian.phone)
            guardian_person = sub(guardian, "guardianPerson")
            add_person_name(guardian_person, patient.guardian.last_name, patient.guardian.first_name)

        if patient.preferred_language:
            communication = sub(person, "languageCommunication")
            sub(communication, "languageCode", code=patient.preferred_language)

    def _add_author(self, root: ET.Element, event: Any, ctx: BuildContext) -> None:
        """Add author; the sending system authors documents with no clinician."""
        author = sub(root, "author")
        add_time(author, "time", ctx.now)
        assigned_author = sub(author, "assignedAuthor")

        provider: Provider | None = getattr(event, "author", None)
        if provider:
            add_provider_id(assigned_author, provider)
        else:
            sub(assigned_author, "id", root=event.facility.oid, extension=ctx.sending_application)
        add_address(assigned_author, event.facility.address, use="WP")
        add_telecom(assigned_author, event.facility.phone, use="WP")

        if provider:
            person = sub(assigned_author, "assignedPerson")
            add_person_name(person, provider.last_name, provider.first_name)
        else:
            device = sub(assigned_author, "assignedAuthoringDevice")
            add_text(device, "softwareName", ctx.sending_application)

        org = sub(assigned_author, "representedOrganization")
        sub(org, "id", root=event.facility.oid)
        add_text(org, "name", event.facility.name)

    def _add_custodian(self, root: ET.Element, event: Any) -> None:
        """Add custodian (facility) information."""
        custodian = sub(root, "custodian")
        assigned_custodian = sub(custodian, "assignedCustodian")
        org = sub(assigned_custodian, "representedCustodianOrganization")
        sub(org, "id", root=event.facility.oid)
        add_text(org, "name", event.facility.name)
        add_telecom(org, event.facility.phone, use="WP")
        add_address(org, event.facility.address, use="WP")

    def _add_legal_authenticator(self, root: ET.Element, provider: Provider, ctx: BuildContext) -> None:
        legal = sub(root, "legalAuthenticator")
        add_time(legal, "time", ctx.now)
        sub(legal, "signatureCode", code="S")
        entity = sub(legal, "assignedEntity")
        add_provider_id(entity, provider)
        person = sub(entity, "assignedPerson")
        add_person_name(person, provider.last_name, provider.first_name)

    def _add_documentation_of(self, root: ET.Element, event: Any) -> None:
        """Add the care provision service event covering the reporting period."""
        documentation = sub(root, "documentationOf", typeCode="DOC")
        service_event = sub(documentation, "serviceEvent", classCode="PCPR")
        add_interval(service_event, event.period.start, event.period.end)

    def _add_related_document(self, root: ET.Element, event: Any) -> None:
        """Point an update or cancellation at the report it replaces."""
        related = sub(root, "relatedDocument", typeCode="RPLC")
        parent = sub(related, "parentDocument")
        sub(parent, "id", root=event.facility.oid, extension=event.report_set_id)
        sub(parent, "setId", root=event.facility.oid, extension=event.report_set_id)
        sub(parent, "versionNumber", value=str(max(event.report_version - 1, 1)))

    def _add_component_of(self, root: ET.Element, event: Any) -> None:
        """Add the encompassing encounter of a case report."""
        visit = event.visit
        component_of = sub(root, "componentOf")
        encounter = sub(component_of, "encompassingEncounter")
        sub(encounter, "id", root=event.facility.oid, extension=visit.visit_number)
        add_interval(encounter, visit.admit_time, visit.discharge_time)
        if visit.attending:
            responsible = sub(encounter, "responsibleParty")
            entity = sub(responsible, "assignedEntity")
            add_provider_id(entity, visit.attending)
        location = sub(encounter, "location")
        facility = sub(location, "healthCareFacility")
        sub(facility, "id", root=event.facility.oid, extension=event.facility.facility_id)
        provider_org = sub(facility, "serviceProviderOrganization")
        add_text(provider_org, "name", event.facility.name)
        add_address(provider_org, event.facility.address, use="WP")

    def _add_body(self, root: ET.Element, event: Any, ctx: BuildContext) -> list[str]:
        """Add sections in template order; returns the kinds emitted."""
        component = sub(root, "component")
        structured_body = sub(component, "structuredBody")
        emitted = []
        for kind, required in self.template.sections:
            section = build_section(kind, event, ctx, required=required)
            if section is None:
                logger.debug(f"Omitting empty optional section {kind}")
                continue
            sub(structured_body, "component").append(section)
            emitted.append(kind)
        return emitted


def build_document(message_type: MessageType, event: Any, ctx: BuildContext) -> tuple[str, list[str]]:
    """Build and serialize a CDA document.

    Returns:
        The XML string and the section kinds it contains
    """
    builder = CDADocumentBuilder(get_document_template(message_type))
    root, section_kinds = builder.build(event, ctx)
    return to_xml_string(root), section_kinds

