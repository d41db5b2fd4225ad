"""CDA R2 element helpers shared by section and document builders.

Elements are built with xml.etree.ElementTree in the urn:hl7-org:v3
namespace and pretty-printed through minidom, so output for the same
input is byte-identical.
"""

from datetime import date, datetime
from xml.dom import minidom
from xml.etree import ElementTree as ET

from ..hl7.encoding import format_date, format_ts
from ..models import Address, Provider
from ..vocab.tables import CodeTriple

# CDA namespaces
CDA_NS = "urn:hl7-org:v3"
SDTC_NS = "urn:hl7-org:sdtc"
XSI_NS = "http://www.w3.org/2001/XMLSchema-instance"

# Code system OIDs
LOINC_OID = "2.16.840.1.113883.6.1"
SNOMED_OID = "2.16.840.1.113883.6.96"
RXNORM_OID = "2.16.840.1.113883.6.88"
CVX_OID = "2.16.840.1.113883.12.292"
ACT_CODE_OID = "2.16.840.1.113883.5.4"
CONFIDENTIALITY_OID = "2.16.840.1.113883.5.25"
NPI_OID = "2.16.840.1.113883.4.6"
CMS_MEASURE_OID = "2.16.840.1.113883.4.738"

CDA_TYPE_ID = ("2.16.840.1.113883.1.3", "POCD_HD000040")
US_REALM_HEADER = ("2.16.840.1.113883.10.20.22.1.1", "2015-08-01")

# Code systems whose codes are null flavors rather than values
NULL_FLAVOR_SYSTEMS = ("NULLFL", "NullFlavor")


def tag(name: str) -> str:
    """Qualify a CDA element name."""
    return f"{{{CDA_NS}}}{name}"


def register_namespaces() -> None:
    ET.register_namespace("", CDA_NS)
    ET.register_namespace("sdtc", SDTC_NS)
    ET.register_namespace("xsi", XSI_NS)


def sub(parent: ET.Element, name: str, **attrs: str | None) -> ET.Element:
    """Add a CDA child element, skipping attributes whose value is None."""
    return ET.SubElement(
        parent, tag(name), {k: str(v) for k, v in attrs.items() if v is not None}
    )


def add_text(parent: ET.Element, name: str, text: str | None) -> ET.Element | None:
    """Add an element holding text; absent text adds nothing."""
    if not text:
        return None
    elem = sub(parent, name)
    elem.text = str(text)
    return elem


def add_template_id(parent: ET.Element, root: str, extension: str | None = None) -> ET.Element:
    return sub(parent, "templateId", root=root, extension=extension)


def add_code(
    parent: ET.Element,
    triple: CodeTriple,
    name: str = "code",
    xsi_type: str | None = None,
) -> ET.Element:
    """Add a coded element (code, value, raceCode...).

    A triple from a null-flavor system renders as ``nullFlavor="UNK"``
    instead of a code.
    """
    attrs = {}
    if xsi_type:
        attrs[f"{{{XSI_NS}}}type"] = xsi_type
    elem = ET.SubElement(parent, tag(name), attrs)
    if triple.system in NULL_FLAVOR_SYSTEMS:
        elem.set("nullFlavor", triple.code)
        return elem
    elem.set("code", triple.code)
    if triple.system_oid:
        elem.set("codeSystem", triple.system_oid)
    if triple.system:
        elem.set("codeSystemName", triple.system)
    if triple.display:
        elem.set("displayName", triple.display)
    return elem


def loinc(code: str, display: str) -> CodeTriple:
    return CodeTriple(code=code, display=display, system="LOINC", system_oid=LOINC_OID)


def snomed(code: str, display: str) -> CodeTriple:
    return CodeTriple(code=code, display=display, system="SNOMED CT", system_oid=SNOMED_OID)


def act_code(code: str, display: str) -> CodeTriple:
    return CodeTriple(code=code, display=display, system="ActCode", system_oid=ACT_CODE_OID)


def cda_time(value: datetime | date | None) -> str | None:
    """CDA TS value: YYYYMMDDHHMMSS for datetimes, YYYYMMDD for dates."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return format_ts(value)
    return format_date(value)


def add_time(parent: ET.Element, name: str, value: datetime | date | None) -> ET.Element:
    """Add a TS element; an unknown time is ``nullFlavor="UNK"``."""
    if value is None:
        return sub(parent, name, nullFlavor="UNK")
    return sub(parent, name, value=cda_time(value))


def add_interval(
    parent: ET.Element,
    low: datetime | date | None,
    high: datetime | date | None = None,
    name: str = "effectiveTime",
    xsi_type: str | None = None,
) -> ET.Element:
    """Add an IVL_TS with low and (if known) high."""
    attrs = {f"{{{XSI_NS}}}type": xsi_type} if xsi_type else {}
    elem = ET.SubElement(parent, tag(name), attrs)
    add_time(elem, "low", low)
    if high is not None:
        add_time(elem, "high", high)
    return elem


def add_address(parent: ET.Element, address: Address | None, use: str = "H") -> ET.Element:
    if address is None:
        return sub(parent, "addr", nullFlavor="UNK")
    addr = sub(parent, "addr", use=use)
    add_text(addr, "streetAddressLine", address.street)
    add_text(addr, "city", address.city)
    add_text(addr, "state", address.state)
    add_text(addr, "postalCode", address.zip_code)
    add_text(addr, "county", address.county)
    add_text(addr, "country", address.country)
    return addr


def add_telecom(parent: ET.Element, phone: str = "", email: str = "", use: str = "HP") -> None:
    if phone:
        sub(parent, "telecom", use=use, value=f"tel:{phone}")
    if email:
        sub(parent, "telecom", value=f"mailto:{email}")
    if not phone and not email:
        sub(parent, "telecom", nullFlavor="UNK")


def add_person_name(parent: ET.Element, last: str, first: str = "", middle: str = "") -> ET.Element:
    name = sub(parent, "name")
    add_text(name, "given", first)
    add_text(name, "given", middle)
    add_text(name, "family", last)
    return name


def add_provider_id(parent: ET.Element, provider: Provider | None) -> ET.Element:
    """An NPI identifier, or ``nullFlavor="NI"`` when there is no provider."""
    if provider is None or not provider.npi:
        return sub(parent, "id", nullFlavor="NI")
    return sub(parent, "id", root=NPI_OID, extension=provider.npi)


def add_narrative_table(section: ET.Element, headers: list[str], rows: list[list[str]]) -> ET.Element:
    """Add the human-readable ``<text>`` table of a section."""
    text = sub(section, "text")
    table = sub(text, "table", border="1", width="100%")
    thead = sub(table, "thead")
    tr = sub(thead, "tr")
    for header in headers:
        th = sub(tr, "th")
        th.text = header
    tbody = sub(table, "tbody")
    for row in rows:
        tr = sub(tbody, "tr")
        for cell in row:
            td = sub(tr, "td")
            td.text = cell
    return text


def to_xml_string(root: ET.Element) -> str:
    """Convert element tree to formatted XML string."""
    rough_string = ET.tostring(root, encoding="unicode")
    reparsed = minidom.parseString(rough_string)
    return reparsed.toprettyxml(indent="  ", encoding=None)
