"""Tests for HL7 v2 message assembly: ADT, VXU and ORU."""

from dataclasses import replace

import pytest

from interop_src.errors import IncompleteEventError, MappingError
from interop_src.hl7.builders import (
    adt_observations,
    build_segment,
    classify_surveillance_category,
    result_orders,
    vaccine_observations,
)
from interop_src.hl7.messages import assemble, get_template, serialize
from interop_src.hl7.parser import segment_ids, split_segments
from interop_src.models import ImmunizationEvent, MessageType


def _segment(message: str, segment_id: str, occurrence: int = 0) -> list[str]:
    matches = [s for s in split_segments(message) if s.startswith(segment_id)]
    return matches[occurrence].split("|")


def _build(make_ctx, message_type, event) -> str:
    template = get_template(message_type)
    return serialize(assemble(template, event, make_ctx(message_type)))


class TestADT:
    """Tests for ADT visit notifications."""

    def test_a01_segment_order(self, make_ctx, encounter_event):
        message = _build(make_ctx, MessageType.ADT_A01, encounter_event)
        assert segment_ids(message) == ["MSH", "EVN", "PID", "PV1", "PV2", "OBX", "DG1", "DG1"]

    def test_a01_header(self, make_ctx, encounter_event):
        message = _build(make_ctx, MessageType.ADT_A01, encounter_event)
        assert message.startswith("MSH|^~\\&|AEGIS|")
        msh = _segment(message, "MSH")
        assert msh[6] == "20260115093000"
        assert msh[8] == "ADT^A01^ADT_A01"
        assert msh[9] == "CTRL0001"

    def test_a04_uses_a01_structure(self, make_ctx, encounter_event):
        message = _build(make_ctx, MessageType.ADT_A04, encounter_event)
        assert _segment(message, "MSH")[8] == "ADT^A04^ADT_A01"

    def test_pid_fields(self, make_ctx, encounter_event):
        message = _build(make_ctx, MessageType.ADT_A01, encounter_event)
        pid = _segment(message, "PID")
        assert pid[3].startswith("MRN001^")
        assert pid[3].endswith("^MR")
        assert pid[5].startswith("Smith^Jane")
        assert pid[7] == "19500201"
        assert pid[8] == "F"
        assert pid[10] == "2106-3^White^CDCREC"
        assert pid[22] == "2186-5^Not Hispanic or Latino^CDCREC"

    def test_pid_keeps_positions_without_race(self, make_ctx, encounter_event):
        patient = replace(encounter_event.patient, race=None, gender=None)
        event = replace(encounter_event, patient=patient)
        pid = _segment(_build(make_ctx, MessageType.ADT_A01, event), "PID")
        assert pid[7] == "19500201"
        assert pid[8] == ""
        assert pid[10] == ""

    def test_diagnoses_admitting_then_final(self, make_ctx, encounter_event):
        message = _build(make_ctx, MessageType.ADT_A01, encounter_event)
        first = _segment(message, "DG1", 0)
        second = _segment(message, "DG1", 1)
        assert first[1] == "1"
        assert first[3] == "A37^Whooping cough^I10"
        assert first[6] == "A"
        assert second[1] == "2"
        assert second[3] == "J45^Asthma^I10"
        assert second[6] == "F"

    def test_reported_age_observation(self, make_ctx, encounter_event):
        obx = _segment(_build(make_ctx, MessageType.ADT_A01, encounter_event), "OBX")
        assert obx[2] == "NM"
        assert obx[3].startswith("21612-7^")
        assert obx[5] == "75"

    def test_a03_requires_discharge_time(self, make_ctx, encounter_event):
        with pytest.raises(IncompleteEventError) as exc_info:
            _build(make_ctx, MessageType.ADT_A03, encounter_event)
        assert exc_info.value.unit_kind == "PV1"
        assert exc_info.value.missing_field == "visit.discharge_time"

    def test_missing_date_of_birth(self, make_ctx, encounter_event):
        patient = replace(encounter_event.patient, date_of_birth=None)
        event = replace(encounter_event, patient=patient)
        with pytest.raises(IncompleteEventError) as exc_info:
            _build(make_ctx, MessageType.ADT_A01, event)
        assert exc_info.value.unit_kind == "PID"

    def test_no_diagnoses_omits_dg1(self, make_ctx, encounter_event):
        event = replace(encounter_event, diagnoses=())
        assert "DG1" not in segment_ids(_build(make_ctx, MessageType.ADT_A01, event))


class TestVXU:
    """Tests for immunization updates."""

    def test_segment_order_with_guardian(self, make_ctx, immunization_event):
        message = _build(make_ctx, MessageType.VXU_V04, immunization_event)
        assert segment_ids(message) == [
            "MSH", "PID", "PD1", "NK1", "ORC", "RXA", "RXR", "OBX", "OBX",
        ]

    def test_header_profile(self, make_ctx, immunization_event):
        msh = _segment(_build(make_ctx, MessageType.VXU_V04, immunization_event), "MSH")
        assert msh[8] == "VXU^V04^VXU_V04"
        assert msh[14] == "ER"
        assert msh[15] == "AL"
        assert msh[20] == "Z22^CDCPHINVS"

    def test_rxa_fields(self, make_ctx, immunization_event):
        rxa = _segment(_build(make_ctx, MessageType.VXU_V04, immunization_event), "RXA")
        assert rxa[3] == "20260110100000"
        assert rxa[5] == "20^DTaP^CVX"
        assert rxa[6] == "0.5"
        assert rxa[9].startswith("00^")
        assert rxa[15] == "LOT123"
        assert rxa[17] == "PMC^sanofi pasteur^MVX"
        assert rxa[20] == "CP"

    def test_route_and_site(self, make_ctx, immunization_event):
        rxr = _segment(_build(make_ctx, MessageType.VXU_V04, immunization_event), "RXR")
        assert rxr[1] == "IM^Intramuscular^HL70162"
        assert rxr[2] == "LT^Left Thigh^HL70163"

    def test_guardian_relationship(self, make_ctx, immunization_event):
        nk1 = _segment(_build(make_ctx, MessageType.VXU_V04, immunization_event), "NK1")
        assert nk1[2].startswith("Jones^Mary")
        assert nk1[3] == "MTH^Mother^HL70063"

    def test_funding_eligibility_observation(self, make_ctx, immunization_event):
        message = _build(make_ctx, MessageType.VXU_V04, immunization_event)
        vfc = _segment(message, "OBX", 0)
        dose = _segment(message, "OBX", 1)
        assert vfc[2] == "CE"
        assert vfc[3].startswith("64994-7^")
        assert vfc[5].startswith("V02^")
        assert dose[1] == "2"
        assert dose[5] == "1"

    def test_historical_record(self, make_ctx, immunization_event):
        immunization = replace(immunization_event.immunizations[0], historical=True, lot_number="")
        event = replace(immunization_event, immunizations=(immunization,))
        message = _build(make_ctx, MessageType.VXU_V04, event)
        rxa = _segment(message, "RXA")
        assert rxa[6] == "999"
        assert rxa[9].startswith("01^")
        # Funding eligibility is only reported for new administrations
        assert segment_ids(message).count("OBX") == 1

    def test_new_administration_requires_lot(self, make_ctx, immunization_event):
        immunization = replace(immunization_event.immunizations[0], lot_number="")
        event = replace(immunization_event, immunizations=(immunization,))
        with pytest.raises(IncompleteEventError) as exc_info:
            _build(make_ctx, MessageType.VXU_V04, event)
        assert exc_info.value.missing_field == "immunizations[0].lot_number"

    def test_unknown_vaccine_code(self, make_ctx, immunization_event):
        immunization = replace(immunization_event.immunizations[0], cvx="9999")
        event = replace(immunization_event, immunizations=(immunization,))
        with pytest.raises(MappingError) as exc_info:
            _build(make_ctx, MessageType.VXU_V04, event)
        assert exc_info.value.vocabulary == "cvx"
        assert exc_info.value.field == "RXA-5"

    def test_no_immunizations(self, make_ctx, child, facility):
        event = ImmunizationEvent(patient=child, facility=facility, immunizations=())
        with pytest.raises(IncompleteEventError):
            _build(make_ctx, MessageType.VXU_V04, event)

    def test_one_order_group_per_administration(self, make_ctx, immunization_event):
        second = replace(immunization_event.immunizations[0], cvx="03", mvx="MSD",
                         lot_number="LOT999", order_number="ORD-2")
        event = replace(immunization_event,
                        immunizations=(immunization_event.immunizations[0], second))
        ids = segment_ids(_build(make_ctx, MessageType.VXU_V04, event))
        assert ids.count("ORC") == 2
        assert ids.count("RXA") == 2


class TestORU:
    """Tests for lab result messages."""

    def test_results_grouped_by_order(self, make_ctx, lab_event):
        message = _build(make_ctx, MessageType.ORU_R01, lab_event)
        assert segment_ids(message) == ["MSH", "PID", "OBR", "OBX", "OBX", "OBR", "OBX"]

    def test_obx_set_ids_restart_per_order(self, make_ctx, lab_event):
        message = _build(make_ctx, MessageType.ORU_R01, lab_event)
        assert [_segment(message, "OBX", i)[1] for i in range(3)] == ["1", "2", "1"]

    def test_order_and_result_fields(self, make_ctx, lab_event):
        message = _build(make_ctx, MessageType.ORU_R01, lab_event)
        obr = _segment(message, "OBR", 0)
        assert obr[3] == "A1^CCHMC"
        assert obr[4] == "2345-7^Glucose^LN"

        glucose = _segment(message, "OBX", 0)
        assert glucose[2] == "NM"
        assert glucose[3] == "2345-7^Glucose^LN"
        assert glucose[5] == "105"
        assert glucose[6] == "mg/dL^mg/dL^UCUM"
        assert glucose[8] == "H"
        assert glucose[11] == "F"

    def test_visit_is_optional(self, make_ctx, lab_event, visit):
        assert "PV1" not in segment_ids(_build(make_ctx, MessageType.ORU_R01, lab_event))
        with_visit = replace(lab_event, visit=visit)
        assert "PV1" in segment_ids(_build(make_ctx, MessageType.ORU_R01, with_visit))


class TestBuildSegment:
    """Tests for building single segments by kind."""

    @pytest.mark.parametrize("kind", ["MSH", "EVN", "PID", "PV1", "PV2"])
    def test_adt_single_segments(self, make_ctx, encounter_event, kind):
        segment = build_segment(kind, encounter_event, make_ctx(MessageType.ADT_A01))
        assert segment.segment_id == kind
        assert segment.encode().startswith(kind)

    def test_dg1_type_follows_position(self, make_ctx, encounter_event):
        ctx = make_ctx(MessageType.ADT_A01)
        first = build_segment("DG1", encounter_event, ctx, item=encounter_event.diagnoses[0], index=0)
        second = build_segment("DG1", encounter_event, ctx, item=encounter_event.diagnoses[1], index=1)
        assert first.encode().split("|")[6] == "A"
        assert second.encode().split("|")[6] == "F"

    def test_adt_obx(self, make_ctx, encounter_event):
        item = adt_observations(encounter_event)[0]
        segment = build_segment("OBX", encounter_event, make_ctx(MessageType.ADT_A01), item=item)
        assert segment.encode().split("|")[5] == "75"

    @pytest.mark.parametrize("kind", ["PD1", "NK1", "ORC", "RXA", "RXR"])
    def test_vxu_segments(self, make_ctx, immunization_event, kind):
        segment = build_segment(
            kind, immunization_event, make_ctx(MessageType.VXU_V04),
            item=immunization_event.immunizations[0],
        )
        assert segment.segment_id == kind

    def test_vaccine_obx(self, make_ctx, immunization_event):
        immunization = immunization_event.immunizations[0]
        item = vaccine_observations(immunization_event, immunization)[0]
        segment = build_segment("OBX", immunization_event, make_ctx(MessageType.VXU_V04), item=item)
        assert segment.encode().split("|")[3].startswith("64994-7")

    def test_oru_segments(self, make_ctx, lab_event):
        ctx = make_ctx(MessageType.ORU_R01)
        order = result_orders(lab_event)[0]
        obr = build_segment("OBR", lab_event, ctx, item=order)
        obx = build_segment("OBX", lab_event, ctx, item=lab_event.lab_results[0], index=0)
        assert obr.segment_id == "OBR"
        fields = obx.encode().split("|")
        assert fields[3].startswith("2345-7")
        assert fields[5] == "105"

    def test_optional_segment_without_data_is_none(self, make_ctx, encounter_event):
        visit = replace(encounter_event.visit, chief_complaint="", chief_complaint_code="")
        event = replace(encounter_event, visit=visit)
        assert build_segment("PV2", event, make_ctx(MessageType.ADT_A01)) is None

    def test_missing_required_field(self, make_ctx, encounter_event):
        patient = replace(encounter_event.patient, date_of_birth=None)
        event = replace(encounter_event, patient=patient)
        with pytest.raises(IncompleteEventError) as exc_info:
            build_segment("PID", event, make_ctx(MessageType.ADT_A01))
        assert exc_info.value.unit_kind == "PID"

    def test_unknown_kind(self, make_ctx, encounter_event):
        with pytest.raises(ValueError, match="No ZZZ segment builder"):
            build_segment("ZZZ", encounter_event, make_ctx(MessageType.ADT_A01))

    def test_obx_requires_an_hl7_message_type(self, make_ctx, encounter_event):
        with pytest.raises(ValueError, match="No OBX segment builder for eICR"):
            build_segment("OBX", encounter_event, make_ctx(MessageType.EICR))


class TestTemplates:
    """Tests for template conformance checks."""

    def test_adt_conforms(self):
        template = get_template(MessageType.ADT_A01)
        assert template.conforms(["MSH", "EVN", "PID", "PV1"])
        assert template.conforms(["MSH", "EVN", "PID", "PV1", "PV2", "OBX", "DG1", "DG1"])

    def test_adt_rejects_out_of_order(self):
        template = get_template(MessageType.ADT_A01)
        assert not template.conforms(["MSH", "PID", "EVN", "PV1"])
        assert not template.conforms(["MSH", "EVN", "PID", "PV1", "DG1", "OBX"])

    def test_vxu_requires_an_order(self):
        template = get_template(MessageType.VXU_V04)
        assert not template.conforms(["MSH", "PID"])
        assert template.conforms(["MSH", "PID", "ORC", "RXA", "ORC", "RXA", "RXR"])

    def test_describe(self):
        assert get_template(MessageType.ADT_A01).describe() == (
            "MSH EVN PID PV1 [PV2] [{OBX}] [{DG1}]"
        )

    def test_no_template_for_documents(self):
        with pytest.raises(ValueError):
            get_template(MessageType.EICR)


class TestSurveillanceCategory:
    """Tests for syndromic category classification."""

    @pytest.mark.parametrize("codes,expected", [
        (["J06.9"], "Respiratory"),
        (["A08.4"], "Gastrointestinal"),
        (["R50.9"], "Fever"),
        (["Z00.00", "A41.9"], "Sepsis"),
        (["Z00.00"], None),
        ([], None),
    ])
    def test_classification(self, codes, expected):
        assert classify_surveillance_category(codes) == expected
