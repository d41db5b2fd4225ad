"""Tests for rolling patient measure results up into aggregate counts."""

from dataclasses import replace
from datetime import date

import pytest

from interop_src.cda.measures import aggregate_events, aggregate_results, aggregate_frame, results_frame
from interop_src.models import AggregateMeasureResult, MeasureResult, ReportingPeriod


def _result(**populations) -> MeasureResult:
    return MeasureResult(
        measure_id="CMS122v11",
        version_specific_id="2c928085-7198-38ee-0171-9d78a0d406f5",
        title="Diabetes: Hemoglobin A1c Poor Control",
        **populations,
    )


class TestAggregateEvents:
    """Tests for aggregate_events."""

    @pytest.fixture
    def events(self, measure_event, patient, child):
        numerator = measure_event
        not_met = replace(
            measure_event,
            patient=child,
            results=(_result(initial_population=True, denominator=True),),
        )
        excluded = replace(
            measure_event,
            patient=replace(patient, mrn="MRN003"),
            results=(_result(initial_population=True, denominator=True,
                             denominator_exclusion=True),),
        )
        return [numerator, not_met, excluded]

    def test_counts(self, events):
        aggregate = aggregate_events(events)
        assert len(aggregate.results) == 1
        result = aggregate.results[0]
        assert result.measure_id == "CMS122v11"
        assert result.initial_population == 3
        assert result.denominator == 3
        assert result.denominator_exclusion == 1
        assert result.numerator == 1
        assert result.denominator_exception == 0

    def test_performance_rate(self, events):
        result = aggregate_events(events).results[0]
        assert result.performance_rate == pytest.approx(0.5)

    def test_patient_counted_once(self, events):
        aggregate = aggregate_events(events + [events[0]])
        assert aggregate.results[0].initial_population == 3
        assert aggregate.results[0].numerator == 1

    def test_facility_and_period_from_events(self, events, facility, period):
        aggregate = aggregate_events(events)
        assert aggregate.facility == facility
        assert aggregate.period == period

    def test_empty_rejected(self):
        with pytest.raises(ValueError, match="empty"):
            aggregate_events([])

    def test_mixed_periods_rejected(self, events):
        other = replace(events[1], period=ReportingPeriod(date(2024, 1, 1), date(2024, 12, 31)))
        with pytest.raises(ValueError, match="reporting periods"):
            aggregate_events([events[0], other])

    def test_measures_sorted_by_id(self, measure_event):
        second = MeasureResult(
            measure_id="CMS069v11", version_specific_id="abc", title="BMI Screening",
            initial_population=True,
        )
        event = replace(measure_event, results=measure_event.results + (second,))
        aggregate = aggregate_events([event])
        assert [r.measure_id for r in aggregate.results] == ["CMS069v11", "CMS122v11"]


class TestAggregateResults:
    """Tests for aggregating bare results."""

    def test_each_result_is_one_patient(self):
        results = aggregate_results([
            _result(initial_population=True, denominator=True, numerator=True),
            _result(initial_population=True, denominator=True),
        ])
        assert results[0].initial_population == 2
        assert results[0].numerator == 1

    def test_mrns_collapse_duplicates(self):
        results = aggregate_results(
            [_result(initial_population=True), _result(initial_population=True, numerator=True)],
            mrns=["MRN001", "MRN001"],
        )
        assert results[0].initial_population == 1
        assert results[0].numerator == 1

    def test_empty(self):
        assert aggregate_results([]) == []

    def test_empty_frame(self):
        assert aggregate_frame(results_frame([])).empty


class TestPerformanceRate:
    """Tests for AggregateMeasureResult.performance_rate."""

    def test_exclusions_and_exceptions_leave_denominator(self):
        result = AggregateMeasureResult(
            measure_id="M", version_specific_id="v", title="t",
            denominator=10, denominator_exclusion=2, denominator_exception=3, numerator=4,
        )
        assert result.performance_rate == pytest.approx(0.8)

    def test_nothing_eligible(self):
        result = AggregateMeasureResult(
            measure_id="M", version_specific_id="v", title="t",
            denominator=2, denominator_exclusion=2,
        )
        assert result.performance_rate is None
