"""Roll patient-level eCQM results up into QRDA III aggregate counts."""

import logging
from dataclasses import asdict
from typing import Iterable

import pandas as pd

from ..models import (
    AggregateMeasureEvent,
    AggregateMeasureResult,
    Facility,
    MeasureResult,
    Provider,
    QualityMeasureEvent,
)

logger = logging.getLogger(__name__)

POPULATION_COLUMNS = [
    "initial_population",
    "denominator",
    "denominator_exclusion",
    "numerator",
    "denominator_exception",
]

MEASURE_KEYS = ["measure_id", "version_specific_id", "title"]


def results_frame(events: Iterable[QualityMeasureEvent]) -> pd.DataFrame:
    """One row per patient per measure result."""
    rows = []
    for event in events:
        for result in event.results:
            row = asdict(result)
            row["mrn"] = event.patient.mrn
            rows.append(row)
    if not rows:
        return pd.DataFrame(columns=["mrn"] + MEASURE_KEYS + POPULATION_COLUMNS)
    return pd.DataFrame(rows)


def aggregate_frame(df: pd.DataFrame) -> pd.DataFrame:
    """Population counts per measure.

    A patient reported more than once for a measure is counted once, in
    every population any of their results placed them in.
    """
    if df.empty:
        return pd.DataFrame(columns=MEASURE_KEYS + POPULATION_COLUMNS)

    per_patient = (
        df.groupby(MEASURE_KEYS + ["mrn"])[POPULATION_COLUMNS]
        .any()
        .reset_index()
    )
    counts = (
        per_patient.groupby(MEASURE_KEYS)[POPULATION_COLUMNS]
        .sum()
        .astype(int)
        .reset_index()
        .sort_values("measure_id")
    )
    return counts


def aggregate_results(results: Iterable[MeasureResult], mrns: Iterable[str] | None = None) -> list[AggregateMeasureResult]:
    """Aggregate bare measure results, one per patient unless mrns are given."""
    rows = [asdict(r) for r in results]
    if not rows:
        return []
    df = pd.DataFrame(rows)
    df["mrn"] = list(mrns) if mrns is not None else [str(i) for i in range(len(df))]
    return _to_results(aggregate_frame(df))


def _to_results(counts: pd.DataFrame) -> list[AggregateMeasureResult]:
    return [
        AggregateMeasureResult(
            measure_id=row["measure_id"],
            version_specific_id=row["version_specific_id"],
            title=row["title"],
            **{column: int(row[column]) for column in POPULATION_COLUMNS},
        )
        for row in counts.to_dict("records")
    ]


def aggregate_events(
    events: list[QualityMeasureEvent],
    facility: Facility | None = None,
    author: Provider | None = None,
    legal_authenticator: Provider | None = None,
) -> AggregateMeasureEvent:
    """Build a QRDA III event from the QRDA I events of one reporting period.

    Args:
        events: Patient-level events, all for the same period
        facility: Reporting facility (defaults to the first event's)
        author: Document author
        legal_authenticator: Signer required on QRDA III documents

    Raises:
        ValueError: If there are no events or the periods differ
    """
    if not events:
        raise ValueError("Cannot aggregate an empty list of measure events")
    periods = {event.period for event in events}
    if len(periods) > 1:
        raise ValueError(f"Measure events span {len(periods)} reporting periods")

    counts = aggregate_frame(results_frame(events))
    results = tuple(_to_results(counts))
    logger.info(
        f"Aggregated {len(events)} patient reports into {len(results)} measure results"
    )
    return AggregateMeasureEvent(
        facility=facility or events[0].facility,
        period=events[0].period,
        results=results,
        author=author,
        legal_authenticator=legal_authenticator,
    )
