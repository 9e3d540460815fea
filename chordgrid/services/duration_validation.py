from __future__ import annotations

from dataclasses import dataclass
from fractions import Fraction

from chordgrid.models import GridDiagnostic, Measure, TimeSignature

DEFAULT_TIME_SIGNATURE = TimeSignature(numerator=4, denominator=4)


@dataclass(frozen=True)
class MeasureDuration:
    """Expected and notated length of one measure, in quarter notes."""

    measure_index: int
    expected: Fraction
    found: Fraction

    @property
    def matches(self) -> bool:
        return self.expected == self.found


def measure_total(measure: Measure) -> Fraction:
    return sum((note.quarter_notes for note in measure.notes), Fraction(0))


def measure_duration(measure: Measure, measure_index: int, time_signature: TimeSignature | None = None) -> MeasureDuration:
    meter = measure.active_time_signature or time_signature or DEFAULT_TIME_SIGNATURE
    return MeasureDuration(measure_index=measure_index, expected=meter.quarter_notes_per_measure, found=measure_total(measure))


def _format_quarters(value: Fraction) -> str:
    return f"{float(value):.3f}".rstrip("0").rstrip(".")


def validate_measure_durations(
    measures: list[Measure], time_signature: TimeSignature | None = None
) -> list[GridDiagnostic]:
    errors: list[GridDiagnostic] = []
    for index, measure in enumerate(measures):
        if measure.is_chord_only:
            continue
        report = measure_duration(measure, index, time_signature)
        if report.matches:
            continue
        errors.append(
            GridDiagnostic(
                message=(
                    f"Measure {index + 1}: expected {_format_quarters(report.expected)} quarter-notes, "
                    f"found {_format_quarters(report.found)}"
                ),
                measure_index=index,
                kind="duration",
                expected_quarter_notes=float(report.expected),
                found_quarter_notes=float(report.found),
            )
        )
    return errors
