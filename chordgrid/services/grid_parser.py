from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass
from fractions import Fraction

from chordgrid.logging_utils import grid_scope, log_event
from chordgrid.models import (
    AnalyzerParseResult,
    ChordGrid,
    GridDiagnostic,
    Measure,
    ParsedMeasure,
    ParsedSegment,
    ParseResult,
    TimeSignature,
    Volta,
)
from chordgrid.services.counting_analyzer import analyze_counting
from chordgrid.services.duration_validation import validate_measure_durations
from chordgrid.services.grid_context import DEFAULT_CONTEXT, GridContext, apply_directive
from chordgrid.services.measure_builder import REPEAT_END_BARLINES, build_measure
from chordgrid.services.notation_lexer import LexedGrid, MeasureTokens, TimeSignatureToken, lex_grid
from chordgrid.services.transposer import transpose_chords

logger = logging.getLogger(__name__)


@dataclass
class _GridBuild:
    context: GridContext
    time_signature: TimeSignature
    measures: list[Measure]
    lines: list[list[int]]
    errors: list[GridDiagnostic]


def parse(text: str, *, counting: bool | None = None) -> ParseResult:
    """Parse a chord grid into measures ready for rendering.

    Counting labels are attached when the notation carries the `count` directive, or
    always when `counting` is passed as True.
    """
    with grid_scope(text):
        build = _build_grid(text)
        context = build.context
        counting_mode = context.counting if counting is None else counting
        if counting_mode:
            analyze_counting(build.measures, build.time_signature)
        return ParseResult(
            measures=build.measures,
            errors=build.errors,
            grid=ChordGrid(time_signature=build.time_signature, measures=build.measures, lines=build.lines),
            display_repeat_symbol=context.display_repeat_symbol,
            picks_mode=context.picks_mode,
            picks_subdivision=context.picks_subdivision,
            finger_mode=context.finger_mode,
            measures_per_line=context.measures_per_line,
            stems_direction=context.stems_direction,
            counting_mode=counting_mode,
            zoom_percent=context.zoom_percent,
            transpose=context.transpose,
            show_measure_numbers=context.show_measure_numbers,
        )


def parse_for_analyzer(text: str) -> AnalyzerParseResult:
    """Parse a chord grid into the flat segment shape consumed by `MusicAnalyzer`."""
    with grid_scope(text):
        build = _build_grid(text)
        measures = [to_parsed_measure(measure, index, build.time_signature) for index, measure in enumerate(build.measures)]
        return AnalyzerParseResult(time_signature=build.time_signature, measures=measures, errors=build.errors)


def to_parsed_measure(measure: Measure, index: int, time_signature: TimeSignature) -> ParsedMeasure:
    return ParsedMeasure(
        index=index,
        segments=[
            ParsedSegment(
                chord=segment.chord,
                leading_space=segment.leading_space,
                notes=[note.model_copy(deep=True) for note in segment.notes],
            )
            for segment in measure.chord_segments
        ],
        time_signature=measure.active_time_signature or time_signature,
        barline=measure.barline,
        is_line_break=measure.is_line_break,
        source=measure.source,
    )


def _build_grid(text: str) -> _GridBuild:
    lexed = lex_grid(text)
    errors: list[GridDiagnostic] = list(lexed.diagnostics)

    context = DEFAULT_CONTEXT
    for directive in lexed.directives:
        context, message = apply_directive(context, directive.name, directive.value)
        if message is not None:
            errors.append(GridDiagnostic(message=message, position=directive.position, kind="directive"))

    if lexed.header is not None:
        context = _apply_header(context, lexed.header, errors)
    grid_time_signature = context.time_signature

    measures: list[Measure] = []
    for tokens in lexed.measures:
        override = None
        if tokens.time_signature is not None:
            context = _apply_inline_time_signature(context, tokens, errors)
            override = tokens.time_signature.grouping
        meter = context.meter_for_measure(override)
        measure, diagnostics = build_measure(tokens, context, meter, previous=measures[-1] if measures else None)
        measures.append(measure)
        errors.extend(diagnostics)

    _link_ties(measures)
    _resolve_voltas(lexed, measures)
    if context.transpose:
        _transpose(measures, context)
    if context.picks_subdivision is not None:
        assign_pick_strokes(measures, context.picks_subdivision)

    errors.extend(validate_measure_durations(measures, grid_time_signature))
    lines = _group_lines(lexed.measures)

    log_event(
        logger,
        "grid_parsed",
        measure_count=len(measures),
        line_count=len(lines),
        time_signature=grid_time_signature.label(),
        grouping=grid_time_signature.grouping_mode,
        error_count=len(errors),
    )
    if errors:
        kinds = Counter(error.kind for error in errors)
        log_event(logger, "grid_diagnostics", error_count=len(errors), **{f"{kind}_count": n for kind, n in kinds.items()})

    return _GridBuild(
        context=context,
        time_signature=grid_time_signature,
        measures=measures,
        lines=lines,
        errors=errors,
    )


def _apply_header(context: GridContext, header: TimeSignatureToken, errors: list[GridDiagnostic]) -> GridContext:
    if header.grouping is not None:
        context = context.with_grouping(header.grouping)
    try:
        return context.with_time_signature(header.numerator, header.denominator)
    except ValueError:
        errors.append(
            GridDiagnostic(
                message=f"Invalid time signature {header.numerator}/{header.denominator}; using 4/4.",
                position=header.position,
                kind="structural",
            )
        )
        return context.with_time_signature(4, 4)


def _apply_inline_time_signature(context: GridContext, tokens: MeasureTokens, errors: list[GridDiagnostic]) -> GridContext:
    meter = tokens.time_signature
    try:
        return context.with_time_signature(meter.numerator, meter.denominator)
    except ValueError:
        errors.append(
            GridDiagnostic(
                message=f"Measure {tokens.index + 1}: invalid time signature {meter.numerator}/{meter.denominator} ignored.",
                measure_index=tokens.index,
                position=meter.position,
                kind="structural",
            )
        )
        return context


def _link_ties(measures: list[Measure]) -> None:
    """Connect ties that cross a barline; ties at line ends keep their void flags."""
    for current, following in zip(measures, measures[1:]):
        if current.is_line_break or not current.notes or not following.notes:
            continue
        last = current.notes[-1]
        first = following.notes[0]
        if last.tie_start or first.tie_end:
            last.tie_start = first.tie_end = True
            last.tie_to_void = first.tie_from_void = False


def volta_numbers(text: str) -> list[int]:
    numbers: list[int] = []
    for part in text.split(","):
        bounds = [int(value) for value in part.split("-")]
        numbers.extend(range(bounds[0], bounds[-1] + 1))
    return numbers


def _resolve_voltas(lexed: LexedGrid, measures: list[Measure]) -> None:
    starts: dict[int, Volta] = {}
    for index, tokens in enumerate(lexed.measures):
        opening = tokens.opening
        if opening is None or not opening.volta_text:
            continue
        starts[index] = Volta(
            numbers=volta_numbers(opening.volta_text),
            text=opening.volta_text,
            is_closed=opening.kind not in REPEAT_END_BARLINES,
        )

    for start, volta in starts.items():
        measures[start].volta_start = volta
        if volta.is_closed:
            end = _closed_volta_end(start, starts, measures)
        else:
            end = _open_volta_end(start, starts, lexed.measures)
        measures[end].volta_end = volta


def _closed_volta_end(start: int, starts: dict[int, Volta], measures: list[Measure]) -> int:
    for index in range(start, len(measures)):
        if index > start and index in starts:
            return index - 1
        if measures[index].is_repeat_end:
            return index
    return len(measures) - 1


def _open_volta_end(start: int, starts: dict[int, Volta], tokens: list[MeasureTokens]) -> int:
    for index in range(start + 1, len(tokens)):
        if index in starts:
            break
        opening = tokens[index].opening
        if opening is not None and opening.volta_end_marker:
            return index
    return start


def _transpose(measures: list[Measure], context: GridContext) -> None:
    segments = [segment for measure in measures for segment in measure.chord_segments if segment.chord]
    chords = transpose_chords([segment.chord for segment in segments], context.transpose, context.force_accidental)
    for segment, chord in zip(segments, chords):
        segment.chord = chord


def assign_pick_strokes(measures: list[Measure], subdivision: str) -> None:
    """Alternate down/up strokes on an eighth or sixteenth grid.

    Explicit strokes are kept; rests and tied-into notes get no stroke.
    """
    if subdivision == "auto":
        finest = any(note.value >= 16 and not note.is_rest for measure in measures for note in measure.notes)
        step = Fraction(1, 16 if finest else 8)
    else:
        step = Fraction(1, int(subdivision))

    for measure in measures:
        position = Fraction(0)
        for note in measure.notes:
            if note.pick_direction is None and not note.is_rest and not note.tie_end:
                note.pick_direction = "d" if (position // step) % 2 == 0 else "u"
            position += note.duration


def _group_lines(tokens: list[MeasureTokens]) -> list[list[int]]:
    lines: dict[int, list[int]] = {}
    for index, measure_tokens in enumerate(tokens):
        lines.setdefault(measure_tokens.line_index, []).append(index)
    return list(lines.values())
