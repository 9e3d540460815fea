from __future__ import annotations

import itertools
import logging
from typing import Iterator

from chordgrid.logging_utils import log_event
from chordgrid.models import (
    Beat,
    BeamSpan,
    ChordSegment,
    GridDiagnostic,
    Measure,
    NoteElement,
    TimeSignature,
    TupletInfo,
)
from chordgrid.services.grid_context import GridContext
from chordgrid.services.notation_lexer import MeasureTokens, RhythmToken, SegmentToken, tokenize_rhythm

logger = logging.getLogger(__name__)

REPEAT_START_BARLINES = {"||:", "|:"}
REPEAT_END_BARLINES = {":||", ":|"}

FINGER_LETTERS = {"en": {"thumb": "t", "hand": "h"}, "fr": {"thumb": "p", "hand": "m"}}
FINGER_ROLES = {"t": "thumb", "p": "thumb", "h": "hand", "m": "hand"}


def default_tuplet_ratio(notated: int) -> int:
    """Metric count M of an `N` tuplet: the largest power of two not above N."""
    return 1 << (max(notated, 1).bit_length() - 1)


def build_measure(
    tokens: MeasureTokens,
    context: GridContext,
    meter: TimeSignature,
    previous: Measure | None = None,
) -> tuple[Measure, list[GridDiagnostic]]:
    diagnostics: list[GridDiagnostic] = list(tokens.diagnostics)
    closing = tokens.closing
    opening = tokens.opening
    repeat_count = closing.repeat_count if closing is not None else None
    if repeat_count is not None and repeat_count < 1:
        diagnostics.append(
            GridDiagnostic(
                message=f"Measure {tokens.index + 1}: repeat count 'x{repeat_count}' must be at least 1; it was ignored.",
                measure_index=tokens.index,
                position=closing.position,
                kind="lexical",
            )
        )
        repeat_count = None
    measure = Measure(
        barline=closing.kind if closing is not None else "|",
        is_line_break=tokens.is_line_break,
        source=tokens.source,
        time_signature=meter.model_copy() if tokens.time_signature is not None else None,
        active_time_signature=meter,
        is_repeat_start=opening is not None and opening.kind in REPEAT_START_BARLINES,
        is_repeat_end=closing is not None and closing.kind in REPEAT_END_BARLINES,
        repeat_count=repeat_count,
    )

    if tokens.is_repeat_symbol:
        if previous is None:
            diagnostics.append(
                GridDiagnostic(
                    message=f"Measure {tokens.index + 1}: '%' has no previous measure to repeat.",
                    measure_index=tokens.index,
                    position=tokens.position,
                    kind="lexical",
                )
            )
        else:
            measure.chord_segments = _copy_segments(previous, tokens.index)
        measure.is_repeat = True
    else:
        ordinals = itertools.count(1)
        for segment_token in tokens.segments:
            segment, repeated = _build_segment(segment_token, tokens.index, context, previous, ordinals, diagnostics)
            measure.is_repeat = measure.is_repeat or repeated
            measure.chord_segments.extend(segment)

    _resolve_ties(measure)
    for beat in measure.beats:
        _legacy_beams(beat)

    log_event(
        logger,
        "measure_built",
        level=logging.DEBUG,
        measure_index=tokens.index,
        segment_count=len(measure.chord_segments),
        note_count=len(measure.notes),
        diagnostic_count=len(diagnostics),
    )
    return measure, diagnostics


def _copy_segments(previous: Measure, measure_index: int) -> list[ChordSegment]:
    segments = [segment.model_copy(deep=True) for segment in previous.chord_segments]
    renamed: dict[str, str] = {}
    for segment in segments:
        for note in segment.notes:
            if note.tuplet is None:
                continue
            if note.tuplet.group_id not in renamed:
                renamed[note.tuplet.group_id] = _tuplet_group_id(measure_index, len(renamed) + 1)
            note.tuplet.group_id = renamed[note.tuplet.group_id]
    return segments


def _tuplet_group_id(measure_index: int, ordinal: int) -> str:
    return f"m{measure_index + 1}-t{ordinal}"


def _build_segment(
    token: SegmentToken,
    measure_index: int,
    context: GridContext,
    previous: Measure | None,
    ordinals: Iterator[int],
    diagnostics: list[GridDiagnostic],
) -> tuple[list[ChordSegment], bool]:
    if token.rhythm is None:
        return [ChordSegment(chord=token.chord, leading_space=token.leading_space)], False

    rhythm_tokens, rhythm_diagnostics = tokenize_rhythm(token.rhythm, token.rhythm_position or 0, measure_index)
    diagnostics.extend(rhythm_diagnostics)

    if rhythm_tokens and all(t.kind == "repeat" for t in rhythm_tokens):
        if previous is None or previous.is_chord_only:
            diagnostics.append(
                GridDiagnostic(
                    message=f"Measure {measure_index + 1}: '[%]' has no previous rhythm to repeat.",
                    measure_index=measure_index,
                    position=token.position,
                )
            )
            return [ChordSegment(chord=token.chord, leading_space=token.leading_space)], True
        copied = _copy_segments(previous, measure_index)
        copied[0].chord = token.chord
        copied[0].leading_space = token.leading_space
        return copied, True

    beats = _build_beats(rhythm_tokens, measure_index, context, ordinals, diagnostics)
    return [ChordSegment(chord=token.chord, leading_space=token.leading_space, beats=beats)], False


def _build_beats(
    tokens: list[RhythmToken],
    measure_index: int,
    context: GridContext,
    ordinals: Iterator[int],
    diagnostics: list[GridDiagnostic],
) -> list[Beat]:
    beats: list[Beat] = []
    current: list[NoteElement] = []
    tuplet_notes: list[NoteElement] | None = None
    tuplet_start = 0
    space_pending = False
    last_note: NoteElement | None = None

    def error(message: str, position: int, kind: str = "lexical") -> None:
        diagnostics.append(
            GridDiagnostic(
                message=f"Measure {measure_index + 1}: {message}",
                measure_index=measure_index,
                position=position,
                kind=kind,
            )
        )

    for token in tokens:
        if token.kind == "space":
            space_pending = True
            if tuplet_notes is None and current:
                beats.append(Beat(notes=current))
                current = []
        elif token.kind == "tuplet_open":
            if tuplet_notes is not None:
                error("nested tuplets are not supported; the inner '{' was ignored.", token.position)
                continue
            tuplet_notes = []
            tuplet_start = token.position
        elif token.kind == "tuplet_close":
            if tuplet_notes is None:
                error("'}' without a matching '{'.", token.position)
                continue
            if token.count is None:
                # syntax error, already reported by the lexer
                pass
            elif token.count < 1 or (token.actual_count is not None and token.actual_count < 1):
                error(f"invalid tuplet ratio {token.count}:{token.actual_count}.", token.position)
            elif tuplet_notes:
                _assign_tuplet(tuplet_notes, token, _tuplet_group_id(measure_index, next(ordinals)))
            tuplet_notes = None
        elif token.kind == "forced_tie":
            if last_note is None:
                error("'[_]' must follow a note.", token.position)
                continue
            last_note.tie_start = True
            last_note.forced_beam_through_tie = True
        elif token.kind == "repeat":
            error("'%' must be the only content of a rhythm group.", token.position)
        else:
            note = _note_from_token(token, context)
            note.has_leading_space = space_pending
            space_pending = False
            current.append(note)
            if tuplet_notes is not None:
                tuplet_notes.append(note)
            last_note = note

    if tuplet_notes is not None:
        error("unterminated tuplet '{'; its notes were kept without a ratio.", tuplet_start, kind="structural")
    if current:
        beats.append(Beat(notes=current))
    return beats



def _assign_tuplet(notes: list[NoteElement], token: RhythmToken, group_id: str) -> None:
    notated = token.count or len(notes)
    actual = token.actual_count or default_tuplet_ratio(notated)
    last = len(notes) - 1
    for index, note in enumerate(notes):
        if index == 0:
            position = "start"
        elif index == last:
            position = "end"
        else:
            position = "middle"
        note.tuplet = TupletInfo(
            group_id=group_id,
            count=len(notes),
            notated_count=notated,
            actual_count=actual,
            position=position,
            explicit_ratio=token.actual_count is not None,
        )


def _note_from_token(token: RhythmToken, context: GridContext) -> NoteElement:
    pick_direction, finger_symbol = stroke_fields(token.stroke, context)
    return NoteElement(
        value=token.value,
        dotted=token.dotted,
        is_rest=token.is_rest,
        tie_start=token.tie_after,
        tie_end=token.tie_before,
        is_ghost=token.is_ghost,
        pick_direction=pick_direction if not token.is_rest else None,
        finger_symbol=finger_symbol if not token.is_rest else None,
        position=token.position,
    )


def stroke_fields(stroke: str | None, context: GridContext) -> tuple[str | None, str | None]:
    if stroke is None:
        return None, None
    direction = stroke[-1]
    pick_direction = direction if context.picks_mode else None
    finger_symbol = None
    if context.finger_mode is not None:
        letters = FINGER_LETTERS[context.finger_mode]
        if len(stroke) == 1:
            role = "thumb" if direction == "d" else "hand"
        else:
            role = FINGER_ROLES[stroke[0]]
        finger_symbol = letters[role] + direction
    return pick_direction, finger_symbol


def _resolve_ties(measure: Measure) -> None:
    notes = measure.notes
    if not notes:
        return
    for current, following in zip(notes, notes[1:]):
        if current.tie_start or following.tie_end:
            current.tie_start = True
            following.tie_end = True
    if notes[-1].tie_start:
        notes[-1].tie_to_void = True
    if notes[0].tie_end:
        notes[0].tie_from_void = True


def _legacy_beams(beat: Beat) -> None:
    runs: list[list[int]] = []
    run: list[int] = []
    for index, note in enumerate(beat.notes):
        if note.is_beamable:
            run.append(index)
        elif note.is_rest and note.tuplet is not None:
            continue
        elif run:
            runs.append(run)
            run = []
    if run:
        runs.append(run)
    beat.beam_groups = [
        BeamSpan(start_index=r[0], end_index=r[-1], note_count=len(r)) for r in runs if len(r) >= 2
    ]
    beat.has_beam = bool(beat.beam_groups)
