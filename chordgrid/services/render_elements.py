from __future__ import annotations

from chordgrid.models import (
    AnalyzedMeasure,
    BarlineRenderElement,
    BeamRenderElement,
    ChordRenderElement,
    Measure,
    NoteReference,
    NoteRenderElement,
    PositionedNote,
    RenderedElement,
    RepeatSymbolRenderElement,
    RestRenderElement,
    StemRenderElement,
    TieRenderElement,
    TupletRenderElement,
    VoltaRenderElement,
)


def render_measure(
    analyzed: AnalyzedMeasure,
    measure: Measure,
    measure_index: int,
    stems_direction: str = "up",
    display_repeat_symbol: bool = False,
) -> list[RenderedElement]:
    """Flatten one analyzed measure into the elements a renderer draws.

    With `display_repeat_symbol`, a repeated measure is drawn as its chords and a repeat
    sign instead of the copied rhythm.
    """
    elements: list[RenderedElement] = []
    elements.extend(_volta_elements(measure, measure_index))
    elements.extend(_chord_elements(analyzed, measure_index))

    if display_repeat_symbol and measure.is_repeat and measure_index > 0:
        elements.append(RepeatSymbolRenderElement(measure_index=measure_index, source_measure_index=measure_index - 1))
    else:
        for note in analyzed.all_notes:
            elements.extend(_note_elements(note, measure_index, stems_direction))
        elements.extend(
            BeamRenderElement(
                measure_index=measure_index,
                level=group.level,
                notes=group.notes,
                is_partial=group.is_partial,
                direction=group.direction,
            )
            for group in analyzed.beam_groups
        )
        elements.extend(_tuplet_elements(analyzed.all_notes, measure_index))
        elements.extend(_tie_elements(analyzed.all_notes, measure_index))

    elements.append(BarlineRenderElement(measure_index=measure_index, barline=measure.barline, repeat_count=measure.repeat_count))
    return elements


def _volta_elements(measure: Measure, measure_index: int) -> list[VoltaRenderElement]:
    start, end = measure.volta_start, measure.volta_end
    if start is not None and end is not None and start.text == end.text:
        return [VoltaRenderElement(measure_index=measure_index, text=start.text, is_closed=start.is_closed, edge="both")]
    elements = []
    if end is not None:
        elements.append(VoltaRenderElement(measure_index=measure_index, text=end.text, is_closed=end.is_closed, edge="end"))
    if start is not None:
        elements.append(VoltaRenderElement(measure_index=measure_index, text=start.text, is_closed=start.is_closed, edge="start"))
    return elements


def _chord_elements(analyzed: AnalyzedMeasure, measure_index: int) -> list[ChordRenderElement]:
    elements = []
    for segment_index, segment in enumerate(analyzed.segments):
        if not segment.chord:
            continue
        anchor = NoteReference(segment_index=segment_index, note_index=0) if segment.notes else None
        elements.append(
            ChordRenderElement(measure_index=measure_index, segment_index=segment_index, symbol=segment.chord, anchor=anchor)
        )
    return elements


def _note_elements(note: PositionedNote, measure_index: int, stems_direction: str) -> list[RenderedElement]:
    reference = note.reference()
    if note.is_rest:
        return [RestRenderElement(measure_index=measure_index, reference=reference, value=note.value, dotted=note.dotted)]
    elements: list[RenderedElement] = [
        NoteRenderElement(
            measure_index=measure_index,
            reference=reference,
            value=note.value,
            dotted=note.dotted,
            is_ghost=note.is_ghost,
            stroke=note.finger_symbol or note.pick_direction,
            counting_label=note.counting_label,
        )
    ]
    # whole notes have no stem
    if note.value > 1:
        elements.append(StemRenderElement(measure_index=measure_index, reference=reference, direction=stems_direction))
    return elements


def _tuplet_elements(notes: list[PositionedNote], measure_index: int) -> list[TupletRenderElement]:
    groups: dict[str, list[PositionedNote]] = {}
    for note in notes:
        if note.tuplet is not None:
            groups.setdefault(note.tuplet.group_id, []).append(note)
    elements = []
    for group_id, members in groups.items():
        tuplet = members[0].tuplet
        label = f"{tuplet.notated_count}:{tuplet.actual_count}" if tuplet.explicit_ratio else str(tuplet.notated_count)
        elements.append(
            TupletRenderElement(
                measure_index=measure_index,
                group_id=group_id,
                label=label,
                notes=[note.reference() for note in members],
            )
        )
    return elements


def _tie_elements(notes: list[PositionedNote], measure_index: int) -> list[TieRenderElement]:
    """Ties inside the measure; a missing end marks a tie that continues past the barline."""
    elements = []
    if notes and notes[0].tie_end:
        elements.append(TieRenderElement(measure_index=measure_index, start=None, end=notes[0].reference()))
    for index, note in enumerate(notes):
        if not note.tie_start:
            continue
        following = notes[index + 1] if index + 1 < len(notes) else None
        end = following.reference() if following is not None and following.tie_end else None
        elements.append(TieRenderElement(measure_index=measure_index, start=note.reference(), end=end))
    return elements
