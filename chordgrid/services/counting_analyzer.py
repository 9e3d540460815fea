from __future__ import annotations

import logging
import math
from collections import defaultdict
from fractions import Fraction

from chordgrid.logging_utils import log_event
from chordgrid.models import Measure, NoteElement, TimeSignature

logger = logging.getLogger(__name__)

SIXTEENTHS_PER_WHOLE = 16


def analyze_counting(measures: list[Measure], time_signature: TimeSignature) -> None:
    """Attach counting labels to every note, restarting at 1 in each measure.

    Measures that carry their own meter are counted in that meter; `time_signature`
    covers measures built without one.
    """
    for index, measure in enumerate(measures):
        meter = measure.active_time_signature or time_signature
        analyze_measure_counting(measure, meter, measure_index=index)


def analyze_measure_counting(measure: Measure, time_signature: TimeSignature, measure_index: int | None = None) -> str | None:
    notes = measure.notes
    if not notes:
        return None

    positions = _positions_in_sixteenths(notes)
    user_beats = user_defined_beats(measure)
    mode = "user" if should_use_user_defined_beats(measure, time_signature) else "mathematical"
    log_event(
        logger,
        "counting_mode_selected",
        level=logging.DEBUG,
        measure_index=measure_index,
        mode=mode,
        time_signature=time_signature.label(),
    )
    if mode == "user":
        _count_user_defined(notes, positions, user_beats, time_signature)
    else:
        _count_mathematical(notes, positions, time_signature)
    return mode


def user_defined_beats(measure: Measure) -> list[list[int]]:
    """Indices (into `measure.notes`) of each space-separated beat.

    A segment written without a space before its chord continues the previous beat.
    """
    beats: list[list[int]] = []
    cursor = 0
    for segment in measure.chord_segments:
        for beat_index, beat in enumerate(segment.beats):
            indices = list(range(cursor, cursor + len(beat.notes)))
            cursor += len(beat.notes)
            if not indices:
                continue
            if beat_index == 0 and not segment.leading_space and beats:
                beats[-1].extend(indices)
            else:
                beats.append(indices)
    return beats


def should_use_user_defined_beats(measure: Measure, time_signature: TimeSignature) -> bool:
    if time_signature.is_irregular:
        return True
    notes = measure.notes
    durations = {
        sum((notes[i].duration * SIXTEENTHS_PER_WHOLE for i in beat), Fraction(0))
        for beat in user_defined_beats(measure)
    }
    return len(durations) > 1


def _positions_in_sixteenths(notes: list[NoteElement]) -> list[Fraction]:
    positions: list[Fraction] = []
    position = Fraction(0)
    for note in notes:
        positions.append(position)
        position += note.duration * SIXTEENTHS_PER_WHOLE
    return positions


def _label(note: NoteElement, label: str, number: int | None, size: str) -> None:
    note.counting_label = label
    note.counting_number = number
    note.counting_size = size


def _count_user_defined(
    notes: list[NoteElement],
    positions: list[Fraction],
    beats: list[list[int]],
    time_signature: TimeSignature,
) -> None:
    unit = Fraction(SIXTEENTHS_PER_WHOLE, time_signature.denominator)
    for beat in beats:
        anchor = math.floor(positions[beat[0]] / unit) * unit
        only_eighths = all(
            notes[i].value == 8 and not notes[i].dotted and notes[i].tuplet is None for i in beat
        )
        for i in beat:
            note = notes[i]
            position = positions[i]
            if position % unit == 0:
                number = int(position / unit) + 1
                size = "s" if note.is_rest or note.tie_end else "t"
                _label(note, str(number), number, size)
            elif only_eighths:
                _label(note, "&", None, "s" if note.is_rest else "m")
            else:
                number = math.floor(position - anchor) + 1
                _label(note, str(number), number, "s" if note.is_rest else "m")


def _count_mathematical(notes: list[NoteElement], positions: list[Fraction], time_signature: TimeSignature) -> None:
    beat_length = Fraction(SIXTEENTHS_PER_WHOLE, time_signature.denominator)
    beats: dict[int, list[int]] = defaultdict(list)
    for i, position in enumerate(positions):
        beats[math.floor(position / beat_length)].append(i)

    for beat_index in sorted(beats):
        members = beats[beat_index]
        smallest = max([4, *(notes[i].value for i in members)])
        numeric = smallest >= 16 or any(notes[i].tuplet is not None for i in members)
        counter = 1
        for offset, i in enumerate(members):
            note = notes[i]
            if offset == 0:
                number = beat_index + 1
                _label(note, str(number), number, "s" if note.is_rest or note.tie_end else "t")
                continue
            size = "s" if note.is_rest else "m"
            if numeric:
                counter += 1
                _label(note, str(counter), counter, size)
            elif smallest == 8:
                _label(note, "&", None, size)
            else:
                _label(note, "", None, size)
