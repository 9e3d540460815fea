from __future__ import annotations

import logging
import math
from collections import defaultdict
from fractions import Fraction

from chordgrid.logging_utils import log_event
from chordgrid.models import AnalyzedMeasure, BeamGroup, ParsedMeasure, PositionedNote
from chordgrid.services.grid_context import DEFAULT_POLICY, AnalyzerPolicy

logger = logging.getLogger(__name__)

# Length of one metric beam group, in whole notes.
METRIC_GROUP_LENGTH = {
    "binary": Fraction(1, 4),
    "ternary": Fraction(3, 8),
}
_ANALYSIS_FIELDS = {"all_notes", "beam_groups"}
_POSITION_FIELDS = {"segment_index", "note_index_in_segment", "absolute_index"}


class MusicAnalyzer:
    """Computes measure-wide beam groups from a parsed measure.

    The analyzer keeps no per-call state, so one instance can serve any number of
    measures. Rest handling at the primary beam level follows `policy`.
    """

    def __init__(self, policy: AnalyzerPolicy | None = None) -> None:
        self.policy = policy or DEFAULT_POLICY

    def analyze(self, measure: ParsedMeasure) -> AnalyzedMeasure:
        notes = self._flatten(measure)
        groups = self._tuplet_groups(measure, notes)
        onsets = _onsets(notes)
        grouping = measure.time_signature.resolved_grouping()

        beam_groups: list[BeamGroup] = []
        for run in self._runs(measure, notes, groups, onsets, grouping):
            beam_groups.extend(self._groups_for_run(run, notes, groups, grouping))

        log_event(
            logger,
            "beam_analysis_completed",
            level=logging.DEBUG,
            measure_index=measure.index,
            grouping=grouping,
            note_count=len(notes),
            beam_group_count=len(beam_groups),
        )
        return AnalyzedMeasure(**measure.model_dump(exclude=_ANALYSIS_FIELDS), all_notes=notes, beam_groups=beam_groups)

    def _flatten(self, measure: ParsedMeasure) -> list[PositionedNote]:
        notes: list[PositionedNote] = []
        for segment_index, segment in enumerate(measure.segments):
            for note_index, note in enumerate(segment.notes):
                notes.append(
                    PositionedNote(
                        **note.model_dump(exclude=_POSITION_FIELDS),
                        segment_index=segment_index,
                        note_index_in_segment=note_index,
                        absolute_index=len(notes),
                    )
                )
        return notes

    def _tuplet_groups(self, measure: ParsedMeasure, notes: list[PositionedNote]) -> list[str | None]:
        """Tuplet group of each note, with inconsistent groups dropped."""
        members: dict[str, list[PositionedNote]] = defaultdict(list)
        for note in notes:
            if note.tuplet is not None:
                members[note.tuplet.group_id].append(note)

        rejected: set[str] = set()
        for group_id, group_notes in members.items():
            segments = {note.segment_index for note in group_notes}
            ratios = {(note.tuplet.count, note.tuplet.notated_count, note.tuplet.actual_count) for note in group_notes}
            indices = [note.absolute_index for note in group_notes]
            contiguous = indices == list(range(indices[0], indices[0] + len(indices)))
            if len(segments) > 1 or len(ratios) > 1 or not contiguous:
                rejected.add(group_id)

        if rejected:
            log_event(
                logger,
                "beam_analysis_degraded",
                level=logging.WARNING,
                measure_index=measure.index,
                tuplet_groups=sorted(rejected),
            )
        return [
            note.tuplet.group_id if note.tuplet is not None and note.tuplet.group_id not in rejected else None
            for note in notes
        ]

    def _runs(
        self,
        measure: ParsedMeasure,
        notes: list[PositionedNote],
        groups: list[str | None],
        onsets: list[Fraction],
        grouping: str,
    ) -> list[list[int]]:
        runs: list[list[int]] = []
        current: list[int] = []

        def flush() -> None:
            while current and not notes[current[-1]].is_beamable:
                current.pop()
            if current:
                runs.append(list(current))
            current.clear()

        for index, note in enumerate(notes):
            if current and self._breaks_before(measure, notes, groups, onsets, grouping, index):
                flush()
            if note.is_beamable:
                current.append(index)
            elif note.is_rest and current and not self.policy.rest_breaks_primary(groups[index] is not None):
                current.append(index)
            else:
                flush()
        flush()
        return runs

    def _breaks_before(
        self,
        measure: ParsedMeasure,
        notes: list[PositionedNote],
        groups: list[str | None],
        onsets: list[Fraction],
        grouping: str,
        index: int,
    ) -> bool:
        previous = notes[index - 1]
        note = notes[index]
        if previous.forced_beam_through_tie:
            return False
        if note.segment_index != previous.segment_index and measure.segments[note.segment_index].leading_space:
            return True
        if groups[index] != groups[index - 1]:
            return True
        if groups[index] is not None:
            return False
        if grouping in METRIC_GROUP_LENGTH:
            length = METRIC_GROUP_LENGTH[grouping]
            return math.floor(onsets[index] / length) != math.floor(onsets[index - 1] / length)
        return note.has_leading_space

    def _space_chunks(
        self,
        beamable: list[int],
        notes: list[PositionedNote],
        groups: list[str | None],
        grouping: str,
    ) -> list[list[int]]:
        chunks: list[list[int]] = [[beamable[0]]]
        for previous, index in zip(beamable, beamable[1:]):
            spaced = any(notes[k].has_leading_space for k in range(previous + 1, index + 1))
            shared_tuplet = groups[index] is not None and groups[index] == groups[previous]
            if spaced and (grouping not in METRIC_GROUP_LENGTH or shared_tuplet):
                chunks.append([index])
            else:
                chunks[-1].append(index)
        return chunks

    def _groups_for_run(
        self,
        run: list[int],
        notes: list[PositionedNote],
        groups: list[str | None],
        grouping: str,
    ) -> list[BeamGroup]:
        beamable = [index for index in run if notes[index].is_beamable]
        chunks = self._space_chunks(beamable, notes, groups, grouping)
        max_level = max(notes[index].beam_level for index in beamable)

        result: list[BeamGroup] = []
        for level in range(1, max_level + 1):
            if level == 1:
                subsets = [beamable]
            else:
                subsets = []
                for chunk in chunks:
                    subsets.extend(_split_at_rests([i for i in chunk if notes[i].beam_level >= level], notes))
            for subset in subsets:
                if not subset:
                    continue
                references = [notes[index].reference() for index in subset]
                if len(subset) == 1:
                    direction = _beamlet_direction(subset[0], beamable, notes)
                    result.append(BeamGroup(level=level, notes=references, is_partial=True, direction=direction))
                else:
                    result.append(BeamGroup(level=level, notes=references, is_partial=False))
        return result


def _onsets(notes: list[PositionedNote]) -> list[Fraction]:
    onsets: list[Fraction] = []
    position = Fraction(0)
    for note in notes:
        onsets.append(position)
        position += note.duration
    return onsets


def _split_at_rests(indices: list[int], notes: list[PositionedNote]) -> list[list[int]]:
    if not indices:
        return []
    parts: list[list[int]] = [[indices[0]]]
    for previous, index in zip(indices, indices[1:]):
        if any(notes[k].is_rest for k in range(previous + 1, index)):
            parts.append([index])
        else:
            parts[-1].append(index)
    return parts


def _beamlet_direction(index: int, run: list[int], notes: list[PositionedNote]) -> str:
    position = run.index(index)
    if position > 0 and notes[run[position - 1]].dotted:
        return "left"
    if position < len(run) - 1 and notes[run[position + 1]].dotted:
        return "right"
    center = (len(run) - 1) / 2
    return "right" if position < center else "left"


def analyze(measure: ParsedMeasure, policy: AnalyzerPolicy | None = None) -> AnalyzedMeasure:
    return MusicAnalyzer(policy).analyze(measure)
