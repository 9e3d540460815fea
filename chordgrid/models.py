from __future__ import annotations

from fractions import Fraction
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


NoteValue = Literal[1, 2, 4, 8, 16, 32, 64]
GroupingMode = Literal["space", "auto", "binary", "ternary"]
BarlineType = Literal["|", "||", "|:", ":|", "||:", ":||"]
CountingSize = Literal["t", "m", "s"]
TupletPosition = Literal["start", "middle", "end"]
StrokeDirection = Literal["d", "u"]
FingerLanguage = Literal["en", "fr"]
StemsDirection = Literal["up", "down"]
DiagnosticKind = Literal["lexical", "duration", "structural", "directive"]
BeamletDirection = Literal["left", "right"]

VALID_DENOMINATORS = {1, 2, 4, 8, 16, 32}
TERNARY_NUMERATORS = {3, 6, 9, 12}

GROUPING_ALIASES = {
    "noauto": "space",
    "space-based": "space",
    "auto-beam": "auto",
}


def normalize_grouping_mode(value: str) -> str:
    cleaned = value.strip().lower()
    return GROUPING_ALIASES.get(cleaned, cleaned)


class TimeSignature(BaseModel):
    numerator: int = Field(ge=1, le=32)
    denominator: int
    beat_unit: int | None = None
    grouping_mode: GroupingMode = "space"

    @field_validator("denominator")
    @classmethod
    def validate_denominator(cls, value: int) -> int:
        if value not in VALID_DENOMINATORS:
            raise ValueError("Time-signature denominator must be a note value (1,2,4,8,16,32).")
        return value

    @field_validator("grouping_mode", mode="before")
    @classmethod
    def normalize_mode(cls, value: str) -> str:
        return normalize_grouping_mode(str(value))

    @model_validator(mode="after")
    def default_beat_unit(self):
        if self.beat_unit is None:
            self.beat_unit = self.denominator
        return self

    @property
    def quarter_notes_per_measure(self) -> Fraction:
        return Fraction(self.numerator * 4, self.denominator)

    @property
    def measure_length(self) -> Fraction:
        return Fraction(self.numerator, self.denominator)

    @property
    def is_irregular(self) -> bool:
        return self.denominator >= 8 and self.numerator not in TERNARY_NUMERATORS

    def resolved_grouping(self) -> str:
        if self.grouping_mode != "auto":
            return self.grouping_mode
        if self.denominator <= 4:
            return "binary"
        if self.numerator in TERNARY_NUMERATORS:
            return "ternary"
        return "space"

    def label(self) -> str:
        return f"{self.numerator}/{self.denominator}"


class TupletInfo(BaseModel):
    group_id: str
    count: int = Field(ge=1)
    notated_count: int = Field(ge=1)
    actual_count: int = Field(ge=1)
    position: TupletPosition = "middle"
    explicit_ratio: bool = False

    @property
    def ratio(self) -> Fraction:
        return Fraction(self.actual_count, self.notated_count)


class NoteElement(BaseModel):
    value: NoteValue
    dotted: bool = False
    is_rest: bool = False
    tie_start: bool = False
    tie_end: bool = False
    tie_to_void: bool = False
    tie_from_void: bool = False
    tuplet: TupletInfo | None = None
    has_leading_space: bool = False
    is_ghost: bool = False
    forced_beam_through_tie: bool = False
    pick_direction: StrokeDirection | None = None
    finger_symbol: str | None = None
    position: int | None = None
    counting_label: str | None = None
    counting_size: CountingSize | None = None
    counting_number: int | None = None

    @property
    def duration(self) -> Fraction:
        base = Fraction(1, self.value)
        if self.dotted:
            base *= Fraction(3, 2)
        if self.tuplet is not None:
            base *= self.tuplet.ratio
        return base

    @property
    def quarter_notes(self) -> Fraction:
        return self.duration * 4

    @property
    def beam_level(self) -> int:
        if self.value >= 64:
            return 4
        if self.value >= 32:
            return 3
        if self.value >= 16:
            return 2
        if self.value >= 8:
            return 1
        return 0

    @property
    def is_beamable(self) -> bool:
        return self.value >= 8 and not self.is_rest


class BeamSpan(BaseModel):
    start_index: int
    end_index: int
    note_count: int


class Beat(BaseModel):
    notes: list[NoteElement] = Field(default_factory=list)
    has_beam: bool = False
    beam_groups: list[BeamSpan] = Field(default_factory=list)


class ChordSegment(BaseModel):
    chord: str = ""
    leading_space: bool = False
    beats: list[Beat] = Field(default_factory=list)

    @property
    def notes(self) -> list[NoteElement]:
        return [note for beat in self.beats for note in beat.notes]


class Volta(BaseModel):
    numbers: list[int]
    text: str
    is_closed: bool = True


class Measure(BaseModel):
    chord_segments: list[ChordSegment] = Field(default_factory=list)
    barline: BarlineType = "|"
    is_line_break: bool = False
    source: str = ""
    time_signature: TimeSignature | None = None
    active_time_signature: TimeSignature | None = None
    is_repeat: bool = False
    is_repeat_start: bool = False
    is_repeat_end: bool = False
    repeat_count: int | None = Field(default=None, ge=1)
    volta_start: Volta | None = None
    volta_end: Volta | None = None

    @property
    def beats(self) -> list[Beat]:
        return [beat for segment in self.chord_segments for beat in segment.beats]

    @property
    def notes(self) -> list[NoteElement]:
        return [note for segment in self.chord_segments for note in segment.notes]

    @property
    def is_chord_only(self) -> bool:
        return not any(segment.beats for segment in self.chord_segments)

    @property
    def is_empty(self) -> bool:
        return not self.chord_segments


class NoteReference(BaseModel):
    model_config = ConfigDict(frozen=True)

    segment_index: int = Field(ge=0)
    note_index: int = Field(ge=0)


class BeamGroup(BaseModel):
    level: int = Field(ge=1, le=4)
    notes: list[NoteReference]
    is_partial: bool = False
    direction: BeamletDirection | None = None


class ParsedSegment(BaseModel):
    chord: str = ""
    leading_space: bool = False
    notes: list[NoteElement] = Field(default_factory=list)


class ParsedMeasure(BaseModel):
    index: int = 0
    segments: list[ParsedSegment] = Field(default_factory=list)
    time_signature: TimeSignature = Field(default_factory=lambda: TimeSignature(numerator=4, denominator=4))
    barline: BarlineType = "|"
    is_line_break: bool = False
    source: str = ""


class PositionedNote(NoteElement):
    segment_index: int
    note_index_in_segment: int
    absolute_index: int

    def reference(self) -> NoteReference:
        return NoteReference(segment_index=self.segment_index, note_index=self.note_index_in_segment)


class AnalyzedMeasure(ParsedMeasure):
    all_notes: list[PositionedNote] = Field(default_factory=list)
    beam_groups: list[BeamGroup] = Field(default_factory=list)


class GridDiagnostic(BaseModel):
    message: str
    measure_index: int | None = None
    position: int | None = None
    kind: DiagnosticKind = "lexical"
    expected_quarter_notes: float | None = None
    found_quarter_notes: float | None = None


class ChordGrid(BaseModel):
    time_signature: TimeSignature
    measures: list[Measure] = Field(default_factory=list)
    lines: list[list[int]] = Field(default_factory=list)


class ParseResult(BaseModel):
    measures: list[Measure]
    errors: list[GridDiagnostic] = Field(default_factory=list)
    grid: ChordGrid
    display_repeat_symbol: bool = False
    picks_mode: bool = False
    picks_subdivision: Literal["auto", "8", "16"] | None = None
    finger_mode: FingerLanguage | None = None
    measures_per_line: int | None = None
    stems_direction: StemsDirection = "up"
    counting_mode: bool = False
    zoom_percent: int | None = None
    transpose: int = 0
    show_measure_numbers: bool = False


class AnalyzerParseResult(BaseModel):
    time_signature: TimeSignature
    measures: list[ParsedMeasure]
    errors: list[GridDiagnostic] = Field(default_factory=list)


class NoteRenderElement(BaseModel):
    kind: Literal["note"] = "note"
    measure_index: int
    reference: NoteReference
    value: NoteValue
    dotted: bool
    is_ghost: bool = False
    stroke: str | None = None
    counting_label: str | None = None


class RestRenderElement(BaseModel):
    kind: Literal["rest"] = "rest"
    measure_index: int
    reference: NoteReference
    value: NoteValue
    dotted: bool


class StemRenderElement(BaseModel):
    kind: Literal["stem"] = "stem"
    measure_index: int
    reference: NoteReference
    direction: StemsDirection


class ChordRenderElement(BaseModel):
    kind: Literal["chord"] = "chord"
    measure_index: int
    segment_index: int
    symbol: str
    anchor: NoteReference | None = None


class RepeatSymbolRenderElement(BaseModel):
    kind: Literal["repeat-symbol"] = "repeat-symbol"
    measure_index: int
    source_measure_index: int


class BeamRenderElement(BaseModel):
    kind: Literal["beam"] = "beam"
    measure_index: int
    level: int
    notes: list[NoteReference]
    is_partial: bool
    direction: BeamletDirection | None = None


class TupletRenderElement(BaseModel):
    kind: Literal["tuplet"] = "tuplet"
    measure_index: int
    group_id: str
    label: str
    notes: list[NoteReference]


class TieRenderElement(BaseModel):
    kind: Literal["tie"] = "tie"
    measure_index: int
    start: NoteReference | None
    end: NoteReference | None


class BarlineRenderElement(BaseModel):
    kind: Literal["barline"] = "barline"
    measure_index: int
    barline: BarlineType
    repeat_count: int | None = None


class VoltaRenderElement(BaseModel):
    kind: Literal["volta"] = "volta"
    measure_index: int
    text: str
    is_closed: bool
    edge: Literal["start", "end", "both"]


RenderedElement = Annotated[
    Union[
        NoteRenderElement,
        RestRenderElement,
        StemRenderElement,
        ChordRenderElement,
        RepeatSymbolRenderElement,
        BeamRenderElement,
        TupletRenderElement,
        TieRenderElement,
        BarlineRenderElement,
        VoltaRenderElement,
    ],
    Field(discriminator="kind"),
]


class NotationRequest(BaseModel):
    notation: str = Field(min_length=1, max_length=20000)


class TransposeRequest(BaseModel):
    chords: list[str] = Field(min_length=1, max_length=512)
    semitones: int = Field(ge=-11, le=11)
    accidental: Literal["#", "b"] | None = None


class AnalyzeResponse(BaseModel):
    measures: list[AnalyzedMeasure]
    errors: list[GridDiagnostic] = Field(default_factory=list)


class RenderedMeasure(BaseModel):
    index: int
    elements: list[RenderedElement]


class RenderElementsResponse(BaseModel):
    measures: list[RenderedMeasure]
    errors: list[GridDiagnostic] = Field(default_factory=list)
