from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field, replace
from typing import Literal

from chordgrid.logging_utils import log_event
from chordgrid.models import GridDiagnostic

logger = logging.getLogger(__name__)

DIRECTIVE_NAMES = {
    "auto-beam",
    "noauto",
    "space",
    "binary",
    "ternary",
    "count",
    "finger",
    "pick",
    "picks-auto",
    "picks-8",
    "picks-16",
    "transpose",
    "stems-up",
    "stems-down",
    "show%",
    "measure-num",
    "measures-per-line",
    "zoom",
}
GROUPING_WORDS = ("auto-beam", "noauto", "space", "binary", "ternary")

ZOOM_RE = re.compile(r"zoom\s*:\s*([\d.]+\s*%?)")
WORD_RE = re.compile(r"\S+")
HEADER_TIME_SIGNATURE_RE = re.compile(
    r"(\d{1,2})\s*/\s*(\d{1,2})(?:[ \t]+(" + "|".join(GROUPING_WORDS) + r")(?![\w-]))?"
)
BARLINE_RE = re.compile(r"(\|\|:|:\|\||\|:|:\||\|\||\|)(?:\.(\d+(?:[-,]\d+)*)?)?(?:x(\d+))?")
NOTE_VALUE_RE = re.compile(r"64|32|16|8|4|2|1")
STROKE_RE = re.compile(r"[thpm]?[du]")
TUPLET_CLOSE_RE = re.compile(r"\}(\d+)?(?::(\d*))?")
CHORD_RE = re.compile(r"\(?(?:[A-G][#b]?|N\.?C\.?)[^\s\[\]]*")


class GridSyntaxError(ValueError):
    """Raised only when a notation cannot be read at all."""


@dataclass(frozen=True)
class DirectiveToken:
    name: str
    value: str | None
    position: int
    text: str


@dataclass(frozen=True)
class TimeSignatureToken:
    numerator: int
    denominator: int
    grouping: str | None
    position: int


@dataclass(frozen=True)
class BarlineToken:
    kind: str
    position: int
    volta_text: str | None = None
    volta_end_marker: bool = False
    repeat_count: int | None = None


@dataclass(frozen=True)
class SegmentToken:
    chord: str
    rhythm: str | None
    leading_space: bool
    position: int
    rhythm_position: int | None = None


@dataclass(frozen=True)
class RhythmToken:
    kind: Literal["note", "space", "tuplet_open", "tuplet_close", "forced_tie", "repeat"]
    position: int
    value: int = 0
    dotted: bool = False
    is_rest: bool = False
    tie_before: bool = False
    tie_after: bool = False
    is_ghost: bool = False
    stroke: str | None = None
    count: int | None = None
    actual_count: int | None = None


@dataclass
class MeasureTokens:
    index: int
    line_index: int
    source: str
    position: int
    opening: BarlineToken | None = None
    closing: BarlineToken | None = None
    time_signature: TimeSignatureToken | None = None
    segments: list[SegmentToken] = field(default_factory=list)
    is_repeat_symbol: bool = False
    is_line_break: bool = False
    diagnostics: list[GridDiagnostic] = field(default_factory=list)


@dataclass
class LexedGrid:
    directives: list[DirectiveToken]
    header: TimeSignatureToken | None
    measures: list[MeasureTokens]
    diagnostics: list[GridDiagnostic]


def lex_grid(text: str) -> LexedGrid:
    if not isinstance(text, str) or not text.strip():
        raise GridSyntaxError("Notation is empty. Provide a time signature and at least one measure.")

    source = text.replace("\r\n", "\n").replace("\r", "\n")
    diagnostics: list[GridDiagnostic] = []
    directives, body_start = _lex_directives(source)

    header = None
    match = HEADER_TIME_SIGNATURE_RE.match(source, _skip_whitespace(source, body_start))
    if match:
        header = TimeSignatureToken(
            numerator=int(match.group(1)),
            denominator=int(match.group(2)),
            grouping=match.group(3),
            position=match.start(),
        )
        body_start = match.end()

    measures = _lex_body(source, body_start, diagnostics)
    log_event(
        logger,
        "grid_lexed",
        level=logging.DEBUG,
        directive_count=len(directives),
        measure_count=len(measures),
        diagnostic_count=len(diagnostics),
    )
    return LexedGrid(directives=directives, header=header, measures=measures, diagnostics=diagnostics)


def _skip_whitespace(source: str, pos: int) -> int:
    while pos < len(source) and source[pos].isspace():
        pos += 1
    return pos


def _lex_directives(source: str) -> tuple[list[DirectiveToken], int]:
    tokens: list[DirectiveToken] = []
    pos = _skip_whitespace(source, 0)
    while pos < len(source):
        zoom = ZOOM_RE.match(source, pos)
        if zoom:
            tokens.append(DirectiveToken("zoom", zoom.group(1), pos, zoom.group(0)))
            pos = _skip_whitespace(source, zoom.end())
            continue
        word = WORD_RE.match(source, pos)
        if word is None or not _looks_like_directive(word.group(0)):
            break
        name, _, value = word.group(0).partition(":")
        tokens.append(DirectiveToken(name.lower(), value or None, pos, word.group(0)))
        pos = _skip_whitespace(source, word.end())
    return tokens, pos


def _looks_like_directive(word: str) -> bool:
    name, sep, _ = word.partition(":")
    if name.lower() in DIRECTIVE_NAMES:
        return True
    # unknown key:value words are reported instead of being read as chords
    return bool(sep) and bool(re.fullmatch(r"[a-z][a-z-]*", name))


def _lex_body(source: str, start: int, diagnostics: list[GridDiagnostic]) -> list[MeasureTokens]:
    measures: list[MeasureTokens] = []
    line_start = start
    line_index = 0
    carry: BarlineToken | None = None
    while line_start <= len(source):
        line_end = source.find("\n", line_start)
        if line_end == -1:
            line_end = len(source)
        line_measures, carry, aborted = _lex_line(
            source, line_start, line_end, line_index, len(measures), carry, diagnostics
        )
        if line_measures:
            line_measures[-1].is_line_break = True
            measures.extend(line_measures)
            line_index += 1
        if aborted or line_end >= len(source):
            break
        line_start = line_end + 1
    return measures


def _lex_line(
    source: str,
    start: int,
    end: int,
    line_index: int,
    first_index: int,
    pending: BarlineToken | None,
    diagnostics: list[GridDiagnostic],
) -> tuple[list[MeasureTokens], BarlineToken | None, bool]:
    """Lex one source line; `pending` is the last barline seen before the line."""
    measures: list[MeasureTokens] = []
    content_start = start
    depth = 0
    seen_barline = False
    pos = start

    def emit(content_end: int, closing: BarlineToken | None, between_barlines: bool) -> None:
        content = source[content_start:content_end]
        if not content.strip() and not between_barlines:
            return
        tokens = MeasureTokens(
            index=first_index + len(measures),
            line_index=line_index,
            source=content.strip(),
            position=content_start,
            opening=pending,
            closing=closing,
        )
        _lex_measure_content(source, content_start, content_end, tokens)
        measures.append(tokens)

    while pos < end:
        char = source[pos]
        if char == "[":
            depth += 1
        elif char == "]":
            depth = max(0, depth - 1)
        elif depth == 0 and char in "|:":
            barline = BARLINE_RE.match(source, pos, end)
            if barline:
                token = _barline_token(barline)
                leading = not seen_barline and not source[content_start:pos].strip()
                emit(pos, token, between_barlines=seen_barline)
                # a plain bar opening a line keeps the marker that ended the previous one
                if not (leading and pending is not None and _is_plain(token)):
                    pending = token
                seen_barline = True
                pos = barline.end()
                content_start = pos
                continue
        pos += 1

    if depth > 0:
        message = "Unterminated '[' at end of input; the rest of the notation was ignored."
        index = first_index + len(measures) - 1 if measures else max(first_index - 1, 0)
        diagnostics.append(GridDiagnostic(message=message, measure_index=index, position=content_start, kind="structural"))
        log_event(logger, "grid_structural_error", level=logging.WARNING, reason=message, position=content_start)
        return measures, pending, True

    emit(end, None, between_barlines=False)
    if measures and measures[-1].closing is None:
        return measures, None, False
    return measures, pending, False


def _barline_token(match: re.Match[str]) -> BarlineToken:
    volta_part = match.group(2)
    has_dot = "." in match.group(0)[len(match.group(1)):]
    repeat_count = int(match.group(3)) if match.group(3) else None
    return BarlineToken(
        kind=match.group(1),
        position=match.start(),
        volta_text=volta_part,
        volta_end_marker=has_dot and volta_part is None,
        repeat_count=repeat_count,
    )


def _is_plain(token: BarlineToken) -> bool:
    return token.kind == "|" and token.volta_text is None and not token.volta_end_marker and token.repeat_count is None


def _lex_measure_content(source: str, start: int, end: int, tokens: MeasureTokens) -> None:
    pos = _skip_whitespace(source, start)
    leading_space = pos > start
    meter = HEADER_TIME_SIGNATURE_RE.match(source, pos, end)
    if meter:
        tokens.time_signature = TimeSignatureToken(
            numerator=int(meter.group(1)),
            denominator=int(meter.group(2)),
            grouping=meter.group(3),
            position=meter.start(),
        )
        pos = meter.end()
        tokens.source = source[pos:end].strip()

    while pos < end:
        char = source[pos]
        if char.isspace():
            leading_space = True
            pos += 1
            continue
        if char == "%":
            tokens.is_repeat_symbol = True
            pos += 1
            continue
        if char == "/":
            # chord separator inside a chord-only measure
            leading_space = True
            pos += 1
            continue
        if char == "[":
            pos = _lex_segment(source, pos, end, "", leading_space, pos, tokens)
            leading_space = False
            continue
        chord = CHORD_RE.match(source, pos, end)
        if chord is None:
            word_end = pos
            while word_end < end and not source[word_end].isspace() and source[word_end] != "[":
                word_end += 1
            word_end = max(word_end, pos + 1)
            tokens.diagnostics.append(
                GridDiagnostic(
                    message=f"Unrecognized token '{source[pos:word_end]}' in measure {tokens.index + 1}.",
                    measure_index=tokens.index,
                    position=pos,
                    kind="lexical",
                )
            )
            pos = word_end
            continue
        chord_start = pos
        pos = chord.end()
        look = _skip_whitespace(source, pos)
        if look < end and source[look] == "[":
            pos = _lex_segment(source, look, end, chord.group(0), leading_space, chord_start, tokens)
        else:
            tokens.segments.append(SegmentToken(chord=chord.group(0), rhythm=None, leading_space=leading_space, position=chord_start))
        leading_space = False


def _lex_segment(
    source: str,
    bracket: int,
    end: int,
    chord: str,
    leading_space: bool,
    position: int,
    tokens: MeasureTokens,
) -> int:
    depth = 0
    pos = bracket
    while pos < end:
        if source[pos] == "[":
            depth += 1
        elif source[pos] == "]":
            depth -= 1
            if depth == 0:
                break
        pos += 1
    rhythm = source[bracket + 1 : pos]
    tokens.segments.append(
        SegmentToken(
            chord=chord,
            rhythm=rhythm,
            leading_space=leading_space,
            position=position,
            rhythm_position=bracket + 1,
        )
    )
    return pos + 1


def tokenize_rhythm(text: str, offset: int = 0, measure_index: int | None = None) -> tuple[list[RhythmToken], list[GridDiagnostic]]:
    """Split the content of one `[...]` group into note, space, tuplet and tie tokens."""
    tokens: list[RhythmToken] = []
    diagnostics: list[GridDiagnostic] = []
    pending_tie = False
    stripped_start = len(text) - len(text.lstrip())
    pos = stripped_start
    text = text.rstrip()

    def error(message: str, at: int) -> None:
        diagnostics.append(GridDiagnostic(message=message, measure_index=measure_index, position=offset + at, kind="lexical"))

    while pos < len(text):
        char = text[pos]
        if char.isspace():
            if not tokens or tokens[-1].kind != "space":
                tokens.append(RhythmToken("space", offset + pos))
            pos += 1
            continue
        if text.startswith("[_]", pos):
            tokens.append(RhythmToken("forced_tie", offset + pos))
            pos += 3
            continue
        if char == "%":
            tokens.append(RhythmToken("repeat", offset + pos))
            pos += 1
            continue
        if char == "_":
            if tokens and tokens[-1].kind == "note" and not tokens[-1].tie_after:
                tokens[-1] = replace(tokens[-1], tie_after=True)
            else:
                pending_tie = True
            pos += 1
            continue
        if char == "{":
            tokens.append(RhythmToken("tuplet_open", offset + pos))
            pos += 1
            continue
        if char == "}":
            match = TUPLET_CLOSE_RE.match(text, pos)
            if match.group(1) is None or (match.group(2) is not None and match.group(2) == ""):
                error("Tuplet '}' must be followed by a count such as '}3' or '}5:4'.", pos)
                tokens.append(RhythmToken("tuplet_close", offset + pos))
            else:
                actual = int(match.group(2)) if match.group(2) else None
                tokens.append(RhythmToken("tuplet_close", offset + pos, count=int(match.group(1)), actual_count=actual))
            pos = match.end()
            continue
        is_rest = False
        start = pos
        if char == "-":
            is_rest = True
            pos += 1
        value = NOTE_VALUE_RE.match(text, pos)
        if value is None:
            bad_end = pos + 1
            while bad_end < len(text) and text[bad_end].isdigit():
                bad_end += 1
            error(f"Unrecognized note value '{text[start:bad_end]}'.", start)
            pos = bad_end
            continue
        pos = value.end()
        dotted = False
        is_ghost = False
        if pos < len(text) and text[pos] == ".":
            dotted = True
            pos += 1
        if pos < len(text) and text[pos] == "x":
            is_ghost = True
            pos += 1
        stroke = None
        stroke_match = STROKE_RE.match(text, pos)
        if stroke_match:
            stroke = stroke_match.group(0)
            pos = stroke_match.end()
        tokens.append(
            RhythmToken(
                "note",
                offset + start,
                value=int(value.group(0)),
                dotted=dotted,
                is_rest=is_rest,
                tie_before=pending_tie,
                is_ghost=is_ghost,
                stroke=stroke,
            )
        )
        pending_tie = False

    if pending_tie:
        error("Tie '_' is not followed by a note.", len(text))
    return tokens, diagnostics
