from __future__ import annotations

import os
from dataclasses import dataclass, field, replace

from chordgrid.models import FingerLanguage, StemsDirection, TimeSignature, normalize_grouping_mode

GROUPING_KEYWORDS = {"auto-beam", "noauto", "space", "binary", "ternary"}
ZOOM_RANGE = (1, 500)
TRUTHY = {"1", "true", "yes", "on"}


def _default_time_signature() -> TimeSignature:
    return TimeSignature(numerator=4, denominator=4)


@dataclass(frozen=True)
class GridContext:
    """Notation defaults in force while a grid is built.

    A new context is derived for every directive and inline time signature, so the
    state seen by a measure is fully described by the context it was built with.
    """

    time_signature: TimeSignature = field(default_factory=_default_time_signature)
    counting: bool = False
    picks_mode: bool = False
    picks_subdivision: str | None = None
    finger_mode: FingerLanguage | None = None
    transpose: int = 0
    force_accidental: str | None = None
    stems_direction: StemsDirection = "up"
    display_repeat_symbol: bool = False
    show_measure_numbers: bool = False
    measures_per_line: int | None = None
    zoom_percent: int | None = None

    @property
    def grouping_mode(self) -> str:
        return self.time_signature.grouping_mode

    def with_grouping(self, mode: str) -> "GridContext":
        meter = self.time_signature.model_copy(update={"grouping_mode": normalize_grouping_mode(mode)})
        return replace(self, time_signature=meter)

    def with_time_signature(self, numerator: int, denominator: int, mode: str | None = None) -> "GridContext":
        meter = TimeSignature(
            numerator=numerator,
            denominator=denominator,
            grouping_mode=mode if mode is not None else self.grouping_mode,
        )
        return replace(self, time_signature=meter)

    def meter_for_measure(self, override_mode: str | None = None) -> TimeSignature:
        if override_mode is None:
            return self.time_signature.model_copy()
        return self.time_signature.model_copy(update={"grouping_mode": normalize_grouping_mode(override_mode)})


def apply_directive(context: GridContext, name: str, value: str | None) -> tuple[GridContext, str | None]:
    """Return the context updated by one directive and an error message when it is rejected."""
    if name in GROUPING_KEYWORDS:
        return context.with_grouping(name), None
    if name == "count":
        return replace(context, counting=True), None
    if name == "pick":
        return replace(context, picks_mode=True), None
    if name in {"picks-auto", "picks-8", "picks-16"}:
        return replace(context, picks_mode=True, picks_subdivision=name.split("-", 1)[1]), None
    if name == "finger":
        language = (value or "en").lower()
        if language not in {"en", "fr"}:
            return context, f"Unknown finger language '{value}'. Use finger:en or finger:fr."
        return replace(context, finger_mode=language), None
    if name in {"stems-up", "stems-down"}:
        return replace(context, stems_direction=name.split("-", 1)[1]), None
    if name == "show%":
        return replace(context, display_repeat_symbol=True), None
    if name == "measure-num":
        return replace(context, show_measure_numbers=True), None
    if name == "transpose":
        return _apply_transpose(context, value or "")
    if name == "measures-per-line":
        if value is None or not value.isdigit() or int(value) < 1:
            return context, f"Invalid measures-per-line value '{value}'."
        return replace(context, measures_per_line=int(value)), None
    if name == "zoom":
        percent = parse_zoom(value or "")
        if percent is None:
            return context, f"Invalid zoom value '{value}'. Use a percentage between {ZOOM_RANGE[0]} and {ZOOM_RANGE[1]}."
        return replace(context, zoom_percent=percent), None
    return context, f"Unknown directive '{name}'."


def _apply_transpose(context: GridContext, value: str) -> tuple[GridContext, str | None]:
    cleaned = value.strip()
    accidental = None
    if cleaned[-1:] in {"#", "b"}:
        accidental = cleaned[-1]
        cleaned = cleaned[:-1]
    try:
        semitones = int(cleaned)
    except ValueError:
        return context, f"Invalid transpose value '{value}'. Use transpose:+N or transpose:-N."
    return replace(context, transpose=semitones, force_accidental=accidental), None


def parse_zoom(value: str) -> int | None:
    cleaned = value.replace(" ", "").rstrip("%")
    if not cleaned:
        return None
    try:
        number = float(cleaned)
    except ValueError:
        return None
    # 0.8 means 80 percent, 80 means 80 percent
    if "." in cleaned and number < 10 and not value.strip().endswith("%"):
        number *= 100
    percent = int(round(number))
    if percent < ZOOM_RANGE[0] or percent > ZOOM_RANGE[1]:
        return None
    return percent


@dataclass(frozen=True)
class AnalyzerPolicy:
    tuplet_rests_break_primary: bool = False
    plain_rests_break_primary: bool = True

    @classmethod
    def from_env(cls) -> "AnalyzerPolicy":
        defaults = cls()
        return cls(
            tuplet_rests_break_primary=_env_flag(
                "CHORDGRID_TUPLET_RESTS_BREAK_PRIMARY", defaults.tuplet_rests_break_primary
            ),
            plain_rests_break_primary=_env_flag(
                "CHORDGRID_PLAIN_RESTS_BREAK_PRIMARY", defaults.plain_rests_break_primary
            ),
        )

    def rest_breaks_primary(self, in_tuplet: bool) -> bool:
        return self.tuplet_rests_break_primary if in_tuplet else self.plain_rests_break_primary


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in TRUTHY


DEFAULT_CONTEXT = GridContext()
DEFAULT_POLICY = AnalyzerPolicy()
