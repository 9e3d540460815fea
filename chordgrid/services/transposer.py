from __future__ import annotations

import re
from typing import Literal

AccidentalPreference = Literal["sharp", "flat"]

NOTE_TO_SEMITONE = {
    "C": 0,
    "C#": 1,
    "Db": 1,
    "D": 2,
    "D#": 3,
    "Eb": 3,
    "E": 4,
    "F": 5,
    "F#": 6,
    "Gb": 6,
    "G": 7,
    "G#": 8,
    "Ab": 8,
    "A": 9,
    "A#": 10,
    "Bb": 10,
    "B": 11,
    "Cb": 11,
    "B#": 0,
    "Fb": 4,
    "E#": 5,
}
SHARP_NAMES = ["C", "C#", "D", "D#", "E", "F", "F#", "G", "G#", "A", "A#", "B"]
FLAT_NAMES = ["C", "Db", "D", "Eb", "E", "F", "Gb", "G", "Ab", "A", "Bb", "B"]

SHARP_KEYS = {"C", "G", "D", "A", "E", "B", "F#", "C#"}
FLAT_KEYS = {"F", "Bb", "Eb", "Ab", "Db", "Gb", "Cb"}
RELATIVE_MAJORS = {
    "Am": "C",
    "Em": "G",
    "Bm": "D",
    "F#m": "A",
    "C#m": "E",
    "G#m": "B",
    "D#m": "F#",
    "Dm": "F",
    "Gm": "Bb",
    "Cm": "Eb",
    "Fm": "Ab",
    "Bbm": "Db",
    "Ebm": "Gb",
}

ROOT_RE = re.compile(r"\(?([A-G][#b]?)")
BASS_RE = re.compile(r"^(.*)/([A-G][#b]?)(\)?)$")
MINOR_RE = re.compile(r"^\(?[A-G][#b]?m(?!aj)")


def transpose_note(note: str, semitones: int, preference: AccidentalPreference | None = None) -> str:
    if note not in NOTE_TO_SEMITONE:
        return note
    target = (NOTE_TO_SEMITONE[note] + semitones) % 12
    if preference == "flat":
        return FLAT_NAMES[target]
    return SHARP_NAMES[target]


def transpose_chord(chord: str, semitones: int, preference: AccidentalPreference | None = None) -> str:
    if not chord.strip():
        return ""
    root = ROOT_RE.match(chord)
    if root is None:
        return chord
    prefix = chord[: root.start(1)]
    suffix = chord[root.end(1) :]
    bass = BASS_RE.match(suffix)
    if bass:
        quality, bass_note, closing = bass.groups()
        suffix = f"{quality}/{transpose_note(bass_note, semitones, preference)}{closing}"
    return f"{prefix}{transpose_note(root.group(1), semitones, preference)}{suffix}"


def target_key_preference(chords: list[str], semitones: int) -> AccidentalPreference:
    """Pick sharps or flats from the key the first chord lands in."""
    named = [chord for chord in chords if chord.strip()]
    if not named:
        return "sharp"
    first = named[0]
    root = ROOT_RE.match(first)
    if root is not None and root.group(1) in NOTE_TO_SEMITONE:
        target = (NOTE_TO_SEMITONE[root.group(1)] + semitones) % 12
        keys = [SHARP_NAMES[target], FLAT_NAMES[target]]
        if MINOR_RE.match(first):
            keys = [RELATIVE_MAJORS[f"{name}m"] for name in keys if f"{name}m" in RELATIVE_MAJORS]
        for key in keys:
            if key in SHARP_KEYS:
                return "sharp"
            if key in FLAT_KEYS:
                return "flat"
    sharps = sum(1 for chord in named if "#" in chord)
    flats = sum(1 for chord in named if "b" in chord)
    return "flat" if flats > sharps else "sharp"


def transpose_chords(chords: list[str], semitones: int, force_accidental: str | None = None) -> list[str]:
    if not chords:
        return []
    if force_accidental == "#":
        preference: AccidentalPreference = "sharp"
    elif force_accidental == "b":
        preference = "flat"
    else:
        preference = target_key_preference(chords, semitones)
    return [transpose_chord(chord, semitones, preference) for chord in chords]
