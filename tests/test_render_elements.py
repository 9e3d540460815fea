from chordgrid.services.grid_parser import parse, to_parsed_measure
from chordgrid.services.music_analyzer import MusicAnalyzer
from chordgrid.services.render_elements import render_measure


def _render(notation: str, index: int = 0, **kwargs):
    result = parse(notation)
    measure = result.measures[index]
    analyzed = MusicAnalyzer().analyze(to_parsed_measure(measure, index, result.grid.time_signature))
    return render_measure(analyzed, measure, index, **kwargs)


def _kinds(elements) -> list[str]:
    return [element.kind for element in elements]


def test_measure_elements_cover_chords_notes_beams_and_barline():
    elements = _render("4/4 | C[88 88 4 4] |")
    kinds = _kinds(elements)

    assert kinds.count("chord") == 1
    assert kinds.count("note") == 6
    assert kinds.count("stem") == 6
    assert kinds.count("beam") == 2
    assert kinds[-1] == "barline"


def test_chord_anchor_points_at_first_note():
    elements = _render("4/4 | C[2]G[2] |")
    chords = [e for e in elements if e.kind == "chord"]

    assert [(c.symbol, c.anchor.segment_index, c.anchor.note_index) for c in chords] == [("C", 0, 0), ("G", 1, 0)]


def test_rests_have_no_stem_and_whole_notes_no_stem():
    elements = _render("4/4 | C[-2 2] | G[1] |")
    assert _kinds(elements).count("rest") == 1
    assert _kinds(elements).count("stem") == 1

    whole = _render("4/4 | C[-2 2] | G[1] |", index=1)
    assert "stem" not in _kinds(whole)


def test_stem_direction_follows_grid_setting():
    elements = _render("4/4 | C[4 4 4 4] |", stems_direction="down")

    assert {e.direction for e in elements if e.kind == "stem"} == {"down"}


def test_tuplet_bracket_labels():
    plain = [e for e in _render("4/4 | C[{888}3 4 2] |") if e.kind == "tuplet"]
    ratio = [e for e in _render("4/4 | C[{88888}5:4 2] |") if e.kind == "tuplet"]

    assert [(t.label, len(t.notes)) for t in plain] == [("3", 3)]
    assert [t.label for t in ratio] == ["5:4"]


def test_ties_inside_and_across_measures():
    inside = [e for e in _render("4/4 | C[2_4 4] |") if e.kind == "tie"]
    outgoing = [e for e in _render("4/4 | C[2 4 4_] | G[4 4 2] |") if e.kind == "tie"]
    incoming = [e for e in _render("4/4 | C[2 4 4_] | G[4 4 2] |", index=1) if e.kind == "tie"]

    assert [(t.start.note_index, t.end.note_index) for t in inside] == [(0, 1)]
    assert [(t.start.note_index, t.end) for t in outgoing] == [(2, None)]
    assert [(t.start, t.end.note_index) for t in incoming] == [(None, 0)]


def test_strokes_and_counting_labels_on_notes():
    result = parse("pick\ncount\n4/4 | C[8d8u 4 4 4] |")
    measure = result.measures[0]
    analyzed = MusicAnalyzer().analyze(to_parsed_measure(measure, 0, result.grid.time_signature))
    notes = [e for e in render_measure(analyzed, measure, 0) if e.kind == "note"]

    assert [n.stroke for n in notes[:2]] == ["d", "u"]
    assert [n.counting_label for n in notes] == ["1", "&", "2", "3", "4"]


def test_repeat_symbol_replaces_copied_rhythm_when_enabled():
    shown = _render("4/4 | C[88 88 4 4] | % |", index=1, display_repeat_symbol=True)
    hidden = _render("4/4 | C[88 88 4 4] | % |", index=1)

    assert "repeat-symbol" in _kinds(shown)
    assert "note" not in _kinds(shown)
    assert _kinds(hidden).count("note") == 6


def test_volta_edges():
    notation = "4/4 ||: C[1] |.1 G[1] | D[1] :||.2 A[1] ||"
    start = [e for e in _render(notation, index=1) if e.kind == "volta"]
    end = [e for e in _render(notation, index=2) if e.kind == "volta"]
    both = [e for e in _render(notation, index=3) if e.kind == "volta"]

    assert [(v.text, v.edge, v.is_closed) for v in start] == [("1", "start", True)]
    assert [(v.text, v.edge) for v in end] == [("1", "end")]
    assert [(v.text, v.edge, v.is_closed) for v in both] == [("2", "both", False)]


def test_barline_carries_repeat_count():
    elements = _render("4/4 ||: C[1] :||x3")
    barline = elements[-1]

    assert (barline.barline, barline.repeat_count) == (":||", 3)
