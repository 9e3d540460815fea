import logging

import pytest

from chordgrid.services.grid_parser import parse, parse_for_analyzer, volta_numbers
from chordgrid.services.notation_lexer import GridSyntaxError


def test_parse_returns_measures_grid_and_flags():
    result = parse("stems-down\nshow%\nmeasure-num\nmeasures-per-line:4\n3/4 | C[4 4 4] | G[2.] |")

    assert result.errors == []
    assert [m.chord for m in result.measures] == ["C", "G"]
    assert result.grid.time_signature.label() == "3/4"
    assert result.grid.measures == result.measures
    assert result.stems_direction == "down"
    assert result.display_repeat_symbol is True
    assert result.show_measure_numbers is True
    assert result.measures_per_line == 4


def test_missing_header_defaults_to_common_time():
    result = parse("| C[4 4 4 4] |")

    assert result.grid.time_signature.label() == "4/4"
    assert result.errors == []


def test_blank_notation_raises():
    with pytest.raises(GridSyntaxError):
        parse("  ")


def test_invalid_header_denominator_falls_back():
    result = parse("4/5 | C[4 4 4 4] |")

    assert result.grid.time_signature.label() == "4/4"
    assert result.errors[0].kind == "structural"


def test_lines_group_measures_by_source_line():
    result = parse("4/4 | C[1] | G[1] |\n| Am[1] | F[1] |\n| C[1] |")

    assert result.grid.lines == [[0, 1], [2, 3], [4]]
    assert [m.is_line_break for m in result.measures] == [False, True, False, True, True]


def test_trailing_measure_without_barline_gets_single_bar():
    result = parse("4/4 | C[1] | G[1]")

    assert result.measures[1].barline == "|"


def test_empty_measures_keep_their_place():
    result = parse("4/4 | C[1] | | G[1] |")

    assert len(result.measures) == 3
    assert result.measures[1].is_empty is True
    assert result.measures[1].chord == ""
    assert result.errors == []


def test_rhythm_without_chord_has_empty_chord():
    result = parse("4/4 | [4 4 4 4] |")

    assert result.measures[0].chord == ""
    assert len(result.measures[0].notes) == 4


def test_chord_only_measures():
    result = parse("4/4 | C | Em / G |")

    assert result.measures[0].is_chord_only is True
    assert [s.chord for s in result.measures[1].chord_segments] == ["Em", "G"]
    assert result.errors == []


def test_volta_numbers():
    assert volta_numbers("1") == [1]
    assert volta_numbers("1-3") == [1, 2, 3]
    assert volta_numbers("1,2,3") == [1, 2, 3]


def test_closed_volta_ends_on_repeat_end():
    result = parse("4/4 ||: C[4] |.1-3 G[4] :||.4 G[4] |. Am[4] ||")
    first, second = result.measures[1], result.measures[2]

    assert first.volta_start.text == "1-3"
    assert first.volta_start.numbers == [1, 2, 3]
    assert first.volta_start.is_closed is True
    assert first.volta_end == first.volta_start
    assert first.is_repeat_end is True
    assert second.volta_start.text == "4"
    assert second.volta_start.is_closed is False
    assert second.volta_end is None
    assert result.measures[3].volta_end.text == "4"
    assert result.measures[3].volta_start is None


def test_open_volta_without_end_marker_spans_one_measure():
    result = parse("4/4 ||: C[4] :||.4 G[4] | Am[4] ||")

    assert result.measures[1].volta_start.text == "4"
    assert result.measures[1].volta_end.text == "4"
    assert result.measures[2].volta_start is None
    assert result.measures[2].volta_end is None


def test_end_marker_extends_open_volta():
    result = parse("4/4 ||: C[4] :||.4 G[4] | F[4] | Em[4] |. Am[4] ||")

    assert [m.volta_end is not None for m in result.measures] == [False, False, False, False, True]


def test_closed_volta_across_lines():
    notation = "4/4 ||: C[1] |.1,2 G[1] |\n| F[1] :||.3 C[1] ||"
    result = parse(notation)

    assert result.measures[1].volta_start.text == "1,2"
    assert result.measures[2].volta_end.text == "1,2"
    assert result.measures[3].volta_start.text == "3"


def test_closed_volta_ends_before_next_volta():
    result = parse("4/4 | C[1] |.1 G[1] | D[1] |.2 A[1] ||")

    assert result.measures[2].volta_end.text == "1"
    assert result.measures[3].volta_end.text == "2"


def test_zoom_forms():
    assert parse("zoom:50%\n4/4 | C[1] |").zoom_percent == 50
    assert parse("zoom:82 4/4 | C[1] |").zoom_percent == 82
    assert parse("zoom:0.8\n4/4 | C[1] |").zoom_percent == 80
    assert parse("zoom:1.5\n4/4 | C[1] |").zoom_percent == 150
    assert parse("zoom: 100 %\n4/4 | C[1] |").zoom_percent == 100


def test_out_of_range_zoom_is_ignored_with_diagnostic():
    result = parse("zoom:600%\n4/4 | C[1] |")

    assert result.zoom_percent is None
    assert result.errors[0].kind == "directive"


def test_unknown_directive_is_reported():
    result = parse("tempo:120\n4/4 | C[1] |")

    assert result.errors[0].kind == "directive"
    assert "tempo" in result.errors[0].message


def test_transpose_directive_rewrites_chords():
    result = parse("transpose:+5\n4/4 | Em[2] C/E[2] | D7[1] |")

    assert [s.chord for m in result.measures for s in m.chord_segments] == ["Am", "F/A", "G7"]
    assert result.transpose == 5


def test_transpose_with_forced_accidental():
    result = parse("transpose:+1b\n4/4 | C[1] | F#m[1] |")

    assert [m.chord for m in result.measures] == ["Db", "Gm"]


def test_pick_mode_keeps_explicit_strokes():
    result = parse("pick\n4/4 | C[8d8u 4 4 4] |")
    notes = result.measures[0].notes

    assert result.picks_mode is True
    assert [n.pick_direction for n in notes] == ["d", "u", None, None, None]


def test_picks_subdivision_alternates_strokes():
    result = parse("picks-8\n4/4 | C[8888 4 -8 8] |")

    assert result.picks_subdivision == "8"
    assert [n.pick_direction for n in result.measures[0].notes] == ["d", "u", "d", "u", "d", None, "u"]


def test_picks_auto_uses_sixteenths_when_present():
    result = parse("picks-auto\n4/4 | C[16161616 4 4 4] |")

    assert [n.pick_direction for n in result.measures[0].notes] == ["d", "u", "d", "u", "d", "d", "d"]


def test_finger_mode_symbols():
    result = parse("finger:fr\n4/4 | C[8d8u 8td8mu 2] |")

    assert result.finger_mode == "fr"
    assert [n.finger_symbol for n in result.measures[0].notes] == ["pd", "mu", "pd", "mu", None]


def test_errors_are_isolated_per_measure():
    result = parse("4/4 | C[4 4 3 4] | G[4 4 4 4] |")

    lexical = [e for e in result.errors if e.kind == "lexical"]
    assert [e.measure_index for e in lexical] == [0]
    assert len(result.measures[1].notes) == 4


def test_parse_for_analyzer_shares_the_build():
    notation = "4/4 | C[{888}3 4 2] | 3/4 G[4 4 4] |"
    parsed = parse_for_analyzer(notation)
    grid = parse(notation)

    assert [m.index for m in parsed.measures] == [0, 1]
    assert parsed.measures[1].time_signature.label() == "3/4"
    assert [n.duration for n in parsed.measures[0].segments[0].notes] == [n.duration for n in grid.measures[0].notes]


def test_parse_logs_grid_events(caplog):
    with caplog.at_level(logging.INFO):
        parse("4/4 | C[4 4] |")

    events = [getattr(record, "event", "") for record in caplog.records]
    assert "grid_parsed" in events
    assert "grid_diagnostics" in events
