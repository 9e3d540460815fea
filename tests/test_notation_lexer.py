import pytest

from chordgrid.services.notation_lexer import GridSyntaxError, lex_grid, tokenize_rhythm


def _notes(tokens):
    return [token for token in tokens if token.kind == "note"]


def test_blank_input_raises_syntax_error():
    with pytest.raises(GridSyntaxError):
        lex_grid("   \n  ")


def test_directives_and_header_share_first_line():
    lexed = lex_grid("zoom:75% count 4/4 | C[4 4 4 4] |")

    assert [d.name for d in lexed.directives] == ["zoom", "count"]
    assert lexed.directives[0].value == "75%"
    assert (lexed.header.numerator, lexed.header.denominator) == (4, 4)
    assert len(lexed.measures) == 1


def test_directive_lines_before_header():
    lexed = lex_grid("finger:fr\nstems-down\n3/4 binary\n| C[4 4 4] |")

    assert [(d.name, d.value) for d in lexed.directives] == [("finger", "fr"), ("stems-down", None)]
    assert lexed.header.grouping == "binary"


def test_barline_volta_and_repeat_count():
    lexed = lex_grid("4/4 ||: C[1] |.1-3 G[1] :||x2 D[1] :||.4 A[1] |. E[1] ||")
    measures = lexed.measures

    assert measures[0].opening.kind == "||:"
    assert measures[0].closing.volta_text == "1-3"
    assert measures[1].closing.kind == ":||"
    assert measures[1].closing.repeat_count == 2
    assert measures[2].closing.volta_text == "4"
    assert measures[3].closing.volta_end_marker is True
    assert measures[4].closing.kind == "||"


def test_empty_measure_between_barlines():
    lexed = lex_grid("4/4 | C[1] | | G[1] |")

    assert len(lexed.measures) == 3
    assert lexed.measures[1].segments == []


def test_chords_with_extensions_and_slashes():
    lexed = lex_grid("4/4 | C(add9)[4 4 4 4] | FM7(#11)/A[1] | Em7/9 [1] |")

    assert [m.segments[0].chord for m in lexed.measures] == ["C(add9)", "FM7(#11)/A", "Em7/9"]


def test_chord_only_measure_with_separator():
    lexed = lex_grid("4/4 | Em / G |")
    segments = lexed.measures[0].segments

    assert [s.chord for s in segments] == ["Em", "G"]
    assert all(s.rhythm is None for s in segments)
    assert segments[1].leading_space is True


def test_ligatured_segments_have_no_leading_space():
    lexed = lex_grid("4/4 | Am[4 8]G[8] D[2] |")
    segments = lexed.measures[0].segments

    assert [s.leading_space for s in segments[1:]] == [False, True]


def test_repeat_symbol_measure():
    lexed = lex_grid("4/4 | C[1] | % |")

    assert lexed.measures[1].is_repeat_symbol is True


def test_inline_time_signature_with_grouping():
    lexed = lex_grid("4/4 | C[1] | 6/8 ternary G[888888] |")
    inline = lexed.measures[1].time_signature

    assert (inline.numerator, inline.denominator, inline.grouping) == (6, 8, "ternary")
    assert lexed.measures[1].segments[0].chord == "G"


def test_line_breaks_and_volta_carried_across_lines():
    lexed = lex_grid("4/4 ||: C[1] | G[1] |.1\n| Am[1] :||.2\nF[1] ||")

    assert [m.line_index for m in lexed.measures] == [0, 0, 1, 2]
    assert [m.is_line_break for m in lexed.measures] == [False, True, True, True]
    assert lexed.measures[2].opening.volta_text == "1"
    assert lexed.measures[3].opening.volta_text == "2"


def test_unterminated_bracket_is_structural_and_stops():
    lexed = lex_grid("4/4 | C[4 4 4 4] | G[4 4 |\n| D[1] |")

    assert len(lexed.measures) == 1
    assert lexed.diagnostics[0].kind == "structural"


def test_unknown_token_is_reported_with_position():
    source = "4/4 | C[1] ?? |"
    lexed = lex_grid(source)
    diagnostics = lexed.measures[0].diagnostics

    assert diagnostics[0].kind == "lexical"
    assert diagnostics[0].position == source.index("??")


def test_tokenize_dots_ties_and_spaces():
    tokens, diagnostics = tokenize_rhythm("8.16 _8")
    notes = _notes(tokens)

    assert diagnostics == []
    assert [(n.value, n.dotted) for n in notes] == [(8, True), (16, False), (8, False)]
    assert notes[2].tie_before is True
    assert [t.kind for t in tokens].count("space") == 1


def test_tokenize_tie_after_note():
    notes = _notes(tokenize_rhythm("4_4 2")[0])

    assert notes[0].tie_after is True
    assert notes[1].tie_before is False


def test_tokenize_greedy_note_values():
    notes = _notes(tokenize_rhythm("1616323264")[0])

    assert [n.value for n in notes] == [16, 16, 32, 32, 64]


def test_tokenize_rests_ghosts_and_strokes():
    notes = _notes(tokenize_rhythm("-8 8xd 16tu")[0])

    assert notes[0].is_rest is True
    assert notes[1].is_ghost is True
    assert notes[1].stroke == "d"
    assert notes[2].stroke == "tu"


def test_tokenize_tuplets():
    tokens, diagnostics = tokenize_rhythm("{888}3 {16161616 16}5:4")
    closes = [t for t in tokens if t.kind == "tuplet_close"]

    assert diagnostics == []
    assert [(t.count, t.actual_count) for t in closes] == [(3, None), (5, 4)]


def test_tokenize_tuplet_without_count_reports_error():
    _tokens, diagnostics = tokenize_rhythm("{888}")

    assert "Tuplet" in diagnostics[0].message


def test_tokenize_forced_tie_and_repeat():
    tokens, _ = tokenize_rhythm("8[_] 8")

    assert [t.kind for t in tokens] == ["note", "forced_tie", "space", "note"]
    assert tokenize_rhythm("%")[0][0].kind == "repeat"


def test_tokenize_unrecognized_value_positions_are_offset():
    _tokens, diagnostics = tokenize_rhythm("8 3 8", offset=10, measure_index=2)

    assert diagnostics[0].position == 12
    assert diagnostics[0].measure_index == 2
    assert "'3'" in diagnostics[0].message
