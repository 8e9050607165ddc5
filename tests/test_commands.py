"""Tests for workflow command parsing, env/output files and masking."""

from __future__ import annotations

import pytest

from actionflow.commands import (
    AddMask,
    Annotation,
    Cancel,
    CommandParser,
    Debug,
    Echo,
    EndGroup,
    Fail,
    FileCommandError,
    Group,
    Masker,
    SetEnv,
    SetOutput,
    parse_file_commands,
    parse_line,
    read_file_commands,
)


@pytest.mark.parametrize(
    "line, expected",
    [
        ("::add-mask::hunter2", AddMask("hunter2")),
        ("::group::Install deps", Group("Install deps")),
        ("::endgroup::", EndGroup()),
        ("::debug::details", Debug("details")),
        ("::cancel::enough", Cancel("enough")),
        ("::fail::broken build", Fail("broken build")),
        ("::set-output name=version::1.2.3", SetOutput("version", "1.2.3")),
        ("::set-env name=GREETING::hi", SetEnv("GREETING", "hi")),
        ("::set-output name=multi::a%0Ab", SetOutput("multi", "a\nb")),
        ("  ::add-mask::padded  ", AddMask("padded")),
    ],
)
def test_parse_line(line, expected):
    assert parse_line(line) == expected


def test_annotation_properties():
    cmd = parse_line("::warning file=app.js,line=10,col=15::This is a warning message")
    assert cmd == Annotation(
        "warning",
        "This is a warning message",
        {"file": "app.js", "line": "10", "col": "15"},
    )


def test_annotation_property_escapes():
    cmd = parse_line("::error title=a%3Ab%2Cc::100%25 broken")
    assert cmd.properties["title"] == "a:b,c"
    assert cmd.message == "100% broken"


@pytest.mark.parametrize(
    "line",
    ["plain text", "::unknown::x", "::set-output::missing name", ":: not a command"],
)
def test_non_commands(line):
    assert parse_line(line) is None


def test_parser_passes_plain_lines_through():
    parser = CommandParser()
    assert parser.parse("hello") == Echo("hello")
    assert parser.parse("::add-mask::x") == AddMask("x")


def test_stop_commands_until_resume_token():
    parser = CommandParser()
    out = list(parser.feed([
        "::stop-commands::pause-token",
        "::add-mask::not-a-mask",
        "::pause-token::",
        "::add-mask::real",
    ]))
    assert out[0] == Echo("::stop-commands::pause-token")
    assert out[1] == Echo("::add-mask::not-a-mask")
    assert out[2] == Echo("::pause-token::")
    assert out[3] == AddMask("real")


def test_file_commands():
    text = "A=1\nNOTES<<EOF\nline1\nline2\nEOF\nC=x=y\n\nA=2\n"
    assert parse_file_commands(text) == {"A": "2", "NOTES": "line1\nline2", "C": "x=y"}


def test_file_commands_empty_value_and_heredoc():
    assert parse_file_commands("EMPTY=\nBLOCK<<END\nEND\n") == {"EMPTY": "", "BLOCK": ""}


@pytest.mark.parametrize("text", ["NOTES<<EOF\nnever closed\n", "garbage line\n"])
def test_file_command_errors(text):
    with pytest.raises(FileCommandError):
        parse_file_commands(text)


def test_read_file_commands(tmp_path):
    path = tmp_path / "set_output"
    assert read_file_commands(path) == {}
    path.write_text("version=2.0\n", encoding="utf-8")
    assert read_file_commands(path) == {"version": "2.0"}


# ----------------------------------------------------------------------
# Masking
# ----------------------------------------------------------------------

def test_masker_replaces_plain_values():
    masker = Masker(["hunter2"])
    assert masker("password is hunter2, again hunter2") == "password is ***, again ***"


def test_masker_treats_regex_metacharacters_literally():
    masker = Masker(["a.b*c"])
    assert masker("x a.b*c y") == "x *** y"
    assert masker("aXbbbc") == "aXbbbc"


def test_masker_masks_longest_value_first():
    masker = Masker(["abc", "abcdef"])
    assert masker("abcdef abc") == "*** ***"


def test_masker_masks_each_line_of_multiline_value():
    masker = Masker()
    masker.add("first-line\nsecond-line")
    assert masker("leaked second-line") == "leaked ***"
    assert "first-line" in masker.values


def test_masker_ignores_blank_values():
    masker = Masker(["", "   "])
    assert masker.values == []
    assert masker("unchanged") == "unchanged"
