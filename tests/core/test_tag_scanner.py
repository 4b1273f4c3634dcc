"""Tag Scanner — verifies literal release, partial hold-back, and tag precedence.

Tests:
    - Text without markers is released whole
    - A strict tag prefix at the tail is held back byte for byte
    - A marker that cannot become a tag is released as literal
    - The longest complete tag wins
    - Non-ASCII text passes through untouched
    - drain() tokenizes back-to-back tags and returns the held tail
"""

import pytest

from agent_server.core.tag_scanner import TagScanner


def test_plain_text_is_released_whole():
    scanner = TagScanner(["<tool_call>"])
    result = scanner.scan("hello world")
    assert result.literal == "hello world"
    assert result.tag is None
    assert result.rest == ""
    assert not result.is_partial


def test_complete_tag_splits_literal_and_rest():
    scanner = TagScanner(["<tool_call>"])
    result = scanner.scan('before<tool_call>{"a": 1}')
    assert result.literal == "before"
    assert result.tag == "<tool_call>"
    assert result.rest == '{"a": 1}'


def test_partial_tag_at_tail_is_held_back():
    scanner = TagScanner(["<tool_call>"])
    result = scanner.scan("some text <tool_c")
    assert result.literal == "some text "
    assert result.tag is None
    assert result.rest == "<tool_c"
    assert result.is_partial


def test_marker_that_cannot_become_a_tag_is_literal():
    scanner = TagScanner(["<tool_call>"])
    result = scanner.scan("a < b and <x> c")
    assert result.literal == "a < b and <x> c"
    assert result.tag is None
    assert result.rest == ""


def test_longest_complete_tag_wins():
    scanner = TagScanner(["<t", "<tool>"])
    result = scanner.scan("<tool>rest")
    assert result.tag == "<tool>"
    assert result.rest == "rest"


def test_only_the_first_tag_is_consumed():
    scanner = TagScanner(["<a>", "</a>"])
    result = scanner.scan("x<a>y</a>z")
    assert result.literal == "x"
    assert result.tag == "<a>"
    assert result.rest == "y</a>z"


def test_non_ascii_text_passes_through():
    scanner = TagScanner(["<tool_call>"])
    result = scanner.scan("héllo 🌍 日本 <too")
    assert result.literal == "héllo 🌍 日本 "
    assert result.rest == "<too"


def test_match_and_is_partial():
    scanner = TagScanner(["</parameter>"])
    assert scanner.match("</parameter>tail") == "</parameter>"
    assert scanner.match("</param") is None
    assert scanner.is_partial("</param")
    assert not scanner.is_partial("")
    assert not scanner.is_partial("</parameter>")


def test_requires_at_least_one_tag():
    with pytest.raises(ValueError):
        TagScanner(["", ""])


def test_drain_handles_back_to_back_tags():
    scanner = TagScanner(["<a>", "</a>"])
    tokens, held = scanner.drain("x<a></a>y<a")
    assert tokens == [
        ("literal", "x"), ("tag", "<a>"), ("tag", "</a>"), ("literal", "y"),
    ]
    assert held == "<a"


def test_drain_without_tags():
    tokens, held = TagScanner(["<a>"]).drain("plain")
    assert tokens == [("literal", "plain")]
    assert held == ""
    assert TagScanner(["<a>"]).drain("") == ([], "")
