"""Tests for citation-marker removal."""

import pytest

from generapix.reference_cleaner import remove_reference_markers


def test_removes_single_marker_and_trims():
    """A marker is removed and surrounding whitespace trimmed."""
    text = "  A cosy mug on a table 【4:0†brand_guide.pdf】  "
    assert remove_reference_markers(text) == "A cosy mug on a table"


def test_removes_multiple_markers():
    """Every marker in the text is removed."""
    text = "Beach scene【1:2†a.pdf】 with sunset【10:11†notes.txt】."
    assert remove_reference_markers(text) == "Beach scene with sunset."


def test_marker_with_empty_source_is_removed():
    """The source part after the dagger may be empty."""
    assert remove_reference_markers("Hello【3:4†】") == "Hello"


def test_text_without_markers_is_unchanged():
    """Text without markers is returned exactly, whitespace included."""
    text = "  plain text, nothing to strip  "
    assert remove_reference_markers(text) == text


@pytest.mark.parametrize("value", [None, "", 42, ["【1:2†x】"]])
def test_non_string_or_empty_input_returns_empty(value):
    """None, empty and non-string inputs yield an empty string."""
    assert remove_reference_markers(value) == ""


def test_malformed_markers_are_kept():
    """Brackets that do not match the marker shape stay in the text."""
    text = "Keep 【abc†x】 and 【1:2 no dagger】"
    assert remove_reference_markers(text) == text


def test_nested_markers_are_fully_removed():
    """Removing an inner marker can expose an outer one; both go."""
    text = "Start 【1:【2:3†x】4†y】 end"
    cleaned = remove_reference_markers(text)
    assert "【" not in cleaned
    assert cleaned == "Start  end"


@pytest.mark.parametrize(
    "text",
    [
        "A 【1:2†x】 B",
        "  lead 【0:0†】",
        "Start 【1:【2:3†x】4†y】 end",
        "no markers   ",
        "",
    ],
)
def test_cleaning_is_idempotent(text):
    """Cleaning twice gives the same result as cleaning once."""
    once = remove_reference_markers(text)
    assert remove_reference_markers(once) == once
