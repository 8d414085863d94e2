import pytest

from streamgen.engine.stop import StopMatcher, find_partial_stop


@pytest.mark.parametrize(
    "text, stop, expected",
    [
        ("Hello ST", "STOP", 6),
        ("Hello S", "STOP", 6),
        ("Hello", "STOP", None),
        ("ab<|im", "<|im_end|>", 2),
        ("", "STOP", None),
        # A full occurrence is not a partial one.
        ("xSTOP", "STOP", None),
    ],
)
def test_find_partial_stop(text, stop, expected):
    assert find_partial_stop(text, stop) == expected


def test_find_partial_stop_prefers_longest_suffix():
    # Both "a" and "aba" are prefixes of "abac"; the longer one starts earlier.
    assert find_partial_stop("xaba", "abac") == 1


def test_empty_matcher_never_matches():
    matcher = StopMatcher([])

    assert not matcher
    assert matcher.check("anything").kind == "none"


def test_matcher_drops_duplicates_and_empty_strings():
    matcher = StopMatcher(["\n", "", "END", "\n"])

    assert matcher.words == ("\n", "END")


def test_check_exact_match():
    check = StopMatcher(["END"]).check("fooENDbar")

    assert check.kind == "stop"
    assert check.position == 3
    assert check.word == "END"


def test_check_partial_match():
    check = StopMatcher(["END"]).check("fooEN")

    assert check.kind == "partial"
    assert check.position == 3


def test_exact_match_takes_precedence_over_partial():
    # "E" at the end is a partial of "END" but "</s>" already matched.
    check = StopMatcher(["END", "</s>"]).check("a</s>E")

    assert check.kind == "stop"
    assert check.word == "</s>"


def test_scan_start_reaches_back_over_flushed_text():
    matcher = StopMatcher(["###", "x"])

    assert matcher.scan_start(10) == 8
    assert matcher.scan_start(1) == 0


def test_match_straddling_sent_cursor_is_found():
    matcher = StopMatcher(["###"])

    # Two characters were already flushed when the third arrives.
    check = matcher.check("ab###", sent_cursor=4)

    assert check.kind == "stop"
    assert check.position == 2


def test_match_entirely_before_scan_window_is_ignored():
    matcher = StopMatcher(["ab"])

    assert matcher.check("ab......", sent_cursor=8).kind == "none"


def test_tie_break_prefers_earliest_then_declared_order():
    assert StopMatcher(["bc", "abc"]).find_stop("xabc").word == "abc"
    assert StopMatcher(["ab", "abc"]).find_stop("abc").word == "ab"
    assert StopMatcher(["abc", "ab"]).find_stop("abc").word == "abc"


def test_find_partial_reports_earliest_start_across_stops():
    matcher = StopMatcher(["<|im_end|>", "|"])

    assert matcher.find_partial("text<|im") == 4
