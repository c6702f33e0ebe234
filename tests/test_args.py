import pytest

from p2pfwd.args import split_args


def test_last_token_keeps_rest_of_line():
    assert split_args("  a   b   c  d", 3) == ["a", "b", "c  d"]


def test_empty_line_gives_empty_tokens():
    assert split_args("", 3) == ["", "", ""]


@pytest.mark.parametrize("n", [0, -1])
def test_non_positive_count(n):
    assert split_args("connect alice", n) == []


def test_missing_tokens_are_empty():
    assert split_args("disconnect", 3) == ["disconnect", "", ""]


def test_single_token_takes_whole_line():
    assert split_args("  hello big world ", 1) == ["hello big world "]


def test_trailing_whitespace_kept_in_last_token():
    assert split_args("open tcp 80  ", 3) == ["open", "tcp", "80  "]


def test_short_last_token_at_end_of_line():
    assert split_args("open tcp 8", 3) == ["open", "tcp", "8"]


def test_unicode_whitespace_separates_tokens():
    assert split_args("connect　bob x", 3) == ["connect", "bob", "x"]


@pytest.mark.parametrize(
    "line",
    ["", "a", "a b", "  a   b   c  d  e", "\t\tx\ny z", "connect peer with spaces"],
)
@pytest.mark.parametrize("n", [1, 2, 3, 5])
def test_result_always_has_n_elements(line, n):
    result = split_args(line, n)
    assert len(result) == n
    assert " ".join(t for t in result if t).split() == line.split()
