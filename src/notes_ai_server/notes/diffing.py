"""Diff annotation between an original text and its AI correction.

Design 1 compares the two texts word by word at the same positions.
Designs 2 and 3 align them with a sequence diff over words or characters.
Either way the result is a list of styled runs ready to be written into a
block's content.
"""

import difflib
import re

from .blocks import StyledText, styled_text

# Whitespace runs are tokens of their own so that joining segments is lossless
WORD_TOKEN_RE = re.compile(r"\s+|\w+|[^\w\s]")

WORD_BY_WORD = 1
WORD_DIFF = 2
CHAR_DIFF = 3

EQUAL = "equal"
INSERT = "insert"
DELETE = "delete"


def tokenize_words(text: str) -> list[str]:
    return WORD_TOKEN_RE.findall(text)


def _push(segments: list[tuple[str, str]], kind: str, text: str) -> None:
    if segments and segments[-1][0] == kind:
        segments[-1] = (kind, segments[-1][1] + text)
    else:
        segments.append((kind, text))


def diff_segments(original: str, corrected: str, by_char: bool = False) -> list[tuple[str, str]]:
    """Align two texts and return ``(kind, text)`` segments in diff order.

    Removed text precedes inserted text within a replaced region. Two empty
    inputs produce a single empty ``equal`` segment.
    """
    if by_char:
        a, b = list(original), list(corrected)
    else:
        a, b = tokenize_words(original), tokenize_words(corrected)

    matcher = difflib.SequenceMatcher(None, a, b, autojunk=False)
    segments: list[tuple[str, str]] = []
    for tag, i1, i2, j1, j2 in matcher.get_opcodes():
        if tag == "equal":
            _push(segments, EQUAL, "".join(a[i1:i2]))
            continue
        if i2 > i1:
            _push(segments, DELETE, "".join(a[i1:i2]))
        if j2 > j1:
            _push(segments, INSERT, "".join(b[j1:j2]))

    if not segments:
        segments.append((EQUAL, ""))
    return segments


def _word_by_word(original: str, corrected: str) -> tuple[list[StyledText], list[StyledText]]:
    # split(" ") on purpose: "" becomes [""], so empty input yields one " " run per side
    source_tokens = original.split(" ")
    corrected_tokens = corrected.split(" ")

    source_runs: list[StyledText] = []
    corrected_runs: list[StyledText] = []
    for i, token in enumerate(source_tokens):
        if i >= len(corrected_tokens):
            source_runs.append(styled_text(token + " "))
            continue
        other = corrected_tokens[i]
        styles = {} if token == other else {"backgroundColor": "red"}
        source_runs.append(styled_text(token + " ", **styles))
        corrected_runs.append(styled_text(other + " ", **styles))
    return source_runs, corrected_runs


def diff_text(
    original: str, corrected: str, design: int = WORD_DIFF
) -> tuple[list[StyledText], list[StyledText]]:
    """Build parallel run lists for the original and the corrected text.

    Args:
        original: Text as the user wrote it.
        corrected: Text returned by the model.
        design: 1 for positional word comparison, 2 for a word diff,
            3 for a character diff.

    Returns:
        ``(source_runs, corrected_runs)``. With designs 2 and 3 the source
        runs hold unchanged and removed text (red background) and the
        corrected runs hold unchanged and inserted text (green background),
        so each side reconstructs its input exactly.
    """
    if design == WORD_BY_WORD:
        return _word_by_word(original, corrected)
    if design not in (WORD_DIFF, CHAR_DIFF):
        raise ValueError(f"unknown diff design: {design}")

    source_runs: list[StyledText] = []
    corrected_runs: list[StyledText] = []
    for kind, text in diff_segments(original, corrected, by_char=design == CHAR_DIFF):
        if kind == EQUAL:
            source_runs.append(styled_text(text))
            corrected_runs.append(styled_text(text))
        elif kind == DELETE:
            source_runs.append(styled_text(text, backgroundColor="red"))
        else:
            corrected_runs.append(styled_text(text, backgroundColor="green"))
    return source_runs, corrected_runs


def annotate_correction(original: str, corrected: str, design: int = WORD_DIFF) -> list[StyledText]:
    """Single run list showing insertions and struck-through removals inline."""
    if design not in (WORD_DIFF, CHAR_DIFF):
        raise ValueError(f"inline annotation needs design 2 or 3, got {design}")

    runs: list[StyledText] = []
    for kind, text in diff_segments(original, corrected, by_char=design == CHAR_DIFF):
        if kind == INSERT:
            runs.append(styled_text(text, backgroundColor="green"))
        elif kind == DELETE:
            runs.append(styled_text(text, backgroundColor="red", textColor="red", strike=True))
        else:
            runs.append(styled_text(text))
    return runs
