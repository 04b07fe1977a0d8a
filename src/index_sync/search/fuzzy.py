"""Fuzzy term matching for the in-process index engine.

Implements the engine's ``fuzziness`` semantics:

- An integer fuzziness is the maximum edit distance.
- ``"AUTO"`` (or ``"AUTO:low,high"``) derives the distance from term length:
  terms shorter than ``low`` (default 3) must match exactly, terms shorter than
  ``high`` (default 6) allow one edit, longer terms allow two.
- Adjacent transpositions count as a single edit by default.
"""

from __future__ import annotations

from index_sync.errors import IndexValidationError


MAX_FUZZINESS = 2


def edit_distance(s1: str, s2: str, max_distance: int | None = None, *, transpositions: bool = True) -> int:
    """Calculate the edit distance between two strings.

    Uses dynamic programming for O(m*n) time complexity, with optional
    early termination when distance exceeds max_distance. With
    ``transpositions`` enabled this is the optimal string alignment distance.

    Returns:
        The minimum number of single-character edits needed to change s1
        into s2. If max_distance is set and exceeded, returns max_distance+1.

    Examples:
        >>> edit_distance("kitten", "sitting")
        3
        >>> edit_distance("comersial", "commercial")
        2
        >>> edit_distance("ab", "ba")
        1
    """
    if not s1:
        return len(s2)
    if not s2:
        return len(s1)

    # Early check: if length difference exceeds max_distance, skip
    if max_distance is not None and abs(len(s1) - len(s2)) > max_distance:
        return max_distance + 1

    before_prev: list[int] | None = None
    prev = list(range(len(s2) + 1))

    for i in range(1, len(s1) + 1):
        curr = [i] + [0] * len(s2)
        row_min = i
        for j in range(1, len(s2) + 1):
            cost = 0 if s1[i - 1] == s2[j - 1] else 1
            value = min(
                prev[j] + 1,  # deletion
                curr[j - 1] + 1,  # insertion
                prev[j - 1] + cost,  # substitution
            )
            if (
                transpositions
                and before_prev is not None
                and j > 1
                and s1[i - 1] == s2[j - 2]
                and s1[i - 2] == s2[j - 1]
            ):
                value = min(value, before_prev[j - 2] + 1)
            curr[j] = value
            row_min = min(row_min, value)

        # Early termination: if minimum possible distance exceeds max, bail out
        if max_distance is not None and row_min > max_distance:
            return max_distance + 1

        before_prev, prev = prev, curr

    return prev[-1]


def auto_fuzziness(term_length: int, low: int = 3, high: int = 6) -> int:
    """Maximum edit distance for a term of ``term_length`` under ``AUTO``."""
    if term_length < low:
        return 0
    if term_length < high:
        return 1
    return 2


def resolve_fuzziness(fuzziness: int | str | None, term: str) -> int:
    """Turn a fuzziness parameter into a concrete edit distance for ``term``."""
    if fuzziness is None:
        return 0
    if isinstance(fuzziness, bool):
        raise IndexValidationError(f"Invalid fuzziness: {fuzziness!r}")
    if isinstance(fuzziness, int):
        distance = fuzziness
    elif isinstance(fuzziness, str):
        text = fuzziness.strip().upper()
        if text.startswith("AUTO"):
            low, high = 3, 6
            if ":" in text:
                bounds = text.split(":", 1)[1].split(",")
                try:
                    low, high = int(bounds[0]), int(bounds[1])
                except (IndexError, ValueError):
                    raise IndexValidationError(f"Invalid fuzziness: {fuzziness!r}") from None
            return auto_fuzziness(len(term), low, high)
        try:
            distance = int(float(text))
        except ValueError:
            raise IndexValidationError(f"Invalid fuzziness: {fuzziness!r}") from None
    else:
        raise IndexValidationError(f"Invalid fuzziness: {fuzziness!r}")
    if distance < 0:
        raise IndexValidationError(f"Fuzziness must be non-negative, got {fuzziness!r}")
    return min(distance, MAX_FUZZINESS)
