import re
from typing import Iterable, List

from ..schemas import AnalysisMode

# Unsigned digits with an optional fractional part, no thousands separators
NUMBER_PATTERN = re.compile(r"\b\d+(?:\.\d*)?\b", re.ASCII)


def extract_numbers(text: str) -> List[str]:
    """Returns the numeric tokens of ``text`` in order of appearance.

    Signs and separators are not part of a token, so "-1,200.5" yields
    ["1", "200.5"]. Leading zeros are kept.
    """
    if not text:
        return []
    return [m.group(0) for m in NUMBER_PATTERN.finditer(text)]


def split_tokens(text: str) -> List[str]:
    """Raw-value tokenization: whitespace-separated chunks, empties dropped."""
    if not text:
        return []
    return text.split()


def tokenize(text: str, mode: AnalysisMode = AnalysisMode.STRUCTURED) -> List[str]:
    if mode == AnalysisMode.RAW:
        return split_tokens(text)
    return extract_numbers(text)


def format_magnitude(value) -> str:
    """Decimal string for a numeric magnitude, sign and leading zeros dropped."""
    value = abs(value)
    if float(value).is_integer() and value < 1e16:
        return str(int(value))
    return str(value).lstrip("0")


def magnitudes_to_tokens(values: Iterable) -> List[str]:
    return [format_magnitude(v) for v in values]
