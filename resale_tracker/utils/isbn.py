"""ISBN normalization helpers."""

import re

_STRIP_RE = re.compile(r"[\s\-]")


def normalize_isbn(raw: str) -> str:
    """
    Normalize a user-supplied ISBN for lookups.

    Strips whitespace and hyphens and upper-cases a trailing ISBN-10 check
    character. Raises ValueError when the result is not 10 or 13 characters
    of the expected shape.
    """
    if raw is None:
        raise ValueError("ISBN is required")

    isbn = _STRIP_RE.sub("", str(raw)).upper()
    if not isbn:
        raise ValueError("ISBN is required")

    if len(isbn) == 13 and isbn.isdigit():
        return isbn
    if len(isbn) == 10 and isbn[:9].isdigit() and (isbn[9].isdigit() or isbn[9] == "X"):
        return isbn

    raise ValueError(f"Invalid ISBN: {raw!r}")
