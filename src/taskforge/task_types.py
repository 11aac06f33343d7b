"""Task type tags derived from titles.

A title such as ``[BUG] Login fails`` carries the type ``BUG``. The type is a
presentation concern: it is never stored, only computed from the title.
"""

from __future__ import annotations

DEFAULT_TASK_TYPE = "FEAT"


def task_type(title: str | None) -> str:
    """Return the bracketed prefix of *title*, or ``DEFAULT_TASK_TYPE``.

    Titles without a leading ``[``, without a closing ``]``, or with empty
    brackets (``[] Title``, ``[  ] Title``) fall back to the default.
    """
    if not title or not title.startswith("["):
        return DEFAULT_TASK_TYPE
    end = title.find("]")
    if end <= 1:
        return DEFAULT_TASK_TYPE
    tag = title[1:end].strip()
    return tag or DEFAULT_TASK_TYPE
