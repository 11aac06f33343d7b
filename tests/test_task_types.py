import pytest

from taskforge.task_types import DEFAULT_TASK_TYPE, task_type


@pytest.mark.parametrize(
    ("title", "expected"),
    [
        ("[BUG] Login fails", "BUG"),
        ("[ docs ] Update readme", "docs"),
        ("Plain title", DEFAULT_TASK_TYPE),
        ("[] Empty brackets", DEFAULT_TASK_TYPE),
        ("[   ] Blank brackets", DEFAULT_TASK_TYPE),
        ("[UNCLOSED title", DEFAULT_TASK_TYPE),
        ("", DEFAULT_TASK_TYPE),
        (None, DEFAULT_TASK_TYPE),
        ("Fix [BUG] later", DEFAULT_TASK_TYPE),
    ],
)
def test_task_type(title, expected):
    assert task_type(title) == expected
