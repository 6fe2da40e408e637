"""
Tilesheet kernel test configuration.

Shared sample documents and builders. Kernel tests use in-memory storage and
backups only; nothing touches the filesystem except the CLI tests.
"""

import pytest

from tilesheet.kernel.markdown import parse
from tilesheet.kernel.store import RowStore

TASKS_DOC = """# Tasks

## Task: Write docs
Status: todo
Estimate: 3
Price: 2
Qty: 5

## Task: Ship release
Status: done
Estimate: 10

## Task: Fix bug
Status:
Estimate: a

```tlb
Total (formula: {Price} * {Qty}) (width: 120)
```
"""


def make_store(text: str = TASKS_DOC, **options) -> RowStore:
    store = RowStore(**options)
    store.load(parse(text))
    return store


@pytest.fixture
def tasks_doc() -> str:
    return TASKS_DOC


@pytest.fixture
def store() -> RowStore:
    return make_store()
