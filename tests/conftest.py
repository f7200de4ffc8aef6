# tests/conftest.py
from __future__ import annotations

import sys
from pathlib import Path
from typing import AsyncIterator

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from idemgate import runtime  # noqa: E402
from idemgate.idempotency.memory_store import MemoryIdemStore  # noqa: E402


@pytest.fixture(autouse=True)
def _reset_runtime():
    runtime.reset()
    yield
    runtime.reset()


@pytest.fixture
async def memory_store() -> AsyncIterator[MemoryIdemStore]:
    store = MemoryIdemStore()
    yield store
    await store.close()
