from __future__ import annotations

from pathlib import Path

import pytest

DATA_DIR = Path(__file__).resolve().parent / "data"


@pytest.fixture
def checking_ofx_path() -> Path:
    return DATA_DIR / "checking.ofx"


@pytest.fixture
def checking_ofx_bytes(checking_ofx_path: Path) -> bytes:
    return checking_ofx_path.read_bytes()
