"""Pytest configuration for tests."""
from __future__ import annotations

import sys
from pathlib import Path

import pytest

# Add the project root to the Python path so "from services.tex..." works
project_root = Path(__file__).parent.parent
if str(project_root) not in sys.path:
    sys.path.insert(0, str(project_root))

from services.tex.parser import TexParser  # noqa: E402


@pytest.fixture
def parser() -> TexParser:
    return TexParser(math_output="delimiters")
