"""
Pytest configuration and shared fixtures.
"""

import io

import pytest

from devboot.store import MemoryStatusStore
from devboot.ui import console as console_module
from devboot.ui.console import Console


@pytest.fixture(autouse=True)
def console():
    """
    Route console output into a buffer for the duration of each test.

    The previous global console is restored afterwards.
    """
    original = console_module._console
    buffered = Console(stream=io.StringIO())
    console_module.set_console(buffered)
    yield buffered
    console_module._console = original


@pytest.fixture
def output(console):
    """Everything the console printed so far."""
    return lambda: console.stream.getvalue()


@pytest.fixture
def store():
    return MemoryStatusStore()
