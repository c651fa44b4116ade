"""Shared fixtures."""

import subprocess
import sys

import pytest

from children import WORK


@pytest.fixture
def sleeper():
    """A plain subprocess that sleeps until terminated."""
    proc = subprocess.Popen([sys.executable, "-c", WORK])
    yield proc
    if proc.poll() is None:
        proc.kill()
    proc.wait()
