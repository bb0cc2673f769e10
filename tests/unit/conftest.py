"""Every test collected under tests/unit carries the ``unit`` marker."""

from pathlib import Path

import pytest


UNIT_DIR = Path(__file__).resolve().parent


def pytest_collection_modifyitems(config, items):
    for item in items:
        if UNIT_DIR in Path(item.path).resolve().parents:
            item.add_marker(pytest.mark.unit)
