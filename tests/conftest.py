"""
Root conftest.py: sys.path setup and shared fixtures.

Every test runs against in-memory orgs; nothing here touches the network.
"""

import os
import sys

import pytest

# Add project root to sys.path so 'org_migrator' and 'tests.factories' are importable
PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

from tests.factories.fake_org import FakeOrgs  # noqa: E402

EXAMPLE_TEMPLATES_DIR = os.path.join(PROJECT_ROOT, "examples", "templates")


@pytest.fixture
def orgs():
    """A fresh source and target org pair."""
    return FakeOrgs()


@pytest.fixture
def source(orgs):
    return orgs.source


@pytest.fixture
def target(orgs):
    return orgs.target


@pytest.fixture
def example_templates_dir():
    return EXAMPLE_TEMPLATES_DIR
