# ---------------------------------------------------------------------------- #

from __future__ import annotations

import pytest

from tests.fakes import FakeClient, FakeContext

# ---------------------------------------------------------------------------- #


@pytest.fixture
def client() -> FakeClient:
    return FakeClient()


@pytest.fixture
def context() -> FakeContext:
    return FakeContext()


# ---------------------------------------------------------------------------- #
