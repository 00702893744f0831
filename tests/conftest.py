"""Shared fixtures for provisioning tests."""
import pytest

from tests.fakes import FakeClock, ScriptedAcquirer


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def acquirer():
    return ScriptedAcquirer()
