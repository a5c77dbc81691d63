"""Shared pytest fixtures for the tokenscribe test suite.

HOW: The in-memory fakes live in fakes.py so test modules can import
them directly; the fixtures here hand out fresh instances per test.
"""

from __future__ import annotations

import pytest

from fakes import SESSION, FakeProber, FakeQuota, FakeTranscription
from tokenscribe.core.session import Session


@pytest.fixture
def session() -> Session:
    return SESSION


@pytest.fixture
def quota() -> FakeQuota:
    return FakeQuota(balance=100)


@pytest.fixture
def transcription() -> FakeTranscription:
    return FakeTranscription()


@pytest.fixture
def prober() -> FakeProber:
    return FakeProber()
