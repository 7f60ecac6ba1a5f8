"""Fixtures for the chat service tests."""

import pytest

from packages.schemas.chat import User


@pytest.fixture
def student() -> User:
    return User(user_id="student-1", transport_user_id="sim-student-1", role="student", school_id="demo-school")


@pytest.fixture
def senior() -> User:
    return User(user_id="senior-1", transport_user_id="sim-senior-1", role="senior", school_id="demo-school")
