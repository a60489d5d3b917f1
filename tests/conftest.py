from __future__ import annotations

import os
import sys

import pytest

PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

from gate.auth import MemoryUserState
from gate.permissions import Permissions


@pytest.fixture
def state():
    users = MemoryUserState()
    users.add_user("alice", "secret", admin=True)
    users.add_user("bob", "1234")
    return users


@pytest.fixture
def perm(state):
    return Permissions.from_user_state(state)
