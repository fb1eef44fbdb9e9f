import logging
import os
import sys

import pytest

# Test modules import the application modules from the repository root
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from ssh_manager import RemoteSession  # noqa: E402
from tests.mocks.mock_ssh import MockSSHConnectionPool  # noqa: E402


@pytest.fixture
def loopback_pool(tmp_path):
    """A connection pool whose 'remote' side is the local filesystem, homed at tmp_path."""
    return MockSSHConnectionPool(home=str(tmp_path))


@pytest.fixture
def loopback_session(loopback_pool):
    return RemoteSession(loopback_pool)


@pytest.fixture
def restore_root_logger():
    """Restores the root logger after a test that reconfigures it."""
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield root
    for handler in list(root.handlers):
        if handler not in handlers:
            root.removeHandler(handler)
            handler.close()
    for handler in handlers:
        if handler not in root.handlers:
            root.addHandler(handler)
    root.setLevel(level)
