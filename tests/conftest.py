"""Test configuration for the deployer test suite."""

import os

import pytest

# Keep a developer's shell environment from leaking into Settings()
for _name in ("PROXMOX_HOST", "SSH_PASSWORD", "SSH_KEY_PATH"):
    os.environ.pop(_name, None)


@pytest.fixture
def anyio_backend():
    return "asyncio"
