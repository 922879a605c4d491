import sys
from pathlib import Path

import pytest


# Ensure relay-api and platform-adapter are on sys.path for tests that import modules directly.
RELAY_API_DIR = Path(__file__).resolve().parents[1]
PLATFORM_ADAPTER_DIR = RELAY_API_DIR.parent / "platform-adapter"
for candidate in (RELAY_API_DIR, PLATFORM_ADAPTER_DIR):
    if str(candidate) not in sys.path:
        sys.path.insert(0, str(candidate))


@pytest.fixture
def anyio_backend():
    return "asyncio"
