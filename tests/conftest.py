"""
Pytest configuration and fixtures for Duet tests.

Provides common fixtures and test utilities for unit and integration tests.
"""

import asyncio
import itertools
import shutil
import tempfile
from pathlib import Path
from typing import Callable, Generator

import pytest

from duet.crypto import CryptoProvider
from duet.session import ChatSession
from duet.transport import LoopbackHub


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """
    Create a temporary directory for test data.

    Yields:
        Path: Temporary directory path
    """
    tmp = Path(tempfile.mkdtemp(prefix="duet_test_"))
    try:
        yield tmp
    finally:
        shutil.rmtree(tmp, ignore_errors=True)


@pytest.fixture
def passphrase() -> str:
    return "correct horse battery staple"


@pytest.fixture
def hub() -> LoopbackHub:
    return LoopbackHub()


@pytest.fixture
def counting_provider() -> CryptoProvider:
    """
    CryptoProvider whose random bytes are a running counter.

    Output is predictable but never repeats within a test.
    """
    counter = itertools.count()

    def source(length: int) -> bytes:
        return bytes(next(counter) % 256 for _ in range(length))

    return CryptoProvider(random_source=source)


@pytest.fixture
def connect() -> Callable:
    """
    Return a coroutine function running the full offer/answer handshake
    between two sessions and waiting until both can send.
    """

    async def _connect(offerer: ChatSession, answerer: ChatSession, timeout: float = 5.0):
        offer = await offerer.create_offer()
        answer = await answerer.accept_offer(offer)
        await offerer.finalize(answer)
        await offerer.wait_until_ready(timeout)
        await answerer.wait_until_ready(timeout)

    return _connect


async def wait_until(predicate: Callable[[], bool], timeout: float = 5.0) -> None:
    """Poll predicate until true; fail the test on timeout."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            pytest.fail("Condition not met before timeout")
        await asyncio.sleep(0.01)


@pytest.fixture
def until() -> Callable:
    return wait_until


# Pytest marks
def pytest_configure(config):
    """
    Configure pytest markers.

    Args:
        config: Pytest configuration object
    """
    config.addinivalue_line("markers", "unit: mark test as a unit test")
    config.addinivalue_line("markers", "integration: mark test as an integration test")
    config.addinivalue_line("markers", "slow: mark test as slow running")


# Test collection hooks
def pytest_collection_modifyitems(config, items):
    """
    Modify test collection to add markers based on test location.

    Args:
        config: Pytest configuration
        items: List of collected test items
    """
    for item in items:
        if "unit" in item.path.parts:
            item.add_marker(pytest.mark.unit)
