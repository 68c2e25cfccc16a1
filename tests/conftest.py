import pytest


@pytest.fixture
def anyio_backend() -> str:
    # Engine timers are asyncio tasks.
    return "asyncio"
