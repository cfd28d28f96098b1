import pytest_asyncio

from helpers import make_server


@pytest_asyncio.fixture
async def server():
    srv = make_server()
    await srv.start()
    yield srv
    await srv.stop()
