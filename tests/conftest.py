import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from chatline.services.message_store import MessageStore
from tests.mocks import fake_chat_server


@pytest.fixture(autouse=True)
def _reset_fake_server():
    fake_chat_server.reset_state()
    yield


@pytest.fixture
def store():
    return MessageStore()


@pytest_asyncio.fixture
async def chat_client():
    """ChatServerClient wired to the fake chat server via in-process ASGITransport."""
    from chatline.services.transport.http_client import ChatServerClient

    transport = ASGITransport(app=fake_chat_server.app)
    http_client = AsyncClient(transport=transport, base_url="http://fakechat")
    client = ChatServerClient(base_url="http://fakechat", http_client=http_client, auth_token="test-token")
    yield client
    await client.close()
