import base64
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
import tenacity

from models.request.outbound_message_request import OutboundMessageRequest
from services.message_dispatch_service import MessageDispatchService
from exceptions.flow_exception import ExternalCallException, NodeConfigurationException


def patch_client(mocker, module: str):
    """Patch httpx.AsyncClient in `module`; returns the client used inside `async with`."""
    mock_client_class = mocker.patch(f"{module}.httpx.AsyncClient")
    client = MagicMock()
    mock_client_class.return_value.__aenter__.return_value = client
    return client


@pytest.mark.asyncio
async def test_http_request_returns_json(http_request_service, mocker):
    client = patch_client(mocker, "services.internal.http_request_service")
    client.request = AsyncMock(return_value=MagicMock(status_code=201, json=lambda: {"id": 1}))

    request = http_request_service.build_request("post", "https://api.test/items", {}, [], "a=1&b=2", "form")
    status_code, payload = await http_request_service.send(request)

    assert (status_code, payload) == (201, {"id": 1})
    assert client.request.await_args.kwargs["data"] == {"a": "1", "b": "2"}


@pytest.mark.asyncio
async def test_http_request_falls_back_to_text(http_request_service, mocker):
    client = patch_client(mocker, "services.internal.http_request_service")
    response = MagicMock(status_code=200, text="plain body")
    response.json.side_effect = ValueError("not json")
    client.request = AsyncMock(return_value=response)

    status_code, payload = await http_request_service.send(http_request_service.build_request("GET", "https://api.test", {}, [], "", "none"))

    assert payload == "plain body"


@pytest.mark.asyncio
async def test_http_request_errors(http_request_service, mocker):
    client = patch_client(mocker, "services.internal.http_request_service")
    request = http_request_service.build_request("GET", "https://api.test", {}, [], "", "none")

    client.request = AsyncMock(return_value=MagicMock(status_code=500, text="oops"))
    with pytest.raises(ExternalCallException):
        await http_request_service.send(request)

    client.request = AsyncMock(side_effect=httpx.ReadTimeout("slow"))
    with pytest.raises(ExternalCallException):
        await http_request_service.send(request)


def test_build_request_validation(http_request_service):
    with pytest.raises(NodeConfigurationException):
        http_request_service.build_request("TELEPORT", "https://api.test", {}, [], "", "none")
    with pytest.raises(NodeConfigurationException):
        http_request_service.build_request("POST", "ftp://files.test", {}, [], "", "none")
    with pytest.raises(NodeConfigurationException):
        http_request_service.build_request("POST", "https://api.test", {}, [], "{broken", "json")
    # GET never carries a body
    assert "json" not in http_request_service.build_request("GET", "https://api.test", {}, [], "{}", "json")


@pytest.mark.asyncio
async def test_openai_chat_completion_parses_tool_call(openai_service, mocker):
    client = patch_client(mocker, "services.internal.openai_service")
    completion = {"choices": [{"message": {
        "content": None,
        "tool_calls": [{"function": {"name": "route", "arguments": "{\"department\": \"sales\"}"}}],
    }}]}
    client.post = AsyncMock(return_value=MagicMock(status_code=200, json=lambda: completion))

    response = await openai_service.chat_completion(
        model="gpt-4o-mini",
        messages=[{"role": "user", "content": "hi"}],
        temperature=0.2,
        max_tokens=50,
        tools=[{"name": "route", "description": "", "parameters": {"type": "object", "properties": {}}}]
    )

    assert response.tool_name == "route"
    assert response.tool_arguments == {"department": "sales"}
    payload = client.post.await_args.kwargs["json"]
    assert payload["tools"][0]["type"] == "function"
    assert client.post.await_args.kwargs["headers"]["Authorization"] == "Bearer sk-test"


@pytest.mark.asyncio
async def test_openai_audio_generation(openai_service, mocker):
    client = patch_client(mocker, "services.internal.openai_service")
    completion = {"choices": [{"message": {"content": None, "audio": {"data": "QUJD", "transcript": "hello"}}}]}
    client.post = AsyncMock(return_value=MagicMock(status_code=200, json=lambda: completion))

    response = await openai_service.chat_completion("gpt-4o-audio-preview", [], 0.7, 100, audio_voice="nova")

    assert response.audio_base64 == "QUJD"
    assert response.content == "hello"
    assert client.post.await_args.kwargs["json"]["audio"] == {"voice": "nova", "format": "mp3"}


@pytest.mark.asyncio
async def test_openai_text_to_speech_encodes_audio(openai_service, mocker):
    client = patch_client(mocker, "services.internal.openai_service")
    client.post = AsyncMock(return_value=MagicMock(status_code=200, content=b"mp3-bytes"))

    audio = await openai_service.text_to_speech("Hello", voice=None, api_key="sk-org")

    assert base64.b64decode(audio) == b"mp3-bytes"
    assert client.post.await_args.kwargs["json"]["voice"] == "alloy"


@pytest.mark.asyncio
async def test_openai_error_status(openai_service, mocker):
    client = patch_client(mocker, "services.internal.openai_service")
    client.post = AsyncMock(return_value=MagicMock(status_code=429, text="rate limited"))
    with pytest.raises(ExternalCallException):
        await openai_service.chat_completion("gpt-4o-mini", [], 0.7, 100)


@pytest.mark.asyncio
async def test_agent_service_response(agent_service, mocker):
    client = patch_client(mocker, "services.internal.agent_service")
    client.post = AsyncMock(return_value=MagicMock(status_code=200, json=lambda: {"response": "Agent says hi"}))

    reply = await agent_service.respond("org_1", "chat_1", None, "p1", [], {"plan": "gold"})

    assert reply == "Agent says hi"
    assert client.post.await_args.kwargs["json"]["variables"] == {"plan": "gold"}


@pytest.mark.asyncio
async def test_dispatch_retries_transport_errors(log_util, mocker):
    """Connection failures are retried before the node is failed."""
    mocker.patch.object(MessageDispatchService._post.retry, "wait", tenacity.wait_none())
    client = patch_client(mocker, "services.message_dispatch_service")
    client.post = AsyncMock(side_effect=[
        httpx.ConnectError("refused"),
        httpx.ConnectError("refused"),
        MagicMock(status_code=200),
    ])
    service = MessageDispatchService(log_util, channel_service_url="http://channel.test/send")
    message = OutboundMessageRequest(organization_id="org_1", chat_id="chat_1", content="Hi", node_id="t")

    await service.send_message(message)

    assert client.post.await_count == 3
    sent = client.post.await_args.kwargs["json"]
    assert sent["content"] == "Hi"
    assert "media_url" not in sent


@pytest.mark.asyncio
async def test_dispatch_gives_up(log_util, mocker):
    mocker.patch.object(MessageDispatchService._post.retry, "wait", tenacity.wait_none())
    client = patch_client(mocker, "services.message_dispatch_service")
    client.post = AsyncMock(side_effect=httpx.ConnectError("refused"))
    service = MessageDispatchService(log_util, channel_service_url="http://channel.test/send")

    with pytest.raises(ExternalCallException):
        await service.send_message(OutboundMessageRequest(organization_id="org_1", chat_id="chat_1", content="Hi"))
    assert client.post.await_count == 3
