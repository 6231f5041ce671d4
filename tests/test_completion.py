import json

import httpx
import pytest
import pytest_asyncio

from conversion_agent.errors import CompletionServiceFailure
from conversion_agent.services.completion import (
    CompletionClient,
    CompletionRequest,
    CompletionTurn,
    extract_json,
)

REQUEST = CompletionRequest(
    system="Tu es Rose, vendeuse de jeux de cartes.",
    turns=[CompletionTurn(role="user", content="Bonjour")],
    max_tokens=300,
)


def _reply(text):
    return httpx.Response(200, json={"content": [{"type": "text", "text": text}]})


class Recorder:
    """MockTransport handler returning queued replies and keeping the requests it saw."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests = []

    def __call__(self, request):
        self.requests.append(request)
        return self.responses[min(len(self.requests), len(self.responses)) - 1]


@pytest_asyncio.fixture
async def make_client():
    clients = []

    def factory(handler, api_key="sk-test", max_chars=1200):
        client = CompletionClient(
            api_key=api_key,
            model="claude-test",
            max_chars=max_chars,
            transport=httpx.MockTransport(handler),
        )
        clients.append(client)
        return client

    yield factory
    for client in clients:
        await client.close()


@pytest.mark.parametrize(
    "text",
    [
        '{"content": "Bonjour !", "choices": ["A"]}',
        '```json\n{"content": "Bonjour !", "choices": ["A"]}\n```',
        'Voici ma réponse : {"content": "Bonjour !", "choices": ["A"]} Merci.',
    ],
)
def test_extract_json_tolerates_fences_and_chatter(text):
    assert extract_json(text) == {"content": "Bonjour !", "choices": ["A"]}


def test_extract_json_rejects_plain_text():
    with pytest.raises(ValueError):
        extract_json("Bonjour, comment puis-je vous aider ?")


@pytest.mark.asyncio
async def test_complete_sends_messages_api_request(make_client):
    handler = Recorder(_reply('```json\n{"content": "Bonjour !", "choices": ["Oui", "Non"]}\n```'))
    client = make_client(handler)

    result = await client.complete(REQUEST)

    assert result.content == "Bonjour !"
    assert result.choices == ["Oui", "Non"]
    sent = handler.requests[0]
    assert sent.headers["x-api-key"] == "sk-test"
    assert sent.headers["anthropic-version"] == "2023-06-01"
    body = json.loads(sent.content)
    assert body["model"] == "claude-test"
    assert body["max_tokens"] == 300
    assert body["system"].startswith("Tu es Rose")
    assert body["messages"] == [{"role": "user", "content": "Bonjour"}]


@pytest.mark.asyncio
async def test_non_json_output_is_retried_once(make_client):
    handler = Recorder(_reply("Désolé, je réfléchis."), _reply('{"content": "Voilà", "choices": []}'))
    client = make_client(handler)

    result = await client.complete(REQUEST)

    assert result.content == "Voilà"
    assert len(handler.requests) == 2


@pytest.mark.asyncio
async def test_second_non_json_output_fails(make_client):
    handler = Recorder(_reply("pas de json"))
    client = make_client(handler)

    with pytest.raises(CompletionServiceFailure):
        await client.complete(REQUEST)
    assert len(handler.requests) == 2


@pytest.mark.asyncio
async def test_missing_api_key_fails_without_calling_out(make_client):
    handler = Recorder(_reply('{"content": "x"}'))
    client = make_client(handler, api_key="")

    assert not client.enabled
    with pytest.raises(CompletionServiceFailure):
        await client.complete(REQUEST)
    assert handler.requests == []


@pytest.mark.asyncio
async def test_http_error_is_wrapped(make_client):
    client = make_client(Recorder(httpx.Response(500, json={"error": {"type": "overloaded_error"}})))

    with pytest.raises(CompletionServiceFailure):
        await client.complete(REQUEST)


@pytest.mark.asyncio
async def test_error_payload_is_wrapped(make_client):
    client = make_client(Recorder(httpx.Response(200, json={"error": {"type": "invalid_request_error"}})))

    with pytest.raises(CompletionServiceFailure):
        await client.complete(REQUEST)


@pytest.mark.parametrize(
    "payload",
    [
        {"content": "pas une liste de blocs"},
        [{"type": "text", "text": '{"content": "x"}'}],
        {"content": ["texte brut", 42]},
        {"id": "msg_1"},
    ],
)
@pytest.mark.asyncio
async def test_malformed_envelope_is_wrapped(make_client, payload):
    client = make_client(Recorder(httpx.Response(200, json=payload)))

    with pytest.raises(CompletionServiceFailure):
        await client.complete(REQUEST)


@pytest.mark.asyncio
async def test_empty_content_is_unusable(make_client):
    client = make_client(Recorder(_reply('{"content": "  ", "choices": ["A"]}')))

    with pytest.raises(CompletionServiceFailure):
        await client.complete(REQUEST)


@pytest.mark.asyncio
async def test_content_and_choices_are_capped(make_client):
    content = "Première phrase. " + "x" * 200
    choices = ["A", "B", "", "C", "D", "E"]
    client = make_client(
        Recorder(_reply(json.dumps({"content": content, "choices": choices}))),
        max_chars=50,
    )

    result = await client.complete(REQUEST)

    assert result.content == "Première phrase."
    assert result.choices == ["A", "B", "C", "D"]
