from types import SimpleNamespace

from snaprun.config import OpenAIConfig
from snaprun.openai_client import OpenAIClient


class _DummyResponses:
    def __init__(self, response):
        self.response = response
        self.calls = []

    def create(self, **kwargs):
        self.calls.append(kwargs)
        return self.response


class _DummyClient:
    def __init__(self, response):
        self.responses = _DummyResponses(response)


def _client(**overrides) -> OpenAIClient:
    config = OpenAIConfig(api_key_env="SNAPRUN_TEST_OPENAI_KEY", **overrides)
    return OpenAIClient.from_config(config)


def test_disabled_client_returns_none(monkeypatch):
    monkeypatch.setenv("SNAPRUN_TEST_OPENAI_KEY", "sk-test")
    client = _client(enabled=False)
    assert client.available is False
    assert client.generate_text("prompt") is None


def test_missing_key_returns_none(monkeypatch):
    monkeypatch.delenv("SNAPRUN_TEST_OPENAI_KEY", raising=False)
    client = _client()
    assert client.available is False
    assert client.generate_text("prompt") is None


def test_generate_text_uses_output_text(monkeypatch):
    monkeypatch.setenv("SNAPRUN_TEST_OPENAI_KEY", "sk-test")
    client = _client(max_output_tokens=256)
    dummy = _DummyClient(SimpleNamespace(output_text='  {"suggestions": []}  '))
    monkeypatch.setattr(client, "_ensure_client", lambda api_key: dummy)

    assert client.available is True
    assert client.generate_text("fix it", instructions="json only") == '{"suggestions": []}'
    call = dummy.responses.calls[0]
    assert call["input"] == "fix it"
    assert call["instructions"] == "json only"
    assert call["max_output_tokens"] == 256


def test_extract_text_from_message_items():
    response = SimpleNamespace(
        output_text=None,
        output=[
            {"type": "reasoning", "content": [{"text": "hidden"}]},
            {"type": "message", "content": [{"type": "output_text", "text": "first"}]},
            SimpleNamespace(type="message", content=[SimpleNamespace(text="second")]),
        ],
    )
    assert OpenAIClient._extract_text(response) == "first\nsecond"
    assert OpenAIClient._extract_text(None) == ""
