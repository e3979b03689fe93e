from urllib.error import HTTPError, URLError

from llm_client import LLMClient, LLMFailure, LLMSuccess, strip_code_fences


def make_client(api_key="test-key"):
    return LLMClient(api_key, "https://llm.example/v1/", "test-model", min_interval=0)


def reply(content):
    return {"choices": [{"message": {"role": "assistant", "content": content}}]}


def test_unconfigured_client_fails_without_a_request(monkeypatch) -> None:
    client = make_client(api_key=None)

    def boom(payload):
        raise AssertionError("no request expected")

    monkeypatch.setattr(client, "_post", boom)

    assert not client.is_configured
    assert client.query("hi") == LLMFailure("not_configured")


def test_strip_code_fences() -> None:
    assert strip_code_fences('```json\n{"a": 1}\n```') == '{"a": 1}'
    assert strip_code_fences("```\n[1, 2]\n```") == "[1, 2]"
    assert strip_code_fences('  {"a": 1} ') == '{"a": 1}'


def test_query_sends_context_and_returns_text(monkeypatch) -> None:
    client = make_client()
    sent = []

    def fake_post(payload):
        sent.append(payload)
        return reply("You spent $42.00 on coffee.")

    monkeypatch.setattr(client, "_post", fake_post)

    result = client.query("How much on coffee?", {"total_balance_cents": 100})

    assert result == LLMSuccess("You spent $42.00 on coffee.")
    assert client.base_url == "https://llm.example/v1"
    assert sent[0]["model"] == "test-model"
    assert sent[0]["temperature"] == 0.7
    assert [m["role"] for m in sent[0]["messages"]] == ["system", "system", "user"]
    assert "total_balance_cents" in sent[0]["messages"][1]["content"]


def test_structured_query_parses_fenced_json(monkeypatch) -> None:
    client = make_client()
    sent = []

    def fake_post(payload):
        sent.append(payload)
        return reply('```json\n{"category": "Shopping", "confidence": "low"}\n```')

    monkeypatch.setattr(client, "_post", fake_post)

    result = client.query_structured("Categorize", {"type": "object"})

    assert result == LLMSuccess({"category": "Shopping", "confidence": "low"})
    assert sent[0]["temperature"] == 0.1


def test_structured_query_reports_invalid_json(monkeypatch) -> None:
    client = make_client()
    monkeypatch.setattr(client, "_post", lambda payload: reply("Sure! Shopping."))

    assert client.query_structured("Categorize", {}) == LLMFailure("invalid_json")


def test_http_and_transport_errors_become_failures(monkeypatch) -> None:
    client = make_client()

    def rate_limited(payload):
        raise HTTPError("https://llm.example/v1/chat/completions", 429, "Too Many", None, None)

    monkeypatch.setattr(client, "_post", rate_limited)
    assert client.chat([{"role": "user", "content": "x"}]) == LLMFailure("http_429")

    def offline(payload):
        raise URLError("connection refused")

    monkeypatch.setattr(client, "_post", offline)
    assert client.chat([{"role": "user", "content": "x"}]) == LLMFailure("transport")


def test_malformed_or_empty_body_becomes_failure(monkeypatch) -> None:
    client = make_client()

    monkeypatch.setattr(client, "_post", lambda payload: {"error": "nope"})
    assert client.query("x") == LLMFailure("bad_response")

    monkeypatch.setattr(client, "_post", lambda payload: reply("   "))
    assert client.query("x") == LLMFailure("empty_response")
