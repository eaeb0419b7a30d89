import pytest

from stepwise.local_llm import LocalLLMError, OllamaEmbedder, call_ollama_chat, call_ollama_embeddings


@pytest.mark.asyncio
async def test_call_ollama_chat_builds_payload(monkeypatch):
    captured: dict[str, object] = {}

    def fake_request(endpoint, payload, base_url, timeout):
        captured["endpoint"] = endpoint
        captured["payload"] = payload
        captured["base_url"] = base_url
        captured["timeout"] = timeout
        return {"message": {"role": "assistant", "content": '{"content":"ok"}'}}

    monkeypatch.setattr("stepwise.local_llm._perform_ollama_request", fake_request)

    result = await call_ollama_chat(
        system_prompt="System context",
        user_prompt="User payload",
        llm_model="llama3.1",
        base_url="http://localhost:11434/",
        timeout=30,
    )

    assert result == '{"content":"ok"}'
    assert captured["endpoint"] == "/api/chat"
    payload = captured["payload"]
    assert payload["model"] == "llama3.1"
    assert payload["stream"] is False
    assert payload["messages"][0] == {"role": "system", "content": "System context"}
    assert payload["messages"][1] == {"role": "user", "content": "User payload"}
    assert captured["base_url"] == "http://localhost:11434"
    assert captured["timeout"] == 30


@pytest.mark.asyncio
async def test_call_ollama_chat_rejects_empty_prompt_and_missing_content(monkeypatch):
    monkeypatch.setattr(
        "stepwise.local_llm._perform_ollama_request",
        lambda endpoint, payload, base_url, timeout: {"message": {}},
    )

    with pytest.raises(LocalLLMError):
        await call_ollama_chat(system_prompt="", user_prompt="   ", llm_model="llama3.1")
    with pytest.raises(LocalLLMError, match="assistant content"):
        await call_ollama_chat(system_prompt="", user_prompt="hi", llm_model="llama3.1")


@pytest.mark.asyncio
async def test_embeddings_request_and_embedder(monkeypatch):
    captured: dict[str, object] = {}

    def fake_request(endpoint, payload, base_url, timeout):
        captured["endpoint"] = endpoint
        captured["payload"] = payload
        return {"embedding": [1, 0.5, -2]}

    monkeypatch.setattr("stepwise.local_llm._perform_ollama_request", fake_request)

    vector = await OllamaEmbedder("nomic-embed-text", base_url="http://localhost:11434").embed("hello")

    assert vector == [1.0, 0.5, -2.0]
    assert captured["endpoint"] == "/api/embeddings"
    assert captured["payload"] == {"model": "nomic-embed-text", "prompt": "hello"}


@pytest.mark.asyncio
async def test_missing_embedding_raises(monkeypatch):
    monkeypatch.setattr(
        "stepwise.local_llm._perform_ollama_request",
        lambda endpoint, payload, base_url, timeout: {"embedding": []},
    )

    with pytest.raises(LocalLLMError):
        await call_ollama_embeddings("hello")
