from unittest.mock import MagicMock, patch

import pytest
import requests

from services.llm_client import (
    LlmClient,
    LlmConfigurationError,
    LlmRequestError,
    LlmSettings,
    create_chat_completion_with_fallback,
    should_retry_same_model,
    should_try_fallback_model,
)


def _response(status, body=None, text=""):
    response = MagicMock()
    response.status_code = status
    response.text = text
    response.reason = "reason"
    if body is None:
        response.json.side_effect = ValueError("no json")
    else:
        response.json.return_value = body
    return response


def _ok(content):
    return _response(200, {"choices": [{"message": {"content": content}}]})


def _client(session, **overrides):
    settings = LlmSettings(
        api_key="sk-test",
        base_url="https://llm.example/v1",
        model="primary",
        fallback_models=["backup-a", "backup-b"],
        http_referer="http://localhost",
        x_title="pantry-pilot",
        **overrides,
    )
    return LlmClient(settings, session=session)


def test_settings_from_config_strips_bearer_prefix():
    settings = LlmSettings.from_config(
        {"llm": {"api_key": "Bearer sk-123", "base_url": "https://x/v1/", "fallback_models": "a, b,,"}}
    )
    assert settings.api_key == "sk-123"
    assert settings.base_url == "https://x/v1"
    assert settings.fallback_models == ["a", "b"]


def test_models_in_order_dedupes():
    settings = LlmSettings(api_key="k", model="m1", fallback_models=["m2", "m1", "m2", "m3"])
    assert settings.models_in_order() == ["m1", "m2", "m3"]


def test_from_config_requires_api_key():
    with pytest.raises(LlmConfigurationError):
        LlmClient.from_config({"llm": {"api_key": ""}})


def test_chat_complete_posts_to_chat_completions():
    session = MagicMock()
    session.post.return_value = _ok("hello")
    client = _client(session)

    content = client.chat_complete("primary", [{"role": "user", "content": "hi"}], temperature=0)

    assert content == "hello"
    args, kwargs = session.post.call_args
    assert args[0] == "https://llm.example/v1/chat/completions"
    assert kwargs["json"]["model"] == "primary"
    assert kwargs["json"]["temperature"] == 0
    assert kwargs["headers"]["Authorization"] == "Bearer sk-test"
    assert kwargs["headers"]["HTTP-Referer"] == "http://localhost"
    assert kwargs["headers"]["X-Title"] == "pantry-pilot"


def test_chat_complete_joins_content_parts():
    session = MagicMock()
    session.post.return_value = _response(
        200, {"choices": [{"message": {"content": [{"type": "text", "text": "a"}, {"text": "b"}]}}]}
    )
    assert _client(session).chat_complete("primary", []) == "a\nb"


def test_chat_complete_without_choices_returns_empty():
    session = MagicMock()
    session.post.return_value = _response(200, {"choices": []})
    assert _client(session).chat_complete("primary", []) == ""


def test_chat_complete_error_status_carries_provider_message():
    session = MagicMock()
    session.post.return_value = _response(
        404, {"error": {"message": "No endpoints found", "metadata": {"raw": "upstream"}}}
    )

    with pytest.raises(LlmRequestError) as exc_info:
        _client(session).chat_complete("primary", [])

    assert exc_info.value.status == 404
    assert exc_info.value.model == "primary"
    assert "No endpoints found" in exc_info.value.message
    assert "upstream" in exc_info.value.message


def test_chat_complete_transport_error_has_no_status():
    session = MagicMock()
    session.post.side_effect = requests.exceptions.ConnectionError("refused")

    with pytest.raises(LlmRequestError) as exc_info:
        _client(session).chat_complete("primary", [])
    assert exc_info.value.status is None


def test_retry_and_fallback_classification():
    assert should_retry_same_model(LlmRequestError("slow down", status=429))
    assert should_retry_same_model(LlmRequestError("boom", status=503))
    assert not should_retry_same_model(LlmRequestError("nope", status=401))
    assert not should_retry_same_model(LlmRequestError("offline"))

    assert should_try_fallback_model(LlmRequestError("boom", status=500))
    assert should_try_fallback_model(LlmRequestError("model not supported", status=400))
    assert should_try_fallback_model(LlmRequestError("No endpoints found for x", status=404))
    assert not should_try_fallback_model(LlmRequestError("bad request", status=400))
    assert not should_try_fallback_model(LlmRequestError("unauthorized", status=401))


@patch("services.retry.time.sleep")
def test_rate_limit_is_retried_on_same_model(mock_sleep):
    session = MagicMock()
    session.post.side_effect = [_response(429, {"error": "rate limited"}), _ok("done")]
    client = _client(session)

    completion = create_chat_completion_with_fallback(client, [{"role": "user", "content": "x"}])

    assert completion.content == "done"
    assert completion.model == "primary"
    assert session.post.call_count == 2
    mock_sleep.assert_called_once_with(1.0)


@patch("services.retry.time.sleep")
def test_model_not_supported_falls_back_immediately(mock_sleep):
    session = MagicMock()
    session.post.side_effect = [_response(404, {"error": {"message": "model not supported"}}), _ok("fine")]
    client = _client(session)

    completion = create_chat_completion_with_fallback(client, [])

    assert completion.model == "backup-a"
    assert session.post.call_args_list[1].kwargs["json"]["model"] == "backup-a"
    mock_sleep.assert_not_called()


@patch("services.retry.time.sleep")
def test_exhausted_model_falls_back_after_retries(mock_sleep):
    session = MagicMock()
    session.post.side_effect = [_response(503, {}), _response(503, {}), _ok("ok")]
    client = _client(session)

    completion = create_chat_completion_with_fallback(client, [])

    assert completion.model == "backup-a"
    assert session.post.call_count == 3


@patch("services.retry.time.sleep")
def test_fatal_error_propagates_without_fallback(mock_sleep):
    session = MagicMock()
    session.post.return_value = _response(401, {"error": {"message": "invalid key"}})
    client = _client(session)

    with pytest.raises(LlmRequestError) as exc_info:
        create_chat_completion_with_fallback(client, [])

    assert exc_info.value.status == 401
    assert session.post.call_count == 1


@patch("services.retry.time.sleep")
def test_last_model_error_propagates(mock_sleep):
    session = MagicMock()
    session.post.return_value = _response(500, {"error": "down"})
    client = _client(session, max_attempts_per_model=1)

    with pytest.raises(LlmRequestError) as exc_info:
        create_chat_completion_with_fallback(client, [])

    assert exc_info.value.model == "backup-b"
    assert session.post.call_count == 3
    mock_sleep.assert_not_called()


def test_smoke_check_auth():
    session = MagicMock()
    session.get.return_value = _response(200, {"data": []})
    assert _client(session).smoke_check_auth() == 200

    session.get.side_effect = requests.exceptions.Timeout("slow")
    assert _client(session).smoke_check_auth() is None
