"""Tests for the chat-model completion adapter."""

import pytest
from langchain_core.language_models import FakeListChatModel

from liminal.domain.models.errors import AuthFailure, NetworkFailure
from liminal.infrastructure.llm.completion import ChatModelCompletion, TextCompletion, classify_provider_error


class AuthenticationError(Exception):
    pass


class ProviderHTTPError(Exception):
    def __init__(self, message: str, status_code: int):
        super().__init__(message)
        self.status_code = status_code


class FailingChatModel:
    def __init__(self, error: Exception):
        self.error = error

    async def ainvoke(self, messages):
        raise self.error


class TestClassifyProviderError:
    """Tests for mapping provider exceptions."""

    def test_auth_by_class_name(self):
        error = classify_provider_error(AuthenticationError("bad key"))

        assert isinstance(error, AuthFailure)
        assert error.stage == "requesting"

    @pytest.mark.parametrize("status", [401, 403])
    def test_auth_by_status(self, status):
        assert isinstance(classify_provider_error(ProviderHTTPError("denied", status)), AuthFailure)

    def test_server_error_is_network(self):
        error = classify_provider_error(ProviderHTTPError("overloaded", 503))

        assert isinstance(error, NetworkFailure)
        assert error.status_code == 503

    def test_connection_error_is_network(self):
        assert isinstance(classify_provider_error(ConnectionError("reset")), NetworkFailure)

    def test_liminal_error_passes_through(self):
        original = NetworkFailure("requesting", "timeout")

        assert classify_provider_error(original) is original


class TestChatModelCompletion:
    """Tests for the LangChain adapter."""

    @pytest.mark.asyncio
    async def test_returns_message_text(self):
        completion = ChatModelCompletion(FakeListChatModel(responses=["recognized"]), system_prompt="Be brief.")

        assert await completion.complete("prompt") == "recognized"
        assert completion.model_name == "FakeListChatModel"
        assert isinstance(completion, TextCompletion)

    @pytest.mark.asyncio
    async def test_explicit_model_name(self):
        completion = ChatModelCompletion(FakeListChatModel(responses=["x"]), model_name="openai/gpt-3.5-turbo")

        assert completion.model_name == "openai/gpt-3.5-turbo"

    @pytest.mark.asyncio
    async def test_provider_errors_classified(self):
        completion = ChatModelCompletion(FailingChatModel(AuthenticationError("invalid api key")))

        with pytest.raises(AuthFailure):
            await completion.complete("prompt")

    @pytest.mark.asyncio
    async def test_transport_errors_become_network_failures(self):
        completion = ChatModelCompletion(FailingChatModel(TimeoutError("read timeout")))

        with pytest.raises(NetworkFailure):
            await completion.complete("prompt")
