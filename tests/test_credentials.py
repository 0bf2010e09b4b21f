"""Tests for credential resolution."""

from __future__ import annotations

import pytest

from inference_router.credentials import (
    ChainedSecretProvider,
    EnvSecretProvider,
    SecretNotFound,
    StaticSecretProvider,
)


class TestEnvSecretProvider:

    @pytest.mark.asyncio
    async def test_reads_prefixed_variable(self, monkeypatch):
        monkeypatch.setenv("ROUTER_SECRET_OPENAI_KEY", "sk-test")
        secret = await EnvSecretProvider(prefix="ROUTER_SECRET_").get("openai-key")
        assert secret.get_secret_value() == "sk-test"
        assert "sk-test" not in repr(secret)

    @pytest.mark.asyncio
    async def test_missing_variable(self, monkeypatch):
        monkeypatch.delenv("NOT_THERE", raising=False)
        with pytest.raises(SecretNotFound):
            await EnvSecretProvider().get("not-there")


class TestStaticSecretProvider:

    @pytest.mark.asyncio
    async def test_add_and_get(self):
        provider = StaticSecretProvider({"a": "1"})
        provider.add("b", "2")
        assert (await provider.get("b")).get_secret_value() == "2"

    @pytest.mark.asyncio
    async def test_unknown_ref(self):
        with pytest.raises(SecretNotFound):
            await StaticSecretProvider().get("missing")


class TestChainedSecretProvider:

    @pytest.mark.asyncio
    async def test_first_match_wins(self):
        chain = ChainedSecretProvider(
            StaticSecretProvider({"key": "first"}),
            StaticSecretProvider({"key": "second", "other": "x"}),
        )
        assert (await chain.get("key")).get_secret_value() == "first"
        assert (await chain.get("other")).get_secret_value() == "x"

    @pytest.mark.asyncio
    async def test_added_provider_consulted(self):
        chain = ChainedSecretProvider(StaticSecretProvider())
        chain.add_provider(StaticSecretProvider({"late": "value"}))
        assert (await chain.get("late")).get_secret_value() == "value"

    @pytest.mark.asyncio
    async def test_nothing_resolves(self):
        with pytest.raises(SecretNotFound, match="any provider"):
            await ChainedSecretProvider(StaticSecretProvider()).get("ghost")
