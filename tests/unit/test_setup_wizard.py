"""Tests for the `python -m exchangesync setup` wizard.

The token manager is replaced with a mock; input() is patched per test.
"""
from datetime import datetime
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from exchangesync.models.oauth import OAuthToken
from exchangesync.practicepanther.errors import AuthRequired
from exchangesync.scripts.setup import _setup, run_setup


def make_tokens(status="no_token"):
    tokens = MagicMock()
    tokens.token_status.return_value = {"status": status, "message": "Token valid for 3 hours"}
    tokens.authorization_url.return_value = "https://pp.test/OAuth/Authorize?client_id=cid"
    tokens.exchange_authorization_code = AsyncMock(return_value=OAuthToken(
        access_token="access-1",
        refresh_token="refresh-1",
        expires_at=datetime(2025, 6, 2, 12, 0),
    ))
    tokens.aclose = AsyncMock()
    return tokens


async def run_wizard(tokens, answers):
    with patch("exchangesync.scripts.setup.get_engine"), \
         patch("exchangesync.scripts.setup.build_token_manager", return_value=tokens), \
         patch("builtins.input", side_effect=answers):
        return await _setup(MagicMock())


class TestSetupWizard:
    @pytest.mark.asyncio
    async def test_code_exchanged_and_client_closed(self, capsys):
        tokens = make_tokens()
        assert await run_wizard(tokens, ["the-code"]) == 0
        tokens.exchange_authorization_code.assert_awaited_once_with("the-code")
        tokens.aclose.assert_awaited_once()
        assert "Token stored" in capsys.readouterr().out

    @pytest.mark.asyncio
    async def test_cancel_keeps_existing_token_and_closes_client(self):
        tokens = make_tokens(status="valid")
        assert await run_wizard(tokens, ["n"]) == 0
        tokens.exchange_authorization_code.assert_not_awaited()
        tokens.aclose.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_empty_code_closes_client(self):
        tokens = make_tokens()
        assert await run_wizard(tokens, [""]) == 1
        tokens.exchange_authorization_code.assert_not_awaited()
        tokens.aclose.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_rejected_code_closes_client(self):
        tokens = make_tokens()
        tokens.exchange_authorization_code.side_effect = AuthRequired("invalid_grant")
        assert await run_wizard(tokens, ["bad"]) == 1
        tokens.aclose.assert_awaited_once()


class TestRunSetup:
    def test_missing_credentials_exit(self):
        with patch("exchangesync.scripts.setup.get_settings") as mock_settings:
            mock_settings.return_value.pp_client_id = ""
            with pytest.raises(SystemExit) as exc_info:
                run_setup()
        assert exc_info.value.code == 1

    def test_failure_code_becomes_exit_status(self):
        with patch("exchangesync.scripts.setup.get_settings"), \
             patch("exchangesync.scripts.setup._setup", new=AsyncMock(return_value=1)):
            with pytest.raises(SystemExit) as exc_info:
                run_setup()
        assert exc_info.value.code == 1
