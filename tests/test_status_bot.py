"""Tests for the status bot helpers and status message updates."""
from __future__ import annotations

from datetime import timezone
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import discord
import pytest

from status_bot import (
    NO_ERROR,
    StatusBot,
    build_status_embed,
    env_int,
    format_uptime,
    load_timezone,
    presence_label,
    summarize_presence,
)


def test_format_uptime():
    assert format_uptime(0) == "0d 0h 0m 0s"
    assert format_uptime(90061.9) == "1d 1h 1m 1s"
    assert format_uptime(3 * 86400 + 59) == "3d 0h 0m 59s"


def test_presence_label():
    assert presence_label(discord.Status.online) == "🟢 Online"
    assert presence_label(discord.Status.idle) == "🟡 Idle"
    assert presence_label(discord.Status.dnd) == "🔴 Do Not Disturb"
    assert presence_label(discord.Status.offline) == "⚫ Offline"
    assert presence_label(discord.Status.invisible) == "⚫ Offline"
    assert presence_label(None) == "❓ Unknown"


def _guild(member):
    guild = MagicMock()
    guild.get_member.return_value = member
    return guild


def test_summarize_presence_counts_guilds_with_main_bot():
    member = MagicMock(status=discord.Status.online)
    guilds = [_guild(member), _guild(None), _guild(member)]
    assert summarize_presence(guilds, 99) == ("🟢 Online", "2")


def test_summarize_presence_unknown_when_not_cached():
    assert summarize_presence([_guild(None)], 99) == ("❓ Unknown", "❓")
    assert summarize_presence([], 99) == ("❓ Unknown", "❓")


def _embed(main_status, last_error=""):
    return build_status_embed(main_status=main_status, server_count="3", uptime="0d 0h 5m 0s", ping="42ms",
                              version="1.0.0", last_error=last_error, updated_at="01-05-2024 14:00:00")


def test_status_embed_layout():
    embed = _embed("🟢 Online")
    assert embed.title == "📊 Bot Status Overview"
    assert embed.color.value == 0x00FF00
    assert [f.name for f in embed.fields] == ["Main Bot", "Main Bot Servers", "Status Bot", "Status Bot Uptime",
                                              "Ping", "Bot Version", "Last Error"]
    assert embed.fields[-1].value == NO_ERROR
    assert embed.fields[-1].inline is False
    assert embed.footer.text == "Last update (01-05-2024 14:00:00)"


def test_status_embed_red_when_main_bot_not_online():
    embed = _embed("🟡 Idle", last_error="boom")
    assert embed.color.value == 0xFF0000
    assert embed.fields[-1].value == "boom"


def test_env_helpers(monkeypatch):
    monkeypatch.setenv("STATUS_INTERVAL_MINUTES", "10")
    assert env_int("STATUS_INTERVAL_MINUTES", 5) == 10
    monkeypatch.setenv("STATUS_INTERVAL_MINUTES", "ten")
    assert env_int("STATUS_INTERVAL_MINUTES", 5) == 5
    monkeypatch.delenv("STATUS_INTERVAL_MINUTES")
    assert env_int("STATUS_INTERVAL_MINUTES", 5) == 5
    assert load_timezone("Not/AZone") is timezone.utc


# --- StatusBot ---
def _history(*messages):
    async def history(limit=None):
        for message in messages[:limit]:
            yield message
    return history


@pytest.fixture
def status_bot(monkeypatch):
    monkeypatch.setattr(StatusBot, "user", SimpleNamespace(id=1))
    return StatusBot(main_bot_id=99, channel_id=10)


def _status_channel(*messages):
    channel = MagicMock()
    channel.history = _history(*messages)
    channel.send = AsyncMock()
    return channel


@pytest.mark.asyncio
async def test_update_status_edits_own_last_message(status_bot):
    own = MagicMock(author=SimpleNamespace(id=1), edit=AsyncMock())
    channel = _status_channel(own)
    status_bot.get_status_channel = AsyncMock(return_value=channel)
    status_bot.build_current_embed = AsyncMock(return_value=discord.Embed(title="status"))

    await status_bot.update_status()
    own.edit.assert_awaited_once()
    channel.send.assert_not_awaited()


@pytest.mark.asyncio
async def test_update_status_sends_when_last_message_is_foreign(status_bot):
    foreign = MagicMock(author=SimpleNamespace(id=2), edit=AsyncMock())
    for channel in (_status_channel(foreign), _status_channel()):
        status_bot.get_status_channel = AsyncMock(return_value=channel)
        status_bot.build_current_embed = AsyncMock(return_value=discord.Embed(title="status"))
        await status_bot.update_status()
        channel.send.assert_awaited_once()
    foreign.edit.assert_not_awaited()


@pytest.mark.asyncio
async def test_update_status_failure_becomes_last_error(status_bot):
    status_bot.get_status_channel = AsyncMock(side_effect=RuntimeError("gateway down"))
    await status_bot.update_status()
    assert status_bot.last_error == "gateway down"


@pytest.mark.asyncio
async def test_uncached_main_bot_is_offline_when_user_exists(status_bot):
    status_bot.get_user = MagicMock(return_value=None)
    status_bot.fetch_user = AsyncMock(return_value=MagicMock(id=99))
    embed = await status_bot.build_current_embed()
    assert embed.fields[0].value == "⚫ Offline"
    assert embed.fields[1].value == "0"
    status_bot.fetch_user.assert_awaited_once_with(99)


@pytest.mark.asyncio
async def test_unknown_main_bot_id_stays_unknown(status_bot):
    status_bot.get_user = MagicMock(return_value=None)
    status_bot.fetch_user = AsyncMock(side_effect=discord.NotFound(MagicMock(status=404, reason="Not Found"), "Unknown User"))
    assert await status_bot.resolve_uncached_main_bot() == ("❓ Unknown", "❓")
