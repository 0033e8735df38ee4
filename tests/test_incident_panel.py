"""Tests for overview/incident message syncing and audit logging."""
from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import discord
import pytest

from incident_panel import IncidentPanel
from incident_store import IncidentStore

GUILD_ID = 1
INCIDENT_CHANNEL = 10
LOG_CHANNEL = 11


def _not_found():
    return discord.NotFound(MagicMock(status=404, reason="Not Found"), "Unknown Message")


def _channel(channel_id):
    channel = MagicMock()
    channel.id = channel_id
    channel.send = AsyncMock(return_value=MagicMock(id=555))
    channel.fetch_message = AsyncMock(side_effect=_not_found())
    return channel


@pytest.fixture
def panel_env(tmp_path):
    store = IncidentStore(str(tmp_path / "incidents.json"))
    channels = {INCIDENT_CHANNEL: _channel(INCIDENT_CHANNEL), LOG_CHANNEL: _channel(LOG_CHANNEL)}
    settings = {"incident_channel": INCIDENT_CHANNEL, "log_channel": None, "staff_role": 5}
    bot = MagicMock()
    bot.get_guild_settings.return_value = settings
    bot.get_channel.side_effect = channels.get
    bot.fetch_channel = AsyncMock(side_effect=_not_found())
    guild = MagicMock(id=GUILD_ID)
    guild.name = "Test Guild"
    return IncidentPanel(bot, store), store, channels, settings, guild


def _add(store):
    return store.add_incident(GUILD_ID, incident_type="Technical", title="API errors", description="5xx spike",
                              reporter_id=7, reporter_name="reporter")


@pytest.mark.asyncio
async def test_overview_is_sent_when_no_pointer(panel_env):
    panel, store, channels, _, guild = panel_env
    _add(store)
    message = await panel.refresh_overview(guild)
    channel = channels[INCIDENT_CHANNEL]
    channel.send.assert_awaited_once()
    embed = channel.send.await_args.kwargs["embed"]
    assert embed.title == "📋 Incident Overview"
    assert message.id == 555
    assert store.get_overview_message(GUILD_ID) == {"channel_id": INCIDENT_CHANNEL, "message_id": 555}


@pytest.mark.asyncio
async def test_overview_edits_existing_message(panel_env):
    panel, store, channels, _, guild = panel_env
    existing = MagicMock(id=777)
    existing.edit = AsyncMock()
    channel = channels[INCIDENT_CHANNEL]
    channel.fetch_message = AsyncMock(return_value=existing)
    store.set_overview_message(GUILD_ID, INCIDENT_CHANNEL, 777)

    assert await panel.refresh_overview(guild) is existing
    existing.edit.assert_awaited_once()
    channel.send.assert_not_awaited()


@pytest.mark.asyncio
async def test_overview_repost_deletes_old_message(panel_env):
    panel, store, channels, _, guild = panel_env
    existing = MagicMock(id=777)
    existing.delete = AsyncMock()
    channel = channels[INCIDENT_CHANNEL]
    channel.fetch_message = AsyncMock(return_value=existing)
    store.set_overview_message(GUILD_ID, INCIDENT_CHANNEL, 777)

    await panel.refresh_overview(guild, repost=True)
    existing.delete.assert_awaited_once()
    channel.send.assert_awaited_once()
    assert store.get_overview_message(GUILD_ID)["message_id"] == 555


@pytest.mark.asyncio
async def test_stale_overview_pointer_is_replaced(panel_env):
    panel, store, channels, _, guild = panel_env
    store.set_overview_message(GUILD_ID, INCIDENT_CHANNEL, 999)
    await panel.refresh_overview(guild)
    channels[INCIDENT_CHANNEL].send.assert_awaited_once()
    assert store.get_overview_message(GUILD_ID)["message_id"] == 555


@pytest.mark.asyncio
async def test_overview_pointer_cleared_without_channel(panel_env):
    panel, store, _, settings, guild = panel_env
    settings["incident_channel"] = None
    store.set_overview_message(GUILD_ID, INCIDENT_CHANNEL, 999)
    assert await panel.refresh_overview(guild) is None
    assert store.get_overview_message(GUILD_ID) is None


@pytest.mark.asyncio
async def test_resolved_incident_card_loses_controls(panel_env):
    panel, store, channels, _, guild = panel_env
    incident = _add(store)
    store.resolve_incident(GUILD_ID, incident["id"], actor_id=1, actor_name="staff")
    store.set_incident_message(GUILD_ID, incident["id"], INCIDENT_CHANNEL, 321)
    card = MagicMock(id=321)
    card.edit = AsyncMock()
    channels[INCIDENT_CHANNEL].fetch_message = AsyncMock(return_value=card)

    await panel.refresh_incident_message(guild, incident)
    assert card.edit.await_args.kwargs["view"] is None
    assert "Resolved" in [f.name for f in card.edit.await_args.kwargs["embed"].fields]


@pytest.mark.asyncio
async def test_delete_incident_message_ignores_missing(panel_env):
    panel, store, channels, _, _ = panel_env
    incident = _add(store)
    await panel.delete_incident_message(incident)  # no pointer
    store.set_incident_message(GUILD_ID, incident["id"], INCIDENT_CHANNEL, 321)
    await panel.delete_incident_message(incident)  # fetch raises NotFound
    channels[INCIDENT_CHANNEL].fetch_message.assert_awaited_once()


@pytest.mark.asyncio
async def test_log_action_only_with_log_channel(panel_env):
    panel, store, channels, settings, guild = panel_env
    incident = _add(store)
    await panel.log_action(guild, incident, "created", "alice")
    channels[LOG_CHANNEL].send.assert_not_awaited()

    settings["log_channel"] = LOG_CHANNEL
    await panel.log_action(guild, incident, "created", "alice", "Reported.")
    embed = channels[LOG_CHANNEL].send.await_args.kwargs["embed"]
    assert embed.title == f"Incident #{incident['id']} created"


@pytest.mark.asyncio
async def test_apply_syncs_only_real_changes(panel_env):
    panel, store, _, _, guild = panel_env
    panel.sync = AsyncMock()
    incident = _add(store)
    actor = MagicMock(display_name="Staffer")

    _, changed = await panel.apply(guild, actor, "assigned", incident["id"],
                                   lambda: store.assign_incident(GUILD_ID, incident["id"], None, None, actor_id=1, actor_name="Staffer"))
    assert changed is False
    panel.sync.assert_not_awaited()

    _, changed = await panel.apply(guild, actor, "priority", incident["id"],
                                   lambda: store.update_incident(GUILD_ID, incident["id"], priority="critical", actor_id=1, actor_name="Staffer"))
    assert changed is True
    panel.sync.assert_awaited_once()
    assert panel.sync.await_args.args[2:4] == ("priority", "Staffer")
