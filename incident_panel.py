# incident_panel.py

import traceback

import discord

from incident_embeds import build_audit_embed, build_incident_embed, build_overview_embed
from incident_store import IncidentStore
from incident_views import IncidentActionsView


class IncidentPanel:
    """Keeps the Discord messages in sync with the incident store.

    Handles the per-incident messages in the incident channel, the single
    overview message per guild, and audit entries in the log channel.
    """

    def __init__(self, bot_instance, store: IncidentStore):
        self.bot = bot_instance
        self.store = store

    # --- channel lookup ---
    async def resolve_channel(self, channel_id):
        if not channel_id: return None
        channel = self.bot.get_channel(channel_id)
        if channel is None:
            try: channel = await self.bot.fetch_channel(channel_id)
            except (discord.NotFound, discord.Forbidden): return None
        return channel

    async def incident_channel(self, guild: discord.Guild):
        settings = self.bot.get_guild_settings(guild.id)
        return await self.resolve_channel(settings.get("incident_channel"))

    async def _fetch_message(self, pointer):
        """Fetches a stored {channel_id, message_id} message, None if gone."""
        if not pointer: return None
        channel = await self.resolve_channel(pointer.get("channel_id"))
        if channel is None: return None
        try: return await channel.fetch_message(pointer["message_id"])
        except (discord.NotFound, discord.Forbidden): return None

    def _view_for(self, incident: dict):
        if incident.get("status") == "resolved": return None  # resolved incidents are read-only cards
        return IncidentActionsView(self.bot)

    # --- incident messages ---
    async def publish_incident(self, guild: discord.Guild, incident: dict):
        """Posts a new incident card in the incident channel. Returns the message or None."""
        channel = await self.incident_channel(guild)
        if channel is None:
            print(f"WARNING: Incident channel missing for guild {guild.id}, incident #{incident['id']} not posted.")
            return None
        message = await channel.send(embed=build_incident_embed(incident), view=self._view_for(incident))
        self.store.set_incident_message(guild.id, incident["id"], channel.id, message.id)
        return message

    async def refresh_incident_message(self, guild: discord.Guild, incident: dict):
        """Re-renders the incident card, re-posting it if the old one is gone."""
        message = await self._fetch_message(incident.get("message"))
        if message is None:
            try: return await self.publish_incident(guild, incident)
            except discord.HTTPException as e: print(f"ERROR re-posting incident #{incident['id']}: {e}"); return None
        try:
            await message.edit(embed=build_incident_embed(incident), view=self._view_for(incident))
        except (discord.NotFound, discord.Forbidden) as e:
            print(f"WARNING: Could not edit message for incident #{incident['id']}: {e}")
        return message

    async def delete_incident_message(self, incident: dict):
        message = await self._fetch_message(incident.get("message"))
        if message is None: return
        try: await message.delete()
        except (discord.NotFound, discord.Forbidden): pass

    # --- overview ---
    async def refresh_overview(self, guild: discord.Guild, repost: bool = False):
        """Edits the stored overview message, or sends a fresh one.

        With repost=True the old overview is deleted and a new one is sent, so
        it ends up as the latest message in the channel.
        """
        embed = build_overview_embed(guild.name, self.store.list_incidents(guild.id, include_resolved=False))
        message = await self._fetch_message(self.store.get_overview_message(guild.id))
        if message is not None and not repost:
            try: await message.edit(embed=embed); return message
            except (discord.NotFound, discord.Forbidden) as e: print(f"WARNING: Could not edit overview in guild {guild.id}: {e}")
        if message is not None:
            try: await message.delete()
            except (discord.NotFound, discord.Forbidden): pass

        channel = await self.incident_channel(guild)
        if channel is None:
            self.store.set_overview_message(guild.id, None, None); return None
        try:
            new_message = await channel.send(embed=embed)
        except discord.HTTPException as e:
            print(f"ERROR sending overview in guild {guild.id}: {e}"); return None
        self.store.set_overview_message(guild.id, channel.id, new_message.id)
        return new_message

    # --- audit log ---
    async def log_action(self, guild: discord.Guild, incident: dict, action: str, actor: str, detail: str = ""):
        """Posts an audit entry to the log channel, if one is configured."""
        settings = self.bot.get_guild_settings(guild.id)
        channel = await self.resolve_channel(settings.get("log_channel"))
        if channel is None: return
        try: await channel.send(embed=build_audit_embed(incident, action, actor, detail))
        except discord.HTTPException as e: print(f"WARNING: Could not write audit log in guild {guild.id}: {e}")

    async def sync(self, guild: discord.Guild, incident: dict, action: str, actor: str, detail: str = ""):
        """Refreshes card and overview after a change, then logs it."""
        try:
            await self.refresh_incident_message(guild, incident)
            await self.refresh_overview(guild)
        except Exception as e:
            print(f"ERROR syncing incident #{incident.get('id')} messages: {e}"); traceback.print_exc()
        await self.log_action(guild, incident, action, actor, detail)

    async def apply(self, guild: discord.Guild, actor: discord.abc.User, action: str, incident_id: int, mutate):
        """Runs a store mutation and, if it changed anything, re-renders and logs it.

        Returns (incident, changed). Store errors propagate to the caller.
        """
        before = len(self.store.get_incident(guild.id, incident_id).get("history", []))
        incident = mutate()
        changed = len(incident.get("history", [])) > before
        if changed: await self.sync(guild, incident, action, actor.display_name, incident["history"][-1].get("detail", ""))
        return incident, changed
