# bot.py

import asyncio
import json
import os
import traceback
from typing import Optional

import discord
from discord import app_commands
from discord.ext import commands
from dotenv import load_dotenv

from incident_embeds import (build_history_embed, build_incident_embed, build_incident_list_embed, build_panel_embed,
                             build_stats_embed, create_embed, priority_label, send_embed_response, status_label, truncate)
from incident_panel import IncidentPanel
from incident_store import PRIORITIES, STATUSES, IncidentError, IncidentNotFound, IncidentStore
from incident_views import ConfirmDeleteView, IncidentActionsView, IncidentPanelView, IncidentSelectView, is_staff_interaction

load_dotenv()

# --- SETTINGS MANAGEMENT ---
SETTINGS_FILE = os.getenv('INCIDENT_SETTINGS_FILE', 'settings.json')
STORE_FILE = os.getenv('INCIDENT_STORE_FILE', 'incidents.json')

GUILD_DEFAULTS = {"incident_channel": None, "log_channel": None, "panel_channel": None, "staff_role": None}


def load_settings():
    """Loads settings from the settings file, creating/handling errors."""
    if not os.path.exists(SETTINGS_FILE):
        print(f"Info: {SETTINGS_FILE} not found. Creating.")
        with open(SETTINGS_FILE, 'w', encoding='utf-8') as f: json.dump({}, f)
        return {}
    try:
        if os.path.getsize(SETTINGS_FILE) == 0: return {}  # Handle empty file
        with open(SETTINGS_FILE, 'r', encoding='utf-8') as f: settings = json.load(f)
    except ValueError: print(f"ERROR: {SETTINGS_FILE} corrupted. Fix/delete it."); return {}  # JSONDecodeError and UnicodeDecodeError
    except OSError as e: print(f"ERROR loading settings: {e}"); traceback.print_exc(); return {}
    if not isinstance(settings, dict): print(f"ERROR: {SETTINGS_FILE} has unexpected format."); return {}
    return settings


def save_settings(settings):
    """Saves settings to the settings file."""
    try:
        with open(SETTINGS_FILE, 'w', encoding='utf-8') as f: json.dump(settings, f, indent=4)
    except OSError as e: print(f"ERROR saving settings: {e}"); traceback.print_exc()


# --- BOT SETUP ---
intents = discord.Intents.default()
intents.guilds = True


class IncidentBot(commands.Bot):
    def __init__(self):
        # Slash-only bot, mentions still work as a prefix
        super().__init__(command_prefix=commands.when_mentioned, intents=intents)
        self.settings = {}
        self.store = None
        self.panel = None
        self.persistent_views_added = False
        self._presence_tasks = set()

    def load_data(self):
        """Loads settings and incidents from disk and wires the panel."""
        self.settings = load_settings()
        self.store = IncidentStore(STORE_FILE)
        self.store.set_update_callback(self.schedule_presence_update)
        self.panel = IncidentPanel(self, self.store)

    async def setup_hook(self):
        if self.store is None: self.load_data()
        # Register persistent views ONCE before bot connects fully
        if not self.persistent_views_added:
            self.add_view(IncidentPanelView(self))
            self.add_view(IncidentActionsView(self))
            self.persistent_views_added = True
            print("Persistent views registered.")
        try:
            print("Syncing slash commands...")
            synced = await self.tree.sync()
            print(f"Synced {len(synced)} slash commands.")
        except discord.HTTPException as e: print(f"ERROR syncing slash commands: {e}"); traceback.print_exc()

    async def on_ready(self):
        print(f'Logged in as {self.user} (ID: {self.user.id})')
        print(f'discord.py version: {discord.__version__}')
        await self.update_presence()
        print('Bot is ready.')
        print('------')

    def presence_text(self) -> str:
        count = self.store.count_incidents() if self.store else 0
        return f"{count} open incident{'s' if count != 1 else ''}"

    async def update_presence(self):
        try:
            await self.change_presence(activity=discord.Activity(type=discord.ActivityType.watching, name=self.presence_text()))
        except Exception as e: print(f"Error setting presence: {e}")

    def schedule_presence_update(self):
        """Store callback. Runs inside the event loop, so the update is scheduled not awaited."""
        if not self.is_ready(): return
        try: loop = asyncio.get_running_loop()
        except RuntimeError: return  # called outside the loop (e.g. maintenance scripts)
        task = loop.create_task(self.update_presence())
        self._presence_tasks.add(task); task.add_done_callback(self._presence_tasks.discard)

    def get_guild_settings(self, guild_id: int):
        """Gets settings for a specific guild, ensuring defaults."""
        guild_id_str = str(guild_id)
        if not isinstance(self.settings, dict): self.settings = {}; print("CRITICAL ERROR: Settings corrupted, reset.")
        guild_settings = self.settings.get(guild_id_str)
        updated = False
        if not isinstance(guild_settings, dict):
            guild_settings = GUILD_DEFAULTS.copy(); updated = True
        for key, default_value in GUILD_DEFAULTS.items():
            if key not in guild_settings: guild_settings[key] = default_value; updated = True
        if updated: self.settings[guild_id_str] = guild_settings; save_settings(self.settings)
        return guild_settings

    def update_guild_setting(self, guild_id: int, key: str, value):
        settings = self.get_guild_settings(guild_id)
        settings[key] = value; save_settings(self.settings)


bot = IncidentBot()


# --- SLASH COMMAND GLOBAL ERROR HANDLER ---
@bot.tree.error
async def on_app_command_error(interaction: discord.Interaction, error: app_commands.AppCommandError):
    """Global error handler for slash commands."""
    original_error = getattr(error, 'original', error)  # Get original error if wrapped
    command_name = interaction.command.name if interaction.command else "unknown"

    if isinstance(original_error, IncidentError):
        # Domain errors carry a user-facing message
        title = "Incident Not Found" if isinstance(original_error, IncidentNotFound) else "Cannot Update Incident"
        await send_embed_response(interaction, title, str(original_error), discord.Color.orange())
    elif isinstance(error, app_commands.errors.MissingPermissions):
        await send_embed_response(interaction, "Permission Denied", "You lack the required permissions to use this command.", discord.Color.red())
    elif isinstance(error, app_commands.errors.CheckFailure):
        # Our checks send their own messages
        print(f"Check failure handled for command '{command_name}' by {interaction.user.name}.")
        if not interaction.response.is_done():
            await send_embed_response(interaction, "Check Failed", "Could not verify permissions.", discord.Color.orange())
    elif isinstance(error, app_commands.CommandNotFound):
        await send_embed_response(interaction, "Command Not Found", "This command seems to be invalid or outdated.", discord.Color.orange())
    elif isinstance(original_error, discord.Forbidden):
        print(f"ERROR: Bot lacks permissions during execution of '{command_name}': {original_error.text}")
        await send_embed_response(interaction, "Permissions Error", "I lack the necessary permissions.", discord.Color.red())
    elif isinstance(error, app_commands.errors.CommandInvokeError):
        print(f"ERROR during command execution ({command_name}):")
        traceback.print_exception(type(original_error), original_error, original_error.__traceback__)
        await send_embed_response(interaction, "Command Runtime Error", "An error occurred while running this command.", discord.Color.dark_red())
    else:
        print(f"UNHANDLED SLASH COMMAND ERROR ({type(error)}) in '{command_name}': {error}")
        traceback.print_exception(type(error), error, error.__traceback__)
        await send_embed_response(interaction, "Error", "An unexpected error occurred.", discord.Color.dark_red())


# --- HELPER FUNCTIONS ---
async def check_setup(interaction: discord.Interaction):
    """Checks if the incident panel is fully set up for the guild."""
    settings = bot.get_guild_settings(interaction.guild.id)
    required = ['incident_channel', 'staff_role']
    if not all(settings.get(key) for key in required):
        missing_str = ", ".join([s.replace("_", " ").title() for s in required if not settings.get(s)])
        await send_embed_response(interaction, "Bot Not Configured", f"Admin needs to configure: `{missing_str}` using `/setup` commands.", discord.Color.red())
        return False
    return True


def is_staff_check():
    """Decorator check if interaction user is staff or admin."""
    async def predicate(interaction: discord.Interaction) -> bool:
        return await is_staff_interaction(interaction)  # sends the "denied" message itself
    return app_commands.check(predicate)


async def incident_autocomplete(interaction: discord.Interaction, current: str):
    """Suggests incidents by id or title."""
    if not interaction.guild or bot.store is None: return []
    current = current.lower().lstrip("#")
    matches = [i for i in bot.store.list_incidents(interaction.guild.id) if current in str(i["id"]) or current in i.get("title", "").lower()]
    return [app_commands.Choice(name=truncate(f"#{i['id']} [{i.get('status')}] {i.get('title', '')}", 100), value=i["id"]) for i in matches[:25]]


def actor_kwargs(interaction: discord.Interaction) -> dict:
    return {"actor_id": interaction.user.id, "actor_name": interaction.user.display_name}


async def run_incident_change(interaction: discord.Interaction, action: str, incident_id: int, mutate, done_title: str):
    """Defers, applies a store change through the panel and confirms it."""
    await interaction.response.defer(ephemeral=True, thinking=True)
    incident, changed = await bot.panel.apply(interaction.guild, interaction.user, action, incident_id, mutate)
    if not changed:
        await interaction.followup.send(embed=create_embed("No Change", f"Incident `#{incident_id}` already matches.", discord.Color.greyple()), ephemeral=True); return
    await interaction.followup.send(embed=create_embed(done_title, f"Incident `#{incident_id}` updated.", discord.Color.green()), ephemeral=True)


STATUS_CHOICES = [app_commands.Choice(name=s.capitalize(), value=s) for s in STATUSES]
PRIORITY_CHOICES = [app_commands.Choice(name=p.capitalize(), value=p) for p in PRIORITIES]


# --- SLASH COMMAND GROUPS ---
setup_group = app_commands.Group(
    name="setup",
    description="Admin commands to configure the incident panel.",
    guild_only=True,
    default_permissions=discord.Permissions(administrator=True)  # Only Admins can use /setup commands
)
# Permissions for incident commands are checked within each command
incident_group = app_commands.Group(name="incident", description="Commands to manage incidents.", guild_only=True)


# --- SETUP COMMANDS ---
@setup_group.command(name="incident_channel", description="Sets the channel where incidents and the overview are posted.")
@app_commands.describe(channel="The text channel for incident reports.")
async def set_incident_channel(interaction: discord.Interaction, channel: discord.TextChannel):
    bot.update_guild_setting(interaction.guild.id, "incident_channel", channel.id)
    await send_embed_response(interaction, "Setup Complete", f"Incidents will be posted in {channel.mention}", discord.Color.green())


@setup_group.command(name="log_channel", description="Sets the channel that receives the incident audit log.")
@app_commands.describe(channel="The text channel for audit entries.")
async def set_log_channel(interaction: discord.Interaction, channel: discord.TextChannel):
    bot.update_guild_setting(interaction.guild.id, "log_channel", channel.id)
    await send_embed_response(interaction, "Setup Complete", f"Audit log entries will be sent to {channel.mention}", discord.Color.green())


@setup_group.command(name="panel_channel", description="Sets the channel where the report panel is posted.")
@app_commands.describe(channel="The text channel for the panel.")
async def set_panel_channel(interaction: discord.Interaction, channel: discord.TextChannel):
    bot.update_guild_setting(interaction.guild.id, "panel_channel", channel.id)
    await send_embed_response(interaction, "Setup Complete", f"Report panel channel has been set to {channel.mention}", discord.Color.green())


@setup_group.command(name="staff_role", description="Sets the role allowed to manage incidents.")
@app_commands.describe(role="The role designated as incident staff.")
async def set_staff_role(interaction: discord.Interaction, role: discord.Role):
    bot.update_guild_setting(interaction.guild.id, "staff_role", role.id)
    await send_embed_response(interaction, "Setup Complete", f"Staff role has been set to {role.mention}", discord.Color.green())


@setup_group.command(name="show", description="Shows the current incident panel configuration.")
async def show_setup(interaction: discord.Interaction):
    settings = bot.get_guild_settings(interaction.guild.id)
    def fmt_channel(key): return f"<#{settings[key]}>" if settings.get(key) else "Not set"
    embed = create_embed("Incident Panel Configuration", None, discord.Color.blurple())
    embed.add_field(name="Incident Channel", value=fmt_channel("incident_channel"), inline=True)
    embed.add_field(name="Log Channel", value=fmt_channel("log_channel"), inline=True)
    embed.add_field(name="Panel Channel", value=fmt_channel("panel_channel"), inline=True)
    embed.add_field(name="Staff Role", value=f"<@&{settings['staff_role']}>" if settings.get("staff_role") else "Not set", inline=True)
    await interaction.response.send_message(embed=embed, ephemeral=True)


@setup_group.command(name="create_panel", description="Sends the incident report panel to the panel channel.")
async def create_panel(interaction: discord.Interaction):
    """Sends the persistent report panel."""
    if not await check_setup(interaction): return
    settings = bot.get_guild_settings(interaction.guild.id)
    panel_channel_id = settings.get('panel_channel') or settings.get('incident_channel')  # panel falls back to the incident channel
    panel_channel = bot.get_channel(panel_channel_id) if panel_channel_id else None
    if not panel_channel or not isinstance(panel_channel, discord.TextChannel):
        await send_embed_response(interaction, "Configuration Error", "Panel channel invalid or not found.", discord.Color.red()); return

    perms = panel_channel.permissions_for(interaction.guild.me)
    if not perms.send_messages or not perms.embed_links:
        await send_embed_response(interaction, "Permissions Error", f"Cannot send panel to {panel_channel.mention}.", discord.Color.red()); return
    try:
        await panel_channel.send(embed=build_panel_embed(interaction.guild), view=IncidentPanelView(bot))
        await send_embed_response(interaction, "Panel Created", f"Panel sent to {panel_channel.mention}", discord.Color.green())
    except discord.HTTPException as e: print(f"Error sending panel: {e}"); traceback.print_exc(); await send_embed_response(interaction, "Error", "Could not send panel.", discord.Color.red())


# --- REPORTING ---
@bot.tree.command(name="new-incident", description="Report a new incident")
@app_commands.guild_only()
async def new_incident(interaction: discord.Interaction):
    settings = bot.get_guild_settings(interaction.guild.id)
    if not settings.get("incident_channel"):
        await send_embed_response(interaction, "System Offline", "The incident panel is not configured by an administrator.", discord.Color.red()); return
    await interaction.response.send_message(embed=build_panel_embed(), view=IncidentPanelView(bot), ephemeral=True)


# --- INCIDENT COMMANDS ---
@incident_group.command(name="list", description="Lists incidents, optionally filtered by status.")
@app_commands.describe(status="Only show incidents with this status.")
@app_commands.choices(status=STATUS_CHOICES)
@is_staff_check()
async def incident_list(interaction: discord.Interaction, status: Optional[app_commands.Choice[str]] = None):
    incidents = bot.store.list_incidents(interaction.guild.id, status=status.value if status else None)
    title = f"Incidents: {status_label(status.value)}" if status else "All Incidents"
    await interaction.response.send_message(embed=build_incident_list_embed(title, incidents), ephemeral=True)


@incident_group.command(name="view", description="Shows a single incident.")
@app_commands.describe(incident_id="The incident ID (e.g. 123456).")
@app_commands.autocomplete(incident_id=incident_autocomplete)
async def incident_view(interaction: discord.Interaction, incident_id: int):
    incident = bot.store.get_incident(interaction.guild.id, incident_id)
    await interaction.response.send_message(embed=build_incident_embed(incident), ephemeral=True)


@incident_group.command(name="manage", description="Pick an incident from a menu and manage it.")
@app_commands.describe(include_resolved="Also list resolved incidents.")
@is_staff_check()
async def incident_manage(interaction: discord.Interaction, include_resolved: bool = False):
    incidents = bot.store.list_incidents(interaction.guild.id, include_resolved=include_resolved)
    if not incidents:
        await send_embed_response(interaction, "Nothing To Manage", "There are no matching incidents.", discord.Color.green()); return
    note = f"\nShowing the first 25 of {len(incidents)}." if len(incidents) > 25 else ""
    await interaction.response.send_message(embed=create_embed("Manage Incidents", f"Select an incident below.{note}", discord.Color.blurple()),
                                            view=IncidentSelectView(bot, incidents), ephemeral=True)


@incident_group.command(name="status", description="Changes the status of an incident.")
@app_commands.describe(incident_id="The incident ID.", status="The new status.")
@app_commands.choices(status=STATUS_CHOICES)
@app_commands.autocomplete(incident_id=incident_autocomplete)
@is_staff_check()
async def incident_status(interaction: discord.Interaction, incident_id: int, status: app_commands.Choice[str]):
    gid = interaction.guild.id
    await run_incident_change(interaction, "resolved" if status.value == "resolved" else "status", incident_id,
                              lambda: bot.store.set_status(gid, incident_id, status.value, **actor_kwargs(interaction)), "Status Updated")


@incident_group.command(name="priority", description="Changes the priority of an incident.")
@app_commands.describe(incident_id="The incident ID.", priority="The new priority.")
@app_commands.choices(priority=PRIORITY_CHOICES)
@app_commands.autocomplete(incident_id=incident_autocomplete)
@is_staff_check()
async def incident_priority(interaction: discord.Interaction, incident_id: int, priority: app_commands.Choice[str]):
    gid = interaction.guild.id
    await run_incident_change(interaction, "priority", incident_id,
                              lambda: bot.store.update_incident(gid, incident_id, priority=priority.value, **actor_kwargs(interaction)),
                              f"Priority Set To {priority_label(priority.value)}")


@incident_group.command(name="resolve", description="Marks an incident as resolved.")
@app_commands.describe(incident_id="The incident ID.")
@app_commands.autocomplete(incident_id=incident_autocomplete)
@is_staff_check()
async def incident_resolve(interaction: discord.Interaction, incident_id: int):
    gid = interaction.guild.id
    await run_incident_change(interaction, "resolved", incident_id,
                              lambda: bot.store.resolve_incident(gid, incident_id, **actor_kwargs(interaction)), "✅ Incident Resolved")


@incident_group.command(name="reopen", description="Reopens a resolved incident.")
@app_commands.describe(incident_id="The incident ID.")
@app_commands.autocomplete(incident_id=incident_autocomplete)
@is_staff_check()
async def incident_reopen(interaction: discord.Interaction, incident_id: int):
    gid = interaction.guild.id
    await run_incident_change(interaction, "reopened", incident_id,
                              lambda: bot.store.reopen_incident(gid, incident_id, **actor_kwargs(interaction)), "🔓 Incident Reopened")


@incident_group.command(name="assign", description="Assigns an incident to a member (leave empty to unassign).")
@app_commands.describe(incident_id="The incident ID.", member="The member to assign. Omit to unassign.")
@app_commands.autocomplete(incident_id=incident_autocomplete)
@is_staff_check()
async def incident_assign(interaction: discord.Interaction, incident_id: int, member: Optional[discord.Member] = None):
    gid = interaction.guild.id
    assignee_id = member.id if member else None; assignee_name = member.display_name if member else None
    await run_incident_change(interaction, "assigned", incident_id,
                              lambda: bot.store.assign_incident(gid, incident_id, assignee_id, assignee_name, **actor_kwargs(interaction)),
                              "Incident Assigned" if member else "Incident Unassigned")


@incident_group.command(name="note", description="Adds a note to an incident.")
@app_commands.describe(incident_id="The incident ID.", text="The note text.")
@app_commands.autocomplete(incident_id=incident_autocomplete)
@is_staff_check()
async def incident_note(interaction: discord.Interaction, incident_id: int, text: app_commands.Range[str, 1, 500]):
    gid = interaction.guild.id
    await run_incident_change(interaction, "note", incident_id,
                              lambda: bot.store.add_note(gid, incident_id, text, **actor_kwargs(interaction)), "📝 Note Added")


@incident_group.command(name="delete", description="Permanently deletes an incident.")
@app_commands.describe(incident_id="The incident ID.")
@app_commands.autocomplete(incident_id=incident_autocomplete)
@is_staff_check()
async def incident_delete(interaction: discord.Interaction, incident_id: int):
    bot.store.get_incident(interaction.guild.id, incident_id)  # raises if unknown
    view = ConfirmDeleteView(bot, incident_id, interaction.user)
    embed = create_embed("🗑️ Confirm Incident Deletion", f"Incident `#{incident_id}` will be **permanently deleted**. This cannot be undone.", discord.Color.dark_red())
    await interaction.response.send_message(embed=embed, view=view, ephemeral=True)
    view.message = await interaction.original_response()


@incident_group.command(name="history", description="Shows the audit log of an incident.")
@app_commands.describe(incident_id="The incident ID.")
@app_commands.autocomplete(incident_id=incident_autocomplete)
@is_staff_check()
async def incident_history(interaction: discord.Interaction, incident_id: int):
    incident = bot.store.get_incident(interaction.guild.id, incident_id)
    await interaction.response.send_message(embed=build_history_embed(incident), ephemeral=True)


@incident_group.command(name="overview", description="Re-posts the incident overview at the bottom of the incident channel.")
@is_staff_check()
async def incident_overview(interaction: discord.Interaction):
    if not await check_setup(interaction): return
    await interaction.response.defer(ephemeral=True, thinking=True)
    message = await bot.panel.refresh_overview(interaction.guild, repost=True)
    if message is None:
        await interaction.followup.send(embed=create_embed("Error", "Could not post the overview. Check the incident channel and my permissions.", discord.Color.red()), ephemeral=True); return
    await interaction.followup.send(embed=create_embed("Overview Posted", f"[Jump to overview]({message.jump_url})", discord.Color.green()), ephemeral=True)


@incident_group.command(name="stats", description="Shows incident statistics for this server.")
@is_staff_check()
async def incident_stats(interaction: discord.Interaction):
    await interaction.response.send_message(embed=build_stats_embed(interaction.guild.name, bot.store.stats(interaction.guild.id)), ephemeral=True)


# Add command groups to the tree AFTER defining them
bot.tree.add_command(setup_group)
bot.tree.add_command(incident_group)


# --- RUN THE BOT ---
def main():
    token = os.getenv('DISCORD_TOKEN')
    if not token: print("CRITICAL ERROR: DISCORD_TOKEN missing."); raise SystemExit(1)
    try:
        bot.run(token)
    except discord.errors.LoginFailure: print("CRITICAL ERROR: Login Failure - Improper token.")
    except discord.errors.PrivilegedIntentsRequired: print("CRITICAL ERROR: Privileged Intents Required - Check Developer Portal.")


if __name__ == "__main__":
    main()
