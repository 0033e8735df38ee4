# incident_views.py

import traceback

import discord

from incident_embeds import (PRIORITY_EMOJI, STATUS_EMOJI, build_incident_embed, create_embed,
                             parse_incident_id, send_embed_response, truncate)
from incident_store import FIELD_LIMITS, PRIORITIES, STATUSES, IncidentError, InvalidIncidentField, normalize_priority


# --- PERMISSION HELPERS ---
def member_is_staff(member, staff_role_id) -> bool:
    """Admins always count as staff, otherwise the configured staff role is required."""
    if not isinstance(member, discord.Member): return False
    if member.guild_permissions.administrator: return True
    return bool(staff_role_id) and any(role.id == staff_role_id for role in member.roles)


async def is_staff_interaction(interaction: discord.Interaction) -> bool:
    """Checks staff status, sending the 'denied' message itself."""
    if not interaction.guild: return False
    settings = interaction.client.get_guild_settings(interaction.guild.id)
    if not isinstance(interaction.user, discord.Member):
        await send_embed_response(interaction, "Error", "Could not verify permissions.", discord.Color.red()); return False
    if member_is_staff(interaction.user, settings.get('staff_role')): return True
    if not settings.get('staff_role'):
        await send_embed_response(interaction, "Setup Error", "Staff role not configured. An admin must run `/setup staff_role`.", discord.Color.red()); return False
    await send_embed_response(interaction, "Permission Denied", "Only incident staff can do this.", discord.Color.red())
    return False


async def send_modal_error(name: str, interaction: discord.Interaction, error: Exception):
    print(f"ERROR in {name}: {error}"); traceback.print_exception(type(error), error, error.__traceback__)
    try: await send_embed_response(interaction, "Error", "An error occurred while processing the form.", discord.Color.red())
    except Exception as e: print(f"Error sending on_error message in {name}: {e}")


# --- REPORT PANEL ---
class IncidentPanelView(discord.ui.View):
    """Persistent view with the 'Report Incident' button."""
    def __init__(self, bot_instance):
        super().__init__(timeout=None)
        self.bot = bot_instance

    async def interaction_check(self, interaction: discord.Interaction) -> bool:
        if not interaction.guild: return False
        settings = self.bot.get_guild_settings(interaction.guild.id)
        if not settings.get('incident_channel'):
            await send_embed_response(interaction, "System Offline", "The incident panel is not configured by an administrator.", discord.Color.red())
            return False
        return True

    @discord.ui.button(label="Report Incident", style=discord.ButtonStyle.danger, emoji="🚨", custom_id="open_incident_modal")
    async def report(self, interaction: discord.Interaction, button: discord.ui.Button):
        await interaction.response.send_modal(IncidentReportModal(self.bot))


# --- MODALS ---
class IncidentReportModal(discord.ui.Modal, title="Incident Report Form"):
    """Form shown when someone reports a new incident."""
    incident_type = discord.ui.TextInput(label="Incident Type (e.g. Technical, Safety)", style=discord.TextStyle.short, required=True, max_length=FIELD_LIMITS["type"])
    incident_title = discord.ui.TextInput(label="Incident Title", style=discord.TextStyle.short, required=True, max_length=FIELD_LIMITS["title"])
    incident_description = discord.ui.TextInput(label="Incident Description", style=discord.TextStyle.paragraph, required=True, max_length=FIELD_LIMITS["description"])
    priority = discord.ui.TextInput(label="Priority (low, medium, high, critical)", style=discord.TextStyle.short, required=False, default="medium", max_length=10)

    def __init__(self, bot_instance):
        super().__init__()
        self.bot = bot_instance

    async def on_submit(self, interaction: discord.Interaction):
        await interaction.response.defer(ephemeral=True, thinking=True)
        panel = self.bot.panel
        if await panel.incident_channel(interaction.guild) is None:
            await interaction.followup.send(embed=create_embed("Error", "Error: Incident channel not found.", discord.Color.red()), ephemeral=True); return
        notice = ""
        try: priority = normalize_priority(self.priority.value or "medium")
        except InvalidIncidentField:
            priority = "medium"; notice = f"\nUnknown priority `{self.priority.value}`, reported as **medium**. Staff can change it."
        try:
            incident = self.bot.store.add_incident(
                interaction.guild.id, incident_type=self.incident_type.value, title=self.incident_title.value,
                description=self.incident_description.value, priority=priority,
                reporter_id=interaction.user.id, reporter_name=str(interaction.user))
        except IncidentError as e:
            await interaction.followup.send(embed=create_embed("Invalid Report", str(e), discord.Color.orange()), ephemeral=True); return

        await panel.publish_incident(interaction.guild, incident)
        await panel.refresh_overview(interaction.guild)
        await panel.log_action(interaction.guild, incident, "created", interaction.user.display_name, incident["history"][-1].get("detail", ""))
        await interaction.followup.send(embed=create_embed("✅ Incident Reported", f"Incident successfully reported! ID: `#{incident['id']}`{notice}", discord.Color.green()), ephemeral=True)

    async def on_error(self, interaction: discord.Interaction, error: Exception):
        await send_modal_error("IncidentReportModal", interaction, error)


class IncidentEditModal(discord.ui.Modal):
    """Staff form for editing an incident, pre-filled with the current values."""
    def __init__(self, bot_instance, incident: dict):
        super().__init__(title=truncate(f"Edit Incident #{incident['id']}", 45))
        self.bot = bot_instance; self.incident_id = incident["id"]
        self.type_input = discord.ui.TextInput(label="Incident Type", default=incident.get("type"), max_length=FIELD_LIMITS["type"])
        self.title_input = discord.ui.TextInput(label="Incident Title", default=incident.get("title"), max_length=FIELD_LIMITS["title"])
        self.description_input = discord.ui.TextInput(label="Incident Description", style=discord.TextStyle.paragraph, default=incident.get("description"), max_length=FIELD_LIMITS["description"])
        self.priority_input = discord.ui.TextInput(label="Priority (low, medium, high, critical)", default=incident.get("priority"), max_length=10)
        self.status_input = discord.ui.TextInput(label="Status", placeholder="open, investigating, monitoring or resolved", default=incident.get("status"), max_length=15)
        for item in (self.type_input, self.title_input, self.description_input, self.priority_input, self.status_input): self.add_item(item)

    async def on_submit(self, interaction: discord.Interaction):
        await interaction.response.defer(ephemeral=True, thinking=True)
        store = self.bot.store; guild = interaction.guild
        try:
            incident, changed = await self.bot.panel.apply(
                guild, interaction.user, "edited", self.incident_id,
                lambda: store.update_incident(guild.id, self.incident_id, actor_id=interaction.user.id, actor_name=interaction.user.display_name,
                                              type=self.type_input.value, title=self.title_input.value, description=self.description_input.value,
                                              priority=self.priority_input.value, status=self.status_input.value))
        except IncidentError as e:
            await interaction.followup.send(embed=create_embed("Cannot Edit Incident", str(e), discord.Color.orange()), ephemeral=True); return
        message = f"Incident `#{incident['id']}` updated." if changed else "Nothing changed."
        await interaction.followup.send(embed=create_embed("Incident Edited", message, discord.Color.green()), ephemeral=True)

    async def on_error(self, interaction: discord.Interaction, error: Exception):
        await send_modal_error("IncidentEditModal", interaction, error)


class IncidentNoteModal(discord.ui.Modal):
    """Staff form for adding a note to an incident."""
    def __init__(self, bot_instance, incident_id: int):
        super().__init__(title=f"Add Note to #{incident_id}")
        self.bot = bot_instance; self.incident_id = incident_id
        self.note_input = discord.ui.TextInput(label="Note", style=discord.TextStyle.paragraph, placeholder="What happened, what was checked, next steps...", required=True, max_length=FIELD_LIMITS["note"])
        self.add_item(self.note_input)

    async def on_submit(self, interaction: discord.Interaction):
        await interaction.response.defer(ephemeral=True, thinking=True)
        store = self.bot.store; guild = interaction.guild
        try:
            await self.bot.panel.apply(guild, interaction.user, "note", self.incident_id,
                                       lambda: store.add_note(guild.id, self.incident_id, self.note_input.value, actor_id=interaction.user.id, actor_name=interaction.user.display_name))
        except IncidentError as e:
            await interaction.followup.send(embed=create_embed("Cannot Add Note", str(e), discord.Color.orange()), ephemeral=True); return
        await interaction.followup.send(embed=create_embed("Note Added", f"Note added to incident `#{self.incident_id}`.", discord.Color.green()), ephemeral=True)

    async def on_error(self, interaction: discord.Interaction, error: Exception):
        await send_modal_error("IncidentNoteModal", interaction, error)


# --- INCIDENT ACTIONS (attached to every incident card) ---
class IncidentActionsView(discord.ui.View):
    """Persistent staff controls. The incident is identified by the embed footer."""
    def __init__(self, bot_instance):
        super().__init__(timeout=None)
        self.bot = bot_instance

    async def interaction_check(self, interaction: discord.Interaction) -> bool:
        return await is_staff_interaction(interaction)

    async def _incident_id(self, interaction: discord.Interaction):
        embeds = interaction.message.embeds if interaction.message else []
        incident_id = parse_incident_id(embeds[0]) if embeds else None
        if incident_id is None: await send_embed_response(interaction, "Error", "Cannot identify the incident from this message.", discord.Color.red())
        return incident_id

    async def _change(self, interaction: discord.Interaction, action: str, mutate):
        """Runs mutate(guild_id, incident_id) and re-renders the clicked message."""
        incident_id = await self._incident_id(interaction)
        if incident_id is None: return
        await interaction.response.defer()
        guild = interaction.guild
        try:
            incident, _ = await self.bot.panel.apply(guild, interaction.user, action, incident_id, lambda: mutate(guild.id, incident_id))
        except IncidentError as e:
            await send_embed_response(interaction, "Cannot Update Incident", str(e), discord.Color.orange()); return
        try:
            await interaction.edit_original_response(embed=build_incident_embed(incident), view=None if incident["status"] == "resolved" else self)
        except (discord.NotFound, discord.Forbidden): pass  # card was already re-rendered by the panel

    def _actor(self, interaction: discord.Interaction) -> dict:
        return {"actor_id": interaction.user.id, "actor_name": interaction.user.display_name}

    @discord.ui.select(custom_id="incident_actions:status", placeholder="Set status…", row=0,
                       options=[discord.SelectOption(label=s.capitalize(), value=s, emoji=STATUS_EMOJI[s]) for s in STATUSES])
    async def set_status(self, interaction: discord.Interaction, select: discord.ui.Select):
        status = select.values[0]
        await self._change(interaction, "resolved" if status == "resolved" else "status",
                           lambda gid, iid: self.bot.store.set_status(gid, iid, status, **self._actor(interaction)))

    @discord.ui.select(custom_id="incident_actions:priority", placeholder="Set priority…", row=1,
                       options=[discord.SelectOption(label=p.capitalize(), value=p, emoji=PRIORITY_EMOJI[p]) for p in PRIORITIES])
    async def set_priority(self, interaction: discord.Interaction, select: discord.ui.Select):
        priority = select.values[0]
        await self._change(interaction, "priority", lambda gid, iid: self.bot.store.update_incident(gid, iid, priority=priority, **self._actor(interaction)))

    @discord.ui.button(label="Edit", style=discord.ButtonStyle.primary, emoji="✏️", custom_id="incident_actions:edit", row=2)
    async def edit(self, interaction: discord.Interaction, button: discord.ui.Button):
        incident_id = await self._incident_id(interaction)
        if incident_id is None: return
        try: incident = self.bot.store.get_incident(interaction.guild.id, incident_id)
        except IncidentError as e: await send_embed_response(interaction, "Error", str(e), discord.Color.red()); return
        await interaction.response.send_modal(IncidentEditModal(self.bot, incident))

    @discord.ui.button(label="Add Note", style=discord.ButtonStyle.secondary, emoji="📝", custom_id="incident_actions:note", row=2)
    async def note(self, interaction: discord.Interaction, button: discord.ui.Button):
        incident_id = await self._incident_id(interaction)
        if incident_id is None: return
        await interaction.response.send_modal(IncidentNoteModal(self.bot, incident_id))

    @discord.ui.button(label="Claim", style=discord.ButtonStyle.secondary, emoji="🙋", custom_id="incident_actions:claim", row=2)
    async def claim(self, interaction: discord.Interaction, button: discord.ui.Button):
        """Assigns the incident to the clicker, or releases it if they already hold it."""
        def toggle(gid, iid):
            current = self.bot.store.get_incident(gid, iid).get("assignee_id")
            if current == interaction.user.id:
                return self.bot.store.assign_incident(gid, iid, None, None, **self._actor(interaction))
            return self.bot.store.assign_incident(gid, iid, interaction.user.id, interaction.user.display_name, **self._actor(interaction))
        await self._change(interaction, "assigned", toggle)

    @discord.ui.button(label="Resolve", style=discord.ButtonStyle.success, emoji="✅", custom_id="incident_actions:resolve", row=2)
    async def resolve(self, interaction: discord.Interaction, button: discord.ui.Button):
        await self._change(interaction, "resolved", lambda gid, iid: self.bot.store.resolve_incident(gid, iid, **self._actor(interaction)))

    @discord.ui.button(label="Delete", style=discord.ButtonStyle.danger, emoji="🗑️", custom_id="incident_actions:delete", row=2)
    async def delete(self, interaction: discord.Interaction, button: discord.ui.Button):
        incident_id = await self._incident_id(interaction)
        if incident_id is None: return
        view = ConfirmDeleteView(self.bot, incident_id, interaction.user)
        embed = create_embed("🗑️ Confirm Incident Deletion", f"Incident `#{incident_id}` will be **permanently deleted**. This cannot be undone.", discord.Color.dark_red())
        await interaction.response.send_message(embed=embed, view=view, ephemeral=True)
        view.message = await interaction.original_response()


# --- DELETE CONFIRMATION (ephemeral, non-persistent) ---
class ConfirmDeleteView(discord.ui.View):
    def __init__(self, bot_instance, incident_id: int, requester: discord.abc.User):
        super().__init__(timeout=60)
        self.bot = bot_instance; self.incident_id = incident_id; self.requester = requester; self.message = None

    async def interaction_check(self, interaction: discord.Interaction) -> bool:
        if interaction.user.id == self.requester.id: return True
        await send_embed_response(interaction, "Permission Denied", "Only the staff member who started the deletion can confirm it.", discord.Color.red())
        return False

    @discord.ui.button(label="Confirm Delete", style=discord.ButtonStyle.danger, emoji="🗑️")
    async def confirm(self, interaction: discord.Interaction, button: discord.ui.Button):
        self.stop()
        try: incident = self.bot.store.remove_incident(interaction.guild.id, self.incident_id)
        except IncidentError as e:
            await interaction.response.edit_message(embed=create_embed("Error", str(e), discord.Color.red()), view=None); return
        await interaction.response.edit_message(embed=create_embed("Incident Deleted", f"Incident `#{self.incident_id}` has been deleted.", discord.Color.green()), view=None)
        panel = self.bot.panel
        await panel.delete_incident_message(incident)
        await panel.refresh_overview(interaction.guild)
        await panel.log_action(interaction.guild, incident, "deleted", interaction.user.display_name)

    @discord.ui.button(label="Cancel", style=discord.ButtonStyle.secondary, emoji="❌")
    async def cancel(self, interaction: discord.Interaction, button: discord.ui.Button):
        self.stop()
        await interaction.response.edit_message(embed=create_embed("Deletion Cancelled", "The incident was not deleted.", discord.Color.greyple()), view=None)

    async def on_timeout(self):
        for item in self.children: item.disabled = True
        try:
            if self.message: await self.message.edit(embed=create_embed("Deletion Timed Out", "No confirmation received. The incident was not deleted.", discord.Color.greyple()), view=self)
        except (discord.NotFound, discord.Forbidden): pass
        except Exception as e: print(f"Failed to edit delete confirmation on timeout: {e}")


# --- INCIDENT PICKER (/incident manage) ---
class IncidentSelect(discord.ui.Select):
    def __init__(self, bot_instance, incidents: list):
        options = [discord.SelectOption(label=truncate(f"#{i['id']} {i.get('title', '')}", 100), value=str(i["id"]),
                                        description=f"{i.get('status', '?').capitalize()} · {i.get('priority', '?').capitalize()} priority",
                                        emoji=STATUS_EMOJI.get(i.get("status"))) for i in incidents[:25]]
        super().__init__(placeholder="Choose an incident to manage…", options=options, min_values=1, max_values=1)
        self.bot = bot_instance

    async def callback(self, interaction: discord.Interaction):
        try: incident = self.bot.store.get_incident(interaction.guild.id, int(self.values[0]))
        except IncidentError as e: await send_embed_response(interaction, "Error", str(e), discord.Color.red()); return
        if incident.get("status") == "resolved":  # read-only card
            await interaction.response.send_message(embed=build_incident_embed(incident), ephemeral=True)
        else:
            await interaction.response.send_message(embed=build_incident_embed(incident), view=IncidentActionsView(self.bot), ephemeral=True)


class IncidentSelectView(discord.ui.View):
    """Ephemeral select menu listing up to 25 incidents."""
    def __init__(self, bot_instance, incidents: list):
        super().__init__(timeout=180)
        self.add_item(IncidentSelect(bot_instance, incidents))
