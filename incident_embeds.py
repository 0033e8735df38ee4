# incident_embeds.py

import re
import traceback
from datetime import datetime, timezone

import discord

from incident_store import PRIORITIES

# --- STYLE MAPS ---
STATUS_EMOJI = {"open": "🔴", "investigating": "🔍", "monitoring": "👀", "resolved": "✅"}
STATUS_COLOR = {
    "open": discord.Color.red(), "investigating": discord.Color.orange(),
    "monitoring": discord.Color.gold(), "resolved": discord.Color.green(),
}
PRIORITY_EMOJI = {"low": "🟢", "medium": "🟡", "high": "🟠", "critical": "🔥"}
PRIORITY_COLOR = {
    "low": discord.Color.green(), "medium": discord.Color.gold(),
    "high": discord.Color.orange(), "critical": discord.Color.dark_red(),
}

FIELD_VALUE_LIMIT = 1024
FOOTER_ID_PATTERN = re.compile(r"Incident ID: #(\d+)")


# --- GENERIC HELPERS ---
def create_embed(title: str = None, description: str = None, color: discord.Color = discord.Color.blurple()) -> discord.Embed:
    # Allows omitting title/description, defaults color
    return discord.Embed(title=title, description=str(description) if description is not None else None, color=color)


async def send_embed_response(interaction: discord.Interaction, title: str = None, description: str = None, color: discord.Color = discord.Color.blurple(), ephemeral: bool = True):
    # Sends embed responses for interactions, handles state
    embed = create_embed(title, description, color)
    try:
        if interaction.response.is_done():
            await interaction.followup.send(embed=embed, ephemeral=ephemeral)
        else:
            await interaction.response.send_message(embed=embed, ephemeral=ephemeral)
    except discord.NotFound: print(f"WARNING: Interaction not found sending '{title}'.")
    except discord.Forbidden: print(f"ERROR: Bot lacks permissions for embed response in {interaction.channel_id}.")
    except Exception as e: print(f"ERROR sending embed response: {type(e).__name__} - {e}"); traceback.print_exc()


def truncate(text: str, limit: int) -> str:
    text = str(text)
    return text if len(text) <= limit else text[:limit - 1] + "…"


def parse_timestamp(value):
    """ISO string -> aware datetime (None if missing or unparsable)."""
    if not value: return None
    try: dt = datetime.fromisoformat(value)
    except (TypeError, ValueError): return None
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def format_timestamp(value, style: str = "f") -> str:
    """Renders a stored timestamp as Discord timestamp markup."""
    dt = parse_timestamp(value)
    return discord.utils.format_dt(dt, style=style) if dt else "—"


def status_label(status: str) -> str:
    return f"{STATUS_EMOJI.get(status, '❔')} {str(status).capitalize()}"


def priority_label(priority: str) -> str:
    return f"{PRIORITY_EMOJI.get(priority, '❔')} {str(priority).capitalize()}"


def assignee_label(incident: dict) -> str:
    if incident.get("assignee_id"): return f"<@{incident['assignee_id']}>"
    return "Unassigned"


def parse_incident_id(embed: discord.Embed):
    """Reads the incident id back out of an incident embed footer."""
    if not embed or not embed.footer or not embed.footer.text: return None
    match = FOOTER_ID_PATTERN.search(embed.footer.text)
    return int(match.group(1)) if match else None


# --- INCIDENT EMBEDS ---
def build_incident_embed(incident: dict) -> discord.Embed:
    """Full incident card posted to the incident channel."""
    status = incident.get("status", "open")
    color = STATUS_COLOR["resolved"] if status == "resolved" else PRIORITY_COLOR.get(incident.get("priority"), discord.Color.red())
    embed = discord.Embed(title=truncate(f"🚨 {incident['title']}", 256), description=incident.get("description") or None, color=color)
    embed.add_field(name="Type", value=incident.get("type") or "—", inline=True)
    embed.add_field(name="Status", value=status_label(status), inline=True)
    embed.add_field(name="Priority", value=priority_label(incident.get("priority")), inline=True)
    embed.add_field(name="Assignee", value=assignee_label(incident), inline=True)
    embed.add_field(name="Reported", value=format_timestamp(incident.get("created_at")), inline=True)
    embed.add_field(name="Updated", value=format_timestamp(incident.get("updated_at"), "R"), inline=True)
    if incident.get("resolved_at"):
        embed.add_field(name="Resolved", value=format_timestamp(incident["resolved_at"]), inline=True)

    notes = incident.get("notes") or []
    if notes:
        lines = [f"**{n.get('author_name', 'Unknown')}** ({format_timestamp(n.get('created_at'), 'R')}): {n.get('text', '')}" for n in notes[-3:]]
        title = f"Notes ({len(notes)})" if len(notes) <= 3 else f"Latest Notes (3 of {len(notes)})"
        embed.add_field(name=title, value=truncate("\n".join(lines), FIELD_VALUE_LIMIT), inline=False)

    embed.set_footer(text=f"Incident ID: #{incident['id']} | Reported by {incident.get('reporter_name') or 'Unknown'}")
    created = parse_timestamp(incident.get("created_at"))
    if created: embed.timestamp = created
    return embed


def _overview_line(incident: dict) -> str:
    assignee = f" · {assignee_label(incident)}" if incident.get("assignee_id") else ""
    return f"{STATUS_EMOJI.get(incident.get('status'), '❔')} **#{incident['id']}** {truncate(incident.get('title', ''), 60)}{assignee}"


def _join_limited(lines: list, limit: int = FIELD_VALUE_LIMIT) -> str:
    """Joins lines, replacing whatever does not fit with an '...and N more' line."""
    out = []
    for index, line in enumerate(lines):
        more = f"…and {len(lines) - index} more"
        room = limit if index == len(lines) - 1 else limit - len(more) - 1  # keep space for the "more" line
        if len("\n".join(out + [line])) > room:
            out.append(more); break
        out.append(line)
    return "\n".join(out)


def build_overview_embed(guild_name: str, incidents: list) -> discord.Embed:
    """Summary of all unresolved incidents, grouped by priority."""
    open_incidents = [i for i in incidents if i.get("status") != "resolved"]
    if not open_incidents:
        embed = discord.Embed(title="📋 Incident Overview", description="No open incidents. ✅", color=discord.Color.green())
    else:
        top = max((i.get("priority") for i in open_incidents if i.get("priority") in PRIORITIES), key=PRIORITIES.index, default="medium")
        count = len(open_incidents)
        embed = discord.Embed(title="📋 Incident Overview", description=f"**{count}** open incident{'s' if count != 1 else ''}.", color=PRIORITY_COLOR[top])
        for priority in reversed(PRIORITIES):
            group = [i for i in open_incidents if i.get("priority") == priority]
            if group: embed.add_field(name=f"{priority_label(priority)} ({len(group)})", value=_join_limited([_overview_line(i) for i in group]), inline=False)
    embed.set_footer(text=f"{guild_name} Incident Panel")
    embed.timestamp = discord.utils.utcnow()
    return embed


def build_incident_list_embed(title: str, incidents: list) -> discord.Embed:
    embed = discord.Embed(title=title, color=discord.Color.blurple())
    if not incidents: embed.description = "No incidents found."; return embed
    lines = [f"{_overview_line(i)} · {priority_label(i.get('priority'))}" for i in incidents]
    embed.description = _join_limited(lines, 4000)
    embed.set_footer(text=f"{len(incidents)} incident(s)")
    return embed


def build_panel_embed(guild: discord.Guild = None) -> discord.Embed:
    embed = discord.Embed(title="Report an Incident", description="Click the button below to fill out the incident form.", color=discord.Color.red())
    if guild is not None:
        if guild.icon: embed.set_thumbnail(url=guild.icon.url)
        embed.set_footer(text=f"{guild.name} Incident Panel")
    return embed


def build_history_embed(incident: dict) -> discord.Embed:
    """Audit log of a single incident, newest entries last."""
    embed = discord.Embed(title=truncate(f"📜 History: #{incident['id']} {incident.get('title', '')}", 256), color=discord.Color.light_grey())
    entries = incident.get("history") or []
    lines = [f"{format_timestamp(e.get('at'), 'f')} **{e.get('action', '?')}** by {e.get('actor_name') or 'Unknown'}" + (f": {e['detail']}" if e.get("detail") else "") for e in entries]
    if len(lines) > 20: lines = [f"…{len(lines) - 20} older entries hidden"] + lines[-20:]
    embed.description = truncate("\n".join(lines) or "No history recorded.", 4000)
    return embed


def build_stats_embed(guild_name: str, stats: dict) -> discord.Embed:
    embed = discord.Embed(title=f"Incident Statistics: {guild_name}", color=discord.Color.light_grey())
    embed.add_field(name="Total Incidents", value=f"**{stats['total']}**", inline=True)
    embed.add_field(name="Currently Open", value=f"**{stats['open']}**", inline=True)
    embed.add_field(name="By Status", value="\n".join(f"{status_label(s)}: {n}" for s, n in stats["by_status"].items()), inline=False)
    embed.add_field(name="Open By Priority", value="\n".join(f"{priority_label(p)}: {n}" for p, n in reversed(list(stats["open_by_priority"].items()))), inline=False)
    return embed


def build_audit_embed(incident: dict, action: str, actor: str, detail: str = "") -> discord.Embed:
    """Short entry for the audit log channel."""
    color = {"created": discord.Color.red(), "deleted": discord.Color.dark_grey(), "resolved": discord.Color.green()}.get(action, discord.Color.blurple())
    embed = discord.Embed(title=f"Incident #{incident['id']} {action}", description=truncate(incident.get("title", ""), 256), color=color)
    embed.add_field(name="By", value=actor or "Unknown", inline=True)
    embed.add_field(name="Status", value=status_label(incident.get("status")), inline=True)
    if detail: embed.add_field(name="Details", value=truncate(detail, FIELD_VALUE_LIMIT), inline=False)
    embed.timestamp = discord.utils.utcnow()
    return embed
