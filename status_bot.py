# status_bot.py
"""Companion bot that keeps a status embed about the main incident bot up to date."""

import math
import os
import sys
import time
import traceback
from datetime import datetime, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import discord
from discord.ext import commands, tasks
from dotenv import load_dotenv

load_dotenv()

# --- CONFIG ---
DEFAULT_VERSION = "1.0.0"
DEFAULT_TIMEZONE = "Europe/Amsterdam"
DEFAULT_INTERVAL_MINUTES = 5
NO_ERROR = "No errors detected ✅"

PRESENCE_LABELS = {
    "online": "🟢 Online",
    "idle": "🟡 Idle",
    "dnd": "🔴 Do Not Disturb",
}
OFFLINE_LABEL = "⚫ Offline"
UNKNOWN_LABEL = "❓ Unknown"


def env_int(key: str, default=None):
    value = os.getenv(key)
    if not value: return default
    try: return int(value)
    except ValueError: print(f"WARNING: Invalid integer {value!r} for {key}, using {default}."); return default


def load_timezone(name: str):
    try: return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError): print(f"WARNING: Unknown timezone {name!r}, falling back to UTC."); return timezone.utc


# --- FORMATTING ---
def format_uptime(seconds: float) -> str:
    total = int(seconds)
    days, rest = divmod(total, 86400)
    hours, rest = divmod(rest, 3600)
    minutes, secs = divmod(rest, 60)
    return f"{days}d {hours}h {minutes}m {secs}s"


def presence_label(status) -> str:
    """Maps a discord.Status (or its string value) to a label. Anything unrecognised is offline."""
    if status is None: return UNKNOWN_LABEL
    return PRESENCE_LABELS.get(str(status), OFFLINE_LABEL)


def summarize_presence(guilds, main_bot_id: int):
    """Returns (presence label, server count) from the member cache.

    The server count is the number of guilds whose member cache contains the
    main bot. Both values are unknown when the bot is not cached anywhere.
    """
    members = [m for m in (g.get_member(main_bot_id) for g in guilds) if m is not None]
    if not members: return UNKNOWN_LABEL, "❓"
    return presence_label(members[0].status), str(len(members))


def build_status_embed(*, main_status: str, server_count: str, uptime: str, ping: str, version: str, last_error: str, updated_at: str) -> discord.Embed:
    color = 0x00FF00 if "🟢" in main_status else 0xFF0000
    embed = discord.Embed(title="📊 Bot Status Overview", color=color, timestamp=discord.utils.utcnow())
    embed.add_field(name="Main Bot", value=main_status, inline=True)
    embed.add_field(name="Main Bot Servers", value=server_count, inline=True)
    embed.add_field(name="Status Bot", value="🟢 Online", inline=True)
    embed.add_field(name="Status Bot Uptime", value=uptime, inline=True)
    embed.add_field(name="Ping", value=ping, inline=True)
    embed.add_field(name="Bot Version", value=version, inline=True)
    embed.add_field(name="Last Error", value=(last_error or NO_ERROR)[:1024], inline=False)
    embed.set_footer(text=f"Last update ({updated_at})")
    return embed


# --- BOT ---
class StatusBot(commands.Bot):
    def __init__(self, main_bot_id: int, channel_id: int, interval_minutes: int = DEFAULT_INTERVAL_MINUTES,
                 timezone_name: str = DEFAULT_TIMEZONE, version: str = DEFAULT_VERSION):
        intents = discord.Intents.default()
        intents.guilds = True; intents.presences = True; intents.members = True  # presence of the main bot lives on its Member objects
        super().__init__(command_prefix=commands.when_mentioned, intents=intents)
        self.main_bot_id = main_bot_id; self.channel_id = channel_id
        self.interval_minutes = interval_minutes; self.tz = load_timezone(timezone_name); self.version = version
        self.start_time = time.monotonic()
        self.last_error = NO_ERROR

    async def setup_hook(self):
        self.status_loop.change_interval(minutes=self.interval_minutes)
        self.status_loop.start()

    async def on_ready(self):
        print(f"✅ Status bot is online as {self.user}")
        try: await self.change_presence(status=discord.Status.online)
        except Exception as e: print(f"Error setting presence: {e}")

    async def on_error(self, event_method: str, *args, **kwargs):
        error = sys.exc_info()[1]
        print(f"Unhandled error in {event_method}: {error}"); traceback.print_exc()
        if error: self.last_error = str(error) or type(error).__name__

    def ping_text(self) -> str:
        return "❓" if math.isnan(self.latency) or math.isinf(self.latency) else f"{round(self.latency * 1000)}ms"

    async def get_status_channel(self):
        channel = self.get_channel(self.channel_id)
        if channel is None:
            try: channel = await self.fetch_channel(self.channel_id)
            except (discord.NotFound, discord.Forbidden): return None
        return channel

    async def resolve_uncached_main_bot(self):
        """Falls back to the API when no shared guild has the main bot cached.

        A user that exists but shares no guild with us is reported offline on
        zero servers. A failed lookup (bad MAIN_BOT_ID, API error) stays unknown.
        """
        if self.get_user(self.main_bot_id) is None:
            try: await self.fetch_user(self.main_bot_id)
            except discord.NotFound: print(f"❌ Main bot {self.main_bot_id} does not exist, check MAIN_BOT_ID."); return UNKNOWN_LABEL, "❓"
            except discord.HTTPException as e: print(f"❌ Could not fetch main bot: {e}"); return UNKNOWN_LABEL, "❓"
        return OFFLINE_LABEL, "0"

    async def build_current_embed(self) -> discord.Embed:
        main_status, server_count = summarize_presence(self.guilds, self.main_bot_id)
        if main_status == UNKNOWN_LABEL:
            main_status, server_count = await self.resolve_uncached_main_bot()
        return build_status_embed(
            main_status=main_status, server_count=server_count,
            uptime=format_uptime(time.monotonic() - self.start_time), ping=self.ping_text(),
            version=self.version, last_error=self.last_error,
            updated_at=datetime.now(self.tz).strftime("%d-%m-%Y %H:%M:%S"))

    async def update_status(self):
        """Edits our last status message in the channel, or sends a new one."""
        try:
            channel = await self.get_status_channel()
            if channel is None:
                print("❌ Status channel not found!"); return
            embed = await self.build_current_embed()
            last_message = None
            async for message in channel.history(limit=1): last_message = message
            if last_message is not None and last_message.author.id == self.user.id:
                await last_message.edit(embed=embed)
            else:
                await channel.send(embed=embed)
            print("✅ Status message updated")
        except Exception as e:
            print(f"❌ Error while updating status: {e}"); traceback.print_exc()
            self.last_error = str(e) or type(e).__name__

    @tasks.loop(minutes=DEFAULT_INTERVAL_MINUTES)
    async def status_loop(self):
        await self.update_status()

    @status_loop.before_loop
    async def before_status_loop(self):
        await self.wait_until_ready()


def main():
    token = os.getenv('STATUS_BOT_TOKEN') or os.getenv('DISCORD_TOKEN')
    main_bot_id = env_int('MAIN_BOT_ID'); channel_id = env_int('STATUS_CHANNEL_ID')
    if not token: print("CRITICAL ERROR: STATUS_BOT_TOKEN missing."); raise SystemExit(1)
    if not main_bot_id or not channel_id: print("CRITICAL ERROR: MAIN_BOT_ID and STATUS_CHANNEL_ID are required."); raise SystemExit(1)
    status_bot = StatusBot(main_bot_id, channel_id,
                           interval_minutes=env_int('STATUS_INTERVAL_MINUTES', DEFAULT_INTERVAL_MINUTES),
                           timezone_name=os.getenv('STATUS_TIMEZONE', DEFAULT_TIMEZONE),
                           version=os.getenv('BOT_VERSION', DEFAULT_VERSION))
    try:
        status_bot.run(token)
    except discord.errors.LoginFailure: print("CRITICAL ERROR: Login Failure - Improper token.")
    except discord.errors.PrivilegedIntentsRequired: print("CRITICAL ERROR: Privileged Intents Required - Check Developer Portal.")


if __name__ == "__main__":
    main()
