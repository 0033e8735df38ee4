# incident_store.py

import json
import os
import random
import traceback
from datetime import datetime, timezone

# --- CONSTANTS ---
STATUSES = ("open", "investigating", "monitoring", "resolved")
PRIORITIES = ("low", "medium", "high", "critical")
EDITABLE_FIELDS = ("type", "title", "description", "priority", "status")

# Max lengths for text fields (min is always 1 after stripping)
FIELD_LIMITS = {"type": 50, "title": 100, "description": 1000, "note": 500}
ID_RANGE = (100000, 999999)


# --- ERRORS ---
class IncidentError(Exception):
    """Base class for incident store errors. The message is shown to users."""


class IncidentNotFound(IncidentError):
    def __init__(self, incident_id):
        super().__init__(f"Incident #{incident_id} does not exist.")
        self.incident_id = incident_id


class InvalidIncidentField(IncidentError, ValueError):
    def __init__(self, field: str, message: str):
        super().__init__(message)
        self.field = field


class IncidentStateError(IncidentError):
    pass


# --- HELPERS ---
def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def normalize_status(value: str) -> str:
    """Case-insensitive status lookup, raises InvalidIncidentField."""
    status = (value or "").strip().lower()
    if status not in STATUSES:
        raise InvalidIncidentField("status", f"Invalid status `{value}`. Valid: {', '.join(STATUSES)}.")
    return status


def normalize_priority(value: str) -> str:
    """Case-insensitive priority lookup, raises InvalidIncidentField."""
    priority = (value or "").strip().lower()
    if priority not in PRIORITIES:
        raise InvalidIncidentField("priority", f"Invalid priority `{value}`. Valid: {', '.join(PRIORITIES)}.")
    return priority


def clean_text(field: str, value) -> str:
    """Strips and length-checks a free text field."""
    text = str(value or "").strip()
    limit = FIELD_LIMITS[field]
    if not text: raise InvalidIncidentField(field, f"{field.capitalize()} cannot be empty.")
    if len(text) > limit: raise InvalidIncidentField(field, f"{field.capitalize()} must be at most {limit} characters.")
    return text


def _validate_field(field: str, value):
    if field == "status": return normalize_status(value)
    if field == "priority": return normalize_priority(value)
    return clean_text(field, value)


# --- STORE ---
class IncidentStore:
    """JSON-file backed collection of incidents, grouped per guild.

    Each guild entry holds the incident list and a pointer to the last overview
    message sent for that guild. Every mutation is written to disk immediately
    and then reported to the update callback (used for the bot presence).
    """

    def __init__(self, path: str = "incidents.json"):
        self.path = path
        self.data = self._load()
        self._update_callback = None

    # --- persistence ---
    def _load(self) -> dict:
        if not os.path.exists(self.path):
            print(f"Info: {self.path} not found. Creating.")
            with open(self.path, 'w', encoding='utf-8') as f: json.dump({}, f)
            return {}
        try:
            if os.path.getsize(self.path) == 0: return {}  # Handle empty file
            with open(self.path, 'r', encoding='utf-8') as f: data = json.load(f)
        except ValueError:  # JSONDecodeError and UnicodeDecodeError
            print(f"ERROR: {self.path} corrupted. Fix/delete it. Starting with no incidents."); return {}
        except OSError as e:
            print(f"ERROR loading incidents: {e}"); traceback.print_exc(); return {}
        if not isinstance(data, dict):
            print(f"ERROR: {self.path} has unexpected format. Starting with no incidents."); return {}
        return data

    def save(self):
        """Writes all incidents to disk."""
        try:
            with open(self.path, 'w', encoding='utf-8') as f: json.dump(self.data, f, indent=4)
        except OSError as e:
            print(f"ERROR saving incidents: {e}"); traceback.print_exc()

    def set_update_callback(self, callback):
        """Registers a no-argument callable run after every change."""
        self._update_callback = callback

    def _commit(self):
        self.save()
        if self._update_callback:
            try: self._update_callback()
            except Exception as e: print(f"ERROR in incident update callback: {e}"); traceback.print_exc()

    def _guild(self, guild_id: int) -> dict:
        guild_data = self.data.get(str(guild_id))
        if not isinstance(guild_data, dict):
            guild_data = {"incidents": [], "overview_message": None}
            self.data[str(guild_id)] = guild_data
        if not isinstance(guild_data.get("incidents"), list):
            print(f"WARNING: Incident list for guild {guild_id} is malformed, resetting it."); guild_data["incidents"] = []
        if not all(isinstance(i, dict) for i in guild_data["incidents"]):
            guild_data["incidents"][:] = [i for i in guild_data["incidents"] if isinstance(i, dict)]
        if not isinstance(guild_data.get("overview_message"), dict): guild_data["overview_message"] = None
        return guild_data

    def _incident_lists(self) -> list:
        """Incident lists of every guild, repairing malformed entries on the way."""
        return [self._guild(guild_id)["incidents"] for guild_id in list(self.data)]

    def _all_ids(self) -> set:
        return {inc.get("id") for incidents in self._incident_lists() for inc in incidents}

    def _new_id(self) -> int:
        used = self._all_ids()
        for _ in range(1000):
            candidate = random.randint(*ID_RANGE)
            if candidate not in used: return candidate
        raise IncidentError("Could not allocate a new incident ID.")

    @staticmethod
    def _record(incident: dict, action: str, actor_id, actor_name, detail: str = ""):
        now = utc_now_iso()
        incident.setdefault("history", []).append({"action": action, "actor_id": actor_id, "actor_name": actor_name, "detail": detail, "at": now})
        incident["updated_at"] = now

    # --- queries ---
    def get_incident(self, guild_id: int, incident_id: int) -> dict:
        for incident in self._guild(guild_id)["incidents"]:
            if incident.get("id") == incident_id: return incident
        raise IncidentNotFound(incident_id)

    def list_incidents(self, guild_id: int, status: str = None, include_resolved: bool = True) -> list:
        """Incidents sorted by priority (critical first), newest first within a priority."""
        incidents = self._guild(guild_id)["incidents"]
        if status:
            wanted = normalize_status(status)
            incidents = [i for i in incidents if i.get("status") == wanted]
        elif not include_resolved:
            incidents = [i for i in incidents if i.get("status") != "resolved"]
        by_newest = sorted(incidents, key=lambda i: i.get("created_at") or "", reverse=True)
        return sorted(by_newest, key=lambda i: PRIORITIES.index(i["priority"]) if i.get("priority") in PRIORITIES else 0, reverse=True)

    def count_incidents(self, guild_id: int = None, open_only: bool = True) -> int:
        if guild_id is None:
            groups = self._incident_lists()
        else:
            groups = [self._guild(guild_id)["incidents"]]
        return sum(1 for group in groups for i in group if not open_only or i.get("status") != "resolved")

    def stats(self, guild_id: int) -> dict:
        incidents = self._guild(guild_id)["incidents"]
        by_status = {s: 0 for s in STATUSES}; by_priority = {p: 0 for p in PRIORITIES}
        for incident in incidents:
            if incident.get("status") in by_status: by_status[incident["status"]] += 1
            if incident.get("priority") in by_priority and incident.get("status") != "resolved": by_priority[incident["priority"]] += 1
        return {"total": len(incidents), "open": len(incidents) - by_status["resolved"], "by_status": by_status, "open_by_priority": by_priority}

    # --- mutations ---
    def add_incident(self, guild_id: int, *, incident_type: str, title: str, description: str, reporter_id: int, reporter_name: str, priority: str = "medium") -> dict:
        """Creates a new open incident and returns it."""
        now = utc_now_iso()
        incident = {
            "id": self._new_id(), "guild_id": guild_id,
            "type": clean_text("type", incident_type), "title": clean_text("title", title),
            "description": clean_text("description", description),
            "status": "open", "priority": normalize_priority(priority),
            "reporter_id": reporter_id, "reporter_name": reporter_name,
            "assignee_id": None, "assignee_name": None,
            "notes": [], "history": [],
            "created_at": now, "updated_at": now, "resolved_at": None,
            "message": None,
        }
        self._record(incident, "created", reporter_id, reporter_name, f"Reported as {incident['priority']} priority.")
        self._guild(guild_id)["incidents"].append(incident)
        self._commit()
        return incident

    def update_incident(self, guild_id: int, incident_id: int, *, actor_id, actor_name, **fields) -> dict:
        """Edits any of type/title/description/priority/status in one audit entry."""
        unknown = set(fields) - set(EDITABLE_FIELDS)
        if unknown: raise InvalidIncidentField(sorted(unknown)[0], f"Cannot edit field(s): {', '.join(sorted(unknown))}.")
        incident = self.get_incident(guild_id, incident_id)
        cleaned = {k: _validate_field(k, v) for k, v in fields.items() if v is not None}  # validate all before touching anything
        changed = [k for k, v in cleaned.items() if incident.get(k) != v]
        if not changed: return incident
        for key in changed: incident[key] = cleaned[key]
        if "status" in changed: self._apply_resolution(incident)
        self._record(incident, "edited", actor_id, actor_name, "Changed " + ", ".join(changed) + ".")
        self._commit()
        return incident

    @staticmethod
    def _apply_resolution(incident: dict):
        if incident["status"] == "resolved": incident["resolved_at"] = utc_now_iso()
        else: incident["resolved_at"] = None

    def set_status(self, guild_id: int, incident_id: int, status: str, *, actor_id, actor_name) -> dict:
        incident = self.get_incident(guild_id, incident_id)
        new_status = normalize_status(status)
        old_status = incident.get("status")
        if old_status == new_status: return incident
        incident["status"] = new_status
        self._apply_resolution(incident)
        self._record(incident, "status", actor_id, actor_name, f"{old_status} → {new_status}")
        self._commit()
        return incident

    def resolve_incident(self, guild_id: int, incident_id: int, *, actor_id, actor_name) -> dict:
        incident = self.get_incident(guild_id, incident_id)
        if incident.get("status") == "resolved": raise IncidentStateError(f"Incident #{incident_id} is already resolved.")
        return self.set_status(guild_id, incident_id, "resolved", actor_id=actor_id, actor_name=actor_name)

    def reopen_incident(self, guild_id: int, incident_id: int, *, actor_id, actor_name) -> dict:
        incident = self.get_incident(guild_id, incident_id)
        if incident.get("status") != "resolved": raise IncidentStateError(f"Incident #{incident_id} is not resolved.")
        return self.set_status(guild_id, incident_id, "open", actor_id=actor_id, actor_name=actor_name)

    def assign_incident(self, guild_id: int, incident_id: int, assignee_id, assignee_name, *, actor_id, actor_name) -> dict:
        """Sets the assignee. Passing None as assignee_id unassigns."""
        incident = self.get_incident(guild_id, incident_id)
        if assignee_id is None: assignee_name = None
        if incident.get("assignee_id") == assignee_id: return incident
        incident["assignee_id"] = assignee_id; incident["assignee_name"] = assignee_name
        detail = f"Assigned to {assignee_name}." if assignee_id is not None else "Unassigned."
        self._record(incident, "assigned", actor_id, actor_name, detail)
        self._commit()
        return incident

    def add_note(self, guild_id: int, incident_id: int, text: str, *, actor_id, actor_name) -> dict:
        incident = self.get_incident(guild_id, incident_id)
        note = clean_text("note", text)
        incident.setdefault("notes", []).append({"author_id": actor_id, "author_name": actor_name, "text": note, "created_at": utc_now_iso()})
        self._record(incident, "note", actor_id, actor_name, note[:100])
        self._commit()
        return incident

    def remove_incident(self, guild_id: int, incident_id: int) -> dict:
        """Deletes an incident and returns the removed record."""
        incidents = self._guild(guild_id)["incidents"]
        for index, incident in enumerate(incidents):
            if incident.get("id") == incident_id:
                removed = incidents.pop(index)
                self._commit()
                return removed
        raise IncidentNotFound(incident_id)

    def set_incident_message(self, guild_id: int, incident_id: int, channel_id, message_id):
        """Remembers where the incident embed lives. Not an audited change."""
        incident = self.get_incident(guild_id, incident_id)
        incident["message"] = {"channel_id": channel_id, "message_id": message_id} if message_id else None
        self.save()

    def get_overview_message(self, guild_id: int):
        return self._guild(guild_id).get("overview_message")

    def set_overview_message(self, guild_id: int, channel_id, message_id):
        self._guild(guild_id)["overview_message"] = {"channel_id": channel_id, "message_id": message_id} if message_id else None
        self.save()
