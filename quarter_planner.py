"""
Quarter Planner
Plans team work per fiscal quarter: member capacity, ICE-prioritised tasks,
named plan variants with planned/backlog partitions, and capacity utilisation.

Features:
  - Capacity per member per quarter, summed per team and per role
  - Express (single number) and detailed (per-role) task estimates
  - Plan variants per team / quarter / mode with one main variant
  - Drag-style moves between planned and backlog, kept per variant
  - Utilisation tiers: nominal, near capacity, over capacity
  - Excel workbook storage, template generation, PNG charts and summary
"""

import argparse
import io
import itertools
import logging
import math
import os
import re
import sys
import uuid
from contextlib import contextmanager
from datetime import datetime

import matplotlib
matplotlib.use("Agg")
import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
from openpyxl import Workbook
from openpyxl.styles import Font, PatternFill, Alignment, Border, Side
from openpyxl.utils.exceptions import IllegalCharacterError


logger = logging.getLogger(__name__)


# ── Constants ────────────────────────────────────────────────────────────────

_DIR = os.path.dirname(os.path.abspath(__file__))
DEFAULT_INPUT = os.path.join(_DIR, "planning_data.xlsx")
DEFAULT_OUTDIR = os.path.join(_DIR, "output")

DEFAULT_MEMBER_CAPACITY = 2     # person-sprints per quarter
DEFAULT_ICE = 5
ICE_MIN, ICE_MAX = 1, 10

MODE_EXPRESS = "express"
MODE_DETAILED = "detailed"
MODES = [MODE_EXPRESS, MODE_DETAILED]

MAIN_VARIANT_NAME = "Основной"
PLANNED_CONTAINER = "planned-tasks"
BACKLOG_CONTAINER = "backlog-tasks"
CONTAINERS = (PLANNED_CONTAINER, BACKLOG_CONTAINER)
VIRTUAL_ID_SEPARATOR = "-variant-"

NEAR_CAPACITY_PCT = 80
OVER_CAPACITY_PCT = 100
TIER_NOMINAL = "nominal"
TIER_NEAR = "near capacity"
TIER_OVER = "over capacity"
TIER_UNCONFIGURED = "unconfigured"

TEAM_COLORS = [
    "#3B82F6",  # blue
    "#10B981",  # green
    "#F59E0B",  # yellow
    "#EF4444",  # red
    "#8B5CF6",  # purple
    "#06B6D4",  # cyan
    "#F97316",  # orange
    "#84CC16",  # lime
]

DEFAULT_QUARTERS = [
    {"name": "Q1'25", "year": 2025, "quarter": 1},
    {"name": "Q2'25", "year": 2025, "quarter": 2},
    {"name": "Q3'25", "year": 2025, "quarter": 3},
    {"name": "Q4'25", "year": 2025, "quarter": 4},
]

TIER_COLORS = {
    TIER_NOMINAL: "#43A047",
    TIER_NEAR: "#FB8C00",
    TIER_OVER: "#E53935",
    TIER_UNCONFIGURED: "#B0BEC5",
}

# Capacity tables: collection -> (owner key, other key)
CAPACITY_KEYS = {
    "member_capacities": ("member_id", "quarter_id"),
    "team_capacities": ("team_id", "quarter_id"),
    "task_role_capacities": ("task_id", "role_id"),
}

# Fields a task shares across plan variants; the rest is per-variant planning state.
PLANNING_FIELDS = ("is_planned", "quarter_id", "plan_variant_id")

TASK_DEFAULTS = {
    "description": "",
    "quarter_id": None,
    "plan_variant_id": None,
    "is_planned": False,
    "impact": DEFAULT_ICE,
    "confidence": DEFAULT_ICE,
    "ease": DEFAULT_ICE,
    "express_estimate": None,
}

# Workbook layout: collection -> (sheet name, [(header, key, kind), ...]).
# Kinds prefixed "opt", plus "text", "bool" and "datetime", may be left blank.
_TIMESTAMPS = [("Created At", "created_at", "datetime"), ("Updated At", "updated_at", "datetime")]
SHEETS = {
    "teams": ("Teams", [
        ("ID", "id", "id"), ("Name", "name", "str"), ("Color", "color", "str"),
    ] + _TIMESTAMPS),
    "roles": ("Roles", [
        ("ID", "id", "id"), ("Name", "name", "str"), ("Description", "description", "optstr"),
    ] + _TIMESTAMPS),
    "quarters": ("Quarters", [
        ("ID", "id", "id"), ("Name", "name", "str"), ("Year", "year", "int"),
        ("Quarter", "quarter", "int"),
    ] + _TIMESTAMPS),
    "members": ("Members", [
        ("ID", "id", "id"), ("Name", "name", "str"), ("Email", "email", "optstr"),
        ("Team ID", "team_id", "id"), ("Role ID", "role_id", "id"),
    ] + _TIMESTAMPS),
    "member_capacities": ("Member Capacity", [
        ("ID", "id", "id"), ("Member ID", "member_id", "id"),
        ("Quarter ID", "quarter_id", "id"), ("Capacity", "capacity", "float"),
    ] + _TIMESTAMPS),
    "team_capacities": ("Team Capacity", [
        ("ID", "id", "id"), ("Team ID", "team_id", "id"),
        ("Quarter ID", "quarter_id", "id"), ("Capacity", "capacity", "float"),
    ] + _TIMESTAMPS),
    "plan_variants": ("Plan Variants", [
        ("ID", "id", "id"), ("Name", "name", "str"), ("Team ID", "team_id", "id"),
        ("Quarter ID", "quarter_id", "id"), ("Express", "is_express", "bool"),
        ("Main", "is_main", "bool"),
    ] + _TIMESTAMPS),
    "tasks": ("Tasks", [
        ("ID", "id", "id"), ("Title", "title", "str"), ("Description", "description", "text"),
        ("Team ID", "team_id", "id"), ("Quarter ID", "quarter_id", "optid"),
        ("Plan Variant ID", "plan_variant_id", "optid"), ("Planned", "is_planned", "bool"),
        ("Impact", "impact", "int"), ("Confidence", "confidence", "int"), ("Ease", "ease", "int"),
        ("Express Estimate", "express_estimate", "optfloat"),
    ] + _TIMESTAMPS),
    "task_role_capacities": ("Task Role Capacity", [
        ("ID", "id", "id"), ("Task ID", "task_id", "id"), ("Role ID", "role_id", "id"),
        ("Capacity", "capacity", "float"),
    ] + _TIMESTAMPS),
    "task_variant_states": ("Variant States", [
        ("ID", "id", "id"), ("Task ID", "task_id", "id"), ("Variant ID", "variant_id", "id"),
        ("Planned", "is_planned", "bool"), ("Quarter ID", "quarter_id", "optid"),
    ] + _TIMESTAMPS),
}
COLLECTIONS = list(SHEETS)
_OPTIONAL_KINDS = {"optid", "optstr", "optfloat", "text", "bool", "datetime"}

STYLE = {
    "font_family": ["Segoe UI", "DejaVu Sans"],
    "title_size": 18,
    "subtitle_size": 13,
    "label_size": 9.5,
    "tick_size": 8.5,
    "small_size": 7.5,
    "bg_color": "#FAFAFA",
    "panel_bg": "#FFFFFF",
    "text_primary": "#1A1A2E",
    "text_secondary": "#555555",
    "text_muted": "#999999",
    "grid_color": "#E0E0E0",
    "available_color": "#CFD8DC",
    "capacity_line_color": "#1A1A2E",
    "dpi": 180,
}


# ── Errors ───────────────────────────────────────────────────────────────────

class PlannerError(Exception):
    """Base class for every error raised by the planner."""


class ValidationError(PlannerError):
    """Input rejected before any write was attempted."""

    def __init__(self, errors):
        if isinstance(errors, str):
            errors = [errors]
        self.errors = list(errors)
        super().__init__("; ".join(self.errors))


class ReferentialIntegrityError(PlannerError):
    """Deletion blocked because other records still reference the entity."""


class StoreError(PlannerError):
    """The entity store could not read or persist a change."""


# ── Helpers ──────────────────────────────────────────────────────────────────

def clean_str(val):
    """Return stripped string or empty string for NaN/None."""
    if val is None or (isinstance(val, float) and math.isnan(val)) or val is pd.NaT:
        return ""
    return str(val).strip()


def clean_id(val):
    """Like clean_str, but whole floats typed into an ID cell lose their '.0'."""
    if isinstance(val, float) and not math.isnan(val) and val.is_integer():
        val = int(val)
    return clean_str(val)


def parse_bool(val):
    """Interpret Excel booleans, 1/0 and yes/no strings. Blank is False."""
    if isinstance(val, (bool, np.bool_)):
        return bool(val)
    if val is None or (not isinstance(val, str) and pd.isna(val)):
        return False
    if isinstance(val, (int, float)):
        return val != 0
    return clean_str(val).lower() in ("true", "yes", "y", "1", "x")


def _is_blank(val):
    return val is None or (not isinstance(val, (str, bool)) and pd.isna(val)) or \
        (isinstance(val, str) and not val.strip())


def parse_cell(val, kind):
    """Convert a workbook cell to the Python value of the given column kind."""
    if kind == "bool":
        return parse_bool(val)
    if _is_blank(val):
        return {"str": "", "text": "", "float": 0.0, "id": ""}.get(kind)
    if kind == "id" or kind == "optid":
        return clean_id(val)
    if kind in ("str", "optstr", "text"):
        return clean_str(val)
    if kind == "int":
        number = float(val)
        if not number.is_integer():
            raise ValueError(f"expected a whole number, got {val!r}")
        return int(number)
    if kind in ("float", "optfloat"):
        return float(val)
    if kind == "datetime":
        if isinstance(val, pd.Timestamp):
            return val.to_pydatetime()
        if isinstance(val, datetime):
            return val
        return pd.to_datetime(val).to_pydatetime()
    raise ValueError(f"unknown column kind {kind!r}")


def normalize_columns(df, expected):
    """Rename columns case-insensitively to their expected spelling. Returns missing names."""
    df.columns = [str(c).strip() for c in df.columns]
    lookup = {c.lower(): c for c in expected}
    df.rename(columns={c: lookup[c.lower()] for c in df.columns if c.lower() in lookup},
              inplace=True)
    return set(expected) - set(df.columns)


def quarter_label(year, quarter):
    """Return "Q1'25" style label."""
    return f"Q{quarter}'{year % 100:02d}"


def quarter_sort_key(quarter):
    return (quarter.get("year") or 0, quarter.get("quarter") or 0)


def ice_score(task):
    """Impact x Confidence x Ease."""
    return (task.get("impact") or 0) * (task.get("confidence") or 0) * (task.get("ease") or 0)


def virtual_task_id(base_task_id, variant_id):
    return f"{base_task_id}{VIRTUAL_ID_SEPARATOR}{variant_id}"


def split_virtual_id(task_id):
    """Return (base task id, variant id or None) for a real or virtual task id."""
    base, sep, variant_id = task_id.partition(VIRTUAL_ID_SEPARATOR)
    return base, (variant_id if sep else None)


def base_task_id(task):
    """Id of the persisted task behind a real or projected row."""
    return task.get("base_task_id") or split_virtual_id(task["id"])[0]


def find_by_ref(rows, ref):
    """Find a row by exact id, else by case-insensitive name/title."""
    if ref is None:
        return None
    for row in rows:
        if row["id"] == ref:
            return row
    wanted = clean_str(ref).lower()
    for row in rows:
        if clean_str(row.get("name") or row.get("title")).lower() == wanted:
            return row
    return None


def _mode_is_express(mode):
    if mode not in MODES:
        raise ValueError(f"Unknown planning mode {mode!r}. Valid: {', '.join(MODES)}")
    return mode == MODE_EXPRESS


class _TeeWriter:
    """Write to two streams simultaneously (for summary.txt capture)."""
    def __init__(self, a, b):
        self.a, self.b = a, b
    def write(self, data):
        self.a.write(data)
        self.b.write(data)
    def flush(self):
        self.a.flush()
        self.b.flush()


# ── Entity Store ─────────────────────────────────────────────────────────────

class EntityStore:
    """In-memory entity collections with atomic, versioned writes.

    Every write goes through ``batch()``: changes are staged on a copy of the
    collections and committed with a single ``_persist`` call. A failing
    persist raises StoreError and leaves the committed snapshot untouched.
    Subclasses persist somewhere by overriding ``_persist``.
    """

    def __init__(self, data=None, id_factory=None):
        data = data or {}
        self._data = {name: [dict(row) for row in data.get(name, [])] for name in COLLECTIONS}
        self._staged = None
        self._cache = {}
        self._id_factory = id_factory or (lambda: uuid.uuid4().hex[:12])
        self.version = 0

    def _rows(self, collection):
        if collection not in SHEETS:
            raise KeyError(f"Unknown collection {collection!r}")
        return (self._staged if self._staged is not None else self._data)[collection]

    def get_all(self, collection):
        return [dict(row) for row in self._rows(collection)]

    def get(self, collection, entity_id):
        for row in self._rows(collection):
            if row["id"] == entity_id:
                return dict(row)
        return None

    def snapshot(self):
        return {name: self.get_all(name) for name in COLLECTIONS}

    def cached(self, key, build):
        """Memoise a derived view until the next commit. Staged reads are never cached."""
        if self._staged is not None:
            return build()
        hit = self._cache.get(key)
        if hit is None or hit[0] != self.version:
            hit = (self.version, build())
            self._cache[key] = hit
        return hit[1]

    @contextmanager
    def batch(self):
        if self._staged is not None:
            yield self._staged
            return
        self._staged = {name: list(rows) for name, rows in self._data.items()}
        try:
            yield self._staged
            staged = self._staged
            self._persist(staged)
            self._data = staged
            self.version += 1
        finally:
            self._staged = None

    def _persist(self, data):
        pass

    def create(self, collection, data):
        now = datetime.now()
        entity = dict(data)
        entity["id"] = entity.get("id") or self._id_factory()
        entity.setdefault("created_at", now)
        entity["updated_at"] = now
        with self.batch() as staged:
            rows = staged[collection]
            if any(row["id"] == entity["id"] for row in rows):
                raise StoreError(f"{collection}: id {entity['id']!r} already exists")
            rows.append(entity)
        return dict(entity)

    def update(self, collection, entity):
        with self.batch() as staged:
            rows = staged[collection]
            for idx, row in enumerate(rows):
                if row["id"] == entity["id"]:
                    updated = {**row, **entity, "created_at": row.get("created_at"),
                               "updated_at": datetime.now()}
                    rows[idx] = updated
                    break
            else:
                raise StoreError(f"{collection}: no record with id {entity['id']!r}")
        return dict(updated)

    def delete(self, collection, ids):
        """Delete one id or a list of ids. Returns the number of rows removed."""
        ids = {ids} if isinstance(ids, str) else set(ids)
        with self.batch() as staged:
            before = len(staged[collection])
            staged[collection] = [row for row in staged[collection] if row["id"] not in ids]
            removed = before - len(staged[collection])
        return removed

    def upsert_capacity(self, collection, owner_id, other_id, capacity):
        """Create or update the single capacity row for (owner, other)."""
        owner_key, other_key = CAPACITY_KEYS[collection]
        with self.batch():
            for row in self._rows(collection):
                if row[owner_key] == owner_id and row[other_key] == other_id:
                    return self.update(collection, {"id": row["id"], "capacity": capacity})
            return self.create(collection, {owner_key: owner_id, other_key: other_id,
                                            "capacity": capacity})

    def upsert_variant_state(self, task_id, variant_id, is_planned, quarter_id):
        """Record the planning state of a task inside one plan variant."""
        with self.batch():
            changes = {"is_planned": bool(is_planned),
                       "quarter_id": quarter_id if is_planned else None}
            for row in self._rows("task_variant_states"):
                if row["task_id"] == task_id and row["variant_id"] == variant_id:
                    return self.update("task_variant_states", {"id": row["id"], **changes})
            return self.create("task_variant_states",
                               {"task_id": task_id, "variant_id": variant_id, **changes})


class WorkbookStore(EntityStore):
    """Entity store persisted to an Excel workbook, one sheet per collection."""

    def __init__(self, path, id_factory=None):
        self.path = path
        self.load_warnings = []
        data = {}
        if os.path.exists(path):
            data, self.load_warnings = load_workbook_data(path)
        super().__init__(data, id_factory)

    def _persist(self, data):
        try:
            save_workbook_data(data, self.path)
        except (OSError, IllegalCharacterError) as e:
            raise StoreError(f"Could not write {self.path}: {e}") from e


# ── Workbook I/O ─────────────────────────────────────────────────────────────

_HEADER_FONT = Font(bold=True, color="FFFFFF", size=11)
_HEADER_FILL = PatternFill(start_color="2E3B4E", end_color="2E3B4E", fill_type="solid")
_THIN_BORDER = Border(
    left=Side(style="thin"), right=Side(style="thin"),
    top=Side(style="thin"), bottom=Side(style="thin"),
)


def _style_sheet(ws, columns):
    for cell in ws[1]:
        cell.font = _HEADER_FONT
        cell.fill = _HEADER_FILL
        cell.alignment = Alignment(horizontal="center", vertical="center")
        cell.border = _THIN_BORDER
    for row in ws.iter_rows(min_row=2, max_row=ws.max_row):
        for cell in row:
            cell.border = _THIN_BORDER
            cell.alignment = Alignment(vertical="center")
    for idx, (header, key, kind) in enumerate(columns):
        letter = ws.cell(row=1, column=idx + 1).column_letter
        if kind == "datetime":
            width = 19
        elif key in ("title", "description", "name"):
            width = 35 if key != "name" else 22
        else:
            width = max(10, len(header) + 4)
        ws.column_dimensions[letter].width = width
    ws.freeze_panes = "A2"


def save_workbook_data(data, filepath):
    """Write every collection to its sheet, replacing the file."""
    wb = Workbook()
    wb.remove(wb.active)
    for collection, (sheet_name, columns) in SHEETS.items():
        ws = wb.create_sheet(sheet_name)
        ws.append([header for header, _, _ in columns])
        for row in data.get(collection, []):
            ws.append([row.get(key) for _, key, _ in columns])
        _style_sheet(ws, columns)
    directory = os.path.dirname(filepath)
    if directory:
        os.makedirs(directory, exist_ok=True)
    wb.save(filepath)


def load_workbook_data(filepath):
    """Load every collection from the workbook. Returns (data, warnings)."""
    try:
        sheets = pd.read_excel(filepath, sheet_name=None, dtype=object)
    except Exception as e:
        raise StoreError(f"Could not read workbook {filepath}: {e}") from e

    data, warnings = {}, []
    lowered = {name.strip().lower(): name for name in sheets}
    for collection, (sheet_name, columns) in SHEETS.items():
        data[collection] = []
        actual = lowered.get(sheet_name.lower())
        if actual is None:
            warnings.append(f"Sheet '{sheet_name}' not found; starting with no {collection.replace('_', ' ')}.")
            continue
        df = sheets[actual]
        if df.empty:
            continue
        headers = [header for header, _, _ in columns]
        missing = normalize_columns(df, headers)
        required_missing = {h for h, _, kind in columns if h in missing and kind not in _OPTIONAL_KINDS}
        if required_missing:
            warnings.append(f"{sheet_name} sheet is missing column(s): {', '.join(sorted(required_missing))}. "
                            f"Found: {', '.join(df.columns)}")
            continue
        seen = set()
        for idx, raw in df.iterrows():
            row_num = idx + 2
            if _is_blank(raw.get("ID")):
                continue  # skip blank rows
            try:
                record = {key: parse_cell(raw.get(header), kind) for header, key, kind in columns}
            except (ValueError, TypeError) as e:
                warnings.append(f"{sheet_name} row {row_num}: {e}, skipping.")
                continue
            if record["id"] in seen:
                warnings.append(f"{sheet_name} row {row_num}: duplicate ID '{record['id']}', skipping.")
                continue
            seen.add(record["id"])
            data[collection].append(record)
    return data, warnings


# ── Catalog: Teams, Roles, Quarters, Members ─────────────────────────────────

_HEX_RE = re.compile(r"^#[0-9A-Fa-f]{6}$")


def create_team(store, name, color=None):
    name = clean_str(name)
    if not name:
        raise ValidationError("Team name is required.")
    if color is None:
        color = TEAM_COLORS[len(store.get_all("teams")) % len(TEAM_COLORS)]
    if not _HEX_RE.match(color):
        raise ValidationError(f"Team color '{color}' is not a valid hex code (e.g. #3B82F6).")
    return store.create("teams", {"name": name, "color": color})


def update_team(store, team):
    if "name" in team and not clean_str(team["name"]):
        raise ValidationError("Team name is required.")
    if "color" in team and not _HEX_RE.match(team["color"] or ""):
        raise ValidationError(f"Team color '{team['color']}' is not a valid hex code (e.g. #3B82F6).")
    return store.update("teams", team)


def delete_team(store, team_id):
    """Delete a team. Blocked while it still has members."""
    members = [m for m in store.get_all("members") if m["team_id"] == team_id]
    if members:
        team = store.get("teams", team_id) or {"name": team_id}
        raise ReferentialIntegrityError(
            f"Team '{team['name']}' still has {len(members)} member(s); move or remove them first.")
    store.delete("teams", team_id)


def create_role(store, name, description=None):
    name = clean_str(name)
    if not name:
        raise ValidationError("Role name is required.")
    return store.create("roles", {"name": name, "description": clean_str(description) or None})


def update_role(store, role):
    if "name" in role and not clean_str(role["name"]):
        raise ValidationError("Role name is required.")
    return store.update("roles", role)


def delete_role(store, role_id):
    """Delete a role. Blocked while any member holds it."""
    holders = [m["name"] for m in store.get_all("members") if m["role_id"] == role_id]
    if holders:
        role = store.get("roles", role_id) or {"name": role_id}
        raise ReferentialIntegrityError(
            f"Role '{role['name']}' is used by {', '.join(holders)}; reassign them first.")
    store.delete("roles", role_id)


def _validate_quarter(name, year, quarter):
    errors = []
    if not isinstance(year, int) or isinstance(year, bool) or year < 1:
        errors.append(f"Quarter year must be a positive whole number (got {year!r}).")
    if quarter not in (1, 2, 3, 4):
        errors.append(f"Quarter number must be 1-4 (got {quarter!r}).")
    if name is not None and not clean_str(name):
        errors.append("Quarter name is required.")
    if errors:
        raise ValidationError(errors)


def create_quarter(store, year, quarter, name=None):
    """Create a quarter and a default capacity row for every existing member."""
    _validate_quarter(name, year, quarter)
    name = clean_str(name) or quarter_label(year, quarter)
    with store.batch():
        created = store.create("quarters", {"name": name, "year": year, "quarter": quarter})
        for member in store.get_all("members"):
            store.upsert_capacity("member_capacities", member["id"], created["id"],
                                  DEFAULT_MEMBER_CAPACITY)
    return created


def update_quarter(store, quarter):
    existing = store.get("quarters", quarter["id"])
    if existing is None:
        raise ValidationError(f"Quarter '{quarter['id']}' does not exist.")
    merged = {**existing, **quarter}
    _validate_quarter(merged["name"], merged["year"], merged["quarter"])
    return store.update("quarters", quarter)


def _validate_member(store, member):
    errors = []
    if not clean_str(member.get("name")):
        errors.append("Member name is required.")
    if store.get("teams", member.get("team_id")) is None:
        errors.append(f"Team '{member.get('team_id')}' does not exist.")
    if store.get("roles", member.get("role_id")) is None:
        errors.append(f"Role '{member.get('role_id')}' does not exist.")
    if errors:
        raise ValidationError(errors)


def create_member(store, name, team_id, role_id, email=None):
    """Create a member and a default capacity row for every existing quarter."""
    member = {"name": clean_str(name), "email": clean_str(email) or None,
              "team_id": team_id, "role_id": role_id}
    _validate_member(store, member)
    with store.batch():
        created = store.create("members", member)
        for quarter in store.get_all("quarters"):
            store.upsert_capacity("member_capacities", created["id"], quarter["id"],
                                  DEFAULT_MEMBER_CAPACITY)
    return created


def update_member(store, member):
    existing = store.get("members", member["id"])
    if existing is None:
        raise ValidationError(f"Member '{member['id']}' does not exist.")
    _validate_member(store, {**existing, **member})
    return store.update("members", member)


def delete_member(store, member_id):
    """Delete a member together with its capacity rows."""
    with store.batch():
        store.delete("members", member_id)
        capacity_ids = [mc["id"] for mc in store.get_all("member_capacities")
                        if mc["member_id"] == member_id]
        store.delete("member_capacities", capacity_ids)
    logger.debug("Deleted member %s and %d capacity row(s)", member_id, len(capacity_ids))


# ── Tasks ────────────────────────────────────────────────────────────────────

def validate_task(task, store=None):
    """Raise ValidationError listing every problem with a task record."""
    errors = []
    if not clean_str(task.get("title")):
        errors.append("Task title is required.")
    if not clean_str(task.get("team_id")):
        errors.append("Task team is required.")
    elif store is not None and store.get("teams", task["team_id"]) is None:
        errors.append(f"Team '{task['team_id']}' does not exist.")
    for key in ("impact", "confidence", "ease"):
        value = task.get(key)
        if not isinstance(value, int) or isinstance(value, bool) or not ICE_MIN <= value <= ICE_MAX:
            errors.append(f"{key.capitalize()} must be a whole number from {ICE_MIN} to {ICE_MAX} "
                          f"(got {value!r}).")
    estimate = task.get("express_estimate")
    if estimate is not None and (isinstance(estimate, bool) or not isinstance(estimate, (int, float))
                                 or not math.isfinite(estimate) or estimate < 0):
        errors.append(f"Express estimate must be a non-negative number (got {estimate!r}).")
    if task.get("is_planned") and not task.get("quarter_id"):
        errors.append("A planned task needs a quarter.")
    if errors:
        raise ValidationError(errors)


def _validate_capacity(value, what):
    if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value) \
            or value < 0:
        raise ValidationError(f"{what} must be a non-negative number (got {value!r}).")


def delete_tasks(store, task_ids):
    """Delete one task id or a list of them (real or virtual) with their role capacities and variant states."""
    if isinstance(task_ids, str):
        task_ids = [task_ids]
    base_ids = {split_virtual_id(task_id)[0] for task_id in task_ids}
    with store.batch():
        removed = store.delete("tasks", base_ids)
        store.delete("task_role_capacities", [trc["id"] for trc in store.get_all("task_role_capacities")
                                              if trc["task_id"] in base_ids])
        store.delete("task_variant_states", [s["id"] for s in store.get_all("task_variant_states")
                                             if s["task_id"] in base_ids])
    return removed


# ── Capacity Aggregation ─────────────────────────────────────────────────────

def _capacity_index(store):
    def build():
        index = {}
        for collection, (owner_key, other_key) in CAPACITY_KEYS.items():
            index[collection] = {(row[owner_key], row[other_key]): float(row.get("capacity") or 0)
                                 for row in store.get_all(collection)}
        return index
    return store.cached("capacity_index", build)


def _members_by_team(store):
    def build():
        by_team = {}
        for member in store.get_all("members"):
            by_team.setdefault(member["team_id"], []).append(member)
        return by_team
    return store.cached("members_by_team", build)


def member_capacity(store, member_id, quarter_id):
    """Capacity of a member in a quarter; 0 when no record exists."""
    return _capacity_index(store)["member_capacities"].get((member_id, quarter_id), 0)


def member_capacity_configured(store, member_id, quarter_id):
    """True when a capacity record exists, even if its value is zero."""
    return (member_id, quarter_id) in _capacity_index(store)["member_capacities"]


def team_capacity(store, team_id, quarter_id):
    """Sum of member capacities of the team for the quarter."""
    return sum(member_capacity(store, m["id"], quarter_id)
               for m in _members_by_team(store).get(team_id, []))


def team_role_capacity(store, team_id, role_id, quarter_id):
    """Sum of capacities of the team's members holding the role."""
    return sum(member_capacity(store, m["id"], quarter_id)
               for m in _members_by_team(store).get(team_id, [])
               if m["role_id"] == role_id)


def legacy_team_capacity(store, team_id, quarter_id):
    """Manually entered team capacity (older override table); 0 when absent."""
    return _capacity_index(store)["team_capacities"].get((team_id, quarter_id), 0)


def task_role_capacity(store, task_id, role_id):
    return _capacity_index(store)["task_role_capacities"].get((task_id, role_id), 0)


def task_detailed_estimate(store, task_id):
    """Sum of the task's per-role estimates over all roles."""
    return sum(task_role_capacity(store, task_id, role["id"]) for role in store.get_all("roles"))


# ── Plan Variants ────────────────────────────────────────────────────────────

def variant_group(store, team_id, quarter_id, is_express):
    """Variants of one (team, quarter, mode) scope, in store order."""
    return [v for v in store.get_all("plan_variants")
            if v["team_id"] == team_id and v["quarter_id"] == quarter_id
            and bool(v["is_express"]) == bool(is_express)]


def resolve_variant(store, team_id, quarter_id, is_express, explicit_selection_id=None):
    """Explicitly selected variant, else the main one, else the first, else None."""
    group = variant_group(store, team_id, quarter_id, is_express)
    if explicit_selection_id:
        for variant in group:
            if variant["id"] == explicit_selection_id:
                return variant
    for variant in group:
        if variant["is_main"]:
            return variant
    return group[0] if group else None


def create_plan_variant(store, name, team_id, quarter_id, is_express, is_main=None):
    """Create a variant. The first variant of a scope becomes main."""
    name = clean_str(name)
    if not name:
        raise ValidationError("Variant name is required.")
    if not team_id or not quarter_id:
        raise ValidationError("A plan variant needs a team and a quarter.")
    with store.batch():
        group = variant_group(store, team_id, quarter_id, is_express)
        if is_main is None:
            is_main = not group
        if is_main:
            for other in group:
                if other["is_main"]:
                    store.update("plan_variants", {"id": other["id"], "is_main": False})
        created = store.create("plan_variants", {
            "name": name, "team_id": team_id, "quarter_id": quarter_id,
            "is_express": bool(is_express), "is_main": bool(is_main),
        })
    return created


def ensure_main_variant(store, team_id, quarter_id, is_express):
    """Return the resolved variant, creating the main one if the scope has none."""
    variant = resolve_variant(store, team_id, quarter_id, is_express)
    if variant is None:
        variant = create_plan_variant(store, MAIN_VARIANT_NAME, team_id, quarter_id,
                                      is_express, is_main=True)
        logger.info("Created main variant %s for team %s, quarter %s (%s)", variant["id"],
                    team_id, quarter_id, MODE_EXPRESS if is_express else MODE_DETAILED)
    return variant


def rename_plan_variant(store, variant_id, name):
    name = clean_str(name)
    if not name:
        raise ValidationError("Variant name is required.")
    return store.update("plan_variants", {"id": variant_id, "name": name})


def set_main_variant(store, variant_id):
    """Make one variant main and every other variant of its scope non-main."""
    variant = store.get("plan_variants", variant_id)
    if variant is None:
        return None
    with store.batch():
        for other in variant_group(store, variant["team_id"], variant["quarter_id"],
                                   variant["is_express"]):
            should_be_main = other["id"] == variant_id
            if bool(other["is_main"]) != should_be_main:
                store.update("plan_variants", {"id": other["id"], "is_main": should_be_main})
    return store.get("plan_variants", variant_id)


def delete_plan_variant(store, variant_id):
    """Delete a variant, unlink its tasks and drop its planning states.

    When the main variant goes and others remain, the first remaining one
    becomes main.
    """
    variant = store.get("plan_variants", variant_id)
    if variant is None:
        return False
    with store.batch():
        store.delete("plan_variants", variant_id)
        for task in store.get_all("tasks"):
            if task.get("plan_variant_id") == variant_id:
                store.update("tasks", {"id": task["id"], "plan_variant_id": None})
        store.delete("task_variant_states", [s["id"] for s in store.get_all("task_variant_states")
                                             if s["variant_id"] == variant_id])
        remaining = variant_group(store, variant["team_id"], variant["quarter_id"],
                                  variant["is_express"])
        if variant["is_main"] and remaining:
            set_main_variant(store, remaining[0]["id"])
    return True


# ── Task Projection ──────────────────────────────────────────────────────────

def _variant_states(store):
    def build():
        return {(s["task_id"], s["variant_id"]): s for s in store.get_all("task_variant_states")}
    return store.cached("variant_states", build)


def project_tasks(store, team_id, quarter_id, variant):
    """Split the team's tasks into the planned and backlog partitions of a variant.

    Each task appears once: the row tagged with the variant if it exists,
    otherwise a virtual copy of the template that starts in the backlog.
    A recorded variant state overrides the row's planning fields.
    """
    planned, backlog = [], []
    if not variant:
        return {"planned": planned, "backlog": backlog}

    groups = {}
    for task in store.get_all("tasks"):
        if task["team_id"] == team_id:
            groups.setdefault(split_virtual_id(task["id"])[0], []).append(task)

    states = _variant_states(store)
    for base_id, versions in groups.items():
        row = next((t for t in versions if t.get("plan_variant_id") == variant["id"]), None)
        if row is None:
            template = next((t for t in versions if not t.get("plan_variant_id")), versions[0])
            row = dict(template, id=virtual_task_id(base_id, variant["id"]),
                       plan_variant_id=variant["id"], is_planned=False, quarter_id=None,
                       base_task_id=base_id, is_virtual=True)
        else:
            row = dict(row, base_task_id=base_id, is_virtual=False)

        state = states.get((base_id, variant["id"]))
        if state is not None:
            row["is_planned"] = bool(state["is_planned"])
            row["quarter_id"] = state["quarter_id"]

        if row["is_planned"] and row.get("quarter_id") == quarter_id:
            planned.append(row)
        else:
            backlog.append(row)
    return {"planned": planned, "backlog": backlog}


# ── Utilisation ──────────────────────────────────────────────────────────────

def utilization_percentage(used, total):
    """used / total as a percentage; 0.0 when no capacity is configured."""
    if total <= 0:
        return 0.0
    return used * 100 / total


def utilization_tier(percentage):
    if percentage > OVER_CAPACITY_PCT:
        return TIER_OVER
    if percentage >= NEAR_CAPACITY_PCT:
        return TIER_NEAR
    return TIER_NOMINAL


def _load(used, total):
    percentage = utilization_percentage(used, total)
    tier = utilization_tier(percentage) if total > 0 else TIER_UNCONFIGURED
    return {"used": used, "total": total, "percentage": percentage, "tier": tier}


def utilization_report(store, team_id, quarter_id, mode, planned_tasks):
    """Team and per-role load of the planned tasks against member capacity."""
    is_express = _mode_is_express(mode)
    task_ids = [base_task_id(t) for t in planned_tasks]
    if is_express:
        used = sum(float(t.get("express_estimate") or 0) for t in planned_tasks)
    else:
        used = sum(task_detailed_estimate(store, task_id) for task_id in task_ids)
    team_load = _load(used, team_capacity(store, team_id, quarter_id))

    per_role = {}
    for role in store.get_all("roles"):
        role_used = sum(task_role_capacity(store, task_id, role["id"]) for task_id in task_ids)
        per_role[role["id"]] = _load(role_used,
                                     team_role_capacity(store, team_id, role["id"], quarter_id))
    return {
        "total_used": team_load["used"],
        "total_capacity": team_load["total"],
        "percentage": team_load["percentage"],
        "tier": team_load["tier"],
        "per_role": per_role,
    }


# ── Planning Board ───────────────────────────────────────────────────────────

class PlanningBoard:
    """Planned/backlog board of one team and quarter, and the user actions on it.

    Reads always come from the store; nothing is changed locally until the
    store has accepted the write. Store failures are logged and collected
    in ``errors``.
    """

    def __init__(self, store, team_id=None, quarter_id=None, mode=MODE_EXPRESS):
        _mode_is_express(mode)
        self.store = store
        self.team_id = team_id
        self.quarter_id = quarter_id
        self.mode = mode
        self.selected_variant_id = None
        self.active_task = None
        self.errors = []
        self._order = {PLANNED_CONTAINER: [], BACKLOG_CONTAINER: []}

    @property
    def is_express(self):
        return self.mode == MODE_EXPRESS

    def select(self, team_id=None, quarter_id=None, mode=None):
        """Change scope. The explicit variant selection and row order are reset."""
        if mode is not None:
            _mode_is_express(mode)
            self.mode = mode
        if team_id is not None:
            self.team_id = team_id
        if quarter_id is not None:
            self.quarter_id = quarter_id
        self.selected_variant_id = None
        self._order = {PLANNED_CONTAINER: [], BACKLOG_CONTAINER: []}

    def select_variant(self, variant_id):
        self.selected_variant_id = variant_id
        self._order = {PLANNED_CONTAINER: [], BACKLOG_CONTAINER: []}

    # ── views ──

    @property
    def variants(self):
        if not (self.team_id and self.quarter_id):
            return []
        return variant_group(self.store, self.team_id, self.quarter_id, self.is_express)

    @property
    def active_variant(self):
        if not (self.team_id and self.quarter_id):
            return None
        return resolve_variant(self.store, self.team_id, self.quarter_id, self.is_express,
                               self.selected_variant_id)

    def projection(self):
        if not (self.team_id and self.quarter_id):
            return {PLANNED_CONTAINER: [], BACKLOG_CONTAINER: []}
        projected = project_tasks(self.store, self.team_id, self.quarter_id, self.active_variant)
        return {
            PLANNED_CONTAINER: self._apply_order(projected["planned"], PLANNED_CONTAINER),
            BACKLOG_CONTAINER: self._apply_order(projected["backlog"], BACKLOG_CONTAINER),
        }

    @property
    def planned(self):
        return self.projection()[PLANNED_CONTAINER]

    @property
    def backlog(self):
        return self.projection()[BACKLOG_CONTAINER]

    def report(self):
        return utilization_report(self.store, self.team_id, self.quarter_id, self.mode, self.planned)

    def _apply_order(self, rows, container):
        order = self._order[container]
        if not order:
            return rows
        rank = {task_id: idx for idx, task_id in enumerate(order)}
        return sorted(rows, key=lambda row: rank.get(row["id"], len(rank)))

    def _record_error(self, message, exc):
        logger.error("%s: %s", message, exc)
        self.errors.append(f"{message}: {exc}")

    # ── drag and drop ──

    def _find_row(self, task_id):
        task = self.store.get("tasks", task_id)
        if task is not None:
            return task
        for rows in self.projection().values():
            for row in rows:
                if row["id"] == task_id:
                    return row
        return None

    def on_drag_start(self, task_id):
        self.active_task = self._find_row(task_id)
        return self.active_task

    def on_drop(self, task_id, target_id):
        """Move a task to the container it was dropped on.

        ``target_id`` is a container id or the id of a row on the board (the
        row's container is used). Dropping on a row of the same container only
        reorders the board. Returns the updated task, or None when nothing
        was written.
        """
        try:
            return self._drop(task_id, target_id)
        finally:
            self.active_task = None

    def _drop(self, task_id, target_id):
        if not (self.team_id and self.quarter_id):
            return None
        projection = self.projection()
        located = {row["id"]: container for container, rows in projection.items() for row in rows}

        if target_id in CONTAINERS:
            container = target_id
        elif target_id in located:
            container = located[target_id]
            if located.get(task_id) == container:
                self._reorder(projection, container, task_id, target_id)
                return None
        else:
            logger.debug("Drop of %s on %r ignored: not a task container", task_id, target_id)
            return None

        row = self._find_row(task_id)
        if row is None:
            logger.debug("Drop ignored: task %s not found", task_id)
            return None

        base_id = base_task_id(row)
        is_virtual = row.get("is_virtual", split_virtual_id(row["id"])[1] is not None)
        moving_to_planned = container == PLANNED_CONTAINER
        quarter_id = self.quarter_id if moving_to_planned else None
        target = self.store.get("tasks", base_id) if is_virtual else row
        if target is None:
            logger.debug("Drop ignored: template task %s not found", base_id)
            return None

        try:
            with self.store.batch():
                variant = self.active_variant or ensure_main_variant(
                    self.store, self.team_id, self.quarter_id, self.is_express)
                updated = self.store.update("tasks", {
                    "id": target["id"],
                    "plan_variant_id": variant["id"],
                    "is_planned": moving_to_planned,
                    "quarter_id": quarter_id,
                    "team_id": self.team_id,
                })
                self.store.upsert_variant_state(base_id, variant["id"], moving_to_planned, quarter_id)
        except StoreError as e:
            self._record_error(f"Could not move task '{row.get('title', task_id)}'", e)
            return None
        logger.info("Task %s moved to %s in variant %s", base_id, container, variant["id"])
        return updated

    def _reorder(self, projection, container, task_id, target_id):
        ids = [row["id"] for row in projection[container]]
        old, new = ids.index(task_id), ids.index(target_id)
        ids.insert(new, ids.pop(old))
        self._order[container] = ids

    # ── tasks ──

    def on_task_save(self, data, role_capacities=None, task_id=None):
        """Create a task (task_id None) or edit one, with its per-role estimates.

        Editing a virtual row changes the shared task fields of its template;
        planning fields given for it are stored as that variant's state.
        Raises ValidationError for bad input; returns the saved task, or None
        when the store rejected the write.
        """
        role_capacities = dict(role_capacities or {})
        for role_id, capacity in role_capacities.items():
            _validate_capacity(capacity, f"Estimate for role '{role_id}'")
            if self.store.get("roles", role_id) is None:
                raise ValidationError(f"Role '{role_id}' does not exist.")

        fields = dict(data)
        if task_id:
            return self._edit_task(task_id, fields, role_capacities)

        task = {**TASK_DEFAULTS, "team_id": self.team_id, **fields}
        if task["is_planned"] and not task.get("quarter_id"):
            task["quarter_id"] = self.quarter_id
        validate_task(task, self.store)
        try:
            with self.store.batch():
                variant = None
                if task["team_id"] == self.team_id and self.quarter_id:
                    variant = self.active_variant or ensure_main_variant(
                        self.store, self.team_id, self.quarter_id, self.is_express)
                    if not task.get("plan_variant_id"):
                        task["plan_variant_id"] = variant["id"]
                saved = self.store.create("tasks", task)
                for role_id, capacity in role_capacities.items():
                    if capacity > 0:
                        self.store.upsert_capacity("task_role_capacities", saved["id"], role_id, capacity)
                if variant is not None and saved["plan_variant_id"] == variant["id"]:
                    self.store.upsert_variant_state(saved["id"], variant["id"], saved["is_planned"],
                                                    saved["quarter_id"])
        except StoreError as e:
            self._record_error(f"Could not create task '{task['title']}'", e)
            return None
        return saved

    def _edit_task(self, task_id, fields, role_capacities):
        base_id, variant_id = split_virtual_id(task_id)
        existing = self.store.get("tasks", base_id)
        if existing is None:
            raise ValidationError(f"Task '{task_id}' does not exist.")

        planning = {key: fields.pop(key) for key in PLANNING_FIELDS if key in fields}
        if variant_id is None:
            fields.update(planning)
            planning_variant = (planning.get("plan_variant_id", existing.get("plan_variant_id"))
                                if "is_planned" in planning else None)
        else:
            planning_variant = variant_id if "is_planned" in planning else None
        if "is_planned" in planning and planning["is_planned"] and not planning.get("quarter_id"):
            planning["quarter_id"] = self.quarter_id
            if variant_id is None:
                fields["quarter_id"] = self.quarter_id

        validate_task({**existing, **fields, **planning}, self.store)
        try:
            with self.store.batch():
                saved = self.store.update("tasks", {**fields, "id": base_id})
                for role_id, capacity in role_capacities.items():
                    self.store.upsert_capacity("task_role_capacities", base_id, role_id, capacity)
                if planning_variant:
                    self.store.upsert_variant_state(base_id, planning_variant, planning["is_planned"],
                                                    planning.get("quarter_id"))
        except StoreError as e:
            self._record_error(f"Could not save task '{existing['title']}'", e)
            return None
        return saved

    def on_task_delete(self, task_ids):
        try:
            return delete_tasks(self.store, task_ids)
        except StoreError as e:
            self._record_error("Could not delete tasks", e)
            return 0

    # ── capacity ──

    def on_capacity_save(self, member_id, quarter_id, value):
        """Set a member's capacity for a quarter (upsert)."""
        _validate_capacity(value, "Capacity")
        if self.store.get("members", member_id) is None:
            raise ValidationError(f"Member '{member_id}' does not exist.")
        if self.store.get("quarters", quarter_id) is None:
            raise ValidationError(f"Quarter '{quarter_id}' does not exist.")
        try:
            return self.store.upsert_capacity("member_capacities", member_id, quarter_id, float(value))
        except StoreError as e:
            self._record_error("Could not save member capacity", e)
            return None

    def on_team_capacity_save(self, team_id, quarter_id, value):
        """Set the manual team capacity override (older table, not used for utilisation)."""
        _validate_capacity(value, "Team capacity")
        try:
            return self.store.upsert_capacity("team_capacities", team_id, quarter_id, float(value))
        except StoreError as e:
            self._record_error("Could not save team capacity", e)
            return None

    # ── variants ──

    def on_set_main_variant(self, variant_id):
        try:
            return set_main_variant(self.store, variant_id)
        except StoreError as e:
            self._record_error("Could not change the main variant", e)
            return None

    def on_variant_create(self, name):
        if not (self.team_id and self.quarter_id):
            raise ValidationError("Select a team and a quarter first.")
        try:
            return create_plan_variant(self.store, name, self.team_id, self.quarter_id, self.is_express)
        except StoreError as e:
            self._record_error(f"Could not create variant '{name}'", e)
            return None

    def on_variant_delete(self, variant_id):
        try:
            deleted = delete_plan_variant(self.store, variant_id)
        except StoreError as e:
            self._record_error("Could not delete variant", e)
            return False
        if deleted and self.selected_variant_id == variant_id:
            self.select_variant(None)
        return deleted


# ── Data Validation ──────────────────────────────────────────────────────────

def validate_store(store):
    """Check loaded data for broken references and invariant breaks. Returns (errors, warnings)."""
    errors = []
    warnings = []

    team_ids = {t["id"] for t in store.get_all("teams")}
    role_ids = {r["id"] for r in store.get_all("roles")}
    quarters = store.get_all("quarters")
    quarter_ids = {q["id"] for q in quarters}
    members = store.get_all("members")
    member_ids = {m["id"] for m in members}
    variant_ids = {v["id"] for v in store.get_all("plan_variants")}
    task_ids = {t["id"] for t in store.get_all("tasks")}

    if not team_ids:
        errors.append("Teams sheet is empty. Add at least one team.")
    if not quarter_ids:
        errors.append("Quarters sheet is empty. Add at least one quarter.")

    for team in store.get_all("teams"):
        if not _HEX_RE.match(team["color"] or ""):
            warnings.append(f"Team '{team['name']}': color '{team['color']}' is not a valid hex code.")

    for q in quarters:
        if q["quarter"] not in (1, 2, 3, 4):
            errors.append(f"Quarter '{q['name']}': quarter number {q['quarter']} must be 1-4.")

    for m in members:
        if m["team_id"] not in team_ids:
            errors.append(f"Member '{m['name']}': team '{m['team_id']}' not found.")
        if m["role_id"] not in role_ids:
            errors.append(f"Member '{m['name']}': role '{m['role_id']}' not found.")
        missing = [q["name"] for q in quarters if not member_capacity_configured(store, m["id"], q["id"])]
        if missing:
            warnings.append(f"Member '{m['name']}' has no capacity for {', '.join(missing)} (counted as 0).")

    for collection, (owner_key, other_key) in CAPACITY_KEYS.items():
        seen = set()
        for row in store.get_all(collection):
            key = (row[owner_key], row[other_key])
            if key in seen:
                warnings.append(f"{SHEETS[collection][0]}: more than one row for {key[0]} / {key[1]}; "
                                f"only the last one counts.")
            seen.add(key)
            if row["capacity"] < 0:
                errors.append(f"{SHEETS[collection][0]}: negative capacity {row['capacity']} "
                              f"for {key[0]} / {key[1]}.")
        owners = {"member_capacities": member_ids, "team_capacities": team_ids,
                  "task_role_capacities": task_ids}[collection]
        dangling = {row[owner_key] for row in store.get_all(collection)} - owners
        if dangling:
            warnings.append(f"{SHEETS[collection][0]}: rows for unknown {owner_key.replace('_id', '')}(s) "
                            f"{', '.join(sorted(dangling))} are ignored.")

    for task in store.get_all("tasks"):
        label = task["title"] or task["id"]
        if task["team_id"] not in team_ids:
            errors.append(f"Task '{label}': team '{task['team_id']}' not found.")
        try:
            validate_task(task)
        except ValidationError as e:
            errors.extend(f"Task '{label}': {msg}" for msg in e.errors if "team" not in msg.lower())
        if task.get("quarter_id") and task["quarter_id"] not in quarter_ids:
            warnings.append(f"Task '{label}': quarter '{task['quarter_id']}' not found.")
        if task.get("plan_variant_id") and task["plan_variant_id"] not in variant_ids:
            warnings.append(f"Task '{label}': plan variant '{task['plan_variant_id']}' not found.")

    scopes = {}
    for v in store.get_all("plan_variants"):
        scopes.setdefault((v["team_id"], v["quarter_id"], bool(v["is_express"])), []).append(v)
    for (team_id, quarter_id, is_express), group in scopes.items():
        mains = [v["name"] for v in group if v["is_main"]]
        if len(mains) != 1:
            mode = MODE_EXPRESS if is_express else MODE_DETAILED
            warnings.append(f"Plan variants of team '{team_id}', quarter '{quarter_id}' ({mode}) have "
                            f"{len(mains)} main variants; expected exactly one.")

    return errors, warnings


# ── Template Generation ─────────────────────────────────────────────────────

def sample_store():
    """In-memory store holding a small sample organisation."""
    counter = itertools.count(1)
    store = EntityStore(id_factory=lambda: str(next(counter)))
    with store.batch():
        quarters = [create_quarter(store, q["year"], q["quarter"], q["name"]) for q in DEFAULT_QUARTERS]
        teams = [create_team(store, name, TEAM_COLORS[idx])
                 for idx, name in enumerate(["Frontend", "Backend", "DevOps"])]
        roles = {name: create_role(store, name, description) for name, description in [
            ("Frontend Developer", "Builds the user interface"),
            ("Backend Developer", "Builds server-side services"),
            ("DevOps Engineer", "Runs infrastructure and delivery"),
            ("Team Lead", "Leads the team"),
            ("QA Engineer", "Tests and assures quality"),
        ]}
        for name, email, team, role in [
            ("Anna Ivanova", "anna@example.com", teams[0], "Frontend Developer"),
            ("Sergey Petrov", "sergey@example.com", teams[0], "Team Lead"),
            ("Elena Sidorova", "elena@example.com", teams[1], "Backend Developer"),
            ("Mikhail Kozlov", "mikhail@example.com", teams[2], "DevOps Engineer"),
        ]:
            create_member(store, name, team["id"], roles[role]["id"], email)

        for team, capacity in zip(teams, [8, 10, 6]):
            for quarter in quarters:
                store.upsert_capacity("team_capacities", team["id"], quarter["id"], capacity)
                for is_express in (True, False):
                    ensure_main_variant(store, team["id"], quarter["id"], is_express)

        first_variant = resolve_variant(store, teams[0]["id"], quarters[0]["id"], True)
        auth = store.create("tasks", {
            **TASK_DEFAULTS,
            "title": "Implement authentication",
            "description": "Develop and integrate OAuth 2.0",
            "team_id": teams[0]["id"], "quarter_id": quarters[0]["id"],
            "plan_variant_id": first_variant["id"], "is_planned": True,
            "impact": 9, "confidence": 7, "ease": 5, "express_estimate": 2.5,
        })
        store.upsert_variant_state(auth["id"], first_variant["id"], True, quarters[0]["id"])
        store.upsert_capacity("task_role_capacities", auth["id"], roles["Frontend Developer"]["id"], 1.5)
        store.upsert_capacity("task_role_capacities", auth["id"], roles["Team Lead"]["id"], 0.5)
        store.create("tasks", {
            **TASK_DEFAULTS,
            "title": "Optimise the database",
            "description": "Analyse and tune slow queries",
            "team_id": teams[1]["id"],
            "impact": 8, "confidence": 8, "ease": 6, "express_estimate": 1.0,
        })
    return store


def generate_template(output_path):
    """Write a workbook with every sheet and the sample organisation."""
    save_workbook_data(sample_store().snapshot(), output_path)
    print(f"Template created: {output_path}")
    print("  Sheets: " + ", ".join(sheet for sheet, _ in SHEETS.values()))


# ── Style Helpers ────────────────────────────────────────────────────────────

def apply_style():
    """Configure matplotlib rcParams for consistent styling."""
    plt.rcParams.update({
        "font.family": "sans-serif",
        "font.sans-serif": STYLE["font_family"],
        "font.size": STYLE["label_size"],
        "axes.facecolor": STYLE["panel_bg"],
        "figure.facecolor": STYLE["bg_color"],
        "axes.edgecolor": STYLE["grid_color"],
        "axes.linewidth": 0.8,
        "axes.grid": False,
        "xtick.color": STYLE["text_secondary"],
        "ytick.color": STYLE["text_secondary"],
        "text.color": STYLE["text_primary"],
    })


def style_axes(ax, title="", ylabel=""):
    """Apply consistent axis styling to any subplot."""
    if title:
        ax.set_title(title, fontsize=STYLE["subtitle_size"], fontweight="bold",
                     color=STYLE["text_primary"], pad=12, loc="left")
    if ylabel:
        ax.set_ylabel(ylabel, fontsize=STYLE["label_size"], color=STYLE["text_secondary"])
    ax.spines["top"].set_visible(False)
    ax.spines["right"].set_visible(False)
    ax.spines["left"].set_linewidth(0.6)
    ax.spines["bottom"].set_linewidth(0.6)
    ax.grid(axis="y", alpha=0.15, linewidth=0.5, color=STYLE["grid_color"])
    ax.set_axisbelow(True)


def add_header_footer(fig, title, subtitle=""):
    """Add a title block and generation timestamp footer."""
    fig.suptitle(title, fontsize=STYLE["title_size"], fontweight="bold",
                 color=STYLE["text_primary"], y=0.98, x=0.04, ha="left")
    if subtitle:
        fig.text(0.04, 0.93, subtitle, fontsize=STYLE["small_size"] + 1,
                 color=STYLE["text_muted"], ha="left")
    fig.text(0.98, 0.008, f"Generated {datetime.now().strftime('%d %b %Y %H:%M')}",
             ha="right", fontsize=STYLE["small_size"], color=STYLE["text_muted"])
    fig.text(0.04, 0.008, "Quarter Planner", ha="left",
             fontsize=STYLE["small_size"], color=STYLE["text_muted"])


def _save_figure(fig, output_path):
    directory = os.path.dirname(output_path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    fig.savefig(output_path, dpi=STYLE["dpi"], bbox_inches="tight", facecolor=STYLE["bg_color"])
    plt.close(fig)


# ── Chart: Utilisation ───────────────────────────────────────────────────────

def render_utilization(board, output_path):
    """Bar chart of planned load vs available capacity, team total and per role."""
    if not (board.team_id and board.quarter_id):
        print("  No team/quarter selected. Utilisation chart skipped.")
        return
    apply_style()
    store = board.store
    report = board.report()
    team = store.get("teams", board.team_id) or {"name": board.team_id}
    quarter = store.get("quarters", board.quarter_id) or {"name": board.quarter_id}

    labels = ["Team total"]
    loads = [{"used": report["total_used"], "total": report["total_capacity"],
              "percentage": report["percentage"], "tier": report["tier"]}]
    for role in store.get_all("roles"):
        load = report["per_role"][role["id"]]
        if load["used"] > 0 or load["total"] > 0:
            labels.append(role["name"])
            loads.append(load)

    x = np.arange(len(labels))
    width = 0.38
    fig, ax = plt.subplots(figsize=(max(10, len(labels) * 2.0), 6.5), facecolor=STYLE["bg_color"])
    available = [load["total"] for load in loads]
    used = [load["used"] for load in loads]
    ax.bar(x - width / 2, available, width, color=STYLE["available_color"],
           edgecolor="white", label="Available")
    ax.bar(x + width / 2, used, width, color=[TIER_COLORS[load["tier"]] for load in loads],
           edgecolor="white", label="Planned")

    top = max(available + used + [1])
    for i, load in enumerate(loads):
        text = f"{load['percentage']:.0f}%" if load["tier"] != TIER_UNCONFIGURED else "n/a"
        weight = "bold" if load["tier"] == TIER_OVER else "normal"
        ax.text(x[i] + width / 2, load["used"] + top * 0.02, text, ha="center",
                fontsize=STYLE["label_size"], color=TIER_COLORS[load["tier"]], fontweight=weight)

    ax.set_xticks(x)
    ax.set_xticklabels(labels, fontsize=STYLE["tick_size"])
    ax.set_ylim(0, top * 1.2)
    ax.legend(loc="upper right", fontsize=STYLE["small_size"], framealpha=0.9,
              edgecolor=STYLE["grid_color"], fancybox=True)
    basis = "express estimates" if board.is_express else "per-role estimates"
    style_axes(ax, title=f"Load vs capacity ({basis})", ylabel="Effort units (person-sprints)")

    variant = board.active_variant
    subtitle = f"{team['name']} · {quarter['name']}"
    if variant:
        subtitle += f" · variant {variant['name']}"
    add_header_footer(fig, "Quarter Utilisation", subtitle)
    _save_figure(fig, output_path)
    print(f"  Utilisation chart saved: {output_path}")


# ── Chart: Quarter Overview ──────────────────────────────────────────────────

def render_quarter_overview(store, team_id, mode, output_path):
    """Team load against capacity for every quarter, using each quarter's resolved variant."""
    quarters = sorted(store.get_all("quarters"), key=quarter_sort_key)
    if not quarters or store.get("teams", team_id) is None:
        print("  No quarters or team to chart. Overview chart skipped.")
        return
    apply_style()
    is_express = _mode_is_express(mode)
    team = store.get("teams", team_id)

    loads = []
    for quarter in quarters:
        variant = resolve_variant(store, team_id, quarter["id"], is_express)
        planned = project_tasks(store, team_id, quarter["id"], variant)["planned"]
        loads.append(utilization_report(store, team_id, quarter["id"], mode, planned))

    x = np.arange(len(quarters))
    used = [r["total_used"] for r in loads]
    capacity = [r["total_capacity"] for r in loads]
    fig, ax = plt.subplots(figsize=(max(10, len(quarters) * 2.2), 6.5), facecolor=STYLE["bg_color"])
    ax.bar(x, used, 0.6, color=[TIER_COLORS[r["tier"]] for r in loads], alpha=0.85,
           edgecolor="white", label="Planned")
    ax.plot(x, capacity, color=STYLE["capacity_line_color"], linewidth=2, linestyle="--",
            marker="o", markersize=5, label="Capacity", zorder=5)

    top = max(used + capacity + [1])
    for i, r in enumerate(loads):
        text = f"{r['percentage']:.0f}%" if r["tier"] != TIER_UNCONFIGURED else "n/a"
        ax.text(i, max(used[i], capacity[i]) + top * 0.03, text, ha="center",
                fontsize=STYLE["label_size"], color=TIER_COLORS[r["tier"]],
                fontweight="bold" if r["tier"] == TIER_OVER else "normal")

    ax.set_xticks(x)
    ax.set_xticklabels([q["name"] for q in quarters], fontsize=STYLE["tick_size"])
    ax.set_ylim(0, top * 1.25)
    ax.legend(loc="upper right", fontsize=STYLE["small_size"], framealpha=0.9,
              edgecolor=STYLE["grid_color"], fancybox=True)
    style_axes(ax, title=f"Planned load per quarter ({mode})", ylabel="Effort units (person-sprints)")
    add_header_footer(fig, "Quarter Overview", f"{team['name']} · main variants")
    _save_figure(fig, output_path)
    print(f"  Overview chart saved: {output_path}")


# ── Plan Summary ─────────────────────────────────────────────────────────────

def _estimate(board, task):
    if board.is_express:
        return float(task.get("express_estimate") or 0)
    return task_detailed_estimate(board.store, base_task_id(task))


def _pct(load):
    if load["tier"] == TIER_UNCONFIGURED:
        return "no capacity configured"
    return f"{load['percentage']:.0f}%, {load['tier']}"


def print_summary(board):
    """Print the plan summary of the board's team, quarter and variant."""
    store = board.store
    team = store.get("teams", board.team_id) or {"name": board.team_id or "-"}
    quarter = store.get("quarters", board.quarter_id) or {"name": board.quarter_id or "-"}
    variant = board.active_variant
    planned = sorted(board.planned, key=ice_score, reverse=True)
    backlog = board.backlog
    report = board.report()

    print()
    print("=" * 60)
    print(f"  QUARTER PLAN: {team['name']}, {quarter['name']} ({board.mode})")
    print("=" * 60)
    if variant is None:
        print("  No plan variant yet. Moving a task creates the main variant.")
    else:
        main = " (main)" if variant["is_main"] else ""
        print(f"  Variant:       {variant['name']}{main}  [{len(board.variants)} in scope]")
    print(f"  Tasks:         {len(planned)} planned, {len(backlog)} in backlog")
    print(f"  Load:          {report['total_used']:.1f} / {report['total_capacity']:.1f} "
          f"effort units ({_pct(report)})")

    roles = {r["id"]: r["name"] for r in store.get_all("roles")}
    role_lines = [(roles[rid], load) for rid, load in report["per_role"].items()
                  if load["used"] > 0 or load["total"] > 0]
    if role_lines:
        print("  By role:")
        for name, load in role_lines:
            print(f"    {name}: {load['used']:.1f} / {load['total']:.1f} ({_pct(load)})")

    if report["tier"] == TIER_OVER:
        print(f"  WARNING: plan exceeds team capacity by "
              f"{report['total_used'] - report['total_capacity']:.1f} effort units")
    for name, load in role_lines:
        if load["tier"] == TIER_OVER:
            print(f"  WARNING: {name} is over capacity ({load['used']:.1f} vs {load['total']:.1f})")
        elif load["tier"] == TIER_UNCONFIGURED and load["used"] > 0:
            print(f"  WARNING: {name} has planned work but no capacity in this team")

    if planned:
        print()
        print("  Planned (by ICE):")
        for task in planned:
            print(f"    {ice_score(task):>4}  {task['title']}  ({_estimate(board, task):.4g})")
    print("=" * 60)
    print()


def print_plan_suggestions(board):
    """Suggest backlog tasks that fit the free capacity, or planned tasks to drop."""
    report = board.report()
    if report["tier"] == TIER_UNCONFIGURED:
        return
    suggestions = []
    free = report["total_capacity"] - report["total_used"]

    if free > 0:
        for task in sorted(board.backlog, key=ice_score, reverse=True):
            estimate = _estimate(board, task)
            if 0 < estimate <= free:
                suggestions.append(f"  '{task['title']}' (ICE {ice_score(task)}, {estimate:.4g}) "
                                   f"fits the remaining {free:.4g} effort units")
                free -= estimate
    elif free < 0:
        overshoot = -free
        for task in sorted(board.planned, key=ice_score):
            if overshoot <= 0:
                break
            estimate = _estimate(board, task)
            if estimate <= 0:
                continue
            suggestions.append(f"  Consider moving '{task['title']}' (ICE {ice_score(task)}, "
                               f"{estimate:.4g}) back to the backlog")
            overshoot -= estimate

    if suggestions:
        print("PLAN SUGGESTIONS:")
        for s in suggestions:
            print(s)
        print()


# ── Main ─────────────────────────────────────────────────────────────────────

def _resolve_task_ref(board, ref):
    rows = board.planned + board.backlog
    row = find_by_ref(rows, ref)
    if row is None:
        base = find_by_ref(board.store.get_all("tasks"), ref)
        if base is not None:
            row = next((r for r in rows if base_task_id(r) == base["id"]), None)
    return row


def main(argv=None):
    parser = argparse.ArgumentParser(
        description="Quarter Planner: capacity, plan variants and utilisation from an Excel workbook"
    )
    parser.add_argument(
        "--template", action="store_true",
        help="Generate a workbook with every sheet and sample data"
    )
    parser.add_argument(
        "--input", default=DEFAULT_INPUT,
        help="Path to the planning workbook (default: planning_data.xlsx)"
    )
    parser.add_argument(
        "--outdir", default=DEFAULT_OUTDIR,
        help="Output directory for charts and summary.txt (default: output/)"
    )
    parser.add_argument("--team", default=None, help="Team name or ID (default: first team)")
    parser.add_argument("--quarter", default=None, help="Quarter name or ID (default: first quarter)")
    parser.add_argument("--mode", default=MODE_EXPRESS, choices=MODES, help="Planning mode")
    parser.add_argument("--variant", default=None, help="Plan variant name or ID (default: main)")
    parser.add_argument(
        "--plan", nargs="+", default=[], metavar="TASK",
        help="Move tasks (title or ID) into the plan of the selected variant"
    )
    parser.add_argument(
        "--unplan", nargs="+", default=[], metavar="TASK",
        help="Move tasks (title or ID) back to the backlog of the selected variant"
    )
    parser.add_argument(
        "--charts", default=["all"], nargs="+",
        choices=["all", "none", "utilization", "overview"],
        help="Which charts to generate (default: all)"
    )
    parser.add_argument("--verbose", action="store_true", help="Show debug logging")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING,
                        format="  %(levelname)s: %(message)s")

    if args.template:
        generate_template(args.input)
        return

    if not os.path.exists(args.input):
        print(f"Error: Input file not found: {args.input}")
        print("Run with --template first to create a template.")
        sys.exit(1)

    # Load
    print(f"Loading data from: {args.input}")
    try:
        store = WorkbookStore(args.input)
    except StoreError as e:
        print(f"  ERROR: {e}")
        sys.exit(1)
    for w in store.load_warnings:
        print(f"  WARNING: {w}")
    print(f"  Teams: {', '.join(t['name'] for t in store.get_all('teams'))}")
    print(f"  Members: {len(store.get_all('members'))}, Roles: {len(store.get_all('roles'))}")
    print(f"  Tasks: {len(store.get_all('tasks'))}")

    # Validate
    errors, warnings = validate_store(store)
    for w in warnings:
        print(f"  WARNING: {w}")
    if errors:
        for e in errors:
            print(f"  ERROR: {e}")
        sys.exit(1)

    teams = store.get_all("teams")
    quarters = sorted(store.get_all("quarters"), key=quarter_sort_key)
    team = find_by_ref(teams, args.team) if args.team else teams[0]
    quarter = find_by_ref(quarters, args.quarter) if args.quarter else quarters[0]
    if team is None:
        print(f"  ERROR: Team '{args.team}' not found. Teams: {', '.join(t['name'] for t in teams)}")
        sys.exit(1)
    if quarter is None:
        print(f"  ERROR: Quarter '{args.quarter}' not found. "
              f"Quarters: {', '.join(q['name'] for q in quarters)}")
        sys.exit(1)

    board = PlanningBoard(store, team["id"], quarter["id"], args.mode)
    if args.variant:
        variant = find_by_ref(board.variants, args.variant)
        if variant is None:
            print(f"  ERROR: Variant '{args.variant}' not found for {team['name']} {quarter['name']}.")
            sys.exit(1)
        board.select_variant(variant["id"])

    # Moves
    for refs, container, verb in [(args.plan, PLANNED_CONTAINER, "Planned"),
                                  (args.unplan, BACKLOG_CONTAINER, "Moved to backlog")]:
        for ref in refs:
            row = _resolve_task_ref(board, ref)
            if row is None:
                print(f"  WARNING: Task '{ref}' not found for team {team['name']}.")
                continue
            if board.on_drop(row["id"], container) is not None:
                print(f"  {verb}: {row['title']}")
    for e in board.errors:
        print(f"  ERROR: {e}")

    # Summary (capture output for summary.txt)
    summary_capture = io.StringIO()
    _orig_stdout = sys.stdout
    sys.stdout = _TeeWriter(_orig_stdout, summary_capture)
    try:
        print_summary(board)
        print_plan_suggestions(board)
    finally:
        sys.stdout = _orig_stdout

    charts = args.charts
    gen_all = "all" in charts
    output_files = []
    if gen_all or "utilization" in charts:
        path = os.path.join(args.outdir, "utilization.png")
        render_utilization(board, path)
        output_files.append(path)
    if gen_all or "overview" in charts:
        path = os.path.join(args.outdir, "quarter_overview.png")
        render_quarter_overview(store, team["id"], args.mode, path)
        output_files.append(path)

    os.makedirs(args.outdir, exist_ok=True)
    summary_path = os.path.join(args.outdir, "summary.txt")
    with open(summary_path, "w", encoding="utf-8") as sf:
        sf.write(summary_capture.getvalue())
    output_files.append(summary_path)

    print()
    print("  Output:")
    for f in output_files:
        print(f"    {os.path.abspath(f)}")
    print("\nDone.")


if __name__ == "__main__":
    main()
