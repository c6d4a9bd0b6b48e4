"""
Builders for raw decision tree JSON used across tests
"""
from datetime import date

REFERENCE_DATE = date(2026, 9, 1)


def node(node_id, kind, *branches, order=0):
    """Build a raw decision node"""
    return {"id": node_id, "kind": kind, "order": order, "branches": list(branches)}


def branch(branch_id, condition, reduction=None, children=None, code=None, label=None):
    """Build a raw decision branch"""
    raw = {"id": branch_id, "code": code or branch_id.upper(), "label": label or branch_id, "condition": condition}
    if reduction is not None:
        raw["reduction"] = reduction
    if children:
        raw["children"] = children
    return raw


def percent(value):
    return {"calc_kind": "percentage", "value": value}


def fixed(value):
    return {"calc_kind": "fixed", "value": value}


def record_row_locks(manager, monkeypatch):
    """Record, in order, the schedule and tree rows a TreeLifecycleManager locks"""
    locks = []
    lock_schedule, get, get_current = manager.lock_schedule, manager.get, manager.get_current_for_schedule

    def _lock_schedule(schedule_id):
        locks.append(("schedule", schedule_id))
        return lock_schedule(schedule_id)

    def _get(tree_id, for_update=False):
        if for_update:
            locks.append(("tree", tree_id))
        return get(tree_id, for_update=for_update)

    def _get_current(schedule_id, for_update=False):
        if for_update:
            locks.append(("current_tree", schedule_id))
        return get_current(schedule_id, for_update=for_update)

    monkeypatch.setattr(manager, "lock_schedule", _lock_schedule)
    monkeypatch.setattr(manager, "get", _get)
    monkeypatch.setattr(manager, "get_current_for_schedule", _get_current)
    return locks
