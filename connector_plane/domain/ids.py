from __future__ import annotations

import importlib

ulid_module = importlib.import_module("ulid")


def new_delivery_id() -> str:
    return f"dlv_{ulid_module.new().str}"


def new_attempt_id() -> str:
    return f"att_{ulid_module.new().str}"


def new_event_id() -> str:
    return f"evt_{ulid_module.new().str}"
