"""Declarative validation rules for workload decorator parameters.

Each workload kind has a table of accepted keywords. A rule names the
keyword, whether it is required, its default and a check returning an
error message (or None when the value is acceptable).
"""

from __future__ import annotations

import re
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from skiff.config.defaults import MAX_WORKLOAD_NAME_LENGTH
from skiff.models.workload import WorkloadKind

WORKLOAD_NAME_PATTERN = re.compile(r"^[a-zA-Z][a-zA-Z0-9-]*$")
ENV_KEY_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
SECRET_NAME_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
QUEUE_ALIAS_PATTERN = re.compile(r"^[a-zA-Z][a-zA-Z0-9_-]{0,79}$")

RATE_PATTERN = re.compile(r"^rate\((\d+) (minute|minutes|hour|hours|day|days)\)$")
CRON_PATTERN = re.compile(r"^cron\((.+)\)$")
AT_PATTERN = re.compile(r"^at\((\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2})\)$")
CRON_FIELD_PATTERN = re.compile(r"^[0-9A-Za-z*?/,#-]+$")

Check = Callable[[Any], str | None]


@dataclass(frozen=True)
class ParamRule:
    """Validation rule for one decorator keyword."""

    keyword: str
    check: Check
    required: bool = False
    default: Any = None


def check_workload_name(value: Any) -> str | None:
    """Workload names are used verbatim as backend resource names."""
    if not isinstance(value, str):
        return "must be a string"
    if len(value) > MAX_WORKLOAD_NAME_LENGTH:
        return f"must be at most {MAX_WORKLOAD_NAME_LENGTH} characters"
    if not WORKLOAD_NAME_PATTERN.match(value):
        return (
            f"'{value}' must start with a letter and contain only "
            "letters, digits and '-'"
        )
    return None


def check_url_path(value: Any) -> str | None:
    if not isinstance(value, str):
        return "must be a string"
    if not value.startswith("/"):
        return f"'{value}' must start with '/'"
    if any(ch.isspace() for ch in value):
        return f"'{value}' must not contain whitespace"
    return None


def check_positive_int(value: Any) -> str | None:
    # bool is a subclass of int
    if isinstance(value, bool) or not isinstance(value, int):
        return "must be a positive integer"
    if value < 1:
        return f"must be a positive integer, got {value}"
    return None


def check_bool(value: Any) -> str | None:
    if not isinstance(value, bool):
        return "must be True or False"
    return None


def check_queue_alias(value: Any) -> str | None:
    if not isinstance(value, str) or not QUEUE_ALIAS_PATTERN.match(value):
        return f"{value!r} is not a valid queue alias"
    return None


def check_queue_aliases(value: Any) -> str | None:
    if not isinstance(value, (list, tuple)):
        return "must be a list of queue aliases"
    for item in value:
        error = check_queue_alias(item)
        if error:
            return error
    if len(set(value)) != len(value):
        return "must not list the same queue twice"
    return None


def check_schedule(value: Any) -> str | None:
    """Accept ``rate(N unit)``, ``cron(6 fields)`` or ``at(timestamp)``."""
    if not isinstance(value, str):
        return "must be a string"

    rate = RATE_PATTERN.match(value)
    if rate:
        amount, unit = int(rate.group(1)), rate.group(2)
        if amount < 1:
            return f"'{value}': rate must be positive"
        if (amount == 1) != (not unit.endswith("s")):
            return f"'{value}': use a singular unit for 1 and plural otherwise"
        return None

    cron = CRON_PATTERN.match(value)
    if cron:
        fields = cron.group(1).split()
        if len(fields) != 6:
            return f"'{value}': cron expressions take 6 fields, got {len(fields)}"
        for item in fields:
            if not CRON_FIELD_PATTERN.match(item):
                return f"'{value}': invalid cron field '{item}'"
        return None

    at = AT_PATTERN.match(value)
    if at:
        try:
            datetime.strptime(at.group(1), "%Y-%m-%dT%H:%M:%S")
        except ValueError:
            return f"'{value}': invalid timestamp"
        return None

    return (
        f"'{value}' must be one of rate(N unit), cron(6 fields) "
        "or at(YYYY-MM-DDThh:mm:ss)"
    )


def check_environment(value: Any) -> str | None:
    if not isinstance(value, dict):
        return "must be a dict of strings"
    for key, item in value.items():
        if not isinstance(key, str) or not ENV_KEY_PATTERN.match(key):
            return f"invalid environment variable name {key!r}"
        if not isinstance(item, str):
            return f"value of '{key}' must be a string"
    return None


def check_secrets(value: Any) -> str | None:
    if not isinstance(value, (list, tuple)):
        return "must be a list of secret names"
    for item in value:
        if not isinstance(item, str) or not SECRET_NAME_PATTERN.match(item):
            return f"invalid secret name {item!r}"
    if len(set(value)) != len(value):
        return "must not list the same secret twice"
    return None


COMMON_RULES: tuple[ParamRule, ...] = (
    ParamRule("name", check_workload_name),
    ParamRule("environment", check_environment, default={}),
    ParamRule("secrets", check_secrets, default=()),
)

KIND_RULES: dict[WorkloadKind, tuple[ParamRule, ...]] = {
    WorkloadKind.ENDPOINT: (
        ParamRule("url_path", check_url_path, required=True),
        ParamRule("queues", check_queue_aliases, default=()),
    ),
    WorkloadKind.WORKER: (
        ParamRule("concurrency", check_positive_int, default=1),
        ParamRule("fifo", check_bool, default=False),
        ParamRule("queue_alias", check_queue_alias),
    ),
    WorkloadKind.CRON: (ParamRule("schedule", check_schedule, required=True),),
}


def rules_for(kind: WorkloadKind) -> dict[str, ParamRule]:
    """All rules applying to a workload kind, keyed by keyword."""
    return {rule.keyword: rule for rule in (*COMMON_RULES, *KIND_RULES[kind])}
