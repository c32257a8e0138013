#!/usr/bin/env python3
"""
Task list service - per-principal task operations and their host entry point.

The two operations take the store and the calling principal explicitly, so
they can run against any StorageBackend without a live host. main() plays the
host: it reads one call envelope from stdin, opens the configured backend,
runs the call and prints the reply.

Environment Variables:
    TASKLIST_DATA_DIR (required): Directory holding the task store.
    TASKLIST_STORAGE_BACKEND (optional): "stable" (default), "json" or "sqlite".
    TASKLIST_STABLE_PATH / TASKLIST_JSON_PATH / TASKLIST_SQLITE_PATH (optional):
        Custom store paths (relative to the data dir or absolute).
    DEBUG (optional): If set, enables debug logging to stderr.

Exit Codes:
    0: Success
    1: Error (missing TASKLIST_DATA_DIR, bad call, storage failure, etc.)

Input Format (stdin):
    {
        "method": "create_task",
        "caller": "2vxsx-fae",
        "args": {"title": "Buy milk", "completed": false, "important": true}
    }

Output Format (stdout):
    {"ok": true, "result": null}
    {"ok": true, "result": [{"title": "Buy milk", "completed": false, "important": true}]}

Run with --describe to print the interface description instead.
"""
from __future__ import annotations

import dataclasses
import json
import logging
import os
import sys
import traceback
import types
from pathlib import Path
from typing import Any, Callable, TypedDict, Union, get_args, get_origin, get_type_hints

from task_storage import get_backend_name, get_storage_backend
from task_storage.protocol import Principal, StorageBackend, Task, TaskList

logger = logging.getLogger(__name__)

# Parameters supplied by the host context rather than by the call arguments
CONTEXT_PARAMS: tuple[str, ...] = ("store", "caller")

METHODS: dict[str, Callable[..., Any]] = {}


class CallEnvelope(TypedDict, total=False):
    """Structure for one call delivered on stdin."""

    method: str
    caller: str
    args: dict[str, Any]


def update(func: Callable[..., Any]) -> Callable[..., Any]:
    """Register a state-mutating call."""
    func.call_mode = "update"  # type: ignore[attr-defined]
    METHODS[func.__name__] = func
    return func


def query(func: Callable[..., Any]) -> Callable[..., Any]:
    """Register a read-only call."""
    func.call_mode = "query"  # type: ignore[attr-defined]
    METHODS[func.__name__] = func
    return func


@update
def create_task(
    store: StorageBackend, caller: Principal, title: str, completed: bool, important: bool
) -> None:
    """Append a task to the caller's list, creating the list on first use.

    The full list is written back with a single put, so a failure leaves the
    previously stored list untouched.
    """
    task = Task(title=title, completed=completed, important=important)
    task_list = store.get(caller)
    if task_list is None:
        task_list = TaskList()
    task_list.add_task(task)
    store.put(caller, task_list)


@query
def get_tasks(store: StorageBackend, caller: Principal) -> list[Task] | None:
    """Return a copy of the caller's tasks, or None if it has never created one."""
    task_list = store.get(caller)
    if task_list is None:
        return None
    return task_list.get_tasks()


def _interface_type(tp: Any) -> str:
    """Render a Python annotation as an interface type name."""
    if tp is str:
        return "text"
    if tp is bool:
        return "bool"
    if tp is Task:
        return "Task"

    origin = get_origin(tp)
    args = get_args(tp)
    if origin is list:
        return f"vec {_interface_type(args[0])}"
    if origin in (Union, types.UnionType) and type(None) in args:
        rest = [a for a in args if a is not type(None)]
        if len(rest) == 1:
            return f"opt {_interface_type(rest[0])}"
    raise TypeError(f"No interface type for annotation {tp!r}")


def describe_interface() -> str:
    """Build the interface description from the registered call signatures."""
    task_hints = get_type_hints(Task)
    fields = "; ".join(
        f"{f.name} : {_interface_type(task_hints[f.name])}" for f in dataclasses.fields(Task)
    )
    lines = [f"type Task = record {{ {fields} }};", "service : {"]

    for name, func in METHODS.items():
        hints = get_type_hints(func)
        ret = hints.pop("return", type(None))
        params = ", ".join(
            _interface_type(tp) for param, tp in hints.items() if param not in CONTEXT_PARAMS
        )
        result = "" if ret is type(None) else _interface_type(ret)
        suffix = " query" if func.call_mode == "query" else ""
        lines.append(f"  {name} : ({params}) -> ({result}){suffix};")

    lines.append("}")
    return "\n".join(lines)


def _check_args(func: Callable[..., Any], args: dict[str, Any]) -> None:
    """Check call arguments against the operation's signature.

    Raises:
        TypeError: If an argument is missing, unexpected, or of the wrong type.
    """
    hints = get_type_hints(func)
    hints.pop("return", None)
    expected = {p: tp for p, tp in hints.items() if p not in CONTEXT_PARAMS}

    unexpected = set(args) - set(expected)
    if unexpected:
        raise TypeError(f"Unexpected arguments for {func.__name__}: {sorted(unexpected)}")
    for param, tp in expected.items():
        if param not in args:
            raise TypeError(f"Missing argument {param!r} for {func.__name__}")
        if not isinstance(args[param], tp):
            raise TypeError(
                f"Argument {param!r} for {func.__name__} must be {_interface_type(tp)}"
            )


def dispatch(store: StorageBackend, envelope: CallEnvelope) -> Any:
    """Run one call envelope against ``store`` and return its JSON-ready result.

    Raises:
        KeyError: If the envelope has no method or caller.
        ValueError: If the method is unknown or the caller text is invalid.
        TypeError: If the arguments do not match the method's signature.
    """
    method = envelope["method"]
    func = METHODS.get(method)
    if func is None:
        raise ValueError(f"Unknown method: {method!r}")

    caller = Principal.from_text(envelope["caller"])
    args = envelope.get("args") or {}
    if not isinstance(args, dict):
        raise TypeError("Call args must be an object")
    _check_args(func, args)

    logger.debug("Dispatching %s (%s) for %s", method, func.call_mode, caller)
    result = func(store, caller, **args)
    if result is None:
        return None
    return [task.to_dict() for task in result]


def read_call_envelope() -> CallEnvelope:
    """Read and validate a call envelope from stdin."""
    envelope = json.load(sys.stdin)
    if not isinstance(envelope, dict):
        raise TypeError("Call envelope must be a JSON object")
    return envelope


def configure_logging() -> None:
    """Send logs to stderr; DEBUG when the DEBUG variable is set."""
    level = logging.DEBUG if os.environ.get("DEBUG") else logging.WARNING
    logging.basicConfig(
        level=level,
        stream=sys.stderr,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def main() -> None:
    """Main entry point: handle one host call."""
    if sys.argv[1:] == ["--describe"]:
        print(describe_interface())
        sys.exit(0)

    configure_logging()
    try:
        envelope = read_call_envelope()

        data_dir_str = os.environ.get("TASKLIST_DATA_DIR")
        if not data_dir_str:
            print("Warning: TASKLIST_DATA_DIR not set", file=sys.stderr)
            sys.exit(1)

        # Get storage backend (reads TASKLIST_STORAGE_BACKEND env var)
        store = get_storage_backend(Path(data_dir_str))
        try:
            result = dispatch(store, envelope)
        finally:
            store.close()

        logger.debug("Call handled by %s backend", get_backend_name())
        print(json.dumps({"ok": True, "result": result}, ensure_ascii=False))
        sys.exit(0)

    except (json.JSONDecodeError, OSError, KeyError, TypeError, ValueError) as e:
        print(f"Error handling call: {e!r}", file=sys.stderr)
        sys.exit(1)
    except Exception as e:
        # Unexpected errors - preserve stack trace for debugging
        print(f"Unexpected error handling call: {e!r}", file=sys.stderr)
        traceback.print_exc(file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
