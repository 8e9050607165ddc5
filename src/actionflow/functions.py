# functions.py
from __future__ import annotations

import hashlib
import json
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

from .errors import EvalError
from .expressions import kind_of, loose_equals, to_json, to_string


# name -> (impl, min_args, max_args or None for variadic)
_FUNCTIONS: Dict[str, Tuple[Callable[..., Any], int, Optional[int]]] = {}


def _register(name: str, min_args: int, max_args: Optional[int]):
    def deco(fn):
        _FUNCTIONS[name.lower()] = (fn, min_args, max_args)
        return fn
    return deco


def check_arity(name: str, count: int, expression: str) -> None:
    entry = _FUNCTIONS.get(name.lower())
    if entry is None:
        raise EvalError("parse", expression, f"unknown function '{name}'")
    _fn, lo, hi = entry
    if count < lo or (hi is not None and count > hi):
        expected = str(lo) if lo == hi else f"{lo}..{hi if hi is not None else 'n'}"
        raise EvalError("parse", expression, f"{name}() takes {expected} argument(s), got {count}")


def call_function(name: str, args: List[Any], view, expression: str) -> Any:
    fn, _lo, _hi = _FUNCTIONS[name]
    return fn(view, expression, *args)


# ----------------------------------------------------------------------
# Status functions (read the scope view only)
# ----------------------------------------------------------------------

@_register("success", 0, 0)
def _success(view, _expr):
    return view.scope.success()


@_register("failure", 0, 0)
def _failure(view, _expr):
    return view.scope.failure()


@_register("cancelled", 0, 0)
def _cancelled(view, _expr):
    return view.scope.cancelled


@_register("always", 0, 0)
def _always(view, _expr):
    return True


# ----------------------------------------------------------------------
# String / collection helpers
# ----------------------------------------------------------------------

@_register("contains", 2, 2)
def _contains(view, _expr, search, item):
    if kind_of(search) == "array":
        return any(loose_equals(x, item) for x in search)
    return to_string(item).casefold() in to_string(search).casefold()


@_register("startsWith", 2, 2)
def _starts_with(view, _expr, search, value):
    return to_string(search).casefold().startswith(to_string(value).casefold())


@_register("endsWith", 2, 2)
def _ends_with(view, _expr, search, value):
    return to_string(search).casefold().endswith(to_string(value).casefold())


@_register("format", 1, None)
def _format(view, expr, fmt, *args):
    text = to_string(fmt)
    out: List[str] = []
    i, n = 0, len(text)
    while i < n:
        c = text[i]
        if c == "{":
            if text.startswith("{{", i):
                out.append("{")
                i += 2
                continue
            end = text.find("}", i)
            if end == -1:
                raise EvalError("format", expr, f"unclosed '{{' in {text!r}")
            ref = text[i + 1:end]
            if not ref.isdigit() or int(ref) >= len(args):
                raise EvalError("format", expr, f"invalid placeholder {{{ref}}} in {text!r}")
            out.append(to_string(args[int(ref)]))
            i = end + 1
        elif c == "}":
            if text.startswith("}}", i):
                out.append("}")
                i += 2
                continue
            raise EvalError("format", expr, f"unmatched '}}' in {text!r}")
        else:
            out.append(c)
            i += 1
    return "".join(out)


@_register("join", 1, 2)
def _join(view, _expr, items, separator=","):
    if kind_of(items) == "array":
        return to_string(separator).join(to_string(x) for x in items)
    return to_string(items)


@_register("toJSON", 1, 1)
def _to_json(view, _expr, value):
    return to_json(value)


@_register("fromJSON", 1, 1)
def _from_json(view, expr, value):
    try:
        return json.loads(to_string(value))
    except json.JSONDecodeError as e:
        raise EvalError("json", expr, str(e)) from e


# ----------------------------------------------------------------------
# hashFiles
# ----------------------------------------------------------------------

@_register("hashFiles", 1, None)
def _hash_files(view, _expr, *patterns):
    root = Path(view.workspace).resolve()
    include: set = set()
    exclude: set = set()
    for raw in patterns:
        pattern = to_string(raw).strip()
        if not pattern:
            continue
        target = exclude if pattern.startswith("!") else include
        target.update(_glob(root, pattern.lstrip("!")))

    files = sorted(include - exclude, key=lambda p: p.relative_to(root).as_posix())
    if not files:
        return ""

    outer = hashlib.sha256()
    for path in files:
        outer.update(_hash_file(path))
    return outer.hexdigest()


def _glob(root: Path, pattern: str) -> List[Path]:
    if Path(pattern).is_absolute():
        return []
    # `**` globs across directories only as a whole segment; elsewhere it is `*`
    parts = [part if part == "**" else part.replace("**", "*") for part in pattern.split("/")]
    found = []
    for p in root.glob("/".join(parts)):
        resolved = p.resolve()
        if resolved.is_file() and resolved.is_relative_to(root):
            found.append(resolved)
    return found


def _hash_file(path: Path) -> bytes:
    h = hashlib.sha256()
    with path.open("rb") as f:
        while True:
            chunk = f.read(1024 * 1024)
            if not chunk:
                break
            h.update(chunk)
    return h.digest()
