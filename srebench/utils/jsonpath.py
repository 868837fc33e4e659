"""Small path helpers over plain JSON-like objects.

Two spellings are accepted everywhere a path is taken:

* dotted: ``spec.template.spec.containers[0].image``, ``metadata.annotations['app.io/rev']``,
  ``status.conditions[*].type``
* JSON pointer: ``/spec/template/spec/containers/0/image``
"""

import copy
import re

_TOKEN = re.compile(r"""\.?([^.\[\]]+)|\[(\d+|\*|-)\]|\[['"]([^'"]+)['"]\]""")

_MISSING = object()


def split_path(path: str) -> list:
    path = path.strip()
    if not path or path in (".", "/"):
        return []
    if path.startswith("/"):
        return [_pointer_token(p) for p in path[1:].split("/")]
    if path.startswith("$"):
        path = path[1:]

    tokens = []
    pos = 0
    while pos < len(path):
        match = _TOKEN.match(path, pos)
        if not match or match.end() == pos:
            raise ValueError(f"Invalid path {path!r} at offset {pos}")
        name, index, quoted = match.groups()
        if name is not None:
            tokens.append(name)
        elif quoted is not None:
            tokens.append(quoted)
        elif index in ("*", "-"):
            tokens.append(index)
        else:
            tokens.append(int(index))
        pos = match.end()
    return tokens


def _pointer_token(raw: str):
    raw = raw.replace("~1", "/").replace("~0", "~")
    return int(raw) if raw.isdigit() else raw


def to_pointer(path) -> str:
    """Dotted path, JSON pointer or token list to an escaped JSON pointer."""
    tokens = split_path(path) if isinstance(path, str) else list(path)
    if "*" in tokens:
        raise ValueError(f"Wildcards are not allowed in patch paths: {path!r}")
    return "".join("/" + str(t).replace("~", "~0").replace("/", "~1") for t in tokens)


def get_path(obj, path, default=None):
    tokens = split_path(path) if isinstance(path, str) else list(path)
    result = _walk(obj, tokens)
    return default if result is _MISSING else result


def has_path(obj, path) -> bool:
    tokens = split_path(path) if isinstance(path, str) else list(path)
    return _walk(obj, tokens) is not _MISSING


def _walk(obj, tokens):
    for i, token in enumerate(tokens):
        if token == "*":
            if not isinstance(obj, (list, tuple)):
                return _MISSING
            rest = tokens[i + 1 :]
            values = [_walk(item, rest) for item in obj]
            return [v for v in values if v is not _MISSING]
        if isinstance(token, int):
            if not isinstance(obj, (list, tuple)) or token >= len(obj):
                return _MISSING
            obj = obj[token]
        else:
            if not hasattr(obj, "get"):
                return _MISSING
            obj = obj.get(token, _MISSING)
            if obj is _MISSING:
                return _MISSING
    return obj


def apply_json_patch(obj: dict, ops: list[dict]) -> dict:
    """Return a patched deep copy of ``obj`` (RFC 6902 add/replace/remove subset)."""
    doc = copy.deepcopy(obj)
    for op in ops:
        kind = op.get("op")
        tokens = split_path(op["path"])
        if not tokens:
            raise ValueError("Patching the document root is not supported")
        parent = _walk(doc, tokens[:-1])
        if parent is _MISSING:
            if kind == "remove":
                raise KeyError(op["path"])
            parent = _materialize(doc, tokens[:-1])
        last = tokens[-1]

        if kind in ("add", "replace"):
            value = copy.deepcopy(op.get("value"))
            if isinstance(parent, list):
                if last == "-":
                    parent.append(value)
                elif kind == "add":
                    parent.insert(int(last), value)
                else:
                    parent[int(last)] = value
            else:
                parent[last] = value
        elif kind == "remove":
            if isinstance(parent, list):
                del parent[int(last)]
            else:
                del parent[last]
        else:
            raise ValueError(f"Unsupported patch op: {kind!r}")
    return doc


def _materialize(doc, tokens):
    node = doc
    for token in tokens:
        if isinstance(node, list):
            node = node[int(token)]
            continue
        if token not in node or node[token] is None:
            node[token] = {}
        node = node[token]
    return node


def is_subset(desired, live) -> bool:
    """True when every field of ``desired`` is present with the same value in ``live``."""
    if isinstance(desired, dict):
        if not isinstance(live, dict):
            return False
        return all(k in live and is_subset(v, live[k]) for k, v in desired.items())
    if isinstance(desired, list):
        if not isinstance(live, list) or len(desired) != len(live):
            return False
        return all(is_subset(d, l) for d, l in zip(desired, live))
    return desired == live


def diff_paths(desired, live, prefix: str = "") -> list[str]:
    """Paths (dotted) at which ``live`` diverges from ``desired``."""
    if isinstance(desired, dict) and isinstance(live, dict):
        out = []
        for key, value in desired.items():
            child = f"{prefix}.{key}" if prefix else str(key)
            if key not in live:
                out.append(child)
            else:
                out.extend(diff_paths(value, live[key], child))
        return out
    if isinstance(desired, list) and isinstance(live, list) and len(desired) == len(live):
        out = []
        for i, (d, l) in enumerate(zip(desired, live)):
            out.extend(diff_paths(d, l, f"{prefix}[{i}]"))
        return out
    return [] if desired == live else [prefix or "."]
