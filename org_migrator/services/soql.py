"""SOQL building and sanitizing helpers."""

import re
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Tuple, TypeVar

from ..exceptions import QueryError

T = TypeVar("T")

_IDENTIFIER = r"[A-Za-z][A-Za-z0-9_]*"
_OBJECT_NAME_RE = re.compile(rf"^{_IDENTIFIER}$")
_FIELD_NAME_RE = re.compile(rf"^{_IDENTIFIER}(\.{_IDENTIFIER})*$")
_PLACEHOLDER_RE = re.compile(r"\{[A-Za-z_][A-Za-z0-9_]*\}")
_STRING_LITERAL_RE = re.compile(r"'(?:\\.|[^'\\])*'")
_FROM_RE = re.compile(r"\bFROM\s+(" + _IDENTIFIER + r")", re.IGNORECASE)
_WHERE_RE = re.compile(r"\bWHERE\b", re.IGNORECASE)
_TAIL_RE = re.compile(r"\b(ORDER\s+BY|GROUP\s+BY|LIMIT|OFFSET)\b", re.IGNORECASE)
_ORDER_RE = re.compile(r"\bORDER\s+BY\b", re.IGNORECASE)
_SELECT_RE = re.compile(r"^\s*SELECT\s+", re.IGNORECASE)


def escape_soql_string(value: str) -> str:
    """Escape a value for use inside a single-quoted SOQL literal."""
    return (
        str(value)
        .replace("\\", "\\\\")
        .replace("'", "\\'")
        .replace("\n", "\\n")
        .replace("\r", "\\r")
        .replace("\t", "\\t")
    )


def sanitize_object_name(name: str) -> str:
    if not name or not _OBJECT_NAME_RE.match(name):
        raise QueryError(f"Invalid object name: {name!r}")
    return name


def sanitize_field_name(name: str) -> str:
    """Validate a field name or relationship path such as Parent__r.Name."""
    if not name or not _FIELD_NAME_RE.match(name):
        raise QueryError(f"Invalid field name: {name!r}")
    return name


def format_id_list(values: Sequence[str]) -> str:
    """Format values as a quoted, escaped, comma-separated list: 'a','b'."""
    return ",".join(f"'{escape_soql_string(v)}'" for v in values)


def build_in_clause(field_name: str, values: Sequence[str]) -> str:
    if not values:
        raise QueryError(f"IN clause on {field_name} requires at least one value")
    return f"{sanitize_field_name(field_name)} IN ({format_id_list(values)})"


def _top_level_positions(query: str) -> List[bool]:
    """For each character, True if it sits outside parentheses and string literals."""
    flags = []
    depth = 0
    in_string = False
    escaped = False
    for ch in query:
        if in_string:
            flags.append(False)
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == "'":
                in_string = False
            continue
        if ch == "'":
            in_string = True
            flags.append(False)
        elif ch == "(":
            flags.append(False)
            depth += 1
        elif ch == ")":
            depth -= 1
            flags.append(False)
        else:
            flags.append(depth == 0)
    return flags


def _find_top_level(query: str, pattern: "re.Pattern", start: int = 0) -> Optional["re.Match"]:
    top = _top_level_positions(query)
    for match in pattern.finditer(query, start):
        if top[match.start()]:
            return match
    return None


def extract_object_name(query: str) -> Optional[str]:
    """Object named in the top-level FROM clause."""
    match = _find_top_level(query, _FROM_RE)
    return match.group(1) if match else None


def select_list_bounds(query: str) -> Tuple[int, int]:
    """Start and end offsets of the top-level select list."""
    select = _SELECT_RE.match(query)
    from_match = _find_top_level(query, _FROM_RE)
    if not select or not from_match:
        raise QueryError(f"Not a SELECT ... FROM query: {query!r}")
    return select.end(), from_match.start()


def _split_top_level_commas(text: str) -> List[str]:
    parts = []
    top = _top_level_positions(text)
    current = []
    for i, ch in enumerate(text):
        if ch == "," and top[i]:
            parts.append("".join(current).strip())
            current = []
        else:
            current.append(ch)
    parts.append("".join(current).strip())
    return [p for p in parts if p]


def extract_field_names(query: str) -> List[str]:
    """Fields in the top-level select list, excluding subqueries."""
    start, end = select_list_bounds(query)
    return [f for f in _split_top_level_commas(query[start:end]) if not f.startswith("(")]


def remove_select_fields(query: str, predicate: Callable[[str], bool]) -> str:
    """Drop select-list items matching predicate; falls back to selecting Id."""
    start, end = select_list_bounds(query)
    items = _split_top_level_commas(query[start:end])
    kept = [item for item in items if item.startswith("(") or not predicate(item)]
    if not kept:
        kept = ["Id"]
    return f"{query[:start]}{', '.join(kept)} {query[end:].lstrip()}"


def add_where_clause(query: str, condition: str) -> str:
    """
    Add a condition to a query's top-level WHERE clause.

    An existing WHERE body is parenthesized and joined with AND; the
    condition is placed before any ORDER BY, GROUP BY, LIMIT or OFFSET.
    """
    if not condition:
        return query

    from_match = _find_top_level(query, _FROM_RE)
    search_from = from_match.end() if from_match else 0
    tail = _find_top_level(query, _TAIL_RE, search_from)
    tail_start = tail.start() if tail else len(query)
    head = query[:tail_start].rstrip()
    rest = query[tail_start:]

    where = _find_top_level(head, _WHERE_RE, search_from)
    if where:
        body = head[where.end():].strip()
        head = f"{head[:where.start()].rstrip()} WHERE ({body}) AND {condition}"
    else:
        head = f"{head} WHERE {condition}"

    return f"{head} {rest}".strip()


def apply_extract_options(
    query: str,
    filter_criteria: Optional[str] = None,
    order_by: Optional[str] = None
) -> str:
    """Apply a step's extra filter and ordering to its extract query."""
    if filter_criteria:
        query = add_where_clause(query, filter_criteria)

    if order_by and not _find_top_level(query, _ORDER_RE):
        from_match = _find_top_level(query, _FROM_RE)
        tail = _find_top_level(query, _TAIL_RE, from_match.end() if from_match else 0)
        if tail:
            query = f"{query[:tail.start()].rstrip()} ORDER BY {order_by} {query[tail.start():]}"
        else:
            query = f"{query.rstrip()} ORDER BY {order_by}"

    return query


def ensure_no_placeholders(query: str) -> str:
    """Raise QueryError if any {token} survived placeholder resolution outside string literals."""
    leftover = _PLACEHOLDER_RE.findall(_STRING_LITERAL_RE.sub("''", query))
    if leftover:
        raise QueryError(f"Unresolved placeholder(s) {', '.join(sorted(set(leftover)))} in query: {query}")
    return query


def chunk(values: Sequence[T], size: int) -> Iterator[List[T]]:
    """Yield consecutive slices of at most size items."""
    if size <= 0:
        raise ValueError(f"Chunk size must be positive, got {size}")
    for i in range(0, len(values), size):
        yield list(values[i:i + size])


def create_batches(items: Sequence[T], batch_size: int) -> List[List[T]]:
    """
    Partition items into ceil(N / batch_size) ordered batches.

    Every item appears in exactly one batch and the input order is preserved.
    """
    return list(chunk(items, batch_size))


def get_field_value(record: Dict[str, Any], path: str) -> Any:
    """Read a field or relationship path (Parent__r.Name) from a query row."""
    value: Any = record
    for part in path.split("."):
        if not isinstance(value, dict):
            return None
        value = value.get(part)
        if value is None:
            return None
    return value
