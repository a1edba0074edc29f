"""Filter AST — backend-agnostic filter expressions with compilers for each backend."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any

from sqlalchemy import and_ as sa_and
from sqlalchemy import or_ as sa_or

if TYPE_CHECKING:
    from collections.abc import Mapping

    from sqlalchemy.sql.elements import ColumnElement

# ------------------------------------------------------------------
# Enums
# ------------------------------------------------------------------


class FilterOp(Enum):
    """Comparison operators for record filtering."""

    EQ = "eq"
    NE = "ne"
    GT = "gt"
    GTE = "gte"
    LT = "lt"
    LTE = "lte"
    IN = "in"
    NOT_IN = "not_in"


class LogicalOp(Enum):
    """Logical combinators for grouping filter expressions."""

    AND = "and"
    OR = "or"


# ------------------------------------------------------------------
# AST nodes
# ------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class Comparison:
    """A single field comparison (e.g. ``partition_id == 3``).

    Attributes:
        field: Record field name.
        op: Comparison operator.
        value: Value to compare against.  A list for ``IN`` / ``NOT_IN``.
    """

    field: str
    op: FilterOp
    value: Any


@dataclass(frozen=True, slots=True)
class LogicalGroup:
    """A logical combination of filter expressions.

    Attributes:
        op: Logical operator (AND / OR).
        expressions: Child expressions to combine.
    """

    op: LogicalOp
    expressions: list[FilterExpression]


FilterExpression = Comparison | LogicalGroup
"""Union type for the filter AST: either a leaf :class:`Comparison` or a
:class:`LogicalGroup` combining sub-expressions."""

# Fields an embedding record can be filtered on.
FILTERABLE_FIELDS: frozenset[str] = frozenset(
    {
        "content_id",
        "parent_id",
        "partition_id",
        "owner_id",
        "model_name",
        "created_at",
        "updated_at",
    }
)


# ------------------------------------------------------------------
# Builder helpers
# ------------------------------------------------------------------


def eq(field: str, value: Any) -> Comparison:
    """``field == value``."""
    return Comparison(field=field, op=FilterOp.EQ, value=value)


def ne(field: str, value: Any) -> Comparison:
    """``field != value``."""
    return Comparison(field=field, op=FilterOp.NE, value=value)


def gt(field: str, value: Any) -> Comparison:
    """``field > value``."""
    return Comparison(field=field, op=FilterOp.GT, value=value)


def gte(field: str, value: Any) -> Comparison:
    """``field >= value``."""
    return Comparison(field=field, op=FilterOp.GTE, value=value)


def lt(field: str, value: Any) -> Comparison:
    """``field < value``."""
    return Comparison(field=field, op=FilterOp.LT, value=value)


def lte(field: str, value: Any) -> Comparison:
    """``field <= value``."""
    return Comparison(field=field, op=FilterOp.LTE, value=value)


def in_(field: str, values: list[Any]) -> Comparison:
    """``field IN values``."""
    return Comparison(field=field, op=FilterOp.IN, value=list(values))


def not_in(field: str, values: list[Any]) -> Comparison:
    """``field NOT IN values``."""
    return Comparison(field=field, op=FilterOp.NOT_IN, value=list(values))


def and_(*exprs: FilterExpression) -> LogicalGroup:
    """Combine expressions with AND."""
    return LogicalGroup(op=LogicalOp.AND, expressions=list(exprs))


def or_(*exprs: FilterExpression) -> LogicalGroup:
    """Combine expressions with OR."""
    return LogicalGroup(op=LogicalOp.OR, expressions=list(exprs))


def from_mapping(mapping: Mapping[str, Any]) -> FilterExpression | None:
    """Build an AND of equality / membership tests from a plain mapping.

    List, tuple, and set values become ``IN``; everything else becomes ``EQ``.
    ``None`` values are ignored.  Returns ``None`` for an empty mapping.

    Examples::

        from_mapping({"partition_id": 3})
        # eq("partition_id", 3)

        from_mapping({"partition_id": [3, 4], "owner_id": 9})
        # and_(in_("partition_id", [3, 4]), eq("owner_id", 9))
    """
    parts: list[FilterExpression] = []
    for key, value in mapping.items():
        if value is None:
            continue
        if isinstance(value, (list, tuple, set, frozenset)):
            parts.append(in_(key, sorted(value) if isinstance(value, (set, frozenset)) else value))
        else:
            parts.append(eq(key, value))
    if not parts:
        return None
    if len(parts) == 1:
        return parts[0]
    return and_(*parts)


def coerce_filter(filters: FilterExpression | Mapping[str, Any] | None) -> FilterExpression | None:
    """Accept an AST, a plain mapping, or ``None``."""
    if filters is None or isinstance(filters, (Comparison, LogicalGroup)):
        return filters
    return from_mapping(filters)


# ------------------------------------------------------------------
# Compilers: AST to backend-native formats
# ------------------------------------------------------------------


def compile_sql(expr: FilterExpression, model: type[Any]) -> ColumnElement[bool]:
    """Compile a ``FilterExpression`` to a SQLAlchemy clause over *model*.

    Only fields in :data:`FILTERABLE_FIELDS` may be referenced.

    Examples::

        compile_sql(eq("partition_id", 3), EmbeddingRecord)
        # EmbeddingRecord.partition_id == 3

        compile_sql(and_(eq("partition_id", 3), ne("owner_id", 7)), EmbeddingRecord)
        # (partition_id = 3 AND owner_id != 7)
    """
    if isinstance(expr, Comparison):
        if expr.field not in FILTERABLE_FIELDS:
            msg = f"Cannot filter on unknown field {expr.field!r}"
            raise ValueError(msg)
        column = getattr(model, expr.field)
        match expr.op:
            case FilterOp.EQ:
                return column == expr.value
            case FilterOp.NE:
                return column != expr.value
            case FilterOp.GT:
                return column > expr.value
            case FilterOp.GTE:
                return column >= expr.value
            case FilterOp.LT:
                return column < expr.value
            case FilterOp.LTE:
                return column <= expr.value
            case FilterOp.IN:
                return column.in_(expr.value)
            case FilterOp.NOT_IN:
                return column.not_in(expr.value)

    # LogicalGroup
    clauses = [compile_sql(child, model) for child in expr.expressions]
    if expr.op == LogicalOp.AND:
        return sa_and(*clauses)
    return sa_or(*clauses)


_CLOUD_OPS: dict[FilterOp, str] = {
    FilterOp.EQ: "$eq",
    FilterOp.NE: "$ne",
    FilterOp.GT: "$gt",
    FilterOp.GTE: "$gte",
    FilterOp.LT: "$lt",
    FilterOp.LTE: "$lte",
    FilterOp.IN: "$in",
    FilterOp.NOT_IN: "$nin",
}


def compile_cloud(expr: FilterExpression) -> dict[str, Any]:
    """Compile a ``FilterExpression`` to the cloud service's MongoDB-style filter dict.

    Examples::

        compile_cloud(eq("partition_id", 3))
        # {"partition_id": {"$eq": 3}}

        compile_cloud(and_(eq("partition_id", 3), in_("owner_id", [1, 2])))
        # {"$and": [{"partition_id": {"$eq": 3}}, {"owner_id": {"$in": [1, 2]}}]}
    """
    if isinstance(expr, Comparison):
        value = expr.value.isoformat() if hasattr(expr.value, "isoformat") else expr.value
        return {expr.field: {_CLOUD_OPS[expr.op]: value}}

    # LogicalGroup
    logical_key = "$and" if expr.op == LogicalOp.AND else "$or"
    return {logical_key: [compile_cloud(child) for child in expr.expressions]}
