"""Guard expressions for transitions.

Guards are data, not code. Authors write them either as structured documents
(``{"op": "eq", "left": {"field": "input.approved"}, "right": {"value": true}}``)
or as short Python-syntax text (``input.approved == true``). Text is parsed
with :mod:`ast` and *translated* into the restricted node types below; it is
never compiled or executed. Evaluation is a single walk over a finite tree.
"""

from __future__ import annotations

import ast
import logging
import operator
from enum import Enum
from typing import Annotated, Any, Callable, Dict, List, Literal, Mapping, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from .errors import ConditionSyntaxError

logger = logging.getLogger(__name__)

MAX_EXPRESSION_LENGTH = 2000
MAX_DEPTH = 32

# Accepted spellings for the two evaluation roots.
ROOT_ALIASES = {
    "data": "data",
    "instanceData": "data",
    "input": "input",
    "inputData": "input",
}

_CONSTANT_NAMES = {
    "true": True,
    "false": False,
    "null": None,
    "True": True,
    "False": False,
    "None": None,
}

PathSegment = Union[str, int]


class ComparisonOp(str, Enum):
    EQ = "eq"
    NE = "ne"
    LT = "lt"
    LE = "le"
    GT = "gt"
    GE = "ge"
    IN = "in"
    NOT_IN = "not_in"


class _Node(BaseModel):
    model_config = ConfigDict(frozen=True)


class LiteralValue(_Node):
    node: Literal["literal"] = "literal"
    value: Any = None


class FieldAccess(_Node):
    """Read a value from ``data`` or ``input`` by path."""

    node: Literal["field"] = "field"
    path: Tuple[PathSegment, ...]

    @property
    def dotted(self) -> str:
        return ".".join(str(p) for p in self.path)


class Comparison(_Node):
    node: Literal["compare"] = "compare"
    op: ComparisonOp
    left: "Expression"
    right: "Expression"


class BooleanAnd(_Node):
    node: Literal["and"] = "and"
    operands: Tuple["Expression", ...]


class BooleanOr(_Node):
    node: Literal["or"] = "or"
    operands: Tuple["Expression", ...]


class BooleanNot(_Node):
    node: Literal["not"] = "not"
    operand: "Expression"


Expression = Annotated[
    Union[LiteralValue, FieldAccess, Comparison, BooleanAnd, BooleanOr, BooleanNot],
    Field(discriminator="node"),
]

Comparison.model_rebuild()
BooleanAnd.model_rebuild()
BooleanOr.model_rebuild()
BooleanNot.model_rebuild()

_expression_adapter: TypeAdapter = TypeAdapter(Expression)

_NODE_TYPES = (LiteralValue, FieldAccess, Comparison, BooleanAnd, BooleanOr, BooleanNot)


# ----------------------------------------------------------------------
# Parsing


def parse_condition(raw: Any) -> Optional[Expression]:
    """Parse an authored guard into an expression tree.

    Accepts ``None`` (no guard), an already built node, text, or a structured
    mapping. Raises :class:`ConditionSyntaxError` for anything else.
    """
    if raw is None:
        return None
    if isinstance(raw, _NODE_TYPES):
        expr = raw
    elif isinstance(raw, str):
        expr = parse_text(raw)
    elif isinstance(raw, Mapping):
        expr = _parse_structured(raw, 0)
    else:
        raise ConditionSyntaxError(
            f"Unsupported condition of type {type(raw).__name__}"
        )
    _check_depth(expr)
    return expr


def parse_text(text: str) -> Expression:
    """Translate a Python-syntax guard into the restricted tree."""
    if len(text) > MAX_EXPRESSION_LENGTH:
        raise ConditionSyntaxError(
            f"Condition longer than {MAX_EXPRESSION_LENGTH} characters"
        )
    try:
        tree = ast.parse(text.strip(), mode="eval")
    except SyntaxError as e:
        raise ConditionSyntaxError(
            f"Invalid condition {text!r}: {e.msg}", details={"condition": text}
        ) from e
    return _translate(tree.body, 0, text)


_AST_COMPARISONS = {
    ast.Eq: ComparisonOp.EQ,
    ast.NotEq: ComparisonOp.NE,
    ast.Lt: ComparisonOp.LT,
    ast.LtE: ComparisonOp.LE,
    ast.Gt: ComparisonOp.GT,
    ast.GtE: ComparisonOp.GE,
    ast.In: ComparisonOp.IN,
    ast.NotIn: ComparisonOp.NOT_IN,
}


def _reject(node: ast.AST, source: str) -> ConditionSyntaxError:
    return ConditionSyntaxError(
        f"Unsupported syntax {type(node).__name__} in condition {source!r}",
        details={"condition": source, "node": type(node).__name__},
    )


def _translate(node: ast.AST, depth: int, source: str) -> Expression:
    if depth > MAX_DEPTH:
        raise ConditionSyntaxError(f"Condition nested deeper than {MAX_DEPTH}")
    nxt = depth + 1

    if isinstance(node, ast.BoolOp):
        operands = tuple(_translate(v, nxt, source) for v in node.values)
        if isinstance(node.op, ast.And):
            return BooleanAnd(operands=operands)
        return BooleanOr(operands=operands)

    if isinstance(node, ast.UnaryOp):
        if isinstance(node.op, ast.Not):
            return BooleanNot(operand=_translate(node.operand, nxt, source))
        if isinstance(node.op, (ast.USub, ast.UAdd)) and isinstance(
            node.operand, ast.Constant
        ):
            value = node.operand.value
            if isinstance(value, (int, float)) and not isinstance(value, bool):
                return LiteralValue(value=-value if isinstance(node.op, ast.USub) else value)
        raise _reject(node, source)

    if isinstance(node, ast.Compare):
        comparisons: List[Expression] = []
        left = _translate(node.left, nxt, source)
        for op, comparator in zip(node.ops, node.comparators):
            cmp_op = _AST_COMPARISONS.get(type(op))
            if cmp_op is None:
                raise _reject(op, source)
            right = _translate(comparator, nxt, source)
            comparisons.append(Comparison(op=cmp_op, left=left, right=right))
            left = right
        if len(comparisons) == 1:
            return comparisons[0]
        return BooleanAnd(operands=tuple(comparisons))

    if isinstance(node, ast.Constant):
        if isinstance(node.value, (str, int, float, bool)) or node.value is None:
            return LiteralValue(value=node.value)
        raise _reject(node, source)

    if isinstance(node, ast.Name):
        if node.id in _CONSTANT_NAMES:
            return LiteralValue(value=_CONSTANT_NAMES[node.id])
        if node.id in ROOT_ALIASES:
            return FieldAccess(path=(ROOT_ALIASES[node.id],))
        raise ConditionSyntaxError(
            f"Unknown name {node.id!r} in condition {source!r}; "
            "fields must start with 'data' or 'input'",
            details={"condition": source, "name": node.id},
        )

    if isinstance(node, ast.Attribute):
        base = _translate(node.value, nxt, source)
        if not isinstance(base, FieldAccess):
            raise _reject(node, source)
        return FieldAccess(path=base.path + (node.attr,))

    if isinstance(node, ast.Subscript):
        base = _translate(node.value, nxt, source)
        key = node.slice
        if (
            not isinstance(base, FieldAccess)
            or not isinstance(key, ast.Constant)
            or not isinstance(key.value, (str, int))
            or isinstance(key.value, bool)
        ):
            raise _reject(node, source)
        return FieldAccess(path=base.path + (key.value,))

    if isinstance(node, (ast.List, ast.Tuple)):
        items = []
        for elt in node.elts:
            item = _translate(elt, nxt, source)
            if not isinstance(item, LiteralValue):
                raise _reject(elt, source)
            items.append(item.value)
        return LiteralValue(value=items)

    raise _reject(node, source)


_STRUCTURED_OPS = {op.value: op for op in ComparisonOp}
_STRUCTURED_OPS.update(
    {
        "==": ComparisonOp.EQ,
        "!=": ComparisonOp.NE,
        "<": ComparisonOp.LT,
        "<=": ComparisonOp.LE,
        ">": ComparisonOp.GT,
        ">=": ComparisonOp.GE,
    }
)


def _parse_structured(raw: Mapping[str, Any], depth: int) -> Expression:
    if depth > MAX_DEPTH:
        raise ConditionSyntaxError(f"Condition nested deeper than {MAX_DEPTH}")
    nxt = depth + 1

    if "node" in raw:
        try:
            return _expression_adapter.validate_python(dict(raw))
        except ValidationError as e:
            raise ConditionSyntaxError(f"Invalid condition node: {e}") from e
    if "and" in raw:
        return BooleanAnd(operands=tuple(_parse_operand(o, nxt) for o in _as_list(raw["and"])))
    if "or" in raw:
        return BooleanOr(operands=tuple(_parse_operand(o, nxt) for o in _as_list(raw["or"])))
    if "not" in raw:
        return BooleanNot(operand=_parse_operand(raw["not"], nxt))
    if "field" in raw:
        return field_from_dotted(raw["field"])
    if "value" in raw:
        return LiteralValue(value=raw["value"])
    if "op" in raw:
        op = _STRUCTURED_OPS.get(str(raw["op"]))
        if op is None:
            raise ConditionSyntaxError(f"Unknown comparison operator {raw['op']!r}")
        if "left" not in raw or "right" not in raw:
            raise ConditionSyntaxError("Comparison requires 'left' and 'right'")
        return Comparison(
            op=op,
            left=_parse_operand(raw["left"], nxt),
            right=_parse_operand(raw["right"], nxt),
        )
    raise ConditionSyntaxError(f"Unrecognised condition keys: {sorted(raw)}")


def _parse_operand(raw: Any, depth: int) -> Expression:
    if isinstance(raw, _NODE_TYPES):
        return raw
    if isinstance(raw, Mapping):
        return _parse_structured(raw, depth)
    # Scalars and lists inside structured conditions are always literals.
    return LiteralValue(value=raw)


def _as_list(value: Any) -> list:
    if not isinstance(value, (list, tuple)) or not value:
        raise ConditionSyntaxError("'and'/'or' require a non-empty list")
    return list(value)


def field_from_dotted(dotted: str) -> FieldAccess:
    """Build a :class:`FieldAccess` from ``"input.approved"`` style text."""
    if not isinstance(dotted, str) or not dotted:
        raise ConditionSyntaxError("Field path must be a non-empty string")
    head, *rest = dotted.split(".")
    root = ROOT_ALIASES.get(head)
    if root is None:
        raise ConditionSyntaxError(
            f"Field path {dotted!r} must start with 'data' or 'input'"
        )
    return FieldAccess(path=(root, *rest))


def _check_depth(expr: Expression) -> None:
    if _depth(expr) > MAX_DEPTH:
        raise ConditionSyntaxError(f"Condition nested deeper than {MAX_DEPTH}")


def _depth(expr: Expression) -> int:
    if isinstance(expr, Comparison):
        return 1 + max(_depth(expr.left), _depth(expr.right))
    if isinstance(expr, (BooleanAnd, BooleanOr)):
        return 1 + max((_depth(o) for o in expr.operands), default=0)
    if isinstance(expr, BooleanNot):
        return 1 + _depth(expr.operand)
    return 1


# ----------------------------------------------------------------------
# Evaluation


def resolve_path(context: Mapping[str, Any], path: Tuple[PathSegment, ...]) -> Any:
    """Walk ``path`` through nested mappings and sequences.

    Missing keys, out-of-range indexes and non-container values resolve to
    ``None``. Only item access is used, never attribute access.
    """
    value: Any = context
    for segment in path:
        if isinstance(value, Mapping):
            value = value.get(segment)
        elif isinstance(value, (list, tuple)):
            index = _as_index(segment)
            if index is None or not -len(value) <= index < len(value):
                return None
            value = value[index]
        else:
            return None
    return value


def _as_index(segment: PathSegment) -> Optional[int]:
    if isinstance(segment, int) and not isinstance(segment, bool):
        return segment
    if isinstance(segment, str) and segment.lstrip("-").isdigit():
        return int(segment)
    return None


def _ordering(fn: Callable[[Any, Any], bool]) -> Callable[[Any, Any], bool]:
    def compare(a: Any, b: Any) -> bool:
        if a is None or b is None:
            return False
        try:
            return bool(fn(a, b))
        except TypeError:
            return False

    return compare


def _contains(a: Any, b: Any) -> bool:
    if not isinstance(b, (list, tuple, str, Mapping)):
        return False
    try:
        return a in b
    except TypeError:
        return False


def _not_contains(a: Any, b: Any) -> bool:
    if not isinstance(b, (list, tuple, str, Mapping)):
        return False
    try:
        return a not in b
    except TypeError:
        return False


_COMPARATORS: Dict[ComparisonOp, Callable[[Any, Any], bool]] = {
    ComparisonOp.EQ: operator.eq,
    ComparisonOp.NE: operator.ne,
    ComparisonOp.LT: _ordering(operator.lt),
    ComparisonOp.LE: _ordering(operator.le),
    ComparisonOp.GT: _ordering(operator.gt),
    ComparisonOp.GE: _ordering(operator.ge),
    ComparisonOp.IN: _contains,
    ComparisonOp.NOT_IN: _not_contains,
}


def evaluate(expr: Expression, context: Mapping[str, Any]) -> Any:
    """Compute the value of ``expr`` in ``context``."""
    if isinstance(expr, LiteralValue):
        return expr.value
    if isinstance(expr, FieldAccess):
        return resolve_path(context, expr.path)
    if isinstance(expr, Comparison):
        left = evaluate(expr.left, context)
        right = evaluate(expr.right, context)
        return bool(_COMPARATORS[expr.op](left, right))
    if isinstance(expr, BooleanAnd):
        return all(bool(evaluate(o, context)) for o in expr.operands)
    if isinstance(expr, BooleanOr):
        return any(bool(evaluate(o, context)) for o in expr.operands)
    if isinstance(expr, BooleanNot):
        return not bool(evaluate(expr.operand, context))
    raise TypeError(f"Not an expression node: {type(expr).__name__}")


class ConditionEvaluator:
    """Evaluate transition guards against instance and input data."""

    def evaluate(
        self,
        expression: Optional[Expression],
        instance_data: Optional[Mapping[str, Any]] = None,
        input_data: Optional[Mapping[str, Any]] = None,
    ) -> bool:
        if expression is None:
            return True
        context = {"data": instance_data or {}, "input": input_data or {}}
        result = bool(evaluate(expression, context))
        logger.debug(f"Condition {expression.node} evaluated to {result}")
        return result


__all__ = [
    "ComparisonOp",
    "LiteralValue",
    "FieldAccess",
    "Comparison",
    "BooleanAnd",
    "BooleanOr",
    "BooleanNot",
    "Expression",
    "ConditionEvaluator",
    "parse_condition",
    "parse_text",
    "field_from_dotted",
    "resolve_path",
    "evaluate",
]
