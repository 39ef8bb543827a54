"""
Condition trees for automation rules.

A condition tree is an immutable tagged-variant tree:

    atomic  {"kind": "atomic", "field": "invoice.amount", "operator": "gt", "value": 1000}
    and     {"kind": "and", "conditions": [...]}
    or      {"kind": "or", "conditions": [...]}
    not     {"kind": "not", "condition": {...}}

Trees are validated once, when a rule is saved (acyclic, depth and node
bounded, operand shapes checked), and never mutated afterwards.
Evaluation is a pure function of (tree, context) and returns the full
evaluation trace alongside the boolean result.
"""
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Mapping, Optional, Sequence, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from accubooks.config import settings
from accubooks.errors import ValidationError


class ConditionOperator(str, Enum):
    EQ = "eq"
    NE = "ne"
    GT = "gt"
    GTE = "gte"
    LT = "lt"
    LTE = "lte"
    CONTAINS = "contains"
    STARTS_WITH = "startsWith"
    ENDS_WITH = "endsWith"
    IN = "in"
    NOT_IN = "notIn"
    BETWEEN = "between"


# snake_case spellings accepted on input
OPERATOR_ALIASES = {
    "starts_with": ConditionOperator.STARTS_WITH,
    "ends_with": ConditionOperator.ENDS_WITH,
    "not_in": ConditionOperator.NOT_IN,
}

ORDERING_OPERATORS = {ConditionOperator.GT, ConditionOperator.GTE, ConditionOperator.LT, ConditionOperator.LTE}
LIST_OPERATORS = {ConditionOperator.IN, ConditionOperator.NOT_IN}
STRING_OPERATORS = {ConditionOperator.STARTS_WITH, ConditionOperator.ENDS_WITH}


# =============================================================================
# Tree nodes
# =============================================================================

class AtomicCondition(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["atomic"] = "atomic"
    field: str
    operator: ConditionOperator
    value: Any = None


class AndCondition(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["and"] = "and"
    conditions: Tuple["ConditionNode", ...]


class OrCondition(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["or"] = "or"
    conditions: Tuple["ConditionNode", ...]


class NotCondition(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["not"] = "not"
    condition: "ConditionNode"


ConditionNode = Annotated[
    Union[AtomicCondition, AndCondition, OrCondition, NotCondition],
    Field(discriminator="kind"),
]

AndCondition.model_rebuild()
OrCondition.model_rebuild()
NotCondition.model_rebuild()

_node_adapter = TypeAdapter(ConditionNode)


class TraceEntry(BaseModel):
    """One evaluated (or skipped) node of a condition tree."""
    model_config = ConfigDict(frozen=True)

    path: str
    kind: str
    field: Optional[str] = None
    operator: Optional[str] = None
    expected: Any = None
    actual: Any = None
    result: Optional[bool] = None
    evaluated: bool = True
    warning: Optional[str] = None


class EvaluationResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    matched: bool
    trace: Tuple[TraceEntry, ...]
    warnings: Tuple[str, ...] = ()

    def explain(self) -> str:
        failed = [t for t in self.trace if t.kind == "atomic" and t.evaluated and not t.result]
        passed = [t for t in self.trace if t.kind == "atomic" and t.evaluated and t.result]
        if self.matched:
            parts = [f"{t.field} {t.operator} {t.expected!r}" for t in passed]
            return "Conditions met: " + ("; ".join(parts) if parts else "no conditions")
        parts = [f"{t.field} {t.operator} {t.expected!r} (actual {t.actual!r})" for t in failed]
        return "Conditions not met: " + "; ".join(parts)


# =============================================================================
# Validation
# =============================================================================

def _kind_of(raw: Mapping[str, Any], path: str) -> str:
    kind = raw.get("kind") or raw.get("type")
    if kind is None and "field" in raw:
        kind = "atomic"
    if not isinstance(kind, str) or kind.lower() not in ("atomic", "and", "or", "not"):
        raise ValidationError(f"Condition at {path} has unknown kind {kind!r}.")
    return kind.lower()


def _operator_of(raw_operator: Any, path: str) -> ConditionOperator:
    if isinstance(raw_operator, ConditionOperator):
        return raw_operator
    if isinstance(raw_operator, str):
        if raw_operator in OPERATOR_ALIASES:
            return OPERATOR_ALIASES[raw_operator]
        try:
            return ConditionOperator(raw_operator)
        except ValueError:
            pass
    raise ValidationError(f"Condition at {path} uses unknown operator {raw_operator!r}.")


def _check_operand(operator: ConditionOperator, value: Any, path: str) -> None:
    if operator in LIST_OPERATORS:
        if not isinstance(value, (list, tuple)):
            raise ValidationError(f"Operator {operator.value} at {path} needs a list value.")
    elif operator == ConditionOperator.BETWEEN:
        if not isinstance(value, (list, tuple)) or len(value) != 2:
            raise ValidationError(f"Operator between at {path} needs [low, high].")
        low, high = value
        ordered = _compare(low, high)
        if ordered is None:
            raise ValidationError(f"Bounds of between at {path} are not comparable.")
        if ordered > 0:
            raise ValidationError(f"Lower bound of between at {path} exceeds the upper bound.")
    elif operator in STRING_OPERATORS:
        if not isinstance(value, str):
            raise ValidationError(f"Operator {operator.value} at {path} needs a string value.")
    elif operator == ConditionOperator.CONTAINS:
        if isinstance(value, (list, tuple, set, dict)):
            raise ValidationError(f"Operator contains at {path} needs a scalar value.")
    elif operator in ORDERING_OPERATORS:
        if value is None or isinstance(value, (list, tuple, dict, bool)):
            raise ValidationError(f"Operator {operator.value} at {path} needs a scalar value.")


def _normalize(raw: Any, path: str, depth: int, on_path: set, counter: List[int],
               max_depth: int, max_nodes: int) -> Dict[str, Any]:
    if isinstance(raw, BaseModel):
        raw = raw.model_dump()
    if not isinstance(raw, Mapping):
        raise ValidationError(f"Condition at {path} must be an object.")
    if id(raw) in on_path:
        raise ValidationError(f"Condition tree contains a cycle at {path}.")
    if depth > max_depth:
        raise ValidationError(f"Condition tree is deeper than {max_depth} levels.")
    counter[0] += 1
    if counter[0] > max_nodes:
        raise ValidationError(f"Condition tree has more than {max_nodes} nodes.")

    on_path.add(id(raw))
    try:
        kind = _kind_of(raw, path)
        if kind == "atomic":
            field_name = raw.get("field")
            if not isinstance(field_name, str) or not field_name.strip():
                raise ValidationError(f"Condition at {path} needs a field name.")
            operator = _operator_of(raw.get("operator"), path)
            value = raw.get("value")
            _check_operand(operator, value, path)
            if isinstance(value, tuple):
                value = list(value)
            return {"kind": "atomic", "field": field_name, "operator": operator.value, "value": value}

        if kind == "not":
            child = raw.get("condition")
            return {
                "kind": "not",
                "condition": _normalize(child, f"{path}.not", depth + 1, on_path, counter,
                                        max_depth, max_nodes),
            }

        children = raw.get("conditions")
        if not isinstance(children, (list, tuple)) or not children:
            raise ValidationError(f"{kind.upper()} condition at {path} needs at least one child.")
        if id(children) in on_path:
            raise ValidationError(f"Condition tree contains a cycle at {path}.")
        on_path.add(id(children))
        try:
            normalized = [
                _normalize(child, f"{path}.{kind}[{i}]", depth + 1, on_path, counter, max_depth, max_nodes)
                for i, child in enumerate(children)
            ]
        finally:
            on_path.discard(id(children))
        return {"kind": kind, "conditions": normalized}
    finally:
        on_path.discard(id(raw))


def parse_condition_tree(
    raw: Any,
    max_depth: Optional[int] = None,
    max_nodes: Optional[int] = None,
):
    """
    Validate a raw condition tree and return the immutable node tree.

    ``None`` means "no conditions" and is returned unchanged.
    Raises ValidationError describing the first problem found.
    """
    if raw is None:
        return None
    max_depth = max_depth or settings.MAX_CONDITION_DEPTH
    max_nodes = max_nodes or settings.MAX_CONDITION_NODES

    normalized = _normalize(raw, "root", 1, set(), [0], max_depth, max_nodes)
    try:
        return _node_adapter.validate_python(normalized)
    except PydanticValidationError as e:
        raise ValidationError(f"Invalid condition tree: {e.errors()[0]['msg']}") from e


def condition_tree_to_dict(tree) -> Optional[Dict[str, Any]]:
    if tree is None:
        return None
    return _node_adapter.dump_python(tree, mode="json")


# =============================================================================
# Evaluation
# =============================================================================

class _Missing:
    def __repr__(self):
        return "<missing>"


MISSING = _Missing()


def resolve_field(context: Mapping[str, Any], path: str) -> Any:
    """Look up a dotted path ("invoice.customer.name", "lines.0.amount")."""
    if isinstance(context, Mapping) and path in context:
        return context[path]
    current: Any = context
    for part in path.split("."):
        if isinstance(current, Mapping):
            if part not in current:
                return MISSING
            current = current[part]
        elif isinstance(current, Sequence) and not isinstance(current, (str, bytes)):
            try:
                current = current[int(part)]
            except (ValueError, IndexError):
                return MISSING
        else:
            return MISSING
    return current


def _as_decimal(value: Any) -> Optional[Decimal]:
    if isinstance(value, bool):
        return None
    if isinstance(value, Decimal):
        return value
    if isinstance(value, int):
        return Decimal(value)
    if isinstance(value, float):
        return Decimal(str(value))
    return None


def _compare(left: Any, right: Any) -> Optional[int]:
    """Three-way compare, or None when the operands cannot be ordered."""
    left_num, right_num = _as_decimal(left), _as_decimal(right)
    if left_num is not None and right_num is not None:
        return (left_num > right_num) - (left_num < right_num)
    if isinstance(left, str) and isinstance(right, str):
        return (left > right) - (left < right)
    if isinstance(left, datetime) and isinstance(right, datetime):
        try:
            return (left > right) - (left < right)
        except TypeError:
            return None
    if isinstance(left, date) and isinstance(right, date) and not (
        isinstance(left, datetime) or isinstance(right, datetime)
    ):
        return (left > right) - (left < right)
    return None


def values_equal(left: Any, right: Any) -> bool:
    left_num, right_num = _as_decimal(left), _as_decimal(right)
    if left_num is not None and right_num is not None:
        return left_num == right_num
    return left == right


def _apply(operator: ConditionOperator, actual: Any, expected: Any) -> Tuple[bool, Optional[str]]:
    """Apply one operator. Returns (result, warning)."""
    if operator == ConditionOperator.EQ:
        return values_equal(actual, expected), None
    if operator == ConditionOperator.NE:
        return not values_equal(actual, expected), None

    if operator in ORDERING_OPERATORS:
        ordered = _compare(actual, expected)
        if ordered is None:
            return False, f"cannot compare {type(actual).__name__} with {type(expected).__name__}"
        if operator == ConditionOperator.GT:
            return ordered > 0, None
        if operator == ConditionOperator.GTE:
            return ordered >= 0, None
        if operator == ConditionOperator.LT:
            return ordered < 0, None
        return ordered <= 0, None

    if operator == ConditionOperator.BETWEEN:
        low, high = expected
        above, below = _compare(actual, low), _compare(actual, high)
        if above is None or below is None:
            return False, f"cannot compare {type(actual).__name__} with between bounds"
        return above >= 0 and below <= 0, None

    if operator == ConditionOperator.CONTAINS:
        if isinstance(actual, str):
            if not isinstance(expected, str):
                return False, "contains on a string needs a string value"
            return expected in actual, None
        if isinstance(actual, Mapping):
            try:
                return expected in actual, None
            except TypeError:
                return False, f"contains cannot look up a {type(expected).__name__} key"
        if isinstance(actual, (list, tuple, set, frozenset)):
            return any(values_equal(item, expected) for item in actual), None
        return False, f"contains is not supported for {type(actual).__name__}"

    if operator in STRING_OPERATORS:
        if not isinstance(actual, str):
            return False, f"{operator.value} needs a string field, got {type(actual).__name__}"
        if operator == ConditionOperator.STARTS_WITH:
            return actual.startswith(expected), None
        return actual.endswith(expected), None

    if operator in LIST_OPERATORS:
        found = any(values_equal(actual, item) for item in expected)
        return (found if operator == ConditionOperator.IN else not found), None

    return False, f"unsupported operator {operator}"


def _skip(node, path: str, trace: List[Optional[TraceEntry]]) -> None:
    """Record a node that short-circuiting never evaluated."""
    if isinstance(node, AtomicCondition):
        trace.append(TraceEntry(
            path=path, kind="atomic", field=node.field, operator=node.operator.value,
            expected=node.value, evaluated=False,
        ))
    else:
        trace.append(TraceEntry(path=path, kind=node.kind, evaluated=False))


def _evaluate(node, context: Mapping[str, Any], path: str,
              trace: List[Optional[TraceEntry]], warnings: List[str]) -> bool:
    if isinstance(node, AtomicCondition):
        actual = resolve_field(context, node.field)
        if actual is MISSING:
            warning = f"field '{node.field}' missing from context"
            warnings.append(f"{path}: {warning}")
            trace.append(TraceEntry(
                path=path, kind="atomic", field=node.field, operator=node.operator.value,
                expected=node.value, actual=None, result=False, warning=warning,
            ))
            return False

        result, warning = _apply(node.operator, actual, node.value)
        if warning:
            warnings.append(f"{path}: {warning}")
        trace.append(TraceEntry(
            path=path, kind="atomic", field=node.field, operator=node.operator.value,
            expected=node.value,
            actual=dict(actual) if isinstance(actual, Mapping) else actual,
            result=result,
            warning=warning,
        ))
        return result

    slot = len(trace)
    trace.append(None)

    if isinstance(node, NotCondition):
        result = not _evaluate(node.condition, context, f"{path}.not", trace, warnings)
    else:
        is_and = isinstance(node, AndCondition)
        result = is_and
        for i, child in enumerate(node.conditions):
            child_path = f"{path}.{node.kind}[{i}]"
            child_result = _evaluate(child, context, child_path, trace, warnings)
            if is_and and not child_result:
                result = False
            elif not is_and and child_result:
                result = True
            else:
                continue
            for j, sibling in enumerate(node.conditions[i + 1:], start=i + 1):
                _skip(sibling, f"{path}.{node.kind}[{j}]", trace)
            break

    trace[slot] = TraceEntry(path=path, kind=node.kind, result=result)
    return result


def evaluate(tree, context: Mapping[str, Any]) -> EvaluationResult:
    """
    Evaluate a condition tree against a fact context.

    Pure and deterministic. Never raises for missing or mistyped fields:
    those yield a non-match with a warning in the trace. A tree of ``None``
    always matches.
    """
    if tree is None:
        return EvaluationResult(
            matched=True,
            trace=(TraceEntry(path="root", kind="always", result=True),),
        )

    trace: List[Optional[TraceEntry]] = []
    warnings: List[str] = []
    matched = _evaluate(tree, context, "root", trace, warnings)
    return EvaluationResult(matched=matched, trace=tuple(trace), warnings=tuple(warnings))
