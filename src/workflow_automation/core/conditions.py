"""
条件评估器

准入条件与决策节点共用同一套过滤条件语义。
"""
import logging
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from ..models.workflow import Condition, ConditionSet, MatchMode


logger = logging.getLogger(__name__)


MISSING = object()

OPERATOR_ALIASES = {
    "==": "equals",
    "=": "equals",
    "eq": "equals",
    "!=": "not_equals",
    "ne": "not_equals",
    ">": "greater_than",
    "gt": "greater_than",
    "<": "less_than",
    "lt": "less_than",
    ">=": "greater_or_equal",
    "gte": "greater_or_equal",
    "<=": "less_or_equal",
    "lte": "less_or_equal",
}


def normalize_operator(operator: str) -> str:
    """将运算符别名统一为规范名称"""
    op = (operator or "").strip().lower()
    return OPERATOR_ALIASES.get(op, op)


def lookup_field(data: Mapping[str, Any], path: str) -> Any:
    """按点分路径取值，不存在时返回 MISSING"""
    if path in data:
        return data[path]
    current: Any = data
    for part in path.split("."):
        if isinstance(current, Mapping) and part in current:
            current = current[part]
        else:
            return MISSING
    return current


def _to_number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or value is None or value is MISSING:
        return None
    if isinstance(value, (int, float)):
        return float(value)
    try:
        return float(str(value).strip())
    except ValueError:
        return None


def _to_text(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return ""
    return str(value)


def _is_empty(value: Any) -> bool:
    if value is MISSING or value is None:
        return True
    if isinstance(value, str):
        return value.strip() == ""
    if isinstance(value, (list, tuple, set, dict)):
        return len(value) == 0
    return False


def _as_list(value: Any) -> List[str]:
    if isinstance(value, (list, tuple, set)):
        return [_to_text(item).strip() for item in value]
    return [item.strip() for item in _to_text(value).split(",")]


def _equals(actual: Any, expected: Any) -> bool:
    if actual is MISSING:
        return False
    if actual == expected:
        return True
    left, right = _to_number(actual), _to_number(expected)
    if left is not None and right is not None:
        return left == right
    return _to_text(actual) == _to_text(expected)


def _compare(predicate: Callable[[float, float], bool]) -> Callable[[Any, Any], bool]:
    def compare(actual: Any, expected: Any) -> bool:
        left, right = _to_number(actual), _to_number(expected)
        if left is None or right is None:
            return False
        return predicate(left, right)
    return compare


def _contains(actual: Any, expected: Any) -> bool:
    if actual is MISSING or actual is None:
        return False
    if isinstance(actual, (list, tuple, set)):
        return any(_equals(item, expected) for item in actual)
    return _to_text(expected).lower() in _to_text(actual).lower()


def _starts_with(actual: Any, expected: Any) -> bool:
    if actual is MISSING or actual is None:
        return False
    return _to_text(actual).lower().startswith(_to_text(expected).lower())


def _ends_with(actual: Any, expected: Any) -> bool:
    if actual is MISSING or actual is None:
        return False
    return _to_text(actual).lower().endswith(_to_text(expected).lower())


def _in_list(actual: Any, expected: Any) -> bool:
    if actual is MISSING or actual is None:
        return False
    return _to_text(actual).strip() in _as_list(expected)


OPERATORS: Dict[str, Callable[[Any, Any], bool]] = {
    "equals": _equals,
    "not_equals": lambda actual, expected: not _equals(actual, expected),
    "greater_than": _compare(lambda a, b: a > b),
    "less_than": _compare(lambda a, b: a < b),
    "greater_or_equal": _compare(lambda a, b: a >= b),
    "less_or_equal": _compare(lambda a, b: a <= b),
    "contains": _contains,
    "not_contains": lambda actual, expected: not _contains(actual, expected),
    "starts_with": _starts_with,
    "ends_with": _ends_with,
    "is_empty": lambda actual, expected: _is_empty(actual),
    "is_not_empty": lambda actual, expected: not _is_empty(actual),
    "in_list": _in_list,
    "not_in_list": lambda actual, expected: not _in_list(actual, expected),
}

VALUELESS_OPERATORS = frozenset({"is_empty", "is_not_empty"})


class ConditionEvaluator:
    """条件评估器"""

    def check(self, condition_set: Optional[ConditionSet]) -> List[str]:
        """检查条件集合是否可评估，返回错误列表"""
        errors = []
        if condition_set is None:
            return errors
        for index, condition in enumerate(condition_set.conditions):
            if not condition.field:
                errors.append(f"Condition #{index} has no field")
            operator = normalize_operator(condition.operator)
            if operator not in OPERATORS:
                errors.append(f"Condition #{index} uses unknown operator '{condition.operator}'")
            elif operator not in VALUELESS_OPERATORS and condition.value is None:
                errors.append(f"Condition #{index} operator '{operator}' requires a value")
        return errors

    def evaluate_condition(self, condition: Condition, data: Mapping[str, Any]) -> bool:
        """
        评估单个条件

        Raises:
            ValueError: 运算符未知
        """
        operator = normalize_operator(condition.operator)
        predicate = OPERATORS.get(operator)
        if predicate is None:
            raise ValueError(f"Unknown condition operator: {condition.operator}")

        actual = lookup_field(data, condition.field)
        return predicate(actual, condition.value)

    def evaluate(self, condition_set: Optional[ConditionSet], data: Mapping[str, Any]) -> bool:
        """
        评估条件集合

        空条件列表视为通过。整个列表使用同一个布尔模式 (all / any)。
        """
        if condition_set is None or not condition_set.conditions:
            return True

        results: List[Tuple[Condition, bool]] = []
        for condition in condition_set.conditions:
            results.append((condition, self.evaluate_condition(condition, data)))

        logger.debug(
            f"Evaluated {len(results)} condition(s) with match={condition_set.match.value}: "
            f"{[(c.field, c.operator, ok) for c, ok in results]}"
        )

        if condition_set.match == MatchMode.ANY:
            return any(ok for _, ok in results)
        return all(ok for _, ok in results)
