from __future__ import annotations

import ipaddress
import json
from dataclasses import dataclass
from typing import Any, Callable


@dataclass(frozen=True)
class PolicyInvalidError(ValueError):
    # Surface malformed permission conditions with a stable message.
    message: str


@dataclass(frozen=True)
class PolicyTooComplexError(ValueError):
    # Block oversized conditions to keep evaluation bounded.
    message: str


_LOGICAL_OPERATORS = {"all", "any", "not"}


def policy_size_bytes(value: Any) -> int:
    # Measure serialized condition size for complexity enforcement.
    return len(json.dumps(value, separators=(",", ":"), ensure_ascii=False, default=str).encode("utf-8"))


def validate_condition(condition: Any, *, max_depth: int, max_bytes: int) -> None:
    # Enforce size, depth and operator constraints before a condition is stored.
    if condition is None or condition == {}:
        return
    if policy_size_bytes(condition) > max_bytes:
        raise PolicyTooComplexError(f"Condition exceeds {max_bytes} bytes")
    depth = _condition_depth(condition)
    if depth > max_depth:
        raise PolicyTooComplexError(f"Condition depth {depth} exceeds max {max_depth}")
    _validate_structure(condition)


def evaluate_condition(condition: Any, context: dict[str, Any]) -> bool:
    # Evaluate the condition DSL against the access context; unknown paths resolve to None.
    if condition is None or condition == {}:
        return True
    if isinstance(condition, bool):
        return condition
    operator, payload = _split(condition)
    if operator == "all":
        return all(evaluate_condition(item, context) for item in _ensure_list(payload, operator))
    if operator == "any":
        return any(evaluate_condition(item, context) for item in _ensure_list(payload, operator))
    if operator == "not":
        return not evaluate_condition(payload, context)
    left, right = _resolve_operands(payload, context)
    return _COMPARATORS[operator](left, right)


def _split(condition: Any) -> tuple[str, Any]:
    if not isinstance(condition, dict):
        raise PolicyInvalidError("Condition must be an object")
    if len(condition) != 1:
        raise PolicyInvalidError("Condition must include a single operator")
    operator, payload = next(iter(condition.items()))
    if operator not in _LOGICAL_OPERATORS and operator not in _COMPARATORS:
        raise PolicyInvalidError(f"Unsupported operator: {operator}")
    return operator, payload


def _validate_structure(condition: Any) -> None:
    if condition is None or isinstance(condition, bool):
        return
    operator, payload = _split(condition)
    if operator in {"all", "any"}:
        for item in _ensure_list(payload, operator):
            _validate_structure(item)
    elif operator == "not":
        _validate_structure(payload)
    else:
        _operand_pair(payload)


def _condition_depth(condition: Any, depth: int = 1) -> int:
    if not isinstance(condition, dict) or len(condition) != 1:
        return depth
    operator, payload = next(iter(condition.items()))
    if operator in {"all", "any"}:
        items = payload if isinstance(payload, list) else []
        if not items:
            return depth + 1
        return max(_condition_depth(item, depth + 1) for item in items)
    if operator == "not":
        return _condition_depth(payload, depth + 1)
    return depth + 1


def _ensure_list(payload: Any, operator: str) -> list[Any]:
    if not isinstance(payload, list):
        raise PolicyInvalidError(f"{operator} expects a list")
    return payload


def _operand_pair(payload: Any) -> tuple[Any, Any]:
    if isinstance(payload, list) and len(payload) == 2:
        return payload[0], payload[1]
    if isinstance(payload, dict) and "field" in payload:
        return {"var": payload.get("field")}, payload.get("value")
    raise PolicyInvalidError("Comparator payload must be a pair or an object with field/value")


def _resolve_operands(payload: Any, context: dict[str, Any]) -> tuple[Any, Any]:
    left, right = _operand_pair(payload)
    return _resolve_operand(left, context), _resolve_operand(right, context)


def _resolve_operand(value: Any, context: dict[str, Any]) -> Any:
    if isinstance(value, dict) and "var" in value:
        return _resolve_path(context, str(value.get("var") or ""))
    return value


def _resolve_path(context: dict[str, Any], path: str) -> Any:
    # Dotted paths walk nested dictionaries, e.g. "actor.attributes.clearance".
    if not path:
        return None
    node: Any = context
    for part in path.split("."):
        if not isinstance(node, dict) or part not in node:
            return None
        node = node[part]
    return node


def _in(left: Any, right: Any) -> bool:
    if right is None:
        return False
    if isinstance(right, (list, tuple, set)):
        return left in right
    return left == right


def _ordered(compare: Callable[[Any, Any], bool]) -> Callable[[Any, Any], bool]:
    def _apply(left: Any, right: Any) -> bool:
        if left is None or right is None:
            return False
        try:
            return compare(left, right)
        except TypeError:
            return False

    return _apply


def _contains(left: Any, right: Any) -> bool:
    if isinstance(left, str):
        return str(right) in left
    if isinstance(left, (list, tuple, set)):
        return right in left
    return False


def _starts_with(left: Any, right: Any) -> bool:
    if not isinstance(left, str) or right is None:
        return False
    return left.startswith(str(right))


def _ip_in_network(left: Any, right: Any) -> bool:
    # Malformed addresses never match; malformed networks are a policy error.
    if left is None:
        return False
    networks = right if isinstance(right, list) else [right]
    try:
        parsed = [ipaddress.ip_network(str(item), strict=False) for item in networks]
    except ValueError as exc:
        raise PolicyInvalidError(f"Invalid network in ip_in_network: {right}") from exc
    try:
        address = ipaddress.ip_address(str(left))
    except ValueError:
        return False
    return any(address in network for network in parsed if network.version == address.version)


_COMPARATORS: dict[str, Callable[[Any, Any], bool]] = {
    "eq": lambda left, right: left == right,
    "ne": lambda left, right: left != right,
    "in": _in,
    "not_in": lambda left, right: not _in(left, right),
    "gt": _ordered(lambda left, right: left > right),
    "gte": _ordered(lambda left, right: left >= right),
    "lt": _ordered(lambda left, right: left < right),
    "lte": _ordered(lambda left, right: left <= right),
    "contains": _contains,
    "starts_with": _starts_with,
    "ip_in_network": _ip_in_network,
}
