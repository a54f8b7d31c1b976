from __future__ import annotations
import math
import re
from typing import List, Union

import numpy as np

from heap import (
    UNDEFINED,
    Array,
    BinaryTree,
    CallNode,
    CallTrace,
    Class,
    ExecutionState,
    Function,
    Instance,
    Object,
    Queue,
    Ref,
    Stack,
    TreeNode,
    Value,
)


Number = Union[int, float]

# Integral results inside this range are stored as ``int`` so that snapshots
# read naturally; beyond it float64 cannot represent every integer anyway.
_SAFE_INTEGER = 2 ** 53

_NUMERIC_TEXT = re.compile(r"^[+-]?(\d+\.?\d*|\.\d+)([eE][+-]?\d+)?$")


def is_number(value: Value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def normalize(x: Union[Number, np.floating]) -> Number:
    x = float(x)
    # -0.0 stays a float so its sign survives (1 / -0 is -Infinity).
    if math.isfinite(x) and x.is_integer() and abs(x) < _SAFE_INTEGER and not (x == 0 and math.copysign(1.0, x) < 0):
        return int(x)
    return x


def to_number(value: Value) -> Number:
    if isinstance(value, bool):
        return 1 if value else 0
    if is_number(value):
        return value
    if value is None:
        return 0
    if isinstance(value, str):
        text = value.strip()
        if text == "":
            return 0
        if text in ("Infinity", "+Infinity"):
            return math.inf
        if text == "-Infinity":
            return -math.inf
        if text[:2] in ("0x", "0X"):
            try:
                return int(text[2:], 16)
            except ValueError:
                return math.nan
        if _NUMERIC_TEXT.match(text):
            return normalize(float(text))
        return math.nan
    # undefined and every heap reference
    return math.nan


def truthy(value: Value) -> bool:
    if isinstance(value, bool):
        return value
    if value is None or value is UNDEFINED:
        return False
    if is_number(value):
        return not (value == 0 or math.isnan(value))
    if isinstance(value, str):
        return value != ""
    return True


def arithmetic(op: str, left: Value, right: Value) -> Number:
    """IEEE-754 double arithmetic on the numeric coercions of both operands."""
    a = np.float64(to_number(left))
    b = np.float64(to_number(right))
    with np.errstate(divide="ignore", invalid="ignore", over="ignore"):
        if op == "+":
            result = np.add(a, b)
        elif op == "-":
            result = np.subtract(a, b)
        elif op == "*":
            result = np.multiply(a, b)
        elif op == "/":
            result = np.divide(a, b)
        elif op == "%":
            # fmod keeps the sign of the dividend, like the JS remainder.
            result = np.fmod(a, b)
        else:
            raise ValueError(f"not an arithmetic operator: {op}")
    return normalize(result)


def negate(value: Value) -> Number:
    return normalize(np.negative(np.float64(to_number(value))))


def add(state: ExecutionState, left: Value, right: Value) -> Value:
    if isinstance(left, (str, Ref)) or isinstance(right, (str, Ref)):
        return value_to_string(state, left) + value_to_string(state, right)
    return arithmetic("+", left, right)


def _category(value: Value) -> str:
    if value is UNDEFINED:
        return "undefined"
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if is_number(value):
        return "number"
    if isinstance(value, str):
        return "string"
    return "ref"


def strict_equals(left: Value, right: Value) -> bool:
    kind = _category(left)
    if kind != _category(right):
        return False
    if kind == "number":
        return float(left) == float(right)
    return left == right


def loose_equals(left: Value, right: Value) -> bool:
    lk, rk = _category(left), _category(right)
    if lk == rk:
        return strict_equals(left, right)
    nullish = ("null", "undefined")
    if lk in nullish or rk in nullish:
        return lk in nullish and rk in nullish
    if lk == "boolean":
        return loose_equals(to_number(left), right)
    if rk == "boolean":
        return loose_equals(left, to_number(right))
    if {lk, rk} == {"number", "string"}:
        return float(to_number(left)) == float(to_number(right))
    return False


def compare(op: str, left: Value, right: Value) -> bool:
    if isinstance(left, str) and isinstance(right, str):
        a, b = left, right
    else:
        a, b = float(to_number(left)), float(to_number(right))
        if math.isnan(a) or math.isnan(b):
            return False
    if op == "<":
        return a < b
    if op == "<=":
        return a <= b
    if op == ">":
        return a > b
    if op == ">=":
        return a >= b
    raise ValueError(f"not a comparison operator: {op}")


def number_to_string(x: Number) -> str:
    if isinstance(x, int):
        return str(x)
    if math.isnan(x):
        return "NaN"
    if math.isinf(x):
        return "Infinity" if x > 0 else "-Infinity"
    if x.is_integer() and abs(x) < 1e21:
        return str(int(x))
    text = repr(x)
    if "e" in text:
        mantissa, exponent = text.split("e")
        exp = int(exponent)
        text = f"{mantissa}e{'+' if exp > 0 else '-'}{abs(exp)}"
    return text


def _join(state: ExecutionState, items: List[Value]) -> str:
    return ", ".join(value_to_string(state, item) for item in items)


def value_to_string(state: ExecutionState, value: Value) -> str:
    """Human-readable rendering used for console output and step labels."""
    if isinstance(value, Ref):
        obj = state.heap.get(value.id)
        if obj is None:
            return "[ref]"
        if isinstance(obj, Array):
            return f"[{_join(state, obj.items)}]"
        if isinstance(obj, Stack):
            return f"Stack({_join(state, obj.items)})"
        if isinstance(obj, Queue):
            return f"Queue({_join(state, obj.items)})"
        if isinstance(obj, BinaryTree):
            root = value_to_string(state, obj.root) if obj.root is not None else "empty"
            return f"BinaryTree({root})"
        if isinstance(obj, TreeNode):
            return f"Node({value_to_string(state, obj.value)})"
        if isinstance(obj, Function):
            return f"function {obj.name}()"
        if isinstance(obj, Class):
            return f"class {obj.name}"
        if isinstance(obj, Instance):
            cls = state.heap.get(obj.class_ref.id) if isinstance(obj.class_ref, Ref) else None
            name = cls.name if isinstance(cls, Class) else "Instance"
            return f"{name} instance"
        if isinstance(obj, CallTrace):
            return "CallTrace"
        if isinstance(obj, CallNode):
            return f"Call({obj.fn_name})"
        if isinstance(obj, Object):
            return f"Object({len(obj.props)})"
        return obj.kind
    if value is UNDEFINED:
        return "undefined"
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if is_number(value):
        return number_to_string(value)
    return str(value)
