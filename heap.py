"""Heap and execution-state model.

Every value the interpreter manipulates is either a primitive (``str``,
``int``/``float``, ``bool``, ``None`` for null, :data:`UNDEFINED`) or a
:class:`Ref` handle into the heap. The heap is a flat ``id -> HeapObject``
arena owned by a single :class:`ExecutionState`; objects are only ever created
through :meth:`ExecutionState.alloc` and are never reclaimed during a run.

:meth:`ExecutionState.snapshot` is the only place where state is copied. It
clones the console, every frame's locals and every heap entry one level deep:
containers are duplicated, Refs are copied as handles, so a recorded snapshot
never shares a mutable container with the live state.
"""

from __future__ import annotations
import json
import math
from dataclasses import dataclass, field
from typing import Any, ClassVar, Dict, List, Optional


class TraceError(Exception):
    """Base class for interpreter errors."""


class TraceRuntimeError(TraceError):
    """Raised for faults in the interpreted program."""

    def __init__(
        self,
        message: str,
        *,
        line: Optional[int] = None,
        rule: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.line = line
        self.rule = rule
        self.step_index: Optional[int] = None


class TraceLimitError(TraceRuntimeError):
    """Raised when the operation budget or the call-depth limit is exhausted."""


class Undefined:
    _instance: ClassVar[Optional["Undefined"]] = None

    def __new__(cls) -> "Undefined":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "undefined"

    def __bool__(self) -> bool:
        return False

    def __copy__(self) -> "Undefined":
        return self

    def __deepcopy__(self, memo: Dict[int, Any]) -> "Undefined":
        return self

    def __reduce__(self) -> str:
        return "UNDEFINED"


UNDEFINED = Undefined()


@dataclass(frozen=True)
class Ref:
    id: str

    def __str__(self) -> str:
        return f"&{self.id}"


Value = Any


def is_ref(value: Value) -> bool:
    return isinstance(value, Ref)


def encode_value(value: Value) -> Any:
    """Plain JSON-compatible form of a value."""
    if isinstance(value, Ref):
        return {"$ref": value.id}
    if value is UNDEFINED:
        return {"$undefined": True}
    if isinstance(value, float) and not math.isfinite(value):
        if math.isnan(value):
            return {"$number": "NaN"}
        return {"$number": "Infinity" if value > 0 else "-Infinity"}
    return value


def _encode_map(values: Dict[str, Value]) -> Dict[str, Any]:
    return {k: encode_value(v) for k, v in values.items()}


# ---- heap objects ----


class HeapObject:
    kind: ClassVar[str] = ""

    def clone(self) -> "HeapObject":
        raise NotImplementedError

    def to_dict(self) -> Dict[str, Any]:
        raise NotImplementedError


@dataclass
class Array(HeapObject):
    kind: ClassVar[str] = "Array"
    items: List[Value] = field(default_factory=list)

    def clone(self) -> "Array":
        return Array(items=list(self.items))

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "items": [encode_value(v) for v in self.items]}


@dataclass
class Stack(HeapObject):
    kind: ClassVar[str] = "Stack"
    items: List[Value] = field(default_factory=list)

    def clone(self) -> "Stack":
        return Stack(items=list(self.items))

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "items": [encode_value(v) for v in self.items]}


@dataclass
class Queue(HeapObject):
    kind: ClassVar[str] = "Queue"
    items: List[Value] = field(default_factory=list)

    def clone(self) -> "Queue":
        return Queue(items=list(self.items))

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "items": [encode_value(v) for v in self.items]}


@dataclass
class BinaryTree(HeapObject):
    kind: ClassVar[str] = "BinaryTree"
    root: Optional[Value] = None

    def clone(self) -> "BinaryTree":
        return BinaryTree(root=self.root)

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "root": encode_value(self.root)}


@dataclass
class TreeNode(HeapObject):
    kind: ClassVar[str] = "TreeNode"
    value: Value = None
    left: Optional[Value] = None
    right: Optional[Value] = None

    def clone(self) -> "TreeNode":
        return TreeNode(value=self.value, left=self.left, right=self.right)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "value": encode_value(self.value),
            "left": encode_value(self.left),
            "right": encode_value(self.right),
        }


@dataclass
class Function(HeapObject):
    kind: ClassVar[str] = "Function"
    name: str = ""
    params: List[str] = field(default_factory=list)
    # AST of the body; shared between snapshots, the tree is never mutated.
    body: Any = field(default=None, repr=False, compare=False)

    def clone(self) -> "Function":
        return Function(name=self.name, params=list(self.params), body=self.body)

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "name": self.name, "params": list(self.params)}


@dataclass
class Object(HeapObject):
    kind: ClassVar[str] = "Object"
    props: Dict[str, Value] = field(default_factory=dict)

    def clone(self) -> "Object":
        return Object(props=dict(self.props))

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "props": _encode_map(self.props)}


@dataclass
class Class(HeapObject):
    kind: ClassVar[str] = "Class"
    name: str = ""
    super_class: Optional[Value] = None
    methods: Dict[str, Value] = field(default_factory=dict)

    def clone(self) -> "Class":
        return Class(name=self.name, super_class=self.super_class, methods=dict(self.methods))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "name": self.name,
            "superClass": encode_value(self.super_class),
            "methods": _encode_map(self.methods),
        }


@dataclass
class Instance(HeapObject):
    kind: ClassVar[str] = "Instance"
    class_ref: Value = None
    props: Dict[str, Value] = field(default_factory=dict)
    prop_origin: Dict[str, str] = field(default_factory=dict)

    def clone(self) -> "Instance":
        return Instance(class_ref=self.class_ref, props=dict(self.props), prop_origin=dict(self.prop_origin))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "classRef": encode_value(self.class_ref),
            "props": _encode_map(self.props),
            "propOrigin": dict(self.prop_origin),
        }


@dataclass
class CallTrace(HeapObject):
    kind: ClassVar[str] = "CallTrace"
    root: Optional[Value] = None
    current: Optional[Value] = None

    def clone(self) -> "CallTrace":
        return CallTrace(root=self.root, current=self.current)

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "root": encode_value(self.root), "current": encode_value(self.current)}


CALL_ACTIVE = "active"
CALL_DONE = "done"


@dataclass
class CallNode(HeapObject):
    kind: ClassVar[str] = "CallNode"
    fn_name: str = ""
    at_line: int = 1
    args: List[Value] = field(default_factory=list)
    depth: int = 0
    children: List[Value] = field(default_factory=list)
    status: str = CALL_ACTIVE
    return_value: Value = UNDEFINED

    def clone(self) -> "CallNode":
        return CallNode(
            fn_name=self.fn_name,
            at_line=self.at_line,
            args=list(self.args),
            depth=self.depth,
            children=list(self.children),
            status=self.status,
            return_value=self.return_value,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "fnName": self.fn_name,
            "atLine": self.at_line,
            "args": [encode_value(v) for v in self.args],
            "depth": self.depth,
            "children": [encode_value(v) for v in self.children],
            "status": self.status,
            "returnValue": encode_value(self.return_value),
        }


# ---- frames and state ----


@dataclass
class StackFrame:
    name: str
    locals: Dict[str, Value] = field(default_factory=dict)

    def clone(self) -> "StackFrame":
        return StackFrame(name=self.name, locals=dict(self.locals))

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "locals": _encode_map(self.locals)}


GLOBAL_FRAME = "global"


@dataclass
class ExecutionState:
    stack: List[StackFrame] = field(default_factory=lambda: [StackFrame(GLOBAL_FRAME)])
    console: List[str] = field(default_factory=list)
    current_line: int = 1
    heap: Dict[str, HeapObject] = field(default_factory=dict)
    heap_seq: int = 1

    def alloc(self, obj: HeapObject) -> Ref:
        ref = Ref(f"h{self.heap_seq}")
        self.heap_seq += 1
        self.heap[ref.id] = obj
        return ref

    def deref(self, value: Value) -> HeapObject:
        if not isinstance(value, Ref):
            raise TraceRuntimeError("Tried to dereference a non-reference value", rule="DEREF")
        found = self.heap.get(value.id)
        if found is None:
            raise TraceRuntimeError(f"Dangling reference {value.id}", rule="DEREF")
        return found

    @property
    def current_frame(self) -> StackFrame:
        return self.stack[-1]

    @property
    def global_frame(self) -> StackFrame:
        return self.stack[0]

    def find_frame(self, name: str) -> Optional[StackFrame]:
        for frame in reversed(self.stack):
            if name in frame.locals:
                return frame
        return None

    def resolve(self, name: str) -> Value:
        frame = self.find_frame(name)
        if frame is None:
            raise TraceRuntimeError(f"Undefined identifier: {name}", rule="Identifier")
        return frame.locals[name]

    def assign(self, name: str, value: Value) -> None:
        frame = self.find_frame(name)
        if frame is None:
            raise TraceRuntimeError(f"Undefined identifier: {name}", rule="Identifier")
        frame.locals[name] = value

    def declare(self, name: str, value: Value) -> None:
        self.current_frame.locals[name] = value

    def snapshot(self) -> "ExecutionState":
        return ExecutionState(
            stack=[frame.clone() for frame in self.stack],
            console=list(self.console),
            current_line=self.current_line,
            heap={hid: obj.clone() for hid, obj in self.heap.items()},
            heap_seq=self.heap_seq,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stack": [frame.to_dict() for frame in self.stack],
            "console": list(self.console),
            "currentLine": self.current_line,
            "heap": {hid: obj.to_dict() for hid, obj in self.heap.items()},
            "heapSeq": self.heap_seq,
        }


@dataclass
class Step:
    label: str
    state: ExecutionState

    def to_dict(self) -> Dict[str, Any]:
        return {"label": self.label, "state": self.state.to_dict()}


@dataclass
class RunResult:
    steps: List[Step] = field(default_factory=list)
    error: Optional[str] = None
    error_line: Optional[int] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def final_state(self) -> Optional[ExecutionState]:
        return self.steps[-1].state if self.steps else None

    def labels(self) -> List[str]:
        return [step.label for step in self.steps]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "steps": [step.to_dict() for step in self.steps],
            "error": self.error,
            "errorLine": self.error_line,
        }

    def to_json(self, indent: Optional[int] = None) -> str:
        return json.dumps(self.to_dict(), indent=indent)
