"""Method table for the built-in heap structures.

``Stack``, ``Queue``, ``Array`` and ``BinaryTree`` objects have no user-level
methods; calls such as ``s.push(1)`` are dispatched here by heap-object kind.
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple

from coercion import is_number
from heap import (
    UNDEFINED,
    Array,
    BinaryTree,
    ExecutionState,
    HeapObject,
    Queue,
    Ref,
    Stack,
    TraceRuntimeError,
    TreeNode,
    Value,
)


MethodImpl = Callable[[ExecutionState, HeapObject, List[Value]], Value]


@dataclass
class BuiltinMethod:
    kind: str
    name: str
    min_args: int
    max_args: Optional[int]
    impl: MethodImpl

    @property
    def qualified_name(self) -> str:
        return f"{self.kind}.{self.name}"

    def validate(self, supplied: int, line: Optional[int]) -> None:
        if supplied < self.min_args:
            raise TraceRuntimeError(
                f"{self.qualified_name} expects at least {self.min_args} argument(s)",
                line=line,
                rule=self.qualified_name,
            )
        if self.max_args is not None and supplied > self.max_args:
            raise TraceRuntimeError(
                f"{self.qualified_name} expects at most {self.max_args} argument(s)",
                line=line,
                rule=self.qualified_name,
            )


def _expect_number(value: Value, rule: str, line: Optional[int]) -> float:
    if not is_number(value):
        raise TraceRuntimeError(f"{rule} expects a number", line=line, rule=rule)
    return value


class StructureMethods:
    def __init__(self) -> None:
        self.table: Dict[Tuple[str, str], BuiltinMethod] = {}
        self._register(Stack, "push", 0, None, self._append)
        self._register(Stack, "pop", 0, 0, self._pop_last)
        self._register(Stack, "peek", 0, 0, self._peek_last)
        self._register(Stack, "size", 0, 0, self._size)
        self._register(Queue, "enqueue", 0, None, self._append)
        self._register(Queue, "dequeue", 0, 0, self._pop_first)
        self._register(Queue, "peek", 0, 0, self._peek_first)
        self._register(Queue, "size", 0, 0, self._size)
        self._register(Array, "push", 0, None, self._array_push)
        self._register(Array, "pop", 0, 0, self._pop_last)
        self._register(Array, "shift", 0, 0, self._pop_first)
        self._register(Array, "unshift", 0, None, self._array_unshift)
        self._register(Array, "length", 0, 0, self._size)
        self._register(BinaryTree, "insert", 1, 1, self._tree_insert)
        self._register(BinaryTree, "contains", 1, 1, self._tree_contains)
        self._register(BinaryTree, "inOrder", 0, 0, self._tree_in_order)

    def _register(self, cls: type, name: str, min_args: int, max_args: Optional[int], impl: MethodImpl) -> None:
        self.table[(cls.kind, name)] = BuiltinMethod(cls.kind, name, min_args, max_args, impl)

    def lookup(self, obj: HeapObject, name: str) -> Optional[BuiltinMethod]:
        return self.table.get((obj.kind, name))

    def invoke(self, state: ExecutionState, obj: HeapObject, name: str, args: List[Value], line: Optional[int]) -> Value:
        method = self.lookup(obj, name)
        if method is None:
            raise TraceRuntimeError(f"Unknown method '{name}' on {obj.kind}", line=line, rule=f"{obj.kind}.{name}")
        method.validate(len(args), line)
        try:
            return method.impl(state, obj, args)
        except TraceRuntimeError as err:
            if err.line is None:
                err.line = line
            raise

    # ---- sequences ----

    def _append(self, state: ExecutionState, obj: HeapObject, args: List[Value]) -> Value:
        obj.items.extend(args)
        return UNDEFINED

    def _array_push(self, state: ExecutionState, obj: HeapObject, args: List[Value]) -> Value:
        obj.items.extend(args)
        return len(obj.items)

    def _array_unshift(self, state: ExecutionState, obj: HeapObject, args: List[Value]) -> Value:
        obj.items[0:0] = args
        return len(obj.items)

    def _pop_last(self, state: ExecutionState, obj: HeapObject, args: List[Value]) -> Value:
        return obj.items.pop() if obj.items else UNDEFINED

    def _pop_first(self, state: ExecutionState, obj: HeapObject, args: List[Value]) -> Value:
        return obj.items.pop(0) if obj.items else UNDEFINED

    def _peek_last(self, state: ExecutionState, obj: HeapObject, args: List[Value]) -> Value:
        return obj.items[-1] if obj.items else UNDEFINED

    def _peek_first(self, state: ExecutionState, obj: HeapObject, args: List[Value]) -> Value:
        return obj.items[0] if obj.items else UNDEFINED

    def _size(self, state: ExecutionState, obj: HeapObject, args: List[Value]) -> Value:
        return len(obj.items)

    # ---- binary search tree ----

    def _tree_node(self, state: ExecutionState, ref: Value) -> Optional[TreeNode]:
        if not isinstance(ref, Ref):
            return None
        node = state.deref(ref)
        return node if isinstance(node, TreeNode) else None

    def _tree_insert(self, state: ExecutionState, tree: HeapObject, args: List[Value]) -> Value:
        value = args[0]
        key = _expect_number(value, "BinaryTree.insert", None)
        current = self._tree_node(state, tree.root)
        if current is None:
            tree.root = state.alloc(TreeNode(value=value))
            return UNDEFINED
        while current is not None:
            here = _expect_number(current.value, "BinaryTree.insert", None)
            if key < here:
                if current.left is None:
                    current.left = state.alloc(TreeNode(value=value))
                    return UNDEFINED
                current = self._tree_node(state, current.left)
            else:
                if current.right is None:
                    current.right = state.alloc(TreeNode(value=value))
                    return UNDEFINED
                current = self._tree_node(state, current.right)
        return UNDEFINED

    def _tree_contains(self, state: ExecutionState, tree: HeapObject, args: List[Value]) -> Value:
        target = _expect_number(args[0], "BinaryTree.contains", None)
        current = self._tree_node(state, tree.root)
        while current is not None:
            here = _expect_number(current.value, "BinaryTree.contains", None)
            if target == here:
                return True
            current = self._tree_node(state, current.left if target < here else current.right)
        return False

    def _tree_in_order(self, state: ExecutionState, tree: HeapObject, args: List[Value]) -> Value:
        out: List[Value] = []
        pending: List[TreeNode] = []
        current = self._tree_node(state, tree.root)
        while pending or current is not None:
            while current is not None:
                pending.append(current)
                current = self._tree_node(state, current.left)
            node = pending.pop()
            out.append(node.value)
            current = self._tree_node(state, node.right)
        return state.alloc(Array(items=out))
