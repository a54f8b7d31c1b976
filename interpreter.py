from __future__ import annotations
import json
import logging
import math
import sys
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from coercion import (
    add,
    arithmetic,
    compare,
    is_number,
    loose_equals,
    negate,
    normalize,
    strict_equals,
    truthy,
    value_to_string,
)
from heap import (
    UNDEFINED,
    Array,
    BinaryTree,
    CALL_DONE,
    CallNode,
    CallTrace,
    Class,
    ExecutionState,
    Function,
    Instance,
    Object,
    Queue,
    Ref,
    RunResult,
    Stack,
    StackFrame,
    Step,
    TraceLimitError,
    TraceRuntimeError,
    TreeNode,
    Value,
)
from hooks import HookRegistry, StepContext
from nodes import Node, field, node_line, node_list, node_type
from structures import StructureMethods


logger = logging.getLogger(__name__)

MAX_OPS = 5000
MAX_CALL_DEPTH = 200
# Writes past the end of an array pad with undefined up to this length.
MAX_ARRAY_LENGTH = 10000

# Python frames consumed per interpreted call, with room for nested expressions.
_HOST_FRAMES_PER_CALL = 25

THIS_BINDING = "this"
CLASS_REF_BINDING = "__classRef"
CLASS_NAME_BINDING = "__className"
SUPER_CLASS_BINDING = "__superClass"

BUILTIN_CONSTRUCTORS = {
    "Stack": Stack,
    "Queue": Queue,
    "BinaryTree": BinaryTree,
}

GLOBAL_CONSTANTS = {
    "undefined": UNDEFINED,
    "NaN": math.nan,
    "Infinity": math.inf,
}

COMPOUND_ASSIGNMENT = {
    "+=": "+",
    "-=": "-",
    "*=": "*",
    "/=": "/",
    "%=": "%",
}

_UNBOUND = object()


NORMAL = "normal"
RETURN = "return"
BREAK = "break"
CONTINUE = "continue"


@dataclass(frozen=True)
class Completion:
    """Outcome of executing a statement.

    ``RETURN`` is consumed by the enclosing function body, ``BREAK`` and
    ``CONTINUE`` by the nearest loop; everything else passes it upward.
    """

    kind: str
    value: Value = UNDEFINED


COMPLETED = Completion(NORMAL)
BROKE = Completion(BREAK)
CONTINUED = Completion(CONTINUE)


class Interpreter:
    def __init__(
        self,
        *,
        max_ops: int = MAX_OPS,
        max_call_depth: int = MAX_CALL_DEPTH,
        hooks: Optional[HookRegistry] = None,
    ) -> None:
        self.max_ops = max_ops
        self.max_call_depth = max_call_depth
        self.hook_registry = hooks if hooks is not None else HookRegistry()
        self.structures = StructureMethods()
        self._reset()

    def _reset(self) -> None:
        self.state = ExecutionState()
        self.steps: List[Step] = []
        self.ops_remaining = self.max_ops
        # Line of the call expression that pushed each non-global frame.
        self.call_sites: List[int] = []
        self._call_trace_ref: Optional[Ref] = None
        self.last_error: Optional[TraceRuntimeError] = None

    # ---- run driver ----

    def run(self, program: Node) -> RunResult:
        self._reset()
        statements = list(program) if isinstance(program, list) else node_list(program, "body")
        result = RunResult(steps=self.steps)
        logger.debug("run started: %d top-level statements", len(statements))

        previous_limit = sys.getrecursionlimit()
        needed = self.max_call_depth * _HOST_FRAMES_PER_CALL + 1000
        if previous_limit < needed:
            sys.setrecursionlimit(needed)
        try:
            self._record("Start")
            self._emit_event("program_start", self, program)
            completion = self._execute_block(statements)
            if completion.kind == BREAK:
                raise TraceRuntimeError("break used outside a loop", line=self.state.current_line, rule="BreakStatement")
            if completion.kind == CONTINUE:
                raise TraceRuntimeError("continue used outside a loop", line=self.state.current_line, rule="ContinueStatement")
            if completion.kind == RETURN:
                raise TraceRuntimeError("return used outside a function", line=self.state.current_line, rule="ReturnStatement")
            self._record("Done")
            self._emit_event("program_end", self)
        except TraceRuntimeError as error:
            self._fail(result, error)
        except RecursionError:
            self._fail(
                result,
                TraceLimitError(
                    f"Stopped: max call depth ({self.max_call_depth}) exceeded",
                    line=self.state.current_line,
                    rule="DEPTH",
                ),
            )
        except Exception as exc:
            # Unexpected host exceptions become a reported error.
            logger.debug("internal error during run", exc_info=True)
            self._fail(
                result,
                TraceRuntimeError(f"Internal interpreter error: {exc}", line=self.state.current_line, rule="internal"),
            )
        finally:
            if sys.getrecursionlimit() != previous_limit:
                sys.setrecursionlimit(previous_limit)
        logger.debug("run finished: %d steps, error=%r", len(self.steps), result.error)
        return result

    def _fail(self, result: RunResult, error: TraceRuntimeError) -> None:
        if error.line is None:
            error.line = self.state.current_line
        error.step_index = len(self.steps) - 1 if self.steps else None
        self.last_error = error
        result.error = error.message
        result.error_line = error.line
        logger.info("run aborted after %d steps: %s", len(self.steps), error.message)
        try:
            self.hook_registry.emit("on_error", self, error)
        except Exception:
            logger.exception("on_error hook failed")

    # ---- step recording ----

    def _record(self, label: str, line: Optional[int] = None) -> None:
        if line is not None:
            self.state.current_line = line
        self.steps.append(Step(label=label, state=self.state.snapshot()))
        ctx = StepContext(step_index=len(self.steps) - 1, label=label, line=self.state.current_line)
        try:
            self.hook_registry.after_step(self, ctx)
        except TraceRuntimeError:
            raise
        except Exception as exc:
            raise TraceRuntimeError(f"Step rule failed: {exc}", line=ctx.line, rule="HOOK")

    def _emit_event(self, event: str, *args: Any, **kwargs: Any) -> None:
        try:
            self.hook_registry.emit(event, *args, **kwargs)
        except TraceRuntimeError:
            raise
        except Exception as exc:
            raise TraceRuntimeError(f"Hook '{event}' failed: {exc}", line=self.state.current_line, rule="HOOK")

    def _tick(self, line: int) -> None:
        if self.ops_remaining <= 0:
            raise TraceLimitError("Stopped: too many operations (possible infinite loop)", line=line, rule="BUDGET")
        self.ops_remaining -= 1

    def _render(self, value: Value) -> str:
        return value_to_string(self.state, value)

    # ---- statements ----

    def _execute_block(self, statements: List[Node]) -> Completion:
        for statement in statements:
            completion = self._execute_statement(statement)
            if completion.kind != NORMAL:
                return completion
        return COMPLETED

    def _run_body(self, node: Node) -> Completion:
        if node is None:
            return COMPLETED
        if node_type(node) == "BlockStatement":
            return self._execute_block(node_list(node, "body"))
        return self._execute_statement(node)

    def _execute_statement(self, node: Node) -> Completion:
        line = node_line(node)
        self._tick(line)
        self.state.current_line = line
        self._emit_event("before_statement", self, node)
        try:
            completion = self._dispatch_statement(node, line)
        except TraceRuntimeError as err:
            if err.line is None:
                err.line = line
            raise
        self._emit_event("after_statement", self, node, completion)
        return completion

    def _dispatch_statement(self, node: Node, line: int) -> Completion:
        kind = node_type(node)
        if kind == "ExpressionStatement":
            return self._execute_expression_statement(node, line)
        if kind == "VariableDeclaration":
            return self._execute_variable_declaration(node, line)
        if kind == "FunctionDeclaration":
            return self._execute_function_declaration(node, line)
        if kind == "ClassDeclaration":
            return self._execute_class_declaration(node, line)
        if kind == "ReturnStatement":
            argument = field(node, "argument")
            value = self.evaluate(argument) if argument is not None else UNDEFINED
            self._record(f"return {self._render(value)}", line)
            return Completion(RETURN, value)
        if kind == "IfStatement":
            test = self.evaluate(field(node, "test"))
            self._record(f"if ({self._render(test)})", line)
            if truthy(test):
                return self._run_body(field(node, "consequent"))
            return self._run_body(field(node, "alternate"))
        if kind == "BlockStatement":
            return self._execute_block(node_list(node, "body"))
        if kind == "WhileStatement":
            return self._execute_while(node, line)
        if kind == "ForStatement":
            return self._execute_for(node, line)
        if kind == "BreakStatement":
            self._reject_label(node, "break", line)
            self._record("break", line)
            return BROKE
        if kind == "ContinueStatement":
            self._reject_label(node, "continue", line)
            self._record("continue", line)
            return CONTINUED
        if kind == "EmptyStatement":
            return COMPLETED
        raise TraceRuntimeError(f"Unsupported statement: {kind}", line=line, rule=str(kind))

    def _reject_label(self, node: Node, keyword: str, line: int) -> None:
        if field(node, "label") is not None:
            raise TraceRuntimeError(f"Labeled {keyword} is not supported", line=line, rule=node_type(node))

    def _execute_expression_statement(self, node: Node, line: int) -> Completion:
        expression = field(node, "expression")
        value = self.evaluate(expression)
        # Assignments and updates record their own step.
        if node_type(expression) not in ("AssignmentExpression", "UpdateExpression"):
            self._record(self._expression_label(expression, value), line)
        return COMPLETED

    def _expression_label(self, expression: Node, value: Value) -> str:
        kind = node_type(expression)
        if kind == "CallExpression":
            callee = field(expression, "callee")
            callee_kind = node_type(callee)
            if callee_kind == "Identifier":
                return f"call {field(callee, 'name')}()"
            if callee_kind == "Super":
                return "call super()"
            if callee_kind == "MemberExpression":
                prop = field(callee, "property")
                if not field(callee, "computed") and node_type(prop) == "Identifier":
                    owner = self._describe(field(callee, "object"))
                    return f"call {owner}.{field(prop, 'name')}()"
                return "call method"
            return "call"
        if kind == "NewExpression":
            return f"new {self._describe(field(expression, 'callee'))}"
        return f"expression -> {self._render(value)}"

    def _execute_variable_declaration(self, node: Node, line: int) -> Completion:
        keyword = field(node, "kind", "let")
        for declarator in node_list(node, "declarations"):
            target = field(declarator, "id")
            if node_type(target) != "Identifier":
                raise TraceRuntimeError("Only simple variable declarations are supported", line=line, rule="VariableDeclaration")
            name = field(target, "name")
            init = field(declarator, "init")
            value = self.evaluate(init) if init is not None else UNDEFINED
            self.state.declare(name, value)
            self._record(f"{keyword} {name} = {self._render(value)}", line)
        return COMPLETED

    def _param_names(self, fn_node: Node, line: int) -> List[str]:
        names: List[str] = []
        for param in node_list(fn_node, "params"):
            if node_type(param) != "Identifier":
                raise TraceRuntimeError("Only simple identifier parameters are supported", line=line, rule="params")
            names.append(field(param, "name"))
        return names

    def _execute_function_declaration(self, node: Node, line: int) -> Completion:
        name = field(field(node, "id"), "name")
        if not name:
            raise TraceRuntimeError("Function must have a name", line=line, rule="FunctionDeclaration")
        params = self._param_names(node, line)
        ref = self.state.alloc(Function(name=name, params=params, body=field(node, "body")))
        self.state.declare(name, ref)
        self._record(f"function {name}({', '.join(params)})", line)
        return COMPLETED

    def _execute_class_declaration(self, node: Node, line: int) -> Completion:
        name = field(field(node, "id"), "name")
        if not name:
            raise TraceRuntimeError("Class must have a name", line=line, rule="ClassDeclaration")

        super_ref: Optional[Ref] = None
        super_node = field(node, "superClass")
        if super_node is not None:
            if node_type(super_node) != "Identifier":
                raise TraceRuntimeError("Only 'extends Identifier' is supported", line=line, rule="ClassDeclaration")
            super_name = field(super_node, "name")
            frame = self.state.find_frame(super_name)
            candidate = frame.locals[super_name] if frame is not None else None
            if self._as_class(candidate) is None:
                raise TraceRuntimeError(f"Unknown superclass: {super_name}", line=line, rule="ClassDeclaration")
            super_ref = candidate

        cls = Class(name=name, super_class=super_ref)
        class_ref = self.state.alloc(cls)
        for item in node_list(field(node, "body"), "body"):
            if node_type(item) != "MethodDefinition":
                continue
            key = field(item, "key")
            method_name = field(key, "name")
            if method_name is None:
                method_name = field(key, "value")
            fn_node = field(item, "value")
            if method_name is None or fn_node is None:
                continue
            cls.methods[str(method_name)] = self.state.alloc(
                Function(
                    name=f"{name}.{method_name}",
                    params=self._param_names(fn_node, line),
                    body=field(fn_node, "body"),
                )
            )
        self.state.declare(name, class_ref)
        if super_ref is not None:
            self._record(f"class {name} extends {field(super_node, 'name')}", line)
        else:
            self._record(f"class {name}", line)
        return COMPLETED

    def _execute_while(self, node: Node, line: int) -> Completion:
        test = field(node, "test")
        body = field(node, "body")
        self._record("while start", line)
        while truthy(self.evaluate(test)):
            completion = self._run_body(body)
            if completion.kind == BREAK:
                break
            if completion.kind == RETURN:
                return completion
            self._tick(line)
        self._record("while end", line)
        return COMPLETED

    def _execute_for(self, node: Node, line: int) -> Completion:
        init = field(node, "init")
        if init is not None:
            if node_type(init) == "VariableDeclaration":
                self._execute_statement(init)
            else:
                self.evaluate(init)
        test = field(node, "test")
        update = field(node, "update")
        body = field(node, "body")
        self._record("for start", line)
        while test is None or truthy(self.evaluate(test)):
            completion = self._run_body(body)
            if completion.kind == BREAK:
                break
            if completion.kind == RETURN:
                return completion
            # Normal completion and continue both run the update exactly once.
            if update is not None:
                self.evaluate(update)
            self._tick(line)
        self._record("for end", line)
        return COMPLETED

    def _execute_function_body(self, body: Node) -> Value:
        completion = self._run_body(body)
        if completion.kind == RETURN:
            return completion.value
        if completion.kind == BREAK:
            raise TraceRuntimeError("break used outside a loop", line=self.state.current_line, rule="BreakStatement")
        if completion.kind == CONTINUE:
            raise TraceRuntimeError("continue used outside a loop", line=self.state.current_line, rule="ContinueStatement")
        return UNDEFINED

    # ---- expressions ----

    def evaluate(self, node: Node) -> Value:
        if node is None:
            return UNDEFINED
        kind = node_type(node)
        line = node_line(node)

        if kind == "Literal":
            if field(node, "regex") is not None:
                raise TraceRuntimeError("Regular expressions are not supported", line=line, rule="Literal")
            value = field(node, "value")
            return normalize(value) if is_number(value) else value
        if kind == "Identifier":
            name = field(node, "name")
            frame = self.state.find_frame(name)
            if frame is not None:
                return frame.locals[name]
            if name in GLOBAL_CONSTANTS:
                return GLOBAL_CONSTANTS[name]
            raise TraceRuntimeError(f"Undefined identifier: {name}", line=line, rule="Identifier")
        if kind == "ThisExpression":
            return self._current_this(line)
        if kind == "ArrayExpression":
            items: List[Value] = []
            for element in node_list(node, "elements"):
                if node_type(element) == "SpreadElement":
                    raise TraceRuntimeError("Spread elements are not supported", line=line, rule=kind)
                items.append(self.evaluate(element))
            return self.state.alloc(Array(items=items))
        if kind == "ObjectExpression":
            return self._evaluate_object(node, line)
        if kind == "UnaryExpression":
            operator = field(node, "operator")
            value = self.evaluate(field(node, "argument"))
            if operator == "!":
                return not truthy(value)
            if operator == "-":
                return negate(value)
            raise TraceRuntimeError(f"Unsupported unary operator: {operator}", line=line, rule=kind)
        if kind == "LogicalExpression":
            operator = field(node, "operator")
            left = self.evaluate(field(node, "left"))
            if operator == "&&":
                return self.evaluate(field(node, "right")) if truthy(left) else left
            if operator == "||":
                return left if truthy(left) else self.evaluate(field(node, "right"))
            raise TraceRuntimeError(f"Unsupported operator: {operator}", line=line, rule=kind)
        if kind == "BinaryExpression":
            return self._evaluate_binary(node, line)
        if kind == "ConditionalExpression":
            if truthy(self.evaluate(field(node, "test"))):
                return self.evaluate(field(node, "consequent"))
            return self.evaluate(field(node, "alternate"))
        if kind == "MemberExpression":
            target_node = field(node, "object")
            if node_type(target_node) == "Super":
                raise TraceRuntimeError("super members can only be called", line=line, rule=kind)
            target = self.evaluate(target_node)
            key = self._member_key(node)
            return self._get_member(target, key, line)
        if kind == "AssignmentExpression":
            return self._evaluate_assignment(node, line)
        if kind == "UpdateExpression":
            return self._evaluate_update(node, line)
        if kind == "NewExpression":
            return self._evaluate_new(node, line)
        if kind == "CallExpression":
            return self._evaluate_call(node, line)
        raise TraceRuntimeError(f"Unsupported expression: {kind}", line=line, rule=str(kind))

    def _evaluate_object(self, node: Node, line: int) -> Value:
        props: Dict[str, Value] = {}
        for prop in node_list(node, "properties"):
            if node_type(prop) != "Property":
                raise TraceRuntimeError(f"Unsupported object member: {node_type(prop)}", line=line, rule="ObjectExpression")
            key_node = field(prop, "key")
            if field(prop, "computed"):
                key = self._render(self.evaluate(key_node))
            elif node_type(key_node) == "Identifier":
                key = field(key_node, "name")
            else:
                key = self._render(self.evaluate(key_node))
            props[key] = self.evaluate(field(prop, "value"))
        return self.state.alloc(Object(props=props))

    def _evaluate_binary(self, node: Node, line: int) -> Value:
        operator = field(node, "operator")
        left = self.evaluate(field(node, "left"))
        right = self.evaluate(field(node, "right"))
        if operator == "+":
            return add(self.state, left, right)
        if operator in ("-", "*", "/", "%"):
            return arithmetic(operator, left, right)
        if operator == "==":
            return loose_equals(left, right)
        if operator == "!=":
            return not loose_equals(left, right)
        if operator == "===":
            return strict_equals(left, right)
        if operator == "!==":
            return not strict_equals(left, right)
        if operator in ("<", "<=", ">", ">="):
            return compare(operator, left, right)
        raise TraceRuntimeError(f"Unsupported operator: {operator}", line=line, rule="BinaryExpression")

    def _expect_number(self, value: Value, line: int, rule: str) -> Value:
        if not is_number(value):
            raise TraceRuntimeError(f"Expected number, got {self._render(value)}", line=line, rule=rule)
        return value

    def _member_key(self, node: Node) -> Value:
        prop = field(node, "property")
        if field(node, "computed"):
            return self.evaluate(prop)
        return field(prop, "name")

    def _array_index(self, key: Value) -> Optional[int]:
        if is_number(key) and float(key).is_integer() and key >= 0:
            return int(key)
        if isinstance(key, str) and key.isdigit():
            return int(key)
        return None

    def _get_member(self, target: Value, key: Value, line: int) -> Value:
        if not isinstance(target, Ref):
            raise TraceRuntimeError(f"Member access on non-object {self._render(target)}", line=line, rule="MemberExpression")
        obj = self.state.deref(target)
        if isinstance(obj, Array):
            if key == "length":
                return len(obj.items)
            index = self._array_index(key)
            if index is None or index >= len(obj.items):
                return UNDEFINED
            return obj.items[index]
        if isinstance(obj, TreeNode):
            if key == "value":
                return obj.value
            if key == "left":
                return obj.left
            if key == "right":
                return obj.right
        elif isinstance(obj, BinaryTree):
            if key == "root":
                return obj.root
        elif isinstance(obj, (Object, Instance)):
            return obj.props.get(self._render(key), UNDEFINED)
        elif isinstance(obj, Class):
            return obj.name if key == "name" else UNDEFINED
        raise TraceRuntimeError(f"Unsupported member '{self._render(key)}' on {obj.kind}", line=line, rule="MemberExpression")

    def _describe(self, node: Node) -> str:
        kind = node_type(node)
        if kind == "Identifier":
            return field(node, "name")
        if kind == "ThisExpression":
            return "this"
        if kind == "Super":
            return "super"
        if kind == "Literal":
            return self._render(field(node, "value"))
        if kind == "MemberExpression":
            owner = self._describe(field(node, "object"))
            prop = field(node, "property")
            if field(node, "computed"):
                inner = self._describe(prop) if node_type(prop) in ("Identifier", "Literal") else "..."
                return f"{owner}[{inner}]"
            return f"{owner}.{field(prop, 'name')}"
        return "(expression)"

    def _resolve_target(self, target: Node, line: int) -> Tuple[Any, Value]:
        """Evaluate an assignment target's owner and key once.

        Identifiers resolve to ``(_UNBOUND, name)``; members to ``(owner, key)``.
        """
        kind = node_type(target)
        if kind == "Identifier":
            return _UNBOUND, field(target, "name")
        if kind != "MemberExpression":
            raise TraceRuntimeError("Unsupported assignment target", line=line, rule="AssignmentExpression")
        owner = self.evaluate(field(target, "object"))
        return owner, self._member_key(target)

    def _read_target(self, owner: Any, key: Value, line: int) -> Value:
        if owner is _UNBOUND:
            frame = self.state.find_frame(key)
            if frame is None:
                raise TraceRuntimeError(f"Undefined identifier: {key}", line=line, rule="Identifier")
            return frame.locals[key]
        return self._get_member(owner, key, line)

    def _write_target(self, owner: Any, key: Value, value: Value, line: int) -> None:
        if owner is _UNBOUND:
            self.state.assign(key, value)
            return
        if not isinstance(owner, Ref):
            raise TraceRuntimeError("Assignment to member on non-object", line=line, rule="AssignmentExpression")
        obj = self.state.deref(owner)
        if isinstance(obj, Array):
            index = self._array_index(key)
            if index is None:
                raise TraceRuntimeError("Invalid array index", line=line, rule="AssignmentExpression")
            if index >= MAX_ARRAY_LENGTH:
                raise TraceRuntimeError(
                    f"Array index {index} exceeds the maximum array length ({MAX_ARRAY_LENGTH})",
                    line=line,
                    rule="AssignmentExpression",
                )
            if index >= len(obj.items):
                obj.items.extend([UNDEFINED] * (index - len(obj.items) + 1))
            obj.items[index] = value
            return
        if isinstance(obj, (Object, Instance)):
            name = self._render(key)
            obj.props[name] = value
            if isinstance(obj, Instance):
                writer = self._current_class_name()
                if writer:
                    obj.prop_origin[name] = writer
            return
        raise TraceRuntimeError(f"Unsupported member assignment on {obj.kind}", line=line, rule="AssignmentExpression")

    def _evaluate_assignment(self, node: Node, line: int) -> Value:
        operator = field(node, "operator")
        left = field(node, "left")
        right_value = self.evaluate(field(node, "right"))
        target = self._describe(left)
        owner, key = self._resolve_target(left, line)

        if operator == "=":
            self._write_target(owner, key, right_value, line)
            self._record(f"{target} = {self._render(right_value)}", line)
            return right_value

        if operator not in COMPOUND_ASSIGNMENT:
            raise TraceRuntimeError(f"Unsupported assignment operator: {operator}", line=line, rule="AssignmentExpression")
        current = self._expect_number(self._read_target(owner, key, line), line, operator)
        self._expect_number(right_value, line, operator)
        result = arithmetic(COMPOUND_ASSIGNMENT[operator], current, right_value)
        self._write_target(owner, key, result, line)
        self._record(f"{target} {operator} {self._render(right_value)} -> {self._render(result)}", line)
        return result

    def _evaluate_update(self, node: Node, line: int) -> Value:
        operator = field(node, "operator")
        argument = field(node, "argument")
        if node_type(argument) not in ("Identifier", "MemberExpression"):
            raise TraceRuntimeError("Unsupported update target", line=line, rule="UpdateExpression")
        owner, key = self._resolve_target(argument, line)
        current = self._expect_number(self._read_target(owner, key, line), line, operator)
        if operator == "++":
            result = arithmetic("+", current, 1)
        elif operator == "--":
            result = arithmetic("-", current, 1)
        else:
            raise TraceRuntimeError(f"Unsupported update operator: {operator}", line=line, rule="UpdateExpression")
        self._write_target(owner, key, result, line)
        target = self._describe(argument)
        text = f"{operator}{target}" if field(node, "prefix") else f"{target}{operator}"
        self._record(f"{text} -> {self._render(result)}", line)
        return result if field(node, "prefix") else current

    def _evaluate_args(self, node: Node, line: int) -> List[Value]:
        args: List[Value] = []
        for arg in node_list(node, "arguments"):
            if node_type(arg) == "SpreadElement":
                raise TraceRuntimeError("Spread arguments are not supported", line=line, rule="CallExpression")
            args.append(self.evaluate(arg))
        return args

    def _evaluate_new(self, node: Node, line: int) -> Value:
        callee = field(node, "callee")
        if node_type(callee) != "Identifier":
            raise TraceRuntimeError("Only new ClassName(...) is supported", line=line, rule="NewExpression")
        name = field(callee, "name")
        if name in BUILTIN_CONSTRUCTORS and self.state.find_frame(name) is None:
            return self.state.alloc(BUILTIN_CONSTRUCTORS[name]())
        class_ref = self.evaluate(callee)
        cls = self._as_class(class_ref)
        if cls is None:
            raise TraceRuntimeError(f"{name} is not a class", line=line, rule="NewExpression")

        instance_ref = self.state.alloc(Instance(class_ref=class_ref))
        ctor_ref, owner_ref = self._resolve_method(class_ref, "constructor")
        args = self._evaluate_args(node, line)
        if ctor_ref is not None:
            self._invoke(
                ctor_ref,
                f"{cls.name}.constructor",
                args,
                line,
                this=instance_ref,
                class_ref=owner_ref,
            )
        return instance_ref

    def _evaluate_call(self, node: Node, line: int) -> Value:
        callee = field(node, "callee")
        callee_kind = node_type(callee)

        if callee_kind == "Super":
            super_ref = self._current_super_class()
            if super_ref is None:
                raise TraceRuntimeError("super() used outside of a derived class", line=line, rule="Super")
            ctor_ref, owner_ref = self._resolve_method(super_ref, "constructor")
            if ctor_ref is None:
                return UNDEFINED
            args = self._evaluate_args(node, line)
            return self._invoke(ctor_ref, "super.constructor", args, line, this=self._current_this(line), class_ref=owner_ref)

        if callee_kind == "Identifier":
            name = field(callee, "name")
            if name in BUILTIN_CONSTRUCTORS and self.state.find_frame(name) is None:
                return self.state.alloc(BUILTIN_CONSTRUCTORS[name]())
            args = self._evaluate_args(node, line)
            return self._invoke(self.evaluate(callee), name, args, line)

        if callee_kind == "MemberExpression":
            target_node = field(callee, "object")
            if self._is_console_log(callee):
                args = self._evaluate_args(node, line)
                self.state.console.append(" ".join(self._render(arg) for arg in args))
                return UNDEFINED

            if node_type(target_node) == "Super":
                super_ref = self._current_super_class()
                if super_ref is None:
                    raise TraceRuntimeError("super used outside of a derived class", line=line, rule="Super")
                prop = self._render(self._member_key(callee))
                method_ref, owner_ref = self._resolve_method(super_ref, prop)
                if method_ref is None:
                    raise TraceRuntimeError(f"super has no method {prop}", line=line, rule="Super")
                args = self._evaluate_args(node, line)
                return self._invoke(method_ref, f"super.{prop}", args, line, this=self._current_this(line), class_ref=owner_ref)

            target = self.evaluate(target_node)
            prop = self._render(self._member_key(callee))
            args = self._evaluate_args(node, line)
            return self._call_member(target, prop, args, line)

        fn_value = self.evaluate(callee)
        args = self._evaluate_args(node, line)
        fn = self.state.heap.get(fn_value.id) if isinstance(fn_value, Ref) else None
        display = fn.name if isinstance(fn, Function) else "(anonymous)"
        return self._invoke(fn_value, display, args, line)

    def _is_console_log(self, callee: Node) -> bool:
        target = field(callee, "object")
        prop = field(callee, "property")
        return (
            node_type(target) == "Identifier"
            and field(target, "name") == "console"
            and self.state.find_frame("console") is None
            and not field(callee, "computed")
            and field(prop, "name") == "log"
        )

    def _call_member(self, target: Value, name: str, args: List[Value], line: int) -> Value:
        if not isinstance(target, Ref):
            raise TraceRuntimeError(f"Call of '{name}' on non-object {self._render(target)}", line=line, rule="CallExpression")
        obj = self.state.deref(target)
        if isinstance(obj, Instance):
            own = obj.props.get(name)
            if self._is_function(own):
                return self._invoke(own, name, args, line, this=target)
            cls = self._as_class(obj.class_ref)
            class_name = cls.name if cls is not None else "instance"
            method_ref, owner_ref = self._resolve_method(obj.class_ref, name)
            if method_ref is None:
                raise TraceRuntimeError(f"Method {name} not found on {class_name}", line=line, rule="CallExpression")
            return self._invoke(method_ref, f"{class_name}.{name}", args, line, this=target, class_ref=owner_ref)
        if isinstance(obj, Object):
            own = obj.props.get(name)
            if not self._is_function(own):
                raise TraceRuntimeError(f"{name} is not a function", line=line, rule="CallExpression")
            return self._invoke(own, name, args, line, this=target)
        return self.structures.invoke(self.state, obj, name, args, line)

    # ---- classes and invocation ----

    def _is_function(self, value: Value) -> bool:
        return isinstance(value, Ref) and isinstance(self.state.heap.get(value.id), Function)

    def _as_class(self, value: Value) -> Optional[Class]:
        if not isinstance(value, Ref):
            return None
        obj = self.state.heap.get(value.id)
        return obj if isinstance(obj, Class) else None

    def _resolve_method(self, class_ref: Value, name: str) -> Tuple[Optional[Ref], Optional[Ref]]:
        """Find ``name`` along the superclass chain; returns (method, defining class)."""
        current = class_ref
        while current is not None:
            cls = self._as_class(current)
            if cls is None:
                return None, None
            method = cls.methods.get(name)
            if method is not None:
                return method, current
            current = cls.super_class
        return None, None

    def _current_this(self, line: int) -> Value:
        for frame in reversed(self.state.stack):
            if THIS_BINDING in frame.locals:
                return frame.locals[THIS_BINDING]
        raise TraceRuntimeError("this used outside of a method/constructor", line=line, rule="ThisExpression")

    def _current_class_name(self) -> str:
        for frame in reversed(self.state.stack):
            name = frame.locals.get(CLASS_NAME_BINDING)
            if isinstance(name, str):
                return name
        return ""

    def _current_super_class(self) -> Optional[Ref]:
        for frame in reversed(self.state.stack):
            value = frame.locals.get(SUPER_CLASS_BINDING)
            if isinstance(value, Ref):
                return value
        return None

    def _ensure_call_trace(self) -> CallTrace:
        if self._call_trace_ref is None:
            self._call_trace_ref = self.state.alloc(CallTrace())
        return self.state.deref(self._call_trace_ref)

    def _invoke(
        self,
        fn_ref: Value,
        display: str,
        args: List[Value],
        line: int,
        *,
        this: Any = _UNBOUND,
        class_ref: Optional[Ref] = None,
    ) -> Value:
        fn = self.state.heap.get(fn_ref.id) if isinstance(fn_ref, Ref) else None
        if not isinstance(fn, Function):
            raise TraceRuntimeError(f"{display} is not a function", line=line, rule="CallExpression")
        if len(self.state.stack) >= self.max_call_depth:
            raise TraceLimitError(f"Stopped: max call depth ({self.max_call_depth}) exceeded", line=line, rule="DEPTH")

        trace = self._ensure_call_trace()
        node_ref = self.state.alloc(
            CallNode(fn_name=display, at_line=line, args=list(args), depth=len(self.state.stack))
        )
        if isinstance(trace.current, Ref):
            parent = self.state.deref(trace.current)
            if isinstance(parent, CallNode):
                parent.children.append(node_ref)
        elif trace.root is None:
            trace.root = node_ref
        previous = trace.current
        trace.current = node_ref

        frame = StackFrame(name=display)
        for i, param in enumerate(fn.params):
            frame.locals[param] = args[i] if i < len(args) else UNDEFINED
        if this is not _UNBOUND:
            frame.locals[THIS_BINDING] = this
        if class_ref is not None:
            cls = self._as_class(class_ref)
            frame.locals[CLASS_REF_BINDING] = class_ref
            frame.locals[CLASS_NAME_BINDING] = cls.name if cls is not None else ""
            frame.locals[SUPER_CLASS_BINDING] = cls.super_class if cls is not None else None

        self.state.stack.append(frame)
        self.call_sites.append(line)
        logger.debug("enter %s (depth %d)", display, len(self.state.stack) - 1)
        self._emit_event("before_call", self, display, args, line)
        self._record(f"enter {display}", line)

        result = self._execute_function_body(fn.body)

        self.state.stack.pop()
        self.call_sites.pop()
        call_node = self.state.deref(node_ref)
        call_node.status = CALL_DONE
        call_node.return_value = result
        trace.current = previous

        self._emit_event("after_call", self, display, result, line)
        self._record(f"exit {display} -> {self._render(result)}", line)
        return result


def run(
    program: Node,
    *,
    max_ops: int = MAX_OPS,
    max_call_depth: int = MAX_CALL_DEPTH,
    hooks: Optional[HookRegistry] = None,
) -> RunResult:
    """Execute ``program`` (an ESTree ``Program`` node) and return its step trace."""
    return Interpreter(max_ops=max_ops, max_call_depth=max_call_depth, hooks=hooks).run(program)


@dataclass
class TracebackFrame:
    name: str
    line: Optional[int]


class TracebackFormatter:
    def __init__(self, interpreter: Interpreter) -> None:
        self.interpreter = interpreter

    def build_frames(self, error: TraceRuntimeError) -> List[TracebackFrame]:
        stack = self.interpreter.state.stack
        sites = self.interpreter.call_sites
        frames: List[TracebackFrame] = []
        for index, frame in enumerate(stack):
            if index + 1 < len(stack):
                line = sites[index] if index < len(sites) else None
            else:
                line = error.line
            frames.append(TracebackFrame(name=frame.name, line=line))
        return frames

    def format_text(self, error: TraceRuntimeError) -> str:
        lines = ["Traceback (most recent call last):"]
        for frame in self.build_frames(error):
            where = f"line {frame.line}" if frame.line is not None else "<unknown line>"
            lines.append(f"  {where}, in {frame.name}")
        if error.step_index is not None:
            lines.append(f"    Last recorded step: {error.step_index}")
        rule = error.rule or "runtime"
        lines.append(f"{error.__class__.__name__}: {error.message} (rule: {rule})")
        return "\n".join(lines)

    def to_json(self, error: TraceRuntimeError) -> str:
        data = {
            "error": {
                "type": error.__class__.__name__,
                "message": error.message,
                "rule": error.rule,
                "line": error.line,
                "failing_step_index": error.step_index,
            },
            "traceback": [
                {"frame_index": index, "name": frame.name, "line": frame.line}
                for index, frame in enumerate(self.build_frames(error))
            ],
        }
        return json.dumps(data, indent=2)
