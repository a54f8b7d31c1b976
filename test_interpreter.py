"""
test_interpreter.py

End-to-end tests for the step-recording interpreter.
"""

import json
import math

import pytest
from heap import UNDEFINED, CallNode, CallTrace, Instance, Ref
from hooks import HookError, HookRegistry
from interpreter import Interpreter, TracebackFormatter, run
from nodes import (
    array,
    assign,
    binary,
    boolean,
    break_,
    call,
    continue_,
    expr,
    for_,
    function,
    ident,
    if_,
    index,
    klass,
    let,
    member,
    method,
    method_call,
    new,
    num,
    obj,
    program,
    ret,
    string,
    super_,
    this,
    unary,
    update,
    while_,
)


def global_value(result, name):
    return result.final_state.global_frame.locals[name]


def heap_object(result, ref):
    assert isinstance(ref, Ref)
    return result.final_state.heap[ref.id]


def console_log(*args, line=1):
    return expr(method_call(ident("console", line=line), "log", *args, line=line))


# ============================================================
# Fixtures
# ============================================================

@pytest.fixture
def fib_program():
    """function fib(n) { if (n <= 1) { return n; } return fib(n-1) + fib(n-2); } let r = fib(6);"""
    body = [
        if_(binary(ident("n"), "<=", num(1)), [ret(ident("n"), line=2)], line=2),
        ret(
            binary(
                call(ident("fib"), binary(ident("n"), "-", num(1)), line=3),
                "+",
                call(ident("fib"), binary(ident("n"), "-", num(2)), line=3),
            ),
            line=3,
        ),
    ]
    return program(
        function("fib", ["n"], body, line=1),
        let("r", call(ident("fib"), num(6), line=5), line=5),
    )


@pytest.fixture
def class_program():
    """Animal/Dog hierarchy where Dog.speak calls super.speak."""
    animal = klass(
        "Animal",
        [
            method("constructor", ["name"], [expr(assign(member(this(), "name"), ident("name")), line=2)]),
            method("speak", [], [console_log(string("animal sound"), line=3)]),
        ],
        line=1,
    )
    dog = klass(
        "Dog",
        [
            method(
                "constructor",
                ["name"],
                [
                    expr(call(super_(), ident("name")), line=6),
                    expr(assign(member(this(), "breed"), string("lab")), line=7),
                ],
            ),
            method(
                "speak",
                [],
                [
                    expr(call(member(super_(), "speak")), line=9),
                    console_log(string("woof"), line=10),
                ],
            ),
        ],
        extends="Animal",
        line=5,
    )
    return program(
        animal,
        dog,
        let("d", new("Dog", string("rex")), line=12),
        expr(method_call(ident("d"), "speak"), line=13),
    )


# ============================================================
# Trace shape
# ============================================================

class TestTrace:
    """Tests for recorded steps."""

    def test_start_and_done(self):
        result = run(program(let("x", num(1))))
        assert result.ok
        assert result.labels() == ["Start", "let x = 1", "Done"]

    def test_deterministic(self, fib_program):
        assert run(fib_program).to_json() == run(fib_program).to_json()

    def test_snapshots_are_isolated(self):
        result = run(program(let("a", array(num(1), num(2))), expr(method_call(ident("a"), "push", num(3)))))
        assert result.labels() == ["Start", "let a = [1, 2]", "call a.push()", "Done"]
        ref = result.steps[1].state.global_frame.locals["a"]
        assert result.steps[1].state.heap[ref.id].items == [1, 2]
        assert result.steps[2].state.heap[ref.id].items == [1, 2, 3]

    def test_current_line_follows_statements(self):
        result = run(program(let("x", num(1), line=1), let("y", num(2), line=4)))
        assert [step.state.current_line for step in result.steps[1:3]] == [1, 4]

    def test_fresh_state_per_run(self, fib_program):
        interpreter = Interpreter()
        first = interpreter.run(fib_program)
        second = interpreter.run(fib_program)
        assert len(first.steps) == len(second.steps)
        assert second.steps[0].state.heap == {}

    def test_assignment_records_single_step(self):
        result = run(program(let("x", num(1)), expr(assign("x", num(5))), expr(assign("x", num(2), "+="))))
        assert result.labels() == ["Start", "let x = 1", "x = 5", "x += 2 -> 7", "Done"]


# ============================================================
# Functions and call trace
# ============================================================

class TestFunctions:
    """Tests for calls, frames and the call trace."""

    def test_fib(self, fib_program):
        result = run(fib_program)
        assert result.ok
        assert global_value(result, "r") == 8
        assert "function fib(n)" in result.labels()
        assert "exit fib -> 8" in result.labels()

    def test_call_trace_tree(self, fib_program):
        result = run(fib_program)
        traces = [o for o in result.final_state.heap.values() if isinstance(o, CallTrace)]
        assert len(traces) == 1
        root = heap_object(result, traces[0].root)
        assert isinstance(root, CallNode)
        assert (root.fn_name, root.args, root.depth) == ("fib", [6], 1)
        assert root.status == "done"
        assert root.return_value == 8
        children = [heap_object(result, child) for child in root.children]
        assert [child.args for child in children] == [[5], [4]]
        assert traces[0].current is None

    def test_frames_during_call(self, fib_program):
        result = run(fib_program)
        entered = next(step for step in result.steps if step.label == "enter fib")
        assert [frame.name for frame in entered.state.stack] == ["global", "fib"]
        assert entered.state.current_frame.locals == {"n": 6}

    def test_missing_arguments_are_undefined(self):
        result = run(program(function("f", ["a", "b"], [ret(ident("b"))]), let("r", call(ident("f"), num(1)))))
        assert global_value(result, "r") is UNDEFINED

    def test_dynamic_name_resolution(self):
        result = run(
            program(
                function("g", [], [ret(ident("x"))]),
                function("f", [], [let("x", num(5)), ret(call(ident("g")))]),
                let("r", call(ident("f"))),
            )
        )
        assert global_value(result, "r") == 5

    def test_call_depth_limit(self):
        result = run(
            program(
                function("f", ["n"], [ret(call(ident("f"), binary(ident("n"), "+", num(1))))]),
                expr(call(ident("f"), num(0)), line=2),
            )
        )
        assert result.error == "Stopped: max call depth (200) exceeded"
        assert result.steps

    def test_configured_call_depth(self):
        result = run(
            program(function("f", [], [expr(call(ident("f")))]), expr(call(ident("f")))),
            max_call_depth=5,
        )
        assert result.error == "Stopped: max call depth (5) exceeded"


# ============================================================
# Control flow
# ============================================================

class TestControlFlow:
    """Tests for loops, break and continue."""

    def test_for_with_continue_and_break(self):
        body = [
            if_(binary(ident("i"), "===", num(1)), [continue_()]),
            if_(binary(ident("i"), "===", num(3)), [break_()]),
            expr(assign("total", ident("i"), "+=")),
        ]
        result = run(
            program(
                let("total", num(0)),
                for_(let("i", num(0)), binary(ident("i"), "<", num(5)), update("i"), body),
            )
        )
        assert result.ok
        assert global_value(result, "total") == 2
        labels = result.labels()
        assert labels.count("i++ -> 2") == 1
        assert [label for label in labels if label.startswith("i++")] == ["i++ -> 1", "i++ -> 2", "i++ -> 3"]
        assert "continue" in labels and "break" in labels
        assert labels[-2] == "for end"

    def test_while_loop(self):
        result = run(
            program(
                let("i", num(0)),
                while_(binary(ident("i"), "<", num(3)), [expr(update("i"))]),
            )
        )
        assert global_value(result, "i") == 3
        assert result.labels()[2] == "while start"
        assert result.labels()[-2] == "while end"

    def test_infinite_loop_hits_budget(self):
        result = run(program(let("i", num(0)), while_(boolean(True), [expr(update("i", line=2))], line=1)))
        assert result.error == "Stopped: too many operations (possible infinite loop)"
        assert result.steps
        assert result.labels()[-1].startswith("i++ -> ")

    def test_configured_budget(self):
        result = run(program(while_(boolean(True), [])), max_ops=10)
        assert result.error == "Stopped: too many operations (possible infinite loop)"

    def test_if_else(self):
        result = run(
            program(
                let("x", num(0)),
                if_(boolean(False), [expr(assign("x", num(1)))], [expr(assign("x", num(2)))]),
            )
        )
        assert "if (false)" in result.labels()
        assert global_value(result, "x") == 2

    def test_top_level_break(self):
        result = run(program(break_(line=1)))
        assert result.error == "break used outside a loop"
        assert result.labels() == ["Start", "break"]

    def test_break_does_not_cross_function(self):
        result = run(
            program(
                function("f", [], [break_()]),
                while_(boolean(True), [expr(call(ident("f")))]),
            )
        )
        assert result.error == "break used outside a loop"

    def test_top_level_return(self):
        result = run(program(ret(num(1))))
        assert result.error == "return used outside a function"


# ============================================================
# Classes
# ============================================================

class TestClasses:
    """Tests for classes, super and property origins."""

    def test_inheritance(self, class_program):
        result = run(class_program)
        assert result.ok, result.error
        assert result.final_state.console == ["animal sound", "woof"]

    def test_prop_origin(self, class_program):
        result = run(class_program)
        instance = heap_object(result, global_value(result, "d"))
        assert isinstance(instance, Instance)
        assert instance.props == {"name": "rex", "breed": "lab"}
        assert instance.prop_origin == {"name": "Animal", "breed": "Dog"}

    def test_call_labels(self, class_program):
        labels = run(class_program).labels()
        assert "class Dog extends Animal" in labels
        for name in ("Dog.constructor", "super.constructor", "Dog.speak", "super.speak"):
            assert f"enter {name}" in labels

    def test_inherited_constructor(self):
        base = klass("Base", [method("constructor", ["v"], [expr(assign(member(this(), "v"), ident("v")))])])
        child = klass("Child", [], extends="Base")
        result = run(program(base, child, let("c", new("Child", num(4)))))
        instance = heap_object(result, global_value(result, "c"))
        assert instance.props == {"v": 4}
        assert instance.prop_origin == {"v": "Base"}

    def test_three_level_super_chain(self):
        classes = [
            klass("A", [method("who", [], [ret(string("A"))])]),
            klass("B", [method("who", [], [ret(binary(call(member(super_(), "who")), "+", string("B")))])], extends="A"),
            klass("C", [method("who", [], [ret(binary(call(member(super_(), "who")), "+", string("C")))])], extends="B"),
        ]
        result = run(program(*classes, let("c", new("C")), let("r", method_call(ident("c"), "who"))))
        assert global_value(result, "r") == "ABC"

    def test_unknown_superclass(self):
        result = run(program(klass("Dog", [], extends="Missing")))
        assert result.error == "Unknown superclass: Missing"

    def test_missing_method(self):
        result = run(program(klass("A", []), let("a", new("A")), expr(method_call(ident("a"), "nope"))))
        assert result.error == "Method nope not found on A"


# ============================================================
# Built-in structures and values
# ============================================================

class TestStructures:
    """Tests for Stack/Queue/BinaryTree from programs."""

    def test_stack(self):
        result = run(
            program(
                let("s", new("Stack")),
                expr(method_call(ident("s"), "push", num(1))),
                expr(method_call(ident("s"), "push", num(2))),
                let("top", method_call(ident("s"), "pop")),
            )
        )
        assert global_value(result, "top") == 2

    def test_queue_without_new(self):
        result = run(
            program(
                let("q", call(ident("Queue"))),
                expr(method_call(ident("q"), "enqueue", string("a"))),
                expr(method_call(ident("q"), "enqueue", string("b"))),
                let("first", method_call(ident("q"), "dequeue")),
            )
        )
        assert global_value(result, "first") == "a"

    def test_binary_tree(self):
        inserts = [expr(method_call(ident("t"), "insert", num(v))) for v in (5, 2, 9)]
        result = run(
            program(
                let("t", new("BinaryTree")),
                *inserts,
                let("xs", method_call(ident("t"), "inOrder")),
                let("has", method_call(ident("t"), "contains", num(9))),
            )
        )
        assert heap_object(result, global_value(result, "xs")).items == [2, 5, 9]
        assert global_value(result, "has") is True

    def test_array_index_assignment_pads(self):
        result = run(
            program(
                let("a", array(num(1), num(2))),
                expr(assign(index(ident("a"), num(3)), num(7))),
                let("n", member(ident("a"), "length")),
                let("missing", index(ident("a"), num(9))),
            )
        )
        assert heap_object(result, global_value(result, "a")).items == [1, 2, UNDEFINED, 7]
        assert global_value(result, "n") == 4
        assert global_value(result, "missing") is UNDEFINED

    def test_object_members(self):
        result = run(
            program(
                let("o", obj({"x": num(1)})),
                expr(assign(member(ident("o"), "y"), num(2))),
                let("s", binary(member(ident("o"), "x"), "+", member(ident("o"), "y"))),
            )
        )
        assert global_value(result, "s") == 3

    def test_number_semantics(self):
        result = run(
            program(
                let("inf", binary(num(1), "/", num(0))),
                let("m", binary(unary("-", num(7)), "%", num(3))),
                let("cat", binary(string("n="), "+", num(2))),
            )
        )
        assert global_value(result, "inf") == math.inf
        assert global_value(result, "m") == -1
        assert global_value(result, "cat") == "n=2"

    def test_console_log_joins_arguments(self):
        result = run(program(console_log(string("a"), num(1), array(num(2)))))
        assert result.final_state.console == ["a 1 [2]"]


# ============================================================
# Errors
# ============================================================

class TestErrors:
    """Tests for error reporting."""

    def test_undefined_identifier(self):
        result = run(program(let("x", ident("y", line=3), line=3)))
        assert result.error == "Undefined identifier: y"
        assert result.error_line == 3
        assert result.labels() == ["Start"]

    def test_steps_preserved_on_error(self):
        result = run(
            program(
                let("a", num(1)),
                console_log(ident("a")),
                let("b", member(ident("a"), "foo"), line=3),
            )
        )
        assert result.error.startswith("Member access on non-object")
        assert result.labels() == ["Start", "let a = 1", "call console.log()"]
        assert result.final_state.console == ["1"]

    def test_compound_assignment_requires_numbers(self):
        result = run(program(let("s", string("a")), expr(assign("s", string("b"), "+="))))
        assert result.error.startswith("Expected number")

    def test_unsupported_statement(self):
        result = run(program({"type": "WithStatement", "loc": {"start": {"line": 2}}}))
        assert result.error == "Unsupported statement: WithStatement"
        assert result.error_line == 2

    def test_unknown_structure_method(self):
        result = run(program(let("s", new("Stack")), expr(method_call(ident("s"), "dequeue"))))
        assert result.error == "Unknown method 'dequeue' on Stack"

    def test_traceback(self):
        interpreter = Interpreter(max_call_depth=3)
        result = interpreter.run(
            program(function("f", [], [expr(call(ident("f"), line=1))]), expr(call(ident("f"), line=2), line=2))
        )
        assert not result.ok
        error = interpreter.last_error
        assert error.rule == "DEPTH"
        assert error.step_index == len(result.steps) - 1
        formatter = TracebackFormatter(interpreter)
        text = formatter.format_text(error)
        assert text.startswith("Traceback (most recent call last):")
        assert "line 2, in global" in text
        assert "in f" in text
        data = json.loads(formatter.to_json(error))
        assert data["error"]["type"] == "TraceLimitError"
        assert [frame["name"] for frame in data["traceback"]] == ["global", "f", "f"]


# ============================================================
# Hooks
# ============================================================

class TestHooks:
    """Tests for the hook registry."""

    def test_call_events(self):
        hooks = HookRegistry()
        calls = []
        hooks.on_event("before_call", lambda interp, name, args, line: calls.append((name, args)))
        run(program(function("f", ["x"], [ret(ident("x"))]), expr(call(ident("f"), num(3)))), hooks=hooks)
        assert calls == [("f", [3])]

    def test_decorator_and_priority(self):
        hooks = HookRegistry()
        order = []

        @hooks.on_event("program_start", priority=1)
        def first(interp, prog):
            order.append("first")

        @hooks.on_event("program_start", priority=5)
        def second(interp, prog):
            order.append("second")

        run(program(), hooks=hooks)
        assert order == ["second", "first"]

    def test_step_rule(self):
        hooks = HookRegistry()
        seen = []
        hooks.add_step_rule(every_n=2, handler=lambda interp, ctx: seen.append(ctx.step_index))
        result = run(program(let("a", num(1)), let("b", num(2)), let("c", num(3))), hooks=hooks)
        assert len(result.steps) == 5
        assert seen == [0, 2, 4]

    def test_failing_hook_aborts_run(self):
        hooks = HookRegistry()

        def boom(interp, node):
            raise ValueError("nope")

        hooks.on_event("before_statement", boom)
        interpreter = Interpreter(hooks=hooks)
        result = interpreter.run(program(let("a", num(1))))
        assert result.error == "Hook 'before_statement' failed: nope"
        assert interpreter.last_error.rule == "HOOK"
        assert result.labels() == ["Start"]

    def test_on_error_event(self):
        hooks = HookRegistry()
        errors = []
        hooks.on_event("on_error", lambda interp, error: errors.append(error.message))
        run(program(break_()), hooks=hooks)
        assert errors == ["break used outside a loop"]

    def test_registry_validation(self):
        hooks = HookRegistry()
        with pytest.raises(HookError):
            hooks.on_event("not_an_event", lambda: None)
        with pytest.raises(HookError):
            hooks.add_step_rule(every_n=0, handler=lambda interp, ctx: None)


# ============================================================
# Assignment targets
# ============================================================

class TestAssignmentTargets:
    """Read-modify-write through a single target resolution."""

    def test_update_evaluates_index_once(self):
        result = run(
            program(
                let("a", array(num(0), num(0), num(0))),
                let("i", num(0)),
                expr(update(index(ident("a"), update("i")))),
            )
        )
        assert result.ok, result.error
        assert heap_object(result, global_value(result, "a")).items == [1, 0, 0]
        assert global_value(result, "i") == 1

    def test_compound_assignment_evaluates_index_once(self):
        result = run(
            program(
                let("a", array(num(0), num(0), num(0))),
                let("i", num(0)),
                expr(assign(index(ident("a"), update("i")), num(5), "+=")),
            )
        )
        assert result.ok, result.error
        assert heap_object(result, global_value(result, "a")).items == [5, 0, 0]
        assert global_value(result, "i") == 1

    def test_member_update_on_object(self):
        result = run(
            program(
                let("o", obj({"n": num(1)})),
                expr(update(member(ident("o"), "n"))),
                expr(assign(member(ident("o"), "n"), num(3), "*=")),
            )
        )
        assert heap_object(result, global_value(result, "o")).props == {"n": 6}

    def test_array_write_far_past_end_is_rejected(self):
        result = run(
            program(
                let("a", array()),
                expr(assign(index(ident("a"), num(3000000)), num(1), line=2), line=2),
            )
        )
        assert result.error.startswith("Array index 3000000 exceeds the maximum array length")
        assert result.error_line == 2
        assert heap_object(result, global_value(result, "a")).items == []

    def test_negative_zero(self):
        result = run(
            program(
                let("r", binary(num(1), "/", unary("-", num(0)))),
                let("s", unary("-", num(4))),
            )
        )
        assert global_value(result, "r") == -math.inf
        assert global_value(result, "s") == -4

    def test_user_binding_shadows_builtin_call(self):
        result = run(
            program(
                function("Stack", [], [ret(num(7))]),
                let("r", call(ident("Stack"))),
            )
        )
        assert global_value(result, "r") == 7
