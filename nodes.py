"""ESTree node access and construction helpers.

The interpreter never parses source text itself. It consumes ESTree-shaped
trees such as the ones acorn or esprima emit with location tracking enabled,
either as plain dicts (loaded from JSON) or as node objects that expose the
same fields as attributes.

The builder half of this module produces such dicts directly, which is handy
for embedding small programs without a parser:

    >>> from nodes import program, let, num, call, ident, expr
    >>> ast = program(let("x", num(1)), expr(call(ident("f"), ident("x"))))
"""

from __future__ import annotations
from collections.abc import Mapping
from typing import Any, Dict, List, Optional, Union


Node = Any


def field(node: Node, name: str, default: Any = None) -> Any:
    if node is None:
        return default
    if isinstance(node, Mapping):
        return node.get(name, default)
    return getattr(node, name, default)


def node_type(node: Node) -> Optional[str]:
    return field(node, "type")


def node_line(node: Node) -> int:
    """1-based line where ``node`` starts, or 1 when the node has no location."""
    loc = field(node, "loc")
    start = field(loc, "start")
    line = field(start, "line")
    if isinstance(line, int) and not isinstance(line, bool):
        return line
    return 1


def node_list(node: Node, name: str) -> List[Node]:
    items = field(node, name)
    if items is None:
        return []
    return list(items)


# ---- builders ----


def _node(node_kind: str, line: int, **fields: Any) -> Dict[str, Any]:
    out: Dict[str, Any] = {"type": node_kind}
    out.update(fields)
    out["loc"] = {"start": {"line": line, "column": 0}, "end": {"line": line, "column": 0}}
    return out


def program(*body: Node) -> Dict[str, Any]:
    return _node("Program", 1, body=list(body), sourceType="script")


def num(value: Union[int, float], *, line: int = 1) -> Dict[str, Any]:
    return _node("Literal", line, value=value, raw=repr(value))


def string(value: str, *, line: int = 1) -> Dict[str, Any]:
    return _node("Literal", line, value=value, raw=repr(value))


def boolean(value: bool, *, line: int = 1) -> Dict[str, Any]:
    return _node("Literal", line, value=value, raw="true" if value else "false")


def null(*, line: int = 1) -> Dict[str, Any]:
    return _node("Literal", line, value=None, raw="null")


def ident(name: str, *, line: int = 1) -> Dict[str, Any]:
    return _node("Identifier", line, name=name)


def this(*, line: int = 1) -> Dict[str, Any]:
    return _node("ThisExpression", line)


def super_(*, line: int = 1) -> Dict[str, Any]:
    return _node("Super", line)


def array(*elements: Node, line: int = 1) -> Dict[str, Any]:
    return _node("ArrayExpression", line, elements=list(elements))


def obj(props: Dict[str, Node], *, line: int = 1) -> Dict[str, Any]:
    properties = [
        _node("Property", line, key=ident(key, line=line), value=value, kind="init", computed=False)
        for key, value in props.items()
    ]
    return _node("ObjectExpression", line, properties=properties)


def unary(operator: str, argument: Node, *, line: int = 1) -> Dict[str, Any]:
    return _node("UnaryExpression", line, operator=operator, prefix=True, argument=argument)


def binary(left: Node, operator: str, right: Node, *, line: int = 1) -> Dict[str, Any]:
    kind = "LogicalExpression" if operator in ("&&", "||") else "BinaryExpression"
    return _node(kind, line, operator=operator, left=left, right=right)


def cond(test: Node, consequent: Node, alternate: Node, *, line: int = 1) -> Dict[str, Any]:
    return _node("ConditionalExpression", line, test=test, consequent=consequent, alternate=alternate)


def member(target: Node, prop: Union[str, Node], *, computed: bool = False, line: int = 1) -> Dict[str, Any]:
    if isinstance(prop, str) and not computed:
        prop = ident(prop, line=line)
    return _node("MemberExpression", line, object=target, property=prop, computed=computed)


def index(target: Node, key: Node, *, line: int = 1) -> Dict[str, Any]:
    return member(target, key, computed=True, line=line)


def call(callee: Node, *args: Node, line: int = 1) -> Dict[str, Any]:
    return _node("CallExpression", line, callee=callee, arguments=list(args))


def method_call(target: Node, name: str, *args: Node, line: int = 1) -> Dict[str, Any]:
    return call(member(target, name, line=line), *args, line=line)


def new(callee: Union[str, Node], *args: Node, line: int = 1) -> Dict[str, Any]:
    if isinstance(callee, str):
        callee = ident(callee, line=line)
    return _node("NewExpression", line, callee=callee, arguments=list(args))


def assign(target: Union[str, Node], value: Node, operator: str = "=", *, line: int = 1) -> Dict[str, Any]:
    if isinstance(target, str):
        target = ident(target, line=line)
    return _node("AssignmentExpression", line, operator=operator, left=target, right=value)


def update(target: Union[str, Node], operator: str = "++", *, prefix: bool = False, line: int = 1) -> Dict[str, Any]:
    if isinstance(target, str):
        target = ident(target, line=line)
    return _node("UpdateExpression", line, operator=operator, prefix=prefix, argument=target)


def expr(expression: Node, *, line: Optional[int] = None) -> Dict[str, Any]:
    return _node("ExpressionStatement", node_line(expression) if line is None else line, expression=expression)


def let(name: str, init: Optional[Node] = None, *, kind: str = "let", line: int = 1) -> Dict[str, Any]:
    declarator = _node("VariableDeclarator", line, id=ident(name, line=line), init=init)
    return _node("VariableDeclaration", line, declarations=[declarator], kind=kind)


def block(*body: Node, line: int = 1) -> Dict[str, Any]:
    return _node("BlockStatement", line, body=list(body))


def _as_block(body: Any, line: int) -> Dict[str, Any]:
    if isinstance(body, (list, tuple)):
        return block(*body, line=line)
    return body


def function(name: str, params: List[str], body: Any, *, line: int = 1) -> Dict[str, Any]:
    return _node(
        "FunctionDeclaration",
        line,
        id=ident(name, line=line),
        params=[ident(p, line=line) for p in params],
        body=_as_block(body, line),
        generator=False,
        expression=False,
    )


def method(name: str, params: List[str], body: Any, *, line: int = 1) -> Dict[str, Any]:
    fn = _node(
        "FunctionExpression",
        line,
        id=None,
        params=[ident(p, line=line) for p in params],
        body=_as_block(body, line),
    )
    kind = "constructor" if name == "constructor" else "method"
    return _node("MethodDefinition", line, key=ident(name, line=line), value=fn, kind=kind, static=False, computed=False)


def klass(name: str, methods: List[Node], *, extends: Optional[str] = None, line: int = 1) -> Dict[str, Any]:
    return _node(
        "ClassDeclaration",
        line,
        id=ident(name, line=line),
        superClass=ident(extends, line=line) if extends else None,
        body=_node("ClassBody", line, body=list(methods)),
    )


def ret(argument: Optional[Node] = None, *, line: int = 1) -> Dict[str, Any]:
    return _node("ReturnStatement", line, argument=argument)


def if_(test: Node, consequent: Any, alternate: Any = None, *, line: int = 1) -> Dict[str, Any]:
    return _node(
        "IfStatement",
        line,
        test=test,
        consequent=_as_block(consequent, line),
        alternate=_as_block(alternate, line) if alternate is not None else None,
    )


def while_(test: Node, body: Any, *, line: int = 1) -> Dict[str, Any]:
    return _node("WhileStatement", line, test=test, body=_as_block(body, line))


def for_(init: Optional[Node], test: Optional[Node], step: Optional[Node], body: Any, *, line: int = 1) -> Dict[str, Any]:
    return _node("ForStatement", line, init=init, test=test, update=step, body=_as_block(body, line))


def break_(*, line: int = 1) -> Dict[str, Any]:
    return _node("BreakStatement", line, label=None)


def continue_(*, line: int = 1) -> Dict[str, Any]:
    return _node("ContinueStatement", line, label=None)


def empty(*, line: int = 1) -> Dict[str, Any]:
    return _node("EmptyStatement", line)
