"""Boolean expression evaluator for Condition nodes and loop termination checks.

Expressions are written in the editor's JavaScript-flavoured syntax
(``payload.amount > 1000 && status === 'open'``). They are translated into a
Python expression, parsed with ``ast``, checked against a whitelist of node
types and then interpreted directly against a flattened variable scope.
Nothing is ever passed to ``eval``.
"""

import ast
import keyword
from typing import Any, Dict, List, Mapping, Optional, Tuple

from .exceptions import ExpressionError
from .logging import get_logger
from .variables import (
    PLACEHOLDER_PATTERN,
    UNDEFINED,
    VariableContext,
    resolve,
    strip_placeholder,
    to_display_string,
    walk_path,
)
from ..models.configs import ConditionGroup, ResolutionMode

logger = get_logger(__name__)

JS_LITERALS = {
    "true": "True",
    "false": "False",
    "null": "None",
    "undefined": "None",
}

ALLOWED_NODES = (
    ast.Expression,
    ast.BoolOp,
    ast.UnaryOp,
    ast.BinOp,
    ast.Compare,
    ast.Name,
    ast.Load,
    ast.Constant,
    ast.Attribute,
    ast.Subscript,
    ast.Call,
    ast.List,
    ast.Tuple,
    ast.And,
    ast.Or,
    ast.Not,
    ast.USub,
    ast.UAdd,
    ast.Add,
    ast.Sub,
    ast.Mult,
    ast.Div,
    ast.Mod,
    ast.Eq,
    ast.NotEq,
    ast.Gt,
    ast.GtE,
    ast.Lt,
    ast.LtE,
    ast.In,
    ast.NotIn,
)

STRING_METHODS = {"includes", "startsWith", "endsWith", "toLowerCase", "toUpperCase", "trim"}


def build_scope(ctx: VariableContext) -> Dict[str, Any]:
    """Flatten a context into the bindings an expression sees.

    Payload keys, step outputs and logged node outputs become top-level names
    (later wins: nodes shadow steps shadow payload), next to the ``payload``,
    ``steps``, ``nodes`` and ``loop`` roots themselves.
    """
    scope: Dict[str, Any] = {}
    if isinstance(ctx.payload, Mapping):
        scope.update(ctx.payload)
    scope.update(ctx.steps)
    scope.update(ctx.nodes)
    scope.update({
        "payload": ctx.payload,
        "steps": dict(ctx.steps),
        "nodes": dict(ctx.nodes),
        "loop": dict(ctx.loop) if ctx.loop is not None else {},
        "system": dict(ctx.system),
    })
    return scope


def translate(expression: str) -> str:
    """Rewrite JavaScript operators and literals into Python syntax.

    String literals are copied through untouched.
    """
    source = PLACEHOLDER_PATTERN.sub(lambda match: match.group(1), expression)
    result: List[str] = []
    i = 0
    length = len(source)
    while i < length:
        char = source[i]
        if char in ("'", '"'):
            end = i + 1
            while end < length and source[end] != char:
                end += 2 if source[end] == "\\" else 1
            result.append(source[i:end + 1])
            i = end + 1
        elif source.startswith("===", i) or source.startswith("!==", i):
            result.append(" == " if char == "=" else " != ")
            i += 3
        elif source.startswith("&&", i):
            result.append(" and ")
            i += 2
        elif source.startswith("||", i):
            result.append(" or ")
            i += 2
        elif char == "!" and not source.startswith("!=", i):
            result.append(" not ")
            i += 1
        elif char.isalpha() or char == "_":
            end = i
            while end < length and (source[end].isalnum() or source[end] == "_"):
                end += 1
            word = source[i:end]
            # attribute names such as ``.null`` stay as written
            is_attribute = source[:i].rstrip().endswith(".")
            if is_attribute and keyword.iskeyword(word):
                # ``payload.from`` is not valid Python, read it as ``payload["from"]``
                while result and result[-1].isspace():
                    result.pop()
                if result and result[-1] == ".":
                    result.pop()
                result.append(f'["{word}"]')
            else:
                result.append(word if is_attribute else JS_LITERALS.get(word, word))
            i = end
        else:
            result.append(char)
            i += 1
    return "".join(result).strip()


def compile_expression(expression: str) -> ast.Expression:
    """Translate and parse an expression, rejecting anything off the whitelist.

    Raises:
        ExpressionError: If the expression does not parse or uses a forbidden construct
    """
    translated = translate(expression)
    if not translated:
        raise ExpressionError("Expression is empty", expression=expression)
    try:
        tree = ast.parse(translated, mode="eval")
    except SyntaxError as e:
        raise ExpressionError(f"Invalid expression syntax: {e.msg}", expression=expression)

    for node in ast.walk(tree):
        if not isinstance(node, ALLOWED_NODES):
            raise ExpressionError(
                f"Unsupported construct in expression: {type(node).__name__}",
                expression=expression
            )
        if isinstance(node, ast.Call):
            if not isinstance(node.func, ast.Attribute) or node.func.attr not in STRING_METHODS:
                raise ExpressionError("Only string methods may be called in expressions", expression=expression)
    return tree


def is_missing(value: Any) -> bool:
    return value is UNDEFINED or value is None


def is_truthy(value: Any) -> bool:
    """JavaScript truthiness: empty containers are truthy."""
    if is_missing(value):
        return False
    if isinstance(value, (list, tuple, dict)):
        return True
    if isinstance(value, float) and value != value:
        return False
    return bool(value)


def _as_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return float(value)
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str) and value.strip():
        try:
            return float(value)
        except ValueError:
            return None
    return None


def loose_equals(left: Any, right: Any) -> bool:
    """Equality with numeric-string coercion; null and undefined are equal."""
    if is_missing(left) or is_missing(right):
        return is_missing(left) and is_missing(right)
    if isinstance(left, str) and isinstance(right, str):
        return left == right
    if isinstance(left, (int, float)) or isinstance(right, (int, float)):
        left_number, right_number = _as_number(left), _as_number(right)
        if left_number is not None and right_number is not None:
            return left_number == right_number
    return left == right


def compare_order(left: Any, right: Any, op: ast.cmpop) -> bool:
    """Ordering comparison; anything involving a missing value is false."""
    if is_missing(left) or is_missing(right):
        return False
    if not (isinstance(left, str) and isinstance(right, str)):
        left_number, right_number = _as_number(left), _as_number(right)
        if left_number is None or right_number is None:
            return False
        left, right = left_number, right_number
    try:
        if isinstance(op, ast.Gt):
            return left > right
        if isinstance(op, ast.GtE):
            return left >= right
        if isinstance(op, ast.Lt):
            return left < right
        return left <= right
    except TypeError:
        return False


def contains(container: Any, item: Any) -> bool:
    if isinstance(container, str):
        return to_display_string(item) in container
    if isinstance(container, (list, tuple)):
        return any(loose_equals(element, item) for element in container)
    if isinstance(container, Mapping):
        return item in container
    return False


class _Interpreter:
    """Walks a whitelisted tree against a scope."""

    def __init__(self, scope: Mapping[str, Any], expression: str):
        self.scope = scope
        self.expression = expression

    def fail(self, message: str):
        raise ExpressionError(message, expression=self.expression)

    def visit(self, node: ast.AST) -> Any:
        method = getattr(self, f"visit_{type(node).__name__}", None)
        if method is None:
            self.fail(f"Unsupported construct in expression: {type(node).__name__}")
        return method(node)

    def visit_Expression(self, node: ast.Expression) -> Any:
        return self.visit(node.body)

    def visit_Constant(self, node: ast.Constant) -> Any:
        return node.value

    def visit_Name(self, node: ast.Name) -> Any:
        return self.scope.get(node.id, UNDEFINED)

    def visit_List(self, node: ast.List) -> Any:
        return [self.visit(element) for element in node.elts]

    visit_Tuple = visit_List

    def visit_BoolOp(self, node: ast.BoolOp) -> Any:
        value = UNDEFINED
        for operand in node.values:
            value = self.visit(operand)
            truthy = is_truthy(value)
            if isinstance(node.op, ast.And) and not truthy:
                return value
            if isinstance(node.op, ast.Or) and truthy:
                return value
        return value

    def visit_UnaryOp(self, node: ast.UnaryOp) -> Any:
        operand = self.visit(node.operand)
        if isinstance(node.op, ast.Not):
            return not is_truthy(operand)
        number = _as_number(operand)
        if number is None:
            self.fail(f"Cannot apply unary operator to {to_display_string(operand)}")
        if isinstance(node.op, ast.USub):
            number = -number
        return int(number) if number.is_integer() else number

    def visit_BinOp(self, node: ast.BinOp) -> Any:
        left = self.visit(node.left)
        right = self.visit(node.right)
        if isinstance(node.op, ast.Add) and (isinstance(left, str) or isinstance(right, str)):
            return to_display_string(left) + to_display_string(right)
        left_number, right_number = _as_number(left), _as_number(right)
        if left_number is None or right_number is None:
            self.fail("Arithmetic on a non-numeric value")
        if isinstance(node.op, ast.Add):
            result = left_number + right_number
        elif isinstance(node.op, ast.Sub):
            result = left_number - right_number
        elif isinstance(node.op, ast.Mult):
            result = left_number * right_number
        else:
            if right_number == 0:
                self.fail("Division by zero")
            if isinstance(node.op, ast.Div):
                result = left_number / right_number
            else:
                result = left_number % right_number
        return int(result) if result.is_integer() else result

    def visit_Compare(self, node: ast.Compare) -> bool:
        left = self.visit(node.left)
        for op, comparator in zip(node.ops, node.comparators):
            right = self.visit(comparator)
            if isinstance(op, ast.Eq):
                outcome = loose_equals(left, right)
            elif isinstance(op, ast.NotEq):
                outcome = not loose_equals(left, right)
            elif isinstance(op, ast.In):
                outcome = contains(right, left)
            elif isinstance(op, ast.NotIn):
                outcome = not contains(right, left)
            else:
                outcome = compare_order(left, right, op)
            if not outcome:
                return False
            left = right
        return True

    def visit_Attribute(self, node: ast.Attribute) -> Any:
        base = self.visit(node.value)
        if is_missing(base):
            self.fail(f"Cannot read property '{node.attr}' of undefined")
        if isinstance(base, Mapping):
            return base.get(node.attr, UNDEFINED)
        if node.attr == "length" and isinstance(base, (str, list, tuple)):
            return len(base)
        return UNDEFINED

    def visit_Subscript(self, node: ast.Subscript) -> Any:
        base = self.visit(node.value)
        key = self.visit(node.slice)
        if is_missing(base):
            self.fail(f"Cannot read property '{to_display_string(key)}' of undefined")
        if isinstance(base, Mapping):
            return base.get(key, base.get(to_display_string(key), UNDEFINED))
        return walk_path(base, [to_display_string(key)])

    def visit_Call(self, node: ast.Call) -> Any:
        method = node.func.attr
        base = self.visit(node.func.value)
        args = [self.visit(arg) for arg in node.args]
        if is_missing(base):
            self.fail(f"Cannot call '{method}' on undefined")

        if method == "includes":
            if not args:
                self.fail("includes() needs an argument")
            return contains(base, args[0])
        if not isinstance(base, str):
            self.fail(f"'{method}' is only available on strings")
        if method in ("startsWith", "endsWith"):
            if not args:
                self.fail(f"{method}() needs an argument")
            needle = to_display_string(args[0])
            return base.startswith(needle) if method == "startsWith" else base.endswith(needle)
        if method == "toLowerCase":
            return base.lower()
        if method == "toUpperCase":
            return base.upper()
        return base.strip()


def evaluate_expression(expression: str, scope: Mapping[str, Any]) -> Any:
    """Evaluate an expression against a flattened scope.

    Args:
        expression: Expression in the editor's syntax
        scope: Name bindings, usually from ``build_scope``

    Returns:
        The value of the expression

    Raises:
        ExpressionError: If the expression is invalid or fails while evaluating
    """
    tree = compile_expression(expression)
    return _Interpreter(scope, expression).visit(tree)


def _condition_operand(value: Any, scope: Mapping[str, Any]) -> Any:
    """Right-hand value of a builder condition: variable, number or literal."""
    if not isinstance(value, str):
        return value
    if value.strip().startswith("{{"):
        return walk_path(scope, strip_placeholder(value).split("."))
    number = _as_number(value)
    if number is not None:
        return int(number) if number.is_integer() else number
    return value


def evaluate_single_condition(variable: Optional[str], operator: str, value: Any,
                              scope: Mapping[str, Any]) -> bool:
    """Evaluate one condition-builder row."""
    if not variable:
        return True
    left = walk_path(scope, [part.strip() for part in strip_placeholder(variable).split(".")])
    right = _condition_operand(value, scope)

    if operator == "==":
        return loose_equals(left, right)
    if operator == "!=":
        return not loose_equals(left, right)
    if operator in (">", "<", ">=", "<="):
        op = {">": ast.Gt(), "<": ast.Lt(), ">=": ast.GtE(), "<=": ast.LtE()}[operator]
        return compare_order(left, right, op)
    if operator == "contains":
        return to_display_string(right) in _js_string(left)
    if operator == "not_contains":
        return to_display_string(right) not in _js_string(left)
    if operator == "empty":
        return not is_truthy(left) or left == ""
    if operator == "not_empty":
        return is_truthy(left)
    # unknown operators do not constrain the group
    return True


def _js_string(value: Any) -> str:
    if value is UNDEFINED:
        return "undefined"
    return to_display_string(value)


def evaluate_condition_groups(groups: List[ConditionGroup], scope: Mapping[str, Any]) -> bool:
    """Groups are OR-ed; rows inside a group use the group's AND/OR."""
    for group in groups:
        results = [
            evaluate_single_condition(cond.variable, cond.operator, cond.value, scope)
            for cond in group.conditions
        ]
        if not results:
            matched = True
        elif group.logical_operator == "OR":
            matched = any(results)
        else:
            matched = all(results)
        if matched:
            return True
    return False


def evaluate_condition(expression: Optional[str], groups: List[ConditionGroup],
                       ctx: VariableContext) -> Tuple[bool, Optional[str]]:
    """Decide a condition, failing safe to ``False``.

    Condition groups take precedence over the free-form expression; with
    neither the condition is true.

    Returns:
        Tuple of the boolean outcome and an error message when evaluation failed
    """
    scope = build_scope(ctx)
    try:
        if groups:
            return evaluate_condition_groups(groups, scope), None
        if not expression or not expression.strip():
            return True, None
        return is_truthy(evaluate_expression(expression, scope)), None
    except ExpressionError as e:
        logger.warning(f"Condition evaluation failed, treating as false: {e.message}")
        return False, e.message


def resolve_operand(ctx: VariableContext, path: str) -> Any:
    """Resolve a path in node mode first, then against the flattened scope."""
    value = resolve(ctx, path, ResolutionMode.NODE)
    if value is UNDEFINED:
        value = walk_path(build_scope(ctx), strip_placeholder(path).split("."))
    return value
