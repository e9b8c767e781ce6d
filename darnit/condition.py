"""Evaluation of CEL-style condition expressions against report data."""

from __future__ import annotations

import re
from typing import Any, Callable

__all__ = ["ExpressionError", "CELEvaluator"]


class ExpressionError(ValueError):
    """Raised when an expression cannot be parsed, checked or evaluated."""


_TOKEN_RE = re.compile(
    r"""(?P<num>0x[0-9a-fA-F]+|\d+\.\d+(?:[eE][+-]?\d+)?|\d+(?:[eE][+-]?\d+)?u?)
      |(?P<str>[rR]?(?:'(?:\\.|[^'\\])*'|"(?:\\.|[^"\\])*"))
      |(?P<id>[A-Za-z_][A-Za-z0-9_]*)
      |(?P<op>==|!=|<=|>=|&&|\|\||[<>+\-*/%!?:.,()\[\]{}])""",
    re.VERBOSE,
)

_ESCAPES = {"n": "\n", "t": "\t", "r": "\r", "\\": "\\", "'": "'", '"': '"', "0": "\0"}
_MACROS = {"exists", "all", "exists_one", "map", "filter"}


def _unescape(body: str) -> str:
    return re.sub(r"\\(.)", lambda m: _ESCAPES.get(m.group(1), m.group(1)), body)


def _tokenize(text: str) -> list[tuple[str, Any]]:
    tokens: list[tuple[str, Any]] = []
    pos = 0
    while pos < len(text):
        if text[pos].isspace():
            pos += 1
            continue
        match = _TOKEN_RE.match(text, pos)
        if not match:
            raise ExpressionError(f"error parsing expression: unexpected character {text[pos]!r} at {pos}")
        kind = match.lastgroup
        value = match.group(kind)
        if kind == "num":
            if value.startswith("0x"):
                tokens.append(("lit", int(value, 16)))
            elif "." in value or "e" in value.lower():
                tokens.append(("lit", float(value)))
            else:
                tokens.append(("lit", int(value.rstrip("u"))))
        elif kind == "str":
            raw = value[0] in "rR"
            body = value[2:-1] if raw else value[1:-1]
            tokens.append(("lit", body if raw else _unescape(body)))
        elif kind == "id":
            keywords = {"true": True, "false": False, "null": None}
            if value in keywords:
                tokens.append(("lit", keywords[value]))
            elif value == "in":
                tokens.append(("op", "in"))
            else:
                tokens.append(("id", value))
        else:
            tokens.append(("op", value))
        pos = match.end()
    tokens.append(("end", None))
    return tokens


class _Parser:
    def __init__(self, text: str):
        self.tokens = _tokenize(text)
        self.pos = 0

    def peek(self) -> tuple[str, Any]:
        return self.tokens[self.pos]

    def accept(self, op: str) -> bool:
        if self.tokens[self.pos] == ("op", op):
            self.pos += 1
            return True
        return False

    def expect(self, op: str) -> None:
        if not self.accept(op):
            raise ExpressionError(f"error parsing expression: expected {op!r}, found {self.peek()[1]!r}")

    def parse(self):
        node = self.expr()
        if self.peek()[0] != "end":
            raise ExpressionError(f"error parsing expression: unexpected token {self.peek()[1]!r}")
        return node

    def expr(self):
        cond = self.or_()
        if self.accept("?"):
            then = self.or_()
            self.expect(":")
            return ("cond", cond, then, self.expr())
        return cond

    def or_(self):
        node = self.and_()
        while self.accept("||"):
            node = ("or", node, self.and_())
        return node

    def and_(self):
        node = self.rel()
        while self.accept("&&"):
            node = ("and", node, self.rel())
        return node

    def rel(self):
        node = self.add()
        while True:
            kind, value = self.peek()
            if kind == "op" and value in ("==", "!=", "<", "<=", ">", ">=", "in"):
                self.pos += 1
                node = ("binary", value, node, self.add())
            else:
                return node

    def add(self):
        node = self.mul()
        while True:
            kind, value = self.peek()
            if kind == "op" and value in ("+", "-"):
                self.pos += 1
                node = ("binary", value, node, self.mul())
            else:
                return node

    def mul(self):
        node = self.unary()
        while True:
            kind, value = self.peek()
            if kind == "op" and value in ("*", "/", "%"):
                self.pos += 1
                node = ("binary", value, node, self.unary())
            else:
                return node

    def unary(self):
        if self.accept("!"):
            return ("unary", "!", self.unary())
        if self.accept("-"):
            return ("unary", "-", self.unary())
        return self.member()

    def args(self, close: str) -> list:
        items = []
        if not self.accept(close):
            while True:
                items.append(self.expr())
                if self.accept(close):
                    break
                self.expect(",")
                if self.accept(close):
                    break
        return items

    def member(self):
        node = self.primary()
        while True:
            if self.accept("."):
                kind, name = self.peek()
                if kind != "id":
                    raise ExpressionError("error parsing expression: expected field name after '.'")
                self.pos += 1
                if self.accept("("):
                    node = ("call", name, node, self.args(")"))
                else:
                    node = ("select", node, name)
            elif self.accept("["):
                key = self.expr()
                self.expect("]")
                node = ("index", node, key)
            else:
                return node

    def primary(self):
        kind, value = self.peek()
        if kind == "lit":
            self.pos += 1
            return ("lit", value)
        if kind == "id":
            self.pos += 1
            if self.accept("("):
                return ("call", value, None, self.args(")"))
            return ("ident", value)
        if self.accept("("):
            node = self.expr()
            self.expect(")")
            return node
        if self.accept("["):
            return ("list", self.args("]"))
        if self.accept("{"):
            entries = []
            if not self.accept("}"):
                while True:
                    key = self.expr()
                    self.expect(":")
                    entries.append((key, self.expr()))
                    if self.accept("}"):
                        break
                    self.expect(",")
            return ("map", entries)
        raise ExpressionError(f"error parsing expression: unexpected token {value!r}")


def _check(node, declared: set[str]) -> None:
    """Reject references to undeclared variables, as a type checker would."""
    tag = node[0]
    if tag == "ident":
        if node[1] not in declared:
            raise ExpressionError(f"error type-checking expression: undeclared reference to '{node[1]}'")
    elif tag == "list":
        for item in node[1]:
            _check(item, declared)
    elif tag == "map":
        for key, value in node[1]:
            _check(key, declared)
            _check(value, declared)
    elif tag == "select":
        _check(node[1], declared)
    elif tag == "call":
        _, name, target, args = node
        if target is not None and name in _MACROS:
            if len(args) != 2 or args[0][0] != "ident":
                raise ExpressionError(f"error type-checking expression: invalid use of macro '{name}'")
            _check(target, declared)
            _check(args[1], declared | {args[0][1]})
            return
        if target is None and name == "has":
            if len(args) != 1 or args[0][0] != "select":
                raise ExpressionError("error type-checking expression: invalid argument to has() macro")
            _check(args[0][1], declared)
            return
        if target is not None:
            _check(target, declared)
        for arg in args:
            _check(arg, declared)
    elif tag in ("index", "and", "or", "binary", "unary", "cond"):
        for child in node[1:]:
            if isinstance(child, tuple):
                _check(child, declared)


def _is_num(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _equals(left: Any, right: Any) -> bool:
    if isinstance(left, bool) != isinstance(right, bool):
        return False
    if isinstance(left, (list, tuple)) and isinstance(right, (list, tuple)):
        return len(left) == len(right) and all(_equals(a, b) for a, b in zip(left, right))
    return left == right


def _to_string(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return "null"
    return str(value)


def _need_bool(value: Any, what: str) -> bool:
    if not isinstance(value, bool):
        raise ExpressionError(f"error evaluating expression: {what} requires a boolean, got {type(value).__name__}")
    return value


def _member_function(name: str, target: Any, args: list) -> Any:
    def strings(count: int) -> list[str]:
        values = [target, *args]
        if len(args) != count or not all(isinstance(v, str) for v in values):
            raise ExpressionError(f"error evaluating expression: no matching overload for '{name}'")
        return values

    if name == "contains":
        s, sub = strings(1)
        return sub in s
    if name == "startsWith":
        s, prefix = strings(1)
        return s.startswith(prefix)
    if name == "endsWith":
        s, suffix = strings(1)
        return s.endswith(suffix)
    if name == "matches":
        s, pattern = strings(1)
        return re.search(pattern, s) is not None
    if name == "split":
        s, sep = strings(1)
        if sep == "":
            return list(s)
        return s.split(sep)
    if name == "size" and not args:
        return _size(target)
    raise ExpressionError(f"error evaluating expression: unknown function '{name}'")


def _size(value: Any) -> int:
    if isinstance(value, (str, list, tuple, dict, bytes)):
        return len(value)
    raise ExpressionError("error evaluating expression: no matching overload for 'size'")


def _global_function(name: str, args: list) -> Any:
    if len(args) == 1:
        (value,) = args
        if name == "size":
            return _size(value)
        if name == "string":
            return _to_string(value)
        try:
            if name == "int" and not isinstance(value, bool):
                return int(value)
            if name == "double" and not isinstance(value, bool):
                return float(value)
        except (TypeError, ValueError) as exc:
            raise ExpressionError(f"error evaluating expression: {exc}") from exc
    if len(args) == 2 and name in ("contains", "startsWith", "endsWith", "matches"):
        return _member_function(name, args[0], args[1:])
    raise ExpressionError(f"error evaluating expression: unknown function '{name}'")


def _arith(op: str, left: Any, right: Any) -> Any:
    if op == "+":
        if _is_num(left) and _is_num(right):
            return left + right
        if isinstance(left, str) and isinstance(right, str):
            return left + right
        if isinstance(left, (list, tuple)) and isinstance(right, (list, tuple)):
            return [*left, *right]
    elif _is_num(left) and _is_num(right):
        if op == "-":
            return left - right
        if op == "*":
            return left * right
        if op in ("/", "%") and right == 0:
            raise ExpressionError(f"error evaluating expression: {'division' if op == '/' else 'modulus'} by zero")
        if op == "/":
            if isinstance(left, int) and isinstance(right, int):
                quotient = abs(left) // abs(right)
                return quotient if (left >= 0) == (right >= 0) else -quotient
            return left / right
        if op == "%" and isinstance(left, int) and isinstance(right, int):
            return left - right * int(left / right)
    raise ExpressionError(f"error evaluating expression: no matching overload for '{op}'")


def _compare(op: str, left: Any, right: Any) -> bool:
    comparable = (_is_num(left) and _is_num(right)) or (
        type(left) is type(right) and isinstance(left, (str, bool))
    )
    if not comparable:
        raise ExpressionError(f"error evaluating expression: no matching overload for '{op}'")
    return {"<": left < right, "<=": left <= right, ">": left > right, ">=": left >= right}[op]


class _Interpreter:
    def __init__(self, variables: dict[str, Any]):
        self.variables = variables

    def eval(self, node, scope: dict[str, Any]) -> Any:
        handler: Callable = getattr(self, "_" + node[0])
        return handler(node, scope)

    def _lit(self, node, scope):
        return node[1]

    def _ident(self, node, scope):
        name = node[1]
        if name in scope:
            return scope[name]
        return self.variables[name]

    def _list(self, node, scope):
        return [self.eval(item, scope) for item in node[1]]

    def _map(self, node, scope):
        return {self.eval(k, scope): self.eval(v, scope) for k, v in node[1]}

    def _select(self, node, scope):
        target = self.eval(node[1], scope)
        if not isinstance(target, dict):
            raise ExpressionError(f"error evaluating expression: cannot select field '{node[2]}'")
        if node[2] not in target:
            raise ExpressionError(f"error evaluating expression: no such key: {node[2]}")
        return target[node[2]]

    def _index(self, node, scope):
        target = self.eval(node[1], scope)
        key = self.eval(node[2], scope)
        if isinstance(target, dict):
            if key not in target:
                raise ExpressionError(f"error evaluating expression: no such key: {key}")
            return target[key]
        if isinstance(target, (list, tuple)) and _is_num(key) and int(key) == key:
            if not 0 <= key < len(target):
                raise ExpressionError(f"error evaluating expression: index out of range: {key}")
            return target[int(key)]
        raise ExpressionError("error evaluating expression: invalid index operation")

    def _and(self, node, scope):
        if not _need_bool(self.eval(node[1], scope), "'&&'"):
            return False
        return _need_bool(self.eval(node[2], scope), "'&&'")

    def _or(self, node, scope):
        if _need_bool(self.eval(node[1], scope), "'||'"):
            return True
        return _need_bool(self.eval(node[2], scope), "'||'")

    def _cond(self, node, scope):
        if _need_bool(self.eval(node[1], scope), "'?:'"):
            return self.eval(node[2], scope)
        return self.eval(node[3], scope)

    def _unary(self, node, scope):
        value = self.eval(node[2], scope)
        if node[1] == "!":
            return not _need_bool(value, "'!'")
        if not _is_num(value):
            raise ExpressionError("error evaluating expression: no matching overload for '-'")
        return -value

    def _binary(self, node, scope):
        op = node[1]
        left = self.eval(node[2], scope)
        right = self.eval(node[3], scope)
        if op == "==":
            return _equals(left, right)
        if op == "!=":
            return not _equals(left, right)
        if op == "in":
            if isinstance(right, dict):
                return left in right
            if isinstance(right, (list, tuple)):
                return any(_equals(left, item) for item in right)
            raise ExpressionError("error evaluating expression: no matching overload for 'in'")
        if op in ("<", "<=", ">", ">="):
            return _compare(op, left, right)
        return _arith(op, left, right)

    def _call(self, node, scope):
        _, name, target_node, arg_nodes = node
        if target_node is None and name == "has":
            select = arg_nodes[0]
            target = self.eval(select[1], scope)
            return isinstance(target, dict) and select[2] in target
        if target_node is not None and name in _MACROS:
            return self._macro(name, self.eval(target_node, scope), arg_nodes, scope)
        args = [self.eval(arg, scope) for arg in arg_nodes]
        if target_node is None:
            return _global_function(name, args)
        return _member_function(name, self.eval(target_node, scope), args)

    def _macro(self, name, target, arg_nodes, scope):
        if isinstance(target, dict):
            items = list(target)
        elif isinstance(target, (list, tuple)):
            items = list(target)
        else:
            raise ExpressionError(f"error evaluating expression: '{name}' requires a list or map")
        var, body = arg_nodes[0][1], arg_nodes[1]
        results = [self.eval(body, {**scope, var: item}) for item in items]
        if name == "map":
            return results
        flags = [_need_bool(r, f"'{name}'") for r in results]
        if name == "filter":
            return [item for item, keep in zip(items, flags) if keep]
        if name == "exists":
            return any(flags)
        if name == "all":
            return all(flags)
        return sum(flags) == 1


class CELEvaluator:
    """Evaluates expressions whose variables are the top-level keys of a data mapping."""

    def _run(self, expression: str, data: dict[str, Any] | None) -> Any:
        variables = dict(data or {})
        tree = _Parser(expression).parse()
        _check(tree, set(variables))
        try:
            return _Interpreter(variables).eval(tree, {})
        except ExpressionError:
            raise
        except (TypeError, ValueError, re.error, RecursionError) as exc:
            raise ExpressionError(f"error evaluating expression: {exc}") from exc

    def evaluate_expression(self, expression: str, data: dict[str, Any] | None) -> bool:
        """Evaluate an expression that must yield a boolean."""
        result = self._run(expression, data)
        if not isinstance(result, bool):
            raise ExpressionError("expression did not evaluate to a boolean")
        return result

    def evaluate_string_array_expression(self, expression: str, data: dict[str, Any] | None) -> list[str]:
        """Evaluate an expression that yields a list of strings or a single string."""
        result = self._run(expression, data)
        if result is None:
            return []
        if isinstance(result, str):
            return [result]
        if isinstance(result, (list, tuple)):
            return [item if isinstance(item, str) else _to_string(item) for item in result]
        raise ExpressionError(
            f"expression did not evaluate to a string array or string, got: {type(result).__name__}"
        )