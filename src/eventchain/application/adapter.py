import operator
import re
from typing import Any

import msgspec

from eventchain.application.port import PlaceholderResolver
from eventchain.domain.entity import ChainExecution
from eventchain.domain.error import ExpressionError


class ExecutionContext:
    """Namespace placeholders are resolved against.

    Roots: ``trigger`` is the trigger payload, ``entities`` maps
    alias -> entity type -> entity id, and every other root is the alias of a
    step whose output has been merged into the execution's context blob.
    """

    def __init__(
        self,
        trigger: dict[str, Any],
        outputs: dict[str, Any],
        entities: dict[str, dict[str, str]] | None = None,
    ):
        self.trigger = trigger
        self.outputs = outputs
        self.entities = entities if entities is not None else {}

    @classmethod
    def for_execution(
        cls, execution: ChainExecution, entities: dict[str, dict[str, str]] | None = None
    ) -> "ExecutionContext":
        return cls(trigger=execution.trigger_payload, outputs=execution.context, entities=entities)

    def get_root(self, name: str) -> Any:
        """
        Retrieves the value a path starts from.

        :param name: The first segment of a placeholder path
        :type name: str
        :returns: The root value
        :rtype: Any
        :raises KeyError: If nothing is known under that name
        """
        if name == "trigger":
            return self.trigger
        if name == "entities":
            return self.entities
        return self.outputs[name]


class VariableResolver(PlaceholderResolver):
    """Resolves ${root[.field][[index]].field} placeholders in arbitrarily nested data structures.
    Rules:
    - If a string is exactly a single placeholder like "${trigger.userId}", return the referenced value as-is (preserve type).
    - Otherwise, perform string interpolation by converting referenced values to str.
    - Supported paths: `${trigger.field}`, `${alias.field}`, `${alias.items[0].id}`, `${entities.alias.EntityType}`.
    """

    _pattern = re.compile(r"\$\{([^}]+)\}")

    def __init__(self, ctx: ExecutionContext):
        self.ctx = ctx

    def resolve_any(self, value: Any) -> Any:
        if isinstance(value, dict):
            return {k: self.resolve_any(v) for k, v in value.items()}
        if isinstance(value, list):
            return [self.resolve_any(v) for v in value]
        if isinstance(value, str):
            return self._resolve_string(value)
        return value

    def lookup(self, token: str) -> Any:
        """
        Resolves a single path without the ${...} wrapper.

        :param token: The path, e.g. ``trigger.items[0].name``
        :type token: str
        :returns: The referenced value
        :rtype: Any
        :raises ExpressionError: If any part of the path does not resolve
        """
        return self._lookup_token(token.strip())

    def _resolve_string(self, s: str) -> Any:
        # Exact single-token match => return raw value to preserve type
        m = self._pattern.fullmatch(s)
        if m:
            return self._lookup_token(m.group(1))

        def repl(match: re.Match) -> str:
            val = self._lookup_token(match.group(1))
            return str(val)

        return self._pattern.sub(repl, s)

    def _lookup_token(self, token: str) -> Any:
        # token grammar: root(.field|[index])*
        parts = re.findall(r"[^.\[\]]+|\[\d+\]", token)
        if not parts:
            raise ExpressionError(f"Empty placeholder: ${{{token}}}")
        try:
            current = self.ctx.get_root(parts[0])
        except KeyError:
            raise ExpressionError(f"Unknown placeholder: {token}") from None
        current = msgspec.to_builtins(current)
        try:
            for p in parts[1:]:
                if p.startswith("["):
                    current = current[int(p[1:-1])]
                else:
                    current = current[p]
        except (KeyError, IndexError, TypeError):
            raise ExpressionError(f"Unknown placeholder: {token}") from None
        return current


class InputMappingResolver:
    """Turns a step's input-mapping string into a concrete payload.

    The mapping is a JSON object whose string values may hold placeholders.
    """

    def __init__(self, values: VariableResolver):
        self.values = values

    def resolve(self, input_mappings: str | None) -> dict[str, Any]:
        if input_mappings is None or not input_mappings.strip():
            return {}
        try:
            mapping = msgspec.json.decode(input_mappings.encode("utf-8"))
        except msgspec.DecodeError as e:
            raise ExpressionError(f"Input mappings are not valid JSON: {e}") from None
        if not isinstance(mapping, dict):
            raise ExpressionError("Input mappings must be a JSON object")
        return self.values.resolve_any(mapping)


_COMPARATORS = {
    "==": operator.eq,
    "!=": operator.ne,
    ">": operator.gt,
    ">=": operator.ge,
    "<": operator.lt,
    "<=": operator.le,
}

_TOKEN = re.compile(
    r"""\s*(?:
        (?P<placeholder>\$\{[^}]+\})
      | (?P<string>"(?:[^"\\]|\\.)*"|'(?:[^'\\]|\\.)*')
      | (?P<number>-?\d+(?:\.\d+)?)
      | (?P<op>==|!=|>=|<=|>|<)
      | (?P<paren>[()])
      | (?P<word>[A-Za-z_]+)
    )""",
    re.VERBOSE,
)


class ConditionEvaluator:
    """Evaluates a step's guard condition against an ExecutionContext.

    Grammar::

        expr       := and_expr ("or" and_expr)*
        and_expr   := not_expr ("and" not_expr)*
        not_expr   := "not" not_expr | "exists" PLACEHOLDER | comparison
        comparison := operand (OP operand)?
        operand    := PLACEHOLDER | STRING | NUMBER | true | false | null | "(" expr ")"

    An operand on its own is tested for truthiness. Empty conditions are true.
    """

    def __init__(self, values: VariableResolver):
        self.values = values

    def evaluate(self, expression: str | None) -> bool:
        if expression is None or not expression.strip():
            return True
        self._tokens = self._tokenize(expression)
        self._pos = 0
        result = self._expr()
        if self._pos != len(self._tokens):
            raise ExpressionError(f"Unexpected token {self._tokens[self._pos][1]!r} in condition: {expression}")
        return bool(result)

    def _tokenize(self, expression: str) -> list[tuple[str, str]]:
        tokens = []
        pos = 0
        text = expression.rstrip()
        while pos < len(text):
            m = _TOKEN.match(text, pos)
            if m is None or m.end() == pos:
                raise ExpressionError(f"Cannot parse condition at position {pos}: {expression}")
            kind = m.lastgroup
            tokens.append((kind, m.group(kind)))
            pos = m.end()
        return tokens

    def _peek(self) -> tuple[str, str] | None:
        return self._tokens[self._pos] if self._pos < len(self._tokens) else None

    def _next(self) -> tuple[str, str]:
        token = self._peek()
        if token is None:
            raise ExpressionError("Unexpected end of condition")
        self._pos += 1
        return token

    def _accept_word(self, word: str) -> bool:
        token = self._peek()
        if token is not None and token[0] == "word" and token[1].lower() == word:
            self._pos += 1
            return True
        return False

    def _expr(self) -> Any:
        result = self._and_expr()
        while self._accept_word("or"):
            right = self._and_expr()
            result = bool(result) or bool(right)
        return result

    def _and_expr(self) -> Any:
        result = self._not_expr()
        while self._accept_word("and"):
            right = self._not_expr()
            result = bool(result) and bool(right)
        return result

    def _not_expr(self) -> Any:
        if self._accept_word("not"):
            return not self._not_expr()
        if self._accept_word("exists"):
            kind, text = self._next()
            if kind != "placeholder":
                raise ExpressionError(f"'exists' expects a placeholder, got {text!r}")
            try:
                self._lookup(text)
            except ExpressionError:
                return False
            return True
        return self._comparison()

    def _comparison(self) -> Any:
        left = self._operand()
        token = self._peek()
        if token is None or token[0] != "op":
            return left
        self._pos += 1
        right = self._operand()
        try:
            return _COMPARATORS[token[1]](left, right)
        except TypeError:
            raise ExpressionError(f"Cannot compare {left!r} {token[1]} {right!r}") from None

    def _operand(self) -> Any:
        kind, text = self._next()
        if kind == "placeholder":
            return self._lookup(text)
        if kind == "string":
            return re.sub(r"\\(.)", r"\1", text[1:-1])
        if kind == "number":
            return float(text) if "." in text else int(text)
        if kind == "paren" and text == "(":
            value = self._expr()
            closing = self._next()
            if closing != ("paren", ")"):
                raise ExpressionError(f"Expected ')' but found {closing[1]!r}")
            return value
        if kind == "word":
            literal = text.lower()
            if literal == "true":
                return True
            if literal == "false":
                return False
            if literal in ("null", "none"):
                return None
        raise ExpressionError(f"Unexpected token {text!r} in condition")

    def _lookup(self, placeholder: str) -> Any:
        return self.values.lookup(placeholder[2:-1])
