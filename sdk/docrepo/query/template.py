"""
Inline query templates.

A repository method may carry an explicit declarative statement via
``@query``. Templates support two kinds of substitution:

- Entity macros, ``#{select_entity}``, ``#{type_filter}``,
  ``#{collection}``, ``#{id}``, ``#{version}``, ``#{body}`` and
  ``#{count_entity}``, expanded once when the repository is built.
- Parameter placeholders, ``$name`` (by parameter name) and ``$1``,
  ``$2``, ... (by position), rewritten into driver-bound named
  parameters. Argument values never become part of the statement text.

Example:
    >>> compiled = compile_template(
    ...     "#{select_entity} WHERE #{type_filter} AND json_extract(d.body, '$.username') = $name",
    ...     parameter_names=["name"],
    ...     type_key="_class",
    ...     collection="user",
    ... )
    >>> compiled.bind(["uname-4"])["arg0"]
    'uname-4'

The scanner copies string literals, quoted identifiers and comments
verbatim, so ``'$.username'`` above is never mistaken for a placeholder.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple

from ..errors import ConfigurationError
from .statement import COLLECTION_PARAM, bind_value, macro_expansions


@dataclass(frozen=True)
class CompiledTemplate:
    """A template with macros expanded and placeholders rewritten.

    Attributes:
        text: Statement text using ``:argN`` named parameters
        arg_indexes: Method parameter indexes referenced by the text
        fixed_params: Parameters bound on every call
    """

    text: str
    arg_indexes: Tuple[int, ...]
    fixed_params: Tuple[Tuple[str, Any], ...] = ()

    def bind(self, args: Sequence[Any]) -> Dict[str, Any]:
        """Build the parameter mapping for one invocation."""
        params: Dict[str, Any] = dict(self.fixed_params)
        for index in self.arg_indexes:
            params[f"arg{index}"] = bind_value(args[index])
        return params


def compile_template(
    template: str,
    parameter_names: Sequence[str],
    type_key: str,
    collection: str,
    method_name: Optional[str] = None,
) -> CompiledTemplate:
    """Expand macros and rewrite placeholders in an inline query.

    Args:
        template: Raw statement text
        parameter_names: Method parameter names, in declaration order
        type_key: Document field holding the collection name
        collection: Entity collection
        method_name: Method name for error messages

    Returns:
        CompiledTemplate

    Raises:
        ConfigurationError: On unknown macros or unresolvable placeholders
    """
    macros = macro_expansions(type_key)
    out: List[str] = []
    used: List[int] = []
    uses_collection = False
    i = 0
    n = len(template)

    while i < n:
        ch = template[i]

        if ch in ("'", '"'):
            end = _skip_quoted(template, i, ch)
            out.append(template[i:end])
            i = end
        elif template.startswith("--", i):
            end = template.find("\n", i)
            end = n if end == -1 else end
            out.append(template[i:end])
            i = end
        elif template.startswith("/*", i):
            end = template.find("*/", i + 2)
            end = n if end == -1 else end + 2
            out.append(template[i:end])
            i = end
        elif template.startswith("#{", i):
            end = template.find("}", i + 2)
            if end == -1:
                raise ConfigurationError(
                    f"Unterminated macro in query of '{method_name}'",
                    method_name=method_name,
                )
            name = template[i + 2 : end].strip()
            if name not in macros:
                raise ConfigurationError(
                    f"Unknown macro '#{{{name}}}' in query of '{method_name}'; "
                    f"known macros: {sorted(macros)}",
                    method_name=method_name,
                )
            expansion = macros[name]
            uses_collection = uses_collection or f":{COLLECTION_PARAM}" in expansion
            out.append(expansion)
            i = end + 1
        elif ch == "$" and i + 1 < n and (template[i + 1].isalnum() or template[i + 1] == "_"):
            j = i + 1
            while j < n and (template[j].isalnum() or template[j] == "_"):
                j += 1
            token = template[i + 1 : j]
            index = _resolve_placeholder(token, parameter_names, method_name)
            if index not in used:
                used.append(index)
            out.append(f":arg{index}")
            i = j
        else:
            out.append(ch)
            i += 1

    fixed: Tuple[Tuple[str, Any], ...] = ()
    if uses_collection:
        fixed = ((COLLECTION_PARAM, collection),)
    return CompiledTemplate(text="".join(out), arg_indexes=tuple(used), fixed_params=fixed)


def _skip_quoted(text: str, start: int, quote: str) -> int:
    """Index just past the quoted run starting at ``start``.

    A doubled quote inside the run is an escaped quote.
    """
    i = start + 1
    while i < len(text):
        if text[i] == quote:
            if i + 1 < len(text) and text[i + 1] == quote:
                i += 2
                continue
            return i + 1
        i += 1
    return len(text)


def _resolve_placeholder(
    token: str,
    parameter_names: Sequence[str],
    method_name: Optional[str],
) -> int:
    if token.isdigit():
        position = int(token)
        if 1 <= position <= len(parameter_names):
            return position - 1
        raise ConfigurationError(
            f"Placeholder ${token} in query of '{method_name}' is out of range: "
            f"method has {len(parameter_names)} parameter(s)",
            method_name=method_name,
        )
    if token in parameter_names:
        return list(parameter_names).index(token)
    raise ConfigurationError(
        f"Placeholder ${token} in query of '{method_name}' does not match any "
        f"parameter {list(parameter_names)}",
        method_name=method_name,
    )
