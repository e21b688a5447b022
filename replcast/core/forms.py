"""Split Clojure source into top-level forms.

Forms are dispatched one unit at a time, so the splitter only has to find
where each top-level parenthesized expression ends. It does not parse: it
tracks string literals, backslash escapes and line comments, counts
parentheses to find form boundaries, and counts brackets and braces only to
reject unbalanced input.

Example:
    >>> split_forms('(ns demo) (println ")") ; done')
    ['(ns demo)', '(println ")")']
"""

import re
from typing import Dict, List, Optional

from replcast.core.errors import UnbalancedSource

_OPENERS = {"(": "(", "[": "[", "{": "{"}
_CLOSERS = {")": "(", "]": "[", "}": "{"}

# Metadata before the name is either ^{...} (no nested maps) or ^token.
_NS_PATTERN = re.compile(r"^\(\s*ns\s+(?:\^(?:\{[^{}]*\}|[^\s{]\S*)\s*)*([^\s()\[\]{}\"^]+)")


def split_forms(source: str) -> List[str]:
    """
    Split source text into top-level forms.

    Rules:
        - A form ends when the parenthesis depth returns to zero.
        - Inside a string every character is kept and nothing is counted.
        - A backslash escapes the next character, inside strings (\\") and
          out of them (character literals such as \\( or \\;).
        - ``;`` outside a string starts a comment running to the end of the
          line. The comment text is dropped; the newline is kept so tokens
          on either side stay separate.
        - Text before a form, such as a ``#_`` ignore marker, stays with it.
        - Non-blank text after the last form becomes a form of its own.

    Args:
        source: Program text

    Returns:
        Forms in source order, stripped of surrounding whitespace

    Raises:
        UnbalancedSource: If a string is unterminated or delimiters
            do not balance
    """
    forms: List[str] = []
    current: List[str] = []
    balance: Dict[str, int] = {"(": 0, "[": 0, "{": 0}
    depth = 0
    in_string = False
    in_comment = False
    escaped = False
    line = 1

    for char in source:
        if char == "\n":
            line += 1

        if in_comment:
            if char == "\n":
                in_comment = False
                current.append(char)
            continue

        if escaped:
            current.append(char)
            escaped = False
            continue

        if char == "\\":
            current.append(char)
            escaped = True
            continue

        if in_string:
            current.append(char)
            if char == '"':
                in_string = False
            continue

        if char == '"':
            in_string = True
            current.append(char)
            continue

        if char == ";":
            in_comment = True
            continue

        current.append(char)

        if char in _OPENERS:
            balance[_OPENERS[char]] += 1
            if char == "(":
                depth += 1
        elif char in _CLOSERS:
            opener = _CLOSERS[char]
            balance[opener] -= 1
            if balance[opener] < 0:
                raise UnbalancedSource(f"Unexpected '{char}' on line {line}")
            if char == ")":
                depth -= 1
                if depth == 0:
                    form = "".join(current).strip()
                    forms.append(form)
                    current = []

    if in_string:
        raise UnbalancedSource("Unterminated string literal at end of input")
    open_delimiters = [opener for opener, count in balance.items() if count]
    if open_delimiters:
        raise UnbalancedSource(
            f"Unclosed delimiter(s) {' '.join(open_delimiters)} at end of input"
        )

    trailing = "".join(current).strip()
    if trailing:
        forms.append(trailing)
    return forms


def join_forms(forms: List[str]) -> str:
    """Join forms back into a program, one per line."""
    return "\n".join(forms)


def namespace_declaration(forms: List[str]) -> Optional[str]:
    """
    Return the namespace declared by the first form, if it is an ``ns`` form.

    Example:
        >>> namespace_declaration(["(ns my.app (:require [clojure.string]))"])
        'my.app'
    """
    if not forms:
        return None
    match = _NS_PATTERN.match(forms[0])
    if match is None:
        return None
    return match.group(1)
