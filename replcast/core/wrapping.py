"""Clojure snippets wrapped around user code before evaluation."""

from typing import List, Optional

BASELINE_NAMESPACE = "user"


def clojure_string_literal(text: str) -> str:
    """
    Quote ``text`` as a Clojure string literal.

    Backslashes are escaped first, then double quotes, so the literal reads
    back as exactly ``text``.

    Example:
        >>> clojure_string_literal('say "hi"')
        '"say \\\\"hi\\\\""'
    """
    escaped = text.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def bind_command_line_args(body: str, args: List[str]) -> str:
    """Bind ``*command-line-args*`` to ``args`` around ``body``."""
    if args:
        arg_list = "(list " + " ".join(clojure_string_literal(a) for a in args) + ")"
    else:
        arg_list = "nil"
    return f"(binding [*command-line-args* {arg_list}]\n{body})"


def do_block(forms: List[str]) -> str:
    """Combine forms into a single ``do`` form."""
    return "(do\n" + "\n".join(forms) + ")"


def in_namespace(namespace: Optional[str] = None) -> str:
    """Form switching the session to ``namespace`` (baseline by default)."""
    return f"(in-ns '{namespace or BASELINE_NAMESPACE})"


def call_main(namespace: str, args: List[str]) -> str:
    """Form requiring ``namespace`` and applying its ``-main`` to ``args``."""
    quoted = " ".join(clojure_string_literal(a) for a in args)
    return (
        f"(do (require '{namespace})\n"
        f"(apply (ns-resolve '{namespace} '-main) [{quoted}]))"
    )
