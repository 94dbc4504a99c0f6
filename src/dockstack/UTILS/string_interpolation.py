"""
Utilities for interpolating environment variables into manifest text.
"""
import re
from typing import Callable, Dict, Mapping, Optional

import structlog

logger = structlog.get_logger()


class InterpolationError(ValueError):
    """A ${VAR:?message} or ${VAR?message} variable was not set."""
    def __init__(self, variable: str, message: str):
        self.variable = variable
        self.message = message
        super().__init__(f"{variable}: {message}" if message else f"{variable} is required")


class EnvironmentInterpolator:
    """
    Utility for interpolating environment variables in strings.
    Supports $VAR, ${VAR}, ${VAR:-default}, ${VAR-default}, ${VAR:+alt},
    ${VAR+alt}, ${VAR:?err}, ${VAR?err} and $$ as a literal dollar.
    """
    # Group "escaped": $$
    # Group "braced": name, then an optional operator (:-, -, :+, +, :?, ?) and its argument
    # Group "bare": $NAME
    PATTERN = re.compile(
        r"\$(?:"
        r"(?P<escaped>\$)"
        r"|\{(?P<braced>[A-Za-z_][A-Za-z0-9_]*)(?:(?P<op>:?[-+?])(?P<arg>[^}]*))?\}"
        r"|(?P<bare>[A-Za-z_][A-Za-z0-9_]*)"
        r")"
    )

    @classmethod
    def interpolate(cls,
                    template: str,
                    context: Mapping[str, str],
                    on_missing: Optional[Callable[[str], None]] = None) -> str:
        """
        Interpolates environment variables in the template string using the provided context.

        Unset variables without an operator resolve to an empty string, as compose does,
        and are reported through `on_missing` (or a logged warning).

        :param template: The string containing placeholders.
        :param context: The environment variables context.
        :param on_missing: Called with the name of each unset variable.
        :return: The interpolated string.
        :raises InterpolationError: If a required (?) variable is unset.
        """
        def report_missing(name: str):
            if on_missing:
                on_missing(name)
            else:
                logger.warning("variable_not_set", variable=name, substituted="")

        def replace(match: "re.Match[str]") -> str:
            if match.group("escaped"):
                return "$"

            name = match.group("braced") or match.group("bare")
            op = match.group("op")
            arg = match.group("arg") or ""
            value = context.get(name)

            # The colon forms treat an empty value the same as an unset one.
            is_set = value is not None and (value != "" or not (op or "").startswith(":"))

            if op in (":-", "-"):
                return value if is_set else arg
            if op in (":+", "+"):
                return arg if is_set else ""
            if op in (":?", "?"):
                if not is_set:
                    raise InterpolationError(name, arg)
                return value
            if value is None:
                report_missing(name)
                return ""
            return value

        return cls.PATTERN.sub(replace, template)

    @classmethod
    def interpolate_tree(cls, node, context: Mapping[str, str], on_missing: Optional[Callable[[str], None]] = None):
        """
        Applies `interpolate` to every string value of a parsed YAML document.
        Mapping keys are left untouched.
        """
        if isinstance(node, str):
            return cls.interpolate(node, context, on_missing)
        if isinstance(node, dict):
            return {key: cls.interpolate_tree(value, context, on_missing) for key, value in node.items()}
        if isinstance(node, list):
            return [cls.interpolate_tree(item, context, on_missing) for item in node]
        return node


def merged_context(*layers: Optional[Dict[str, Optional[str]]]) -> Dict[str, str]:
    """
    Merges interpolation sources; later layers win and None values are dropped.
    """
    result: Dict[str, str] = {}
    for layer in layers:
        if not layer:
            continue
        result.update({key: value for key, value in layer.items() if value is not None})
    return result
