"""Typed representation of an image's Cmd/Entrypoint.

The registry reports Cmd and Entrypoint as either a string, a list of
strings, or nothing at all. The cache stores them in a single text column,
so the shape is recovered here once and passed around as a variant.
"""

import json
from dataclasses import dataclass
from typing import Any, List, Optional, Union


@dataclass(frozen=True)
class Scalar:
    """Shell-form command stored as plain text."""

    value: str

    def to_json(self) -> str:
        return self.value


@dataclass(frozen=True)
class CommandList:
    """Exec-form command (JSON array of arguments)."""

    values: tuple[str, ...]

    def to_json(self) -> List[str]:
        return list(self.values)


@dataclass(frozen=True)
class Absent:
    """No command configured."""

    def to_json(self) -> None:
        return None


Command = Union[Scalar, CommandList, Absent]

ABSENT = Absent()


def command_from_value(value: Any) -> Command:
    """Build a Command from a raw config value (str, list or None)."""
    if value is None:
        return ABSENT
    if isinstance(value, str):
        return Scalar(value)
    if isinstance(value, (list, tuple)):
        return CommandList(tuple(str(v) for v in value))
    raise TypeError(f"Unsupported command value: {type(value).__name__}")


def encode_command(command: Optional[Command]) -> str:
    """Encode a Command for the text column.

    Scalars are stored verbatim, lists as JSON arrays and absence as the
    JSON literal ``null``.

    The column format cannot tell every scalar apart from the other shapes,
    so a few values do not survive ``decode_command``:

    - ``Scalar("")`` and ``Scalar("null")`` decode as ``Absent``
    - a scalar that is itself a JSON array of strings (``Scalar('["a"]')``)
      decodes as ``CommandList``
    """
    if command is None or isinstance(command, Absent):
        return "null"
    if isinstance(command, Scalar):
        return command.value
    return json.dumps(list(command.values))


def decode_command(text: Optional[str]) -> Command:
    """Decode a stored command column back into a Command.

    Only text starting with ``[`` that parses as a JSON array of strings is
    treated as a list; anything else beginning with a bracket (e.g. the shell
    test ``[ -f /x ] && run``) stays a scalar.
    """
    if text is None or text == "" or text == "null":
        return ABSENT

    if text.startswith("["):
        try:
            parsed = json.loads(text)
        except ValueError:
            return Scalar(text)
        if isinstance(parsed, list) and all(isinstance(v, str) for v in parsed):
            return CommandList(tuple(parsed))
        return Scalar(text)

    return Scalar(text)
