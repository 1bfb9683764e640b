"""Line-oriented ``key = value`` config model for the streaming server.

The config file is parsed into a list of :class:`ConfigLine` entries that
keep their raw text, so rendering an unmodified document reproduces the
input exactly (newline style and trailing newline included).

Directive matching compares the parsed key and value with surrounding
whitespace stripped: ``output_name=x`` and ``output_name = x`` are the same
directive. Comment and blank lines never match.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from vdctl.domain.errors import ConfigInvalidError

COMMENT_PREFIXES = ("#", ";")


@dataclass(frozen=True)
class ConfigLine:
    """One physical line; ``key``/``value`` are None for comments and blanks."""

    raw: str
    key: str | None = None
    value: str | None = None

    @classmethod
    def parse(cls, raw: str) -> ConfigLine:
        stripped = raw.strip()
        if not stripped or stripped.startswith(COMMENT_PREFIXES) or "=" not in stripped:
            return cls(raw=raw)
        key, _, value = stripped.partition("=")
        return cls(raw=raw, key=key.strip(), value=value.strip())

    def matches(self, directive: Directive) -> bool:
        return self.key == directive.key and self.value == directive.value


@dataclass(frozen=True)
class Directive:
    """The enabling ``key = value`` line, written verbatim as ``text``."""

    text: str
    key: str
    value: str

    @classmethod
    def parse(cls, text: str) -> Directive:
        line = ConfigLine.parse(text)
        if line.key is None or line.value is None or not line.key:
            msg = f"Invalid config directive {text!r}; expected key = value"
            raise ConfigInvalidError(msg, directive=text)
        return cls(text=text.strip(), key=line.key, value=line.value)


@dataclass
class ConfigDocument:
    """Mutable line list for one config file."""

    lines: list[ConfigLine] = field(default_factory=list)
    newline: str = "\n"
    trailing_newline: bool = True

    @classmethod
    def parse(cls, text: str) -> ConfigDocument:
        newline = "\r\n" if "\r\n" in text else "\n"
        trailing = text.endswith(newline) or text == ""
        body = text[: -len(newline)] if text.endswith(newline) else text
        raw_lines = body.split(newline) if text else []
        return cls(
            lines=[ConfigLine.parse(raw) for raw in raw_lines],
            newline=newline,
            trailing_newline=trailing,
        )

    def render(self) -> str:
        if not self.lines:
            return ""
        text = self.newline.join(line.raw for line in self.lines)
        if self.trailing_newline:
            text += self.newline
        return text

    def has(self, directive: Directive) -> bool:
        return any(line.matches(directive) for line in self.lines)

    def conflicting(self, directive: Directive) -> list[ConfigLine]:
        """Lines that set the directive's key to a different value."""
        return [
            line
            for line in self.lines
            if line.key == directive.key and line.value != directive.value
        ]

    def enable(self, directive: Directive) -> bool:
        """Append *directive* if absent. Returns True if the document changed."""
        if self.has(directive):
            return False
        self.lines.append(ConfigLine.parse(directive.text))
        # An appended line must not fuse with an unterminated last line.
        self.trailing_newline = True
        return True

    def disable(self, directive: Directive) -> int:
        """Remove every line matching *directive*. Returns the count removed."""
        kept = [line for line in self.lines if not line.matches(directive)]
        removed = len(self.lines) - len(kept)
        self.lines = kept
        return removed
