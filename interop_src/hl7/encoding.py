"""HL7 v2 delimiters, escaping and value formatting."""

from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Any

from ..vocab.tables import CodeTriple

SEGMENT_TERMINATOR = "\r"


@dataclass(frozen=True)
class Delimiters:
    """HL7 v2 encoding characters (MSH-1 and MSH-2)."""
    field: str = "|"
    component: str = "^"
    repetition: str = "~"
    escape: str = "\\"
    subcomponent: str = "&"

    @property
    def encoding_characters(self) -> str:
        return f"{self.component}{self.repetition}{self.escape}{self.subcomponent}"


DEFAULT_DELIMITERS = Delimiters()


def escape(text: str, d: Delimiters = DEFAULT_DELIMITERS) -> str:
    """Escape delimiter characters inside a text value.

    The escape character itself is replaced first so the sequences added
    afterwards are not escaped twice.
    """
    if not text:
        return ""
    e = d.escape
    text = text.replace(e, f"{e}E{e}")
    text = text.replace(d.field, f"{e}F{e}")
    text = text.replace(d.component, f"{e}S{e}")
    text = text.replace(d.subcomponent, f"{e}T{e}")
    text = text.replace(d.repetition, f"{e}R{e}")
    text = text.replace("\r", f"{e}X0D{e}")
    text = text.replace("\n", f"{e}X0A{e}")
    return text


def unescape(text: str, d: Delimiters = DEFAULT_DELIMITERS) -> str:
    """Reverse ``escape`` for the standard escape sequences."""
    if not text or d.escape not in text:
        return text
    e = d.escape
    replacements = {
        f"{e}F{e}": d.field,
        f"{e}S{e}": d.component,
        f"{e}T{e}": d.subcomponent,
        f"{e}R{e}": d.repetition,
        f"{e}X0D{e}": "\r",
        f"{e}X0A{e}": "\n",
        f"{e}E{e}": e,
    }
    out = []
    i = 0
    while i < len(text):
        for seq, char in replacements.items():
            if text.startswith(seq, i):
                out.append(char)
                i += len(seq)
                break
        else:
            out.append(text[i])
            i += 1
    return "".join(out)


def format_ts(value: datetime | None) -> str:
    """HL7 DTM: YYYYMMDDHHMMSS.

    Aware datetimes are converted to UTC so every timestamp in a message
    or document has the same 14-digit form.
    """
    if value is None:
        return ""
    if value.tzinfo is not None and value.utcoffset() is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value.strftime("%Y%m%d%H%M%S")


def format_date(value: date | None) -> str:
    """HL7 DT: YYYYMMDD."""
    if value is None:
        return ""
    return value.strftime("%Y%m%d")


def _encode_scalar(value: Any, d: Delimiters) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "Y" if value else "N"
    if isinstance(value, datetime):
        return format_ts(value)
    if isinstance(value, date):
        return format_date(value)
    return escape(str(value), d)


def _join_trimmed(parts: list[str], separator: str) -> str:
    while parts and parts[-1] == "":
        parts.pop()
    return separator.join(parts)


def encode_component(value: Any, d: Delimiters = DEFAULT_DELIMITERS) -> str:
    """Encode one component; a tuple here is a list of subcomponents."""
    if isinstance(value, tuple):
        return _join_trimmed([_encode_scalar(v, d) for v in value], d.subcomponent)
    return _encode_scalar(value, d)


def encode_field(value: Any, d: Delimiters = DEFAULT_DELIMITERS) -> str:
    """Encode a field value.

    None or "" -> empty position; str/int/date -> escaped scalar;
    CodeTriple -> code^display^system; tuple -> components;
    list -> repetitions.
    """
    if value is None:
        return ""
    if isinstance(value, list):
        return d.repetition.join(encode_field(v, d) for v in value)
    if isinstance(value, CodeTriple):
        return _join_trimmed(
            [escape(value.code, d), escape(value.display, d), escape(value.system, d)],
            d.component,
        )
    if isinstance(value, tuple):
        return _join_trimmed([encode_component(v, d) for v in value], d.component)
    return _encode_scalar(value, d)
