"""Versioned code tables loaded from JSON.

Tables are plain data so annual code set updates (new CVX codes, MVX
changes) ship as a new JSON file selected with CODE_TABLE_PATH rather than a
code release.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

DEFAULT_TABLE_PATH = Path(__file__).parent / "data" / "code_tables.json"

_TOKEN_SEPARATORS = re.compile(r"[\s\-/]+")


def normalize_token(value: str) -> str:
    """Normalize a domain value to a lookup token.

    "Black or African-American " -> "black_or_african_american"
    """
    token = _TOKEN_SEPARATORS.sub("_", value.strip().lower())
    return token.strip("_")


@dataclass(frozen=True)
class CodeTriple:
    """A code with its display text and code system.

    ``system`` is the HL7 v2 coding system name (CDCREC, HL70001, CVX...);
    ``system_oid`` is the OID used in CDA documents.
    """
    code: str
    display: str
    system: str
    system_oid: str = ""

    def to_hl7(self, component_separator: str = "^") -> str:
        """Render as an HL7 CE/CWE value, e.g. ``UNK^Unknown^NULLFL``."""
        return component_separator.join([self.code, self.display, self.system])

    def to_dict(self) -> dict[str, str]:
        return {
            "code": self.code,
            "display": self.display,
            "system": self.system,
            "system_oid": self.system_oid,
        }


@dataclass
class Vocabulary:
    """One target vocabulary: entries keyed by canonical token, plus aliases."""
    name: str
    system: str
    oid: str
    unknown: CodeTriple
    entries: dict[str, CodeTriple] = field(default_factory=dict)
    aliases: dict[str, str] = field(default_factory=dict)

    def canonical(self, token: str) -> str | None:
        """Resolve a normalized token (or alias) to its canonical entry token."""
        if token in self.entries:
            return token
        target = self.aliases.get(token)
        if target in self.entries:
            return target
        return None

    def lookup(self, token: str) -> CodeTriple | None:
        canonical = self.canonical(token)
        return self.entries[canonical] if canonical else None

    def tokens_for_code(self, code: str) -> list[str]:
        """All canonical tokens that map to a code, in table order."""
        return [token for token, triple in self.entries.items() if triple.code == code]

    @property
    def is_lossy(self) -> bool:
        """True if two canonical tokens share a code (many-to-one)."""
        codes = [triple.code for triple in self.entries.values()]
        return len(codes) != len(set(codes))

    @classmethod
    def from_dict(cls, name: str, data: dict[str, Any]) -> "Vocabulary":
        """Build a vocabulary from its JSON form.

        Entries may be ``[code, display]`` pairs or objects with
        ``code``, ``display`` and an optional per-entry ``oid``.
        """
        system = data.get("system", "")
        oid = data.get("oid", "")

        unknown_data = data.get("unknown")
        if not unknown_data:
            raise ValueError(f"Vocabulary '{name}' has no unknown code")
        unknown = CodeTriple(
            code=unknown_data["code"],
            display=unknown_data["display"],
            system=unknown_data.get("system", system),
            system_oid=unknown_data.get("oid", oid),
        )

        entries = {}
        for token, value in data.get("entries", {}).items():
            if isinstance(value, dict):
                triple = CodeTriple(
                    code=value["code"],
                    display=value.get("display", ""),
                    system=value.get("system", system),
                    system_oid=value.get("oid", oid),
                )
            else:
                code, display = value
                triple = CodeTriple(code=code, display=display, system=system, system_oid=oid)
            entries[normalize_token(token)] = triple

        aliases = {}
        for alias, target in data.get("aliases", {}).items():
            target_token = normalize_token(target)
            if target_token not in entries:
                raise ValueError(
                    f"Vocabulary '{name}': alias '{alias}' points to unknown entry '{target}'"
                )
            aliases[normalize_token(alias)] = target_token

        return cls(name=name, system=system, oid=oid, unknown=unknown,
                   entries=entries, aliases=aliases)


@dataclass
class CodeTable:
    """A versioned set of vocabularies."""
    version: str
    vocabularies: dict[str, Vocabulary] = field(default_factory=dict)
    source: str = ""

    def get(self, vocabulary: str) -> Vocabulary | None:
        return self.vocabularies.get(vocabulary)

    def __contains__(self, vocabulary: str) -> bool:
        return vocabulary in self.vocabularies

    @classmethod
    def from_dict(cls, data: dict[str, Any], source: str = "") -> "CodeTable":
        if "version" not in data:
            raise ValueError(f"Code table {source or '<dict>'} has no version")
        vocabularies = {
            name: Vocabulary.from_dict(name, vocab)
            for name, vocab in data.get("vocabularies", {}).items()
        }
        return cls(version=str(data["version"]), vocabularies=vocabularies, source=source)

    @classmethod
    def from_file(cls, path: str | Path) -> "CodeTable":
        """Load a code table from a JSON file."""
        path = Path(path).expanduser()
        with open(path) as f:
            data = json.load(f)
        table = cls.from_dict(data, source=str(path))
        logger.info(
            f"Loaded code table {table.version} from {path} "
            f"({len(table.vocabularies)} vocabularies)"
        )
        return table

    @classmethod
    def default(cls) -> "CodeTable":
        """The code table packaged with the library."""
        return _load_default()

    @classmethod
    def configured(cls, path: str | Path | None = None) -> "CodeTable":
        """The table at ``path`` or CODE_TABLE_PATH, else the packaged table."""
        if path is None:
            from ..config import Config
            path = Config.CODE_TABLE_PATH
        if path:
            return cls.from_file(path)
        return cls.default()


@lru_cache(maxsize=1)
def _load_default() -> CodeTable:
    return CodeTable.from_file(DEFAULT_TABLE_PATH)
