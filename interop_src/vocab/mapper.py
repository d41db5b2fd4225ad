"""Field mapper: domain vocabulary tokens to target code systems."""

import logging

from ..errors import MappingError, MappingErrorReason
from .tables import CodeTable, CodeTriple, normalize_token

logger = logging.getLogger(__name__)


class FieldMapper:
    """Pure lookups against a loaded code table.

    ``map_code`` never guesses: a value missing from the table comes back
    as a MappingError. Substituting the vocabulary's unknown code is a
    separate, logged call (``map_or_unknown``) so it is always visible.
    """

    def __init__(self, table: CodeTable | None = None):
        self.table = table or CodeTable.configured()

    @property
    def version(self) -> str:
        return self.table.version

    def map_code(self, value: str | None, vocabulary: str) -> CodeTriple | MappingError:
        """Look up a domain value.

        Args:
            value: Domain token, e.g. "white" or "F"
            vocabulary: Vocabulary name, e.g. "race"

        Returns:
            The CodeTriple, or a MappingError describing why there is none
        """
        vocab = self.table.get(vocabulary)
        if vocab is None:
            return MappingError(value, vocabulary, MappingErrorReason.UNKNOWN_VOCABULARY)
        if value is None or not str(value).strip():
            return MappingError(value, vocabulary, MappingErrorReason.UNKNOWN_VALUE)

        triple = vocab.lookup(normalize_token(str(value)))
        if triple is None:
            return MappingError(value, vocabulary, MappingErrorReason.UNKNOWN_VALUE)
        return triple

    def require(
        self,
        value: str | None,
        vocabulary: str,
        segment: str | None = None,
        field: str | None = None,
    ) -> CodeTriple:
        """Like map_code, but raise the MappingError with segment/field context."""
        result = self.map_code(value, vocabulary)
        if isinstance(result, MappingError):
            raise result.with_context(segment, field)
        return result

    def unknown(self, vocabulary: str) -> CodeTriple:
        """The designated unknown code of a vocabulary (e.g. UNK^Unknown^NULLFL)."""
        vocab = self.table.get(vocabulary)
        if vocab is None:
            raise MappingError(None, vocabulary, MappingErrorReason.UNKNOWN_VOCABULARY)
        return vocab.unknown

    def map_or_unknown(self, value: str | None, vocabulary: str) -> CodeTriple:
        """Map a value, substituting the unknown code when there is no entry.

        Unknown vocabularies still raise; only unknown values are substituted.
        """
        result = self.map_code(value, vocabulary)
        if isinstance(result, MappingError):
            if result.reason == MappingErrorReason.UNKNOWN_VOCABULARY:
                raise result
            substitute = self.unknown(vocabulary)
            logger.warning(
                f"No {vocabulary} mapping for {value!r}; substituting "
                f"{substitute.to_hl7()}"
            )
            return substitute
        return result

    def reverse(self, code: str, vocabulary: str) -> list[str]:
        """Canonical domain tokens that map to a code.

        More than one token means the vocabulary is lossy for that code.
        """
        vocab = self.table.get(vocabulary)
        if vocab is None:
            raise MappingError(code, vocabulary, MappingErrorReason.UNKNOWN_VOCABULARY)
        return vocab.tokens_for_code(code)

    def is_lossy(self, vocabulary: str) -> bool:
        vocab = self.table.get(vocabulary)
        if vocab is None:
            raise MappingError(None, vocabulary, MappingErrorReason.UNKNOWN_VOCABULARY)
        return vocab.is_lossy

    def code_system(self, name: str, segment: str | None = None, field: str | None = None) -> CodeTriple:
        """Resolve a code system name ("icd10", "loinc") to its HL7 name and OID."""
        return self.require(name, "code_system", segment=segment, field=field)

    def coded(
        self,
        code: str,
        display: str,
        system_name: str,
        segment: str | None = None,
        field: str | None = None,
    ) -> CodeTriple:
        """Wrap a code already in a standard system (ICD-10, LOINC...) as a triple."""
        system = self.code_system(system_name, segment=segment, field=field)
        return CodeTriple(code=code, display=display, system=system.code,
                          system_oid=system.system_oid)
