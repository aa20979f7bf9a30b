"""Message schema registry.

Six log-entry kinds share the chain fields (index, prior, discoveryKey).
Each kind is a static FieldContract table; the registry composes the
chain fields into every kind, so a new kind inherits chain-field
validation without repeating it.

The registry also exports JSON Schema documents for the wire structures
(entry, envelopes, reference, invitation), built for one binary encoding.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Mapping, Optional, Tuple

from jsonschema import Draft202012Validator, validators
from jsonschema.exceptions import best_match

from proseline_protocol.errors import UnknownKindError, ValidationError
from proseline_protocol.primitives import (
    DIGEST_BYTES,
    ENCRYPTION_KEY_BYTES,
    MAC_BYTES,
    MARK_IDENTIFIER_BYTES,
    NONCE_BYTES,
    PUBLIC_KEY_BYTES,
    REPLICATION_KEY_BYTES,
    SIGNATURE_BYTES,
    SIGNING_SEED_BYTES,
    Encoding,
    binary_schema,
)


@dataclass(frozen=True)
class Binary:
    """Placeholder for an encoded binary field, resolved per encoding."""
    byte_length: Optional[int] = None


DIGEST = Binary(DIGEST_BYTES)
PUBLIC_KEY = Binary(PUBLIC_KEY_BYTES)
SIGNATURE = Binary(SIGNATURE_BYTES)
NONCE = Binary(NONCE_BYTES)
CIPHERTEXT = Binary()

INDEX = {"title": "index", "type": "integer", "minimum": 0}

TIMESTAMP = {"title": "timestamp", "type": "string", "minLength": 1}

NAME = {"title": "name", "type": "string", "minLength": 1, "maxLength": 256}

NOTE_TEXT = {"title": "note text", "type": "string", "minLength": 1}

EMAIL = {"title": "email", "type": "string", "pattern": r"^[^@\s]+@[^@\s]+$"}

PHONE = {"title": "phone", "type": "string", "pattern": r"^\+[0-9]+$"}


def strict_object(properties: Mapping[str, Any], optional: Tuple[str, ...] = ()) -> dict:
    """Object schema requiring every property except the optional ones."""
    return {
        "type": "object",
        "properties": dict(properties),
        "required": sorted(k for k in properties if k not in optional),
        "additionalProperties": False,
    }


def resolve(spec: Any, encoding: Encoding) -> Any:
    """Replace Binary placeholders in a schema fragment."""
    if isinstance(spec, Binary):
        return binary_schema(spec.byte_length, encoding)
    if isinstance(spec, dict):
        return {key: resolve(value, encoding) for key, value in spec.items()}
    if isinstance(spec, list):
        return [resolve(value, encoding) for value in spec]
    return spec


@dataclass(frozen=True)
class FieldContract:
    """Required and optional fields of one entry kind."""

    kind: str
    required: Tuple[str, ...]
    optional: Tuple[str, ...] = ()
    properties: Mapping[str, Any] = field(default_factory=dict)

    @property
    def fields(self) -> Tuple[str, ...]:
        return tuple(sorted(self.required + self.optional))

    def compose(self, other: "FieldContract") -> "FieldContract":
        """Return a new contract carrying this contract's and other's fields."""
        return FieldContract(
            kind=self.kind,
            required=tuple(sorted(set(self.required) | set(other.required))),
            optional=tuple(sorted(set(self.optional) | set(other.optional))),
            properties={**self.properties, **other.properties},
        )

    def json_schema(self, encoding: Encoding) -> dict:
        properties = {"type": {"const": self.kind}}
        properties.update(resolve(dict(self.properties), encoding))
        schema = strict_object(properties, optional=self.optional)
        schema["title"] = self.kind
        return schema


# Chain fields shared by every entry kind
CHAIN_FIELDS = FieldContract(
    kind="chain",
    required=("discoveryKey", "index"),
    optional=("prior",),
    properties={
        "discoveryKey": DIGEST,
        "index": INDEX,
        "prior": DIGEST,
    },
)

# Drafts store the contents of a written draft, based on up to two
# parent drafts referenced by digest.
DRAFT = FieldContract(
    kind="draft",
    required=("parents", "text", "timestamp"),
    properties={
        "parents": {
            "type": "array",
            "items": DIGEST,
            "maxItems": 2,
            "uniqueItems": True,
        },
        "text": {"type": "object"},
        "timestamp": TIMESTAMP,
    },
)

# Marks record moving a named marker onto a draft. The identifier stays
# fixed while the name can change.
MARK = FieldContract(
    kind="mark",
    required=("draft", "identifier", "name", "timestamp"),
    properties={
        "identifier": Binary(MARK_IDENTIFIER_BYTES),
        "name": NAME,
        "draft": DIGEST,
        "timestamp": TIMESTAMP,
    },
)

# Notes comment on a range of a draft. The range end is exclusive.
NOTE = FieldContract(
    kind="note",
    required=("draft", "range", "text", "timestamp"),
    properties={
        "draft": DIGEST,
        "range": strict_object({
            "start": {"type": "integer", "minimum": 0},
            "end": {"type": "integer", "minimum": 1},
        }),
        "text": NOTE_TEXT,
        "timestamp": TIMESTAMP,
    },
)

# Replies are notes to other notes, referenced by digest.
REPLY = FieldContract(
    kind="reply",
    required=("draft", "parent", "text", "timestamp"),
    properties={
        "draft": DIGEST,
        "parent": DIGEST,
        "text": NOTE_TEXT,
        "timestamp": TIMESTAMP,
    },
)

# Corrections replace the text of a note.
CORRECTION = FieldContract(
    kind="correction",
    required=("note", "text", "timestamp"),
    properties={
        "note": DIGEST,
        "text": NOTE_TEXT,
        "timestamp": TIMESTAMP,
    },
)

# Intros associate a name and device, like "Kyle on laptop", with a log.
INTRO = FieldContract(
    kind="intro",
    required=("device", "name", "timestamp"),
    optional=("email", "phone"),
    properties={
        "name": NAME,
        "device": NAME,
        "email": EMAIL,
        "phone": PHONE,
        "timestamp": TIMESTAMP,
    },
)

KIND_CONTRACTS = (CORRECTION, DRAFT, INTRO, MARK, NOTE, REPLY)


class StructuralValidator(ABC):
    """Checks field presence, types, lengths and patterns against a schema."""

    @abstractmethod
    def check(self, schema: dict, instance: Any) -> None:
        """Raise ValidationError naming the first offending field."""
        pass  # pragma: no cover


def _field_of(error) -> str:
    path = [str(part) for part in error.absolute_path]
    if error.validator == "required" and isinstance(error.instance, dict):
        missing = [name for name in error.validator_value if name not in error.instance]
        if missing:
            path.append(missing[0])
    elif error.validator == "additionalProperties" and isinstance(error.instance, dict):
        allowed = error.schema.get("properties", {})
        extra = sorted(key for key in error.instance if key not in allowed)
        if extra:
            path.append(extra[0])
    return ".".join(path) or "(root)"


def _is_integer(checker, instance) -> bool:
    return isinstance(instance, int) and not isinstance(instance, bool)


# Draft 2020-12 counts 1.0 as an integer. Wire integers are JSON ints only,
# or one entry would have two canonical encodings.
StrictValidator = validators.extend(
    Draft202012Validator,
    type_checker=Draft202012Validator.TYPE_CHECKER.redefine("integer", _is_integer),
)


class JSONSchemaValidator(StructuralValidator):
    """StructuralValidator backed by jsonschema (Draft 2020-12, strict integers)."""

    def check(self, schema: dict, instance: Any) -> None:
        error = best_match(StrictValidator(schema).iter_errors(instance))
        if error is not None:
            raise ValidationError(_field_of(error), error.message)


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO-8601 date-time with a UTC offset, accepting a trailing Z."""
    if "T" not in value.upper():
        raise ValueError(f"Not a date-time: {value!r}")
    text = value[:-1] + "+00:00" if value.endswith(("Z", "z")) else value
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        raise ValueError(f"Missing UTC offset: {value!r}")
    return parsed


class MessageRegistry:
    """Field contracts and validation for the six entry kinds."""

    def __init__(
        self,
        encoding: Encoding = Encoding.HEX,
        validator: Optional[StructuralValidator] = None,
    ):
        self.encoding = encoding
        self.validator = validator or JSONSchemaValidator()
        self._contracts = {
            contract.kind: contract.compose(CHAIN_FIELDS)
            for contract in KIND_CONTRACTS
        }
        self._schemas = {
            kind: contract.json_schema(encoding)
            for kind, contract in self._contracts.items()
        }

    def kinds(self) -> Tuple[str, ...]:
        return tuple(sorted(self._contracts))

    def describe(self, kind: str) -> FieldContract:
        """Field contract for kind, chain fields included.

        Raises:
            UnknownKindError: If kind is not a known entry kind
        """
        try:
            return self._contracts[kind]
        except (KeyError, TypeError):
            raise UnknownKindError(kind) from None

    def schema(self, kind: str) -> dict:
        self.describe(kind)
        return self._schemas[kind]

    def entry_schema(self) -> dict:
        """JSON Schema for any entry, one of the kind schemas."""
        return {
            "title": "entry",
            "oneOf": [
                {"$ref": f"#/$defs/{kind}"} for kind in self.kinds()
            ],
            "$defs": dict(self._schemas),
        }

    def validate(self, kind: str, candidate: Any) -> None:
        """Validate candidate as an entry of the given kind.

        Raises:
            UnknownKindError: If kind is not a known entry kind
            ValidationError: Naming the first field that fails
        """
        self.describe(kind)
        self.validator.check(self._schemas[kind], candidate)

        try:
            parse_timestamp(candidate["timestamp"])
        except ValueError as e:
            raise ValidationError("timestamp", f"not an ISO-8601 date-time: {e}") from e

        if candidate["index"] > 0 and "prior" not in candidate:
            raise ValidationError("prior", "required for entries after index 0")

        if kind == "note":
            span = candidate["range"]
            if span["end"] <= span["start"]:
                raise ValidationError(
                    "range",
                    f"end ({span['end']}) must be greater than start ({span['start']})",
                )

    def validate_entry(self, candidate: Any) -> str:
        """Validate candidate against the kind named by its type tag.

        Returns:
            The entry kind
        """
        if not isinstance(candidate, dict):
            raise ValidationError("(root)", "entry must be an object")
        kind = candidate.get("type")
        if kind not in self._contracts:
            raise UnknownKindError(kind)
        self.validate(kind, candidate)
        return kind


# =========================================================================
# Wire structure schemas
# =========================================================================

def envelope_schema(version: int, encoding: Encoding) -> dict:
    """Outer envelope schema for one envelope generation.

    Version 2 carries the inner envelope as a single ciphertext. Version 1
    carries signatures and prior in clear beside the encrypted entry, and
    predates the version field.
    """
    if version == 2:
        schema = strict_object({
            "version": {"const": 2},
            "discoveryKey": DIGEST,
            "logPublicKey": PUBLIC_KEY,
            "index": INDEX,
            "nonce": NONCE,
            "encryptedInnerEnvelope": CIPHERTEXT,
        })
    elif version == 1:
        schema = strict_object(
            {
                "version": {"const": 1},
                "discoveryKey": DIGEST,
                "logPublicKey": PUBLIC_KEY,
                "logSignature": SIGNATURE,
                "projectSignature": SIGNATURE,
                "clientSignature": SIGNATURE,
                "index": INDEX,
                "prior": DIGEST,
                "entry": strict_object({
                    "ciphertext": CIPHERTEXT,
                    "nonce": NONCE,
                }),
            },
            optional=("version", "clientSignature", "prior"),
        )
    else:
        raise ValueError(f"Unknown envelope version: {version}")
    schema["title"] = f"envelope v{version}"
    return resolve(schema, encoding)


def inner_envelope_schema(encoding: Encoding) -> dict:
    """Inner envelope schema. The entry itself is checked by the registry."""
    schema = strict_object(
        {
            "entry": {"type": "object"},
            "logSignature": SIGNATURE,
            "projectSignature": SIGNATURE,
            "clientSignature": SIGNATURE,
        },
        optional=("clientSignature",),
    )
    schema["title"] = "inner envelope"
    return resolve(schema, encoding)


def reference_schema(encoding: Encoding) -> dict:
    schema = strict_object({"logPublicKey": PUBLIC_KEY, "index": INDEX})
    schema["title"] = "reference"
    return resolve(schema, encoding)


def invitation_schema(encoding: Encoding) -> dict:
    """Invitation schema.

    Each sealed field is an AEAD ciphertext of exact length (plaintext plus
    MAC) paired with its own nonce. The replication key travels either in
    clear or sealed, never both.
    """
    sealed_key = Binary(ENCRYPTION_KEY_BYTES + MAC_BYTES)
    schema = strict_object(
        {
            "replicationKey": Binary(REPLICATION_KEY_BYTES),
            "replicationKeyCiphertext": Binary(REPLICATION_KEY_BYTES + MAC_BYTES),
            "replicationKeyNonce": NONCE,
            "projectPublicKey": PUBLIC_KEY,
            "readKeyCiphertext": sealed_key,
            "readKeyNonce": NONCE,
            "writeSeedCiphertext": Binary(SIGNING_SEED_BYTES + MAC_BYTES),
            "writeSeedNonce": NONCE,
            "titleCiphertext": CIPHERTEXT,
            "titleNonce": NONCE,
        },
        optional=(
            "replicationKey",
            "replicationKeyCiphertext",
            "replicationKeyNonce",
            "projectPublicKey",
            "writeSeedCiphertext",
            "writeSeedNonce",
            "titleCiphertext",
            "titleNonce",
        ),
    )
    schema["oneOf"] = [
        {"required": ["replicationKey"]},
        {"required": ["replicationKeyCiphertext"]},
    ]
    schema["dependentRequired"] = {
        "replicationKeyCiphertext": ["replicationKeyNonce"],
        "replicationKeyNonce": ["replicationKeyCiphertext"],
        "writeSeedCiphertext": ["writeSeedNonce"],
        "writeSeedNonce": ["writeSeedCiphertext"],
        "titleCiphertext": ["titleNonce"],
        "titleNonce": ["titleCiphertext"],
    }
    schema["title"] = "invitation"
    return resolve(schema, encoding)
