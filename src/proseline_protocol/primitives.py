"""Fixed-length binary-to-text encodings.

Keys, signatures, nonces and digests travel as text. Every field has an
exact character length derived from its byte size:
- hex: 2 characters per byte, lowercase
- base64: standard alphabet, padded to a multiple of 4 characters
"""

import base64
import binascii
import math
import re
from enum import Enum
from typing import Optional


# Byte sizes of the primitives carried on the wire
PUBLIC_KEY_BYTES = 32
SIGNATURE_BYTES = 64
NONCE_BYTES = 24
DIGEST_BYTES = 32
ENCRYPTION_KEY_BYTES = 32
MAC_BYTES = 16
SIGNING_SEED_BYTES = 32
REPLICATION_KEY_BYTES = 32
MARK_IDENTIFIER_BYTES = 4


class Encoding(Enum):
    """Text encoding for binary fields."""
    HEX = "hex"
    BASE64 = "base64"


HEX_PATTERN = "^[0-9a-f]*$"

_B64 = "[A-Za-z0-9+/]"
BASE64_PATTERN = f"^({_B64}{{4}})*({_B64}{{2}}==|{_B64}{{3}}=)?$"

_PATTERNS = {
    Encoding.HEX: HEX_PATTERN,
    Encoding.BASE64: BASE64_PATTERN,
}


def encoded_length(byte_length: int, encoding: Encoding) -> int:
    """Number of characters needed to encode byte_length bytes."""
    if byte_length < 0:
        raise ValueError(f"Byte length must be non-negative, got {byte_length}")
    if encoding == Encoding.HEX:
        return 2 * byte_length
    return 4 * math.ceil(byte_length / 3)


def encode_binary(data: bytes, encoding: Encoding) -> str:
    """Encode bytes as lowercase hex or padded base64."""
    if encoding == Encoding.HEX:
        return data.hex()
    return base64.b64encode(data).decode("ascii")


def decode_binary(
    text: str,
    encoding: Encoding,
    byte_length: Optional[int] = None,
) -> bytes:
    """Decode a text field back to bytes.

    Args:
        text: Encoded field
        encoding: Encoding the field uses
        byte_length: Exact expected size in bytes, if the field is fixed-length

    Returns:
        Decoded bytes

    Raises:
        ValueError: If the text is not in the encoding's alphabet or has the
            wrong length
    """
    if not isinstance(text, str):
        raise ValueError(f"Expected {encoding.value} string, got {type(text).__name__}")

    if byte_length is not None and len(text) != encoded_length(byte_length, encoding):
        raise ValueError(
            f"Expected {encoded_length(byte_length, encoding)} {encoding.value} "
            f"characters for {byte_length} bytes, got {len(text)}"
        )

    if not re.match(_PATTERNS[encoding], text):
        raise ValueError(f"Invalid {encoding.value} string")

    try:
        if encoding == Encoding.HEX:
            data = bytes.fromhex(text)
        else:
            data = base64.b64decode(text, validate=True)
    except (ValueError, binascii.Error) as e:
        raise ValueError(f"Invalid {encoding.value} string: {e}") from e

    if byte_length is not None and len(data) != byte_length:
        raise ValueError(f"Expected {byte_length} bytes, got {len(data)}")
    return data


def binary_schema(byte_length: Optional[int], encoding: Encoding) -> dict:
    """JSON Schema fragment for an encoded binary field.

    Fixed-length fields pin minLength and maxLength to the exact encoded
    length. Variable-length fields (ciphertexts) only require one full
    encoding unit.
    """
    schema = {
        "title": f"{encoding.value} string",
        "type": "string",
        "pattern": _PATTERNS[encoding],
    }
    if byte_length is not None:
        if byte_length <= 0:
            raise ValueError(f"Byte length must be positive, got {byte_length}")
        characters = encoded_length(byte_length, encoding)
        schema["minLength"] = characters
        schema["maxLength"] = characters
    else:
        schema["minLength"] = 2 if encoding == Encoding.HEX else 4
    return schema
