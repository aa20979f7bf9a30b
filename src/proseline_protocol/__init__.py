"""Wire format for peer-replicated, end-to-end-encrypted writing logs."""

__version__ = "0.1.0"

# Server entry points
from proseline_protocol.server import create_server, main

# Configuration
from proseline_protocol.config import Config, load_config

# Primitive encoders
from proseline_protocol.primitives import (
    Encoding,
    decode_binary,
    encode_binary,
    encoded_length,
)

# Cryptographic capabilities
from proseline_protocol.crypto import (
    CanonicalEncoder,
    CanonicalJSON,
    CryptoProvider,
    KeyPair,
    SodiumCrypto,
)

# Errors
from proseline_protocol.errors import (
    ChainCorruptionError,
    ChainError,
    ConflictError,
    DecryptError,
    DuplicateIndexError,
    IndexGapError,
    LinkageError,
    ProtocolError,
    SignatureError,
    UnknownKindError,
    ValidationError,
)

# Message schema registry
from proseline_protocol.schemas import (
    FieldContract,
    JSONSchemaValidator,
    MessageRegistry,
    StructuralValidator,
)

# Envelope codec
from proseline_protocol.envelope import EnvelopeCodec, InnerEnvelope, OuterEnvelope

# Chain validation
from proseline_protocol.chain import (
    AcceptResult,
    ChainHead,
    ChainValidator,
    DraftGraph,
    LogChain,
    ProjectReplica,
)

# Invitations and references
from proseline_protocol.invitation import (
    Invitation,
    InvitationCodec,
    OpenedInvitation,
    create_invitation,
    open_invitation,
)
from proseline_protocol.reference import Reference, make_reference

__all__ = [
    # Version
    "__version__",
    # Server
    "create_server",
    "main",
    # Config
    "Config",
    "load_config",
    # Primitives
    "Encoding",
    "decode_binary",
    "encode_binary",
    "encoded_length",
    # Crypto
    "CanonicalEncoder",
    "CanonicalJSON",
    "CryptoProvider",
    "KeyPair",
    "SodiumCrypto",
    # Errors
    "ChainCorruptionError",
    "ChainError",
    "ConflictError",
    "DecryptError",
    "DuplicateIndexError",
    "IndexGapError",
    "LinkageError",
    "ProtocolError",
    "SignatureError",
    "UnknownKindError",
    "ValidationError",
    # Schemas
    "FieldContract",
    "JSONSchemaValidator",
    "MessageRegistry",
    "StructuralValidator",
    # Envelope
    "EnvelopeCodec",
    "InnerEnvelope",
    "OuterEnvelope",
    # Chain
    "AcceptResult",
    "ChainHead",
    "ChainValidator",
    "DraftGraph",
    "LogChain",
    "ProjectReplica",
    # Invitations and references
    "Invitation",
    "InvitationCodec",
    "OpenedInvitation",
    "create_invitation",
    "open_invitation",
    "Reference",
    "make_reference",
]
