"""MCP server for proseline log envelopes.

This server exposes offline tools for inspecting the wire format:
entry validation and digests, discovery keys, references, envelope
inspection and opening, and invitation opening. It never touches
storage or the network.
"""

import json
import logging
from typing import Optional

from mcp.server.fastmcp import FastMCP

from proseline_protocol.config import Config, load_config
from proseline_protocol.envelope import EnvelopeCodec
from proseline_protocol.errors import (
    DecryptError,
    ProtocolError,
    SignatureError,
    UnknownKindError,
    ValidationError,
)
from proseline_protocol.invitation import InvitationCodec
from proseline_protocol.primitives import (
    ENCRYPTION_KEY_BYTES,
    REPLICATION_KEY_BYTES,
    decode_binary,
    encode_binary,
)
from proseline_protocol.reference import make_reference as build_reference

logger = logging.getLogger(__name__)


def _error(e: Exception) -> dict:
    result = {"error": str(e), "error_type": type(e).__name__}
    for attribute in ("field", "which", "kind"):
        value = getattr(e, attribute, None)
        if value is not None:
            result[attribute] = value
    return result


def create_server(config: Optional[Config] = None) -> FastMCP:
    """Create and configure the MCP server with all tools.

    Args:
        config: Optional configuration. If not provided, uses defaults.

    Returns:
        Configured FastMCP server instance.
    """
    if config is None:
        config = Config()

    mcp = FastMCP("proseline-protocol")

    # Store config on server for access by tools
    mcp._config = config
    codec = EnvelopeCodec(config)
    invitations = InvitationCodec(config)
    registry = codec.registry

    def key_bytes(text: str, size: int, name: str) -> bytes:
        try:
            return decode_binary(text, config.encoding, size)
        except ValueError as e:
            raise ValidationError(name, str(e)) from e

    # =========================================================================
    # Entries
    # =========================================================================

    @mcp.tool()
    def describe_entry_kind(kind: str) -> dict:
        """Describe the fields of a log entry kind.

        Args:
            kind: Entry kind ('draft', 'mark', 'note', 'reply', 'correction', 'intro')

        Returns:
            Dictionary with 'required' and 'optional' field lists.
        """
        try:
            contract = registry.describe(kind)
        except UnknownKindError as e:
            return {**_error(e), "known_kinds": list(registry.kinds())}
        return {
            "kind": contract.kind,
            "required": ["type"] + list(contract.required),
            "optional": list(contract.optional),
        }

    @mcp.tool()
    def validate_entry(entry_json: str) -> dict:
        """Validate a log entry against its kind's field contract.

        Args:
            entry_json: Entry as a JSON object string

        Returns:
            Dictionary with 'valid', plus 'kind' and 'digest' when valid or
            'field' and 'reason' when not.
        """
        try:
            entry = json.loads(entry_json)
            kind = registry.validate_entry(entry)
        except json.JSONDecodeError as e:
            return {"valid": False, "field": "(root)", "reason": f"Invalid JSON: {e}"}
        except ValidationError as e:
            return {"valid": False, "field": e.field, "reason": e.reason}
        except UnknownKindError as e:
            return {"valid": False, "field": "type", "reason": str(e)}
        return {"valid": True, "kind": kind, "digest": codec.digest(entry)}

    @mcp.tool()
    def entry_digest(entry_json: str) -> dict:
        """Compute the digest other entries use to reference an entry.

        Args:
            entry_json: Entry as a JSON object string

        Returns:
            Dictionary with 'digest' and the 'canonical' JSON that was hashed.
        """
        try:
            entry = json.loads(entry_json)
            canonical = codec.canonical(entry)
        except ValueError as e:
            return _error(e)
        return {
            "digest": codec._text(codec.crypto.hash(canonical)),
            "canonical": canonical.decode("utf-8"),
        }

    # =========================================================================
    # Replication
    # =========================================================================

    @mcp.tool()
    def compute_discovery_key(replication_key: str) -> dict:
        """Derive a project's discovery key from its replication key.

        Args:
            replication_key: Replication key, encoded per configuration

        Returns:
            Dictionary with 'discovery_key'.
        """
        try:
            key = key_bytes(replication_key, REPLICATION_KEY_BYTES, "replicationKey")
        except ValidationError as e:
            return _error(e)
        return {"discovery_key": codec.discovery_key(key)}

    @mcp.tool()
    def make_reference(log_public_key: str, index: int) -> dict:
        """Build a reference to offer or request one log entry.

        Args:
            log_public_key: Public key of the log
            index: Entry index within the log

        Returns:
            Dictionary with 'logPublicKey' and 'index'.
        """
        try:
            return build_reference(log_public_key, index).to_dict()
        except ValueError as e:
            return _error(e)

    # =========================================================================
    # Envelopes
    # =========================================================================

    @mcp.tool()
    def parse_envelope(envelope_json: str) -> dict:
        """Parse the transport-visible fields of an envelope.

        Needs no keys; this is what a replication-only peer sees.

        Args:
            envelope_json: Outer envelope as a JSON object string

        Returns:
            Dictionary with envelope fields and its 'fingerprint'.
        """
        try:
            outer = codec.parse(json.loads(envelope_json))
        except (json.JSONDecodeError, ValidationError) as e:
            return _error(e)

        result = {
            "version": outer.version,
            "discovery_key": outer.discovery_key,
            "log_public_key": outer.log_public_key,
            "index": outer.index,
            "signatures_in_clear": outer.signatures_in_clear,
            "fingerprint": codec.fingerprint(outer),
        }
        if outer.signatures_in_clear:
            result["prior"] = outer.prior
        return result

    @mcp.tool()
    def open_envelope(
        envelope_json: str,
        read_key: str,
        project_public_key: str,
    ) -> dict:
        """Decrypt an envelope and verify its signatures.

        Args:
            envelope_json: Outer envelope as a JSON object string
            read_key: Project read key, encoded per configuration
            project_public_key: Project public key, encoded per configuration

        Returns:
            Dictionary with the 'entry' and its 'digest', or an error naming
            what failed.
        """
        try:
            outer = codec.parse(json.loads(envelope_json))
            key = key_bytes(read_key, ENCRYPTION_KEY_BYTES, "readKey")
            inner = codec.open(outer, key, project_public_key)
        except (json.JSONDecodeError, ProtocolError) as e:
            if isinstance(e, (DecryptError, SignatureError)):
                logger.info("Rejected envelope %d: %s", outer.index, e)
            return _error(e)
        return {
            "entry": inner.entry,
            "digest": codec.digest(inner.entry),
            "client_signed": inner.client_signature is not None,
        }

    # =========================================================================
    # Invitations
    # =========================================================================

    @mcp.tool()
    def open_invitation(invitation_json: str, encryption_key: str) -> dict:
        """Open an invitation with the key shared out of band.

        Args:
            invitation_json: Invitation as a JSON object string
            encryption_key: Invitation encryption key, encoded per configuration

        Returns:
            Dictionary with the recovered keys, title, and any optional
            fields that failed to open.
        """
        try:
            invitation = invitations.parse(json.loads(invitation_json))
            key = key_bytes(encryption_key, ENCRYPTION_KEY_BYTES, "encryptionKey")
            opened = invitations.open(invitation, key)
        except (json.JSONDecodeError, ProtocolError) as e:
            return _error(e)

        def encode(value: Optional[bytes]) -> Optional[str]:
            if value is None:
                return None
            return encode_binary(value, config.encoding)

        return {
            "replication_key": encode(opened.replication_key),
            "discovery_key": codec.discovery_key(opened.replication_key),
            "read_key": encode(opened.read_key),
            "write_seed": encode(opened.write_seed),
            "project_public_key": encode(opened.project_public_key),
            "title": opened.title,
            "failures": {name: str(e) for name, e in opened.failures.items()},
        }

    return mcp


def main():
    """Entry point for the MCP server."""
    from pathlib import Path

    # Try to load config from standard locations
    config_paths = [
        Path("proseline-protocol.toml"),
        Path.home() / ".config" / "proseline-protocol" / "config.toml",
    ]

    config = None
    for path in config_paths:
        if path.exists():
            config = load_config(path)
            break

    if config is None:
        config = Config()

    logging.basicConfig(level=config.log_level)
    server = create_server(config)
    server.run()


if __name__ == "__main__":
    main()
