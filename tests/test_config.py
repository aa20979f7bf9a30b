"""Tests for configuration loading."""

import pytest
from proseline_protocol.config import (
    DEFAULT_CONFIG,
    FLAT_ENVELOPE_VERSION,
    SPLIT_ENVELOPE_VERSION,
    Config,
    load_config,
)
from proseline_protocol.primitives import Encoding


class TestConfigDefaults:
    """Test default configuration values."""

    def test_default_encoding_is_hex(self):
        """Binary fields are hex unless configured otherwise."""
        config = Config()
        assert config.encoding == Encoding.HEX

    def test_default_envelope_is_split(self):
        """Signatures are sealed inside the ciphertext by default."""
        config = Config()
        assert config.signatures_in_clear is False
        assert config.envelope_version == SPLIT_ENVELOPE_VERSION

    def test_flat_envelope_version(self):
        """Clear signatures select the flat envelope."""
        config = Config(signatures_in_clear=True)
        assert config.envelope_version == FLAT_ENVELOPE_VERSION

    def test_default_replication_key_in_clear(self):
        """Invitations carry the replication key in clear by default."""
        assert DEFAULT_CONFIG.encrypt_replication_key is False

    def test_default_buffer_size(self):
        """Each log buffers up to 1024 out-of-order entries."""
        assert DEFAULT_CONFIG.max_pending_entries == 1024


class TestConfigLoading:
    """Test configuration file loading."""

    def test_load_from_toml_string(self, tmp_path):
        """Load configuration from TOML file."""
        config_file = tmp_path / "config.toml"
        config_file.write_text('''
[encoding]
binary = "base64"

[envelope]
signatures_in_clear = true

[invitation]
encrypt_replication_key = true

[chain]
max_pending_entries = 16

[logging]
level = "debug"
''')

        config = load_config(config_file)

        assert config.encoding == Encoding.BASE64
        assert config.signatures_in_clear is True
        assert config.encrypt_replication_key is True
        assert config.max_pending_entries == 16
        assert config.log_level == "DEBUG"

    def test_load_missing_file_uses_defaults(self, tmp_path):
        """Missing config file should use defaults."""
        config = load_config(tmp_path / "nonexistent.toml")
        assert config == Config()

    def test_partial_config_merges_with_defaults(self, tmp_path):
        """Partial config should merge with defaults."""
        config_file = tmp_path / "config.toml"
        config_file.write_text('''
[envelope]
signatures_in_clear = true
''')

        config = load_config(config_file)

        assert config.signatures_in_clear is True
        assert config.encoding == Encoding.HEX  # default
        assert config.max_pending_entries == 1024  # default

    def test_unknown_encoding(self, tmp_path):
        """Only hex and base64 are supported."""
        config_file = tmp_path / "config.toml"
        config_file.write_text('[encoding]\nbinary = "base58"\n')
        with pytest.raises(ValueError):
            load_config(config_file)

    def test_negative_buffer_size(self, tmp_path):
        """A negative buffer size is rejected."""
        config_file = tmp_path / "config.toml"
        config_file.write_text('[chain]\nmax_pending_entries = -1\n')
        with pytest.raises(ValueError, match="non-negative"):
            load_config(config_file)
