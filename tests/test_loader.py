"""
Tests for loading (and decrypting) env files.
"""

import subprocess
from unittest.mock import patch

import pytest

from envtool.core.config import Config, EnvFilesConfig
from envtool.core.loader import (
    DotenvxCLI,
    EnvFileError,
    get_env_file_path,
    load_env_file,
    resolve_private_key,
    write_plain_value,
)


class FakeDecryptor:
    """Records decrypt calls and returns canned plaintext."""

    def __init__(self, plaintext):
        self.plaintext = plaintext
        self.calls = []

    def decrypt(self, env_path, private_key):
        self.calls.append((env_path, private_key))
        return dict(self.plaintext)


class TestEnvFilePath:
    """Test env file path lookup."""

    def test_defaults(self):
        assert get_env_file_path(Config(), "dev") == ".env.development"
        assert get_env_file_path(Config(), "prod") == ".env.production"

    def test_configured(self):
        config = Config(env_files=EnvFilesConfig(dev=".env.dev"))
        assert get_env_file_path(config, "dev") == ".env.dev"


class TestResolvePrivateKey:
    """Test private key lookup order."""

    def test_keys_file_wins_over_environ(self, tmp_path):
        keys = tmp_path / ".env.keys"
        keys.write_text("DOTENV_PRIVATE_KEY_DEVELOPMENT=from_file\n")
        environ = {"DOTENV_PRIVATE_KEY_DEVELOPMENT": "from_env"}

        assert resolve_private_key(".env.development", str(keys), environ) == "from_file"

    def test_environ_used_without_keys_file(self, tmp_path):
        environ = {"DOTENV_PRIVATE_KEY_PRODUCTION": "prod_key"}
        assert resolve_private_key(".env.production", str(tmp_path / ".env.keys"), environ) == "prod_key"

    def test_specific_key_wins_over_generic(self, tmp_path):
        environ = {"DOTENV_PRIVATE_KEY": "generic", "DOTENV_PRIVATE_KEY_PRODUCTION": "specific"}
        assert resolve_private_key(".env.production", str(tmp_path / "none"), environ) == "specific"

    def test_generic_fallback(self, tmp_path):
        environ = {"DOTENV_PRIVATE_KEY": "generic"}
        assert resolve_private_key(".env.development", str(tmp_path / "none"), environ) == "generic"

    def test_no_key(self, tmp_path):
        assert resolve_private_key(".env.development", str(tmp_path / "none"), {}) is None

    def test_undecodable_keys_file(self, tmp_path):
        keys = tmp_path / ".env.keys"
        keys.write_bytes(b"DOTENV_PRIVATE_KEY=\xff\n")
        with pytest.raises(EnvFileError, match="Cannot read"):
            resolve_private_key(".env.development", str(keys), {})


class TestLoadEnvFile:
    """Test load_env_file."""

    def test_missing_file(self, tmp_path):
        with pytest.raises(EnvFileError, match="File not found"):
            load_env_file(str(tmp_path / ".env.development"), environ={})

    def test_undecodable_file(self, tmp_path):
        env_file = tmp_path / ".env.development"
        env_file.write_bytes(b"API=\xff\xfe\n")
        with pytest.raises(EnvFileError, match="Cannot read"):
            load_env_file(str(env_file), str(tmp_path / ".env.keys"), environ={})

    def test_plain_file_needs_no_decryptor(self, tmp_path):
        env_file = tmp_path / ".env.development"
        env_file.write_text("# plain\nA=1\nexport B=\"two words\"\n")
        decryptor = FakeDecryptor({})

        record = load_env_file(str(env_file), str(tmp_path / ".env.keys"), decryptor, {})

        assert record == {"A": "1", "B": "two words"}
        assert decryptor.calls == []

    def test_encrypted_values_are_decrypted(self, tmp_path):
        env_file = tmp_path / ".env.development"
        env_file.write_text('DOTENV_PUBLIC_KEY_DEVELOPMENT="03ab"\nSECRET="encrypted:BHq1=="\nPLAIN=x\n')
        keys = tmp_path / ".env.keys"
        keys.write_text("DOTENV_PRIVATE_KEY_DEVELOPMENT=abc123\n")
        decryptor = FakeDecryptor({"DOTENV_PUBLIC_KEY_DEVELOPMENT": "03ab", "SECRET": "hunter2", "PLAIN": "x"})

        record = load_env_file(str(env_file), str(keys), decryptor, {})

        assert record["SECRET"] == "hunter2"
        assert record["PLAIN"] == "x"
        assert decryptor.calls == [(str(env_file), "abc123")]

    def test_no_key_leaves_ciphertext(self, tmp_path):
        env_file = tmp_path / ".env.production"
        env_file.write_text('SECRET="encrypted:BHq1=="\n')
        decryptor = FakeDecryptor({})

        record = load_env_file(str(env_file), str(tmp_path / ".env.keys"), decryptor, {})

        assert record == {"SECRET": "encrypted:BHq1=="}
        assert decryptor.calls == []


class TestDotenvxCLI:
    """Test the dotenvx wrapper with subprocess patched out."""

    def test_decrypt_parses_json_and_passes_key(self):
        completed = subprocess.CompletedProcess([], 0, stdout='{"A": "1", "B": "2"}', stderr="")
        with patch("envtool.core.loader.subprocess.run", return_value=completed) as run:
            record = DotenvxCLI().decrypt(".env.development", "secret_key")

        assert record == {"A": "1", "B": "2"}
        args, kwargs = run.call_args
        assert args[0] == ["npx", "dotenvx", "get", "-f", ".env.development", "--format", "json"]
        assert kwargs["env"]["DOTENV_PRIVATE_KEY"] == "secret_key"

    def test_failure_raises(self):
        completed = subprocess.CompletedProcess([], 1, stdout="", stderr="[MISSING_PRIVATE_KEY]")
        with patch("envtool.core.loader.subprocess.run", return_value=completed):
            with pytest.raises(EnvFileError, match="MISSING_PRIVATE_KEY"):
                DotenvxCLI().decrypt(".env.development", "bad")

    def test_missing_binary(self):
        with patch("envtool.core.loader.subprocess.run", side_effect=FileNotFoundError("npx")):
            with pytest.raises(EnvFileError, match="not available"):
                DotenvxCLI().set("A", "1", ".env.development")

    def test_invalid_json(self):
        completed = subprocess.CompletedProcess([], 0, stdout="not json", stderr="")
        with patch("envtool.core.loader.subprocess.run", return_value=completed):
            with pytest.raises(EnvFileError, match="Unexpected"):
                DotenvxCLI().decrypt(".env.development", "k")


class TestWritePlainValue:
    """Test unencrypted writes."""

    def test_creates_file(self, tmp_path):
        env_file = tmp_path / ".env.development"
        write_plain_value(str(env_file), "A", "1")
        assert env_file.read_text() == "A=1\n"

    def test_updates_in_place(self, tmp_path):
        env_file = tmp_path / ".env.development"
        env_file.write_text("# keep me\nA=1\nB=2\n")
        write_plain_value(str(env_file), "A", "new value")
        assert env_file.read_text() == '# keep me\nA="new value"\nB=2\n'
