"""Encrypted secrets file service.

Secrets live in an AES-256-GCM encrypted YAML file that can be committed.
The master key is kept next to it under `.jailship/` and must stay out of
version control.

File layout: ``iv (16 bytes) || tag (16 bytes) || ciphertext``.
"""

import base64
import binascii
import os
from typing import Any, Dict, Optional, Tuple

import click
import yaml
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from jailship.constants import KEY_FILE_MODE, MASTER_KEY_PATH, SECRETS_PATH
from jailship.errors import SecretsError
from jailship.errors_catalog import actionable_error

SECRETS_TEMPLATE = """\
# Values under `env` are injected into the application jail and override
# the `env` mapping of deploy.yml.
env:
  SECRET_KEY_BASE: change-me-run-mix-phx-gen-secret
"""


class SecretsService:
    """Creates, edits and decrypts the encrypted secrets file."""

    KEY_LENGTH = 32
    IV_LENGTH = 16
    TAG_LENGTH = 16
    AAD = b"jailship-secrets"

    def __init__(
        self,
        logger,
        console,
        secrets_path: str = SECRETS_PATH,
        key_path: str = MASTER_KEY_PATH,
        editor=click.edit,
    ):
        self.logger = logger
        self.console = console
        self.secrets_path = secrets_path
        self.key_path = key_path
        self.editor = editor

    def init(self):
        if os.path.exists(self.key_path):
            raise SecretsError(actionable_error("master_key_exists", key_path=self.key_path))

        key = AESGCM.generate_key(bit_length=self.KEY_LENGTH * 8)
        os.makedirs(os.path.dirname(self.key_path) or ".", exist_ok=True)
        with open(self.key_path, "w", encoding="utf-8") as file_obj:
            file_obj.write(base64.b64encode(key).decode("ascii"))
        os.chmod(self.key_path, KEY_FILE_MODE)

        self.console.print(f"[green]Master key generated at {self.key_path}[/green]")
        self.console.print(f"[yellow]Add {self.key_path} to .gitignore![/yellow]")

        self.save_encrypted(SECRETS_TEMPLATE, key)
        self.console.print(f"[green]Encrypted secrets file created at {self.secrets_path}[/green]")
        self.console.print("[blue]Run `jailship secrets edit` to add your secret values.[/blue]")

    def edit(self) -> bool:
        key = self.read_master_key()
        plaintext = self.load_encrypted(key)

        updated = self.editor(plaintext, extension=".yml")
        if updated is None or updated == plaintext:
            self.console.print("[blue]No changes detected.[/blue]")
            return False

        self._parse_env(updated)
        self.save_encrypted(updated, key)
        self.console.print("[green]Secrets updated and re-encrypted.[/green]")
        return True

    def encrypt(self, plaintext: str, key: bytes) -> Tuple[bytes, bytes, bytes]:
        iv = os.urandom(self.IV_LENGTH)
        sealed = AESGCM(key).encrypt(iv, plaintext.encode("utf-8"), self.AAD)
        ciphertext, tag = sealed[: -self.TAG_LENGTH], sealed[-self.TAG_LENGTH :]
        return iv, ciphertext, tag

    def decrypt(self, iv: bytes, ciphertext: bytes, tag: bytes, key: bytes) -> str:
        try:
            plaintext = AESGCM(key).decrypt(iv, ciphertext + tag, self.AAD)
        except (InvalidTag, ValueError) as exc:
            raise SecretsError("Decryption failed: invalid key or corrupted file.") from exc
        return plaintext.decode("utf-8")

    def save_encrypted(self, plaintext: str, key: bytes):
        iv, ciphertext, tag = self.encrypt(plaintext, key)
        try:
            with open(self.secrets_path, "wb") as file_obj:
                file_obj.write(iv + tag + ciphertext)
        except OSError as exc:
            raise SecretsError(f"Could not write secrets file '{self.secrets_path}': {exc}") from exc

    def load_encrypted(self, key: bytes) -> str:
        try:
            with open(self.secrets_path, "rb") as file_obj:
                data = file_obj.read()
        except OSError as exc:
            raise SecretsError(f"Could not read secrets file '{self.secrets_path}': {exc}") from exc

        header = self.IV_LENGTH + self.TAG_LENGTH
        if len(data) < header:
            raise SecretsError(f"Encrypted file {self.secrets_path} is too small to be valid.")

        iv = data[: self.IV_LENGTH]
        tag = data[self.IV_LENGTH : header]
        return self.decrypt(iv, data[header:], tag, key)

    def read_master_key(self) -> bytes:
        if not os.path.exists(self.key_path):
            raise SecretsError(
                f"Master key not found at {self.key_path}. Run `jailship secrets init` first."
            )

        with open(self.key_path, "r", encoding="utf-8") as file_obj:
            encoded = file_obj.read().strip()
        try:
            key = base64.b64decode(encoded, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise SecretsError(f"Master key at {self.key_path} is not valid base64.") from exc

        if len(key) != self.KEY_LENGTH:
            raise SecretsError(f"Master key at {self.key_path} must be {self.KEY_LENGTH} bytes.")
        return key

    def merge_env(self, config) -> Tuple[str, Any]:
        """Returns ("merged", config') or ("skipped", config)."""
        secrets_exist = os.path.exists(self.secrets_path)
        key_exists = os.path.exists(self.key_path)

        if not secrets_exist and not key_exists:
            return "skipped", config
        if secrets_exist and not key_exists:
            raise SecretsError(
                actionable_error("secrets_key_missing", secrets_path=self.secrets_path, key_path=self.key_path)
            )
        if key_exists and not secrets_exist:
            raise SecretsError(
                actionable_error("secrets_file_missing", secrets_path=self.secrets_path, key_path=self.key_path)
            )

        secret_env = self._parse_env(self.load_encrypted(self.read_master_key()))
        merged = dict(config.env)
        merged.update(secret_env)
        self.logger.debug("Merged %s secret variable(s) into the environment.", len(secret_env))
        return "merged", config.with_env(merged)

    def _parse_env(self, plaintext: str) -> Dict[str, str]:
        try:
            parsed: Optional[Any] = yaml.safe_load(plaintext)
        except yaml.YAMLError as exc:
            raise SecretsError(f"Secrets file is not valid YAML: {exc}") from exc

        if parsed is None:
            return {}
        if not isinstance(parsed, dict):
            raise SecretsError("Secrets file must contain a YAML mapping at the root.")

        env = parsed.get("env") or {}
        if not isinstance(env, dict):
            raise SecretsError("The `env` entry of the secrets file must be a mapping.")
        return {str(key): str(value) for key, value in env.items()}
