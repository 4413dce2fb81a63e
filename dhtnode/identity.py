"""
Identity Store
==============

[SECURITY] Persistent node identity:
- id_ecdsa: 32-byte Ed25519 seed (hex), mode 0600
- config.json: human-editable configuration document
- data/: storage directory owned by the DHT engine

Only the private seed is written to disk; the public key (and therefore the
contact fingerprint and node_id) is derived from it on every load.
"""

import base64
import binascii
import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple, Union

from nacl.encoding import Base64Encoder
from nacl.exceptions import BadSignatureError, CryptoError
from nacl.signing import SigningKey, VerifyKey

from .config import CONFIG_FILE, DATA_DIR, KEY_FILE, NodeConfig, default_document, resolve_config
from .contact import fingerprint_to_node_id
from .errors import IdentityCorrupt, StorageUnavailable

logger = logging.getLogger(__name__)


SEED_SIZE = 32


class KeyPair:
    """
    Ed25519 key pair of a node (PyNaCl).

    [DECENTRALIZATION] Node identity = its public key. No certificate
    authority; any peer can verify our signatures from the fingerprint alone.
    """

    def __init__(self, signing_key: Optional[SigningKey] = None):
        self.signing_key: SigningKey = signing_key or SigningKey.generate()
        self.verify_key: VerifyKey = self.signing_key.verify_key
        self.public_key: str = self.verify_key.encode(encoder=Base64Encoder).decode("ascii")
        self.node_id: bytes = fingerprint_to_node_id(self.public_key)

    @classmethod
    def from_private_key(cls, private_key: str) -> "KeyPair":
        """Restore from the hex seed stored in id_ecdsa."""
        try:
            seed = bytes.fromhex(private_key.strip())
        except (ValueError, AttributeError) as e:
            raise IdentityCorrupt("Private key is not valid hex") from e
        if len(seed) != SEED_SIZE:
            raise IdentityCorrupt(f"Private key must be {SEED_SIZE} bytes, got {len(seed)}")
        return cls(SigningKey(seed))

    @property
    def private_key(self) -> str:
        """Hex seed, the only material that is persisted."""
        return bytes(self.signing_key).hex()

    def sign(self, data: bytes) -> str:
        """Detached signature, base64."""
        signed = self.signing_key.sign(data)
        return base64.b64encode(signed.signature).decode("ascii")

    @staticmethod
    def verify(fingerprint: str, data: bytes, signature: str) -> bool:
        """Check a detached base64 signature against a fingerprint."""
        try:
            verify_key = VerifyKey(fingerprint.encode("ascii"), encoder=Base64Encoder)
            verify_key.verify(data, base64.b64decode(signature.encode("ascii"), validate=True))
            return True
        except (BadSignatureError, CryptoError, binascii.Error, ValueError, TypeError, AttributeError):
            return False

    def __eq__(self, other) -> bool:
        if isinstance(other, KeyPair):
            return self.public_key == other.public_key
        return False

    def __hash__(self) -> int:
        return hash(self.public_key)

    def __repr__(self) -> str:
        return f"KeyPair(public_key={self.public_key[:12]}...)"


class IdentityStore:
    """
    Loads or creates the identity and configuration of one node instance.

    [USAGE]
    ```python
    keypair, config = IdentityStore("~/.dhtnode").load_or_create()
    ```
    """

    def __init__(self, datadir: Union[str, Path]):
        self.datadir = Path(datadir).expanduser()
        self.config_path = self.datadir / CONFIG_FILE
        self.key_path = self.datadir / KEY_FILE
        self.data_path = self.datadir / DATA_DIR

    def load_or_create(
        self,
        overrides: Optional[Mapping[str, Any]] = None,
    ) -> Tuple[KeyPair, NodeConfig]:
        """
        Ensure the directory layout exists and return (keypair, config).

        Raises:
            StorageUnavailable: directory or files cannot be created
            IdentityCorrupt: id_ecdsa or config.json cannot be read or parsed
        """
        self._ensure_layout()
        persisted = self._load_config_document()
        keypair = self._load_keypair()

        config = self._resolve(persisted, overrides)
        logger.debug(f"[IDENTITY] Loaded identity {keypair.public_key} from {self.datadir}")
        return keypair, config

    def load_config(self, overrides: Optional[Mapping[str, Any]] = None) -> NodeConfig:
        """
        Resolved configuration, read-only.

        Nothing is created on disk; a missing config.json means defaults.
        Used by tools that talk to a running node.
        """
        persisted = self._load_config_document() if self.config_path.is_file() else None
        return self._resolve(persisted, overrides)

    def _resolve(
        self,
        persisted: Optional[Mapping[str, Any]],
        overrides: Optional[Mapping[str, Any]],
    ) -> NodeConfig:
        try:
            return resolve_config(persisted, overrides)
        except (ValueError, TypeError) as e:
            raise IdentityCorrupt(f"Invalid configuration in {self.config_path}: {e}") from e

    def _ensure_layout(self) -> None:
        try:
            self.datadir.mkdir(parents=True, exist_ok=True)
            self.data_path.mkdir(parents=True, exist_ok=True)

            if not self.config_path.exists():
                self.config_path.write_text(
                    json.dumps(default_document(), indent=2),
                    encoding="utf-8",
                )
                logger.info(f"[IDENTITY] Wrote default configuration to {self.config_path}")

            if not self.key_path.exists():
                keypair = KeyPair()
                self.key_path.write_text(keypair.private_key, encoding="ascii")
                os.chmod(self.key_path, 0o600)
                logger.info(f"[IDENTITY] Generated new identity {keypair.public_key}")
        except OSError as e:
            raise StorageUnavailable(f"Cannot prepare data directory {self.datadir}: {e}") from e

    def _load_config_document(self) -> Dict[str, Any]:
        try:
            text = self.config_path.read_text(encoding="utf-8")
        except UnicodeDecodeError as e:
            raise IdentityCorrupt(f"Corrupt configuration {self.config_path}") from e
        except OSError as e:
            raise StorageUnavailable(f"Cannot read {self.config_path}: {e}") from e

        try:
            document = json.loads(text)
        except json.JSONDecodeError as e:
            raise IdentityCorrupt(f"Corrupt configuration {self.config_path}: {e}") from e

        if not isinstance(document, dict):
            raise IdentityCorrupt(f"Configuration {self.config_path} must be a JSON object")
        return document

    def _load_keypair(self) -> KeyPair:
        try:
            raw = self.key_path.read_text(encoding="ascii")
        except UnicodeDecodeError as e:
            raise IdentityCorrupt(f"Corrupt key file {self.key_path}") from e
        except OSError as e:
            raise IdentityCorrupt(f"Unreadable key file {self.key_path}: {e}") from e
        return KeyPair.from_private_key(raw)


def load_or_create(
    datadir: Union[str, Path],
    overrides: Optional[Mapping[str, Any]] = None,
) -> Tuple[KeyPair, NodeConfig]:
    """Shortcut for IdentityStore(datadir).load_or_create()."""
    return IdentityStore(datadir).load_or_create(overrides)
