import base64
import hashlib
import json
from pathlib import Path
from typing import Dict, Iterable, List

from nacl.signing import SigningKey

from policy_deployment.constants import (
    ED25519_FLAG,
    PRIVATE_KEY_LENGTH,
    SUI_ADDRESS_LENGTH,
    SUI_KEYSTORE_FILEPATH,
    TRANSACTION_INTENT,
)
from policy_deployment.exceptions import KeyNotFound
from policy_deployment.utils import normalize_object_id, object_id_from_bytes


def blake2b_256(data: bytes) -> bytes:
    return hashlib.blake2b(data, digest_size=32).digest()


class Ed25519Keypair:
    """An Ed25519 signing key plus its derived Sui address."""

    FLAG = ED25519_FLAG

    def __init__(self, signing_key: SigningKey):
        self._signing_key = signing_key

    @classmethod
    def from_secret_key(cls, secret_key: bytes) -> "Ed25519Keypair":
        if len(secret_key) != PRIVATE_KEY_LENGTH:
            raise ValueError(
                f"Ed25519 secret key must be {PRIVATE_KEY_LENGTH} bytes, got {len(secret_key)}"
            )
        return cls(SigningKey(secret_key))

    @classmethod
    def generate(cls) -> "Ed25519Keypair":
        return cls(SigningKey.generate())

    @property
    def public_key(self) -> bytes:
        return bytes(self._signing_key.verify_key)

    @property
    def address(self) -> str:
        digest = blake2b_256(bytes([self.FLAG]) + self.public_key)
        return object_id_from_bytes(digest[:SUI_ADDRESS_LENGTH])

    def export(self) -> str:
        """Returns the keystore representation: base64(flag || secret key)."""
        raw = bytes([self.FLAG]) + bytes(self._signing_key)
        return base64.b64encode(raw).decode("ascii")

    def sign(self, message: bytes) -> bytes:
        return self._signing_key.sign(message).signature

    def sign_transaction(self, tx_bytes: bytes) -> str:
        """
        Signs serialized transaction data with the transaction intent and
        returns the serialized signature (flag || signature || public key) in base64.
        """
        intent_digest = blake2b_256(TRANSACTION_INTENT + tx_bytes)
        serialized = bytes([self.FLAG]) + self.sign(intent_digest) + self.public_key
        return base64.b64encode(serialized).decode("ascii")


class Keystore:
    """
    The keypairs of a Sui keystore file, indexed once by derived address.
    Entries for unsupported signature schemes are skipped.
    """

    def __init__(self, keypairs: Iterable[Ed25519Keypair]):
        self._keypairs: Dict[str, Ed25519Keypair] = dict()
        for keypair in keypairs:
            self._keypairs[keypair.address] = keypair

    @classmethod
    def from_entries(cls, entries: List[str]) -> "Keystore":
        keypairs = list()
        for entry in entries:
            raw = base64.b64decode(entry)
            if not raw or raw[0] != ED25519_FLAG:
                continue
            keypairs.append(Ed25519Keypair.from_secret_key(raw[1:]))
        return cls(keypairs)

    @classmethod
    def from_file(cls, filepath: Path = SUI_KEYSTORE_FILEPATH) -> "Keystore":
        with open(filepath, "r") as file:
            entries = json.load(file)
        if not isinstance(entries, list):
            raise ValueError(f"Malformed keystore at {filepath}: expected a list of keys.")
        return cls.from_entries(entries)

    @property
    def addresses(self) -> List[str]:
        return sorted(self._keypairs)

    def __contains__(self, address: str) -> bool:
        return normalize_object_id(address) in self._keypairs

    def __len__(self) -> int:
        return len(self._keypairs)

    def get_keypair(self, address: str) -> Ed25519Keypair:
        try:
            return self._keypairs[normalize_object_id(address)]
        except KeyError:
            raise KeyNotFound(f"keypair not found for sender: {address}")
