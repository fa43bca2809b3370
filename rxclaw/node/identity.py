"""Persistent Ed25519 device identity used for node pairing.

The keypair is created once per data directory and stored in
``device.json`` (mode 0600) together with the device token the gateway
issues after an operator approves the device. A file that exists but
cannot be used raises :class:`~rxclaw.mechanism.IdentityError`; it is
never replaced by a fresh keypair behind the user's back.
"""

import binascii
import hashlib
import json
import os
from datetime import UTC, datetime
from pathlib import Path
from typing import Iterable

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)

from ..config import write_json_atomic
from ..mechanism import IdentityError
from ..telemetry import make_logger
from ..utils import b64url_decode, b64url_encode

IDENTITY_FILE = "device.json"
IDENTITY_VERSION = 1
SIGNATURE_VERSION = "v2"


def build_signature_payload(
    device_id: str,
    client_id: str,
    client_mode: str,
    role: str,
    scopes: Iterable[str],
    signed_at_ms: int,
    token: str | None,
    nonce: str,
) -> str:
    """Canonical text signed during registration.

    ``v2|deviceId|clientId|clientMode|role|scopes|signedAtMs|token|nonce``
    with scopes comma-joined and a missing token as the empty string.
    """
    return "|".join(
        [
            SIGNATURE_VERSION,
            device_id,
            client_id,
            client_mode,
            role,
            ",".join(scopes),
            str(signed_at_ms),
            token or "",
            nonce,
        ]
    )


def _raw_public_bytes(public_key: Ed25519PublicKey) -> bytes:
    return public_key.public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw,
    )


def _raw_private_bytes(private_key: Ed25519PrivateKey) -> bytes:
    return private_key.private_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PrivateFormat.Raw,
        encryption_algorithm=serialization.NoEncryption(),
    )


class DeviceIdentity:
    """An install's signing keypair and, once paired, its device token.

    Attributes:
        device_id: Lowercase hex SHA-256 of the raw 32-byte public key.
        public_key: Raw public key, URL-safe base64 without padding.
        device_token: Bearer token issued on approval, or None.
    """

    def __init__(
        self,
        private_key: Ed25519PrivateKey,
        device_token: str | None = None,
        path: Path | None = None,
        created_at: str | None = None,
    ):
        self._private_key = private_key
        self._public_key = private_key.public_key()
        raw_public = _raw_public_bytes(self._public_key)
        self.device_id = hashlib.sha256(raw_public).hexdigest()
        self.public_key = b64url_encode(raw_public)
        self.device_token = device_token or None
        self.path = path
        self.created_at = created_at or datetime.now(UTC).isoformat()

    @property
    def short_device_id(self) -> str:
        return self.device_id[:16]

    @property
    def is_paired(self) -> bool:
        return bool(self.device_token)

    # ---------------- persistence ---------------- #

    @classmethod
    def generate(cls, path: Path | None = None) -> "DeviceIdentity":
        return cls(Ed25519PrivateKey.generate(), path=path)

    @classmethod
    def load(cls, path: Path) -> "DeviceIdentity":
        """Read an identity file.

        Raises:
            IdentityError: unreadable JSON, missing fields, a malformed key,
                or a stored public key / device id that does not match the
                private key.
        """
        try:
            with open(path, encoding="utf-8") as handle:
                data = json.load(handle)
        except (OSError, ValueError) as e:
            raise IdentityError(f"Cannot read device identity {path}: {e}") from e
        if not isinstance(data, dict):
            raise IdentityError(f"Device identity {path} is not a JSON object")

        encoded = data.get("privateKey")
        if not isinstance(encoded, str):
            raise IdentityError(f"Device identity {path} has no private key")
        try:
            private_key = Ed25519PrivateKey.from_private_bytes(b64url_decode(encoded))
        except (ValueError, binascii.Error) as e:
            raise IdentityError(f"Device identity {path} has a malformed key: {e}") from e

        token = data.get("deviceToken")
        created_at = data.get("createdAt")
        identity = cls(
            private_key,
            device_token=token if isinstance(token, str) else None,
            path=path,
            created_at=created_at if isinstance(created_at, str) else None,
        )
        if data.get("publicKey", identity.public_key) != identity.public_key:
            raise IdentityError(f"Device identity {path}: public key does not match private key")
        if data.get("deviceId", identity.device_id) != identity.device_id:
            raise IdentityError(f"Device identity {path}: device id does not match public key")
        return identity

    @classmethod
    def load_or_create(
        cls, data_dir: Path, logger_provider=None
    ) -> "DeviceIdentity":
        """Load ``device.json`` from ``data_dir``, generating it on first use."""
        logger = make_logger("DeviceIdentity", logger_provider)
        path = Path(data_dir) / IDENTITY_FILE
        if path.exists():
            identity = cls.load(path)
            logger.info(
                f"Loaded device identity {identity.short_device_id}",
                paired=identity.is_paired,
            )
            return identity
        identity = cls.generate(path)
        identity.save()
        logger.info(f"Generated device identity {identity.short_device_id}", path=str(path))
        return identity

    def to_dict(self) -> dict:
        return {
            "version": IDENTITY_VERSION,
            "deviceId": self.device_id,
            "publicKey": self.public_key,
            "privateKey": b64url_encode(_raw_private_bytes(self._private_key)),
            "deviceToken": self.device_token,
            "createdAt": self.created_at,
        }

    def save(self, path: Path | None = None) -> None:
        path = path or self.path
        if path is None:
            raise IdentityError("Device identity has no file to save to")
        write_json_atomic(path, self.to_dict(), mode=0o600)
        self.path = path
        if os.name != "nt":
            os.chmod(path, 0o600)

    def store_device_token(self, token: str) -> None:
        """Remember the approval token; persisted immediately when file-backed."""
        self.device_token = token
        if self.path is not None:
            self.save()

    # ---------------- signing ---------------- #

    def sign_payload(
        self,
        nonce: str,
        signed_at_ms: int,
        client_id: str,
        client_mode: str,
        role: str,
        scopes: Iterable[str],
        token: str | None,
    ) -> str:
        payload = build_signature_payload(
            self.device_id, client_id, client_mode, role, scopes, signed_at_ms, token, nonce
        )
        return b64url_encode(self._private_key.sign(payload.encode("utf-8")))

    def verify(
        self,
        signature: str,
        nonce: str,
        signed_at_ms: int,
        client_id: str,
        client_mode: str,
        role: str,
        scopes: Iterable[str],
        token: str | None,
    ) -> bool:
        payload = build_signature_payload(
            self.device_id, client_id, client_mode, role, scopes, signed_at_ms, token, nonce
        )
        try:
            self._public_key.verify(b64url_decode(signature), payload.encode("utf-8"))
        except (InvalidSignature, ValueError, binascii.Error):
            return False
        return True
