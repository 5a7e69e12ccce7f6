"""
=============================================================================
WORDLE WARS - Proveedores de Credenciales del Ledger
=============================================================================
La autoridad que firma las solicitudes al servicio de liquidación puede
obtenerse de tres formas, seleccionadas por configuración:

- env: secreto en una variable de entorno (hex o texto)
- file: archivo de keypair (arreglo JSON de bytes) o texto plano
- ephemeral: secreto aleatorio por proceso (solo desarrollo)
=============================================================================
"""

import hashlib
import hmac
import json
import logging
import os
import secrets
from pathlib import Path
from typing import Optional


logger = logging.getLogger(__name__)


class CredentialError(Exception):
    """No se pudo obtener la credencial de firma."""
    pass


class CredentialProvider:
    """Firma cuerpos de solicitud con HMAC-SHA256."""

    def __init__(self, secret: bytes):
        if not secret:
            raise CredentialError("Empty signing secret")
        self._secret = secret

    @property
    def authority_id(self) -> str:
        """Identificador público de la autoridad (no revela el secreto)."""
        return hashlib.sha256(self._secret).hexdigest()[:16]

    def sign(self, payload: bytes) -> str:
        return hmac.new(self._secret, payload, hashlib.sha256).hexdigest()


def _decode_secret(raw: str) -> bytes:
    raw = raw.strip()
    try:
        return bytes.fromhex(raw)
    except ValueError:
        return raw.encode()


class EnvCredentialProvider(CredentialProvider):
    def __init__(self, var_name: str):
        raw = os.environ.get(var_name)
        if not raw:
            raise CredentialError(f"Environment variable {var_name} is not set")
        super().__init__(_decode_secret(raw))


class FileCredentialProvider(CredentialProvider):
    """Lee un keypair en formato arreglo JSON de enteros, o un secreto en texto."""

    def __init__(self, path: str):
        key_path = Path(path)
        if not key_path.is_file():
            raise CredentialError(f"Key file not found: {path}")

        content = key_path.read_text().strip()
        if content.startswith("["):
            try:
                secret = bytes(json.loads(content))
            except (ValueError, TypeError) as e:
                raise CredentialError(f"Invalid keypair file {path}: {e}")
        else:
            secret = _decode_secret(content)
        super().__init__(secret)


class EphemeralCredentialProvider(CredentialProvider):
    def __init__(self, secret: Optional[bytes] = None):
        super().__init__(secret or secrets.token_bytes(32))
        logger.warning(
            "[LEDGER] Usando autoridad efímera %s: no apta para producción",
            self.authority_id,
        )


def build_credential_provider(kind: str, key_env: str = "", key_path: str = "") -> CredentialProvider:
    """Selecciona el proveedor según configuración."""
    if kind == "env":
        return EnvCredentialProvider(key_env)
    if kind == "file":
        return FileCredentialProvider(key_path)
    if kind == "ephemeral":
        return EphemeralCredentialProvider()
    raise CredentialError(f"Unknown credential provider: {kind}")
