"""
Credential Hashing Module

Salted scrypt hashing for account credentials (PINs) with constant-time
verification, plus the strength policy applied to new credentials.
Raw credentials are never stored or logged.
"""

import hashlib
import hmac
import secrets
from dataclasses import dataclass
from typing import List, Optional

from .config import LedgerConfig, get_config

SCHEME = "scrypt"


@dataclass(frozen=True)
class CredentialPolicy:
    """Strength requirements for new credentials"""
    min_length: int = 6
    digits_only: bool = True

    @classmethod
    def from_config(cls, config: Optional[LedgerConfig] = None) -> 'CredentialPolicy':
        config = config or get_config()
        return cls(min_length=config.credential_min_length,
                   digits_only=config.credential_digits_only)

    def violations(self, credential: str) -> List[str]:
        """List every rule the credential breaks (empty when acceptable)"""
        violations = []

        if len(credential) < self.min_length:
            violations.append(f"Minimum length {self.min_length}")

        if self.digits_only and not credential.isdigit():
            violations.append("Must contain digits only")

        if len(set(credential)) == 1 and len(credential) > 1:
            violations.append("Must not repeat a single character")

        return violations


class CredentialHasher:
    """
    Hashes credentials as ``scrypt$n$r$p$salt$digest``.

    Cost parameters are stored with each hash, so verification keeps working
    for hashes produced before a cost change.
    """

    def __init__(self, n: int = 16384, r: int = 8, p: int = 1):
        self.n = n
        self.r = r
        self.p = p
        self._dummy_hash: Optional[str] = None

    @classmethod
    def from_config(cls, config: Optional[LedgerConfig] = None) -> 'CredentialHasher':
        config = config or get_config()
        return cls(n=config.scrypt_n, r=config.scrypt_r, p=config.scrypt_p)

    def hash(self, credential: str) -> str:
        """Hash a credential with a fresh random salt"""
        salt = secrets.token_hex(16)
        digest = self._derive(credential, salt, self.n, self.r, self.p)
        return f"{SCHEME}${self.n}${self.r}${self.p}${salt}${digest}"

    def verify(self, credential: str, stored_hash: Optional[str]) -> bool:
        """Constant-time check of a credential against a stored hash"""
        if not stored_hash:
            self.burn(credential)
            return False

        try:
            scheme, n, r, p, salt, expected = stored_hash.split("$")
            n, r, p = int(n), int(r), int(p)
        except ValueError:
            return False
        if scheme != SCHEME:
            return False

        actual = self._derive(credential, salt, n, r, p)
        return hmac.compare_digest(actual.encode(), expected.encode())

    def burn(self, credential: str) -> None:
        """
        Spend the same work as a real verification.

        Used when no account exists so response time does not reveal whether
        an identifier is valid.
        """
        if self._dummy_hash is None:
            self._dummy_hash = self.hash(secrets.token_hex(8))
        _, n, r, p, salt, expected = self._dummy_hash.split("$")
        actual = self._derive(credential, salt, int(n), int(r), int(p))
        hmac.compare_digest(actual.encode(), expected.encode())

    @staticmethod
    def _derive(credential: str, salt: str, n: int, r: int, p: int) -> str:
        return hashlib.scrypt(
            str(credential).encode(),
            salt=salt.encode(),
            n=n, r=r, p=p
        ).hex()
