"""Password-gated key access for the paper wiring.

Real encryption at rest lives outside the engine; this keyring only checks
the password in constant time and hands back the configured key.
"""

from __future__ import annotations

import hmac
from typing import Protocol

from vaultdealer.shell.errors import WrongPassword


class Decryptor(Protocol):
    def decrypt(self, secret: str, password: str) -> str: ...


class StaticKeyring:
    def __init__(self, keys: dict[str, str], password: str) -> None:
        self._keys = dict(keys)
        self._password = password

    def decrypt(self, secret: str, password: str) -> str:
        if not self._password or not hmac.compare_digest(password.encode(), self._password.encode()):
            raise WrongPassword("Wrong password, re-authenticate to continue")
        try:
            return self._keys[secret]
        except KeyError:
            raise WrongPassword(f"No key stored for {secret!r}") from None
