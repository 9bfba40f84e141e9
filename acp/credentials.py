import json
import logging
import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import keyring
from keyring.errors import KeyringError, PasswordDeleteError

from .errors import CredentialError
from .logging_config import mask_value

logger = logging.getLogger(__name__)

KEYRING_SERVICE = "com.user.acp" if sys.platform == "darwin" else "acp"
KEYRING_USERNAME_ENTRY = "ldap_username"
KEYRING_PASSWORD_ENTRY = "ldap_password"


@dataclass(frozen=True)
class Credentials:
    username: str
    secret: str

    def __repr__(self) -> str:
        return f"Credentials(username={self.username!r}, secret={mask_value(self.secret)!r})"


class CredentialProvider:
    def get(self) -> Credentials:
        raise NotImplementedError

    def set(self, username: str, secret: str) -> None:
        raise NotImplementedError

    def clear(self) -> None:
        raise NotImplementedError


def _validate(username: str, secret: str) -> None:
    if not username.strip():
        raise CredentialError("username cannot be empty")
    if not secret.strip():
        raise CredentialError("password cannot be empty")


class MemoryCredentialProvider(CredentialProvider):
    def __init__(self, credentials: Optional[Credentials] = None) -> None:
        self._credentials = credentials

    def get(self) -> Credentials:
        if self._credentials is None:
            raise CredentialError("no credentials configured")
        return self._credentials

    def set(self, username: str, secret: str) -> None:
        _validate(username, secret)
        self._credentials = Credentials(username=username, secret=secret)

    def clear(self) -> None:
        self._credentials = None


class FileCredentialProvider(CredentialProvider):
    """Stores the username and password in a JSON file readable only by the owner."""

    def __init__(self, path: Path) -> None:
        self.path = path

    def get(self) -> Credentials:
        try:
            with self.path.open("r", encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError as exc:
            raise CredentialError(f"no credentials stored at {self.path}") from exc
        except (OSError, ValueError) as exc:
            raise CredentialError(f"unreadable credentials file {self.path}: {exc}") from exc

        if not isinstance(data, dict):
            raise CredentialError(f"invalid credentials file {self.path}")
        username = str(data.get("username") or "")
        secret = str(data.get("password") or "")
        if not username or not secret:
            raise CredentialError(f"incomplete credentials in {self.path}")
        return Credentials(username=username, secret=secret)

    def set(self, username: str, secret: str) -> None:
        _validate(username, secret)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_name(f"{self.path.name}.tmp")
        fd = os.open(tmp, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump({"username": username, "password": secret}, f)
        tmp.replace(self.path)
        logger.info("Credentials stored for user %s", mask_value(username))

    def clear(self) -> None:
        try:
            self.path.unlink()
        except FileNotFoundError:
            return
        logger.info("Credentials cleared")


class KeyringCredentialProvider(CredentialProvider):
    """Keeps the username and password as two entries in the system keyring."""

    def __init__(self, service: str = KEYRING_SERVICE) -> None:
        self.service = service

    def get(self) -> Credentials:
        try:
            username = keyring.get_password(self.service, KEYRING_USERNAME_ENTRY)
            secret = keyring.get_password(self.service, KEYRING_PASSWORD_ENTRY)
        except KeyringError as exc:
            raise CredentialError(f"keyring unavailable: {exc}") from exc
        if not username or not secret:
            raise CredentialError(f"no credentials stored in keyring service {self.service}")
        return Credentials(username=username, secret=secret)

    def set(self, username: str, secret: str) -> None:
        _validate(username, secret)
        try:
            keyring.set_password(self.service, KEYRING_USERNAME_ENTRY, username)
            keyring.set_password(self.service, KEYRING_PASSWORD_ENTRY, secret)
        except KeyringError as exc:
            raise CredentialError(f"could not store credentials in keyring: {exc}") from exc
        logger.info("Credentials stored in keyring for user %s", mask_value(username))

    def clear(self) -> None:
        for entry in (KEYRING_USERNAME_ENTRY, KEYRING_PASSWORD_ENTRY):
            try:
                keyring.delete_password(self.service, entry)
            except PasswordDeleteError:
                continue
            except KeyringError as exc:
                raise CredentialError(f"could not clear keyring entry {entry}: {exc}") from exc
        logger.info("Credentials cleared")


def credential_provider(store: str, path: Path) -> CredentialProvider:
    if store == "keyring":
        return KeyringCredentialProvider()
    return FileCredentialProvider(path)
