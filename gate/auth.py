"""
gate.auth
~~~~~~~~~
User-state stores answering "is the caller an admin?".

Credentials arrive as ``Authorization: Basic ...``.  Two stores share one
interface:

* ``MemoryUserState``: seeded from the environment variable
  GATE_USERS="alice:secret:admin,bob:1234"
* ``FileUserState``: a JSON file, reloaded whenever its mtime changes::

    {"users": {"alice": {"password": "secret", "admin": true}}}

Passwords are kept in plaintext (demo only!).
"""

from __future__ import annotations

import base64
import binascii
import hmac
import json
import os
import pathlib
import threading
from dataclasses import dataclass
from typing import Dict, Mapping, Tuple

from .http import Request


class AuthError(Exception):
    pass


class UserStateError(Exception):
    pass


@dataclass(frozen=True, slots=True)
class User:
    username: str
    admin: bool = False


def _decode_basic(header_val: str) -> tuple[str, str]:
    if not header_val.lower().startswith("basic "):
        raise AuthError("Unsupported auth scheme")
    try:
        decoded = base64.b64decode(header_val.split(None, 1)[1], validate=True).decode()
    except (binascii.Error, UnicodeDecodeError, IndexError) as e:
        raise AuthError("Bad Base64") from e
    if ":" not in decoded:
        raise AuthError("Malformed credentials")
    username, password = decoded.split(":", 1)
    return username, password


def supplied_username(headers: Mapping[str, str]) -> str:
    """Username the client claims, unverified.  "-" if there is none."""
    try:
        return _decode_basic(headers.get("authorization", ""))[0] or "-"
    except AuthError:
        return "-"


class MemoryUserState:
    def __init__(self, users: Mapping[str, Tuple[str, bool]] | None = None):
        self._users: Dict[str, Tuple[str, bool]] = dict(users or {})
        self._lock = threading.Lock()

    @classmethod
    def from_env(cls, var: str = "GATE_USERS") -> "MemoryUserState":
        """Build a store from 'user:pass[:admin],...'."""
        state = cls()
        raw = os.getenv(var, "admin:admin:admin")
        for entry in filter(None, (p.strip() for p in raw.split(","))):
            if ":" not in entry:
                continue
            user, rest = entry.split(":", 1)
            pwd, _, flag = rest.partition(":")
            state.add_user(user, pwd, admin=flag.strip().lower() == "admin")
        return state

    # ------------------------------------------------------------------ #
    # account management
    # ------------------------------------------------------------------ #

    def add_user(self, username: str, password: str, admin: bool = False) -> None:
        with self._lock:
            self._users[username] = (password, admin)

    def remove_user(self, username: str) -> None:
        with self._lock:
            self._users.pop(username, None)

    def has_user(self, username: str) -> bool:
        return username in self._users

    def set_admin(self, username: str) -> None:
        self._set_flag(username, True)

    def remove_admin(self, username: str) -> None:
        self._set_flag(username, False)

    def is_admin(self, username: str) -> bool:
        entry = self._users.get(username)
        return bool(entry and entry[1])

    def _set_flag(self, username: str, admin: bool) -> None:
        with self._lock:
            if username not in self._users:
                raise UserStateError(f"no such user: {username}")
            pwd, _ = self._users[username]
            self._users[username] = (pwd, admin)

    # ------------------------------------------------------------------ #
    # request identity
    # ------------------------------------------------------------------ #

    def authenticate(self, headers: Mapping[str, str]) -> User:
        auth_hdr = headers.get("authorization")
        if not auth_hdr:
            raise AuthError("Missing Authorization")

        username, password = _decode_basic(auth_hdr)

        entry = self._users.get(username)
        if entry is None or not hmac.compare_digest(entry[0], password):
            raise AuthError("Bad credentials")

        return User(username=username, admin=entry[1])

    def is_current_user_admin(self, request: Request) -> bool:
        """Admin flag of the caller.  Raises AuthError if there is no valid caller."""
        return self.authenticate(request.headers).admin


class FileUserState(MemoryUserState):
    def __init__(self, path: str | pathlib.Path):
        super().__init__()
        self.path = pathlib.Path(path)
        self._mtime: float = 0.0
        self._load()

    def authenticate(self, headers: Mapping[str, str]) -> User:
        self._maybe_reload()
        return super().authenticate(headers)

    def has_user(self, username: str) -> bool:
        self._maybe_reload()
        return super().has_user(username)

    def is_admin(self, username: str) -> bool:
        self._maybe_reload()
        return super().is_admin(username)

    def add_user(self, username: str, password: str, admin: bool = False) -> None:
        super().add_user(username, password, admin)
        self._save()

    def remove_user(self, username: str) -> None:
        super().remove_user(username)
        self._save()

    def _set_flag(self, username: str, admin: bool) -> None:
        super()._set_flag(username, admin)
        self._save()

    # ------------------------------------------------------------------ #
    # private
    # ------------------------------------------------------------------ #

    def _maybe_reload(self) -> None:
        try:
            mtime = self.path.stat().st_mtime
        except FileNotFoundError:
            return
        if mtime != self._mtime:
            self._load()

    def _load(self) -> None:
        try:
            self._mtime = self.path.stat().st_mtime
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return
        except OSError as e:
            raise UserStateError(f"cannot read {self.path}: {e}") from e

        try:
            data = json.loads(raw) if raw.strip() else {}
            users = {
                name: (str(info["password"]), bool(info.get("admin", False)))
                for name, info in data.get("users", {}).items()
            }
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            raise UserStateError(f"bad user store {self.path}: {e}") from e

        with self._lock:
            self._users = users

    def _save(self) -> None:
        with self._lock:
            data = {
                "users": {
                    name: {"password": pwd, "admin": admin}
                    for name, (pwd, admin) in sorted(self._users.items())
                }
            }
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp.write_text(json.dumps(data, indent=2), encoding="utf-8")
        os.replace(tmp, self.path)
        self._mtime = self.path.stat().st_mtime
