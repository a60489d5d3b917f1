"""
gate.permissions
~~~~~~~~~~~~~~~~
Allow/deny gate run before any application handler.

A request is judged by its URL path and by whether the caller is an admin.
The stages run in a fixed order and the first one with an opinion wins:

1. root exempt:   "/" is allowed when ``root_is_public`` is set
2. admin gate:    a path under an admin prefix is denied to non-admins
3. user gate:     inert, every caller has user rights
4. public allow:  a path under a public prefix is allowed
5. default deny:  everything else is denied

Passing the admin gate does not allow a request by itself; the path still
has to be public.  A failing identity query counts as "not admin".
The default public prefix "/" matches every path, so default deny only
applies once the public list is narrowed.

Rules are meant to be configured before serving; mutating them while
requests are in flight gives no ordering guarantee between the two.
"""

from __future__ import annotations

from typing import Callable, Iterable, Optional

from .auth import FileUserState, MemoryUserState
from .config import Config
from .http import Request, Response
from .rules import Category, RuleTable

Handler = Callable[[Request, Response], None]
IdentityQuery = Callable[[], bool]
IdentityErrorHook = Callable[[Request, Exception], None]

VERSION = "2.0"

DENY = True
ALLOW = False


def default_deny(request: Request, response: Response) -> None:
    response.error("Permission denied.", 403)


class Permissions:
    def __init__(
        self,
        state,
        rules: RuleTable | None = None,
        root_is_public: bool = True,
        on_identity_error: IdentityErrorHook | None = None,
    ) -> None:
        self.state = state
        self.rules = rules if rules is not None else RuleTable()
        self.root_is_public = root_is_public
        self.on_identity_error = on_identity_error
        self._denied: Handler = default_deny

    @classmethod
    def from_user_state(cls, state, **kwargs) -> "Permissions":
        return cls(state, **kwargs)

    # ------------------------------------------------------------------ #
    # configuration
    # ------------------------------------------------------------------ #

    def set_deny_func(self, f: Handler) -> None:
        self._denied = f

    def get_deny_func(self) -> Handler:
        return self._denied

    def get_user_state(self):
        return self.state

    def add_path(self, category: Category, prefix: str) -> None:
        self.rules.add_prefix(category, prefix)

    def set_path(self, category: Category, prefixes: Iterable[str]) -> None:
        self.rules.set_prefixes(category, prefixes)

    def reset(self) -> None:
        self.rules.reset()

    # ------------------------------------------------------------------ #
    # decision
    # ------------------------------------------------------------------ #

    def rejected(self, path: str, is_admin: IdentityQuery) -> bool:
        """Return True if a request for *path* must be denied."""
        for stage in (
            self._root_exempt,
            self._admin_gate,
            self._user_gate,
            self._public_allow,
        ):
            verdict = stage(path, is_admin)
            if verdict is not None:
                return verdict
        return DENY

    def rejected_request(self, request: Request) -> bool:
        return self.rejected(request.path, lambda: self._query_admin(request))

    def _root_exempt(self, path: str, is_admin: IdentityQuery) -> Optional[bool]:
        if self.root_is_public and path == "/":
            return ALLOW
        return None

    def _admin_gate(self, path: str, is_admin: IdentityQuery) -> Optional[bool]:
        for _prefix in self.rules.matching(Category.ADMIN, path):
            try:
                ok = bool(is_admin())
            except Exception:  # noqa: BLE001
                ok = False
            if not ok:
                return DENY
        return None

    def _user_gate(self, path: str, is_admin: IdentityQuery) -> Optional[bool]:
        # every authenticated caller has user rights
        return None

    def _public_allow(self, path: str, is_admin: IdentityQuery) -> Optional[bool]:
        if self.rules.matches(Category.PUBLIC, path):
            return ALLOW
        return None

    def _query_admin(self, request: Request) -> bool:
        try:
            return self.state.is_current_user_admin(request)
        except Exception as exc:
            if self.on_identity_error is not None:
                try:
                    self.on_identity_error(request, exc)
                except Exception:  # noqa: BLE001
                    pass
            raise

    # ------------------------------------------------------------------ #
    # middleware
    # ------------------------------------------------------------------ #

    def __call__(self, request: Request, response: Response, next: Handler) -> None:
        if self.rejected_request(request):
            self.get_deny_func()(request, response)
            return
        next(request, response)


def new() -> Permissions:
    """Permissions backed by the default in-memory user store."""
    return Permissions.from_user_state(MemoryUserState.from_env())


def new_with_config(path: str) -> Permissions:
    """Permissions backed by the JSON user store at *path*."""
    return Permissions.from_user_state(FileUserState(path))


def from_config(cfg: Config, on_identity_error: IdentityErrorHook | None = None) -> Permissions:
    state = FileUserState(cfg.user_store) if cfg.user_store else MemoryUserState.from_env()
    perm = Permissions(
        state,
        root_is_public=cfg.root_is_public,
        on_identity_error=on_identity_error,
    )
    for category, prefixes in (
        (Category.ADMIN, cfg.admin_paths),
        (Category.USER, cfg.user_paths),
        (Category.PUBLIC, cfg.public_paths),
    ):
        if prefixes is not None:
            perm.set_path(category, prefixes)
    return perm
