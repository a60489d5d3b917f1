"""
gate.rules
~~~~~~~~~~
Path-prefix rule table.  Every URL path prefix belongs to one of three
categories: admin-only, logged-in users, or public.

Matching is a literal, case-sensitive ``str.startswith``; nothing is
normalised.  Mutators install a fresh list instead of editing the old one,
so a request being evaluated keeps iterating the list it started with.
"""

from __future__ import annotations

from enum import Enum
from typing import Dict, Iterable, List


class Category(str, Enum):
    ADMIN = "admin"
    USER = "user"
    PUBLIC = "public"


DEFAULT_ADMIN_PATHS = ("/admin",)
DEFAULT_USER_PATHS = ("/profiles", "/data")
DEFAULT_PUBLIC_PATHS = (
    "/",
    "/login",
    "/register",
    "/favicon.ico",
    "/style",
    "/img",
    "/js",
    "/robots.txt",
    "/sitemap_index.xml",
)


class RuleTable:
    def __init__(self) -> None:
        self._paths: Dict[Category, List[str]] = {
            Category.ADMIN: list(DEFAULT_ADMIN_PATHS),
            Category.USER: list(DEFAULT_USER_PATHS),
            Category.PUBLIC: list(DEFAULT_PUBLIC_PATHS),
        }

    # ------------------------------------------------------------------ #
    # public
    # ------------------------------------------------------------------ #

    def prefixes(self, category: Category) -> List[str]:
        return self._paths[Category(category)]

    def add_prefix(self, category: Category, prefix: str) -> None:
        category = Category(category)
        self._paths[category] = [*self._paths[category], prefix]

    def set_prefixes(self, category: Category, prefixes: Iterable[str]) -> None:
        self._paths[Category(category)] = list(prefixes)

    def reset(self) -> None:
        """Drop every admin and user prefix.  Public prefixes stay."""
        self._paths[Category.ADMIN] = []
        self._paths[Category.USER] = []

    def matches(self, category: Category, path: str) -> bool:
        """True if any prefix of *category* is a prefix of *path*."""
        return any(path.startswith(p) for p in self.prefixes(category))

    def matching(self, category: Category, path: str) -> List[str]:
        """Prefixes of *category* matching *path*, in insertion order."""
        return [p for p in self.prefixes(category) if path.startswith(p)]

    def __repr__(self) -> str:
        inner = ", ".join(f"{c.value}={v!r}" for c, v in self._paths.items())
        return f"RuleTable({inner})"
