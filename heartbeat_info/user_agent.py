"""Sources for the user agent string recorded with each heartbeat."""

from __future__ import annotations

from dataclasses import dataclass
from threading import Lock
from typing import Protocol


class UserAgentPublisher(Protocol):
    """Anything that can report the current user agent string."""

    def get_user_agent(self) -> str:
        """Return the user agent to attribute the next heartbeat to."""


@dataclass(frozen=True, slots=True)
class LibraryVersion:
    name: str
    version: str

    @classmethod
    def parse(cls, token: str) -> LibraryVersion:
        """Parse a ``name/version`` token."""

        name, sep, version = token.strip().partition("/")
        if not sep or not name or not version or "/" in version:
            raise ValueError(f"Expected 'name/version', got {token!r}")
        if any(char.isspace() for char in name + version):
            raise ValueError(f"Library tokens must not contain whitespace: {token!r}")
        return cls(name=name, version=version)

    def __str__(self) -> str:
        return f"{self.name}/{self.version}"


class DefaultUserAgentPublisher:
    """Publish registered library versions as a space-separated user agent."""

    def __init__(self, libraries: list[LibraryVersion] | None = None) -> None:
        self._libraries: dict[str, LibraryVersion] = {}
        self._lock = Lock()
        for library in libraries or []:
            self.register_library(library.name, library.version)

    @classmethod
    def from_tokens(cls, tokens: list[str]) -> DefaultUserAgentPublisher:
        return cls([LibraryVersion.parse(token) for token in tokens])

    def register_library(self, name: str, version: str) -> None:
        library = LibraryVersion.parse(f"{name}/{version}")
        with self._lock:
            self._libraries[library.name] = library

    def get_user_agent(self) -> str:
        with self._lock:
            return " ".join(str(self._libraries[name]) for name in sorted(self._libraries))
