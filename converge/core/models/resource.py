"""
Resource model — one declarative unit of desired state.

A Resource says "this should be true on the machine" (a package is
installed, a file has some content, a setting has some value). The
``kind`` selects the provider that knows how to check and converge it;
``spec`` carries the kind-specific parameters, validated by that
provider.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ResourceKind(StrEnum):
    """Resource kinds, one provider each."""

    PACKAGE = "package"
    REPO_FILE = "repo_file"
    FLATPAK_APP = "flatpak_app"
    GSETTING = "gsetting"
    GIT_CHECKOUT = "git_checkout"
    DOWNLOAD = "download"
    FLATPAK_REMOTE = "flatpak_remote"
    GNOME_EXTENSION = "gnome_extension"
    SERVICE = "service"
    FILE_LINE = "file_line"
    COMMAND = "command"


class Fallback(BaseModel):
    """An alternative way to reach the same desired state.

    Tried in declaration order when the primary apply fails, e.g.
    "install from dnf, else from Flathub".
    """

    model_config = ConfigDict(frozen=True)

    kind: ResourceKind
    spec: dict[str, Any] = Field(default_factory=dict)


class Resource(BaseModel):
    """A single declarative unit of desired state."""

    model_config = ConfigDict(frozen=True)

    id: str
    kind: ResourceKind
    spec: dict[str, Any] = Field(default_factory=dict)
    depends_on: tuple[str, ...] = ()
    fallbacks: tuple[Fallback, ...] = ()

    sudo: bool | None = None        # None = provider default
    timeout: int | None = None      # seconds, None = run default
    when: dict[str, str] = Field(default_factory=dict)
    description: str = ""

    @field_validator("id")
    @classmethod
    def _id_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("resource id must not be empty")
        return value

    @field_validator("depends_on", mode="before")
    @classmethod
    def _dedupe_depends_on(cls, value: Any) -> Any:
        if value is None:
            return ()
        if isinstance(value, str):
            return (value,)
        seen: list[str] = []
        for dep in value:
            if dep not in seen:
                seen.append(dep)
        return tuple(seen)

    def with_spec(self, kind: ResourceKind, spec: dict[str, Any]) -> Resource:
        """Copy of this resource pointing at another provider (for fallbacks)."""
        return self.model_copy(update={"kind": kind, "spec": spec, "fallbacks": ()})

    @property
    def label(self) -> str:
        return f"{self.kind}:{self.id}"
