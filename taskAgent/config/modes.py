"""Mode definitions and the mode/permission provider."""

from __future__ import annotations

import fnmatch
import logging
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import TYPE_CHECKING, Any, Dict, Iterable, List, Literal, Optional

import yaml

from taskAgent.config.project_root import resolve_config_path

if TYPE_CHECKING:
    from taskAgent.tools.registry import ToolRegistry

LOGGER = logging.getLogger(__name__)

DEFAULT_MODES_PATH = resolve_config_path("modes.yaml")


def normalize_path(path: str) -> str:
    """Workspace-relative posix form used for restriction matching."""
    normalized = str(PurePosixPath(path.replace("\\", "/")))
    while normalized.startswith("./"):
        normalized = normalized[2:]
    return normalized


@dataclass(frozen=True)
class PathRestriction:
    """Glob restriction on the paths edit tools may touch."""

    pattern: str
    action: Literal["allow", "deny"] = "allow"
    description: str = ""

    def matches(self, path: str) -> bool:
        return fnmatch.fnmatchcase(normalize_path(path), self.pattern)


@dataclass(frozen=True)
class Mode:
    """A named bundle of tool permissions and path restrictions."""

    slug: str
    name: str
    role_definition: str = ""
    allowed_tools: frozenset = field(default_factory=frozenset)
    path_restrictions: tuple = ()
    custom_instructions: str = ""

    def allows(self, tool_name: str) -> bool:
        return tool_name in self.allowed_tools

    def check_path(self, path: str) -> Optional[PathRestriction]:
        """Return the restriction violated by ``path``, or None if it is permitted.

        Deny patterns win over allow patterns. When allow patterns exist the
        path must match at least one of them; the returned restriction then
        names every allow pattern so the caller can report them together.
        """
        for restriction in self.path_restrictions:
            if restriction.action == "deny" and restriction.matches(path):
                return restriction

        allows = [r for r in self.path_restrictions if r.action == "allow"]
        if allows and not any(r.matches(path) for r in allows):
            if len(allows) == 1:
                return allows[0]
            return PathRestriction(
                pattern=", ".join(r.pattern for r in allows),
                action="allow",
                description="; ".join(r.description for r in allows if r.description),
            )
        return None


class ModeProvider:
    """Resolves mode slugs into concrete tool sets.

    Mode definitions are loaded from YAML; tool groups are expanded through
    the tool registry the provider was constructed with.
    """

    def __init__(
        self,
        tool_registry: "ToolRegistry",
        config_path: Optional[Path] = None,
        modes: Optional[Dict[str, Dict[str, Any]]] = None,
    ) -> None:
        self._registry = tool_registry
        self._configs: Dict[str, Dict[str, Any]] = {}
        if modes is None:
            modes = self._load_config(config_path or DEFAULT_MODES_PATH)
        for slug, config in modes.items():
            self.register(slug, config)

    @staticmethod
    def _load_config(path: Path) -> Dict[str, Dict[str, Any]]:
        if not path.exists():
            LOGGER.warning(f"Mode config not found: {path}")
            return {}
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        return data.get("modes", {})

    def register(self, slug: str, config: Dict[str, Any]) -> None:
        self._configs[slug] = dict(config)

    def list_modes(self) -> List[str]:
        return list(self._configs)

    def resolve(self, slug: str) -> Mode:
        """Build the Mode for ``slug``.

        Raises:
            KeyError: If no mode with that slug is configured
        """
        if slug not in self._configs:
            raise KeyError(f"Unknown mode: {slug}. Available modes: {', '.join(self._configs)}")
        config = self._configs[slug]

        allowed = set(self._registry.always_available())
        for group in config.get("groups") or []:
            allowed.update(self._registry.tools_in_group(group))
        allowed.update(config.get("tools") or [])
        allowed.difference_update(config.get("exclude_tools") or [])

        return Mode(
            slug=slug,
            name=config.get("name", slug),
            role_definition=config.get("role_definition", ""),
            allowed_tools=frozenset(allowed),
            path_restrictions=tuple(_parse_restrictions(config.get("path_restrictions") or [])),
            custom_instructions=config.get("custom_instructions", ""),
        )


def _parse_restrictions(items: Iterable[Any]) -> List[PathRestriction]:
    restrictions = []
    for item in items:
        if isinstance(item, str):
            restrictions.append(PathRestriction(pattern=item))
            continue
        action = item.get("action", "allow")
        if action not in ("allow", "deny"):
            raise ValueError(f"Invalid path restriction action: {action}")
        restrictions.append(
            PathRestriction(
                pattern=item["pattern"],
                action=action,
                description=item.get("description", ""),
            )
        )
    return restrictions


__all__ = ["Mode", "ModeProvider", "PathRestriction", "normalize_path"]
