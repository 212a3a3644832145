"""
Resource/action catalog.

The catalog is reference data: which resources can be protected and
which actions each of them supports. It is loaded once per process
(built-in defaults or the JSON document named by CATALOG_PATH) and is
read-only afterwards.
"""
import json
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Optional, Protocol, Sequence

from rbac_admin.core import config
from rbac_admin.core.errors import NotFoundError, ValidationError
from rbac_admin.utils import get_logger


log = get_logger(__name__)


@dataclass(frozen=True)
class Action:
    name: str
    display_name: str
    description: str = ""


@dataclass(frozen=True)
class Resource:
    name: str
    display_name: str
    description: str = ""
    actions: tuple[str, ...] = ()


class CatalogProvider(Protocol):
    """Anything that can list resources and actions."""

    def list_resources(self) -> Sequence[Resource]: ...

    def list_actions(self) -> Sequence[Action]: ...


# ============================================================================
# Built-in catalog
# ============================================================================

# (name, display name, description)
DEFAULT_ACTIONS = [
    ("read", "Read", "View and list resources"),
    ("create", "Create", "Create new resources"),
    ("update", "Update", "Modify existing resources"),
    ("delete", "Delete", "Remove resources"),
    ("admin", "Full Admin", "Full administrative access including all actions"),
    ("export", "Export", "Export resource data"),
    ("classify", "Classify", "Classify nodes into groups"),
    ("generate", "Generate", "Generate derived data (e.g., facts)"),
]

# (name, display name, description, supported actions)
DEFAULT_RESOURCES = [
    ("nodes", "Nodes", "Infrastructure nodes", ["read", "classify"]),
    ("groups", "Node Groups", "Node classification groups", ["read", "create", "update", "delete", "admin"]),
    ("reports", "Reports", "Run reports", ["read", "export"]),
    ("facts", "Facts", "Node facts", ["read", "generate", "export"]),
    ("users", "Users", "User accounts", ["read", "create", "update", "delete", "admin"]),
    ("roles", "Roles", "RBAC roles", ["read", "create", "update", "delete", "admin"]),
    ("settings", "Settings", "System configuration", ["read", "update"]),
    ("audit_logs", "Audit Logs", "Activity audit logs", ["read"]),
    ("facter_templates", "Facter Templates", "Templates for generating external facts", ["read", "create", "update", "delete"]),
    ("api_keys", "API Keys", "API authentication keys", ["read", "create", "delete"]),
]


class StaticCatalog:
    """
    In-memory catalog with lookups used for grant validation.

    Resource and action order is preserved as given; presentation layers
    rely on it for row ordering.
    """

    def __init__(self, resources: Iterable[Resource], actions: Iterable[Action]):
        self._actions = {a.name: a for a in actions}
        self._resources: dict[str, Resource] = {}
        for resource in resources:
            unknown = [a for a in resource.actions if a not in self._actions]
            if unknown:
                raise ValidationError(
                    f"Resource '{resource.name}' declares unknown actions",
                    details={"resource": resource.name, "actions": unknown},
                )
            if resource.name in self._resources:
                raise ValidationError(f"Resource '{resource.name}' declared twice")
            self._resources[resource.name] = resource

    def list_resources(self) -> Sequence[Resource]:
        return list(self._resources.values())

    def list_actions(self) -> Sequence[Action]:
        return list(self._actions.values())

    def get_resource(self, name: str) -> Resource:
        try:
            return self._resources[name]
        except KeyError:
            raise NotFoundError(f"Resource '{name}' not found", details={"resource": name})

    def supports(self, resource: str, action: str) -> bool:
        found = self._resources.get(resource)
        return found is not None and action in found.actions

    def validate(self, resource: str, action: str) -> None:
        """Raise NotFoundError for an unknown resource, ValidationError for an unsupported action."""
        found = self.get_resource(resource)
        if action not in found.actions:
            raise ValidationError(
                f"Action '{action}' is not supported by resource '{resource}'",
                details={"resource": resource, "action": action, "supported": list(found.actions)},
            )

    @classmethod
    def from_provider(cls, provider: CatalogProvider) -> "StaticCatalog":
        """Snapshot any provider into a StaticCatalog for the session."""
        return cls(provider.list_resources(), provider.list_actions())


def default_catalog() -> StaticCatalog:
    return StaticCatalog(
        resources=[
            Resource(name, display_name, description, tuple(actions))
            for name, display_name, description, actions in DEFAULT_RESOURCES
        ],
        actions=[Action(*row) for row in DEFAULT_ACTIONS],
    )


def load_catalog(path: str | Path) -> StaticCatalog:
    """
    Load a catalog from a JSON document.

    Expected shape:
        {
          "actions": [{"name": "read", "display_name": "Read", "description": "..."}],
          "resources": [{"name": "nodes", "display_name": "Nodes", "actions": ["read"]}]
        }
    """
    try:
        document = json.loads(Path(path).read_text(encoding="utf-8"))
        actions = [
            Action(a["name"], a.get("display_name", a["name"]), a.get("description", ""))
            for a in document["actions"]
        ]
        resources = [
            Resource(
                r["name"],
                r.get("display_name", r["name"]),
                r.get("description", ""),
                tuple(r.get("actions", [])),
            )
            for r in document["resources"]
        ]
    except (OSError, ValueError, KeyError, TypeError) as e:
        raise ValidationError(f"Invalid catalog file {path}: {e}")
    log.info("Loaded catalog from %s (%d resources, %d actions)", path, len(resources), len(actions))
    return StaticCatalog(resources, actions)


_catalog: Optional[StaticCatalog] = None


def get_catalog() -> StaticCatalog:
    """Process-wide catalog: CATALOG_PATH when set, built-in defaults otherwise."""
    global _catalog
    if _catalog is None:
        _catalog = load_catalog(config.CATALOG_PATH) if config.CATALOG_PATH else default_catalog()
    return _catalog
