"""Template image registry."""

from __future__ import annotations

import json
import os
import uuid
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Dict, List, Optional, Tuple

import structlog
from pydantic import BaseModel, ConfigDict, Field, field_validator

from .errors import AlreadyExists, NotFound, PreconditionFailed

if TYPE_CHECKING:
    from .adapter import LibvirtAdapter

logger = structlog.get_logger(__name__)

REGISTRY_VERSION = 1


class RoleKind(str, Enum):
    PROXY_GATEWAY = "proxy_gateway"
    APP = "app"
    DISPOSABLE_APP = "disposable_app"
    GENERIC = "generic"


class Template(BaseModel):
    """A base disk image that overlays are created from."""

    model_config = ConfigDict(extra="allow")

    id: str
    label: str
    path: Path
    os_variant: str
    role_kind: RoleKind = RoleKind.GENERIC
    default_ram_mb: int = Field(1024, ge=128)
    notes: Optional[str] = None

    @field_validator("id", "label", "os_variant")
    @classmethod
    def not_blank(cls, value: str) -> str:
        if not value or not str(value).strip():
            raise ValueError("value cannot be blank")
        return value

    def validate_image(self) -> None:
        if not self.path.exists():
            raise PreconditionFailed(f"Template '{self.label}' image not found: {self.path}")
        if not self.path.is_file():
            raise PreconditionFailed(f"Template '{self.label}' path is not a file: {self.path}")
        if not os.access(self.path, os.R_OK):
            raise PreconditionFailed(f"Template '{self.label}' image is not readable: {self.path}")


class TemplateRegistry(BaseModel):
    """Persistent collection of templates keyed by id."""

    version: int = REGISTRY_VERSION
    templates: Dict[str, Template] = Field(default_factory=dict)

    @staticmethod
    def generate_id() -> str:
        return uuid.uuid4().hex

    @classmethod
    def load(cls, path: Path) -> "TemplateRegistry":
        path = Path(path)
        if not path.exists():
            return cls()
        return cls.model_validate(json.loads(path.read_text()))

    def save(self, path: Path) -> None:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(self.model_dump(mode="json"), indent=2))

    def add(self, template: Template) -> None:
        if template.id in self.templates:
            raise AlreadyExists("Template", template.id)
        self.templates[template.id] = template

    def update(self, template: Template) -> None:
        if template.id not in self.templates:
            raise NotFound("Template", template.id)
        self.templates[template.id] = template

    def remove(self, template_id: str) -> Template:
        try:
            return self.templates.pop(template_id)
        except KeyError:
            raise NotFound("Template", template_id) from None

    def get(self, template_id: Optional[str]) -> Optional[Template]:
        if template_id is None:
            return None
        return self.templates.get(template_id)

    def all(self) -> List[Template]:
        return sorted(self.templates.values(), key=lambda template: template.label.lower())

    def by_role_kind(self, kind: RoleKind) -> List[Template]:
        return [t for t in self.all() if t.role_kind in (kind, RoleKind.GENERIC)]

    def gateway_templates(self) -> List[Template]:
        return self.by_role_kind(RoleKind.PROXY_GATEWAY)

    def app_templates(self) -> List[Template]:
        return self.by_role_kind(RoleKind.APP)


def register_template(
    registry: TemplateRegistry,
    adapter: "LibvirtAdapter",
    *,
    label: str,
    path: Path,
    os_variant: str,
    role_kind: RoleKind = RoleKind.GENERIC,
    default_ram_mb: int = 1024,
    notes: Optional[str] = None,
) -> Template:
    """Add a template, copying its image into the images dir first if needed."""
    path = Path(path).expanduser()
    if not path.is_file():
        raise PreconditionFailed(f"Template file not found: {path}")
    if not adapter.is_in_images_dir(path):
        path = adapter.copy_template_to_images_dir(path)

    template = Template(
        id=registry.generate_id(),
        label=label,
        path=path,
        os_variant=os_variant,
        role_kind=role_kind,
        default_ram_mb=default_ram_mb,
        notes=notes,
    )
    registry.add(template)
    logger.info("Registered template", template_id=template.id, label=label, path=str(path))
    return template


def delete_template(
    registry: TemplateRegistry,
    adapter: "LibvirtAdapter",
    template_id: str,
    *,
    delete_file: bool = False,
) -> Tuple[Template, List[str]]:
    """Remove a template; optionally delete its image.

    Returns the removed template and the VMs still using its image. The
    image is left in place when any VM depends on it.
    """
    template = registry.get(template_id)
    if template is None:
        raise NotFound("Template", template_id)

    users = adapter.get_vms_using_image(template.path)
    registry.remove(template_id)

    if delete_file:
        if users:
            logger.warning(
                "Template image still in use, keeping file",
                template_id=template_id,
                path=str(template.path),
                vms=users,
            )
        else:
            adapter.delete_overlay_disk(template.path)
            logger.info("Deleted template image", path=str(template.path))
    return template, users
