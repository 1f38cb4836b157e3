"""Gateway template registry (templates.json)."""

from __future__ import annotations

import json
import logging
from pathlib import Path

from rolegate.config import settings
from rolegate.errors import ValidationError
from rolegate.role_dir import write_atomic
from rolegate.schemas import GatewayTemplate

logger = logging.getLogger(__name__)


class TemplateRegistry:
    """Named qcow2 templates gateway overlays can be created from."""

    def __init__(self, path: Path | None = None):
        self.path = Path(path) if path is not None else Path(settings.templates_file)
        self._templates: dict[str, GatewayTemplate] = {}

    @classmethod
    def load(cls, path: Path | None = None) -> "TemplateRegistry":
        registry = cls(path)
        if not registry.path.is_file():
            return registry
        try:
            data = json.loads(registry.path.read_text())
            for item in data.get("templates", []):
                template = GatewayTemplate.model_validate(item)
                registry._templates[template.id] = template
        except (OSError, ValueError) as e:
            raise ValidationError(f"Cannot read template registry {registry.path}: {e}") from e
        return registry

    def save(self) -> Path:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = {"templates": [t.model_dump() for t in self.list()]}
        return write_atomic(self.path, json.dumps(payload, indent=2) + "\n")

    def add(self, template: GatewayTemplate) -> None:
        if template.id in self._templates:
            raise ValidationError(f"Template '{template.id}' already exists")
        self._templates[template.id] = template

    def remove(self, template_id: str) -> None:
        if self._templates.pop(template_id, None) is None:
            raise ValidationError(f"Template '{template_id}' not found")

    def get(self, template_id: str) -> GatewayTemplate | None:
        return self._templates.get(template_id)

    def list(self) -> list[GatewayTemplate]:
        return sorted(self._templates.values(), key=lambda t: t.id)

    def resolve(self, ref: str) -> GatewayTemplate:
        """Resolve a template id, or wrap a bare qcow2 path with defaults."""
        template = self.get(ref)
        if template is not None:
            return template
        if "/" in ref or ref.endswith(".qcow2"):
            path = Path(ref)
            return GatewayTemplate(
                id=path.stem,
                label=path.name,
                path=str(path),
                os_variant=settings.os_variant,
                default_ram_mb=settings.gateway_ram_mb,
            )
        raise ValidationError(f"Unknown template '{ref}'")
