"""Tests for the gateway template registry."""

from __future__ import annotations

import pytest

from rolegate.config import settings
from rolegate.errors import ValidationError
from rolegate.schemas import GatewayTemplate
from rolegate.templates import TemplateRegistry


def test_save_and_load(tmp_path):
    registry = TemplateRegistry()
    registry.add(GatewayTemplate(id="debian12", path="/images/debian12.qcow2", default_ram_mb=2048))
    registry.save()

    loaded = TemplateRegistry.load()
    assert loaded.path == settings.templates_file
    assert loaded.get("debian12").default_ram_mb == 2048


def test_duplicate_and_unknown_ids():
    registry = TemplateRegistry()
    registry.add(GatewayTemplate(id="t", path="/t.qcow2"))
    with pytest.raises(ValidationError):
        registry.add(GatewayTemplate(id="t", path="/t2.qcow2"))
    registry.remove("t")
    with pytest.raises(ValidationError):
        registry.remove("t")


def test_resolve_path_uses_defaults():
    template = TemplateRegistry().resolve("/images/alpine.qcow2")
    assert template.id == "alpine"
    assert template.os_variant == settings.os_variant
    assert template.default_ram_mb == settings.gateway_ram_mb


def test_resolve_unknown_id():
    with pytest.raises(ValidationError, match="Unknown template"):
        TemplateRegistry().resolve("nope")


def test_corrupt_registry():
    settings.templates_file.write_text("{")
    with pytest.raises(ValidationError, match="Cannot read template registry"):
        TemplateRegistry.load()
