"""Rolegate configuration."""

from pathlib import Path

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Rolegate settings loaded from environment variables."""

    # Host-side storage
    cfg_root: Path = Path.home() / "VMS" / "VM-Proxy-configs"  # One directory per role
    images_dir: Path = Path("/var/lib/libvirt/images")
    state_dir: Path = Path.home() / ".local" / "state" / "rolegate"  # Ownership ledgers
    templates_file: Path = Path.home() / ".config" / "rolegate" / "templates.json"

    # Libvirt
    libvirt_uri: str = "qemu:///system"
    lan_net: str = "lan-net"  # Upstream network (gateway's first NIC)

    # Gateway VM defaults
    gateway_ram_mb: int = 1024
    gateway_vcpus: int = 1
    os_variant: str = "debian12"

    # App VM defaults
    app_ram_mb: int = 2048
    app_vcpus: int = 2

    # External command timeout (seconds)
    command_timeout: float = 120.0

    # Reachability probe timeout (seconds)
    probe_timeout: float = 5.0

    # HTTP service
    api_host: str = "127.0.0.1"
    api_port: int = 8017

    # Logging
    log_level: str = "INFO"
    log_format: str = "text"  # "text" or "json"

    class Config:
        env_prefix = "ROLEGATE_"


settings = Settings()
