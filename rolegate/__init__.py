"""Per-role egress gateway provisioning on libvirt hosts."""
