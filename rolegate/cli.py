"""Command line interface.

    rolegate provision work --template debian12 --proxy socks5://10.0.0.5:1080
    rolegate render work --wireguard wg_work.conf
    rolegate app work --template win11
    rolegate status work
    rolegate teardown work --purge
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from urllib.parse import unquote, urlsplit

from rolegate.config import settings
from rolegate.errors import ProvisioningCancelled, RoleGateError, ValidationError
from rolegate.logging_config import setup_logging
from rolegate.probe import probe_chain
from rolegate.registry import get_orchestrator
from rolegate.schemas import (
    AppVmRequest,
    GatewayTemplate,
    ProvisionRequest,
    ProxyChain,
    ProxyHop,
    coerce_egress_spec,
)
from rolegate.templates import TemplateRegistry

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CANCELLED = 130


def parse_proxy_url(value: str) -> ProxyHop:
    """Parse ``socks5|http://[user[:pass]@]host:port[#label]`` into a hop."""
    parts = urlsplit(value)
    scheme = parts.scheme.lower()
    if scheme not in ("socks5", "http"):
        raise ValidationError(f"Unsupported proxy scheme in {value!r} (use socks5:// or http://)")
    try:
        port = parts.port
    except ValueError as e:
        raise ValidationError(f"Invalid port in {value!r}") from e
    if not parts.hostname or port is None:
        raise ValidationError(f"Proxy {value!r} needs a host and a port")
    try:
        return ProxyHop(
            kind=scheme.upper(),
            host=parts.hostname,
            port=port,
            username=unquote(parts.username) if parts.username else None,
            password=unquote(parts.password) if parts.password else None,
            label=unquote(parts.fragment) or None,
        )
    except ValueError as e:
        raise ValidationError(f"Invalid proxy {value!r}: {e}") from e


def _vpn_file(value: str, import_files: list[str]) -> str:
    """Queue a host file for import and return its name in the role directory."""
    path = Path(value)
    if path.is_file():
        import_files.append(str(path))
    return path.name


def egress_from_args(args: argparse.Namespace) -> tuple[object, list[str]]:
    """Build the egress spec (and the host files to import) from CLI flags."""
    import_files: list[str] = list(getattr(args, "import_files", None) or [])
    if args.spec:
        try:
            data = json.loads(Path(args.spec).read_text())
        except (OSError, ValueError) as e:
            raise ValidationError(f"Cannot read egress spec {args.spec}: {e}") from e
        return coerce_egress_spec(data), import_files
    if args.proxy:
        hops = [parse_proxy_url(p) for p in args.proxy]
        return coerce_egress_spec({"mode": "PROXY_CHAIN", "hops": [h.model_dump() for h in hops]}), import_files
    if args.wireguard:
        return coerce_egress_spec({
            "mode": "WIREGUARD",
            "config_file": _vpn_file(args.wireguard, import_files),
            "interface_name": args.wg_interface,
            "route_all": args.route_all,
        }), import_files
    if args.openvpn:
        return coerce_egress_spec({
            "mode": "OPENVPN",
            "config_file": _vpn_file(args.openvpn, import_files),
            "auth_file": _vpn_file(args.auth_file, import_files) if args.auth_file else None,
            "route_all": args.route_all,
        }), import_files
    raise ValidationError("One of --proxy, --wireguard, --openvpn or --spec is required")


def _add_egress_args(parser: argparse.ArgumentParser) -> None:
    group = parser.add_mutually_exclusive_group()
    group.add_argument(
        "--proxy",
        action="append",
        metavar="URL",
        help="Proxy hop as socks5|http://[user:pass@]host:port[#label]; repeat in chain order",
    )
    group.add_argument("--wireguard", metavar="FILE", help="WireGuard config (host path or name in the role dir)")
    group.add_argument("--openvpn", metavar="FILE", help="OpenVPN config (host path or name in the role dir)")
    group.add_argument("--spec", metavar="JSON", help="Egress spec as a JSON file")
    parser.add_argument("--auth-file", metavar="FILE", help="OpenVPN credentials file")
    parser.add_argument("--wg-interface", default="wg0", help="WireGuard interface name (default: wg0)")
    parser.add_argument(
        "--route-all",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Route all guest traffic through the VPN (default: guest decides)",
    )
    parser.add_argument(
        "--import",
        dest="import_files",
        action="append",
        metavar="FILE",
        help="Extra host file to copy into the role directory",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="rolegate", description="Provision per-role egress gateway VMs.")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("provision", help="Create network, disk, config and gateway for a role")
    p.add_argument("role")
    p.add_argument("--template", required=True, help="Template id or qcow2 path")
    p.add_argument("--upstream", help=f"Upstream network (default: {settings.lan_net})")
    p.add_argument("--ram", type=int, help="Gateway RAM in MiB")
    p.add_argument("--vcpus", type=int, help="Gateway vCPUs")
    p.add_argument("--os-variant", help="virt-install OS variant")
    p.add_argument("--app-template", help="Default template id or qcow2 path for the role's app VMs")
    _add_egress_args(p)

    p = sub.add_parser("render", help="Print the generated configuration without writing it")
    p.add_argument("role")
    p.add_argument("--script", action="store_true", help="Print the apply script instead")
    _add_egress_args(p)

    p = sub.add_parser("reconfigure", help="Regenerate an existing role's configuration")
    p.add_argument("role")
    _add_egress_args(p)

    p = sub.add_parser("status", help="Show live state of a role's resources")
    p.add_argument("role")

    p = sub.add_parser("rollback", help="Undo resources left by an interrupted run")
    p.add_argument("role")

    p = sub.add_parser("app", help="Add an app VM on a role's private network")
    p.add_argument("role")
    p.add_argument("--template", help="Template id or qcow2 path (default: the role's app template)")
    p.add_argument("--ram", type=int, help=f"RAM in MiB (default: {settings.app_ram_mb} or the template's)")
    p.add_argument("--vcpus", type=int, help=f"vCPUs (default: {settings.app_vcpus})")
    p.add_argument("--os-variant", help="virt-install OS variant")

    p = sub.add_parser("vms", help="List a role's gateway and app VMs")
    p.add_argument("role")

    p = sub.add_parser("start", help="Start a gateway or app VM")
    p.add_argument("domain")

    p = sub.add_parser("stop", help="Gracefully shut down a gateway or app VM")
    p.add_argument("domain")

    p = sub.add_parser("teardown", help="Delete a role's VMs, disks and network")
    p.add_argument("role")
    p.add_argument("--purge", action="store_true", help="Also delete the role directory and user files in it")

    p = sub.add_parser("templates", help="Manage the template registry")
    tsub = p.add_subparsers(dest="templates_command", required=True)
    tsub.add_parser("list", help="List registered templates")
    t = tsub.add_parser("add", help="Register a qcow2 template")
    t.add_argument("id")
    t.add_argument("path")
    t.add_argument("--label", default="")
    t.add_argument("--os-variant", default=None, help=f"virt-install OS variant (default: {settings.os_variant})")
    t.add_argument("--ram", type=int, default=None, help=f"Default RAM in MiB (default: {settings.gateway_ram_mb})")
    t.add_argument("--notes")
    t = tsub.add_parser("remove", help="Unregister a template (the disk is kept)")
    t.add_argument("id")

    sub.add_parser("roles", help="List roles with a configuration directory")

    p = sub.add_parser("probe", help="Check TCP reachability of proxy endpoints")
    p.add_argument("targets", nargs="+", metavar="HOST:PORT|URL")
    p.add_argument("--timeout", type=float, help=f"Seconds (default: {settings.probe_timeout})")

    sub.add_parser("check", help="Check that host tools are installed")

    p = sub.add_parser("serve", help="Run the HTTP service")
    p.add_argument("--host", default=None)
    p.add_argument("--port", type=int, default=None)
    return parser


def _print_json(payload) -> None:
    print(json.dumps(payload, indent=2, sort_keys=True, default=str))


def _probe_targets(targets: list[str]) -> ProxyChain:
    hops = []
    for target in targets:
        if "://" in target:
            hops.append(parse_proxy_url(target))
            continue
        host, sep, port = target.rpartition(":")
        if not sep or not port.isdigit():
            raise ValidationError(f"Expected HOST:PORT, got {target!r}")
        hops.append(ProxyHop(host=host.strip("[]"), port=int(port)))
    return ProxyChain(hops=hops)


def run_templates(args: argparse.Namespace) -> int:
    registry = TemplateRegistry.load()
    if args.templates_command == "list":
        for template in registry.list():
            print(f"{template.id}\t{template.os_variant}\t{template.default_ram_mb}\t{template.path}")
        return EXIT_OK
    if args.templates_command == "add":
        path = Path(args.path).expanduser().resolve()
        if not path.is_file():
            raise ValidationError(f"Template disk does not exist: {path}")
        registry.add(GatewayTemplate(
            id=args.id,
            label=args.label,
            path=str(path),
            os_variant=args.os_variant or settings.os_variant,
            default_ram_mb=args.ram or settings.gateway_ram_mb,
            notes=args.notes,
        ))
    else:
        registry.remove(args.id)
    saved = registry.save()
    logger.info(f"Template registry saved to {saved}")
    return EXIT_OK


def run(args: argparse.Namespace) -> int:
    if args.command == "provision":
        egress, import_files = egress_from_args(args)
        request = ProvisionRequest(
            role=args.role,
            egress=egress,
            template=args.template,
            upstream_network=args.upstream,
            ram_mb=args.ram,
            vcpus=args.vcpus,
            os_variant=args.os_variant,
            import_files=import_files,
            app_template=args.app_template,
        )
        result = get_orchestrator().provision(request)
        print(result.model_dump_json(indent=2))
        return EXIT_OK

    if args.command == "render":
        egress, _ = egress_from_args(args)
        compiled = get_orchestrator().render(args.role, egress)
        sys.stdout.write(compiled.apply_script if args.script else compiled.config)
        return EXIT_OK

    if args.command == "reconfigure":
        egress, import_files = egress_from_args(args)
        written = get_orchestrator().reconfigure(args.role, egress, import_files)
        _print_json({"role": args.role, "files": [str(p) for p in written]})
        return EXIT_OK

    if args.command == "status":
        state = get_orchestrator().runtime_state(args.role)
        print(state.model_dump_json(indent=2))
        return EXIT_OK if state.provisioned else EXIT_FAILED

    if args.command == "rollback":
        resources, failures = get_orchestrator().rollback_stale(args.role)
        if not resources:
            print(f"Nothing to roll back for {args.role}")
            return EXIT_OK
        _print_json({
            "role": args.role,
            "resources": [r.describe() for r in resources],
            "failures": [str(f) for f in failures],
        })
        return EXIT_FAILED if failures else EXIT_OK

    if args.command == "app":
        result = get_orchestrator().create_app_vm(AppVmRequest(
            role=args.role,
            template=args.template,
            ram_mb=args.ram,
            vcpus=args.vcpus,
            os_variant=args.os_variant,
        ))
        print(result.model_dump_json(indent=2))
        return EXIT_OK

    if args.command == "vms":
        for vm in get_orchestrator().list_role_vms(args.role):
            print(f"{vm.name}\t{vm.kind.value}\t{vm.state.value}")
        return EXIT_OK

    if args.command == "start":
        get_orchestrator().start_vm(args.domain)
        return EXIT_OK

    if args.command == "stop":
        get_orchestrator().stop_vm(args.domain)
        return EXIT_OK

    if args.command == "teardown":
        result = get_orchestrator().teardown(args.role, purge=args.purge)
        print(result.model_dump_json(indent=2))
        return EXIT_FAILED if result.failures else EXIT_OK

    if args.command == "templates":
        return run_templates(args)

    if args.command == "roles":
        for role in get_orchestrator().role_dirs.list_roles():
            print(role)
        return EXIT_OK

    if args.command == "probe":
        results = probe_chain(_probe_targets(args.targets), args.timeout)
        _print_json([r.model_dump() for r in results])
        return EXIT_OK if all(r.reachable for r in results) else EXIT_FAILED

    if args.command == "check":
        missing = get_orchestrator().adapter.check_prerequisites()
        for tool in missing:
            print(f"missing: {tool}")
        return EXIT_FAILED if missing else EXIT_OK

    if args.command == "serve":
        import uvicorn

        uvicorn.run(
            "rolegate.main:app",
            host=args.host or settings.api_host,
            port=args.port or settings.api_port,
        )
        return EXIT_OK

    raise ValidationError(f"Unknown command {args.command!r}")


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.verbose:
        settings.log_level = "DEBUG"
    setup_logging()
    try:
        return run(args)
    except ProvisioningCancelled as e:
        print(f"rolegate: {e}", file=sys.stderr)
        return EXIT_CANCELLED
    except RoleGateError as e:
        print(f"rolegate: {e}", file=sys.stderr)
        return EXIT_FAILED
    except ValueError as e:
        print(f"rolegate: invalid input: {e}", file=sys.stderr)
        return EXIT_FAILED
    except KeyboardInterrupt:
        print("rolegate: interrupted", file=sys.stderr)
        return EXIT_CANCELLED
