from __future__ import annotations

import argparse
from typing import Any, Callable, cast

import yaml

from mcp_tenant_gateway.settings import get_settings, load_tenant_environment
from mcp_tenant_gateway.tenants import TenantRegistry
from mcp_tenant_gateway.virtual_clients import VirtualClientStore


def _print_yaml(payload: Any) -> None:
    print(yaml.safe_dump(payload, sort_keys=False).rstrip())


def _registry(args: argparse.Namespace) -> TenantRegistry:
    settings = get_settings()
    env_file = args.env_file or settings.credentials_env_file
    return TenantRegistry(
        load_tenant_environment(env_file),
        upstream_domain=settings.upstream_domain,
    )


def _store(args: argparse.Namespace) -> VirtualClientStore:
    settings = get_settings()
    return VirtualClientStore(
        args.store or settings.virtual_clients_path,
        settings.dcr_server_secret,
    )


def cmd_serve(_: argparse.Namespace) -> int:
    from mcp_tenant_gateway.main import run

    run()
    return 0


def cmd_tenants(args: argparse.Namespace) -> int:
    registry = _registry(args)
    rows = []
    for tenant in registry.list_configured_tenants():
        config = registry.config_for(tenant)
        rows.append(
            {
                "tenant": tenant,
                "configured": config is not None,
                "base_url": config.base_url if config else None,
                "redirect_uri": config.credentials.redirect_uri if config else None,
            }
        )
    _print_yaml({"tenants": rows})
    return 0


def cmd_clients_list(args: argparse.Namespace) -> int:
    store = _store(args)
    clients = [
        {
            "client_id": client.virtual_client_id,
            "tenant": client.tenant_id,
            "created_at": client.created_at,
            "client_name": client.client_name,
            "redirect_uris": list(client.redirect_uris or ()),
        }
        for client in store.list_all()
        if args.tenant is None or client.tenant_id == args.tenant
    ]
    _print_yaml({"clients": clients})
    return 0


def cmd_clients_register(args: argparse.Namespace) -> int:
    registry = _registry(args)
    if registry.config_for(args.tenant) is None:
        raise ValueError(f"Tenant '{args.tenant}' is not configured")
    store = _store(args)
    store.initialize()
    issued = store.register(args.tenant, args.name, args.redirect_uri)
    _print_yaml(
        {
            "client_id": issued.client_id,
            "client_secret": issued.client_secret,
            "tenant": args.tenant,
            "issued_at": issued.issued_at.isoformat(),
        }
    )
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="mcp-tenant-gateway",
        description="Run and administer the multi-tenant MCP OAuth gateway.",
    )
    parser.add_argument(
        "--env-file",
        default=None,
        help="File holding TENANT_* credentials (default: CREDENTIALS_ENV_FILE).",
    )
    parser.add_argument(
        "--store",
        default=None,
        help="Virtual client store path (default: VIRTUAL_CLIENTS_PATH).",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve_cmd = subparsers.add_parser("serve", help="Start the HTTP server.")
    serve_cmd.set_defaults(handler=cmd_serve)

    tenants_cmd = subparsers.add_parser("tenants", help="List configured tenants.")
    tenants_cmd.set_defaults(handler=cmd_tenants)

    clients_cmd = subparsers.add_parser("clients", help="Manage virtual clients.")
    clients_subparsers = clients_cmd.add_subparsers(
        dest="clients_command", required=True
    )

    clients_list_cmd = clients_subparsers.add_parser(
        "list", help="List registered virtual clients (secrets are never shown)."
    )
    clients_list_cmd.add_argument("--tenant", default=None)
    clients_list_cmd.set_defaults(handler=cmd_clients_list)

    clients_register_cmd = clients_subparsers.add_parser(
        "register", help="Register a virtual client and print its secret once."
    )
    clients_register_cmd.add_argument("--tenant", required=True)
    clients_register_cmd.add_argument("--name", default=None)
    clients_register_cmd.add_argument(
        "--redirect-uri",
        action="append",
        default=None,
        help="Allowed redirect URI. Repeat for several.",
    )
    clients_register_cmd.set_defaults(handler=cmd_clients_register)
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    handler = cast(Callable[[argparse.Namespace], int], args.handler)

    try:
        return handler(args)
    except Exception as exc:  # pragma: no cover - covered via CLI tests
        parser.exit(2, f"error: {exc}\n")


if __name__ == "__main__":
    raise SystemExit(main())
