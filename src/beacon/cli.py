"""CLI entry point for Beacon."""

import argparse
import json
import sys

import yaml

from .config import DEFAULT_PORT, BeaconConfig, build_config, config_to_yaml
from .errors import RegistryError
from .registry import Registry, ServiceRegistryClient, make_registry_server, open_store
from .sweeper import LivenessSweeper


def _add_common_args(parser: argparse.ArgumentParser) -> None:
    """Add config flags shared by serve, sweep and config."""
    parser.add_argument("--config", type=str, help="Path to YAML config file")
    parser.add_argument(
        "--database-url", type=str, dest="database_url",
        help="SQLAlchemy database URL, e.g. postgresql+psycopg://user@host/db "
             "(default: sqlite:///beacon.db)",
    )
    parser.add_argument(
        "--echo-sql", action="store_true", dest="echo_sql", default=None,
        help="Log every SQL statement",
    )
    parser.add_argument(
        "--sweep-interval", type=str, dest="sweep_interval",
        help="How often the liveness sweeper runs, e.g. 300, 5m, 1h (default: 1h)",
    )
    parser.add_argument(
        "--stale-after", type=str, dest="stale_after",
        help="Prune services without a heartbeat for this long (default: 1h)",
    )


def _build_config(args) -> BeaconConfig:
    """Build a BeaconConfig from a config file, the environment and CLI overrides."""
    try:
        return build_config(args.config, args)
    except (OSError, ValueError, yaml.YAMLError) as exc:
        print(f"Error: invalid configuration: {exc}", file=sys.stderr)
        sys.exit(1)


def _open_registry(config: BeaconConfig) -> Registry:
    try:
        store = open_store(
            config.database_url,
            echo=config.echo_sql,
            sqlite_busy_timeout=config.sqlite_busy_timeout,
        )
    except RegistryError as exc:
        print(f"Error: cannot open database: {exc}", file=sys.stderr)
        sys.exit(1)
    return Registry(store)


def cmd_serve(args) -> None:
    """Run the HTTP API and the liveness sweeper until interrupted."""
    config = _build_config(args)
    registry = _open_registry(config)

    sweeper = LivenessSweeper(
        registry,
        interval=config.sweep_interval,
        stale_after=config.stale_after,
    )
    server = make_registry_server(
        registry,
        host=config.host,
        port=config.port,
        log_requests=config.log_requests,
        cors_allow_origin=config.cors_allow_origin,
    )

    sweeper.start()
    print(
        f"Beacon registry running at {config.host}:{config.port} "
        f"(sweep every {config.sweep_interval:g}s, stale after {config.stale_after:g}s)",
        file=sys.stderr,
    )
    try:
        server.serve_forever()
    except KeyboardInterrupt:
        print("Shutting down...", file=sys.stderr)
    finally:
        sweeper.stop(timeout=5)
        server.server_close()
        registry.store.dispose()


def cmd_sweep(args) -> None:
    """Run a single sweep cycle against the configured database."""
    config = _build_config(args)
    registry = _open_registry(config)
    sweeper = LivenessSweeper(registry, interval=config.sweep_interval,
                              stale_after=config.stale_after)
    try:
        pruned = sweeper.sweep_once()
    except RegistryError as exc:
        print(f"Error: sweep failed: {exc}", file=sys.stderr)
        sys.exit(1)
    finally:
        registry.store.dispose()
    print(f"Pruned {len(pruned)} service(s)")


def cmd_config(args) -> None:
    """Print the effective configuration."""
    config = _build_config(args)
    print(config_to_yaml(config), end="")


# ---------------------------------------------------------------------------
# beacon services subcommand
# ---------------------------------------------------------------------------

def _client(args) -> ServiceRegistryClient:
    return ServiceRegistryClient(host=args.registry_host, port=args.registry_port)


def _format_service(s) -> str:
    categories = ",".join(s.categories) or "-"
    last_seen = s.last_seen.isoformat() if s.last_seen else "-"
    return f"{s.id}  {s.name}  {s.url}  categories={categories}  last_seen={last_seen}"


def _format_services(services, fmt: str) -> str:
    """Format a list of Service objects for output."""
    if fmt == "json":
        return json.dumps([s.to_dict() for s in services], indent=2)
    lines = [_format_service(s) for s in services]
    return "\n".join(lines) if lines else "(no services)"


def _print_one(service, fmt: str) -> None:
    if fmt == "json":
        print(json.dumps(service.to_dict(), indent=2))
    else:
        print(_format_service(service))


def _parse_pairs(values, what: str) -> dict:
    pairs = {}
    for item in values or []:
        key, sep, value = item.partition("=")
        if not sep or not key:
            print(f"Error: {what} must be KEY=VALUE, got '{item}'", file=sys.stderr)
            sys.exit(1)
        pairs[key] = value
    return pairs


def _parse_capabilities(values) -> dict:
    capabilities = {}
    for item in values or []:
        name, sep, flag = item.partition("=")
        if not sep:
            capabilities[name] = True
            continue
        flag = flag.strip().lower()
        if flag not in ("true", "false"):
            print(f"Error: capability flag must be true or false, got '{item}'", file=sys.stderr)
            sys.exit(1)
        capabilities[name] = flag == "true"
    return capabilities


def _payload_from_args(args) -> dict:
    """Build a register/update payload from --file or individual flags."""
    if args.file:
        with open(args.file) as f:
            # YAML is a superset of JSON, so both formats load here
            payload = yaml.safe_load(f) or {}
        return payload

    payload = {
        "name": args.name or "",
        "description": args.description or "",
        "url": args.url or "",
        "capabilities": _parse_capabilities(args.capability),
        "categories": list(args.category or []),
    }
    if args.metadata:
        payload["metadata"] = _parse_pairs(args.metadata, "metadata")
    return payload


def _run_client_command(func) -> None:
    try:
        func()
    except (RegistryError, OSError, yaml.YAMLError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)


def cmd_services_list(args) -> None:
    def run():
        services = _client(args).list_services(category=args.category)
        print(_format_services(services, args.format))
    _run_client_command(run)


def cmd_services_get(args) -> None:
    def run():
        service = _client(args).get_service(args.service_id)
        if service is None:
            print(f"Service '{args.service_id}' not found.", file=sys.stderr)
            sys.exit(1)
        _print_one(service, args.format)
    _run_client_command(run)


def cmd_services_search(args) -> None:
    def run():
        services = _client(args).search(args.text)
        print(_format_services(services, args.format))
    _run_client_command(run)


def cmd_services_register(args) -> None:
    def run():
        service = _client(args).register(_payload_from_args(args))
        _print_one(service, args.format)
    _run_client_command(run)


def cmd_services_update(args) -> None:
    def run():
        service = _client(args).update(args.service_id, _payload_from_args(args))
        _print_one(service, args.format)
    _run_client_command(run)


def cmd_services_heartbeat(args) -> None:
    def run():
        _client(args).heartbeat(args.service_id)
        print("Heartbeat received")
    _run_client_command(run)


def cmd_services_unregister(args) -> None:
    def run():
        _client(args).unregister(args.service_id)
        print("Service unregistered")
    _run_client_command(run)


def _add_registry_args(parser: argparse.ArgumentParser) -> None:
    """Add --registry-host, --registry-port and --format to a services sub-parser."""
    parser.add_argument(
        "--registry-host", type=str, default="localhost",
        help="Hostname of the registry server (default: localhost)",
    )
    parser.add_argument(
        "--registry-port", type=int, default=DEFAULT_PORT,
        help=f"Port of the registry HTTP API (default: {DEFAULT_PORT})",
    )
    parser.add_argument(
        "--format", choices=["text", "json"], default="text",
        help="Output format (default: text)",
    )


def _add_payload_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--file", type=str,
        help="Read the full request body from a JSON or YAML file",
    )
    parser.add_argument("--name", type=str, help="Service display name")
    parser.add_argument("--url", type=str, help="Service base URL")
    parser.add_argument("--description", type=str, help="Free-text description")
    parser.add_argument(
        "--capability", action="append", metavar="NAME[=true|false]",
        help="Advertise a capability (repeatable; enabled unless =false)",
    )
    parser.add_argument(
        "--category", action="append", metavar="NAME",
        help="Tag the service with a category (repeatable)",
    )
    parser.add_argument(
        "--metadata", action="append", metavar="KEY=VALUE",
        help="Attach a metadata entry (repeatable)",
    )


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        prog="beacon",
        description="Beacon: service registry with heartbeat-based liveness",
    )
    subparsers = parser.add_subparsers(dest="command")

    # serve
    serve_parser = subparsers.add_parser("serve", help="Run the registry HTTP API and sweeper")
    _add_common_args(serve_parser)
    serve_parser.add_argument("--host", type=str, help="Bind address (default: 0.0.0.0)")
    serve_parser.add_argument(
        "--port", type=int, help=f"Port for the HTTP API (default: {DEFAULT_PORT})",
    )
    serve_parser.add_argument(
        "--no-request-log", action="store_false", dest="log_requests", default=None,
        help="Do not log each HTTP request",
    )
    serve_parser.set_defaults(func=cmd_serve)

    # sweep
    sweep_parser = subparsers.add_parser("sweep", help="Prune stale services once and exit")
    _add_common_args(sweep_parser)
    sweep_parser.set_defaults(func=cmd_sweep)

    # config
    config_parser = subparsers.add_parser("config", help="Print the effective configuration")
    _add_common_args(config_parser)
    config_parser.set_defaults(func=cmd_config)

    # services
    services_parser = subparsers.add_parser(
        "services", help="Query or modify a running registry",
    )
    services_sub = services_parser.add_subparsers(dest="services_command")

    svc_list = services_sub.add_parser("list", help="List registered services")
    _add_registry_args(svc_list)
    svc_list.add_argument("--category", type=str, default=None, help="Filter by category")
    svc_list.set_defaults(func=cmd_services_list)

    svc_get = services_sub.add_parser("get", help="Get a single service by ID")
    _add_registry_args(svc_get)
    svc_get.add_argument("service_id", type=str, help="Service identifier")
    svc_get.set_defaults(func=cmd_services_get)

    svc_search = services_sub.add_parser("search", help="Search names and descriptions")
    _add_registry_args(svc_search)
    svc_search.add_argument("text", type=str, help="Case-insensitive substring")
    svc_search.set_defaults(func=cmd_services_search)

    svc_register = services_sub.add_parser("register", help="Register a new service")
    _add_registry_args(svc_register)
    _add_payload_args(svc_register)
    svc_register.set_defaults(func=cmd_services_register)

    svc_update = services_sub.add_parser(
        "update", help="Replace a service's details and collections",
    )
    _add_registry_args(svc_update)
    svc_update.add_argument("service_id", type=str, help="Service identifier")
    _add_payload_args(svc_update)
    svc_update.set_defaults(func=cmd_services_update)

    svc_heartbeat = services_sub.add_parser("heartbeat", help="Send a heartbeat for a service")
    _add_registry_args(svc_heartbeat)
    svc_heartbeat.add_argument("service_id", type=str, help="Service identifier")
    svc_heartbeat.set_defaults(func=cmd_services_heartbeat)

    svc_unregister = services_sub.add_parser("unregister", help="Remove a service")
    _add_registry_args(svc_unregister)
    svc_unregister.add_argument("service_id", type=str, help="Service identifier")
    svc_unregister.set_defaults(func=cmd_services_unregister)

    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    if args.command == "services" and not args.services_command:
        services_parser.print_help()
        sys.exit(1)

    args.func(args)


if __name__ == "__main__":
    main()
