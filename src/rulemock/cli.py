"""
rulemock CLI

Commands:
    admin       - Run the admin API (optionally starting every stored listener)
    serve       - Start stored services / ws servers and block
    check       - Check whether a port is free
    validate    - Check the stored services for mistakes
    import      - Import services from a JSON or YAML rules file

Examples:
    rulemock admin --store rules.json --autostart
    rulemock serve 1700000000000 --port 4001
    rulemock check 4001
    rulemock import services.yaml --replace
"""

import argparse
import asyncio
import logging
import re
import sys
from typing import List, Dict, Any

from .admin import AdminServer
from .common import RulesFileLoader, check_port, normalize_path
from .mock import LifecycleError, MockConfig, MockServerManager
from .mock.matcher import is_parameterized
from .store import JsonFileDocumentStore, RuleRepository
from .ws import WsMockServerManager


def build_config(args) -> MockConfig:
    """Create a MockConfig from the common flags."""
    return MockConfig(
        store_path=args.store,
        log_level=args.log_level,
        verbose_mode=args.verbose,
        recording_enabled=not args.no_record,
        faker_locale=args.faker_locale,
        faker_seed=args.faker_seed,
    )


def setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format='%(asctime)s %(levelname)-7s %(name)s: %(message)s',
        datefmt='%H:%M:%S'
    )


def open_repository(config: MockConfig) -> RuleRepository:
    return RuleRepository(JsonFileDocumentStore(config.store_path))


def cmd_admin(args):
    """
    Run the admin API (blocking).

    Args:
        args: Parsed command-line arguments
    """
    config = build_config(args)
    config.admin_host = args.host
    config.admin_port = args.port

    server = AdminServer(open_repository(config), config, autostart=args.autostart)
    try:
        server.start()
    except KeyboardInterrupt:
        print("\n\n👋 Admin server stopped")


async def _serve(repository: RuleRepository, config: MockConfig, args) -> None:
    manager = MockServerManager(repository, config)
    ws_manager = WsMockServerManager(repository, config, sandbox=manager.engine.resolver.sandbox)

    try:
        for service_id in args.services:
            service = repository.find_service(service_id)
            if service is None:
                raise LifecycleError(f"Service {service_id} not found", status_code=404)
            port = args.port if args.port is not None else int(service.get('port') or 0)
            prefix = args.prefix if args.prefix is not None else service.get('prefix')
            bound = await manager.start(service_id, port, prefix)
            print(f"   ✓ {service.get('name') or service_id}: http://localhost:{bound}{prefix or ''}")

        for server_id in args.ws or []:
            status = await ws_manager.start(server_id)
            print(f"   ✓ ws {server_id}: ws://localhost:{status['port']}{status['path']}")

        print()
        await asyncio.Event().wait()
    finally:
        await manager.stop_all()
        await ws_manager.stop_all()


def cmd_serve(args):
    """
    Start stored services and block until interrupted.

    Args:
        args: Parsed command-line arguments
    """
    config = build_config(args)
    repository = open_repository(config)

    print(f"🎭 rulemock")
    print(f"   Rule store: {config.store_path}")
    if config.recording_enabled:
        print(f"📹 Proxy recording enabled (limit: {config.recording_limit})")
    if config.faker_seed is not None:
        print(f"🎲 Faker seed: {config.faker_seed}")
    if config.verbose_mode:
        print(f"📋 Verbose mode enabled")
    print()

    if not args.services and not args.ws:
        print("❌ Nothing to serve: pass service ids and/or --ws server ids")
        sys.exit(1)

    if args.port is not None and len(args.services) > 1:
        print("❌ --port can only be used with a single service")
        sys.exit(1)

    try:
        asyncio.run(_serve(repository, config, args))
    except LifecycleError as e:
        print(f"❌ {e.message}")
        sys.exit(1)
    except KeyboardInterrupt:
        print("\n\n👋 Mock services stopped")


def cmd_check(args):
    """Exit 0 when the port is free, 1 otherwise."""
    if check_port(args.port):
        print(f"✅ Port {args.port} is available")
    else:
        print(f"❌ Port {args.port} is in use")
        sys.exit(1)


def validate_services(services: List[Dict[str, Any]]):
    """
    Check services for mistakes that make rules unreachable or fail at runtime.

    Returns:
        Tuple of (errors, warnings)
    """
    errors = []
    warnings = []
    ports = {}

    for i, service in enumerate(services):
        label = service.get('name') or service.get('id') or f"#{i}"
        if 'id' not in service:
            errors.append(f"Service {label}: Missing 'id' field")
        if 'port' not in service:
            errors.append(f"Service {label}: Missing 'port' field")
        elif service['port'] in ports:
            warnings.append(f"Service {label}: port {service['port']} also used by {ports[service['port']]}")
        else:
            ports[service['port']] = label
        if service.get('proxyEnabled') and not (service.get('proxyTarget') or '').strip():
            warnings.append(f"Service {label}: proxy enabled without a proxy target")

        for group in service.get('groups') or []:
            seen = set()
            for rule in group.get('children') or []:
                rule_label = f"{label} / {rule.get('method')} {rule.get('url')}"
                if not rule.get('url') or not rule.get('method'):
                    errors.append(f"Rule {rule_label}: Missing 'url' or 'method' field")
                    continue

                route = (rule['method'].upper(), normalize_path(rule['url']))
                if rule.get('active') and not is_parameterized(rule['url']):
                    if route in seen:
                        warnings.append(f"Rule {rule_label}: duplicate exact route in group {group.get('name')}")
                    seen.add(route)

                for expectation in rule.get('expectations') or []:
                    conditions = expectation.get('conditions') or []
                    if not conditions:
                        warnings.append(f"Rule {rule_label}: expectation without conditions never matches")
                    for condition in conditions:
                        if condition.get('operator') != 'regex':
                            continue
                        try:
                            re.compile(str(condition.get('value') or ''))
                        except re.error as e:
                            errors.append(f"Rule {rule_label}: bad regex '{condition.get('value')}' ({e})")

    return errors, warnings


def cmd_validate(args):
    """
    Validate the stored services and report issues.

    Args:
        args: Parsed command-line arguments
    """
    config = build_config(args)
    services = open_repository(config).get_services()

    print(f"✓ rulemock Rule Validation")
    print(f"   Rule store: {config.store_path}")
    print(f"   Services: {len(services)}")
    print()

    errors, warnings = validate_services(services)

    if errors:
        print("❌ Errors found:")
        for error in errors:
            print(f"   • {error}")
        print()

    if warnings:
        print("⚠️  Warnings:")
        for warning in warnings:
            print(f"   • {warning}")
        print()

    if not errors and not warnings:
        print("✅ All validations passed!")
    else:
        print(f"📊 Summary:")
        print(f"   Errors: {len(errors)}")
        print(f"   Warnings: {len(warnings)}")

    if errors:
        sys.exit(1)


def cmd_import(args):
    """
    Merge services from a rules file into the store.

    Args:
        args: Parsed command-line arguments
    """
    config = build_config(args)
    repository = open_repository(config)
    loader = RulesFileLoader(args.file)

    try:
        imported = loader.load()
    except (FileNotFoundError, ValueError) as e:
        print(f"❌ Failed to load rules file: {e}")
        sys.exit(1)

    invalid = [s for s in imported if not isinstance(s, dict) or not loader.validate_service(s)]
    if invalid:
        print(f"❌ {len(invalid)} service(s) missing 'id', 'port' or 'groups'")
        sys.exit(1)

    if args.replace:
        services = imported
    else:
        by_id = {str(s.get('id')): s for s in repository.get_services()}
        for service in imported:
            by_id[str(service['id'])] = service
        services = list(by_id.values())

    repository.save_services(services)
    print(f"✅ Imported {len(imported)} service(s) into {config.store_path} ({len(services)} total)")


def add_common_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument('--store', default='rulemock-db.json', help='Rule store file (default: rulemock-db.json)')
    parser.add_argument('--log-level', default='info', choices=['debug', 'info', 'warning', 'error'],
                        help='Log level (default: info)')
    parser.add_argument('--verbose', action='store_true', help='Print one line per served request')
    parser.add_argument('--faker-locale', default='en_US', help='Faker locale (default: en_US)')
    parser.add_argument('--faker-seed', type=int, help='Faker seed for reproducible data')
    parser.add_argument('--no-record', action='store_true', help='Do not record proxied responses as rules')


def main(argv=None):
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        prog='rulemock',
        description="rulemock - rule-driven HTTP and WebSocket mock servers",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Admin API on port 3000, starting every stored listener
  %(prog)s admin --autostart

  # Serve one service on its stored port
  %(prog)s serve 1700000000000

  # Import services from YAML
  %(prog)s import services.yaml
        """
    )

    subparsers = parser.add_subparsers(dest='command', help='Command to run')

    # --- ADMIN command ---
    admin_parser = subparsers.add_parser('admin', help='Run the admin API')
    admin_parser.add_argument('--host', default='0.0.0.0', help='Host to bind (default: 0.0.0.0)')
    admin_parser.add_argument('-p', '--port', type=int, default=3000, help='Port to bind (default: 3000)')
    admin_parser.add_argument('--autostart', action='store_true', help='Start every stored service and ws server')
    add_common_arguments(admin_parser)

    # --- SERVE command ---
    serve_parser = subparsers.add_parser('serve', help='Start stored services and block')
    serve_parser.add_argument('services', nargs='*', default=[], help='Service ids to start')
    serve_parser.add_argument('--ws', nargs='+', help='WebSocket server ids to start')
    serve_parser.add_argument('-p', '--port', type=int, help='Override the stored port (single service only)')
    serve_parser.add_argument('--prefix', help='Override the stored prefix')
    add_common_arguments(serve_parser)

    # --- CHECK command ---
    check_parser = subparsers.add_parser('check', help='Check whether a port is free')
    check_parser.add_argument('port', type=int, help='Port to check')

    # --- VALIDATE command ---
    validate_parser = subparsers.add_parser('validate', help='Validate stored services')
    add_common_arguments(validate_parser)

    # --- IMPORT command ---
    import_parser = subparsers.add_parser('import', help='Import services from a JSON or YAML file')
    import_parser.add_argument('file', help='Rules file (.json, .yaml, .yml)')
    import_parser.add_argument('--replace', action='store_true', help='Replace all stored services')
    add_common_arguments(import_parser)

    args = parser.parse_args(argv)

    if hasattr(args, 'log_level'):
        setup_logging(args.log_level)

    if args.command == 'admin':
        cmd_admin(args)
    elif args.command == 'serve':
        cmd_serve(args)
    elif args.command == 'check':
        cmd_check(args)
    elif args.command == 'validate':
        cmd_validate(args)
    elif args.command == 'import':
        cmd_import(args)
    else:
        parser.print_help()
        sys.exit(1)


if __name__ == '__main__':
    main()
