#!/usr/bin/env python3
"""
RaceSteward Command Line Interface.

Provides commands for running and managing RaceSteward:
    - serve: Start the API server
    - sweep: Run one sweep pass and print its report
    - scheduler: Run the sweeper on its interval until interrupted
    - evaluate: Advance a single protest and send what it triggers
    - import-race: Import a race results file
    - check: Verify installation and configuration
    - info: Display system information

Usage:
    racesteward serve [--host HOST] [--port PORT] [--debug] [--with-scheduler]
    racesteward sweep [--now TIMESTAMP]
    racesteward scheduler
    racesteward evaluate PROTEST_ID [--now TIMESTAMP]
    racesteward import-race FILE
    racesteward check
    racesteward info
    racesteward --version
"""

import argparse
import json
import os
import sys

# Ensure src is in path when running from source
if os.path.exists(os.path.join(os.path.dirname(__file__), "lifecycle.py")):
    sys.path.insert(0, os.path.dirname(__file__))

from config import ConfigError, Settings, __version__


def _load_settings(args) -> Settings:
    """Load .env, build settings and configure logging."""
    from dotenv import load_dotenv

    from monitoring import configure_logging

    load_dotenv()
    settings = Settings.from_env()
    configure_logging(
        level="DEBUG" if getattr(args, "debug", False) else settings.log_level,
        json_output=settings.log_format == "json",
        log_file=getattr(args, "log_file", None),
    )
    return settings


def _build_services(settings: Settings):
    from api.state import build_services

    return build_services(settings.ensure_valid())


def _parse_now(value: str | None):
    if value is None:
        return None
    from event_clock import parse_reference_timestamp

    now = parse_reference_timestamp(value)
    if now is None:
        raise argparse.ArgumentTypeError(f"Invalid timestamp: {value}")
    return now


def _print_json(data) -> None:
    print(json.dumps(data, indent=2, default=str))


def _gunicorn_app(flask_app, options: dict):
    """Wrap ``flask_app`` so gunicorn can run it without a config file."""
    import gunicorn.app.base

    class RaceStewardApplication(gunicorn.app.base.BaseApplication):
        def load_config(self):
            for key, value in options.items():
                if value is not None and key in self.cfg.settings:
                    self.cfg.set(key, value)

        def load(self):
            return flask_app

    return RaceStewardApplication()


def cmd_serve(args):
    """Start the RaceSteward API server."""
    settings = _load_settings(args)
    host = args.host or settings.host
    port = args.port or settings.port

    from api import create_app

    print(f"Starting RaceSteward API server on {host}:{port}")

    if not args.production:
        flask_app = create_app(settings, start_scheduler=args.with_scheduler)
        debug = args.debug or os.getenv("FLASK_DEBUG", "").lower() == "true"
        flask_app.run(host=host, port=port, debug=debug, use_reloader=False)
        return 0

    # Workers never sweep; run `racesteward scheduler` alongside them
    flask_app = create_app(settings)
    try:
        server = _gunicorn_app(flask_app, {
            "bind": f"{host}:{port}",
            "workers": args.workers or int(os.getenv("WORKERS", 4)),
            "worker_class": "sync",
            "timeout": 120,
            "accesslog": "-",
            "errorlog": "-",
        })
    except ImportError:
        print("Error: gunicorn not installed. Install with: pip install racesteward[production]")
        return 1
    server.run()
    return 0


def cmd_sweep(args):
    """Run one sweep pass over all active events."""
    services = _build_services(_load_settings(args))
    try:
        report = services.sweeper.run_once(_parse_now(args.now))
    finally:
        services.close()
    _print_json(report.to_dict())
    return 1 if report.errors else 0


def cmd_scheduler(args):
    """Sweep on the configured interval until interrupted."""
    settings = _load_settings(args)
    services = _build_services(settings)
    print(f"Sweeping every {settings.sweep_interval_seconds}s (Ctrl+C to stop)")
    services.sweeper.start()
    try:
        services.sweeper.wait()
    except KeyboardInterrupt:
        print("\nStopping scheduler...")
    finally:
        services.close()
    return 0


def cmd_evaluate(args):
    """Advance one protest and dispatch the notifications it triggers."""
    from models import NotFoundError

    services = _build_services(_load_settings(args))
    try:
        report = services.sweeper.check_protest(args.protest_id, _parse_now(args.now))
    except NotFoundError as e:
        print(f"Error: {e}")
        return 1
    finally:
        services.close()
    _print_json(report.to_dict())
    return 0


def cmd_import_race(args):
    """Import a race results file."""
    from models import ValidationError
    from race_import import import_race

    services = _build_services(_load_settings(args))
    try:
        with open(args.file, "rb") as f:
            event = import_race(services.store, f.read())
    except (OSError, ValidationError) as e:
        print(f"Error: {e}")
        return 1
    finally:
        services.close()

    print(f"Imported {event.track_name} ({event.reference_timestamp.isoformat()})")
    print(f"  Event id: {event.id}")
    print(f"  Drivers: {len(event.drivers)}")
    return 0


def _check_storage(settings):
    from storage import StorageError, get_storage_backend

    try:
        storage = get_storage_backend(settings)
    except StorageError as e:
        return "Storage", f"FAIL: {e}"
    try:
        return f"Storage ({type(storage).__name__})", "OK" if storage.is_available() else "WARN (not available)"
    finally:
        storage.close()


def _check_push(settings):
    from push_gateway import PushGatewayError, get_push_gateway

    try:
        gateway = get_push_gateway(settings)
    except PushGatewayError as e:
        return "Push", f"FAIL: {e}"
    gateway.close()
    return f"Push ({type(gateway).__name__})", "OK"


def _check_module(label, module, extra):
    import importlib

    try:
        importlib.import_module(module)
    except ImportError:
        return label, f"SKIP (install racesteward[{extra}])"
    return label, "OK"


def cmd_check(args):
    """Check installation and configuration."""
    settings = _load_settings(args)
    print("RaceSteward Installation Check")
    print("=" * 40)

    checks = [("Configuration", f"FAIL: {problem}") for problem in settings.validate()]
    if not checks:
        checks.append(("Configuration", "OK"))
    checks.append(_check_storage(settings))
    checks.append(_check_push(settings))
    checks.append(_check_module("PostgreSQL support", "psycopg2", "postgres"))
    checks.append(_check_module("Production server", "gunicorn", "production"))

    print()
    failed = False
    for name, status in checks:
        if status.startswith("FAIL"):
            icon, failed = "✗", True
        else:
            icon = "✓" if status == "OK" else "○"
        print(f"  {icon} {name}: {status}")

    print()
    print("Some checks failed. See above for details." if failed else "All checks passed!")
    return 1 if failed else 0


def cmd_info(args):
    """Show version, effective settings and storage details."""
    import platform

    from storage import StorageError, get_storage_backend

    settings = _load_settings(args)
    shown = {
        "STORAGE_BACKEND": settings.storage_backend,
        "DATABASE_URL": "configured" if settings.database_url else "not set",
        "PUSH_BACKEND": settings.push_backend,
        "SWEEP_INTERVAL_SECONDS": settings.sweep_interval_seconds,
        "WARNING_BUFFER_MINUTES": settings.warning_buffer_minutes,
        "ACTIVE_EVENT_GRACE_HOURS": settings.active_event_grace_hours,
        "SUPER_ADMIN_ID": "configured" if settings.super_admin_id else "not set",
        "LOG_LEVEL": settings.log_level,
        "LOG_FORMAT": settings.log_format,
    }

    print(f"RaceSteward {__version__} on Python {platform.python_version()} ({platform.platform()})")
    print()
    print("Configuration:")
    for key, value in shown.items():
        print(f"  {key}: {value}")

    print()
    print("Storage:")
    try:
        storage = get_storage_backend(settings)
    except StorageError as e:
        print(f"  Error: {e}")
        return 0
    try:
        for key, value in storage.get_info().items():
            print(f"  {key}: {value}")
    finally:
        storage.close()
    return 0


def main(argv=None):
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        prog="racesteward",
        description="RaceSteward - protest lifecycle for sim racing leagues",
    )
    parser.add_argument("--version", "-v", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--log-file", help="Also write JSON logs to this file")

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # serve command
    serve_parser = subparsers.add_parser("serve", help="Start the API server")
    serve_parser.add_argument("--host", help="Host to bind to (default: 0.0.0.0)")
    serve_parser.add_argument("--port", type=int, help="Port to bind to (default: 5000)")
    serve_parser.add_argument("--debug", action="store_true", help="Enable debug mode")
    serve_parser.add_argument(
        "--production", action="store_true", help="Use gunicorn for production"
    )
    serve_parser.add_argument("--workers", type=int, help="Number of workers (production mode)")
    serve_parser.add_argument(
        "--with-scheduler",
        action="store_true",
        help="Run the sweeper inside the development server",
    )

    # sweep command
    sweep_parser = subparsers.add_parser("sweep", help="Run one sweep pass")
    sweep_parser.add_argument("--now", help="Sweep as of this ISO timestamp")

    # scheduler command
    subparsers.add_parser("scheduler", help="Sweep periodically until interrupted")

    # evaluate command
    evaluate_parser = subparsers.add_parser("evaluate", help="Advance a single protest")
    evaluate_parser.add_argument("protest_id", help="Protest to evaluate")
    evaluate_parser.add_argument("--now", help="Evaluate as of this ISO timestamp")

    # import-race command
    import_parser = subparsers.add_parser("import-race", help="Import a race results file")
    import_parser.add_argument("file", help="Path to the results JSON file")

    # check command
    subparsers.add_parser("check", help="Check installation and configuration")

    # info command
    subparsers.add_parser("info", help="Display system information")

    args = parser.parse_args(argv)

    commands = {
        "serve": cmd_serve,
        "sweep": cmd_sweep,
        "scheduler": cmd_scheduler,
        "evaluate": cmd_evaluate,
        "import-race": cmd_import_race,
        "check": cmd_check,
        "info": cmd_info,
    }
    if args.command not in commands:
        parser.print_help()
        sys.exit(1)

    try:
        sys.exit(commands[args.command](args))
    except ConfigError as e:
        print(f"Configuration error: {e}")
        sys.exit(2)
    except argparse.ArgumentTypeError as e:
        parser.error(str(e))


if __name__ == "__main__":
    main()
