#!/usr/bin/env python3
"""
Provenance Ledger CLI

Command-line interface over a ledger snapshot file. Each invocation loads the
snapshot, applies one operation and, when a mutation is accepted, writes the
snapshot back.

Usage:
    cropledger [--state FILE] [--sources FILE] <command> [options]

Commands:
    init            Create an empty ledger snapshot
    register        Register a token
    add-entry       Submit a provenance entry
    verify          Verify an entry (admin)
    grant / revoke  Manage authorized updaters (owner)
    pause / unpause Gate entry submission (admin)
    transfer-admin  Hand the admin role to another identity
    stage, entry, history, grants, status
                    Read-only queries
    config          Configuration management

Exit codes:
    0  success
    1  usage, configuration or file error
    2  operation rejected by the ledger
"""

from __future__ import annotations

import argparse
import json
import pathlib
import sys
from enum import Enum
from typing import Any, List, Optional, Tuple

import yaml

from cropledger import __version__
from cropledger.audit import LoggingAuditSink
from cropledger.config import ConfigError, get_config, get_config_manager
from cropledger.errors import LedgerResult, RegistryError
from cropledger.models import Stage
from cropledger.observability import (
    LedgerLayer,
    apply_logging_config,
    generate_correlation_id,
    get_logger,
    set_correlation_id,
)
from cropledger.registry import ProvenanceRegistry
from cropledger.sources import (
    InMemoryIdentitySource,
    RegisteredOwnerSource,
    SourceError,
    YamlIdentitySource,
    YamlOwnershipSource,
)
from cropledger.state import LedgerState, StateFileError, save_state

EXIT_REJECTED = 2


class OutputFormat(Enum):
    """Output format options."""
    JSON = "json"
    YAML = "yaml"
    TEXT = "text"


class CLIError(Exception):
    """CLI error with exit code."""
    def __init__(self, message: str, exit_code: int = 1):
        super().__init__(message)
        self.exit_code = exit_code


def format_output(data: Any, fmt: OutputFormat = OutputFormat.JSON) -> str:
    """Format data for output."""
    if fmt == OutputFormat.JSON:
        return json.dumps(data, indent=2, default=str)
    elif fmt == OutputFormat.YAML:
        return yaml.safe_dump(data, default_flow_style=False, sort_keys=False)
    elif isinstance(data, dict):
        return "\n".join(f"{k}: {v}" for k, v in data.items())
    elif isinstance(data, list):
        return "\n".join(str(item) for item in data)
    return str(data)


def _stage_arg(value: str) -> int:
    try:
        return Stage.parse(value)
    except ValueError as e:
        raise argparse.ArgumentTypeError(str(e)) from e


def _stage_name(stage: int) -> str:
    try:
        return Stage(stage).name.lower()
    except ValueError:
        return str(stage)


class LedgerCLI:
    """Main CLI application."""

    def __init__(self):
        self.parser = argparse.ArgumentParser(
            prog="cropledger",
            description="Stage-ordered provenance ledger",
            formatter_class=argparse.RawDescriptionHelpFormatter,
        )
        self.parser.add_argument(
            "--version", "-V",
            action="version",
            version=f"cropledger {__version__}",
        )
        self.parser.add_argument(
            "--state", "-s",
            help="Ledger snapshot file (default: storage.state_path)",
        )
        self.parser.add_argument(
            "--sources",
            help="YAML file listing verified farmers and token owners",
        )
        self.parser.add_argument("--config", "-c", help="YAML configuration file")
        self.parser.add_argument(
            "--format", "-f",
            choices=["json", "yaml", "text"],
            default="json",
            help="Output format (default: json)",
        )
        self.parser.add_argument(
            "--quiet", "-q",
            action="store_true",
            help="Suppress non-essential output",
        )

        self.subparsers = self.parser.add_subparsers(dest="command", help="Commands")
        self._register_commands()
        self._logger = None

    def _register_commands(self) -> None:
        """Register all commands."""
        self._register_mutation_commands()
        self._register_query_commands()
        self._register_config_commands()

    @staticmethod
    def _add_caller(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--as", dest="caller", required=True, help="Calling identity")

    def _register_mutation_commands(self) -> None:
        init = self.subparsers.add_parser("init", help="Create an empty ledger snapshot")
        init.add_argument("--admin", help="Admin identity (default: registry.default_admin)")
        init.add_argument("--force", action="store_true", help="Overwrite an existing snapshot")

        register = self.subparsers.add_parser("register", help="Register a token")
        register.add_argument("token", type=int, help="Token ID")
        self._add_caller(register)

        add = self.subparsers.add_parser("add-entry", help="Submit a provenance entry")
        add.add_argument("token", type=int, help="Token ID")
        add.add_argument("stage", type=_stage_arg, help="Stage number or name (e.g. growing)")
        add.add_argument("metadata", help="Entry metadata")
        loc = add.add_mutually_exclusive_group()
        loc.add_argument("--location", help="Location fingerprint as hex")
        loc.add_argument("--location-text", help="Location fingerprint as UTF-8 text")
        self._add_caller(add)

        verify = self.subparsers.add_parser("verify", help="Verify an entry")
        verify.add_argument("token", type=int, help="Token ID")
        verify.add_argument("stage", type=_stage_arg, help="Stage number or name")
        self._add_caller(verify)

        grant = self.subparsers.add_parser("grant", help="Authorize an updater")
        grant.add_argument("token", type=int, help="Token ID")
        grant.add_argument("updater", help="Updater identity")
        grant.add_argument("--role", "-r", required=True, help="Role label")
        self._add_caller(grant)

        revoke = self.subparsers.add_parser("revoke", help="Remove an authorized updater")
        revoke.add_argument("token", type=int, help="Token ID")
        revoke.add_argument("updater", help="Updater identity")
        self._add_caller(revoke)

        for name, help_text in (("pause", "Pause entry submission"), ("unpause", "Resume entry submission")):
            cmd = self.subparsers.add_parser(name, help=help_text)
            self._add_caller(cmd)

        transfer = self.subparsers.add_parser("transfer-admin", help="Transfer the admin role")
        transfer.add_argument("new_admin", help="New admin identity")
        self._add_caller(transfer)

    def _register_query_commands(self) -> None:
        stage = self.subparsers.add_parser("stage", help="Show the current stage of a token")
        stage.add_argument("token", type=int, help="Token ID")

        entry = self.subparsers.add_parser("entry", help="Show one provenance entry")
        entry.add_argument("token", type=int, help="Token ID")
        entry.add_argument("stage", type=_stage_arg, help="Stage number or name")

        history = self.subparsers.add_parser("history", help="Show the full history of a token")
        history.add_argument("token", type=int, help="Token ID")

        grants = self.subparsers.add_parser("grants", help="List authorized updaters of a token")
        grants.add_argument("token", type=int, help="Token ID")

        self.subparsers.add_parser("status", help="Show ledger status")

    def _register_config_commands(self) -> None:
        config = self.subparsers.add_parser("config", help="Configuration management")
        config_sub = config.add_subparsers(dest="subcommand")

        get = config_sub.add_parser("get", help="Get configuration value")
        get.add_argument("path", help="Config path (e.g., registry.owner_policy)")

        config_sub.add_parser("show", help="Show all configuration")
        config_sub.add_parser("validate", help="Validate configuration")

    def run(self, args: Optional[List[str]] = None) -> int:
        """Run the CLI."""
        parsed = self.parser.parse_args(args)

        if not parsed.command:
            self.parser.print_help()
            return 0

        set_correlation_id(generate_correlation_id())

        try:
            if parsed.config:
                get_config_manager().load_from_file(parsed.config)
            else:
                get_config_manager().load_defaults()

            # config subcommands still run so invalid settings can be inspected
            errors = get_config_manager().validate()
            if errors and parsed.command != "config":
                raise CLIError("Invalid configuration: " + "; ".join(errors))
            if not errors:
                apply_logging_config()
                self._logger = get_logger("cli", LedgerLayer.CLI)

            fmt = OutputFormat(parsed.format)
            try:
                result, exit_code = self._dispatch(parsed)
            except RegistryError as e:
                result, exit_code = {"ok": False, "error": e.error.label, "code": e.code}, EXIT_REJECTED

            if result is not None and not (parsed.quiet and exit_code == 0):
                print(format_output(result, fmt))

            return exit_code

        except (CLIError, ConfigError, StateFileError, SourceError) as e:
            if not parsed.quiet:
                print(f"Error: {e}", file=sys.stderr)
            return getattr(e, "exit_code", 1)

    def _dispatch(self, args: argparse.Namespace) -> Tuple[Any, int]:
        """Dispatch command to handler."""
        cmd = args.command.replace("-", "_")
        subcmd = getattr(args, "subcommand", None)

        handler_name = f"_handle_{cmd}_{subcmd}" if subcmd else f"_handle_{cmd}"
        handler = getattr(self, handler_name, None)

        if handler is None:
            raise CLIError(f"Unknown command: {args.command} {subcmd or ''}")

        return handler(args)

    # -------------------------------------------------------------------------
    # plumbing
    # -------------------------------------------------------------------------

    def _state_path(self, args: argparse.Namespace) -> pathlib.Path:
        return pathlib.Path(args.state or get_config().storage.state_path.get())

    def _open_registry(self, args: argparse.Namespace) -> ProvenanceRegistry:
        path = self._state_path(args)
        if not path.exists():
            raise CLIError(f"No ledger at {path}; run 'cropledger init' first")

        if args.sources:
            identity = YamlIdentitySource(args.sources)
            ownership = YamlOwnershipSource(args.sources)
        else:
            identity = InMemoryIdentitySource()
            ownership = RegisteredOwnerSource()

        return ProvenanceRegistry.from_snapshot(
            path,
            ownership,
            identity,
            audit_sink=LoggingAuditSink(get_logger("audit", LedgerLayer.AUDIT)),
        )

    def _mutate(self, args: argparse.Namespace, operation: str, *op_args: Any) -> Tuple[Any, int]:
        registry = self._open_registry(args)
        result: LedgerResult = getattr(registry, operation)(args.caller, *op_args)
        if not result.ok:
            return result.to_dict(), EXIT_REJECTED

        digest = registry.save(self._state_path(args))
        out = result.to_dict()
        out["state_root"] = digest
        return out, 0

    # -------------------------------------------------------------------------
    # mutation handlers
    # -------------------------------------------------------------------------

    def _handle_init(self, args: argparse.Namespace) -> Tuple[Any, int]:
        path = self._state_path(args)
        if path.exists() and not args.force:
            raise CLIError(f"Ledger already exists at {path} (use --force to overwrite)")
        state = LedgerState(admin=args.admin or get_config().registry.default_admin.get())
        digest = save_state(state, path)
        self._logger.info("Ledger initialised", operation="init", path=str(path), admin=state.admin)
        return {"path": str(path), "admin": state.admin, "state_root": digest}, 0

    def _handle_register(self, args: argparse.Namespace) -> Tuple[Any, int]:
        return self._mutate(args, "register_token", args.token)

    def _handle_add_entry(self, args: argparse.Namespace) -> Tuple[Any, int]:
        location: Optional[bytes] = None
        if args.location is not None:
            text = args.location[2:] if args.location.startswith("0x") else args.location
            try:
                location = bytes.fromhex(text)
            except ValueError as e:
                raise CLIError(f"--location must be hex: {e}") from e
        elif args.location_text is not None:
            location = args.location_text.encode("utf-8")
        return self._mutate(args, "add_provenance_entry", args.token, args.stage, args.metadata, location)

    def _handle_verify(self, args: argparse.Namespace) -> Tuple[Any, int]:
        return self._mutate(args, "verify_entry", args.token, args.stage)

    def _handle_grant(self, args: argparse.Namespace) -> Tuple[Any, int]:
        return self._mutate(args, "add_authorized_updater", args.token, args.updater, args.role)

    def _handle_revoke(self, args: argparse.Namespace) -> Tuple[Any, int]:
        return self._mutate(args, "remove_authorized_updater", args.token, args.updater)

    def _handle_pause(self, args: argparse.Namespace) -> Tuple[Any, int]:
        return self._mutate(args, "pause")

    def _handle_unpause(self, args: argparse.Namespace) -> Tuple[Any, int]:
        return self._mutate(args, "unpause")

    def _handle_transfer_admin(self, args: argparse.Namespace) -> Tuple[Any, int]:
        return self._mutate(args, "transfer_admin", args.new_admin)

    # -------------------------------------------------------------------------
    # query handlers
    # -------------------------------------------------------------------------

    def _handle_stage(self, args: argparse.Namespace) -> Tuple[Any, int]:
        registry = self._open_registry(args)
        stage = registry.get_current_stage(args.token)
        return {
            "token": args.token,
            "registered": registry.is_registered_token(args.token),
            "current_stage": stage,
            "stage_name": _stage_name(stage),
        }, 0

    def _handle_entry(self, args: argparse.Namespace) -> Tuple[Any, int]:
        registry = self._open_registry(args)
        entry = registry.get_provenance_entry(args.token, args.stage)
        return {
            "token": args.token,
            "stage": args.stage,
            "entry": entry.to_dict() if entry else None,
        }, 0

    def _handle_history(self, args: argparse.Namespace) -> Tuple[Any, int]:
        registry = self._open_registry(args)
        items = registry.get_history_items(args.token)
        return {
            "token": args.token,
            "entries": [
                {"stage": int(stage), "stage_name": stage.name.lower(), **entry.to_dict()}
                for stage, entry in items
            ],
            "count": len(items),
        }, 0

    def _handle_grants(self, args: argparse.Namespace) -> Tuple[Any, int]:
        registry = self._open_registry(args)
        grants = registry.list_authorized_updaters(args.token)
        return {
            "token": args.token,
            "grants": {updater: grant.to_dict() for updater, grant in sorted(grants.items())},
        }, 0

    def _handle_status(self, args: argparse.Namespace) -> Tuple[Any, int]:
        return self._open_registry(args).status(), 0

    # -------------------------------------------------------------------------
    # config handlers
    # -------------------------------------------------------------------------

    def _handle_config_get(self, args: argparse.Namespace) -> Tuple[Any, int]:
        mgr = get_config_manager()
        return {"path": args.path, "value": mgr.get(args.path)}, 0

    def _handle_config_show(self, args: argparse.Namespace) -> Tuple[Any, int]:
        return get_config_manager().config.to_dict(), 0

    def _handle_config_validate(self, args: argparse.Namespace) -> Tuple[Any, int]:
        errors = get_config_manager().validate()
        return {"valid": len(errors) == 0, "errors": errors}, 0 if not errors else 1


def main(argv: Optional[List[str]] = None) -> int:
    """CLI entry point."""
    cli = LedgerCLI()
    return cli.run(argv)


if __name__ == "__main__":
    sys.exit(main())
