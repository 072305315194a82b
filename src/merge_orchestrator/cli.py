"""Command-line interface router for merge-orchestrator."""

from __future__ import annotations

import argparse
import json
import sys
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any

import structlog

from merge_orchestrator.completion.templates import MessageTemplates, TemplateRenderError
from merge_orchestrator.config import (
    ConfigLoadError,
    ConfigValidationError,
    OrchestratorSettings,
    dump_effective_config,
    load_config,
)
from merge_orchestrator.observability.logging import LoggingConfig, configure_logging


@dataclass(frozen=True, slots=True)
class CLIError(RuntimeError):
    """Typed CLI failure with an explicit process exit code."""

    message: str
    exit_code: int = 1

    def __str__(self) -> str:
        return self.message


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    """Build the argparse command router."""

    parser = argparse.ArgumentParser(
        prog="merge-orchestrator",
        description=(
            "merge-orchestrator: readiness, merge and completion for reviewed change requests.\n\n"
            "Common workflows:\n"
            "  merge-orchestrator config             Show the effective configuration\n"
            "  merge-orchestrator check              Validate configuration and templates\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--config",
        dest="config_path",
        default=None,
        help="Path to TOML config (default: ./merge-orchestrator.toml if present).",
    )
    common.add_argument(
        "--profile",
        default=None,
        help="Optional config profile overlay name.",
    )
    common.add_argument(
        "--set",
        dest="overrides",
        action="append",
        default=[],
        metavar="SECTION.KEY=VALUE",
        help="Override one config value; VALUE is parsed as JSON when possible.",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    config_parser = subparsers.add_parser(
        "config",
        parents=[common],
        help="Show effective configuration (redacted JSON)",
        description=(
            "Print the effective config after merging defaults, file, env, profile\n"
            "and --set overrides. Secrets are redacted."
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    config_parser.set_defaults(handler=_cmd_config)

    check_parser = subparsers.add_parser(
        "check",
        parents=[common],
        help="Validate configuration and message templates",
        description="Load and validate the effective config; exit 2 on any issue.",
    )
    check_parser.add_argument("--json", action="store_true", help="Emit JSON output")
    check_parser.set_defaults(handler=_cmd_check)

    return parser


# ---------------------------------------------------------------------------
# Entrypoints
# ---------------------------------------------------------------------------


def run_cli(argv: Sequence[str] | None = None) -> int:
    """Parse argv, route to a command handler, and return process exit code."""

    parser = build_parser()
    namespace = parser.parse_args(list(argv) if argv is not None else None)
    handler = getattr(namespace, "handler", None)
    if not callable(handler):
        parser.print_help(sys.stderr)
        return 2

    try:
        result = handler(namespace)
    except CLIError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return exc.exit_code
    return int(result)


# ---------------------------------------------------------------------------
# Command handlers
# ---------------------------------------------------------------------------


def _cmd_config(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    print(dump_effective_config(config))
    return 0


def _cmd_check(args: argparse.Namespace) -> int:
    try:
        config = _load_effective_config(args)
    except CLIError as exc:
        if _flag(args, "json"):
            _emit_json({"command": "check", "valid": False, "issues": _issue_lines(exc)})
            return exc.exit_code
        raise

    configure_logging(LoggingConfig.from_config(config["observability"], stream=sys.stderr))
    logger = structlog.get_logger("merge_orchestrator.cli")

    settings = OrchestratorSettings.from_config(config)
    try:
        MessageTemplates(
            actor=settings.merge.actor,
            title_template=settings.merge.commit_title_template,
        )
    except TemplateRenderError as exc:
        raise CLIError(f"merge.commit_title_template: {exc}", exit_code=2) from exc

    enabled = [item.kind.value for item in settings.pipeline.actions if item.enabled]
    logger.info(
        "config_checked",
        profile=_optional_str(getattr(args, "profile", None)),
        strategy=settings.merge.strategy.value,
        actions=enabled,
    )
    payload: dict[str, object] = {
        "command": "check",
        "valid": True,
        "strategy": settings.merge.strategy.value,
        "actions": enabled,
        "scratch_root": settings.scratch_root.as_posix(),
    }
    if _flag(args, "json"):
        _emit_json(payload)
    else:
        print(f"config ok: strategy={payload['strategy']} actions={','.join(enabled) or '(none)'}")
    return 0


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _load_effective_config(args: argparse.Namespace) -> dict[str, Any]:
    config_path = _optional_str(getattr(args, "config_path", None))
    profile = _optional_str(getattr(args, "profile", None))
    overrides = _parse_overrides(getattr(args, "overrides", None) or [])

    try:
        return load_config(config_path, profile=profile, cli_overrides=overrides)
    except ConfigValidationError as exc:
        raise _ConfigCLIError(str(exc), exit_code=2, issues=exc.issues) from exc
    except ConfigLoadError as exc:
        raise CLIError(str(exc), exit_code=2) from exc


def _parse_overrides(raw_items: Sequence[str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for raw in raw_items:
        key, sep, value = raw.partition("=")
        key = key.strip()
        if not sep or not key:
            raise CLIError(f"invalid --set value {raw!r}; expected SECTION.KEY=VALUE", exit_code=2)
        try:
            overrides[key] = json.loads(value)
        except json.JSONDecodeError:
            overrides[key] = value
    return overrides


@dataclass(frozen=True, slots=True)
class _ConfigCLIError(CLIError):
    issues: tuple[Any, ...] = ()


def _issue_lines(exc: CLIError) -> list[dict[str, str]]:
    if isinstance(exc, _ConfigCLIError) and exc.issues:
        return [{"path": item.path, "message": item.message} for item in exc.issues]
    return [{"path": "<root>", "message": exc.message}]


def _emit_json(payload: Mapping[str, object]) -> None:
    """Emit a JSON payload to stdout with deterministic formatting."""

    print(json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False))


def _flag(args: argparse.Namespace, name: str) -> bool:
    return bool(getattr(args, name, False))


def _optional_str(value: object) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


__all__ = ["CLIError", "build_parser", "run_cli"]
