"""Process entrypoint: runs the CLI and maps every outcome onto ``ExitCode``."""

from __future__ import annotations

import sys
import traceback
from enum import IntEnum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterator, Sequence


class ExitCode(IntEnum):
    SUCCESS = 0
    CONFIG_ERROR = 2
    INTERNAL_ERROR = 4


# Environment problems the operator fixes the same way as a bad config.
_OPERATOR_OS_ERRORS = (FileNotFoundError, NotADirectoryError, PermissionError)


def cli_entrypoint(argv: Sequence[str] | None = None) -> int:
    """Run ``merge-orchestrator`` and return the process exit code.

    argparse exits (usage errors, ``--help``) are folded into the code
    contract. Config, load and template errors anywhere in the exception
    chain give ``CONFIG_ERROR`` with a one-line message. Anything else is a
    defect and gives ``INTERNAL_ERROR`` with a traceback.
    """

    from merge_orchestrator import cli

    try:
        return _normalize_exit_code(cli.run_cli(argv))
    except SystemExit as exc:
        return _normalize_exit_code(exc.code)
    except Exception as exc:  # noqa: BLE001 - last-resort boundary for the process
        if _is_operator_error(exc):
            _write_stderr(str(exc).strip() or type(exc).__name__)
            return int(ExitCode.CONFIG_ERROR)
        traceback.print_exception(type(exc), exc, exc.__traceback__, file=sys.stderr)
        return int(ExitCode.INTERNAL_ERROR)


def _normalize_exit_code(raw_code: object) -> int:
    if raw_code is None:
        return int(ExitCode.SUCCESS)
    if isinstance(raw_code, int):
        try:
            return int(ExitCode(raw_code))
        except ValueError:
            return int(ExitCode.INTERNAL_ERROR)
    message = str(raw_code).strip()
    if message:
        _write_stderr(message)
    return int(ExitCode.INTERNAL_ERROR)


def _is_operator_error(exc: BaseException) -> bool:
    from merge_orchestrator.completion.templates import TemplateRenderError
    from merge_orchestrator.config import ConfigLoadError, ConfigValidationError

    operator_errors = (ConfigLoadError, ConfigValidationError, TemplateRenderError, *_OPERATOR_OS_ERRORS)
    return any(isinstance(link, operator_errors) for link in _exception_chain(exc))


def _exception_chain(exc: BaseException) -> Iterator[BaseException]:
    seen: set[int] = set()
    link: BaseException | None = exc
    while link is not None and id(link) not in seen:
        seen.add(id(link))
        yield link
        if link.__cause__ is not None:
            link = link.__cause__
        elif not link.__suppress_context__:
            link = link.__context__
        else:
            link = None


def _write_stderr(message: str) -> None:
    sys.stderr.write(message.rstrip("\n") + "\n")


__all__ = ["ExitCode", "cli_entrypoint"]
