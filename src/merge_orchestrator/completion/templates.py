"""
merge-orchestrator — message templates.

File: src/merge_orchestrator/completion/templates.py

Purpose
- Render every human-facing text the completion flow produces: the merge
  commit title and body, the work-item closing comment, the merge
  notification, and the rollback notice.

Functional requirements
- Rendering is deterministic: same inputs, byte-identical output.
- Templates may only reference whitelisted variables; unknown or missing
  variables fail loudly with ``TemplateRenderError``.
- The acting identity always comes from configuration.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import TYPE_CHECKING, Final

from jinja2 import Environment, StrictUndefined, Template, TemplateError, meta

if TYPE_CHECKING:
    from collections.abc import Sequence

    from merge_orchestrator.domain.models import MergeCandidate, MergeOutcome, MergeStrategy

DEFAULT_TITLE_TEMPLATE: Final[str] = "{{ title }} (#{{ candidate_id }})"

COMMIT_BODY_TEMPLATE: Final[str] = """\
{% if description %}{{ description }}

{% endif %}{% if work_item_id %}Closes #{{ work_item_id }}

{% endif %}Merge-Strategy: {{ strategy }}
Source-Branch: {{ source_branch }}
Merged-By: {{ actor }}
"""

CLOSING_COMMENT_TEMPLATE: Final[str] = """\
Resolved by #{{ candidate_id }} ({{ title }}).

- Merge commit: `{{ merge_commit_sha }}`
- Strategy: {{ strategy }}
- Changes: {{ files_changed }} file(s), +{{ additions }}/-{{ deletions }}, {{ commits }} commit(s)

Closed automatically by {{ actor }}.
"""

NOTIFICATION_TEMPLATE: Final[str] = """\
Merged #{{ candidate_id }} "{{ title }}" into {{ target_branch }} \
({{ short_sha }}, {{ strategy }}){% if work_item_id %}; closes #{{ work_item_id }}{% endif %}.
"""

ROLLBACK_NOTICE_TEMPLATE: Final[str] = """\
Post-merge completion for #{{ candidate_id }} "{{ title }}" failed and was rolled back.
The merge commit {{ short_sha }} on {{ target_branch }} was kept.
{% for reason in reasons %}
- {{ reason }}
{%- endfor %}

Reported by {{ actor }}.
"""

REOPEN_COMMENT_TEMPLATE: Final[str] = """\
Reopened by {{ actor }}: post-merge verification for #{{ candidate_id }} failed.
{% for reason in reasons %}
- {{ reason }}
{%- endfor %}
"""

TITLE_VARIABLES: Final[frozenset[str]] = frozenset(
    {"title", "candidate_id", "source_branch", "target_branch", "work_item_id", "strategy", "actor"}
)
_MAX_TITLE_CHARS: Final[int] = 256


class TemplateRenderError(ValueError):
    """Raised when a template is invalid or references unknown variables."""


class MessageTemplates:
    """Compiled message templates bound to one acting identity."""

    def __init__(self, *, actor: str, title_template: str = DEFAULT_TITLE_TEMPLATE) -> None:
        if not isinstance(actor, str) or not actor.strip():
            raise TemplateRenderError("actor must be a non-empty string")
        self._actor = actor.strip()
        self._environment = Environment(
            undefined=StrictUndefined,
            autoescape=False,
            trim_blocks=False,
            lstrip_blocks=False,
            newline_sequence="\n",
            keep_trailing_newline=True,
        )
        self._title_source = title_template
        self._check_variables(title_template, TITLE_VARIABLES, name="commit title")
        self._title = self._compile(title_template, name="commit title")
        self._body = self._compile(COMMIT_BODY_TEMPLATE, name="commit body")
        self._closing = self._compile(CLOSING_COMMENT_TEMPLATE, name="closing comment")
        self._notification = self._compile(NOTIFICATION_TEMPLATE, name="notification")
        self._rollback = self._compile(ROLLBACK_NOTICE_TEMPLATE, name="rollback notice")
        self._reopen = self._compile(REOPEN_COMMENT_TEMPLATE, name="reopen comment")

    @property
    def actor(self) -> str:
        return self._actor

    def commit_title(self, candidate: MergeCandidate, strategy: MergeStrategy) -> str:
        rendered = self._render(self._title, _candidate_context(candidate, strategy, self._actor))
        title = " ".join(rendered.split())
        if not title:
            raise TemplateRenderError("commit title rendered empty")
        return title[:_MAX_TITLE_CHARS]

    def commit_message(self, candidate: MergeCandidate, strategy: MergeStrategy) -> str:
        context = _candidate_context(candidate, strategy, self._actor)
        context["description"] = candidate.description.strip()
        return self._render(self._body, context)

    def closing_comment(self, candidate: MergeCandidate, outcome: MergeOutcome) -> str:
        return self._render(self._closing, _outcome_context(candidate, outcome, self._actor))

    def notification(self, candidate: MergeCandidate, outcome: MergeOutcome) -> str:
        return self._render(self._notification, _outcome_context(candidate, outcome, self._actor))

    def rollback_notice(
        self, candidate: MergeCandidate, outcome: MergeOutcome, reasons: Sequence[str]
    ) -> str:
        context = _outcome_context(candidate, outcome, self._actor)
        context["reasons"] = list(reasons)
        return self._render(self._rollback, context)

    def reopen_comment(self, candidate: MergeCandidate, reasons: Sequence[str]) -> str:
        context = _candidate_context(candidate, None, self._actor)
        context["reasons"] = list(reasons)
        return self._render(self._reopen, context)

    def _check_variables(self, source: str, allowed: frozenset[str], *, name: str) -> None:
        try:
            declared = meta.find_undeclared_variables(self._environment.parse(source))
        except TemplateError as exc:
            raise TemplateRenderError(f"{name} template is invalid: {exc}") from exc
        unexpected = sorted(set(declared) - allowed)
        if unexpected:
            raise TemplateRenderError(
                f"{name} template uses unknown variable(s): {', '.join(unexpected)}"
            )

    def _compile(self, source: str, *, name: str) -> Template:
        try:
            return self._environment.from_string(source)
        except TemplateError as exc:
            raise TemplateRenderError(f"{name} template is invalid: {exc}") from exc

    @staticmethod
    def _render(template: Template, context: Mapping[str, object]) -> str:
        try:
            return template.render(**context)
        except TemplateError as exc:
            raise TemplateRenderError(f"template rendering failed: {exc}") from exc


def _candidate_context(
    candidate: MergeCandidate, strategy: MergeStrategy | None, actor: str
) -> dict[str, object]:
    return {
        "title": candidate.title,
        "candidate_id": candidate.candidate_id,
        "source_branch": candidate.source_branch,
        "target_branch": candidate.target_branch,
        "work_item_id": candidate.work_item_id or "",
        "strategy": strategy.value if strategy is not None else "",
        "actor": actor,
    }


def _outcome_context(
    candidate: MergeCandidate, outcome: MergeOutcome, actor: str
) -> dict[str, object]:
    context = _candidate_context(candidate, outcome.strategy, actor)
    sha = outcome.merge_commit_sha or ""
    context.update(
        {
            "merge_commit_sha": sha,
            "short_sha": sha[:12],
            "files_changed": outcome.stats.files_changed,
            "additions": outcome.stats.additions,
            "deletions": outcome.stats.deletions,
            "commits": outcome.stats.commits,
        }
    )
    return context


__all__ = [
    "DEFAULT_TITLE_TEMPLATE",
    "TITLE_VARIABLES",
    "MessageTemplates",
    "TemplateRenderError",
]
