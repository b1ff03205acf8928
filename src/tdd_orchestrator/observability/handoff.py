"""Handoff report rendering.

When an attention window closes the human gets two files in ``handoff_dir``:
``<window_id>.json`` (the canonical report) and ``<window_id>.md`` (the same
facts rendered for reading). Both are written atomically.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Final

from jinja2 import Environment, StrictUndefined

from tdd_orchestrator.domain.models import iso8601z
from tdd_orchestrator.utils.fs import atomic_write

if TYPE_CHECKING:
    from tdd_orchestrator.domain.models import HandoffReport

_MARKDOWN_TEMPLATE: Final[str] = """\
# Handoff: {{ report.window_id }}

- Closed: {{ closed_at }} ({{ report.close_reason.value }})
- Active time: {{ elapsed }} of {{ budget }} budget ({{ wall_clock }} wall clock)

## Completed ({{ report.completed | length }})
{% for item_id in report.completed %}
- {{ item_id }}
{% else %}
- none
{% endfor %}

## Pending escalations ({{ report.pending_escalations | length }})
{% for record in report.pending_escalations %}
### {{ record.work_item_id }}: {{ record.reason.value }}

- Phase: {{ record.phase.value }}
- Raised: {{ iso(record.created_at) }}
{% if record.snapshot_ref %}
- Snapshot: `{{ record.snapshot_ref }}`
{% endif %}
{% if record.detail %}
- Detail: {{ record.detail }}
{% endif %}
{% if record.recent_signals %}
- Recent signals:
{% for line in record.recent_signals %}
  - `{{ line }}`
{% endfor %}
{% endif %}
{% else %}
- none
{% endfor %}

## Aborted ({{ report.aborted | length }})
{% for item_id in report.aborted %}
- {{ item_id }}
{% else %}
- none
{% endfor %}

## Paused ({{ report.paused | length }})
{% for item_id in report.paused %}
- {{ item_id }}
{% else %}
- none
{% endfor %}

## Remaining queue ({{ report.remaining_queue | length }})
{% for item_id in report.remaining_queue %}
- {{ item_id }}
{% else %}
- none
{% endfor %}
"""


@dataclass(frozen=True, slots=True)
class HandoffArtifacts:
    json_path: Path
    markdown_path: Path


class HandoffRenderer:
    """Render and persist :class:`HandoffReport` objects."""

    def __init__(self, handoff_dir: Path | str) -> None:
        self._handoff_dir = Path(handoff_dir)
        self._environment = Environment(
            undefined=StrictUndefined,
            autoescape=False,
            trim_blocks=True,
            lstrip_blocks=True,
            keep_trailing_newline=True,
        )
        self._template = self._environment.from_string(_MARKDOWN_TEMPLATE)

    @property
    def handoff_dir(self) -> Path:
        return self._handoff_dir

    def render_markdown(self, report: HandoffReport) -> str:
        return self._template.render(
            report=report,
            closed_at=iso8601z(report.closed_at),
            elapsed=format_duration(report.elapsed_seconds),
            budget=format_duration(report.budget_seconds),
            wall_clock=format_duration(report.wall_clock_seconds),
            iso=iso8601z,
        )

    def write(self, report: HandoffReport) -> HandoffArtifacts:
        json_path = self._handoff_dir / f"{report.window_id}.json"
        markdown_path = self._handoff_dir / f"{report.window_id}.md"
        atomic_write(json_path, report.to_json() + "\n")
        atomic_write(markdown_path, self.render_markdown(report))
        return HandoffArtifacts(json_path=json_path, markdown_path=markdown_path)


def format_duration(seconds: float) -> str:
    """``5400.0`` -> ``"1h30m"``; sub-minute values keep their seconds."""

    total = max(int(round(seconds)), 0)
    hours, remainder = divmod(total, 3600)
    minutes, secs = divmod(remainder, 60)
    if hours:
        return f"{hours}h{minutes:02d}m"
    if minutes:
        return f"{minutes}m{secs:02d}s"
    return f"{secs}s"


__all__ = ["HandoffArtifacts", "HandoffRenderer", "format_duration"]
