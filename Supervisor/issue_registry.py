"""Deduplicated issue registry.

One record per ``<bot_id>:<fingerprint>``. Records are never deleted;
they move between ``open`` and ``resolved`` as scans detect or clear the
condition behind them.
"""
from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
from typing import Any, Iterator

from Supervisor.rules import higher_severity

DEFAULT_EVIDENCE_LIMIT = 20


@dataclass
class IssueEvidence:
    run_ids: list[str] = field(default_factory=list)
    log_paths: list[str] = field(default_factory=list)


@dataclass
class Issue:
    """A persistent failure record."""

    issue_id: str
    bot_id: str
    fingerprint: str = ""
    status: str = "open"  # open | resolved
    severity: str = "P2"
    first_seen_ts: str | None = None
    last_seen_ts: str | None = None
    resolved_at: str | None = None
    consecutive_failures: int = 0
    last_alert_ts: str | None = None
    quiet_hours_suppressed_count: int = 0
    evidence: IssueEvidence = field(default_factory=IssueEvidence)
    summary: str = "Issue detected."

    @property
    def is_open(self) -> bool:
        return self.status == "open"

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> Issue:
        known = {f.name for f in fields(cls)}
        data = {k: v for k, v in raw.items() if k in known}
        ev = raw.get("evidence") or {}
        data["evidence"] = IssueEvidence(
            run_ids=[str(x) for x in ev.get("run_ids") or []],
            log_paths=[str(x) for x in ev.get("log_paths") or []],
        )
        data["consecutive_failures"] = int(data.get("consecutive_failures") or 0)
        data["quiet_hours_suppressed_count"] = int(
            data.get("quiet_hours_suppressed_count") or 0
        )
        return cls(**data)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def append_unique(items: list[str], value: Any, limit: int = DEFAULT_EVIDENCE_LIMIT) -> None:
    """Append *value* once, keeping only the most recent *limit* entries."""
    v = str(value or "").strip()
    if not v:
        return
    if v not in items:
        items.append(v)
    if len(items) > limit:
        del items[: len(items) - limit]


class IssueRegistry:
    """In-memory view of ``issues.json`` for one scan."""

    def __init__(
        self,
        issues: dict[str, Issue] | None = None,
        evidence_limit: int = DEFAULT_EVIDENCE_LIMIT,
    ) -> None:
        self._issues: dict[str, Issue] = issues or {}
        self.evidence_limit = evidence_limit

    # ------------------------------------------------------------------
    # Document conversion
    # ------------------------------------------------------------------

    @classmethod
    def from_document(
        cls, doc: dict[str, Any], evidence_limit: int = DEFAULT_EVIDENCE_LIMIT
    ) -> IssueRegistry:
        issues: dict[str, Issue] = {}
        for issue_id, raw in (doc.get("issues") or {}).items():
            if not isinstance(raw, dict):
                continue
            raw = {"issue_id": issue_id, "bot_id": "", **raw}
            issues[issue_id] = Issue.from_dict(raw)
        return cls(issues, evidence_limit)

    def to_document(self) -> dict[str, Any]:
        return {"issues": {k: v.to_dict() for k, v in self._issues.items()}}

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def __iter__(self) -> Iterator[Issue]:
        return iter(self._issues.values())

    def __len__(self) -> int:
        return len(self._issues)

    def get(self, issue_id: str) -> Issue | None:
        return self._issues.get(issue_id)

    def open_issues(self, bot_id: str | None = None) -> list[Issue]:
        return [
            i for i in self._issues.values()
            if i.is_open and (bot_id is None or i.bot_id == bot_id)
        ]

    def is_open(self, issue_id: str) -> bool:
        issue = self._issues.get(issue_id)
        return bool(issue and issue.is_open)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def touch_open(
        self,
        issue_id: str,
        bot_id: str,
        *,
        ts: str,
        severity: str,
        fingerprint: str = "",
        summary: str = "",
        run_id: str | None = None,
        log_path: str | None = None,
        increment_failure: bool = True,
    ) -> Issue:
        """Create or re-detect an issue and leave it open.

        Re-detecting an open issue keeps the higher of the stored and
        detected severity; re-opening a resolved one takes the detected
        severity.
        """
        issue = self._issues.get(issue_id)
        if issue is None:
            issue = Issue(
                issue_id=issue_id,
                bot_id=bot_id,
                fingerprint=fingerprint,
                severity=severity,
                first_seen_ts=ts,
                last_seen_ts=ts,
                summary=summary or "Issue detected.",
            )
            self._issues[issue_id] = issue
        elif issue.is_open:
            issue.severity = higher_severity(issue.severity, severity)
        else:
            issue.severity = severity

        issue.status = "open"
        issue.last_seen_ts = ts or issue.last_seen_ts
        issue.summary = summary or issue.summary
        issue.resolved_at = None
        if fingerprint:
            issue.fingerprint = fingerprint
        if increment_failure:
            issue.consecutive_failures += 1
        append_unique(issue.evidence.run_ids, run_id, self.evidence_limit)
        append_unique(issue.evidence.log_paths, log_path, self.evidence_limit)
        return issue

    def resolve(self, issue_id: str, ts: str, summary: str = "") -> Issue | None:
        """Resolve *issue_id* if it is open; unknown ids are a no-op."""
        issue = self._issues.get(issue_id)
        if issue is None or not issue.is_open:
            return issue
        self._close(issue, ts, summary)
        return issue

    def resolve_for_bot(self, bot_id: str, ts: str, summary: str = "") -> list[Issue]:
        """Resolve every open issue belonging to *bot_id*."""
        closed = self.open_issues(bot_id)
        for issue in closed:
            self._close(issue, ts, summary)
        return closed

    @staticmethod
    def _close(issue: Issue, ts: str, summary: str) -> None:
        issue.status = "resolved"
        issue.last_seen_ts = ts or issue.last_seen_ts
        issue.summary = summary or issue.summary
        issue.resolved_at = ts
        issue.consecutive_failures = 0
