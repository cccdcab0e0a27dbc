# insights_engine/notifications/messages.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List

from insights_engine.alerts.constants import DIGEST_MAX_PER_TYPE, AlertSeverity, AlertType
from insights_engine.models import Alert, Branch


@dataclass
class Message:
    kind: str
    subject: str
    body: str
    short: str
    data: Dict[str, Any] = field(default_factory=dict)


def alert_message(alert: Alert, branch: Branch, app_url: str) -> Message:
    severity = alert.severity_enum
    link = f"{app_url.rstrip('/')}/branches/{branch.id}/alerts/{alert.id}"
    lines = [
        f"{severity.label} alert for {branch.name}",
        "",
        alert.title,
        alert.description,
    ]
    recs = alert.recommendations or []
    if recs:
        lines += ["", "Suggested next steps:"]
        lines += [f"  • {r['action']}: {r['description']}" for r in recs[:3]]
    lines += ["", f"View alert: {link}"]
    return Message(
        kind="alert",
        subject=f"[{severity.label.upper()}] {alert.title}",
        body="\n".join(lines),
        short=f"{branch.name}: {alert.title}"[:160],
        data={
            "alert_id": alert.id,
            "alert_type": alert.alert_type,
            "severity": alert.severity,
            "color": severity.color,
            "url": link,
        },
    )


def digest_subject(branch: Branch, alerts: List[Alert]) -> str:
    critical = sum(1 for a in alerts if a.severity == AlertSeverity.CRITICAL.value)
    high = sum(1 for a in alerts if a.severity == AlertSeverity.HIGH.value)
    if critical:
        return f"[CRITICAL] Daily AI Digest: {critical} critical alert(s) for {branch.name}"
    if high:
        return f"Daily AI Digest: {high} high priority alert(s) for {branch.name}"
    return f"Daily AI Digest: {len(alerts)} alert(s) for {branch.name}"


def digest_message(branch: Branch, alerts: List[Alert], hours_back: int, app_url: str) -> Message:
    """`alerts` arrive ordered severity desc, then newest first."""
    counts = {s.value: 0 for s in AlertSeverity}
    grouped: Dict[str, List[Alert]] = {}
    for a in alerts:
        counts[a.severity] = counts.get(a.severity, 0) + 1
        grouped.setdefault(a.alert_type, []).append(a)

    summary = ", ".join(f"{n} {sev}" for sev, n in counts.items() if n)
    lines = [
        f"{len(alerts)} alert(s) for {branch.name} in the last {hours_back} hours ({summary}).",
    ]
    for type_value, items in grouped.items():
        lines += ["", f"{AlertType(type_value).label} ({len(items)})"]
        for a in items[:DIGEST_MAX_PER_TYPE]:
            lines.append(f"  • [{a.severity_enum.label}] {a.title}")
        if len(items) > DIGEST_MAX_PER_TYPE:
            lines.append(f"  ...and {len(items) - DIGEST_MAX_PER_TYPE} more")
    link = f"{app_url.rstrip('/')}/branches/{branch.id}/alerts"
    lines += ["", f"View all alerts: {link}"]

    return Message(
        kind="digest",
        subject=digest_subject(branch, alerts),
        body="\n".join(lines),
        short=f"{branch.name}: {len(alerts)} new alert(s) ({summary})"[:160],
        data={
            "branch_id": branch.id,
            "hours_back": hours_back,
            "total": len(alerts),
            "by_severity": counts,
            "alert_ids": [a.id for a in alerts],
            "url": link,
        },
    )


def summary_message(branch: Branch, subject: str, body: str, data: Dict[str, Any] = None) -> Message:
    return Message(
        kind="summary",
        subject=f"{subject} ({branch.name})",
        body=body,
        short=f"{branch.name}: {subject}"[:160],
        data=data or {},
    )
