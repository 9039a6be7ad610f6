"""Audit trail writer and the security reporting built on it.

Writers never raise. A record that cannot be stored is emitted on the
``learnity.audit.fallback`` log channel instead, so an audit outage cannot turn
an authorization decision into an error or flip its outcome.

Suspicious-pattern rules are plain functions with the signature
``rule(records, config, time_range) -> list[SuspiciousPattern]``. ``records``
may reach back before ``time_range`` so rules that need history can see it;
each rule filters to the range itself. Rules do not interact.
"""

from __future__ import annotations

import hashlib
import re
from collections import Counter, defaultdict, deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

from learnity.config import Settings
from learnity.logging import get_logger
from learnity.service.errors import ValidationError
from learnity.storage.common import AuthStore, ensure_utc, normalize_ip
from learnity.storage.models import AuditEventType, AuditRecord, utcnow

logger = get_logger(__name__)
fallback_logger = get_logger("learnity.audit.fallback")

ACTION_LOGIN = "login"
ACTION_LOGOUT = "logout"
ACTION_AUTHORIZE = "authorize"
ACTION_REFRESH = "token_refresh"
ACTION_REGISTER = "register"
ACTION_BLACKLISTED_REUSE = "blacklisted_token_reuse"

DENIAL_CODES = frozenset({"insufficient_role", "insufficient_permission"})
BOT_USER_AGENT_RE = re.compile(
    r"bot|crawler|spider|scraper|curl|wget|python-requests|headless", re.IGNORECASE
)
MAX_PAGE_SIZE = 100


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {Severity.LOW: 0, Severity.MEDIUM: 1, Severity.HIGH: 2, Severity.CRITICAL: 3}


@dataclass(frozen=True)
class TimeRange:
    """Half-open interval ``[start, end)``."""

    start: datetime
    end: datetime

    def __post_init__(self) -> None:
        object.__setattr__(self, "start", ensure_utc(self.start))
        object.__setattr__(self, "end", ensure_utc(self.end))
        if self.start >= self.end:
            raise ValidationError("time range start must be before end")

    @classmethod
    def last(cls, *, minutes: int = 0, hours: int = 0, days: int = 0, now: Optional[datetime] = None) -> "TimeRange":
        end = now or utcnow()
        return cls(end - timedelta(minutes=minutes, hours=hours, days=days), end)

    def contains(self, moment: datetime) -> bool:
        return self.start <= moment < self.end


@dataclass
class AuthEvent:
    action: str
    success: bool
    subject_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    device_fingerprint: Optional[str] = None
    target_resource: Optional[str] = None
    error_message: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class AdminAction:
    actor_id: str
    action: str
    target_resource: str
    old_values: Optional[Dict[str, Any]] = None
    new_values: Optional[Dict[str, Any]] = None
    success: bool = True
    error_message: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


@dataclass
class DetectionConfig:
    failed_login_threshold: int = 5
    failed_login_window: timedelta = timedelta(minutes=10)
    ip_failure_threshold: int = 10
    distinct_ip_threshold: int = 5
    distinct_ip_window: timedelta = timedelta(minutes=60)
    denial_threshold: int = 10
    off_hours_history: timedelta = timedelta(days=30)
    off_hours_min_history: int = 5

    @classmethod
    def from_settings(cls, settings: Settings) -> "DetectionConfig":
        return cls(
            failed_login_threshold=settings.suspicious_failed_login_threshold,
            failed_login_window=timedelta(minutes=settings.suspicious_failed_login_window_minutes),
            ip_failure_threshold=settings.suspicious_ip_failure_threshold,
            distinct_ip_threshold=settings.suspicious_distinct_ip_threshold,
            distinct_ip_window=timedelta(minutes=settings.suspicious_distinct_ip_window_minutes),
            denial_threshold=settings.suspicious_denial_threshold,
            off_hours_history=timedelta(days=settings.off_hours_history_days),
            off_hours_min_history=settings.off_hours_min_history,
        )

    @property
    def lookback(self) -> timedelta:
        return max(self.off_hours_history, self.failed_login_window, self.distinct_ip_window)


@dataclass
class SuspiciousPattern:
    type: str
    description: str
    severity: Severity
    time_range: TimeRange
    event_count: int
    subject_ids: List[str] = field(default_factory=list)
    ip_addresses: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def fingerprint(self) -> str:
        # Same rule hitting the same subjects/IPs keeps the same id across checks
        key = "|".join(
            [self.type, ",".join(sorted(self.subject_ids)), ",".join(sorted(self.ip_addresses))]
        )
        return hashlib.sha256(key.encode()).hexdigest()[:16]


@dataclass
class Alert:
    id: str
    type: str
    severity: Severity
    title: str
    description: str
    created_at: datetime
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class IpAddressStats:
    ip_address: str
    count: int
    success_rate: float
    last_seen: datetime


@dataclass
class UserAgentStats:
    user_agent: str
    count: int
    unique_subjects: int
    last_seen: datetime


@dataclass
class HourlyStats:
    date: str
    hour: int
    total_events: int
    successful_events: int
    failed_events: int


@dataclass
class FailureReasonStats:
    reason: str
    count: int
    percentage: float


@dataclass
class AuditSummary:
    time_range: TimeRange
    total_events: int
    successful_logins: int
    failed_logins: int
    logouts: int
    registrations: int
    permission_denials: int
    security_events: int
    admin_actions: int
    top_ip_addresses: List[IpAddressStats]
    top_user_agents: List[UserAgentStats]
    events_by_hour: List[HourlyStats]


@dataclass
class FailedLoginAnalysis:
    time_range: TimeRange
    total_failed_logins: int
    unique_ip_addresses: int
    unique_subjects: int
    top_failure_reasons: List[FailureReasonStats]
    time_distribution: List[HourlyStats]
    ip_address_analysis: List[IpAddressStats]


@dataclass
class ThreatSummary:
    type: str
    count: int
    severity: Severity


@dataclass
class SecurityReport:
    time_range: TimeRange
    summary: AuditSummary
    suspicious_patterns: List[SuspiciousPattern]
    top_threats: List[ThreatSummary]
    recommendations: List[str]
    generated_at: datetime


@dataclass
class AuditLogPage:
    records: List[AuditRecord]
    total: int
    page: int
    page_size: int

    @property
    def has_more(self) -> bool:
        return self.page * self.page_size < self.total


def _in_range(records: Iterable[AuditRecord], time_range: TimeRange) -> List[AuditRecord]:
    return [r for r in records if time_range.contains(r.timestamp)]


def _failed_logins(records: Iterable[AuditRecord]) -> List[AuditRecord]:
    return [r for r in records if r.action == ACTION_LOGIN and not r.success]


def _max_in_window(timestamps: Sequence[datetime], window: timedelta) -> int:
    best = 0
    left = 0
    for right, moment in enumerate(timestamps):
        while moment - timestamps[left] >= window:
            left += 1
        best = max(best, right - left + 1)
    return best


def failed_logins_per_subject(
    records: Sequence[AuditRecord], config: DetectionConfig, time_range: TimeRange
) -> List[SuspiciousPattern]:
    by_subject: Dict[str, List[AuditRecord]] = defaultdict(list)
    for record in _failed_logins(_in_range(records, time_range)):
        if record.actor_id:
            by_subject[record.actor_id].append(record)
    patterns = []
    threshold = config.failed_login_threshold
    for subject_id, failures in by_subject.items():
        failures.sort(key=lambda r: r.timestamp)
        peak = _max_in_window([r.timestamp for r in failures], config.failed_login_window)
        if peak < threshold:
            continue
        if peak >= threshold * 5:
            severity = Severity.CRITICAL
        elif peak >= threshold * 2:
            severity = Severity.HIGH
        else:
            severity = Severity.MEDIUM
        window_minutes = int(config.failed_login_window.total_seconds() // 60)
        patterns.append(
            SuspiciousPattern(
                type="multiple_failed_logins",
                description=(
                    f"{peak} failed logins for one account within {window_minutes} minutes"
                ),
                severity=severity,
                time_range=time_range,
                event_count=len(failures),
                subject_ids=[subject_id],
                ip_addresses=sorted({r.ip_address for r in failures if r.ip_address}),
                metadata={"peak_in_window": peak, "window_minutes": window_minutes},
            )
        )
    return patterns


def failed_logins_per_ip(
    records: Sequence[AuditRecord], config: DetectionConfig, time_range: TimeRange
) -> List[SuspiciousPattern]:
    by_ip: Dict[str, List[AuditRecord]] = defaultdict(list)
    for record in _failed_logins(_in_range(records, time_range)):
        if record.ip_address:
            by_ip[record.ip_address].append(record)
    patterns = []
    for ip, failures in by_ip.items():
        count = len(failures)
        if count <= config.ip_failure_threshold:
            continue
        if count > 50:
            severity = Severity.CRITICAL
        elif count > 25:
            severity = Severity.HIGH
        else:
            severity = Severity.MEDIUM
        patterns.append(
            SuspiciousPattern(
                type="brute_force_attack",
                description=f"{count} failed logins from a single IP address",
                severity=severity,
                time_range=time_range,
                event_count=count,
                subject_ids=sorted({r.actor_id for r in failures if r.actor_id}),
                ip_addresses=[ip],
            )
        )
    return patterns


def distinct_ips_per_subject(
    records: Sequence[AuditRecord], config: DetectionConfig, time_range: TimeRange
) -> List[SuspiciousPattern]:
    by_subject: Dict[str, List[AuditRecord]] = defaultdict(list)
    for record in _in_range(records, time_range):
        if record.action == ACTION_LOGIN and record.actor_id and record.ip_address:
            by_subject[record.actor_id].append(record)
    patterns = []
    for subject_id, logins in by_subject.items():
        logins.sort(key=lambda r: r.timestamp)
        window: deque = deque()
        seen: Counter = Counter()
        peak_ips: set = set()
        for record in logins:
            window.append(record)
            seen[record.ip_address] += 1
            while record.timestamp - window[0].timestamp >= config.distinct_ip_window:
                dropped = window.popleft()
                seen[dropped.ip_address] -= 1
                if not seen[dropped.ip_address]:
                    del seen[dropped.ip_address]
            if len(seen) > len(peak_ips):
                peak_ips = set(seen)
        if len(peak_ips) < config.distinct_ip_threshold:
            continue
        patterns.append(
            SuspiciousPattern(
                type="unusual_ip_activity",
                description=f"Account used from {len(peak_ips)} IP addresses in a short window",
                severity=Severity.MEDIUM,
                time_range=time_range,
                event_count=len(logins),
                subject_ids=[subject_id],
                ip_addresses=sorted(peak_ips),
                metadata={
                    "window_minutes": int(config.distinct_ip_window.total_seconds() // 60)
                },
            )
        )
    return patterns


def off_hours_login(
    records: Sequence[AuditRecord], config: DetectionConfig, time_range: TimeRange
) -> List[SuspiciousPattern]:
    history_start = time_range.start - config.off_hours_history
    history: Dict[str, List[int]] = defaultdict(list)
    current: Dict[str, List[AuditRecord]] = defaultdict(list)
    for record in records:
        if record.action != ACTION_LOGIN or not record.success or not record.actor_id:
            continue
        if history_start <= record.timestamp < time_range.start:
            history[record.actor_id].append(record.timestamp.hour)
        elif time_range.contains(record.timestamp):
            current[record.actor_id].append(record)
    patterns = []
    for subject_id, logins in current.items():
        hours = history.get(subject_id, [])
        if len(hours) < config.off_hours_min_history:
            continue
        band = {(h + delta) % 24 for h in hours for delta in (-1, 0, 1)}
        unusual = [r for r in logins if r.timestamp.hour not in band]
        if not unusual:
            continue
        patterns.append(
            SuspiciousPattern(
                type="off_hours_login",
                description="Login outside the account's usual hours",
                severity=Severity.LOW,
                time_range=time_range,
                event_count=len(unusual),
                subject_ids=[subject_id],
                ip_addresses=sorted({r.ip_address for r in unusual if r.ip_address}),
                metadata={
                    "usual_hours": sorted(set(hours)),
                    "login_hours": sorted({r.timestamp.hour for r in unusual}),
                },
            )
        )
    return patterns


def bot_user_agent(
    records: Sequence[AuditRecord], config: DetectionConfig, time_range: TimeRange
) -> List[SuspiciousPattern]:
    by_agent: Dict[str, List[AuditRecord]] = defaultdict(list)
    for record in _in_range(records, time_range):
        if record.type == AuditEventType.AUTH_EVENT and record.user_agent:
            if BOT_USER_AGENT_RE.search(record.user_agent):
                by_agent[record.user_agent].append(record)
    return [
        SuspiciousPattern(
            type="bot_activity",
            description="Automated client detected on authentication endpoints",
            severity=Severity.MEDIUM,
            time_range=time_range,
            event_count=len(matches),
            subject_ids=sorted({r.actor_id for r in matches if r.actor_id}),
            ip_addresses=sorted({r.ip_address for r in matches if r.ip_address}),
            metadata={"user_agent": agent},
        )
        for agent, matches in by_agent.items()
    ]


def repeated_permission_denials(
    records: Sequence[AuditRecord], config: DetectionConfig, time_range: TimeRange
) -> List[SuspiciousPattern]:
    by_subject: Dict[str, List[AuditRecord]] = defaultdict(list)
    for record in _in_range(records, time_range):
        if (
            record.action == ACTION_AUTHORIZE
            and not record.success
            and record.error_message in DENIAL_CODES
            and record.actor_id
        ):
            by_subject[record.actor_id].append(record)
    return [
        SuspiciousPattern(
            type="repeated_permission_denials",
            description=f"{len(denials)} denied access attempts by one account",
            severity=Severity.MEDIUM,
            time_range=time_range,
            event_count=len(denials),
            subject_ids=[subject_id],
            ip_addresses=sorted({r.ip_address for r in denials if r.ip_address}),
            metadata={"routes": sorted({r.target_resource for r in denials if r.target_resource})},
        )
        for subject_id, denials in by_subject.items()
        if len(denials) >= config.denial_threshold
    ]


def blacklisted_token_reuse(
    records: Sequence[AuditRecord], config: DetectionConfig, time_range: TimeRange
) -> List[SuspiciousPattern]:
    by_subject: Dict[str, List[AuditRecord]] = defaultdict(list)
    for record in _in_range(records, time_range):
        if record.action == ACTION_BLACKLISTED_REUSE:
            by_subject[record.actor_id or "unknown"].append(record)
    return [
        SuspiciousPattern(
            type="blacklisted_token_reuse",
            description="A revoked token was presented again",
            severity=Severity.HIGH,
            time_range=time_range,
            event_count=len(hits),
            subject_ids=[] if subject_id == "unknown" else [subject_id],
            ip_addresses=sorted({r.ip_address for r in hits if r.ip_address}),
        )
        for subject_id, hits in by_subject.items()
    ]


PatternRule = Callable[[Sequence[AuditRecord], DetectionConfig, TimeRange], List[SuspiciousPattern]]

DEFAULT_RULES: Sequence[PatternRule] = (
    failed_logins_per_subject,
    failed_logins_per_ip,
    distinct_ips_per_subject,
    off_hours_login,
    bot_user_agent,
    repeated_permission_denials,
    blacklisted_token_reuse,
)


def _ip_stats(records: Iterable[AuditRecord], limit: int = 10) -> List[IpAddressStats]:
    grouped: Dict[str, List[AuditRecord]] = defaultdict(list)
    for record in records:
        if record.ip_address:
            grouped[record.ip_address].append(record)
    stats = [
        IpAddressStats(
            ip_address=ip,
            count=len(items),
            success_rate=round(sum(1 for r in items if r.success) / len(items) * 100, 2),
            last_seen=max(r.timestamp for r in items),
        )
        for ip, items in grouped.items()
    ]
    stats.sort(key=lambda s: (-s.count, s.ip_address))
    return stats[:limit]


def _user_agent_stats(records: Iterable[AuditRecord], limit: int = 10) -> List[UserAgentStats]:
    grouped: Dict[str, List[AuditRecord]] = defaultdict(list)
    for record in records:
        if record.user_agent:
            grouped[record.user_agent].append(record)
    stats = [
        UserAgentStats(
            user_agent=agent,
            count=len(items),
            unique_subjects=len({r.actor_id for r in items if r.actor_id}),
            last_seen=max(r.timestamp for r in items),
        )
        for agent, items in grouped.items()
    ]
    stats.sort(key=lambda s: (-s.count, s.user_agent))
    return stats[:limit]


def _hourly(records: Iterable[AuditRecord]) -> List[HourlyStats]:
    buckets: Dict[tuple, List[int]] = defaultdict(lambda: [0, 0])
    for record in records:
        bucket = buckets[(record.timestamp.date().isoformat(), record.timestamp.hour)]
        bucket[0 if record.success else 1] += 1
    return [
        HourlyStats(
            date=day,
            hour=hour,
            total_events=ok + failed,
            successful_events=ok,
            failed_events=failed,
        )
        for (day, hour), (ok, failed) in sorted(buckets.items())
    ]


def _is_security_event(record: AuditRecord) -> bool:
    return bool(record.new_values and record.new_values.get("security"))


class AuditLogger:
    def __init__(
        self,
        store: AuthStore,
        *,
        config: Optional[DetectionConfig] = None,
        alert_window: timedelta = timedelta(minutes=60),
        rules: Sequence[PatternRule] = DEFAULT_RULES,
    ) -> None:
        self.store = store
        self.config = config or DetectionConfig()
        self.alert_window = alert_window
        self.rules = tuple(rules)

    # writers
    def _append(self, record: AuditRecord) -> None:
        try:
            self.store.append_audit_record(record)
        except Exception as exc:
            fallback_logger.error(
                "audit_record_write_failed",
                error=str(exc),
                audit_type=record.type.value,
                audit_action=record.action,
                success=record.success,
                actor_id=record.actor_id,
                target_resource=record.target_resource,
                error_message=record.error_message,
            )

    def log_auth_event(self, event: AuthEvent) -> None:
        try:
            record = AuditRecord.new(
                AuditEventType.AUTH_EVENT,
                event.action,
                success=event.success,
                actor_id=event.subject_id,
                target_resource=event.target_resource,
                ip_address=normalize_ip(event.ip_address),
                user_agent=event.user_agent,
                device_fingerprint=event.device_fingerprint,
                new_values=dict(event.metadata) or None,
                error_message=event.error_message,
            )
        except Exception as exc:
            fallback_logger.error("audit_event_invalid", error=str(exc), audit_action=event.action)
            return
        self._append(record)

    def log_admin_action(self, action: AdminAction) -> None:
        try:
            record = AuditRecord.new(
                AuditEventType.ADMIN_ACTION,
                action.action,
                success=action.success,
                actor_id=action.actor_id,
                target_resource=action.target_resource,
                ip_address=normalize_ip(action.ip_address),
                user_agent=action.user_agent,
                old_values=action.old_values,
                new_values=action.new_values,
                error_message=action.error_message,
            )
        except Exception as exc:
            fallback_logger.error("audit_action_invalid", error=str(exc), audit_action=action.action)
            return
        self._append(record)

    def log_security_event(
        self,
        action: str,
        *,
        subject_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        target_resource: Optional[str] = None,
        **metadata: Any,
    ) -> None:
        logger.warning(
            "security_event", security_action=action, subject_id=subject_id, ip_address=ip_address
        )
        self.log_auth_event(
            AuthEvent(
                action=action,
                success=False,
                subject_id=subject_id,
                ip_address=ip_address,
                user_agent=user_agent,
                target_resource=target_resource,
                error_message=action,
                metadata={"security": True, **metadata},
            )
        )

    def log_session_event(
        self,
        action: str,
        *,
        subject_id: Optional[str],
        session_id: Optional[str] = None,
        reason: Optional[str] = None,
        **metadata: Any,
    ) -> None:
        self.log_auth_event(
            AuthEvent(
                action=action,
                success=True,
                subject_id=subject_id,
                target_resource=f"session:{session_id}" if session_id else None,
                metadata={"reason": reason, **metadata} if reason else dict(metadata),
            )
        )

    # queries
    def _records(self, time_range: TimeRange) -> List[AuditRecord]:
        return self.store.list_audit_records(start=time_range.start, end=time_range.end)

    def get_audit_logs(
        self,
        *,
        page: int = 1,
        page_size: int = 50,
        **filters: Any,
    ) -> AuditLogPage:
        if page < 1:
            raise ValidationError("page must be >= 1")
        if page_size < 1 or page_size > MAX_PAGE_SIZE:
            raise ValidationError(f"page_size must be between 1 and {MAX_PAGE_SIZE}")
        filters = {k: v for k, v in filters.items() if v is not None}
        for bound in ("start", "end"):
            if bound in filters:
                filters[bound] = ensure_utc(filters[bound])
        total = self.store.count_audit_records(**filters)
        records = self.store.list_audit_records(
            offset=(page - 1) * page_size, limit=page_size, **filters
        )
        return AuditLogPage(records=records, total=total, page=page, page_size=page_size)

    def get_audit_summary(self, time_range: TimeRange) -> AuditSummary:
        records = self._records(time_range)
        logins = [r for r in records if r.action == ACTION_LOGIN]
        return AuditSummary(
            time_range=time_range,
            total_events=len(records),
            successful_logins=sum(1 for r in logins if r.success),
            failed_logins=sum(1 for r in logins if not r.success),
            logouts=sum(1 for r in records if r.action == ACTION_LOGOUT and r.success),
            registrations=sum(1 for r in records if r.action == ACTION_REGISTER and r.success),
            permission_denials=sum(
                1
                for r in records
                if r.action == ACTION_AUTHORIZE and not r.success and r.error_message in DENIAL_CODES
            ),
            security_events=sum(1 for r in records if _is_security_event(r)),
            admin_actions=sum(1 for r in records if r.type == AuditEventType.ADMIN_ACTION),
            top_ip_addresses=_ip_stats(records),
            top_user_agents=_user_agent_stats(records),
            events_by_hour=_hourly(records),
        )

    def detect_suspicious_patterns(self, time_range: TimeRange) -> List[SuspiciousPattern]:
        records = self.store.list_audit_records(
            start=time_range.start - self.config.lookback, end=time_range.end
        )
        records.sort(key=lambda r: r.timestamp)
        patterns: List[SuspiciousPattern] = []
        for rule in self.rules:
            patterns.extend(rule(records, self.config, time_range))
        if patterns:
            logger.info(
                "suspicious_patterns_detected",
                count=len(patterns),
                types=sorted({p.type for p in patterns}),
            )
        return patterns

    def check_for_alerts(self, *, now: Optional[datetime] = None) -> List[Alert]:
        now = now or utcnow()
        time_range = TimeRange(now - self.alert_window, now)
        alerts = []
        for pattern in self.detect_suspicious_patterns(time_range):
            if pattern.severity.rank < Severity.HIGH.rank:
                continue
            alerts.append(
                Alert(
                    id=pattern.fingerprint,
                    type=pattern.type,
                    severity=pattern.severity,
                    title=pattern.type.replace("_", " ").capitalize(),
                    description=pattern.description,
                    created_at=now,
                    metadata={
                        "subject_ids": pattern.subject_ids,
                        "ip_addresses": pattern.ip_addresses,
                        "event_count": pattern.event_count,
                        **pattern.metadata,
                    },
                )
            )
        for alert in alerts:
            logger.warning(
                "security_alert_raised",
                alert_id=alert.id,
                alert_type=alert.type,
                severity=alert.severity.value,
            )
        return alerts

    def get_failed_login_analysis(self, time_range: TimeRange) -> FailedLoginAnalysis:
        failures = _failed_logins(self._records(time_range))
        total = len(failures)
        reasons = Counter(r.error_message or "unknown" for r in failures)
        return FailedLoginAnalysis(
            time_range=time_range,
            total_failed_logins=total,
            unique_ip_addresses=len({r.ip_address for r in failures if r.ip_address}),
            unique_subjects=len({r.actor_id for r in failures if r.actor_id}),
            top_failure_reasons=[
                FailureReasonStats(reason=reason, count=count, percentage=round(count / total * 100, 2))
                for reason, count in reasons.most_common(10)
            ],
            time_distribution=_hourly(failures),
            ip_address_analysis=_ip_stats(failures),
        )

    def generate_security_report(self, time_range: TimeRange) -> SecurityReport:
        summary = self.get_audit_summary(time_range)
        patterns = self.detect_suspicious_patterns(time_range)
        threats: Dict[str, ThreatSummary] = {}
        for pattern in patterns:
            threat = threats.get(pattern.type)
            if threat is None:
                threats[pattern.type] = ThreatSummary(pattern.type, 1, pattern.severity)
                continue
            threat.count += 1
            if pattern.severity.rank > threat.severity.rank:
                threat.severity = pattern.severity
        top_threats = sorted(threats.values(), key=lambda t: (-t.severity.rank, -t.count, t.type))
        return SecurityReport(
            time_range=time_range,
            summary=summary,
            suspicious_patterns=patterns,
            top_threats=top_threats,
            recommendations=_recommendations(summary, patterns),
            generated_at=utcnow(),
        )


def _recommendations(summary: AuditSummary, patterns: Sequence[SuspiciousPattern]) -> List[str]:
    types = {p.type for p in patterns}
    recommendations = []
    if summary.failed_logins > summary.successful_logins * 0.1:
        recommendations.append(
            "High login failure rate; consider additional verification for sign-in."
        )
    if types & {"multiple_failed_logins", "brute_force_attack"}:
        recommendations.append("Apply progressive rate limiting to failed login attempts.")
    if "bot_activity" in types:
        recommendations.append("Enable bot challenges on authentication endpoints.")
    if "blacklisted_token_reuse" in types:
        recommendations.append(
            "Revoked tokens are being replayed; revoke all tokens for the affected accounts."
        )
    if "repeated_permission_denials" in types:
        recommendations.append("Review role assignments for accounts probing restricted routes.")
    if summary.security_events > 100:
        recommendations.append("Review security event volume and tighten security policies.")
    return recommendations
