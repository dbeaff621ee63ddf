"""Rule-based lifecycle classifier for job-application email.

Both entry points share one weighted rule table:

* :func:`classify` scores subject + body (live sync, full messages).
* :func:`classify_header` scores the subject line only (historical backfill,
  envelope data) and returns a coarse ``relevant | skip | ambiguous`` triage.

Callers pick one through :func:`classify_at` and a :class:`DetailLevel`.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Literal, Optional, Pattern, overload

import structlog

logger = structlog.get_logger(__name__)

APPLIED = "applied"
INTERVIEW = "interview"
OFFER = "offer"
REJECTION = "rejection"
JOB_ALERT = "job_alert"

LIFECYCLE_CLASSES = (APPLIED, INTERVIEW, OFFER, REJECTION)
PERSISTABLE_CLASSES = (*LIFECYCLE_CLASSES, JOB_ALERT)

HEADER_MODEL_VERSION = "v1"


class DetailLevel(str, Enum):
    """How much of a message the classifier gets to see."""

    HEADERS_ONLY = "headers_only"
    FULL = "full"


class HeaderDecision(str, Enum):
    RELEVANT = "relevant"
    SKIP = "skip"
    AMBIGUOUS = "ambiguous"


@dataclass(frozen=True)
class RuleGroup:
    """One weighted signal group.

    ``keywords`` are matched as substrings of the lowercased subject+body;
    ``header_pattern`` is matched against the raw subject line.
    """

    cls: str
    tag: str
    reason: str
    weight: int
    keywords: tuple[str, ...] = ()
    excludes: tuple[Pattern[str], ...] = ()
    min_hits: int = 0
    header_pattern: Optional[Pattern[str]] = None
    header_weight: int = 0

    @property
    def header_relevant(self) -> bool:
        return self.cls in LIFECYCLE_CLASSES


RULES: tuple[RuleGroup, ...] = (
    RuleGroup(
        cls=REJECTION,
        tag="rejection",
        reason="Rejection phrasing",
        weight=6,
        keywords=(
            "regret to inform",
            "not moving forward",
            "unfortunately",
            "we have decided to pursue other",
        ),
        header_pattern=re.compile(
            r"(regret to inform|not moving forward|unfortunately we (will|are) not|decided to pursue other)",
            re.I,
        ),
        header_weight=7,
    ),
    RuleGroup(
        cls=OFFER,
        tag="offer",
        reason="Offer phrasing",
        weight=6,
        keywords=(
            "offer letter",
            "pleased to offer",
            "we are excited to offer",
            "compensation package",
            "sign-on bonus",
        ),
        header_pattern=re.compile(
            r"(offer letter|we are (pleased|excited) to offer|compensation package)", re.I
        ),
        header_weight=8,
    ),
    RuleGroup(
        cls=INTERVIEW,
        tag="interview",
        reason="Interview scheduling terms",
        weight=4,
        keywords=(
            "interview",
            "phone screen",
            "onsite interview",
            "schedule time to talk",
            "technical screen",
            "coding exercise",
            "take-home",
        ),
        excludes=(re.compile(r"job alert"), re.compile(r"new jobs")),
        min_hits=1,
        header_pattern=re.compile(
            r"(interview|phone screen|technical screen|onsite interview|schedule (a )?time)", re.I
        ),
        header_weight=6,
    ),
    RuleGroup(
        cls=APPLIED,
        tag="applied",
        reason="Application receipt",
        weight=3,
        keywords=(
            "thank you for applying",
            "application received",
            "we received your application",
            "we have received your application",
            "application has been received",
        ),
        header_pattern=re.compile(r"(thank you for applying|application (received|submitted))", re.I),
        header_weight=4,
    ),
    RuleGroup(
        cls=JOB_ALERT,
        tag="digest",
        reason="Job alert phrasing",
        weight=2,
        keywords=(
            "job alert",
            "new jobs",
            "new positions",
            "job recommendations",
            "we found new positions",
            "new match:",
        ),
        header_pattern=re.compile(
            r"(job alert|new jobs|new job:|job recommendations|\d+ new jobs|more matches|daily digest)",
            re.I,
        ),
        header_weight=5,
    ),
    # Header-only: never scores full messages.
    RuleGroup(
        cls="newsletter",
        tag="newsletter",
        reason="Newsletter",
        weight=0,
        header_pattern=re.compile(r"(weekly roundup|newsletter)", re.I),
        header_weight=3,
    ),
)

_DATE_ONLY_SUBJECT = re.compile(r"^([a-z]+ \d{1,2}, \d{4})$")

_ALERT_SUBJECT_PATTERNS = (
    re.compile(r"\bnew jobs?\b"),
    re.compile(r"\bnew job:"),
    re.compile(r"\bnew match:"),
    re.compile(r"\bjob alert\b"),
    re.compile(r"\b\d+\+ new jobs\b"),
    re.compile(r"\bjobs on "),
    re.compile(r"\bmore matches\b"),
    re.compile(r"\bmatches - wellfound\b"),
)

_DIGEST_VENDORS = re.compile(
    r"(wellfound|linkedin|indeed|welcometothejungle|simplyhired|glassdoor|ziprecruiter)"
)

_STRONG_SCHEDULING = re.compile(
    r"(schedule|confirm|availability|zoom|teams meeting|google meet|calendar invite)"
)

_INTERVIEW_CONTEXT = re.compile(
    r"(engineer|developer|designer|product manager|data scientist|application|position|role|candidate)"
)

FLAG_DATE_ONLY = "date_only"
FLAG_ALERT_SUBJECT = "pattern:job_alert_subject"
FLAG_DIGEST_VENDOR = "vendor:digest"


@dataclass(frozen=True)
class ClassificationResult:
    """Output of :func:`classify`. ``cls`` is empty when nothing matched."""

    cls: str
    confidence: float
    reason: str
    score: float = 0.0
    raw_scores: dict[str, float] = field(default_factory=dict)
    flags: tuple[str, ...] = ()


@dataclass(frozen=True)
class HeaderClassification:
    """Output of :func:`classify_header`."""

    decision: HeaderDecision
    score: float
    reason: str
    model_version: str = HEADER_MODEL_VERSION


@dataclass
class _Tally:
    score: float = 0.0
    hits: int = 0
    reasons: list[str] = field(default_factory=list)


def _alert_flags(subject_lower: str, text: str) -> list[str]:
    flags: list[str] = []
    if any(p.search(subject_lower) for p in _ALERT_SUBJECT_PATTERNS):
        flags.append(FLAG_ALERT_SUBJECT)
    if _DIGEST_VENDORS.search(text):
        flags.append(FLAG_DIGEST_VENDOR)
    return flags


def classify(subject: str, body: str) -> ClassificationResult:
    """Classify a full message into a lifecycle class.

    Pure and deterministic: identical input always yields an identical result.
    """
    subject = subject or ""
    text = (subject + "\n" + (body or "")).lower()
    subject_lower = subject.lower()

    if _DATE_ONLY_SUBJECT.match(subject_lower.strip()):
        return ClassificationResult(
            cls="", confidence=0.2, reason="date_only_subject", flags=(FLAG_DATE_ONLY,)
        )

    flags = _alert_flags(subject_lower, text)

    tallies: dict[str, _Tally] = {}
    for group in RULES:
        if not group.keywords:
            continue
        hits = sum(1 for kw in group.keywords if kw in text)
        if not hits:
            continue
        if group.min_hits and hits < group.min_hits:
            continue
        if any(ex.search(text) for ex in group.excludes):
            continue
        tally = tallies.setdefault(group.cls, _Tally())
        tally.score += hits * group.weight
        tally.hits += hits
        reason = f"{group.reason}({hits})"
        if reason not in tally.reasons:
            tally.reasons.append(reason)

    # Alert-shaped subject with no lifecycle evidence is a digest.
    if FLAG_ALERT_SUBJECT in flags and not any(c in tallies for c in LIFECYCLE_CLASSES):
        tallies.setdefault(JOB_ALERT, _Tally(score=2, hits=1, reasons=["subject pattern"]))

    if not tallies:
        return ClassificationResult(cls="", confidence=0.0, reason="no rule matched", flags=tuple(flags))

    ranked = sorted(tallies.items(), key=lambda item: item[1].score, reverse=True)
    top_cls, top = ranked[0]
    runner_up = ranked[1][1].score if len(ranked) > 1 else 0.0

    separation = 0.0 if top.score == 0 else 1 - (runner_up / top.score)
    strength = min(1.0, top.score / 10)
    confidence = round(separation * 0.6 + strength * 0.4, 2)

    cls = top_cls
    reason = "; ".join(top.reasons)
    if cls == INTERVIEW and (FLAG_ALERT_SUBJECT in flags or FLAG_DIGEST_VENDOR in flags):
        if not _STRONG_SCHEDULING.search(text):
            cls = JOB_ALERT
            reason += "; downgraded_to_job_alert_digest"

    return ClassificationResult(
        cls=cls,
        confidence=confidence,
        reason=reason,
        score=top.score,
        raw_scores={name: tally.score for name, tally in ranked},
        flags=tuple(flags),
    )


def classify_header(subject: str, sender: str = "") -> HeaderClassification:
    """Cheap subject-line triage for envelope-only backfill data.

    Args:
        subject: Decoded subject line.
        sender: Sender address (reserved; not scored yet).
    """
    if not (subject or "").strip():
        return HeaderClassification(HeaderDecision.AMBIGUOUS, 0.0, "empty_subject")

    relevant_score = 0
    relevant_tags: list[str] = []
    skip_score = 0
    skip_tags: list[str] = []
    for group in RULES:
        if group.header_pattern is None or not group.header_pattern.search(subject):
            continue
        if group.header_relevant:
            relevant_score += group.header_weight
            relevant_tags.append(group.tag)
        else:
            skip_score += group.header_weight
            skip_tags.append(group.tag)

    if relevant_score and relevant_score >= skip_score:
        return HeaderClassification(
            HeaderDecision.RELEVANT, float(relevant_score), "relevant:" + ",".join(relevant_tags)
        )
    if skip_score and skip_score > relevant_score:
        return HeaderClassification(
            HeaderDecision.SKIP, float(skip_score), "skip:" + ",".join(skip_tags)
        )
    return HeaderClassification(HeaderDecision.AMBIGUOUS, 0.5, "no_rule_match")


@overload
def classify_at(
    level: Literal[DetailLevel.HEADERS_ONLY], subject: str, body: str = ..., sender: str = ...
) -> HeaderClassification: ...


@overload
def classify_at(
    level: Literal[DetailLevel.FULL], subject: str, body: str = ..., sender: str = ...
) -> ClassificationResult: ...


def classify_at(
    level: DetailLevel, subject: str, body: str = "", sender: str = ""
) -> ClassificationResult | HeaderClassification:
    """Dispatch to the classifier matching the available detail level."""
    if level is DetailLevel.HEADERS_ONLY:
        return classify_header(subject, sender)
    return classify(subject, body)


def is_relevant(
    result: ClassificationResult, subject: str, body: str, include_alerts: bool = False
) -> bool:
    """Relevance gate: decide whether a classified message is persisted at all."""
    cls = result.cls
    if not cls:
        return False
    if cls == JOB_ALERT and not include_alerts:
        return False
    if cls == INTERVIEW:
        combined = ((subject or "") + "\n" + (body or "")).lower()
        if not _INTERVIEW_CONTEXT.search(combined):
            logger.debug("classifier_interview_without_context", subject=(subject or "")[:80])
            return False
    return cls in PERSISTABLE_CLASSES
