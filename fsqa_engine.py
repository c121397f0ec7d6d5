from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Dict, Iterable, List, Optional, Tuple

import pandas as pd


# Lower bound of each percentage band, checked top-down.
GRADE_THRESHOLDS: List[Tuple[int, str]] = [
    (97, "A+"),
    (92, "A"),
    (85, "B"),
    (75, "C"),
]
FLOOR_GRADE = "D"
FAIL_GRADE = "FAIL"

STATUS_CURRENT = "current"
STATUS_OUTDATED = "outdated"
STATUS_MISSING = "missing"
STATUS_NOT_APPLICABLE = "not_applicable"

SEVERITY_ORDER = {"critical": 1, "major": 2, "minor": 3}


# =========================
# Records (built once at the persistence boundary)
# =========================
@dataclass(frozen=True)
class Facility:
    id: int
    code: str
    name: str
    is_active: bool = True


@dataclass(frozen=True)
class Module:
    id: int
    code: str
    name: str


@dataclass(frozen=True)
class Question:
    id: int
    module_id: int
    question_code: str
    question_text: str
    points: int
    is_auto_fail: bool = False
    sort_order: int = 0
    required_sop: Optional[str] = None
    responsible_role: Optional[str] = None


@dataclass(frozen=True)
class Session:
    id: int
    facility_id: int
    total_points: int
    user_id: Optional[int] = None
    simulation_date: Optional[str] = None
    status: str = "in_progress"
    earned_points: Optional[int] = None
    score_pct: Optional[int] = None
    has_auto_fail: Optional[bool] = None
    grade: Optional[str] = None


@dataclass(frozen=True)
class Response:
    session_id: int
    question_id: int
    score: int
    notes: Optional[str] = None
    evidence: Optional[str] = None
    id: Optional[int] = None


@dataclass(frozen=True)
class RequirementStatus:
    facility_id: int
    requirement_code: str
    status: str


@dataclass(frozen=True)
class ReadinessSnapshot:
    facility_id: int
    snapshot_date: str
    total: int
    current: int
    outdated: int
    missing: int
    not_applicable: int
    readiness_pct: int
    triggered_by: Optional[int] = None
    id: Optional[int] = None


@dataclass(frozen=True)
class ChemicalApplication:
    id: int
    product_name: str
    expected_residue_level_ppm: Optional[float]
    mrl_ppm: Optional[float]
    user_id: Optional[int] = None
    facility_id: Optional[int] = None
    active_ingredient: str = ""
    application_date: Optional[str] = None


@dataclass(frozen=True)
class Finding:
    session_id: int
    question_id: int
    facility_id: int
    finding_type: str       # non_conformance / observation
    severity: str           # critical / major / minor
    description: str
    evidence_notes: Optional[str] = None
    required_sop_code: Optional[str] = None
    is_auto_fail: bool = False
    status: str = "open"
    created_by: Optional[int] = None
    created_at: Optional[str] = None
    id: Optional[int] = None


# =========================
# Results
# =========================
@dataclass
class ModuleScore:
    module_code: str
    module_name: str
    max_points: int
    earned_points: int
    answered_count: int
    total_questions: int


@dataclass
class ScoreResult:
    session_id: int
    earned_points: int
    total_points: int
    score_pct: int
    has_auto_fail: bool
    grade: str
    modules: List[ModuleScore] = field(default_factory=list)
    auto_fail_questions: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, object]:
        return asdict(self)


@dataclass
class ReadinessResult:
    total: int
    current: int
    outdated: int
    missing: int
    not_applicable: int
    readiness_pct: int

    def to_dict(self) -> Dict[str, object]:
        return asdict(self)


@dataclass
class ResidueCompliance:
    total: int
    compliant: int
    compliance_pct: int

    def to_dict(self) -> Dict[str, object]:
        return asdict(self)


# =========================
# Arithmetic
# =========================
def round_pct(numerator: int, denominator: int) -> int:
    """
    round(100 * numerator / denominator) with halves rounded up, 0 when the
    denominator is 0. Integer math so 0.5 boundaries never drift.
    """
    if denominator <= 0:
        return 0
    return (200 * numerator + denominator) // (2 * denominator)


def classify_grade(score_pct: int, has_auto_fail: bool) -> str:
    if has_auto_fail:
        return FAIL_GRADE
    for threshold, grade in GRADE_THRESHOLDS:
        if score_pct >= threshold:
            return grade
    return FLOOR_GRADE


# =========================
# Scoring
# =========================
def aggregate_modules(
    modules: Iterable[Module],
    questions: Iterable[Question],
    responses: Iterable[Response],
) -> List[ModuleScore]:
    """
    One breakdown row per module, ordered by module code. Questions with no
    response contribute 0 earned points and are not counted as answered.
    """
    by_question = {r.question_id: r for r in responses}
    by_module: Dict[int, List[Question]] = {}
    for q in questions:
        by_module.setdefault(q.module_id, []).append(q)

    rows: List[ModuleScore] = []
    for m in sorted(modules, key=lambda mod: mod.code):
        qs = by_module.get(m.id, [])
        answered = [by_question[q.id] for q in qs if q.id in by_question]
        rows.append(ModuleScore(
            module_code=m.code,
            module_name=m.name,
            max_points=sum(q.points for q in qs),
            earned_points=sum(r.score for r in answered),
            answered_count=len(answered),
            total_questions=len(qs),
        ))
    return rows


def detect_auto_fails(questions: Iterable[Question], responses: Iterable[Response]) -> List[Question]:
    # Only an explicit zero counts; an unanswered auto-fail question does not.
    zeroed = {r.question_id for r in responses if r.score == 0}
    return [q for q in questions if q.is_auto_fail and q.id in zeroed]


def score_session(
    session: Session,
    modules: List[Module],
    questions: List[Question],
    responses: List[Response],
    answered_questions: Optional[Iterable[Question]] = None,
) -> ScoreResult:
    """
    `questions` is the applicable catalog used for the breakdown.
    `answered_questions` (default: `questions`) is every question the session
    has a response for, applicable or not; auto-fails are detected over it.
    """
    breakdown = aggregate_modules(modules, questions, responses)
    earned = sum(m.earned_points for m in breakdown)
    pct = max(0, min(100, round_pct(earned, session.total_points)))
    failures = detect_auto_fails(questions if answered_questions is None else answered_questions, responses)
    has_auto_fail = bool(failures)
    return ScoreResult(
        session_id=session.id,
        earned_points=earned,
        total_points=session.total_points,
        score_pct=pct,
        has_auto_fail=has_auto_fail,
        grade=classify_grade(pct, has_auto_fail),
        modules=breakdown,
        auto_fail_questions=sorted(q.question_code for q in failures),
    )


# =========================
# Readiness + residue
# =========================
def tally_readiness(statuses: Iterable[RequirementStatus]) -> ReadinessResult:
    """
    Only `current` counts toward readiness; `outdated` and `missing` are
    reported but sit in the denominator like any other applicable status.
    """
    counts: Dict[str, int] = {}
    total = 0
    for s in statuses:
        total += 1
        counts[s.status] = counts.get(s.status, 0) + 1

    current = counts.get(STATUS_CURRENT, 0)
    na = counts.get(STATUS_NOT_APPLICABLE, 0)
    return ReadinessResult(
        total=total,
        current=current,
        outdated=counts.get(STATUS_OUTDATED, 0),
        missing=counts.get(STATUS_MISSING, 0),
        not_applicable=na,
        readiness_pct=round_pct(current, total - na),
    )


def residue_compliance(applications: Iterable[ChemicalApplication]) -> ResidueCompliance:
    total = 0
    compliant = 0
    for a in applications:
        if a.expected_residue_level_ppm is None or a.mrl_ppm is None:
            continue
        total += 1
        if a.expected_residue_level_ppm <= a.mrl_ppm:
            compliant += 1
    return ResidueCompliance(total=total, compliant=compliant, compliance_pct=round_pct(compliant, total))


# =========================
# Findings
# =========================
def build_findings(
    session: Session,
    questions: Dict[int, Question],
    responses: Iterable[Response],
    created_by: Optional[int] = None,
) -> List[Finding]:
    """
    One finding per response that scored below the question's points:
      - critical: auto-fail question scored 0
      - major:    any other question scored 0
      - minor:    partial credit
    """
    out: List[Finding] = []
    for r in responses:
        q = questions.get(r.question_id)
        if q is None or r.score >= q.points:
            continue
        auto_fail = q.is_auto_fail and r.score == 0
        if auto_fail:
            severity = "critical"
        elif r.score == 0:
            severity = "major"
        else:
            severity = "minor"
        out.append(Finding(
            session_id=session.id,
            question_id=q.id,
            facility_id=session.facility_id,
            finding_type="non_conformance" if r.score == 0 else "observation",
            severity=severity,
            description=f"{q.question_code}: {q.question_text} - Scored {r.score}/{q.points}",
            evidence_notes=r.notes,
            required_sop_code=q.required_sop,
            is_auto_fail=auto_fail,
            created_by=created_by,
        ))
    return out


def sort_findings(findings: Iterable[Finding]) -> List[Finding]:
    # severity first, then newest first (created_at, then id)
    newest = sorted(findings, key=lambda f: (f.created_at or "", f.id or 0), reverse=True)
    return sorted(newest, key=lambda f: SEVERITY_ORDER.get(f.severity, 99))


def summarize_findings(findings: Iterable[Finding]) -> Dict[str, object]:
    findings = list(findings)
    open_df = pd.DataFrame([f.__dict__ for f in findings if f.status == "open"])
    by_severity: List[Dict[str, object]] = []
    if not open_df.empty:
        counts = open_df.groupby("severity").size()
        for sev in sorted(counts.index, key=lambda s: SEVERITY_ORDER.get(s, 99)):
            by_severity.append({"severity": str(sev), "count": int(counts[sev])})
    return {
        "total_open": int(len(open_df)),
        "with_capa": sum(1 for f in findings if f.status == "capa_created"),
        "by_severity": by_severity,
    }


# =========================
# Frames for export
# =========================
def modules_to_frame(result: ScoreResult) -> pd.DataFrame:
    cols = ["module_code", "module_name", "max_points", "earned_points", "answered_count", "total_questions"]
    df = pd.DataFrame([asdict(m) for m in result.modules], columns=cols)
    df["module_pct"] = [round_pct(e, m) for e, m in zip(df["earned_points"], df["max_points"])]
    return df


def findings_to_frames(findings: List[Finding]) -> Tuple[pd.DataFrame, pd.DataFrame]:
    df = pd.DataFrame([f.__dict__ for f in findings])
    if df.empty:
        summary = pd.DataFrame(columns=["severity", "finding_type", "count"])
    else:
        summary = (df.groupby(["severity", "finding_type"], as_index=False)
                     .size()
                     .rename(columns={"size": "count"}))
        summary["_rank"] = summary["severity"].map(SEVERITY_ORDER).fillna(99)
        summary = (summary.sort_values(["_rank", "count"], ascending=[True, False])
                          .drop(columns="_rank")
                          .reset_index(drop=True))
    return df, summary


def snapshots_to_frame(snapshots: List[ReadinessSnapshot]) -> pd.DataFrame:
    """
    Trend history, oldest first, with the change in readiness since the
    previous snapshot.
    """
    cols = ["id", "facility_id", "snapshot_date", "total", "current", "outdated",
            "missing", "not_applicable", "readiness_pct", "triggered_by"]
    df = pd.DataFrame([asdict(s) for s in snapshots], columns=cols)
    if df.empty:
        df["change"] = pd.Series(dtype="float64")
        return df
    df = df.sort_values(["snapshot_date", "id"]).reset_index(drop=True)
    df["change"] = df["readiness_pct"].diff()
    return df
