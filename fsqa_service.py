"""
Audit scoring operations: sessions, responses, scoring, readiness, residue
compliance and findings.

Every function takes the AuditStore it reads and writes through. Nothing is
cached between calls; each call is one synchronous unit of work. Scoring is
read-then-overwrite and is NOT atomic with a concurrent save_responses on the
same session; serialize writers per session if that matters.
"""
from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence

from fsqa_engine import (
    Finding,
    Question,
    ReadinessResult,
    ReadinessSnapshot,
    ResidueCompliance,
    Response,
    ScoreResult,
    Session,
    STATUS_CURRENT,
    STATUS_MISSING,
    STATUS_NOT_APPLICABLE,
    STATUS_OUTDATED,
    build_findings,
    residue_compliance,
    score_session,
    sort_findings,
    summarize_findings,
    tally_readiness,
)
from fsqa_config import DEFAULT_SESSION_LIST_LIMIT, DEFAULT_SNAPSHOT_HISTORY
from fsqa_errors import NotFoundError, ValidationError
from fsqa_store import AuditStore, utc_now_iso

LOGGER = logging.getLogger(__name__)

REQUIREMENT_STATUSES = (STATUS_CURRENT, STATUS_OUTDATED, STATUS_MISSING, STATUS_NOT_APPLICABLE)


@dataclass
class SessionCreated:
    session_id: int
    total_points: int

    def to_dict(self) -> Dict[str, object]:
        return asdict(self)


@dataclass
class SaveResult:
    saved_count: int

    def to_dict(self) -> Dict[str, object]:
        return asdict(self)


@dataclass
class SnapshotSaved:
    snapshot_id: int
    readiness: ReadinessResult

    @property
    def readiness_pct(self) -> int:
        return self.readiness.readiness_pct

    def to_dict(self) -> Dict[str, object]:
        return {"snapshot_id": self.snapshot_id, **self.readiness.to_dict()}


@dataclass
class FacilityReadiness:
    facility_id: int
    facility_code: str
    facility_name: str
    readiness: ReadinessResult

    def to_dict(self) -> Dict[str, object]:
        return {
            "facility_id": self.facility_id,
            "facility_code": self.facility_code,
            "facility_name": self.facility_name,
            **self.readiness.to_dict(),
        }


@dataclass
class SessionDetail:
    session: Session
    responses: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, object]:
        return {"session": asdict(self.session), "responses": self.responses}


# =========================
# Input checks
# =========================
def _require_id(value: Any, name: str) -> int:
    if value is None or value == "":
        raise ValidationError(f"{name} required")
    if isinstance(value, bool):
        raise ValidationError(f"{name} must be an integer, got {value!r}")
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    raise ValidationError(f"{name} must be an integer, got {value!r}")


def _optional_text(value: Any, name: str) -> Optional[str]:
    if value is None or value == "":
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{name} must be a string, got {value!r}")
    return value


def _load_session(store: AuditStore, session_id: Any) -> Session:
    sid = _require_id(session_id, "session_id")
    session = store.get_session(sid)
    if session is None:
        raise NotFoundError(f"Session {sid} not found")
    return session


def _load_facility_id(store: AuditStore, facility_id: Any) -> int:
    fid = _require_id(facility_id, "facility_id")
    if store.get_facility(fid) is None:
        raise NotFoundError(f"Facility {fid} not found")
    return fid


def _question_lookup(store: AuditStore, facility_id: int, question_ids: Sequence[int]) -> Dict[int, Question]:
    """Applicable questions, plus any referenced question that has since left the catalog."""
    lookup = {q.id: q for q in store.applicable_questions(facility_id)}
    for qid in question_ids:
        if qid not in lookup:
            q = store.get_question(qid)
            if q is not None:
                lookup[qid] = q
    return lookup


# =========================
# Sessions + responses
# =========================
def create_session(store: AuditStore, facility_id: Any, user_id: Optional[int] = None) -> SessionCreated:
    """
    total_points is fixed here from the facility's applicable catalog and is
    never recomputed, even if the catalog changes later.
    """
    fid = _require_id(facility_id, "facility_id")
    if store.get_facility(fid) is None:
        raise ValidationError(f"Unknown facility_id: {fid}")

    total_points = sum(q.points for q in store.applicable_questions(fid))
    session_id = store.insert_session(fid, total_points, user_id=user_id)
    LOGGER.info("Created session %s for facility %s (total_points=%s)", session_id, fid, total_points)
    return SessionCreated(session_id=session_id, total_points=total_points)


def get_session(store: AuditStore, session_id: Any) -> SessionDetail:
    session = _load_session(store, session_id)
    responses = store.list_responses(session.id)
    questions = _question_lookup(store, session.facility_id, [r.question_id for r in responses])
    modules = {m.id: m for m in store.applicable_modules(session.facility_id)}

    rows: List[Dict[str, Any]] = []
    for r in responses:
        q = questions.get(r.question_id)
        m = modules.get(q.module_id) if q else None
        rows.append({
            "question_id": r.question_id,
            "score": r.score,
            "notes": r.notes,
            "evidence": r.evidence,
            "question_code": q.question_code if q else None,
            "question_text": q.question_text if q else None,
            "max_points": q.points if q else None,
            "is_auto_fail": q.is_auto_fail if q else None,
            "module_code": m.code if m else None,
        })
    rows.sort(key=lambda row: row["question_code"] or "")
    return SessionDetail(session=session, responses=rows)


def list_sessions(
    store: AuditStore, facility_id: Optional[Any] = None, limit: int = DEFAULT_SESSION_LIST_LIMIT
) -> List[Session]:
    fid = None if facility_id is None else _require_id(facility_id, "facility_id")
    return store.list_sessions(facility_id=fid, limit=limit)


def save_responses(store: AuditStore, session_id: Any, responses: Any) -> SaveResult:
    """
    Upsert responses by (session, question). The whole batch is checked before
    anything is written, so one bad entry rejects the call and leaves stored
    responses untouched. Does not score.
    """
    session = _load_session(store, session_id)
    if not isinstance(responses, (list, tuple)):
        raise ValidationError("responses array required")

    applicable = {q.id: q for q in store.applicable_questions(session.facility_id)}
    batch: List[Response] = []
    for idx, entry in enumerate(responses):
        where = f"responses[{idx}]"
        if not isinstance(entry, Mapping):
            raise ValidationError(f"{where} must be an object")
        qid = _require_id(entry.get("question_id"), f"{where}.question_id")

        q = applicable.get(qid)
        if q is None:
            if store.get_question(qid) is None:
                raise NotFoundError(f"Question {qid} not found")
            raise ValidationError(f"{where}: question {qid} is not applicable to facility {session.facility_id}")

        score = entry.get("score")
        if score is None:
            raise ValidationError(f"{where}.score required")
        if isinstance(score, bool) or not isinstance(score, int):
            raise ValidationError(f"{where}.score must be an integer, got {score!r}")
        if score < 0 or score > q.points:
            raise ValidationError(f"{where}.score {score} out of range for {q.question_code} (0..{q.points})")

        notes = _optional_text(entry.get("notes"), f"{where}.notes")
        evidence = _optional_text(entry.get("evidence") or entry.get("evidence_url"), f"{where}.evidence")
        batch.append(Response(session_id=session.id, question_id=qid, score=score, notes=notes, evidence=evidence))

    saved = store.upsert_responses(batch) if batch else 0
    LOGGER.info("Saved %s responses for session %s", saved, session.id)
    return SaveResult(saved_count=saved)


# =========================
# Scoring
# =========================
def compute_score(store: AuditStore, session_id: Any) -> ScoreResult:
    """
    Aggregate per module, detect auto-fails, grade, then overwrite the
    session's summary fields. Always reads the latest saved responses.
    """
    session = _load_session(store, session_id)
    modules = store.applicable_modules(session.facility_id)
    questions = store.applicable_questions(session.facility_id)
    responses = store.list_responses(session.id)
    # a zero on an auto-fail question still fails the session after its module stops applying
    answered = _question_lookup(store, session.facility_id, [r.question_id for r in responses])

    result = score_session(session, modules, questions, responses, answered_questions=answered.values())
    store.update_session_score(
        session.id, result.earned_points, result.score_pct, result.has_auto_fail, result.grade
    )
    LOGGER.info(
        "Scored session %s: %s/%s (%s%%) grade=%s auto_fail=%s",
        session.id, result.earned_points, result.total_points, result.score_pct,
        result.grade, result.has_auto_fail,
    )
    return result


# =========================
# Findings
# =========================
def generate_findings(store: AuditStore, session_id: Any, created_by: Optional[int] = None) -> List[Finding]:
    """
    Open one finding per response scored below its question's points. Runs
    once per session; later calls return [] and leave existing findings alone.
    """
    session = _load_session(store, session_id)
    if store.count_findings(session.id) > 0:
        LOGGER.info("Findings already exist for session %s; skipping", session.id)
        return []

    responses = store.list_responses(session.id)
    questions = _question_lookup(store, session.facility_id, [r.question_id for r in responses])
    findings = build_findings(session, questions, responses, created_by=created_by)
    if not findings:
        return []
    saved = store.insert_findings(findings)
    LOGGER.info("Opened %s findings for session %s", len(saved), session.id)
    return sort_findings(saved)


def list_findings(
    store: AuditStore,
    session_id: Optional[Any] = None,
    facility_id: Optional[Any] = None,
    status: Optional[str] = None,
) -> List[Finding]:
    sid = None if session_id is None else _require_id(session_id, "session_id")
    fid = None if facility_id is None else _require_id(facility_id, "facility_id")
    return sort_findings(store.list_findings(session_id=sid, facility_id=fid, status=status))


def findings_summary(store: AuditStore, facility_id: Optional[Any] = None) -> Dict[str, object]:
    fid = None if facility_id is None else _require_id(facility_id, "facility_id")
    return summarize_findings(store.list_findings(facility_id=fid))


# =========================
# Readiness
# =========================
def compute_readiness(store: AuditStore, facility_id: Any) -> ReadinessResult:
    fid = _load_facility_id(store, facility_id)
    return tally_readiness(store.list_requirement_statuses(fid))


def save_snapshot(store: AuditStore, facility_id: Any, triggered_by: Optional[int] = None) -> SnapshotSaved:
    fid = _load_facility_id(store, facility_id)
    readiness = tally_readiness(store.list_requirement_statuses(fid))
    snapshot_id = store.insert_snapshot(ReadinessSnapshot(
        facility_id=fid,
        snapshot_date=utc_now_iso(),
        total=readiness.total,
        current=readiness.current,
        outdated=readiness.outdated,
        missing=readiness.missing,
        not_applicable=readiness.not_applicable,
        readiness_pct=readiness.readiness_pct,
        triggered_by=triggered_by,
    ))
    LOGGER.info("Saved readiness snapshot %s for facility %s (%s%%)", snapshot_id, fid, readiness.readiness_pct)
    return SnapshotSaved(snapshot_id=snapshot_id, readiness=readiness)


def list_snapshots(store: AuditStore, facility_id: Any, limit: int = DEFAULT_SNAPSHOT_HISTORY) -> List[ReadinessSnapshot]:
    fid = _load_facility_id(store, facility_id)
    return store.list_snapshots(fid, limit=limit)


def readiness_summary(store: AuditStore) -> List[FacilityReadiness]:
    return [
        FacilityReadiness(
            facility_id=f.id,
            facility_code=f.code,
            facility_name=f.name,
            readiness=tally_readiness(store.list_requirement_statuses(f.id)),
        )
        for f in store.list_facilities(active_only=True)
    ]


# =========================
# Residue
# =========================
def compute_residue_compliance(
    store: AuditStore, user_id: Optional[Any] = None, facility_id: Optional[Any] = None
) -> ResidueCompliance:
    uid = None if user_id is None else _require_id(user_id, "user_id")
    fid = None if facility_id is None else _load_facility_id(store, facility_id)
    return residue_compliance(store.list_chemical_applications(user_id=uid, facility_id=fid))


# =========================
# Catalog loading
# =========================
def _entries(parent: Mapping[str, Any], key: str, where: str) -> List[Mapping[str, Any]]:
    items = parent.get(key) or []
    if not isinstance(items, list):
        raise ValidationError(f"{where}.{key} must be an array")
    for idx, item in enumerate(items):
        if not isinstance(item, Mapping):
            raise ValidationError(f"{where}.{key}[{idx}] must be an object")
    return items


def load_catalog(store: AuditStore, catalog: Any) -> Dict[str, int]:
    """
    Seed modules, questions, facilities (with applicability and requirement
    statuses) and chemical applications from one document:

        {"modules": [{"code", "name", "questions": [{"code", "text", "points", "auto_fail"}]}],
         "facilities": [{"code", "name", "modules": ["M1"], "requirements": {"SOP-01": "current"}}],
         "chemical_applications": [{"product_name", "expected_residue_level_ppm", "mrl_ppm", "facility"}]}
    """
    if not isinstance(catalog, Mapping):
        raise ValidationError("catalog must be an object")
    counts = {"modules": 0, "questions": 0, "facilities": 0, "requirements": 0, "chemical_applications": 0}
    module_ids: Dict[str, int] = {}

    for m in _entries(catalog, "modules", "catalog"):
        code = m.get("code")
        if not code:
            raise ValidationError("module code required")
        module_ids[code] = store.add_module(code, m.get("name") or code)
        counts["modules"] += 1
        for order, q in enumerate(_entries(m, "questions", f"module {code}")):
            points = q.get("points")
            if isinstance(points, bool) or not isinstance(points, int) or points <= 0:
                raise ValidationError(f"question {q.get('code')!r}: points must be a positive integer")
            sort_order = q.get("sort_order", order)
            if isinstance(sort_order, bool) or not isinstance(sort_order, int):
                raise ValidationError(f"question {q.get('code')!r}: sort_order must be an integer, got {sort_order!r}")
            store.add_question(
                module_ids[code],
                q.get("code") or f"{code}-{order + 1}",
                q.get("text", ""),
                points,
                is_auto_fail=bool(q.get("auto_fail", False)),
                sort_order=sort_order,
                required_sop=q.get("required_sop"),
                responsible_role=q.get("responsible_role"),
            )
            counts["questions"] += 1

    facility_ids: Dict[str, int] = {}
    for f in _entries(catalog, "facilities", "catalog"):
        code = f.get("code")
        if not code:
            raise ValidationError("facility code required")
        modules = f.get("modules") or []
        if not isinstance(modules, list):
            raise ValidationError(f"facility {code}: modules must be an array of module codes")
        requirements = f.get("requirements") or {}
        if not isinstance(requirements, Mapping):
            raise ValidationError(f"facility {code}: requirements must be an object")

        fid = store.add_facility(code, f.get("name") or code, is_active=bool(f.get("is_active", True)))
        facility_ids[code] = fid
        counts["facilities"] += 1
        for mcode in modules:
            if mcode not in module_ids:
                raise ValidationError(f"facility {code}: unknown module {mcode!r}")
            store.set_module_applicability(fid, module_ids[mcode], True)
        for req_code, status in requirements.items():
            if status not in REQUIREMENT_STATUSES:
                raise ValidationError(f"facility {code}: requirement {req_code} has invalid status {status!r}")
            store.set_requirement_status(fid, req_code, status)
            counts["requirements"] += 1

    for a in _entries(catalog, "chemical_applications", "catalog"):
        if not a.get("product_name"):
            raise ValidationError("chemical application product_name required")
        fcode = a.get("facility")
        if fcode and fcode not in facility_ids:
            raise ValidationError(f"chemical application {a['product_name']!r}: unknown facility {fcode!r}")
        store.add_chemical_application(
            a["product_name"],
            a.get("expected_residue_level_ppm"),
            a.get("mrl_ppm"),
            user_id=a.get("user_id"),
            facility_id=facility_ids[fcode] if fcode else None,
            active_ingredient=a.get("active_ingredient", ""),
            application_date=a.get("application_date"),
        )
        counts["chemical_applications"] += 1

    LOGGER.info("Loaded catalog: %s", counts)
    return counts
