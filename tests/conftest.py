from __future__ import annotations

from dataclasses import replace
from typing import Dict, List, Tuple

import pytest

from db import get_engine
import fsqa_service
from fsqa_engine import (
    ChemicalApplication,
    Facility,
    Finding,
    Module,
    Question,
    ReadinessSnapshot,
    RequirementStatus,
    Response,
    Session,
)
from fsqa_store import AuditStore, SqlAuditStore, utc_now_iso


class MemoryAuditStore(AuditStore):
    """In-process AuditStore for engine and service tests."""

    def __init__(self) -> None:
        self.facilities: Dict[int, Facility] = {}
        self.modules: Dict[int, Module] = {}
        self.questions: Dict[int, Question] = {}
        self.applicability: Dict[Tuple[int, int], bool] = {}
        self.sessions: Dict[int, Session] = {}
        self.responses: Dict[Tuple[int, int], Response] = {}
        self.requirements: Dict[Tuple[int, str], RequirementStatus] = {}
        self.snapshots: List[ReadinessSnapshot] = []
        self.applications: List[ChemicalApplication] = []
        self.findings: List[Finding] = []
        self.upsert_calls = 0
        self._next = 0

    def _id(self) -> int:
        self._next += 1
        return self._next

    # catalog (read)
    def get_facility(self, facility_id):
        return self.facilities.get(facility_id)

    def list_facilities(self, active_only=True):
        fs = [f for f in self.facilities.values() if f.is_active or not active_only]
        return sorted(fs, key=lambda f: f.name)

    def _applicable_module_ids(self, facility_id):
        return {m for (f, m), ok in self.applicability.items() if f == facility_id and ok}

    def applicable_modules(self, facility_id):
        ids = self._applicable_module_ids(facility_id)
        return sorted((m for m in self.modules.values() if m.id in ids), key=lambda m: m.code)

    def applicable_questions(self, facility_id):
        ids = self._applicable_module_ids(facility_id)
        qs = [q for q in self.questions.values() if q.module_id in ids]
        return sorted(qs, key=lambda q: (q.sort_order, q.question_code))

    def get_question(self, question_id):
        return self.questions.get(question_id)

    # catalog (admin)
    def add_facility(self, code, name, is_active=True):
        fid = self._id()
        self.facilities[fid] = Facility(fid, code, name, is_active)
        return fid

    def add_module(self, code, name):
        mid = self._id()
        self.modules[mid] = Module(mid, code, name)
        return mid

    def add_question(self, module_id, question_code, question_text, points, is_auto_fail=False,
                     sort_order=0, required_sop=None, responsible_role=None):
        qid = self._id()
        self.questions[qid] = Question(qid, module_id, question_code, question_text, points,
                                       is_auto_fail, sort_order, required_sop, responsible_role)
        return qid

    def set_module_applicability(self, facility_id, module_id, is_applicable=True):
        self.applicability[(facility_id, module_id)] = is_applicable

    def set_requirement_status(self, facility_id, requirement_code, status):
        self.requirements[(facility_id, requirement_code)] = RequirementStatus(facility_id, requirement_code, status)

    def add_chemical_application(self, product_name, expected_residue_level_ppm, mrl_ppm, user_id=None,
                                 facility_id=None, active_ingredient="", application_date=None):
        aid = self._id()
        self.applications.append(ChemicalApplication(aid, product_name, expected_residue_level_ppm, mrl_ppm,
                                                     user_id, facility_id, active_ingredient, application_date))
        return aid

    # sessions + responses
    def insert_session(self, facility_id, total_points, user_id=None):
        sid = self._id()
        self.sessions[sid] = Session(sid, facility_id, total_points, user_id, utc_now_iso())
        return sid

    def get_session(self, session_id):
        return self.sessions.get(session_id)

    def list_sessions(self, facility_id=None, limit=50):
        ss = [s for s in self.sessions.values() if facility_id is None or s.facility_id == facility_id]
        return sorted(ss, key=lambda s: s.id, reverse=True)[:limit]

    def update_session_score(self, session_id, earned_points, score_pct, has_auto_fail, grade):
        self.sessions[session_id] = replace(
            self.sessions[session_id], earned_points=earned_points, score_pct=score_pct,
            has_auto_fail=has_auto_fail, grade=grade, status="completed",
        )

    def upsert_responses(self, responses):
        self.upsert_calls += 1
        for r in responses:
            key = (r.session_id, r.question_id)
            existing = self.responses.get(key)
            self.responses[key] = replace(r, id=existing.id if existing else self._id())
        return len(responses)

    def list_responses(self, session_id):
        return sorted((r for (s, _), r in self.responses.items() if s == session_id), key=lambda r: r.id)

    # readiness
    def list_requirement_statuses(self, facility_id):
        return [r for (f, _), r in sorted(self.requirements.items()) if f == facility_id]

    def insert_snapshot(self, snapshot):
        saved = replace(snapshot, id=self._id())
        self.snapshots.append(saved)
        return saved.id

    def list_snapshots(self, facility_id, limit=10):
        ss = [s for s in self.snapshots if s.facility_id == facility_id]
        return sorted(ss, key=lambda s: (s.snapshot_date, s.id), reverse=True)[:limit]

    # residue
    def list_chemical_applications(self, user_id=None, facility_id=None):
        return [
            a for a in self.applications
            if (user_id is None or a.user_id == user_id) and (facility_id is None or a.facility_id == facility_id)
        ]

    # findings
    def count_findings(self, session_id):
        return sum(1 for f in self.findings if f.session_id == session_id)

    def insert_findings(self, findings):
        saved = [replace(f, id=self._id(), created_at=utc_now_iso()) for f in findings]
        self.findings.extend(saved)
        return saved

    def list_findings(self, session_id=None, facility_id=None, status=None):
        return [
            f for f in self.findings
            if (session_id is None or f.session_id == session_id)
            and (facility_id is None or f.facility_id == facility_id)
            and (status is None or f.status == status)
        ]


# One module "M1" with two 50-point questions, the second one auto-fail.
SCENARIO_CATALOG = {
    "modules": [
        {
            "code": "M1",
            "name": "Harvest Operations",
            "questions": [
                {"code": "M1-01", "text": "Harvest containers are cleaned", "points": 50},
                {"code": "M1-02", "text": "No animal intrusion in field", "points": 50, "auto_fail": True,
                 "required_sop": "SOP-07"},
            ],
        },
        {
            "code": "M2",
            "name": "Packing House",
            "questions": [{"code": "M2-01", "text": "Packing line sanitized", "points": 20}],
        },
    ],
    "facilities": [
        {"code": "F1", "name": "North Ranch", "modules": ["M1"]},
        {"code": "F2", "name": "Empty Lot"},
        {"code": "F3", "name": "Packing Shed", "modules": ["M2"]},
    ],
}


class Scenario:
    def __init__(self, store: AuditStore) -> None:
        self.store = store
        facilities = {f.code: f.id for f in store.list_facilities(active_only=False)}
        self.facility_id = facilities["F1"]
        self.empty_facility_id = facilities["F2"]
        qs = {q.question_code: q for q in store.applicable_questions(self.facility_id)}
        self.q1 = qs["M1-01"]
        self.q2 = qs["M1-02"]
        self.m2_question = store.applicable_questions(facilities["F3"])[0]


@pytest.fixture
def store() -> MemoryAuditStore:
    return MemoryAuditStore()


@pytest.fixture
def sql_store(tmp_path) -> SqlAuditStore:
    s = SqlAuditStore(get_engine(f"sqlite:///{tmp_path / 'fsqa_test.db'}"))
    s.bootstrap()
    return s


@pytest.fixture
def scenario(store) -> Scenario:
    fsqa_service.load_catalog(store, SCENARIO_CATALOG)
    return Scenario(store)


@pytest.fixture
def sql_scenario(sql_store) -> Scenario:
    fsqa_service.load_catalog(sql_store, SCENARIO_CATALOG)
    return Scenario(sql_store)
