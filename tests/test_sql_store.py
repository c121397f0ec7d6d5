from __future__ import annotations

import pytest

import fsqa_service as service
from db import fetch_one
from fsqa_errors import NotFoundError, PersistenceError, ValidationError


def test_bootstrap_is_repeatable(sql_store) -> None:
    sql_store.bootstrap()
    assert sql_store.list_facilities() == []


def test_scoring_round_trip_through_sqlite(sql_scenario) -> None:
    store = sql_scenario.store
    created = service.create_session(store, sql_scenario.facility_id, user_id=2)
    assert created.total_points == 100

    service.save_responses(store, created.session_id, [
        {"question_id": sql_scenario.q1.id, "score": 50, "notes": "ok"},
        {"question_id": sql_scenario.q2.id, "score": 0, "evidence_url": "s3://bucket/deer.jpg"},
    ])
    result = service.compute_score(store, created.session_id)
    assert (result.earned_points, result.score_pct, result.has_auto_fail, result.grade) == (50, 50, True, "FAIL")

    session = store.get_session(created.session_id)
    assert session.has_auto_fail is True
    assert session.grade == "FAIL"
    assert session.status == "completed"
    assert isinstance(session.simulation_date, str)

    responses = store.list_responses(created.session_id)
    assert [r.evidence for r in responses] == [None, "s3://bucket/deer.jpg"]


def test_upsert_keeps_one_row_per_question(sql_scenario) -> None:
    store = sql_scenario.store
    sid = service.create_session(store, sql_scenario.facility_id).session_id
    for score in (10, 20, 30):
        service.save_responses(store, sid, [{"question_id": sql_scenario.q1.id, "score": score}])

    row = fetch_one(
        store.engine,
        "SELECT COUNT(*) AS cnt, MAX(score) AS score FROM audit_responses WHERE simulation_id=:s",
        {"s": sid},
    )
    assert (row["cnt"], row["score"]) == (1, 30)


def test_duplicate_question_in_one_batch_last_wins(sql_scenario) -> None:
    store = sql_scenario.store
    sid = service.create_session(store, sql_scenario.facility_id).session_id
    saved = service.save_responses(store, sid, [
        {"question_id": sql_scenario.q1.id, "score": 5},
        {"question_id": sql_scenario.q1.id, "score": 40},
    ])
    assert saved.saved_count == 2
    assert [r.score for r in store.list_responses(sid)] == [40]


def test_rejected_batch_writes_nothing(sql_scenario) -> None:
    store = sql_scenario.store
    sid = service.create_session(store, sql_scenario.facility_id).session_id
    with pytest.raises(ValidationError):
        service.save_responses(store, sid, [
            {"question_id": sql_scenario.q1.id, "score": 10},
            {"question_id": sql_scenario.q2.id, "score": 500},
        ])
    assert store.list_responses(sid) == []


def test_unknown_ids(sql_scenario) -> None:
    store = sql_scenario.store
    with pytest.raises(ValidationError):
        service.create_session(store, 12345)
    with pytest.raises(NotFoundError):
        service.compute_score(store, 12345)
    with pytest.raises(NotFoundError):
        service.save_snapshot(store, 12345)


def test_findings_persist_with_ordering(sql_scenario) -> None:
    store = sql_scenario.store
    sid = service.create_session(store, sql_scenario.facility_id).session_id
    service.save_responses(store, sid, [
        {"question_id": sql_scenario.q1.id, "score": 0},
        {"question_id": sql_scenario.q2.id, "score": 0},
    ])
    created = service.generate_findings(store, sid, created_by=1)
    assert [f.severity for f in created] == ["critical", "major"]
    assert store.count_findings(sid) == 2

    stored = store.list_findings(session_id=sid)
    assert [f.severity for f in stored] == ["critical", "major"]
    assert stored[0].is_auto_fail is True
    assert stored[0].required_sop_code == "SOP-07"
    assert store.list_findings(status="closed") == []
    assert service.generate_findings(store, sid) == []


def test_readiness_and_snapshot_history(sql_scenario) -> None:
    store = sql_scenario.store
    fid = sql_scenario.facility_id
    for code, status in [("SOP-01", "current"), ("SOP-02", "outdated"), ("SOP-03", "not_applicable")]:
        store.set_requirement_status(fid, code, status)
    # overwriting a requirement keeps one row per code
    store.set_requirement_status(fid, "SOP-02", "current")

    readiness = service.compute_readiness(store, fid)
    assert (readiness.total, readiness.current, readiness.not_applicable, readiness.readiness_pct) == (3, 2, 1, 100)

    saved = service.save_snapshot(store, fid, triggered_by=5)
    history = service.list_snapshots(store, fid)
    assert [s.id for s in history] == [saved.snapshot_id]
    assert history[0].triggered_by == 5
    assert history[0].readiness_pct == 100


def test_residue_compliance_through_sqlite(sql_scenario) -> None:
    store = sql_scenario.store
    fid = sql_scenario.facility_id
    for expected, mrl in [(1.0, 2.0), (5.0, 3.0), (None, 2.0), (2.0, 2.0)]:
        store.add_chemical_application("Copper hydroxide", expected, mrl, user_id=9, facility_id=fid)
    result = service.compute_residue_compliance(store, user_id=9)
    assert result.to_dict() == {"total": 3, "compliant": 2, "compliance_pct": 67}


def test_constraint_violation_surfaces_as_persistence_error(sql_store) -> None:
    sql_store.add_facility("DUP", "First")
    with pytest.raises(PersistenceError) as info:
        sql_store.add_facility("DUP", "Second")
    assert "UNIQUE" not in str(info.value)
    assert info.value.__cause__ is not None


def test_auto_fail_kept_after_module_toggled_off_in_sqlite(sql_scenario) -> None:
    store = sql_scenario.store
    sid = service.create_session(store, sql_scenario.facility_id).session_id
    service.save_responses(store, sid, [{"question_id": sql_scenario.q2.id, "score": 0}])
    store.set_module_applicability(sql_scenario.facility_id, sql_scenario.q2.module_id, False)

    result = service.compute_score(store, sid)
    assert (result.has_auto_fail, result.grade) == (True, "FAIL")
    assert store.get_session(sid).grade == "FAIL"
