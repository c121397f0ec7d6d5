from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import text
from sqlalchemy.engine import Engine, RowMapping

from db import exec_sql, fetch_all, fetch_one, insert_returning_id, transaction
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

LOGGER = logging.getLogger(__name__)


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class AuditStore(ABC):
    """
    Persistence port for the scoring engine. Every operation in fsqa_service
    takes one of these; nothing holds a global handle.
    """

    # --- catalog (read) ---
    @abstractmethod
    def get_facility(self, facility_id: int) -> Optional[Facility]:
        pass

    @abstractmethod
    def list_facilities(self, active_only: bool = True) -> List[Facility]:
        """Ordered by name."""
        pass

    @abstractmethod
    def applicable_modules(self, facility_id: int) -> List[Module]:
        pass

    @abstractmethod
    def applicable_questions(self, facility_id: int) -> List[Question]:
        """Every question under a module marked applicable for the facility."""
        pass

    @abstractmethod
    def get_question(self, question_id: int) -> Optional[Question]:
        pass

    # --- catalog (admin) ---
    @abstractmethod
    def add_facility(self, code: str, name: str, is_active: bool = True) -> int:
        pass

    @abstractmethod
    def add_module(self, code: str, name: str) -> int:
        pass

    @abstractmethod
    def add_question(
        self,
        module_id: int,
        question_code: str,
        question_text: str,
        points: int,
        is_auto_fail: bool = False,
        sort_order: int = 0,
        required_sop: Optional[str] = None,
        responsible_role: Optional[str] = None,
    ) -> int:
        pass

    @abstractmethod
    def set_module_applicability(self, facility_id: int, module_id: int, is_applicable: bool = True) -> None:
        pass

    @abstractmethod
    def set_requirement_status(self, facility_id: int, requirement_code: str, status: str) -> None:
        pass

    @abstractmethod
    def add_chemical_application(
        self,
        product_name: str,
        expected_residue_level_ppm: Optional[float],
        mrl_ppm: Optional[float],
        user_id: Optional[int] = None,
        facility_id: Optional[int] = None,
        active_ingredient: str = "",
        application_date: Optional[str] = None,
    ) -> int:
        pass

    # --- sessions + responses ---
    @abstractmethod
    def insert_session(self, facility_id: int, total_points: int, user_id: Optional[int] = None) -> int:
        pass

    @abstractmethod
    def get_session(self, session_id: int) -> Optional[Session]:
        pass

    @abstractmethod
    def list_sessions(self, facility_id: Optional[int] = None, limit: int = 50) -> List[Session]:
        """Newest first."""
        pass

    @abstractmethod
    def update_session_score(
        self, session_id: int, earned_points: int, score_pct: int, has_auto_fail: bool, grade: str
    ) -> None:
        pass

    @abstractmethod
    def upsert_responses(self, responses: List[Response]) -> int:
        """
        Insert or overwrite by (session_id, question_id), in order, as one
        unit of work. Returns the number of entries applied.
        """
        pass

    @abstractmethod
    def list_responses(self, session_id: int) -> List[Response]:
        pass

    # --- readiness ---
    @abstractmethod
    def list_requirement_statuses(self, facility_id: int) -> List[RequirementStatus]:
        pass

    @abstractmethod
    def insert_snapshot(self, snapshot: ReadinessSnapshot) -> int:
        """Append-only."""
        pass

    @abstractmethod
    def list_snapshots(self, facility_id: int, limit: int = 10) -> List[ReadinessSnapshot]:
        """Newest first."""
        pass

    # --- residue ---
    @abstractmethod
    def list_chemical_applications(
        self, user_id: Optional[int] = None, facility_id: Optional[int] = None
    ) -> List[ChemicalApplication]:
        pass

    # --- findings ---
    @abstractmethod
    def count_findings(self, session_id: int) -> int:
        pass

    @abstractmethod
    def insert_findings(self, findings: List[Finding]) -> List[Finding]:
        """Returns the findings with id/created_at filled in."""
        pass

    @abstractmethod
    def list_findings(
        self,
        session_id: Optional[int] = None,
        facility_id: Optional[int] = None,
        status: Optional[str] = None,
    ) -> List[Finding]:
        pass


# =========================
# Row -> record
# =========================
def _opt_int(v) -> Optional[int]:
    return None if v is None else int(v)


def _opt_bool(v) -> Optional[bool]:
    return None if v is None else bool(v)


def _opt_float(v) -> Optional[float]:
    return None if v is None else float(v)


def _opt_str(v) -> Optional[str]:
    return None if v is None else str(v)


def _facility(r: RowMapping) -> Facility:
    return Facility(id=int(r["id"]), code=str(r["code"]), name=str(r["name"]), is_active=bool(r["is_active"]))


def _module(r: RowMapping) -> Module:
    return Module(id=int(r["id"]), code=str(r["code"]), name=str(r["name"]))


def _question(r: RowMapping) -> Question:
    return Question(
        id=int(r["id"]),
        module_id=int(r["module_id"]),
        question_code=str(r["question_code"]),
        question_text=str(r["question_text"]),
        points=int(r["points"]),
        is_auto_fail=bool(r["is_auto_fail"]),
        sort_order=int(r["sort_order"] or 0),
        required_sop=r["required_sop"],
        responsible_role=r["responsible_role"],
    )


def _session(r: RowMapping) -> Session:
    return Session(
        id=int(r["id"]),
        facility_id=int(r["facility_id"]),
        total_points=int(r["total_points"]),
        user_id=_opt_int(r["user_id"]),
        simulation_date=_opt_str(r["simulation_date"]),
        status=str(r["status"]),
        earned_points=_opt_int(r["earned_points"]),
        score_pct=_opt_int(r["score_pct"]),
        has_auto_fail=_opt_bool(r["has_auto_fail"]),
        grade=r["grade"],
    )


def _response(r: RowMapping) -> Response:
    return Response(
        id=int(r["id"]),
        session_id=int(r["simulation_id"]),
        question_id=int(r["question_id"]),
        score=int(r["score"]),
        notes=r["notes"],
        evidence=r["evidence_url"],
    )


def _snapshot(r: RowMapping) -> ReadinessSnapshot:
    return ReadinessSnapshot(
        id=int(r["id"]),
        facility_id=int(r["facility_id"]),
        snapshot_date=str(r["snapshot_date"]),
        total=int(r["total_required"]),
        current=int(r["current_count"]),
        outdated=int(r["outdated_count"]),
        missing=int(r["missing_count"]),
        not_applicable=int(r["not_applicable_count"]),
        readiness_pct=int(r["readiness_pct"]),
        triggered_by=_opt_int(r["triggered_by"]),
    )


def _application(r: RowMapping) -> ChemicalApplication:
    return ChemicalApplication(
        id=int(r["id"]),
        product_name=str(r["product_name"]),
        expected_residue_level_ppm=_opt_float(r["expected_residue_level_ppm"]),
        mrl_ppm=_opt_float(r["mrl_ppm"]),
        user_id=_opt_int(r["user_id"]),
        facility_id=_opt_int(r["facility_id"]),
        active_ingredient=r["active_ingredient"] or "",
        application_date=_opt_str(r["application_date"]),
    )


def _finding(r: RowMapping) -> Finding:
    return Finding(
        id=int(r["id"]),
        session_id=int(r["simulation_id"]),
        question_id=int(r["question_id"]),
        facility_id=int(r["facility_id"]),
        finding_type=str(r["finding_type"]),
        severity=str(r["severity"]),
        description=str(r["description"]),
        evidence_notes=r["evidence_notes"],
        required_sop_code=r["required_sop_code"],
        is_auto_fail=bool(r["is_auto_fail"]),
        status=str(r["status"]),
        created_by=_opt_int(r["created_by"]),
        created_at=_opt_str(r["created_at"]),
    )


# =========================
# DB bootstrap (SQLite dev)
# =========================
SQLITE_TABLES = [
    """
    CREATE TABLE IF NOT EXISTS facilities (
      id INTEGER PRIMARY KEY AUTOINCREMENT,
      code TEXT UNIQUE NOT NULL,
      name TEXT NOT NULL,
      is_active INTEGER NOT NULL DEFAULT 1,
      created_at TEXT NOT NULL
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS audit_modules (
      id INTEGER PRIMARY KEY AUTOINCREMENT,
      code TEXT UNIQUE NOT NULL,
      name TEXT NOT NULL
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS facility_modules (
      id INTEGER PRIMARY KEY AUTOINCREMENT,
      facility_id INTEGER NOT NULL,
      module_id INTEGER NOT NULL,
      is_applicable INTEGER NOT NULL DEFAULT 1,
      UNIQUE(facility_id, module_id)
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS audit_questions (
      id INTEGER PRIMARY KEY AUTOINCREMENT,
      module_id INTEGER NOT NULL,
      question_code TEXT NOT NULL,
      question_text TEXT NOT NULL,
      points INTEGER NOT NULL CHECK (points > 0),
      is_auto_fail INTEGER NOT NULL DEFAULT 0,
      sort_order INTEGER NOT NULL DEFAULT 0,
      required_sop TEXT NULL,
      responsible_role TEXT NULL
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS audit_simulations (
      id INTEGER PRIMARY KEY AUTOINCREMENT,
      facility_id INTEGER NOT NULL,
      user_id INTEGER NULL,
      simulation_date TEXT NOT NULL,
      status TEXT NOT NULL DEFAULT 'in_progress',
      total_points INTEGER NOT NULL DEFAULT 0,
      earned_points INTEGER NULL,
      score_pct INTEGER NULL,
      has_auto_fail INTEGER NULL,
      grade TEXT NULL
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS audit_responses (
      id INTEGER PRIMARY KEY AUTOINCREMENT,
      simulation_id INTEGER NOT NULL,
      question_id INTEGER NOT NULL,
      score INTEGER NOT NULL,
      notes TEXT NULL,
      evidence_url TEXT NULL,
      updated_at TEXT NOT NULL,
      UNIQUE(simulation_id, question_id)
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS audit_findings (
      id INTEGER PRIMARY KEY AUTOINCREMENT,
      simulation_id INTEGER NOT NULL,
      question_id INTEGER NOT NULL,
      facility_id INTEGER NOT NULL,
      finding_type TEXT NOT NULL,
      severity TEXT NOT NULL,
      description TEXT NOT NULL,
      evidence_notes TEXT NULL,
      required_sop_code TEXT NULL,
      is_auto_fail INTEGER NOT NULL DEFAULT 0,
      status TEXT NOT NULL DEFAULT 'open',
      created_by INTEGER NULL,
      created_at TEXT NOT NULL
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS requirement_status (
      id INTEGER PRIMARY KEY AUTOINCREMENT,
      facility_id INTEGER NOT NULL,
      requirement_code TEXT NOT NULL,
      status TEXT NOT NULL,
      updated_at TEXT NOT NULL,
      UNIQUE(facility_id, requirement_code)
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS readiness_snapshots (
      id INTEGER PRIMARY KEY AUTOINCREMENT,
      facility_id INTEGER NOT NULL,
      snapshot_date TEXT NOT NULL,
      total_required INTEGER NOT NULL,
      current_count INTEGER NOT NULL,
      outdated_count INTEGER NOT NULL,
      missing_count INTEGER NOT NULL,
      not_applicable_count INTEGER NOT NULL,
      readiness_pct INTEGER NOT NULL,
      triggered_by INTEGER NULL
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS chemical_applications (
      id INTEGER PRIMARY KEY AUTOINCREMENT,
      user_id INTEGER NULL,
      facility_id INTEGER NULL,
      product_name TEXT NOT NULL,
      active_ingredient TEXT NOT NULL DEFAULT '',
      application_date TEXT NULL,
      mrl_ppm REAL NULL,
      expected_residue_level_ppm REAL NULL,
      created_at TEXT NOT NULL
    );
    """,
]


class SqlAuditStore(AuditStore):
    """AuditStore over SQLAlchemy text SQL. SQLite for dev, Postgres via schema.sql."""

    def __init__(self, engine: Engine):
        self.engine = engine

    def bootstrap(self) -> None:
        if self.engine.dialect.name != "sqlite":
            LOGGER.info("Skipping bootstrap on %s; apply schema.sql instead", self.engine.dialect.name)
            return
        for ddl in SQLITE_TABLES:
            exec_sql(self.engine, ddl)

    # --- catalog (read) ---
    def get_facility(self, facility_id: int) -> Optional[Facility]:
        row = fetch_one(self.engine, "SELECT * FROM facilities WHERE id=:f", {"f": int(facility_id)})
        return _facility(row) if row else None

    def list_facilities(self, active_only: bool = True) -> List[Facility]:
        sql = "SELECT * FROM facilities"
        params: dict = {}
        if active_only:
            sql += " WHERE is_active=:a"
            params["a"] = True
        sql += " ORDER BY name"
        return [_facility(r) for r in fetch_all(self.engine, sql, params)]

    def applicable_modules(self, facility_id: int) -> List[Module]:
        rows = fetch_all(
            self.engine,
            """
            SELECT am.id, am.code, am.name
            FROM audit_modules am
            JOIN facility_modules fm ON fm.module_id = am.id
            WHERE fm.facility_id=:f AND fm.is_applicable=:a
            ORDER BY am.code
            """,
            {"f": int(facility_id), "a": True},
        )
        return [_module(r) for r in rows]

    def applicable_questions(self, facility_id: int) -> List[Question]:
        rows = fetch_all(
            self.engine,
            """
            SELECT aq.*
            FROM audit_questions aq
            JOIN facility_modules fm ON fm.module_id = aq.module_id
            WHERE fm.facility_id=:f AND fm.is_applicable=:a
            ORDER BY aq.sort_order, aq.question_code
            """,
            {"f": int(facility_id), "a": True},
        )
        return [_question(r) for r in rows]

    def get_question(self, question_id: int) -> Optional[Question]:
        row = fetch_one(self.engine, "SELECT * FROM audit_questions WHERE id=:q", {"q": int(question_id)})
        return _question(row) if row else None

    # --- catalog (admin) ---
    def add_facility(self, code: str, name: str, is_active: bool = True) -> int:
        return insert_returning_id(
            self.engine,
            "INSERT INTO facilities(code, name, is_active, created_at) VALUES(:c,:n,:a,:t) RETURNING id",
            {"c": code, "n": name, "a": bool(is_active), "t": utc_now_iso()},
        )

    def add_module(self, code: str, name: str) -> int:
        return insert_returning_id(
            self.engine,
            "INSERT INTO audit_modules(code, name) VALUES(:c,:n) RETURNING id",
            {"c": code, "n": name},
        )

    def add_question(
        self,
        module_id: int,
        question_code: str,
        question_text: str,
        points: int,
        is_auto_fail: bool = False,
        sort_order: int = 0,
        required_sop: Optional[str] = None,
        responsible_role: Optional[str] = None,
    ) -> int:
        return insert_returning_id(
            self.engine,
            """
            INSERT INTO audit_questions(module_id, question_code, question_text, points, is_auto_fail,
                                        sort_order, required_sop, responsible_role)
            VALUES(:m,:c,:t,:p,:af,:s,:sop,:role) RETURNING id
            """,
            {
                "m": int(module_id),
                "c": question_code,
                "t": question_text,
                "p": int(points),
                "af": bool(is_auto_fail),
                "s": int(sort_order),
                "sop": required_sop,
                "role": responsible_role,
            },
        )

    def set_module_applicability(self, facility_id: int, module_id: int, is_applicable: bool = True) -> None:
        with transaction(self.engine) as conn:
            conn.execute(
                text("DELETE FROM facility_modules WHERE facility_id=:f AND module_id=:m"),
                {"f": int(facility_id), "m": int(module_id)},
            )
            conn.execute(
                text("INSERT INTO facility_modules(facility_id, module_id, is_applicable) VALUES(:f,:m,:a)"),
                {"f": int(facility_id), "m": int(module_id), "a": bool(is_applicable)},
            )

    def set_requirement_status(self, facility_id: int, requirement_code: str, status: str) -> None:
        with transaction(self.engine) as conn:
            conn.execute(
                text("DELETE FROM requirement_status WHERE facility_id=:f AND requirement_code=:r"),
                {"f": int(facility_id), "r": requirement_code},
            )
            conn.execute(
                text("""
                INSERT INTO requirement_status(facility_id, requirement_code, status, updated_at)
                VALUES(:f,:r,:s,:t)
                """),
                {"f": int(facility_id), "r": requirement_code, "s": status, "t": utc_now_iso()},
            )

    def add_chemical_application(
        self,
        product_name: str,
        expected_residue_level_ppm: Optional[float],
        mrl_ppm: Optional[float],
        user_id: Optional[int] = None,
        facility_id: Optional[int] = None,
        active_ingredient: str = "",
        application_date: Optional[str] = None,
    ) -> int:
        return insert_returning_id(
            self.engine,
            """
            INSERT INTO chemical_applications(user_id, facility_id, product_name, active_ingredient,
                                              application_date, mrl_ppm, expected_residue_level_ppm, created_at)
            VALUES(:u,:f,:p,:ai,:d,:mrl,:exp,:t) RETURNING id
            """,
            {
                "u": user_id,
                "f": facility_id,
                "p": product_name,
                "ai": active_ingredient,
                "d": application_date,
                "mrl": mrl_ppm,
                "exp": expected_residue_level_ppm,
                "t": utc_now_iso(),
            },
        )

    # --- sessions + responses ---
    def insert_session(self, facility_id: int, total_points: int, user_id: Optional[int] = None) -> int:
        return insert_returning_id(
            self.engine,
            """
            INSERT INTO audit_simulations(facility_id, user_id, simulation_date, status, total_points)
            VALUES(:f,:u,:t,'in_progress',:p) RETURNING id
            """,
            {"f": int(facility_id), "u": user_id, "t": utc_now_iso(), "p": int(total_points)},
        )

    def get_session(self, session_id: int) -> Optional[Session]:
        row = fetch_one(self.engine, "SELECT * FROM audit_simulations WHERE id=:s", {"s": int(session_id)})
        return _session(row) if row else None

    def list_sessions(self, facility_id: Optional[int] = None, limit: int = 50) -> List[Session]:
        sql = "SELECT * FROM audit_simulations WHERE 1=1"
        params: dict = {"lim": int(limit)}
        if facility_id is not None:
            sql += " AND facility_id=:f"
            params["f"] = int(facility_id)
        sql += " ORDER BY simulation_date DESC, id DESC LIMIT :lim"
        return [_session(r) for r in fetch_all(self.engine, sql, params)]

    def update_session_score(
        self, session_id: int, earned_points: int, score_pct: int, has_auto_fail: bool, grade: str
    ) -> None:
        exec_sql(
            self.engine,
            """
            UPDATE audit_simulations
            SET earned_points=:e, score_pct=:p, has_auto_fail=:af, grade=:g, status='completed'
            WHERE id=:s
            """,
            {"e": int(earned_points), "p": int(score_pct), "af": bool(has_auto_fail), "g": grade, "s": int(session_id)},
        )

    def upsert_responses(self, responses: List[Response]) -> int:
        now = utc_now_iso()
        with transaction(self.engine) as conn:
            for r in responses:
                params = {
                    "s": int(r.session_id),
                    "q": int(r.question_id),
                    "sc": int(r.score),
                    "n": r.notes,
                    "ev": r.evidence,
                    "t": now,
                }
                existing = conn.execute(
                    text("SELECT id FROM audit_responses WHERE simulation_id=:s AND question_id=:q"),
                    {"s": params["s"], "q": params["q"]},
                ).first()
                if existing:
                    conn.execute(
                        text("""
                        UPDATE audit_responses SET score=:sc, notes=:n, evidence_url=:ev, updated_at=:t
                        WHERE simulation_id=:s AND question_id=:q
                        """),
                        params,
                    )
                else:
                    conn.execute(
                        text("""
                        INSERT INTO audit_responses(simulation_id, question_id, score, notes, evidence_url, updated_at)
                        VALUES(:s,:q,:sc,:n,:ev,:t)
                        """),
                        params,
                    )
        return len(responses)

    def list_responses(self, session_id: int) -> List[Response]:
        rows = fetch_all(
            self.engine,
            "SELECT * FROM audit_responses WHERE simulation_id=:s ORDER BY id",
            {"s": int(session_id)},
        )
        return [_response(r) for r in rows]

    # --- readiness ---
    def list_requirement_statuses(self, facility_id: int) -> List[RequirementStatus]:
        rows = fetch_all(
            self.engine,
            "SELECT facility_id, requirement_code, status FROM requirement_status WHERE facility_id=:f ORDER BY requirement_code",
            {"f": int(facility_id)},
        )
        return [RequirementStatus(int(r["facility_id"]), str(r["requirement_code"]), str(r["status"])) for r in rows]

    def insert_snapshot(self, snapshot: ReadinessSnapshot) -> int:
        return insert_returning_id(
            self.engine,
            """
            INSERT INTO readiness_snapshots(facility_id, snapshot_date, total_required, current_count,
                                            outdated_count, missing_count, not_applicable_count,
                                            readiness_pct, triggered_by)
            VALUES(:f,:d,:tot,:cur,:out,:mis,:na,:pct,:by) RETURNING id
            """,
            {
                "f": int(snapshot.facility_id),
                "d": snapshot.snapshot_date,
                "tot": snapshot.total,
                "cur": snapshot.current,
                "out": snapshot.outdated,
                "mis": snapshot.missing,
                "na": snapshot.not_applicable,
                "pct": snapshot.readiness_pct,
                "by": snapshot.triggered_by,
            },
        )

    def list_snapshots(self, facility_id: int, limit: int = 10) -> List[ReadinessSnapshot]:
        rows = fetch_all(
            self.engine,
            "SELECT * FROM readiness_snapshots WHERE facility_id=:f ORDER BY snapshot_date DESC, id DESC LIMIT :lim",
            {"f": int(facility_id), "lim": int(limit)},
        )
        return [_snapshot(r) for r in rows]

    # --- residue ---
    def list_chemical_applications(
        self, user_id: Optional[int] = None, facility_id: Optional[int] = None
    ) -> List[ChemicalApplication]:
        sql = "SELECT * FROM chemical_applications WHERE 1=1"
        params: dict = {}
        if user_id is not None:
            sql += " AND user_id=:u"
            params["u"] = int(user_id)
        if facility_id is not None:
            sql += " AND facility_id=:f"
            params["f"] = int(facility_id)
        sql += " ORDER BY id"
        return [_application(r) for r in fetch_all(self.engine, sql, params)]

    # --- findings ---
    def count_findings(self, session_id: int) -> int:
        row = fetch_one(
            self.engine,
            "SELECT COUNT(*) AS cnt FROM audit_findings WHERE simulation_id=:s",
            {"s": int(session_id)},
        )
        return int(row["cnt"]) if row else 0

    def insert_findings(self, findings: List[Finding]) -> List[Finding]:
        now = utc_now_iso()
        saved: List[Finding] = []
        with transaction(self.engine) as conn:
            for f in findings:
                new_id = conn.execute(
                    text("""
                    INSERT INTO audit_findings(simulation_id, question_id, facility_id, finding_type, severity,
                                               description, evidence_notes, required_sop_code, is_auto_fail,
                                               status, created_by, created_at)
                    VALUES(:s,:q,:f,:ft,:sev,:d,:ev,:sop,:af,:st,:by,:t) RETURNING id
                    """),
                    {
                        "s": int(f.session_id),
                        "q": int(f.question_id),
                        "f": int(f.facility_id),
                        "ft": f.finding_type,
                        "sev": f.severity,
                        "d": f.description,
                        "ev": f.evidence_notes,
                        "sop": f.required_sop_code,
                        "af": bool(f.is_auto_fail),
                        "st": f.status,
                        "by": f.created_by,
                        "t": now,
                    },
                ).scalar_one()
                saved.append(Finding(**{**f.__dict__, "id": int(new_id), "created_at": now}))
        return saved

    def list_findings(
        self,
        session_id: Optional[int] = None,
        facility_id: Optional[int] = None,
        status: Optional[str] = None,
    ) -> List[Finding]:
        sql = "SELECT * FROM audit_findings WHERE 1=1"
        params: dict = {}
        if session_id is not None:
            sql += " AND simulation_id=:s"
            params["s"] = int(session_id)
        if facility_id is not None:
            sql += " AND facility_id=:f"
            params["f"] = int(facility_id)
        if status:
            sql += " AND status=:st"
            params["st"] = status
        sql += """
         ORDER BY CASE severity WHEN 'critical' THEN 1 WHEN 'major' THEN 2 WHEN 'minor' THEN 3 ELSE 4 END,
                  created_at DESC, id DESC
        """
        return [_finding(r) for r in fetch_all(self.engine, sql, params)]
