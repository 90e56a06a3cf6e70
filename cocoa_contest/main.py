from __future__ import annotations

import json
import secrets
import sqlite3
from datetime import datetime
from html import escape
from typing import Any, Dict, List

from fastapi import Body, FastAPI, Form, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse, Response
from loguru import logger
from pydantic import ValidationError

from .config import configure_logging, get_settings
from .db import EVALUATION_TABLES, db, init_db, load_evaluations_dataframe, sha256
from .physical import evaluate_physical
from .results import aggregate_results, results_to_csv
from .samples import (
    InvalidTransition,
    SampleCategory,
    SampleStatus,
    ensure_approvable,
    ensure_transition,
    generate_tracking_code,
    internal_code,
    needs_physical_evaluation,
)
from .schemas import (
    CocoaSensorySheet,
    EvaluationType,
    JudgeAssignmentRequest,
    PhysicalEvaluationInput,
    RoundName,
    SampleRegistration,
)
from .scoring import ScoringError, final_rating, score_cocoa, score_sheet, sheet_model_for

app = FastAPI(title="Cocoa Contest")

JUDGEABLE_STATUSES = (SampleStatus.APPROVED.value, SampleStatus.EVALUATED.value)
STAGE_SENSORY = "sensory"
STAGE_FINAL = "final"


def now_iso() -> str:
    return datetime.utcnow().isoformat(timespec="seconds")


@app.on_event("startup")
def _startup():
    settings = get_settings()
    configure_logging(settings)
    init_db(settings.db_path)
    logger.info(f"Cocoa contest ready (db={settings.db_path})")


@app.exception_handler(ScoringError)
@app.exception_handler(InvalidTransition)
async def _domain_error(_request: Request, exc: ValueError):
    return JSONResponse(status_code=422, content={"detail": str(exc)})


def _error_details(errors) -> List[Dict[str, Any]]:
    # rejected inputs (NaN, inf) are not valid JSON, so never echo them back
    return jsonable_encoder([{k: v for k, v in e.items() if k in ("type", "loc", "msg")} for e in errors])


@app.exception_handler(ValidationError)
async def _sheet_validation_error(_request: Request, exc: ValidationError):
    return JSONResponse(status_code=422, content={"detail": _error_details(exc.errors())})


@app.exception_handler(RequestValidationError)
async def _request_validation_error(_request: Request, exc: RequestValidationError):
    return JSONResponse(status_code=422, content={"detail": _error_details(exc.errors())})


def require_admin(contest_id: int, admin_password: str) -> None:
    with db() as conn:
        row = conn.execute("SELECT admin_pw_hash FROM contests WHERE id=?", (contest_id,)).fetchone()
        if not row:
            raise HTTPException(status_code=404, detail="Contest not found.")
        if sha256(admin_password) != row["admin_pw_hash"]:
            logger.warning(f"Rejected admin password for contest {contest_id}")
            raise HTTPException(status_code=403, detail="Invalid admin password.")


def require_judge(contest_id: int, judge_id: int, token: str) -> sqlite3.Row:
    with db() as conn:
        row = conn.execute(
            "SELECT id, judge_name FROM judges WHERE id=? AND contest_id=? AND judge_token=?",
            (judge_id, contest_id, token),
        ).fetchone()
    if not row:
        raise HTTPException(403, "Invalid judge session.")
    return row


def get_contest(conn: sqlite3.Connection, contest_id: int) -> sqlite3.Row:
    contest = conn.execute("SELECT * FROM contests WHERE id=?", (contest_id,)).fetchone()
    if not contest:
        raise HTTPException(404, "Contest not found.")
    return contest


def get_sample(conn: sqlite3.Connection, contest_id: int, sample_id: int) -> sqlite3.Row:
    sample = conn.execute(
        "SELECT * FROM samples WHERE id=? AND contest_id=?", (sample_id, contest_id)
    ).fetchone()
    if not sample:
        raise HTTPException(404, "Sample not found.")
    return sample


def set_status(conn: sqlite3.Connection, sample_id: int, status: SampleStatus) -> None:
    conn.execute(
        "UPDATE samples SET status=?, updated_at=? WHERE id=?", (status.value, now_iso(), sample_id)
    )


# -----------------------
# UI helpers
# -----------------------
def page(title: str, body: str) -> HTMLResponse:
    html = f"""
    <html>
      <head>
        <title>{escape(title)}</title>
        <meta name="viewport" content="width=device-width, initial-scale=1.0">
        <style>
          body {{ font-family: system-ui, Arial; max-width: 980px; margin: 0 auto; padding: 22px; }}
          input, textarea, button, select {{ font-size: 16px; padding: 10px; }}
          .card {{ border: 1px solid #ddd; border-radius: 12px; padding: 16px; margin: 16px 0; }}
          .row {{ display: flex; gap: 12px; flex-wrap: wrap; align-items: center; }}
          .row > * {{ flex: 1; min-width: 220px; }}
          table {{ border-collapse: collapse; width: 100%; }}
          th, td {{ border: 1px solid #ddd; padding: 8px; }}
          th {{ text-align: left; background: #f7f7f7; }}
          .muted {{ color: #666; }}
          .pill {{ display:inline-block; padding:4px 10px; border:1px solid #ddd; border-radius:999px; }}
          a {{ text-decoration: none; }}
          .danger {{ color: #b00020; }}
          .ok {{ color: #2e7d32; }}
        </style>
      </head>
      <body>
        <h1>{escape(title)}</h1>
        {body}
      </body>
    </html>
    """
    return HTMLResponse(html)


def message(title: str, text: str, css: str = "danger") -> HTMLResponse:
    return page(title, f'<div class="card"><p class="{css}">{escape(text)}</p></div>')


# -----------------------
# Routes: Home
# -----------------------
@app.get("/", response_class=HTMLResponse)
def home():
    return page(
        "Cocoa Contest",
        """
        <div class="card">
          <p><a href="/admin">Director</a> | <a href="/judge">Judge</a></p>
          <p class="muted">
            Participants register cocoa bean, cocoa liquor and chocolate samples and get a tracking code.
            Bean samples are physically screened, then judges fill sensory sheets that are reduced
            to a 0-10 quality score. Results are averaged per sample and ranked per contest.
          </p>
        </div>
        """,
    )


# -----------------------
# Routes: Admin
# -----------------------
@app.get("/admin", response_class=HTMLResponse)
def admin_home():
    with db() as conn:
        contests = conn.execute("SELECT * FROM contests ORDER BY id DESC").fetchall()

    rows = ""
    for c in contests:
        rows += f"""
        <tr>
          <td>{c["id"]}</td>
          <td>{escape(c["name"])}</td>
          <td><span class="pill">{c["join_code"]}</span></td>
          <td>{'Locked' if c["locked"] else 'Open'}</td>
          <td><a href="/admin/contest/{c['id']}">Open</a> | <a href="/contest/{c['id']}/register">Registration</a></td>
        </tr>
        """

    body = f"""
    <div class="card">
      <h2>Create Contest</h2>
      <form method="post" action="/admin/create">
        <div class="row">
          <input name="contest_name" placeholder="Contest name (e.g., National Cocoa Awards)" required />
          <input name="admin_password" placeholder="Admin password" type="password" required />
        </div>
        <button type="submit">Create</button>
      </form>
      <p class="muted">Save the admin password. It is needed to receive samples, lock and compute results.</p>
    </div>

    <div class="card">
      <h2>Existing Contests</h2>
      <table>
        <thead><tr><th>ID</th><th>Name</th><th>Join Code</th><th>Status</th><th></th></tr></thead>
        <tbody>{rows or '<tr><td colspan="5" class="muted">No contests yet.</td></tr>'}</tbody>
      </table>
    </div>
    """
    return page("Director", body)


@app.post("/admin/create")
def admin_create(contest_name: str = Form(...), admin_password: str = Form(...)):
    join_code = secrets.token_urlsafe(6).replace("-", "").replace("_", "")[:8].upper()
    with db() as conn:
        cur = conn.execute(
            "INSERT INTO contests(name, admin_pw_hash, join_code, locked, created_at) VALUES(?,?,?,?,?)",
            (contest_name.strip(), sha256(admin_password), join_code, 0, now_iso()),
        )
        contest_id = cur.lastrowid
    logger.info(f"Created contest {contest_id} ({contest_name.strip()!r})")
    return RedirectResponse(url=f"/admin/contest/{contest_id}", status_code=303)


@app.get("/admin/contest/{contest_id}", response_class=HTMLResponse)
def admin_contest(contest_id: int):
    with db() as conn:
        contest = get_contest(conn, contest_id)
        samples = conn.execute(
            "SELECT * FROM samples WHERE contest_id=? ORDER BY id", (contest_id,)
        ).fetchall()
        judges = conn.execute(
            "SELECT id, judge_name, last_submit_at FROM judges WHERE contest_id=? ORDER BY judge_name",
            (contest_id,),
        ).fetchall()
        assignments = conn.execute(
            """
            SELECT ja.sample_id, ja.judge_id, ja.status, j.judge_name
            FROM judge_assignments ja
            JOIN judges j ON j.id = ja.judge_id
            WHERE j.contest_id=?
            ORDER BY ja.sample_id, j.judge_name
            """,
            (contest_id,),
        ).fetchall()

    sample_rows = ""
    for s in samples:
        sample_rows += (
            f"<tr><td>{s['id']}</td><td>{internal_code(s['created_at'], s['id'])}</td>"
            f"<td>{s['tracking_code']}</td><td>{s['category']}</td>"
            f"<td>{escape(s['participant_name'])}</td><td>{s['status']}</td></tr>"
        )
    if not sample_rows:
        sample_rows = '<tr><td colspan="6" class="muted">No samples yet.</td></tr>'

    judge_rows = ""
    for j in judges:
        judge_rows += (
            f"<tr><td>{j['id']}</td><td>{escape(j['judge_name'])}</td><td>{j['last_submit_at'] or ''}</td></tr>"
        )
    if not judge_rows:
        judge_rows = '<tr><td colspan="3" class="muted">No judges yet.</td></tr>'

    assignment_rows = ""
    for a in assignments:
        assignment_rows += (
            f"<tr><td>{a['sample_id']}</td><td>{escape(a['judge_name'])} (#{a['judge_id']})</td>"
            f"<td>{a['status']}</td></tr>"
        )
    if not assignment_rows:
        assignment_rows = '<tr><td colspan="3" class="muted">No assignments yet.</td></tr>'

    body = f"""
    <div class="card">
      <p><a href="/admin">Back to Director</a></p>
      <h2>{escape(contest["name"])}</h2>
      <p>Join Code: <span class="pill">{contest["join_code"]}</span> (Judges go to <a href="/judge">/judge</a>)</p>
      <p>Status: {'Locked' if contest["locked"] else 'Open'}</p>
      <p>Round: <span class="pill">{contest["stage"]}</span></p>
    </div>

    <div class="card">
      <h3>Samples</h3>
      <table>
        <thead><tr><th>ID</th><th>Internal</th><th>Tracking</th><th>Category</th><th>Participant</th><th>Status</th></tr></thead>
        <tbody>{sample_rows}</tbody>
      </table>
      <form method="post" action="/admin/contest/{contest_id}/sample_action" style="margin-top:12px;">
        <div class="row">
          <input name="sample_id" placeholder="Sample ID" required />
          <select name="action">
            <option value="receive">Mark received</option>
            <option value="approve">Approve for sensory evaluation</option>
            <option value="disqualify">Disqualify</option>
          </select>
          <input name="admin_password" placeholder="Admin password" type="password" required />
        </div>
        <button type="submit">Apply</button>
      </form>
      <p class="muted">Bean samples need a passed physical evaluation before approval.</p>
    </div>

    <div class="card">
      <h3>Judges</h3>
      <table>
        <thead><tr><th>ID</th><th>Judge</th><th>Last Submit</th></tr></thead>
        <tbody>{judge_rows}</tbody>
      </table>
    </div>

    <div class="card">
      <h3>Judge Assignments</h3>
      <table>
        <thead><tr><th>Sample ID</th><th>Judge</th><th>Status</th></tr></thead>
        <tbody>{assignment_rows}</tbody>
      </table>
      <form method="post" action="/admin/contest/{contest_id}/assignments" style="margin-top:12px;">
        <div class="row">
          <input name="sample_id" placeholder="Sample ID" required />
          <input name="judge_id" placeholder="Judge ID" required />
          <select name="action">
            <option value="assign">Assign</option>
            <option value="unassign">Unassign</option>
          </select>
          <input name="admin_password" placeholder="Admin password" type="password" required />
        </div>
        <button type="submit">Apply</button>
      </form>
      <p class="muted">Judges only see and score the approved samples assigned to them.</p>
    </div>

    <div class="card">
      <h3>Controls</h3>
      <form method="post" action="/admin/contest/{contest_id}/toggle_lock" style="margin-bottom:12px;">
        <div class="row">
          <input name="admin_password" placeholder="Admin password" type="password" required />
        </div>
        <button type="submit">{'Unlock' if contest["locked"] else 'Lock'} Contest</button>
      </form>

      <form method="post" action="/admin/contest/{contest_id}/start_final" style="margin-bottom:12px;">
        <div class="row">
          <input name="admin_password" placeholder="Admin password" type="password" required />
        </div>
        <button type="submit">Open Final Round (top samples)</button>
      </form>

      <form method="post" action="/admin/contest/{contest_id}/compute">
        <div class="row">
          <select name="round_name">
            <option value="sensory">Sensory round</option>
            <option value="final">Final round</option>
          </select>
          <input name="admin_password" placeholder="Admin password" type="password" required />
        </div>
        <button type="submit">Compute Results</button>
      </form>
    </div>
    """
    return page(f"Contest #{contest_id}", body)


@app.post("/admin/contest/{contest_id}/toggle_lock")
def admin_toggle_lock(contest_id: int, admin_password: str = Form(...)):
    require_admin(contest_id, admin_password)
    with db() as conn:
        contest = get_contest(conn, contest_id)
        new_val = 0 if contest["locked"] else 1
        conn.execute("UPDATE contests SET locked=? WHERE id=?", (new_val, contest_id))
    logger.info(f"Contest {contest_id} {'locked' if new_val else 'unlocked'}")
    return RedirectResponse(url=f"/admin/contest/{contest_id}", status_code=303)


def apply_sample_action(contest_id: int, sample_id: int, action: str) -> SampleStatus:
    with db() as conn:
        sample = get_sample(conn, contest_id, sample_id)
        if action == "receive":
            new_status = ensure_transition(sample["status"], SampleStatus.RECEIVED.value)
        elif action == "approve":
            new_status = ensure_approvable(sample["category"], sample["status"])
        elif action == "disqualify":
            new_status = ensure_transition(sample["status"], SampleStatus.DISQUALIFIED.value)
        else:
            raise HTTPException(400, f"Unknown action: {action}")
        set_status(conn, sample_id, new_status)
    logger.info(f"Sample {sample_id}: {sample['status']} -> {new_status.value}")
    return new_status


@app.post("/admin/contest/{contest_id}/sample_action")
def admin_sample_action(
    contest_id: int,
    sample_id: int = Form(...),
    action: str = Form(...),
    admin_password: str = Form(...),
):
    require_admin(contest_id, admin_password)
    try:
        apply_sample_action(contest_id, sample_id, action)
    except InvalidTransition as e:
        return message("Sample Action", str(e))
    return RedirectResponse(url=f"/admin/contest/{contest_id}", status_code=303)


@app.post("/api/contest/{contest_id}/samples/{sample_id}/status/{action}")
def api_sample_action(contest_id: int, sample_id: int, action: str, admin_password: str):
    if action not in ("receive", "approve", "disqualify"):
        raise HTTPException(404, "Not found.")
    require_admin(contest_id, admin_password)
    new_status = apply_sample_action(contest_id, sample_id, action)
    return {"sample_id": sample_id, "status": new_status.value}


@app.post("/api/contest/{contest_id}/samples/{sample_id}/physical")
def api_physical_evaluation(
    contest_id: int,
    sample_id: int,
    admin_password: str,
    evaluation: PhysicalEvaluationInput,
):
    require_admin(contest_id, admin_password)
    with db() as conn:
        sample = get_sample(conn, contest_id, sample_id)
        if not needs_physical_evaluation(sample["category"]):
            raise HTTPException(409, f"{sample['category']} samples are not physically screened.")
        if sample["status"] not in (SampleStatus.RECEIVED.value, SampleStatus.PHYSICAL_EVALUATION.value):
            raise HTTPException(409, f"Sample is '{sample['status']}', expected a received sample.")

        verdict = evaluate_physical(evaluation)
        conn.execute(
            """
            INSERT INTO physical_evaluations(sample_id, data, global_evaluation, disqualification_reasons, warnings, evaluated_at)
            VALUES(?,?,?,?,?,?)
            ON CONFLICT(sample_id) DO UPDATE SET
              data=excluded.data, global_evaluation=excluded.global_evaluation,
              disqualification_reasons=excluded.disqualification_reasons,
              warnings=excluded.warnings, evaluated_at=excluded.evaluated_at
            """,
            (
                sample_id,
                evaluation.model_dump_json(),
                verdict.global_evaluation,
                json.dumps(verdict.disqualification_reasons),
                json.dumps(verdict.warnings),
                now_iso(),
            ),
        )

        target = SampleStatus.PHYSICAL_EVALUATION if verdict.passed else SampleStatus.DISQUALIFIED
        if sample["status"] != target.value:
            set_status(conn, sample_id, ensure_transition(sample["status"], target.value))

    if verdict.passed:
        logger.info(f"Sample {sample_id} passed physical evaluation ({len(verdict.warnings)} warnings)")
    else:
        logger.warning(f"Sample {sample_id} disqualified at physical evaluation: {verdict.disqualification_reasons}")
    return {"sample_id": sample_id, "status": target.value, **verdict.to_dict()}


# -----------------------
# Judge assignments
# -----------------------
def assign_judges(contest_id: int, sample_id: int, judge_ids: List[int]) -> List[int]:
    with db() as conn:
        sample = get_sample(conn, contest_id, sample_id)
        if sample["status"] not in JUDGEABLE_STATUSES:
            raise HTTPException(409, f"Sample is '{sample['status']}'; only approved samples can be assigned.")
        assigned = []
        for judge_id in judge_ids:
            judge = conn.execute(
                "SELECT id FROM judges WHERE id=? AND contest_id=?", (judge_id, contest_id)
            ).fetchone()
            if not judge:
                raise HTTPException(404, f"Judge {judge_id} not found in this contest.")
            conn.execute(
                """
                INSERT INTO judge_assignments(sample_id, judge_id, status, assigned_at) VALUES(?,?,?,?)
                ON CONFLICT(sample_id, judge_id) DO NOTHING
                """,
                (sample_id, judge_id, "assigned", now_iso()),
            )
            assigned.append(judge_id)
    logger.info(f"Sample {sample_id} assigned to judges {assigned}")
    return assigned


def unassign_judge(contest_id: int, sample_id: int, judge_id: int) -> None:
    with db() as conn:
        get_sample(conn, contest_id, sample_id)
        cur = conn.execute(
            "DELETE FROM judge_assignments WHERE sample_id=? AND judge_id=?", (sample_id, judge_id)
        )
        if cur.rowcount == 0:
            raise HTTPException(404, "Assignment not found.")
    logger.info(f"Judge {judge_id} unassigned from sample {sample_id}")


def assigned_judge_ids(conn: sqlite3.Connection, sample_id: int) -> List[int]:
    rows = conn.execute(
        "SELECT judge_id FROM judge_assignments WHERE sample_id=? ORDER BY judge_id", (sample_id,)
    ).fetchall()
    return [r["judge_id"] for r in rows]


@app.post("/admin/contest/{contest_id}/assignments")
def admin_assignments(
    contest_id: int,
    sample_id: int = Form(...),
    judge_id: int = Form(...),
    action: str = Form("assign"),
    admin_password: str = Form(...),
):
    require_admin(contest_id, admin_password)
    try:
        if action == "unassign":
            unassign_judge(contest_id, sample_id, judge_id)
        else:
            assign_judges(contest_id, sample_id, [judge_id])
    except HTTPException as e:
        return message("Judge Assignments", str(e.detail))
    return RedirectResponse(url=f"/admin/contest/{contest_id}", status_code=303)


@app.post("/api/contest/{contest_id}/samples/{sample_id}/assignments")
def api_assign_judges(contest_id: int, sample_id: int, admin_password: str, assignment: JudgeAssignmentRequest):
    require_admin(contest_id, admin_password)
    assign_judges(contest_id, sample_id, assignment.judge_ids)
    with db() as conn:
        judge_ids = assigned_judge_ids(conn, sample_id)
    return {"sample_id": sample_id, "judge_ids": judge_ids}


@app.delete("/api/contest/{contest_id}/samples/{sample_id}/assignments/{judge_id}")
def api_unassign_judge(contest_id: int, sample_id: int, judge_id: int, admin_password: str):
    require_admin(contest_id, admin_password)
    unassign_judge(contest_id, sample_id, judge_id)
    with db() as conn:
        judge_ids = assigned_judge_ids(conn, sample_id)
    return {"sample_id": sample_id, "judge_ids": judge_ids}


# -----------------------
# Results and final round
# -----------------------
def compute_contest_results(contest_id: int, round_name: str = STAGE_SENSORY):
    settings = get_settings()
    evaluations = load_evaluations_dataframe(contest_id, round_name=round_name)
    config = settings.final_outliers if round_name == STAGE_FINAL else settings.outliers
    return aggregate_results(evaluations, config=config, top_n=settings.top_n)


def start_final_round(contest_id: int) -> List[Dict[str, Any]]:
    """Snapshot the top of the sensory ranking as finalists and open the final round."""
    with db() as conn:
        contest = get_contest(conn, contest_id)
        if contest["stage"] == STAGE_FINAL:
            raise HTTPException(409, "The final round is already open.")

    try:
        ranking = compute_contest_results(contest_id, STAGE_SENSORY)
    except ValueError as e:
        raise HTTPException(409, str(e))

    finalists = [
        {
            "sample_id": int(r["SampleId"]),
            "tracking_code": r["TrackingCode"],
            "sensory_rank": int(r["Rank"]),
            "sensory_score": float(r["AverageScore"]),
        }
        for _, r in ranking.iterrows()
    ]
    with db() as conn:
        conn.executemany(
            "INSERT INTO finalists(contest_id, sample_id, sensory_rank, sensory_score) VALUES(?,?,?,?)",
            [(contest_id, f["sample_id"], f["sensory_rank"], f["sensory_score"]) for f in finalists],
        )
        conn.execute("UPDATE contests SET stage=? WHERE id=?", (STAGE_FINAL, contest_id))
    logger.info(f"Contest {contest_id} final round opened with {len(finalists)} finalists")
    return finalists


@app.post("/admin/contest/{contest_id}/start_final")
def admin_start_final(contest_id: int, admin_password: str = Form(...)):
    require_admin(contest_id, admin_password)
    try:
        start_final_round(contest_id)
    except HTTPException as e:
        return message("Final Round", str(e.detail))
    return RedirectResponse(url=f"/admin/contest/{contest_id}", status_code=303)


@app.post("/api/contest/{contest_id}/final/start")
def api_start_final(contest_id: int, admin_password: str):
    require_admin(contest_id, admin_password)
    return {"contest_id": contest_id, "stage": STAGE_FINAL, "finalists": start_final_round(contest_id)}


@app.post("/admin/contest/{contest_id}/compute", response_class=HTMLResponse)
def admin_compute(contest_id: int, admin_password: str = Form(...), round_name: RoundName = Form(STAGE_SENSORY)):
    require_admin(contest_id, admin_password)

    try:
        results_df = compute_contest_results(contest_id, round_name)
    except ValueError as e:
        return page(
            "Compute Results",
            f'<div class="card"><p class="danger">Error computing results:</p><pre>{escape(str(e))}</pre>'
            f'<p class="muted">Results need at least one approved {round_name} evaluation.</p></div>',
        )

    result_rows = ""
    for _, r in results_df.iterrows():
        result_rows += (
            f"<tr><td>{int(r['Rank'])}</td><td>{r['TrackingCode']}</td><td>{r['Category']}</td>"
            f"<td>{escape(str(r['Participant']))}</td><td>{r['AverageScore']:.2f}</td>"
            f"<td>{int(r['Evaluations'])}</td><td>{int(r['Outliers'])}</td><td>{r['Awards']}</td></tr>"
        )

    body = f"""
    <div class="card">
      <p><a href="/admin/contest/{contest_id}">Back to Contest</a></p>
      <h2>Results ({round_name} round)</h2>
      <p class="muted">Rank by average score (outlier-filtered). Tie-breakers: latest evaluation, then tracking code.</p>
      <form method="get" action="/admin/contest/{contest_id}/download/results">
        <input type="hidden" name="admin_password" value="{escape(admin_password)}" />
        <input type="hidden" name="round_name" value="{round_name}" />
        <button type="submit">Download Results CSV</button>
      </form>
      <table>
        <thead><tr><th>Rank</th><th>Tracking</th><th>Category</th><th>Participant</th><th>Score</th><th>Evaluations</th><th>Outliers</th><th>Awards</th></tr></thead>
        <tbody>{result_rows}</tbody>
      </table>
    </div>
    """
    return page("Results", body)


@app.get("/admin/contest/{contest_id}/download/results")
def download_results(contest_id: int, admin_password: str, round_name: RoundName = STAGE_SENSORY):
    require_admin(contest_id, admin_password)
    try:
        results_df = compute_contest_results(contest_id, round_name)
    except ValueError as e:
        raise HTTPException(409, str(e))

    filename = f"contest_{contest_id}_{round_name}_results.csv"
    return Response(
        content=results_to_csv(results_df),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@app.get("/api/contest/{contest_id}/results")
def api_results(contest_id: int, admin_password: str, round_name: RoundName = STAGE_SENSORY):
    require_admin(contest_id, admin_password)
    try:
        results_df = compute_contest_results(contest_id, round_name)
    except ValueError as e:
        raise HTTPException(409, str(e))
    records = json.loads(results_df.to_json(orient="records"))
    return {"contest_id": contest_id, "round": round_name, "results": records}


# -----------------------
# Routes: Participant
# -----------------------
def register_sample(contest_id: int, registration: SampleRegistration) -> Dict[str, Any]:
    with db() as conn:
        get_contest(conn, contest_id)

        def exists(code: str) -> bool:
            return conn.execute("SELECT 1 FROM samples WHERE tracking_code=?", (code,)).fetchone() is not None

        tracking_code = generate_tracking_code(exists)
        created = now_iso()
        cur = conn.execute(
            """
            INSERT INTO samples(contest_id, tracking_code, participant_name, category, product_name, origin,
                                status, created_at, updated_at)
            VALUES(?,?,?,?,?,?,?,?,?)
            """,
            (
                contest_id,
                tracking_code,
                registration.participant_name.strip(),
                registration.category,
                registration.product_name.strip(),
                registration.origin.strip(),
                SampleStatus.SUBMITTED.value,
                created,
                created,
            ),
        )
        sample_id = cur.lastrowid
    logger.info(f"Registered {registration.category} sample {sample_id} ({tracking_code}) in contest {contest_id}")
    return {
        "sample_id": sample_id,
        "tracking_code": tracking_code,
        "internal_code": internal_code(created, sample_id),
        "status": SampleStatus.SUBMITTED.value,
    }


@app.get("/contest/{contest_id}/register", response_class=HTMLResponse)
def participant_register_form(contest_id: int):
    with db() as conn:
        contest = get_contest(conn, contest_id)
    options = "".join(f'<option value="{c.value}">{c.value.replace("_", " ")}</option>' for c in SampleCategory)
    body = f"""
    <div class="card">
      <h2>{escape(contest["name"])}</h2>
      <form method="post" action="/contest/{contest_id}/register">
        <div class="row">
          <input name="participant_name" placeholder="Producer / participant name" required />
          <select name="category">{options}</select>
        </div>
        <div class="row">
          <input name="product_name" placeholder="Product or farm name" />
          <input name="origin" placeholder="Origin (country, region)" />
        </div>
        <button type="submit">Register Sample</button>
      </form>
    </div>
    """
    return page("Register Sample", body)


@app.post("/contest/{contest_id}/register", response_class=HTMLResponse)
def participant_register(
    contest_id: int,
    participant_name: str = Form(...),
    category: str = Form(...),
    product_name: str = Form(""),
    origin: str = Form(""),
):
    try:
        registration = SampleRegistration(
            participant_name=participant_name, category=category, product_name=product_name, origin=origin
        )
    except ValidationError:
        return message("Register Sample", "Enter a participant name and pick a sample category.")

    created = register_sample(contest_id, registration)
    body = f"""
    <div class="card">
      <p>Sample registered. Write this tracking code on the package:</p>
      <h2><span class="pill">{created["tracking_code"]}</span></h2>
      <p><a href="/samples/{created["tracking_code"]}">Track this sample</a></p>
    </div>
    """
    return page("Sample Registered", body)


@app.post("/api/contest/{contest_id}/samples", status_code=201)
def api_register_sample(contest_id: int, registration: SampleRegistration):
    return register_sample(contest_id, registration)


def sample_status_payload(tracking_code: str) -> Dict[str, Any]:
    with db() as conn:
        sample = conn.execute(
            """
            SELECT s.*, c.name AS contest_name, c.locked AS contest_locked
            FROM samples s JOIN contests c ON c.id = s.contest_id
            WHERE s.tracking_code=?
            """,
            (tracking_code.strip().upper(),),
        ).fetchone()
        if not sample:
            raise HTTPException(404, "Unknown tracking code.")
        physical = conn.execute(
            "SELECT * FROM physical_evaluations WHERE sample_id=?", (sample["id"],)
        ).fetchone()
        # final round sheets supersede sensory ones once they exist
        scores = []
        for table in (EVALUATION_TABLES[STAGE_FINAL], EVALUATION_TABLES[STAGE_SENSORY]):
            scores = [
                r["overall_quality"]
                for r in conn.execute(
                    f"SELECT overall_quality FROM {table} WHERE sample_id=? AND verdict='Approved'",
                    (sample["id"],),
                ).fetchall()
            ]
            if scores:
                break

    payload: Dict[str, Any] = {
        "tracking_code": sample["tracking_code"],
        "contest": sample["contest_name"],
        "category": sample["category"],
        "status": sample["status"],
        "physical_evaluation": None,
        "final_rating": None,
    }
    if physical:
        payload["physical_evaluation"] = {
            "global_evaluation": physical["global_evaluation"],
            "disqualification_reasons": json.loads(physical["disqualification_reasons"]),
            "warnings": json.loads(physical["warnings"]),
        }
    # scores are published once the director locks the contest
    if sample["contest_locked"] and scores:
        payload["final_rating"] = round(final_rating(scores), 2)
    return payload


@app.get("/samples/{tracking_code}", response_class=HTMLResponse)
def sample_status_page(tracking_code: str):
    info = sample_status_payload(tracking_code)
    extra = ""
    pe = info["physical_evaluation"]
    if pe and pe["disqualification_reasons"]:
        items = "".join(f"<li>{escape(r)}</li>" for r in pe["disqualification_reasons"])
        extra += f'<p class="danger">Physical evaluation:</p><ul>{items}</ul>'
    if info["final_rating"] is not None:
        extra += f'<p class="ok">Final rating: {info["final_rating"]:.2f} / 10</p>'
    body = f"""
    <div class="card">
      <p>Contest: {escape(info["contest"])}</p>
      <p>Category: {info["category"]}</p>
      <p>Status: <span class="pill">{info["status"]}</span></p>
      {extra}
    </div>
    """
    return page(f"Sample {info['tracking_code']}", body)


@app.get("/api/samples/{tracking_code}")
def api_sample_status(tracking_code: str):
    return sample_status_payload(tracking_code)


# -----------------------
# Routes: Judge
# -----------------------
@app.get("/judge", response_class=HTMLResponse)
def judge_home():
    body = """
    <div class="card">
      <form method="post" action="/judge/join">
        <div class="row">
          <input name="judge_name" placeholder="Your name" required />
          <input name="join_code" placeholder="Join code" required />
        </div>
        <button type="submit">Join Contest</button>
      </form>
      <p class="muted">Ask the director for the join code.</p>
    </div>
    """
    return page("Judge", body)


@app.post("/judge/join")
def judge_join(judge_name: str = Form(...), join_code: str = Form(...)):
    judge_name = judge_name.strip()
    join_code = join_code.strip().upper()

    with db() as conn:
        contest = conn.execute("SELECT id, locked FROM contests WHERE join_code=?", (join_code,)).fetchone()
        if not contest:
            return message("Judge", "Invalid join code.")

        if contest["locked"]:
            return message("Judge", "This contest is locked. No evaluations allowed.")

        token = secrets.token_urlsafe(16)

        existing = conn.execute(
            "SELECT id FROM judges WHERE contest_id=? AND judge_name=?",
            (contest["id"], judge_name),
        ).fetchone()

        if existing:
            judge_id = existing["id"]
            conn.execute("UPDATE judges SET judge_token=? WHERE id=?", (token, judge_id))
        else:
            cur = conn.execute(
                "INSERT INTO judges(contest_id, judge_name, judge_token) VALUES(?,?,?)",
                (contest["id"], judge_name, token),
            )
            judge_id = cur.lastrowid

    logger.info(f"Judge {judge_name!r} joined contest {contest['id']}")
    return RedirectResponse(
        url=f"/judge/contest/{contest['id']}?judge_id={judge_id}&token={token}", status_code=303
    )


def judge_samples(contest_id: int, judge_id: int) -> List[Dict[str, Any]]:
    """Samples this judge should score in the contest's current round."""
    with db() as conn:
        contest = get_contest(conn, contest_id)
        if contest["stage"] == STAGE_FINAL:
            rows = conn.execute(
                """
                SELECT s.id, s.tracking_code, s.category, s.created_at, ev.overall_quality, ev.verdict
                FROM finalists f
                JOIN samples s ON s.id = f.sample_id
                LEFT JOIN final_evaluations ev ON ev.sample_id = s.id AND ev.judge_id = ?
                WHERE f.contest_id = ?
                ORDER BY f.sensory_rank
                """,
                (judge_id, contest_id),
            ).fetchall()
        else:
            placeholders = ",".join(["?"] * len(JUDGEABLE_STATUSES))
            rows = conn.execute(
                f"""
                SELECT s.id, s.tracking_code, s.category, s.created_at, ev.overall_quality, ev.verdict
                FROM samples s
                JOIN judge_assignments ja ON ja.sample_id = s.id AND ja.judge_id = ?
                LEFT JOIN sensory_evaluations ev ON ev.sample_id = s.id AND ev.judge_id = ja.judge_id
                WHERE s.contest_id = ? AND s.status IN ({placeholders})
                ORDER BY s.id
                """,
                (judge_id, contest_id, *JUDGEABLE_STATUSES),
            ).fetchall()
    # judges see internal codes only, never the participant
    return [
        {
            "sample_id": r["id"],
            "internal_code": internal_code(r["created_at"], r["id"]),
            "category": r["category"],
            "rule_set": "chocolate" if r["category"] == SampleCategory.CHOCOLATE.value else "cocoa",
            "my_score": r["overall_quality"],
            "my_verdict": r["verdict"],
        }
        for r in rows
    ]


@app.get("/judge/contest/{contest_id}", response_class=HTMLResponse)
def judge_contest(contest_id: int, judge_id: int, token: str):
    judge = require_judge(contest_id, judge_id, token)

    with db() as conn:
        contest = get_contest(conn, contest_id)

    if contest["locked"]:
        return message("Judge", "This contest is locked. Evaluations are closed.")

    stage = contest["stage"]
    samples = judge_samples(contest_id, judge_id)
    if not samples:
        return page("Judge", f'<div class="card">No samples are assigned to you for the {stage} round yet.</div>')

    rows = ""
    for s in samples:
        score = "" if s["my_score"] is None else f"{s['my_score']:.2f} ({s['my_verdict']})"
        rows += (
            f"<tr><td>{s['internal_code']}</td><td>{s['category']}</td><td>{s['rule_set']}</td>"
            f"<td>{score}</td><td><code>POST /api/contest/{contest_id}/samples/{s['sample_id']}/{stage}</code></td></tr>"
        )

    body = f"""
    <div class="card">
      <p><a href="/judge">Back</a></p>
      <h2>{escape(contest["name"])}</h2>
      <p>Judge: <b>{escape(judge["judge_name"])}</b> &middot; Round: <span class="pill">{stage}</span></p>
      <p class="muted">Submit one sheet per sample. Resubmitting replaces your previous sheet.</p>
      <table>
        <thead><tr><th>Sample</th><th>Category</th><th>Sheet</th><th>Your score</th><th>Submit to</th></tr></thead>
        <tbody>{rows}</tbody>
      </table>
    </div>
    """
    return page("Judge Scoring", body)


@app.get("/api/contest/{contest_id}/judge/samples")
def api_judge_samples(contest_id: int, judge_id: int, token: str):
    require_judge(contest_id, judge_id, token)
    return {"contest_id": contest_id, "samples": judge_samples(contest_id, judge_id)}


def store_evaluation(conn: sqlite3.Connection, round_name: str, sample: sqlite3.Row, judge_id: int, payload):
    """Validate, score and upsert one judge's sheet for the given round."""
    settings = get_settings()
    sheet = sheet_model_for(sample["category"]).model_validate(payload)
    result = score_sheet(sample["category"], sheet, threshold=settings.defect_threshold)
    evaluated_at = now_iso()

    conn.execute(
        f"""
        INSERT INTO {EVALUATION_TABLES[round_name]}(sample_id, judge_id, rule_set, sheet, overall_quality,
                                                    defects_total, verdict, disqualification_reasons, evaluated_at)
        VALUES(?,?,?,?,?,?,?,?,?)
        ON CONFLICT(sample_id, judge_id) DO UPDATE SET
          rule_set=excluded.rule_set, sheet=excluded.sheet, overall_quality=excluded.overall_quality,
          defects_total=excluded.defects_total, verdict=excluded.verdict,
          disqualification_reasons=excluded.disqualification_reasons, evaluated_at=excluded.evaluated_at
        """,
        (
            sample["id"],
            judge_id,
            result.rule_set,
            sheet.model_dump_json(),
            result.overall_quality,
            result.defects.total,
            result.verdict,
            json.dumps(result.disqualification_reasons),
            evaluated_at,
        ),
    )
    conn.execute("UPDATE judges SET last_submit_at=? WHERE id=?", (evaluated_at, judge_id))

    if result.disqualified:
        logger.warning(
            f"Sample {sample['id']} disqualified by judge {judge_id} ({round_name}): {result.disqualification_reasons}"
        )
    else:
        logger.info(f"Judge {judge_id} scored sample {sample['id']} ({round_name}): {result.overall_quality:.2f}")
    return result


def read_evaluation(round_name: str, contest_id: int, sample_id: int, judge_id: int) -> Dict[str, Any]:
    # stored values are returned as scored; later threshold changes do not rewrite them
    with db() as conn:
        get_sample(conn, contest_id, sample_id)
        row = conn.execute(
            f"SELECT * FROM {EVALUATION_TABLES[round_name]} WHERE sample_id=? AND judge_id=?",
            (sample_id, judge_id),
        ).fetchone()
    if not row:
        raise HTTPException(404, f"No {round_name} sheet submitted for this sample.")
    return {
        "sample_id": sample_id,
        "judge_id": judge_id,
        "round": round_name,
        "rule_set": row["rule_set"],
        "overall_quality": row["overall_quality"],
        "defects_total": row["defects_total"],
        "verdict": row["verdict"],
        "disqualification_reasons": json.loads(row["disqualification_reasons"]),
        "evaluated_at": row["evaluated_at"],
        "sheet": json.loads(row["sheet"]),
    }


def open_contest(conn: sqlite3.Connection, contest_id: int, sample_id: int) -> sqlite3.Row:
    contest = get_contest(conn, contest_id)
    if contest["locked"]:
        logger.warning(f"Rejected sheet for sample {sample_id}: contest {contest_id} is locked")
        raise HTTPException(409, "This contest is locked. Submission rejected.")
    return contest


@app.post("/api/contest/{contest_id}/samples/{sample_id}/sensory")
def api_submit_sensory(
    contest_id: int,
    sample_id: int,
    judge_id: int,
    token: str,
    payload: Dict[str, Any] = Body(...),
):
    require_judge(contest_id, judge_id, token)

    with db() as conn:
        contest = open_contest(conn, contest_id, sample_id)
        sample = get_sample(conn, contest_id, sample_id)
        if contest["stage"] != STAGE_SENSORY:
            raise HTTPException(409, "The sensory round is closed. Submit final round sheets instead.")
        if sample["status"] not in JUDGEABLE_STATUSES:
            raise HTTPException(409, f"Sample is '{sample['status']}' and cannot be evaluated.")
        if judge_id not in assigned_judge_ids(conn, sample_id):
            raise HTTPException(403, "Sample is not assigned to this judge.")

        result = store_evaluation(conn, STAGE_SENSORY, sample, judge_id, payload)

        if sample["status"] == SampleStatus.APPROVED.value:
            set_status(conn, sample_id, ensure_transition(sample["status"], SampleStatus.EVALUATED.value))
        conn.execute(
            "UPDATE judge_assignments SET status='completed' WHERE sample_id=? AND judge_id=?",
            (sample_id, judge_id),
        )

    return {"sample_id": sample_id, "judge_id": judge_id, **result.to_dict()}


@app.get("/api/contest/{contest_id}/samples/{sample_id}/sensory")
def api_get_sensory(contest_id: int, sample_id: int, judge_id: int, token: str):
    require_judge(contest_id, judge_id, token)
    return read_evaluation(STAGE_SENSORY, contest_id, sample_id, judge_id)


@app.post("/api/contest/{contest_id}/samples/{sample_id}/final")
def api_submit_final(
    contest_id: int,
    sample_id: int,
    judge_id: int,
    token: str,
    payload: Dict[str, Any] = Body(...),
):
    require_judge(contest_id, judge_id, token)

    with db() as conn:
        contest = open_contest(conn, contest_id, sample_id)
        sample = get_sample(conn, contest_id, sample_id)
        if contest["stage"] != STAGE_FINAL:
            raise HTTPException(409, "The final round has not started.")
        finalist = conn.execute(
            "SELECT 1 FROM finalists WHERE contest_id=? AND sample_id=?", (contest_id, sample_id)
        ).fetchone()
        if not finalist:
            raise HTTPException(409, "Sample is not a finalist.")

        result = store_evaluation(conn, STAGE_FINAL, sample, judge_id, payload)

    return {"sample_id": sample_id, "judge_id": judge_id, "round": STAGE_FINAL, **result.to_dict()}


@app.get("/api/contest/{contest_id}/samples/{sample_id}/final")
def api_get_final(contest_id: int, sample_id: int, judge_id: int, token: str):
    require_judge(contest_id, judge_id, token)
    return read_evaluation(STAGE_FINAL, contest_id, sample_id, judge_id)


# -----------------------
# Routes: Scoring preview
# -----------------------
@app.post("/api/scoring/preview/{category}")
def api_scoring_preview(
    category: str, payload: Dict[str, Any] = Body(...), evaluation_type: EvaluationType = "cocoa_mass"
):
    """Score a sheet without storing it (live totals while a judge fills the form)."""
    threshold = get_settings().defect_threshold
    model = sheet_model_for(category)
    sheet = model.model_validate(payload)
    if model is CocoaSensorySheet:
        result = score_cocoa(sheet, evaluation_type=evaluation_type, threshold=threshold)
    else:
        result = score_sheet(category, sheet, threshold=threshold)
    return result.to_dict()
