from urllib.parse import parse_qs, urlparse

import pytest
from fastapi.testclient import TestClient

from cocoa_contest.db import db
from cocoa_contest.main import app

PW = "director-pw"

SHEET = {
    "cacao": 8,
    "bitterness": 6,
    "astringency": 4,
    "caramel_panela": 6,
    "acidity": {"frutal": 2, "acetic": 1, "lactic": 1, "mineral_butyric": 0},
}


@pytest.fixture
def client(tmp_path, monkeypatch):
    monkeypatch.setenv("COCOA_CONTEST_DB", str(tmp_path / "contest.sqlite"))
    with TestClient(app) as c:
        yield c


def create_contest(client, name="National Cocoa Awards"):
    resp = client.post("/admin/create", data={"contest_name": name, "admin_password": PW}, follow_redirects=False)
    assert resp.status_code == 303
    return int(resp.headers["location"].rsplit("/", 1)[-1])


def register(client, contest_id, category="cocoa_beans", participant="Finca La Esperanza"):
    resp = client.post(
        f"/api/contest/{contest_id}/samples",
        json={"participant_name": participant, "category": category, "origin": "Huila"},
    )
    assert resp.status_code == 201
    return resp.json()


def sample_action(client, contest_id, sample_id, action):
    return client.post(
        f"/api/contest/{contest_id}/samples/{sample_id}/status/{action}", params={"admin_password": PW}
    )


def approved_sample(client, contest_id, category="cocoa_beans", participant="Finca La Esperanza"):
    sample = register(client, contest_id, category, participant)
    assert sample_action(client, contest_id, sample["sample_id"], "receive").json()["status"] == "received"
    if category == "cocoa_beans":
        resp = client.post(
            f"/api/contest/{contest_id}/samples/{sample['sample_id']}/physical",
            params={"admin_password": PW},
            json={},
        )
        assert resp.json()["status"] == "physical_evaluation"
    assert sample_action(client, contest_id, sample["sample_id"], "approve").json()["status"] == "approved"
    return sample


def join(client, contest_id, name="Ana"):
    with db() as conn:
        code = conn.execute("SELECT join_code FROM contests WHERE id=?", (contest_id,)).fetchone()["join_code"]
    resp = client.post("/judge/join", data={"judge_name": name, "join_code": code.lower()}, follow_redirects=False)
    assert resp.status_code == 303
    qs = parse_qs(urlparse(resp.headers["location"]).query)
    return {"judge_id": int(qs["judge_id"][0]), "token": qs["token"][0]}


def assign(client, contest_id, sample_id, *judges):
    resp = client.post(
        f"/api/contest/{contest_id}/samples/{sample_id}/assignments",
        params={"admin_password": PW},
        json={"judge_ids": [j["judge_id"] for j in judges]},
    )
    assert resp.status_code == 200
    return resp.json()["judge_ids"]


def submit(client, contest_id, sample_id, judge, sheet):
    return client.post(f"/api/contest/{contest_id}/samples/{sample_id}/sensory", params=judge, json=sheet)


def submit_final(client, contest_id, sample_id, judge, sheet):
    return client.post(f"/api/contest/{contest_id}/samples/{sample_id}/final", params=judge, json=sheet)


def toggle_lock(client, contest_id):
    resp = client.post(f"/admin/contest/{contest_id}/toggle_lock", data={"admin_password": PW}, follow_redirects=False)
    assert resp.status_code == 303


# -----------------------
# Pages
# -----------------------
def test_pages_render(client):
    contest_id = create_contest(client)
    register(client, contest_id)
    assert client.get("/").status_code == 200
    assert "National Cocoa Awards" in client.get("/admin").text
    page = client.get(f"/admin/contest/{contest_id}").text
    assert "Finca La Esperanza" in page
    assert "INT-" in page
    assert client.get(f"/contest/{contest_id}/register").status_code == 200
    assert client.get("/judge").status_code == 200


def test_register_via_form(client):
    contest_id = create_contest(client)
    resp = client.post(
        f"/contest/{contest_id}/register",
        data={"participant_name": "Cacao del Sur", "category": "chocolate"},
    )
    assert resp.status_code == 200
    assert "CC-" in resp.text

    bad = client.post(f"/contest/{contest_id}/register", data={"participant_name": "X", "category": "coffee"})
    assert "pick a sample category" in bad.text


def test_registration_returns_codes(client):
    contest_id = create_contest(client)
    sample = register(client, contest_id)
    assert sample["status"] == "submitted"
    assert sample["tracking_code"].startswith("CC-")
    assert len(sample["tracking_code"]) == len("CC-2025-000000")
    assert sample["internal_code"].endswith("-001")

    status = client.get(f"/api/samples/{sample['tracking_code']}").json()
    assert status["status"] == "submitted"
    assert status["category"] == "cocoa_beans"
    assert client.get("/api/samples/CC-1999-000000").status_code == 404
    assert client.post("/api/contest/99/samples", json={"participant_name": "A", "category": "chocolate"}).status_code == 404


# -----------------------
# Admin
# -----------------------
def test_admin_password_and_unknown_contest(client):
    contest_id = create_contest(client)
    sample = register(client, contest_id)
    resp = client.post(
        f"/api/contest/{contest_id}/samples/{sample['sample_id']}/status/receive",
        params={"admin_password": "wrong"},
    )
    assert resp.status_code == 403
    assert client.get("/api/contest/42/results", params={"admin_password": PW}).status_code == 404


def test_bean_samples_need_physical_evaluation(client):
    contest_id = create_contest(client)
    sample = register(client, contest_id)
    sample_action(client, contest_id, sample["sample_id"], "receive")

    resp = sample_action(client, contest_id, sample["sample_id"], "approve")
    assert resp.status_code == 422
    assert "Cannot move sample" in resp.json()["detail"]


def test_liquor_skips_physical_evaluation(client):
    contest_id = create_contest(client)
    sample = register(client, contest_id, category="cocoa_liquor")
    sample_action(client, contest_id, sample["sample_id"], "receive")
    resp = client.post(
        f"/api/contest/{contest_id}/samples/{sample['sample_id']}/physical",
        params={"admin_password": PW},
        json={},
    )
    assert resp.status_code == 409
    assert sample_action(client, contest_id, sample["sample_id"], "approve").json()["status"] == "approved"


def test_failed_physical_evaluation_disqualifies(client):
    contest_id = create_contest(client)
    sample = register(client, contest_id)
    sample_action(client, contest_id, sample["sample_id"], "receive")

    resp = client.post(
        f"/api/contest/{contest_id}/samples/{sample['sample_id']}/physical",
        params={"admin_password": PW},
        json={"percentage_humidity": 9, "flat_grains": 20},
    )
    body = resp.json()
    assert resp.status_code == 200
    assert body["status"] == "disqualified"
    assert body["global_evaluation"] == "disqualified"
    assert body["disqualification_reasons"] == ["Humidity (9%) outside acceptable range (3.5%-8%)"]
    assert len(body["warnings"]) == 1

    status = client.get(f"/api/samples/{sample['tracking_code']}").json()
    assert status["status"] == "disqualified"
    assert status["physical_evaluation"]["disqualification_reasons"] == body["disqualification_reasons"]
    assert "Humidity" in client.get(f"/samples/{sample['tracking_code']}").text


def test_physical_evaluation_input_is_validated(client):
    contest_id = create_contest(client)
    sample = register(client, contest_id)
    sample_action(client, contest_id, sample["sample_id"], "receive")
    resp = client.post(
        f"/api/contest/{contest_id}/samples/{sample['sample_id']}/physical",
        params={"admin_password": PW},
        json={"well_fermented_beans": 90, "lightly_fermented_beans": 20},
    )
    assert resp.status_code == 422


def test_non_finite_input_is_rejected_without_echo(client):
    contest_id = create_contest(client)
    sample = register(client, contest_id)
    sample_action(client, contest_id, sample["sample_id"], "receive")
    resp = client.post(
        f"/api/contest/{contest_id}/samples/{sample['sample_id']}/physical",
        params={"admin_password": PW},
        content='{"percentage_humidity": NaN}',
        headers={"content-type": "application/json"},
    )
    assert resp.status_code == 422
    detail = resp.json()["detail"]
    assert detail[0]["loc"][-1] == "percentage_humidity"
    assert "input" not in detail[0]


# -----------------------
# Assignments
# -----------------------
def test_assignment_controls_what_a_judge_scores(client):
    contest_id = create_contest(client)
    sample = approved_sample(client, contest_id)
    ana = join(client, contest_id, "Ana")
    bo = join(client, contest_id, "Bo")

    assert client.get(f"/api/contest/{contest_id}/judge/samples", params=ana).json()["samples"] == []
    resp = submit(client, contest_id, sample["sample_id"], ana, SHEET)
    assert resp.status_code == 403
    assert resp.json()["detail"] == "Sample is not assigned to this judge."

    assert assign(client, contest_id, sample["sample_id"], ana, bo) == [ana["judge_id"], bo["judge_id"]]
    # assigning twice keeps a single row per judge
    assert assign(client, contest_id, sample["sample_id"], ana) == [ana["judge_id"], bo["judge_id"]]

    resp = client.delete(
        f"/api/contest/{contest_id}/samples/{sample['sample_id']}/assignments/{bo['judge_id']}",
        params={"admin_password": PW},
    )
    assert resp.json()["judge_ids"] == [ana["judge_id"]]
    assert client.get(f"/api/contest/{contest_id}/judge/samples", params=bo).json()["samples"] == []
    assert submit(client, contest_id, sample["sample_id"], bo, SHEET).status_code == 403
    assert submit(client, contest_id, sample["sample_id"], ana, SHEET).status_code == 200

    with db() as conn:
        status = conn.execute(
            "SELECT status FROM judge_assignments WHERE sample_id=? AND judge_id=?",
            (sample["sample_id"], ana["judge_id"]),
        ).fetchone()["status"]
    assert status == "completed"

    again = client.delete(
        f"/api/contest/{contest_id}/samples/{sample['sample_id']}/assignments/{bo['judge_id']}",
        params={"admin_password": PW},
    )
    assert again.status_code == 404


def test_assignment_rejections(client):
    contest_id = create_contest(client)
    other_contest = create_contest(client, "Regional Cup")
    pending = register(client, contest_id)
    sample = approved_sample(client, contest_id, category="cocoa_liquor")
    ana = join(client, contest_id)
    outsider = join(client, other_contest, "Cy")

    url = f"/api/contest/{contest_id}/samples/{{}}/assignments"
    body = {"judge_ids": [ana["judge_id"]]}
    assert client.post(url.format(pending["sample_id"]), params={"admin_password": PW}, json=body).status_code == 409
    assert client.post(url.format(sample["sample_id"]), params={"admin_password": "x"}, json=body).status_code == 403
    assert (
        client.post(
            url.format(sample["sample_id"]), params={"admin_password": PW}, json={"judge_ids": [outsider["judge_id"]]}
        ).status_code
        == 404
    )
    assert client.post(url.format(sample["sample_id"]), params={"admin_password": PW}, json={"judge_ids": []}).status_code == 422


def test_assignment_form(client):
    contest_id = create_contest(client)
    sample = approved_sample(client, contest_id)
    ana = join(client, contest_id)
    form = {"sample_id": sample["sample_id"], "judge_id": ana["judge_id"], "admin_password": PW}

    resp = client.post(f"/admin/contest/{contest_id}/assignments", data=form, follow_redirects=False)
    assert resp.status_code == 303
    page = client.get(f"/admin/contest/{contest_id}").text
    assert "Ana (#" in page

    resp = client.post(
        f"/admin/contest/{contest_id}/assignments", data={**form, "action": "unassign"}, follow_redirects=False
    )
    assert resp.status_code == 303
    again = client.post(f"/admin/contest/{contest_id}/assignments", data={**form, "action": "unassign"})
    assert "Assignment not found" in again.text


# -----------------------
# Judges
# -----------------------
def test_judge_scores_sample(client):
    contest_id = create_contest(client)
    sample = approved_sample(client, contest_id)
    judge = join(client, contest_id)
    assign(client, contest_id, sample["sample_id"], judge)

    listing = client.get(f"/api/contest/{contest_id}/judge/samples", params=judge).json()["samples"]
    assert [s["sample_id"] for s in listing] == [sample["sample_id"]]
    assert listing[0]["rule_set"] == "cocoa"
    assert "participant" not in listing[0]

    resp = submit(client, contest_id, sample["sample_id"], judge, SHEET)
    assert resp.status_code == 200
    body = resp.json()
    assert body["overall_quality"] == pytest.approx(28 / 12)
    assert body["sub_totals"]["acidity_total"] == pytest.approx(4.0)
    assert body["verdict"] == "Approved"

    assert client.get(f"/api/samples/{sample['tracking_code']}").json()["status"] == "evaluated"

    stored = client.get(f"/api/contest/{contest_id}/samples/{sample['sample_id']}/sensory", params=judge).json()
    assert stored["sheet"]["cacao"] == 8
    assert stored["overall_quality"] == pytest.approx(28 / 12)
    assert stored["verdict"] == "Approved"

    page = client.get(f"/judge/contest/{contest_id}", params=judge).text
    assert "2.33" in page


def test_resubmission_replaces_previous_sheet(client):
    contest_id = create_contest(client)
    sample = approved_sample(client, contest_id)
    judge = join(client, contest_id)
    assign(client, contest_id, sample["sample_id"], judge)

    submit(client, contest_id, sample["sample_id"], judge, SHEET)
    resp = submit(client, contest_id, sample["sample_id"], judge, {**SHEET, "cacao": 10})
    assert resp.json()["overall_quality"] == pytest.approx(30 / 12)

    with db() as conn:
        rows = conn.execute(
            "SELECT overall_quality FROM sensory_evaluations WHERE sample_id=?", (sample["sample_id"],)
        ).fetchall()
    assert len(rows) == 1
    assert rows[0]["overall_quality"] == pytest.approx(30 / 12)


def test_heavy_defects_disqualify_the_sheet(client, monkeypatch):
    contest_id = create_contest(client)
    sample = approved_sample(client, contest_id)
    judge = join(client, contest_id)
    assign(client, contest_id, sample["sample_id"], judge)

    resp = submit(client, contest_id, sample["sample_id"], judge, {**SHEET, "defects": {"moldy": 5, "rotten": 3}})
    body = resp.json()
    assert body["verdict"] == "Disqualified"
    assert body["auto_disqualified"] is True
    assert body["defect_band"] == "disqualifying"

    # a later threshold change does not rewrite the stored verdict
    monkeypatch.setenv("COCOA_CONTEST_DEFECT_THRESHOLD", "9")
    stored = client.get(f"/api/contest/{contest_id}/samples/{sample['sample_id']}/sensory", params=judge).json()
    assert stored["verdict"] == "Disqualified"
    assert stored["defects_total"] == pytest.approx(8.0)
    assert stored["overall_quality"] == pytest.approx(body["overall_quality"])
    assert stored["disqualification_reasons"] == [
        "Defects total (8.0) reached disqualification threshold (7.0)"
    ]


def test_chocolate_sample_uses_chocolate_sheet(client):
    contest_id = create_contest(client)
    sample = approved_sample(client, contest_id, category="chocolate", participant="Cacao del Sur")
    judge = join(client, contest_id)
    assign(client, contest_id, sample["sample_id"], judge)
    sheet = {"flavor": {"sweetness": 10, "bitterness": 10, "acidity": 10, "flavor_intensity": 10}}
    body = submit(client, contest_id, sample["sample_id"], judge, sheet).json()
    assert body["rule_set"] == "chocolate"
    assert body["overall_quality"] == pytest.approx(4.0)
    assert body["breakdown"]["flavor"]["percentage"] == pytest.approx(40.0)


def test_judge_rejections(client):
    contest_id = create_contest(client)
    pending = register(client, contest_id)
    sample = approved_sample(client, contest_id, category="cocoa_liquor")
    judge = join(client, contest_id)
    assign(client, contest_id, sample["sample_id"], judge)

    bad_token = {"judge_id": judge["judge_id"], "token": "nope"}
    assert submit(client, contest_id, sample["sample_id"], bad_token, SHEET).status_code == 403
    assert submit(client, contest_id, pending["sample_id"], judge, SHEET).status_code == 409
    assert submit(client, contest_id, sample["sample_id"], judge, {"cacao": "lots"}).status_code == 422

    toggle_lock(client, contest_id)
    assert submit(client, contest_id, sample["sample_id"], judge, SHEET).status_code == 409


@pytest.mark.parametrize("value", [True, "7", None])
def test_sheet_sliders_must_be_numbers(client, value):
    contest_id = create_contest(client)
    sample = approved_sample(client, contest_id, category="cocoa_liquor")
    judge = join(client, contest_id)
    assign(client, contest_id, sample["sample_id"], judge)

    resp = submit(client, contest_id, sample["sample_id"], judge, {"cacao": value})
    assert resp.status_code == 422
    assert resp.json()["detail"][0]["loc"] == ["cacao"]


def test_non_finite_sheet_value_is_rejected(client):
    contest_id = create_contest(client)
    sample = approved_sample(client, contest_id, category="cocoa_liquor")
    judge = join(client, contest_id)
    assign(client, contest_id, sample["sample_id"], judge)

    resp = client.post(
        f"/api/contest/{contest_id}/samples/{sample['sample_id']}/sensory",
        params=judge,
        content='{"cacao": Infinity}',
        headers={"content-type": "application/json"},
    )
    assert resp.status_code == 422
    assert "input" not in resp.json()["detail"][0]


def test_invalid_join_code(client):
    create_contest(client)
    resp = client.post("/judge/join", data={"judge_name": "Bo", "join_code": "NOPE"})
    assert "Invalid join code" in resp.text


# -----------------------
# Results
# -----------------------
def test_results_rank_samples(client):
    contest_id = create_contest(client)
    first = approved_sample(client, contest_id, participant="Finca Uno")
    second = approved_sample(client, contest_id, category="cocoa_liquor", participant="Finca Dos")
    ana = join(client, contest_id, "Ana")
    bo = join(client, contest_id, "Bo")
    assign(client, contest_id, first["sample_id"], ana, bo)
    assign(client, contest_id, second["sample_id"], ana)

    submit(client, contest_id, first["sample_id"], ana, SHEET)
    submit(client, contest_id, first["sample_id"], bo, SHEET)
    submit(client, contest_id, second["sample_id"], ana, {**SHEET, "cacao": 10})

    results = client.get(f"/api/contest/{contest_id}/results", params={"admin_password": PW}).json()["results"]
    assert [r["TrackingCode"] for r in results] == [second["tracking_code"], first["tracking_code"]]
    assert results[0]["Rank"] == 1
    assert results[0]["Awards"] == "Gold Medal, Best in Show"
    assert results[1]["Evaluations"] == 2

    html = client.post(f"/admin/contest/{contest_id}/compute", data={"admin_password": PW}).text
    assert first["tracking_code"] in html

    csv_resp = client.get(f"/admin/contest/{contest_id}/download/results", params={"admin_password": PW})
    assert csv_resp.status_code == 200
    assert csv_resp.headers["content-type"].startswith("text/csv")
    assert csv_resp.text.splitlines()[0].startswith("ContestId,Rank,SampleId,TrackingCode")


def test_results_without_evaluations(client):
    contest_id = create_contest(client)
    assert client.get(f"/api/contest/{contest_id}/results", params={"admin_password": PW}).status_code == 409
    html = client.post(f"/admin/contest/{contest_id}/compute", data={"admin_password": PW}).text
    assert "Error computing results" in html


def test_final_rating_published_after_lock(client):
    contest_id = create_contest(client)
    sample = approved_sample(client, contest_id)
    judge = join(client, contest_id)
    assign(client, contest_id, sample["sample_id"], judge)
    submit(client, contest_id, sample["sample_id"], judge, SHEET)

    assert client.get(f"/api/samples/{sample['tracking_code']}").json()["final_rating"] is None
    toggle_lock(client, contest_id)
    assert client.get(f"/api/samples/{sample['tracking_code']}").json()["final_rating"] == pytest.approx(2.33)


# -----------------------
# Final round
# -----------------------
def test_final_round(client, monkeypatch):
    contest_id = create_contest(client)
    first = approved_sample(client, contest_id, participant="Finca Uno")
    second = approved_sample(client, contest_id, category="cocoa_liquor", participant="Finca Dos")
    ana = join(client, contest_id, "Ana")
    bo = join(client, contest_id, "Bo")

    start_url = f"/api/contest/{contest_id}/final/start"
    assert client.post(start_url, params={"admin_password": PW}).status_code == 409

    assign(client, contest_id, first["sample_id"], ana)
    assign(client, contest_id, second["sample_id"], ana)
    submit(client, contest_id, first["sample_id"], ana, SHEET)
    submit(client, contest_id, second["sample_id"], ana, {**SHEET, "cacao": 10})

    monkeypatch.setenv("COCOA_CONTEST_TOP_N", "1")
    resp = client.post(start_url, params={"admin_password": PW})
    assert resp.status_code == 200
    finalists = resp.json()["finalists"]
    assert [f["sample_id"] for f in finalists] == [second["sample_id"]]
    assert finalists[0]["sensory_rank"] == 1
    assert finalists[0]["sensory_score"] == pytest.approx(30 / 12)
    assert client.post(start_url, params={"admin_password": PW}).status_code == 409

    # the sensory round is closed once finalists are picked
    assert submit(client, contest_id, first["sample_id"], ana, SHEET).status_code == 409
    assert submit_final(client, contest_id, first["sample_id"], bo, SHEET).status_code == 409

    # any judge of the contest scores the finalists
    listing = client.get(f"/api/contest/{contest_id}/judge/samples", params=bo).json()["samples"]
    assert [s["sample_id"] for s in listing] == [second["sample_id"]]
    resp = submit_final(client, contest_id, second["sample_id"], bo, {**SHEET, "cacao": 4})
    assert resp.status_code == 200
    assert resp.json()["round"] == "final"
    assert resp.json()["overall_quality"] == pytest.approx(24 / 12)

    stored = client.get(f"/api/contest/{contest_id}/samples/{second['sample_id']}/final", params=bo).json()
    assert stored["sheet"]["cacao"] == 4
    assert client.get(f"/api/contest/{contest_id}/samples/{second['sample_id']}/final", params=ana).status_code == 404

    results = client.get(
        f"/api/contest/{contest_id}/results", params={"admin_password": PW, "round_name": "final"}
    ).json()
    assert results["round"] == "final"
    assert [r["TrackingCode"] for r in results["results"]] == [second["tracking_code"]]
    assert results["results"][0]["AverageScore"] == pytest.approx(2.0)

    csv_resp = client.get(
        f"/admin/contest/{contest_id}/download/results", params={"admin_password": PW, "round_name": "final"}
    )
    assert "final_results.csv" in csv_resp.headers["content-disposition"]
    html = client.post(f"/admin/contest/{contest_id}/compute", data={"admin_password": PW, "round_name": "final"}).text
    assert second["tracking_code"] in html

    # final round scores are what participants see once the contest is locked
    toggle_lock(client, contest_id)
    assert client.get(f"/api/samples/{second['tracking_code']}").json()["final_rating"] == pytest.approx(2.0)
    assert client.get(f"/api/samples/{first['tracking_code']}").json()["final_rating"] == pytest.approx(2.33)


def test_final_round_form(client):
    contest_id = create_contest(client)
    sample = approved_sample(client, contest_id, category="cocoa_liquor")
    judge = join(client, contest_id)
    assign(client, contest_id, sample["sample_id"], judge)
    submit(client, contest_id, sample["sample_id"], judge, SHEET)

    resp = client.post(f"/admin/contest/{contest_id}/start_final", data={"admin_password": PW}, follow_redirects=False)
    assert resp.status_code == 303
    assert '<span class="pill">final</span>' in client.get(f"/admin/contest/{contest_id}").text
    assert f"/samples/{sample['sample_id']}/final</code>" in client.get(f"/judge/contest/{contest_id}", params=judge).text

    again = client.post(f"/admin/contest/{contest_id}/start_final", data={"admin_password": PW})
    assert "already open" in again.text


# -----------------------
# Preview
# -----------------------
def test_scoring_preview(client):
    body = client.post(
        "/api/scoring/preview/cocoa_beans", params={"evaluation_type": "chocolate"}, json={"sweetness": 9}
    ).json()
    assert body["bonus"] == pytest.approx(0.2)
    assert body["overall_quality"] == pytest.approx(20 / 12 + 0.2)

    choc = client.post("/api/scoring/preview/chocolate", json={}).json()
    assert choc["rule_set"] == "chocolate"
    assert choc["overall_quality"] == 0.0

    assert client.post("/api/scoring/preview/coffee", json={}).status_code == 422
    assert client.post("/api/scoring/preview/cocoa_beans", params={"evaluation_type": "wine"}, json={}).status_code == 422
