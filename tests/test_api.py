from datetime import timedelta

from awaz import models
from awaz.auth import create_access_token
from awaz.config import settings
from awaz.services.security import is_valid_voting_id
from awaz.timeutils import utcnow


def test_root(client):
    response = client.get("/")
    assert response.status_code == 200
    assert response.json()["message"] == "Awaz-e-Talba Voting API"


# ---------------- Auth ----------------
def test_login_with_seeded_superadmin(client):
    response = client.post("/auth/token", data={
        "username": settings.FIRST_SUPERADMIN_EMAIL,
        "password": settings.FIRST_SUPERADMIN_PASSWORD,
    })
    assert response.status_code == 200
    body = response.json()
    assert body["token_type"] == "bearer"
    assert body["admin"]["role"] == "superadmin"

    headers = {"Authorization": f"Bearer {body['access_token']}"}
    assert client.get("/admin/overview", headers=headers).status_code == 200


def test_login_wrong_password(client):
    response = client.post("/auth/token", data={
        "username": settings.FIRST_SUPERADMIN_EMAIL,
        "password": "wrong-password",
    })
    assert response.status_code == 401


def test_admin_routes_need_a_token(client):
    assert client.get("/elections/").status_code == 401


def test_auditor_cannot_change_elections(auditor_client):
    now = utcnow()
    response = auditor_client.post("/elections/", json={
        "title": "Sports Secretary",
        "startDate": now.isoformat(),
        "endDate": (now + timedelta(hours=2)).isoformat(),
    })
    assert response.status_code == 403
    assert auditor_client.get("/elections/").status_code == 200


# ---------------- Elections ----------------
def test_create_election_and_candidates(admin_client):
    now = utcnow()
    response = admin_client.post("/elections/", json={
        "title": "Student Council President",
        "category": "president",
        "startDate": (now + timedelta(hours=1)).isoformat(),
        "endDate": (now + timedelta(hours=3)).isoformat(),
    })
    assert response.status_code == 201
    election = response.json()
    assert election["status"] == "draft"

    for position, name in enumerate(["Ali Raza", "Sara Malik"], start=1):
        created = admin_client.post(f"/elections/{election['id']}/candidates",
                                    json={"name": name, "position": position})
        assert created.status_code == 201

    candidates = admin_client.get(f"/elections/{election['id']}/candidates").json()
    assert [c["name"] for c in candidates] == ["Ali Raza", "Sara Malik"]


def test_create_election_rejects_inverted_window(admin_client):
    now = utcnow()
    response = admin_client.post("/elections/", json={
        "title": "Backwards",
        "startDate": (now + timedelta(hours=3)).isoformat(),
        "endDate": (now + timedelta(hours=1)).isoformat(),
    })
    assert response.status_code == 422


def test_active_election_is_frozen(admin_client, create_election):
    election = create_election(status=models.ElectionStatus.active, candidates=2)

    response = admin_client.post(f"/elections/{election.id}/candidates", json={"name": "Late Entry"})

    assert response.status_code == 409


def test_force_start_and_stop(admin_client, create_election):
    lonely = create_election(title="Lonely", candidates=1)
    ready = create_election(title="Ready", candidates=2, start_offset=timedelta(hours=4),
                            end_offset=timedelta(hours=6))

    assert admin_client.post(f"/elections/{lonely.id}/force-start").status_code == 409
    assert admin_client.post("/elections/999/force-start").status_code == 404

    started = admin_client.post(f"/elections/{ready.id}/force-start")
    assert started.status_code == 200
    assert started.json()["status"] == "active"

    stopped = admin_client.post(f"/elections/{ready.id}/force-stop")
    assert stopped.json()["status"] == "completed"
    assert admin_client.post(f"/elections/{ready.id}/force-stop").status_code == 409


# ---------------- Voting ----------------
def test_voting_flow(client, create_student, create_election):
    create_student()
    election = create_election(status=models.ElectionStatus.active, candidates=2)
    candidate_id = election.candidates[0].id

    eligibility = client.post("/voting/eligibility", json={"voting_id": "VROLL0021694"}).json()
    assert eligibility["isEligible"] is True
    assert eligibility["studentName"] == "Ayesha Khan"
    assert [e["id"] for e in eligibility["elections"]] == [election.id]

    session = client.post("/voting/sessions", json={"voting_id": "VROLL0021694"})
    assert session.status_code == 201
    session_id = session.json()["id"]

    vote = client.post("/voting/votes", json={
        "election_id": election.id,
        "candidate_id": candidate_id,
        "voting_id": "VROLL0021694",
        "session_id": session_id,
    }).json()
    assert vote["success"] is True
    assert vote["sessionId"] == session_id
    assert vote["remainingElections"] == []

    again = client.post("/voting/votes", json={
        "election_id": election.id,
        "candidate_id": candidate_id,
        "voting_id": "VROLL0021694",
        "session_id": session_id,
    }).json()
    assert again["success"] is False
    assert again["message"] == "Already voted in this election"

    completed = client.post(f"/voting/sessions/{session_id}/complete")
    assert completed.json()["status"] == "completed"
    assert completed.json()["elections_voted"] == [election.id]
    assert client.post(f"/voting/sessions/{session_id}/complete").status_code == 409


def test_session_for_unknown_student(client):
    response = client.post("/voting/sessions", json={"voting_id": "V99999"})
    assert response.status_code == 400
    assert response.json()["detail"] == "Student not found or not active for voting"


def test_complete_unknown_session(client):
    assert client.post("/voting/sessions/nope/complete").status_code == 404


# ---------------- Results ----------------
def test_live_results(client, create_student, create_election):
    create_student()
    election = create_election(status=models.ElectionStatus.active, candidates=2)
    winner = election.candidates[1].id
    client.post("/voting/votes", json={
        "election_id": election.id, "candidate_id": winner, "voting_id": "VROLL0021694",
    })

    results = client.get(f"/results/{election.id}").json()

    assert results["totalVotes"] == 1
    assert results["leadingCandidateId"] == winner
    assert results["candidates"][0]["votePercentage"] == 100
    assert results["candidates"][1]["voteCount"] == 0
    assert client.get("/results/999").status_code == 404


def test_result_stream_disabled(client, create_election):
    election = create_election(candidates=2)
    assert client.get(f"/results/{election.id}/stream").status_code == 503


# ---------------- Admin ----------------
def test_scheduler_run_and_upcoming(admin_client, create_election):
    due = create_election(title="Due now", candidates=2)
    create_election(title="Tomorrow", candidates=2, start_offset=timedelta(hours=20),
                    end_offset=timedelta(hours=22))

    run = admin_client.post("/admin/scheduler/run").json()
    assert run == {"started": 1, "completed": 0, "errors": []}
    assert admin_client.get(f"/elections/{due.id}").json()["status"] == "active"

    upcoming = admin_client.get("/admin/scheduler/upcoming").json()
    assert [e["title"] for e in upcoming["starting"]] == ["Tomorrow"]
    assert [e["title"] for e in upcoming["ending"]] == ["Due now"]


def test_overview_counts(admin_client, create_student, create_election):
    create_student()
    create_election(candidates=2)
    create_election(title="Running", status=models.ElectionStatus.active, candidates=2)

    body = admin_client.get("/admin/overview").json()

    assert body["totalStudents"] == 1
    assert body["elections"]["draft"] == 1
    assert body["elections"]["active"] == 1
    assert body["totalVotes"] == 0


def test_recent_activity(admin_client, create_student, create_election):
    create_student()
    election = create_election(status=models.ElectionStatus.active, candidates=2)
    admin_client.post("/voting/votes", json={
        "election_id": election.id, "candidate_id": election.candidates[0].id, "voting_id": "VROLL0021694",
    })

    entries = admin_client.get("/audit-logs/recent").json()
    assert [e["action_type"] for e in entries] == ["vote_cast", "session_started"]

    only_votes = admin_client.get("/audit-logs/recent", params={"action_type": "vote_cast", "limit": 5}).json()
    assert [e["action_type"] for e in only_votes] == ["vote_cast"]
    assert admin_client.get("/audit-logs/recent", params={"limit": 500}).status_code == 422


def test_verify_vote_endpoint(auditor_client, create_student, create_election):
    create_student()
    election = create_election(status=models.ElectionStatus.active, candidates=2)
    vote = auditor_client.post("/voting/votes", json={
        "election_id": election.id, "candidate_id": election.candidates[0].id, "voting_id": "VROLL0021694",
    }).json()

    response = auditor_client.post(f"/elections/{election.id}/votes/{vote['voteId']}/verify")

    assert response.json() == {"voteId": vote["voteId"], "intact": True}
    assert auditor_client.post(f"/elections/{election.id}/votes/999/verify").status_code == 404
    assert auditor_client.get(f"/elections/{election.id}/votes/{vote['voteId']}/verify").status_code == 405


def test_students_roll(admin_client):
    created = admin_client.post("/students/", json={"name": "Bilal Ahmed", "voting_id": "v12345"})
    assert created.status_code == 201
    assert created.json()["voting_id"] == "V12345"

    assert admin_client.post("/students/", json={"name": "Bilal Ahmed", "voting_id": "V12345"}).status_code == 409
    assert admin_client.post("/students/", json={"name": "Nobody", "voting_id": "X1"}).status_code == 400

    student_id = created.json()["id"]
    assert admin_client.post(f"/students/{student_id}/deactivate").json()["is_active"] is False
    assert admin_client.get("/students/", params={"active_only": True}).json() == []


def test_expired_or_forged_tokens_are_rejected(client):
    expired = create_access_token(settings.FIRST_SUPERADMIN_EMAIL, "superadmin", expires_delta=timedelta(minutes=-1))
    response = client.get("/admin/overview", headers={"Authorization": f"Bearer {expired}"})
    assert response.status_code == 401
    assert response.json()["detail"] == "Token has expired"

    forged = create_access_token(settings.FIRST_SUPERADMIN_EMAIL, "superadmin") + "x"
    assert client.get("/admin/overview", headers={"Authorization": f"Bearer {forged}"}).status_code == 401

    ghost = create_access_token("ghost@awaz.com", "superadmin")
    assert client.get("/admin/overview", headers={"Authorization": f"Bearer {ghost}"}).status_code == 401


def test_create_election_with_mixed_timezones(admin_client):
    created = admin_client.post("/elections/", json={
        "title": "Cultural Secretary",
        "startDate": "2030-01-01T10:00:00Z",
        "endDate": "2030-01-01T12:00:00",
    })
    assert created.status_code == 201
    assert created.json()["startDate"].startswith("2030-01-01T10:00:00")

    # 12:00+02:00 is 10:00 UTC, after the naive (UTC) end
    inverted = admin_client.post("/elections/", json={
        "title": "Cultural Secretary",
        "startDate": "2030-01-01T12:00:00+02:00",
        "endDate": "2030-01-01T09:00:00",
    })
    assert inverted.status_code == 422


def test_archive_and_delete_elections(admin_client, create_election):
    finished = create_election(title="Finished", status=models.ElectionStatus.completed, candidates=2)
    draft = create_election(title="Abandoned", candidates=2)

    assert admin_client.post(f"/elections/{draft.id}/archive").status_code == 409
    archived = admin_client.post(f"/elections/{finished.id}/archive")
    assert archived.status_code == 200
    assert archived.json()["status"] == "archived"

    assert admin_client.delete(f"/elections/{draft.id}").status_code == 204
    assert admin_client.get(f"/elections/{draft.id}").status_code == 404
    assert admin_client.delete("/elections/999").status_code == 404


def test_election_with_votes_cannot_be_deleted(admin_client, create_election, create_student):
    create_student()
    election = create_election(status=models.ElectionStatus.active, candidates=2)
    admin_client.post("/voting/votes", json={
        "election_id": election.id, "candidate_id": election.candidates[0].id, "voting_id": "VROLL0021694",
    })
    admin_client.post(f"/elections/{election.id}/force-stop")

    response = admin_client.delete(f"/elections/{election.id}")

    assert response.status_code == 409
    assert response.json()["detail"] == "Cannot delete election that already has votes"


def test_student_voting_id_is_generated(admin_client):
    created = admin_client.post("/students/", json={"name": "Hina Tariq", "roll_number": "2021-CS-0216"})

    assert created.status_code == 201
    voting_id = created.json()["voting_id"]
    assert is_valid_voting_id(voting_id)
    assert voting_id.startswith("V0216")
    assert len(voting_id) == 9
    assert created.json()["roll_number"] == "2021-CS-0216"

    eligibility = admin_client.post("/voting/eligibility", json={"voting_id": voting_id}).json()
    assert eligibility["reason"] == "No active elections available"


def test_student_voting_id_generation_gives_up_after_collisions(admin_client, monkeypatch):
    attempts = []

    def same_id(roll_number):
        attempts.append(roll_number)
        return "V12341234"

    monkeypatch.setattr("awaz.routers.students.generate_voting_id", same_id)
    assert admin_client.post("/students/", json={"name": "First Student"}).status_code == 201

    response = admin_client.post("/students/", json={"name": "Second Student"})

    assert response.status_code == 409
    assert len(attempts) == 1 + 5
