import pytest

from auth.security import hash_password
from database.models import AntiCheatEvent, Answer, ExamAttempt, ExamResult, User


@pytest.fixture
def student_headers(auth_headers, users):
    return auth_headers(users.student)


def _start(client, exam, headers):
    response = client.post("/exam-attempts/start", json={"examId": exam.id}, headers=headers)
    assert response.status_code == 200, response.text
    return response.json()


def test_health(client):
    assert client.get("/health").json()["status"] == "healthy"


def test_requires_bearer_token(client, exam):
    response = client.post("/exam-attempts/start", json={"examId": exam.id})
    assert response.status_code == 401
    assert response.json()["error_code"] == "UNAUTHORIZED"
    assert response.headers["WWW-Authenticate"] == "Bearer"


def test_bad_token_uses_error_body(client, exam):
    response = client.post(
        "/exam-attempts/start", json={"examId": exam.id}, headers={"Authorization": "Bearer not-a-jwt"},
    )
    assert response.status_code == 401
    assert response.json()["error"] == "Invalid or expired token"
    assert response.json()["error_code"] == "UNAUTHORIZED"


def test_wrong_role_uses_error_body(client, exam, auth_headers, users):
    response = client.post("/exam-attempts/start", json={"examId": exam.id}, headers=auth_headers(users.proctor))
    assert response.status_code == 403
    assert response.json()["error_code"] == "FORBIDDEN"


def test_login_refresh_logout(client, db):
    db.add(User(
        email="nina@example.edu", hashed_password=hash_password("correct horse"),
        full_name="Nina Park", role="student",
    ))
    db.commit()

    assert client.post("/auth/login", json={"email": "nina@example.edu", "password": "nope"}).status_code == 401
    tokens = client.post("/auth/login", json={"email": "nina@example.edu", "password": "correct horse"}).json()
    headers = {"Authorization": f"Bearer {tokens['access_token']}"}
    assert client.get("/auth/me", headers=headers).json()["email"] == "nina@example.edu"

    rotated = client.post("/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
    assert rotated.status_code == 200
    assert client.post("/auth/refresh", json={"refresh_token": tokens["refresh_token"]}).status_code == 401

    assert client.post("/auth/logout", headers=headers).status_code == 200
    stale = rotated.json()["refresh_token"]
    assert client.post("/auth/refresh", json={"refresh_token": stale}).status_code == 401


def test_start_autosave_submit_then_autosave_conflicts(client, exam, student_headers, db):
    started = _start(client, exam, student_headers)
    attempt_id = started["attemptId"]
    assert started["status"] == "ongoing"
    assert started["isResume"] is False
    assert started["remainingSeconds"] == exam.duration_minutes * 60
    q1, q2, q3 = [q["id"] for q in started["questions"]]

    payloads = [
        {"answers": {str(q1): 0}, "currentQuestionIndex": 0, "flaggedQuestions": []},
        {"answers": {str(q1): 0, str(q2): 1}, "currentQuestionIndex": 1, "flaggedQuestions": [q2]},
        {"answers": {str(q1): 0, str(q2): 1, str(q3): 2}, "currentQuestionIndex": 2, "flaggedQuestions": [q2]},
    ]
    for payload in payloads:
        response = client.post("/exam-attempts/autosave", json={"attemptId": attempt_id, **payload}, headers=student_headers)
        assert response.status_code == 200, response.text
        assert response.json()["success"] is True

    progress = client.get(f"/exam-attempts/{attempt_id}/progress", headers=student_headers).json()["progressData"]
    assert progress["currentQuestion"] == 2
    assert progress["flaggedQuestions"] == [str(q2)]
    assert db.query(Answer).filter_by(attempt_id=attempt_id).count() == 3

    submitted = client.post("/exam-attempts/submit", json={"attemptId": attempt_id}, headers=student_headers)
    assert submitted.status_code == 200, submitted.text
    body = submitted.json()
    assert body["status"] == "evaluated"
    assert body["showResults"] is True
    assert body["result"]["unanswered"] == 0

    late = client.post(
        "/exam-attempts/autosave",
        json={"attemptId": attempt_id, "answers": {str(q1): 3}, "currentQuestionIndex": 0, "flaggedQuestions": []},
        headers=student_headers,
    )
    assert late.status_code == 409
    assert late.json()["error_code"] == "INVALID_STATE"
    assert late.json()["status"] == "evaluated"

    db.expire_all()
    assert db.query(Answer).filter_by(attempt_id=attempt_id, question_id=q1).one().selected_option == 0


def test_retried_submit_returns_existing_result(client, exam, student_headers, db):
    attempt_id = _start(client, exam, student_headers)["attemptId"]

    first = client.post("/exam-attempts/submit", json={"attemptId": attempt_id}, headers=student_headers)
    retry = client.post("/exam-attempts/submit", json={"attemptId": attempt_id}, headers=student_headers)

    assert first.status_code == 200
    assert "alreadySubmitted" not in first.json()
    assert retry.status_code == 200, retry.text
    assert retry.json()["alreadySubmitted"] is True
    assert retry.json()["resultId"] == first.json()["resultId"]
    assert retry.json()["status"] == "evaluated"
    assert retry.json()["result"] == first.json()["result"]
    assert db.query(ExamResult).filter_by(attempt_id=attempt_id).count() == 1


def test_retried_submit_by_other_student_forbidden(client, exam, users, auth_headers, student_headers):
    attempt_id = _start(client, exam, student_headers)["attemptId"]
    client.post("/exam-attempts/submit", json={"attemptId": attempt_id}, headers=student_headers)

    response = client.post("/exam-attempts/submit", json={"attemptId": attempt_id}, headers=auth_headers(users.other))

    assert response.status_code == 403


def test_autosave_bad_time_spent_in_answer(client, exam, student_headers, db):
    started = _start(client, exam, student_headers)
    q1 = started["questions"][0]["id"]

    response = client.post(
        "/exam-attempts/autosave",
        json={
            "attemptId": started["attemptId"],
            "answers": {str(q1): {"selectedOption": 1, "timeSpent": "abc"}},
            "currentQuestionIndex": 0,
            "flaggedQuestions": [],
        },
        headers=student_headers,
    )

    assert response.status_code == 400
    assert response.json()["error_code"] == "BAD_REQUEST"
    assert db.query(Answer).filter_by(attempt_id=started["attemptId"]).count() == 0


def test_start_twice_resumes(client, exam, student_headers):
    first = _start(client, exam, student_headers)
    second = _start(client, exam, student_headers)
    assert second["isResume"] is True
    assert second["attemptId"] == first["attemptId"]
    assert second["questions"] == first["questions"]


def test_autosave_rate_limited(client, exam, student_headers):
    attempt_id = _start(client, exam, student_headers)["attemptId"]
    body = {"attemptId": attempt_id, "answers": {}, "currentQuestionIndex": 0, "flaggedQuestions": []}

    statuses = [client.post("/exam-attempts/autosave", json=body, headers=student_headers).status_code for _ in range(11)]

    assert statuses == [200] * 10 + [429]
    limited = client.post("/exam-attempts/autosave", json=body, headers=student_headers)
    assert limited.json()["error_code"] == "RATE_LIMITED"
    assert int(limited.headers["Retry-After"]) == 60


def test_rate_limit_window_reopens(client, exam, student_headers, clock):
    attempt_id = _start(client, exam, student_headers)["attemptId"]
    body = {"attemptId": attempt_id, "answers": {}, "currentQuestionIndex": 0, "flaggedQuestions": []}
    for _ in range(10):
        client.post("/exam-attempts/autosave", json=body, headers=student_headers)

    clock.advance(seconds=61)

    assert client.post("/exam-attempts/autosave", json=body, headers=student_headers).status_code == 200


def test_autosave_on_someone_elses_attempt(client, exam, users, auth_headers, student_headers):
    attempt_id = _start(client, exam, student_headers)["attemptId"]
    response = client.post(
        "/exam-attempts/autosave",
        json={"attemptId": attempt_id, "answers": {}, "currentQuestionIndex": 0, "flaggedQuestions": []},
        headers=auth_headers(users.other),
    )
    assert response.status_code == 403


def test_autosave_after_deadline_abandons(client, exam, student_headers, clock, db):
    attempt_id = _start(client, exam, student_headers)["attemptId"]
    clock.advance(minutes=exam.duration_minutes + 5)

    response = client.post(
        "/exam-attempts/autosave",
        json={"attemptId": attempt_id, "answers": {}, "currentQuestionIndex": 0, "flaggedQuestions": []},
        headers=student_headers,
    )

    assert response.status_code == 409
    assert response.json()["status"] == "abandoned"
    db.expire_all()
    assert db.get(ExamAttempt, attempt_id).abandon_reason == "timeout"


def test_single_answer_endpoint(client, exam, student_headers):
    started = _start(client, exam, student_headers)
    q1 = started["questions"][0]["id"]

    response = client.post(
        "/exam-attempts/answer",
        json={"attemptId": started["attemptId"], "questionId": q1, "selectedOption": 1, "isFlagged": True},
        headers=student_headers,
    )

    assert response.status_code == 200
    progress = client.get(f"/exam-attempts/{started['attemptId']}/progress", headers=student_headers).json()
    assert progress["progressData"]["answers"][str(q1)] == {
        "answerText": None, "selectedOption": 1, "isMarkedForReview": True,
    }


def test_anti_cheat_record_and_list(client, exam, users, auth_headers, student_headers):
    attempt_id = _start(client, exam, student_headers)["attemptId"]

    recorded = client.post(
        "/exam-attempts/anti-cheat",
        json={"attemptId": attempt_id, "eventType": "tab-switch", "severity": "warning"},
        headers=student_headers,
    )
    assert recorded.status_code == 200
    assert recorded.json()["success"] is True

    intruder = client.post(
        "/exam-attempts/anti-cheat",
        json={"attemptId": attempt_id, "eventType": "tab-switch"},
        headers=auth_headers(users.other),
    )
    assert intruder.status_code == 403

    assert client.get(f"/exam-attempts/{attempt_id}/anti-cheat-events", headers=student_headers).status_code == 403
    listed = client.get(f"/exam-attempts/{attempt_id}/anti-cheat-events", headers=auth_headers(users.proctor)).json()
    assert listed["count"] == 1
    assert listed["events"][0]["event_type"] == "tab-switch"
    assert listed["events"][0]["severity"] == "warning"


def test_anti_cheat_long_free_text_severity(client, exam, users, auth_headers, student_headers):
    attempt_id = _start(client, exam, student_headers)["attemptId"]
    severity = "suspicious-but-not-yet-critical, flagged by the webcam monitor"

    recorded = client.post(
        "/exam-attempts/anti-cheat",
        json={"attemptId": attempt_id, "eventType": "multiple-faces", "severity": severity},
        headers=student_headers,
    )

    assert recorded.status_code == 200, recorded.text
    listed = client.get(f"/exam-attempts/{attempt_id}/anti-cheat-events", headers=auth_headers(users.proctor)).json()
    assert listed["events"][0]["severity"] == severity


def test_anti_cheat_unknown_event_type(client, exam, student_headers):
    attempt_id = _start(client, exam, student_headers)["attemptId"]
    response = client.post(
        "/exam-attempts/anti-cheat",
        json={"attemptId": attempt_id, "eventType": "keyboard-smash"},
        headers=student_headers,
    )
    assert response.status_code == 422


def test_serious_violations_auto_submit(client, exam, users, auth_headers, student_headers, db):
    attempt_id = _start(client, exam, student_headers)["attemptId"]
    body = {"attemptId": attempt_id, "eventType": "fullscreen-exit", "severity": "critical"}

    responses = [client.post("/exam-attempts/anti-cheat", json=body, headers=student_headers).json() for _ in range(5)]

    assert all("autoSubmitted" not in r for r in responses[:4])
    assert responses[4]["autoSubmitted"] is True
    db.expire_all()
    attempt = db.get(ExamAttempt, attempt_id)
    assert attempt.status == "evaluated"
    assert attempt.is_auto_submitted is True
    assert db.query(AntiCheatEvent).filter_by(attempt_id=attempt_id).count() == 5
    assert db.query(ExamResult).filter_by(attempt_id=attempt_id).count() == 1

    result = client.get(f"/exam-attempts/{attempt_id}/result", headers=auth_headers(users.admin))
    assert result.status_code == 200
    assert result.json()["isAutoSubmitted"] is True
    assert result.json()["result"]["unanswered"] == len(exam.questions)

    after = client.post("/exam-attempts/anti-cheat", json=body, headers=student_headers)
    assert after.status_code == 409


def test_proctor_abandons_attempt(client, exam, users, auth_headers, student_headers):
    attempt_id = _start(client, exam, student_headers)["attemptId"]

    assert client.post(f"/exam-attempts/{attempt_id}/abandon", json={"reason": "x"}, headers=student_headers).status_code == 403
    response = client.post(
        f"/exam-attempts/{attempt_id}/abandon", json={"reason": "Phone on desk"}, headers=auth_headers(users.proctor),
    )

    assert response.status_code == 200
    assert response.json()["status"] == "abandoned"
    submit = client.post("/exam-attempts/submit", json={"attemptId": attempt_id}, headers=student_headers)
    assert submit.status_code == 409


def test_result_hidden_when_exam_withholds(client, exam_factory, student_headers, auth_headers, users):
    exam = exam_factory(show_results=False)
    attempt_id = _start(client, exam, student_headers)["attemptId"]

    submitted = client.post("/exam-attempts/submit", json={"attemptId": attempt_id}, headers=student_headers).json()

    assert submitted["showResults"] is False
    assert "result" not in submitted
    assert client.get(f"/exam-attempts/{attempt_id}/result", headers=student_headers).status_code == 403
    staff_view = client.get(f"/exam-attempts/{attempt_id}/result", headers=auth_headers(users.admin))
    assert staff_view.status_code == 200
    assert staff_view.json()["result"]["grade"] == "F"


def test_review_over_http(client, exam, student_headers):
    started = _start(client, exam, student_headers)
    attempt_id = started["attemptId"]
    client.post("/exam-attempts/submit", json={"attemptId": attempt_id}, headers=student_headers)

    review = client.get(f"/exam-attempts/{attempt_id}/review", headers=student_headers).json()

    assert [q["id"] for q in review["questions"]] == [q["id"] for q in started["questions"]]
    assert [o["id"] for o in review["questions"][0]["options"]] == [o["id"] for o in started["questions"][0]["options"]]
