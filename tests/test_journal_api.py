from conftest import grant


def start(api, track):
    return api.post("/journal/start-track", json={"trackName": track})


def complete(api, track, day):
    return api.post("/journal/complete-day",
                    json={"trackName": track, "day": day})


def write(api, track, day, text="Amor fati."):
    return api.post("/journal/entry", json={
        "trackName": track, "day": day, "entryText": text,
    })


def test_requires_token(anon):
    resp = anon.post("/journal/start-track", json={"trackName": "Ego"})
    assert resp.status_code == 401
    assert resp.json()["success"] is False


def test_start_unowned_track_is_refused(user):
    resp = start(user, "Ego")
    assert resp.status_code == 400
    assert resp.json()["error"] == "track_not_purchased"


def test_invalid_track_name(user):
    resp = start(user, "Wealth")
    assert resp.status_code == 400
    assert resp.json()["error"] == "invalid_track"


def test_start_and_complete_first_day(user):
    grant(user, "Ego")
    body = start(user, "Ego").json()
    assert body["currentDay"] == 1
    assert body["isRestart"] is False

    resp = complete(user, "Ego", 1)
    assert resp.status_code == 200
    body = resp.json()
    assert body["trackCompleted"] is False
    assert body["profile"]["current_day"] == 2
    assert body["profile"]["streak"] == 1


def test_starting_the_active_track_twice(user):
    grant(user, "Ego")
    start(user, "Ego")
    resp = start(user, "Ego")
    assert resp.status_code == 400
    assert resp.json()["error"] == "track_in_progress"


def test_replayed_completion_is_rejected(user):
    grant(user, "Ego")
    start(user, "Ego")
    assert complete(user, "Ego", 1).status_code == 200
    resp = complete(user, "Ego", 1)
    assert resp.status_code == 400
    assert resp.json()["error"] == "day_mismatch"
    profile = user.get("/user/profile").json()["profile"]
    assert profile["streak"] == 1
    assert profile["total_days_completed"] == 1


def test_complete_other_track(user):
    grant(user, "Ego", "Money")
    start(user, "Ego")
    resp = complete(user, "Money", 1)
    assert resp.json()["error"] == "not_current_track"


def test_full_track_to_completion(user):
    grant(user, "Discipline")
    start(user, "Discipline")
    for day in range(1, 30):
        assert complete(user, "Discipline", day).status_code == 200
    body = complete(user, "Discipline", 30).json()
    assert body["trackCompleted"] is True
    profile = body["profile"]
    assert profile["current_track"] is None
    assert profile["current_day"] == 0
    assert profile["total_days_completed"] == 30
    assert [t["track"] for t in profile["tracks_completed"]] == ["Discipline"]

    again = start(user, "Discipline").json()
    assert again["isRestart"] is True
    assert again["currentDay"] == 1


def test_entries_upsert_and_list_sorted(user):
    grant(user, "Ego")
    start(user, "Ego")
    complete(user, "Ego", 1)
    complete(user, "Ego", 2)

    assert write(user, "Ego", 3).status_code == 200
    first = write(user, "Ego", 1, "first").json()["entry"]
    second = write(user, "Ego", 1, "edited").json()["entry"]
    assert second["created_at"] == first["created_at"]

    entries = user.get("/journal/entries/Ego").json()["entries"]
    assert [e["day"] for e in entries] == [1, 3]
    assert entries[0]["entry_text"] == "edited"


def test_entry_does_not_move_progression(user):
    grant(user, "Ego")
    start(user, "Ego")
    write(user, "Ego", 1)
    profile = user.get("/user/profile").json()["profile"]
    assert profile["current_day"] == 1
    assert profile["streak"] == 0


def test_entry_ahead_of_current_day(user):
    grant(user, "Ego")
    start(user, "Ego")
    resp = write(user, "Ego", 2)
    assert resp.status_code == 400
    assert resp.json()["error"] == "day_ahead"


def test_entry_validation(user):
    grant(user, "Ego")
    assert write(user, "Ego", 0).json()["message"] == "Invalid day number"
    assert write(user, "Ego", 31).json()["message"] == "Invalid day number"
    resp = write(user, "Ego", 1, "   ")
    assert resp.json()["message"] == "Entry text is required"


def test_entry_needs_ownership(user):
    resp = write(user, "Money", 1)
    assert resp.json()["error"] == "track_not_purchased"


def test_structured_entry_is_stored_as_json_text(user):
    grant(user, "Ego")
    resp = user.post("/journal/entry", json={
        "trackName": "Ego", "day": 1,
        "morningIntention": "Stay calm",
        "eveningReflections": ["Kept calm", ""],
    })
    assert resp.status_code == 200
    text = resp.json()["entry"]["entry_text"]
    assert '"morning_intention":"Stay calm"' in text


def test_entries_are_per_track(user):
    grant(user, "Ego", "Money")
    write(user, "Money", 1)
    assert user.get("/journal/entries/Ego").json()["entries"] == []
    assert len(user.get("/journal/entries/Money").json()["entries"]) == 1
