from datetime import datetime
from uuid import uuid4
from zoneinfo import ZoneInfo

from supabase_fakes import FakeSupabase, api_client, make_auth

from famcare.routes import calendar as calendar_routes
from famcare.routes import dashboard as dashboard_routes
from famcare.routes import medications as medication_routes
from famcare.schemas import Role

TZ = ZoneInfo("Asia/Jerusalem")


def _fixed_now(monkeypatch, module, moment: datetime) -> None:
    monkeypatch.setattr(module, "local_now", lambda timezone=None: moment)


def test_home_sends_mom_to_her_screen():
    mom = api_client(make_auth(role=Role.VIEWER, is_mother=True)).get("/api/v1/home")
    assert mom.json()["path"] == "/mom"
    caregiver = api_client(make_auth(role=Role.EDITOR)).get("/api/v1/home")
    assert caregiver.json()["path"] == "/dashboard"


def test_dashboard_redirects_mother():
    client = api_client(make_auth(role=Role.VIEWER, is_mother=True))
    resp = client.get("/api/v1/dashboard", follow_redirects=False)
    assert resp.status_code == 307
    assert resp.headers["location"] == "/api/v1/mom"


def test_dashboard_summarizes_the_day(monkeypatch):
    _fixed_now(monkeypatch, dashboard_routes, datetime(2025, 3, 4, 8, 30, tzinfo=TZ))
    fake = FakeSupabase()
    auth = make_auth(fake, role=Role.EDITOR)
    fake.select_queue.update(
        {
            "medications": [
                [
                    {"id": "m1", "name": "Eltroxin", "time_window": "morning"},
                    {"id": "m2", "name": "Cardiloc", "time_window": "morning"},
                    {"id": "m3", "name": "Vitamin D", "time_window": "evening"},
                ]
            ],
            "med_dose_logs": [
                [{"medication_id": "m1", "date": "2025-03-04", "time_window": "morning", "status": "done_late"}]
            ],
            "tasks": [[{"id": f"t{i}", "title": f"Task {i}", "status": "new"} for i in range(5)]],
            "shopping_items": [[{"id": "s1"}, {"id": "s2"}]],
        }
    )
    client = api_client(auth)

    body = client.get("/api/v1/dashboard").json()

    assert body["greeting"] == "morning"
    assert body["current_window"] == "morning"
    assert body["medications"]["morning"] == {"completed": 1, "scheduled": 2, "done": False}
    assert body["medications"]["evening"] == {"completed": 0, "scheduled": 1, "done": False}
    assert [item["done"] for item in body["due_now"]] == [True, False]
    assert body["open_tasks"] == 5
    assert len(body["pending_tasks"]) == 3
    assert body["open_shopping"] == 2
    assert body["show_control_panel"] is True


def test_confirm_dose_outside_window_is_late(monkeypatch):
    _fixed_now(monkeypatch, medication_routes, datetime(2025, 3, 4, 16, 0, tzinfo=TZ))
    med_id = str(uuid4())
    fake = FakeSupabase(
        select_queue={"medications": [[{"id": med_id, "name": "Eltroxin", "time_window": "morning"}]]}
    )
    auth = make_auth(fake, role=Role.EDITOR)
    client = api_client(auth)

    resp = client.post(f"/api/v1/medications/{med_id}/confirm")

    assert resp.status_code == 200
    assert resp.json()["status"] == "done_late"
    (_, table, payload, on_conflict), = fake.calls_for("upsert")
    assert table == "med_dose_logs"
    assert on_conflict == "medication_id,date,time_window"
    assert payload["performed_by"] == auth.member.id
    assert payload["date"] == "2025-03-04"


def test_confirm_dose_inside_wrapping_window_is_on_time(monkeypatch):
    _fixed_now(monkeypatch, medication_routes, datetime(2025, 3, 5, 1, 15, tzinfo=TZ))
    med_id = str(uuid4())
    fake = FakeSupabase(
        select_queue={"medications": [[{"id": med_id, "name": "Vitamin D", "time_window": "evening"}]]}
    )
    client = api_client(make_auth(fake, role=Role.ADMIN))

    resp = client.post(f"/api/v1/medications/{med_id}/confirm")

    assert resp.json()["status"] == "done"


def test_viewer_cannot_confirm_dose():
    client = api_client(make_auth(role=Role.VIEWER))
    resp = client.post(f"/api/v1/medications/{uuid4()}/confirm")
    assert resp.status_code == 403


def test_medication_window_listing(monkeypatch):
    _fixed_now(monkeypatch, medication_routes, datetime(2025, 3, 4, 20, 0, tzinfo=TZ))
    fake = FakeSupabase(
        select_queue={
            "medications": [
                [
                    {"id": "m1", "name": "Eltroxin", "time_window": "morning"},
                    {"id": "m3", "name": "Vitamin D", "time_window": "evening"},
                    {"id": "m4", "name": "Omega", "time_window": "evening"},
                ]
            ],
            "med_dose_logs": [
                [{"medication_id": "m3", "date": "2025-03-04", "time_window": "evening", "status": "done"}]
            ],
        }
    )
    body = api_client(make_auth(fake)).get("/api/v1/medications").json()

    assert body["window"] == "evening"
    assert body["window_label"] == "19:00 - 02:00"
    assert [item["status"] for item in body["medications"]] == ["done", "pending"]
    assert body["percentage"] == 50


def test_tasks_are_filtered_and_grouped():
    fake = FakeSupabase()
    auth = make_auth(fake, role=Role.VIEWER)
    rows = [
        {"id": "t1", "title": "Pharmacy", "status": "new", "owner_id": auth.member.id},
        {"id": "t2", "title": "Call doctor", "status": "in_progress", "owner_id": "someone"},
        {"id": "t3", "title": "Old", "status": "completed", "owner_id": auth.member.id},
        {"id": "t4", "title": "Dropped", "status": "cancelled"},
    ]
    fake.select_queue["tasks"] = [rows, rows, rows]
    client = api_client(auth)

    everything = client.get("/api/v1/tasks").json()
    assert everything["count"] == 2
    assert [task["id"] for task in everything["groups"]["new"]] == ["t1"]
    assert [task["id"] for task in everything["groups"]["in_progress"]] == ["t2"]
    assert everything["groups"]["completed"] == []

    mine = client.get("/api/v1/tasks", params={"filter": "mine"}).json()
    assert {task["id"] for task in mine["groups"]["new"] + mine["groups"]["completed"]} == {"t1", "t3"}

    done = client.get("/api/v1/tasks", params={"filter": "completed"}).json()
    assert done["count"] == 1

    assert client.get("/api/v1/tasks", params={"filter": "bogus"}).status_code == 400


def test_task_owner_may_toggle_but_other_viewers_may_not():
    task_id = str(uuid4())
    fake = FakeSupabase()
    auth = make_auth(fake, role=Role.VIEWER)
    fake.select_queue["tasks"] = [
        [{"id": task_id, "title": "Mine", "status": "new", "owner_id": auth.member.id}],
        [{"id": task_id, "title": "Theirs", "status": "new", "owner_id": str(uuid4())}],
    ]
    client = api_client(auth)

    own = client.post(f"/api/v1/tasks/{task_id}/toggle")
    assert own.status_code == 200
    assert own.json()["status"] == "completed"

    other = client.post(f"/api/v1/tasks/{task_id}/toggle")
    assert other.status_code == 403


def test_create_task_defaults():
    fake = FakeSupabase()
    auth = make_auth(fake, role=Role.EDITOR)
    fake.insert_queue["tasks"] = [[{"id": "t9", "title": "Buy batteries", "priority": "high", "status": "new"}]]
    client = api_client(auth)

    resp = client.post("/api/v1/tasks", json={"title": " Buy batteries ", "priority": "high"})

    assert resp.status_code == 200
    (_, _, payload, _), = fake.calls_for("insert", "tasks")
    assert payload["title"] == "Buy batteries"
    assert payload["owner_id"] == auth.member.id
    assert payload["status"] == "new"
    assert payload["is_mother_related"] is True
    assert client.post("/api/v1/tasks", json={"title": "  "}).status_code == 400


def test_shopping_list_toggle_and_delete():
    item_id = str(uuid4())
    fake = FakeSupabase(
        select_queue={
            "shopping_items": [
                [
                    {"id": "a", "name": "Milk", "status": "open"},
                    {"id": "b", "name": "Bread", "status": "bought"},
                ],
                [{"id": item_id, "name": "Milk", "status": "open"}],
                [{"id": item_id, "name": "Milk", "status": "bought"}],
            ]
        }
    )
    client = api_client(make_auth(fake, role=Role.EDITOR))

    listing = client.get("/api/v1/shopping").json()
    assert [item["id"] for item in listing["open"]] == ["a"]
    assert [item["id"] for item in listing["bought"]] == ["b"]

    toggled = client.post(f"/api/v1/shopping/{item_id}/toggle")
    assert toggled.json()["status"] == "bought"

    deleted = client.delete(f"/api/v1/shopping/{item_id}")
    assert deleted.json() == {"deleted": item_id}
    assert fake.calls_for("delete", "shopping_items")


def test_viewer_cannot_add_shopping():
    client = api_client(make_auth(role=Role.VIEWER))
    assert client.post("/api/v1/shopping", json={"name": "Milk"}).status_code == 403


def test_calendar_dims_days_of_other_members(monkeypatch):
    _fixed_now(monkeypatch, calendar_routes, datetime(2025, 3, 4, 9, 0, tzinfo=TZ))
    fake = FakeSupabase()
    auth = make_auth(fake)
    me, sister = auth.member.id, str(uuid4())
    fake.select_queue.update(
        {
            "family_members": [[auth.member.model_dump(mode="json"), {"id": sister, "family_id": auth.family_id}]],
            "rotation_schedule": [
                [
                    {"date": "2025-03-06", "assigned_member_id": me},
                    {"date": "2025-03-07", "assigned_member_id": sister},
                ]
            ],
            "events": [[{"id": "e1", "title": "Doctor", "start_datetime": "2025-03-06T10:00:00+02:00"}]],
            "israeli_holidays": [[{"date": "2025-03-14", "name_hebrew": "פורים"}]],
        }
    )
    client = api_client(auth)

    body = client.get("/api/v1/calendar", params={"member_id": me}).json()

    days = {day["date"]: day for day in body["days"]}
    assert len(body["days"]) == 31
    assert body["leading_blanks"] == 6
    assert days["2025-03-06"]["dimmed"] is False
    assert days["2025-03-06"]["events"][0]["id"] == "e1"
    assert days["2025-03-07"]["dimmed"] is True
    assert days["2025-03-07"]["weekend"] is True
    assert days["2025-03-14"]["holiday"]["name_hebrew"] == "פורים"


def test_display_settings_are_admin_only_and_validated():
    editor = api_client(make_auth(role=Role.EDITOR))
    assert editor.put("/api/v1/settings/display", json={"photo_interval": 20}).status_code == 403

    fake = FakeSupabase()
    auth = make_auth(fake, role=Role.ADMIN)
    admin = api_client(auth)
    bad = admin.put("/api/v1/settings/display", json={"night_mode_start": "late"})
    assert bad.status_code == 400

    ok = admin.put("/api/v1/settings/display", json={"night_mode_start": "22:00", "night_mode_end": "06:00"})
    assert ok.status_code == 200
    (_, table, payload, on_conflict), = fake.calls_for("upsert")
    assert table == "mom_display_settings"
    assert on_conflict == "family_id"
    assert payload == {"family_id": auth.family_id, "night_mode_start": "22:00", "night_mode_end": "06:00"}


def test_notification_level_update():
    fake = FakeSupabase()
    auth = make_auth(fake, role=Role.VIEWER)
    resp = api_client(auth).put("/api/v1/settings/notifications", json={"notification_level": "calm"})
    assert resp.status_code == 200
    assert resp.json()["notification_level"] == "calm"
    (_, _, payload, params), = fake.calls_for("update", "family_members")
    assert params == {"id": f"eq.{auth.member.id}"}


def test_gallery_add_photo_appends_to_order():
    fake = FakeSupabase(select_queue={"gallery_photos": [[{"id": "p1"}, {"id": "p2"}]]})
    auth = make_auth(fake, role=Role.ADMIN)
    fake.insert_queue["gallery_photos"] = [[{"id": "p3", "url": "https://img/3.jpg", "display_order": 2}]]
    client = api_client(auth)

    resp = client.post("/api/v1/gallery", json={"url": "https://img/3.jpg", "caption": ""})

    assert resp.status_code == 200
    (_, _, payload, _), = fake.calls_for("insert", "gallery_photos")
    assert payload["display_order"] == 2
    assert payload["caption"] is None
    assert payload["uploaded_by"] == auth.member.id


def test_image_tutorial_needs_steps():
    client = api_client(make_auth(FakeSupabase(), role=Role.ADMIN))
    resp = client.post(
        "/api/v1/tutorials",
        json={"title": "Answer a call", "category_id": str(uuid4()), "content_type": "images", "steps": []},
    )
    assert resp.status_code == 400

    video = client.post(
        "/api/v1/tutorials",
        json={"title": "Answer a call", "category_id": str(uuid4()), "content_type": "video"},
    )
    assert video.status_code == 400
