import base64
import io
import json
import sys
from pathlib import Path

import pytest

sys.path.append(str(Path(__file__).resolve().parents[1]))
import campusdesk as desk_app  # noqa: E402

ALEX = {"name": "alex", "role": "student", "displayName": "Alex Smith", "avatar": "👨‍🎓"}
JANE = {"name": "jane", "role": "student", "displayName": "Jane Doe", "avatar": "👩‍💻"}
STAFF = {"name": "staff1", "role": "staff", "displayName": "Command Lead", "avatar": "👮‍♂️"}


@pytest.fixture(autouse=True)
def isolated_store(tmp_path, monkeypatch):
    desk_app.configure_database(f"sqlite:///{tmp_path / 'campusdesk.db'}")
    monkeypatch.setattr(desk_app, "TAGGING_ENDPOINT_URL", None)
    desk_app._notifications.clear()
    yield
    desk_app._notifications.clear()


def client_for(user):
    client = desk_app.app.test_client()
    with client.session_transaction() as session:
        session[desk_app.STORAGE_KEY_USER] = json.dumps(user)
    return client


def seed_ticket(user, title, **extra):
    return desk_app.create_ticket({"title": title, "desc": "Details", **extra}, user)


def test_student_sees_only_own_tickets():
    seed_ticket(ALEX, "Alex Printer Issue")
    seed_ticket(JANE, "Jane Grade Question")

    body = client_for(ALEX).get("/dashboard").get_data(as_text=True)

    assert "Alex Printer Issue" in body
    assert "Jane Grade Question" not in body
    assert "New Ticket" in body


def test_staff_queue_hides_resolved_and_shows_analytics():
    open_ticket = seed_ticket(ALEX, "Open Wifi Issue")
    closed = seed_ticket(JANE, "Closed Vpn Issue")
    desk_app.resolve_ticket(closed["id"], "Updated client", STAFF)

    body = client_for(STAFF).get("/dashboard").get_data(as_text=True)

    assert open_ticket["title"] in body
    assert "Closed Vpn Issue" not in body
    assert "Success Rate 50%" in body
    assert "Export" in body


def test_staff_filters_by_priority():
    seed_ticket(ALEX, "Broken projector")
    seed_ticket(ALEX, "Quiet question")

    body = client_for(STAFF).get("/dashboard?priority=Critical").get_data(as_text=True)

    assert "Broken projector" in body
    assert "Quiet question" not in body


def test_student_cannot_open_another_students_ticket():
    ticket = seed_ticket(JANE, "Jane Only")

    assert client_for(ALEX).get(f"/ticket/{ticket['id']}").status_code == 403
    assert client_for(JANE).get(f"/ticket/{ticket['id']}").status_code == 200
    assert client_for(STAFF).get(f"/ticket/{ticket['id']}").status_code == 200


def test_staff_only_actions_are_forbidden_for_students():
    ticket = seed_ticket(ALEX, "Needs staff")
    client = client_for(ALEX)

    assert client.post(f"/ticket/{ticket['id']}/resolve", data={"summary": "Self fix"}).status_code == 403
    assert client.post(f"/ticket/{ticket['id']}/progress").status_code == 403
    assert client.post("/reset").status_code == 403
    assert client.get("/export.csv").status_code == 403
    assert desk_app.get_ticket(ticket["id"])["status"] == "Pending"


def test_staff_cannot_file_tickets():
    assert client_for(STAFF).get("/new").status_code == 403


def test_resolve_route_flashes_missing_summary():
    ticket = seed_ticket(ALEX, "Needs summary")

    response = client_for(STAFF).post(
        f"/ticket/{ticket['id']}/resolve", data={"summary": ""}, follow_redirects=True
    )

    assert "Summary required!" in response.get_data(as_text=True)
    assert desk_app.get_ticket(ticket["id"])["status"] == "Pending"


def test_full_flow_through_routes():
    ticket = seed_ticket(ALEX, "Lab login broken")
    staff = client_for(STAFF)
    student = client_for(ALEX)

    staff.post(f"/ticket/{ticket['id']}/progress")
    staff.post(f"/ticket/{ticket['id']}/comment", data={"text": "On my way"})
    staff.post(f"/ticket/{ticket['id']}/resolve", data={"summary": "Rebooted lab server"})
    student.post(f"/ticket/{ticket['id']}/rate", data={"rating": "5", "ratingComment": "Fast"})

    stored = desk_app.get_ticket(ticket["id"])
    assert stored["status"] == "Resolved"
    assert stored["resolvedBy"] == "Command Lead"
    assert stored["comments"][0]["text"] == "On my way"
    assert stored["rating"] == 5

    body = student.get("/dashboard").get_data(as_text=True)
    assert f"Ticket #{ticket['id']} Resolved" in body


def test_export_csv_download():
    seed_ticket(ALEX, "Export me")

    response = client_for(STAFF).get("/export.csv")

    assert response.status_code == 200
    assert response.mimetype == "text/csv"
    assert desk_app.EXPORT_FILENAME in response.headers["Content-Disposition"]
    lines = response.get_data(as_text=True).splitlines()
    assert lines[0] == "ID,Title,Category,Priority,Status,Student,Created"
    assert "Export me" in lines[1]


def test_reset_route_clears_everything():
    seed_ticket(ALEX, "Old ticket")

    response = client_for(STAFF).post("/reset")

    assert response.status_code == 302
    assert desk_app.load_tickets() == []


def test_attachment_upload_and_download():
    client = client_for(ALEX)
    png = b"\x89PNG\r\n\x1a\nfake-image"
    response = client.post(
        "/new",
        data={
            "title": "Screen flicker",
            "desc": "See photo",
            "category": "Technical",
            "attachments": [(io.BytesIO(png), "screen.png", "image/png")],
        },
        content_type="multipart/form-data",
    )
    assert response.status_code == 302

    ticket = desk_app.load_tickets()[0]
    attachment = ticket["attachments"][0]
    assert attachment["name"] == "screen.png"
    assert attachment["data"] == "data:image/png;base64," + base64.b64encode(png).decode("ascii")

    download = client.get(f"/ticket/{ticket['id']}/attachment/0")
    assert download.status_code == 200
    assert download.data == png
    assert client.get(f"/ticket/{ticket['id']}/attachment/3").status_code == 404


def test_oversized_attachment_is_rejected():
    client = client_for(ALEX)
    big = b"0" * (desk_app.MAX_ATTACHMENT_BYTES + 1)
    response = client.post(
        "/new",
        data={
            "title": "Huge scan",
            "desc": "Too big",
            "attachments": [(io.BytesIO(big), "scan.png", "image/png")],
        },
        content_type="multipart/form-data",
        follow_redirects=True,
    )

    assert "File is too large" in response.get_data(as_text=True)
    assert desk_app.load_tickets() == []


def test_clear_notifications():
    seed_ticket(ALEX, "Ping")
    client = client_for(ALEX)

    client.post("/notifications/clear")

    assert desk_app.get_notifications("alex") == []


def test_svg_attachment_is_never_served_inline():
    svg = b'<svg xmlns="http://www.w3.org/2000/svg"><script>fetch("/reset",{method:"POST"})</script></svg>'
    client_for(ALEX).post(
        "/new",
        data={
            "title": "Diagram",
            "desc": "Floor plan",
            "attachments": [(io.BytesIO(svg), "plan.svg", "image/svg+xml")],
        },
        content_type="multipart/form-data",
    )
    ticket = desk_app.load_tickets()[0]

    download = client_for(STAFF).get(f"/ticket/{ticket['id']}/attachment/0")

    assert download.status_code == 200
    assert download.headers["Content-Disposition"].startswith("attachment")


def test_png_attachment_is_shown_inline():
    png = b"\x89PNG\r\n\x1a\nfake-image"
    client_for(ALEX).post(
        "/new",
        data={"title": "Photo", "attachments": [(io.BytesIO(png), "photo.png", "image/png")]},
        content_type="multipart/form-data",
    )
    ticket = desk_app.load_tickets()[0]

    download = client_for(STAFF).get(f"/ticket/{ticket['id']}/attachment/0")

    assert download.headers["Content-Disposition"].startswith("inline")
