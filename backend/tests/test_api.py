import csv
import io

from fastapi.testclient import TestClient
from sqlalchemy.exc import SQLAlchemyError

from bustrack import database
from bustrack.config import Settings
from bustrack.db_store import DatabaseStore
from bustrack.main import create_app

STUDENT = ("student@college.edu", "student123")
DRIVER = ("driver@college.edu", "driver123")
ADMIN = ("admin@college.edu", "admin123")

POSITION = {"kind": "position", "latitude": 12.9716, "longitude": 77.5946, "speed": 22.5, "status": "moving"}


def test_health(client):
    assert client.get("/").json() == {"status": "ok"}


class TestAuth:
    def test_login_me_logout(self, client, login, fleet):
        headers = login(*STUDENT)
        me = client.get("/auth/me", headers=headers)
        assert me.status_code == 200
        assert me.json()["email"] == "student@college.edu"
        assert me.json()["bus_id"] == "BUS_01"

        assert client.post("/auth/logout", headers=headers).json()["success"]
        assert client.get("/auth/me", headers=headers).status_code == 401

    def test_login_sets_cookie(self, client, fleet):
        resp = client.post("/auth/login", json={"email": DRIVER[0], "password": DRIVER[1]})
        assert "session_token" in resp.cookies
        assert client.get("/auth/me").json()["role"] == "driver"

    def test_bad_password(self, client, fleet):
        resp = client.post("/auth/login", json={"email": STUDENT[0], "password": "nope"})
        assert resp.status_code == 401
        assert resp.json() == {"success": False, "error": "unauthenticated", "message": "Invalid email or password"}

    def test_no_token(self, client):
        resp = client.get("/auth/me")
        assert resp.status_code == 401
        assert resp.json()["error"] == "unauthenticated"


class TestDriverLocation:
    def test_submit_then_read(self, client, login, fleet):
        driver = login(*DRIVER)
        resp = client.post("/driver/location", json=POSITION, headers=driver)
        assert resp.status_code == 200, resp.text
        body = resp.json()
        assert body["success"] and body["tracking_count"] == 1

        bus = client.get("/tracking/my-bus", headers=login(*STUDENT)).json()
        assert (bus["latitude"], bus["longitude"], bus["speed"], bus["status"]) == (12.9716, 77.5946, 22.5, "moving")
        assert bus["updated_at"] == body["timestamp"]

    def test_status_only(self, client, login, fleet):
        driver = login(*DRIVER)
        client.post("/driver/location", json=POSITION, headers=driver)
        resp = client.post("/driver/location", json={"kind": "status", "status": "offline"}, headers=driver)
        assert resp.status_code == 200
        bus = client.get("/tracking/my-bus", headers=driver).json()
        assert (bus["latitude"], bus["status"]) == (12.9716, "offline")

    def test_student_is_forbidden(self, client, login, fleet):
        resp = client.post("/driver/location", json=POSITION, headers=login(*STUDENT))
        assert resp.status_code == 403
        assert resp.json()["error"] == "forbidden"
        assert client.get("/tracking/my-bus", headers=login(*STUDENT)).json()["latitude"] is None

    def test_anonymous_is_rejected(self, client, fleet):
        assert client.post("/driver/location", json=POSITION).status_code == 401

    def test_unassigned_driver(self, client, login, store, fleet):
        store.create_rider("Spare Driver", "spare@college.edu", "spare123", "driver")
        resp = client.post("/driver/location", json=POSITION, headers=login("spare@college.edu", "spare123"))
        assert resp.status_code == 404
        assert resp.json()["error"] == "not_assigned"

    def test_out_of_range_coordinates(self, client, login, fleet):
        resp = client.post("/driver/location", json={**POSITION, "latitude": 123.0}, headers=login(*DRIVER))
        assert resp.status_code == 422
        assert resp.json()["error"] == "validation_error"

    def test_dashboard(self, client, login, fleet):
        body = client.get("/driver/dashboard", headers=login(*DRIVER)).json()
        assert body["bus"]["bus_id"] == "BUS_01"
        assert [o["email"] for o in body["bus"]["occupants"]] == ["student@college.edu"]

    def test_rate_limit(self, fleet):
        with TestClient(create_app(Settings(rate_limit_max_requests=2))) as client:
            token = client.post("/auth/login", json={"email": DRIVER[0], "password": DRIVER[1]}).json()["session_token"]
            headers = {"X-Session-Token": token}
            for _ in range(2):
                assert client.post("/driver/location", json=POSITION, headers=headers).status_code == 200
            resp = client.post("/driver/location", json={**POSITION, "latitude": 13.5}, headers=headers)
            assert resp.status_code == 429
            assert resp.json()["error"] == "rate_limited"
            assert client.get("/tracking/my-bus", headers=headers).json()["latitude"] == 12.9716

    def test_storage_failure_is_retryable(self, client, login, fleet, monkeypatch):
        def locked(self, bus, touch=True, **fields):
            raise SQLAlchemyError("database is locked")

        monkeypatch.setattr(DatabaseStore, "update_bus_state", locked)
        resp = client.post("/driver/location", json=POSITION, headers=login(*DRIVER))
        assert resp.status_code == 503
        assert resp.json()["error"] == "storage_unavailable"


class TestTracking:
    def test_all_buses(self, client, login, fleet):
        buses = client.get("/tracking/buses", headers=login(*STUDENT)).json()
        assert [(b["bus_id"], b["occupant_count"]) for b in buses] == [("BUS_01", 1)]

    def test_unassigned_student(self, client, login, fleet):
        resp = client.get("/tracking/my-bus", headers=login("other@college.edu", "other123"))
        assert resp.status_code == 404
        assert resp.json()["error"] == "not_assigned"

    def test_route_before_first_report(self, client, login, fleet):
        resp = client.get("/tracking/route", params={"rider_lat": 12.98, "rider_lng": 77.60}, headers=login(*STUDENT))
        assert resp.status_code == 404
        assert resp.json()["error"] == "not_found"

    def test_route_to_my_bus(self, client, login, fleet):
        client.post("/driver/location", json=POSITION, headers=login(*DRIVER))
        resp = client.get("/tracking/route", params={"rider_lat": 12.98, "rider_lng": 77.60}, headers=login(*STUDENT))
        assert resp.status_code == 200
        route = resp.json()
        assert route["is_fallback"]
        assert route["duration_min"] == 2
        assert abs(route["distance_km"] - 1.10) < 0.03
        assert route["polyline"][1] == {"lat": 12.9716, "lng": 77.5946}

    def test_route_to_explicit_point(self, client, login, fleet):
        params = {"rider_lat": 12.98, "rider_lng": 77.60, "bus_lat": 12.98, "bus_lng": 77.60}
        route = client.get("/tracking/route", params=params, headers=login("other@college.edu", "other123")).json()
        assert route["distance_km"] == 0
        assert route["duration_min"] == 0

    def test_route_profile_must_be_known(self, client, login, fleet):
        params = {"rider_lat": 12.98, "rider_lng": 77.60, "bus_lat": 12.97, "bus_lng": 77.59,
                  "profile": "../../v1/admin"}
        resp = client.get("/tracking/route", params=params, headers=login(*STUDENT))
        assert resp.status_code == 422
        assert resp.json()["error"] == "validation_error"

        params["profile"] = "foot-walking"
        assert client.get("/tracking/route", params=params, headers=login(*STUDENT)).status_code == 200

    def test_bus_by_number(self, client, login, fleet):
        headers = login("other@college.edu", "other123")
        bus = client.get("/tracking/buses/by-number/01", headers=headers).json()
        assert (bus["bus_id"], bus["route_name"]) == ("BUS_01", "Main Campus Route")

        resp = client.get("/tracking/buses/by-number/99", headers=headers)
        assert resp.status_code == 404
        assert resp.json()["error"] == "not_found"
        assert client.get("/tracking/buses/by-number/01").status_code == 401


class TestAdmin:
    def test_requires_admin(self, client, login, fleet):
        assert client.get("/admin/buses", headers=login(*DRIVER)).status_code == 403
        assert client.get("/admin/buses").status_code == 401

    def test_bus_crud(self, client, login, fleet):
        admin = login(*ADMIN)
        resp = client.post("/admin/buses", json={"bus_id": "BUS_02", "bus_number": "02", "route_name": "North Loop"},
                           headers=admin)
        assert resp.status_code == 200
        assert resp.json()["bus"]["latitude"] is None
        assert resp.json()["bus"]["status"] == "stopped"

        resp = client.put("/admin/buses/BUS_02", json={"capacity": 55, "status": "delayed"}, headers=admin)
        assert (resp.json()["bus"]["capacity"], resp.json()["bus"]["status"]) == (55, "delayed")

        assert client.get("/admin/buses", params={"status": "delayed"}, headers=admin).json()[0]["bus_id"] == "BUS_02"
        assert client.delete("/admin/buses/BUS_02", headers=admin).json()["unassigned"] == 0
        assert client.get("/admin/buses/BUS_02", headers=admin).status_code == 404

    def test_duplicate_bus_number(self, client, login, fleet):
        resp = client.post("/admin/buses", json={"bus_id": "BUS_03", "bus_number": "01"}, headers=login(*ADMIN))
        assert resp.status_code == 409
        assert resp.json()["error"] == "conflict"

    def test_missing_bus_number(self, client, login, fleet):
        resp = client.post("/admin/buses", json={"bus_id": "BUS_03"}, headers=login(*ADMIN))
        assert resp.status_code == 400
        assert resp.json()["error"] == "validation_error"

    def test_delete_bus_unassigns_riders(self, client, login, fleet):
        admin = login(*ADMIN)
        assert client.delete("/admin/buses/BUS_01", headers=admin).json()["unassigned"] == 1
        user = client.get(f"/admin/users/{fleet.student.id}", headers=admin).json()["user"]
        assert user["bus_id"] is None

    def test_user_crud(self, client, login, fleet):
        admin = login(*ADMIN)
        resp = client.post("/admin/users", json={
            "name": "New Student", "email": "new@college.edu", "password": "new12345",
            "role": "student", "student_id": "STU100", "bus_number": "01",
        }, headers=admin)
        assert resp.status_code == 200, resp.text
        user = resp.json()["user"]
        assert user["bus_id"] == "BUS_01"

        resp = client.put(f"/admin/users/{user['id']}", json={"name": "Renamed Student"}, headers=admin)
        assert resp.json()["user"]["name"] == "Renamed Student"

        detail = client.get("/admin/buses/BUS_01", headers=admin).json()["bus"]
        assert detail["occupant_count"] == 2

        assert client.delete(f"/admin/users/{user['id']}", headers=admin).json()["success"]
        assert client.get(f"/admin/users/{user['id']}", headers=admin).status_code == 404

    def test_duplicate_email(self, client, login, fleet):
        resp = client.post("/admin/users", json={
            "name": "Dup", "email": "student@college.edu", "password": "x", "role": "student",
        }, headers=login(*ADMIN))
        assert resp.status_code == 409

    def test_assign_driver(self, client, login, fleet):
        admin = login(*ADMIN)
        client.post("/admin/buses", json={"bus_id": "BUS_02", "bus_number": "02"}, headers=admin)
        resp = client.put("/admin/buses/BUS_02", json={"driver_id": fleet.driver.id}, headers=admin)
        assert resp.json()["bus"]["driver_name"] == "John Driver"
        old = client.get("/admin/buses/BUS_01", headers=admin).json()["bus"]
        assert old["driver_id"] is None

    def test_location_override(self, client, login, fleet):
        admin = login(*ADMIN)
        resp = client.post("/admin/buses/BUS_01/location", json={"latitude": 13.0, "longitude": 77.7}, headers=admin)
        assert resp.status_code == 200
        assert resp.json()["message"] == "Bus location updated"
        bus = client.get("/admin/buses/BUS_01", headers=admin).json()["bus"]
        assert (bus["latitude"], bus["longitude"], bus["speed"], bus["status"]) == (13.0, 77.7, 0.0, "moving")
        assert [b["bus_id"] for b in client.get("/admin/buses/live", headers=admin).json()] == ["BUS_01"]

    def test_dashboard(self, client, login, fleet):
        body = client.get("/admin/dashboard", headers=login(*ADMIN)).json()
        assert body["stats"]["total_users"] == 4
        assert body["stats"]["total_buses"] == 1

    def test_drivers(self, client, login, fleet):
        drivers = client.get("/admin/drivers", headers=login(*ADMIN)).json()["drivers"]
        assert [d["email"] for d in drivers] == ["driver@college.edu"]

    def test_export_buses_csv(self, client, login, fleet):
        admin = login(*ADMIN)
        client.post("/driver/location", json=POSITION, headers=login(*DRIVER))
        resp = client.get("/admin/export/buses", params={"format": "csv"}, headers=admin)
        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("text/csv")
        rows = list(csv.reader(io.StringIO(resp.text)))
        assert rows[0] == ["Bus Number", "Bus ID", "Route", "Driver", "Status", "Latitude", "Longitude", "Last Updated"]
        assert rows[1][:7] == ["01", "BUS_01", "Main Campus Route", "John Driver", "moving", "12.9716", "77.5946"]

    def test_export_users_json(self, client, login, fleet):
        body = client.get("/admin/export/users", headers=login(*ADMIN)).json()
        assert len(body["users"]) == 4

    def test_export_unknown_kind(self, client, login, fleet):
        resp = client.get("/admin/export/trips", headers=login(*ADMIN))
        assert resp.status_code == 400

    def test_bus_options(self, client, login, fleet):
        admin = login(*ADMIN)
        client.post("/admin/buses", json={"bus_id": "BUS_00", "bus_number": "00", "route_name": "Early Run"},
                    headers=admin)
        body = client.get("/admin/buses/options", headers=admin).json()
        assert body["buses"] == [
            {"bus_id": "BUS_00", "bus_number": "00", "route_name": "Early Run"},
            {"bus_id": "BUS_01", "bus_number": "01", "route_name": "Main Campus Route"},
        ]
        assert client.get("/admin/buses/options", headers=login(*DRIVER)).status_code == 403

    def test_bulk_import(self, client, login, fleet):
        admin = login(*ADMIN)
        resp = client.post("/admin/users/bulk-import", json={"users": [
            {"name": "Ana", "email": "ana@college.edu", "password": "ana123", "role": "student",
             "student_id": "STU010", "bus_number": "01"},
            {"name": "Copy", "email": "driver@college.edu", "password": "pw", "role": "driver"},
        ]}, headers=admin)
        assert resp.status_code == 200, resp.text
        body = resp.json()
        assert body["message"] == "Imported 1 users successfully"
        assert body["results"] == [{"email": "ana@college.edu", "name": "Ana", "role": "student", "status": "success"}]
        assert [e["email"] for e in body["errors"]] == ["driver@college.edu"]
        assert client.get("/admin/buses/BUS_01", headers=admin).json()["bus"]["occupant_count"] == 2

        resp = client.post("/admin/users/bulk-import", json={"users": []}, headers=admin)
        assert resp.status_code == 400
        assert resp.json()["error"] == "validation_error"


class TestDatabaseBinding:
    def test_default_url_shares_module_engine(self, app):
        assert app.state.engine is database.engine

    def test_app_uses_its_own_database(self, tmp_path, fleet):
        app = create_app(Settings(database_url=f"sqlite:///{tmp_path / 'other.db'}"))
        assert app.state.engine is not database.engine
        try:
            with TestClient(app) as client:
                # fleet accounts live in the shared test database only
                resp = client.post("/auth/login", json={"email": ADMIN[0], "password": ADMIN[1]})
                assert resp.status_code == 401
                assert client.get("/").json() == {"status": "ok"}
            assert (tmp_path / "other.db").exists()
        finally:
            app.state.engine.dispose()
