import html
import json
import os
import re
import sys
import unittest
from datetime import datetime, timedelta
from pathlib import Path

from fastapi import Depends
from fastapi.testclient import TestClient


os.environ.setdefault("SESSION_SIGNING_SECRET", "x" * 48)
os.environ.setdefault("CONSOLE_AUDIT_DB_URL", "sqlite+pysqlite:///:memory:")
os.environ.setdefault("LENDING_API_BASE_URL", "http://lending.test")

APP_DIR = Path(__file__).resolve().parents[1]
TESTS_DIR = Path(__file__).resolve().parent
for path in (APP_DIR, TESTS_DIR):
    if str(path) not in sys.path:
        sys.path.insert(0, str(path))

import LendingConsole as app_module
from fakes import API_BASE, FakeDb, FakeOpener, equipment_row, loan_row
from services.lending_api import AuthApi, LendingApi
from services.session_store import SessionStore


ADMIN_PROFILE = {"id": 1, "nombre": "Root", "email": "root@uni.edu", "rol": "Admin"}
STUDENT_PROFILE = {"id": 7, "nombre": "Ana", "email": "ana@uni.edu", "rol": "Estudiante"}


class ConsoleFlowTests(unittest.TestCase):
    def setUp(self):
        self.opener = FakeOpener()
        self.fake_db = FakeDb()
        opener = self.opener

        def _lending_api(store: SessionStore = Depends(app_module.get_session_store)):
            return LendingApi(store, API_BASE, opener=opener)

        app_module.app.dependency_overrides[app_module.get_lending_api] = _lending_api
        app_module.app.dependency_overrides[app_module.get_auth_api] = lambda: AuthApi(API_BASE, opener=opener)
        app_module.app.dependency_overrides[app_module.get_audit_db] = lambda: self.fake_db
        self.client = TestClient(app_module.app)

    def tearDown(self):
        app_module.app.dependency_overrides.clear()

    def _login(self, profile):
        self.opener.add("POST", "/api/Auth/login", payload={"token": f"tok-{profile['id']}", "usuario": profile})
        response = self.client.post(
            "/login",
            data={"email": profile["email"], "password": "pw"},
            follow_redirects=False,
        )
        self.assertEqual(response.status_code, 303)
        self.assertEqual(response.headers["location"], "/dashboard")
        return response

    def test_unauthenticated_pages_redirect_to_login(self):
        for path in ("/dashboard", "/inventory", "/loans", "/reports", "/configuration"):
            response = self.client.get(path, follow_redirects=False)
            self.assertEqual(response.status_code, 303, path)
            self.assertEqual(response.headers["location"], "/login")
        self.assertEqual(self.opener.requests, [])

    def test_login_records_audit_and_forwards_bearer_token(self):
        self._login(ADMIN_PROFILE)
        self.assertEqual(self.fake_db.actions(), ["LoginSuccess"])

        self.opener.add("GET", "/api/Implementos", payload=[equipment_row(1, "Ball", status="Prestado")])
        self.opener.add("GET", "/api/Prestamos/todos", payload=[loan_row(1, equipment_row(1, "Ball"))])
        response = self.client.get("/dashboard")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(
            self.opener.calls("GET", "/api/Implementos")[0].get_header("Authorization"),
            "Bearer tok-1",
        )

    def test_bad_login_shows_server_message(self):
        self.opener.add("POST", "/api/Auth/login", status=401, payload={"message": "Invalid credentials"})
        response = self.client.post("/login", data={"email": "a@b.com", "password": "nope"}, follow_redirects=False)
        self.assertEqual(response.status_code, 400)
        self.assertIn("Invalid credentials", response.text)
        self.assertEqual(self.fake_db.actions(), ["LoginFailed"])

        self.assertEqual(self.client.get("/dashboard", follow_redirects=False).status_code, 303)

    def test_empty_login_form_is_rejected_without_remote_call(self):
        response = self.client.post("/login", data={"email": " ", "password": ""})
        self.assertEqual(response.status_code, 400)
        self.assertEqual(self.opener.requests, [])

    def test_navigation_depends_on_role(self):
        self._login(STUDENT_PROFILE)
        self.opener.add("GET", "/api/Implementos", payload=[])
        self.opener.add("GET", "/api/Prestamos/mis-prestamos", payload=[])
        student_page = self.client.get("/dashboard").text
        self.assertIn('href="/loans"', student_page)
        self.assertNotIn('href="/reports"', student_page)
        self.assertNotIn('href="/configuration"', student_page)
        self.assertEqual(self.opener.calls("GET", "/api/Prestamos/todos"), [])

        self.client.post("/logout")
        self._login(ADMIN_PROFILE)
        self.opener.add("GET", "/api/Prestamos/todos", payload=[])
        admin_page = self.client.get("/dashboard").text
        self.assertIn('href="/reports"', admin_page)
        self.assertIn('href="/configuration"', admin_page)

    def test_student_is_refused_admin_routes_and_actions(self):
        self._login(STUDENT_PROFILE)
        before = len(self.opener.requests)

        self.assertEqual(self.client.get("/reports").status_code, 403)
        self.assertEqual(self.client.get("/configuration").status_code, 403)
        self.assertEqual(self.client.post("/inventory", data={"name": "Ball", "category": "Football"}).status_code, 403)
        self.assertEqual(self.client.post("/inventory/3/delete").status_code, 403)
        self.assertEqual(self.client.post("/loans/4/return").status_code, 403)
        self.assertEqual(self.client.get("/loans/new").status_code, 403)
        self.assertEqual(len(self.opener.requests), before)

    def test_unauthorized_response_forces_logout(self):
        self._login(ADMIN_PROFILE)
        self.opener.add("GET", "/api/Implementos", status=401, text="")

        response = self.client.get("/inventory", follow_redirects=False)
        self.assertEqual(response.status_code, 303)
        self.assertEqual(response.headers["location"], "/login")

        login_page = self.client.get("/login")
        self.assertEqual(login_page.status_code, 200)
        self.assertIn("Session expired. Please sign in again.", login_page.text)
        self.assertEqual(self.client.get("/loans", follow_redirects=False).headers["location"], "/login")

    def test_admin_creates_equipment_with_image(self):
        self._login(ADMIN_PROFILE)
        self.opener.add("POST", "/api/Implementos", status=201, payload=equipment_row(12, "Net"))

        response = self.client.post(
            "/inventory",
            data={"name": "Net", "category": "Volleyball", "description": "Tall"},
            files={"image": ("net.png", b"\x89PNG", "image/png")},
            follow_redirects=False,
        )
        self.assertEqual(response.status_code, 303)
        sent = self.opener.calls("POST", "/api/Implementos")[0]
        self.assertTrue(sent.get_header("Content-type").startswith("multipart/form-data"))
        self.assertIn(b'filename="net.png"', sent.data)
        self.assertEqual(self.fake_db.actions(), ["LoginSuccess", "EquipmentCreated"])

    def test_confirm_prompts_keep_equipment_names_inside_the_string(self):
        hostile = "x');alert(1);('"
        self._login(ADMIN_PROFILE)
        self.opener.add("GET", "/api/Implementos", payload=[equipment_row(1, hostile)])
        self.opener.add("GET", "/api/Prestamos/todos", payload=[loan_row(4, equipment_row(1, hostile))])

        inventory_handlers = re.findall(r"onsubmit='([^']*)'", self.client.get("/inventory").text)
        loan_handlers = re.findall(r"onsubmit='([^']*)'", self.client.get("/loans").text)

        self.assertEqual(
            [html.unescape(handler) for handler in inventory_handlers],
            ['return confirm("Delete x\\u0027);alert(1);(\\u0027?");'],
        )
        self.assertEqual(
            [html.unescape(handler) for handler in loan_handlers],
            ['return confirm("Record the return of x\\u0027);alert(1);(\\u0027?");'],
        )

    def test_inventory_status_filter(self):
        self._login(STUDENT_PROFILE)
        self.opener.add(
            "GET",
            "/api/Implementos",
            payload=[equipment_row(1, "Ball"), equipment_row(2, "Racket", status="Prestado")],
        )
        page = self.client.get("/inventory", params={"status": "Loaned"}).text
        self.assertIn("Racket", page)
        self.assertNotIn("Ball", page)
        self.assertNotIn("New equipment", page)

    def test_loan_registration_rechecks_availability(self):
        self._login(ADMIN_PROFILE)
        self.opener.add("GET", "/api/Implementos", payload=[equipment_row(5, "Ball", status="Prestado")])
        due = (datetime.now() + timedelta(days=2)).strftime("%Y-%m-%dT%H:%M")

        response = self.client.post(
            "/loans",
            data={"user_id": "3", "equipment_id": "5", "scheduled_return": due},
            follow_redirects=False,
        )
        self.assertEqual(response.headers["location"], "/loans/new")
        self.assertEqual(self.opener.calls("POST", "/api/Prestamos/registrar"), [])

    def test_loan_registration_rejects_past_return_date(self):
        self._login(ADMIN_PROFILE)
        response = self.client.post(
            "/loans",
            data={"user_id": "3", "equipment_id": "5", "scheduled_return": "2000-01-01T10:00"},
            follow_redirects=False,
        )
        self.assertEqual(response.headers["location"], "/loans/new")
        self.assertEqual(self.opener.calls("GET", "/api/Implementos"), [])

    def test_loan_registration_posts_wire_payload(self):
        self._login(ADMIN_PROFILE)
        self.opener.add("GET", "/api/Implementos", payload=[equipment_row(5, "Ball")])
        self.opener.add("POST", "/api/Prestamos/registrar", text="ok")
        due = (datetime.now() + timedelta(days=2)).replace(second=0, microsecond=0)

        response = self.client.post(
            "/loans",
            data={"user_id": "3", "equipment_id": "5", "scheduled_return": due.strftime("%Y-%m-%dT%H:%M")},
            follow_redirects=False,
        )
        self.assertEqual(response.headers["location"], "/loans")
        body = json.loads(self.opener.calls("POST", "/api/Prestamos/registrar")[0].data)
        self.assertEqual(body["usuarioId"], 3)
        self.assertEqual(body["implementoId"], 5)
        self.assertEqual(body["fechaDevolucionProgramada"], due.isoformat())
        self.assertEqual(self.fake_db.actions()[-1], "LoanRegistered")

    def test_logout_clears_session(self):
        self._login(ADMIN_PROFILE)
        response = self.client.post("/logout", follow_redirects=False)
        self.assertEqual(response.headers["location"], "/login")
        self.assertEqual(self.fake_db.actions(), ["LoginSuccess", "Logout"])
        self.assertEqual(self.client.get("/dashboard", follow_redirects=False).status_code, 303)

    def test_configuration_lists_audit_events(self):
        self._login(ADMIN_PROFILE)
        page = self.client.get("/configuration")
        self.assertEqual(page.status_code, 200)
        self.assertIn("LoginSuccess", page.text)


if __name__ == "__main__":
    unittest.main()
