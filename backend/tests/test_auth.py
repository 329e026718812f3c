import shutil
import tempfile
import unittest
from datetime import datetime, timedelta
from pathlib import Path
import sys
from types import SimpleNamespace
from unittest.mock import patch
from urllib import parse as urlparse

from fastapi import HTTPException

BACKEND_DIR = Path(__file__).resolve().parents[1]
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

import main  # noqa: E402


OIDC_CONFIG = {
    "authorization_endpoint": "https://idp.test/auth",
    "token_endpoint": "https://idp.test/token",
    "userinfo_endpoint": "https://idp.test/me",
    "end_session_endpoint": "https://idp.test/logout",
}


def fake_request(cookies=None, hostname="portal.test"):
    return SimpleNamespace(
        cookies=cookies or {},
        url=SimpleNamespace(hostname=hostname, scheme="https", netloc=hostname),
    )


class AuthTests(unittest.TestCase):
    @classmethod
    def setUpClass(cls) -> None:
        cls.original_db_path = main.DB_PATH
        cls.original_uploads_dir = main.UPLOADS_DIR
        cls.tempdir = tempfile.TemporaryDirectory()
        cls.temp_root = Path(cls.tempdir.name)
        cls.test_db_path = cls.temp_root / "test.db"
        cls.test_uploads_dir = cls.temp_root / "uploads"

    @classmethod
    def tearDownClass(cls) -> None:
        main.DB_PATH = cls.original_db_path
        main.UPLOADS_DIR = cls.original_uploads_dir
        cls.tempdir.cleanup()

    def setUp(self) -> None:
        if self.test_db_path.exists():
            self.test_db_path.unlink()
        shutil.rmtree(self.test_uploads_dir, ignore_errors=True)
        self.test_uploads_dir.mkdir(parents=True, exist_ok=True)
        main.DB_PATH = self.test_db_path
        main.UPLOADS_DIR = self.test_uploads_dir
        main.init_db()

    def test_new_login_user_defaults_to_partner(self) -> None:
        with main.get_db() as conn:
            user = main.upsert_user_from_claims(
                conn,
                {"sub": "sub-1", "email": "New@Partner.test", "first_name": "Nia", "last_name": "Ng"},
            )
        self.assertEqual(user["email"], "new@partner.test")
        self.assertEqual(user["role"], "partner")
        self.assertEqual(user["is_system_admin"], 0)
        self.assertEqual(user["is_active"], 1)

    def test_login_refreshes_profile_but_keeps_role(self) -> None:
        with main.get_db() as conn:
            main.upsert_user_from_claims(conn, {"sub": "sub-1", "email": "pat@partner.test", "first_name": "Pat"})
            conn.execute("UPDATE User SET role = 'sales_executive' WHERE id = 'sub-1'")
            conn.commit()
            user = main.upsert_user_from_claims(
                conn, {"sub": "sub-1", "email": "pat@partner.test", "first_name": "Patricia"}
            )
        self.assertEqual(user["first_name"], "Patricia")
        self.assertEqual(user["role"], "sales_executive")

    def test_listed_admin_email_becomes_system_admin(self) -> None:
        with patch.object(main, "ADMIN_EMAILS", {"ops@nxtkonekt.test"}):
            with main.get_db() as conn:
                user = main.upsert_user_from_claims(conn, {"sub": "sub-9", "email": "OPS@nxtkonekt.test"})
        self.assertEqual(user["is_system_admin"], 1)
        self.assertTrue(main.is_admin_user(user))

    def test_session_cookie_resolves_user(self) -> None:
        with main.get_db() as conn:
            main.upsert_user_from_claims(conn, {"sub": "sub-1", "email": "pat@partner.test"})
            token = main.create_auth_session(conn, "sub-1")
            stored = conn.execute("SELECT session_hash FROM AuthSession").fetchone()["session_hash"]
            user = main.require_session_user(conn, fake_request({main.SESSION_COOKIE_NAME: token}))

            with self.assertRaises(HTTPException) as missing_ctx:
                main.require_session_user(conn, fake_request())
            with self.assertRaises(HTTPException) as bogus_ctx:
                main.require_session_user(conn, fake_request({main.SESSION_COOKIE_NAME: "bogus"}))

        self.assertNotEqual(stored, token)
        self.assertEqual(user["id"], "sub-1")
        self.assertEqual(missing_ctx.exception.status_code, 401)
        self.assertEqual(bogus_ctx.exception.status_code, 401)

    def test_expired_session_is_ignored(self) -> None:
        with main.get_db() as conn:
            main.upsert_user_from_claims(conn, {"sub": "sub-1", "email": "pat@partner.test"})
            token = main.create_auth_session(conn, "sub-1")
            conn.execute(
                "UPDATE AuthSession SET expires_at = ?",
                ((datetime.utcnow() - timedelta(minutes=1)).isoformat(),),
            )
            conn.commit()
            self.assertIsNone(main.get_session_user(conn, fake_request({main.SESSION_COOKIE_NAME: token})))

    def test_inactive_user_is_refused(self) -> None:
        with main.get_db() as conn:
            main.upsert_user_from_claims(conn, {"sub": "sub-1", "email": "pat@partner.test"})
            token = main.create_auth_session(conn, "sub-1")
            conn.execute("UPDATE User SET is_active = 0 WHERE id = 'sub-1'")
            conn.commit()
            with self.assertRaises(HTTPException) as ctx:
                main.require_session_user(conn, fake_request({main.SESSION_COOKIE_NAME: token}))
        self.assertEqual(ctx.exception.status_code, 403)

    def test_login_without_client_id_is_unavailable(self) -> None:
        with patch.object(main, "OIDC_CLIENT_ID", ""):
            with self.assertRaises(HTTPException) as ctx:
                main.login(fake_request())
        self.assertEqual(ctx.exception.status_code, 503)

    def test_login_rejects_unlisted_domain(self) -> None:
        with patch.object(main, "get_oidc_config", return_value=OIDC_CONFIG), patch.object(
            main, "OIDC_ALLOWED_DOMAINS", ["portal.nxtkonekt.test"]
        ), patch.object(main, "OIDC_REDIRECT_URI", ""):
            with self.assertRaises(HTTPException) as ctx:
                main.login(fake_request(hostname="evil.test"))
        self.assertEqual(ctx.exception.status_code, 400)

    def test_invited_login_round_trip(self) -> None:
        now = main.now_iso()
        expires = (datetime.utcnow() + timedelta(days=7)).isoformat()
        with main.get_db() as conn:
            conn.execute(
                """
                INSERT INTO PartnerInvitation (id, email, invitation_token, status, expires_at, created_at)
                VALUES ('inv-1', 'new@partner.test', 'invite-token', 'pending', ?, ?)
                """,
                (expires, now),
            )
            conn.commit()

        def fake_oidc_request(url, *, form=None, access_token=None):
            if url == OIDC_CONFIG["token_endpoint"]:
                self.assertEqual(form["code"], "auth-code")
                self.assertTrue(form["code_verifier"])
                return {"access_token": "access-1"}
            self.assertEqual(access_token, "access-1")
            return {"sub": "sub-new", "email": "new@partner.test", "first_name": "Nia"}

        with patch.object(main, "get_oidc_config", return_value=OIDC_CONFIG), patch.object(
            main, "OIDC_CLIENT_ID", "client-1"
        ), patch.object(main, "OIDC_REDIRECT_URI", ""), patch.object(main, "OIDC_ALLOWED_DOMAINS", []), patch.object(
            main, "oidc_request", side_effect=fake_oidc_request
        ):
            redirect = main.login(fake_request(), invitation="invite-token")
            location = urlparse.urlparse(redirect.headers["location"])
            query = urlparse.parse_qs(location.query)
            self.assertEqual(f"{location.scheme}://{location.netloc}{location.path}", OIDC_CONFIG["authorization_endpoint"])
            self.assertEqual(query["code_challenge_method"], ["S256"])
            self.assertEqual(query["redirect_uri"], ["https://portal.test/api/callback"])
            self.assertEqual(query["scope"], [main.OIDC_SCOPES])

            callback = main.login_callback(code="auth-code", state=query["state"][0])
            replay = main.login_callback(code="auth-code", state=query["state"][0])

        self.assertEqual(callback.headers["location"], f"{main.FRONTEND_BASE_URL}/dashboard?welcome=partner")
        self.assertIn(f"{main.SESSION_COOKIE_NAME}=", callback.headers["set-cookie"])
        self.assertIn("reason=expired_state", replay.headers["location"])
        with main.get_db() as conn:
            invitation = conn.execute("SELECT * FROM PartnerInvitation WHERE id = 'inv-1'").fetchone()
            events = [row["event"] for row in conn.execute("SELECT event FROM SignupAnalytics").fetchall()]
        self.assertEqual(invitation["status"], "accepted")
        self.assertEqual(events, ["signup_completed"])

    def test_callback_errors_redirect_to_login_error(self) -> None:
        response = main.login_callback(code=None, state=None, error="access_denied")
        self.assertEqual(response.headers["location"], f"{main.FRONTEND_BASE_URL}/login-error?reason=access_denied")
        missing = main.login_callback(code=None, state=None, error=None)
        self.assertIn("reason=missing_code", missing.headers["location"])

    def test_login_email_owned_by_another_user_keeps_stored_email(self) -> None:
        with main.get_db() as conn:
            main.upsert_user_from_claims(conn, {"sub": "a", "email": "a@x.test"})
            main.upsert_user_from_claims(conn, {"sub": "b", "email": "b@x.test"})
            user = main.upsert_user_from_claims(conn, {"sub": "b", "email": "a@x.test", "first_name": "Bo"})
            other = conn.execute("SELECT * FROM User WHERE id = 'a'").fetchone()
        self.assertEqual(user["id"], "b")
        self.assertEqual(user["email"], "b@x.test")
        self.assertEqual(user["first_name"], "Bo")
        self.assertEqual(other["email"], "a@x.test")

    def test_callback_account_conflict_redirects_to_login_error(self) -> None:
        with main.get_db() as conn:
            main.upsert_user_from_claims(conn, {"sub": "a", "email": "a@x.test"})
            main.upsert_user_from_claims(conn, {"sub": "b", "email": "b@x.test"})

        def fake_oidc_request(url, *, form=None, access_token=None):
            if url == OIDC_CONFIG["token_endpoint"]:
                return {"access_token": "access-1"}
            return {"sub": "b", "email": "a@x.test"}

        with patch.object(main, "get_oidc_config", return_value=OIDC_CONFIG), patch.object(
            main, "OIDC_CLIENT_ID", "client-1"
        ), patch.object(main, "OIDC_REDIRECT_URI", ""), patch.object(main, "OIDC_ALLOWED_DOMAINS", []), patch.object(
            main, "oidc_request", side_effect=fake_oidc_request
        ):
            redirect = main.login(fake_request(), invitation=None)
            state = urlparse.parse_qs(urlparse.urlparse(redirect.headers["location"]).query)["state"][0]
            callback = main.login_callback(code="auth-code", state=state)

            redirect = main.login(fake_request(), invitation=None)
            state = urlparse.parse_qs(urlparse.urlparse(redirect.headers["location"]).query)["state"][0]
            with patch.object(
                main, "upsert_user_from_claims", side_effect=main.sqlite3.IntegrityError("UNIQUE constraint failed")
            ):
                conflict = main.login_callback(code="auth-code", state=state)

        self.assertEqual(callback.headers["location"], f"{main.FRONTEND_BASE_URL}/")
        self.assertEqual(
            conflict.headers["location"], f"{main.FRONTEND_BASE_URL}/login-error?reason=account_conflict"
        )
        self.assertNotIn("set-cookie", conflict.headers)

    def test_organization_created_once_per_user(self) -> None:
        with main.get_db() as conn:
            main.upsert_user_from_claims(conn, {"sub": "sub-1", "email": "pat@partner.test"})
        user = {"id": "sub-1", "email": "pat@partner.test", "role": "partner"}
        with patch.object(main, "require_session_user", return_value=user):
            created = main.create_organization(
                main.OrganizationIn(name="Signal Partners", partner_type="reseller"), request=object()
            )
            with self.assertRaises(HTTPException) as ctx:
                main.create_organization(main.OrganizationIn(name="Second"), request=object())
            updated = main.update_my_organization(main.OrganizationUpdate(phone="555-0100"), request=object())
            mine = main.get_my_organization(request=object())

        self.assertEqual(created.partner_status, "pending")
        self.assertEqual(ctx.exception.status_code, 400)
        self.assertEqual(updated.phone, "555-0100")
        self.assertEqual(updated.name, "Signal Partners")
        self.assertEqual(mine.id, created.id)
        with main.get_db() as conn:
            events = [row["event"] for row in conn.execute("SELECT event FROM SignupAnalytics").fetchall()]
        self.assertEqual(events, ["organization_created"])


if __name__ == "__main__":
    unittest.main()
