import asyncio
import io
import shutil
import tempfile
import unittest
from datetime import datetime, timedelta
from pathlib import Path
import sys
from unittest.mock import patch

import openpyxl
from fastapi import HTTPException

BACKEND_DIR = Path(__file__).resolve().parents[1]
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

import main  # noqa: E402


ADMIN_USER = {
    "id": "admin-1",
    "email": "ops@nxtkonekt.test",
    "first_name": "Alex",
    "last_name": "Admin",
    "role": "admin",
    "is_system_admin": 1,
    "is_active": 1,
}


class AdminTests(unittest.TestCase):
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
        now = main.now_iso()
        with main.get_db() as conn:
            conn.execute(
                """
                INSERT INTO User (id, email, first_name, last_name, role, is_system_admin, is_active, created_at, updated_at)
                VALUES ('admin-1', 'ops@nxtkonekt.test', 'Alex', 'Admin', 'admin', 1, 1, ?, ?)
                """,
                (now, now),
            )
            conn.execute(
                """
                INSERT INTO User (id, email, first_name, last_name, role, is_system_admin, is_active, created_at, updated_at)
                VALUES ('partner-1', 'owner@partner.test', 'Pat', 'Partner', 'partner', 0, 1, ?, ?)
                """,
                (now, now),
            )
            conn.execute(
                """
                INSERT INTO Organization (id, user_id, name, partner_status, created_at, updated_at)
                VALUES ('org-1', 'partner-1', 'Signal Partners', 'pending', ?, ?)
                """,
                (now, now),
            )
            conn.commit()
        self.partner = {"id": "partner-1", "email": "owner@partner.test", "role": "partner"}

    def _create_quote(self, company: str = "Acme Logistics") -> main.QuoteOut:
        payload = main.AssessmentIn(
            sales_executive_name="Dana Reyes",
            sales_executive_email="dana@partner.test",
            customer_company_name=company,
            customer_contact_name="Sam Lee",
            customer_email="sam@acme.test",
            site_address="100 Warehouse Way",
            coverage_area=1500,
            device_count=4,
            signal_strength="5-bars",
        )
        with patch.object(main, "require_session_user", return_value=self.partner), patch.object(
            main, "sync_quote_to_hubspot_async", return_value=None
        ):
            assessment = main.create_assessment(payload, request=object())
            return main.generate_quote(assessment["id"], request=object())

    def test_non_admin_is_refused(self) -> None:
        with patch.object(main, "require_session_user", return_value=self.partner):
            with self.assertRaises(HTTPException) as ctx:
                main.get_admin_stats(request=object())
        self.assertEqual(ctx.exception.status_code, 403)

    def test_role_admin_without_system_flag_is_admin(self) -> None:
        self.assertTrue(main.is_admin_user({"role": "admin", "is_system_admin": 0}))
        self.assertTrue(main.is_admin_user({"role": "partner", "is_system_admin": 1}))
        self.assertFalse(main.is_admin_user({"role": "sales_executive", "is_system_admin": 0}))

    def test_stats_count_partners_and_approved_revenue(self) -> None:
        approved = self._create_quote("Approved Co")
        self._create_quote("Pending Co")
        with main.get_db() as conn:
            conn.execute("UPDATE Quote SET status = 'approved' WHERE id = ?", (approved.id,))
            conn.commit()

        with patch.object(main, "require_admin", return_value=ADMIN_USER):
            stats = main.get_admin_stats(request=object())

        self.assertEqual(stats["total_partners"], 1)
        self.assertEqual(stats["pending_partners"], 1)
        self.assertEqual(stats["total_assessments"], 2)
        self.assertEqual(stats["total_quotes"], 2)
        self.assertEqual(stats["monthly_revenue"], approved.total_cost)

    def test_partner_status_transitions(self) -> None:
        with patch.object(main, "require_admin", return_value=ADMIN_USER):
            approved = main.approve_partner("org-1", request=object())
            self.assertEqual(approved.partner_status, "approved")

            rejected = main.reject_partner("org-1", request=object())
            self.assertEqual(rejected.partner_status, "suspended")

            restored = main.update_partner_status("org-1", main.PartnerStatusIn(status="Approved"), request=object())
            self.assertEqual(restored.partner_status, "approved")

            with self.assertRaises(HTTPException) as invalid_ctx:
                main.update_partner_status("org-1", main.PartnerStatusIn(status="archived"), request=object())
            with self.assertRaises(HTTPException) as missing_ctx:
                main.approve_partner("org-missing", request=object())

            partners = main.list_partners(request=object())

        self.assertEqual(invalid_ctx.exception.status_code, 400)
        self.assertEqual(missing_ctx.exception.status_code, 404)
        self.assertEqual(len(partners), 1)
        self.assertEqual(partners[0]["organization_name"], "Signal Partners")
        self.assertEqual(partners[0]["partner_status"], "approved")

    def test_user_role_and_toggle(self) -> None:
        with patch.object(main, "require_admin", return_value=ADMIN_USER):
            promoted = main.update_user_role("partner-1", main.UserRoleIn(role="sales_executive"), request=object())
            self.assertEqual(promoted.role, "sales_executive")

            with self.assertRaises(HTTPException) as role_ctx:
                main.update_user_role("partner-1", main.UserRoleIn(role="owner"), request=object())
            with self.assertRaises(HTTPException) as self_ctx:
                main.toggle_user_active("admin-1", main.UserActiveIn(is_active=False), request=object())

        self.assertEqual(role_ctx.exception.status_code, 400)
        self.assertEqual(self_ctx.exception.status_code, 400)

        with main.get_db() as conn:
            main.create_auth_session(conn, "partner-1")
        with patch.object(main, "require_admin", return_value=ADMIN_USER):
            disabled = main.toggle_user_active("partner-1", main.UserActiveIn(is_active=False), request=object())
        self.assertFalse(disabled.is_active)
        with main.get_db() as conn:
            sessions = conn.execute(
                "SELECT COUNT(*) AS cnt FROM AuthSession WHERE user_id = 'partner-1'"
            ).fetchone()["cnt"]
        self.assertEqual(sessions, 0)

    def test_close_and_delete_quote(self) -> None:
        quote = self._create_quote()
        with patch.object(main, "require_admin", return_value=ADMIN_USER), patch.object(
            main, "sync_quote_to_hubspot_async", return_value=None
        ) as sync_mock:
            closed = main.close_quote(quote.id, request=object())
            details = main.get_quote_details(quote.id, request=object())
            main.admin_delete_quote(quote.id, request=object())
            with self.assertRaises(HTTPException) as ctx:
                main.get_quote_details(quote.id, request=object())

        self.assertEqual(closed.status, "closed")
        sync_mock.assert_called_once_with(quote.id, create_if_missing=False)
        self.assertEqual(details["assessment"]["customer_company_name"], "Acme Logistics")
        self.assertEqual(details["organization"]["name"], "Signal Partners")
        self.assertEqual(ctx.exception.status_code, 404)

    def test_assessment_report_pdf(self) -> None:
        quote = self._create_quote()
        with patch.object(main, "require_admin", return_value=ADMIN_USER):
            response = main.download_assessment_report(quote.assessment_id, request=object())
        report_path = Path(response.path)
        self.assertTrue(report_path.is_file())
        self.assertEqual(report_path.parent, self.test_uploads_dir / "reports")
        self.assertEqual(report_path.read_bytes()[:4], b"%PDF")

        asyncio.run(response.background())
        self.assertFalse(report_path.exists())

    def test_exports(self) -> None:
        quote = self._create_quote()
        with patch.object(main, "require_admin", return_value=ADMIN_USER):
            assessments_csv = main.export_assessments(request=object(), format="csv")
            assessments_xlsx = main.export_assessments(request=object(), format="xlsx")
            quotes_csv = main.export_quotes(request=object())
            with self.assertRaises(HTTPException) as ctx:
                main.export_assessments(request=object(), format="pdf")

        self.assertEqual(ctx.exception.status_code, 400)
        self.assertIn("attachment;", assessments_csv.headers["content-disposition"])
        csv_text = assessments_csv.body.decode("utf-8")
        self.assertTrue(csv_text.startswith("Assessment ID,Service Type,Status"))
        self.assertIn("owner@partner.test", csv_text)
        self.assertIn(quote.quote_number, csv_text)

        workbook = openpyxl.load_workbook(io.BytesIO(assessments_xlsx.body))
        rows = list(workbook.active.iter_rows(values_only=True))
        self.assertEqual(rows[0][0], "Assessment ID")
        self.assertEqual(len(rows), 2)

        quote_lines = quotes_csv.body.decode("utf-8").strip().splitlines()
        self.assertEqual(len(quote_lines), 2)
        self.assertIn(quote.quote_number, quote_lines[1])
        self.assertIn("Signal Partners", quote_lines[1])

    def test_send_invitation_records_analytics_on_success(self) -> None:
        with patch.object(main, "require_admin", return_value=ADMIN_USER), patch.object(
            main, "send_partner_invitation", return_value={"success": True, "message_id": "<abc@nxt>"}
        ) as send_mock:
            result = main.send_invitation(
                main.InvitationIn(email=" New.Partner@Example.com ", partner_name="Jordan"),
                request=object(),
            )

        self.assertTrue(result["email_sent"])
        invitation = result["invitation"]
        self.assertEqual(invitation.email, "new.partner@example.com")
        self.assertEqual(invitation.status, "pending")
        self.assertEqual(invitation.invited_by_name, "Alex Admin")
        signup_link = send_mock.call_args.args[1]
        self.assertTrue(signup_link.startswith(f"{main.FRONTEND_BASE_URL}/api/login?invitation="))
        with main.get_db() as conn:
            events = conn.execute("SELECT event FROM SignupAnalytics").fetchall()
        self.assertEqual([row["event"] for row in events], ["invitation_sent"])

    def test_send_invitation_survives_email_failure(self) -> None:
        with patch.object(main, "require_admin", return_value=ADMIN_USER), patch.object(
            main, "send_partner_invitation", return_value={"success": False, "error": "Email service is not configured"}
        ):
            result = main.send_invitation(main.InvitationIn(email="partner@example.com"), request=object())
            invitations = main.list_invitations(request=object())

        self.assertFalse(result["email_sent"])
        self.assertEqual(len(invitations), 1)
        with main.get_db() as conn:
            count = conn.execute("SELECT COUNT(*) AS cnt FROM SignupAnalytics").fetchone()["cnt"]
        self.assertEqual(count, 0)

    def test_invitation_lifecycle_and_analytics(self) -> None:
        with patch.object(main, "require_admin", return_value=ADMIN_USER), patch.object(
            main, "send_partner_invitation", return_value={"success": True, "message_id": "<abc@nxt>"}
        ):
            main.send_invitation(main.InvitationIn(email="owner@partner.test"), request=object())
            main.send_invitation(main.InvitationIn(email="late@partner.test"), request=object())

        with main.get_db() as conn:
            tokens = {
                row["email"]: row["invitation_token"]
                for row in conn.execute("SELECT email, invitation_token FROM PartnerInvitation").fetchall()
            }
            conn.execute(
                "UPDATE PartnerInvitation SET expires_at = ? WHERE email = 'late@partner.test'",
                ((datetime.utcnow() - timedelta(days=1)).isoformat(),),
            )
            conn.commit()

            partner_row = main.fetch_user(conn, "partner-1")
            stranger = {"id": "someone", "email": "someone@else.test"}
            self.assertFalse(main.consume_invitation(conn, tokens["owner@partner.test"], stranger))
            self.assertTrue(main.consume_invitation(conn, tokens["owner@partner.test"], partner_row))
            self.assertFalse(main.consume_invitation(conn, tokens["owner@partner.test"], partner_row))
            self.assertFalse(main.consume_invitation(conn, tokens["late@partner.test"], partner_row))
            self.assertFalse(main.consume_invitation(conn, "unknown-token", partner_row))

        today = datetime.utcnow().date().isoformat()
        with patch.object(main, "require_admin", return_value=ADMIN_USER):
            invitations = {row.email: row for row in main.list_invitations(request=object())}
            analytics = main.get_signup_analytics(request=object(), start_date=today, end_date=today)
            future = main.get_signup_analytics(request=object(), start_date="2999-01-01", end_date=None)
            with self.assertRaises(HTTPException) as ctx:
                main.get_signup_analytics(request=object(), start_date="yesterday", end_date=None)

        self.assertEqual(invitations["owner@partner.test"].status, "accepted")
        self.assertIsNotNone(invitations["owner@partner.test"].accepted_at)
        self.assertEqual(invitations["late@partner.test"].status, "expired")
        self.assertEqual(analytics["summary"]["invitation_sent"], 2)
        self.assertEqual(analytics["summary"]["signup_completed"], 1)
        self.assertEqual(analytics["conversion_rate"], 0.5)
        self.assertEqual(future["events"], [])
        self.assertEqual(ctx.exception.status_code, 400)


if __name__ == "__main__":
    unittest.main()
