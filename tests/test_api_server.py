import base64
import io
import unittest
from unittest import mock

import pandas as pd

from api_server import app
from penalty_engine import PenaltyEngine


class TestCalculatorPage(unittest.TestCase):
    def setUp(self):
        app.config["TESTING"] = True
        self.client = app.test_client()

    def test_default_page(self):
        resp = self.client.get("/")
        self.assertEqual(resp.status_code, 200)
        body = resp.get_data(as_text=True)
        self.assertIn("Extended Bridge Loan Return Schedule", body)
        self.assertIn("Week 6 Penalty", body)
        self.assertNotIn("Week 7 Penalty", body)
        self.assertIn("$233,000", body)
        self.assertIn("12/27/2024", body)

    def test_query_parameters(self):
        resp = self.client.get("/calculator?project=Maple+St&principal=200000&baseRate=16.5"
                               "&penaltyRate=3.5&maturityDate=2024-12-27&weeks=2")
        body = resp.get_data(as_text=True)
        self.assertEqual(resp.status_code, 200)
        self.assertIn("Maple St", body)
        self.assertIn("Dec 28 - Jan 3", body)
        self.assertIn("$234,155", body)
        self.assertIn("17.1%", body)
        self.assertIn("$235,350", body)
        self.assertNotIn("Week 3 Penalty", body)

    def test_share_and_export_links(self):
        body = self.client.get("/?weeks=3&project=Harbor").get_data(as_text=True)
        self.assertIn("http://localhost/", body)
        self.assertIn("?project=Harbor&amp;principal=200000", body)
        self.assertIn("/export?project=Harbor", body)

    def test_summary_rates_without_trailing_zero(self):
        body = self.client.get("/?baseRate=12&penaltyRate=2.5").get_data(as_text=True)
        self.assertIn("<div>12%</div>", body)
        self.assertIn("<div>2.5%</div>", body)

    def test_huge_penalty_renders(self):
        resp = self.client.get("/?penaltyRate=1000000&weeks=60")
        self.assertEqual(resp.status_code, 200)
        self.assertIn("Week 60 Penalty", resp.get_data(as_text=True))

    def test_overflowing_penalty_shows_error(self):
        resp = self.client.get("/?penaltyRate=1000000&weeks=80")
        self.assertEqual(resp.status_code, 200)
        self.assertIn("overflows.", resp.get_data(as_text=True))

    def test_negative_principal_shows_error(self):
        resp = self.client.get("/?principal=-5")
        self.assertEqual(resp.status_code, 200)
        self.assertIn("Principal must be greater than zero.", resp.get_data(as_text=True))


class TestExportRoute(unittest.TestCase):
    def setUp(self):
        app.config["TESTING"] = True
        self.client = app.test_client()

    def test_download_workbook(self):
        resp = self.client.get("/export?project=Maple+St&weeks=2")
        self.assertEqual(resp.status_code, 200)
        self.assertIn("maple_st_penalty_schedule.xlsx", resp.headers["Content-Disposition"])
        df = pd.read_excel(io.BytesIO(resp.data), sheet_name="Schedule")
        self.assertEqual(list(df["Period"]), ["Base Return", "Week 1 Penalty", "Week 2 Penalty"])

    def test_invalid_parameters(self):
        resp = self.client.get("/export?weeks=-2")
        self.assertEqual(resp.status_code, 400)
        self.assertIn("error", resp.get_json())


class TestCalculateRoute(unittest.TestCase):
    def setUp(self):
        app.config["TESTING"] = True
        self.client = app.test_client()

    def test_schedule_script(self):
        resp = self.client.post("/calculate", json={
            "script": "Penalty Schedule",
            "data": {"principal": 200000, "baseRate": 16.5, "penaltyRate": 3.5,
                     "maturityDate": "2024-12-27", "weeks": 2},
        })
        self.assertEqual(resp.status_code, 200)
        result = resp.get_json()
        self.assertEqual(len(result["schedule"]), 3)
        self.assertAlmostEqual(result["schedule"][1]["interest"], 34155.0, places=6)

    def test_export_script(self):
        resp = self.client.post("/calculate", json={"script": "export schedule", "data": {"weeks": 1}})
        self.assertEqual(resp.status_code, 200)
        result = resp.get_json()
        self.assertEqual(result["filename"], "penalty_schedule.xlsx")
        df = pd.read_excel(io.BytesIO(base64.b64decode(result["excel_base64"])), sheet_name="Schedule")
        self.assertEqual(len(df), 2)

    def test_unknown_script(self):
        resp = self.client.post("/calculate", json={"script": "mortgage", "data": {}})
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.get_json()["error"], "Unknown script name.")

    def test_validation_error(self):
        resp = self.client.post("/calculate", json={"script": "schedule", "data": {"principal": 0}})
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.get_json()["error"], "Principal must be greater than zero.")

    def test_overflow_is_a_validation_error(self):
        resp = self.client.post("/calculate", json={"script": "schedule",
                                                     "data": {"penaltyRate": 1e6, "weeks": 80}})
        self.assertEqual(resp.status_code, 400)
        self.assertIn("overflows", resp.get_json()["error"])

    def test_engine_failure_returns_500(self):
        with mock.patch.object(PenaltyEngine, "calculate_penalty_schedule", side_effect=RuntimeError("boom")):
            resp = self.client.post("/calculate", json={"script": "schedule", "data": {}})
        self.assertEqual(resp.status_code, 500)
        self.assertEqual(resp.get_json()["error"], "Python engine error: boom")

    def test_requires_json(self):
        resp = self.client.post("/calculate", data="principal=1", content_type="text/plain")
        self.assertEqual(resp.status_code, 400)


if __name__ == "__main__":
    unittest.main()
