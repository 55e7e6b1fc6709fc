import unittest
from decimal import Decimal

from fastapi.testclient import TestClient

from moneyflow.main import create_app
from moneyflow.settings import Settings
from moneyflow.storage import LedgerStore


class ApiTests(unittest.TestCase):
    def setUp(self) -> None:
        store = LedgerStore.from_url("sqlite://")
        store.create_all()
        self.client = TestClient(create_app(Settings(database_url="sqlite://"), store))
        response = self.client.post("/workspaces", json={"name": "Household", "currency": "usd"})
        self.assertEqual(response.status_code, 200)
        self.workspace_id = response.json()["id"]
        response = self.client.post(
            f"/workspaces/{self.workspace_id}/categories", json={"name": "Utilities"}
        )
        self.category_id = response.json()["id"]

    def test_health(self) -> None:
        self.assertEqual(self.client.get("/health").json(), {"status": "ok"})

    def test_reconcile_then_budget_overview(self) -> None:
        response = self.client.put(
            f"/workspaces/{self.workspace_id}/budgets",
            json={
                "category_id": self.category_id,
                "year": 2024,
                "month": 5,
                "planned_amount": "500",
            },
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["currency"], "USD")

        response = self.client.post(
            f"/workspaces/{self.workspace_id}/recurring",
            json={
                "name": "Power",
                "amount": "300",
                "frequency": "monthly",
                "start_date": "2024-05-01",
                "category_id": self.category_id,
            },
        )
        self.assertEqual(response.status_code, 200)
        definition_id = response.json()["id"]

        response = self.client.post(
            f"/workspaces/{self.workspace_id}/reconcile", params={"now": "2024-05-31"}
        )
        self.assertEqual(response.status_code, 200)
        report = response.json()
        self.assertEqual(report["created_count"], 1)
        self.assertEqual(report["results"][0]["definition_id"], definition_id)
        self.assertEqual(report["results"][0]["created"], ["2024-05-01"])
        self.assertEqual(len(report["results"][0]["transaction_ids"]), 1)

        response = self.client.post(
            f"/workspaces/{self.workspace_id}/transactions",
            json={
                "type": "expense",
                "amount": "300",
                "transaction_date": "2024-05-20",
                "category_id": self.category_id,
            },
        )
        self.assertEqual(response.status_code, 200)

        response = self.client.get(
            f"/workspaces/{self.workspace_id}/budget-overview",
            params={"year": 2024, "month": 5},
        )
        self.assertEqual(response.status_code, 200)
        overview = response.json()
        [line] = overview["overview"]
        self.assertEqual(line["category"]["name"], "Utilities")
        self.assertEqual(Decimal(line["spent"]), Decimal("600"))
        self.assertEqual(Decimal(line["remaining"]), Decimal("-100"))
        self.assertEqual(Decimal(line["percentage"]), Decimal("120"))
        self.assertTrue(line["is_over_budget"])
        self.assertEqual(Decimal(overview["summary"]["overall_percentage"]), Decimal("120"))

    def test_repeated_reconcile_is_idempotent(self) -> None:
        self.client.post(
            f"/workspaces/{self.workspace_id}/recurring",
            json={"name": "Water", "amount": "20", "frequency": "weekly", "start_date": "2024-01-01"},
        )

        first = self.client.post(
            f"/workspaces/{self.workspace_id}/reconcile", params={"now": "2024-01-29"}
        ).json()
        second = self.client.post(
            f"/workspaces/{self.workspace_id}/reconcile", params={"now": "2024-01-29"}
        ).json()

        self.assertEqual(first["created_count"], 5)
        self.assertEqual(second["created_count"], 0)

        summary = self.client.get(
            f"/workspaces/{self.workspace_id}/summary", params={"year": 2024, "month": 1}
        ).json()
        self.assertEqual(summary["transaction_count"], 5)
        self.assertEqual(Decimal(summary["total_expenses"]), Decimal("100"))

    def test_reconcile_logs_definitions_needing_attention(self) -> None:
        self.client.post(
            f"/workspaces/{self.workspace_id}/recurring",
            json={
                "name": "Tuition",
                "amount": "100",
                "currency": "XAU",
                "frequency": "monthly",
                "start_date": "2024-01-01",
            },
        )

        with self.assertLogs("moneyflow.main", level="WARNING") as logs:
            response = self.client.post(
                f"/workspaces/{self.workspace_id}/reconcile", params={"now": "2024-01-15"}
            )

        self.assertEqual(response.status_code, 200)
        self.assertEqual(len(response.json()["needs_attention"]), 1)
        self.assertIn("needs attention", logs.output[0])

    def test_toggle_recurring_definition(self) -> None:
        definition = self.client.post(
            f"/workspaces/{self.workspace_id}/recurring",
            json={"name": "Gym", "amount": "45", "start_date": "2024-01-01"},
        ).json()

        toggled = self.client.post(f"/recurring/{definition['id']}/toggle").json()

        self.assertFalse(toggled["is_active"])
        self.assertEqual(toggled["version"], 2)

    def test_copy_budgets_from_previous_month(self) -> None:
        self.client.put(
            f"/workspaces/{self.workspace_id}/budgets",
            json={"category_id": self.category_id, "year": 2024, "month": 4, "planned_amount": "80"},
        )

        response = self.client.post(
            f"/workspaces/{self.workspace_id}/budgets/copy-previous",
            params={"year": 2024, "month": 5},
        )

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["count"], 1)
        empty = self.client.post(
            f"/workspaces/{self.workspace_id}/budgets/copy-previous",
            params={"year": 2024, "month": 9},
        )
        self.assertEqual(empty.status_code, 400)

    def test_invalid_frequency_is_rejected(self) -> None:
        response = self.client.post(
            f"/workspaces/{self.workspace_id}/recurring",
            json={"name": "Coffee", "amount": "3", "frequency": "daily", "start_date": "2024-01-01"},
        )

        self.assertEqual(response.status_code, 400)

    def test_unknown_workspace_and_category(self) -> None:
        self.assertEqual(self.client.get("/workspaces/999").status_code, 404)
        response = self.client.post(
            f"/workspaces/{self.workspace_id}/recurring",
            json={"name": "Gym", "amount": "45", "start_date": "2024-01-01", "category_id": 999},
        )
        self.assertEqual(response.status_code, 404)


if __name__ == "__main__":
    unittest.main()
