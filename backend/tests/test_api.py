import os
import shutil
import tempfile
import unittest
from decimal import Decimal

_TMP_DIR = tempfile.mkdtemp(prefix="spendwise-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_TMP_DIR, 'test.db')}"

from fastapi.testclient import TestClient  # noqa: E402

from backend import main  # noqa: E402


def tearDownModule() -> None:
    main.engine.dispose()
    shutil.rmtree(_TMP_DIR, ignore_errors=True)


class BudgetApiTests(unittest.TestCase):
    def setUp(self) -> None:
        main.metadata.drop_all(main.engine)
        main.metadata.create_all(main.engine)
        main.budget_snapshots.clear()
        self.client = TestClient(main.app)

        response = self.client.post(
            "/auth/signup", json={"email": "ana@example.com", "password": "secret"}
        )
        self.assertEqual(response.status_code, 200)
        self.headers = {"x-user-id": str(response.json()["id"])}
        categories = self.client.get("/categories", headers=self.headers).json()
        self.category_ids = {row["name"]: row["id"] for row in categories}

    def post(self, path: str, payload: dict):
        return self.client.post(path, json=payload, headers=self.headers)

    def add_expense(self, category: str | None, amount: str, when: str = "2024-05-15T12:00:00"):
        response = self.post(
            "/transactions",
            {
                "amount": amount,
                "type": "expense",
                "category_id": self.category_ids[category] if category else None,
                "date": when,
            },
        )
        self.assertEqual(response.status_code, 200, response.text)
        return response.json()

    def create_food_group(self) -> int:
        group = self.post("/category-groups", {"name": "Food"}).json()
        return group["id"]

    def test_login_checks_password(self) -> None:
        ok = self.client.post("/auth/login", json={"email": "ana@example.com", "password": "secret"})
        bad = self.client.post("/auth/login", json={"email": "ana@example.com", "password": "nope"})

        self.assertEqual(ok.status_code, 200)
        self.assertEqual(bad.status_code, 401)

    def test_requires_user_identity(self) -> None:
        self.assertEqual(self.client.get("/budgets").status_code, 401)
        self.assertEqual(
            self.client.get("/budgets", headers={"x-user-id": "999"}).status_code, 404
        )

    def test_single_category_budget_is_enriched(self) -> None:
        created = self.post(
            "/budgets",
            {"period": "2024-05-20", "amount": "500", "category_id": self.category_ids["Groceries"]},
        )
        self.assertEqual(created.status_code, 200, created.text)
        self.assertEqual(created.json()["period"], "2024-05-01")
        self.add_expense("Groceries", "450")
        self.add_expense("Dining", "80")
        self.add_expense(None, "30")
        self.add_expense("Groceries", "999", when="2024-06-01T00:00:00")

        [budget] = self.client.get("/budgets?period=2024-05", headers=self.headers).json()

        self.assertEqual(budget["display_name"], "Groceries")
        self.assertEqual(Decimal(budget["actual_spend"]), Decimal("450"))
        self.assertAlmostEqual(budget["percentage"], 90.0)
        self.assertEqual(budget["status"], "ok")
        self.assertEqual(Decimal(budget["remaining"]), Decimal("50"))
        self.assertEqual(Decimal(budget["over_budget"]), Decimal("0"))

    def test_grouped_budget_defaults_to_group_categories(self) -> None:
        group_id = self.create_food_group()
        for name in ("Produce", "Restaurants"):
            response = self.post("/categories", {"name": name, "group_id": group_id})
            self.category_ids[name] = response.json()["id"]

        created = self.post(
            "/budgets", {"period": "2024-05-01", "amount": "600", "group_id": group_id}
        ).json()
        self.assertEqual(
            created["category_ids"],
            sorted([self.category_ids["Produce"], self.category_ids["Restaurants"]]),
        )
        self.add_expense("Produce", "300")
        self.add_expense("Restaurants", "250")
        self.add_expense("Rent", "1000")

        [budget] = self.client.get("/budgets?period=2024-05", headers=self.headers).json()

        self.assertEqual(budget["display_name"], "Food")
        self.assertEqual(Decimal(budget["actual_spend"]), Decimal("550"))
        self.assertEqual(budget["status"], "warning")

    def test_grouped_budget_requires_categories(self) -> None:
        group_id = self.create_food_group()

        response = self.post(
            "/budgets", {"period": "2024-05-01", "amount": "600", "group_id": group_id}
        )

        self.assertEqual(response.status_code, 400)

    def test_budget_requires_exactly_one_scope(self) -> None:
        group_id = self.create_food_group()
        both = self.post(
            "/budgets",
            {
                "period": "2024-05-01",
                "amount": "100",
                "group_id": group_id,
                "category_id": self.category_ids["Rent"],
            },
        )
        neither = self.post("/budgets", {"period": "2024-05-01", "amount": "100"})

        self.assertEqual(both.status_code, 400)
        self.assertEqual(neither.status_code, 400)

    def test_duplicate_budget_in_period_conflicts(self) -> None:
        payload = {"period": "2024-05-01", "amount": "100", "category_id": self.category_ids["Rent"]}
        self.assertEqual(self.post("/budgets", payload).status_code, 200)

        duplicate = self.post("/budgets", payload)
        next_month = self.post("/budgets", {**payload, "period": "2024-06-01"})

        self.assertEqual(duplicate.status_code, 409)
        self.assertIn("category", duplicate.json()["detail"])
        self.assertEqual(next_month.status_code, 200)

    def test_update_changes_amount_and_note_only(self) -> None:
        created = self.post(
            "/budgets", {"period": "2024-05-01", "amount": "100", "category_id": self.category_ids["Rent"]}
        ).json()

        response = self.client.put(
            f"/budgets/{created['id']}",
            json={"amount": "150", "note": " rent went up ", "category_id": 12345},
            headers=self.headers,
        )

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(Decimal(body["amount"]), Decimal("150"))
        self.assertEqual(body["note"], "rent went up")
        self.assertEqual(body["category_id"], self.category_ids["Rent"])

    def test_delete_budget_reports_result(self) -> None:
        created = self.post(
            "/budgets", {"period": "2024-05-01", "amount": "100", "category_id": self.category_ids["Rent"]}
        ).json()

        first = self.client.delete(f"/budgets/{created['id']}", headers=self.headers)
        second = self.client.delete(f"/budgets/{created['id']}", headers=self.headers)

        self.assertEqual(first.json(), {"status": "deleted"})
        self.assertEqual(second.status_code, 404)
        self.assertEqual(self.client.get("/budgets?period=2024-05", headers=self.headers).json(), [])

    def test_dashboard_summary_refreshes_after_new_expense(self) -> None:
        for name, amount in (("Rent", "1000"), ("Dining", "100"), ("Travel", "300")):
            self.post(
                "/budgets", {"period": "2024-05-01", "amount": amount, "category_id": self.category_ids[name]}
            )
        self.add_expense("Rent", "1200")
        self.add_expense("Dining", "95")

        summary = self.client.get("/dashboard/budgets?period=2024-05", headers=self.headers).json()
        self.assertEqual(summary["budget_count"], 3)
        self.assertEqual([b["display_name"] for b in summary["over"]], ["Rent"])
        self.assertEqual([b["display_name"] for b in summary["warning"]], ["Dining"])
        self.assertEqual([b["display_name"] for b in summary["needs_attention"]], ["Rent", "Dining"])
        self.assertEqual(Decimal(summary["total_remaining"]), Decimal("105"))

        self.add_expense("Travel", "290")
        refreshed = self.client.get("/dashboard/budgets?period=2024-05", headers=self.headers).json()

        self.assertEqual(
            [b["display_name"] for b in refreshed["warning"]], ["Dining", "Travel"]
        )
        self.assertEqual(refreshed["on_track"], [])

    def test_surfaces_agree_on_status(self) -> None:
        for name, amount in (("Rent", "1000"), ("Dining", "100")):
            self.post(
                "/budgets", {"period": "2024-05-01", "amount": amount, "category_id": self.category_ids[name]}
            )
        self.add_expense("Rent", "500")
        self.add_expense("Dining", "150")

        listed = self.client.get("/budgets?period=2024-05", headers=self.headers).json()
        report = self.client.get("/reports/budgets?period=2024-05", headers=self.headers).json()
        summary = self.client.get("/dashboard/budgets?period=2024-05", headers=self.headers).json()

        self.assertEqual([b["display_name"] for b in listed], ["Rent", "Dining"])
        self.assertEqual([b["display_name"] for b in report], ["Dining", "Rent"])
        dashboard = summary["over"] + summary["warning"] + summary["on_track"]
        by_id = {b["id"]: (b["status"], b["percentage"]) for b in listed}
        for surface in (report, dashboard):
            self.assertEqual({b["id"]: (b["status"], b["percentage"]) for b in surface}, by_id)

    def test_recurring_budgets_carry_forward(self) -> None:
        group_id = self.create_food_group()
        self.post(
            "/budgets",
            {
                "period": "2024-04-01",
                "amount": "200",
                "group_id": group_id,
                "category_ids": [self.category_ids["Groceries"], self.category_ids["Dining"]],
                "is_recurring": True,
                "note": "weekly shop",
            },
        )
        self.post(
            "/budgets",
            {"period": "2024-04-01", "amount": "50", "category_id": self.category_ids["Travel"]},
        )
        self.add_expense("Dining", "20")

        budgets = self.client.get("/budgets?period=2024-05", headers=self.headers).json()

        self.assertEqual(len(budgets), 1)
        [carried] = budgets
        self.assertEqual(carried["period"], "2024-05-01")
        self.assertEqual(carried["group_id"], group_id)
        self.assertTrue(carried["is_recurring"])
        self.assertEqual(carried["note"], "weekly shop")
        self.assertEqual(
            carried["category_ids"],
            sorted([self.category_ids["Groceries"], self.category_ids["Dining"]]),
        )
        self.assertEqual(Decimal(carried["actual_spend"]), Decimal("20"))

        again = self.client.get("/budgets?period=2024-05", headers=self.headers).json()
        self.assertEqual([b["id"] for b in again], [carried["id"]])

    def test_category_in_use_cannot_be_deleted(self) -> None:
        self.add_expense("Rent", "10")
        unused = self.post("/categories", {"name": "Pets"}).json()

        in_use = self.client.delete(f"/categories/{self.category_ids['Rent']}", headers=self.headers)
        removed = self.client.delete(f"/categories/{unused['id']}", headers=self.headers)

        self.assertEqual(in_use.status_code, 409)
        self.assertEqual(removed.json(), {"status": "deleted"})

    def test_transaction_validation(self) -> None:
        bad_type = self.post(
            "/transactions", {"amount": "10", "type": "gift", "date": "2024-05-01T00:00:00"}
        )
        bad_amount = self.post(
            "/transactions", {"amount": "0", "type": "expense", "date": "2024-05-01T00:00:00"}
        )

        self.assertEqual(bad_type.status_code, 400)
        self.assertEqual(bad_amount.status_code, 400)

    def test_transactions_filter_by_period(self) -> None:
        self.add_expense("Rent", "10", when="2024-05-31T23:59:59")
        self.add_expense("Rent", "5", when="2024-05-31T23:59:59.500000")
        self.add_expense("Rent", "20", when="2024-06-01T00:00:00")

        may = self.client.get("/transactions?period=2024-05", headers=self.headers).json()
        june = self.client.get("/transactions?period=2024-06", headers=self.headers).json()

        self.assertEqual(sorted(Decimal(t["amount"]) for t in may), [Decimal("5"), Decimal("10")])
        self.assertEqual([Decimal(t["amount"]) for t in june], [Decimal("20")])

    def test_sub_second_expense_counts_toward_month_budget(self) -> None:
        self.post(
            "/budgets", {"period": "2024-05-01", "amount": "100", "category_id": self.category_ids["Rent"]}
        )
        self.add_expense("Rent", "40", when="2024-05-31T23:59:59.500000")

        [budget] = self.client.get("/budgets?period=2024-05", headers=self.headers).json()

        self.assertEqual(Decimal(budget["actual_spend"]), Decimal("40"))

    def test_invalid_period_is_rejected(self) -> None:
        response = self.client.get("/budgets?period=May", headers=self.headers)

        self.assertEqual(response.status_code, 400)


if __name__ == "__main__":
    unittest.main()
